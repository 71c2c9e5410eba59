from loguru import logger

from scrape_gateway.logging_config import setup_logging


def test_log_directory_gets_one_file_per_component(tmp_path):
    setup_logging(log_file=tmp_path, component="worker")
    logger.info("worker cycle done")
    logger.complete()
    logger.remove()

    content = (tmp_path / "worker.log").read_text()
    assert "| worker |" in content
    assert "worker cycle done" in content


def test_explicit_log_file_is_used_as_is(tmp_path):
    log_file = tmp_path / "logs" / "gateway.log"
    setup_logging(verbose=True, log_file=log_file, component="serve")
    logger.debug("debug line")
    logger.complete()
    logger.remove()

    content = log_file.read_text()
    assert "| serve |" in content
    assert "debug line" in content
