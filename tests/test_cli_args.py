import os
from pathlib import Path

import pytest

import scrape_gateway.cli as cli


@pytest.fixture
def no_logging(monkeypatch):
    # Avoid touching real logs/paths during tests
    monkeypatch.setattr(cli, "setup_logging", lambda *a, **k: None)


@pytest.fixture
def captured(monkeypatch):
    """Replace every subcommand handler with a recorder"""
    calls = {}

    async def fake_route(args):
        calls["route"] = args
        return 0

    async def fake_stats(args):
        calls["stats"] = args
        return 0

    async def fake_worker(args):
        calls["worker"] = args
        return 0

    def fake_server(args):
        calls["serve"] = args
        return 0

    parser_factory = cli.build_parser

    def build_parser():
        parser = parser_factory()
        subparsers = next(a for a in parser._actions if a.dest == "command")
        subparsers.choices["route"].set_defaults(handler=fake_route)
        subparsers.choices["stats"].set_defaults(handler=fake_stats)
        subparsers.choices["worker"].set_defaults(handler=fake_worker)
        subparsers.choices["serve"].set_defaults(handler=fake_server)
        return parser

    monkeypatch.setattr(cli, "build_parser", build_parser)
    return calls


def _run_main(argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


def test_route_arguments(no_logging, captured):
    code = _run_main(["route", "https://www.vinted.fr/items/1", "--method", "POST", "--body", '{"a": 1}'])

    assert code == 0
    args = captured["route"]
    assert args.url == "https://www.vinted.fr/items/1"
    assert args.method == "POST"
    assert args.body == '{"a": 1}'


def test_serve_defaults(no_logging, captured):
    assert _run_main(["serve"]) == 0
    assert captured["serve"].host == "0.0.0.0"
    assert captured["serve"].port == 3000


def test_global_options_before_subcommand(no_logging, captured, tmp_path):
    log_file = tmp_path / "gateway.log"
    assert _run_main(["--verbose", "--log-file", str(log_file), "stats", "--json"]) == 0

    args = captured["stats"]
    assert args.verbose is True
    assert args.log_file == str(log_file)
    assert args.json is True


def test_worker_subcommand(no_logging, captured):
    assert _run_main(["worker"]) == 0
    assert "worker" in captured


def test_missing_subcommand_is_an_error(no_logging):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 2


def test_missing_env_file_exits(no_logging, tmp_path: Path, capsys):
    code = _run_main(["--env-file", str(tmp_path / "missing.env"), "stats"])
    assert code == 1
    assert "Env file not found" in capsys.readouterr().err


def test_env_file_is_loaded(no_logging, captured, tmp_path: Path, monkeypatch):
    monkeypatch.setenv("GATEWAY_RETRY_ATTEMPTS", "3")
    env_file = tmp_path / ".env"
    env_file.write_text("GATEWAY_RETRY_ATTEMPTS=7\n")

    assert _run_main(["--env-file", str(env_file), "stats"]) == 0

    assert os.environ["GATEWAY_RETRY_ATTEMPTS"] == "7"


def test_invalid_configuration_exits_with_2(no_logging, monkeypatch):
    monkeypatch.setenv("GATEWAY_RETRY_ATTEMPTS", "0")
    assert _run_main(["route", "https://www.vinted.fr/"]) == 2


def test_route_prints_result(no_logging, monkeypatch, capsys):
    class FakeResult:
        success = True

        def to_dict(self):
            return {"success": True, "data": "ok", "nodeUsed": "node-1"}

    class FakeRouter:
        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        async def route_request(self, request):
            assert request.url == "https://www.vinted.fr/"
            assert request.body == {"q": 1}
            return FakeResult()

        def print_stats(self):
            pass

    monkeypatch.setattr(cli.GatewayRouter, "from_env", classmethod(lambda cls: FakeRouter()))

    assert _run_main(["route", "https://www.vinted.fr/", "--body", '{"q": 1}']) == 0
    assert '"nodeUsed": "node-1"' in capsys.readouterr().out


def test_logging_is_tagged_with_the_command(captured, monkeypatch, tmp_path):
    seen = {}

    def fake_setup_logging(verbose=False, log_file=None, component="gateway"):
        seen.update(verbose=verbose, log_file=log_file, component=component)

    monkeypatch.setattr(cli, "setup_logging", fake_setup_logging)

    assert _run_main(["--log-file", str(tmp_path), "worker"]) == 0
    assert seen == {"verbose": False, "log_file": tmp_path, "component": "worker"}
