"""Best-effort persistence for marketplace cookies

Several storage shapes are tried in order. Reading returns the first usable
value; writing stops at the first adapter that accepts the value.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Sequence

import aiofiles
import orjson
from loguru import logger

from .config import COOKIE_COLUMNS, COOKIE_SETTINGS_KEY, DEFAULT_COOKIE_FILE
from .exceptions import StorageError


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _usable(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


class CredentialAdapter(ABC):
    """One storage location. Adapters raise StorageError on failure."""

    name: str = "adapter"
    writable: bool = True

    @abstractmethod
    async def try_read(self) -> Optional[str]:
        """Stored cookies, or None if nothing usable is stored"""

    async def try_write(self, cookies: str) -> None:
        raise StorageError(f"{self.name} is read-only")


class SupabaseKeyValueStore(CredentialAdapter):
    """Table with ``key`` / ``value`` / ``updated_at`` columns"""

    def __init__(self, client, table: str, key: str = COOKIE_SETTINGS_KEY):
        self.client = client
        self.table = table
        self.key = key
        self.name = table

    async def try_read(self) -> Optional[str]:
        def query():
            return (
                self.client.table(self.table)
                .select("value")
                .eq("key", self.key)
                .limit(1)
                .execute()
            )

        try:
            result = await asyncio.to_thread(query)
        except Exception as e:
            raise StorageError(f"{self.table} read failed: {e}")

        rows = result.data or []
        return _usable(rows[0].get("value")) if rows else None

    async def try_write(self, cookies: str) -> None:
        row = {"key": self.key, "value": cookies, "updated_at": _utcnow_iso()}

        def query():
            return self.client.table(self.table).upsert(row, on_conflict="key").execute()

        try:
            await asyncio.to_thread(query)
        except Exception as e:
            raise StorageError(f"{self.table} write failed: {e}")


class SupabaseCredentialsRowStore(CredentialAdapter):
    """Single fixed row holding the cookies in dedicated columns"""

    def __init__(self, client, table: str = "vinted_credentials", row_id: int = 1):
        self.client = client
        self.table = table
        self.row_id = row_id
        self.name = table

    async def try_read(self) -> Optional[str]:
        def query():
            return (
                self.client.table(self.table)
                .select(", ".join(COOKIE_COLUMNS))
                .order("updated_at", desc=True)
                .limit(1)
                .execute()
            )

        try:
            result = await asyncio.to_thread(query)
        except Exception as e:
            raise StorageError(f"{self.table} read failed: {e}")

        rows = result.data or []
        if not rows:
            return None
        for column in COOKIE_COLUMNS:
            value = _usable(rows[0].get(column))
            if value:
                return value
        return None

    async def try_write(self, cookies: str) -> None:
        row = {"id": self.row_id, "updated_at": _utcnow_iso()}
        row.update({column: cookies for column in COOKIE_COLUMNS})

        def query():
            return self.client.table(self.table).upsert(row, on_conflict="id").execute()

        try:
            await asyncio.to_thread(query)
        except Exception as e:
            raise StorageError(f"{self.table} write failed: {e}")


class JsonFileStore(CredentialAdapter):
    """Local JSON file ``{"cookies": ..., "updated_at": ...}``"""

    def __init__(self, path: Path = DEFAULT_COOKIE_FILE):
        self.path = Path(path)
        self.name = str(self.path)

    async def try_read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            async with aiofiles.open(self.path, "rb") as f:
                data = orjson.loads(await f.read())
        except (OSError, orjson.JSONDecodeError) as e:
            raise StorageError(f"{self.path} read failed: {e}")

        if not isinstance(data, dict):
            return None
        return _usable(data.get("cookies"))

    async def try_write(self, cookies: str) -> None:
        payload = orjson.dumps(
            {"cookies": cookies, "updated_at": _utcnow_iso()},
            option=orjson.OPT_INDENT_2,
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, "wb") as f:
                await f.write(payload)
        except OSError as e:
            raise StorageError(f"{self.path} write failed: {e}")


class EnvCredentialSource(CredentialAdapter):
    """Read-only fallback from an environment variable"""

    writable = False

    def __init__(self, var: str = "VINTED_FULL_COOKIES"):
        self.var = var
        self.name = f"${var}"

    async def try_read(self) -> Optional[str]:
        return _usable(os.getenv(self.var))


class CredentialStore:
    """
    Ordered list of adapters with unified error reporting.

    Writes go through ``adapters`` in order. Reads use ``read_order`` when
    given (the same adapters, ranked differently), else ``adapters``.
    """

    def __init__(
        self,
        adapters: Sequence[CredentialAdapter],
        read_order: Optional[Sequence[CredentialAdapter]] = None,
    ):
        self.adapters: List[CredentialAdapter] = list(adapters)
        self.read_adapters: List[CredentialAdapter] = list(read_order) if read_order else list(self.adapters)

    @classmethod
    def from_env(cls, cookie_file: Path = DEFAULT_COOKIE_FILE) -> "CredentialStore":
        """Supabase tables (when configured), then the local file, then the environment"""
        adapters: List[CredentialAdapter] = []
        read_order: List[CredentialAdapter] = []

        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_KEY", "") or os.getenv("SUPABASE_KEY", "")
        if url and key:
            from supabase import create_client

            client = create_client(url, key)
            app_settings = SupabaseKeyValueStore(client, "app_settings")
            user_preferences = SupabaseKeyValueStore(client, "user_preferences")
            credentials_row = SupabaseCredentialsRowStore(client, "vinted_credentials")
            # Writes prefer app_settings, reads prefer user_preferences
            adapters.extend([app_settings, user_preferences, credentials_row])
            read_order.extend([user_preferences, credentials_row, app_settings])
        else:
            logger.debug("Supabase not configured, cookies are stored locally only")

        local = [JsonFileStore(cookie_file), EnvCredentialSource("VINTED_FULL_COOKIES")]
        adapters.extend(local)
        read_order.extend(local)
        return cls(adapters, read_order)

    async def load(self) -> Optional[str]:
        """First usable value across adapters, or None"""
        for adapter in self.read_adapters:
            try:
                cookies = await adapter.try_read()
            except StorageError as e:
                logger.debug(f"Cookie read skipped: {e}")
                continue

            if cookies and cookies.strip():
                logger.info(f"✅ Cookies loaded from {adapter.name}")
                return cookies

        logger.warning("⚠️ No cookies found in any store")
        return None

    async def save(self, cookies: str) -> bool:
        """
        Persist ``cookies`` to the first writable adapter that accepts them.

        Returns:
            False if every adapter failed; the caller keeps the cookies in memory
        """
        errors = []
        for adapter in self.adapters:
            if not adapter.writable:
                continue
            try:
                await adapter.try_write(cookies)
            except StorageError as e:
                errors.append(str(e))
                logger.debug(f"Cookie write skipped: {e}")
                continue

            logger.info(f"💾 Cookies saved to {adapter.name}")
            return True

        logger.error(
            "❌ Could not persist cookies to any store; they are only kept in memory "
            "until the process exits"
        )
        for error in errors:
            logger.error(f"   {error}")
        return False
