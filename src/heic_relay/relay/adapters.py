import asyncio
import contextlib
import json
import os
import re
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable

from heic_relay.logger import get_logger

from .context import RuntimeContext
from .errors import StorageQuotaExceeded
from .interfaces import ConversionEngine, Notifier, RecordStore

_logger = get_logger("storage")

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


def _as_key_list(keys: str | list[str]) -> list[str]:
    return [keys] if isinstance(keys, str) else list(keys)


class JsonFileStore(RecordStore):
    """Signal tier: one JSON document per key, optionally bounded by a byte quota."""

    def __init__(self, base_dir: str | Path, context: RuntimeContext, *, quota_bytes: int = 0) -> None:
        self._base = Path(base_dir).resolve()
        self._context = context
        self._quota = int(quota_bytes)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.fullmatch(key):
            raise ValueError(f"unsupported record key: {key!r}")
        return self._base / f"{key}.json"

    def _used_bytes(self, excluding: Path) -> int:
        total = 0
        for p in self._base.glob("*.json"):
            if p != excluding:
                with contextlib.suppress(FileNotFoundError):
                    total += p.stat().st_size
        return total

    def _write(self, key: str, value: Any) -> None:
        p = self._path(key)
        body = json.dumps(value, ensure_ascii=False).encode("utf-8")
        self._base.mkdir(parents=True, exist_ok=True)
        if self._quota and self._used_bytes(p) + len(body) > self._quota:
            raise StorageQuotaExceeded(f"signal store quota of {self._quota} bytes exceeded writing {key}")
        tmp = p.with_suffix(".json.tmp")
        with tmp.open("wb") as f:
            f.write(body)
        os.replace(tmp, p)

    def _read(self, key: str) -> Any | None:
        p = self._path(key)
        try:
            with p.open("r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None

    def _delete(self, keys: list[str]) -> None:
        for key in keys:
            self._path(key).unlink(missing_ok=True)

    def _list(self) -> list[str]:
        if not self._base.exists():
            return []
        return sorted(p.stem for p in self._base.glob("*.json"))

    async def set(self, key: str, value: Any) -> None:
        self._context.ensure_valid()
        await asyncio.to_thread(self._write, key, value)

    async def get(self, key: str) -> Any | None:
        self._context.ensure_valid()
        return await asyncio.to_thread(self._read, key)

    async def remove(self, keys: str | list[str]) -> None:
        self._context.ensure_valid()
        await asyncio.to_thread(self._delete, _as_key_list(keys))

    async def clear(self) -> None:
        self._context.ensure_valid()
        await asyncio.to_thread(lambda: self._delete(self._list()))

    async def keys(self) -> list[str]:
        self._context.ensure_valid()
        return await asyncio.to_thread(self._list)


class SqliteRecordStore(RecordStore):
    """Bulk tier: a single SQLite table of JSON values.

    A fresh connection is opened per operation (WAL journal, busy timeout)
    and transient `sqlite3.OperationalError` is retried with a short backoff.
    """

    def __init__(
        self,
        db_path: str | Path,
        context: RuntimeContext,
        *,
        busy_timeout_ms: int = 5000,
        retries: int = 3,
    ) -> None:
        self._db_path = Path(db_path)
        self._context = context
        self._busy_timeout_ms = int(busy_timeout_ms)
        self._retries = retries
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._execute(lambda conn: conn.execute(
            "CREATE TABLE IF NOT EXISTS records (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
        ))

    def _open_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error:
            _logger.debug("PRAGMA journal_mode=WAL failed", exc_info=True)
        conn.execute(f"PRAGMA busy_timeout = {self._busy_timeout_ms}")
        return conn

    def _execute(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        attempt = 0
        while True:
            conn = self._open_conn()
            try:
                res = fn(conn)
                conn.commit()
                return res
            except sqlite3.OperationalError:
                attempt += 1
                if attempt > self._retries:
                    raise
                _logger.debug("bulk store busy, retry %d", attempt)
                time.sleep(0.05 * attempt)
            finally:
                conn.close()

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        self._context.ensure_valid()
        return await asyncio.to_thread(self._execute, fn)

    async def set(self, key: str, value: Any) -> None:
        body = json.dumps(value, ensure_ascii=False)
        await self._run(lambda conn: conn.execute(
            "INSERT OR REPLACE INTO records (key, value) VALUES (?, ?)", (key, body)
        ))

    async def get(self, key: str) -> Any | None:
        def _select(conn: sqlite3.Connection) -> str | None:
            row = conn.execute("SELECT value FROM records WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

        raw = await self._run(_select)
        return None if raw is None else json.loads(raw)

    async def remove(self, keys: str | list[str]) -> None:
        rows = [(k,) for k in _as_key_list(keys)]
        await self._run(lambda conn: conn.executemany("DELETE FROM records WHERE key = ?", rows))

    async def clear(self) -> None:
        await self._run(lambda conn: conn.execute("DELETE FROM records"))

    async def keys(self) -> list[str]:
        return await self._run(
            lambda conn: [r[0] for r in conn.execute("SELECT key FROM records ORDER BY key")]
        )


_pyvips: Any | None = None


def _get_pyvips_module() -> Any:
    global _pyvips
    if _pyvips is None:
        import pyvips  # type: ignore

        _pyvips = pyvips
    return _pyvips


class PyvipsConverter(ConversionEngine):
    """HEIC decoding and JPEG/PNG/WebP encoding through libvips."""

    _SUFFIXES = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp"}

    def __init__(self) -> None:
        self._pyvips = _get_pyvips_module()
        # Keep libvips' operation cache from growing across conversions
        with contextlib.suppress(Exception):
            self._pyvips.cache_set_max(0)
            self._pyvips.cache_set_max_mem(0)
            self._pyvips.cache_set_max_files(0)

    def _load_page(self, data: bytes, page: int) -> Any:
        image = self._pyvips.Image.new_from_buffer(data, "", page=page, access="sequential")
        with contextlib.suppress(Exception):
            image = image.autorot()
        with contextlib.suppress(Exception):
            image = image.colourspace("srgb")
        if image.hasalpha():
            image = image.flatten(background=[255, 255, 255])
        return image

    def convert(self, data: bytes, *, to_type: str, quality: float) -> bytes | list[bytes]:
        suffix = self._SUFFIXES.get(to_type)
        if suffix is None:
            raise ValueError(f"unsupported output type {to_type}")
        q = max(1, min(100, int(round(quality * 100))))

        first = self._load_page(data, 0)
        pages = 1
        if "n-pages" in first.get_fields():
            pages = max(1, int(first.get("n-pages")))
        images = [first] + [self._load_page(data, i) for i in range(1, pages)]
        outputs = [bytes(img.write_to_buffer(suffix, Q=q)) for img in images]
        if any(not out for out in outputs):
            raise RuntimeError("libvips produced an empty image")
        return outputs[0] if len(outputs) == 1 else outputs


class CollectingNotifier(Notifier):
    """Keeps user-facing error banners so an HTTP response can report them."""

    def __init__(self) -> None:
        self.messages: list[str] = []

    def show_error(self, message: str) -> None:
        get_logger("page_agent").warning("banner: %s", message)
        self.messages.append(message)
