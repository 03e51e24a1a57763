"""Named Cache Stores and the storage substrates that hold them.

A CacheStorage owns any number of named stores; each NamedCache maps a
normalized (method, url) key to a response snapshot. Per-key writes are
atomic and last-write-wins. Two substrates are provided:

- MemoryCacheStorage: plain dictionaries, for tests and ephemeral runs.
- SqliteCacheStorage: a single SQLite file shared by all named stores.
"""

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from .models import TYPE_OPAQUE, Request, Response

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]
FetchFn = Callable[[Request], Awaitable[Response]]


class StorageError(Exception):
    """Raised when the storage substrate fails."""

    pass


class CacheWriteError(Exception):
    """Raised when a request/response pair cannot be stored."""

    pass


def _check_storable(request: Request, response: Response) -> None:
    if request.method != "GET":
        raise CacheWriteError(f"Only GET requests can be stored (got {request.method} {request.url})")
    if response.type == TYPE_OPAQUE:
        raise CacheWriteError(f"Opaque response for {request.url} cannot be stored")
    if response.status == 206:
        raise CacheWriteError(f"Partial response for {request.url} cannot be stored")


class NamedCache:
    """A single named store of request -> response entries."""

    def __init__(self, storage: "CacheStorage", name: str) -> None:
        self._storage = storage
        self.name = name

    def __repr__(self) -> str:
        return f"NamedCache({self.name!r})"

    async def match(self, request: Request) -> Response | None:
        """Return the stored response for a request, or None."""
        if request.method != "GET":
            return None
        return await self._storage._call(self._storage._get_entry, self.name, request.key)

    async def put(self, request: Request, response: Response) -> None:
        """Store a copy of response under the request's key, replacing any previous entry.

        Raises:
            CacheWriteError: If the pair cannot be stored.
            StorageError: If the substrate fails.
        """
        _check_storable(request, response)
        await self._storage._call(self._storage._put_entries, self.name, [(request.key, response.clone())])

    async def add(self, request: Request, fetch: FetchFn) -> None:
        """Fetch a request and store the response.

        Raises:
            NetworkError: If the fetch fails.
            CacheWriteError: If the response is not a 2xx or cannot be stored.
        """
        response = await fetch(request)
        if not response.ok:
            raise CacheWriteError(f"Fetching {request.url} returned HTTP {response.status}")
        await self.put(request, response)

    async def add_all(self, requests: Iterable[Request], fetch: FetchFn) -> None:
        """Fetch every request and store all responses, or store nothing.

        All fetches run concurrently. If any one of them fails or returns a
        non-2xx status the store is left untouched and the first failure is
        raised.
        """
        requests = list(requests)
        results = await asyncio.gather(*(fetch(req) for req in requests), return_exceptions=True)

        entries: list[tuple[CacheKey, Response]] = []
        for request, result in zip(requests, results):
            if isinstance(result, BaseException):
                raise result
            if not result.ok:
                raise CacheWriteError(f"Fetching {request.url} returned HTTP {result.status}")
            _check_storable(request, result)
            entries.append((request.key, result.clone()))

        await self._storage._call(self._storage._put_entries, self.name, entries)

    async def delete(self, request: Request) -> bool:
        """Delete the entry for a request. Returns True if one existed."""
        return await self._storage._call(self._storage._delete_entry, self.name, request.key)

    async def keys(self) -> list[CacheKey]:
        """Return the keys of all stored entries."""
        return await self._storage._call(self._storage._list_entries, self.name)


class CacheStorage:
    """Base class for storage substrates.

    Subclasses implement the synchronous primitives; the public API is
    asynchronous so every store access is a suspension point for the caller.
    """

    # Run primitives in a worker thread instead of on the event loop.
    _offload = False

    async def _call(self, fn, *args):
        if self._offload:
            return await asyncio.to_thread(fn, *args)
        return fn(*args)

    async def open(self, name: str) -> NamedCache:
        """Open the named store, creating it if absent."""
        await self._call(self._create_cache, name)
        return NamedCache(self, name)

    async def has(self, name: str) -> bool:
        return name in await self._call(self._list_caches)

    async def delete(self, name: str) -> bool:
        """Delete a named store and all of its entries. Returns True if it existed."""
        return await self._call(self._drop_cache, name)

    async def keys(self) -> list[str]:
        """Return the names of all stores in creation order."""
        return await self._call(self._list_caches)

    def close(self) -> None:
        pass

    # Synchronous primitives

    def _list_caches(self) -> list[str]:
        raise NotImplementedError

    def _create_cache(self, name: str) -> None:
        raise NotImplementedError

    def _drop_cache(self, name: str) -> bool:
        raise NotImplementedError

    def _get_entry(self, name: str, key: CacheKey) -> Response | None:
        raise NotImplementedError

    def _put_entries(self, name: str, entries: list[tuple[CacheKey, Response]]) -> None:
        raise NotImplementedError

    def _delete_entry(self, name: str, key: CacheKey) -> bool:
        raise NotImplementedError

    def _list_entries(self, name: str) -> list[CacheKey]:
        raise NotImplementedError


class MemoryCacheStorage(CacheStorage):
    """In-process storage substrate backed by dictionaries."""

    def __init__(self) -> None:
        self._caches: dict[str, dict[CacheKey, Response]] = {}

    def _list_caches(self) -> list[str]:
        return list(self._caches)

    def _create_cache(self, name: str) -> None:
        self._caches.setdefault(name, {})

    def _drop_cache(self, name: str) -> bool:
        return self._caches.pop(name, None) is not None

    def _get_entry(self, name: str, key: CacheKey) -> Response | None:
        cached = self._caches.get(name, {}).get(key)
        return cached.clone() if cached is not None else None

    def _put_entries(self, name: str, entries: list[tuple[CacheKey, Response]]) -> None:
        if name not in self._caches:
            raise StorageError(f"Cache '{name}' does not exist")
        self._caches[name].update(entries)

    def _delete_entry(self, name: str, key: CacheKey) -> bool:
        return self._caches.get(name, {}).pop(key, None) is not None

    def _list_entries(self, name: str) -> list[CacheKey]:
        return list(self._caches.get(name, {}))


class SqliteCacheStorage(CacheStorage):
    """Storage substrate persisting all named stores in one SQLite file.

    A single connection is shared behind a lock; SQLite allows only one
    writer at a time, and INSERT OR REPLACE gives last-write-wins per key.
    """

    _offload = True

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = self._connect(db_path)

    @staticmethod
    def _connect(db_path: str) -> sqlite3.Connection:
        try:
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS caches (
                    name TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    cache_name TEXT NOT NULL,
                    method TEXT NOT NULL,
                    url TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    status_text TEXT NOT NULL,
                    headers TEXT NOT NULL,
                    body BLOB NOT NULL,
                    response_url TEXT NOT NULL,
                    response_type TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    PRIMARY KEY (cache_name, method, url)
                )
            """)
            conn.commit()
            return conn
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to open cache storage at {db_path}: {e}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _list_caches(self) -> list[str]:
        try:
            with self._lock:
                rows = self._conn.execute("SELECT name FROM caches ORDER BY created_at, rowid").fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list caches: {e}")
        return [row["name"] for row in rows]

    def _create_cache(self, name: str) -> None:
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                    (name, datetime.now(UTC).isoformat()),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create cache '{name}': {e}")

    def _drop_cache(self, name: str) -> bool:
        try:
            with self._lock:
                self._conn.execute("DELETE FROM entries WHERE cache_name = ?", (name,))
                cursor = self._conn.execute("DELETE FROM caches WHERE name = ?", (name,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete cache '{name}': {e}")
        return cursor.rowcount > 0

    def _get_entry(self, name: str, key: CacheKey) -> Response | None:
        method, url = key
        try:
            with self._lock:
                row = self._conn.execute(
                    """
                    SELECT status, status_text, headers, body, response_url, response_type
                    FROM entries WHERE cache_name = ? AND method = ? AND url = ?
                    """,
                    (name, method, url),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {url} from cache '{name}': {e}")

        if row is None:
            return None
        return Response(
            status=row["status"],
            status_text=row["status_text"],
            headers=json.loads(row["headers"]),
            body=bytes(row["body"]),
            url=row["response_url"],
            type=row["response_type"],
        )

    def _put_entries(self, name: str, entries: list[tuple[CacheKey, Response]]) -> None:
        stored_at = datetime.now(UTC).isoformat()
        rows = [
            (
                name,
                method,
                url,
                response.status,
                response.status_text,
                json.dumps(response.headers),
                response.body,
                response.url,
                response.type,
                stored_at,
            )
            for (method, url), response in entries
        ]
        try:
            with self._lock:
                exists = self._conn.execute("SELECT 1 FROM caches WHERE name = ?", (name,)).fetchone()
                if exists is None:
                    raise StorageError(f"Cache '{name}' does not exist")
                with self._conn:
                    self._conn.executemany(
                        """
                        INSERT OR REPLACE INTO entries (
                            cache_name, method, url, status, status_text, headers,
                            body, response_url, response_type, stored_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        rows,
                    )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write to cache '{name}': {e}")

    def _delete_entry(self, name: str, key: CacheKey) -> bool:
        method, url = key
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM entries WHERE cache_name = ? AND method = ? AND url = ?",
                    (name, method, url),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete {url} from cache '{name}': {e}")
        return cursor.rowcount > 0

    def _list_entries(self, name: str) -> list[CacheKey]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT method, url FROM entries WHERE cache_name = ? ORDER BY rowid",
                    (name,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list entries of cache '{name}': {e}")
        return [(row["method"], row["url"]) for row in rows]


def open_storage(backend: str, path: str | None = None) -> CacheStorage:
    """Create the storage substrate named by configuration."""
    if backend == "memory":
        return MemoryCacheStorage()
    if backend == "sqlite":
        if not path:
            raise StorageError("A database path is required for sqlite storage")
        logger.debug("Opening sqlite cache storage at %s", path)
        return SqliteCacheStorage(path)
    raise StorageError(f"Unknown storage backend: {backend}")
