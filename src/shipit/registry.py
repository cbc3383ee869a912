from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol

import redis

from .models import JobRecord

DEFAULT_KEY_PREFIX = "shipit:"
# SCAN MATCH pattern characters
GLOB_CHARACTERS = frozenset("*?[]\\")


class RegistryUnavailable(RuntimeError):
    pass


class JobRegistry(Protocol):
    """Architecture -> in-flight job record. At most one record per architecture."""

    def try_create(self, arch: str, record: JobRecord) -> bool: ...

    def get(self, arch: str) -> JobRecord | None: ...

    def clear(self, arch: str) -> bool: ...

    def list_all(self) -> list[JobRecord]: ...

    def close(self) -> None: ...


def _decode(payload: str | bytes, source: str) -> JobRecord:
    try:
        return JobRecord.from_json(payload)
    except ValueError as exc:
        raise RegistryUnavailable(f"corrupt job record at {source}: {exc}") from exc


class RedisJobRegistry:
    """
    Job slots stored as one string key per architecture.

    The claim is a single ``SET key value NX``, so two enqueues racing for the
    same architecture cannot both succeed.
    """

    def __init__(self, redis_client: Any, *, prefix: str = DEFAULT_KEY_PREFIX) -> None:
        if GLOB_CHARACTERS.intersection(prefix):
            raise ValueError(f"registry prefix must not contain glob characters: {prefix!r}")
        self.redis = redis_client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = DEFAULT_KEY_PREFIX) -> RedisJobRegistry:
        client = redis.Redis.from_url(url, socket_connect_timeout=5, socket_timeout=5)
        return cls(client, prefix=prefix)

    def _key(self, arch: str) -> str:
        return f"{self.prefix}{arch}"

    def try_create(self, arch: str, record: JobRecord) -> bool:
        try:
            created = self.redis.set(self._key(arch), record.to_json(), nx=True)
        except redis.RedisError as exc:
            raise RegistryUnavailable(f"failed to claim {arch}: {exc}") from exc
        return bool(created)

    def get(self, arch: str) -> JobRecord | None:
        key = self._key(arch)
        try:
            payload = self.redis.get(key)
        except redis.RedisError as exc:
            raise RegistryUnavailable(f"failed to read {arch}: {exc}") from exc
        if payload is None:
            return None
        return _decode(payload, key)

    def clear(self, arch: str) -> bool:
        try:
            removed = self.redis.delete(self._key(arch))
        except redis.RedisError as exc:
            raise RegistryUnavailable(f"failed to clear {arch}: {exc}") from exc
        return int(removed or 0) > 0

    def list_all(self) -> list[JobRecord]:
        try:
            keys = list(self.redis.scan_iter(match=f"{self.prefix}*"))
            if not keys:
                return []
            payloads = self.redis.mget(keys)
        except redis.RedisError as exc:
            raise RegistryUnavailable(f"failed to list jobs: {exc}") from exc
        records: list[JobRecord] = []
        for key, payload in zip(keys, payloads):
            # cleared between SCAN and MGET
            if payload is None:
                continue
            records.append(_decode(payload, key.decode() if isinstance(key, bytes) else str(key)))
        return records

    def close(self) -> None:
        self.redis.close()


class SqliteJobRegistry:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self.lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        except sqlite3.Error as exc:
            raise RegistryUnavailable(f"failed to open {db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row

    def init_schema(self) -> None:
        with self.lock:
            try:
                self.conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS jobs (
                        arch TEXT PRIMARY KEY,
                        record_json TEXT NOT NULL
                    );
                    """
                )
                self.conn.commit()
            except sqlite3.Error as exc:
                raise RegistryUnavailable(f"failed to initialise schema: {exc}") from exc

    def _write(self, query: str, params: tuple[object, ...]) -> int:
        with self.lock:
            try:
                cursor = self.conn.execute(query, params)
                self.conn.commit()
            except sqlite3.Error as exc:
                raise RegistryUnavailable(f"job registry write failed: {exc}") from exc
            return cursor.rowcount

    def _read(self, query: str, params: tuple[object, ...] = ()) -> list[sqlite3.Row]:
        with self.lock:
            try:
                return self.conn.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise RegistryUnavailable(f"job registry read failed: {exc}") from exc

    def try_create(self, arch: str, record: JobRecord) -> bool:
        inserted = self._write(
            "INSERT OR IGNORE INTO jobs(arch, record_json) VALUES (?, ?)",
            (arch, record.to_json()),
        )
        return inserted > 0

    def get(self, arch: str) -> JobRecord | None:
        rows = self._read("SELECT record_json FROM jobs WHERE arch = ?", (arch,))
        if not rows:
            return None
        return _decode(rows[0]["record_json"], f"jobs[{arch}]")

    def clear(self, arch: str) -> bool:
        return self._write("DELETE FROM jobs WHERE arch = ?", (arch,)) > 0

    def list_all(self) -> list[JobRecord]:
        rows = self._read("SELECT arch, record_json FROM jobs")
        return [_decode(row["record_json"], f"jobs[{row['arch']}]") for row in rows]

    def close(self) -> None:
        with self.lock:
            self.conn.close()


def open_registry(url: str, *, prefix: str = DEFAULT_KEY_PREFIX) -> JobRegistry:
    if url.startswith("sqlite:///"):
        db_path = url[len("sqlite:///") :]
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        registry = SqliteJobRegistry(db_path)
        registry.init_schema()
        return registry
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisJobRegistry.from_url(url, prefix=prefix)
    raise ValueError(f"unsupported registry url: {url}")
