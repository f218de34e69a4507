"""Summary: File-backed JSON collections confined to a tenant root.

Importance: Provides per-user persistence with path confinement and atomic writes.
Alternatives: Use a shared SQLite database with a user_id column per table.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, TypeVar

from maildirector.codec import PayloadCodec
from maildirector.errors import InvalidTenantError, StorageError
from maildirector.models import parse_timestamp


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_UID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_uid(uid: object) -> str:
    """Summary: Check a tenant id against the allowed format.

    Importance: Rejects malformed ids before any path is built from them.
    Alternatives: Hash every uid into a directory name.
    """

    if not isinstance(uid, str) or not _UID_PATTERN.match(uid):
        raise InvalidTenantError(uid)
    return uid


class TenantRoot:
    """Summary: A tenant's on-disk root directory with confined path resolution.

    Importance: Guarantees that one tenant's handles never resolve into another tenant's data.
    Alternatives: Rely on operating-system users and permissions per tenant.
    """

    def __init__(self, base_dir: Path, uid: str) -> None:
        self.uid = validate_uid(uid)
        self._base = Path(os.path.abspath(base_dir))
        self.path = self._base / self.uid

    def ensure(self) -> None:
        """Create the root with owner-only permissions, refusing symlinked roots."""

        self._base.mkdir(parents=True, exist_ok=True)
        if self.path.is_symlink():
            raise StorageError(f"Tenant root for {self.uid} is a symlink")
        if not self.path.exists():
            self.path.mkdir(mode=0o700)
            os.chmod(self.path, 0o700)
        if not self.path.is_dir():
            raise StorageError(f"Tenant root for {self.uid} is not a directory")

    def resolve(self, relative: str) -> Path:
        """Summary: Resolve a collection path inside the tenant root.

        Importance: Blocks traversal, absolute paths, and symlinked components.
        Alternatives: Trust collection names because they are hardcoded.
        """

        candidate = Path(relative)
        if candidate.is_absolute() or ".." in candidate.parts or not candidate.parts:
            raise StorageError(f"Unsafe collection path: {relative}")
        target = self.path / candidate
        current = self.path
        if current.is_symlink():
            raise StorageError(f"Tenant root for {self.uid} is a symlink")
        for part in candidate.parts:
            current = current / part
            if current.is_symlink():
                raise StorageError(f"Refusing to follow symlink: {current}")
        real_root = os.path.realpath(self.path)
        real_target = os.path.realpath(target)
        if os.path.commonpath([real_root, real_target]) != real_root:
            raise StorageError(f"Path escapes tenant root: {relative}")
        return target


class JsonCollection(Generic[T]):
    """Summary: A JSON array persisted in a single tenant file.

    Importance: Backs every per-tenant collection with read, replace, and serialized mutation.
    Alternatives: Use one SQLite table per collection.
    """

    def __init__(
        self,
        root: TenantRoot,
        relative_path: str,
        decode: Callable[[dict[str, Any]], T],
        encode: Callable[[T], dict[str, Any]],
        codec: PayloadCodec,
        max_bytes: int,
        prune: Callable[[list[T]], list[T]] | None = None,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._root = root
        self.path = root.resolve(relative_path)
        self._decode = decode
        self._encode = encode
        self._codec = codec
        self._max_bytes = max_bytes
        self._prune = prune
        self._lock = lock or asyncio.Lock()

    async def all(self) -> list[T]:
        """Return every record in the collection."""

        return await asyncio.to_thread(self._read)

    async def replace(self, records: list[T]) -> None:
        """Replace the whole collection (last writer wins)."""

        async with self._lock:
            await asyncio.to_thread(self._write, records)

    @property
    def lock(self) -> asyncio.Lock:
        """The lock that serializes writes to this collection."""

        return self._lock

    async def mutate(
        self,
        change: Callable[[list[T]], R],
        guard: Callable[[], Awaitable[None]] | None = None,
    ) -> R:
        """Summary: Run a read-modify-write cycle under the collection lock.

        Importance: Keeps concurrent appends within a tenant from dropping each other.
        Alternatives: Use file locks and retry on contention.
        """

        async with self._lock:
            if guard is not None:
                await guard()
            records = await asyncio.to_thread(self._read)
            result = change(records)
            await asyncio.to_thread(self._write, records)
            return result

    def _read(self) -> list[T]:
        path = self._root.resolve(self._relative())
        if not path.exists():
            return []
        if path.stat().st_size > self._max_bytes:
            raise StorageError(f"{path.name} exceeds the size limit")
        payload = self._codec.decode(path.read_text(encoding="utf-8"))
        raw = json.loads(payload) if payload.strip() else []
        records = [self._decode(item) for item in raw]
        return self._prune(records) if self._prune else records

    def _write(self, records: list[T]) -> None:
        if self._prune:
            records[:] = self._prune(records)
        path = self._root.resolve(self._relative())
        content = self._codec.encode(json.dumps([self._encode(item) for item in records]))
        if len(content.encode("utf-8")) > self._max_bytes:
            raise StorageError(f"{path.name} would exceed the size limit")
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _relative(self) -> str:
        return str(self.path.relative_to(self._root.path))


def retention_window(max_entries: int, ttl_days: int, timestamp_key: str) -> Callable[[list[dict[str, Any]]], list[dict[str, Any]]]:
    """Summary: Build a pruning function for append-only log collections.

    Importance: Drops log entries older than the TTL and keeps only the newest entries.
    Alternatives: Rotate log files on a schedule.
    """

    def prune(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        kept = entries
        if ttl_days > 0:
            cutoff = datetime.now(timezone.utc) - timedelta(days=ttl_days)
            kept = [
                entry
                for entry in kept
                if (stamp := parse_timestamp(entry.get(timestamp_key))) is None or stamp >= cutoff
            ]
        if max_entries > 0 and len(kept) > max_entries:
            kept = kept[-max_entries:]
        return kept

    return prune
