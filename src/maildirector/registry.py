"""Summary: Per-tenant repository bundles with TTL and size-bounded eviction.

Importance: Isolates tenant data stores and keeps only recently used tenants in memory.
Alternatives: Open storage per request without caching handles.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from maildirector.codec import PayloadCodec
from maildirector.config import AppConfig
from maildirector.errors import InvalidTenantError
from maildirector.models import (
    Account,
    Agent,
    ConversationThread,
    Director,
    Filter,
    Prompt,
    Settings,
    WorkspaceItem,
    descendant_closure,
)
from maildirector.storage.json_store import (
    JsonCollection,
    TenantRoot,
    retention_window,
    validate_uid,
)


logger = logging.getLogger(__name__)

LOG_COLLECTIONS = ("fetcher", "orchestration", "provider_events", "traces")


def _identity(entry: dict[str, Any]) -> dict[str, Any]:
    return entry


def retired_thread_cap(max_records: int) -> Callable[[list[ConversationThread]], list[ConversationThread]]:
    """Summary: Build a pruning function that drops the oldest retired conversation trees.

    Importance: Bounds retained history without removing threads that can still run.
    Alternatives: Keep the newest records regardless of status.
    """

    def retired(thread: ConversationThread) -> bool:
        return thread.finalized or thread.status == "failed"

    def prune(threads: list[ConversationThread]) -> list[ConversationThread]:
        if max_records <= 0 or len(threads) <= max_records:
            return threads
        ids = {thread.id for thread in threads}
        roots = [thread for thread in threads if thread.parent_id is None or thread.parent_id not in ids]
        excess = len(threads) - max_records
        dropped: set[str] = set()
        for root in sorted(roots, key=lambda thread: thread.started_at or ""):
            if excess <= 0:
                break
            tree = descendant_closure(threads, {root.id})
            # A tree goes only as a whole, and only once every member is done.
            if not all(retired(thread) for thread in threads if thread.id in tree):
                continue
            dropped |= tree
            excess -= len(tree)
        if not dropped:
            return threads
        return [thread for thread in threads if thread.id not in dropped]

    return prune


class TenantRepos:
    """Summary: The bundle of collections owned by one tenant.

    Importance: Every read and write for a tenant goes through this handle.
    Alternatives: Pass raw file paths to each service.
    """

    def __init__(
        self,
        root: TenantRoot,
        config: AppConfig,
        codec: PayloadCodec,
        lock_for: Callable[[str], asyncio.Lock] | None = None,
    ) -> None:
        root.ensure()
        self.root = root
        self.uid = root.uid
        max_bytes = config.max_file_size_mb * 1024 * 1024

        def collection(name: str, model: Any, prune: Callable | None = None) -> JsonCollection:
            return JsonCollection(
                root,
                name,
                decode=model.from_dict,
                encode=lambda item: item.to_dict(),
                codec=codec,
                max_bytes=max_bytes,
                prune=prune,
                lock=lock_for(name) if lock_for else None,
            )

        def log(name: str, timestamp_key: str) -> JsonCollection[dict[str, Any]]:
            return JsonCollection(
                root,
                f"logs/{name}.json",
                decode=_identity,
                encode=_identity,
                codec=codec,
                max_bytes=max_bytes,
                prune=retention_window(config.log_max_entries, config.log_ttl_days, timestamp_key),
                lock=lock_for(f"logs/{name}.json") if lock_for else None,
            )

        self.accounts: JsonCollection[Account] = collection("accounts.json", Account)
        self.settings: JsonCollection[Settings] = collection("settings.json", Settings)
        self.directors: JsonCollection[Director] = collection("directors.json", Director)
        self.agents: JsonCollection[Agent] = collection("agents.json", Agent)
        self.filters: JsonCollection[Filter] = collection("filters.json", Filter)
        self.prompts: JsonCollection[Prompt] = collection("prompts.json", Prompt)
        self.conversations: JsonCollection[ConversationThread] = collection(
            "conversations.json",
            ConversationThread,
            retired_thread_cap(config.max_conversations),
        )
        self.workspace_items: JsonCollection[WorkspaceItem] = collection(
            "workspace_items.json", WorkspaceItem
        )
        self.fetcher_log = log("fetcher", "timestamp")
        self.orchestration_log = log("orchestration", "timestamp")
        self.provider_events = log("provider_events", "timestamp")
        self.traces = log("traces", "created_at")

    def collection_paths(self) -> list[Path]:
        """Return every file path this handle can touch."""

        return [
            self.accounts.path,
            self.settings.path,
            self.directors.path,
            self.agents.path,
            self.filters.path,
            self.prompts.path,
            self.conversations.path,
            self.workspace_items.path,
            self.fetcher_log.path,
            self.orchestration_log.path,
            self.provider_events.path,
            self.traces.path,
        ]

    def log_collection(self, kind: str) -> JsonCollection[dict[str, Any]]:
        """Resolve a log collection by its short name."""

        collections = {
            "fetcher": self.fetcher_log,
            "orchestration": self.orchestration_log,
            "provider_events": self.provider_events,
            "traces": self.traces,
        }
        if kind not in collections:
            raise ValueError(f"Unknown log collection: {kind}")
        return collections[kind]

    async def load_settings(self) -> Settings:
        """Return the tenant settings document, or defaults when none is stored."""

        documents = await self.settings.all()
        return documents[0] if documents else Settings()

    async def save_settings(self, settings: Settings) -> None:
        """Replace the settings document."""

        await self.settings.replace([settings])


@dataclass
class RegistryEntry:
    """A cached tenant bundle and its last access time."""

    uid: str
    repos: TenantRepos
    last_accessed: float = field(default_factory=time.monotonic)


class RepositoryRegistry:
    """Summary: Owns tenant bundles with lazy creation and eviction.

    Importance: Bounds memory for many tenants while keeping hot tenants cached.
    Alternatives: Keep every tenant bundle for the life of the process.
    """

    def __init__(
        self,
        config: AppConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._clock = clock
        self._codec = PayloadCodec(config.storage_secret)
        self._base_dir = config.users_dir
        self._entries: dict[str, RegistryEntry] = {}
        self._listeners: list[Callable[[str], None]] = []
        self._sweeper: asyncio.Task | None = None
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def ttl_seconds(self) -> float:
        return max(0, self._config.registry_ttl_minutes) * 60

    def get_repos(self, uid: str) -> TenantRepos:
        """Summary: Return the tenant bundle for a uid, creating it on first use.

        Importance: Single entry point that validates uids and refreshes access times.
        Alternatives: Construct bundles in each request handler.
        """

        validate_uid(uid)
        self.evict_idle()
        entry = self._entries.get(uid)
        now = self._clock()
        if entry is not None:
            entry.last_accessed = now
            return entry.repos
        repos = TenantRepos(
            TenantRoot(self._base_dir, uid),
            self._config,
            self._codec,
            lock_for=lambda name: self._lock_for(uid, name),
        )
        self._entries[uid] = RegistryEntry(uid=uid, repos=repos, last_accessed=now)
        self._enforce_cap()
        logger.debug("Registered tenant bundle for %s.", uid)
        return repos

    def evict_idle(self) -> list[str]:
        """Summary: Drop idle entries, then oldest entries beyond the cap.

        Importance: Enforces the TTL and maximum-entry bounds together.
        Alternatives: Evict only on a timer.
        """

        evicted: list[str] = []
        ttl = self.ttl_seconds
        if ttl > 0:
            now = self._clock()
            for uid, entry in list(self._entries.items()):
                if now - entry.last_accessed > ttl:
                    evicted.append(self._evict(uid, "idle"))
        evicted.extend(self._enforce_cap())
        return evicted

    def remove(self, uid: str) -> bool:
        """Remove a tenant bundle explicitly."""

        if uid not in self._entries:
            return False
        self._evict(uid, "removed")
        return True

    def contains(self, uid: str) -> bool:
        return uid in self._entries

    def entries(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    def stats(self) -> dict[str, Any]:
        """Return registry size and access-time bounds."""

        if not self._entries:
            return {"total": 0, "oldest_access": None, "newest_access": None}
        times = [entry.last_accessed for entry in self._entries.values()]
        return {"total": len(times), "oldest_access": min(times), "newest_access": max(times)}

    def known_tenants(self) -> list[str]:
        """List uids that have a tenant root on disk."""

        if not self._base_dir.exists():
            return []
        uids: list[str] = []
        for child in sorted(self._base_dir.iterdir()):
            if child.is_dir() and not child.is_symlink():
                try:
                    uids.append(validate_uid(child.name))
                except InvalidTenantError:
                    logger.warning("Skipping unexpected tenant directory %s.", child.name)
        return uids

    def add_eviction_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with each evicted uid."""

        self._listeners.append(listener)

    def start_eviction_loop(self) -> None:
        """Start a background task that sweeps idle entries periodically."""

        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop_eviction_loop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self) -> None:
        interval = max(1, self._config.registry_sweep_seconds)
        while True:
            await asyncio.sleep(interval)
            evicted = self.evict_idle()
            if evicted:
                logger.info("Registry sweep evicted %s tenants.", len(evicted))

    def _lock_for(self, uid: str, name: str) -> asyncio.Lock:
        # Bundles recreated after eviction share locks with handles still in use.
        key = (uid, name)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _enforce_cap(self) -> list[str]:
        evicted: list[str] = []
        limit = max(0, self._config.registry_max_entries)
        while len(self._entries) > limit:
            oldest = min(self._entries.values(), key=lambda entry: entry.last_accessed)
            evicted.append(self._evict(oldest.uid, "capacity"))
        return evicted

    def _evict(self, uid: str, reason: str) -> str:
        del self._entries[uid]
        logger.info("Evicted tenant bundle %s (%s).", uid, reason)
        for listener in self._listeners:
            listener(uid)
        return uid
