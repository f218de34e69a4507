"""Summary: Bulk and selective purge across a tenant's collections.

Importance: Lets users reclaim storage and remove conversations with their artifacts.
Alternatives: Rely on retention caps alone.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from maildirector.errors import ValidationError
from maildirector.models import CleanupStats, ConversationThread, WorkspaceItem, descendant_closure
from maildirector.registry import LOG_COLLECTIONS, RepositoryRegistry, TenantRepos


logger = logging.getLogger(__name__)

PURGE_KINDS = ("conversations", "workspace_items", *LOG_COLLECTIONS)


class CleanupService:
    """Summary: Counts and removes records per tenant.

    Importance: Cascading deletes never leave child agent threads behind.
    Alternatives: Delete records one at a time from the API layer.
    """

    def __init__(self, registry: RepositoryRegistry) -> None:
        self._registry = registry

    async def stats(self, uid: str) -> CleanupStats:
        repos = self._registry.get_repos(uid)
        return CleanupStats(
            fetcher_logs=len(await repos.fetcher_log.all()),
            orchestration_logs=len(await repos.orchestration_log.all()),
            conversations=len(await repos.conversations.all()),
            workspace_items=len(await repos.workspace_items.all()),
            provider_events=len(await repos.provider_events.all()),
            traces=len(await repos.traces.all()),
        )

    async def purge(self, uid: str, kind: str) -> int:
        """Remove every record of one kind and return how many were removed."""

        repos = self._registry.get_repos(uid)
        collection = _collection(repos, kind)

        def change(records: list[Any]) -> int:
            count = len(records)
            records.clear()
            return count

        removed = await collection.mutate(change)
        logger.info("Purged %s %s records for %s.", removed, kind, uid)
        return removed

    async def purge_all(self, uid: str) -> CleanupStats:
        """Purge every collection and return the removed counts."""

        removed = {kind: await self.purge(uid, kind) for kind in PURGE_KINDS}
        return CleanupStats(
            fetcher_logs=removed["fetcher"],
            orchestration_logs=removed["orchestration"],
            conversations=removed["conversations"],
            workspace_items=removed["workspace_items"],
            provider_events=removed["provider_events"],
            traces=removed["traces"],
        )

    async def remove_conversations(self, uid: str, ids: Iterable[str]) -> dict[str, int]:
        """Summary: Remove threads, their descendants, and their workspaces.

        Importance: The closure is computed first and applied in a single write.
        Alternatives: Delete recursively with one write per thread.
        """

        repos = self._registry.get_repos(uid)
        requested = set(ids)
        removed_directors: set[str] = set()

        def change(threads: list[ConversationThread]) -> int:
            closure = descendant_closure(threads, requested)
            removed_directors.update(
                thread.id for thread in threads if thread.id in closure and thread.kind == "director"
            )
            kept = [thread for thread in threads if thread.id not in closure]
            removed = len(threads) - len(kept)
            threads[:] = kept
            return removed

        conversations = await repos.conversations.mutate(change)
        items = 0
        if removed_directors:

            def drop_items(records: list[WorkspaceItem]) -> int:
                kept = [item for item in records if item.workspace_id not in removed_directors]
                count = len(records) - len(kept)
                records[:] = kept
                return count

            items = await repos.workspace_items.mutate(drop_items)
        logger.info("Removed %s conversations and %s workspace items for %s.", conversations, items, uid)
        return {"conversations": conversations, "workspace_items": items}

    async def remove_workspace_items(self, uid: str, ids: Iterable[str]) -> int:
        repos = self._registry.get_repos(uid)
        return await repos.workspace_items.mutate(_drop_ids(set(ids)))

    async def remove_log_entries(self, uid: str, kind: str, ids: Iterable[str]) -> int:
        if kind not in LOG_COLLECTIONS:
            raise ValidationError(f"Unknown log kind: {kind}", field="kind")
        repos = self._registry.get_repos(uid)
        return await repos.log_collection(kind).mutate(_drop_ids(set(ids)))


def _drop_ids(ids: set[str]):
    def change(records: list[Any]) -> int:
        kept = [record for record in records if _record_id(record) not in ids]
        count = len(records) - len(kept)
        records[:] = kept
        return count

    return change


def _record_id(record: Any) -> str | None:
    return record.get("id") if isinstance(record, dict) else getattr(record, "id", None)


def _collection(repos: TenantRepos, kind: str):
    if kind == "conversations":
        return repos.conversations
    if kind == "workspace_items":
        return repos.workspace_items
    if kind in LOG_COLLECTIONS:
        return repos.log_collection(kind)
    raise ValidationError(f"Unknown purge kind: {kind}", field="kind")
