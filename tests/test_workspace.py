"""Summary: Tests for the revisioned workspace store.

Importance: Optimistic concurrency and finalization locks protect shared artifacts.
Alternatives: Test workspace behavior only through tool calls.
"""

from __future__ import annotations

import asyncio

import pytest

from maildirector.app import AppContext
from maildirector.errors import ConflictError, FinalizedError, NotFoundError, ValidationError
from maildirector.models import Provenance
from maildirector.registry import RepositoryRegistry
from maildirector.workspace import WorkspaceStore


async def _store(registry: RepositoryRegistry, make_thread, **fields) -> WorkspaceStore:
    await make_thread(registry, **fields)
    return WorkspaceStore(registry.get_repos("u1"))


async def test_add_and_update_bumps_revision(registry: RepositoryRegistry, make_thread) -> None:
    """Summary: Verify an item starts at revision 1 and a patch moves it to 2.

    Importance: Revisions are the basis of conflict detection.
    Alternatives: Use timestamps to detect concurrent edits.
    """

    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="draft", label="Reply", provenance=Provenance(by="user"))
    assert item.revision == 1
    updated = await store.update_item("t1", item.id, 1, {"data": "final", "tags": ["done"]})
    assert updated.revision == 2
    assert updated.data == "final"
    assert (await store.get_item("t1", item.id)).tags == ["done"]


async def test_stale_revision_conflicts(registry: RepositoryRegistry, make_thread) -> None:
    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="v1")
    await store.update_item("t1", item.id, 1, {"data": "v2"})
    with pytest.raises(ConflictError) as excinfo:
        await store.update_item("t1", item.id, 1, {"data": "v3"})
    assert excinfo.value.current_revision == 2
    assert excinfo.value.expected_revision == 1
    assert (await store.get_item("t1", item.id)).data == "v2"


async def test_concurrent_updates_at_same_revision(registry: RepositoryRegistry, make_thread) -> None:
    """Summary: Verify two writers racing on one revision produce one winner.

    Importance: The revision check must hold under interleaved writers, not only sequential ones.
    Alternatives: Serialize all workspace writes behind a request queue.
    """

    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="v1")
    results = await asyncio.gather(
        store.update_item("t1", item.id, 1, {"data": "left"}),
        store.update_item("t1", item.id, 1, {"data": "right"}),
        return_exceptions=True,
    )
    winners = [result for result in results if not isinstance(result, Exception)]
    conflicts = [result for result in results if isinstance(result, ConflictError)]
    assert len(winners) == 1
    assert len(conflicts) == 1
    assert winners[0].revision == 2
    assert conflicts[0].current_revision == 2
    assert (await store.get_item("t1", item.id)).data == winners[0].data


async def test_soft_delete_hides_item_and_blocks_updates(registry: RepositoryRegistry, make_thread) -> None:
    """Summary: Ensure soft deletes bump the revision and hide the item.

    Importance: Deleted artifacts stay auditable but out of the live list.
    Alternatives: Physically remove items on every delete.
    """

    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="v1")
    deleted = await store.delete_item("t1", item.id)
    assert deleted is not None
    assert deleted.deleted_at is not None
    assert deleted.revision == 2
    assert await store.list_items("t1") == []
    assert len(await store.list_items("t1", include_deleted=True)) == 1
    with pytest.raises(NotFoundError):
        await store.update_item("t1", item.id, 2, {"data": "v2"})


async def test_hard_delete_removes_record(registry: RepositoryRegistry, make_thread) -> None:
    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="v1")
    assert await store.delete_item("t1", item.id, hard=True) is None
    assert await store.list_items("t1", include_deleted=True) == []
    with pytest.raises(NotFoundError):
        await store.get_item("t1", item.id)


async def test_delete_checks_expected_revision(registry: RepositoryRegistry, make_thread) -> None:
    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="v1")
    with pytest.raises(ConflictError):
        await store.delete_item("t1", item.id, expected_revision=5)


async def test_finalized_workspace_rejects_mutations(registry: RepositoryRegistry, make_thread) -> None:
    """Summary: Verify a finalized conversation locks its workspace.

    Importance: Finalization is permanent for both transcript and artifacts.
    Alternatives: Allow user edits after finalization.
    """

    store = await _store(registry, make_thread, status="completed", finalized=True)
    with pytest.raises(FinalizedError):
        await store.add_item("t1", data="late")
    assert await store.list_items("t1") == []


async def test_unknown_workspace_is_not_found(registry: RepositoryRegistry, make_thread) -> None:
    store = await _store(registry, make_thread)
    with pytest.raises(NotFoundError):
        await store.add_item("missing", data="x")


async def test_patch_rejects_unknown_fields(registry: RepositoryRegistry, make_thread) -> None:
    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="v1")
    with pytest.raises(ValidationError) as excinfo:
        await store.update_item("t1", item.id, 1, {"revision": 9})
    assert excinfo.value.field == "revision"


async def test_base64_payload_is_validated(registry: RepositoryRegistry, make_thread) -> None:
    store = await _store(registry, make_thread)
    item = await store.add_item("t1", data="aGVsbG8=", encoding="base64", mime_type="text/plain")
    assert item.encoding == "base64"
    with pytest.raises(ValidationError):
        await store.add_item("t1", data="not base64!", encoding="base64")
    with pytest.raises(ValidationError):
        await store.add_item("t1", data="x", encoding="rot13")


async def test_update_queued_behind_finalize_is_rejected(
    context: AppContext, seed_tenant, make_thread
) -> None:
    """Summary: Ensure a write waiting on finalization sees the finalized owner.

    Importance: A finalized conversation accepts no workspace writes, even ones already in flight.
    Alternatives: Re-check the owner after every write and roll back.
    """

    await seed_tenant(context.registry)
    await make_thread(context.registry)
    repos = context.repos("u1")
    store = WorkspaceStore(repos)
    item = await store.add_item("t1", data="draft")

    await repos.conversations.lock.acquire()
    try:
        finalize = asyncio.create_task(context.orchestrator.finalize_thread("u1", "t1"))
        while not repos.workspace_items.lock.locked():
            await asyncio.sleep(0)
        update = asyncio.create_task(store.update_item("t1", item.id, 1, {"data": "after-finalize"}))
        await asyncio.sleep(0)
    finally:
        repos.conversations.lock.release()

    assert (await finalize).finalized
    with pytest.raises(FinalizedError):
        await update
    stored = await store.get_item("t1", item.id)
    assert stored.data == "draft"
    assert stored.revision == 1
