"""Summary: Tests for tenant-confined JSON persistence.

Importance: Validates isolation, permissions, size caps, and atomic mutation.
Alternatives: Rely on higher-level tests to catch storage defects.
"""

from __future__ import annotations

import asyncio
import os
import stat
from pathlib import Path

import pytest

from maildirector.errors import InvalidTenantError, StorageError
from maildirector.models import Filter
from maildirector.registry import RepositoryRegistry
from maildirector.storage.json_store import TenantRoot, retention_window, validate_uid

from conftest import build_config


@pytest.mark.parametrize("uid", ["", "../etc", "a/b", "x" * 65, "name with space", None])
def test_validate_uid_rejects_bad_ids(uid: object) -> None:
    with pytest.raises(InvalidTenantError):
        validate_uid(uid)


def test_validate_uid_accepts_simple_ids() -> None:
    assert validate_uid("user_01-A") == "user_01-A"


async def test_tenant_paths_are_disjoint(registry: RepositoryRegistry) -> None:
    """Summary: Verify two tenants never share a collection path.

    Importance: Core isolation guarantee of the persistence layer.
    Alternatives: Trust the uid prefix in each path.
    """

    first = set(registry.get_repos("alice").collection_paths())
    second = set(registry.get_repos("bob").collection_paths())
    assert first.isdisjoint(second)
    assert all("alice" in path.parts for path in first)


async def test_root_and_files_are_owner_only(registry: RepositoryRegistry) -> None:
    repos = registry.get_repos("alice")
    await repos.filters.replace([Filter(id="f1", field="subject", regex="x", director_id="d1")])
    assert stat.S_IMODE(os.stat(repos.root.path).st_mode) == 0o700
    assert stat.S_IMODE(os.stat(repos.filters.path).st_mode) == 0o600


def test_resolve_blocks_traversal(tmp_path: Path) -> None:
    root = TenantRoot(tmp_path, "alice")
    root.ensure()
    for relative in ("../bob/filters.json", "/etc/passwd", ""):
        with pytest.raises(StorageError):
            root.resolve(relative)


def test_resolve_refuses_symlinked_component(tmp_path: Path) -> None:
    """Summary: Ensure a symlink inside the tenant root is not followed.

    Importance: A planted link must not redirect writes into another tenant.
    Alternatives: Resolve real paths only at write time.
    """

    other = TenantRoot(tmp_path, "bob")
    other.ensure()
    root = TenantRoot(tmp_path, "alice")
    root.ensure()
    (root.path / "logs").symlink_to(other.path, target_is_directory=True)
    with pytest.raises(StorageError):
        root.resolve("logs/fetcher.json")


def test_symlinked_tenant_root_is_refused(tmp_path: Path) -> None:
    real = tmp_path / "real"
    real.mkdir()
    (tmp_path / "alice").symlink_to(real, target_is_directory=True)
    with pytest.raises(StorageError):
        TenantRoot(tmp_path, "alice").ensure()


async def test_mutate_serializes_concurrent_appends(registry: RepositoryRegistry) -> None:
    """Summary: Verify concurrent appends within a tenant are not lost.

    Importance: Log writers and thread creation append from many tasks.
    Alternatives: Accept occasional lost writes.
    """

    repos = registry.get_repos("alice")
    await asyncio.gather(
        *(
            repos.fetcher_log.mutate(lambda entries, n=n: entries.append({"id": str(n), "timestamp": None}))
            for n in range(20)
        )
    )
    assert len(await repos.fetcher_log.all()) == 20


async def test_failed_mutation_writes_nothing(registry: RepositoryRegistry) -> None:
    repos = registry.get_repos("alice")
    await repos.filters.replace([Filter(id="f1", field="subject", regex="x", director_id="d1")])

    def change(filters: list[Filter]) -> None:
        filters.clear()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await repos.filters.mutate(change)
    assert [item.id for item in await repos.filters.all()] == ["f1"]


async def test_encoded_files_are_not_plaintext(tmp_path: Path) -> None:
    registry = RepositoryRegistry(build_config(tmp_path, storage_secret="s3cret"))
    repos = registry.get_repos("alice")
    await repos.filters.replace([Filter(id="f1", field="subject", regex="Invoice", director_id="d1")])
    raw = repos.filters.path.read_text(encoding="utf-8")
    assert raw.startswith("mdx1:")
    assert "Invoice" not in raw
    assert (await repos.filters.all())[0].regex == "Invoice"


async def test_size_cap_rejects_oversized_files(tmp_path: Path) -> None:
    """Summary: Ensure oversized collection files are refused on read.

    Importance: Keeps a corrupt or hostile file from exhausting memory.
    Alternatives: Stream-parse arbitrarily large files.
    """

    registry = RepositoryRegistry(build_config(tmp_path, max_file_size_mb=0))
    repos = registry.get_repos("alice")
    with pytest.raises(StorageError):
        await repos.filters.replace([Filter(id="f1", field="subject", regex="x", director_id="d1")])
    repos.filters.path.write_text("[]", encoding="utf-8")
    with pytest.raises(StorageError):
        await repos.filters.all()


def test_retention_window_drops_old_and_excess_entries() -> None:
    entries = [
        {"id": "old", "timestamp": "2000-01-01T00:00:00+00:00"},
        {"id": "a", "timestamp": None},
        {"id": "b", "timestamp": None},
        {"id": "c", "timestamp": None},
    ]
    kept = retention_window(2, 7, "timestamp")(entries)
    assert [item["id"] for item in kept] == ["b", "c"]
