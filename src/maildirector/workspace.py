"""Summary: Revisioned artifact store scoped to director conversations.

Importance: Lets directors, agents, and users share intermediate results safely.
Alternatives: Embed artifacts directly in conversation messages.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import replace
from typing import Any

from maildirector.errors import ConflictError, FinalizedError, NotFoundError, ValidationError
from maildirector.models import WORKSPACE_ENCODINGS, Provenance, WorkspaceItem, new_id, utc_now
from maildirector.registry import TenantRepos


logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = ("label", "description", "tags", "mime_type", "encoding", "data")


class WorkspaceStore:
    """Summary: CRUD over workspace items with optimistic concurrency.

    Importance: Concurrent writers never silently overwrite each other.
    Alternatives: Use last-writer-wins full replacement like other collections.
    """

    def __init__(self, repos: TenantRepos) -> None:
        self._repos = repos

    async def add_item(
        self,
        workspace_id: str,
        data: str = "",
        label: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
        mime_type: str | None = None,
        encoding: str = "utf8",
        provenance: Provenance | None = None,
    ) -> WorkspaceItem:
        """Summary: Create an item at revision 1.

        Importance: Entry point for director and agent tool calls that produce artifacts.
        Alternatives: Let callers choose their own ids and revisions.
        """

        _validate_payload(encoding, data)
        now = utc_now()
        item = WorkspaceItem(
            id=new_id(),
            workspace_id=workspace_id,
            revision=1,
            label=label,
            description=description,
            tags=list(tags or []),
            mime_type=mime_type,
            encoding=encoding,
            data=data,
            provenance=provenance or Provenance(),
            created=now,
            updated=now,
        )
        await self._repos.workspace_items.mutate(
            lambda items: items.append(item), guard=lambda: self._ensure_writable(workspace_id)
        )
        logger.info("Added workspace item %s to %s.", item.id, workspace_id)
        return item

    async def get_item(self, workspace_id: str, item_id: str) -> WorkspaceItem:
        items = await self._repos.workspace_items.all()
        return _find(items, workspace_id, item_id)

    async def list_items(self, workspace_id: str, include_deleted: bool = False) -> list[WorkspaceItem]:
        items = await self._repos.workspace_items.all()
        return [
            item
            for item in items
            if item.workspace_id == workspace_id and (include_deleted or item.deleted_at is None)
        ]

    async def update_item(
        self,
        workspace_id: str,
        item_id: str,
        expected_revision: int,
        patch: dict[str, Any],
    ) -> WorkspaceItem:
        """Summary: Apply a patch when the caller's revision is current.

        Importance: Implements the optimistic revision check.
        Alternatives: Merge concurrent patches field by field.
        """

        unknown = sorted(set(patch) - set(PATCHABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown workspace fields: {', '.join(unknown)}", field=unknown[0])

        def change(items: list[WorkspaceItem]) -> WorkspaceItem:
            index, current = _locate(items, workspace_id, item_id)
            if current.deleted_at is not None:
                raise NotFoundError("workspace item", item_id)
            if current.revision != expected_revision:
                raise ConflictError(item_id, expected_revision, current.revision)
            updated = replace(current, **patch, revision=current.revision + 1, updated=utc_now())
            _validate_payload(updated.encoding, updated.data)
            items[index] = updated
            return updated

        return await self._repos.workspace_items.mutate(
            change, guard=lambda: self._ensure_writable(workspace_id)
        )

    async def delete_item(
        self,
        workspace_id: str,
        item_id: str,
        hard: bool = False,
        expected_revision: int | None = None,
    ) -> WorkspaceItem | None:
        """Summary: Soft-delete (default) or hard-delete an item.

        Importance: Soft deletes keep history visible while bumping the revision.
        Alternatives: Always remove records physically.
        """

        def change(items: list[WorkspaceItem]) -> WorkspaceItem | None:
            index, current = _locate(items, workspace_id, item_id)
            if expected_revision is not None and current.revision != expected_revision:
                raise ConflictError(item_id, expected_revision, current.revision)
            if hard:
                del items[index]
                return None
            if current.deleted_at is not None:
                return current
            now = utc_now()
            deleted = replace(current, deleted_at=now, updated=now, revision=current.revision + 1)
            items[index] = deleted
            return deleted

        result = await self._repos.workspace_items.mutate(
            change, guard=lambda: self._ensure_writable(workspace_id)
        )
        logger.info("Deleted workspace item %s (%s).", item_id, "hard" if hard else "soft")
        return result

    async def _ensure_writable(self, workspace_id: str) -> None:
        """Reject writes to missing or finalized workspaces; runs under the workspace-items lock."""

        threads = await self._repos.conversations.all()
        owner = next((thread for thread in threads if thread.id == workspace_id), None)
        if owner is None:
            raise NotFoundError("workspace", workspace_id)
        if owner.finalized:
            raise FinalizedError(workspace_id)


def _locate(items: list[WorkspaceItem], workspace_id: str, item_id: str) -> tuple[int, WorkspaceItem]:
    for index, item in enumerate(items):
        if item.id == item_id and item.workspace_id == workspace_id:
            return index, item
    raise NotFoundError("workspace item", item_id)


def _find(items: list[WorkspaceItem], workspace_id: str, item_id: str) -> WorkspaceItem:
    return _locate(items, workspace_id, item_id)[1]


def _validate_payload(encoding: str, data: str) -> None:
    if encoding not in WORKSPACE_ENCODINGS:
        raise ValidationError(f"Unsupported encoding: {encoding}", field="encoding")
    if not isinstance(data, str):
        raise ValidationError("Workspace data must be a string", field="data")
    if encoding == "base64":
        try:
            base64.b64decode(data.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ValidationError("Workspace data is not valid base64", field="data") from exc
