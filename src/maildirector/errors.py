"""Summary: Error taxonomy shared by the engine and its surfaces.

Importance: Lets callers tell retryable conflicts from bad input and missing records.
Alternatives: Raise ValueError/KeyError everywhere and parse messages.
"""

from __future__ import annotations


class MailDirectorError(Exception):
    """Base class for every error the engine raises on purpose."""


class InvalidTenantError(MailDirectorError):
    """Raised when a uid fails the tenant format check."""

    def __init__(self, uid: object) -> None:
        super().__init__(f"Invalid tenant id: {uid!r}")
        self.uid = uid


class ValidationError(MailDirectorError):
    """Summary: Raised for bad input such as an invalid regex or unknown api config.

    Importance: Names the failing field so callers can correct and retry.
    Alternatives: Return error dictionaries from every service call.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConflictError(MailDirectorError):
    """Summary: Raised when an optimistic revision check fails.

    Importance: Carries both revisions so the caller can re-fetch and retry.
    Alternatives: Silently overwrite with last-writer-wins semantics.
    """

    def __init__(self, item_id: str, expected_revision: int | None, current_revision: int) -> None:
        super().__init__(
            f"Revision conflict on {item_id}: expected {expected_revision}, current {current_revision}"
        )
        self.item_id = item_id
        self.expected_revision = expected_revision
        self.current_revision = current_revision


class FinalizedError(MailDirectorError):
    """Raised when a finalized workspace receives a mutation."""

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Workspace {workspace_id} is finalized")
        self.workspace_id = workspace_id


class NotFoundError(MailDirectorError):
    """Raised for unknown ids."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class StorageError(MailDirectorError):
    """Raised when a tenant path is unsafe or a payload exceeds its size cap."""
