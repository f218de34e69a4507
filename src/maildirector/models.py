"""Summary: Domain model dataclasses for MailDirector.

Importance: Defines the core entities shared across services and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
import uuid


FILTER_FIELDS = ("from", "to", "cc", "bcc", "subject", "body", "date")
THREAD_KINDS = ("director", "agent")
THREAD_STATUSES = ("ongoing", "completed", "failed")
WORKSPACE_ENCODINGS = ("utf8", "base64", "binary")
ACCOUNT_PROVIDERS = ("gmail", "outlook", "mock")


def new_id() -> str:
    """Return a random identifier for persisted records."""

    return uuid.uuid4().hex


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""

    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO timestamp, returning None for missing or malformed values."""

    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class AccountTokens:
    """OAuth credentials attached to a connected mailbox."""

    access_token: str = ""
    refresh_token: str = ""
    expiry: str = ""


@dataclass(frozen=True)
class Account:
    """Summary: Represents a connected mailbox owned by one tenant.

    Importance: Drives which providers the fetch loop polls.
    Alternatives: Store raw provider credentials without a typed wrapper.
    """

    id: str
    provider: str
    email: str
    tokens: AccountTokens = field(default_factory=AccountTokens)
    signature: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Account":
        tokens = data.get("tokens") or {}
        return Account(
            id=data["id"],
            provider=data.get("provider", "mock"),
            email=data.get("email", ""),
            tokens=AccountTokens(
                access_token=tokens.get("access_token", ""),
                refresh_token=tokens.get("refresh_token", ""),
                expiry=tokens.get("expiry", ""),
            ),
            signature=data.get("signature", ""),
        )


@dataclass(frozen=True)
class ApiConfig:
    """Summary: Language-model endpoint configuration referenced by directors and agents.

    Importance: Lets each role target its own model and credentials.
    Alternatives: Use a single global model configuration.
    """

    id: str
    name: str = ""
    provider: str = "openai"
    model: str = ""
    api_key: str = ""
    base_url: str = ""
    max_completion_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ApiConfig":
        return ApiConfig(
            id=data["id"],
            name=data.get("name", ""),
            provider=data.get("provider", "openai"),
            model=data.get("model", ""),
            api_key=data.get("api_key", ""),
            base_url=data.get("base_url", ""),
            max_completion_tokens=data.get("max_completion_tokens"),
        )


@dataclass(frozen=True)
class Settings:
    """Summary: Per-tenant settings document.

    Importance: Holds api configs and fetch-loop preferences for one user.
    Alternatives: Spread settings across several collections.
    """

    api_configs: list[ApiConfig] = field(default_factory=list)
    fetcher_auto_start: bool = False
    fetcher_interval_minutes: float | None = None
    session_timeout_minutes: int = 60

    def api_config(self, api_config_id: str | None) -> ApiConfig | None:
        """Resolve an api config by id."""

        if not api_config_id:
            return None
        return next((item for item in self.api_configs if item.id == api_config_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_configs": [item.to_dict() for item in self.api_configs],
            "fetcher_auto_start": self.fetcher_auto_start,
            "fetcher_interval_minutes": self.fetcher_interval_minutes,
            "session_timeout_minutes": self.session_timeout_minutes,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Settings":
        return Settings(
            api_configs=[ApiConfig.from_dict(item) for item in data.get("api_configs", [])],
            fetcher_auto_start=bool(data.get("fetcher_auto_start", False)),
            fetcher_interval_minutes=data.get("fetcher_interval_minutes"),
            session_timeout_minutes=int(data.get("session_timeout_minutes", 60)),
        )


@dataclass(frozen=True)
class Filter:
    """Summary: Routes matching email to a director.

    Importance: Filters decide which messages start conversations.
    Alternatives: Route every message to a single default director.
    """

    id: str
    field: str
    regex: str
    director_id: str
    duplicate_allowed: bool = False
    order: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Filter":
        return Filter(
            id=data["id"],
            field=data["field"],
            regex=data["regex"],
            director_id=data["director_id"],
            duplicate_allowed=bool(data.get("duplicate_allowed", False)),
            order=int(data.get("order", 0)),
        )


@dataclass(frozen=True)
class Director:
    """A role that owns top-level conversation threads."""

    id: str
    name: str
    prompt_id: str | None = None
    api_config_id: str | None = None
    agent_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Director":
        return Director(
            id=data["id"],
            name=data.get("name", ""),
            prompt_id=data.get("prompt_id"),
            api_config_id=data.get("api_config_id"),
            agent_ids=list(data.get("agent_ids", [])),
        )


@dataclass(frozen=True)
class Agent:
    """A role a director invokes for a bounded sub-task."""

    id: str
    name: str
    prompt_id: str | None = None
    api_config_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Agent":
        return Agent(
            id=data["id"],
            name=data.get("name", ""),
            prompt_id=data.get("prompt_id"),
            api_config_id=data.get("api_config_id"),
        )


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the language model."""

    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ChatMessage:
    """Summary: One entry in a conversation transcript.

    Importance: Mirrors the chat-completion message shape sent to providers.
    Alternatives: Store transcripts as raw provider payloads.
    """

    role: str
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [asdict(call) for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ChatMessage":
        return ChatMessage(
            role=data["role"],
            content=data.get("content"),
            tool_calls=[
                ToolCall(id=call["id"], name=call["name"], arguments=call.get("arguments") or "{}")
                for call in data.get("tool_calls") or []
            ],
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class Prompt:
    """Seed messages for a director or agent."""

    id: str
    name: str
    messages: list[ChatMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "messages": [message.to_dict() for message in self.messages],
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Prompt":
        return Prompt(
            id=data["id"],
            name=data.get("name", ""),
            messages=[ChatMessage.from_dict(item) for item in data.get("messages", [])],
        )


@dataclass(frozen=True)
class EmailEnvelope:
    """Summary: A fetched email as delivered by a mail provider.

    Importance: Core unit the filter engine and email processor operate on.
    Alternatives: Pass provider payloads through unchanged.
    """

    id: str
    subject: str = ""
    sender: str = ""
    to: str = ""
    cc: str = ""
    bcc: str = ""
    date: str = ""
    snippet: str = ""
    body_plain: str = ""
    body_html: str = ""
    attachments: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["from"] = data.pop("sender")
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "EmailEnvelope":
        return EmailEnvelope(
            id=str(data["id"]),
            subject=data.get("subject", "") or "",
            sender=data.get("from", data.get("sender", "")) or "",
            to=data.get("to", "") or "",
            cc=data.get("cc", "") or "",
            bcc=data.get("bcc", "") or "",
            date=data.get("date", "") or "",
            snippet=data.get("snippet", "") or "",
            body_plain=data.get("body_plain", "") or "",
            body_html=data.get("body_html", "") or "",
            attachments=list(data.get("attachments") or []),
        )


@dataclass(frozen=True)
class ConversationThread:
    """Summary: A director or agent conversation and its lifecycle state.

    Importance: The unit the orchestrator advances step by step.
    Alternatives: Keep transcripts only in provider logs.
    """

    id: str
    kind: str
    director_id: str
    status: str = "ongoing"
    finalized: bool = False
    messages: list[ChatMessage] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now)
    last_active_at: str = field(default_factory=utc_now)
    agent_id: str | None = None
    parent_id: str | None = None
    trace_id: str | None = None
    prompt_id: str | None = None
    api_config_id: str | None = None
    ended_at: str | None = None
    email: EmailEnvelope | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        """True while the thread can still accept a step."""

        return self.status == "ongoing" and not self.finalized

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "director_id": self.director_id,
            "agent_id": self.agent_id,
            "parent_id": self.parent_id,
            "trace_id": self.trace_id,
            "prompt_id": self.prompt_id,
            "api_config_id": self.api_config_id,
            "status": self.status,
            "finalized": self.finalized,
            "messages": [message.to_dict() for message in self.messages],
            "started_at": self.started_at,
            "last_active_at": self.last_active_at,
            "ended_at": self.ended_at,
            "email": self.email.to_dict() if self.email else None,
            "errors": list(self.errors),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ConversationThread":
        """Summary: Load a thread record, normalizing legacy finalized status.

        Importance: Keeps a single canonical boolean for finalization at runtime.
        Alternatives: Check both representations wherever finalization matters.
        """

        status = data.get("status", "ongoing")
        finalized = bool(data.get("finalized", False))
        if status == "finalized":
            status = "completed"
            finalized = True
        email = data.get("email")
        return ConversationThread(
            id=data["id"],
            kind=data.get("kind", "director"),
            director_id=data.get("director_id", ""),
            agent_id=data.get("agent_id"),
            parent_id=data.get("parent_id"),
            trace_id=data.get("trace_id"),
            prompt_id=data.get("prompt_id"),
            api_config_id=data.get("api_config_id"),
            status=status,
            finalized=finalized,
            messages=[ChatMessage.from_dict(item) for item in data.get("messages", [])],
            started_at=data.get("started_at") or utc_now(),
            last_active_at=data.get("last_active_at") or utc_now(),
            ended_at=data.get("ended_at"),
            email=EmailEnvelope.from_dict(email) if email else None,
            errors=list(data.get("errors", [])),
        )


@dataclass(frozen=True)
class Provenance:
    """Who produced a workspace item."""

    by: str = "director"
    agent_id: str | None = None
    tool: str | None = None


@dataclass(frozen=True)
class WorkspaceItem:
    """Summary: A revisioned artifact attached to a director conversation.

    Importance: Lets directors, agents, and users share intermediate results.
    Alternatives: Embed artifacts inside conversation messages.
    """

    id: str
    workspace_id: str
    revision: int = 1
    label: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    mime_type: str | None = None
    encoding: str = "utf8"
    data: str = ""
    provenance: Provenance = field(default_factory=Provenance)
    created: str = field(default_factory=utc_now)
    updated: str = field(default_factory=utc_now)
    deleted_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "WorkspaceItem":
        provenance = data.get("provenance") or {}
        return WorkspaceItem(
            id=data["id"],
            workspace_id=data["workspace_id"],
            revision=int(data.get("revision") or 1),
            label=data.get("label"),
            description=data.get("description"),
            tags=list(data.get("tags") or []),
            mime_type=data.get("mime_type"),
            encoding=data.get("encoding") or "utf8",
            data=data.get("data") or "",
            provenance=Provenance(
                by=provenance.get("by", "director"),
                agent_id=provenance.get("agent_id"),
                tool=provenance.get("tool"),
            ),
            created=data.get("created") or utc_now(),
            updated=data.get("updated") or utc_now(),
            deleted_at=data.get("deleted_at"),
        )


@dataclass(frozen=True)
class FetcherState:
    """In-memory status snapshot of one tenant's fetch loop."""

    active: bool
    running: bool
    last_run: str | None
    next_run: str | None
    account_count: int
    account_status: dict[str, dict[str, str | None]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CleanupStats:
    """Derived record counts per purgeable collection."""

    fetcher_logs: int
    orchestration_logs: int
    conversations: int
    workspace_items: int
    provider_events: int
    traces: int

    @property
    def total(self) -> int:
        return (
            self.fetcher_logs
            + self.orchestration_logs
            + self.conversations
            + self.workspace_items
            + self.provider_events
            + self.traces
        )

    def to_dict(self) -> dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data


def descendant_closure(threads: list[ConversationThread], roots: set[str]) -> set[str]:
    """Return the ids of the given threads plus every transitive child."""

    closure = {thread.id for thread in threads if thread.id in roots}
    grew = True
    while grew:
        grew = False
        for thread in threads:
            if thread.parent_id in closure and thread.id not in closure:
                closure.add(thread.id)
                grew = True
    return closure
