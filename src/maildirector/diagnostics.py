"""Summary: Per-tenant diagnostic log writers.

Importance: Records fetch, orchestration, provider, and trace events for one user.
Alternatives: Send every event to a shared process log only.
"""

from __future__ import annotations

import logging
from typing import Any

from maildirector.errors import StorageError
from maildirector.models import new_id, utc_now
from maildirector.registry import TenantRepos


logger = logging.getLogger(__name__)


class DiagnosticsLog:
    """Summary: Appends structured entries to a tenant's log collections.

    Importance: Keeps failures visible to the tenant without raising into callers.
    Alternatives: Write directly to the collections from each service.
    """

    def __init__(self, repos: TenantRepos) -> None:
        self._repos = repos

    async def fetcher(self, level: str, event: str, message: str, **extra: Any) -> dict[str, Any]:
        entry = {
            "id": new_id(),
            "timestamp": utc_now(),
            "level": level,
            "event": event,
            "message": message,
            **{key: value for key, value in extra.items() if value is not None},
        }
        log = logger.error if level == "error" else logger.info
        log("[%s] %s: %s", self._repos.uid, event, message)
        await self._append(self._repos.fetcher_log, entry)
        return entry

    async def orchestration(
        self,
        phase: str,
        director_id: str,
        thread_id: str,
        trace_id: str | None,
        agent_id: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        entry = {
            "id": new_id(),
            "timestamp": utc_now(),
            "phase": phase,
            "director_id": director_id,
            "agent_id": agent_id,
            "thread_id": thread_id,
            "trace_id": trace_id,
            "detail": detail or {},
        }
        logger.debug("[%s] orchestration %s on %s.", self._repos.uid, phase, thread_id)
        await self._append(self._repos.orchestration_log, entry)
        return entry

    async def provider_event(
        self,
        conversation_id: str,
        provider: str,
        event_type: str,
        latency_ms: int | None = None,
        usage: dict[str, int] | None = None,
        error: str | None = None,
    ) -> dict[str, Any]:
        entry = {
            "id": new_id(),
            "conversation_id": conversation_id,
            "provider": provider,
            "type": event_type,
            "timestamp": utc_now(),
            "latency_ms": latency_ms,
            "usage": usage,
            "error": error,
        }
        await self._append(self._repos.provider_events, entry)
        return entry

    async def span(
        self,
        trace_id: str,
        name: str,
        status: str = "ok",
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Summary: Append a span to a trace, creating the trace on first use.

        Importance: Groups every step that handled one email under one trace id.
        Alternatives: Emit spans to an external tracing backend.
        """

        span = {"name": name, "status": status, "timestamp": utc_now(), "detail": detail or {}}

        def change(traces: list[dict[str, Any]]) -> None:
            trace = next((item for item in traces if item.get("id") == trace_id), None)
            if trace is None:
                trace = {"id": trace_id, "created_at": utc_now(), "status": "ok", "spans": []}
                traces.append(trace)
            trace["spans"].append(span)
            if status == "error":
                trace["status"] = "error"

        try:
            await self._repos.traces.mutate(change)
        except StorageError as exc:
            logger.warning("Dropping trace span for %s: %s", self._repos.uid, exc)

    async def _append(self, collection: Any, entry: dict[str, Any]) -> None:
        try:
            await collection.mutate(lambda entries: entries.append(entry))
        except StorageError as exc:
            logger.warning("Dropping log entry for %s: %s", self._repos.uid, exc)
