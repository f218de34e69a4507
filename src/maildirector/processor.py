"""Summary: Turns fetched envelopes into director conversation threads.

Importance: Connects mail ingestion to filter routing and orchestration.
Alternatives: Let the fetch loop create threads directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from maildirector.diagnostics import DiagnosticsLog
from maildirector.errors import MailDirectorError
from maildirector.filters import match_filters
from maildirector.models import (
    Account,
    ChatMessage,
    ConversationThread,
    Director,
    EmailEnvelope,
    Filter,
    Prompt,
    Settings,
    new_id,
)
from maildirector.orchestrator import ConversationOrchestrator
from maildirector.registry import RepositoryRegistry, TenantRepos


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingContext:
    """Summary: Tenant configuration needed to route one envelope.

    Importance: Loaded once per fetch cycle and shared across envelopes.
    Alternatives: Re-read every collection for each envelope.
    """

    account: Account
    filters: list[Filter]
    directors: list[Director]
    prompts: list[Prompt]
    settings: Settings


@dataclass
class ProcessingResult:
    """Outcome of processing one envelope."""

    success: bool = True
    conversations_created: list[str] = field(default_factory=list)
    directors_triggered: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "conversations_created": list(self.conversations_created),
            "directors_triggered": list(self.directors_triggered),
            "failures": list(self.failures),
        }


async def load_processing_context(repos: TenantRepos, account: Account) -> ProcessingContext:
    """Read the routing configuration for a tenant."""

    return ProcessingContext(
        account=account,
        filters=await repos.filters.all(),
        directors=await repos.directors.all(),
        prompts=await repos.prompts.all(),
        settings=await repos.load_settings(),
    )


def email_context_message(envelope: EmailEnvelope) -> ChatMessage:
    """Build the user message that hands an email to a director."""

    body = envelope.body_plain or envelope.snippet
    content = (
        "Email context\n"
        f"subject: {envelope.subject}\n"
        f"from: {envelope.sender}\n"
        f"to: {envelope.to}\n"
        f"date: {envelope.date}\n"
        f"snippet: {envelope.snippet}\n"
        f"body:\n{body}"
    )
    return ChatMessage(role="user", content=content)


class EmailProcessor:
    """Summary: Runs the filter engine and starts director threads.

    Importance: Keeps ingestion fast by handing orchestration to a background executor.
    Alternatives: Run each conversation to completion before the next email.
    """

    def __init__(self, registry: RepositoryRegistry, orchestrator: ConversationOrchestrator) -> None:
        self._registry = registry
        self._orchestrator = orchestrator

    async def process_email(
        self,
        envelope: EmailEnvelope,
        context: ProcessingContext,
        trace_id: str,
        uid: str,
    ) -> ProcessingResult:
        """Summary: Route one envelope and create a thread per matched director.

        Importance: Missing configuration on one director never blocks the others.
        Alternatives: Fail the whole envelope when any director is misconfigured.
        """

        repos = self._registry.get_repos(uid)
        diagnostics = DiagnosticsLog(repos)
        result = ProcessingResult()
        try:
            matches = match_filters(envelope, context.filters)
            await diagnostics.span(
                trace_id,
                "filters_eval",
                detail={"email_id": envelope.id, "filters": len(context.filters), "matches": len(matches)},
            )
            for match in matches:
                thread_id = await self._start_director(
                    repos, diagnostics, envelope, context, trace_id, match.director_id, result
                )
                if thread_id:
                    result.directors_triggered.append(match.director_id)
                    result.conversations_created.append(thread_id)
                    self._orchestrator.executor(uid).submit(thread_id, trace_id)
        except MailDirectorError as exc:
            result.success = False
            result.failures.append(str(exc))
            await diagnostics.fetcher(
                "error",
                "email_processing_error",
                "Failed to process email",
                provider=context.account.provider,
                account_id=context.account.id,
                email_id=envelope.id,
                detail=str(exc),
            )
        return result

    async def _start_director(
        self,
        repos: TenantRepos,
        diagnostics: DiagnosticsLog,
        envelope: EmailEnvelope,
        context: ProcessingContext,
        trace_id: str,
        director_id: str,
        result: ProcessingResult,
    ) -> str | None:
        director = next((item for item in context.directors if item.id == director_id), None)
        if director is None:
            return await self._skip(
                diagnostics,
                context,
                envelope,
                result,
                director_id,
                "director_missing",
                f"Director {director_id} not found",
            )
        if context.settings.api_config(director.api_config_id) is None:
            return await self._skip(
                diagnostics,
                context,
                envelope,
                result,
                director_id,
                "director_config_missing",
                f"Director {director_id} has no resolvable api config",
            )
        prompt = next((item for item in context.prompts if item.id == director.prompt_id), None)
        seed = list(prompt.messages) if prompt else []
        thread = ConversationThread(
            id=new_id(),
            kind="director",
            director_id=director.id,
            trace_id=trace_id,
            prompt_id=director.prompt_id,
            api_config_id=director.api_config_id,
            messages=[*seed, email_context_message(envelope)],
            email=envelope,
        )
        await repos.conversations.mutate(lambda threads: threads.append(thread))
        await diagnostics.fetcher(
            "info",
            "director_thread_created",
            "Created director conversation thread",
            provider=context.account.provider,
            account_id=context.account.id,
            email_id=envelope.id,
            director_id=director.id,
            thread_id=thread.id,
        )
        return thread.id

    async def _skip(
        self,
        diagnostics: DiagnosticsLog,
        context: ProcessingContext,
        envelope: EmailEnvelope,
        result: ProcessingResult,
        director_id: str,
        event: str,
        message: str,
    ) -> None:
        result.failures.append(message)
        await diagnostics.fetcher(
            "error",
            event,
            message,
            provider=context.account.provider,
            account_id=context.account.id,
            email_id=envelope.id,
            director_id=director_id,
        )
        return None
