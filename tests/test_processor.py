"""Summary: Tests for email processing and director thread creation.

Importance: Ensures matched email starts exactly the right director threads.
Alternatives: Validate processing only through full fetch cycles.
"""

from __future__ import annotations

from maildirector.ai import ChatProviderFactory
from maildirector.app import AppContext, build_context
from maildirector.config import AppConfig
from maildirector.mail import MailProviders
from maildirector.models import Account, EmailEnvelope, Filter
from maildirector.processor import email_context_message, load_processing_context

from conftest import GatedChatProvider


ACCOUNT = Account(id="acc1", provider="mock", email="you@example.com")
URGENT = EmailEnvelope(
    id="m1",
    subject="Urgent: action needed",
    sender="boss@example.com",
    to="you@example.com",
    snippet="Please call me",
    body_plain="Please call me back today.",
)


async def test_urgent_email_starts_director_thread(config: AppConfig, seed_tenant) -> None:
    """Summary: Verify a matching email creates one ongoing director thread.

    Importance: This is the main path from ingestion to orchestration.
    Alternatives: Create threads only from the API.
    """

    gated = GatedChatProvider()
    context = build_context(
        config, chat_providers=ChatProviderFactory({"mock": gated}), mail_providers=MailProviders(config)
    )
    await seed_tenant(context.registry)
    repos = context.repos("u1")
    processing = await load_processing_context(repos, ACCOUNT)
    result = await context.processor.process_email(URGENT, processing, "trace-9", "u1")
    assert result.success
    assert result.directors_triggered == ["d1"]
    assert len(result.conversations_created) == 1

    await gated.entered.wait()
    threads = await repos.conversations.all()
    assert len(threads) == 1
    thread = threads[0]
    assert thread.id == result.conversations_created[0]
    assert thread.status == "ongoing"
    assert thread.trace_id == "trace-9"
    assert thread.email == URGENT
    assert thread.messages[0].content == "You triage mail."
    assert thread.messages[1].content.startswith("Email context\nsubject: Urgent: action needed")

    gated.gate.set()
    await context.orchestrator.executor("u1").drain()
    assert (await repos.conversations.all())[0].status == "completed"
    spans = (await repos.traces.all())[0]["spans"]
    assert spans[0]["name"] == "filters_eval"


async def test_two_filters_for_one_director_create_one_thread(context: AppContext, seed_tenant) -> None:
    filters = [
        Filter(id="f1", field="subject", regex="Urgent", director_id="d1", order=0),
        Filter(id="f2", field="from", regex="boss@", director_id="d1", order=1),
    ]
    await seed_tenant(context.registry, filters=filters)
    repos = context.repos("u1")
    processing = await load_processing_context(repos, ACCOUNT)
    result = await context.processor.process_email(URGENT, processing, "trace-1", "u1")
    await context.orchestrator.executor("u1").drain()
    assert result.directors_triggered == ["d1"]
    assert len(await repos.conversations.all()) == 1


async def test_missing_director_config_is_non_fatal(context: AppContext, seed_tenant) -> None:
    """Summary: Ensure a misconfigured director is skipped and logged.

    Importance: One bad director must not block other directors or emails.
    Alternatives: Fail the whole envelope.
    """

    filters = [
        Filter(id="f1", field="subject", regex="Urgent", director_id="d1", order=0),
        Filter(id="f2", field="subject", regex="Urgent", director_id="ghost", order=1),
    ]
    await seed_tenant(context.registry, filters=filters, api_config_id="missing")
    repos = context.repos("u1")
    processing = await load_processing_context(repos, ACCOUNT)
    result = await context.processor.process_email(URGENT, processing, "trace-1", "u1")
    assert result.success
    assert result.conversations_created == []
    assert len(result.failures) == 2
    events = [entry["event"] for entry in await repos.fetcher_log.all()]
    assert events == ["director_config_missing", "director_missing"]
    assert await repos.conversations.all() == []


async def test_unmatched_email_creates_nothing(context: AppContext, seed_tenant) -> None:
    await seed_tenant(context.registry)
    repos = context.repos("u1")
    processing = await load_processing_context(repos, ACCOUNT)
    newsletter = EmailEnvelope(id="m2", subject="Weekly newsletter", sender="news@example.com")
    result = await context.processor.process_email(newsletter, processing, "trace-1", "u1")
    assert result.to_dict() == {
        "success": True,
        "conversations_created": [],
        "directors_triggered": [],
        "failures": [],
    }


def test_email_context_message_falls_back_to_snippet() -> None:
    message = email_context_message(EmailEnvelope(id="m3", subject="Hi", snippet="short preview"))
    assert message.role == "user"
    assert message.content.endswith("body:\nshort preview")
