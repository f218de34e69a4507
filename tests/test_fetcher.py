"""Summary: Tests for per-tenant fetch loops.

Importance: Validates idempotent lifecycle, cycle bookkeeping, and account isolation.
Alternatives: Test fetch loops manually against live mailboxes.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from maildirector.ai import ChatProviderFactory, MockChatProvider
from maildirector.app import AppContext, build_context
from maildirector.config import AppConfig
from maildirector.mail import GmailMailProvider, MailProviders, MockMailProvider
from maildirector.models import Account, AccountTokens, EmailEnvelope
from maildirector.oauth import OAuthTokenResult

from conftest import build_config


class BlockingMailProvider(MockMailProvider):
    """Mock provider that holds the fetch open until released."""

    def __init__(self, fixture_path: Path) -> None:
        super().__init__(fixture_path)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_unread(self, account, max_results, unread_only=True):  # type: ignore[override]
        self.entered.set()
        await self.release.wait()
        return await super().fetch_unread(account, max_results, unread_only)


class MalformedMailProvider(MockMailProvider):
    """Mock provider whose inbox payload is malformed."""

    def __init__(self, fixture_path: Path) -> None:
        super().__init__(fixture_path)
        self.calls = 0

    async def fetch_unread(self, account, max_results, unread_only=True):  # type: ignore[override]
        self.calls += 1
        return [EmailEnvelope.from_dict(item) for item in None]  # type: ignore[union-attr]


class StubGmailProvider(GmailMailProvider):
    """Gmail provider with network fetches replaced by an empty inbox."""

    async def fetch_unread(self, account, max_results, unread_only=True):  # type: ignore[override]
        return []


async def _wait_until(predicate, timeout: float = 10.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.05)

    await asyncio.wait_for(poll(), timeout)


def _refresher(config: AppConfig, provider: str, refresh_token: str) -> OAuthTokenResult:
    assert provider == "gmail"
    assert refresh_token == "refresh-1"
    return OAuthTokenResult("access-2", None, "2099-01-01T00:00:00+00:00")


async def test_run_processes_accounts_and_records_state(context: AppContext, seed_tenant) -> None:
    """Summary: Verify a manual cycle fetches, routes, and updates status.

    Importance: This is the ingestion path every scheduled cycle follows.
    Alternatives: Only test the scheduled loop.
    """

    await seed_tenant(context.registry)
    state = await context.fetchers.run("u1")
    await context.orchestrator.executor("u1").drain()
    assert state.last_run is not None
    assert not state.running
    assert state.account_count == 1
    assert state.account_status["acc1"]["last_error"] is None
    threads = await context.repos("u1").conversations.all()
    assert [thread.email.id for thread in threads] == ["mock-1"]
    events = [entry["event"] for entry in await context.repos("u1").fetcher_log.all()]
    assert events[0] == "fetch_cycle_start"
    assert "messages_listed" in events


async def test_rerun_does_not_duplicate_threads(context: AppContext, seed_tenant) -> None:
    await seed_tenant(context.registry)
    await context.fetchers.run("u1")
    await context.fetchers.run("u1")
    await context.orchestrator.executor("u1").drain()
    assert len(await context.repos("u1").conversations.all()) == 1


async def test_failing_account_does_not_stop_cycle(context: AppContext, seed_tenant) -> None:
    """Summary: Ensure one broken account is recorded while others still run.

    Importance: Accounts are independent units of work within a cycle.
    Alternatives: Abort the cycle on the first account error.
    """

    await seed_tenant(context.registry)
    repos = context.repos("u1")
    await repos.accounts.mutate(
        lambda accounts: accounts.insert(0, Account(id="acc0", provider="gmail", email="a@example.com"))
    )
    state = await context.fetchers.run("u1")
    await context.orchestrator.executor("u1").drain()
    assert state.account_count == 2
    assert "no refresh token" in (state.account_status["acc0"]["last_error"] or "")
    assert state.account_status["acc1"]["last_error"] is None
    assert len(await repos.conversations.all()) == 1
    errors = [entry for entry in await repos.fetcher_log.all() if entry["event"] == "account_fetch_error"]
    assert errors[0]["account_id"] == "acc0"


async def test_refreshed_tokens_are_persisted(config: AppConfig, seed_tenant) -> None:
    gmail = StubGmailProvider(config, refresher=_refresher)
    context = build_context(
        config,
        chat_providers=ChatProviderFactory({"mock": MockChatProvider()}),
        mail_providers=MailProviders(config, {"gmail": gmail}),
    )
    await seed_tenant(context.registry, with_account=False)
    repos = context.repos("u1")
    expired = AccountTokens("access-1", "refresh-1", "2000-01-01T00:00:00+00:00")
    await repos.accounts.replace([Account(id="acc1", provider="gmail", email="a@example.com", tokens=expired)])
    state = await context.fetchers.run("u1")
    assert state.account_status["acc1"]["last_error"] is None
    tokens = (await repos.accounts.all())[0].tokens
    assert tokens.access_token == "access-2"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.expiry == "2099-01-01T00:00:00+00:00"


async def test_overlapping_run_is_skipped(config: AppConfig, seed_tenant) -> None:
    """Summary: Verify a cycle requested during another cycle is skipped.

    Importance: Overlapping cycles would process the same messages twice.
    Alternatives: Queue the second cycle behind the first.
    """

    blocking = BlockingMailProvider(Path(config.mock_mail_fixture))
    context = build_context(
        config,
        chat_providers=ChatProviderFactory({"mock": MockChatProvider()}),
        mail_providers=MailProviders(config, {"mock": blocking}),
    )
    await seed_tenant(context.registry)
    first = asyncio.create_task(context.fetchers.run("u1"))
    await blocking.entered.wait()
    skipped = await context.fetchers.run("u1")
    assert skipped.running
    blocking.release.set()
    finished = await first
    await context.orchestrator.executor("u1").drain()
    assert not finished.running
    events = [entry["event"] for entry in await context.repos("u1").fetcher_log.all()]
    assert events.count("cycle_skip") == 1
    assert events.count("fetch_cycle_start") == 1


async def test_start_and_stop_are_idempotent(context: AppContext, seed_tenant) -> None:
    await seed_tenant(context.registry)
    started = await context.fetchers.start("u1")
    again = await context.fetchers.start("u1")
    assert started.active and again.active
    assert started.next_run is not None
    assert context.fetchers.status("u1").active
    stopped = await context.fetchers.stop("u1")
    assert not stopped.active
    assert stopped.next_run is None
    assert not (await context.fetchers.stop("u1")).active
    events = [entry["event"] for entry in await context.repos("u1").fetcher_log.all()]
    assert events == ["fetcher_started", "fetcher_stopped"]


async def test_status_of_unknown_tenant_is_inactive(context: AppContext) -> None:
    state = context.fetchers.status("nobody")
    assert state.to_dict() == {
        "active": False,
        "running": False,
        "last_run": None,
        "next_run": None,
        "account_count": 0,
        "account_status": {},
    }


async def test_bootstrap_starts_auto_start_tenants(context: AppContext, seed_tenant) -> None:
    """Summary: Ensure bootstrap restarts only tenants that opted in.

    Importance: Restores schedules after a restart without surprising other users.
    Alternatives: Start every known tenant.
    """

    await seed_tenant(context.registry, uid="u1", auto_start=True)
    await seed_tenant(context.registry, uid="u2", auto_start=False)
    assert await context.fetchers.bootstrap() == ["u1"]
    assert context.fetchers.status("u1").active
    assert not context.fetchers.status("u2").active
    await context.fetchers.shutdown()
    assert not context.fetchers.status("u1").active


async def test_eviction_drops_only_inactive_fetchers(context: AppContext, seed_tenant) -> None:
    await seed_tenant(context.registry, uid="u1")
    await seed_tenant(context.registry, uid="u2")
    await context.fetchers.run("u1")
    await context.fetchers.start("u2")
    context.registry.remove("u1")
    context.registry.remove("u2")
    assert context.fetchers.tenants() == ["u2"]
    await context.fetchers.shutdown()
    await context.orchestrator.executor("u1").drain()


def test_mock_provider_filters_unread(tmp_path: Path) -> None:
    fixture = tmp_path / "inbox.json"
    fixture.write_text(
        '[{"id": "a", "unread": true}, {"id": "b", "unread": false}, {"id": "c"}]', encoding="utf-8"
    )
    provider = MockMailProvider(fixture)
    account = Account(id="acc1", provider="mock", email="you@example.com")
    unread = asyncio.run(provider.fetch_unread(account, 10))
    assert [item.id for item in unread] == ["a", "c"]
    everything = asyncio.run(provider.fetch_unread(account, 10, unread_only=False))
    assert everything[1] == EmailEnvelope(id="b")


async def test_provider_type_error_keeps_schedule(tmp_path: Path, seed_tenant) -> None:
    """Summary: Verify a provider crash is recorded and later cycles still run.

    Importance: One malformed inbox payload must not stop a tenant's polling.
    Alternatives: Require an operator to restart the fetcher.
    """

    config = build_config(tmp_path, fetcher_interval_minutes=0.001)
    malformed = MalformedMailProvider(Path(config.mock_mail_fixture))
    context = build_context(
        config,
        chat_providers=ChatProviderFactory({"mock": MockChatProvider()}),
        mail_providers=MailProviders(config, {"mock": malformed}),
    )
    await seed_tenant(context.registry)
    await context.fetchers.start("u1")
    try:
        await _wait_until(lambda: malformed.calls >= 2)
        state = context.fetchers.status("u1")
        assert state.active
        assert "NoneType" in (state.account_status["acc1"]["last_error"] or "")
    finally:
        await context.fetchers.stop("u1")
    errors = [
        entry
        for entry in await context.repos("u1").fetcher_log.all()
        if entry["event"] == "account_fetch_error"
    ]
    assert len(errors) >= 2


async def test_failed_cycle_keeps_schedule(tmp_path: Path, seed_tenant) -> None:
    config = build_config(tmp_path, fetcher_interval_minutes=0.001)
    context = build_context(
        config,
        chat_providers=ChatProviderFactory({"mock": MockChatProvider()}),
        mail_providers=MailProviders(config, {"mock": MockMailProvider(Path(config.mock_mail_fixture))}),
    )
    await seed_tenant(context.registry)
    context.repos("u1").accounts.path.write_text("{not json", encoding="utf-8")
    await context.fetchers.start("u1")
    try:
        await _wait_until(lambda: context.fetchers.status("u1").last_run is not None)
        first = context.fetchers.status("u1").last_run
        await _wait_until(lambda: context.fetchers.status("u1").last_run != first)
        assert context.fetchers.status("u1").active
    finally:
        await context.fetchers.stop("u1")
