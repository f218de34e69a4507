"""Summary: Per-tenant mail fetch loops.

Importance: Polls connected accounts on a schedule and feeds new mail to the processor.
Alternatives: Use provider push notifications instead of polling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Iterable

from maildirector.config import AppConfig
from maildirector.diagnostics import DiagnosticsLog
from maildirector.errors import MailDirectorError
from maildirector.mail import MailProviders, TokenRefresh
from maildirector.models import Account, AccountTokens, FetcherState, new_id, utc_now
from maildirector.processor import EmailProcessor, load_processing_context
from maildirector.registry import RepositoryRegistry, TenantRepos
from maildirector.storage.json_store import validate_uid


logger = logging.getLogger(__name__)


class TenantFetcher:
    """Summary: Schedule and status of one tenant's fetch loop.

    Importance: Keeps each tenant's loop independent of every other tenant.
    Alternatives: Run one global loop that iterates all tenants.
    """

    def __init__(self, uid: str) -> None:
        self.uid = uid
        self.active = False
        self.running = False
        self.last_run: str | None = None
        self.next_run: str | None = None
        self.account_count = 0
        self.account_status: dict[str, dict[str, str | None]] = {}
        self.interval_seconds = 0.0
        self.loop_task: asyncio.Task | None = None
        self.cycle_task: asyncio.Task | None = None

    def state(self) -> FetcherState:
        return FetcherState(
            active=self.active,
            running=self.running,
            last_run=self.last_run,
            next_run=self.next_run,
            account_count=self.account_count,
            account_status={key: dict(value) for key, value in self.account_status.items()},
        )

    def schedule_next(self) -> None:
        if self.active:
            moment = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
            self.next_run = moment.isoformat()
        else:
            self.next_run = None


class FetcherManager:
    """Summary: Owns the map of tenant fetchers and their lifecycle.

    Importance: Start and stop are idempotent per tenant and survive registry eviction.
    Alternatives: Store timers as module-level globals.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: RepositoryRegistry,
        processor: EmailProcessor,
        mail_providers: MailProviders,
    ) -> None:
        self._config = config
        self._registry = registry
        self._processor = processor
        self._mail = mail_providers
        self._fetchers: dict[str, TenantFetcher] = {}
        registry.add_eviction_listener(self._on_evicted)

    async def start(self, uid: str) -> FetcherState:
        """Summary: Start the tenant's periodic loop if it is not running.

        Importance: Calling start twice never creates two loops.
        Alternatives: Restart the loop on every call.
        """

        repos = self._registry.get_repos(uid)
        fetcher = self._fetcher(uid)
        if fetcher.active:
            return fetcher.state()
        settings = await repos.load_settings()
        minutes = settings.fetcher_interval_minutes or self._config.fetcher_interval_minutes
        fetcher.interval_seconds = max(1.0, float(minutes) * 60)
        fetcher.active = True
        fetcher.schedule_next()
        fetcher.loop_task = asyncio.create_task(self._loop(fetcher), name=f"fetcher-{uid}")
        await DiagnosticsLog(repos).fetcher(
            "info", "fetcher_started", "Fetcher started", detail=f"interval={fetcher.interval_seconds}s"
        )
        return fetcher.state()

    async def stop(self, uid: str) -> FetcherState:
        """Summary: Cancel the tenant's schedule.

        Importance: An in-flight cycle finishes; only future cycles are cancelled.
        Alternatives: Abort the running cycle immediately.
        """

        validate_uid(uid)
        fetcher = self._fetchers.get(uid)
        if fetcher is None or not fetcher.active:
            return fetcher.state() if fetcher else TenantFetcher(uid).state()
        fetcher.active = False
        fetcher.next_run = None
        task = fetcher.loop_task
        fetcher.loop_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await DiagnosticsLog(self._registry.get_repos(uid)).fetcher("info", "fetcher_stopped", "Fetcher stopped")
        return fetcher.state()

    def status(self, uid: str) -> FetcherState:
        """Return the in-memory state without touching storage."""

        validate_uid(uid)
        fetcher = self._fetchers.get(uid)
        return fetcher.state() if fetcher else TenantFetcher(uid).state()

    async def run(self, uid: str) -> FetcherState:
        """Summary: Run one fetch cycle now.

        Importance: A cycle requested while another runs is skipped, not queued.
        Alternatives: Queue manual runs behind the scheduled cycle.
        """

        repos = self._registry.get_repos(uid)
        fetcher = self._fetcher(uid)
        diagnostics = DiagnosticsLog(repos)
        if fetcher.running:
            await diagnostics.fetcher("warn", "cycle_skip", "Fetch cycle already running; skipping re-entry")
            return fetcher.state()
        fetcher.running = True
        try:
            accounts = await repos.accounts.all()
            fetcher.account_count = len(accounts)
            await diagnostics.fetcher(
                "info", "fetch_cycle_start", "Fetch cycle started", count=len(accounts)
            )
            for account in accounts:
                await self._fetch_account(repos, diagnostics, fetcher, account)
        finally:
            fetcher.running = False
            fetcher.last_run = utc_now()
            fetcher.schedule_next()
        return fetcher.state()

    async def bootstrap(self, uids: Iterable[str] | None = None) -> list[str]:
        """Summary: Start fetchers for tenants that opted into auto start.

        Importance: Restores schedules after a process restart.
        Alternatives: Require users to restart their fetchers manually.
        """

        candidates = list(uids) if uids is not None else self._registry.known_tenants()
        limit = asyncio.Semaphore(max(1, self._config.fetcher_bootstrap_concurrency))
        started: list[str] = []

        async def consider(uid: str) -> None:
            async with limit:
                try:
                    settings = await self._registry.get_repos(uid).load_settings()
                    if settings.fetcher_auto_start:
                        await self.start(uid)
                        started.append(uid)
                except MailDirectorError as exc:
                    logger.warning("Skipping fetcher bootstrap for %s: %s", uid, exc)

        await asyncio.gather(*(consider(uid) for uid in candidates))
        logger.info("Bootstrapped %s of %s fetchers.", len(started), len(candidates))
        return sorted(started)

    async def shutdown(self) -> None:
        """Stop every active fetcher."""

        for uid in [uid for uid, fetcher in self._fetchers.items() if fetcher.active]:
            await self.stop(uid)

    def tenants(self) -> list[str]:
        return sorted(self._fetchers)

    async def _loop(self, fetcher: TenantFetcher) -> None:
        while fetcher.active:
            await asyncio.sleep(fetcher.interval_seconds)
            if not fetcher.active:
                break
            fetcher.cycle_task = asyncio.ensure_future(self.run(fetcher.uid))
            try:
                # Cancelling the loop leaves the cycle running.
                await asyncio.shield(fetcher.cycle_task)
            except Exception:
                logger.exception("Fetch cycle for %s failed; keeping the schedule.", fetcher.uid)

    async def _fetch_account(
        self,
        repos: TenantRepos,
        diagnostics: DiagnosticsLog,
        fetcher: TenantFetcher,
        account: Account,
    ) -> None:
        try:
            provider = self._mail.for_account(account)
            refresh = await provider.ensure_valid_access_token(account)
            if refresh.error:
                raise RuntimeError(refresh.error)
            if refresh.updated:
                account = await _persist_tokens(repos, account, refresh)
                await diagnostics.fetcher(
                    "info",
                    "token_refreshed",
                    "Access token refreshed",
                    provider=account.provider,
                    account_id=account.id,
                )
            envelopes = await provider.fetch_unread(
                account, self._config.fetcher_max_messages, unread_only=True
            )
            await diagnostics.fetcher(
                "info",
                "messages_listed",
                "Listed unread messages",
                provider=account.provider,
                account_id=account.id,
                count=len(envelopes),
            )
            seen = {
                thread.email.id
                for thread in await repos.conversations.all()
                if thread.kind == "director" and thread.email is not None
            }
            context = await load_processing_context(repos, account)
            for envelope in envelopes:
                if envelope.id in seen:
                    continue
                await self._processor.process_email(envelope, context, new_id(), repos.uid)
            fetcher.account_status[account.id] = {"last_run": utc_now(), "last_error": None}
        except Exception as exc:
            logger.warning("Fetch failed for %s account %s: %s", repos.uid, account.id, exc)
            fetcher.account_status[account.id] = {"last_run": utc_now(), "last_error": str(exc)}
            await diagnostics.fetcher(
                "error",
                "account_fetch_error",
                "Failed to fetch account",
                provider=account.provider,
                account_id=account.id,
                detail=str(exc),
            )

    def _fetcher(self, uid: str) -> TenantFetcher:
        fetcher = self._fetchers.get(uid)
        if fetcher is None:
            fetcher = TenantFetcher(uid)
            self._fetchers[uid] = fetcher
        return fetcher

    def _on_evicted(self, uid: str) -> None:
        fetcher = self._fetchers.get(uid)
        if fetcher is not None and not fetcher.active and not fetcher.running:
            del self._fetchers[uid]


async def _persist_tokens(repos: TenantRepos, account: Account, refresh: TokenRefresh) -> Account:
    tokens = AccountTokens(
        access_token=refresh.access_token,
        refresh_token=refresh.refresh_token or account.tokens.refresh_token,
        expiry=refresh.expiry,
    )
    updated = replace(account, tokens=tokens)

    def change(accounts: list[Account]) -> None:
        for index, item in enumerate(accounts):
            if item.id == account.id:
                accounts[index] = updated

    await repos.accounts.mutate(change)
    return updated
