"""Summary: Application factory wiring the engine services.

Importance: Centralizes dependency creation for the CLI and the API layer.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from maildirector.ai import ChatProviderFactory
from maildirector.cleanup import CleanupService
from maildirector.config import AppConfig
from maildirector.fetcher import FetcherManager
from maildirector.mail import MailProviders
from maildirector.orchestrator import ConversationOrchestrator
from maildirector.processor import EmailProcessor
from maildirector.registry import RepositoryRegistry, TenantRepos
from maildirector.workspace import WorkspaceStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared, process-wide engine services.

    Importance: One registry, orchestrator, and fetcher map serve every tenant.
    Alternatives: Rebuild dependencies for every request.
    """

    config: AppConfig
    registry: RepositoryRegistry
    chat_providers: ChatProviderFactory
    mail_providers: MailProviders
    orchestrator: ConversationOrchestrator
    processor: EmailProcessor
    fetchers: FetcherManager
    cleanup: CleanupService

    def repos(self, uid: str) -> TenantRepos:
        return self.registry.get_repos(uid)

    def workspace(self, uid: str) -> WorkspaceStore:
        return WorkspaceStore(self.registry.get_repos(uid))

    async def startup(self, bootstrap: bool = True) -> list[str]:
        """Summary: Start background sweeping and auto-start fetchers.

        Importance: Restores tenant schedules after a restart.
        Alternatives: Start fetchers lazily on first request.
        """

        self.registry.start_eviction_loop()
        if not bootstrap:
            return []
        return await self.fetchers.bootstrap()

    async def shutdown(self) -> None:
        await self.fetchers.shutdown()
        await self.registry.stop_eviction_loop()
        logger.info("Engine shut down.")


def build_context(
    config: AppConfig,
    chat_providers: ChatProviderFactory | None = None,
    mail_providers: MailProviders | None = None,
) -> AppContext:
    """Summary: Build shared engine services from configuration.

    Importance: Provides a single construction path for the application.
    Alternatives: Use a dependency injection container.
    """

    registry = RepositoryRegistry(config)
    chat = chat_providers or ChatProviderFactory()
    mail = mail_providers or MailProviders(config)
    orchestrator = ConversationOrchestrator(registry, chat, max_turns=config.orchestration_max_turns)
    registry.add_eviction_listener(orchestrator.discard_executor)
    processor = EmailProcessor(registry, orchestrator)
    fetchers = FetcherManager(config, registry, processor, mail)
    return AppContext(
        config=config,
        registry=registry,
        chat_providers=chat,
        mail_providers=mail,
        orchestrator=orchestrator,
        processor=processor,
        fetchers=fetchers,
        cleanup=CleanupService(registry),
    )
