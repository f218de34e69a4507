"""Summary: Shared fixtures for MailDirector tests.

Importance: Gives every test an isolated data directory and a seeded tenant.
Alternatives: Build configuration inline in each test module.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

from maildirector.ai import ChatProviderFactory, ChatReply, MockChatProvider
from maildirector.app import AppContext, build_context
from maildirector.config import AppConfig
from maildirector.mail import MailProviders, MockMailProvider
from maildirector.models import (
    Account,
    Agent,
    ApiConfig,
    ChatMessage,
    ConversationThread,
    Director,
    Filter,
    Prompt,
    Settings,
)
from maildirector.registry import RepositoryRegistry


ROOT = Path(__file__).resolve().parents[1]


def build_config(tmp_path: Path, **overrides: Any) -> AppConfig:
    """Summary: Build an AppConfig rooted in a temporary directory.

    Importance: Ensures tests never touch the working tree's data directory.
    Alternatives: Load AppConfig from environment variables.
    """

    values = json.loads((ROOT / "config" / "defaults.json").read_text(encoding="utf-8"))
    values["data_dir"] = str(tmp_path / "data")
    values["mock_mail_fixture"] = str(ROOT / "data" / "mock_envelopes.json")
    values.update({key: str(value) for key, value in overrides.items()})
    return AppConfig.from_mapping(values, {})


class GatedChatProvider(MockChatProvider):
    """Mock provider that waits for a gate before replying."""

    def __init__(self, replies: list[ChatReply | Exception] | None = None) -> None:
        super().__init__(replies)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def complete(self, messages, api_config, tools):  # type: ignore[override]
        self.entered.set()
        await self.gate.wait()
        return await super().complete(messages, api_config, tools)


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return build_config(tmp_path)


@pytest.fixture
def registry(config: AppConfig) -> RepositoryRegistry:
    return RepositoryRegistry(config)


@pytest.fixture
def chat() -> MockChatProvider:
    return MockChatProvider()


@pytest.fixture
def context(config: AppConfig, chat: MockChatProvider) -> AppContext:
    """Summary: Engine context wired to mock chat and mail providers.

    Importance: Lets orchestration and fetch tests run fully offline.
    Alternatives: Patch provider classes at import time.
    """

    return build_context(
        config,
        chat_providers=ChatProviderFactory({"mock": chat}),
        mail_providers=MailProviders(config, {"mock": MockMailProvider(Path(config.mock_mail_fixture))}),
    )


@pytest.fixture
def seed_tenant() -> Callable[..., Awaitable[None]]:
    """Summary: Write a director, agent, prompt, filter, and api config for a tenant.

    Importance: Most engine tests need the same baseline configuration.
    Alternatives: Seed each collection by hand in every test.
    """

    async def seed(
        registry: RepositoryRegistry,
        uid: str = "u1",
        filters: list[Filter] | None = None,
        api_config_id: str | None = "cfg1",
        with_account: bool = True,
        auto_start: bool = False,
    ) -> None:
        repos = registry.get_repos(uid)
        await repos.save_settings(
            Settings(
                api_configs=[ApiConfig(id="cfg1", name="mock", provider="mock", model="mock-1")],
                fetcher_auto_start=auto_start,
            )
        )
        await repos.prompts.replace(
            [
                Prompt(id="p1", name="director", messages=[ChatMessage(role="system", content="You triage mail.")]),
                Prompt(id="p2", name="agent", messages=[ChatMessage(role="system", content="You summarize.")]),
            ]
        )
        await repos.directors.replace(
            [Director(id="d1", name="Triage", prompt_id="p1", api_config_id=api_config_id, agent_ids=["a1"])]
        )
        await repos.agents.replace([Agent(id="a1", name="Summarizer", prompt_id="p2", api_config_id="cfg1")])
        await repos.filters.replace(
            filters
            if filters is not None
            else [Filter(id="f1", field="subject", regex="Urgent", director_id="d1")]
        )
        if with_account:
            await repos.accounts.replace([Account(id="acc1", provider="mock", email="you@example.com")])

    return seed


@pytest.fixture
def make_thread() -> Callable[..., Awaitable[ConversationThread]]:
    """Persist a director thread directly, bypassing the email processor."""

    async def make(registry: RepositoryRegistry, uid: str = "u1", **fields: Any) -> ConversationThread:
        values: dict[str, Any] = {
            "id": "t1",
            "kind": "director",
            "director_id": "d1",
            "api_config_id": "cfg1",
            "trace_id": "trace-1",
            "messages": [ChatMessage(role="user", content="Email context\nsubject: Urgent")],
        }
        values.update(fields)
        thread = ConversationThread(**values)
        await registry.get_repos(uid).conversations.mutate(lambda threads: threads.append(thread))
        return thread

    return make
