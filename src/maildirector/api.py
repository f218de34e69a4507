"""Summary: FastAPI application for MailDirector.

Importance: Exposes tenant-scoped HTTP endpoints over the engine services.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from maildirector.app import AppContext, build_context
from maildirector.config import AppConfig
from maildirector.errors import (
    ConflictError,
    FinalizedError,
    InvalidTenantError,
    MailDirectorError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from maildirector.filters import reorder_filters, validate_filter
from maildirector.models import (
    ACCOUNT_PROVIDERS,
    Account,
    AccountTokens,
    Agent,
    ApiConfig,
    ChatMessage,
    Director,
    Filter,
    Prompt,
    Provenance,
    Settings,
    new_id,
)
from maildirector.orchestrator import StepContext
from maildirector.registry import LOG_COLLECTIONS
from maildirector.storage.json_store import validate_uid


logger = logging.getLogger(__name__)


class FilterCreateRequest(BaseModel):
    """Summary: Request payload for creating a filter.

    Importance: Regex validation happens before anything is stored.
    Alternatives: Accept raw filter dictionaries.
    """

    field: str
    regex: str
    director_id: str
    duplicate_allowed: bool = False
    order: int | None = None


class ReorderRequest(BaseModel):
    ids: list[str]


class IdsRequest(BaseModel):
    ids: list[str]


class PurgeRequest(BaseModel):
    kind: str


class DirectorRequest(BaseModel):
    name: str
    prompt_id: str | None = None
    api_config_id: str | None = None
    agent_ids: list[str] = Field(default_factory=list)


class AgentRequest(BaseModel):
    name: str
    prompt_id: str | None = None
    api_config_id: str | None = None


class PromptMessageModel(BaseModel):
    role: str
    content: str


class PromptRequest(BaseModel):
    name: str
    messages: list[PromptMessageModel] = Field(default_factory=list)


class AccountRequest(BaseModel):
    """Summary: Request payload for registering a connected mailbox.

    Importance: Token acquisition happens elsewhere; this stores the result.
    Alternatives: Run the OAuth flow inside this service.
    """

    provider: str
    email: str
    access_token: str = ""
    refresh_token: str = ""
    expiry: str = ""
    signature: str = ""


class ApiConfigModel(BaseModel):
    id: str
    name: str = ""
    provider: str = "openai"
    model: str = ""
    api_key: str = ""
    base_url: str = ""
    max_completion_tokens: int | None = None


class SettingsRequest(BaseModel):
    api_configs: list[ApiConfigModel] = Field(default_factory=list)
    fetcher_auto_start: bool = False
    fetcher_interval_minutes: float | None = Field(default=None, gt=0)
    session_timeout_minutes: int = Field(default=60, ge=1)


class WorkspaceItemRequest(BaseModel):
    """Summary: Request payload for adding a workspace item.

    Importance: Lets users contribute artifacts alongside directors and agents.
    Alternatives: Allow only tool calls to write workspace items.
    """

    data: str = ""
    label: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    mime_type: str | None = None
    encoding: str = "utf8"


class WorkspaceUpdateRequest(BaseModel):
    expected_revision: int = Field(ge=1)
    patch: dict[str, Any]


def _status_for(exc: MailDirectorError) -> int:
    if isinstance(exc, (ValidationError, InvalidTenantError)):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, FinalizedError):
        return 423
    if isinstance(exc, StorageError):
        return 500
    return 400


def _error_body(exc: MailDirectorError) -> dict[str, Any]:
    body: dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, ConflictError):
        body["expected_revision"] = exc.expected_revision
        body["current_revision"] = exc.current_revision
    return body


def create_app(config: AppConfig, context: AppContext | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to the engine services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    engine = context or build_context(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        started = await engine.startup()
        logger.info("Auto-started fetchers for %s tenants.", len(started))
        yield
        await engine.shutdown()

    app = FastAPI(title="MailDirector API", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(MailDirectorError)
    async def handle_engine_error(_: Request, exc: MailDirectorError) -> JSONResponse:
        return JSONResponse(status_code=_status_for(exc), content=_error_body(exc))

    def current_uid(x_user_id: str | None = Header(default=None)) -> str:
        """Summary: Resolve the tenant from the session layer's header.

        Importance: Every tenant-scoped route validates the uid before touching storage.
        Alternatives: Decode a session cookie in this service.
        """

        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        return validate_uid(x_user_id)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "registry": engine.registry.stats()}

    @app.get("/settings")
    async def get_settings(uid: str = Depends(current_uid)) -> dict[str, Any]:
        return (await engine.repos(uid).load_settings()).to_dict()

    @app.put("/settings")
    async def put_settings(payload: SettingsRequest, uid: str = Depends(current_uid)) -> dict[str, Any]:
        settings = Settings(
            api_configs=[ApiConfig.from_dict(item.model_dump()) for item in payload.api_configs],
            fetcher_auto_start=payload.fetcher_auto_start,
            fetcher_interval_minutes=payload.fetcher_interval_minutes,
            session_timeout_minutes=payload.session_timeout_minutes,
        )
        await engine.repos(uid).save_settings(settings)
        return settings.to_dict()

    @app.get("/accounts")
    async def list_accounts(uid: str = Depends(current_uid)) -> list[dict[str, Any]]:
        accounts = await engine.repos(uid).accounts.all()
        return [
            {"id": item.id, "provider": item.provider, "email": item.email, "signature": item.signature}
            for item in accounts
        ]

    @app.post("/accounts")
    async def add_account(payload: AccountRequest, uid: str = Depends(current_uid)) -> dict[str, Any]:
        if payload.provider not in ACCOUNT_PROVIDERS:
            raise ValidationError(f"Unknown mail provider: {payload.provider}", field="provider")
        account = Account(
            id=new_id(),
            provider=payload.provider,
            email=payload.email,
            tokens=AccountTokens(payload.access_token, payload.refresh_token, payload.expiry),
            signature=payload.signature,
        )
        await engine.repos(uid).accounts.mutate(lambda items: items.append(account))
        return {"id": account.id, "provider": account.provider, "email": account.email}

    @app.get("/directors")
    async def list_directors(uid: str = Depends(current_uid)) -> list[dict[str, Any]]:
        return [item.to_dict() for item in await engine.repos(uid).directors.all()]

    @app.post("/directors")
    async def add_director(payload: DirectorRequest, uid: str = Depends(current_uid)) -> dict[str, Any]:
        director = Director(id=new_id(), **payload.model_dump())
        await engine.repos(uid).directors.mutate(lambda items: items.append(director))
        return director.to_dict()

    @app.get("/agents")
    async def list_agents(uid: str = Depends(current_uid)) -> list[dict[str, Any]]:
        return [item.to_dict() for item in await engine.repos(uid).agents.all()]

    @app.post("/agents")
    async def add_agent(payload: AgentRequest, uid: str = Depends(current_uid)) -> dict[str, Any]:
        agent = Agent(id=new_id(), **payload.model_dump())
        await engine.repos(uid).agents.mutate(lambda items: items.append(agent))
        return agent.to_dict()

    @app.get("/prompts")
    async def list_prompts(uid: str = Depends(current_uid)) -> list[dict[str, Any]]:
        return [item.to_dict() for item in await engine.repos(uid).prompts.all()]

    @app.post("/prompts")
    async def add_prompt(payload: PromptRequest, uid: str = Depends(current_uid)) -> dict[str, Any]:
        prompt = Prompt(
            id=new_id(),
            name=payload.name,
            messages=[ChatMessage(role=item.role, content=item.content) for item in payload.messages],
        )
        await engine.repos(uid).prompts.mutate(lambda items: items.append(prompt))
        return prompt.to_dict()

    @app.get("/filters")
    async def list_filters(uid: str = Depends(current_uid)) -> list[dict[str, Any]]:
        filters = await engine.repos(uid).filters.all()
        return [item.to_dict() for item in sorted(filters, key=lambda item: item.order)]

    @app.post("/filters")
    async def add_filter(payload: FilterCreateRequest, uid: str = Depends(current_uid)) -> dict[str, Any]:
        repos = engine.repos(uid)

        def change(filters: list[Filter]) -> Filter:
            order = payload.order
            if order is None:
                order = max((item.order for item in filters), default=-1) + 1
            created = validate_filter(
                Filter(
                    id=new_id(),
                    field=payload.field,
                    regex=payload.regex,
                    director_id=payload.director_id,
                    duplicate_allowed=payload.duplicate_allowed,
                    order=order,
                )
            )
            filters.append(created)
            return created

        return (await repos.filters.mutate(change)).to_dict()

    @app.delete("/filters/{filter_id}")
    async def delete_filter(filter_id: str, uid: str = Depends(current_uid)) -> dict[str, Any]:
        def change(filters: list[Filter]) -> None:
            kept = [item for item in filters if item.id != filter_id]
            if len(kept) == len(filters):
                raise NotFoundError("filter", filter_id)
            filters[:] = kept

        await engine.repos(uid).filters.mutate(change)
        return {"deleted": filter_id}

    @app.post("/filters/reorder")
    async def reorder(payload: ReorderRequest, uid: str = Depends(current_uid)) -> list[dict[str, Any]]:
        def change(filters: list[Filter]) -> list[Filter]:
            filters[:] = reorder_filters(filters, payload.ids)
            return list(filters)

        return [item.to_dict() for item in await engine.repos(uid).filters.mutate(change)]

    @app.get("/fetcher/status")
    def fetcher_status(uid: str = Depends(current_uid)) -> dict[str, Any]:
        return engine.fetchers.status(uid).to_dict()

    @app.post("/fetcher/start")
    async def fetcher_start(uid: str = Depends(current_uid)) -> dict[str, Any]:
        return (await engine.fetchers.start(uid)).to_dict()

    @app.post("/fetcher/stop")
    async def fetcher_stop(uid: str = Depends(current_uid)) -> dict[str, Any]:
        return (await engine.fetchers.stop(uid)).to_dict()

    @app.post("/fetcher/run")
    async def fetcher_run(uid: str = Depends(current_uid)) -> dict[str, Any]:
        return (await engine.fetchers.run(uid)).to_dict()

    @app.get("/conversations")
    async def list_conversations(
        kind: str | None = None, uid: str = Depends(current_uid)
    ) -> list[dict[str, Any]]:
        threads = await engine.repos(uid).conversations.all()
        return [item.to_dict() for item in threads if kind is None or item.kind == kind]

    @app.get("/conversations/{thread_id}")
    async def get_conversation(thread_id: str, uid: str = Depends(current_uid)) -> dict[str, Any]:
        threads = await engine.repos(uid).conversations.all()
        thread = next((item for item in threads if item.id == thread_id), None)
        if thread is None:
            raise NotFoundError("conversation", thread_id)
        return thread.to_dict()

    @app.post("/conversations/{thread_id}/step")
    async def step_conversation(thread_id: str, uid: str = Depends(current_uid)) -> dict[str, Any]:
        result = await engine.orchestrator.run_conversation_step(StepContext(thread_id), uid)
        return {
            "success": result.success,
            "should_continue": result.should_continue,
            "error": result.error,
            "thread": result.updated_thread.to_dict() if result.updated_thread else None,
        }

    @app.post("/conversations/{thread_id}/finalize")
    async def finalize_conversation(thread_id: str, uid: str = Depends(current_uid)) -> dict[str, Any]:
        return (await engine.orchestrator.finalize_thread(uid, thread_id)).to_dict()

    @app.post("/conversations/delete")
    async def delete_conversations(payload: IdsRequest, uid: str = Depends(current_uid)) -> dict[str, int]:
        return await engine.cleanup.remove_conversations(uid, payload.ids)

    @app.get("/workspaces/{workspace_id}/items")
    async def list_workspace_items(
        workspace_id: str, include_deleted: bool = False, uid: str = Depends(current_uid)
    ) -> list[dict[str, Any]]:
        items = await engine.workspace(uid).list_items(workspace_id, include_deleted=include_deleted)
        return [item.to_dict() for item in items]

    @app.post("/workspaces/{workspace_id}/items")
    async def add_workspace_item(
        workspace_id: str, payload: WorkspaceItemRequest, uid: str = Depends(current_uid)
    ) -> dict[str, Any]:
        item = await engine.workspace(uid).add_item(
            workspace_id,
            data=payload.data,
            label=payload.label,
            description=payload.description,
            tags=payload.tags,
            mime_type=payload.mime_type,
            encoding=payload.encoding,
            provenance=Provenance(by="user"),
        )
        return item.to_dict()

    @app.get("/workspaces/{workspace_id}/items/{item_id}")
    async def get_workspace_item(
        workspace_id: str, item_id: str, uid: str = Depends(current_uid)
    ) -> dict[str, Any]:
        return (await engine.workspace(uid).get_item(workspace_id, item_id)).to_dict()

    @app.patch("/workspaces/{workspace_id}/items/{item_id}")
    async def update_workspace_item(
        workspace_id: str,
        item_id: str,
        payload: WorkspaceUpdateRequest,
        uid: str = Depends(current_uid),
    ) -> dict[str, Any]:
        item = await engine.workspace(uid).update_item(
            workspace_id, item_id, payload.expected_revision, payload.patch
        )
        return item.to_dict()

    @app.delete("/workspaces/{workspace_id}/items/{item_id}")
    async def delete_workspace_item(
        workspace_id: str,
        item_id: str,
        hard: bool = False,
        expected_revision: int | None = None,
        uid: str = Depends(current_uid),
    ) -> dict[str, Any]:
        item = await engine.workspace(uid).delete_item(
            workspace_id, item_id, hard=hard, expected_revision=expected_revision
        )
        return {"deleted": item_id, "hard": hard, "item": item.to_dict() if item else None}

    @app.get("/logs/{kind}")
    async def list_logs(kind: str, limit: int = 200, uid: str = Depends(current_uid)) -> list[dict[str, Any]]:
        if kind not in LOG_COLLECTIONS:
            raise ValidationError(f"Unknown log kind: {kind}", field="kind")
        entries = await engine.repos(uid).log_collection(kind).all()
        return entries[-limit:] if limit > 0 else entries

    @app.get("/cleanup/stats")
    async def cleanup_stats(uid: str = Depends(current_uid)) -> dict[str, int]:
        return (await engine.cleanup.stats(uid)).to_dict()

    @app.post("/cleanup/purge")
    async def cleanup_purge(payload: PurgeRequest, uid: str = Depends(current_uid)) -> dict[str, Any]:
        return {"kind": payload.kind, "removed": await engine.cleanup.purge(uid, payload.kind)}

    @app.post("/cleanup/purge-all")
    async def cleanup_purge_all(uid: str = Depends(current_uid)) -> dict[str, int]:
        return (await engine.cleanup.purge_all(uid)).to_dict()

    @app.post("/cleanup/workspace-items")
    async def cleanup_workspace_items(payload: IdsRequest, uid: str = Depends(current_uid)) -> dict[str, int]:
        return {"removed": await engine.cleanup.remove_workspace_items(uid, payload.ids)}

    @app.post("/cleanup/logs/{kind}")
    async def cleanup_logs(kind: str, payload: IdsRequest, uid: str = Depends(current_uid)) -> dict[str, int]:
        return {"removed": await engine.cleanup.remove_log_entries(uid, kind, payload.ids)}

    return app
