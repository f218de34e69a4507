"""Summary: Director/agent conversation state machine.

Importance: Advances conversation threads through model turns, delegation, and workspace tools.
Alternatives: Run each conversation as one long blocking request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator

from maildirector.ai import ChatProviderFactory
from maildirector.diagnostics import DiagnosticsLog
from maildirector.errors import MailDirectorError, NotFoundError, ValidationError
from maildirector.models import (
    ChatMessage,
    ConversationThread,
    Provenance,
    ToolCall,
    descendant_closure,
    new_id,
    utc_now,
)
from maildirector.registry import RepositoryRegistry, TenantRepos
from maildirector.tools import WORKSPACE_TOOL_NAMES, WORKSPACE_TOOLS, agent_id_from_tool, agent_tool
from maildirector.workspace import WorkspaceStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepContext:
    """Identifies the thread a step should advance."""

    thread_id: str
    trace_id: str | None = None


@dataclass(frozen=True)
class StepResult:
    """Summary: Outcome of one orchestration step.

    Importance: Tells the caller whether to schedule another step.
    Alternatives: Return the thread and let callers inspect its status.
    """

    success: bool
    should_continue: bool
    updated_thread: ConversationThread | None
    error: str | None = None


class KeyedLock:
    """Summary: A map of asyncio locks that are released when unused.

    Importance: Provides single-flight execution per key without unbounded growth.
    Alternatives: Keep one lock per key for the life of the process.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


class ConversationOrchestrator:
    """Summary: Runs conversation steps for every tenant.

    Importance: Owns single-flight locking, model calls, tool handling, and finalization.
    Alternatives: Create one orchestrator per tenant request.
    """

    def __init__(
        self,
        registry: RepositoryRegistry,
        chat_providers: ChatProviderFactory,
        max_turns: int = 8,
        locks: KeyedLock | None = None,
    ) -> None:
        self._registry = registry
        self._chat = chat_providers
        self._max_turns = max(1, max_turns)
        self._locks = locks if locks is not None else KeyedLock()
        self._executors: dict[str, ThreadExecutor] = {}

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def executor(self, uid: str) -> "ThreadExecutor":
        """Return the tenant's fire-and-forget executor, creating it on first use."""

        executor = self._executors.get(uid)
        if executor is None:
            executor = ThreadExecutor(self, uid)
            self._executors[uid] = executor
        return executor

    def discard_executor(self, uid: str) -> bool:
        """Drop an idle executor; executors with pending work are kept."""

        executor = self._executors.get(uid)
        if executor is None or executor.pending:
            return False
        del self._executors[uid]
        return True

    async def run_conversation_step(self, context: StepContext, uid: str) -> StepResult:
        """Summary: Advance one thread by exactly one model turn.

        Importance: The unit of progress; safe to call repeatedly and concurrently.
        Alternatives: Drive the whole conversation inside one call.
        """

        repos = self._registry.get_repos(uid)
        async with self._locks.hold(_lock_key(uid, context.thread_id)):
            return await self._step(repos, context)

    async def run_conversation(
        self, context: StepContext, uid: str, max_steps: int | None = None
    ) -> ConversationThread | None:
        """Run steps until the thread reaches a terminal state or the step budget ends."""

        thread: ConversationThread | None = None
        for _ in range(max_steps or self._max_turns):
            result = await self.run_conversation_step(context, uid)
            thread = result.updated_thread
            if not result.success or not result.should_continue:
                break
        return thread

    async def finalize_thread(self, uid: str, thread_id: str) -> ConversationThread:
        """Summary: Finalize a thread and every descendant agent thread.

        Importance: Finalization locks the conversation and its workspace for good.
        Alternatives: Finalize only the requested thread.
        """

        repos = self._registry.get_repos(uid)
        async with self._locks.hold(_lock_key(uid, thread_id)):

            def change(threads: list[ConversationThread]) -> ConversationThread:
                index = _index_of(threads, thread_id)
                if index is None:
                    raise NotFoundError("conversation", thread_id)
                _finalize_tree(threads, thread_id)
                return threads[index]

            # Workspace writers check the owner under this lock, so it is taken first.
            async with repos.workspace_items.lock:
                thread = await repos.conversations.mutate(change)
        await DiagnosticsLog(repos).orchestration(
            "finalized", thread.director_id, thread.id, thread.trace_id, agent_id=thread.agent_id
        )
        return thread

    async def _step(self, repos: TenantRepos, context: StepContext) -> StepResult:
        diagnostics = DiagnosticsLog(repos)
        thread = await _load_thread(repos, context.thread_id)
        if not thread.is_active:
            return StepResult(success=True, should_continue=False, updated_thread=thread)
        trace_id = context.trace_id or thread.trace_id
        settings = await repos.load_settings()
        api_config = settings.api_config(thread.api_config_id)
        if api_config is None:
            error = f"API configuration {thread.api_config_id!r} not found"
            await diagnostics.orchestration(
                "validation_error",
                thread.director_id,
                thread.id,
                trace_id,
                agent_id=thread.agent_id,
                detail={"error": error},
            )
            return StepResult(success=False, should_continue=False, updated_thread=thread, error=error)

        await diagnostics.orchestration(
            "step_start",
            thread.director_id,
            thread.id,
            trace_id,
            agent_id=thread.agent_id,
            detail={"kind": thread.kind, "messages": len(thread.messages)},
        )
        tools = await self._tools_for(repos, thread)
        await diagnostics.provider_event(thread.id, api_config.provider, "request")
        started = time.monotonic()
        try:
            provider = self._chat.build(api_config)
            reply = await provider.complete(list(thread.messages), api_config, tools)
        except Exception as exc:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.warning("Chat provider failed for thread %s: %s", thread.id, exc)
            await diagnostics.provider_event(
                thread.id, api_config.provider, "error", latency_ms=latency_ms, error=str(exc)
            )
            return await self._fail(repos, diagnostics, thread, trace_id, str(exc))
        if reply.error:
            await diagnostics.provider_event(
                thread.id, api_config.provider, "error", latency_ms=reply.latency_ms, error=reply.error
            )
            return await self._fail(repos, diagnostics, thread, trace_id, reply.error)
        await diagnostics.provider_event(
            thread.id, api_config.provider, "response", latency_ms=reply.latency_ms, usage=reply.usage
        )
        if trace_id:
            await diagnostics.span(trace_id, f"{thread.kind}_llm_call", detail={"thread_id": thread.id})

        messages = list(thread.messages) + [reply.assistant_message()]
        for call in reply.tool_calls:
            messages.append(await self._handle_tool_call(repos, diagnostics, thread, call, trace_id))
        turns = sum(1 for message in messages if message.role == "assistant")
        terminal = not reply.tool_calls or turns >= self._max_turns
        now = utc_now()
        updated = replace(thread, messages=messages, last_active_at=now)
        if terminal:
            updated = replace(updated, status="completed", ended_at=now)
        updated = await _persist(repos, updated, finalize=terminal and thread.kind == "director")
        await diagnostics.orchestration(
            "completed" if terminal else "step_complete",
            thread.director_id,
            thread.id,
            trace_id,
            agent_id=thread.agent_id,
            detail={"tool_calls": len(reply.tool_calls), "turns": turns},
        )
        return StepResult(success=True, should_continue=not terminal, updated_thread=updated)

    async def _fail(
        self,
        repos: TenantRepos,
        diagnostics: DiagnosticsLog,
        thread: ConversationThread,
        trace_id: str | None,
        error: str,
    ) -> StepResult:
        now = utc_now()
        failed = replace(
            thread,
            status="failed",
            errors=[*thread.errors, error],
            ended_at=now,
            last_active_at=now,
        )
        failed = await _persist(repos, failed, finalize=False)
        await diagnostics.orchestration(
            "failed",
            thread.director_id,
            thread.id,
            trace_id,
            agent_id=thread.agent_id,
            detail={"error": error},
        )
        if trace_id:
            await diagnostics.span(trace_id, f"{thread.kind}_llm_call", status="error", detail={"error": error})
        return StepResult(success=False, should_continue=False, updated_thread=failed, error=error)

    async def _tools_for(self, repos: TenantRepos, thread: ConversationThread) -> list[dict[str, Any]]:
        tools = list(WORKSPACE_TOOLS)
        if thread.kind != "director":
            return tools
        directors = await repos.directors.all()
        director = next((item for item in directors if item.id == thread.director_id), None)
        if director is None:
            return tools
        for agent in await repos.agents.all():
            if not director.agent_ids or agent.id in director.agent_ids:
                tools.append(agent_tool(agent))
        return tools

    async def _handle_tool_call(
        self,
        repos: TenantRepos,
        diagnostics: DiagnosticsLog,
        thread: ConversationThread,
        call: ToolCall,
        trace_id: str | None,
    ) -> ChatMessage:
        await diagnostics.orchestration(
            "tool_call",
            thread.director_id,
            thread.id,
            trace_id,
            agent_id=thread.agent_id,
            detail={"tool": call.name},
        )
        agent_id = agent_id_from_tool(call.name)
        if agent_id and thread.kind == "director":
            payload = await self._delegate(repos, diagnostics, thread, agent_id, call, trace_id)
        elif call.name in WORKSPACE_TOOL_NAMES:
            payload = await self._workspace_call(repos, thread, call)
        else:
            payload = {"ok": False, "error": f"Unknown tool: {call.name}"}
        return ChatMessage(role="tool", content=json.dumps(payload), tool_call_id=call.id, name=call.name)

    async def _delegate(
        self,
        repos: TenantRepos,
        diagnostics: DiagnosticsLog,
        thread: ConversationThread,
        agent_id: str,
        call: ToolCall,
        trace_id: str | None,
    ) -> dict[str, Any]:
        """Summary: Run an agent thread to completion and return its final answer.

        Importance: Agent work is folded back into the director transcript as a tool result.
        Alternatives: Schedule the agent asynchronously and poll for its result.
        """

        try:
            arguments = _arguments(call)
        except ValidationError as exc:
            return {"ok": False, "error": str(exc)}
        agents = await repos.agents.all()
        agent = next((item for item in agents if item.id == agent_id), None)
        if agent is None:
            return {"ok": False, "error": f"Unknown agent: {agent_id}"}
        directors = await repos.directors.all()
        director = next((item for item in directors if item.id == thread.director_id), None)
        if director is not None and director.agent_ids and agent_id not in director.agent_ids:
            return {"ok": False, "error": f"Agent {agent_id} is not assigned to this director"}
        prompts = await repos.prompts.all()
        prompt = next((item for item in prompts if item.id == agent.prompt_id), None)
        seed = list(prompt.messages) if prompt else []
        child = ConversationThread(
            id=new_id(),
            kind="agent",
            director_id=thread.director_id,
            agent_id=agent.id,
            parent_id=thread.id,
            trace_id=trace_id,
            prompt_id=agent.prompt_id,
            api_config_id=agent.api_config_id,
            messages=[*seed, ChatMessage(role="user", content=str(arguments.get("task") or ""))],
            email=thread.email,
        )
        await repos.conversations.mutate(lambda threads: threads.append(child))
        await diagnostics.orchestration(
            "agent_delegate",
            thread.director_id,
            thread.id,
            trace_id,
            agent_id=agent.id,
            detail={"child_thread_id": child.id},
        )
        finished = await self.run_conversation(StepContext(child.id, trace_id), repos.uid)
        if finished is None or finished.status != "completed":
            error = finished.errors[-1] if finished and finished.errors else "Agent did not complete"
            return {"ok": False, "thread_id": child.id, "agent_id": agent.id, "error": error}
        answer = next(
            (item.content for item in reversed(finished.messages) if item.role == "assistant" and item.content),
            "",
        )
        return {"ok": True, "thread_id": child.id, "agent_id": agent.id, "result": answer}

    async def _workspace_call(
        self, repos: TenantRepos, thread: ConversationThread, call: ToolCall
    ) -> dict[str, Any]:
        workspace_id = thread.id if thread.kind == "director" else (thread.parent_id or "")
        store = WorkspaceStore(repos)
        provenance = Provenance(by=thread.kind, agent_id=thread.agent_id, tool=call.name)
        try:
            arguments = _arguments(call)
            if call.name == "workspace_add_item":
                item = await store.add_item(
                    workspace_id,
                    data=arguments.get("data", ""),
                    label=arguments.get("label"),
                    description=arguments.get("description"),
                    tags=arguments.get("tags"),
                    mime_type=arguments.get("mime_type"),
                    encoding=arguments.get("encoding") or "utf8",
                    provenance=provenance,
                )
                return {"ok": True, "item": item.to_dict()}
            if call.name == "workspace_list_items":
                items = await store.list_items(workspace_id)
                return {"ok": True, "items": [item.to_dict() for item in items]}
            item_id = str(arguments.get("id") or "")
            if call.name == "workspace_get_item":
                return {"ok": True, "item": (await store.get_item(workspace_id, item_id)).to_dict()}
            if call.name == "workspace_update_item":
                expected = arguments.get("expected_revision")
                if expected is None:
                    expected = (await store.get_item(workspace_id, item_id)).revision
                item = await store.update_item(
                    workspace_id, item_id, int(expected), dict(arguments.get("patch") or {})
                )
                return {"ok": True, "item": item.to_dict()}
            deleted = await store.delete_item(
                workspace_id, item_id, hard=bool(arguments.get("hard_delete", False))
            )
            return {"ok": True, "item": deleted.to_dict() if deleted else None}
        except MailDirectorError as exc:
            return {"ok": False, "error": str(exc)}


class ThreadExecutor:
    """Summary: Per-tenant fire-and-forget runner for conversation threads.

    Importance: Email processing hands threads off without waiting on model calls.
    Alternatives: Run orchestration inline while processing each email.
    """

    def __init__(self, orchestrator: ConversationOrchestrator, uid: str) -> None:
        self._orchestrator = orchestrator
        self._uid = uid
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, thread_id: str, trace_id: str | None = None) -> asyncio.Task:
        """Schedule a thread to run to completion in the background."""

        task = asyncio.create_task(self._run(thread_id, trace_id), name=f"thread-{self._uid}-{thread_id}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    async def drain(self) -> None:
        """Wait until every submitted thread has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, thread_id: str, trace_id: str | None) -> None:
        try:
            await self._orchestrator.run_conversation(StepContext(thread_id, trace_id), self._uid)
        except MailDirectorError as exc:
            logger.error("Orchestration for %s/%s failed: %s", self._uid, thread_id, exc)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Thread task %s crashed.", task.get_name(), exc_info=task.exception())


def _lock_key(uid: str, thread_id: str) -> str:
    return f"{uid}:{thread_id}"


def _arguments(call: ToolCall) -> dict[str, Any]:
    try:
        parsed = json.loads(call.arguments or "{}")
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Tool arguments for {call.name} are not valid JSON", field="arguments") from exc
    if not isinstance(parsed, dict):
        raise ValidationError(f"Tool arguments for {call.name} must be an object", field="arguments")
    return parsed


def _index_of(threads: list[ConversationThread], thread_id: str) -> int | None:
    return next((index for index, item in enumerate(threads) if item.id == thread_id), None)


async def _load_thread(repos: TenantRepos, thread_id: str) -> ConversationThread:
    threads = await repos.conversations.all()
    index = _index_of(threads, thread_id)
    if index is None:
        raise NotFoundError("conversation", thread_id)
    return threads[index]


async def _persist(repos: TenantRepos, thread: ConversationThread, finalize: bool) -> ConversationThread:
    def change(threads: list[ConversationThread]) -> ConversationThread:
        index = _index_of(threads, thread.id)
        if index is None:
            logger.info("Thread %s was removed while running; dropping its update.", thread.id)
            return thread
        threads[index] = thread
        if finalize:
            _finalize_tree(threads, thread.id)
        return threads[index]

    if finalize:
        async with repos.workspace_items.lock:
            return await repos.conversations.mutate(change)
    return await repos.conversations.mutate(change)


def _finalize_tree(threads: list[ConversationThread], root_id: str) -> None:
    """Mark a thread and all of its transitive children finalized, in place."""

    closure = descendant_closure(threads, {root_id})
    now = utc_now()
    for index, item in enumerate(threads):
        if item.id not in closure or item.finalized:
            continue
        status = "completed" if item.status == "ongoing" else item.status
        threads[index] = replace(item, finalized=True, status=status, ended_at=item.ended_at or now)
