"""
Main chat pipeline — one conversational turn from user message to answer.

Flow:
  1. Bound the turn with a deadline (default 60s)
  2. Fan out retrieval: embed the message, recent turns, structured facts
  3. If the embedding landed, fetch semantically similar turns
  4. Compose the memory block and the prompt stack
  5. Call the model; on a TOOL: reply run the tool and call once more
  6. Persist both turns outside the deadline, shielded from cancellation

Retrieval is best-effort: every fetch returns a Retrieved(value, found) pair
and a failure only removes that section from the memory block.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NamedTuple, Optional

from config import META_RESPONSE_RAW, META_TOOL_USED, TOOL_MARKER
from core.prompt_builder import PromptBuilder
from core.prompts import build_memory_block, tool_result_prompt
from inference.base import ModelService, ModelServiceError
from memory import ConversationMemory, HistoryItem
from models import ModelResponse, TurnTrace
from settings import Settings
from tools import ToolDispatcher

logger = logging.getLogger(__name__)


class TurnError(Exception):
    """A turn failed and produced no answer."""
    pass


class PersistenceError(TurnError):
    """The answer was produced but the turn could not be stored."""
    pass


class Retrieved(NamedTuple):
    value: Any = None
    found: bool = False


ABSENT = Retrieved()


def parse_tool_call(text: str) -> Optional[tuple[str, list[str]]]:
    """Return (tool_name, args) when the reply is a tool request, else None.

    A request is a reply whose first whitespace-delimited token starts with
    the TOOL: marker (case-sensitive). A bare marker with no name is text.
    """
    parts = text.strip().split()
    if not parts or not parts[0].startswith(TOOL_MARKER):
        return None
    name = parts[0][len(TOOL_MARKER):]
    if not name:
        return None
    return name, parts[1:]


async def best_effort(label: str, awaitable) -> Retrieved:
    """Await a retrieval step, downgrading any failure to ABSENT."""
    try:
        return Retrieved(await awaitable, True)
    except Exception as e:
        logger.debug("Retrieval step '%s' unavailable: %s", label, e)
        return ABSENT


@dataclass
class MemoryContext:
    embedding: Retrieved = ABSENT
    recent: list[HistoryItem] = field(default_factory=list)
    facts: dict[str, str] = field(default_factory=dict)
    similar: list[HistoryItem] = field(default_factory=list)

    @property
    def block(self) -> str:
        return build_memory_block(self.recent, self.facts, self.similar)


async def gather_memory(model_service: ModelService, memory: ConversationMemory,
                        settings: Settings, session_id: str, text: str) -> MemoryContext:
    """Hybrid retrieval shared by the pipeline and the router."""
    embedding, recent, facts = await asyncio.gather(
        best_effort("embedding", model_service.embed(settings.models.embedding, text)),
        best_effort("recent", memory.recent(session_id, settings.memory.depth)),
        best_effort("facts", memory.derive_facts(session_id)),
    )
    similar = ABSENT
    if embedding.found:
        similar = await best_effort(
            "similarity",
            memory.similarity_search(session_id, embedding.value, settings.memory.semantic_top_k),
        )
    return MemoryContext(
        embedding=embedding,
        recent=recent.value if recent.found else [],
        facts=facts.value if facts.found else {},
        similar=similar.value if similar.found else [],
    )


def _consume_task_exception(task: asyncio.Task):
    # _persist already logged the failure; retrieving it keeps asyncio quiet.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Persistence task finished with %s", exc)


def read_prompt_file(path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise TurnError(f"cannot read prompt file {path}: {e}") from e


class ChatPipeline:
    """Runs single turns against the model with memory and tool support."""

    def __init__(self, model_service: ModelService, memory: ConversationMemory,
                 dispatcher: ToolDispatcher, settings: Settings):
        self.model_service = model_service
        self.memory = memory
        self.dispatcher = dispatcher
        self.settings = settings
        self._pending: set[asyncio.Task] = set()

    async def run(self, session_id: str, base_prompt_path, user_message: str,
                  verbose: bool = False, extra_prompts: Optional[list[str]] = None,
                  timeout: Optional[float] = None) -> str:
        """Run one turn and return the answer, or the JSON trace when verbose.

        Raises:
            TurnError: pinned file unreadable, model failure or deadline hit.
            PersistenceError: the turn could not be stored.
        """
        trace = await self.run_turn(session_id, base_prompt_path, user_message,
                                    extra_prompts, timeout)
        return trace.to_json() if verbose else trace.final_text

    async def run_turn(self, session_id: str, base_prompt_path, user_message: str,
                       extra_prompts: Optional[list[str]] = None,
                       timeout: Optional[float] = None) -> TurnTrace:
        """Like run() but returns the structured trace."""
        trace, user_embedding, response = await self.converse(
            session_id, base_prompt_path, user_message, extra_prompts, timeout,
        )
        await self.persist(session_id, user_message, user_embedding, trace, response)
        return trace

    async def converse(self, session_id: str, base_prompt_path, user_message: str,
                       extra_prompts: Optional[list[str]] = None,
                       timeout: Optional[float] = None):
        """Deadline-bounded part of a turn: retrieval, model calls, tools."""
        if not timeout or timeout <= 0:
            timeout = self.settings.turn_timeout
        try:
            return await asyncio.wait_for(
                self._converse(session_id, base_prompt_path, user_message, extra_prompts or []),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise TurnError(f"turn exceeded its {timeout:.0f}s deadline") from e

    async def _converse(self, session_id: str, base_prompt_path, user_message: str,
                        extra_prompts: list[str]) -> tuple[TurnTrace, Optional[list[float]], ModelResponse]:
        pinned = read_prompt_file(base_prompt_path)
        ctx = await gather_memory(self.model_service, self.memory, self.settings,
                                  session_id, user_message)
        memory_block = ctx.block
        model = self.settings.models.chat

        def stack() -> PromptBuilder:
            return (PromptBuilder()
                    .with_cached_context(pinned)
                    .with_system_prompt(memory_block)
                    .with_system_prompts(extra_prompts))

        response = await self._respond(stack().build(model, user_message))
        trace = TurnTrace(final_text=response.output_text)

        call = parse_tool_call(response.output_text)
        if call is not None:
            name, args = call
            trace.tool_requested = name
            trace.tool_args = args or None
            tool = self.dispatcher.get(name)
            if tool is None:
                logger.info("Model requested unknown tool '%s'", name)
                trace.tool_output = f"tool not found: {name}"
            else:
                trace.tool_output = await self.dispatcher.execute(tool, args, user_message)
                follow_up = stack().with_system_prompt(tool_result_prompt(name, trace.tool_output))
                response = await self._respond(follow_up.build(model, user_message))
                trace.final_text = response.output_text

        embedding = ctx.embedding.value if ctx.embedding.found else None
        return trace, embedding, response

    async def _respond(self, request) -> ModelResponse:
        try:
            return await self.model_service.respond(request)
        except ModelServiceError as e:
            raise TurnError(f"model call failed: {e}") from e

    # ── Persistence ──

    async def persist(self, session_id: str, user_message: str,
                      user_embedding: Optional[list[float]], trace: TurnTrace,
                      response: ModelResponse):
        """Store both turns. Runs to completion even if the caller is cancelled."""
        task = asyncio.ensure_future(
            self._persist(session_id, user_message, user_embedding, trace, response)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(_consume_task_exception)
        await asyncio.shield(task)

    async def _persist(self, session_id: str, user_message: str,
                       user_embedding: Optional[list[float]], trace: TurnTrace,
                       response: ModelResponse):
        async def save_user():
            await self.memory.append(session_id, "user", user_message, user_embedding)

        async def save_assistant():
            emb = await best_effort(
                "answer embedding",
                self.model_service.embed(self.settings.models.embedding, trace.final_text),
            )
            message_id = await self.memory.append(
                session_id, "assistant", trace.final_text, emb.value if emb.found else None,
            )
            await self.memory.attach_metadata(message_id, META_RESPONSE_RAW, response.raw or {})
            if trace.tool_requested:
                await self.memory.attach_metadata(message_id, META_TOOL_USED, trace.tool_record())

        results = await asyncio.gather(save_user(), save_assistant(), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Failed to persist turn for session %s: %s", session_id, result)
                raise PersistenceError(f"failed to persist turn: {result}") from result

    async def drain(self):
        """Wait for in-flight persistence tasks."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
