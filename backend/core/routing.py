"""
Prompt routing — picks one specialized prompt file before running a turn.

The router file holds free-form routing instructions. Every other prompt file
in the same directory is a candidate. The model sees the instructions, the
candidate list and a routing query (memory block + user message) and must
answer with a single file name. Anything it cannot resolve to a candidate
falls back to the default prompt (geral.md), or the first candidate.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from config import PROMPT_EXTENSION
from core.chat_pipeline import ChatPipeline, TurnError, gather_memory, read_prompt_file
from core.prompt_builder import PromptBuilder
from core.prompts import build_router_prompt, routing_query
from inference.base import ModelService, ModelServiceError
from memory import ConversationMemory
from models import RouteTrace
from settings import Settings

logger = logging.getLogger(__name__)

# Punctuation and quotes models like to wrap a file name in
_STRIP_CHARS = ".,;:!?)('\"`”’“‘"


def list_prompt_candidates(directory, exclude: str = "",
                           extension: str = PROMPT_EXTENSION) -> list[str]:
    """Sorted prompt file names in ``directory``, minus ``exclude``.

    Extension and exclusion checks are case-insensitive.
    """
    try:
        entries = list(Path(directory).iterdir())
    except OSError as e:
        raise TurnError(f"cannot list router directory {directory}: {e}") from e
    ext = extension.lower()
    excluded = exclude.lower()
    names = [
        p.name for p in entries
        if p.is_file() and p.name.lower().endswith(ext) and p.name.lower() != excluded
    ]
    return sorted(names)


def normalize_choice(raw: str) -> str:
    """Reduce a router reply to a bare lowercase token."""
    s = raw.strip().lower()
    s = s.split("\n", 1)[0].split("\r", 1)[0]
    parts = s.split()
    if parts:
        s = parts[0]
    return s.strip(_STRIP_CHARS)


def _strip_ext(name: str, ext: str) -> str:
    if name.lower().endswith(ext):
        return name[:-len(ext)]
    return name


def match_candidate(raw: str, candidates: list[str],
                    extension: str = PROMPT_EXTENSION) -> Optional[str]:
    """Resolve a router reply to a candidate, with or without the extension."""
    choice = normalize_choice(raw)
    if not choice:
        return None
    ext = extension.lower()
    with_ext = choice if choice.endswith(ext) else choice + ext
    for c in candidates:
        if c.lower() == with_ext:
            return c
    base = _strip_ext(with_ext, ext)
    for c in candidates:
        if _strip_ext(c, ext).lower() == base:
            return c
    return None


def fallback_candidate(candidates: list[str], prefer: str) -> str:
    for c in candidates:
        if c.lower() == prefer.lower():
            return c
    return candidates[0]


class PromptRouter:
    """Chooses a specialized prompt, then delegates to the chat pipeline."""

    def __init__(self, pipeline: ChatPipeline, model_service: ModelService,
                 memory: ConversationMemory, settings: Settings):
        self.pipeline = pipeline
        self.model_service = model_service
        self.memory = memory
        self.settings = settings

    async def route_and_run(self, session_id: str, base_prompt_path, user_message: str,
                            router_path=None, verbose: bool = False,
                            extra_prompts: Optional[list[str]] = None,
                            timeout: Optional[float] = None) -> str:
        """Route to a specialized prompt and run the turn with it.

        Without a router path this is a plain ChatPipeline.run(). The chosen
        prompt is appended after ``extra_prompts``. One deadline covers
        routing and the turn itself.

        Raises:
            TurnError: router file or candidates unavailable, fallback prompt
                unreadable, or any pipeline failure.
        """
        if not router_path:
            return await self.pipeline.run(
                session_id, base_prompt_path, user_message,
                verbose=verbose, extra_prompts=extra_prompts, timeout=timeout,
            )

        if not timeout or timeout <= 0:
            timeout = self.settings.turn_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        trace = RouteTrace(
            router_enabled=True,
            router_path=str(router_path),
            base_prompt=str(base_prompt_path),
            user_message=user_message,
        )
        try:
            special = await asyncio.wait_for(
                self._choose(session_id, Path(router_path), user_message, trace), timeout,
            )
        except asyncio.TimeoutError as e:
            raise TurnError(f"routing exceeded the {timeout:.0f}s deadline") from e

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise TurnError("turn deadline reached after routing")

        prompts = list(extra_prompts or []) + [special]
        turn = await self.pipeline.run_turn(
            session_id, base_prompt_path, user_message, prompts, remaining,
        )
        if not verbose:
            return turn.final_text
        trace.merge_turn(turn)
        return trace.to_json()

    async def _choose(self, session_id: str, router_path: Path, user_message: str,
                      trace: RouteTrace) -> str:
        """Pick a candidate and return its prompt text. Fills in ``trace``."""
        cfg = self.settings.router
        instructions = read_prompt_file(router_path)
        directory = router_path.parent
        candidates = list_prompt_candidates(directory, exclude=router_path.name,
                                            extension=cfg.extension)
        if not candidates:
            raise TurnError(f"no prompt candidates in {directory}")
        trace.candidates = candidates

        ctx = await gather_memory(self.model_service, self.memory, self.settings,
                                  session_id, user_message)
        query = routing_query(ctx.block, user_message)

        chosen = None
        try:
            chosen, trace.router_raw = await self.ask_router(instructions, query, candidates)
            if chosen is None:
                trace.router_error = "router returned an invalid option"
        except ModelServiceError as e:
            trace.router_error = str(e)

        if chosen is None:
            chosen = fallback_candidate(candidates, cfg.default_prompt)
            logger.info("Router fell back to %s (%s)", chosen, trace.router_error)
        else:
            logger.info("Router chose %s", chosen)

        trace.chosen = chosen
        trace.special_prompt = str(directory / chosen)
        try:
            return Path(trace.special_prompt).read_text(encoding="utf-8")
        except OSError as e:
            trace.router_error = f"chosen prompt not found: {e}"
            chosen = fallback_candidate(candidates, cfg.default_prompt)
            trace.chosen = chosen
            trace.special_prompt = str(directory / chosen)
            return read_prompt_file(trace.special_prompt)

    async def ask_router(self, instructions: str, query: str,
                         candidates: list[str]) -> tuple[Optional[str], str]:
        """Ask the model for one candidate. Returns (match or None, raw reply)."""
        request = (PromptBuilder()
                   .with_system_prompt(build_router_prompt(instructions, candidates))
                   .build(self.settings.models.chat, query,
                          max_output_tokens=self.settings.router.max_output_tokens))
        response = await self.model_service.respond(request)
        raw = response.output_text
        return match_candidate(raw, candidates, self.settings.router.extension), raw
