"""
AgentCore — composition root for the conversational agent.

Wires the pieces together from Settings:
  - Model service: OpenAI-compatible HTTP client (responses + embeddings)
  - Memory: process-wide SQLite conversation store
  - Tools: YAML catalog plus registered Python scripts
  - ChatPipeline: single turn with memory and tool support
  - PromptRouter: optional specialized-prompt selection before a turn
"""

import logging
from pathlib import Path
from typing import Optional

from core.chat_pipeline import ChatPipeline
from core.routing import PromptRouter
from inference import ModelService, OpenAICompatService
from memory import ConversationMemory, init_memory
from settings import Settings, get_settings
from tools import ToolCatalog, ToolDispatcher, load_tool_catalog
from tools_scripting import ScriptFn, ScriptRegistry

logger = logging.getLogger(__name__)


class AgentCore:
    def __init__(self, settings: Optional[Settings] = None,
                 model_service: Optional[ModelService] = None,
                 memory: Optional[ConversationMemory] = None,
                 catalog: Optional[ToolCatalog] = None,
                 scripts: Optional[ScriptRegistry] = None):
        self.settings = settings or get_settings()
        s = self.settings

        self.model_service = model_service or OpenAICompatService(
            api_key=s.model_service.api_key,
            base_url=s.model_service.base_url,
            timeout=s.model_service.timeout,
            max_attempts=s.model_service.max_attempts,
            backoff_seconds=s.model_service.backoff_seconds,
        )
        self.memory = memory or init_memory(
            s.memory.db_path, s.memory.embedding_dim, s.memory.fact_tool,
        )
        self.scripts = scripts or ScriptRegistry()
        self.catalog = catalog if catalog is not None else self._load_catalog(s.tools_path)
        self.dispatcher = ToolDispatcher(self.catalog, self.model_service, self.scripts)
        self.pipeline = ChatPipeline(self.model_service, self.memory, self.dispatcher, s)
        self.router = PromptRouter(self.pipeline, self.model_service, self.memory, s)

    @staticmethod
    def _load_catalog(path: str) -> ToolCatalog:
        if not Path(path).exists():
            logger.warning("Tool catalog %s not found, running without tools", path)
            return ToolCatalog()
        return load_tool_catalog(path)

    def register_script(self, name: str, fn: ScriptFn):
        """Expose a Python callable to ``script`` tools."""
        self.scripts.register(name, fn)

    async def run(self, session_id: str, base_prompt_path, user_message: str,
                  verbose: Optional[bool] = None, extra_prompts: Optional[list[str]] = None,
                  timeout: Optional[float] = None) -> str:
        if verbose is None:
            verbose = self.settings.verbose
        return await self.pipeline.run(session_id, base_prompt_path, user_message,
                                       verbose=verbose, extra_prompts=extra_prompts,
                                       timeout=timeout)

    async def route_and_run(self, session_id: str, base_prompt_path, user_message: str,
                            router_path=None, verbose: Optional[bool] = None,
                            extra_prompts: Optional[list[str]] = None,
                            timeout: Optional[float] = None) -> str:
        if verbose is None:
            verbose = self.settings.verbose
        return await self.router.route_and_run(session_id, base_prompt_path, user_message,
                                               router_path=router_path, verbose=verbose,
                                               extra_prompts=extra_prompts, timeout=timeout)

    async def shutdown(self):
        """Wait for pending persistence and release the model-service client."""
        await self.pipeline.drain()
        await self.model_service.aclose()
        logger.info("AgentCore shut down")
