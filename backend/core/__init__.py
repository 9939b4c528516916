"""
Core package — turn orchestration and prompt routing.

Structure:
    agent_core.py     — AgentCore composition root
    chat_pipeline.py  — ChatPipeline: one turn with memory and tools
    routing.py        — PromptRouter: specialized-prompt selection
    prompt_builder.py — ordered message stack with cache key
    prompts.py        — prompt text templates

Usage:
    from core import AgentCore
    agent = AgentCore()
    answer = await agent.run("session-1", "prompts/base.md", "hello")
"""

from core.agent_core import AgentCore
from core.chat_pipeline import ChatPipeline, PersistenceError, TurnError
from core.routing import PromptRouter

__all__ = [
    "AgentCore",
    "ChatPipeline",
    "PersistenceError",
    "PromptRouter",
    "TurnError",
]
