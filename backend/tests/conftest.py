"""
Test fixtures for the agentkit test suite.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add backend to path
BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

EMBED_DIM = 3


def reply(text: str, raw: dict = None):
    """Build a ModelResponse as the model service would return it."""
    from models import ModelResponse
    return ModelResponse(id="resp_1", output_text=text, raw=raw or {"id": "resp_1"})


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary store with 3-dimensional embeddings."""
    from settings import MemoryConfig, Settings
    return Settings(
        memory=MemoryConfig(db_path=str(tmp_path / "memory.db"), embedding_dim=EMBED_DIM,
                            semantic_top_k=5, depth=4, fact_tool="db_boleto"),
        tools_path=str(tmp_path / "tools.yml"),
        turn_timeout=5.0,
    )


@pytest.fixture
def memory_store(settings):
    """A fresh ConversationMemory on a temp database."""
    from memory import ConversationMemory
    store = ConversationMemory(settings.memory.db_path, EMBED_DIM, settings.memory.fact_tool)
    yield store
    store.close()


@pytest.fixture
def model_service():
    """Model service double: replies 'hello', embeds everything to [1, 0, 0]."""
    from inference.base import ModelService
    service = MagicMock(spec=ModelService)
    service.respond = AsyncMock(return_value=reply("hello"))
    service.embed = AsyncMock(return_value=[1.0, 0.0, 0.0])
    service.aclose = AsyncMock()
    return service


@pytest.fixture
def base_prompt(tmp_path):
    """Pinned context file."""
    path = tmp_path / "base.md"
    path.write_text("You are a billing assistant.", encoding="utf-8")
    return path


@pytest.fixture
def prompt_dir(tmp_path):
    """Router directory with instructions and three specialized prompts."""
    directory = tmp_path / "prompts"
    directory.mkdir()
    (directory / "router.md").write_text("Route billing questions.", encoding="utf-8")
    (directory / "financeiro.md").write_text("FINANCE PROMPT", encoding="utf-8")
    (directory / "geral.md").write_text("GENERAL PROMPT", encoding="utf-8")
    (directory / "tecnico.md").write_text("TECH PROMPT", encoding="utf-8")
    (directory / "notes.txt").write_text("not a prompt", encoding="utf-8")
    return directory
