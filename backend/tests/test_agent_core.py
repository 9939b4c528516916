"""
Tests for AgentCore composition.
Tests wiring from settings, tool catalog handling and delegation.
"""

import pytest
from unittest.mock import patch

from conftest import reply


class TestComposition:
    """Test AgentCore construction from settings."""

    @patch("core.agent_core.init_memory")
    @patch("core.agent_core.OpenAICompatService")
    def test_builds_from_settings(self, mock_service, mock_init_memory, settings):
        """Model service and memory are created from the settings values."""
        from core import AgentCore

        settings.model_service.api_key = "sk-x"
        core = AgentCore(settings)

        mock_service.assert_called_once()
        assert mock_service.call_args.kwargs["api_key"] == "sk-x"
        mock_init_memory.assert_called_once_with(settings.memory.db_path, 3, "db_boleto")
        assert core.memory is mock_init_memory.return_value
        assert len(core.catalog) == 0

    @patch("core.agent_core.init_memory")
    def test_catalog_loaded_when_present(self, mock_init_memory, settings, model_service, tmp_path):
        from core import AgentCore

        (tmp_path / "tools.yml").write_text(
            "tools:\n  - name: interest\n    type: script\n    function: calc($1)\n"
        )
        core = AgentCore(settings, model_service=model_service)

        assert core.dispatcher.get("interest").function == "calc($1)"

    def test_injected_parts_used(self, settings, model_service, memory_store):
        from core import AgentCore
        from tools import ToolCatalog

        catalog = ToolCatalog()
        core = AgentCore(settings, model_service=model_service, memory=memory_store,
                         catalog=catalog)

        assert core.model_service is model_service
        assert core.memory is memory_store
        assert core.catalog is catalog


class TestDelegation:
    """Test the run entry points."""

    @pytest.mark.asyncio
    async def test_run_and_script_registration(self, settings, model_service, memory_store,
                                               base_prompt):
        from core import AgentCore
        from tools import ToolCatalog, ToolDefinition

        catalog = ToolCatalog([ToolDefinition(name="interest", kind="script",
                                              function="calc($1)")])
        core = AgentCore(settings, model_service=model_service, memory=memory_store,
                         catalog=catalog)
        core.register_script("calc", lambda amount: f"interest={float(amount) * 0.1:.1f}")
        model_service.respond.side_effect = [reply("TOOL:interest 50"), reply("It is 5.0")]

        answer = await core.run("s1", base_prompt, "interest on 50?")

        assert answer == "It is 5.0"
        follow_up = model_service.respond.await_args.args[0]
        assert "interest=5.0" in follow_up.input[-2].content[0].text

    @pytest.mark.asyncio
    async def test_verbose_defaults_to_settings(self, settings, model_service, memory_store,
                                                base_prompt):
        from core import AgentCore

        settings.verbose = True
        core = AgentCore(settings, model_service=model_service, memory=memory_store)

        out = await core.route_and_run("s1", base_prompt, "q")
        assert out.strip().startswith("{")

    @pytest.mark.asyncio
    async def test_shutdown_closes_service(self, settings, model_service, memory_store):
        from core import AgentCore

        core = AgentCore(settings, model_service=model_service, memory=memory_store)
        await core.shutdown()

        model_service.aclose.assert_awaited_once()
