"""
Tests for PromptRouter — specialized prompt selection.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import reply


def _router(model_service, memory_store, settings):
    from core.chat_pipeline import ChatPipeline
    from core.routing import PromptRouter
    from tools import ToolCatalog, ToolDispatcher

    dispatcher = ToolDispatcher(ToolCatalog(), model_service)
    pipeline = ChatPipeline(model_service, memory_store, dispatcher, settings)
    return PromptRouter(pipeline, model_service, memory_store, settings)


def _texts(request):
    return [m.content[0].text for m in request.input]


class TestChoiceNormalization:
    """Test cleanup of router replies."""

    def test_case_and_trailing_lines(self):
        from core.routing import normalize_choice

        assert normalize_choice("  Tecnico.MD\nbecause it is technical") == "tecnico.md"

    def test_first_token_and_punctuation(self):
        from core.routing import normalize_choice

        assert normalize_choice('"financeiro". I think') == "financeiro"
        assert normalize_choice("`geral.md`") == "geral.md"
        assert normalize_choice("“tecnico”") == "tecnico"

    def test_match_with_and_without_extension(self):
        from core.routing import match_candidate

        candidates = ["financeiro.md", "geral.md", "tecnico.md"]
        assert match_candidate("Tecnico.MD\n", candidates) == "tecnico.md"
        assert match_candidate("financeiro", candidates) == "financeiro.md"
        assert match_candidate("juridico.md", candidates) is None
        assert match_candidate("", candidates) is None

    def test_fallback_prefers_default(self):
        from core.routing import fallback_candidate

        assert fallback_candidate(["a.md", "Geral.md"], "geral.md") == "Geral.md"
        assert fallback_candidate(["b.md", "c.md"], "geral.md") == "b.md"


class TestCandidates:
    """Test prompt file discovery."""

    def test_sorted_and_filtered(self, prompt_dir):
        from core.routing import list_prompt_candidates

        (prompt_dir / "Extra.MD").write_text("x")
        (prompt_dir / "sub.md").mkdir()

        names = list_prompt_candidates(prompt_dir, exclude="router.md")
        assert names == ["Extra.MD", "financeiro.md", "geral.md", "tecnico.md"]

    def test_missing_directory(self, tmp_path):
        from core.chat_pipeline import TurnError
        from core.routing import list_prompt_candidates

        with pytest.raises(TurnError):
            list_prompt_candidates(tmp_path / "nowhere")


class TestRouteAndRun:
    """Test routed turns end to end."""

    @pytest.mark.asyncio
    async def test_disabled_delegates(self, model_service, memory_store, settings, base_prompt):
        router = _router(model_service, memory_store, settings)

        answer = await router.route_and_run("s1", base_prompt, "q", router_path=None)

        assert answer == "hello"
        assert model_service.respond.await_count == 1

    @pytest.mark.asyncio
    async def test_chosen_prompt_appended_last(self, model_service, memory_store, settings,
                                               base_prompt, prompt_dir):
        model_service.respond.side_effect = [reply("Tecnico.MD\n"), reply("Restart the modem.")]
        router = _router(model_service, memory_store, settings)

        answer = await router.route_and_run("s1", base_prompt, "my internet is down",
                                            router_path=prompt_dir / "router.md",
                                            extra_prompts=["EXTRA"])

        assert answer == "Restart the modem."
        routing, turn = [c.args[0] for c in model_service.respond.await_args_list]

        assert routing.max_output_tokens == 32
        system = _texts(routing)[0]
        assert system.startswith("Route billing questions.")
        assert "- financeiro.md\n- geral.md\n- tecnico.md\n" in system
        assert "- router.md" not in system
        assert _texts(routing)[1] == "my internet is down"

        assert _texts(turn) == ["You are a billing assistant.", "EXTRA", "TECH PROMPT",
                                "my internet is down"]

    @pytest.mark.asyncio
    async def test_only_the_turn_is_persisted(self, model_service, memory_store, settings,
                                              base_prompt, prompt_dir):
        model_service.respond.side_effect = [reply("geral"), reply("ok")]
        router = _router(model_service, memory_store, settings)

        await router.route_and_run("s1", base_prompt, "hi", router_path=prompt_dir / "router.md")

        items = await memory_store.recent("s1", 10)
        assert [(h.role, h.text) for h in items] == [("user", "hi"), ("assistant", "ok")]

    @pytest.mark.asyncio
    async def test_invalid_answer_without_default(self, model_service, memory_store, settings,
                                                  base_prompt, prompt_dir):
        """No match and no geral.md falls back to the first candidate."""
        (prompt_dir / "geral.md").unlink()
        model_service.respond.side_effect = [reply("juridico"), reply("ok")]
        router = _router(model_service, memory_store, settings)

        out = await router.route_and_run("s1", base_prompt, "q",
                                         router_path=prompt_dir / "router.md", verbose=True)

        trace = json.loads(out)
        assert trace["chosen"] == "financeiro.md"
        assert trace["router_raw"] == "juridico"
        assert trace["router_error"] == "router returned an invalid option"
        turn = model_service.respond.await_args.args[0]
        assert _texts(turn)[-2] == "FINANCE PROMPT"

    @pytest.mark.asyncio
    async def test_transport_error_falls_back(self, model_service, memory_store, settings,
                                              base_prompt, prompt_dir):
        from inference.base import ModelServiceError

        model_service.respond.side_effect = [ModelServiceError("connection refused"), reply("ok")]
        router = _router(model_service, memory_store, settings)

        out = await router.route_and_run("s1", base_prompt, "q",
                                         router_path=prompt_dir / "router.md", verbose=True)

        trace = json.loads(out)
        assert trace["chosen"] == "geral.md"
        assert trace["router_error"] == "connection refused"
        assert "router_raw" not in trace
        assert trace["final_text"] == "ok"

    @pytest.mark.asyncio
    async def test_unreadable_choice_falls_back(self, model_service, memory_store, settings,
                                                base_prompt, prompt_dir):
        real_read_text = Path.read_text

        def read_text(self, *args, **kwargs):
            if self.name == "tecnico.md":
                raise OSError("gone")
            return real_read_text(self, *args, **kwargs)

        model_service.respond.side_effect = [reply("tecnico.md"), reply("ok")]
        router = _router(model_service, memory_store, settings)

        with patch.object(Path, "read_text", read_text):
            out = await router.route_and_run("s1", base_prompt, "q",
                                             router_path=prompt_dir / "router.md", verbose=True)

        trace = json.loads(out)
        assert trace["chosen"] == "geral.md"
        assert trace["router_error"].startswith("chosen prompt not found")
        assert trace["special_prompt"] == str(prompt_dir / "geral.md")
        turn = model_service.respond.await_args.args[0]
        assert _texts(turn)[-2] == "GENERAL PROMPT"

    @pytest.mark.asyncio
    async def test_unreadable_choice_and_fallback(self, model_service, memory_store, settings,
                                                  base_prompt, prompt_dir):
        from core.chat_pipeline import TurnError

        real_read_text = Path.read_text

        def read_text(self, *args, **kwargs):
            if self.name in ("tecnico.md", "geral.md"):
                raise OSError("gone")
            return real_read_text(self, *args, **kwargs)

        model_service.respond.side_effect = [reply("tecnico.md"), reply("ok")]
        router = _router(model_service, memory_store, settings)

        with patch.object(Path, "read_text", read_text):
            with pytest.raises(TurnError):
                await router.route_and_run("s1", base_prompt, "q",
                                           router_path=prompt_dir / "router.md")
        assert model_service.respond.await_count == 1

    @pytest.mark.asyncio
    async def test_verbose_merged_trace(self, model_service, memory_store, settings,
                                        base_prompt, prompt_dir):
        model_service.respond.side_effect = [reply("financeiro.md"), reply("TOOL:weather rio")]
        router = _router(model_service, memory_store, settings)

        out = await router.route_and_run("s1", base_prompt, "q",
                                         router_path=prompt_dir / "router.md", verbose=True)

        trace = json.loads(out)
        assert trace["router_enabled"] is True
        assert trace["router_path"] == str(prompt_dir / "router.md")
        assert trace["base_prompt"] == str(base_prompt)
        assert trace["user_message"] == "q"
        assert trace["candidates"] == ["financeiro.md", "geral.md", "tecnico.md"]
        assert trace["special_prompt"] == str(prompt_dir / "financeiro.md")
        assert trace["tool_requested"] == "weather"
        assert trace["tool_output"] == "tool not found: weather"
        assert trace["final_text"] == "TOOL:weather rio"

    @pytest.mark.asyncio
    async def test_routing_query_carries_memory(self, model_service, memory_store, settings,
                                                base_prompt, prompt_dir):
        router = _router(model_service, memory_store, settings)
        await router.route_and_run("s1", base_prompt, "first")

        model_service.respond.side_effect = [reply("geral.md"), reply("ok")]
        await router.route_and_run("s1", base_prompt, "second",
                                   router_path=prompt_dir / "router.md")

        routing = model_service.respond.await_args_list[-2].args[0]
        query = _texts(routing)[1]
        assert query.startswith("== Short-term memory")
        assert query.endswith("\nUser now: second")

    @pytest.mark.asyncio
    async def test_missing_router_file(self, model_service, memory_store, settings,
                                       base_prompt, prompt_dir):
        from core.chat_pipeline import TurnError

        router = _router(model_service, memory_store, settings)
        with pytest.raises(TurnError):
            await router.route_and_run("s1", base_prompt, "q",
                                       router_path=prompt_dir / "absent.md")
        model_service.respond.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_candidates(self, model_service, memory_store, settings,
                                 base_prompt, tmp_path):
        from core.chat_pipeline import TurnError

        lonely = tmp_path / "lonely"
        lonely.mkdir()
        (lonely / "router.md").write_text("route")
        router = _router(model_service, memory_store, settings)

        with pytest.raises(TurnError):
            await router.route_and_run("s1", base_prompt, "q", router_path=lonely / "router.md")
