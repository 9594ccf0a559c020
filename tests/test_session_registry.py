"""Tests for the registry of live research sessions."""

import asyncio

import pytest
from conftest import FakePageFetcher, FakeSearchBackend, ScriptedTextGenerator, make_options

from mcp_server_deep_research.research.machine import ResearchMachine
from mcp_server_deep_research.research.store import ResearchSessionRegistry


def _machine(fetcher=None, **options) -> ResearchMachine:
    return ResearchMachine(
        ScriptedTextGenerator(),
        FakeSearchBackend(),
        fetcher or FakePageFetcher(),
        make_options(**options),
    )


class TestResearchSessionRegistry:
    def test_register_get_remove(self):
        registry = ResearchSessionRegistry()
        session = registry.register("run-1", "q", _machine())

        assert registry.get("run-1") is session
        assert registry.list() == [session]
        assert not session.is_active
        assert registry.remove("run-1") is True
        assert registry.remove("run-1") is False
        assert registry.get("run-1") is None

    def test_duplicate_run_id(self):
        registry = ResearchSessionRegistry()
        registry.register("run-1", "q", _machine())
        with pytest.raises(ValueError, match="already registered"):
            registry.register("run-1", "q", _machine())

    def test_unknown_run(self):
        registry = ResearchSessionRegistry()
        assert registry.respond("missing", "approve") is False
        assert registry.stop("missing") is False

    @pytest.mark.anyio
    async def test_respond_routes_to_the_right_run(self):
        registry = ResearchSessionRegistry()
        waiting = asyncio.Event()
        gated = _machine(require_plan_approval=True, max_iterations=1)
        gated.callbacks.on_pending_action = lambda action: waiting.set()
        idle = _machine()
        session = registry.register("gated", "q", gated)
        registry.register("idle", "q", idle)

        session.task = asyncio.create_task(gated.run("q"))
        await waiting.wait()

        assert session.is_active
        assert registry.respond("idle", "approve") is False
        assert registry.respond("gated", "approve") is True
        assert (await session.task).success

    @pytest.mark.anyio
    async def test_stop_all_unwinds_every_run(self):
        registry = ResearchSessionRegistry()
        sessions = []
        for run_id in ("a", "b"):
            fetcher = FakePageFetcher(block=asyncio.Event())
            session = registry.register(run_id, "q", _machine(fetcher))
            session.task = asyncio.create_task(session.machine.run("q"))
            await fetcher.started.wait()
            sessions.append(session)

        await registry.stop_all()

        assert all(s.task.done() and s.task.result().cancelled for s in sessions)
