"""Tests for MCP server tools using FastMCP in-memory testing."""

import asyncio
import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import anyio
import pytest
from conftest import FakePageFetcher, FakeSearchBackend, ScriptedTextGenerator, make_options
from fastmcp import Client

from mcp_server_deep_research import server as server_module
from mcp_server_deep_research.exceptions import LLMProviderError
from mcp_server_deep_research.observability import ResearchRunStore, RunStatus
from mcp_server_deep_research.research.machine import ResearchMachine
from mcp_server_deep_research.research.store import ResearchSessionRegistry
from mcp_server_deep_research.server import ResearchAdapters, serve, stop_runs_on_shutdown

QUESTION = "How do solid-state batteries work?"


class AdapterBox:
    """Adapter factory double; keeps the last adapters handed out."""

    def __init__(self, fetcher: FakePageFetcher | None = None, fail_with: Exception | None = None):
        self.generator = ScriptedTextGenerator()
        self.search_backend = FakeSearchBackend()
        self.page_fetcher = fetcher or FakePageFetcher()
        self.fail_with = fail_with
        self.opened = 0

    @asynccontextmanager
    async def __call__(self):
        if self.fail_with is not None:
            raise self.fail_with
        self.opened += 1
        yield ResearchAdapters(self.generator, self.search_backend, self.page_fetcher)


@pytest.fixture
def run_store(tmp_path) -> ResearchRunStore:
    return ResearchRunStore(db_path=tmp_path / "runs.db")


@pytest.fixture
def adapters() -> AdapterBox:
    return AdapterBox()


@pytest.fixture
async def client(run_store, adapters, tmp_path, monkeypatch) -> AsyncGenerator[Client, None]:
    monkeypatch.setattr(server_module.settings.server, "results_dir", str(tmp_path / "reports"))
    app = serve(run_store=run_store, adapter_factory=adapters)
    async with Client(app) as client:
        yield client


def _text(result) -> str:
    return result.content[0].text


async def _wait_for_pending(client: Client) -> dict:
    with anyio.fail_after(5):
        while True:
            status = json.loads(_text(await client.call_tool("research_status", {})))
            for run in status["runs"]:
                if run["pending_action"]:
                    return run
            await asyncio.sleep(0.01)


class TestListTools:
    @pytest.mark.anyio
    async def test_list_tools(self, client: Client):
        tools = await client.list_tools()
        assert {tool.name for tool in tools} == {
            "run_deep_research",
            "research_respond",
            "research_status",
            "research_stop",
            "health_check",
            "task_list",
            "task_get",
            "task_cancel",
        }


class TestRunDeepResearch:
    @pytest.mark.anyio
    async def test_returns_report_and_records_run(self, client: Client, run_store, adapters, tmp_path):
        result = await client.call_tool(
            "run_deep_research",
            {"question": QUESTION, "max_iterations": 1, "engines": ["google", "bing"]},
        )

        markdown = _text(result)
        assert markdown.startswith("# Solid-State Batteries")
        assert "## Sources" in markdown
        assert adapters.opened == 1

        [run] = await run_store.get_run_history()
        assert run.status == RunStatus.COMPLETED
        assert run.report_title == "Solid-State Batteries"
        assert run.progress_percent == 100
        assert run.input_params["max_iterations"] == 1
        assert run.result.endswith(".md")

        saved = list((tmp_path / "reports").glob("*.md"))
        assert len(saved) == 1
        assert saved[0].with_suffix(".json").exists()

    @pytest.mark.anyio
    async def test_planning_failure_returns_error(self, client: Client, run_store, adapters):
        adapters.generator = ScriptedTextGenerator(plan="not a plan")

        result = await client.call_tool("run_deep_research", {"question": QUESTION, "max_iterations": 1})

        assert _text(result).startswith("Error: Planning failed")
        [run] = await run_store.get_run_history()
        assert run.status == RunStatus.FAILED

    @pytest.mark.anyio
    async def test_invalid_engine_is_rejected(self, client: Client, run_store):
        result = await client.call_tool("run_deep_research", {"question": QUESTION, "engines": ["altavista"]})

        assert _text(result).startswith("Error: Invalid research options")
        assert await run_store.get_run_history() == []

    @pytest.mark.anyio
    async def test_llm_configuration_error(self, run_store, tmp_path):
        app = serve(run_store=run_store, adapter_factory=AdapterBox(fail_with=LLMProviderError("API key required")))

        async with Client(app) as client:
            result = await client.call_tool("run_deep_research", {"question": QUESTION, "max_iterations": 1})

        assert _text(result) == "Error: API key required"
        [run] = await run_store.get_run_history()
        assert run.status == RunStatus.FAILED

    @pytest.mark.anyio
    async def test_plan_gate_answered_with_research_respond(self, client: Client, run_store):
        call = asyncio.create_task(
            client.call_tool(
                "run_deep_research",
                {"question": QUESTION, "max_iterations": 1, "require_plan_approval": True},
            )
        )

        pending = await _wait_for_pending(client)
        assert pending["phase"] == "waiting"
        assert pending["pending_action"]["type"] == "approve_plan"
        assert (await run_store.get_run(pending["run_id"])).status == RunStatus.WAITING

        answer = json.loads(_text(await client.call_tool("research_respond", {"run_id": pending["run_id"][:8], "decision": "approve"})))
        assert answer == {"success": True, "run_id": pending["run_id"][:8], "answered": "approve_plan"}

        result = await call
        assert _text(result).startswith("# Solid-State Batteries")

    @pytest.mark.anyio
    async def test_research_stop_cancels_waiting_run(self, client: Client, run_store):
        call = asyncio.create_task(
            client.call_tool("run_deep_research", {"question": QUESTION, "require_plan_approval": True})
        )
        pending = await _wait_for_pending(client)

        stopped = json.loads(_text(await client.call_tool("research_stop", {"run_id": pending["run_id"]})))
        assert stopped["success"] is True

        assert _text(await call) == "Research cancelled."
        run = await run_store.get_run(pending["run_id"])
        assert run.status == RunStatus.CANCELLED

    @pytest.mark.anyio
    async def test_task_cancel_ends_running_run(self, run_store, tmp_path):
        block = asyncio.Event()
        box = AdapterBox(fetcher=FakePageFetcher(block=block))
        app = serve(run_store=run_store, adapter_factory=box)

        async with Client(app) as client:
            call = asyncio.create_task(client.call_tool("run_deep_research", {"question": QUESTION}))
            with anyio.fail_after(5):
                await box.page_fetcher.started.wait()
            [running] = await run_store.get_running_runs()

            cancelled = json.loads(_text(await client.call_tool("task_cancel", {"task_id": running.run_id[:8]})))
            assert cancelled["success"] is True
            assert _text(await call) == "Research cancelled."

        assert (await run_store.get_run(running.run_id)).status == RunStatus.CANCELLED


class TestControlTools:
    @pytest.mark.anyio
    async def test_respond_to_unknown_run(self, client: Client):
        result = json.loads(_text(await client.call_tool("research_respond", {"run_id": "nope", "decision": "approve"})))
        assert result["success"] is False
        assert "not found" in result["error"]

    @pytest.mark.anyio
    async def test_stop_unknown_run(self, client: Client):
        result = json.loads(_text(await client.call_tool("research_stop", {"run_id": "nope"})))
        assert result["success"] is False

    @pytest.mark.anyio
    async def test_status_with_no_runs(self, client: Client):
        result = json.loads(_text(await client.call_tool("research_status", {})))
        assert result == {"runs": [], "count": 0}


class TestObservabilityTools:
    @pytest.mark.anyio
    async def test_health_check(self, client: Client):
        data = json.loads(_text(await client.call_tool("health_check", {})))
        assert data["status"] == "healthy"
        assert data["running_runs"] == 0
        assert data["memory_mb"] > 0
        assert "stats" in data

    @pytest.mark.anyio
    async def test_task_list_and_get(self, client: Client):
        await client.call_tool("run_deep_research", {"question": QUESTION, "max_iterations": 1})

        listed = json.loads(_text(await client.call_tool("task_list", {"status_filter": "completed"})))
        assert listed["count"] == 1
        run_prefix = listed["tasks"][0]["run_id"]

        details = json.loads(_text(await client.call_tool("task_get", {"task_id": run_prefix})))
        assert details["question"] == QUESTION
        assert details["status"] == "completed"
        assert details["progress"]["percent"] == 100
        assert details["report_title"] == "Solid-State Batteries"

    @pytest.mark.anyio
    async def test_task_list_rejects_bad_status(self, client: Client):
        result = await client.call_tool("task_list", {"status_filter": "exploded"})
        assert _text(result).startswith("Error: Invalid status")

    @pytest.mark.anyio
    async def test_task_get_unknown(self, client: Client):
        result = await client.call_tool("task_get", {"task_id": "missing"})
        assert _text(result) == "Error: Task 'missing' not found"

    @pytest.mark.anyio
    async def test_task_cancel_unknown(self, client: Client):
        result = json.loads(_text(await client.call_tool("task_cancel", {"task_id": "missing"})))
        assert result["success"] is False


class TestShutdown:
    @pytest.mark.anyio
    async def test_lifespan_stops_live_runs(self):
        registry = ResearchSessionRegistry()
        fetcher = FakePageFetcher(block=asyncio.Event())
        machine = ResearchMachine(ScriptedTextGenerator(), FakeSearchBackend(), fetcher, make_options())
        session = registry.register("run-1", QUESTION, machine)

        async with stop_runs_on_shutdown(registry)(server_module.server_instance):
            session.task = asyncio.create_task(machine.run(QUESTION))
            await fetcher.started.wait()
            assert session.is_active

        assert session.task.done()
        assert session.task.result().cancelled
