"""Scenario tests for routing, the turn loop, decomposition and session handling."""
from __future__ import annotations

import asyncio
import json
import time

import pytest
from pydantic import BaseModel

from conductor.config import OrchestratorSettings, ToolFailurePolicy
from conductor.core.agent_registry import AgentRegistry
from conductor.core.errors import (
    DeadlineExceeded,
    MaxTurnsExceeded,
    ModelUnavailable,
    NoAgentAvailable,
    RetryableModelError,
    StepFailed,
    ToolExecutionError,
)
from conductor.core.models import AgentDefinition, SessionStatus, ToolDefinition, TraceAction
from conductor.core.state_store import InMemoryKeyValueStore, StateStore
from conductor.core.tracing import Tracer
from conductor.orchestration.orchestrator import Orchestrator, parse_steps
from conductor.services.tools import ToolExecutor, ToolRegistry

from fakes import ScriptedGateway, call, final, tool_use


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class QueryInput(BaseModel):
    query: str


class CityInput(BaseModel):
    city: str


async def search(arguments: QueryInput) -> dict:
    await asyncio.sleep(0.2)
    return {"hits": [f"news about {arguments.query}"]}


async def get_weather(arguments: CityInput) -> str:
    await asyncio.sleep(0.2)
    return f"sunny in {arguments.city}"


async def broken(arguments: QueryInput) -> str:
    raise RuntimeError("upstream 500")


DEFAULT_TOOLS = (
    ToolDefinition(name="search", description="Search news", input_schema=QueryInput, handler=search),
    ToolDefinition(name="get_weather", description="Weather", input_schema=CityInput, handler=get_weather),
    ToolDefinition(name="broken", description="Always fails", input_schema=QueryInput, handler=broken),
)


class Runtime:
    def __init__(self, gateway, agents, tools=DEFAULT_TOOLS, **settings) -> None:
        settings.setdefault("model_backoff", 0)
        self.settings = OrchestratorSettings(**settings)
        self.gateway = gateway
        self.agents = AgentRegistry()
        for agent in agents:
            self.agents.register(agent)
        self.tools = ToolRegistry()
        for tool in tools:
            self.tools.register(tool)
        self.tracer = Tracer()
        self.store = StateStore(InMemoryKeyValueStore())
        self.orchestrator = Orchestrator(
            agents=self.agents,
            tools=self.tools,
            executor=ToolExecutor(self.tools, self.tracer),
            gateway=gateway,
            state_store=self.store,
            tracer=self.tracer,
            settings=self.settings,
        )

    def actions(self, request_id: str):
        return [event.action for event in self.tracer.get_trace(request_id)]


WRITER = AgentDefinition(name="writer", description="Writes summaries", capability_tags={"summarize", "write"})
ASSISTANT = AgentDefinition(
    name="assistant",
    description="Answers with live data",
    capability_tags={"weather"},
    tool_names={"search", "get_weather", "broken"},
)
RESEARCHER = AgentDefinition(name="researcher", description="Researches topics", capability_tags={"research"})


@pytest.mark.anyio
async def test_simple_task_completes_in_one_turn() -> None:
    runtime = Runtime(ScriptedGateway(final("X in one line")), [WRITER])

    result = await runtime.orchestrator.handle_request("summarize X", "s-1", request_id="r-1")

    assert result.output == "X in one line"
    assert result.agent_name == "writer"
    assert runtime.actions("r-1") == [TraceAction.START, TraceAction.MODEL_CALL, TraceAction.COMPLETE]

    state, found = await runtime.store.load("s-1")
    assert found
    assert state.status is SessionStatus.COMPLETED
    assert [(turn.role, turn.content) for turn in state.conversation_history] == [
        ("user", "summarize X"),
        ("assistant", "X in one line"),
    ]


@pytest.mark.anyio
async def test_two_tool_calls_run_concurrently_in_one_turn() -> None:
    gateway = ScriptedGateway(
        tool_use(call("search", "c1", query="elections"), call("get_weather", "c2", city="Lima")),
        final("Sunny, and the elections are on"),
    )
    runtime = Runtime(gateway, [ASSISTANT])

    started = time.monotonic()
    result = await runtime.orchestrator.handle_request("weather and news", "s-1", request_id="r-1")
    elapsed = time.monotonic() - started

    assert result.output == "Sunny, and the elections are on"
    assert runtime.actions("r-1") == [
        TraceAction.START,
        TraceAction.MODEL_CALL,
        TraceAction.TOOL_CALL,
        TraceAction.TOOL_CALL,
        TraceAction.MODEL_CALL,
        TraceAction.COMPLETE,
    ]
    assert elapsed < 0.38

    second_call = gateway.calls[1]
    assert sorted(second_call["tools"]) == ["broken", "get_weather", "search"]
    tool_messages = [message for message in second_call["messages"] if message["role"] == "tool"]
    assert [message["tool_call_id"] for message in tool_messages] == ["c1", "c2"]
    assert tool_messages[1]["content"] == "sunny in Lima"


@pytest.mark.anyio
async def test_turn_loop_without_end_turn_hits_max_turns() -> None:
    runtime = Runtime(ScriptedGateway(tool_use(call("search", query="again"))), [ASSISTANT], max_turns=3)

    with pytest.raises(MaxTurnsExceeded) as excinfo:
        await runtime.orchestrator.handle_request("weather forever", "s-1", request_id="r-1")

    assert runtime.actions("r-1").count(TraceAction.MODEL_CALL) == 3
    assert runtime.actions("r-1")[-1] is TraceAction.FAIL
    assert excinfo.value.trace[-1].action is TraceAction.FAIL
    state, _ = await runtime.store.load("s-1")
    assert state.status is SessionStatus.FAILED
    assert "MaxTurnsExceeded" in state.task_state["error"]


@pytest.mark.anyio
async def test_tool_failures_are_fed_back_to_the_model() -> None:
    gateway = ScriptedGateway(
        tool_use(call("broken", "c1", query="x"), call("get_weather", "c2", city="Oslo"), call("nope", "c3")),
        final("Recovered"),
    )
    runtime = Runtime(gateway, [ASSISTANT])

    result = await runtime.orchestrator.handle_request("weather please", "s-1")

    assert result.output == "Recovered"
    tool_messages = [m for m in gateway.calls[1]["messages"] if m["role"] == "tool"]
    assert json.loads(tool_messages[0]["content"])["error"] == "ToolExecutionError"
    assert tool_messages[1]["content"] == "sunny in Oslo"
    assert json.loads(tool_messages[2]["content"])["error"] == "NotFound"


@pytest.mark.anyio
async def test_abort_policy_surfaces_tool_failure() -> None:
    gateway = ScriptedGateway(tool_use(call("broken", query="x")), final("unreachable"))
    runtime = Runtime(gateway, [ASSISTANT], tool_failure_policy=ToolFailurePolicy.ABORT)

    with pytest.raises(ToolExecutionError):
        await runtime.orchestrator.handle_request("weather please", "s-1")


@pytest.mark.anyio
async def test_idempotent_tool_timeout_is_retried_once() -> None:
    attempts = []

    async def flaky(arguments: QueryInput) -> str:
        attempts.append(arguments.query)
        if len(attempts) == 1:
            await asyncio.sleep(5)
        return "second time lucky"

    tools = (
        ToolDefinition(
            name="search", description="", input_schema=QueryInput, handler=flaky, timeout=0.1, idempotent=True
        ),
    )
    gateway = ScriptedGateway(tool_use(call("search", "c1", query="q")), final("done"))
    runtime = Runtime(gateway, [ASSISTANT], tools=tools)

    await runtime.orchestrator.handle_request("weather", "s-1", request_id="r-1")

    assert len(attempts) == 2
    assert runtime.actions("r-1").count(TraceAction.TOOL_CALL) == 2
    tool_message = [m for m in gateway.calls[1]["messages"] if m["role"] == "tool"][0]
    assert tool_message["content"] == "second time lucky"


@pytest.mark.anyio
async def test_non_idempotent_tool_timeout_is_not_retried() -> None:
    attempts = []

    async def slow(arguments: QueryInput) -> str:
        attempts.append(arguments.query)
        await asyncio.sleep(5)
        return "never"

    tools = (ToolDefinition(name="search", description="", input_schema=QueryInput, handler=slow, timeout=0.1),)
    gateway = ScriptedGateway(tool_use(call("search", "c1", query="q")), final("gave up"))
    runtime = Runtime(gateway, [ASSISTANT], tools=tools)

    await runtime.orchestrator.handle_request("weather", "s-1")

    assert len(attempts) == 1
    tool_message = [m for m in gateway.calls[1]["messages"] if m["role"] == "tool"][0]
    assert json.loads(tool_message["content"])["error"] == "Timeout"


@pytest.mark.anyio
async def test_request_deadline_cancels_in_flight_tools() -> None:
    cancelled = asyncio.Event()

    async def hang(arguments: QueryInput) -> str:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return "never"

    tools = (ToolDefinition(name="search", description="", input_schema=QueryInput, handler=hang, timeout=10),)
    runtime = Runtime(
        ScriptedGateway(tool_use(call("search", query="q")), final("late")),
        [ASSISTANT],
        tools=tools,
        request_timeout=0.2,
    )

    with pytest.raises(DeadlineExceeded):
        await runtime.orchestrator.handle_request("weather", "s-1", request_id="r-1")

    assert cancelled.is_set()
    assert runtime.actions("r-1")[-1] is TraceAction.FAIL
    state, _ = await runtime.store.load("s-1")
    assert state.status is SessionStatus.FAILED


@pytest.mark.anyio
async def test_cancelled_request_marks_session_failed() -> None:
    runtime = Runtime(ScriptedGateway(final("too late"), delay=5), [WRITER])

    request = asyncio.create_task(runtime.orchestrator.handle_request("summarize X", "s-1", request_id="r-1"))
    await asyncio.sleep(0.05)
    request.cancel()
    with pytest.raises(asyncio.CancelledError):
        await request

    assert runtime.actions("r-1")[-1] is TraceAction.FAIL
    state, _ = await runtime.store.load("s-1")
    assert state.status is SessionStatus.FAILED
    assert state.task_state["error"].startswith("CancelledError")


@pytest.mark.anyio
async def test_transient_model_failures_are_retried_transparently() -> None:
    gateway = ScriptedGateway(
        RetryableModelError("429 too many requests"),
        RetryableModelError("connection reset"),
        final("finally"),
    )
    runtime = Runtime(gateway, [WRITER])

    result = await runtime.orchestrator.handle_request("summarize it", "s-1", request_id="r-1")

    assert result.output == "finally"
    assert len(gateway.calls) == 3
    assert runtime.actions("r-1").count(TraceAction.MODEL_CALL) == 1


@pytest.mark.anyio
async def test_exhausted_model_retries_surface_with_partial_trace() -> None:
    gateway = ScriptedGateway(RetryableModelError("503"))
    runtime = Runtime(gateway, [WRITER])

    with pytest.raises(ModelUnavailable) as excinfo:
        await runtime.orchestrator.handle_request("summarize it", "s-1", request_id="r-1")

    assert len(gateway.calls) == 3
    assert excinfo.value.attempts == 3
    assert [event.action for event in excinfo.value.trace] == [TraceAction.START, TraceAction.FAIL]


@pytest.mark.anyio
async def test_model_assisted_routing_when_no_capability_matches() -> None:
    def respond(system_prompt, messages, tools):
        if system_prompt.startswith("You route tasks"):
            return final("researcher")
        return final("found it")

    runtime = Runtime(ScriptedGateway(respond), [WRITER, RESEARCHER])

    result = await runtime.orchestrator.handle_request("who invented the telescope?", "s-1", request_id="r-1")

    assert result.agent_name == "researcher"
    assert runtime.tracer.get_trace("r-1")[1].agent_name == "router"


@pytest.mark.anyio
async def test_routing_to_unregistered_agent_fails() -> None:
    runtime = Runtime(ScriptedGateway(final("ghost")), [WRITER])

    with pytest.raises(NoAgentAvailable):
        await runtime.orchestrator.handle_request("who invented the telescope?", "s-1")


@pytest.mark.anyio
async def test_empty_registry_has_no_agent() -> None:
    runtime = Runtime(ScriptedGateway(final("anything")), [])

    with pytest.raises(NoAgentAvailable):
        await runtime.orchestrator.route("summarize X")


@pytest.mark.anyio
async def test_explicit_capability_in_context_wins() -> None:
    runtime = Runtime(ScriptedGateway(final("ok")), [WRITER, RESEARCHER])

    result = await runtime.orchestrator.handle_request(
        "summarize the research", "s-1", context={"capability": "research"}
    )

    assert result.agent_name == "researcher"


@pytest.mark.anyio
async def test_routed_agent_can_delegate_to_sub_agent() -> None:
    lead = AgentDefinition(
        name="lead", description="Team lead", capability_tags={"plan"}, delegation_targets=("writer",)
    )

    def respond(system_prompt, messages, tools):
        if "deciding whether to hand a task" in system_prompt:
            return final('{"delegate": true, "target": "writer"}')
        return final("drafted by writer")

    runtime = Runtime(ScriptedGateway(respond), [lead, WRITER])

    result = await runtime.orchestrator.handle_request("plan the launch post", "s-1", request_id="r-1")

    assert result.output == "drafted by writer"
    assert runtime.actions("r-1") == [
        TraceAction.START,
        TraceAction.MODEL_CALL,
        TraceAction.DELEGATE,
        TraceAction.MODEL_CALL,
        TraceAction.COMPLETE,
    ]
    assert runtime.tracer.get_trace("r-1")[3].depth == 1


def planner(steps, fail_on_step=None):
    def respond(system_prompt, messages, tools):
        if system_prompt.startswith("Break the user's task"):
            return final(json.dumps(steps))
        if system_prompt.startswith("Combine the results"):
            return final(f"synthesized: {messages[-1]['content'].count('Result:')}")
        prompt = messages[-1]["content"]
        if fail_on_step is not None and f"Current step ({fail_on_step} of" in prompt:
            raise RuntimeError("provider exploded")
        return final(f"done: {prompt.splitlines()[-1]}")

    return respond


@pytest.mark.anyio
async def test_decomposition_runs_steps_in_order_and_synthesizes() -> None:
    gateway = ScriptedGateway(planner(["research the market", "write a draft", "summarize findings"]))
    runtime = Runtime(gateway, [WRITER, RESEARCHER])

    result = await runtime.orchestrator.handle_request("launch report", "s-1", decompose=True)

    assert result.output == "synthesized: 3"
    assert result.agent_name == "orchestrator"
    step_prompts = [c["messages"][-1]["content"] for c in gateway.calls if c["system_prompt"].startswith("You are")]
    assert "Current step (1 of 3)" in step_prompts[0]
    assert "Results of earlier steps" in step_prompts[2]
    assert "write a draft" in step_prompts[2]


@pytest.mark.anyio
async def test_decomposition_stops_at_failing_step() -> None:
    gateway = ScriptedGateway(planner(["research the market", "write a draft", "summarize findings"], fail_on_step=2))
    runtime = Runtime(gateway, [WRITER, RESEARCHER])

    with pytest.raises(StepFailed) as excinfo:
        await runtime.orchestrator.handle_request("launch report", "s-1", decompose=True)

    error = excinfo.value
    assert error.index == 1
    assert isinstance(error.cause, ModelUnavailable)
    assert list(error.plan.results) == [0]
    assert error.plan.completed_steps == {0}


@pytest.mark.anyio
async def test_follow_up_requests_see_conversation_history() -> None:
    gateway = ScriptedGateway(final("first answer"), final("second answer"))
    runtime = Runtime(gateway, [WRITER])

    await runtime.orchestrator.handle_request("summarize A", "s-1")
    await runtime.orchestrator.handle_request("summarize B", "s-1")

    assert [m["content"] for m in gateway.calls[1]["messages"]] == ["summarize A", "first answer", "summarize B"]
    state, _ = await runtime.store.load("s-1")
    assert state.task_count == 2
    assert len(state.conversation_history) == 4


@pytest.mark.anyio
async def test_requests_for_one_session_are_serialized() -> None:
    gateway = ScriptedGateway(final("ok"), delay=0.05)
    runtime = Runtime(gateway, [WRITER])

    await asyncio.gather(
        runtime.orchestrator.handle_request("summarize A", "same"),
        runtime.orchestrator.handle_request("summarize B", "same"),
    )
    assert gateway.max_in_flight == 1

    await asyncio.gather(
        runtime.orchestrator.handle_request("summarize A", "one"),
        runtime.orchestrator.handle_request("summarize B", "two"),
    )
    assert gateway.max_in_flight == 2


def test_parse_steps_accepts_json_and_numbered_lists() -> None:
    assert parse_steps('["a", "b"]') == ["a", "b"]
    assert parse_steps('```json\n{"steps": ["x"]}\n```') == ["x"]
    assert parse_steps("Plan:\n1. gather data\n2) analyse\n- report") == ["gather data", "analyse", "report"]
    assert parse_steps("no plan here") == []
