# tests/services/test_planner.py
import json

import httpx
import pytest

from opsconsole.services.llm_client import OllamaClient
from opsconsole.services.planner import AgentPlanner, fallback_plan
from opsconsole.tools.runner import ToolRunner

pytestmark = pytest.mark.asyncio

MESSAGES = [{"role": "user", "content": "list orders"}]


def llm_returning(*responses) -> OllamaClient:
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    return OllamaClient(transport=httpx.MockTransport(handler))


async def test_plan_falls_back_when_message_is_not_an_object():
    planner = AgentPlanner(llm_returning(httpx.Response(200, json={"message": "not-an-object"})), enabled=True)

    assert await planner.build_plan(MESSAGES, []) == fallback_plan("list orders")


async def test_plan_falls_back_on_connection_error_and_bad_json():
    unreachable = AgentPlanner(llm_returning(httpx.ConnectError("refused")), enabled=True)
    assert await unreachable.build_plan(MESSAGES, []) == fallback_plan("list orders")

    prose = AgentPlanner(
        llm_returning(httpx.Response(200, json={"message": {"content": "Sure, here is a plan"}})), enabled=True
    )
    assert await prose.build_plan(MESSAGES, []) == fallback_plan("list orders")


async def test_plan_uses_model_steps_when_valid():
    plan = {"steps": [{"step": 1, "action": "Query orders", "tool": "list_orders", "depends_on": [], "risk": "low"}]}
    planner = AgentPlanner(
        llm_returning(httpx.Response(200, json={"message": {"content": json.dumps(plan)}})), enabled=True
    )

    built = await planner.build_plan(MESSAGES, [])

    assert built["goal"] == "list orders"
    assert built["steps"][0]["tool"] == "list_orders"
    assert built["success_criteria"] == ["Task completed with validated tool outputs."]


async def test_stream_survives_malformed_planner_reply(db_client, no_sleep):
    llm = llm_returning(
        httpx.Response(200, json={"message": "x"}),
        httpx.Response(200, json={"message": {"role": "assistant", "content": "No orders yet."}}),
    )
    runner = ToolRunner(db_client, "u1", llm=llm, planner=AgentPlanner(llm, enabled=True), sleep=no_sleep)

    events = [item async for item in runner.run_with_streaming(MESSAGES)]

    assert events[1] == {"type": "plan", "plan": fallback_plan("list orders")}
    assert "".join(e["content"] for e in events if e["type"] == "delta") == "No orders yet."
    assert events[-1] == {"type": "done"}


async def test_plain_retry_tolerates_malformed_reply(db_client, no_sleep):
    llm = llm_returning(
        httpx.Response(400, text='invalid character: looks like object but missing closing brace'),
        httpx.Response(200, json={"message": ["x"]}),
    )
    runner = ToolRunner(db_client, "u1", llm=llm, planner=AgentPlanner(llm, enabled=False), sleep=no_sleep)

    events = [item async for item in runner.run_with_streaming(MESSAGES)]

    assert [e["type"] for e in events] == ["status", "plan", "done"]
