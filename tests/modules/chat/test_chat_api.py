# tests/modules/chat/test_chat_api.py
import json

import httpx
import pytest
import pytest_asyncio

from opsconsole.modules.chat.repository import ChatConversationRepository, ChatMessageRepository
from opsconsole.modules.chat.services import get_skill_loader, get_tool_runner_factory
from opsconsole.modules.chat.skills import SkillLoader
from opsconsole.services.llm_client import OllamaClient, get_ollama_client
from opsconsole.services.planner import AgentPlanner
from opsconsole.tools.runner import ToolRunner

pytestmark = pytest.mark.asyncio

API = "/api/v1/chat"


class OllamaStub:
    def __init__(self):
        self.replies = []
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)


@pytest.fixture
def ollama():
    return OllamaStub()


@pytest_asyncio.fixture
async def client(app, authenticated_client, ollama, db_client, tmp_path, no_sleep):
    llm = OllamaClient(transport=httpx.MockTransport(ollama))

    def runner_factory(user_id, trace_id):
        return ToolRunner(
            db_client, user_id, trace_id=trace_id, llm=llm, planner=AgentPlanner(llm, enabled=False), sleep=no_sleep
        )

    app.dependency_overrides[get_ollama_client] = lambda: llm
    app.dependency_overrides[get_skill_loader] = lambda: SkillLoader(str(tmp_path))
    app.dependency_overrides[get_tool_runner_factory] = lambda: runner_factory
    return authenticated_client


def user_turn(text):
    return {"messages": [{"role": "user", "content": text}]}


async def stored_messages(db_client, conversation_id):
    latest = await ChatMessageRepository(db_client).latest_for_conversation(conversation_id, 10)
    return [(message.role, message.content, message.metadata) for message in reversed(latest)]


async def test_message_returns_reply_and_persists_exchange(client, ollama, db_client):
    ollama.replies.append({"message": {"role": "assistant", "content": "Hello Ops!"}, "prompt_eval_count": 100})

    response = await client.post(f"{API}/message", json=user_turn("hi"))

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Hello Ops!"
    assert body["context_usage"]["context_used_pct"] == 10.0
    assert response.headers["X-Conversation-Id"] == body["conversation_id"]
    assert ollama.requests[0]["messages"][0]["role"] == "system"
    assert ollama.requests[0]["stream"] is False

    history = await stored_messages(db_client, body["conversation_id"])
    assert [(role, content) for role, content, _ in history] == [("user", "hi"), ("assistant", "Hello Ops!")]
    assert history[1][2]["mode"] == "store"


async def test_message_reuses_latest_conversation_history(client, ollama):
    ollama.replies.append({"message": {"content": "First answer"}})
    ollama.replies.append({"message": {"content": "Second answer"}})

    first = (await client.post(f"{API}/message", json=user_turn("first question"))).json()
    second = (await client.post(f"{API}/message", json=user_turn("second question"))).json()

    assert first["conversation_id"] == second["conversation_id"]
    sent = [(m["role"], m["content"]) for m in ollama.requests[1]["messages"] if m["role"] != "system"]
    assert sent == [
        ("user", "first question"),
        ("assistant", "First answer"),
        ("user", "second question"),
    ]


async def test_message_without_user_turn_is_rejected(client, ollama):
    response = await client.post(f"{API}/message", json={"messages": [{"role": "assistant", "content": "hi"}]})

    assert response.status_code == 422
    assert response.json()["message"] == "A user message is required."
    assert ollama.requests == []


async def test_message_maps_upstream_failures(client, ollama):
    ollama.replies.append(httpx.Response(404, json={"error": "model 'test-model' not found"}))
    not_found = await client.post(f"{API}/message", json=user_turn("hi"))
    assert not_found.status_code == 502
    assert not_found.json()["message"] == "Model 'test-model' was not found in Ollama."
    assert not_found.json()["upstream_status"] == 404

    ollama.replies.append(httpx.ConnectError("refused"))
    unreachable = await client.post(f"{API}/message", json=user_turn("hi"))
    assert unreachable.status_code == 503
    assert unreachable.json()["base_url"] == "http://ollama.internal"

    ollama.replies.append({"message": {"content": ""}})
    empty = await client.post(f"{API}/message", json=user_turn("hi"))
    assert empty.status_code == 502
    assert empty.json()["message"] == "Ollama returned an unexpected response format."


async def test_stream_emits_ndjson_events_and_persists_after_done(client, ollama, db_client):
    ollama.replies.append({"message": {"content": "All orders are on schedule."}, "prompt_eval_count": 50})

    response = await client.post(f"{API}/stream", json=user_turn("status update please"))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
    assert [item["type"] for item in events][:3] == ["status", "plan", "context_usage"]
    assert events[-1] == {"type": "done"}
    text = "".join(item["content"] for item in events if item["type"] == "delta")
    assert text == "All orders are on schedule."

    conversation_id = response.headers["X-Conversation-Id"]
    history = await stored_messages(db_client, conversation_id)
    assert history[1][1] == "All orders are on schedule."
    assert history[1][2]["mode"] == "stream"
    assert history[1][2]["context_usage"]["prompt_eval_count"] == 50


async def test_stream_without_user_turn_is_single_error_line(client):
    response = await client.post(f"{API}/stream", json={"messages": [{"role": "system", "content": "x"}]})

    assert response.status_code == 422
    assert [json.loads(line) for line in response.text.splitlines()] == [
        {"type": "error", "message": "A user message is required."}
    ]


async def test_conversations_are_scoped_per_user(client, ollama, db_client, other_user):
    foreign = await ChatConversationRepository(db_client).collection.insert_one(
        {"_id": "4f1c2b8e-9a55-4a8e-b0a4-6b1f1d2c3e4f", "user_id": str(other_user.id)}
    )
    ollama.replies.append({"message": {"content": "ok"}})

    body = (await client.post(
        f"{API}/message", json={"conversation_id": foreign.inserted_id, **user_turn("hi")}
    )).json()

    assert body["conversation_id"] != foreign.inserted_id
