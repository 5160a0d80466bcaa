# opsconsole/modules/chat/routers.py

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from opsconsole.core.logging_config import new_trace_id, trace_id_var
from opsconsole.core.security import CurrentUser
from opsconsole.services.llm_client import OllamaClient, context_usage, get_ollama_client, response_json
from .models import ChatConversationInDB, ChatRequest
from .services import (
    ChatMemory,
    RunnerFactory,
    get_chat_memory,
    get_skill_loader,
    get_tool_runner_factory,
    latest_user_message,
    prepend_system_message,
)
from .skills import SkillLoader

chat_router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _request_trace_id() -> str:
    trace_id = trace_id_var.get()
    return trace_id if trace_id and trace_id != "unset" else new_trace_id("chat")


def _ndjson(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=str) + "\n"


def _json(status_code: int, content: Dict[str, Any], conversation: ChatConversationInDB) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={**content, "conversation_id": conversation.id},
        headers={"X-Conversation-Id": conversation.id},
    )


def _stream_error(status_code: int, message: str, conversation: ChatConversationInDB) -> StreamingResponse:
    async def body() -> AsyncIterator[str]:
        yield _ndjson({"type": "error", "message": message})

    return StreamingResponse(
        body(),
        status_code=status_code,
        media_type=NDJSON_MEDIA_TYPE,
        headers={**STREAM_HEADERS, "X-Conversation-Id": conversation.id},
    )


def upstream_error_details(response: httpx.Response) -> str:
    data = response_json(response)
    details: Any = None
    if data is not None:
        details = data.get("error") or data
    if details is None:
        details = response.text
    if isinstance(details, (dict, list)):
        details = json.dumps(details)
    return details if isinstance(details, str) and details else "No details returned by Ollama."


@chat_router.post(
    "/message",
    summary="Send a chat message and wait for the full model reply",
    tags=["Chat"],
)
async def chat_message(
    current_user: CurrentUser,
    request: ChatRequest,
    memory: ChatMemory = Depends(get_chat_memory),
    skill_loader: SkillLoader = Depends(get_skill_loader),
    llm: OllamaClient = Depends(get_ollama_client),
):
    trace_id = _request_trace_id()
    user_id = str(current_user.id)
    conversation_id = str(request.conversation_id) if request.conversation_id else None
    conversation = await memory.resolve_conversation(user_id, conversation_id)
    latest = latest_user_message([item.model_dump() for item in request.messages])
    log = logger.bind(service="ChatAPI", trace_id=trace_id, user_id=user_id, model=llm.model)

    if not latest:
        return _json(422, {"message": "A user message is required."}, conversation)

    messages = [*await memory.recent_messages(conversation), {"role": "user", "content": latest}]
    log.info(f"Chat request started with {len(messages)} message(s).")

    if not llm.model:
        log.warning("Chat request rejected: OLLAMA_MODEL is not configured.")
        return _json(500, {"message": "OLLAMA_MODEL is not configured."}, conversation)

    messages = prepend_system_message(messages, skill_loader)

    try:
        response = await llm.chat(messages)
    except httpx.ConnectError:
        log.error(f"Could not connect to Ollama at {llm.base_url}.")
        return _json(
            503,
            {
                "message": "Could not connect to Ollama.",
                "details": "Check OLLAMA_BASE_URL and confirm the Ollama server is running.",
                "base_url": llm.base_url,
            },
            conversation,
        )
    except Exception as e:
        log.exception(f"Unexpected error while calling Ollama: {e}")
        return _json(500, {"message": "Unexpected error while calling Ollama.", "details": str(e)}, conversation)

    if not response.is_success:
        details = upstream_error_details(response)
        lowered = details.lower()
        message = "Ollama request failed."
        if "model" in lowered and "not found" in lowered:
            message = f"Model '{llm.model}' was not found in Ollama."
        log.warning(f"Ollama returned {response.status_code}: {message}")
        return _json(
            502,
            {
                "message": message,
                "details": details,
                "upstream_status": response.status_code,
                "model": llm.model,
            },
            conversation,
        )

    data = response_json(response) or {}
    reply = data.get("message") if isinstance(data.get("message"), dict) else {}
    content = reply.get("content")
    usage = context_usage(data)

    if not isinstance(content, str) or not content:
        log.warning(f"Unexpected Ollama payload (status {response.status_code}).")
        return _json(502, {"message": "Ollama returned an unexpected response format."}, conversation)

    await memory.persist_exchange(
        conversation, latest, content, {"trace_id": trace_id, "mode": "store", "context_usage": usage}
    )
    log.success(f"Chat request completed ({len(content)} chars).")
    return _json(200, {"message": content, "context_usage": usage}, conversation)


@chat_router.post(
    "/stream",
    summary="Run the tool-using agent and stream its events as NDJSON",
    tags=["Chat"],
)
async def chat_stream(
    current_user: CurrentUser,
    request: ChatRequest,
    memory: ChatMemory = Depends(get_chat_memory),
    skill_loader: SkillLoader = Depends(get_skill_loader),
    llm: OllamaClient = Depends(get_ollama_client),
    runner_factory: RunnerFactory = Depends(get_tool_runner_factory),
):
    trace_id = _request_trace_id()
    user_id = str(current_user.id)
    conversation_id = str(request.conversation_id) if request.conversation_id else None
    conversation = await memory.resolve_conversation(user_id, conversation_id)
    latest = latest_user_message([item.model_dump() for item in request.messages])
    log = logger.bind(service="ChatAPI", trace_id=trace_id, user_id=user_id, model=llm.model)

    if not latest:
        return _stream_error(422, "A user message is required.", conversation)

    messages = [*await memory.recent_messages(conversation), {"role": "user", "content": latest}]
    log.info(f"Chat stream started with {len(messages)} message(s).")

    if not llm.model:
        log.warning("Chat stream rejected: OLLAMA_MODEL is not configured.")
        return _stream_error(500, "OLLAMA_MODEL is not configured.", conversation)

    messages = prepend_system_message(messages, skill_loader)
    runner = runner_factory(user_id, trace_id)

    async def events() -> AsyncIterator[str]:
        assistant_message = ""
        completed = False
        usage: Optional[Dict[str, Any]] = None
        async for item in runner.run_with_streaming(messages):
            if item["type"] == "delta" and isinstance(item.get("content"), str):
                assistant_message += item["content"]
            elif item["type"] == "context_usage":
                usage = {key: value for key, value in item.items() if key != "type"}
            elif item["type"] == "done":
                completed = True
            yield _ndjson(item)

        if completed:
            await memory.persist_exchange(
                conversation,
                latest,
                assistant_message,
                {"trace_id": trace_id, "mode": "stream", "context_usage": usage},
            )
            log.success(f"Chat stream completed ({len(assistant_message)} chars).")

    return StreamingResponse(
        events(),
        media_type=NDJSON_MEDIA_TYPE,
        headers={**STREAM_HEADERS, "X-Conversation-Id": conversation.id},
    )
