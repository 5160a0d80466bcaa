# opsconsole/services/llm_client.py

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from opsconsole.core.config import settings


class OllamaClient:
    """Thin async client for the Ollama ``/api/chat`` endpoint.

    Returns the raw ``httpx.Response`` so callers decide how to map upstream
    status codes; transport failures (``httpx.ConnectError``, timeouts) propagate.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model if model is not None else settings.OLLAMA_MODEL
        self.timeout = float(timeout or settings.OLLAMA_TIMEOUT)
        self.transport = transport

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        timeout: Optional[float] = None,
        model: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
        if options:
            payload["options"] = options

        log = logger.bind(service="OllamaClient", model=payload["model"])
        log.debug(f"POST {self.base_url}/api/chat ({len(messages)} messages, tools={len(tools or [])})")
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout or self.timeout, transport=self.transport
        ) as client:
            response = await client.post("/api/chat", json=payload)
        log.debug(f"Ollama responded with status {response.status_code}")
        return response


def response_json(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """Parsed JSON object body, or None when the body is not a JSON object."""
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def context_usage(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Token accounting reported back to the client after each model call."""
    data = data or {}
    prompt_eval_count = max(0, _as_int(data.get("prompt_eval_count")))
    eval_count = max(0, _as_int(data.get("eval_count")))
    window = max(1, _as_int(settings.OLLAMA_CONTEXT_WINDOW))
    return {
        "prompt_eval_count": prompt_eval_count,
        "eval_count": eval_count,
        "context_window": window,
        "context_used_pct": round(prompt_eval_count / window * 100, 2),
        "context_remaining": max(0, window - prompt_eval_count),
    }


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def get_ollama_client() -> OllamaClient:
    return OllamaClient()
