"""
Model Layer — LLM abstraction with tool calling.

Responsibility:
- Abstract provider details (OpenAI-compatible, Ollama, Anthropic)
- Translate messages and tool schemas to each provider's wire format
- Enforce timeouts and retries
- Normalize replies into a ModelCompletion (text or tool calls)

This is the ONLY place where LLMs are called. Raw provider errors are logged
here and surfaced as ModelError with a generic user message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

import httpx

from observability.logger import Observability
from shared.errors import ModelError, ModelTimeout
from shared.models import Message, ModelCompletion, ModelPolicy, ToolCallRequest, new_call_id

logger = logging.getLogger(__name__)


class ModelSelector:
    """Calls the configured provider with reliability policies."""

    def __init__(self, base_url: str = "http://localhost:11434"):
        configured_base_url = os.getenv("MODEL_BASE_URL", "").strip()
        self.base_url = (configured_base_url or base_url).rstrip("/")
        provider_raw = os.getenv("MODEL_PROVIDER", "auto").strip().lower()
        if provider_raw not in {"auto", "ollama", "openai_compatible", "anthropic"}:
            provider_raw = "auto"
        self.provider = self._resolve_provider(provider_raw, self.base_url)
        self.api_key = os.getenv("MODEL_API_KEY", "").strip()
        if not self.api_key:
            if self.provider == "anthropic":
                self.api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
            elif self.provider == "openai_compatible":
                self.api_key = os.getenv("OPENAI_API_KEY", "").strip()

        base_headers: dict[str, str] = {}
        if self.provider == "openai_compatible" and self.api_key:
            base_headers["Authorization"] = f"Bearer {self.api_key}"

        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=60.0,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers=base_headers,
        )

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        policy: ModelPolicy,
        command_id: str | None = None,
    ) -> ModelCompletion:
        """Run one model turn. The sync HTTP client runs in a worker thread."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.complete_sync, messages, tools, policy, command_id),
                timeout=policy.timeout_seconds * max(1, policy.max_retries) + 1.0,
            )
        except asyncio.TimeoutError as e:
            raise ModelTimeout(f"Model call exceeded {policy.timeout_seconds}s") from e

    def complete_sync(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        policy: ModelPolicy,
        command_id: str | None = None,
    ) -> ModelCompletion:
        obs = Observability(command_id)
        attempt = 0
        last_error: Exception | None = None

        while attempt < max(1, policy.max_retries):
            attempt += 1
            try:
                with obs.measure(
                    "model_call",
                    {
                        "model": policy.model_name,
                        "attempt": attempt,
                        "provider": self.provider,
                        "tool_count": len(tools or []),
                    },
                ):
                    return self._call_model(messages, tools or [], policy)
            except httpx.TimeoutException as e:
                last_error = e
                logger.warning("Model call timed out (attempt %d/%d): %s", attempt, policy.max_retries, e)
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning("Model call failed (attempt %d/%d): %s", attempt, policy.max_retries, e)

        obs.log_event(
            "model_failure",
            {"error": str(last_error), "policy": policy.model_dump()},
            level="ERROR",
        )
        if isinstance(last_error, httpx.TimeoutException):
            raise ModelTimeout(str(last_error)) from last_error
        raise ModelError(str(last_error or "Unknown model failure")) from last_error

    def _resolve_provider(self, provider_raw: str, base_url: str) -> str:
        if provider_raw != "auto":
            return provider_raw

        lowered = (base_url or "").strip().lower()
        if "anthropic.com" in lowered:
            return "anthropic"
        if "openai.com" in lowered or lowered.endswith("/v1"):
            return "openai_compatible"
        return "ollama"

    def _call_model(self, messages: list[Message], tools: list[dict[str, Any]], policy: ModelPolicy) -> ModelCompletion:
        """Low-level model API call dispatching by configured provider."""
        if self.provider == "anthropic":
            return self._call_anthropic_messages(messages, tools, policy)
        if self.provider == "openai_compatible":
            return self._call_openai_chat(messages, tools, policy)
        return self._call_ollama(messages, tools, policy)

    def _call_ollama(self, messages: list[Message], tools: list[dict[str, Any]], policy: ModelPolicy) -> ModelCompletion:
        try:
            return self._call_ollama_chat(messages, tools, policy)
        except httpx.HTTPStatusError as e:
            # Some local providers expose only /v1/chat/completions.
            if e.response is not None and e.response.status_code == 404:
                logger.info("Ollama endpoint not found; trying OpenAI-compatible chat endpoint.")
                return self._call_openai_chat(messages, tools, policy)
            raise

    def _call_ollama_chat(self, messages: list[Message], tools: list[dict[str, Any]], policy: ModelPolicy) -> ModelCompletion:
        """Low-level Ollama /api/chat call."""
        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": [_openai_message(m, arguments_as_text=False) for m in messages],
            "stream": False,
            "keep_alive": "10m",
            "options": {
                "temperature": policy.temperature,
                "num_ctx": 8192,
                "num_predict": policy.max_tokens,
            },
        }
        if tools:
            payload["tools"] = tools

        response = self._client.post("/api/chat", json=payload, timeout=policy.timeout_seconds)
        response.raise_for_status()
        message = response.json().get("message") or {}
        return _completion_from_openai_message(message)

    def _call_openai_chat(self, messages: list[Message], tools: list[dict[str, Any]], policy: ModelPolicy) -> ModelCompletion:
        """OpenAI-compatible /v1/chat/completions call."""
        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": [_openai_message(m) for m in messages],
            "temperature": policy.temperature,
            "max_tokens": policy.max_tokens,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        response = self._client.post("/v1/chat/completions", json=payload, timeout=policy.timeout_seconds)
        response.raise_for_status()
        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ValueError("OpenAI-compatible response missing choices")
        return _completion_from_openai_message(choices[0].get("message") or {})

    def _call_anthropic_messages(self, messages: list[Message], tools: list[dict[str, Any]], policy: ModelPolicy) -> ModelCompletion:
        """Low-level Anthropic /v1/messages call."""
        if not self.api_key:
            raise ModelError("ANTHROPIC_API_KEY (or MODEL_API_KEY) is required when MODEL_PROVIDER=anthropic.")

        system_parts: list[str] = []
        payload_messages: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                if message.content:
                    system_parts.append(message.content.strip())
                continue
            _append_anthropic_message(payload_messages, message)

        if not payload_messages:
            payload_messages = [{"role": "user", "content": "Hello"}]

        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": payload_messages,
            "temperature": policy.temperature,
            "max_tokens": policy.max_tokens,
        }
        system_prompt = "\n\n".join(system_parts).strip()
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = [
                {
                    "name": tool["function"]["name"],
                    "description": tool["function"].get("description", ""),
                    "input_schema": tool["function"].get("parameters") or {"type": "object", "properties": {}},
                }
                for tool in tools
            ]

        response = self._client.post(
            "/v1/messages",
            json=payload,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": os.getenv("ANTHROPIC_VERSION", "2023-06-01"),
            },
            timeout=policy.timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()

        text_parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = str(block.get("type", "")).strip()
            if block_type == "text":
                text_value = str(block.get("text", "")).strip()
                if text_value:
                    text_parts.append(text_value)
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCallRequest(
                        tool=str(block.get("name", "")),
                        arguments=block.get("input") or {},
                        call_id=str(block.get("id") or new_call_id()),
                    )
                )
        if not text_parts and not tool_calls:
            raise ValueError("Anthropic response missing content")
        return ModelCompletion(text="\n".join(text_parts) or None, tool_calls=tool_calls)

    def close(self):
        """Close persistent connections."""
        self._client.close()


def _openai_message(message: Message, arguments_as_text: bool = True) -> dict[str, Any]:
    payload = message.model_dump(exclude_none=True)
    payload.setdefault("content", "")
    if not arguments_as_text and message.tool_calls:
        # Ollama wants arguments as an object, not a JSON string.
        payload["tool_calls"] = [
            {**call, "function": {**call["function"], "arguments": _parse_arguments(call["function"].get("arguments"))}}
            for call in message.tool_calls
        ]
    return payload


def _append_anthropic_message(payload_messages: list[dict[str, Any]], message: Message) -> None:
    if message.role == "tool":
        block = {"type": "tool_result", "tool_use_id": message.tool_call_id or "", "content": message.content or ""}
        last = payload_messages[-1] if payload_messages else None
        # Consecutive tool results share one user turn.
        if last and last["role"] == "user" and isinstance(last["content"], list):
            last["content"].append(block)
        else:
            payload_messages.append({"role": "user", "content": [block]})
        return

    if message.role == "assistant" and message.tool_calls:
        blocks: list[dict[str, Any]] = []
        if message.content:
            blocks.append({"type": "text", "text": message.content})
        for call in message.tool_calls:
            function = call.get("function") or {}
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.get("id") or new_call_id(),
                    "name": function.get("name", ""),
                    "input": _parse_arguments(function.get("arguments")),
                }
            )
        payload_messages.append({"role": "assistant", "content": blocks})
        return

    text = (message.content or "").strip()
    if text:
        role = message.role if message.role in {"user", "assistant"} else "user"
        payload_messages.append({"role": role, "content": text})


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid tool arguments from model: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Tool arguments must be a JSON object")
    return parsed


def _completion_from_openai_message(message: dict[str, Any]) -> ModelCompletion:
    tool_calls: list[ToolCallRequest] = []
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        name = str(function.get("name", "")).strip()
        if not name:
            continue
        tool_calls.append(
            ToolCallRequest(
                tool=name,
                arguments=_parse_arguments(function.get("arguments")),
                call_id=str(call.get("id") or new_call_id()),
            )
        )
    content = message.get("content")
    text = str(content).strip() if content else None
    return ModelCompletion(text=text or None, tool_calls=tool_calls)
