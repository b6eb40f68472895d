"""Conversions between the OpenAI Chat Completions and Claude Messages wire formats."""

from __future__ import annotations

import time
from typing import Any, Iterable, Mapping

import httpx

DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_ANTHROPIC_VERSION = "2023-06-01"

PLACEHOLDER_VALUES = frozenset({"undefined", "[undefined]"})

SDK_USER_AGENT_MARKERS = ("OpenAI", "Python", "curl")
DESKTOP_CLIENT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) CherryStudio/1.7.13 Chrome/140.0.7339.249 "
    "Electron/38.7.0 Safari/537.36"
)
DESKTOP_CLIENT_BETA_FEATURES = "interleaved-thinking-2025-05-14"
SDK_DIAGNOSTIC_HEADERS = (
    "x-stainless-arch",
    "x-stainless-async",
    "x-stainless-lang",
    "x-stainless-os",
    "x-stainless-package-version",
    "x-stainless-read-timeout",
    "x-stainless-retry-count",
    "x-stainless-runtime",
    "x-stainless-runtime-version",
)

FINISH_REASONS = {
    "end_turn": "stop",
    "max_tokens": "length",
}


def is_present_value(value: Any) -> bool:
    """False for missing/null values, placeholder strings and empty containers."""
    if value is None:
        return False
    if isinstance(value, str) and value in PLACEHOLDER_VALUES:
        return False
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True


def optional_field(
    payload: Mapping[str, Any],
    key: str,
    expected_type: type | tuple[type, ...] | None = None,
) -> Any | None:
    value = payload.get(key)
    if not is_present_value(value):
        return None
    if expected_type is None:
        return value
    if isinstance(value, bool) and expected_type is not bool:
        # bool is an int subclass; never accept it where a number is expected.
        return None
    if not isinstance(value, expected_type):
        return None
    return value


def map_finish_reason(stop_reason: Any) -> str:
    if isinstance(stop_reason, str) and stop_reason:
        return FINISH_REASONS.get(stop_reason, stop_reason)
    return "stop"


def _max_tokens(payload: Mapping[str, Any], default: int) -> int:
    value = optional_field(payload, "max_tokens", (int, float))
    if value is None:
        return default
    if isinstance(value, float):
        # JSON clients may send 100.0; only whole counts are forwarded.
        return int(value) if value.is_integer() else default
    return value


def openai_to_claude_request(
    payload: Mapping[str, Any],
    *,
    default_model: str = DEFAULT_MODEL,
    default_max_tokens: int = DEFAULT_MAX_TOKENS,
) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValueError("Expected a JSON object request body.")

    claude_request: dict[str, Any] = {
        "model": optional_field(payload, "model", str) or default_model,
        "max_tokens": _max_tokens(payload, default_max_tokens),
        "messages": [],
    }

    messages = payload.get("messages")
    if isinstance(messages, list):
        for message in messages:
            if not isinstance(message, Mapping):
                continue
            role = message.get("role")
            content = message.get("content")
            if not is_present_value(content):
                continue
            if role == "system":
                claude_request["system"] = content
            elif role in ("user", "assistant"):
                claude_request["messages"].append({"role": role, "content": content})

    temperature = optional_field(payload, "temperature", (int, float))
    if temperature is not None:
        claude_request["temperature"] = temperature
    top_p = optional_field(payload, "top_p", (int, float))
    if top_p is not None:
        claude_request["top_p"] = top_p

    stream = optional_field(payload, "stream", bool)
    claude_request["stream"] = stream if stream is not None else False

    stop = optional_field(payload, "stop")
    if isinstance(stop, list):
        stop_sequences = [item for item in stop if is_present_value(item)]
        if stop_sequences:
            claude_request["stop_sequences"] = stop_sequences
    elif isinstance(stop, str):
        claude_request["stop_sequences"] = [stop]

    return {
        key: value for key, value in claude_request.items() if is_present_value(value)
    }


def build_claude_request_headers(
    incoming_headers: Mapping[str, str] | Iterable[tuple[str, str]],
    *,
    anthropic_version: str = DEFAULT_ANTHROPIC_VERSION,
    rewrite_client_signature: bool = False,
) -> httpx.Headers:
    headers = httpx.Headers(incoming_headers)
    headers.pop("content-length", None)
    headers["content-type"] = "application/json"
    if "anthropic-version" not in headers:
        headers["anthropic-version"] = anthropic_version

    if rewrite_client_signature:
        user_agent = headers.get("user-agent", "")
        if any(marker in user_agent for marker in SDK_USER_AGENT_MARKERS):
            headers["user-agent"] = DESKTOP_CLIENT_USER_AGENT
            if "anthropic-beta" not in headers:
                headers["anthropic-beta"] = DESKTOP_CLIENT_BETA_FEATURES
            for name in SDK_DIAGNOSTIC_HEADERS:
                headers.pop(name, None)
    return headers


def _first_text_block(content: Any) -> str:
    if not isinstance(content, list) or not content:
        return ""
    first = content[0]
    if not isinstance(first, Mapping):
        return ""
    text = first.get("text")
    return text if isinstance(text, str) else ""


def _usage_count(usage: Any, key: str) -> int:
    if not isinstance(usage, Mapping):
        return 0
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def synthesize_completion_id() -> str:
    return f"chatcmpl-{int(time.time() * 1000)}"


def claude_to_openai_response(
    claude_response: Mapping[str, Any],
    model: str | None = None,
    *,
    default_model: str = DEFAULT_MODEL,
) -> dict[str, Any]:
    if not isinstance(claude_response, Mapping):
        raise ValueError("Expected a JSON object response body.")

    response_id = optional_field(claude_response, "id", str)
    resolved_model = (
        model or optional_field(claude_response, "model", str) or default_model
    )
    prompt_tokens = _usage_count(claude_response.get("usage"), "input_tokens")
    completion_tokens = _usage_count(claude_response.get("usage"), "output_tokens")
    return {
        "id": response_id or synthesize_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": resolved_model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": _first_text_block(claude_response.get("content")),
                },
                "finish_reason": map_finish_reason(claude_response.get("stop_reason")),
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def build_models_response(model_ids: Iterable[str]) -> dict[str, Any]:
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": "anthropic",
            }
            for model_id in model_ids
        ],
    }


def openai_error_body(message: str, error_type: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}
