from __future__ import annotations

import codecs
import json
import logging
import time
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Mapping

import httpx

from claude_smart_router.gateway.translation import (
    DEFAULT_MODEL,
    map_finish_reason,
    synthesize_completion_id,
)

DONE_SENTINEL = b"data: [DONE]\n\n"

logger = logging.getLogger("uvicorn.error")


class ClaudeEventType(str, Enum):
    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    PING = "ping"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def of(cls, event: Any) -> ClaudeEventType:
        if not isinstance(event, Mapping):
            return cls.UNKNOWN
        try:
            return cls(event.get("type"))
        except ValueError:
            return cls.UNKNOWN


def _sse_data(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode("utf-8")


class ClaudeToOpenAIStreamTranscoder:
    """Incrementally rewrites a Claude Messages SSE stream as Chat Completions chunks.

    Bytes go in through :meth:`feed` in whatever pieces the network delivers them;
    complete lines are translated immediately and only the trailing partial line
    is held back. ``message_stop`` emits ``[DONE]`` and makes the transcoder
    terminal: nothing fed afterwards is relayed.
    """

    def __init__(
        self,
        model: str | None = None,
        *,
        default_model: str = DEFAULT_MODEL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._requested_model = model
        self._model = model or default_model
        self._completion_id = synthesize_completion_id()
        self._created = int(clock())
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: bytes) -> list[bytes]:
        if self._finished:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process_lines(lines)

    def close(self) -> list[bytes]:
        if self._finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        trailing, self._buffer = self._buffer, ""
        return self._process_lines([trailing])

    def _process_lines(self, lines: list[str]) -> list[bytes]:
        output: list[bytes] = []
        for line in lines:
            if self._finished:
                break
            encoded = self._process_line(line.rstrip("\r"))
            if encoded is not None:
                output.append(encoded)
        return output

    def _process_line(self, line: str) -> bytes | None:
        if not line.strip() or line.startswith(":"):
            return None
        if not line.startswith("data:"):
            return None

        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        if data == "[DONE]":
            return DONE_SENTINEL

        try:
            event = json.loads(data)
        except ValueError as exc:
            logger.warning(
                "stream_event_parse_error error=%s data=%s", exc, data[:200]
            )
            return None
        return self._translate_event(event)

    def _translate_event(self, event: Any) -> bytes | None:
        event_type = ClaudeEventType.of(event)

        if event_type is ClaudeEventType.MESSAGE_START:
            self._start_message(event.get("message"))
            return self._chunk({"role": "assistant", "content": ""})

        if event_type is ClaudeEventType.CONTENT_BLOCK_DELTA:
            delta = event.get("delta")
            if not isinstance(delta, Mapping) or delta.get("type") != "text_delta":
                return None
            text = delta.get("text")
            if not isinstance(text, str):
                return None
            return self._chunk({"content": text})

        if event_type is ClaudeEventType.MESSAGE_DELTA:
            delta = event.get("delta")
            if not isinstance(delta, Mapping):
                return None
            stop_reason = delta.get("stop_reason")
            if not stop_reason:
                return None
            return self._chunk({}, finish_reason=map_finish_reason(stop_reason))

        if event_type is ClaudeEventType.MESSAGE_STOP:
            self._finished = True
            return DONE_SENTINEL

        if event_type is ClaudeEventType.ERROR:
            error = event.get("error")
            if not isinstance(error, Mapping):
                error = {}
            return _sse_data(
                {
                    "error": {
                        "message": error.get("message") or "Unknown error",
                        "type": error.get("type") or "api_error",
                    }
                }
            )

        if event_type is ClaudeEventType.UNKNOWN:
            raw_type = event.get("type") if isinstance(event, Mapping) else None
            logger.debug("stream_event_unknown type=%s", raw_type)
        # content_block_start, content_block_stop and ping carry nothing to relay.
        return None

    def _start_message(self, message: Any) -> None:
        if not isinstance(message, Mapping):
            return
        message_id = message.get("id")
        if isinstance(message_id, str) and message_id:
            self._completion_id = message_id
        upstream_model = message.get("model")
        if self._requested_model:
            return
        if isinstance(upstream_model, str) and upstream_model:
            self._model = upstream_model

    def _chunk(
        self,
        delta: dict[str, Any],
        finish_reason: str | None = None,
    ) -> bytes:
        return _sse_data(
            {
                "id": self._completion_id,
                "object": "chat.completion.chunk",
                "created": self._created,
                "model": self._model,
                "choices": [
                    {
                        "index": 0,
                        "delta": delta,
                        "finish_reason": finish_reason,
                    }
                ],
            }
        )


async def transcode_claude_stream(
    chunks: AsyncIterable[bytes],
    transcoder: ClaudeToOpenAIStreamTranscoder,
) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks:
            for encoded in transcoder.feed(chunk):
                yield encoded
            if transcoder.finished:
                return
    except httpx.HTTPError as exc:
        logger.warning(
            "stream_upstream_error error_type=%s error=%s",
            exc.__class__.__name__,
            exc,
        )
        raise
    for encoded in transcoder.close():
        yield encoded
