"""
Server-sent event framing for the chat stream.

Every frame is a single ``data:`` line; the stream always ends with the
literal ``[DONE]`` sentinel.
"""

from __future__ import annotations

import json
from typing import Any, Dict

DONE_FRAME = b"data: [DONE]\n\n"

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # Stop nginx from buffering the stream.
    "X-Accel-Buffering": "no",
}


def _encode_sse_payload(payload: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n".encode()


def session_frame(session_id: str) -> bytes:
    return _encode_sse_payload({"sessionId": session_id})


def chunk_frame(text: str) -> bytes:
    return _encode_sse_payload({"chunk": text})


def error_frame(message: str) -> bytes:
    return _encode_sse_payload({"error": message})


__all__ = ["DONE_FRAME", "SSE_HEADERS", "chunk_frame", "error_frame", "session_frame"]
