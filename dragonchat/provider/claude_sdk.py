"""
Streaming chat via the official anthropic SDK (AsyncAnthropic messages.stream).
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from dragonchat.errors import ProviderError

from .base import ProviderMessage, wrap_sdk_error


class ClaudeSDKError(ProviderError):
    """Raised when the anthropic SDK is unavailable or returns an error."""


def _create_client(api_key: str, base_url: Optional[str]):
    try:
        from anthropic import AsyncAnthropic  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise ClaudeSDKError("anthropic is not installed: pip install anthropic") from exc

    try:
        kwargs: Dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = str(base_url)
        return AsyncAnthropic(**kwargs)
    except Exception as exc:  # pragma: no cover - SDK constructor failure
        raise ClaudeSDKError(f"Failed to initialise anthropic SDK: {exc}") from exc


def _content_blocks(msg: ProviderMessage) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = []
    for att in msg.inline_attachments():
        source = {"type": "base64", "media_type": att.mime_type, "data": att.b64()}
        blocks.append({"type": "image" if att.is_image else "document", "source": source})
    text = msg.text_with_descriptions()
    if text or not blocks:
        blocks.append({"type": "text", "text": text})
    return blocks


def build_messages(messages: Sequence[ProviderMessage]) -> List[Dict[str, Any]]:
    """
    Anthropic requires alternating roles starting with "user"; consecutive
    turns of the same role are merged into one message.
    """
    merged: List[Dict[str, Any]] = []
    for msg in messages:
        blocks = _content_blocks(msg)
        if merged and merged[-1]["role"] == msg.role:
            merged[-1]["content"].extend(blocks)
            continue
        merged.append({"role": msg.role, "content": blocks})
    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": [{"type": "text", "text": "(continued)"}]})
    return merged


async def stream_completion(
    *,
    api_key: str,
    model_id: str,
    messages: Sequence[ProviderMessage],
    system_prompt: Optional[str] = None,
    base_url: Optional[str] = None,
    max_output_tokens: Optional[int] = None,
) -> AsyncIterator[str]:
    upstream_payload: Dict[str, Any] = {
        "model": model_id,
        "messages": build_messages(messages),
        "max_tokens": max_output_tokens or 4096,
    }
    if system_prompt:
        upstream_payload["system"] = system_prompt

    async with _create_client(api_key, base_url) as client:
        try:
            async with client.messages.stream(**upstream_payload) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except ProviderError:
            raise
        except Exception as exc:
            raise wrap_sdk_error(exc, error_cls=ClaudeSDKError, label="anthropic") from exc
