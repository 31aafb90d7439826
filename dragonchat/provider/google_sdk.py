"""
Streaming chat via the official google-genai SDK (Gemini, async client).
"""

from __future__ import annotations

from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from dragonchat.errors import ProviderError

from .base import ProviderMessage, wrap_sdk_error


class GoogleSDKError(ProviderError):
    """Raised when the google-genai SDK is unavailable or returns an error."""


_ROLE_MAP = {"user": "user", "assistant": "model"}


def _create_client(api_key: str, base_url: Optional[str]):
    try:
        from google import genai  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise GoogleSDKError("google-genai is not installed: pip install google-genai") from exc

    try:
        kwargs: Dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["http_options"] = {"base_url": base_url}
        return genai.Client(**kwargs)
    except Exception as exc:  # pragma: no cover - SDK constructor failure
        raise GoogleSDKError(f"Failed to initialise google-genai: {exc}") from exc


def messages_to_contents(messages: Sequence[ProviderMessage]) -> List[Dict[str, Any]]:
    """
    Convert normalized messages into Gemini ``contents``.

    Inline attachments become ``inline_data`` parts placed before the text,
    matching how Gemini documents multimodal prompts.
    """
    contents: List[Dict[str, Any]] = []
    for msg in messages:
        parts: List[Dict[str, Any]] = [
            {"inline_data": {"mime_type": att.mime_type, "data": att.data}}
            for att in msg.inline_attachments()
        ]
        text = msg.text_with_descriptions()
        if text or not parts:
            parts.append({"text": text})
        contents.append({"role": _ROLE_MAP.get(msg.role, "user"), "parts": parts})
    return contents


async def stream_completion(
    *,
    api_key: str,
    model_id: str,
    messages: Sequence[ProviderMessage],
    system_prompt: Optional[str] = None,
    base_url: Optional[str] = None,
    max_output_tokens: Optional[int] = None,
) -> AsyncIterator[str]:
    client = _create_client(api_key, base_url)
    contents = messages_to_contents(messages)
    config: Dict[str, Any] = {}
    if system_prompt:
        config["system_instruction"] = system_prompt
    if max_output_tokens:
        config["max_output_tokens"] = max_output_tokens

    try:
        chunks = await client.aio.models.generate_content_stream(
            model=model_id, contents=contents, config=config or None
        )
        async with aclosing(chunks):
            async for chunk in chunks:
                text = getattr(chunk, "text", None)
                if text:
                    yield text
    except ProviderError:
        raise
    except Exception as exc:
        raise wrap_sdk_error(exc, error_cls=GoogleSDKError, label="google-genai") from exc
