"""
Streaming chat via the official openai SDK (AsyncOpenAI chat.completions).
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from dragonchat.errors import ProviderError

from .base import ProviderMessage, wrap_sdk_error


class OpenAISDKError(ProviderError):
    """Raised when the openai SDK is unavailable or returns an error."""


def _create_client(api_key: str, base_url: Optional[str]):
    try:
        from openai import AsyncOpenAI  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise OpenAISDKError("openai is not installed: pip install openai") from exc

    try:
        kwargs: Dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = str(base_url)
        return AsyncOpenAI(**kwargs)
    except Exception as exc:  # pragma: no cover - SDK constructor failure
        raise OpenAISDKError(f"Failed to initialise openai SDK: {exc}") from exc


def _content_parts(msg: ProviderMessage) -> Any:
    inline = msg.inline_attachments()
    text = msg.text_with_descriptions()
    if not inline:
        return text

    parts: List[Dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    for att in inline:
        if att.is_image:
            parts.append({"type": "image_url", "image_url": {"url": att.data_url()}})
        else:
            parts.append(
                {"type": "file", "file": {"filename": att.name, "file_data": att.data_url()}}
            )
    return parts


def build_messages(
    messages: Sequence[ProviderMessage], system_prompt: Optional[str]
) -> List[Dict[str, Any]]:
    payload: List[Dict[str, Any]] = []
    if system_prompt:
        payload.append({"role": "system", "content": system_prompt})
    for msg in messages:
        if msg.role == "assistant":
            # Assistant turns only accept text.
            payload.append({"role": "assistant", "content": msg.text_with_descriptions()})
        else:
            payload.append({"role": "user", "content": _content_parts(msg)})
    return payload


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
        "messages": build_messages(messages, system_prompt),
        "stream": True,
    }
    if max_output_tokens:
        upstream_payload["max_completion_tokens"] = max_output_tokens

    async with _create_client(api_key, base_url) as client:
        try:
            stream = await client.chat.completions.create(**upstream_payload)
            # Leaving the block closes the HTTP response, also on disconnect.
            async with stream:
                async for chunk in stream:
                    choices = getattr(chunk, "choices", None) or []
                    if not choices:
                        continue
                    delta = getattr(choices[0], "delta", None)
                    text = getattr(delta, "content", None) if delta is not None else None
                    if text:
                        yield text
        except ProviderError:
            raise
        except Exception as exc:
            raise wrap_sdk_error(exc, error_cls=OpenAISDKError, label="openai") from exc
