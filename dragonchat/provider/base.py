"""
Normalized provider input types and the error mapping shared by the
vendor SDK modules.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional, Tuple

from dragonchat.errors import ProviderError


@dataclass(frozen=True)
class ResolvedAttachment:
    """
    An attachment after the storage service handed us its content.

    ``data`` is set when the bytes are sent inline (vision / file-input
    models); ``text`` is set when the content was reduced to text instead.
    """

    file_id: str
    name: str
    mime_type: str
    data: Optional[bytes] = None
    text: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def b64(self) -> str:
        return base64.b64encode(self.data or b"").decode("ascii")

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.b64()}"

    def describe(self) -> str:
        if self.text is not None:
            return f"[Attachment: {self.name} ({self.mime_type})]\n{self.text}"
        return f"[Attachment: {self.name} ({self.mime_type})]"


@dataclass(frozen=True)
class ProviderMessage:
    role: str  # "user" | "assistant"
    text: str
    attachments: Tuple[ResolvedAttachment, ...] = field(default_factory=tuple)

    def inline_attachments(self) -> List[ResolvedAttachment]:
        return [a for a in self.attachments if a.data is not None]

    def text_with_descriptions(self) -> str:
        """Message text with non-inline attachments folded in as text."""
        described = [a.describe() for a in self.attachments if a.data is None]
        return "\n\n".join(part for part in [self.text, *described] if part)


StreamCompletion = Callable[..., AsyncIterator[str]]


@dataclass(frozen=True)
class SDKDriver:
    name: str
    stream_completion: StreamCompletion


def upstream_status_of(exc: BaseException) -> Optional[int]:
    """
    HTTP status carried by a vendor SDK exception: ``status_code`` for
    openai/anthropic, ``code`` for google-genai.
    """
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value
    return None


def wrap_sdk_error(exc: Exception, *, error_cls: type[ProviderError], label: str) -> ProviderError:
    return error_cls(
        f"{label} streaming call failed: {exc}",
        upstream_status=upstream_status_of(exc),
    )


__all__ = [
    "ProviderMessage",
    "ResolvedAttachment",
    "SDKDriver",
    "StreamCompletion",
    "upstream_status_of",
    "wrap_sdk_error",
]
