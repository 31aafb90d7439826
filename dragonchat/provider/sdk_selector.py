"""
SDK vendor dispatch.

google-genai, openai and anthropic are supported; a new vendor is added by
registering its module here.
"""

from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import urlparse

from dragonchat.errors import ProviderError

from . import claude_sdk, google_sdk, openai_sdk
from .base import SDKDriver
from .registry import ProviderEntry

_DRIVERS: Dict[str, SDKDriver] = {
    "google": SDKDriver(name="google", stream_completion=google_sdk.stream_completion),
    "openai": SDKDriver(name="openai", stream_completion=openai_sdk.stream_completion),
    "claude": SDKDriver(name="claude", stream_completion=claude_sdk.stream_completion),
}

_SDK_ALIASES = {
    "gemini": "google",
    "google-genai": "google",
    "anthropic": "claude",
}


def _normalized_host(base_url: Optional[str]) -> str:
    if not base_url:
        return ""
    return (urlparse(base_url).hostname or "").lower()


def detect_sdk_vendor(provider: ProviderEntry) -> Optional[str]:
    """
    Explicit ``sdk`` wins; otherwise infer from the provider id and the
    base_url host name.
    """
    if provider.sdk:
        name = provider.sdk.strip().lower()
        return _SDK_ALIASES.get(name, name)

    pid = provider.id.lower()
    host = _normalized_host(provider.base_url)

    if any(key in pid for key in ("google", "gemini")) or any(
        key in host for key in ("generativelanguage", "googleapis", "gemini")
    ):
        return "google"

    if any(key in pid for key in ("claude", "anthropic")) or any(
        key in host for key in ("anthropic", "claude.ai")
    ):
        return "claude"

    # OpenAI-compatible endpoints are the common denominator for everything else.
    if "openai" in pid or "openai" in host or provider.base_url:
        return "openai"

    return None


def get_sdk_driver(provider: ProviderEntry) -> SDKDriver:
    vendor = detect_sdk_vendor(provider)
    driver = _DRIVERS.get(vendor or "")
    if driver is None:
        raise ProviderError(f"Provider {provider.id} has no supported SDK")
    return driver


def register_sdk_driver(name: str, driver: SDKDriver) -> None:
    """Install or replace a driver, e.g. a fake one in tests."""
    _DRIVERS[name] = driver


__all__ = ["detect_sdk_vendor", "get_sdk_driver", "register_sdk_driver"]
