"""Token estimation used for usage reporting when the provider omits it."""

from __future__ import annotations

import logging
import math
from typing import Any, Protocol

try:  # pragma: no cover - optional dependency used when installed
    import tiktoken  # type: ignore
except Exception:  # pragma: no cover - optional fallback when package missing
    tiktoken = None

__all__ = ["TokenCounter", "ApproxByteCounter", "TiktokenCounter", "build_token_counter"]

LOGGER = logging.getLogger(__name__)

_FALLBACK_ENCODING = "cl100k_base"


class TokenCounter(Protocol):
    def count(self, text: str) -> int:
        ...


class ApproxByteCounter:
    """Estimates one token per ``bytes_per_token`` encoded bytes, rounding up."""

    def __init__(self, *, charset: str = "utf-8", bytes_per_token: int = 4) -> None:
        self.charset = charset
        self.bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        size = len(text.encode(self.charset, errors="ignore")) if text else 0
        return math.ceil(size / self.bytes_per_token)


class TiktokenCounter:
    """Exact counts from the model's tiktoken encoding."""

    def __init__(self, model_name: str) -> None:
        if tiktoken is None:  # pragma: no cover - depends on optional dependency
            raise RuntimeError("tiktoken is not installed")
        module: Any = tiktoken
        try:
            self._encoding = module.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("No tiktoken encoding registered for %s; using %s", model_name, _FALLBACK_ENCODING)
            self._encoding = module.get_encoding(_FALLBACK_ENCODING)

    def count(self, text: str) -> int:
        return len(self._encoding.encode(text)) if text else 0


def build_token_counter(model_name: str) -> TokenCounter:
    """Prefer tiktoken for known models and fall back to the byte estimate."""

    if tiktoken is None or not model_name:
        return ApproxByteCounter()
    try:
        return TiktokenCounter(model_name)
    except Exception as exc:  # pragma: no cover - tokenizer download/setup failures
        LOGGER.debug("tiktoken unavailable for %s (%s); estimating from bytes", model_name, exc)
        return ApproxByteCounter()
