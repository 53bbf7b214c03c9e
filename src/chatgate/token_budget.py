"""Token counting: cheap estimate by default, tiktoken when exactness matters."""

from __future__ import annotations

import math
from collections.abc import Callable

import tiktoken

TokenCounter = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Estimate token count from text. Rough heuristic: 4 characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class TiktokenCounter:
    """Exact BPE token counter; the encoding is loaded on first use."""

    def __init__(self, encoding: str = "cl100k_base") -> None:
        self._encoding_name = encoding
        self._encoding: tiktoken.Encoding | None = None

    def __call__(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self._encoding_name)
        return len(self._encoding.encode(text))


def get_token_counter(name: str) -> TokenCounter:
    """Map a configured tokenizer name to a counter."""
    if name == "estimate":
        return estimate_tokens
    if name == "tiktoken":
        return TiktokenCounter()
    msg = f"Unknown tokenizer '{name}'"
    raise ValueError(msg)


def truncate_to_tokens(text: str, max_tokens: int, counter: TokenCounter = estimate_tokens) -> str:
    """Return the longest prefix of *text* that fits in *max_tokens*.

    Prefers cutting at a sentence end when that keeps at least 80% of the
    fitting prefix.
    """
    if max_tokens <= 0:
        return ""
    if counter(text) <= max_tokens:
        return text

    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if counter(text[:mid]) <= max_tokens:
            lo = mid
        else:
            hi = mid - 1
    prefix = text[:lo]

    cut = max(prefix.rfind("."), prefix.rfind("!"), prefix.rfind("?"))
    if cut >= 0 and cut + 1 >= 0.8 * len(prefix):
        return prefix[: cut + 1]
    return prefix
