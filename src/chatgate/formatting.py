"""Reply formatting for the chat platform: length cap, footer and pagination."""

from __future__ import annotations

import re

from .token_budget import estimate_tokens, truncate_to_tokens

AI_FOOTER = "*🤖 Generated by AI assistant*"

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def cap_length(text: str, max_length: int) -> str:
    """Cut *text* to roughly *max_length* characters, preferring a sentence end."""
    text = text.strip()
    if len(text) <= max_length:
        return text
    return truncate_to_tokens(text, max_length // 4, estimate_tokens)


def format_reply(text: str, max_length: int | None = 2000, add_footer: bool = True) -> str:
    """Cap *text* near *max_length* characters and append the AI footer.

    ``max_length=None`` leaves the text whole, for replies already capped
    before compliance notices were appended.
    """
    formatted = text.strip() if max_length is None else cap_length(text, max_length)
    if add_footer:
        formatted = f"{formatted}\n\n{AI_FOOTER}"
    return formatted


def paginate(text: str, limit: int = 2000) -> list[str]:
    """Split *text* into pages of at most *limit* characters.

    Pages break between sentences where possible, then between words, and
    only cut inside a word when a single word is longer than a page.
    """
    if limit <= 0:
        msg = "limit must be positive"
        raise ValueError(msg)
    if len(text) <= limit:
        return [text]

    pages: list[str] = []
    current = ""

    def push(piece: str) -> None:
        nonlocal current
        candidate = f"{current} {piece}" if current else piece
        if len(candidate) <= limit:
            current = candidate
            return
        if current:
            pages.append(current)
        current = piece

    for sentence in _SENTENCE_BOUNDARY.split(text):
        if len(sentence) <= limit:
            push(sentence)
            continue
        for word in sentence.split():
            while len(word) > limit:
                if current:
                    pages.append(current)
                    current = ""
                pages.append(word[:limit])
                word = word[limit:]
            if word:
                push(word)

    if current:
        pages.append(current)
    return pages
