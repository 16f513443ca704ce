"""
Cheap token estimation and word-boundary truncation.

Not tokenizer-accurate. The estimate blends a word-based guess (~1.3 tokens
per word) with a character-based one (~4 chars per token) and rounds up.
"""

import math

CHARS_PER_TOKEN = 4
TOKENS_PER_WORD = 1.3


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    words = len(text.split())
    return math.ceil((words * TOKENS_PER_WORD + len(text) / CHARS_PER_TOKEN) / 2)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """
    Cut text so its estimate fits max_tokens, always at a whitespace boundary.
    Text with no whitespace at all is the one case that gets a hard cut.
    """
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max_tokens * CHARS_PER_TOKEN
    cut = text[:max_chars]
    if len(text) > max_chars and not text[max_chars].isspace():
        boundary = max(cut.rfind(" "), cut.rfind("\n"), cut.rfind("\t"))
        if boundary > 0:
            cut = cut[:boundary]
    cut = cut.rstrip()

    # Short words push the word-based half of the estimate up; shed whole words until it fits
    while estimate_tokens(cut) > max_tokens and len(cut.split()) > 1:
        cut = cut.rsplit(maxsplit=1)[0].rstrip()

    if estimate_tokens(cut) > max_tokens:
        cut = cut[: max_chars // 2]
    return cut
