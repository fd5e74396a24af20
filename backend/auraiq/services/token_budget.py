"""
Token budget accounting.

Token counts are estimated at four characters per token rather than by real
tokenization; the estimate only has to be cheap and monotonic.
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class TruncationResult:
    content: str
    was_truncated: bool


def estimate_tokens(text: str) -> int:
    """ceil(len(text) / 4)"""
    return math.ceil(len(text) / 4)


def _truncation_marker(estimated_tokens: int) -> str:
    return f"\n\n[... Content truncated due to size. Total size: ~{estimated_tokens} tokens]"


def truncate_content(text: str, max_tokens: int) -> TruncationResult:
    """
    Cut ``text`` so that its estimate fits within ``max_tokens``.

    Text already within budget is returned unchanged. Otherwise the text is
    shortened and a marker stating the original estimated size is appended.
    The marker is counted against the budget, so the result always fits and
    truncating it again returns it unchanged.

    If the budget is too small to hold the marker at all, the text is cut
    to the budget without a marker.
    """
    estimated = estimate_tokens(text)
    if estimated <= max_tokens:
        return TruncationResult(content=text, was_truncated=False)

    max_chars = max(max_tokens, 0) * 4
    marker = _truncation_marker(estimated)

    if len(marker) >= max_chars:
        return TruncationResult(content=text[:max_chars], was_truncated=True)

    return TruncationResult(
        content=text[: max_chars - len(marker)] + marker,
        was_truncated=True,
    )
