"""
Score-string interpretation.

The feed encodes a match score as whitespace-separated set tokens ("64 36 21",
"6-4, 3-6 2-1", "7-6(5) 00"). Tokens are normalized by dropping hyphens, commas
and parenthesised tiebreak points, then classified. Anything ambiguous resolves
to "no signal" so callers fall back to a plain score update.
"""
from __future__ import annotations

import re
from typing import Any, Optional

SET_WIN_PATTERN = re.compile(r"^(?:6[0-4]|[0-4]6|75|57|76|67)$")
NEW_SET_TOKEN = "00"

_TIEBREAK_POINTS = re.compile(r"\(\s*\d*\s*\)")


def tokenize_score(score: Any) -> list[str]:
    """Split a score string into normalized set tokens."""
    if not isinstance(score, str):
        return []
    cleaned = _TIEBREAK_POINTS.sub("", score).replace(",", " ")
    tokens = []
    for raw in cleaned.split():
        token = raw.replace("-", "")
        if token:
            tokens.append(token)
    return tokens


def is_set_win_token(token: str) -> bool:
    return bool(SET_WIN_PATTERN.match(token))


def is_set_completion(old_score: Any, new_score: Any) -> bool:
    """
    True when the change from ``old_score`` to ``new_score`` closes a set.

    Either a new trailing "00" set appeared, or some token now reads as a
    finished set (6-0..6-4, 7-5, 7-6 either way) where the token at the same
    position did not before.
    """
    if not isinstance(old_score, str) or not isinstance(new_score, str):
        return False

    old_tokens = tokenize_score(old_score)
    new_tokens = tokenize_score(new_score)

    if len(new_tokens) > len(old_tokens) and new_tokens and new_tokens[-1] == NEW_SET_TOKEN:
        return True

    for index in range(len(new_tokens) - 1, -1, -1):
        if not is_set_win_token(new_tokens[index]):
            continue
        previous = old_tokens[index] if index < len(old_tokens) else ""
        if not is_set_win_token(previous):
            return True
    return False


def set_winner(score: Any) -> Optional[int]:
    """
    Side (1 or 2) that won the most recent finished set in ``score``.

    Only tokens that read as a finished set are considered; None when there is
    no such token.
    """
    for token in reversed(tokenize_score(score)):
        if not is_set_win_token(token):
            continue
        first, second = int(token[0]), int(token[1])
        if first == second:
            return None
        return 1 if first > second else 2
    return None
