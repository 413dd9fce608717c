"""Round naming helpers for draw events."""
from __future__ import annotations

import re
from typing import Callable, Optional

# ModernizedRoundId → short code; the final is 10 and ids shrink outward
MODERNIZED_ROUND_CODES: dict[int, str] = {
    10: "F",
    9: "SF",
    8: "QF",
    7: "R16",
    6: "R32",
    5: "R64",
    4: "R128",
    3: "Q3",
    2: "Q2",
    1: "Q1",
}
FALLBACK_ROUND_CODE = "RD"

# Order matters: "semi" and "quarter" must win over the bare "final" match.
_ROUND_PATTERNS: list[tuple[re.Pattern[str], Callable[[re.Match[str]], str]]] = [
    (re.compile(r"semi", re.IGNORECASE), lambda m: "SF"),
    (re.compile(r"quarter", re.IGNORECASE), lambda m: "QF"),
    (re.compile(r"\bfinals?\b", re.IGNORECASE), lambda m: "F"),
    (re.compile(r"round\s+of\s+(\d+)", re.IGNORECASE), lambda m: f"R{m.group(1)}"),
    (re.compile(r"qualif\w*\D*(\d+)", re.IGNORECASE), lambda m: f"Q{m.group(1)}"),
]


def _code_from_name(round_name: Optional[str]) -> Optional[str]:
    if not round_name:
        return None
    for pattern, build in _ROUND_PATTERNS:
        match = pattern.search(round_name)
        if match:
            return build(match)
    return None


def round_code(round_name: Optional[str], modernized_round_id: Optional[int] = None) -> str:
    """Short label for a round: name patterns first, then the modernized id table."""
    code = _code_from_name(round_name)
    if code:
        return code
    if modernized_round_id in MODERNIZED_ROUND_CODES:
        return MODERNIZED_ROUND_CODES[modernized_round_id]
    if round_name:
        initials = "".join(word[0] for word in round_name.split() if word[:1].isalnum())
        if initials:
            return initials.upper()
    return FALLBACK_ROUND_CODE


def round_stage(modernized_round_id: Optional[int]) -> Optional[int]:
    """Stage number counted from the final: final = 1, semifinal = 2, ..."""
    if modernized_round_id is None or not 1 <= modernized_round_id <= 10:
        return None
    return 11 - modernized_round_id


def is_final_round(round_name: Optional[str]) -> bool:
    return _code_from_name(round_name) == "F"
