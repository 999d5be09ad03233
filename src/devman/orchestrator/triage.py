"""Fast capability-tier classification of incoming requests."""

from __future__ import annotations

import re

from devman.core.types import CapabilityTier

QUICK_SIGNALS = ("status", "list", "find", "show", "check", "what is", "where is", "how many")
COMPLEX_SIGNALS = (
    "redesign",
    "architect",
    "refactor",
    "review",
    "design",
    "plan",
    "strategy",
    "why is",
    "debug",
    "investigate",
)
QUICK_MAX_CHARS = 100
LONG_REQUEST_CHARS = 4000


def _pattern(signals: tuple[str, ...]) -> re.Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(re.escape(signal) for signal in signals) + r")", re.IGNORECASE)


_QUICK = _pattern(QUICK_SIGNALS)
_COMPLEX = _pattern(COMPLEX_SIGNALS)


def classify_tier(text: str) -> CapabilityTier:
    """Short lookups go cheap, design and debugging work goes heavy."""
    if _COMPLEX.search(text) or len(text) > LONG_REQUEST_CHARS:
        return CapabilityTier.HEAVY
    if len(text) < QUICK_MAX_CHARS and _QUICK.search(text):
        return CapabilityTier.CHEAP
    return CapabilityTier.DEFAULT
