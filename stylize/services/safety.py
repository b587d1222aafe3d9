"""
Prompt Safety
Cheap intake filter run before a job is created. The provider applies its
own policy later; this only keeps obviously unsafe text out of the queue.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from stylize.core.config import settings

logger = logging.getLogger(__name__)


UNSAFE_PATTERNS = [
    re.compile(r"\b(nude|naked|nsfw|xxx|porn|sex)\b", re.IGNORECASE),
    re.compile(r"\b(child|kid|minor|teen|underage)\s+(nude|naked|sexual)", re.IGNORECASE),
    re.compile(r"\b(kill|murder|suicide|harm|hurt)\s+(yourself|myself|someone)", re.IGNORECASE),
    re.compile(r"\b(bomb|weapon|terrorist|extremist)\b", re.IGNORECASE),
]


@dataclass
class SafetyVerdict:
    safe: bool
    reason: Optional[str] = None


def check_prompt_safety(
    text: Optional[str],
    max_length: Optional[int] = None,
    denylist: Optional[Iterable[str]] = None,
) -> SafetyVerdict:
    if not text:
        return SafetyVerdict(safe=True)

    max_length = max_length or settings.MAX_PROMPT_LENGTH
    if len(text) > max_length:
        return SafetyVerdict(safe=False, reason="Prompt too long")

    lowered = text.lower()
    for term in denylist if denylist is not None else settings.PROMPT_DENYLIST:
        if term and term.lower() in lowered:
            # Never log the matched term itself
            logger.warning(f"[Safety] Denylist match (term length {len(term)})")
            return SafetyVerdict(safe=False, reason="Content policy violation")

    for pattern in UNSAFE_PATTERNS:
        if pattern.search(text):
            logger.warning("[Safety] Unsafe pattern match")
            return SafetyVerdict(safe=False, reason="Content policy violation")

    return SafetyVerdict(safe=True)
