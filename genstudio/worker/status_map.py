"""
Provider status vocabulary.

Maps provider-specific status words onto the canonical completed / failed
space. Anything that matches no rule passes through unchanged and is treated
as "still processing" by the poller.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Tuple

COMPLETED = "completed"
FAILED = "failed"
UNKNOWN = "unknown"

DEFAULT_RULES: Tuple[Tuple[str, str], ...] = (
    (r"completed|succeeded|success|done", COMPLETED),
    (r"failed|error|canceled|cancelled", FAILED),
)


@dataclass(frozen=True)
class StatusRule:
    pattern: Pattern
    status: str


def parse_progress(value) -> int:
    """Coerce a provider progress value (int, float, "40", "40%") to 0-100."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        number = value
    else:
        match = re.search(r"\d+(?:\.\d+)?", str(value))
        if not match:
            return 0
        number = float(match.group())
    if number != number:  # NaN
        return 0
    return max(0, min(100, int(number)))


class StatusVocabulary:
    """Declarative, case-insensitive status mapping table."""

    def __init__(self, rules: Iterable[Tuple[str, str]] = DEFAULT_RULES):
        self.rules = [StatusRule(re.compile(pattern, re.IGNORECASE), status) for pattern, status in rules]

    def extend(self, rules: Iterable[Tuple[str, str]]) -> "StatusVocabulary":
        """New vocabulary with ``rules`` checked before the existing ones."""
        vocabulary = StatusVocabulary(())
        vocabulary.rules = [
            StatusRule(re.compile(pattern, re.IGNORECASE), status) for pattern, status in rules
        ] + list(self.rules)
        return vocabulary

    def normalize(self, raw_status) -> str:
        text = str(raw_status).strip() if raw_status is not None else ""
        if not text:
            return UNKNOWN
        for rule in self.rules:
            if rule.pattern.fullmatch(text):
                return rule.status
        return text

    def resolve(self, raw_status, progress: int = 0, result_url: Optional[str] = None) -> str:
        """Map a status, letting progress=100 plus a result URL win over ambiguous text."""
        status = self.normalize(raw_status)
        if result_url and status not in (COMPLETED, FAILED) and progress >= 100:
            return COMPLETED
        return status
