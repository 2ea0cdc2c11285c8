"""
Rework Detector

Keyword heuristic over the ticket description and comment stream. It is an
approximation: a comment saying "customer returned to collect" matches
"returned" just as a genuine comeback does. Keyword tables are configurable
so shops can tune them to their own vocabulary.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable

from repairshopr_sync.config import DEFAULT_REWORK_KEYWORDS

MAX_QUALITY_SCORE = 5.0
REWORK_PENALTY = 2.0
REPEAT_REWORK_PENALTY = 1.0

QUALITY_KEYWORDS = ("quality", "defect", "issue", "problem", "fault")
PARTS_KEYWORDS = ("part", "component", "replacement", "battery", "screen")
TIME_KEYWORDS = ("hour", "minute", "time", "duration", "took")


def _text_of(segment: Any) -> str:
    if segment is None:
        return ""
    if isinstance(segment, str):
        return segment
    return getattr(segment, "text", "") or ""


@dataclass(frozen=True)
class ReworkMatch:
    segment: str  # "description" or "comment[<index>]"
    keyword: str


@dataclass(frozen=True)
class ReworkResult:
    is_rework: bool
    reason: str | None
    count: int
    matches: tuple[ReworkMatch, ...] = field(default_factory=tuple)


class ReworkDetector:
    """
    Example:
        detector = ReworkDetector()
        result = detector.classify("Screen flicker", ["Customer says still broken"])
        result.is_rework   # True
        result.reason      # "Rework detected in comment[0]: still broken"
    """

    def __init__(self, keywords: Iterable[str] | None = None):
        words = [k.strip().lower() for k in (keywords or DEFAULT_REWORK_KEYWORDS) if k.strip()]
        if not words:
            raise ValueError("ReworkDetector needs at least one keyword")
        self.keywords: tuple[str, ...] = tuple(words)

    def first_keyword(self, text: str) -> str | None:
        lower = text.lower()
        for keyword in self.keywords:
            if keyword in lower:
                return keyword
        return None

    def classify(self, description: str | None, comments: Iterable[Any] = ()) -> ReworkResult:
        """
        Count matching segments (description is one, each comment is one).
        The reason names the first matching segment and its keyword.
        """
        segments = [("description", _text_of(description))]
        segments.extend((f"comment[{i}]", _text_of(c)) for i, c in enumerate(comments))

        matches = []
        for name, text in segments:
            keyword = self.first_keyword(text)
            if keyword:
                matches.append(ReworkMatch(segment=name, keyword=keyword))

        if not matches:
            return ReworkResult(is_rework=False, reason=None, count=0)

        first = matches[0]
        return ReworkResult(
            is_rework=True,
            reason=f"Rework detected in {first.segment}: {first.keyword}",
            count=len(matches),
            matches=tuple(matches),
        )


def quality_score(result: ReworkResult) -> float:
    score = MAX_QUALITY_SCORE
    if result.is_rework:
        score -= REWORK_PENALTY
    if result.count > 1:
        score -= REPEAT_REWORK_PENALTY
    return max(0.0, score)


@dataclass(frozen=True)
class CommentSignals:
    """Language flags for one comment, used by comment-level analytics."""
    rework: bool = False
    quality: bool = False
    parts: bool = False
    time: bool = False

    @classmethod
    def scan(cls, text: str | None, detector: ReworkDetector | None = None) -> "CommentSignals":
        lower = (text or "").lower()
        if detector is not None:
            rework = detector.first_keyword(lower) is not None
        else:
            rework = any(k in lower for k in DEFAULT_REWORK_KEYWORDS)
        return cls(
            rework=rework,
            quality=any(k in lower for k in QUALITY_KEYWORDS),
            parts=any(k in lower for k in PARTS_KEYWORDS),
            time=any(k in lower for k in TIME_KEYWORDS),
        )
