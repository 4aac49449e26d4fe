"""Heuristic importance scoring for conversation messages.

Scores are additive over a recency term and a set of compiled marker
patterns (English and Chinese), floored at zero. The scorer is pure: the only
input besides the message is the injected clock.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .interfaces import Clock, SystemClock
from .models import ChatMessage, ScoringInput

_FLAGS = re.IGNORECASE


@dataclass(frozen=True, slots=True)
class _Marker:
    """A compiled marker pattern and the weight it contributes."""

    name: str
    pattern: re.Pattern[str]
    weight: float


QUESTION_PATTERN = re.compile(r"[?？]|吗|呢|\b(?:who|where|when|which|why)\b", _FLAGS)
REQUEST_PATTERN = re.compile(
    r"^\s*(?:please|help|how|what|why|can you|could you|would you|"
    r"tell me|explain|show me|请|帮|怎么|如何|什么|能不能|可以)",
    _FLAGS,
)

_MARKERS: tuple[_Marker, ...] = (
    _Marker("question", QUESTION_PATTERN, 3.0),
    _Marker("request", REQUEST_PATTERN, 3.0),
    _Marker(
        "explicit_importance",
        re.compile(
            r"\b(?:summari[sz]e|remember|important|note)\b|总结|记住|重要|注意",
            _FLAGS,
        ),
        4.0,
    ),
    _Marker(
        "personal_data",
        re.compile(
            r"\b(?:my name|name is|phone|email|e-mail|address|birthday|born on)\b"
            r"|[\w.+-]+@[\w-]+\.[\w.]+"
            r"|\+?\d[\d\s-]{7,}\d"
            r"|名字|电话|邮箱|地址|生日",
            _FLAGS,
        ),
        3.0,
    ),
    _Marker(
        "decision",
        re.compile(
            r"\b(?:decide[ds]?|decision|confirm(?:ed)?|choose|chose|plan(?:ned|s)?)\b"
            r"|决定|确认|选择|计划",
            _FLAGS,
        ),
        2.0,
    ),
    _Marker(
        "high_importance",
        re.compile(r"\b(?:critical|key|core|main)\b|关键|核心|主要", _FLAGS),
        2.0,
    ),
    _Marker(
        "low_importance",
        re.compile(r"\b(?:temporary|casual|whatever)\b|临时|随便|无所谓", _FLAGS),
        -1.0,
    ),
)


class ImportanceScorer:
    """Rates a message's long-term value.

    Recency contributes ``max(0, 10 - hours * 0.5)``; marker patterns add or
    subtract fixed weights; longer and user-authored content gets a small
    bonus. The result is never negative.
    """

    LONG_CONTENT = 100
    VERY_LONG_CONTENT = 300
    SUBSTANTIVE_ANSWER = 200

    def __init__(self, clock: Clock | None = None, recency_weight: float = 0.5):
        self._clock = clock or SystemClock()
        self._recency_weight = recency_weight

    def score(self, message: ScoringInput) -> float:
        now = self._clock.now()
        hours = max(0.0, (now - message.created_at).total_seconds() / 3600.0)
        score = max(0.0, 10.0 - hours * self._recency_weight)

        content = message.content
        for marker in _MARKERS:
            if marker.pattern.search(content):
                score += marker.weight

        length = len(content)
        if length > self.LONG_CONTENT:
            score += 1
        if length > self.VERY_LONG_CONTENT:
            score += 1

        if message.is_from_user:
            score += 1
        elif length > self.SUBSTANTIVE_ANSWER:
            score += 1

        return max(0.0, score)

    def score_message(self, message: ChatMessage) -> float:
        """Score a chat message, preferring a precomputed importance."""
        if message.importance is not None:
            return message.importance
        return self.score(
            ScoringInput(
                content=message.content,
                is_from_user=message.is_from_user,
                created_at=message.timestamp,
            )
        )

    @staticmethod
    def matched_markers(content: str) -> list[str]:
        """Names of the marker patterns ``content`` matches."""
        return [m.name for m in _MARKERS if m.pattern.search(content)]
