"""
Interest Detector - Keyword heuristics for interest and urgency

Responsibilities:
- Score a message's interest level (high / medium / low)
- Score urgency (urgent / normal / casual)
- Blend with conversation history when given
- Detect buying signals and objections
- Translate an analysis into a bounded priority adjustment

Design principles:
- Deterministic keyword and pattern matching, no LLM
- Case-insensitive substring checks
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

HIGH_INTEREST_KEYWORDS = [
    'interested', 'want', 'need', 'love', 'excited', 'ready', 'sign up', 'join',
    'start', 'begin', 'when can', 'how do i', 'tell me more', 'sounds great',
    'perfect', 'awesome', 'amazing', 'definitely', 'absolutely', 'yes please',
    'membership', 'pricing', 'cost', 'schedule', 'classes', 'workout',
]

LOW_INTEREST_KEYWORDS = [
    'maybe', 'not sure', 'thinking about', 'considering', 'later', 'sometime',
    'not ready', 'busy', 'no time', 'expensive', 'too much', 'cant afford',
    'just looking', 'browsing', 'information only', 'not interested',
]

URGENCY_KEYWORDS = [
    'now', 'today', 'asap', 'quickly', 'urgent', 'immediate', 'right away',
    'this week', 'soon', 'fast', 'hurry', 'rush', 'deadline', 'limited time',
    'before', 'by when', 'how long', 'waiting',
]

CASUAL_KEYWORDS = [
    'whenever', 'no rush', 'take my time', 'eventually', 'someday', 'flexible',
    'no hurry', 'when convenient', 'at some point', 'down the road',
    'in the future', 'maybe later', 'not urgent',
]

INTEREST_QUESTIONS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"what.*cost", r"how much", r"what.*price", r"what.*include",
        r"when.*open", r"what.*hours", r"how.*join", r"where.*located",
        r"what.*classes", r"what.*equipment", r"can.*bring", r"do.*have",
    )
]

DISINTEREST_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"just.*looking", r"not.*ready", r"maybe.*later", r"too.*expensive",
        r"cant.*afford", r"no.*time", r"too.*busy", r"not.*interested",
    )
]

BUYING_SIGNALS = [
    'how do i sign up', 'want to join', 'ready to start', 'lets do this',
    'sign me up', 'where do i pay', 'what do i need', 'when can i start',
    'sounds good', 'im interested', 'yes please', 'perfect',
]

OBJECTION_KEYWORDS = {
    'price': ['expensive', 'cost', 'afford', 'money', 'budget', 'cheap'],
    'time': ['busy', 'no time', 'schedule', 'when', 'available'],
    'commitment': ['contract', 'commitment', 'locked in', 'cancel', 'quit'],
    'location': ['far', 'close', 'location', 'drive', 'distance'],
    'general': ['not sure', 'maybe', 'thinking', 'hesitant', 'worried'],
}

# Interest level on the 1-10 scale used by interest_threshold
INTEREST_SCORES = {'low': 3, 'medium': 6, 'high': 9}

MAX_PRIORITY_ADJUSTMENT = 1.0


@dataclass(frozen=True)
class InterestAnalysis:
    """
    Result of analysing one message.

    Attributes:
        interest_level: high / medium / low
        urgency_level: urgent / normal / casual
        confidence: 0.3-0.9, grows with the number of indicators
        indicators: Matched keywords per category
    """
    interest_level: str
    urgency_level: str
    confidence: float
    indicators: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def interest_score(self) -> int:
        return INTEREST_SCORES[self.interest_level]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'interest_level': self.interest_level,
            'urgency_level': self.urgency_level,
            'confidence': self.confidence,
            'indicators': {k: list(v) for k, v in self.indicators.items()},
        }


class InterestDetector:
    """Keyword-based interest and urgency analysis."""

    def analyze_message(self, message: str, history: Optional[Sequence[str]] = None) -> InterestAnalysis:
        """
        Analyse a message, optionally blended with earlier user messages.

        Args:
            message: Current user message
            history: Earlier user messages (strings)

        Returns:
            InterestAnalysis
        """
        indicators = self._collect_indicators(message)

        question_score = 0
        for pattern in INTEREST_QUESTIONS:
            if pattern.search(message):
                question_score += 2
                indicators['positive'].append('interest_question')
        for pattern in DISINTEREST_PATTERNS:
            if pattern.search(message):
                question_score -= 2
                indicators['negative'].append('disinterest_pattern')

        net_interest = len(indicators['positive']) * 2 + question_score - len(indicators['negative']) * 2
        if net_interest >= 4:
            interest = 'high'
        elif net_interest >= 1:
            interest = 'medium'
        else:
            interest = 'low'

        net_urgency = (len(indicators['urgency']) - len(indicators['casual'])) * 2
        if net_urgency >= 2:
            urgency = 'urgent'
        elif net_urgency <= -2:
            urgency = 'casual'
        else:
            urgency = 'normal'

        history_texts = [h for h in (history or []) if isinstance(h, str) and h.strip()]
        if history_texts:
            historical = self._history_interest(history_texts)
            if historical == 'high' and interest != 'low':
                interest = 'high'
            elif historical == 'low' and interest != 'high':
                interest = 'low'

        total = sum(len(v) for v in indicators.values())
        confidence = min(0.9, max(0.3, total * 0.15 + 0.3))

        return InterestAnalysis(
            interest_level=interest,
            urgency_level=urgency,
            confidence=round(confidence, 2),
            indicators=indicators,
        )

    def _collect_indicators(self, message: str) -> Dict[str, List[str]]:
        text = (message or "").lower()
        return {
            'positive': [k for k in HIGH_INTEREST_KEYWORDS if k in text],
            'negative': [k for k in LOW_INTEREST_KEYWORDS if k in text],
            'urgency': [k for k in URGENCY_KEYWORDS if k in text],
            'casual': [k for k in CASUAL_KEYWORDS if k in text],
        }

    def _history_interest(self, history: Sequence[str]) -> str:
        positive = negative = 0
        for text in history:
            indicators = self._collect_indicators(text)
            positive += len(indicators['positive'])
            negative += len(indicators['negative'])

        net = (positive - negative) / len(history)
        if net >= 1.5:
            return 'high'
        if net >= 0.5:
            return 'medium'
        return 'low'

    def detect_buying_signals(self, message: str) -> Dict[str, Any]:
        text = (message or "").lower()
        found = [s for s in BUYING_SIGNALS if s in text]
        if len(found) >= 3:
            strength = 'strong'
        elif found:
            strength = 'moderate'
        else:
            strength = 'weak'
        return {'has_buying_signals': bool(found), 'signals': found, 'strength': strength}

    def detect_objections(self, message: str) -> Dict[str, Any]:
        text = (message or "").lower()
        found = []
        primary = 'none'
        for kind, keywords in OBJECTION_KEYWORDS.items():
            for keyword in keywords:
                if keyword in text:
                    found.append(f"{kind}: {keyword}")
                    if primary == 'none':
                        primary = kind
        return {'has_objections': bool(found), 'objections': found, 'type': primary}


def priority_adjustment(analysis: Optional[InterestAnalysis]) -> float:
    """
    Priority delta for a recommendation: high interest +1, urgent +0.5,
    low interest -1, clamped to +/-1.
    """
    if analysis is None:
        return 0.0

    delta = 0.0
    if analysis.interest_level == 'high':
        delta += 1.0
    if analysis.urgency_level == 'urgent':
        delta += 0.5
    if analysis.interest_level == 'low':
        delta -= 1.0
    return max(-MAX_PRIORITY_ADJUSTMENT, min(MAX_PRIORITY_ADJUSTMENT, delta))
