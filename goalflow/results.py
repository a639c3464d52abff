"""
Result types returned by GoalOrchestrator.orchestrate_goals()

This is the ONLY return type of the orchestrator. Intents and goal ids
are returned structurally so callers never parse log output.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from goalflow.contracts import GoalRecommendation


@dataclass(frozen=True)
class GoalOrchestrationResult:
    """
    Outcome of one orchestration pass.

    Attributes:
        recommendations: Goals to pursue this turn, most important first
        extracted_info: Fields captured from this message (field -> value)
        state_updates: {'newly_completed', 'newly_activated', 'declined'} id lists
        triggered_intents: Intents fired for the first time this turn
        active_goals: Active goal ids after this turn
        completed_goals: Completed goal ids after this turn
        state: Updated channel state (already saved when a store is injected)
        fast_track: Whether a fast-track sequence drove activation this turn
        correction: {'field', 'previous_value', 'goal_id', 'reported_value'} when the user
            reported wrong data, else None
        rejected_fields: Candidates that failed validation ({field, value, reason})
        interest: Interest/urgency analysis used for priority, if any
    """
    recommendations: List[GoalRecommendation]
    extracted_info: Dict[str, Any]
    state_updates: Dict[str, List[str]]
    triggered_intents: List[str]
    active_goals: List[str]
    completed_goals: List[str]
    state: Dict[str, Any] = field(default_factory=dict)
    fast_track: bool = False
    correction: Optional[Dict[str, Any]] = None
    rejected_fields: List[Dict[str, Any]] = field(default_factory=list)
    interest: Optional[Dict[str, Any]] = None

    @property
    def primary_recommendation(self) -> Optional[GoalRecommendation]:
        """First recommendation the caller should act on, or None."""
        for rec in self.recommendations:
            if rec.should_pursue:
                return rec
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable view (used by the Flask layer)."""
        return {
            'recommendations': [r.to_dict() for r in self.recommendations],
            'extracted_info': dict(self.extracted_info),
            'state_updates': {k: list(v) for k, v in self.state_updates.items()},
            'triggered_intents': list(self.triggered_intents),
            'active_goals': list(self.active_goals),
            'completed_goals': list(self.completed_goals),
            'fast_track': self.fast_track,
            'correction': self.correction,
            'rejected_fields': list(self.rejected_fields),
            'interest': self.interest,
        }
