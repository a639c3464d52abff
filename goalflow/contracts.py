"""
Semantic contracts for the goal orchestration runtime.

This module defines immutable data structures that serve as contracts
between modules. These are NOT validators - they define shape and
semantics without enforcing rules.

Design principles:
- Frozen dataclasses (immutable after creation)
- No validation logic (catalog parsing lives in core.goal_config)
- No dependencies on other goalflow modules except the enum vocabulary
- Definition layer only (no enforcement)

Contents:
- FieldDescriptor: Canonical shape of one field a goal captures
- GoalTriggers / LegacyTiming / ChannelRule / GoalBehavior / GoalMessages /
  GoalAction: Parts of a goal definition
- GoalDefinition: One normalized catalog entry
- GlobalSettings / CustomCombination / CompletionTriggers / GoalConfiguration:
  The catalog as a whole
- ValidationResult: Output of the field validator
- GoalRecommendation: Which goal to pursue this turn, and how
- StateSnapshot: Pre-turn copy of rollback-relevant state
- ResponseChunk: One delivery unit of a reply
- TimeSlot: Offered scheduling slot (day + times)

Usage:
    from goalflow.contracts import GoalDefinition, GoalRecommendation
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from goalflow.utils.goal_enums import (
    Approach,
    BackoffStrategy,
    FIELD_CAPTURING_TYPES,
    GoalPriority,
    GoalType,
    IMPORTANCE,
)


# =========================================================================
# Goal definition parts
# =========================================================================

@dataclass(frozen=True)
class FieldDescriptor:
    """
    Canonical shape of one field a goal captures.

    Catalogs list fields either as bare strings (old format) or as
    {name, required, pattern} objects (new format). Both are resolved
    into this shape once, at catalog load time.

    Attributes:
        name: Captured-data key (e.g. 'email', 'preferredTime')
        required: Whether the goal can complete without it
        pattern: Optional regex the value must match (search semantics)
        field_type: Optional value kind (text, email, phone, date, time, number)
        description: Optional human hint passed to the extractor prompt
    """
    name: str
    required: bool = True
    pattern: Optional[str] = None
    field_type: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class GoalTriggers:
    """
    Eligibility conditions. Every condition that is specified must hold.

    Attributes:
        prerequisite_goals: Goal ids (or id prefixes) that must be completed
        message_count: Minimum message_count before the goal is eligible
        user_signals: Keywords, at least one of which must appear in the message
    """
    prerequisite_goals: Tuple[str, ...] = ()
    message_count: Optional[int] = None
    user_signals: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LegacyTiming:
    """Older message-window gating, used only when a goal has no triggers."""
    min_messages: Optional[int] = None
    max_messages: Optional[int] = None


@dataclass(frozen=True)
class ChannelRule:
    """Per-channel override (e.g. skip a goal on SMS)."""
    required: bool = False
    skip: bool = False


@dataclass(frozen=True)
class GoalBehavior:
    """
    Retry behaviour.

    Attributes:
        max_attempts: Recommendations allowed before the goal is declined
        backoff_strategy: How the approach shifts with repeated attempts
        message: Fixed phrasing used when no request/follow_up message exists
    """
    max_attempts: Optional[int] = None
    backoff_strategy: Optional[BackoffStrategy] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class GoalMessages:
    """Custom phrasing: request on the first attempt, follow_up afterwards."""
    request: Optional[str] = None
    follow_up: Optional[str] = None


@dataclass(frozen=True)
class GoalAction:
    """
    Side effect fired once when a goal completes.

    Attributes:
        type: Action type (convert_anonymous_to_lead, trigger_scheduling_flow, ...)
        event_name: Explicit event name (defaults per type when None)
        payload: Extra payload merged into the published event
    """
    type: str
    event_name: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GoalDefinition:
    """
    One normalized goal from the catalog (read-only to the orchestrator).

    Attributes:
        id: Unique goal identifier (e.g. 'collect_email')
        name: Display name
        priority: Priority tier
        order: Position in the pursuit sequence (None sorts last)
        adherence: 1-10, how insistently the goal is pursued
        type: data_collection, scheduling, or custom
        fields: Fields to capture, in catalog order
        triggers: Eligibility conditions (None when the catalog has none)
        timing: Legacy message window (only consulted without triggers)
        channel_rules: channel name -> ChannelRule
        behavior: Retry behaviour
        messages: Custom phrasing
        on_complete: Actions fired once on completion
        is_primary: Marks the high-value goal eligible for fast-track
        prerequisites: Root-level prerequisite ids (fast-track chain)
        description: Free-text description
        position: Index in the catalog (stable tie-break)
    """
    id: str
    name: str
    priority: GoalPriority = GoalPriority.MEDIUM
    order: Optional[int] = None
    adherence: int = 5
    type: GoalType = GoalType.DATA_COLLECTION
    fields: Tuple[FieldDescriptor, ...] = ()
    triggers: Optional[GoalTriggers] = None
    timing: Optional[LegacyTiming] = None
    channel_rules: Dict[str, ChannelRule] = field(default_factory=dict)
    behavior: GoalBehavior = field(default_factory=GoalBehavior)
    messages: GoalMessages = field(default_factory=GoalMessages)
    on_complete: Tuple[GoalAction, ...] = ()
    is_primary: bool = False
    prerequisites: Tuple[str, ...] = ()
    description: str = ""
    position: int = 0

    @property
    def importance(self) -> int:
        return IMPORTANCE[self.priority]

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def required_field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields if f.required)

    @property
    def captures_fields(self) -> bool:
        return self.type in FIELD_CAPTURING_TYPES and len(self.fields) > 0

    @property
    def chain_prerequisites(self) -> Tuple[str, ...]:
        """Prerequisites for fast-track: root-level list, else trigger prerequisites."""
        if self.prerequisites:
            return self.prerequisites
        if self.triggers is not None:
            return self.triggers.prerequisite_goals
        return ()


# =========================================================================
# Catalog
# =========================================================================

@dataclass(frozen=True)
class GlobalSettings:
    """
    Catalog-wide pursuit limits.

    Attributes:
        max_active_goals: Informational cap on concurrently active goals
        strict_ordering: 0 = always-active, >= 7 = one goal at a time
        max_goals_per_turn: Activations allowed per turn otherwise
        respect_declines: Declined goals are never re-offered
        adapt_to_urgency: Allow interest/urgency to adjust priority
        interest_threshold: Minimum interest (1-10) for non-critical goals
    """
    max_active_goals: int = 3
    strict_ordering: int = 7
    max_goals_per_turn: int = 2
    respect_declines: bool = True
    adapt_to_urgency: bool = True
    interest_threshold: int = 5


@dataclass(frozen=True)
class CustomCombination:
    """Named set of goals whose joint completion fires an intent."""
    goal_ids: Tuple[str, ...]
    trigger_intent: str
    description: str = ""


@dataclass(frozen=True)
class CompletionTriggers:
    """Intents fired when groups of goals complete."""
    all_critical_complete: Optional[str] = "lead_qualified"
    all_high_complete: Optional[str] = None
    custom_combinations: Tuple[CustomCombination, ...] = ()


@dataclass(frozen=True)
class GoalConfiguration:
    """
    Normalized goal catalog for one tenant/persona.

    Attributes:
        enabled: Orchestration on/off
        goals: Goal definitions in catalog order
        global_settings: Pursuit limits (defaults merged)
        completion_triggers: Intent triggers (defaults merged)
        source: 'company', 'persona', 'file', or 'none'
    """
    enabled: bool
    goals: Tuple[GoalDefinition, ...]
    global_settings: GlobalSettings = field(default_factory=GlobalSettings)
    completion_triggers: CompletionTriggers = field(default_factory=CompletionTriggers)
    source: str = "file"

    @property
    def goal_ids(self) -> Tuple[str, ...]:
        return tuple(g.id for g in self.goals)

    def find_goal(self, goal_id: str) -> Optional[GoalDefinition]:
        for goal in self.goals:
            if goal.id == goal_id:
                return goal
        return None

    def primary_goal(self) -> Optional[GoalDefinition]:
        for goal in self.goals:
            if goal.is_primary:
                return goal
        return None


# =========================================================================
# Per-turn values
# =========================================================================

@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of validating one candidate field value.

    Attributes:
        valid: Whether the value may be persisted
        normalized_value: Cleaned value (None when invalid)
        reason: Short machine-readable rejection reason (None when valid)
    """
    valid: bool
    normalized_value: Any = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class GoalRecommendation:
    """
    Orchestrator output: pursue this goal this turn, this way.

    Ephemeral - never persisted. Consumed by the prompt builder, which
    phrases the actual question.

    Attributes:
        goal_id: Goal to pursue
        priority: Numeric importance (tier value, +/- interest adjustment)
        adherence_level: Goal adherence (1-10)
        approach: direct / contextual / subtle
        message: Suggested phrasing
        should_pursue: Whether the caller should ask this turn
        attempt_count: Recommendations made for this goal so far (incl. this one)
        reason: Human-readable pursuit reason (for logs and debugging)
    """
    goal_id: str
    priority: float
    adherence_level: int
    approach: Approach
    message: str
    should_pursue: bool
    attempt_count: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'goal_id': self.goal_id,
            'priority': self.priority,
            'adherence_level': self.adherence_level,
            'approach': self.approach.value,
            'message': self.message,
            'should_pursue': self.should_pursue,
            'attempt_count': self.attempt_count,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class StateSnapshot:
    """
    Immutable pre-turn copy of the rollback-relevant channel state.

    Lifecycle:
    1. Created by: caller at response start (StateSnapshot.from_state)
    2. Held by: InterruptionTracker, keyed by response id
    3. Consumed by: GoalStateStore.rollback when the response is superseded
    4. Discarded: on clear_tracking or after a rollback

    Attributes:
        captured_data: Field values (deep-copied)
        active_goals: Active goal ids
        completed_goals: Completed goal ids
        message_count: Message counter
        attempt_counts: Recommendation attempts per goal
        declined_goals: Declined goal ids
    """
    captured_data: Dict[str, Any]
    active_goals: Tuple[str, ...]
    completed_goals: Tuple[str, ...]
    message_count: int
    attempt_counts: Dict[str, int] = field(default_factory=dict)
    declined_goals: Tuple[str, ...] = ()

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "StateSnapshot":
        return cls(
            captured_data=copy.deepcopy(state.get('captured_data', {})),
            active_goals=tuple(state.get('active_goals', [])),
            completed_goals=tuple(state.get('completed_goals', [])),
            message_count=int(state.get('message_count', 0)),
            attempt_counts=dict(state.get('attempt_counts', {})),
            declined_goals=tuple(state.get('declined_goals', [])),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        return cls.from_state(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'captured_data': copy.deepcopy(self.captured_data),
            'active_goals': list(self.active_goals),
            'completed_goals': list(self.completed_goals),
            'message_count': self.message_count,
            'attempt_counts': dict(self.attempt_counts),
            'declined_goals': list(self.declined_goals),
        }


@dataclass(frozen=True)
class ResponseChunk:
    """
    One delivery unit of a reply.

    Attributes:
        text: Chunk text (trimmed)
        index: 0-based position
        total: Number of chunks in the reply
        delay_ms: Wait before sending (0 for the first chunk)
        response_to_message_id: Response id from the interruption tracker
    """
    text: str
    index: int
    total: int
    delay_ms: int
    response_to_message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'index': self.index,
            'total': self.total,
            'delay_ms': self.delay_ms,
            'response_to_message_id': self.response_to_message_id,
        }


@dataclass(frozen=True)
class TimeSlot:
    """Offered scheduling slot: capitalized weekday and formatted times."""
    day: str
    times: Tuple[str, ...]
