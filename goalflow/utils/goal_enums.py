"""
Goal vocabulary enums for the orchestration state machine.

Invariants:
- Catalog strings are validated against these enums once, at load time
- Unknown priorities/types/strategies fail fast with ValueError
- Enum values equal the wire strings, so state stays JSON-serializable

Design:
- All enums are string-based (str, Enum) so they compare equal to raw strings
- IMPORTANCE is the single numeric scale for ordering and recommendations
"""

from enum import Enum


class GoalPriority(str, Enum):
    """
    Priority tier of a goal.

    Drives both ordering tie-breaks and the numeric priority of a
    recommendation (see IMPORTANCE).
    """
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class GoalType(str, Enum):
    """
    Kind of work a goal represents.

    DATA_COLLECTION and SCHEDULING both capture fields from user messages.
    CUSTOM goals never complete through field capture.
    """
    DATA_COLLECTION = "data_collection"
    SCHEDULING = "scheduling"
    CUSTOM = "custom"


class Approach(str, Enum):
    """How insistently a goal's question should be phrased this turn."""
    DIRECT = "direct"
    CONTEXTUAL = "contextual"
    SUBTLE = "subtle"


class BackoffStrategy(str, Enum):
    """
    How the approach changes as attempts accumulate.

    GENTLE:
        Softens after repeated attempts (contextual at 2, subtle at 3+).
    AGGRESSIVE:
        Hardens to direct from the second attempt.
    PERSISTENT:
        Keeps the adherence-derived approach unchanged.
    """
    GENTLE = "gentle"
    PERSISTENT = "persistent"
    AGGRESSIVE = "aggressive"


# Numeric importance per tier (higher = more important)
IMPORTANCE = {
    GoalPriority.CRITICAL: 10,
    GoalPriority.HIGH: 7,
    GoalPriority.MEDIUM: 4,
    GoalPriority.LOW: 1,
}

# Data-bearing goal types (fields are extracted for these)
FIELD_CAPTURING_TYPES = frozenset({GoalType.DATA_COLLECTION, GoalType.SCHEDULING})

# Legacy type names used by older catalogs
LEGACY_TYPE_ALIASES = {
    'collect_info': GoalType.DATA_COLLECTION,
    'validate_info': GoalType.DATA_COLLECTION,
    'schedule_action': GoalType.SCHEDULING,
    'conversation': GoalType.CUSTOM,
    'action_trigger': GoalType.CUSTOM,
    'qualify_lead': GoalType.CUSTOM,
}
