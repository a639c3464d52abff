"""
Goal Selector - Stateless eligibility, ordering and constraint engine

Responsibilities:
- Decide which catalog goals are eligible this turn
- Order eligible goals (order ascending, importance descending)
- Apply global constraints (always-active, strict ordering, per-turn cap)
- Look up goals and prerequisite chains

Design principles:
- Stateless: all state comes from the state parameter
- Deterministic: same input always produces same output
- Pure functions: no side effects, inputs are never mutated
"""

import logging
from typing import Iterable, List, Optional, Sequence

from goalflow.contracts import GoalConfiguration, GoalDefinition, GlobalSettings

logger = logging.getLogger(__name__)

UNORDERED = 9999

# strict_ordering at or above this value allows one goal at a time
STRICT_ORDERING_THRESHOLD = 7
ALWAYS_ACTIVE = 0


def matches_goal_id(goal_id: str, reference: str) -> bool:
    """
    Prefix-aware id match.

    A stored id such as 'collect_identity_1741' satisfies a reference
    to 'collect_identity'.
    """
    return goal_id == reference or goal_id.startswith(reference + '_')


class GoalSelector:
    """
    Stateless goal eligibility engine.

    Works on normalized GoalDefinition objects and a plain state dict.
    """

    def __init__(self, unordered_goal_order: int = UNORDERED):
        self.unordered_goal_order = unordered_goal_order
        logger.info("Goal Selector initialized")

    # =========================================================================
    # Eligibility
    # =========================================================================

    def filter_eligible(
        self,
        goals: Iterable[GoalDefinition],
        state: dict,
        message: str,
        channel: Optional[str] = None
    ) -> List[GoalDefinition]:
        """
        Goals that may be pursued this turn, in catalog order.

        Rules, first failure excludes:
        1. Completed or declined -> excluded
        2. channel_rules[channel].skip -> excluded
        3. Triggers present -> every specified check must pass
        4. Else legacy timing present -> message_count within bounds
        5. Otherwise eligible

        Args:
            goals: Catalog goals
            state: Channel state dict
            message: Current user message
            channel: Channel name (e.g. 'sms', 'web')

        Returns:
            Eligible goals
        """
        return [g for g in goals if self.is_eligible(g, state, message, channel)]

    def is_eligible(self, goal: GoalDefinition, state: dict, message: str,
                    channel: Optional[str] = None) -> bool:
        completed = state.get('completed_goals', [])
        declined = state.get('declined_goals', [])
        message_count = state.get('message_count', 0)

        if goal.id in completed or goal.id in declined:
            return False

        if channel is not None:
            rule = goal.channel_rules.get(channel)
            if rule is not None and rule.skip:
                logger.debug(f"Goal {goal.id} skipped on channel {channel}")
                return False

        if goal.triggers is not None:
            return self._triggers_pass(goal, completed, message_count, message)

        if goal.timing is not None:
            timing = goal.timing
            if timing.min_messages and message_count < timing.min_messages:
                return False
            if timing.max_messages and message_count > timing.max_messages:
                return False
            return True

        return True

    def _triggers_pass(self, goal: GoalDefinition, completed: Sequence[str],
                       message_count: int, message: str) -> bool:
        triggers = goal.triggers

        if triggers.prerequisite_goals:
            for prereq in triggers.prerequisite_goals:
                if not any(matches_goal_id(done, prereq) for done in completed):
                    return False

        if triggers.message_count is not None and message_count < triggers.message_count:
            return False

        if triggers.user_signals:
            text = (message or "").lower()
            if not any(signal.lower() in text for signal in triggers.user_signals):
                return False

        return True

    # =========================================================================
    # Ordering and constraints
    # =========================================================================

    def _order(self, goal: GoalDefinition) -> int:
        return goal.order if goal.order is not None else self.unordered_goal_order

    def sort_key(self, goal: GoalDefinition):
        return (self._order(goal), -goal.importance, goal.position)

    def sort_by_order_and_importance(self, goals: Iterable[GoalDefinition]) -> List[GoalDefinition]:
        """
        Order ascending (None last), then importance descending.

        Remaining ties keep catalog position.
        """
        return sorted(goals, key=self.sort_key)

    def apply_constraints(
        self,
        sorted_goals: Sequence[GoalDefinition],
        config,
        state: dict
    ) -> List[GoalDefinition]:
        """
        Limit how many goals may be activated this turn.

        - strict_ordering 0: everything (always-active mode)
        - strict_ordering >= 7: nothing while a goal is active, else the first
        - otherwise: first max_goals_per_turn (when > 0)

        Args:
            sorted_goals: Output of sort_by_order_and_importance
            config: GoalConfiguration or GlobalSettings
            state: Channel state dict

        Returns:
            Goals to activate
        """
        settings = config.global_settings if isinstance(config, GoalConfiguration) else config
        if not isinstance(settings, GlobalSettings):
            raise TypeError(f"config must be GoalConfiguration or GlobalSettings, got {type(config).__name__}")

        goals = list(sorted_goals)
        strict = settings.strict_ordering

        if strict == ALWAYS_ACTIVE:
            return goals

        if strict >= STRICT_ORDERING_THRESHOLD:
            if state.get('active_goals'):
                logger.debug("Strict ordering: a goal is already active, no new activations")
                return []
            return goals[:1]

        if settings.max_goals_per_turn > 0:
            return goals[:settings.max_goals_per_turn]
        return goals

    # =========================================================================
    # Lookups
    # =========================================================================

    @staticmethod
    def find_goal(config: GoalConfiguration, goal_id: str) -> Optional[GoalDefinition]:
        """Find a goal by exact id, falling back to prefix match."""
        exact = config.find_goal(goal_id)
        if exact is not None:
            return exact
        for goal in config.goals:
            if matches_goal_id(goal.id, goal_id):
                return goal
        return None

    def prerequisites_for(self, goal: GoalDefinition, config: GoalConfiguration) -> List[GoalDefinition]:
        """
        Resolved prerequisite goals, sorted by order.

        Prerequisites without an order sort last; ties keep catalog position.
        Unknown ids are skipped.
        """
        resolved = []
        for prereq_id in goal.chain_prerequisites:
            prereq = self.find_goal(config, prereq_id)
            if prereq is None:
                logger.warning(f"Prerequisite '{prereq_id}' of goal '{goal.id}' not in catalog")
                continue
            if prereq not in resolved:
                resolved.append(prereq)
        return sorted(resolved, key=lambda g: (self._order(g), g.position))

    def get_most_urgent_goal(self, config: GoalConfiguration, active_ids: Sequence[str]) -> Optional[GoalDefinition]:
        """
        The active goal to focus on.

        Always-active mode: highest importance, then lowest order.
        Otherwise: lowest order.
        """
        active = [g for g in (self.find_goal(config, i) for i in active_ids) if g is not None]
        if not active:
            return None

        if config.global_settings.strict_ordering == ALWAYS_ACTIVE:
            return sorted(active, key=lambda g: (-g.importance, self._order(g), g.position))[0]
        return sorted(active, key=lambda g: (self._order(g), g.position))[0]
