"""
Goal Orchestrator - Turn-by-turn goal state machine (Functional Core)

Responsibilities:
- Load working state once, save it once
- Drop goal ids that left the catalog
- Capture validated field values for active and eligible goals
- Detect declines, completions, fast-track and corrections
- Activate goals per eligibility, ordering and constraints
- Emit recommendations, fire completion actions and intents at most once

Design principles:
- Collaborators injected and checked by interface (no singletons)
- Working state is a private copy owned by the call; the caller's
  prior_state is never mutated
- Intents and goal ids are returned structurally in the result
- Publish failures never fail the turn; store write failures do

Per-turn flow:
    1. load / count        5. decline             9. recommend
    2. sanitize            6. complete + actions  10. intents
    3. eligibility         7. fast-track          11. correction (skips 4-9)
    4. capture             8. activate
"""

import copy
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from goalflow.config import OrchestratorSettings
from goalflow.contracts import (
    FieldDescriptor,
    GoalConfiguration,
    GoalDefinition,
    GoalRecommendation,
)
from goalflow.core.field_validator import FieldValidator, unwrap_value
from goalflow.core.goal_selector import STRICT_ORDERING_THRESHOLD, GoalSelector, matches_goal_id
from goalflow.core.goal_state_store import complete_state, default_state
from goalflow.core.interest_detector import priority_adjustment
from goalflow.results import GoalOrchestrationResult
from goalflow.utils.event_publisher import EVENT_SOURCE, LoggingEventPublisher
from goalflow.utils.field_mappings import (
    CONTACT_FIELDS,
    CORRECTION_FIELD_MAP,
    CORRECTION_KEYWORD_MAP,
    default_event_name,
    map_field_name,
)
from goalflow.utils.goal_enums import Approach, BackoffStrategy, GoalPriority, GoalType
from goalflow.utils.helpers import utc_now_iso


logger = logging.getLogger(__name__)

LEAD_CONVERSION_ACTION = 'convert_anonymous_to_lead'


class GoalOrchestrator:
    """
    Drives goal state for one channel per call.

    Holds no per-channel state between calls; everything lives in the
    channel state dict that is loaded at the start of a turn and saved
    at the end.
    """

    def __init__(self, selector, validator, extractor=None, store=None,
                 publisher=None, interest_detector=None,
                 settings: Optional[OrchestratorSettings] = None):
        """
        Initialize orchestrator with collaborators.

        Args:
            selector: GoalSelector (eligibility / ordering / constraints)
            validator: FieldValidator (persist gate)
            extractor: FieldExtractor, optional (no extraction without it
                unless the caller passes pre_extracted)
            store: GoalStateStore, optional (state only flows through
                prior_state / result.state without it)
            publisher: EventPublisher (LoggingEventPublisher when None)
            interest_detector: InterestDetector, optional (priority adjustment)
            settings: OrchestratorSettings (defaults when None)

        Raises:
            TypeError: If a collaborator lacks a required method
        """
        self._validate_modules(selector, validator, extractor, store, publisher, interest_detector)

        self.selector = selector
        self.validator = validator
        self.extractor = extractor
        self.store = store
        self.publisher = publisher if publisher is not None else LoggingEventPublisher()
        self.interest_detector = interest_detector
        self.settings = settings or OrchestratorSettings()

        logger.info(
            f"Goal Orchestrator initialized "
            f"(extractor={'yes' if extractor else 'no'}, store={'yes' if store else 'no'}, "
            f"publisher={type(self.publisher).__name__})"
        )

    @staticmethod
    def _validate_modules(selector, validator, extractor, store, publisher, interest_detector):
        """Validate module interfaces"""
        def require(obj, name, methods):
            for method in methods:
                if not callable(getattr(obj, method, None)):
                    raise TypeError(f"{name} must have callable {method}() method")

        require(selector, 'selector', ('filter_eligible', 'sort_by_order_and_importance',
                                       'apply_constraints', 'prerequisites_for',
                                       'get_most_urgent_goal'))
        require(validator, 'validator', ('validate', 'is_field_satisfied'))
        if extractor is not None:
            require(extractor, 'extractor', ('extract_candidates',))
        if store is not None:
            require(store, 'store', ('load', 'save'))
        if publisher is not None:
            require(publisher, 'publisher', ('publish',))
        if interest_detector is not None:
            require(interest_detector, 'interest_detector', ('analyze_message',))

    # =========================================================================
    # Public API
    # =========================================================================

    def orchestrate_goals(
        self,
        message: str,
        channel_id: str,
        user_id: str,
        tenant_id: str,
        goal_config: GoalConfiguration,
        history: Optional[Sequence[Any]] = None,
        channel: Optional[str] = None,
        prior_state: Optional[Dict[str, Any]] = None,
        pre_extracted=None,
        message_counted: bool = False
    ) -> GoalOrchestrationResult:
        """
        Run one orchestration pass for an inbound message.

        Args:
            message: User message text
            channel_id: Conversation channel identifier (state key)
            user_id: User identifier (event payloads)
            tenant_id: Tenant identifier (event payloads)
            goal_config: Normalized goal catalog
            history: Earlier messages (strings or {role, content} dicts)
            channel: Channel name for channel rules (e.g. 'sms')
            prior_state: Channel state to start from instead of loading
            pre_extracted: Candidates already extracted by the caller
                ({field: value} or [{field, value}]); skips the extractor
            message_counted: Caller already incremented message_count

        Returns:
            GoalOrchestrationResult

        Raises:
            StateStoreError: If saving the updated state fails
        """
        message = message or ""

        # Step 1: working state
        state = self._load_working_state(channel_id, prior_state)
        if not message_counted:
            state['message_count'] += 1

        # Step 2: sanitize against the catalog
        self._sanitize(state, goal_config)
        initial_active = list(state['active_goals'])

        result = _ResultBuilder()

        if not goal_config.enabled or not goal_config.goals:
            logger.info(f"[{channel_id}] Goal orchestration disabled")
            return self._finish(channel_id, state, result, initial_active)

        analysis = None
        if self.interest_detector is not None:
            analysis = self.interest_detector.analyze_message(message, _user_texts(history))
            result.interest = analysis.to_dict()

        # Step 3: eligibility before extraction so newly eligible goals can capture
        eligible = self.selector.filter_eligible(goal_config.goals, state, message, channel)
        logger.info(f"[{channel_id}] {len(eligible)} eligible goals (of {len(goal_config.goals)})")

        needed = self._fields_needed(goal_config, state, eligible)
        candidates = self._gather_candidates(message, needed, state, pre_extracted)

        # Step 11: correction takes precedence and skips steps 4-9
        correction = self._detect_correction(message, candidates, state)
        if correction is not None:
            result.correction = self._apply_correction(correction, goal_config, state, channel_id)
        else:
            # Step 4: capture
            self._capture_fields(candidates, needed, state, result)

            # Step 5: decline
            self._detect_decline(message, state, goal_config, result, channel_id)

            # Step 6: completion
            self._complete_goals(goal_config, state, eligible, result,
                                 channel_id, user_id, tenant_id)

            # Step 7: fast-track
            fast_goal = self._fast_track(message, goal_config, state, result, channel_id)

            # Step 8: activation
            if fast_goal is not None:
                to_pursue = [fast_goal]
            else:
                to_pursue = self._goals_to_activate(goal_config, state, eligible)

            # Step 9: recommendations
            for goal in to_pursue:
                adjust = analysis if goal_config.global_settings.adapt_to_urgency else None
                recommendation = self._recommend(goal, state, adjust, result, channel_id)
                if recommendation is None:
                    continue
                result.recommendations.append(recommendation)
                if goal.id not in state['active_goals']:
                    state['active_goals'].append(goal.id)

        # Step 10: completion triggers
        self._check_completion_triggers(goal_config, state, result, channel_id, user_id, tenant_id)

        return self._finish(channel_id, state, result, initial_active)

    # =========================================================================
    # Steps 1-2: state
    # =========================================================================

    def _load_working_state(self, channel_id: str, prior_state: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if prior_state is not None:
            return complete_state(copy.deepcopy(prior_state))
        if self.store is not None:
            return self.store.load(channel_id)
        return default_state()

    def _sanitize(self, state: Dict[str, Any], config: GoalConfiguration) -> None:
        known = set(config.goal_ids)
        for key in ('active_goals', 'completed_goals', 'declined_goals', 'fast_track_goals'):
            kept = [g for g in dict.fromkeys(state[key]) if g in known]
            dropped = [g for g in state[key] if g not in known]
            if dropped:
                logger.warning(f"Removing {len(dropped)} unknown goal ids from {key}: {dropped}")
            state[key] = kept

        completed = set(state['completed_goals'])
        state['declined_goals'] = [g for g in state['declined_goals'] if g not in completed]
        excluded = completed | set(state['declined_goals'])
        state['active_goals'] = [g for g in state['active_goals'] if g not in excluded]

    # =========================================================================
    # Step 4: extraction and capture
    # =========================================================================

    def _fields_needed(self, config: GoalConfiguration, state: Dict[str, Any],
                       eligible: Sequence[GoalDefinition]) -> Dict[str, FieldDescriptor]:
        """
        Fields of active, eligible or primary goals that are not yet satisfied.

        The primary goal's fields are always requested so volunteered
        primary data can be captured and trigger fast-track.
        """
        eligible_ids = {g.id for g in eligible}
        excluded = set(state['completed_goals']) | set(state['declined_goals'])
        captured = state['captured_data']

        needed: Dict[str, FieldDescriptor] = {}
        for goal in config.goals:
            if not goal.captures_fields or goal.id in excluded:
                continue
            if not (goal.id in state['active_goals'] or goal.id in eligible_ids or goal.is_primary):
                continue
            for descriptor in goal.fields:
                if descriptor.name in needed:
                    continue
                if self.validator.is_field_satisfied(descriptor.name, captured.get(descriptor.name), descriptor):
                    continue
                needed[descriptor.name] = descriptor
        return needed

    def _gather_candidates(self, message: str, needed: Dict[str, FieldDescriptor],
                           state: Dict[str, Any], pre_extracted) -> List[Dict[str, Any]]:
        if pre_extracted is not None:
            return _normalize_candidates(pre_extracted)

        if self.extractor is None or not message.strip():
            return []

        correctable = any(f in state['captured_data'] for f in CORRECTION_FIELD_MAP.values())
        if not needed and not correctable:
            return []

        return self.extractor.extract_candidates(message, list(needed.values()))

    def _capture_fields(self, candidates: List[Dict[str, Any]], needed: Dict[str, FieldDescriptor],
                        state: Dict[str, Any], result: "_ResultBuilder") -> None:
        captured = state['captured_data']
        for candidate in candidates:
            field_name = map_field_name(candidate.get('field'))
            if field_name in CORRECTION_FIELD_MAP or field_name not in needed:
                continue

            raw_value = candidate.get('value')
            validation = self.validator.validate(field_name, raw_value, needed[field_name])
            if not validation.valid:
                logger.info(f"Rejected {field_name}={raw_value!r} ({validation.reason})")
                result.rejected_fields.append({
                    'field': field_name,
                    'value': raw_value,
                    'reason': validation.reason,
                })
                continue

            captured[field_name] = validation.normalized_value
            result.extracted_info[field_name] = validation.normalized_value
            logger.info(f"Captured {field_name}={validation.normalized_value!r}")

    # =========================================================================
    # Step 5: decline
    # =========================================================================

    def _detect_decline(self, message: str, state: Dict[str, Any], config: GoalConfiguration,
                        result: "_ResultBuilder", channel_id: str) -> None:
        if not config.global_settings.respect_declines or not state['active_goals']:
            return
        if not any(p.search(message) for p in self.settings.decline_regexes):
            return

        # One goal per message: the first active one
        goal_id = state['active_goals'].pop(0)
        if goal_id not in state['declined_goals']:
            state['declined_goals'].append(goal_id)
        result.declined.append(goal_id)
        logger.info(f"[{channel_id}] User declined goal {goal_id}")

    # =========================================================================
    # Step 6: completion and actions
    # =========================================================================

    def is_goal_satisfied(self, goal: GoalDefinition, captured: Dict[str, Any]) -> bool:
        """
        Whether captured data completes a goal.

        Required fields must all be satisfied; a goal whose fields are all
        optional needs at least one. Goals without fields never complete
        through capture.
        """
        if not goal.captures_fields:
            return False

        required = [f for f in goal.fields if f.required]
        check = lambda f: self.validator.is_field_satisfied(f.name, captured.get(f.name), f)
        if required:
            return all(check(f) for f in required)
        return any(check(f) for f in goal.fields)

    def _complete_goals(self, config: GoalConfiguration, state: Dict[str, Any],
                        eligible: Sequence[GoalDefinition], result: "_ResultBuilder",
                        channel_id: str, user_id: str, tenant_id: str) -> None:
        eligible_ids = {g.id for g in eligible}
        captured = state['captured_data']

        for goal in config.goals:
            if goal.id in state['completed_goals'] or goal.id in state['declined_goals']:
                continue
            if goal.id not in state['active_goals'] and goal.id not in eligible_ids:
                continue
            if not _prerequisites_met(goal.prerequisites, state['completed_goals']):
                continue
            if not self.is_goal_satisfied(goal, captured):
                continue

            state['completed_goals'].append(goal.id)
            state['active_goals'] = [g for g in state['active_goals'] if g != goal.id]
            result.newly_completed.append(goal.id)
            logger.info(f"[{channel_id}] Goal completed: {goal.id}")

            self._fire_actions(goal, state, channel_id, user_id, tenant_id)

    def _fire_actions(self, goal: GoalDefinition, state: Dict[str, Any],
                      channel_id: str, user_id: str, tenant_id: str) -> None:
        for action in goal.on_complete:
            event_name = action.event_name or default_event_name(action.type)
            marker = f"action:{goal.id}:{event_name}"
            if marker in state['emitted_events']:
                logger.debug(f"Action {marker} already fired")
                continue

            payload = {
                'tenantId': tenant_id,
                'channelId': channel_id,
                'userId': user_id,
                'goalId': goal.id,
                'timestamp': utc_now_iso(),
            }
            payload.update(action.payload)
            if action.type == LEAD_CONVERSION_ACTION:
                captured = state['captured_data']
                payload['contactInfo'] = {
                    f: unwrap_value(captured.get(f))
                    for f in CONTACT_FIELDS + ('lastName',)
                    if captured.get(f) is not None
                }

            # Recorded before publishing: at most once even if the bus fails
            state['emitted_events'].append(marker)
            self._publish(event_name, payload)

    def _publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            self.publisher.publish(EVENT_SOURCE, event_name, payload)
            logger.info(f"Published {event_name}")
        except Exception as e:
            logger.error(f"Failed to publish {event_name}: {type(e).__name__} - {e}")

    # =========================================================================
    # Step 7: fast-track
    # =========================================================================

    def _fast_track(self, message: str, config: GoalConfiguration, state: Dict[str, Any],
                    result: "_ResultBuilder", channel_id: str) -> Optional[GoalDefinition]:
        """
        Continue or start a fast-track sequence.

        Returns:
            The goal to pursue this turn, or None to fall through to normal
            activation (state['fast_track_goals'] cleared when exhausted)
        """
        primary = config.primary_goal()
        done = set(state['completed_goals']) | set(state['declined_goals'])

        if state['fast_track_goals']:
            next_id = next((g for g in state['fast_track_goals'] if g not in done), None)
            if next_id is not None:
                logger.info(f"[{channel_id}] Continuing fast-track with {next_id}")
                state['active_goals'] = [next_id]
                result.fast_track = True
                return config.find_goal(next_id)
            logger.info(f"[{channel_id}] Fast-track sequence complete")
            state['fast_track_goals'] = []
            return None

        if primary is None or primary.id in done:
            return None

        volunteered = set(result.extracted_info) & set(primary.field_names)
        text = message.lower()
        scheduling_intent = primary.type == GoalType.SCHEDULING and any(
            keyword in text for keyword in self.settings.scheduling_keywords
        )
        if not volunteered and not scheduling_intent:
            return None

        prerequisites = self.selector.prerequisites_for(primary, config)
        sequence = [g.id for g in prerequisites if g.id != primary.id] + [primary.id]
        next_id = next((g for g in sequence if g not in done), None)
        if next_id is None:
            return None

        reason = f"fields {sorted(volunteered)}" if volunteered else "scheduling intent"
        logger.info(f"[{channel_id}] Fast-track detected ({reason}): {sequence}, next {next_id}")

        state['fast_track_goals'] = sequence
        state['active_goals'] = [next_id]
        result.fast_track = True
        return config.find_goal(next_id)

    # =========================================================================
    # Steps 8-9: activation and recommendations
    # =========================================================================

    def _goals_to_activate(self, config: GoalConfiguration, state: Dict[str, Any],
                           eligible: Sequence[GoalDefinition]) -> List[GoalDefinition]:
        excluded = set(state['completed_goals']) | set(state['declined_goals'])
        pool = [g for g in eligible if g.id not in excluded]
        ordered = self.selector.sort_by_order_and_importance(pool)
        to_activate = self.selector.apply_constraints(ordered, config, state)

        # Strict mode keeps working on the goal that is already active
        strict = config.global_settings.strict_ordering
        if not to_activate and strict >= STRICT_ORDERING_THRESHOLD and state['active_goals']:
            current = self.selector.get_most_urgent_goal(config, state['active_goals'])
            if current is not None:
                return [current]
        return to_activate

    def _recommend(self, goal: GoalDefinition, state: Dict[str, Any], analysis,
                   result: "_ResultBuilder", channel_id: str) -> Optional[GoalRecommendation]:
        attempts = state['attempt_counts']
        attempts[goal.id] = attempts.get(goal.id, 0) + 1
        attempt = attempts[goal.id]

        max_attempts = goal.behavior.max_attempts
        if max_attempts and attempt > max_attempts:
            logger.info(f"[{channel_id}] Max attempts reached for {goal.id} ({attempt}/{max_attempts})")
            state['active_goals'] = [g for g in state['active_goals'] if g != goal.id]
            if goal.id not in state['declined_goals']:
                state['declined_goals'].append(goal.id)
                result.declined.append(goal.id)
            return None

        approach = self.approach_for(goal, attempt)
        priority = float(goal.importance)
        if analysis is not None:
            priority += priority_adjustment(analysis)

        return GoalRecommendation(
            goal_id=goal.id,
            priority=priority,
            adherence_level=goal.adherence,
            approach=approach,
            message=self.message_for(goal, approach, attempt),
            should_pursue=True,
            attempt_count=attempt,
            reason=self._reason_for(goal, attempt, analysis),
        )

    @staticmethod
    def approach_for(goal: GoalDefinition, attempt: int) -> Approach:
        """
        Approach from adherence, shifted by the backoff strategy.

        adherence >= 8 direct, <= 3 subtle, else contextual. From the
        second attempt, gentle softens (contextual, then subtle from the
        third) and aggressive turns direct. Persistent keeps the base.
        """
        if goal.adherence >= 8:
            approach = Approach.DIRECT
        elif goal.adherence <= 3:
            approach = Approach.SUBTLE
        else:
            approach = Approach.CONTEXTUAL

        strategy = goal.behavior.backoff_strategy
        if attempt > 1 and strategy is not None:
            if strategy == BackoffStrategy.GENTLE:
                if attempt >= 3:
                    return Approach.SUBTLE
                return Approach.CONTEXTUAL
            if strategy == BackoffStrategy.AGGRESSIVE:
                return Approach.DIRECT
        return approach

    @staticmethod
    def message_for(goal: GoalDefinition, approach: Approach, attempt: int) -> str:
        """Suggested phrasing: custom messages, behavior message, then a field template."""
        if attempt == 1 and goal.messages.request:
            return goal.messages.request
        if attempt > 1 and goal.messages.follow_up:
            return goal.messages.follow_up
        if goal.behavior.message:
            return goal.behavior.message

        if goal.fields:
            fields = ', '.join(goal.field_names)
            if approach == Approach.DIRECT:
                return f"I need your {fields} to continue."
            if approach == Approach.CONTEXTUAL:
                return f"To help you better, could you share your {fields}?"
            return f"By the way, it would be helpful to know your {fields}."

        return f"Let's work on: {goal.description or goal.name}"

    @staticmethod
    def _reason_for(goal: GoalDefinition, attempt: int, analysis) -> str:
        reasons = []
        if goal.priority == GoalPriority.CRITICAL:
            reasons.append('critical priority')
        if goal.adherence >= 8:
            reasons.append('high adherence')
        if attempt == 1:
            reasons.append('first attempt')
        else:
            reasons.append(f'attempt {attempt}')
        if analysis is not None:
            if analysis.interest_level == 'high':
                reasons.append('high user interest')
            if analysis.urgency_level == 'urgent':
                reasons.append('user urgency detected')
        return ', '.join(reasons) or 'standard goal progression'

    # =========================================================================
    # Step 10: completion triggers
    # =========================================================================

    def _check_completion_triggers(self, config: GoalConfiguration, state: Dict[str, Any],
                                   result: "_ResultBuilder", channel_id: str,
                                   user_id: str, tenant_id: str) -> None:
        completed = state['completed_goals']
        triggers = config.completion_triggers

        def fire(intent: str) -> None:
            marker = f"intent:{intent}"
            if marker in state['emitted_events'] or intent in result.triggered_intents:
                return
            state['emitted_events'].append(marker)
            result.triggered_intents.append(intent)
            logger.info(f"[{channel_id}] Intent triggered: {intent}")
            self._publish(intent, {
                'tenantId': tenant_id,
                'channelId': channel_id,
                'userId': user_id,
                'intent': intent,
                'timestamp': utc_now_iso(),
            })

        for combo in triggers.custom_combinations:
            if _prerequisites_met(combo.goal_ids, completed):
                fire(combo.trigger_intent)

        for intent, tier in ((triggers.all_critical_complete, GoalPriority.CRITICAL),
                             (triggers.all_high_complete, GoalPriority.HIGH)):
            if not intent:
                continue
            tier_goals = [g.id for g in config.goals if g.priority == tier]
            if tier_goals and all(g in completed for g in tier_goals):
                fire(intent)

    # =========================================================================
    # Correction (step 11)
    # =========================================================================

    def _detect_correction(self, message: str, candidates: List[Dict[str, Any]],
                           state: Dict[str, Any]) -> Optional[Tuple[str, Any]]:
        """
        Field the user says was wrong, with what they reported.

        Plain confirmations ("yes", "looks good") never count.
        """
        if self.settings.confirmation_regex.search(message):
            return None

        field_name = None
        reported = None
        for candidate in candidates:
            name = candidate.get('field')
            if name in CORRECTION_FIELD_MAP:
                field_name = CORRECTION_FIELD_MAP[name]
                reported = candidate.get('value')
                break

        if field_name is None and any(p.search(message) for p in self.settings.correction_regexes):
            field_name = _field_mentioned(message)

        if field_name is None or field_name not in state['captured_data']:
            return None
        return field_name, reported

    def _apply_correction(self, correction: Tuple[str, Any], config: GoalConfiguration,
                          state: Dict[str, Any], channel_id: str) -> Dict[str, Any]:
        field_name, reported = correction
        previous = state['captured_data'].pop(field_name, None)

        owners = [g for g in config.goals if field_name in g.field_names]
        owner = next((g for g in owners if g.id in state['completed_goals']), None)
        if owner is None and owners:
            owner = owners[0]

        if owner is not None:
            state['completed_goals'] = [g for g in state['completed_goals'] if g != owner.id]
            state['declined_goals'] = [g for g in state['declined_goals'] if g != owner.id]
            if owner.id not in state['active_goals']:
                state['active_goals'].append(owner.id)

        logger.info(
            f"[{channel_id}] Correction: cleared {field_name} "
            f"(was {unwrap_value(previous)!r}), reopened {owner.id if owner else None}"
        )
        return {
            'field': field_name,
            'previous_value': unwrap_value(previous),
            'goal_id': owner.id if owner else None,
            'reported_value': reported,
        }

    # =========================================================================
    # Finish
    # =========================================================================

    def _finish(self, channel_id: str, state: Dict[str, Any], result: "_ResultBuilder",
                initial_active: List[str]) -> GoalOrchestrationResult:
        completed = state['completed_goals']
        state['declined_goals'] = [g for g in dict.fromkeys(state['declined_goals']) if g not in completed]
        excluded = set(completed) | set(state['declined_goals'])
        state['active_goals'] = [g for g in dict.fromkeys(state['active_goals']) if g not in excluded]
        state['last_updated'] = utc_now_iso()

        if self.store is not None:
            self.store.save(channel_id, state)

        newly_activated = [g for g in state['active_goals'] if g not in initial_active]

        return GoalOrchestrationResult(
            recommendations=list(result.recommendations),
            extracted_info=dict(result.extracted_info),
            state_updates={
                'newly_completed': list(result.newly_completed),
                'newly_activated': newly_activated,
                'declined': list(result.declined),
            },
            triggered_intents=list(result.triggered_intents),
            active_goals=list(state['active_goals']),
            completed_goals=list(completed),
            state=copy.deepcopy(state),
            fast_track=result.fast_track,
            correction=result.correction,
            rejected_fields=list(result.rejected_fields),
            interest=result.interest,
        )


class _ResultBuilder:
    """Mutable accumulator for one pass; frozen into GoalOrchestrationResult at the end."""

    def __init__(self):
        self.recommendations: List[GoalRecommendation] = []
        self.extracted_info: Dict[str, Any] = {}
        self.newly_completed: List[str] = []
        self.declined: List[str] = []
        self.triggered_intents: List[str] = []
        self.rejected_fields: List[Dict[str, Any]] = []
        self.fast_track = False
        self.correction: Optional[Dict[str, Any]] = None
        self.interest: Optional[Dict[str, Any]] = None


# =========================================================================
# Helpers
# =========================================================================

def _prerequisites_met(required: Sequence[str], completed: Sequence[str]) -> bool:
    return all(any(matches_goal_id(done, req) for done in completed) for req in required)


def _normalize_candidates(pre_extracted) -> List[Dict[str, Any]]:
    """Accept {field: value} or [{field, value}] and return the list form."""
    if isinstance(pre_extracted, dict):
        return [{'field': k, 'value': v} for k, v in pre_extracted.items()]
    return [
        {'field': c.get('field'), 'value': c.get('value')}
        for c in pre_extracted
        if isinstance(c, dict) and c.get('field')
    ]


def _field_mentioned(message: str) -> Optional[str]:
    """Earliest correctable field named in a message ('email', 'number', ...)."""
    text = message.lower()
    best = None
    for keyword, field_name in CORRECTION_KEYWORD_MAP.items():
        match = re.search(rf"\b{re.escape(keyword)}\b", text)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), field_name)
    return best[1] if best else None


def _user_texts(history) -> List[str]:
    """User message texts from a mixed history list."""
    texts = []
    for item in history or []:
        if isinstance(item, str):
            texts.append(item)
        elif isinstance(item, dict) and item.get('role', 'user') == 'user':
            text = item.get('content') or item.get('text')
            if isinstance(text, str):
                texts.append(text)
    return texts


def build_exit_summary(goal_config: GoalConfiguration, state: Dict[str, Any],
                       validator: Optional[FieldValidator] = None) -> Dict[str, Any]:
    """
    Whether the workflow is done and what is still missing.

    Done means the primary goal is completed, or every goal when no goal
    is primary. Missing fields are the first three unsatisfied required
    fields along the primary chain (prerequisites, then primary).

    Returns:
        {'workflow_complete', 'primary_goal', 'missing_fields', 'completed_goals'}
    """
    validator = validator or FieldValidator()
    completed = list(state.get('completed_goals', []))
    captured = state.get('captured_data', {})
    primary = goal_config.primary_goal()

    if primary is not None:
        chain = GoalSelector().prerequisites_for(primary, goal_config) + [primary]
        complete = primary.id in completed
    else:
        chain = list(goal_config.goals)
        complete = bool(chain) and all(g.id in completed for g in chain)

    missing: List[str] = []
    for goal in chain:
        if goal.id in completed:
            continue
        for descriptor in goal.fields:
            if not descriptor.required or descriptor.name in missing:
                continue
            if not validator.is_field_satisfied(descriptor.name, captured.get(descriptor.name), descriptor):
                missing.append(descriptor.name)

    return {
        'workflow_complete': complete,
        'primary_goal': primary.id if primary else None,
        'missing_fields': missing[:3],
        'completed_goals': completed,
    }
