"""
Goal State Store - Per-channel workflow state on a key-value backend

Responsibilities:
- Load channel state (structurally complete default when missing/unreadable)
- Save / partially update with last-writer-wins semantics
- Convenience wrappers for field capture, goal transitions and events
- Roll back to a pre-turn snapshot
- Maintain rolling conversation aggregates and a capped message history

Design principles:
- Backend is injected (get/put contract); no module-level state
- Reads degrade, writes fail loudly (StateStoreError)
- Every wrapper loads first, so fields set by other callers survive
- State is a plain JSON-serializable dict with snake_case keys

State shape:
    {
        'captured_data': {field: value},
        'active_goals': [goal_id, ...],
        'completed_goals': [goal_id, ...],
        'declined_goals': [goal_id, ...],
        'fast_track_goals': [goal_id, ...],
        'message_count': int,
        'emitted_events': [marker, ...],
        'conversation_aggregates': {...},
        'attempt_counts': {goal_id: int},
        'last_updated': ISO-8601 str
    }
"""

import copy
import logging
from collections import Counter
from typing import Any, Dict, Optional

from goalflow.contracts import StateSnapshot
from goalflow.utils.field_mappings import CONTACT_FIELDS
from goalflow.utils.helpers import utc_now_iso

logger = logging.getLogger(__name__)

MAX_HISTORY = 50

LIST_KEYS = (
    'active_goals',
    'completed_goals',
    'declined_goals',
    'fast_track_goals',
    'emitted_events',
)


class StateStoreError(Exception):
    """Raised when channel state cannot be written."""


def default_aggregates() -> Dict[str, Any]:
    """Neutral aggregates for a channel with no analysed messages."""
    return {
        'engagement_score': 0.5,
        'avg_interest_level': 3,
        'avg_conversion_likelihood': 0.5,
        'dominant_emotional_tone': 'neutral',
        'language_profile': {
            'formality': 3,
            'hype_tolerance': 3,
            'emoji_usage': 0,
            'language': 'en',
        },
        'message_analysis_count': 0,
        'message_history': [],
        'emotional_tone_frequency': {},
    }


def default_state() -> Dict[str, Any]:
    """Structurally complete empty channel state."""
    return {
        'captured_data': {},
        'active_goals': [],
        'completed_goals': [],
        'declined_goals': [],
        'fast_track_goals': [],
        'message_count': 0,
        'emitted_events': [],
        'conversation_aggregates': default_aggregates(),
        'attempt_counts': {},
        'last_updated': utc_now_iso(),
    }


def complete_state(state: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Back-fill missing keys of a stored state with defaults.

    Returns a new dict; the input is not modified.
    """
    merged = default_state()
    if not state:
        return merged

    for key, value in copy.deepcopy(state).items():
        merged[key] = value

    for key in LIST_KEYS:
        if not isinstance(merged.get(key), list):
            merged[key] = []
    if not isinstance(merged.get('captured_data'), dict):
        merged['captured_data'] = {}
    if not isinstance(merged.get('attempt_counts'), dict):
        merged['attempt_counts'] = {}

    aggregates = default_aggregates()
    aggregates.update(merged.get('conversation_aggregates') or {})
    merged['conversation_aggregates'] = aggregates
    return merged


class GoalStateStore:
    """Load/save/update channel workflow state through a key-value backend."""

    def __init__(self, backend, history_cap: int = MAX_HISTORY):
        """
        Initialize store.

        Args:
            backend: Object with callable get(key) and put(key, value)
            history_cap: Max entries kept in message_history

        Raises:
            TypeError: If backend lacks get/put
        """
        for method in ('get', 'put'):
            if not callable(getattr(backend, method, None)):
                raise TypeError(f"backend must have callable {method}() method")

        self.backend = backend
        self.history_cap = history_cap
        logger.info(f"GoalStateStore initialized ({type(backend).__name__})")

    # =========================================================================
    # Core I/O
    # =========================================================================

    def load(self, channel_id: str) -> Dict[str, Any]:
        """
        Load state for a channel.

        Never raises: missing state and backend read errors both yield a
        default state (the latter logged).
        """
        try:
            stored = self.backend.get(channel_id)
        except Exception as e:
            logger.error(f"Failed to load state for {channel_id}: {type(e).__name__} - {e}")
            return default_state()

        if stored is None:
            logger.debug(f"No state for {channel_id}, using default")
            return default_state()

        if not isinstance(stored, dict):
            logger.error(f"Stored state for {channel_id} is not a dict, using default")
            return default_state()

        return complete_state(stored)

    def save(self, channel_id: str, state: Dict[str, Any]) -> None:
        """
        Overwrite state for a channel (last-writer-wins).

        Raises:
            StateStoreError: If the backend write fails
        """
        try:
            self.backend.put(channel_id, state)
        except Exception as e:
            logger.error(f"Failed to save state for {channel_id}: {type(e).__name__} - {e}")
            raise StateStoreError(f"Failed to save state for {channel_id}") from e

    def update(self, channel_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """
        Load, shallow-merge partial, stamp last_updated, save.

        List values in partial replace the stored lists outright.

        Returns:
            Merged state

        Raises:
            StateStoreError: If the backend write fails
        """
        state = self.load(channel_id)
        state.update(copy.deepcopy(partial))
        state['last_updated'] = utc_now_iso()
        self.save(channel_id, state)
        return state

    # =========================================================================
    # Convenience wrappers
    # =========================================================================

    def mark_field_captured(self, channel_id: str, field_name: str, value: Any) -> Dict[str, Any]:
        state = self.load(channel_id)
        captured = dict(state['captured_data'])
        captured[field_name] = value
        return self.update(channel_id, {'captured_data': captured})

    def mark_goal_completed(self, channel_id: str, goal_id: str) -> Dict[str, Any]:
        """Add to completed (no duplicates) and drop from active/declined."""
        state = self.load(channel_id)
        if goal_id in state['completed_goals']:
            logger.debug(f"Goal {goal_id} already completed")
            return state

        return self.update(channel_id, {
            'completed_goals': state['completed_goals'] + [goal_id],
            'active_goals': [g for g in state['active_goals'] if g != goal_id],
            'declined_goals': [g for g in state['declined_goals'] if g != goal_id],
        })

    def mark_goal_incomplete(self, channel_id: str, goal_id: str) -> Dict[str, Any]:
        """Error recovery: remove from completed, re-add to active."""
        state = self.load(channel_id)
        active = list(state['active_goals'])
        if goal_id not in active:
            active.append(goal_id)

        return self.update(channel_id, {
            'completed_goals': [g for g in state['completed_goals'] if g != goal_id],
            'active_goals': active,
        })

    def set_active_goals(self, channel_id: str, goal_ids) -> Dict[str, Any]:
        return self.update(channel_id, {'active_goals': list(dict.fromkeys(goal_ids))})

    def increment_message_count(self, channel_id: str) -> Dict[str, Any]:
        state = self.load(channel_id)
        return self.update(channel_id, {'message_count': state['message_count'] + 1})

    def record_event_emitted(self, channel_id: str, event_name: str) -> Dict[str, Any]:
        state = self.load(channel_id)
        if event_name in state['emitted_events']:
            logger.debug(f"Event {event_name} already emitted")
            return state
        return self.update(channel_id, {'emitted_events': state['emitted_events'] + [event_name]})

    def clear_field_data(self, channel_id: str, field_name: str) -> Dict[str, Any]:
        """Error recovery: drop a captured field."""
        state = self.load(channel_id)
        captured = {k: v for k, v in state['captured_data'].items() if k != field_name}
        return self.update(channel_id, {'captured_data': captured})

    @staticmethod
    def has_event_been_emitted(state: Dict[str, Any], event_name: str) -> bool:
        return event_name in state.get('emitted_events', [])

    @staticmethod
    def is_contact_info_complete(state: Dict[str, Any]) -> bool:
        captured = state.get('captured_data', {})
        return all(captured.get(f) not in (None, '') for f in CONTACT_FIELDS)

    # =========================================================================
    # Snapshot / rollback
    # =========================================================================

    def take_snapshot(self, channel_id: str) -> StateSnapshot:
        return StateSnapshot.from_state(self.load(channel_id))

    def rollback(self, channel_id: str, snapshot: StateSnapshot) -> Dict[str, Any]:
        """
        Restore captured_data, goal lists, attempt_counts and message_count.

        Aggregates and emitted events are left as they are.
        """
        logger.info(f"Rolling back state for {channel_id}")
        restored = snapshot.to_dict()
        partial = {
            'captured_data': restored['captured_data'],
            'active_goals': restored['active_goals'],
            'completed_goals': restored['completed_goals'],
            'declined_goals': restored['declined_goals'],
            'message_count': restored['message_count'],
            'attempt_counts': restored['attempt_counts'],
        }
        return self.update(channel_id, partial)

    # =========================================================================
    # Conversation aggregates
    # =========================================================================

    def update_conversation_aggregates(self, channel_id: str, analysis: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fold one message analysis into the rolling aggregates.

        Args:
            channel_id: Channel identifier
            analysis: {
                'message_text': str,
                'interest_level': 1-5,
                'conversion_likelihood': 0-1,
                'emotional_tone': str,
                'language_profile': {formality, hype_tolerance, emoji_usage, language},
                'primary_intent': str (optional)
            }

        Returns:
            Updated state

        Raises:
            StateStoreError: If the backend write fails
        """
        state = self.load(channel_id)
        current = state['conversation_aggregates']
        aggregates = fold_analysis(current, analysis, self.history_cap)

        logger.info(
            f"Aggregates for {channel_id}: engagement={aggregates['engagement_score']:.2f}, "
            f"interest={aggregates['avg_interest_level']}, "
            f"conversion={aggregates['avg_conversion_likelihood']}, "
            f"history={len(aggregates['message_history'])}"
        )
        return self.update(channel_id, {'conversation_aggregates': aggregates})


def _rolling(old_avg: float, count: int, new_value: float) -> float:
    return (old_avg * count + new_value) / (count + 1)


def fold_analysis(current: Dict[str, Any], analysis: Dict[str, Any],
                  history_cap: int = MAX_HISTORY) -> Dict[str, Any]:
    """
    Pure aggregate update: returns new aggregates, current is untouched.

    Averages are carried unrounded in the *_sum keys so repeated rounding
    never drifts; the published averages are rounded.
    """
    count = int(current.get('message_analysis_count', 0))
    new_count = count + 1

    interest = float(analysis.get('interest_level', 3))
    conversion = float(analysis.get('conversion_likelihood', 0.5))
    tone = analysis.get('emotional_tone') or 'neutral'
    incoming_profile = analysis.get('language_profile') or {}

    interest_sum = float(current.get('interest_sum', current.get('avg_interest_level', 3) * count)) + interest
    conversion_sum = float(
        current.get('conversion_sum', current.get('avg_conversion_likelihood', 0.5) * count)
    ) + conversion
    avg_interest = interest_sum / new_count
    avg_conversion = conversion_sum / new_count

    if tone == 'positive':
        tone_bonus = 0.2
    elif tone in ('negative', 'frustrated'):
        tone_bonus = 0.0
    else:
        tone_bonus = 0.1
    engagement = (avg_interest / 5) * 0.4 + avg_conversion * 0.4 + tone_bonus

    old_profile = current.get('language_profile') or default_aggregates()['language_profile']
    profile = {}
    for key in ('formality', 'hype_tolerance', 'emoji_usage'):
        new_value = incoming_profile.get(key, old_profile.get(key, 0))
        profile[key] = round(_rolling(float(old_profile.get(key, 0)), count, float(new_value)), 1)
    profile['language'] = incoming_profile.get('language') or old_profile.get('language', 'en')

    frequency = dict(current.get('emotional_tone_frequency') or {})
    frequency[tone] = frequency.get(tone, 0) + 1
    dominant = Counter(frequency).most_common(1)[0][0]

    history = list(current.get('message_history') or [])
    history.append({
        'message_index': new_count,
        'timestamp': utc_now_iso(),
        'message_text': analysis.get('message_text', ''),
        'interest_level': interest,
        'conversion_likelihood': conversion,
        'emotional_tone': tone,
        'language_profile': dict(incoming_profile),
        'primary_intent': analysis.get('primary_intent') or 'unknown',
    })
    if len(history) > history_cap:
        history = history[-history_cap:]

    return {
        'engagement_score': min(1.0, max(0.0, engagement)),
        'avg_interest_level': round(avg_interest, 1),
        'avg_conversion_likelihood': round(avg_conversion, 2),
        'dominant_emotional_tone': dominant,
        'language_profile': profile,
        'message_analysis_count': new_count,
        'message_history': history,
        'emotional_tone_frequency': frequency,
        'interest_sum': interest_sum,
        'conversion_sum': conversion_sum,
    }
