"""
Interruption Tracker - Per-channel response tracking and rollback

Responsibilities:
- Remember which response is in flight for a channel (IDLE / TRACKING)
- Hold the pre-turn StateSnapshot for that response
- Tell the delivery loop whether its response has been superseded
- Roll back an interrupted turn when a new message arrives

Design principles:
- Records live in an injected key-value backend (same get/put contract
  as the state store); in-memory by default
- Records expire after ttl_seconds and then read as IDLE
- Clock is injectable for tests

State machine:
    IDLE --start_tracking--> TRACKING
    TRACKING --start_tracking--> TRACKING (prior response superseded)
    TRACKING --clear_tracking / expiry--> IDLE
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from goalflow.contracts import StateSnapshot
from goalflow.persistence import InMemoryStateBackend
from goalflow.utils.helpers import generate_response_id

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
KEY_PREFIX = "tracking:"


class InterruptionTracker:
    """
    Tracks the in-flight response per channel.

    Usage:
        response_id = tracker.start_tracking(channel_id, snapshot)
        for chunk in chunks:
            if not tracker.is_response_valid(channel_id, response_id):
                break
            send(chunk)
        tracker.clear_tracking(channel_id)
    """

    def __init__(self, backend=None, ttl_seconds: int = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        if backend is None:
            backend = InMemoryStateBackend()
        for method in ('get', 'put'):
            if not callable(getattr(backend, method, None)):
                raise TypeError(f"backend must have callable {method}() method")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    # =========================================================================
    # Public API
    # =========================================================================

    def start_tracking(self, channel_id: str, snapshot: Optional[StateSnapshot] = None,
                       response_id: Optional[str] = None) -> str:
        """
        Begin tracking a response, superseding any response already in flight.

        Args:
            channel_id: Channel identifier
            snapshot: Pre-turn state snapshot for rollback
            response_id: Response identifier (generated when None)

        Returns:
            The tracked response id
        """
        response_id = response_id or generate_response_id()
        previous = self._active_record(channel_id)
        if previous is not None:
            logger.info(
                f"[{channel_id}] Response {previous['response_id']} superseded by {response_id}"
            )

        self.backend.put(self._key(channel_id), {
            'response_id': response_id,
            'snapshot': snapshot.to_dict() if snapshot is not None else None,
            'started_at': self._clock(),
        })
        logger.debug(f"[{channel_id}] Tracking response {response_id}")
        return response_id

    def is_tracking(self, channel_id: str) -> bool:
        return self._active_record(channel_id) is not None

    def is_response_valid(self, channel_id: str, response_id: str) -> bool:
        """True iff response_id is the response currently tracked for the channel."""
        record = self._active_record(channel_id)
        return record is not None and record['response_id'] == response_id

    def get_current_response_id(self, channel_id: str) -> Optional[str]:
        record = self._active_record(channel_id)
        return record['response_id'] if record else None

    def get_state_snapshot(self, channel_id: str) -> Optional[StateSnapshot]:
        record = self._active_record(channel_id)
        if record is None or record.get('snapshot') is None:
            return None
        return StateSnapshot.from_dict(record['snapshot'])

    def clear_tracking(self, channel_id: str) -> None:
        """TRACKING -> IDLE (normal completion)."""
        key = self._key(channel_id)
        if callable(getattr(self.backend, 'delete', None)):
            self.backend.delete(key)
        else:
            self.backend.put(key, {})
        logger.debug(f"[{channel_id}] Tracking cleared")

    def handle_new_message(self, channel_id: str, store) -> bool:
        """
        Undo an interrupted turn before processing a new message.

        If a response is still in flight and holds a snapshot, the store is
        rolled back to it. Tracking is cleared either way; the caller starts
        tracking again with a fresh snapshot for the new turn.

        Args:
            channel_id: Channel identifier
            store: GoalStateStore (must have rollback())

        Returns:
            True if a rollback was performed
        """
        snapshot = self.get_state_snapshot(channel_id)
        rolled_back = False
        if snapshot is not None:
            logger.info(
                f"[{channel_id}] Interrupting response {self.get_current_response_id(channel_id)}, "
                f"rolling back"
            )
            store.rollback(channel_id, snapshot)
            rolled_back = True
        self.clear_tracking(channel_id)
        return rolled_back

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _key(channel_id: str) -> str:
        return f"{KEY_PREFIX}{channel_id}"

    def _active_record(self, channel_id: str) -> Optional[Dict[str, Any]]:
        record = self.backend.get(self._key(channel_id))
        if not record or not record.get('response_id'):
            return None
        if self._clock() - record.get('started_at', 0) > self.ttl_seconds:
            logger.debug(f"[{channel_id}] Tracking record expired")
            return None
        return record
