"""
Test Interruption Tracker - response supersession, expiry and rollback

Run with: python3 tests/test_interruption_tracker.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from goalflow.contracts import StateSnapshot
from goalflow.core.goal_state_store import GoalStateStore
from goalflow.core.interruption_tracker import InterruptionTracker
from goalflow.persistence import InMemoryStateBackend


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class PutOnlyBackend:
    """Backend without delete()"""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def put(self, key, value):
        self.data[key] = value


def test_idle_by_default():
    """Test a fresh channel is not tracking"""
    tracker = InterruptionTracker()

    assert not tracker.is_tracking('c')
    assert tracker.get_current_response_id('c') is None
    assert tracker.get_state_snapshot('c') is None
    assert not tracker.is_response_valid('c', 'anything')

    print("✓ Idle test passed")


def test_new_response_supersedes_old():
    """Test only the latest response stays valid"""
    tracker = InterruptionTracker()

    first = tracker.start_tracking('c')
    assert tracker.is_response_valid('c', first)

    second = tracker.start_tracking('c')
    assert second != first
    assert not tracker.is_response_valid('c', first)
    assert tracker.is_response_valid('c', second)
    assert tracker.get_current_response_id('c') == second

    print("✓ Supersession test passed")


def test_channels_isolated():
    """Test tracking is per channel"""
    tracker = InterruptionTracker()
    a = tracker.start_tracking('a', response_id='resp-a')
    tracker.start_tracking('b', response_id='resp-b')

    assert a == 'resp-a'
    assert tracker.is_response_valid('a', 'resp-a')
    assert tracker.is_response_valid('b', 'resp-b')

    print("✓ Channel isolation test passed")


def test_record_expires_after_ttl():
    """Test expired records read as idle"""
    clock = FakeClock()
    tracker = InterruptionTracker(ttl_seconds=300, clock=clock)
    response_id = tracker.start_tracking('c')

    clock.advance(300)
    assert tracker.is_response_valid('c', response_id)

    clock.advance(1)
    assert not tracker.is_response_valid('c', response_id)
    assert not tracker.is_tracking('c')

    print("✓ TTL expiry test passed")


def test_clear_tracking():
    """Test clear with and without a delete-capable backend"""
    for backend in (InMemoryStateBackend(), PutOnlyBackend()):
        tracker = InterruptionTracker(backend)
        response_id = tracker.start_tracking('c')
        tracker.clear_tracking('c')
        assert not tracker.is_response_valid('c', response_id)

    print("✓ Clear tracking test passed")


def test_snapshot_round_trip():
    """Test the held snapshot comes back intact"""
    tracker = InterruptionTracker()
    snapshot = StateSnapshot.from_state({
        'captured_data': {'email': 'a@b.com'},
        'active_goals': ['collect_phone'],
        'completed_goals': ['collect_email'],
        'message_count': 3,
    })
    tracker.start_tracking('c', snapshot)

    assert tracker.get_state_snapshot('c') == snapshot

    print("✓ Snapshot test passed")


def test_new_message_rolls_back_interrupted_turn():
    """Test handle_new_message restores the pre-turn state"""
    backend = InMemoryStateBackend()
    store = GoalStateStore(backend)
    tracker = InterruptionTracker(backend)

    store.update('c', {'active_goals': ['collect_email'], 'message_count': 1})
    snapshot = store.take_snapshot('c')
    tracker.start_tracking('c', snapshot)

    # Turn in progress captures data, then the user interrupts
    store.update('c', {'captured_data': {'email': 'a@b.com'},
                       'completed_goals': ['collect_email'], 'active_goals': [],
                       'message_count': 2})

    assert tracker.handle_new_message('c', store) is True
    state = store.load('c')
    assert state['captured_data'] == {}
    assert state['completed_goals'] == []
    assert state['active_goals'] == ['collect_email']
    assert state['message_count'] == 1
    assert not tracker.is_tracking('c')

    # Nothing in flight: no rollback
    assert tracker.handle_new_message('c', store) is False

    print("✓ Rollback on new message test passed")


def test_invalid_construction():
    """Test backend and ttl checks"""
    try:
        InterruptionTracker(object())
        raise AssertionError("Expected TypeError")
    except TypeError:
        pass

    try:
        InterruptionTracker(ttl_seconds=0)
        raise AssertionError("Expected ValueError")
    except ValueError:
        pass

    print("✓ Construction checks test passed")


if __name__ == '__main__':
    print("\n" + "="*60)
    print("INTERRUPTION TRACKER TESTS")
    print("="*60 + "\n")

    test_idle_by_default()
    test_new_response_supersedes_old()
    test_channels_isolated()
    test_record_expires_after_ttl()
    test_clear_tracking()
    test_snapshot_round_trip()
    test_new_message_rolls_back_interrupted_turn()
    test_invalid_construction()

    print("\n" + "="*60)
    print("ALL TESTS PASSED ✓")
    print("="*60 + "\n")
