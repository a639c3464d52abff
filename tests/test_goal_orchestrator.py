"""
Test GoalOrchestrator - turn-by-turn goal state machine

Covers ordering/activation scenarios, fast-track, vague vs specific
times, max attempts, declines, corrections and at-most-once emission.

Run with: pytest tests/test_goal_orchestrator.py -v
"""

import pytest

from goalflow.config import OrchestratorSettings
from goalflow.contracts import StateSnapshot
from goalflow.core.field_extractor import FieldExtractor
from goalflow.core.field_validator import FieldValidator
from goalflow.core.goal_config import disabled_configuration, parse_goal_configuration
from goalflow.core.goal_orchestrator import GoalOrchestrator, build_exit_summary
from goalflow.core.goal_selector import GoalSelector
from goalflow.core.goal_state_store import GoalStateStore, StateStoreError
from goalflow.core.interest_detector import InterestDetector
from goalflow.persistence import InMemoryStateBackend
from goalflow.utils.event_publisher import EVENT_SOURCE, InMemoryEventPublisher, LoggingEventPublisher
from goalflow.utils.goal_enums import Approach


# =========================================================================
# Helpers
# =========================================================================

class MockHFClient:
    """Mock HuggingFace client returning a fixed extraction"""

    def __init__(self, response='{"extractedData": []}'):
        self.response = response
        self.prompts = []

    def is_loaded(self):
        return True

    def generate_json(self, prompt, max_tokens, temperature):
        self.prompts.append(prompt)
        return self.response


class FailingPublisher:
    def publish(self, source, event_name, payload):
        raise ConnectionError("event bus down")


class FailingBackend:
    def get(self, key):
        return None

    def put(self, key, value):
        raise IOError("disk full")


def make_config(goals, completion_triggers=None, **global_settings):
    data = {'enabled': True, 'goals': goals, 'globalSettings': global_settings}
    if completion_triggers is not None:
        data['completionTriggers'] = completion_triggers
    return parse_goal_configuration(data)


def email_phone_goals():
    return [
        {'id': 'collect_email', 'name': 'Email', 'order': 1, 'priority': 'high',
         'dataToCapture': {'fields': ['email']}},
        {'id': 'collect_phone', 'name': 'Phone', 'order': 2, 'priority': 'high',
         'triggers': {'prerequisiteGoals': ['collect_email']},
         'dataToCapture': {'fields': ['phone']}},
    ]


def scheduling_goals():
    return [
        {'id': 'collect_email', 'name': 'Email', 'order': 1, 'priority': 'critical',
         'dataToCapture': {'fields': ['email']}},
        {'id': 'schedule', 'name': 'Book Class', 'order': 2, 'priority': 'critical',
         'type': 'scheduling', 'isPrimary': True, 'prerequisites': ['collect_email'],
         'dataToCapture': {'fields': ['preferredDate', 'preferredTime']},
         'actions': {'onComplete': [{'type': 'trigger_scheduling_flow'}]}},
    ]


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def orchestrator(publisher):
    return GoalOrchestrator(
        selector=GoalSelector(),
        validator=FieldValidator(),
        publisher=publisher,
    )


def run_turn(orchestrator, config, message, state=None, extracted=None, **kwargs):
    return orchestrator.orchestrate_goals(
        message=message,
        channel_id='tenant1_chat_abc',
        user_id='user-1',
        tenant_id='tenant1',
        goal_config=config,
        prior_state=state,
        pre_extracted=extracted,
        **kwargs
    )


def assert_mutually_exclusive(state):
    active = set(state['active_goals'])
    completed = set(state['completed_goals'])
    declined = set(state['declined_goals'])
    assert not active & completed, f"active/completed overlap: {active & completed}"
    assert not active & declined, f"active/declined overlap: {active & declined}"
    assert not completed & declined, f"completed/declined overlap: {completed & declined}"


# =========================================================================
# Wiring
# =========================================================================

class TestWiring:

    def test_selector_interface_checked(self):
        with pytest.raises(TypeError, match="filter_eligible"):
            GoalOrchestrator(selector=object(), validator=FieldValidator())

    def test_validator_interface_checked(self):
        with pytest.raises(TypeError, match="validate"):
            GoalOrchestrator(selector=GoalSelector(), validator=object())

    def test_store_interface_checked(self):
        with pytest.raises(TypeError, match="load"):
            GoalOrchestrator(selector=GoalSelector(), validator=FieldValidator(), store=object())

    def test_logging_publisher_by_default(self):
        orchestrator = GoalOrchestrator(selector=GoalSelector(), validator=FieldValidator())
        assert isinstance(orchestrator.publisher, LoggingEventPublisher)


# =========================================================================
# Activation and ordering
# =========================================================================

class TestActivation:

    def test_first_message_activates_first_goal_only(self, orchestrator):
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "hi")

        assert result.active_goals == ['collect_email']
        assert 'collect_phone' not in result.active_goals
        assert result.state_updates['newly_activated'] == ['collect_email']
        assert result.state['message_count'] == 1
        assert result.recommendations[0].goal_id == 'collect_email'
        assert result.recommendations[0].attempt_count == 1

    def test_prerequisite_goal_activates_turn_after_completion(self, orchestrator):
        config = make_config(email_phone_goals())

        first = run_turn(orchestrator, config, "hi")
        second = run_turn(orchestrator, config, "my email is a@b.com",
                          state=first.state, extracted={'email': 'A@B.com'})

        assert second.extracted_info == {'email': 'a@b.com'}
        assert second.state_updates['newly_completed'] == ['collect_email']
        assert second.completed_goals == ['collect_email']
        assert 'collect_phone' not in second.active_goals

        third = run_turn(orchestrator, config, "ok", state=second.state)
        assert third.active_goals == ['collect_phone']
        assert_mutually_exclusive(third.state)

    def test_always_active_mode_activates_everything(self, orchestrator):
        goals = [
            {'id': 'a', 'name': 'A', 'dataToCapture': {'fields': ['firstName']}},
            {'id': 'b', 'name': 'B', 'dataToCapture': {'fields': ['email']}},
            {'id': 'c', 'name': 'C', 'dataToCapture': {'fields': ['phone']}},
        ]
        config = make_config(goals, strictOrdering=0)

        result = run_turn(orchestrator, config, "hello")

        assert sorted(result.active_goals) == ['a', 'b', 'c']
        assert len(result.recommendations) == 3

    def test_max_goals_per_turn_caps_activation(self, orchestrator):
        goals = [
            {'id': 'a', 'name': 'A', 'order': 1, 'dataToCapture': {'fields': ['firstName']}},
            {'id': 'b', 'name': 'B', 'order': 2, 'dataToCapture': {'fields': ['email']}},
            {'id': 'c', 'name': 'C', 'order': 3, 'dataToCapture': {'fields': ['phone']}},
        ]
        config = make_config(goals, strictOrdering=3, maxGoalsPerTurn=2)

        result = run_turn(orchestrator, config, "hello")

        assert result.active_goals == ['a', 'b']

    def test_message_count_not_double_counted(self, orchestrator):
        config = make_config(email_phone_goals())
        result = run_turn(orchestrator, config, "hi", message_counted=True)
        assert result.state['message_count'] == 0

    def test_prior_state_not_mutated(self, orchestrator):
        config = make_config(email_phone_goals())
        prior = {'active_goals': [], 'message_count': 4}

        run_turn(orchestrator, config, "hi", state=prior)

        assert prior == {'active_goals': [], 'message_count': 4}


# =========================================================================
# Field capture
# =========================================================================

class TestCapture:

    def test_invalid_values_rejected_and_not_stored(self, orchestrator):
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "it's bob@", extracted={'email': 'bob@'})

        assert result.extracted_info == {}
        assert 'email' not in result.state['captured_data']
        assert result.rejected_fields[0]['field'] == 'email'
        assert result.completed_goals == []

    def test_unrequested_fields_ignored(self, orchestrator):
        config = make_config(email_phone_goals())

        # collect_phone is not eligible yet, so phone is not collected
        result = run_turn(orchestrator, config, "555 123 4567", extracted={'phone': '5551234567'})

        assert 'phone' not in result.state['captured_data']

    def test_extractor_candidates_are_validated(self, publisher):
        client = MockHFClient('{"extractedData": [{"field": "email_address", "value": "Jo@Example.com"}]}')
        orchestrator = GoalOrchestrator(
            selector=GoalSelector(),
            validator=FieldValidator(),
            extractor=FieldExtractor(client),
            publisher=publisher,
        )
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "jo@example.com")

        assert result.extracted_info == {'email': 'jo@example.com'}
        assert result.completed_goals == ['collect_email']
        assert len(client.prompts) == 1

    def test_vague_time_does_not_complete_scheduling(self, orchestrator):
        goals = [{'id': 'book', 'name': 'Book', 'type': 'scheduling',
                  'dataToCapture': {'fields': ['preferredDate', 'preferredTime']}}]
        config = make_config(goals)

        vague = run_turn(orchestrator, config, "tomorrow evening",
                         extracted={'preferredDate': 'tomorrow', 'preferredTime': 'evening'})
        assert vague.state['captured_data']['preferredTime'] == 'evening'
        assert vague.completed_goals == []

        specific = run_turn(orchestrator, config, "7pm works",
                            state=vague.state, extracted={'preferredTime': '7pm'})
        assert specific.state['captured_data']['preferredTime'] == '7pm'
        assert specific.completed_goals == ['book']

    def test_optional_fields_do_not_block_completion(self, orchestrator):
        goals = [{'id': 'name', 'name': 'Name',
                  'dataToCapture': {'fields': ['firstName', {'name': 'lastName', 'required': False}]}}]
        config = make_config(goals)

        result = run_turn(orchestrator, config, "I'm Sam", extracted={'firstName': 'Sam'})

        assert result.completed_goals == ['name']


# =========================================================================
# Fast-track
# =========================================================================

class TestFastTrack:

    def test_scheduling_keyword_starts_fast_track(self, orchestrator):
        config = make_config(scheduling_goals())

        result = run_turn(orchestrator, config, "I want to schedule a class for tomorrow")

        assert result.fast_track is True
        assert result.active_goals == ['collect_email']
        assert result.state['fast_track_goals'] == ['collect_email', 'schedule']

    def test_fast_track_continues_then_clears(self, orchestrator):
        config = make_config(scheduling_goals())

        first = run_turn(orchestrator, config, "Can I book a class?")
        second = run_turn(orchestrator, config, "a@b.com", state=first.state,
                          extracted={'email': 'a@b.com'})

        assert second.completed_goals == ['collect_email']
        assert second.active_goals == ['schedule']
        assert second.fast_track is True

        third = run_turn(orchestrator, config, "tomorrow at 7pm", state=second.state,
                         extracted={'preferredDate': 'tomorrow', 'preferredTime': '7pm'})

        assert 'schedule' in third.completed_goals
        assert third.state['fast_track_goals'] == []
        assert third.fast_track is False
        assert_mutually_exclusive(third.state)

    def test_volunteered_primary_field_starts_fast_track(self, orchestrator):
        config = make_config(scheduling_goals())

        result = run_turn(orchestrator, config, "tuesday is good for me",
                          extracted={'preferredDate': 'tuesday'})

        assert result.extracted_info == {'preferredDate': 'tuesday'}
        assert result.fast_track is True
        assert result.active_goals == ['collect_email']

    def test_no_fast_track_without_signal(self, orchestrator):
        config = make_config(scheduling_goals())

        result = run_turn(orchestrator, config, "hello there")

        assert result.fast_track is False
        assert result.state['fast_track_goals'] == []


# =========================================================================
# Attempts, backoff and declines
# =========================================================================

class TestAttemptsAndDeclines:

    def test_max_attempts_moves_goal_to_declined(self, orchestrator):
        goals = [{'id': 'x', 'name': 'X', 'behavior': {'maxAttempts': 2},
                  'dataToCapture': {'fields': ['fitnessGoal']}}]
        config = make_config(goals)

        state = None
        attempts = []
        for _ in range(2):
            result = run_turn(orchestrator, config, "hello", state=state)
            attempts.append(result.recommendations[0].attempt_count)
            state = result.state
        assert attempts == [1, 2]

        third = run_turn(orchestrator, config, "hello", state=state)
        assert third.recommendations == []
        assert third.state['declined_goals'] == ['x']
        assert third.state_updates['declined'] == ['x']

        fourth = run_turn(orchestrator, config, "hello", state=third.state)
        assert fourth.recommendations == []
        assert 'x' not in fourth.active_goals

    def test_decline_removes_only_first_active_goal(self, orchestrator):
        goals = [
            {'id': 'a', 'name': 'A', 'dataToCapture': {'fields': ['firstName']}},
            {'id': 'b', 'name': 'B', 'dataToCapture': {'fields': ['email']}},
        ]
        config = make_config(goals, strictOrdering=0)
        first = run_turn(orchestrator, config, "hello")

        second = run_turn(orchestrator, config, "no thanks", state=first.state)

        assert second.state['declined_goals'] == ['a']
        assert 'b' in second.active_goals
        assert_mutually_exclusive(second.state)

    def test_declines_ignored_when_not_respected(self, orchestrator):
        config = make_config(email_phone_goals(), respectDeclines=False)
        first = run_turn(orchestrator, config, "hello")

        second = run_turn(orchestrator, config, "no thanks", state=first.state)

        assert second.state['declined_goals'] == []

    def test_skip_inside_word_is_not_a_decline(self, orchestrator):
        config = make_config(email_phone_goals())
        first = run_turn(orchestrator, config, "hello")

        second = run_turn(orchestrator, config, "I was skipping rope", state=first.state)

        assert second.state['declined_goals'] == []

    def test_backoff_strategies(self):
        config = make_config([
            {'id': 'g', 'name': 'G', 'adherence': 5, 'behavior': {'backoffStrategy': 'gentle'}},
            {'id': 'a', 'name': 'A', 'adherence': 5, 'behavior': {'backoffStrategy': 'aggressive'}},
            {'id': 'p', 'name': 'P', 'adherence': 9, 'behavior': {'backoffStrategy': 'persistent'}},
            {'id': 's', 'name': 'S', 'adherence': 2},
        ])
        gentle, aggressive, persistent, subtle = config.goals

        assert GoalOrchestrator.approach_for(gentle, 1) == Approach.CONTEXTUAL
        assert GoalOrchestrator.approach_for(gentle, 3) == Approach.SUBTLE
        assert GoalOrchestrator.approach_for(aggressive, 2) == Approach.DIRECT
        assert GoalOrchestrator.approach_for(persistent, 5) == Approach.DIRECT
        assert GoalOrchestrator.approach_for(subtle, 1) == Approach.SUBTLE

    def test_messages_follow_attempts(self):
        config = make_config([
            {'id': 'n', 'name': 'Name', 'messages': {'request': "What's your name?",
                                                     'followUp': "Didn't catch your name!"},
             'dataToCapture': {'fields': ['firstName']}},
            {'id': 'e', 'name': 'Email', 'adherence': 9, 'dataToCapture': {'fields': ['email']}},
            {'id': 'c', 'name': 'Chat', 'type': 'custom', 'description': 'build rapport'},
        ])
        named, email, custom = config.goals

        assert GoalOrchestrator.message_for(named, Approach.CONTEXTUAL, 1) == "What's your name?"
        assert GoalOrchestrator.message_for(named, Approach.CONTEXTUAL, 2) == "Didn't catch your name!"
        assert GoalOrchestrator.message_for(email, Approach.DIRECT, 1) == "I need your email to continue."
        assert GoalOrchestrator.message_for(custom, Approach.CONTEXTUAL, 1) == "Let's work on: build rapport"


# =========================================================================
# Actions and intents
# =========================================================================

class TestEmission:

    def test_completion_fires_action_once(self, orchestrator, publisher):
        goals = [{'id': 'collect_email', 'name': 'Email', 'priority': 'critical',
                  'dataToCapture': {'fields': ['email']},
                  'actions': {'onComplete': [{'type': 'convert_anonymous_to_lead',
                                              'payload': {'source': 'chat'}}]}}]
        config = make_config(goals)

        result = run_turn(orchestrator, config, "a@b.com", extracted={'email': 'a@b.com'})

        action_events = [e for e in publisher.events if e['event_name'] == 'lead.contact_captured']
        assert len(action_events) == 1
        event = action_events[0]
        assert event['source'] == EVENT_SOURCE
        assert event['payload']['goalId'] == 'collect_email'
        assert event['payload']['tenantId'] == 'tenant1'
        assert event['payload']['source'] == 'chat'
        assert event['payload']['contactInfo'] == {'email': 'a@b.com'}
        assert 'action:collect_email:lead.contact_captured' in result.state['emitted_events']

        # Completion undone (as after a rollback) but the marker survives
        replay_state = dict(result.state, completed_goals=[], active_goals=['collect_email'])
        run_turn(orchestrator, config, "a@b.com", state=replay_state)

        assert publisher.names().count('lead.contact_captured') == 1

    def test_all_critical_complete_fires_intent_once(self, orchestrator):
        config = make_config(scheduling_goals())

        state = {'captured_data': {'email': 'a@b.com'}, 'completed_goals': ['collect_email']}
        result = run_turn(orchestrator, config, "friday 6pm", state=state,
                          extracted={'preferredDate': 'friday', 'preferredTime': '6pm'})

        assert 'lead_qualified' in result.triggered_intents
        assert 'intent:lead_qualified' in result.state['emitted_events']

        again = run_turn(orchestrator, config, "thanks", state=result.state)
        assert again.triggered_intents == []

    def test_custom_combination_intent(self, orchestrator):
        config = make_config(
            email_phone_goals(),
            completion_triggers={'customCombinations': [
                {'goalIds': ['collect_email', 'collect_phone'], 'triggerIntent': 'contact_complete'}
            ]},
        )
        state = {'captured_data': {'email': 'a@b.com'}, 'completed_goals': ['collect_email'],
                 'active_goals': ['collect_phone']}

        result = run_turn(orchestrator, config, "555-123-4567", state=state,
                          extracted={'phone': '555-123-4567'})

        assert result.state['captured_data']['phone'] == '5551234567'
        assert result.triggered_intents == ['contact_complete']

    def test_publish_failure_does_not_fail_turn(self):
        orchestrator = GoalOrchestrator(
            selector=GoalSelector(),
            validator=FieldValidator(),
            publisher=FailingPublisher(),
        )
        goals = [{'id': 'collect_email', 'name': 'Email',
                  'dataToCapture': {'fields': ['email']},
                  'actions': {'onComplete': [{'type': 'update_crm'}]}}]
        config = make_config(goals)

        result = run_turn(orchestrator, config, "a@b.com", extracted={'email': 'a@b.com'})

        assert result.completed_goals == ['collect_email']
        assert 'action:collect_email:crm.update_requested' in result.state['emitted_events']


# =========================================================================
# Corrections
# =========================================================================

class TestCorrection:

    def completed_state(self):
        return {
            'captured_data': {'email': 'a@b.com'},
            'completed_goals': ['collect_email'],
            'active_goals': ['collect_phone'],
        }

    def test_reported_wrong_email_reopens_goal(self, orchestrator):
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "that email was wrong", state=self.completed_state())

        assert result.correction == {
            'field': 'email',
            'previous_value': 'a@b.com',
            'goal_id': 'collect_email',
            'reported_value': None,
        }
        assert 'email' not in result.state['captured_data']
        assert 'collect_email' in result.active_goals
        assert 'collect_email' not in result.completed_goals
        assert result.recommendations == []
        assert_mutually_exclusive(result.state)

    def test_correction_candidate_from_extractor(self, orchestrator):
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "I never got anything",
                          state=self.completed_state(),
                          extracted=[{'field': 'wrong_email', 'value': 'never got anything'}])

        assert result.correction['field'] == 'email'
        assert result.correction['reported_value'] == 'never got anything'

    def test_confirmation_is_not_a_correction(self, orchestrator):
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "yes that's right",
                          state=self.completed_state(),
                          extracted=[{'field': 'wrong_email', 'value': 'x'}])

        assert result.correction is None
        assert result.state['captured_data']['email'] == 'a@b.com'

    def test_correction_for_uncaptured_field_ignored(self, orchestrator):
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "wrong number", state=self.completed_state())

        assert result.correction is None


# =========================================================================
# State handling
# =========================================================================

class TestStateHandling:

    def test_unknown_goal_ids_sanitized(self, orchestrator):
        config = make_config(email_phone_goals())
        state = {'active_goals': ['removed_goal'], 'completed_goals': ['old_goal', 'collect_email']}

        result = run_turn(orchestrator, config, "hi", state=state)

        assert 'removed_goal' not in result.state['active_goals']
        assert result.state['completed_goals'] == ['collect_email']

    def test_disabled_config_counts_message_only(self, orchestrator):
        result = run_turn(orchestrator, disabled_configuration(), "hi")

        assert result.recommendations == []
        assert result.state['message_count'] == 1

    def test_store_saves_once_per_turn(self):
        backend = InMemoryStateBackend()
        store = GoalStateStore(backend)
        orchestrator = GoalOrchestrator(GoalSelector(), FieldValidator(), store=store)
        config = make_config(email_phone_goals())

        run_turn(orchestrator, config, "hi")
        run_turn(orchestrator, config, "a@b.com", extracted={'email': 'a@b.com'})

        saved = store.load('tenant1_chat_abc')
        assert saved['message_count'] == 2
        assert saved['completed_goals'] == ['collect_email']

    def test_store_write_failure_propagates(self):
        store = GoalStateStore(FailingBackend())
        orchestrator = GoalOrchestrator(GoalSelector(), FieldValidator(), store=store)

        with pytest.raises(StateStoreError):
            run_turn(orchestrator, make_config(email_phone_goals()), "hi")

    def test_rollback_restores_pre_turn_state(self):
        store = GoalStateStore(InMemoryStateBackend())
        orchestrator = GoalOrchestrator(GoalSelector(), FieldValidator(), store=store)
        config = make_config(email_phone_goals())
        run_turn(orchestrator, config, "hi")

        snapshot = store.take_snapshot('tenant1_chat_abc')
        run_turn(orchestrator, config, "a@b.com", extracted={'email': 'a@b.com'})
        restored = store.rollback('tenant1_chat_abc', snapshot)

        assert restored['captured_data'] == {}
        assert restored['completed_goals'] == []
        assert restored['active_goals'] == ['collect_email']
        assert restored['message_count'] == 1
        assert StateSnapshot.from_state(restored) == snapshot

    def test_interest_raises_priority(self):
        orchestrator = GoalOrchestrator(
            GoalSelector(), FieldValidator(),
            interest_detector=InterestDetector(),
            settings=OrchestratorSettings(),
        )
        config = make_config(email_phone_goals())

        result = run_turn(orchestrator, config, "I'm interested and ready to sign up, how much does it cost?")

        assert result.interest['interest_level'] == 'high'
        assert result.recommendations[0].priority > 7

    def test_interest_ignored_when_not_adapting(self):
        orchestrator = GoalOrchestrator(
            GoalSelector(), FieldValidator(), interest_detector=InterestDetector()
        )
        config = make_config(email_phone_goals(), adaptToUrgency=False)

        result = run_turn(orchestrator, config, "I'm interested and ready to sign up, how much does it cost?")

        assert result.recommendations[0].priority == 7


# =========================================================================
# Exit summary
# =========================================================================

class TestExitSummary:

    def test_primary_chain_missing_fields(self):
        config = make_config(scheduling_goals())
        state = {'completed_goals': [], 'captured_data': {'preferredTime': 'evening'}}

        summary = build_exit_summary(config, state)

        assert summary['workflow_complete'] is False
        assert summary['primary_goal'] == 'schedule'
        assert summary['missing_fields'] == ['email', 'preferredDate', 'preferredTime']

    def test_complete_when_primary_done(self):
        config = make_config(scheduling_goals())
        state = {'completed_goals': ['collect_email', 'schedule'], 'captured_data': {}}

        assert build_exit_summary(config, state)['workflow_complete'] is True

    def test_all_goals_when_no_primary(self):
        config = make_config(email_phone_goals())

        summary = build_exit_summary(config, {'completed_goals': ['collect_email']})

        assert summary['workflow_complete'] is False
        assert summary['primary_goal'] is None
        assert summary['missing_fields'] == ['phone']
