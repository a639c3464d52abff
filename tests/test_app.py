"""
Test Flask routes - one orchestration turn per request against the shipped data

Run with: pytest tests/test_app.py -v
"""

import os

import pytest

import app as server
from goalflow.core.goal_config import load_goal_config
from goalflow.core.goal_state_store import default_state
from goalflow.core.response_chunker import load_chunking_config
from goalflow.core.scheduling import load_business_hours
from goalflow.persistence import InMemoryStateBackend


REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def data_path(name):
    return os.path.join(REPO_ROOT, 'data', name)


@pytest.fixture
def runtime():
    return server.init_runtime(
        goal_config=load_goal_config(data_path('goal_config.json')),
        business_hours=load_business_hours(data_path('company_info.json')),
        chunking_config=load_chunking_config(data_path('chunking.json')),
        backend=InMemoryStateBackend(),
    )


@pytest.fixture
def client(runtime):
    server.app.config['TESTING'] = True
    with server.app.test_client() as client:
        yield client


def post_message(client, text, channel_id='web_1', **extra):
    body = dict(extra, message=text, channel_id=channel_id)
    return client.post('/api/message', json=body)


class TestMessage:

    def test_first_turn_asks_for_name(self, client):
        response = post_message(client, "hi")
        data = response.get_json()

        assert response.status_code == 200
        assert data['success'] is True
        assert data['channel_id'] == 'web_1'
        assert data['rolled_back'] is False
        assert data['response_id']

        recommendations = data['result']['recommendations']
        assert [r['goal_id'] for r in recommendations] == ['collect_name']
        assert recommendations[0]['message'] == "By the way, what's your name?"
        assert data['result']['active_goals'] == ['collect_name']

        assert len(data['chunks']) == 1
        assert data['chunks'][0]['text'] == "By the way, what's your name?"
        assert data['scheduling'] is None

    def test_pre_extracted_fields_complete_goal(self, client):
        post_message(client, "hi")
        data = post_message(client, "I'm Sam", extracted={'firstName': 'Sam'}).get_json()

        assert data['result']['extracted_info'] == {'firstName': 'Sam'}
        assert 'collect_name' in data['result']['completed_goals']

    def test_generated_channel_id(self, client):
        data = client.post('/api/message', json={'message': 'hello'}).get_json()
        assert data['success'] is True
        assert data['channel_id']

    def test_scheduling_goal_returns_guidance(self, client, runtime):
        runtime['store'].update('web_2', {
            'completed_goals': ['collect_name', 'collect_email'],
            'captured_data': {'firstName': 'Sam', 'email': 'sam@example.com'},
        })

        data = post_message(client, "I'd like to book a class", channel_id='web_2').get_json()

        assert data['result']['fast_track'] is True
        assert data['result']['recommendations'][0]['goal_id'] == 'schedule_class'
        assert data['scheduling']['action'] == 'ask_preference'
        assert data['chunks'][0]['text'] == data['scheduling']['instruction']

    def test_interrupted_turn_rolled_back(self, client, runtime):
        store, tracker = runtime['store'], runtime['tracker']
        store.update('web_3', {'message_count': 3})
        tracker.start_tracking('web_3', store.take_snapshot('web_3'))

        # The interrupted turn had moved state on
        store.update('web_3', {'message_count': 5, 'completed_goals': ['collect_name']})

        data = post_message(client, "hi", channel_id='web_3').get_json()

        assert data['rolled_back'] is True
        state = store.load('web_3')
        assert state['message_count'] == 4
        assert 'collect_name' not in state['completed_goals']
        assert not tracker.is_tracking('web_3')

    @pytest.mark.parametrize("body", [
        {},
        {'message': 42},
        {'message': 'hi', 'extracted': 'Sam'},
    ])
    def test_bad_request(self, client, body):
        response = client.post('/api/message', json=body)
        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_internal_error_hidden(self, client, runtime, monkeypatch):
        class Broken:
            def orchestrate_goals(self, **kwargs):
                raise RuntimeError("secret detail")

        monkeypatch.setitem(runtime, 'orchestrator', Broken())
        response = post_message(client, "hi")

        assert response.status_code == 500
        assert response.get_json() == {'success': False, 'error': 'Internal server error'}


class TestStateRoutes:

    def test_state_after_turns(self, client):
        post_message(client, "hi")
        post_message(client, "I'm Sam", extracted={'firstName': 'Sam'})

        data = client.get('/api/state/web_1').get_json()

        assert data['state']['message_count'] == 2
        assert data['state']['captured_data'] == {'firstName': 'Sam'}
        assert 'collect_name' in data['exit_summary']['completed_goals']
        assert [g['id'] for g in data['goals']][0] == 'collect_name'

    def test_reset(self, client, runtime):
        post_message(client, "hi")

        response = client.post('/api/reset/web_1')

        assert response.get_json()['success'] is True
        state = runtime['store'].load('web_1')
        assert state['message_count'] == default_state()['message_count']
        assert state['active_goals'] == []

    def test_aggregates(self, client):
        analysis = {
            'message_text': 'sounds great',
            'interest_level': 4,
            'conversion_likelihood': 0.8,
            'emotional_tone': 'positive',
        }
        data = client.post('/api/aggregates/web_1', json=analysis).get_json()

        assert data['success'] is True
        assert data['conversation_aggregates']['message_analysis_count'] == 1
        assert len(data['conversation_aggregates']['message_history']) == 1

    def test_aggregates_require_object(self, client):
        response = client.post('/api/aggregates/web_1', json=[1, 2])
        assert response.status_code == 400


class TestSlots:

    def test_by_preference(self, client):
        data = client.get('/api/slots?preference=evening').get_json()
        assert data['slots'][0] == {'day': 'Monday', 'times': ['5pm', '6pm', '7pm']}

    def test_after_hour(self, client):
        data = client.get('/api/slots?after=18').get_json()
        assert data['slots'][0] == {'day': 'Monday', 'times': ['7pm', '8pm']}

    @pytest.mark.parametrize("query", ['after=25', 'before=soon'])
    def test_invalid_hour(self, client, query):
        assert client.get(f'/api/slots?{query}').status_code == 400
