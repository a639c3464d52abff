"""
Flask dev server for the goal orchestration runtime

Exposes one orchestration turn per POST /api/message plus state
inspection endpoints. Text generation is out of scope: the reply is the
primary recommendation's suggested phrasing (or scheduling guidance),
chunked for the channel.

Environment:
    GOALFLOW_USE_LLM=1     load the HuggingFace model for extraction
                           (otherwise callers pass "extracted" themselves)
    GOALFLOW_MODEL         model name (see goalflow.config)
    GOALFLOW_STATE_DIR     JSON state directory (in-memory when unset)
"""

import logging
import os

from flask import Flask, jsonify, request

from goalflow.config import OrchestratorSettings, get_model_name, load_settings
from goalflow.contracts import GoalConfiguration
from goalflow.core.field_extractor import FieldExtractor
from goalflow.core.field_validator import FieldValidator
from goalflow.core.goal_config import describe_goals, load_goal_config
from goalflow.core.goal_orchestrator import GoalOrchestrator, build_exit_summary
from goalflow.core.goal_selector import GoalSelector
from goalflow.core.goal_state_store import GoalStateStore, default_state
from goalflow.core.interest_detector import InterestDetector
from goalflow.core.interruption_tracker import InterruptionTracker
from goalflow.core.response_chunker import ResponseChunker, deliver_chunks, load_chunking_config
from goalflow.core.scheduling import (
    analyze_scheduling_request,
    load_business_hours,
    slots_after_hour,
    slots_before_hour,
    slots_for_preference,
)
from goalflow.persistence import InMemoryStateBackend, JsonFileStateBackend
from goalflow.utils.event_publisher import InMemoryEventPublisher
from goalflow.utils.goal_enums import GoalType
from goalflow.utils.helpers import generate_channel_id

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

GENERIC_ERROR = 'Internal server error'

# Wired once at startup (init_runtime)
runtime = {}


def init_runtime(
    goal_config: GoalConfiguration,
    business_hours=None,
    chunking_config=None,
    settings=None,
    backend=None,
    extractor=None
):
    """
    Wire collaborators for the server.

    Args:
        goal_config: Normalized goal catalog
        business_hours: Weekday -> [{from, to}] for scheduling guidance
        chunking_config: Chunking rules per channel
        settings: OrchestratorSettings
        backend: Key-value backend (in-memory when None)
        extractor: FieldExtractor (None: callers pass 'extracted')

    Returns:
        The runtime dict
    """
    settings = settings or OrchestratorSettings()
    backend = backend or InMemoryStateBackend()
    validator = FieldValidator(settings)
    store = GoalStateStore(backend, history_cap=settings.history_cap)
    publisher = InMemoryEventPublisher()

    orchestrator = GoalOrchestrator(
        selector=GoalSelector(settings.unordered_goal_order),
        validator=validator,
        extractor=extractor,
        store=store,
        publisher=publisher,
        interest_detector=InterestDetector(),
        settings=settings,
    )

    runtime.clear()
    runtime.update({
        'orchestrator': orchestrator,
        'validator': validator,
        'store': store,
        'publisher': publisher,
        'tracker': InterruptionTracker(
            backend, ttl_seconds=settings.tracker_ttl_seconds
        ),
        'chunker': ResponseChunker(),
        'goal_config': goal_config,
        'business_hours': business_hours or {},
        'chunking_config': chunking_config or {'enabled': False, 'rules': {}},
    })
    logger.info(f"Runtime ready: {len(goal_config.goals)} goals ({goal_config.source})")
    return runtime


def _reply_text(result, message, state):
    """Primary recommendation phrasing, or scheduling guidance for scheduling goals."""
    recommendation = result.primary_recommendation
    if recommendation is None:
        return "", None

    goal = runtime['goal_config'].find_goal(recommendation.goal_id)
    if goal is not None and goal.type == GoalType.SCHEDULING and runtime['business_hours']:
        guidance = analyze_scheduling_request(
            message,
            state['captured_data'],
            runtime['business_hours'],
            runtime['validator'],
        )
        return guidance.instruction, guidance.to_dict()

    return recommendation.message, None


@app.route('/api/message', methods=['POST'])
def process_message():
    """Run one orchestration turn and return recommendations plus reply chunks"""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not isinstance(data.get('message'), str):
            return jsonify({'success': False, 'error': "Body must include a 'message' string"}), 400

        channel_id = data.get('channel_id') or generate_channel_id()
        channel = data.get('channel', 'chat')
        extracted = data.get('extracted')
        if extracted is not None and not isinstance(extracted, (dict, list)):
            return jsonify({'success': False, 'error': "'extracted' must be an object or list"}), 400

        store = runtime['store']
        tracker = runtime['tracker']

        # Undo an interrupted response before this turn
        rolled_back = tracker.handle_new_message(channel_id, store)
        snapshot = store.take_snapshot(channel_id)

        result = runtime['orchestrator'].orchestrate_goals(
            message=data['message'],
            channel_id=channel_id,
            user_id=data.get('user_id', 'anonymous'),
            tenant_id=data.get('tenant_id', 'default'),
            goal_config=runtime['goal_config'],
            history=data.get('history'),
            channel=channel,
            pre_extracted=extracted,
        )

        reply, guidance = _reply_text(result, data['message'], result.state)
        response_id = tracker.start_tracking(channel_id, snapshot)
        chunks = runtime['chunker'].chunk_response(
            reply, channel, runtime['chunking_config'], response_id
        )

        delivered = []
        deliver_chunks(chunks, delivered.append, tracker, channel_id, response_id,
                       sleep=lambda seconds: None)
        tracker.clear_tracking(channel_id)

        return jsonify({
            'success': True,
            'channel_id': channel_id,
            'response_id': response_id,
            'rolled_back': rolled_back,
            'result': result.to_dict(),
            'scheduling': guidance,
            'chunks': [c.to_dict() for c in delivered],
            'exit_summary': build_exit_summary(runtime['goal_config'], result.state, runtime['validator']),
        })

    except Exception as e:
        logger.error(f"Error processing message: {type(e).__name__} - {e}", exc_info=True)
        return jsonify({'success': False, 'error': GENERIC_ERROR}), 500


@app.route('/api/state/<channel_id>', methods=['GET'])
def get_state(channel_id):
    """Current channel state and workflow progress"""
    try:
        state = runtime['store'].load(channel_id)
        return jsonify({
            'success': True,
            'channel_id': channel_id,
            'state': state,
            'exit_summary': build_exit_summary(runtime['goal_config'], state, runtime['validator']),
            'goals': describe_goals(runtime['goal_config']),
            'events': list(runtime['publisher'].events),
        })
    except Exception as e:
        logger.error(f"Error loading state for {channel_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': GENERIC_ERROR}), 500


@app.route('/api/reset/<channel_id>', methods=['POST'])
def reset_state(channel_id):
    """Replace channel state with a fresh default"""
    try:
        runtime['store'].save(channel_id, default_state())
        runtime['tracker'].clear_tracking(channel_id)
        logger.info(f"State reset for {channel_id}")
        return jsonify({'success': True, 'channel_id': channel_id})
    except Exception as e:
        logger.error(f"Error resetting {channel_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': GENERIC_ERROR}), 500


@app.route('/api/aggregates/<channel_id>', methods=['POST'])
def update_aggregates(channel_id):
    """Fold one message analysis into the channel's conversation aggregates"""
    try:
        analysis = request.get_json(silent=True)
        if not isinstance(analysis, dict):
            return jsonify({'success': False, 'error': 'Body must be a JSON object'}), 400

        state = runtime['store'].update_conversation_aggregates(channel_id, analysis)
        return jsonify({
            'success': True,
            'channel_id': channel_id,
            'conversation_aggregates': state['conversation_aggregates'],
        })
    except Exception as e:
        logger.error(f"Error updating aggregates for {channel_id}: {e}", exc_info=True)
        return jsonify({'success': False, 'error': GENERIC_ERROR}), 500


@app.route('/api/slots', methods=['GET'])
def get_slots():
    """Candidate slots: ?preference=evening, ?after=18 or ?before=10"""
    try:
        hours = runtime['business_hours']
        after = request.args.get('after')
        before = request.args.get('before')

        if after is not None or before is not None:
            value = after if after is not None else before
            if not value.isdigit() or not 0 <= int(value) <= 23:
                return jsonify({'success': False, 'error': 'Hour must be 0-23'}), 400
            if after is not None:
                slots = slots_after_hour(hours, int(value))
            else:
                slots = slots_before_hour(hours, int(value))
        else:
            slots = slots_for_preference(hours, request.args.get('preference', ''))

        return jsonify({
            'success': True,
            'slots': [{'day': s.day, 'times': list(s.times)} for s in slots],
        })
    except Exception as e:
        logger.error(f"Error computing slots: {e}", exc_info=True)
        return jsonify({'success': False, 'error': GENERIC_ERROR}), 500


def build_default_runtime():
    """Runtime from the data/ files and environment."""
    settings_path = "data/settings.json" if os.path.exists("data/settings.json") else None
    settings = load_settings(settings_path)

    extractor = None
    if os.environ.get('GOALFLOW_USE_LLM') == '1':
        from goalflow.utils.hf_client import HuggingFaceClient
        logger.info("Initializing HuggingFace model (this takes ~30 seconds)...")
        extractor = FieldExtractor(HuggingFaceClient(model_name=get_model_name(), load_in_4bit=True))

    state_dir = os.environ.get('GOALFLOW_STATE_DIR')
    backend = JsonFileStateBackend(state_dir) if state_dir else None

    return init_runtime(
        goal_config=load_goal_config("data/goal_config.json"),
        business_hours=load_business_hours("data/company_info.json"),
        chunking_config=load_chunking_config("data/chunking.json"),
        settings=settings,
        backend=backend,
        extractor=extractor,
    )


if __name__ == '__main__':
    build_default_runtime()

    print("\n" + "=" * 60)
    print("GOALFLOW - DEV SERVER")
    print("=" * 60)
    print("\nPOST /api/message  {\"channel_id\", \"message\", \"extracted\"}")
    print("Press Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    app.run(debug=True, host='0.0.0.0', port=5000)
