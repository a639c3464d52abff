"""
Console Test Harness for GoalOrchestrator (Functional Core)

Simple console loop to drive orchestrate_goals() turn by turn. State is
held in this loop and passed back as prior_state, so no store is needed.

Without GOALFLOW_USE_LLM=1 there is no extractor; type field values
inline as "field=value; field=value" after a '|':
    > my email is a@b.com | email=a@b.com
"""

import logging
import os
import sys

from goalflow.config import get_model_name, load_settings
from goalflow.core.field_extractor import FieldExtractor
from goalflow.core.field_validator import FieldValidator
from goalflow.core.goal_config import load_goal_config
from goalflow.core.goal_orchestrator import GoalOrchestrator, build_exit_summary
from goalflow.core.goal_selector import GoalSelector
from goalflow.core.interest_detector import InterestDetector
from goalflow.utils.event_publisher import LoggingEventPublisher

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = ('quit', 'exit', 'stop')


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def parse_inline_fields(user_input):
    """Split 'message | a=1; b=2' into the message and a candidate dict."""
    if '|' not in user_input:
        return user_input, None

    message, _, raw = user_input.partition('|')
    candidates = {}
    for pair in raw.split(';'):
        name, sep, value = pair.partition('=')
        if sep and name.strip():
            candidates[name.strip()] = value.strip()
    return message.strip(), candidates


def print_turn(result):
    """Print recommendations and state changes for one turn"""
    print("\n" + "-" * 60)
    rec = result.primary_recommendation
    if rec is not None:
        print(f"Next: {rec.goal_id} ({rec.approach.value}, attempt {rec.attempt_count})")
        print(f"Say:  {rec.message}")
    else:
        print("Next: (nothing to pursue)")

    if result.extracted_info:
        print(f"Captured: {result.extracted_info}")
    if result.rejected_fields:
        print(f"Rejected: {result.rejected_fields}")
    for key, ids in result.state_updates.items():
        if ids:
            print(f"{key}: {ids}")
    if result.triggered_intents:
        print(f"Intents: {result.triggered_intents}")
    if result.correction:
        print(f"Correction: {result.correction}")
    if result.fast_track:
        print("Fast-track in progress")
    print(f"Active: {result.active_goals}  Completed: {result.completed_goals}")
    print("-" * 60)


def main():
    """Run console test"""
    print_separator()
    print("GOAL ORCHESTRATOR - CONSOLE TEST")
    print_separator()

    try:
        settings_path = "data/settings.json" if os.path.exists("data/settings.json") else None
        settings = load_settings(settings_path)
        goal_config = load_goal_config("data/goal_config.json")

        extractor = None
        if os.environ.get('GOALFLOW_USE_LLM') == '1':
            from goalflow.utils.hf_client import HuggingFaceClient
            print("\nLoading model (this may take 30 seconds)...")
            extractor = FieldExtractor(HuggingFaceClient(model_name=get_model_name(), load_in_4bit=True))

        validator = FieldValidator(settings)
        orchestrator = GoalOrchestrator(
            selector=GoalSelector(settings.unordered_goal_order),
            validator=validator,
            extractor=extractor,
            publisher=LoggingEventPublisher(),
            interest_detector=InterestDetector(),
            settings=settings,
        )
        print("\nModules initialized successfully!")

    except (FileNotFoundError, ValueError) as e:
        print(f"\nFailed to initialize: {e}")
        return 1

    print("Type 'quit', 'exit', or 'stop' to end\n")

    state = None
    history = []

    while True:
        try:
            user_input = input("> ").strip()
            if not user_input:
                continue
            if user_input.lower() in EXIT_COMMANDS:
                break

            message, inline = parse_inline_fields(user_input)
            result = orchestrator.orchestrate_goals(
                message=message,
                channel_id="console",
                user_id="console-user",
                tenant_id="local",
                goal_config=goal_config,
                history=history,
                channel="chat",
                prior_state=state,
                pre_extracted=inline,
            )
            state = result.state
            history.append(message)
            print_turn(result)

            summary = build_exit_summary(goal_config, state, validator)
            if summary['workflow_complete']:
                print_separator()
                print("WORKFLOW COMPLETE")
                print_separator()
                break

        except KeyboardInterrupt:
            print("\n\nInterrupted by user (Ctrl+C)")
            break

        except EOFError:
            break

    if state is not None:
        summary = build_exit_summary(goal_config, state, validator)
        print(f"\nCompleted goals: {summary['completed_goals']}")
        print(f"Missing fields: {summary['missing_fields']}")

    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
