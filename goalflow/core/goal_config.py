"""
Goal Config - Catalog loading, normalization and default resolution

Responsibilities:
- Parse the camelCase goal catalog into frozen GoalDefinition objects
- Resolve both field-list formats (bare strings / {name, required} objects)
  into FieldDescriptor once, at load time
- Merge default global settings and completion triggers under supplied ones
- Pick the effective configuration: company > persona > disabled

Design principles:
- Fail fast: malformed catalogs raise ValueError on load, not mid-turn
- One normalization function per shape; the orchestrator never branches
  on catalog format
- Catalog wire format stays camelCase; Python objects are snake_case

Usage:
    from goalflow.core.goal_config import load_goal_config, get_effective_config

    config = load_goal_config("data/goal_config.json")
    config = get_effective_config(company_info, persona)
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from goalflow.contracts import (
    ChannelRule,
    CompletionTriggers,
    CustomCombination,
    FieldDescriptor,
    GlobalSettings,
    GoalAction,
    GoalBehavior,
    GoalConfiguration,
    GoalDefinition,
    GoalMessages,
    GoalTriggers,
    LegacyTiming,
)
from goalflow.utils.goal_enums import (
    BackoffStrategy,
    GoalPriority,
    GoalType,
    LEGACY_TYPE_ALIASES,
)

logger = logging.getLogger(__name__)

DEFAULT_GLOBAL_SETTINGS = {
    'maxActiveGoals': 3,
    'respectDeclines': True,
    'adaptToUrgency': True,
    'interestThreshold': 5,
    'strictOrdering': 7,
    'maxGoalsPerTurn': 2,
}

DEFAULT_COMPLETION_TRIGGERS = {
    'allCriticalComplete': 'lead_qualified',
}


# =========================================================================
# Field normalization
# =========================================================================

def normalize_fields(raw_fields, validation_rules: Optional[Dict[str, Any]] = None) -> Tuple[FieldDescriptor, ...]:
    """
    Resolve a catalog field list into canonical descriptors.

    Old format: ["email", "phone"] - required unless
        validationRules[field].required is False; a validationRules
        pattern is carried over.
    New format: [{"name": "email", "required": true, "pattern": "..."}]
        - required defaults to True when omitted.

    Args:
        raw_fields: List of strings and/or field objects (None -> empty)
        validation_rules: Legacy per-field rules

    Returns:
        Tuple of FieldDescriptor in catalog order (duplicates dropped)

    Raises:
        ValueError: If an entry is neither a string nor an object with a name
    """
    if raw_fields is None:
        return ()
    if not isinstance(raw_fields, list):
        raise ValueError(f"dataToCapture.fields must be a list, got {type(raw_fields).__name__}")

    rules = validation_rules or {}
    descriptors = []
    seen = set()

    for entry in raw_fields:
        if isinstance(entry, str):
            rule = rules.get(entry) or {}
            descriptor = FieldDescriptor(
                name=entry,
                required=rule.get('required') is not False,
                pattern=rule.get('pattern'),
                field_type=rule.get('type'),
                description=rule.get('description'),
            )
        elif isinstance(entry, dict) and isinstance(entry.get('name'), str):
            descriptor = FieldDescriptor(
                name=entry['name'],
                required=entry.get('required') is not False,
                pattern=entry.get('pattern'),
                field_type=entry.get('type'),
                description=entry.get('label') or entry.get('description'),
            )
        else:
            raise ValueError(f"Invalid field descriptor: {entry!r}")

        if descriptor.name in seen:
            logger.warning(f"Duplicate field '{descriptor.name}' ignored")
            continue
        seen.add(descriptor.name)
        descriptors.append(descriptor)

    return tuple(descriptors)


# =========================================================================
# Goal parsing
# =========================================================================

def _parse_enum(enum_cls, value, default, goal_id: str, label: str):
    if value is None:
        return default
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise ValueError(f"Goal '{goal_id}': unknown {label} '{value}'")


def _parse_type(value, goal_id: str) -> GoalType:
    if value is None:
        return GoalType.DATA_COLLECTION
    key = str(value).lower()
    if key in LEGACY_TYPE_ALIASES:
        return LEGACY_TYPE_ALIASES[key]
    return _parse_enum(GoalType, key, GoalType.DATA_COLLECTION, goal_id, 'type')


def _optional_int(value, goal_id: str, label: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Goal '{goal_id}': {label} must be a number, got {value!r}")
    return int(value)


def _string_list(value) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(str(v) for v in value)


def _parse_triggers(data: Optional[Dict[str, Any]], goal_id: str) -> Optional[GoalTriggers]:
    if not data:
        return None
    # afterGoals is the legacy name for prerequisiteGoals
    prerequisites = data.get('prerequisiteGoals') or data.get('afterGoals')
    return GoalTriggers(
        prerequisite_goals=_string_list(prerequisites),
        message_count=_optional_int(data.get('messageCount'), goal_id, 'triggers.messageCount'),
        user_signals=_string_list(data.get('userSignals')),
    )


def _parse_timing(data: Optional[Dict[str, Any]], goal_id: str) -> Optional[LegacyTiming]:
    if not data:
        return None
    return LegacyTiming(
        min_messages=_optional_int(data.get('minMessages'), goal_id, 'timing.minMessages'),
        max_messages=_optional_int(data.get('maxMessages'), goal_id, 'timing.maxMessages'),
    )


def _parse_actions(data: Optional[Dict[str, Any]], goal_id: str) -> Tuple[GoalAction, ...]:
    if not data:
        return ()
    actions = []
    for raw in data.get('onComplete') or []:
        if not isinstance(raw, dict) or not raw.get('type'):
            raise ValueError(f"Goal '{goal_id}': onComplete action needs a type, got {raw!r}")
        # config is the legacy name for payload
        payload = raw.get('payload') or raw.get('config') or {}
        actions.append(GoalAction(
            type=raw['type'],
            event_name=raw.get('eventName'),
            payload=dict(payload),
        ))
    return tuple(actions)


def parse_goal(data: Dict[str, Any], position: int = 0) -> GoalDefinition:
    """
    Build a GoalDefinition from one catalog entry.

    Args:
        data: camelCase goal object
        position: Index in the catalog (stable tie-break)

    Returns:
        GoalDefinition

    Raises:
        ValueError: If the entry is malformed
    """
    if not isinstance(data, dict):
        raise ValueError(f"Goal at position {position} must be an object")

    goal_id = data.get('id')
    if not goal_id or not isinstance(goal_id, str):
        raise ValueError(f"Goal at position {position} is missing an id")

    adherence = data.get('adherence', 5)
    adherence = _optional_int(adherence, goal_id, 'adherence')
    if adherence is None:
        adherence = 5
    if not 1 <= adherence <= 10:
        raise ValueError(f"Goal '{goal_id}': adherence must be 1-10, got {adherence}")

    capture = data.get('dataToCapture') or {}
    behavior = data.get('behavior') or {}
    messages = data.get('messages') or {}

    channel_rules = {
        channel: ChannelRule(
            required=bool((rule or {}).get('required', False)),
            skip=(rule or {}).get('skip') is True,
        )
        for channel, rule in (data.get('channelRules') or {}).items()
    }

    return GoalDefinition(
        id=goal_id,
        name=data.get('name') or goal_id,
        priority=_parse_enum(GoalPriority, data.get('priority'), GoalPriority.MEDIUM, goal_id, 'priority'),
        order=_optional_int(data.get('order'), goal_id, 'order'),
        adherence=adherence,
        type=_parse_type(data.get('type'), goal_id),
        fields=normalize_fields(capture.get('fields'), capture.get('validationRules')),
        triggers=_parse_triggers(data.get('triggers'), goal_id),
        timing=_parse_timing(data.get('timing'), goal_id),
        channel_rules=channel_rules,
        behavior=GoalBehavior(
            max_attempts=_optional_int(behavior.get('maxAttempts'), goal_id, 'behavior.maxAttempts'),
            backoff_strategy=_parse_enum(
                BackoffStrategy, behavior.get('backoffStrategy'), None, goal_id, 'backoffStrategy'
            ),
            message=behavior.get('message'),
        ),
        messages=GoalMessages(
            request=messages.get('request'),
            follow_up=messages.get('followUp'),
        ),
        on_complete=_parse_actions(data.get('actions'), goal_id),
        is_primary=data.get('isPrimary') is True,
        prerequisites=_string_list(data.get('prerequisites')),
        description=data.get('description') or "",
        position=position,
    )


# =========================================================================
# Catalog parsing
# =========================================================================

def _parse_global_settings(data: Dict[str, Any]) -> GlobalSettings:
    merged = dict(DEFAULT_GLOBAL_SETTINGS)
    merged.update({k: v for k, v in (data or {}).items() if v is not None})

    strict = merged['strictOrdering']
    if not isinstance(strict, (int, float)) or not 0 <= strict <= 10:
        raise ValueError(f"globalSettings.strictOrdering must be 0-10, got {strict!r}")

    return GlobalSettings(
        max_active_goals=int(merged['maxActiveGoals']),
        strict_ordering=int(strict),
        max_goals_per_turn=int(merged['maxGoalsPerTurn']),
        respect_declines=bool(merged['respectDeclines']),
        adapt_to_urgency=bool(merged['adaptToUrgency']),
        interest_threshold=int(merged['interestThreshold']),
    )


def _parse_completion_triggers(data: Dict[str, Any]) -> CompletionTriggers:
    merged = dict(DEFAULT_COMPLETION_TRIGGERS)
    merged.update(data or {})

    combinations = []
    for raw in merged.get('customCombinations') or []:
        goal_ids = raw.get('goalIds')
        intent = raw.get('triggerIntent')
        if not goal_ids or not intent:
            raise ValueError(f"customCombinations entry needs goalIds and triggerIntent: {raw!r}")
        combinations.append(CustomCombination(
            goal_ids=_string_list(goal_ids),
            trigger_intent=intent,
            description=raw.get('description') or "",
        ))

    return CompletionTriggers(
        all_critical_complete=merged.get('allCriticalComplete'),
        all_high_complete=merged.get('allHighComplete'),
        custom_combinations=tuple(combinations),
    )


def parse_goal_configuration(data: Dict[str, Any], source: str = "file") -> GoalConfiguration:
    """
    Build a GoalConfiguration from a camelCase catalog dict.

    Args:
        data: {enabled, goals, globalSettings, completionTriggers}
        source: Where the catalog came from (for logs)

    Returns:
        GoalConfiguration with defaults merged

    Raises:
        ValueError: If the catalog is malformed or has duplicate goal ids
    """
    if not isinstance(data, dict):
        raise ValueError(f"Goal configuration must be an object, got {type(data).__name__}")

    raw_goals = data.get('goals') or []
    if not isinstance(raw_goals, list):
        raise ValueError("Goal configuration 'goals' must be a list")

    goals = [parse_goal(g, position=i) for i, g in enumerate(raw_goals)]

    ids = [g.id for g in goals]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"Duplicate goal ids: {duplicates}")

    primaries = [g.id for g in goals if g.is_primary]
    if len(primaries) > 1:
        logger.warning(f"Multiple primary goals {primaries}; using '{primaries[0]}'")

    known = set(ids)
    for goal in goals:
        for prereq in goal.chain_prerequisites:
            if not any(i == prereq or i.startswith(prereq + '_') for i in known):
                logger.warning(f"Goal '{goal.id}' references unknown prerequisite '{prereq}'")

    return GoalConfiguration(
        enabled=bool(data.get('enabled', True)),
        goals=tuple(goals),
        global_settings=_parse_global_settings(data.get('globalSettings')),
        completion_triggers=_parse_completion_triggers(data.get('completionTriggers')),
        source=source,
    )


def disabled_configuration() -> GoalConfiguration:
    """Configuration used when no catalog is available."""
    return GoalConfiguration(enabled=False, goals=(), source="none")


def load_goal_config(config_path: str) -> GoalConfiguration:
    """
    Load and normalize a goal catalog from JSON.

    The file may hold the catalog itself or an object with a
    'goalConfiguration' key (company/persona documents).

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the catalog is malformed
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Goal configuration not found: {config_path}")

    with open(path, 'r') as f:
        data = json.load(f)

    if isinstance(data, dict) and 'goalConfiguration' in data:
        data = data['goalConfiguration']

    config = parse_goal_configuration(data, source="file")
    logger.info(f"Loaded goal configuration from {path.name}: {len(config.goals)} goals")
    return config


def _extract_goal_section(document) -> Optional[Dict[str, Any]]:
    if not isinstance(document, dict):
        return None
    if 'goalConfiguration' in document:
        return document.get('goalConfiguration')
    return document


def _is_usable(section) -> bool:
    return bool(section) and section.get('enabled') is True and bool(section.get('goals'))


def get_effective_config(company_config=None, persona_config=None) -> GoalConfiguration:
    """
    Pick the goal configuration to use: company > persona > disabled.

    A level is used only when it is enabled and has at least one goal.
    Each argument may be the catalog itself or a document carrying it
    under 'goalConfiguration'.

    Returns:
        GoalConfiguration (source is 'company', 'persona' or 'none')
    """
    company = _extract_goal_section(company_config)
    if _is_usable(company):
        return parse_goal_configuration(company, source="company")

    persona = _extract_goal_section(persona_config)
    if _is_usable(persona):
        return parse_goal_configuration(persona, source="persona")

    return disabled_configuration()


def is_enabled(config: GoalConfiguration) -> bool:
    return config.enabled and len(config.goals) > 0


def describe_goals(config: GoalConfiguration) -> List[Dict[str, Any]]:
    """Concise per-goal view for logs and the debug API."""
    return [
        {
            'id': g.id,
            'name': g.name,
            'type': g.type.value,
            'priority': g.priority.value,
            'order': g.order,
            'fields': list(g.field_names),
        }
        for g in config.goals
    ]
