"""
Runtime settings for goal orchestration.

Heuristic patterns (decline detection, specific-time recognition,
scheduling intent, corrections) live here rather than inside the modules
that use them, so a deployment can tune them without code changes.

Usage:
    from goalflow.config import OrchestratorSettings, load_settings

    settings = OrchestratorSettings()              # built-in defaults
    settings = load_settings("data/settings.json")  # overrides from JSON
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "mistralai/Mistral-7B-Instruct-v0.2"
MODEL_ENV_VAR = "GOALFLOW_MODEL"


def _compile_all(patterns) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class OrchestratorSettings:
    """
    Tunable thresholds and patterns.

    Attributes:
        decline_patterns: Regexes that mark a message as declining the current goal
        specific_time_patterns: Regexes a preferredTime must fully match to count
            as a specific clock time (anything else is a vague preference)
        scheduling_keywords: Substrings that signal scheduling intent (fast-track)
        correction_patterns: Regexes that mark a message as reporting wrong data
        confirmation_pattern: Regex for plain confirmations (suppresses corrections)
        history_cap: Max entries kept in conversation_aggregates.message_history
        tracker_ttl_seconds: Lifetime of an interruption-tracking record
        unordered_goal_order: Sort key used when a goal has no order
    """
    decline_patterns: Tuple[str, ...] = (
        r"\bno\s+thanks?\b",
        r"\bnot\s+right\s+now\b",
        r"\bmaybe\s+later\b",
        r"\bskip\b",
        r"\bdon'?t\s+want\s+to\b",
        r"\bprefer\s+not\s+to\b",
    )
    specific_time_patterns: Tuple[str, ...] = (
        r"^\d{1,2}\s*(am|pm|:\d{2})$",
        r"^\d{1,2}:\d{2}\s*(am|pm)?$",
    )
    scheduling_keywords: Tuple[str, ...] = (
        "schedule",
        "book",
        "appointment",
        "available",
        "availability",
        "sign up",
        "signup",
        "reserve",
        "come in",
        "visit",
        "free trial",
        "trial class",
        "when can i",
    )
    correction_patterns: Tuple[str, ...] = (
        r"\b(wrong|incorrect|not\s+my)\s+(e-?mail|phone|number)\b",
        r"\b(e-?mail|phone|number)\s+(is|was|was\s+actually)\s+(wrong|incorrect)\b",
        r"\bthat('?s|\s+is|\s+was)\s+(the\s+)?wrong\s+(e-?mail|phone|number)\b",
        r"\bthat\s+(e-?mail|phone|number)\s+(is|was)\s+wrong\b",
        r"\b(didn'?t|did\s+not)\s+(get|receive)\s+(the|your|a)\s+(text|message|email)\b",
    )
    confirmation_pattern: str = (
        r"\b(perfect|correct|right|good|great|yes|yep|yeah|confirmed|got it|"
        r"received|verified|all good|looks good|that's it|that's right)\b"
    )
    history_cap: int = 50
    tracker_ttl_seconds: int = 300
    unordered_goal_order: int = 9999

    # Compiled forms (derived, not configurable)
    _compiled: Dict[str, Any] = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        compiled = {
            'decline': _compile_all(self.decline_patterns),
            'specific_time': _compile_all(self.specific_time_patterns),
            'correction': _compile_all(self.correction_patterns),
            'confirmation': re.compile(self.confirmation_pattern, re.IGNORECASE),
        }
        object.__setattr__(self, '_compiled', compiled)

    @property
    def decline_regexes(self) -> Tuple[Pattern, ...]:
        return self._compiled['decline']

    @property
    def specific_time_regexes(self) -> Tuple[Pattern, ...]:
        return self._compiled['specific_time']

    @property
    def correction_regexes(self) -> Tuple[Pattern, ...]:
        return self._compiled['correction']

    @property
    def confirmation_regex(self) -> Pattern:
        return self._compiled['confirmation']

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorSettings":
        """
        Build settings from a dict, ignoring unknown keys.

        Raises:
            ValueError: If a pattern does not compile or a number is invalid
        """
        known = {f.name for f in fields(cls) if not f.name.startswith('_')}
        overrides = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            overrides[key] = tuple(value) if isinstance(value, list) else value

        try:
            settings = replace(cls(), **overrides)
        except re.error as e:
            raise ValueError(f"Invalid pattern in settings: {e}") from e

        if settings.history_cap < 1:
            raise ValueError(f"history_cap must be >= 1, got {settings.history_cap}")
        if settings.tracker_ttl_seconds < 1:
            raise ValueError(
                f"tracker_ttl_seconds must be >= 1, got {settings.tracker_ttl_seconds}"
            )
        return settings


def load_settings(settings_path: Optional[str] = None) -> OrchestratorSettings:
    """
    Load settings from a JSON file (defaults when no path is given).

    Args:
        settings_path: Path to settings JSON

    Returns:
        OrchestratorSettings

    Raises:
        FileNotFoundError: If settings_path is given but missing
        ValueError: If the file is not a JSON object or has invalid values
    """
    if settings_path is None:
        return OrchestratorSettings()

    path = Path(settings_path)
    if not path.exists():
        raise FileNotFoundError(f"Settings not found: {settings_path}")

    with open(path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Settings must be a JSON object, got {type(data).__name__}")

    settings = OrchestratorSettings.from_dict(data)
    logger.info(f"Loaded orchestrator settings from {path}")
    return settings


def get_model_name() -> str:
    """LLM model identifier (GOALFLOW_MODEL env var, else the default)."""
    return os.environ.get(MODEL_ENV_VAR, DEFAULT_MODEL_NAME)
