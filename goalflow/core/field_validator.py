"""
Field Validator - Narrow, deterministic gatekeeper for captured values

Responsibilities:
- Decide whether a candidate value may be persisted in captured_data
- Normalize accepted values (lower-cased email, digit-only phone, ...)
- Distinguish storable preferences from completion-grade values
  (a vague "evening" is storable, only "7pm" satisfies a scheduling goal)

Design principles:
- No LLM calls, no I/O: same input always produces same output
- Never raises on bad input; returns ValidationResult(valid=False)
- Kept separate from the extractor (which is broad and opaque)
"""

import logging
import re
from datetime import datetime
from typing import Any, Optional

from goalflow.config import OrchestratorSettings
from goalflow.contracts import FieldDescriptor, ValidationResult

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 254

MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15

DATE_PATTERNS = (
    re.compile(r"\b(mon|tue|wed|thu|fri|sat|sun)", re.IGNORECASE),
    re.compile(r"\b(today|tomorrow|tonight|next)\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}[/-]\d{1,2}\b"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d+(st|nd|rd|th)\b", re.IGNORECASE),
)

# Date and time to the second; fractions and a Z or offset may follow
ISO_DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")

NULL_STRINGS = {'', 'null', 'none', 'undefined', 'n/a'}

# Field kinds resolved from canonical names or descriptor types
KIND_BY_NAME = {
    'email': 'email',
    'phone': 'phone',
    'preferredTime': 'time',
    'preferredDate': 'date',
    'normalizedDateTime': 'datetime',
}

KIND_BY_TYPE = {
    'email': 'email',
    'phone': 'phone',
    'time': 'time',
    'date': 'date',
    'datetime': 'datetime',
}


def unwrap_value(value: Any) -> Any:
    """
    Unwrap nested {value, validated, collected_at} shapes.

    Examples:
        >>> unwrap_value({'value': 'a@b.com', 'validated': True})
        'a@b.com'
        >>> unwrap_value('a@b.com')
        'a@b.com'
    """
    if isinstance(value, dict) and 'value' in value:
        return value['value']
    return value


class FieldValidator:
    """Validates and normalizes candidate field values."""

    def __init__(self, settings: Optional[OrchestratorSettings] = None):
        self.settings = settings or OrchestratorSettings()

    # =========================================================================
    # Public API
    # =========================================================================

    def validate(self, field_name: str, raw_value: Any,
                 descriptor: Optional[FieldDescriptor] = None) -> ValidationResult:
        """
        Validate one candidate value.

        Args:
            field_name: Captured-data key
            raw_value: Candidate value (string, number, or nested {value, ...})
            descriptor: Field descriptor (type hint and optional pattern)

        Returns:
            ValidationResult(valid, normalized_value, reason)
        """
        value = unwrap_value(raw_value)

        if value is None:
            return ValidationResult(valid=False, reason='empty')
        if isinstance(value, bool):
            return ValidationResult(valid=False, reason='not_text')
        if isinstance(value, (int, float)):
            value = str(value)
        if not isinstance(value, str):
            return ValidationResult(valid=False, reason='not_text')

        text = value.strip()
        if text.lower() in NULL_STRINGS:
            return ValidationResult(valid=False, reason='empty')

        kind = self._kind_for(field_name, descriptor)

        if kind == 'email':
            result = self._validate_email(text)
        elif kind == 'phone':
            result = self._validate_phone(text)
        elif kind == 'time':
            result = ValidationResult(valid=True, normalized_value=text)
        elif kind == 'date':
            result = self._validate_date(text)
        elif kind == 'datetime':
            result = self._validate_datetime(text)
        else:
            result = ValidationResult(valid=True, normalized_value=text)

        if result.valid and descriptor is not None and descriptor.pattern:
            try:
                matched = re.search(descriptor.pattern, text) is not None
            except re.error as e:
                logger.warning(f"Invalid pattern for field '{field_name}': {e}")
                matched = False
            if not matched:
                return ValidationResult(valid=False, reason='pattern_mismatch')

        return result

    def is_specific_time(self, value: Any) -> bool:
        """
        Whether a preferredTime value names a specific clock time.

        Examples:
            >>> FieldValidator().is_specific_time('7pm')
            True
            >>> FieldValidator().is_specific_time('evening')
            False
        """
        value = unwrap_value(value)
        if not isinstance(value, str):
            return False
        text = value.strip()
        return any(p.search(text) for p in self.settings.specific_time_regexes)

    def is_field_satisfied(self, field_name: str, value: Any,
                           descriptor: Optional[FieldDescriptor] = None) -> bool:
        """
        Completion-grade check: present, valid, and (for times) specific.

        Args:
            field_name: Captured-data key
            value: Stored value (may be nested)
            descriptor: Field descriptor

        Returns:
            True if the value counts toward goal completion
        """
        if not self.validate(field_name, value, descriptor).valid:
            return False
        if self._kind_for(field_name, descriptor) == 'time':
            return self.is_specific_time(value)
        return True

    # =========================================================================
    # Kind-specific rules
    # =========================================================================

    def _kind_for(self, field_name: str, descriptor: Optional[FieldDescriptor]) -> Optional[str]:
        if field_name in KIND_BY_NAME:
            return KIND_BY_NAME[field_name]
        if descriptor is not None and descriptor.field_type:
            return KIND_BY_TYPE.get(descriptor.field_type.lower())
        return None

    def _validate_email(self, text: str) -> ValidationResult:
        email = text.replace(' ', '').lower()
        if (
            not EMAIL_PATTERN.match(email)
            or len(email) > MAX_EMAIL_LENGTH
            or '..' in email
            or email.startswith('.')
            or email.endswith('.')
        ):
            return ValidationResult(valid=False, reason='invalid_email')
        return ValidationResult(valid=True, normalized_value=email)

    def _validate_phone(self, text: str) -> ValidationResult:
        digits = re.sub(r"\D", "", text)
        if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
            return ValidationResult(valid=False, reason='invalid_phone')
        normalized = f"+{digits}" if text.startswith('+') else digits
        return ValidationResult(valid=True, normalized_value=normalized)

    def _validate_date(self, text: str) -> ValidationResult:
        if any(p.search(text) for p in DATE_PATTERNS):
            return ValidationResult(valid=True, normalized_value=text)
        return ValidationResult(valid=False, reason='invalid_date')

    def _validate_datetime(self, text: str) -> ValidationResult:
        if not ISO_DATETIME_PATTERN.match(text):
            return ValidationResult(valid=False, reason='invalid_datetime')
        iso_text = text[:-1] + "+00:00" if text[-1] in "Zz" else text
        try:
            datetime.fromisoformat(iso_text)
        except ValueError:
            return ValidationResult(valid=False, reason='invalid_datetime')
        return ValidationResult(valid=True, normalized_value=text)
