"""
Field Mappings - Standardize extracted field names and preference words

Responsibilities:
- Map LLM field-name variations to canonical captured-data keys
- Map vague time words to preference bands (morning/afternoon/evening)
- Map correction candidates (wrong_email, wrong_phone) to the field they clear
- Default event names for goal onComplete actions

Design principles:
- Case-insensitive matching
- Return raw value if no mapping found (don't block)
- Single source of truth for naming standardization
"""

import re

# Canonical captured-data keys for common field-name variations
FIELD_NAME_MAP = {
    # Email
    'email': 'email',
    'e-mail': 'email',
    'email_address': 'email',
    'emailaddress': 'email',

    # Phone
    'phone': 'phone',
    'phone_number': 'phone',
    'phonenumber': 'phone',
    'mobile': 'phone',
    'cell': 'phone',
    'telephone': 'phone',

    # Names
    'firstname': 'firstName',
    'first_name': 'firstName',
    'lastname': 'lastName',
    'last_name': 'lastName',
    'surname': 'lastName',
    'fullname': 'fullName',
    'full_name': 'fullName',

    # Scheduling
    'preferreddate': 'preferredDate',
    'preferred_date': 'preferredDate',
    'date': 'preferredDate',
    'preferredtime': 'preferredTime',
    'preferred_time': 'preferredTime',
    'time': 'preferredTime',
    'normalizeddatetime': 'normalizedDateTime',
    'normalized_date_time': 'normalizedDateTime',
    'datetime': 'normalizedDateTime',
}

# Vague time words -> preference band
TIME_PREFERENCE_MAP = {
    'morning': 'morning',
    'mornings': 'morning',
    'early': 'morning',
    'before work': 'morning',
    'am': 'morning',

    'afternoon': 'afternoon',
    'afternoons': 'afternoon',
    'lunch': 'afternoon',
    'midday': 'afternoon',

    'evening': 'evening',
    'evenings': 'evening',
    'night': 'evening',
    'nights': 'evening',
    'after work': 'evening',
    'pm': 'evening',
}

# Correction candidates -> captured-data field they invalidate
CORRECTION_FIELD_MAP = {
    'wrong_email': 'email',
    'wrong_phone': 'phone',
}

# Words in a correction message -> field they refer to
CORRECTION_KEYWORD_MAP = {
    'email': 'email',
    'e-mail': 'email',
    'phone': 'phone',
    'number': 'phone',
    'text': 'phone',
}

# onComplete action type -> default event name
DEFAULT_ACTION_EVENTS = {
    'convert_anonymous_to_lead': 'lead.contact_captured',
    'trigger_scheduling_flow': 'appointment.requested',
    'send_notification': 'notification.send',
    'update_crm': 'crm.update_requested',
    'custom': 'custom.action',
}

FALLBACK_ACTION_EVENT = 'goal.action'

# Contact fields that gate is_contact_info_complete()
CONTACT_FIELDS = ('email', 'phone', 'firstName')


def map_field_name(raw_name):
    """
    Map a field name variation to its canonical captured-data key

    Args:
        raw_name (str): Field name as produced by the extractor

    Returns:
        str: Canonical key (or raw_name if no mapping found)

    Examples:
        >>> map_field_name('phone_number')
        'phone'

        >>> map_field_name('favoriteClass')
        'favoriteClass'  # No mapping, returns as-is
    """
    if not isinstance(raw_name, str):
        return raw_name

    return FIELD_NAME_MAP.get(raw_name.strip().lower(), raw_name.strip())


def map_time_preference(raw_value):
    """
    Map a vague time expression to a preference band

    Longest phrase wins so "after work" beats "work"-free matches.

    Args:
        raw_value (str): e.g. "mostly nights", "after work"

    Returns:
        str or None: 'morning', 'afternoon', 'evening', or None
    """
    if not isinstance(raw_value, str):
        return None

    text = raw_value.lower()
    for phrase in sorted(TIME_PREFERENCE_MAP, key=len, reverse=True):
        # am/pm only count when they trail a number ("7pm", "6 am")
        if len(phrase) <= 2:
            if re.search(rf"\d\s*{phrase}\b", text):
                return TIME_PREFERENCE_MAP[phrase]
            continue
        if phrase in text:
            return TIME_PREFERENCE_MAP[phrase]

    return None


def default_event_name(action_type):
    """Default event name for an onComplete action type."""
    return DEFAULT_ACTION_EVENTS.get(action_type, FALLBACK_ACTION_EVENT)
