"""
Utility helpers for the goal orchestration runtime

Simple utility functions for ID and timestamp generation.
"""

import os
import time
import uuid
from datetime import datetime, timezone

# Crockford base32 (ULID alphabet)
_ULID_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_channel_id(short=True):
    """
    Generate unique channel identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Channel ID

    Examples:
        >>> generate_channel_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def generate_response_id():
    """
    Generate a lexicographically sortable response identifier

    Format: 26 chars, 48-bit millisecond timestamp + 80 random bits,
    encoded with the ULID alphabet. Later ids sort after earlier ones.

    Returns:
        str: Response ID

    Examples:
        >>> generate_response_id()
        '01JB3Z8W4Q9XKX7M2C5V0RT1NA'
    """
    millis = int(time.time() * 1000)
    value = (millis << 80) | int.from_bytes(os.urandom(10), 'big')

    chars = []
    for _ in range(26):
        value, index = divmod(value, 32)
        chars.append(_ULID_ALPHABET[index])
    return ''.join(reversed(chars))


def utc_now_iso():
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_state_filename(channel_id, extension="json"):
    """
    Generate filesystem-safe filename for a channel's state

    Format: CHANNEL-{safe_id}.{extension}

    Args:
        channel_id (str): Channel identifier (may contain ':' or '/')
        extension (str): File extension (without dot)

    Returns:
        str: Generated filename

    Examples:
        >>> generate_state_filename('tenant1:web/abc')
        'CHANNEL-tenant1_web_abc.json'
    """
    safe_id = ''.join(c if c.isalnum() or c in '-_.' else '_' for c in channel_id)
    return f"CHANNEL-{safe_id}.{extension}"
