"""
Response Chunker - Split replies into paced delivery units

Chunking config shape (per persona):
    {
        "enabled": true,
        "rules": {
            "sms":  {"chunkBy": "sentence",  "maxLength": 160, "delayBetweenChunks": 1000},
            "chat": {"chunkBy": "paragraph", "maxLength": 500, "delayBetweenChunks": 800},
            "email": {"chunkBy": "none", "maxLength": -1, "delayBetweenChunks": 0}
        }
    }

Delivery checks the interruption tracker before every chunk after the
first, so a superseded response stops mid-way.
"""

import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from goalflow.contracts import ResponseChunk

logger = logging.getLogger(__name__)

SENTENCE_SPLIT = re.compile(r'(?<=[.!?])\s+')
PARAGRAPH_SPLIT = re.compile(r'\n\s*\n')
WORD_SPLIT = re.compile(r'\s+')

CHUNK_MODES = ('sentence', 'paragraph', 'none')

MIN_TYPING_DELAY_MS = 500
MAX_TYPING_DELAY_MS = 3000


class ResponseChunker:
    """Channel-aware response splitting."""

    def chunk_response(
        self,
        text: str,
        channel: str,
        chunking_config: Optional[Dict[str, Any]] = None,
        response_to_message_id: Optional[str] = None
    ) -> List[ResponseChunk]:
        """
        Split a reply according to the channel's rule.

        Disabled config, no rule for the channel, chunkBy 'none' or
        maxLength -1 all produce a single chunk.

        Args:
            text: Reply text
            channel: Channel name (e.g. 'sms', 'chat')
            chunking_config: {enabled, rules: {channel: {chunkBy, maxLength, delayBetweenChunks}}}
            response_to_message_id: Response id for interruption tracking

        Returns:
            List of ResponseChunk (delay_ms 0 on the first)
        """
        rule = None
        if chunking_config and chunking_config.get('enabled'):
            rule = (chunking_config.get('rules') or {}).get(channel)

        if not rule or rule.get('chunkBy', 'none') == 'none' or rule.get('maxLength', -1) in (-1, None):
            return [ResponseChunk(text=text, index=0, total=1, delay_ms=0,
                                  response_to_message_id=response_to_message_id)]

        max_length = int(rule['maxLength'])
        if rule['chunkBy'] == 'sentence':
            pieces = chunk_by_sentence(text, max_length)
        elif rule['chunkBy'] == 'paragraph':
            pieces = chunk_by_paragraph(text, max_length)
        else:
            logger.warning(f"Unknown chunkBy '{rule['chunkBy']}' for channel {channel}, not chunking")
            pieces = [text]

        pieces = [p.strip() for p in pieces if p.strip()] or [text.strip()]
        delay = int(rule.get('delayBetweenChunks', 0))
        total = len(pieces)

        logger.debug(f"Chunked response for {channel} into {total} chunks")
        return [
            ResponseChunk(
                text=piece,
                index=i,
                total=total,
                delay_ms=0 if i == 0 else delay,
                response_to_message_id=response_to_message_id,
            )
            for i, piece in enumerate(pieces)
        ]


def chunk_by_sentence(text: str, max_length: int) -> List[str]:
    """Greedily pack sentences up to max_length; overlong sentences split by words."""
    chunks = []
    current = ''
    for sentence in SENTENCE_SPLIT.split(text):
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_length:
            current = candidate
            continue

        if current:
            chunks.append(current)
            current = ''
        if len(sentence) <= max_length:
            current = sentence
        else:
            chunks.extend(chunk_by_words(sentence, max_length))

    if current:
        chunks.append(current)
    return [c for c in chunks if c.strip()]


def chunk_by_paragraph(text: str, max_length: int) -> List[str]:
    """One chunk per paragraph; overlong paragraphs split by sentence."""
    chunks = []
    for paragraph in PARAGRAPH_SPLIT.split(text):
        if len(paragraph) <= max_length:
            chunks.append(paragraph)
        else:
            chunks.extend(chunk_by_sentence(paragraph, max_length))
    return [c for c in chunks if c.strip()]


def chunk_by_words(text: str, max_length: int) -> List[str]:
    """Pack words up to max_length; a single overlong word is its own chunk."""
    chunks = []
    current = ''
    for word in WORD_SPLIT.split(text):
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_length:
            current = candidate
        elif current:
            chunks.append(current)
            current = word
        else:
            chunks.append(word)
    if current:
        chunks.append(current)
    return chunks


def typing_delay_ms(text: str, words_per_minute: int = 200) -> int:
    """Simulated typing time, clamped to 0.5-3 seconds."""
    words = len(WORD_SPLIT.split(text.strip())) if text.strip() else 0
    delay = words / words_per_minute * 60 * 1000
    return int(min(max(delay, MIN_TYPING_DELAY_MS), MAX_TYPING_DELAY_MS))


def deliver_chunks(
    chunks: List[ResponseChunk],
    send: Callable[[ResponseChunk], None],
    tracker=None,
    channel_id: Optional[str] = None,
    response_id: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep
) -> int:
    """
    Send chunks in order, waiting delay_ms between them.

    Before each chunk after the first, the tracker is asked whether the
    response is still current; delivery stops when it is not.

    Returns:
        Number of chunks sent
    """
    sent = 0
    for chunk in chunks:
        if chunk.index > 0:
            if tracker is not None and not tracker.is_response_valid(channel_id, response_id):
                logger.info(
                    f"[{channel_id}] Response {response_id} superseded, "
                    f"stopping after {sent}/{len(chunks)} chunks"
                )
                break
            if chunk.delay_ms > 0:
                sleep(chunk.delay_ms / 1000.0)
        send(chunk)
        sent += 1
    return sent


def load_chunking_config(config_path: str) -> Dict[str, Any]:
    """
    Load and validate a chunking config JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a rule is malformed
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Chunking config not found: {config_path}")

    with open(path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, dict) or not isinstance(data.get('rules', {}), dict):
        raise ValueError("Chunking config must be an object with a 'rules' object")

    for channel, rule in data.get('rules', {}).items():
        mode = rule.get('chunkBy')
        if mode not in CHUNK_MODES:
            raise ValueError(f"Channel '{channel}': chunkBy must be one of {CHUNK_MODES}, got {mode!r}")
        if not isinstance(rule.get('maxLength'), int):
            raise ValueError(f"Channel '{channel}': maxLength must be an integer")

    logger.info(f"Loaded chunking rules for {len(data.get('rules', {}))} channels")
    return data
