"""
Field Extractor - Broad, LLM-backed candidate extraction

Responsibilities:
- Build an extraction prompt from the fields still being collected
- Call the LLM client for a JSON list of {field, value} candidates
- Map field-name variations to canonical captured-data keys
- Drop candidates for fields nobody asked for

Design principles:
- Extraction only: candidates are NOT validated here (see FieldValidator)
- Never raises on LLM or JSON failure; returns [] and logs
- Client checked by interface, so any object with generate_json() works
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from goalflow.contracts import FieldDescriptor
from goalflow.utils.field_mappings import CORRECTION_FIELD_MAP, map_field_name

logger = logging.getLogger(__name__)

# Correction candidates the model may emit in addition to schema fields
CORRECTION_FIELDS = tuple(CORRECTION_FIELD_MAP.keys())

FIELD_HINTS = {
    'email': "email address",
    'phone': "phone number, digits as written",
    'firstName': "first name only",
    'lastName': "last name only",
    'preferredDate': "day the user wants, as they said it (e.g. 'tomorrow', 'Monday')",
    'preferredTime': "time the user wants, as they said it (e.g. '7pm', 'evening')",
    'normalizedDateTime': "ISO 8601 datetime YYYY-MM-DDTHH:MM:SS, only if both day and specific time are known",
}


class FieldExtractor:
    """Extract candidate field values from a user message via an LLM."""

    def __init__(
        self,
        hf_client,
        temperature: float = 0.0,
        max_tokens: int = 256,
        now: Optional[Callable[[], datetime]] = None
    ) -> None:
        """
        Initialize extractor.

        Args:
            hf_client: Object with callable generate_json(prompt, max_tokens, temperature)
            temperature: LLM sampling temperature
            max_tokens: Max tokens to generate
            now: Clock used for the date context (defaults to datetime.now)

        Raises:
            TypeError: If hf_client lacks generate_json()
        """
        if not hasattr(hf_client, 'generate_json') or not callable(hf_client.generate_json):
            raise TypeError("hf_client must have callable generate_json() method")

        self.hf_client = hf_client
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._now = now or datetime.now

        logger.info(
            f"Field Extractor initialized "
            f"(temp={temperature}, max_tokens={max_tokens})"
        )

    def extract_candidates(
        self,
        message: str,
        field_schema: Sequence[Union[FieldDescriptor, str]]
    ) -> List[Dict[str, Any]]:
        """
        Extract {field, value} candidates from a message.

        Args:
            message: User message
            field_schema: Fields still being collected (descriptors or names)

        Returns:
            List of {'field': str, 'value': Any}; [] on any failure
        """
        if not message or not message.strip():
            return []

        descriptors = [
            f if isinstance(f, FieldDescriptor) else FieldDescriptor(name=str(f))
            for f in field_schema
        ]
        allowed = {d.name for d in descriptors} | set(CORRECTION_FIELDS)

        prompt = self._build_prompt(message, descriptors)

        try:
            llm_output = self.hf_client.generate_json(
                prompt=prompt,
                max_tokens=self.max_tokens,
                temperature=self.temperature
            )
        except Exception as e:
            logger.error(f"LLM extraction failed: {type(e).__name__} - {e}")
            return []

        try:
            parsed = json.loads(llm_output)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Invalid extraction JSON: {e}")
            return []

        candidates = []
        for raw_field, value in self._iter_pairs(parsed):
            field_name = map_field_name(raw_field)
            if field_name not in allowed:
                logger.debug(f"Ignoring unrequested field '{raw_field}'")
                continue
            if value is None:
                continue
            candidates.append({'field': field_name, 'value': value})

        if candidates:
            logger.info(f"Extracted candidates: {[c['field'] for c in candidates]}")
        return candidates

    def _iter_pairs(self, parsed):
        """Yield (field, value) from either {'extractedData': [...]} or a flat dict."""
        if isinstance(parsed, dict) and isinstance(parsed.get('extractedData'), list):
            items = parsed['extractedData']
        elif isinstance(parsed, list):
            items = parsed
        elif isinstance(parsed, dict):
            for key, value in parsed.items():
                if key == 'extractedData' or key.startswith('_'):
                    continue
                yield key, value
            return
        else:
            logger.warning(f"Unexpected extraction shape: {type(parsed).__name__}")
            return

        for item in items:
            if isinstance(item, dict) and isinstance(item.get('field'), str):
                yield item['field'], item.get('value')

    def _build_prompt(self, message: str, descriptors: List[FieldDescriptor]) -> str:
        now = self._now()
        today = now.strftime("%Y-%m-%d")
        weekday = now.strftime("%A")

        field_lines = []
        for d in descriptors:
            hint = d.description or FIELD_HINTS.get(d.name) or (d.field_type or "text")
            field_lines.append(f"  - {d.name}: {hint}")

        prompt = f"""You extract contact and scheduling details from a customer's chat message.

Today is {weekday}, {today}.

Fields to look for:
{chr(10).join(field_lines)}

Correction signals:
  - wrong_email: the user says a previously given email was wrong (value: what they said)
  - wrong_phone: the user says a previously given phone number was wrong, or they never got a text (value: what they said)

Message: "{message}"

Return ONLY valid JSON in this format:
{{"extractedData": [{{"field": "<field name>", "value": "<value>"}}]}}

Rules:
- Only extract values the user actually stated in this message
- Use the exact field names listed above
- A confirmation such as "yes that's right" is NOT a correction
- If nothing is present, return: {{"extractedData": []}}
"""
        return prompt
