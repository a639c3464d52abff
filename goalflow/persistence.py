"""
Key-value persistence for channel workflow state.

Backends implement a two-method contract:
    get(key) -> dict or None
    put(key, value) -> None

No transactions are assumed. The store layered on top
(core.goal_state_store.GoalStateStore) owns merge semantics.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from goalflow.utils.helpers import generate_state_filename

logger = logging.getLogger(__name__)


class InMemoryStateBackend:
    """
    Process-local dict backend.

    Each instance owns its own map, so separate orchestrators never
    share state unless they share the backend object. Values are
    deep-copied on the way in and out.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: Dict[str, Any]) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data.keys())


class JsonFileStateBackend:
    """
    One JSON file per key.

    Layout:
        outputs/channel_state/
            CHANNEL-tenant1_web_abc.json
            CHANNEL-tenant1_sms_def.json
            ...

    Design:
    - Full overwrite per put (last-writer-wins)
    - Written via temp file + rename so readers never see half a file
    - Read errors propagate; the store decides how to degrade
    """

    def __init__(self, base_dir: str = "outputs/channel_state"):
        """
        Initialize persistence layer.

        Args:
            base_dir: Directory holding one state file per channel
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonFileStateBackend initialized: {self.base_dir}")

    def _path_for(self, key: str) -> Path:
        return self.base_dir / generate_state_filename(key)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Read state for key.

        Returns:
            dict if a file exists, None otherwise

        Raises:
            ValueError: If the file does not contain a JSON object
            OSError / json.JSONDecodeError: On unreadable files
        """
        filepath = self._path_for(key)
        if not filepath.exists():
            return None

        with open(filepath, 'r') as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError(
                f"State file {filepath.name} must contain a JSON object, "
                f"got {type(data).__name__}"
            )
        return data

    def put(self, key: str, value: Dict[str, Any]) -> None:
        """
        Write state for key (full overwrite).

        Raises:
            OSError / TypeError: If the file cannot be written or value
                is not JSON-serializable
        """
        filepath = self._path_for(key)
        tmp_path = filepath.with_suffix('.json.tmp')

        with open(tmp_path, 'w') as f:
            json.dump(value, f, indent=2, ensure_ascii=False)
        tmp_path.replace(filepath)

        logger.debug(f"Saved state for {key}: {filepath.name}")

    def delete(self, key: str) -> None:
        filepath = self._path_for(key)
        if filepath.exists():
            filepath.unlink()

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()
