import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .logging_utils import log_event
from .loop.models import LoopSnapshot
from .utils import atomic_write, read_json


class StateStore:
    """Persists the latest `LoopSnapshot` as JSON next to the config."""

    def __init__(self, path: Path, *, logger: Optional[logging.Logger] = None):
        self.path = path
        self._logger = logger or logging.getLogger(__name__)

    def save(self, snapshot: LoopSnapshot) -> None:
        payload = snapshot.model_dump(mode="json")
        atomic_write(self.path, json.dumps(payload, indent=2) + "\n")

    def load(self) -> Optional[LoopSnapshot]:
        data = read_json(self.path)
        if not data:
            return None
        try:
            return LoopSnapshot.model_validate(data)
        except ValidationError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "state.invalid_snapshot",
                path=str(self.path),
                exc=exc,
            )
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
