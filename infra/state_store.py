"""
cycletrader Infrastructure: State Store

Persists the CycleState handed from one cycle to the next: open
positions with their exit bookkeeping, circuit breaker state, a bounded
trade history, the cycle counter and the last known account value.

Writes are atomic (temp file + os.replace). A missing or unreadable file
yields a fresh CycleState; an unreadable one is kept aside for inspection.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from core.models import CycleState

logger = logging.getLogger(__name__)


class StateStore:
    """
    Persistent CycleState storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Corrupt files preserved as <name>.corrupt
    - Thread-safe save/load
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/.state.json)
        """
        self.state_file = Path(state_file or os.getenv("STATE_FILE", "data/.state.json"))
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> CycleState:
        """
        Load state from file.

        Returns:
            Persisted CycleState, or a fresh one when absent/unreadable
        """
        with self._lock:
            if not self.state_file.exists():
                logger.debug("No state file found, starting fresh")
                return CycleState()

            try:
                with open(self.state_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"expected a JSON object, got {type(data).__name__}")
                state = CycleState.from_dict(data)
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.error(f"Failed to load state from {self.state_file}: {e}; starting fresh")
                self._quarantine()
                return CycleState()

            logger.debug(
                f"Loaded state: {len(state.positions)} positions, cycle #{state.cycle_count}, "
                f"breaker={state.circuit_breaker.status.value}"
            )
            return state

    def _quarantine(self) -> None:
        corrupt = self.state_file.with_suffix(self.state_file.suffix + ".corrupt")
        try:
            os.replace(self.state_file, corrupt)
            logger.warning(f"Unreadable state file moved to {corrupt}")
        except OSError as e:
            logger.warning(f"Could not move unreadable state file aside: {e}")

    def save(self, state: CycleState) -> None:
        """
        Save state to file atomically.

        Args:
            state: CycleState to persist
        """
        payload = state.to_dict()
        with self._lock:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(temp_path, self.state_file)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save state: {e}")
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                return
        logger.debug(f"Saved state ({len(state.positions)} positions)")

    def reset(self) -> CycleState:
        """Discard persisted state and return a fresh CycleState."""
        fresh = CycleState()
        self.save(fresh)
        logger.warning("State reset to defaults")
        return fresh
