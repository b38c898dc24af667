"""
PersistenceStrategy interface for pluggable state storage.

The core never talks to storage directly: ExpertSystem.load_state() and
save_state() hand a SystemState (experts, knowledge records with history,
activity log) to one of these backends. Persistence is optional; a system
with no backend runs entirely in memory.

Included implementations:
1. InMemoryPersistence - keeps the last saved state in memory (tests, demos)
2. JsonPersistence - one pretty-printed ``state.json`` in a directory

Usage pattern:
    persistence = JsonPersistence(Config.STATE_DIR)
    await persistence.initialize()
    state = await persistence.load_state()   # None on first run
    ...
    await persistence.save_state(new_state)
    await persistence.close()
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .config import Config
from .schemas import SystemState

STATE_FILENAME = "state.json"


class PersistenceStrategy(ABC):
    """Abstract base class for expert system state storage.

    All methods are async so file and database backends can do I/O without
    blocking the event loop that runs the scheduler.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (create directories, open connections)."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def save_state(self, state: SystemState) -> None:
        """Persist a full state snapshot, replacing the previous one."""

    @abstractmethod
    async def load_state(self) -> Optional[SystemState]:
        """Return the last saved state, or None if nothing was saved yet."""

    @abstractmethod
    async def clear(self) -> None:
        """Forget any saved state."""


class InMemoryPersistence(PersistenceStrategy):
    """Keeps a deep copy of the last saved state. Data is lost on exit."""

    def __init__(self) -> None:
        self._state: Optional[SystemState] = None

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def save_state(self, state: SystemState) -> None:
        self._state = state.model_copy(deep=True)

    async def load_state(self) -> Optional[SystemState]:
        return self._state.model_copy(deep=True) if self._state else None

    async def clear(self) -> None:
        self._state = None


class JsonPersistence(PersistenceStrategy):
    """File-based persistence using one human-readable JSON document.

    Layout::

        {base_path}/
          state.json      # SystemState, indent=2

    Writes go to a temporary sibling first and are then renamed over the old
    file, so a crash mid-write leaves the previous state intact. All file
    I/O runs in a worker thread (asyncio.to_thread).
    """

    def __init__(self, base_path: Path | str | None = None):
        self.base_path = Path(base_path) if base_path else Path(Config.STATE_DIR)

    @property
    def path(self) -> Path:
        return self.base_path / STATE_FILENAME

    async def initialize(self) -> None:
        await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        # Nothing to clean up for JSON persistence
        return None

    async def save_state(self, state: SystemState) -> None:
        payload = json.dumps(state.model_dump(mode="json"), indent=2)

        def _write() -> None:
            self.base_path.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".json.tmp")
            tmp.write_text(payload, "utf-8")
            tmp.replace(self.path)

        await asyncio.to_thread(_write)

    async def load_state(self) -> Optional[SystemState]:
        if not self.path.exists():
            return None
        raw = await asyncio.to_thread(self.path.read_text, "utf-8")
        return SystemState.model_validate(json.loads(raw))

    async def clear(self) -> None:
        await asyncio.to_thread(self.path.unlink, missing_ok=True)
