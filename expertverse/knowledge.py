"""
Versioned knowledge store for expert mental models.

Each expert owns exactly one current KnowledgeArtifact plus an append-only
history of superseded artifacts. Every mutation snapshots the current
artifact into history first and then bumps the version, so the full lineage
(including reverts) can always be reconstructed.

Key responsibilities:
- Register initial knowledge (version 1, or restored state on load)
- Apply updates with a history snapshot tagged with the reason
- Revert to a historical version as a forward-moving update
- Produce line diffs between versions for display

Usage pattern:
    store = KnowledgeStore()
    store.register("db", "schema: {}")
    store.update("db", "schema: {users: {}}", reason="Pre-training backup")
    store.revert("db", 1)   # -> version 3, content of v1
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Literal, Optional

from .errors import InvalidTarget, VersionNotFound
from .schemas import HistoryEntry, KnowledgeArtifact, KnowledgeRecord, utcnow


# History reasons used by the scheduler when applying handler results.
REASON_IMPROVE = "Pre-improvement backup"
REASON_TRAIN = "Pre-training backup"
REASON_RESEARCH = "Pre-research backup"


def revert_reason(version: int) -> str:
    return f"Reverted to v{version}"


class KnowledgeStore:
    """In-memory owner of every expert's knowledge record.

    Records are never exposed directly; accessors hand out deep copies so
    observers cannot mutate history behind the store's back.
    """

    def __init__(self) -> None:
        self._records: Dict[str, KnowledgeRecord] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        agent_id: str,
        content: str,
        *,
        version: int = 1,
        history: Iterable[HistoryEntry] = (),
        reason: str = "Initial knowledge",
        timestamp: Optional[datetime] = None,
    ) -> KnowledgeArtifact:
        """Create (or replace) the knowledge record for ``agent_id``.

        ``version`` and ``history`` allow seeding experts that already have a
        lineage (e.g. restored from persistence or a roster file).

        Raises:
            ValueError: If the history contains the current version or a
                version newer than it.
        """

        entries = [HistoryEntry.model_validate(entry.model_dump()) for entry in history]
        for entry in entries:
            if entry.version >= version:
                raise ValueError(
                    f"History for {agent_id} contains v{entry.version}, "
                    f"which is not older than current v{version}"
                )

        artifact = KnowledgeArtifact(
            version=version,
            content=content,
            reason=reason,
            timestamp=timestamp or utcnow(),
        )
        self._records[agent_id] = KnowledgeRecord(current=artifact, history=entries)
        return artifact.model_copy()

    def forget(self, agent_id: str) -> None:
        self._records.pop(agent_id, None)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._records

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current(self, agent_id: str) -> KnowledgeArtifact:
        return self._record(agent_id).current.model_copy()

    def history(self, agent_id: str) -> List[HistoryEntry]:
        """Return superseded artifacts, oldest first."""
        return [entry.model_copy() for entry in self._record(agent_id).history]

    def get_version(self, agent_id: str, version: int) -> KnowledgeArtifact:
        """Return the artifact for ``version``, current or historical."""

        record = self._record(agent_id)
        if record.current.version == version:
            return record.current.model_copy()
        entry = self._find_in_history(record, version)
        if entry is None:
            raise VersionNotFound(agent_id, version)
        return KnowledgeArtifact.model_validate(entry.model_dump())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update(self, agent_id: str, new_content: str, reason: str) -> int:
        """Replace the current artifact, snapshotting the old one first.

        Args:
            agent_id: Expert whose knowledge changes
            new_content: Full replacement content
            reason: Tag recorded on the snapshot of the superseded version

        Returns:
            The new version number (always previous + 1)
        """

        record = self._record(agent_id)
        previous = record.current
        snapshot = HistoryEntry(
            version=previous.version,
            content=previous.content,
            timestamp=previous.timestamp,
            reason=reason,
        )
        new_version = previous.version + 1
        # Build the replacement record before publishing it so a validation
        # failure leaves the old record untouched.
        self._records[agent_id] = KnowledgeRecord(
            current=KnowledgeArtifact(
                version=new_version,
                content=new_content,
                timestamp=utcnow(),
                reason=reason,
            ),
            history=[*record.history, snapshot],
        )
        return new_version

    def revert(self, agent_id: str, target_version: int) -> int:
        """Restore the content of ``target_version`` as a new version.

        Raises:
            VersionNotFound: If ``target_version`` is not in history. The
                current version is rejected too: reverting to it is a no-op.
        """

        record = self._record(agent_id)
        entry = self._find_in_history(record, target_version)
        if entry is None:
            raise VersionNotFound(agent_id, target_version, current=record.current.version)
        return self.update(agent_id, entry.content, revert_reason(target_version))

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def export(self) -> Dict[str, KnowledgeRecord]:
        return {agent_id: record.model_copy(deep=True) for agent_id, record in self._records.items()}

    def load(self, records: Dict[str, KnowledgeRecord]) -> None:
        """Replace all records (used when restoring saved state).

        Every record is checked before any is installed, so a bad record
        leaves the store unchanged.

        Raises:
            ValueError: If a record's history is not older than its current
                version.
        """

        staged = KnowledgeStore()
        for agent_id, record in records.items():
            staged.register(
                agent_id,
                record.current.content,
                version=record.current.version,
                history=record.history,
                reason=record.current.reason,
                timestamp=record.current.timestamp,
            )
        self._records = staged._records

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, agent_id: str) -> KnowledgeRecord:
        try:
            return self._records[agent_id]
        except KeyError:
            raise InvalidTarget(agent_id, self._records.keys()) from None

    @staticmethod
    def _find_in_history(record: KnowledgeRecord, version: int) -> Optional[HistoryEntry]:
        for entry in record.history:
            if entry.version == version:
                return entry
        return None


# ============================================================================
# Line diff
# ============================================================================

DiffKind = Literal["same", "added", "removed"]


@dataclass(frozen=True, slots=True)
class DiffLine:
    kind: DiffKind
    content: str


def compute_diff(old_text: str, new_text: str) -> List[DiffLine]:
    """Greedy two-cursor line diff.

    While lines match, emit ``same`` and advance both cursors. Otherwise emit
    ``added`` when the new line does not match the old side's *next* line,
    else emit ``removed`` and advance only the old cursor. Linear time and
    not minimal: an edited line can show up as an added/removed pair
    depending on the surrounding context.
    """

    old_lines = old_text.split("\n") if old_text else []
    new_lines = new_text.split("\n") if new_text else []

    diff: List[DiffLine] = []
    i = 0
    j = 0
    while i < len(old_lines) or j < len(new_lines):
        if i < len(old_lines) and j < len(new_lines) and old_lines[i] == new_lines[j]:
            diff.append(DiffLine("same", old_lines[i]))
            i += 1
            j += 1
            continue

        old_next = old_lines[i + 1] if i + 1 < len(old_lines) else None
        if j < len(new_lines) and (i >= len(old_lines) or new_lines[j] != old_next):
            diff.append(DiffLine("added", new_lines[j]))
            j += 1
        else:
            diff.append(DiffLine("removed", old_lines[i]))
            i += 1
    return diff


def format_diff(lines: List[DiffLine]) -> str:
    """Render a diff with ``+``/``-``/space prefixes."""

    prefixes = {"same": " ", "added": "+", "removed": "-"}
    return "\n".join(f"{prefixes[line.kind]} {line.content}" for line in lines)
