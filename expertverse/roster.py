"""
Roster loading for JSON-defined expert teams.

A roster lists the experts a system starts with, each with its initial
knowledge (YAML by convention, opaque to the core). Rosters are data, not
code, so teams can be swapped without touching Python.

Roster file structure:
```json
{
  "name": "Platform team",
  "experts": [
    {
      "id": "ops",
      "name": "DevOps Expert",
      "type": "DevOps",
      "description": "...",
      "status": "idle",
      "learnings": 0,
      "version": 1,
      "expertise": "pipelines:\\n  ci: github-actions"
    }
  ]
}
```

Usage:
    loader = RosterLoader()
    entries = loader.load("platform_team")
    for entry in entries:
        registry.register(entry.expert, entry.expertise)
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from .config import Config
from .schemas import Expert, ExpertStatus, ExpertType


class RosterEntry(BaseModel):
    """One expert plus the knowledge it starts with."""

    expert: Expert
    expertise: str


class RosterLoader:
    """Load and validate expert rosters from JSON files.

    Directory structure:
    - Default: {PROJECT_ROOT}/examples/rosters/
    - Override via constructor: RosterLoader(Path("/custom/rosters"))
    - Roster files: {roster_name}.json
    """

    def __init__(self, rosters_dir: Optional[Path] = None):
        self.rosters_dir = Path(rosters_dir) if rosters_dir else Config.ROSTERS_DIR

    def list_rosters(self) -> List[str]:
        if not self.rosters_dir.exists():
            return []
        return sorted(path.stem for path in self.rosters_dir.glob("*.json"))

    def load(self, roster_name: str) -> List[RosterEntry]:
        """Load a roster by file name (without extension).

        Raises:
            FileNotFoundError: If the roster file doesn't exist
            ValueError: If the roster is malformed (missing fields, bad
                types, duplicate ids)
        """

        path = self.rosters_dir / f"{roster_name}.json"
        if not path.exists():
            available = ", ".join(self.list_rosters()) or "none"
            raise FileNotFoundError(
                f"Roster '{roster_name}' not found at {path}. Available rosters: {available}"
            )
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        return self.parse(data, source=str(path))

    def parse(self, data: Dict[str, Any], *, source: str = "<roster>") -> List[RosterEntry]:
        experts = data.get("experts")
        if not isinstance(experts, list) or not experts:
            raise ValueError(f"{source}: roster must contain a non-empty 'experts' list")

        entries: List[RosterEntry] = []
        seen: set[str] = set()
        for index, raw in enumerate(experts):
            if not isinstance(raw, dict):
                raise ValueError(f"{source}: experts[{index}] must be an object")
            raw = dict(raw)
            expertise = raw.pop("expertise", None)
            if not isinstance(expertise, str):
                raise ValueError(f"{source}: experts[{index}] is missing 'expertise' text")
            try:
                expert = Expert.model_validate(raw)
            except ValidationError as exc:
                raise ValueError(f"{source}: experts[{index}] is invalid:\n{exc}") from exc
            if expert.id in seen:
                raise ValueError(f"{source}: duplicate expert id '{expert.id}'")
            seen.add(expert.id)
            entries.append(RosterEntry(expert=expert, expertise=expertise))
        return entries


def _seed(expert_id: str, name: str, kind: ExpertType, description: str, status: ExpertStatus,
          learnings: int, version: int, expertise: str) -> RosterEntry:
    return RosterEntry(
        expert=Expert(
            id=expert_id,
            name=name,
            type=kind,
            description=description,
            status=status,
            learnings=learnings,
            version=version,
        ),
        expertise=expertise,
    )


def default_roster() -> List[RosterEntry]:
    """The five seed experts a fresh system starts with."""

    return [
        _seed(
            "1",
            "Database Expert",
            ExpertType.DATABASE,
            "Knows your database schema, relationships, and query patterns. "
            "Maintains a mental model of data flow.",
            ExpertStatus.ACTIVE,
            3,
            1,
            """schema:
  users:
    id: uuid
    email: string
    created_at: timestamp
  posts:
    id: uuid
    user_id: uuid (fk)
    content: text
relationships:
  - users.id -> posts.user_id
patterns:
  - High read volume on posts
  - Frequent user updates""",
        ),
        _seed(
            "2",
            "API Expert",
            ExpertType.API,
            "Understands your API endpoints, request/response patterns, and integration points.",
            ExpertStatus.ACTIVE,
            5,
            2,
            """endpoints:
  GET /api/v1/users:
    auth: required
    rate_limit: 100/min
  POST /api/v1/data:
    validation: strict schema
auth_flow:
  type: Bearer JWT
  expiration: 1h""",
        ),
        _seed(
            "5",
            "Backend Expert",
            ExpertType.BACKEND,
            "Manages server-side logic, background jobs, and microservices architecture.",
            ExpertStatus.ACTIVE,
            1,
            1,
            """services:
  auth_service:
    port: 3001
    db: redis
    replicas: 2
  payment_service:
    provider: stripe
    webhook: /webhooks/stripe
workers:
  - email_processor
  - data_aggregator
infrastructure:
  cloud: aws
  region: us-east-1
  orchestrator: kubernetes
  registry: ecr""",
        ),
        _seed(
            "3",
            "WebSocket Expert",
            ExpertType.WEBSOCKET,
            "Tracks all WebSocket events, communication patterns, and real-time data flows "
            "in your application.",
            ExpertStatus.IDLE,
            2,
            1,
            """events:
  user.connect:
    payload: { userId, timestamp }
  chat.message:
    payload: { roomId, text }
channels:
  - global
  - room:{id}""",
        ),
        _seed(
            "4",
            "Frontend Expert",
            ExpertType.FRONTEND,
            "Maintains knowledge of component structure, state management, and UI patterns.",
            ExpertStatus.IDLE,
            8,
            4,
            """components:
  Button:
    variants: [primary, secondary, ghost]
  Modal:
    state: isOpen (boolean)
state_management:
  tool: Redux Toolkit
  stores: [auth, ui, data]""",
        ),
    ]


def load_roster(roster_name: str, rosters_dir: Optional[Path] = None) -> List[RosterEntry]:
    """Convenience wrapper around RosterLoader.load()."""
    return RosterLoader(rosters_dir).load(roster_name)
