"""JSON file persistence for a simulation snapshot."""

from __future__ import annotations

import json
import os
from pathlib import Path

from settleline.exceptions import SnapshotError
from settleline.models import SimulationConfig, Task, TimelineMode

DEFAULT_DB_FILE = "settleline.json"
DB_ENV_VAR = "SETTLELINE_DB"


def default_db_path() -> Path:
    return Path(os.environ.get(DB_ENV_VAR, DEFAULT_DB_FILE))


def _read_json(path: Path):
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Invalid JSON in {path}: {e}") from e


def _tasks_from_raw(raw: list) -> list[Task]:
    if not isinstance(raw, list):
        raise SnapshotError("Task list must be a JSON array")
    try:
        return [Task.from_dict(entry) for entry in raw]
    except (KeyError, ValueError, TypeError) as e:
        raise SnapshotError(f"Malformed task entry: {e}") from e


def load_template(path: str | Path) -> list[Task]:
    """Read a bare task list: a JSON array or an object with a "tasks" array."""
    raw = _read_json(Path(path))
    if isinstance(raw, dict):
        raw = raw.get("tasks", [])
    return _tasks_from_raw(raw)


class Store:
    """Reads and writes the snapshot (JSON file) holding both timelines."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path is not None else default_db_path()

    def load(self) -> tuple[SimulationConfig | None, dict[TimelineMode, list[Task]]]:
        """Return (config_or_None, {mode: [Task, ...]})."""
        timelines: dict[TimelineMode, list[Task]] = {mode: [] for mode in TimelineMode}
        if not self.db_path.exists():
            return None, timelines

        raw = _read_json(self.db_path)
        if not isinstance(raw, dict):
            raise SnapshotError(f"{self.db_path} does not hold a snapshot object")

        # Current format: {"config": {...}, "current": [...], "target": [...]}
        # Template format: {"tasks": [...]}  (loaded as the current timeline)
        config = None
        if "config" in raw:
            try:
                config = SimulationConfig.from_dict(raw["config"])
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                raise SnapshotError(f"Malformed config in {self.db_path}: {e}") from e

        if "tasks" in raw and "current" not in raw:
            timelines[TimelineMode.CURRENT] = _tasks_from_raw(raw["tasks"])
        else:
            for mode in TimelineMode:
                timelines[mode] = _tasks_from_raw(raw.get(mode.value, []))

        return config, timelines

    def save(
        self,
        config: SimulationConfig | None,
        timelines: dict[TimelineMode, list[Task]],
    ) -> None:
        """Persist config + both timelines to disk."""
        raw: dict = {}
        if config is not None:
            raw["config"] = config.to_dict()
        for mode in TimelineMode:
            raw[mode.value] = [t.to_dict() for t in timelines.get(mode, [])]
        self.db_path.write_text(json.dumps(raw, indent=4))

    def generate_id(self, tasks: list[Task]) -> str:
        """Generate the next T-N id."""
        existing = [
            int(t.id.split("-")[1])
            for t in tasks
            if t.id.startswith("T-") and t.id.split("-")[1].isdigit()
        ]
        next_num = max(existing, default=0) + 1
        return f"T-{next_num}"
