"""SQLite-backed persistence for trays, recipes, harvests, plans and scheduled tasks."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from trayflow.contract.models import (
    CropPlan,
    HarvestRecord,
    Recipe,
    ScheduledTask,
    TaskConditions,
    Tray,
    ensure_utc,
)
from trayflow.core.errors import TrayNotFoundError, TrayNumberConflictError
from trayflow.stages.registry import HARVESTED, Stage, StageRegistry, default_stage_registry

__all__ = ["TrayStore", "open_store"]

MEMORY = ":memory:"

_SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS stages (
    code TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    sort_order INTEGER NOT NULL UNIQUE,
    timestamp_field TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS recipes (
    id TEXT PRIMARY KEY,
    payload_json TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS trays (
    id TEXT PRIMARY KEY,
    recipe_id TEXT,
    batch_id TEXT,
    tray_number TEXT NOT NULL,
    current_stage TEXT NOT NULL,
    holds_number INTEGER NOT NULL DEFAULT 0,
    soaking_at TEXT,
    planting_at TEXT,
    germination_at TEXT,
    blackout_at TEXT,
    light_at TEXT,
    harvested_at TEXT,
    watering_suspended_at TEXT,
    notes TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_trays_active_number
    ON trays (tray_number) WHERE holds_number = 1;
CREATE INDEX IF NOT EXISTS ix_trays_batch ON trays (batch_id);
CREATE INDEX IF NOT EXISTS ix_trays_implicit ON trays (recipe_id, current_stage);
CREATE TABLE IF NOT EXISTS harvests (
    id TEXT PRIMARY KEY,
    recipe_id TEXT NOT NULL,
    harvested_at TEXT NOT NULL,
    grams_per_tray REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_harvests_recipe ON harvests (recipe_id, harvested_at);
CREATE TABLE IF NOT EXISTS harvest_trays (
    harvest_id TEXT NOT NULL,
    tray_id TEXT NOT NULL,
    PRIMARY KEY (harvest_id, tray_id),
    FOREIGN KEY (harvest_id) REFERENCES harvests(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS crop_plans (
    id TEXT PRIMARY KEY,
    recipe_id TEXT,
    grams_needed REAL NOT NULL,
    grams_per_tray REAL NOT NULL,
    trays_needed INTEGER NOT NULL,
    details_json TEXT
);
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    resource_type TEXT NOT NULL,
    task_name TEXT NOT NULL,
    name TEXT,
    batch_key TEXT NOT NULL,
    conditions_json TEXT NOT NULL,
    next_run_at TEXT NOT NULL,
    last_run_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_tasks_one_active
    ON scheduled_tasks (batch_key, task_name) WHERE is_active = 1;
"""

_TRAY_TIMESTAMPS = (
    "soaking_at",
    "planting_at",
    "germination_at",
    "blackout_at",
    "light_at",
    "harvested_at",
    "watering_suspended_at",
)


def _dt_text(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def _dt_parse(value: str | None) -> datetime | None:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def _json_dumps(payload: Any) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


class TrayStore:
    """Transactional store over a single SQLite connection.

    Parameters
    ----------
    path:
        Database file, or ``":memory:"`` for an ephemeral store (tests, dry runs).

    Notes
    -----
    Two partial unique indexes enforce the concurrency invariants at the storage layer: a real
    tray number can be held by at most one non-harvested tray, and a batch can have at most one
    active scheduled task per task name.
    """

    def __init__(self, path: str | Path = MEMORY) -> None:
        self.path = str(path)
        if self.path != MEMORY:
            parent = Path(self.path).parent
            if not parent.exists():
                parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._depth = 0

    def __enter__(self) -> "TrayStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator["TrayStore"]:
        """Run the enclosed block atomically.

        The outermost call takes the write lock up front (``BEGIN IMMEDIATE``); nested calls
        become savepoints, so a failing inner block rolls back only its own writes.
        """

        savepoint = f"sp_{self._depth}"
        if self._depth == 0:
            self._conn.execute("BEGIN IMMEDIATE")
        else:
            self._conn.execute(f"SAVEPOINT {savepoint}")
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._conn.execute("ROLLBACK")
            else:
                self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        self._depth -= 1
        if self._depth == 0:
            self._conn.execute("COMMIT")
        else:
            self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # -- stages -----------------------------------------------------------------------------

    def save_stages(self, registry: StageRegistry) -> None:
        with self.transaction():
            self._conn.execute("DELETE FROM stages")
            self._conn.executemany(
                "INSERT INTO stages (code, name, sort_order, timestamp_field) VALUES (?, ?, ?, ?)",
                [(s.code, s.name, s.sort_order, s.timestamp_field) for s in registry],
            )

    def has_stages(self) -> bool:
        return bool(self._conn.execute("SELECT COUNT(*) FROM stages").fetchone()[0])

    def load_registry(self) -> StageRegistry:
        """Return the stored stage table, or the default progression when none is stored."""

        rows = self._conn.execute(
            "SELECT code, name, sort_order, timestamp_field FROM stages ORDER BY sort_order"
        ).fetchall()
        if not rows:
            return default_stage_registry()
        return StageRegistry(
            Stage(row["code"], row["name"], row["sort_order"], row["timestamp_field"])
            for row in rows
        )

    # -- recipes ----------------------------------------------------------------------------

    def save_recipe(self, recipe: Recipe) -> None:
        with self.transaction():
            self._conn.execute(
                "INSERT INTO recipes (id, payload_json) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET payload_json = excluded.payload_json",
                (recipe.id, recipe.model_dump_json()),
            )

    def get_recipe(self, recipe_id: str | None) -> Recipe | None:
        if recipe_id is None:
            return None
        row = self._conn.execute(
            "SELECT payload_json FROM recipes WHERE id = ?", (recipe_id,)
        ).fetchone()
        if row is None:
            return None
        return Recipe.model_validate_json(row["payload_json"])

    def list_recipes(self) -> list[Recipe]:
        rows = self._conn.execute("SELECT payload_json FROM recipes ORDER BY id").fetchall()
        return [Recipe.model_validate_json(row["payload_json"]) for row in rows]

    # -- trays ------------------------------------------------------------------------------

    def save_tray(self, tray: Tray) -> Tray:
        """Insert or update ``tray``.

        Raises
        ------
        TrayNumberConflictError
            When the tray's real number is already held by another non-harvested tray.
        """

        holds_number = int(tray.current_stage != HARVESTED and not tray.has_placeholder_number)
        values = (
            tray.id,
            tray.recipe_id,
            tray.batch_id,
            tray.tray_number,
            tray.current_stage,
            holds_number,
            *(_dt_text(getattr(tray, field)) for field in _TRAY_TIMESTAMPS),
            tray.notes,
        )
        updates = ", ".join(
            f"{column} = excluded.{column}"
            for column in (
                "recipe_id",
                "batch_id",
                "tray_number",
                "current_stage",
                "holds_number",
                *_TRAY_TIMESTAMPS,
                "notes",
            )
        )
        try:
            with self.transaction():
                self._conn.execute(
                    f"""
                    INSERT INTO trays (
                        id, recipe_id, batch_id, tray_number, current_stage, holds_number,
                        {", ".join(_TRAY_TIMESTAMPS)}, notes
                    )
                    VALUES ({", ".join("?" for _ in values)})
                    ON CONFLICT(id) DO UPDATE SET {updates}
                    """,
                    values,
                )
        except sqlite3.IntegrityError as exc:
            if "tray_number" in str(exc) or "ux_trays_active_number" in str(exc):
                raise TrayNumberConflictError([tray.tray_number]) from exc
            raise
        return tray

    def find_tray(self, tray_id: str) -> Tray | None:
        row = self._conn.execute("SELECT * FROM trays WHERE id = ?", (tray_id,)).fetchone()
        return self._tray_from_row(row) if row is not None else None

    def get_tray(self, tray_id: str) -> Tray:
        tray = self.find_tray(tray_id)
        if tray is None:
            raise TrayNotFoundError(tray_id)
        return tray

    def list_trays(self, stage: str | None = None) -> list[Tray]:
        if stage is None:
            rows = self._conn.execute("SELECT * FROM trays ORDER BY id").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM trays WHERE current_stage = ? ORDER BY id", (stage,)
            ).fetchall()
        return [self._tray_from_row(row) for row in rows]

    def trays_in_batch(self, batch_id: str) -> list[Tray]:
        rows = self._conn.execute(
            "SELECT * FROM trays WHERE batch_id = ? ORDER BY id", (batch_id,)
        ).fetchall()
        return [self._tray_from_row(row) for row in rows]

    def trays_matching(
        self, recipe_id: str | None, anchor: datetime | None, stage: str
    ) -> list[Tray]:
        """Return unbatched trays sharing recipe, planting anchor and current stage."""

        rows = self._conn.execute(
            """
            SELECT * FROM trays
            WHERE batch_id IS NULL
              AND recipe_id IS ?
              AND COALESCE(planting_at, soaking_at) IS ?
              AND current_stage = ?
            ORDER BY id
            """,
            (recipe_id, _dt_text(anchor), stage),
        ).fetchall()
        return [self._tray_from_row(row) for row in rows]

    def active_tray_numbers(
        self, tray_numbers: Iterable[str], exclude_ids: Iterable[str] = ()
    ) -> dict[str, str]:
        """Map each of ``tray_numbers`` held by a non-harvested tray to that tray's id."""

        numbers = sorted({number for number in tray_numbers})
        if not numbers:
            return {}
        excluded = set(exclude_ids)
        rows = self._conn.execute(
            f"SELECT id, tray_number FROM trays WHERE holds_number = 1 "
            f"AND tray_number IN ({', '.join('?' for _ in numbers)})",
            numbers,
        ).fetchall()
        return {row["tray_number"]: row["id"] for row in rows if row["id"] not in excluded}

    def release_tray_numbers(self, tray_ids: Iterable[str]) -> int:
        """Drop the given trays out of the active-number index until they are saved again."""

        ids = sorted(set(tray_ids))
        if not ids:
            return 0
        with self.transaction():
            cursor = self._conn.execute(
                f"UPDATE trays SET holds_number = 0 "
                f"WHERE id IN ({', '.join('?' for _ in ids)})",
                ids,
            )
        return cursor.rowcount

    def _tray_from_row(self, row: sqlite3.Row) -> Tray:
        payload: dict[str, Any] = {
            "id": row["id"],
            "recipe_id": row["recipe_id"],
            "batch_id": row["batch_id"],
            "tray_number": row["tray_number"],
            "current_stage": row["current_stage"],
            "notes": row["notes"],
        }
        for field in _TRAY_TIMESTAMPS:
            payload[field] = _dt_parse(row[field])
        return Tray.model_validate(payload)

    # -- harvests ---------------------------------------------------------------------------

    def add_harvest(self, record: HarvestRecord) -> HarvestRecord:
        if record.id is None:
            record = record.model_copy(update={"id": uuid4().hex})
        with self.transaction():
            self._conn.execute(
                "INSERT INTO harvests (id, recipe_id, harvested_at, grams_per_tray) "
                "VALUES (?, ?, ?, ?)",
                (record.id, record.recipe_id, _dt_text(record.harvested_at), record.grams_per_tray),
            )
            if record.tray_ids:
                self._conn.executemany(
                    "INSERT INTO harvest_trays (harvest_id, tray_id) VALUES (?, ?)",
                    [(record.id, tray_id) for tray_id in record.tray_ids],
                )
        return record

    def harvests_for_recipe(
        self,
        recipe_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[HarvestRecord]:
        """Return harvests for ``recipe_id`` (newest first), optionally bounded in time."""

        records = [
            record
            for record in self._harvests("WHERE h.recipe_id = ?", (recipe_id,))
            if (since is None or record.harvested_at >= ensure_utc(since))
            and (until is None or record.harvested_at <= ensure_utc(until))
        ]
        return sorted(records, key=lambda record: record.harvested_at, reverse=True)

    def harvests_for_tray(self, tray_id: str) -> list[HarvestRecord]:
        return self._harvests(
            "WHERE h.id IN (SELECT harvest_id FROM harvest_trays WHERE tray_id = ?)",
            (tray_id,),
        )

    def _harvests(self, where: str, params: Sequence[Any]) -> list[HarvestRecord]:
        rows = self._conn.execute(
            f"SELECT h.id, h.recipe_id, h.harvested_at, h.grams_per_tray FROM harvests h {where}",
            params,
        ).fetchall()
        records: list[HarvestRecord] = []
        for row in rows:
            tray_ids = tuple(
                link["tray_id"]
                for link in self._conn.execute(
                    "SELECT tray_id FROM harvest_trays WHERE harvest_id = ? ORDER BY tray_id",
                    (row["id"],),
                )
            )
            records.append(
                HarvestRecord(
                    id=row["id"],
                    recipe_id=row["recipe_id"],
                    harvested_at=_dt_parse(row["harvested_at"]),
                    grams_per_tray=row["grams_per_tray"],
                    tray_ids=tray_ids,
                )
            )
        return records

    # -- crop plans -------------------------------------------------------------------------

    def save_plan(self, plan: CropPlan) -> CropPlan:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO crop_plans (
                    id, recipe_id, grams_needed, grams_per_tray, trays_needed, details_json
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    recipe_id = excluded.recipe_id,
                    grams_needed = excluded.grams_needed,
                    grams_per_tray = excluded.grams_per_tray,
                    trays_needed = excluded.trays_needed,
                    details_json = excluded.details_json
                """,
                (
                    plan.id,
                    plan.recipe_id,
                    plan.grams_needed,
                    plan.grams_per_tray,
                    plan.trays_needed,
                    _json_dumps(plan.calculation_details),
                ),
            )
        return plan

    def get_plan(self, plan_id: str) -> CropPlan | None:
        row = self._conn.execute("SELECT * FROM crop_plans WHERE id = ?", (plan_id,)).fetchone()
        if row is None:
            return None
        return CropPlan(
            id=row["id"],
            recipe_id=row["recipe_id"],
            grams_needed=row["grams_needed"],
            grams_per_tray=row["grams_per_tray"],
            trays_needed=row["trays_needed"],
            calculation_details=json.loads(row["details_json"]) if row["details_json"] else {},
        )

    # -- scheduled tasks --------------------------------------------------------------------

    def insert_task(self, task: ScheduledTask) -> ScheduledTask:
        with self.transaction():
            cursor = self._conn.execute(
                """
                INSERT INTO scheduled_tasks (
                    resource_type, task_name, name, batch_key, conditions_json,
                    next_run_at, last_run_at, is_active
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.resource_type,
                    task.task_name,
                    task.name,
                    task.batch_key,
                    task.conditions.model_dump_json(),
                    _dt_text(task.next_run_at),
                    _dt_text(task.last_run_at),
                    int(task.is_active),
                ),
            )
        return task.model_copy(update={"id": cursor.lastrowid})

    def deactivate_tasks(self, batch_key: str, task_names: Iterable[str] | None = None) -> int:
        """Deactivate active tasks of a batch (optionally only the given task names).

        Superseded tasks keep ``last_run_at`` untouched; only the runner stamps it.
        """

        params: list[Any] = [batch_key]
        clause = ""
        if task_names is not None:
            names = list(task_names)
            if not names:
                return 0
            clause = f" AND task_name IN ({', '.join('?' for _ in names)})"
            params.extend(names)
        with self.transaction():
            cursor = self._conn.execute(
                "UPDATE scheduled_tasks SET is_active = 0 "
                "WHERE batch_key = ? AND is_active = 1" + clause,
                params,
            )
        return cursor.rowcount

    def update_task_conditions(self, task_id: int, conditions: TaskConditions) -> None:
        with self.transaction():
            self._conn.execute(
                "UPDATE scheduled_tasks SET conditions_json = ? WHERE id = ?",
                (conditions.model_dump_json(), task_id),
            )

    def mark_task_run(self, task_id: int, at: datetime) -> None:
        with self.transaction():
            self._conn.execute(
                "UPDATE scheduled_tasks SET is_active = 0, last_run_at = ? WHERE id = ?",
                (_dt_text(at), task_id),
            )

    def get_task(self, task_id: int) -> ScheduledTask | None:
        row = self._conn.execute(
            "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
        ).fetchone()
        return self._task_from_row(row) if row is not None else None

    def list_tasks(
        self, batch_key: str | None = None, include_inactive: bool = False
    ) -> list[ScheduledTask]:
        clauses: list[str] = []
        params: list[Any] = []
        if batch_key is not None:
            clauses.append("batch_key = ?")
            params.append(batch_key)
        if not include_inactive:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM scheduled_tasks {where} ORDER BY next_run_at, id", params
        ).fetchall()
        return [self._task_from_row(row) for row in rows]

    def due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Active tasks whose ``next_run_at`` is at or before ``now``, oldest first."""

        cutoff = ensure_utc(now)
        due = [task for task in self.list_tasks() if task.next_run_at <= cutoff]
        return sorted(due, key=lambda task: (task.next_run_at, task.id or 0))

    def _task_from_row(self, row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            resource_type=row["resource_type"],
            task_name=row["task_name"],
            name=row["name"],
            batch_key=row["batch_key"],
            conditions=TaskConditions.model_validate_json(row["conditions_json"]),
            next_run_at=_dt_parse(row["next_run_at"]),
            last_run_at=_dt_parse(row["last_run_at"]),
            is_active=bool(row["is_active"]),
        )


def open_store(path: str | Path = MEMORY, registry: StageRegistry | None = None) -> TrayStore:
    """Open a store and make sure a stage table is present."""

    store = TrayStore(path)
    if registry is not None:
        store.save_stages(registry)
    elif not store.has_stages():
        store.save_stages(default_stage_registry())
    return store
