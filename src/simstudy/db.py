"""SQLite study database with WAL mode and atomic operations."""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

DB_NAME = "studyinfo.db"

# SQL schema for the study database
SCHEMA = """
-- One row per study directory
CREATE TABLE IF NOT EXISTS study (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    study_dir TEXT NOT NULL,
    prefix TEXT NOT NULL,
    base_model TEXT,               -- JSON
    base_simulator_options TEXT,   -- JSON
    base_solve_file TEXT,
    status TEXT DEFAULT 'pending', -- pending, running, finished, failed, submitted
    error TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- One row per variant, identified by its position in the expansion
CREATE TABLE IF NOT EXISTS simulations (
    sim_id INTEGER PRIMARY KEY,
    modifications TEXT NOT NULL,  -- JSON array of [target, property, value]
    data_file TEXT,
    solve_file TEXT,
    batch_dir TEXT,
    job_file TEXT,
    status TEXT DEFAULT 'pending',  -- pending, started, finished, failed
    started_at TEXT,
    finished_at TEXT,
    duration REAL,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_simulations_status ON simulations(status);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode so parallel workers can update their own variants
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# --- Study Operations ---

def save_study(
    conn: sqlite3.Connection,
    study_dir: str,
    prefix: str,
    base_model: Optional[dict],
    base_simulator_options: dict,
    base_solve_file: Optional[str] = None,
    status: str = "pending",
) -> None:
    """Create or replace the study row."""
    conn.execute(
        """
        INSERT INTO study (id, study_dir, prefix, base_model, base_simulator_options,
                           base_solve_file, status, created_at)
        VALUES (1, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            study_dir = excluded.study_dir,
            prefix = excluded.prefix,
            base_model = excluded.base_model,
            base_simulator_options = excluded.base_simulator_options,
            base_solve_file = COALESCE(excluded.base_solve_file, study.base_solve_file),
            status = excluded.status
        """,
        (
            study_dir,
            prefix,
            json.dumps(base_model) if base_model is not None else None,
            json.dumps(base_simulator_options),
            base_solve_file,
            status,
            utcnow(),
        ),
    )


def get_study(conn: sqlite3.Connection) -> Optional[dict]:
    """Get the study row with JSON columns decoded."""
    row = conn.execute("SELECT * FROM study WHERE id = 1").fetchone()
    if row is None:
        return None

    study = dict(row)
    study["base_model"] = json.loads(row["base_model"]) if row["base_model"] else None
    study["base_simulator_options"] = (
        json.loads(row["base_simulator_options"]) if row["base_simulator_options"] else {}
    )
    return study


def update_study(conn: sqlite3.Connection, **fields: Any) -> None:
    """Update columns of the study row."""
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(f"UPDATE study SET {assignments} WHERE id = 1", tuple(fields.values()))  # noqa: S608


# --- Simulation Operations ---

def replace_simulations(conn: sqlite3.Connection, simulations: list[dict]) -> None:
    """Atomically replace every simulation row."""
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("DELETE FROM simulations")
        conn.executemany(
            """
            INSERT INTO simulations (sim_id, modifications, data_file, solve_file, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    sim["sim_id"],
                    json.dumps(sim["modifications"]),
                    sim.get("data_file"),
                    sim.get("solve_file"),
                    sim.get("status", "pending"),
                )
                for sim in simulations
            ],
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def _deserialize_simulation(row: sqlite3.Row) -> dict:
    """Convert a simulation row to a dict with JSON columns decoded."""
    sim = dict(row)
    sim["modifications"] = json.loads(row["modifications"]) if row["modifications"] else []
    return sim


def get_simulation(conn: sqlite3.Connection, sim_id: int) -> Optional[dict]:
    """Get a simulation by ID."""
    row = conn.execute(
        "SELECT * FROM simulations WHERE sim_id = ?",
        (sim_id,),
    ).fetchone()

    if row is None:
        return None

    return _deserialize_simulation(row)


def get_simulations(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
) -> list[dict]:
    """Get simulations ordered by ID, optionally filtered by status."""
    if status:
        rows = conn.execute(
            "SELECT * FROM simulations WHERE status = ? ORDER BY sim_id",
            (status,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM simulations ORDER BY sim_id").fetchall()

    return [_deserialize_simulation(row) for row in rows]


def update_simulation(conn: sqlite3.Connection, sim_id: int, **fields: Any) -> None:
    """Update columns of one simulation row."""
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(
        f"UPDATE simulations SET {assignments} WHERE sim_id = ?",  # noqa: S608
        (*fields.values(), sim_id),
    )


def reset_simulations(
    conn: sqlite3.Connection,
    statuses: tuple[str, ...] = ("failed", "started"),
) -> list[int]:
    """Mark simulations with the given statuses pending again.

    Returns the IDs that were reset.
    """
    placeholders = ", ".join("?" for _ in statuses)
    try:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            f"""
            UPDATE simulations
            SET status = 'pending',
                started_at = NULL,
                finished_at = NULL,
                duration = NULL,
                error_message = NULL
            WHERE status IN ({placeholders})
            RETURNING sim_id
            """,  # noqa: S608
            statuses,
        )
        reset = sorted(row["sim_id"] for row in cursor.fetchall())
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    return reset
