"""
Storage layer for the IPV detection pipeline.

Per-narrative results, experiments and prompt versions live in one SQL
database: SQLite (a file path, ``sqlite:///path`` or ``:memory:``) or
PostgreSQL (``postgresql://...``). Result writes are idempotent:
``(experiment_id, case_id, narrative_type)`` is unique and inserts use
``ON CONFLICT DO NOTHING``, so a rerun after a crash skips what is already
stored and a duplicate is reported as an outcome rather than raised.
"""

import hashlib
import json
import logging
import sqlite3
from contextlib import closing, contextmanager
from datetime import UTC, datetime

import psycopg2
import psycopg2.extras

from nvdrs_ipv.schemas import (
    BatchOutcome,
    Experiment,
    NarrativeResult,
    ParsedResult,
    PromptVersion,
    StoreOutcome,
)

logger = logging.getLogger(__name__)

_DB_ERRORS = (sqlite3.Error, psycopg2.Error)


class SchemaVersionError(RuntimeError):
    """The database was written by a newer version of this code."""


# ── Schema migrations ────────────────────────────────────────────────────
#
# Each migration is a (version, statements) tuple. Versions are monotonic and
# forward-only. The statements must run unchanged on SQLite and PostgreSQL.
#
# To add a migration: append a new entry with version = SCHEMA_VERSION + 1,
# then bump SCHEMA_VERSION to match.

SCHEMA_VERSION = 3

MIGRATIONS: list[tuple[int, list[str]]] = [
    # ── v1: Initial schema ───────────────────────────────────────────
    (1, [
        """CREATE TABLE IF NOT EXISTS prompt_versions (
            id              TEXT PRIMARY KEY,
            system_prompt   TEXT NOT NULL,
            user_template   TEXT NOT NULL,
            content_hash    TEXT NOT NULL UNIQUE,
            version_tag     TEXT,
            notes           TEXT,
            created_at      TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS experiments (
            id                  TEXT PRIMARY KEY,
            name                TEXT NOT NULL,
            model               TEXT NOT NULL,
            prompt_version_id   TEXT NOT NULL,
            dataset_name        TEXT,
            status              TEXT NOT NULL CHECK(status IN ('running','completed','failed')),
            n_total             INTEGER,
            n_processed         INTEGER NOT NULL DEFAULT 0,
            n_errors            INTEGER,
            started_at          TEXT NOT NULL,
            completed_at        TEXT,
            notes               TEXT,
            error_message       TEXT
        )""",
        """CREATE TABLE IF NOT EXISTS narrative_results (
            result_id           TEXT PRIMARY KEY,
            experiment_id       TEXT NOT NULL,
            case_id             TEXT NOT NULL,
            narrative_type      TEXT NOT NULL CHECK(narrative_type IN ('primary','secondary')),
            row_num             INTEGER,
            narrative_text      TEXT,
            manual_flag         BOOLEAN,
            detected            BOOLEAN,
            confidence          DOUBLE PRECISION CHECK(confidence IS NULL OR (confidence >= 0 AND confidence <= 1)),
            rationale           TEXT,
            indicators          TEXT,
            indicator_flags     TEXT,
            parse_status        TEXT NOT NULL CHECK(parse_status IN ('ok','recovered','failed','skipped_empty')),
            prompt_tokens       INTEGER,
            completion_tokens   INTEGER,
            total_tokens        INTEGER,
            latency_seconds     DOUBLE PRECISION,
            raw_response        TEXT,
            error_message       TEXT,
            created_at          TEXT NOT NULL,
            UNIQUE (experiment_id, case_id, narrative_type)
        )""",
    ]),
    # ── v2: Aggregate metrics on experiments, lookup indexes ─────────
    (2, [
        "ALTER TABLE experiments ADD COLUMN metrics TEXT",
        "CREATE INDEX IF NOT EXISTS idx_results_experiment ON narrative_results(experiment_id)",
        "CREATE INDEX IF NOT EXISTS idx_results_status ON narrative_results(experiment_id, parse_status)",
        "CREATE INDEX IF NOT EXISTS idx_experiments_status ON experiments(status)",
    ]),
    # ── v3: Single-writer locks for resumed runs ─────────────────────
    (3, [
        """CREATE TABLE IF NOT EXISTS resume_locks (
            experiment_id   TEXT PRIMARY KEY,
            owner           TEXT NOT NULL,
            acquired_at     TEXT NOT NULL
        )""",
    ]),
]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def result_id_for(experiment_id: str, case_id: str, narrative_type: str) -> str:
    combined = "|".join((experiment_id, case_id, narrative_type))
    return "nr_" + hashlib.sha256(combined.encode()).hexdigest()[:16]


def _backend_for(database_url: str) -> str:
    if database_url.startswith(("postgresql://", "postgres://")):
        return "postgresql"
    return "sqlite"


def _sqlite_path(database_url: str) -> str:
    if database_url.startswith("sqlite:///"):
        return database_url[len("sqlite:///"):]
    return database_url


class IPVStorage:
    """SQL-backed storage for results, experiments and prompt versions."""

    def __init__(self, database_url: str, busy_timeout: float = 30.0):
        self.database_url = database_url
        self.backend = _backend_for(database_url)
        if self.backend == "postgresql":
            self.conn = psycopg2.connect(database_url)
            self.conn.autocommit = True
        else:
            self.conn = sqlite3.connect(
                _sqlite_path(database_url),
                timeout=busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
        try:
            self._migrate()
        except Exception:
            self.conn.close()
            raise

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ── Low-level helpers ───────────────────────────────────────────

    @contextmanager
    def _cursor(self):
        if self.backend == "postgresql":
            with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield cur
        else:
            with closing(self.conn.cursor()) as cur:
                yield cur

    def _run(self, cur, sql: str, params: tuple = ()):
        if self.backend == "sqlite":
            sql = sql.replace("%s", "?")
        cur.execute(sql, params)
        return cur

    def _fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        with self._cursor() as cur:
            rows = self._run(cur, sql, params).fetchall()
        return [dict(r) for r in rows]

    def _fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        with self._cursor() as cur:
            row = self._run(cur, sql, params).fetchone()
        return dict(row) if row else None

    @contextmanager
    def transaction(self):
        """Explicit BEGIN/COMMIT; the connection itself runs in autocommit mode."""
        with self._cursor() as cur:
            cur.execute("BEGIN")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    # ── Migrations ──────────────────────────────────────────────────

    def _migrate(self):
        """Apply pending migrations in one transaction.

        On PostgreSQL the transaction takes an advisory lock so that two
        processes starting against the same database do not both migrate.
        """
        with self._cursor() as cur:
            if self.backend == "postgresql":
                cur.execute("BEGIN")
                cur.execute("SET LOCAL lock_timeout = '5s'")
                cur.execute("SET LOCAL statement_timeout = '30s'")
                cur.execute("SELECT pg_try_advisory_xact_lock(4242) AS acquired")
                if not cur.fetchone()["acquired"]:
                    cur.execute("ROLLBACK")
                    logger.warning("Migration: another process holds the lock, waiting for it")
                    cur.execute("BEGIN")
                    cur.execute("SET LOCAL lock_timeout = '30s'")
                    cur.execute("SELECT pg_advisory_xact_lock(4242)")
            else:
                cur.execute("BEGIN IMMEDIATE")

            try:
                cur.execute(
                    "CREATE TABLE IF NOT EXISTS _schema_meta ("
                    "  id INTEGER PRIMARY KEY DEFAULT 1 CHECK(id = 1),"
                    "  version INTEGER NOT NULL DEFAULT 0"
                    ")"
                )
                cur.execute(
                    "INSERT INTO _schema_meta (id, version) VALUES (1, 0) "
                    "ON CONFLICT (id) DO NOTHING"
                )
                current = self._run(cur, "SELECT version FROM _schema_meta WHERE id = 1").fetchone()["version"]

                if current > SCHEMA_VERSION:
                    raise SchemaVersionError(
                        f"Database schema is v{current} but this code only knows up to "
                        f"v{SCHEMA_VERSION}; upgrade nvdrs-ipv before using this database"
                    )

                for version, statements in MIGRATIONS:
                    if version <= current:
                        continue
                    logger.info("Migration: applying v%d (%d statements)", version, len(statements))
                    for stmt in statements:
                        cur.execute(stmt)

                if current < SCHEMA_VERSION:
                    self._run(
                        cur,
                        "UPDATE _schema_meta SET version = %s WHERE id = 1",
                        (SCHEMA_VERSION,),
                    )
                    logger.info("Migration: schema now at v%d", SCHEMA_VERSION)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def schema_version(self) -> int:
        row = self._fetchone("SELECT version FROM _schema_meta WHERE id = 1")
        return row["version"] if row else 0

    # ── Prompt versions ─────────────────────────────────────────────

    def insert_prompt_version(self, prompt: PromptVersion) -> bool:
        """Insert unless the content hash exists. Returns True if a row was added."""
        with self._cursor() as cur:
            self._run(
                cur,
                """INSERT INTO prompt_versions
                   (id, system_prompt, user_template, content_hash, version_tag, notes, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT DO NOTHING""",
                (prompt.id, prompt.system_prompt, prompt.user_template, prompt.content_hash,
                 prompt.version_tag, prompt.notes, prompt.created_at),
            )
            return cur.rowcount == 1

    def get_prompt_version(self, prompt_version_id: str) -> PromptVersion | None:
        row = self._fetchone("SELECT * FROM prompt_versions WHERE id = %s", (prompt_version_id,))
        return PromptVersion(**row) if row else None

    def get_prompt_version_by_hash(self, content_hash: str) -> PromptVersion | None:
        row = self._fetchone("SELECT * FROM prompt_versions WHERE content_hash = %s", (content_hash,))
        return PromptVersion(**row) if row else None

    def count_prompt_versions(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS n FROM prompt_versions")
        return row["n"]

    # ── Experiments ─────────────────────────────────────────────────

    def insert_experiment(self, experiment: Experiment):
        with self._cursor() as cur:
            self._run(
                cur,
                """INSERT INTO experiments
                   (id, name, model, prompt_version_id, dataset_name, status,
                    n_total, n_processed, started_at, notes, metrics)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                (experiment.id, experiment.name, experiment.model, experiment.prompt_version_id,
                 experiment.dataset_name, experiment.status, experiment.n_total,
                 experiment.n_processed, experiment.started_at, experiment.notes,
                 json.dumps(experiment.metrics)),
            )

    def get_experiment(self, experiment_id: str) -> Experiment | None:
        row = self._fetchone("SELECT * FROM experiments WHERE id = %s", (experiment_id,))
        return _experiment_from_row(row) if row else None

    def list_experiments(self) -> list[Experiment]:
        rows = self._fetchall("SELECT * FROM experiments ORDER BY started_at DESC")
        return [_experiment_from_row(r) for r in rows]

    def update_progress(self, experiment_id: str, n_processed: int):
        """Raise the progress counter. Never lowers it."""
        with self._cursor() as cur:
            self._run(
                cur,
                "UPDATE experiments SET n_processed = %s WHERE id = %s AND n_processed < %s",
                (n_processed, experiment_id, n_processed),
            )

    def mark_experiment_completed(
        self, experiment_id: str, n_processed: int, n_errors: int, metrics: dict
    ):
        with self._cursor() as cur:
            self._run(
                cur,
                """UPDATE experiments SET status = 'completed', completed_at = %s,
                   n_processed = %s, n_errors = %s, metrics = %s
                   WHERE id = %s""",
                (_now(), n_processed, n_errors, json.dumps(metrics), experiment_id),
            )

    def mark_experiment_failed(self, experiment_id: str, error: str):
        with self._cursor() as cur:
            self._run(
                cur,
                """UPDATE experiments SET status = 'failed', completed_at = %s, error_message = %s
                   WHERE id = %s""",
                (_now(), error, experiment_id),
            )

    # ── Resume locks ────────────────────────────────────────────────

    def acquire_resume_lock(self, experiment_id: str, owner: str) -> bool:
        """Take the writer lock for an experiment. False if someone else holds it."""
        with self._cursor() as cur:
            self._run(
                cur,
                """INSERT INTO resume_locks (experiment_id, owner, acquired_at)
                   VALUES (%s, %s, %s) ON CONFLICT DO NOTHING""",
                (experiment_id, owner, _now()),
            )
            return cur.rowcount == 1

    def get_resume_lock(self, experiment_id: str) -> dict | None:
        return self._fetchone("SELECT * FROM resume_locks WHERE experiment_id = %s", (experiment_id,))

    def release_resume_lock(self, experiment_id: str, owner: str | None = None) -> bool:
        """Drop the lock; with ``owner`` set, only if that owner holds it."""
        with self._cursor() as cur:
            if owner is None:
                self._run(cur, "DELETE FROM resume_locks WHERE experiment_id = %s", (experiment_id,))
            else:
                self._run(
                    cur,
                    "DELETE FROM resume_locks WHERE experiment_id = %s AND owner = %s",
                    (experiment_id, owner),
                )
            return cur.rowcount == 1

    # ── Narrative results ───────────────────────────────────────────

    def _insert_result(
        self,
        cur,
        experiment_id: str,
        case_id: str,
        narrative_type: str,
        parsed: ParsedResult,
        row_num: int | None = None,
        narrative_text: str | None = None,
        manual_flag: bool | None = None,
    ) -> StoreOutcome:
        self._run(
            cur,
            """INSERT INTO narrative_results
               (result_id, experiment_id, case_id, narrative_type, row_num, narrative_text,
                manual_flag, detected, confidence, rationale, indicators, indicator_flags,
                parse_status, prompt_tokens, completion_tokens, total_tokens, latency_seconds,
                raw_response, error_message, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT DO NOTHING""",
            (
                result_id_for(experiment_id, case_id, narrative_type),
                experiment_id, case_id, narrative_type, row_num, narrative_text,
                manual_flag, parsed.detected, parsed.confidence, parsed.rationale,
                json.dumps(parsed.indicators), json.dumps(parsed.indicator_flags),
                parsed.parse_status, parsed.prompt_tokens, parsed.completion_tokens,
                parsed.total_tokens, parsed.latency_seconds,
                parsed.raw_response, parsed.error_message, _now(),
            ),
        )
        return "inserted" if cur.rowcount == 1 else "duplicate"

    def store(
        self,
        experiment_id: str,
        case_id: str,
        narrative_type: str,
        parsed: ParsedResult,
        row_num: int | None = None,
        narrative_text: str | None = None,
        manual_flag: bool | None = None,
    ) -> StoreOutcome:
        """Insert one result. Returns ``inserted``, ``duplicate`` or ``error``."""
        try:
            with self._cursor() as cur:
                return self._insert_result(
                    cur, experiment_id, case_id, narrative_type, parsed,
                    row_num=row_num, narrative_text=narrative_text, manual_flag=manual_flag,
                )
        except _DB_ERRORS as e:
            logger.warning("Failed to store %s/%s: %s", case_id, narrative_type, e)
            return "error"

    def store_batch(self, records: list[dict]) -> BatchOutcome:
        """Insert many results in one transaction.

        Each record is a dict of ``store`` keyword arguments. Every record runs
        under its own savepoint, so a failing record is rolled back and counted
        without losing the rest of the batch.
        """
        inserted = duplicates = errors = 0
        with self.transaction() as cur:
            for record in records:
                cur.execute("SAVEPOINT result_row")
                try:
                    outcome = self._insert_result(cur, **record)
                except _DB_ERRORS as e:
                    cur.execute("ROLLBACK TO SAVEPOINT result_row")
                    cur.execute("RELEASE SAVEPOINT result_row")
                    logger.warning(
                        "Failed to store %s/%s: %s",
                        record.get("case_id"), record.get("narrative_type"), e,
                    )
                    errors += 1
                    continue
                cur.execute("RELEASE SAVEPOINT result_row")
                if outcome == "inserted":
                    inserted += 1
                else:
                    duplicates += 1
        return BatchOutcome(inserted=inserted, duplicates=duplicates, errors=errors)

    def get_results(self, experiment_id: str) -> list[NarrativeResult]:
        rows = self._fetchall(
            """SELECT * FROM narrative_results WHERE experiment_id = %s
               ORDER BY COALESCE(row_num, 0), case_id, narrative_type""",
            (experiment_id,),
        )
        return [_result_from_row(r) for r in rows]

    def get_completed_keys(self, experiment_id: str) -> set[tuple[str, str]]:
        """Keys already stored for an experiment, for checkpoint/resume."""
        rows = self._fetchall(
            "SELECT case_id, narrative_type FROM narrative_results WHERE experiment_id = %s",
            (experiment_id,),
        )
        return {(r["case_id"], r["narrative_type"]) for r in rows}

    def count_results(self, experiment_id: str, parse_status: str | None = None) -> int:
        if parse_status is None:
            row = self._fetchone(
                "SELECT COUNT(*) AS n FROM narrative_results WHERE experiment_id = %s",
                (experiment_id,),
            )
        else:
            row = self._fetchone(
                "SELECT COUNT(*) AS n FROM narrative_results WHERE experiment_id = %s AND parse_status = %s",
                (experiment_id, parse_status),
            )
        return row["n"]

    # ── Analysis queries ────────────────────────────────────────────

    def find_disagreements(
        self,
        experiment_id: str,
        kind: str = "both",
        narrative_type: str | None = None,
    ) -> list[NarrativeResult]:
        """Results whose verdict contradicts the manual flag.

        ``kind`` is ``false_positive``, ``false_negative`` or ``both``.
        Most confident mistakes come first.
        """
        clauses = {
            "false_positive": ("(detected = %s AND manual_flag = %s)", (True, False)),
            "false_negative": ("(detected = %s AND manual_flag = %s)", (False, True)),
        }
        if kind == "both":
            picked = list(clauses.values())
        elif kind in clauses:
            picked = [clauses[kind]]
        else:
            raise ValueError(f"Unknown disagreement kind: {kind}")

        where = " OR ".join(sql for sql, _ in picked)
        params: tuple = (experiment_id,) + tuple(p for _, pair in picked for p in pair)
        sql = f"SELECT * FROM narrative_results WHERE experiment_id = %s AND ({where})"
        if narrative_type is not None:
            sql += " AND narrative_type = %s"
            params += (narrative_type,)
        sql += " ORDER BY COALESCE(confidence, -1) DESC, case_id, narrative_type"
        return [_result_from_row(r) for r in self._fetchall(sql, params)]

    def error_summary(self, experiment_id: str | None = None) -> list[dict]:
        """Failed results counted per experiment and error message."""
        sql = """SELECT nr.experiment_id, e.name AS experiment_name, nr.error_message, COUNT(*) AS n
                 FROM narrative_results nr JOIN experiments e ON e.id = nr.experiment_id
                 WHERE nr.parse_status = 'failed'"""
        params: tuple = ()
        if experiment_id is not None:
            sql += " AND nr.experiment_id = %s"
            params = (experiment_id,)
        sql += """ GROUP BY nr.experiment_id, e.name, nr.error_message
                   ORDER BY n DESC, nr.experiment_id, nr.error_message"""
        return self._fetchall(sql, params)


def _loads(value, default):
    if value is None or value == "":
        return default
    return json.loads(value)


def _experiment_from_row(row: dict) -> Experiment:
    row = dict(row)
    row["metrics"] = _loads(row.get("metrics"), {})
    return Experiment(**row)


def _result_from_row(row: dict) -> NarrativeResult:
    row = dict(row)
    row["indicators"] = _loads(row.get("indicators"), [])
    row["indicator_flags"] = _loads(row.get("indicator_flags"), {})
    return NarrativeResult(**row)
