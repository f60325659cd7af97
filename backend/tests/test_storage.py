from __future__ import annotations

import sqlite3

import pytest

from nvdrs_ipv.schemas import Experiment, ParsedResult
from nvdrs_ipv.storage import SCHEMA_VERSION, IPVStorage, SchemaVersionError, result_id_for


def _parsed(detected=True, confidence=0.8) -> ParsedResult:
    return ParsedResult(
        detected=detected,
        confidence=confidence,
        rationale="ex-boyfriend arrested",
        indicators=["prior_abuse"],
        indicator_flags={"prior_abuse": "yes", "separation": "unclear"},
        parse_status="ok",
        total_tokens=120,
    )


def _record(case_id, narrative_type="primary", experiment_id="exp-1", **kwargs) -> dict:
    return {
        "experiment_id": experiment_id,
        "case_id": case_id,
        "narrative_type": narrative_type,
        "parsed": _parsed(),
        **kwargs,
    }


def test_new_database_is_at_current_schema_version(storage: IPVStorage) -> None:
    assert storage.schema_version() == SCHEMA_VERSION


def test_reopening_does_not_rerun_migrations(tmp_path) -> None:
    path = str(tmp_path / "ipv.db")
    IPVStorage(path).close()

    with IPVStorage(f"sqlite:///{path}") as reopened:
        assert reopened.schema_version() == SCHEMA_VERSION


def test_newer_schema_version_is_fatal(tmp_path) -> None:
    path = str(tmp_path / "ipv.db")
    IPVStorage(path).close()
    conn = sqlite3.connect(path)
    conn.execute("UPDATE _schema_meta SET version = ?", (SCHEMA_VERSION + 1,))
    conn.commit()
    conn.close()

    with pytest.raises(SchemaVersionError):
        IPVStorage(path)


def test_store_is_idempotent(storage: IPVStorage) -> None:
    first = storage.store("exp-1", "case-1", "primary", _parsed(True, 0.8))
    second = storage.store("exp-1", "case-1", "primary", _parsed(False, 0.1))

    assert first == "inserted"
    assert second == "duplicate"
    results = storage.get_results("exp-1")
    assert len(results) == 1
    # The first write wins.
    assert results[0].detected is True


def test_same_case_in_two_experiments_is_not_a_duplicate(storage: IPVStorage) -> None:
    assert storage.store("exp-1", "case-1", "primary", _parsed()) == "inserted"
    assert storage.store("exp-2", "case-1", "primary", _parsed()) == "inserted"


def test_result_round_trips_json_fields(storage: IPVStorage) -> None:
    storage.store("exp-1", "case-1", "secondary", _parsed(), row_num=7,
                  narrative_text="text", manual_flag=False)

    [result] = storage.get_results("exp-1")

    assert result.result_id == result_id_for("exp-1", "case-1", "secondary")
    assert result.indicators == ["prior_abuse"]
    assert result.indicator_flags == {"prior_abuse": "yes", "separation": "unclear"}
    assert result.manual_flag is False
    assert result.row_num == 7
    assert result.confidence == pytest.approx(0.8)


def test_store_batch_counts_duplicates(storage: IPVStorage) -> None:
    storage.store("exp-1", "case-1", "primary", _parsed())

    outcome = storage.store_batch([_record("case-1"), _record("case-2"), _record("case-2")])

    assert (outcome.inserted, outcome.duplicates, outcome.errors) == (1, 2, 0)
    assert storage.count_results("exp-1") == 2


def test_failing_record_does_not_roll_back_its_batch(storage: IPVStorage) -> None:
    records = [
        _record("case-1"),
        _record("case-2", narrative_type="tertiary"),  # violates the narrative_type CHECK
        _record("case-3"),
    ]

    outcome = storage.store_batch(records)

    assert (outcome.inserted, outcome.duplicates, outcome.errors) == (2, 0, 1)
    assert storage.get_completed_keys("exp-1") == {("case-1", "primary"), ("case-3", "primary")}


def test_store_reports_error_instead_of_raising(storage: IPVStorage) -> None:
    assert storage.store("exp-1", "case-1", "tertiary", _parsed()) == "error"


def test_count_results_by_status(storage: IPVStorage) -> None:
    storage.store("exp-1", "case-1", "primary", _parsed())
    storage.store("exp-1", "case-2", "primary", ParsedResult(parse_status="skipped_empty"))

    assert storage.count_results("exp-1") == 2
    assert storage.count_results("exp-1", parse_status="skipped_empty") == 1


def test_find_disagreements_against_manual_flags(storage: IPVStorage) -> None:
    storage.store("exp-1", "fp", "primary", _parsed(True, 0.9), manual_flag=False)
    storage.store("exp-1", "fp-low", "secondary", _parsed(True, 0.6), manual_flag=False)
    storage.store("exp-1", "fn", "primary", _parsed(False, 0.7), manual_flag=True)
    storage.store("exp-1", "tp", "primary", _parsed(True, 0.95), manual_flag=True)
    storage.store("exp-1", "unlabelled", "primary", _parsed(True, 0.9))
    storage.store("exp-1", "failed", "primary", ParsedResult(parse_status="failed"), manual_flag=True)

    both = storage.find_disagreements("exp-1")
    assert [r.case_id for r in both] == ["fp", "fn", "fp-low"]

    assert [r.case_id for r in storage.find_disagreements("exp-1", "false_negative")] == ["fn"]
    only_secondary = storage.find_disagreements("exp-1", "false_positive", narrative_type="secondary")
    assert [r.case_id for r in only_secondary] == ["fp-low"]

    with pytest.raises(ValueError):
        storage.find_disagreements("exp-1", "true_positive")


def test_error_summary_groups_failures_by_message(storage: IPVStorage) -> None:
    for experiment_id in ("exp-1", "exp-2"):
        storage.insert_experiment(Experiment(
            id=experiment_id, name=f"run {experiment_id}", model="m", prompt_version_id="pv_x",
            status="running", started_at="2025-01-01T00:00:00+00:00",
        ))
    failed = {"parse_status": "failed"}
    storage.store("exp-1", "c1", "primary", ParsedResult(**failed, error_message="HTTP 400: Bad Request"))
    storage.store("exp-1", "c2", "primary", ParsedResult(**failed, error_message="HTTP 400: Bad Request"))
    storage.store("exp-1", "c3", "primary", ParsedResult(**failed, error_message="Empty response"))
    storage.store("exp-1", "c4", "primary", _parsed())
    storage.store("exp-2", "c1", "primary", ParsedResult(**failed, error_message="Empty response"))

    rows = storage.error_summary("exp-1")

    assert [(r["error_message"], r["n"]) for r in rows] == [
        ("HTTP 400: Bad Request", 2),
        ("Empty response", 1),
    ]
    assert rows[0]["experiment_name"] == "run exp-1"
    assert sum(r["n"] for r in storage.error_summary()) == 4


def test_resume_lock_has_a_single_holder(storage: IPVStorage) -> None:
    assert storage.acquire_resume_lock("exp-1", "host-a:100")
    assert not storage.acquire_resume_lock("exp-1", "host-b:200")
    assert storage.get_resume_lock("exp-1")["owner"] == "host-a:100"

    assert not storage.release_resume_lock("exp-1", "host-b:200")
    assert storage.release_resume_lock("exp-1", "host-a:100")
    assert storage.get_resume_lock("exp-1") is None
    assert storage.acquire_resume_lock("exp-1", "host-b:200")
