from __future__ import annotations

from argparse import Namespace

from nvdrs_ipv import orchestrator
from nvdrs_ipv.experiments import ExperimentTracker
from nvdrs_ipv.schemas import ParsedResult


def _experiment(storage) -> str:
    tracker = ExperimentTracker(storage)
    prompt_id = tracker.register_prompt("system", "Narrative: {narrative}")
    return tracker.start("baseline", "test-model", prompt_id)


def test_disagreements_lists_false_positives_and_negatives(config, storage, capsys) -> None:
    experiment_id = _experiment(storage)
    storage.store(experiment_id, "c-fp", "primary",
                  ParsedResult(detected=True, confidence=0.9, rationale="named partner", parse_status="ok"),
                  narrative_text="V was found after a fall.", manual_flag=False)
    storage.store(experiment_id, "c-tn", "primary",
                  ParsedResult(detected=False, confidence=0.9, parse_status="ok"), manual_flag=False)

    orchestrator.cmd_disagreements(
        Namespace(experiment_id=experiment_id, type="both", narrative_type=None), config
    )

    out = capsys.readouterr().out
    assert "1 disagreements" in out
    assert "FP  c-fp" in out
    assert "named partner" in out
    assert "c-tn" not in out


def test_errors_reports_counts_per_message(config, storage, capsys) -> None:
    experiment_id = _experiment(storage)
    for case_id in ("c1", "c2"):
        storage.store(experiment_id, case_id, "primary",
                      ParsedResult(parse_status="failed", error_message="Empty response"))

    orchestrator.cmd_errors(Namespace(experiment_id=None), config)

    out = capsys.readouterr().out
    assert experiment_id in out
    assert "2  Empty response" in out


def test_compare_prints_each_experiment(config, storage, capsys) -> None:
    first, second = _experiment(storage), _experiment(storage)

    orchestrator.cmd_compare(Namespace(experiment_id=[first, second]), config)

    out = capsys.readouterr().out
    assert first in out and second in out


def test_unlock_clears_a_held_lock(config, storage, capsys) -> None:
    experiment_id = _experiment(storage)
    storage.acquire_resume_lock(experiment_id, "gone-host:77")

    orchestrator.cmd_unlock(Namespace(experiment_id=experiment_id), config)

    assert storage.get_resume_lock(experiment_id) is None
    assert "gone-host:77" in capsys.readouterr().out

    orchestrator.cmd_unlock(Namespace(experiment_id=experiment_id), config)
    assert "is not locked" in capsys.readouterr().out
