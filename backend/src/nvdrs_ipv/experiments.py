"""
Experiment tracking: prompt versions and the experiment lifecycle.

An experiment moves ``running -> completed`` or ``running -> failed`` and
never leaves a terminal state, except that ``complete`` may be repeated on a
completed experiment to refresh its counts and timestamp. Experiments are
never deleted.
"""

import hashlib
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime

from nvdrs_ipv.schemas import Experiment, NarrativeResult, PromptVersion
from nvdrs_ipv.storage import IPVStorage

logger = logging.getLogger(__name__)


class ExperimentStateError(RuntimeError):
    """Illegal lifecycle transition, e.g. completing a failed experiment."""


class ExperimentNotFoundError(LookupError):
    pass


class ExperimentLockedError(RuntimeError):
    """Another process is already writing results for this experiment."""


class ExperimentSetupError(ValueError):
    """The experiment could not start; it has been recorded as failed."""

    def __init__(self, message: str, experiment_id: str):
        super().__init__(message)
        self.experiment_id = experiment_id


def prompt_content_hash(system_prompt: str, user_template: str) -> str:
    combined = "|".join((system_prompt, user_template))
    return hashlib.sha256(combined.encode()).hexdigest()


class ExperimentTracker:
    def __init__(self, storage: IPVStorage):
        self.storage = storage

    # ── Prompt versions ─────────────────────────────────────────────

    def register_prompt(
        self,
        system_prompt: str,
        user_template: str,
        version_tag: str | None = None,
        notes: str | None = None,
    ) -> str:
        """Return the prompt version id for this content, creating it if new.

        Identical content always maps to the same id; registering it again
        adds no row.
        """
        content_hash = prompt_content_hash(system_prompt, user_template)
        existing = self.storage.get_prompt_version_by_hash(content_hash)
        if existing:
            logger.info("Prompt already registered as %s (tag %s)", existing.id, existing.version_tag)
            return existing.id

        prompt = PromptVersion(
            id="pv_" + content_hash[:12],
            system_prompt=system_prompt,
            user_template=user_template,
            content_hash=content_hash,
            version_tag=version_tag,
            notes=notes,
            created_at=_now(),
        )
        if not self.storage.insert_prompt_version(prompt):
            # Lost a race with another writer; the stored row wins.
            return self.storage.get_prompt_version_by_hash(content_hash).id
        logger.info("Registered prompt version %s", prompt.id)
        return prompt.id

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(
        self,
        name: str,
        model: str,
        prompt_version_id: str,
        n_total: int | None = None,
        dataset_name: str | None = None,
        notes: str | None = None,
    ) -> str:
        experiment_id = str(uuid.uuid4())
        self.storage.insert_experiment(Experiment(
            id=experiment_id,
            name=name,
            model=model,
            prompt_version_id=prompt_version_id,
            dataset_name=dataset_name,
            status="running",
            n_total=n_total,
            started_at=_now(),
            notes=notes,
        ))

        if self.storage.get_prompt_version(prompt_version_id) is None:
            message = f"Unknown prompt version: {prompt_version_id}"
            self.storage.mark_experiment_failed(experiment_id, message)
            logger.error("Experiment %s failed at setup: %s", experiment_id, message)
            raise ExperimentSetupError(message, experiment_id)

        logger.info("Started experiment %s (%s, model %s)", experiment_id, name, model)
        return experiment_id

    def get(self, experiment_id: str) -> Experiment:
        experiment = self.storage.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Unknown experiment: {experiment_id}")
        return experiment

    def update_progress(self, experiment_id: str, n_processed: int):
        self.storage.update_progress(experiment_id, n_processed)

    def complete(self, experiment_id: str) -> Experiment:
        experiment = self.get(experiment_id)
        if experiment.status == "failed":
            raise ExperimentStateError(f"Experiment {experiment_id} has failed and cannot be completed")

        results = self.storage.get_results(experiment_id)
        metrics = compute_metrics(results, experiment.started_at)
        self.storage.mark_experiment_completed(
            experiment_id,
            n_processed=len(results),
            n_errors=metrics["n_errors"],
            metrics=metrics,
        )
        logger.info(
            "Completed experiment %s: %d results, %d errors",
            experiment_id, len(results), metrics["n_errors"],
        )
        return self.get(experiment_id)

    def fail(self, experiment_id: str, error: str):
        experiment = self.get(experiment_id)
        if experiment.status == "completed":
            raise ExperimentStateError(f"Experiment {experiment_id} is completed and cannot be failed")
        self.storage.mark_experiment_failed(experiment_id, error)
        logger.error("Experiment %s marked failed: %s", experiment_id, error)

    # ── Single-writer lock ──────────────────────────────────────────

    def acquire_lock(self, experiment_id: str, owner: str | None = None) -> str:
        """Claim the experiment for this process and return the owner token.

        A lock left behind by a dead process on this host is taken over.
        """
        owner = owner or lock_owner()
        if self.storage.acquire_resume_lock(experiment_id, owner):
            logger.info("Resume lock for %s acquired by %s", experiment_id, owner)
            return owner

        held = self.storage.get_resume_lock(experiment_id)
        if held and _is_stale(held["owner"]):
            logger.warning("Removing stale resume lock on %s held by %s", experiment_id, held["owner"])
            self.storage.release_resume_lock(experiment_id, held["owner"])
            if self.storage.acquire_resume_lock(experiment_id, owner):
                return owner
            held = self.storage.get_resume_lock(experiment_id)

        holder = held["owner"] if held else "unknown"
        raise ExperimentLockedError(
            f"Experiment {experiment_id} is locked by {holder}. If that process is gone, "
            f"clear the lock with: python -m nvdrs_ipv.orchestrator unlock --experiment-id {experiment_id}"
        )

    def release_lock(self, experiment_id: str, owner: str | None = None) -> bool:
        released = self.storage.release_resume_lock(experiment_id, owner)
        if released:
            logger.info("Resume lock for %s released", experiment_id)
        return released

    @contextmanager
    def locked(self, experiment_id: str):
        owner = self.acquire_lock(experiment_id)
        try:
            yield owner
        finally:
            self.release_lock(experiment_id, owner)

    # ── Analysis ────────────────────────────────────────────────────

    def compare(self, experiment_ids: list[str]) -> list[dict]:
        """Side-by-side metrics for several experiments, best F1 first."""
        if not experiment_ids:
            raise ValueError("No experiment ids given")
        rows = []
        for experiment_id in experiment_ids:
            exp = self.get(experiment_id)
            row = {
                "id": exp.id,
                "name": exp.name,
                "model": exp.model,
                "prompt_version_id": exp.prompt_version_id,
                "status": exp.status,
                "n_processed": exp.n_processed,
            }
            for key in COMPARED_METRICS:
                row[key] = exp.metrics.get(key)
            rows.append(row)
        rows.sort(key=lambda r: (r["f1"] is None, -(r["f1"] or 0.0)))
        return rows


COMPARED_METRICS = (
    "accuracy", "precision", "recall", "f1",
    "n_true_positive", "n_false_positive", "n_false_negative", "n_true_negative",
    "n_errors", "runtime_seconds", "mean_latency_seconds",
)


def lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _is_stale(owner: str) -> bool:
    """Only locks from this host can be checked; a remote holder is assumed alive."""
    host, _, pid = owner.rpartition(":")
    if host != socket.gethostname() or not pid.isdigit():
        return False
    if int(pid) == os.getpid():
        return False
    return not _pid_alive(int(pid))


def compute_metrics(results: list[NarrativeResult], started_at: str | None = None) -> dict:
    """Aggregate counts, usage and, where manual flags exist, classification metrics."""
    detected = [r for r in results if r.detected is not None]
    latencies = [
        r.latency_seconds for r in results
        if r.latency_seconds is not None and r.parse_status != "skipped_empty"
    ]

    metrics = {
        "n_results": len(results),
        "n_positive_detected": sum(1 for r in detected if r.detected),
        "n_negative_detected": sum(1 for r in detected if not r.detected),
        "n_errors": sum(1 for r in results if r.parse_status == "failed"),
        "n_recovered": sum(1 for r in results if r.parse_status == "recovered"),
        "n_skipped_empty": sum(1 for r in results if r.parse_status == "skipped_empty"),
        "total_tokens": sum(r.total_tokens or 0 for r in results),
        "mean_latency_seconds": sum(latencies) / len(latencies) if latencies else None,
        "runtime_seconds": None,
    }
    if started_at:
        started = datetime.fromisoformat(started_at)
        metrics["runtime_seconds"] = (datetime.now(UTC) - started).total_seconds()

    labelled = [r for r in detected if r.manual_flag is not None]
    if labelled:
        tp = sum(1 for r in labelled if r.detected and r.manual_flag)
        tn = sum(1 for r in labelled if not r.detected and not r.manual_flag)
        fp = sum(1 for r in labelled if r.detected and not r.manual_flag)
        fn = sum(1 for r in labelled if not r.detected and r.manual_flag)
        precision = tp / (tp + fp) if tp + fp else None
        recall = tp / (tp + fn) if tp + fn else None
        f1 = (
            2 * precision * recall / (precision + recall)
            if precision is not None and recall is not None and precision + recall
            else None
        )
        metrics.update({
            "n_positive_manual": sum(1 for r in labelled if r.manual_flag),
            "n_negative_manual": sum(1 for r in labelled if not r.manual_flag),
            "n_true_positive": tp,
            "n_true_negative": tn,
            "n_false_positive": fp,
            "n_false_negative": fn,
            "accuracy": (tp + tn) / len(labelled),
            "precision": precision,
            "recall": recall,
            "f1": f1,
        })
    return metrics


def _now() -> str:
    return datetime.now(UTC).isoformat()
