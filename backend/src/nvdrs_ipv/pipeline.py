"""
Batch classification run: narratives in, one stored result per narrative out.

``run`` registers the prompt, starts (or resumes) an experiment, and walks
the narratives in fixed-size batches. For each batch it skips keys already
stored, short-circuits empty narratives, calls the LLM for the rest, parses
the responses and writes the whole batch in one transaction. Progress is
recorded after every committed batch, so an interrupted run can be resumed
by experiment id without repeating finished work. A run holds the
experiment's resume lock while it writes, so two processes never work on
the same experiment at once.

An unexpected exception propagates and leaves the experiment ``running``.
"""

import logging
from itertools import islice

from nvdrs_ipv.config import Config
from nvdrs_ipv.experiments import ExperimentStateError, ExperimentTracker
from nvdrs_ipv.llm_client import LLMClient, render_user_prompt
from nvdrs_ipv.parallel import run_parallel_llm
from nvdrs_ipv.response_parser import is_empty_narrative, parse_invocation, skipped_empty_result
from nvdrs_ipv.schemas import Narrative, ResponseSchema, RunSummary
from nvdrs_ipv.storage import IPVStorage

logger = logging.getLogger(__name__)


def _batches(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def run(
    config: Config,
    narratives,
    *,
    storage: IPVStorage | None = None,
    client=None,
    experiment_id: str | None = None,
    should_stop=None,
) -> RunSummary:
    """Classify ``narratives`` and persist one result per (case, narrative type).

    Args:
        config: validated pipeline configuration.
        narratives: iterable of Narrative; consumed once, in order.
        storage: open storage; by default one is opened from
            ``config.storage.database_url`` and closed on return.
        client: anything with ``invoke(system_prompt, user_prompt)``
            returning a ModelInvocation; defaults to an LLMClient.
        experiment_id: resume this experiment instead of starting a new one.
        should_stop: optional callable checked between batches; returning
            True ends the run early with the experiment left ``running``.
    """
    owns_storage = storage is None
    if owns_storage:
        storage = IPVStorage(config.storage.database_url)
    try:
        return _run(config, narratives, storage, client or LLMClient(config.llm), experiment_id, should_stop)
    finally:
        if owns_storage:
            storage.close()


def _run(config, narratives, storage, client, experiment_id, should_stop) -> RunSummary:
    pipeline_cfg = config.pipeline
    prompt_cfg = config.prompt
    tracker = ExperimentTracker(storage)

    prompt_id = tracker.register_prompt(
        prompt_cfg.system_prompt, prompt_cfg.user_template, prompt_cfg.version_tag
    )

    if pipeline_cfg.max_items is not None:
        items: list[Narrative] = list(islice(narratives, pipeline_cfg.max_items))
    else:
        items = list(narratives)

    if experiment_id:
        experiment = tracker.get(experiment_id)
        if experiment.status == "failed":
            raise ExperimentStateError(f"Experiment {experiment_id} has failed and cannot be resumed")
        if experiment.prompt_version_id != prompt_id:
            raise ValueError(
                f"Experiment {experiment_id} used prompt {experiment.prompt_version_id}, "
                f"configured prompt is {prompt_id}"
            )
        logger.info("Resuming experiment %s (%d results stored)",
                    experiment_id, storage.count_results(experiment_id))
    else:
        experiment_id = tracker.start(
            name=config.experiment.name,
            model=config.llm.model,
            prompt_version_id=prompt_id,
            n_total=len(items),
            dataset_name=config.experiment.dataset_name,
            notes=config.experiment.notes,
        )

    with tracker.locked(experiment_id):
        return _process(config, items, storage, client, tracker, experiment_id, should_stop)


def _process(config, items, storage, client, tracker, experiment_id, should_stop) -> RunSummary:
    pipeline_cfg = config.pipeline
    prompt_cfg = config.prompt
    summary = {
        "processed": 0,
        "skipped_duplicate": 0,
        "skipped_empty": 0,
        "errored": 0,
        "llm_failures": 0,
        "parse_failures": 0,
        "stopped_early": False,
    }
    schema = ResponseSchema(indicator_fields=tuple(prompt_cfg.indicator_fields))
    completed = storage.get_completed_keys(experiment_id)

    def classify(narrative: Narrative):
        user_prompt = render_user_prompt(prompt_cfg.user_template, narrative.raw_text)
        return client.invoke(prompt_cfg.system_prompt, user_prompt)

    for index, batch in enumerate(_batches(items, pipeline_cfg.batch_size)):
        if index > 0 and should_stop is not None and should_stop():
            logger.info("Stop requested; ending run after %d batches", index)
            summary["stopped_early"] = True
            break

        parsed_by_key = {}
        to_call = []
        for narrative in batch:
            if narrative.key in completed:
                summary["skipped_duplicate"] += 1
            elif is_empty_narrative(narrative.raw_text, pipeline_cfg.min_narrative_chars):
                parsed_by_key[narrative.key] = skipped_empty_result()
                summary["skipped_empty"] += 1
            else:
                to_call.append(narrative)

        invocations = run_parallel_llm(classify, to_call, pipeline_cfg.max_concurrency)
        for narrative, invocation in zip(to_call, invocations):
            parsed = parse_invocation(invocation, schema)
            if not invocation.ok:
                summary["llm_failures"] += 1
            elif parsed.parse_status == "failed":
                summary["parse_failures"] += 1
            parsed_by_key[narrative.key] = parsed

        records = [
            {
                "experiment_id": experiment_id,
                "case_id": n.case_id,
                "narrative_type": n.narrative_type,
                "parsed": parsed_by_key[n.key],
                "row_num": n.row_num,
                "narrative_text": n.raw_text,
                "manual_flag": n.manual_flag,
            }
            for n in batch
            if n.key in parsed_by_key
        ]
        if records:
            outcome = storage.store_batch(records)
            summary["processed"] += outcome.inserted
            summary["skipped_duplicate"] += outcome.duplicates
            summary["errored"] += outcome.errors
            # Keys that failed to store stay eligible for a later attempt.
            completed = storage.get_completed_keys(experiment_id)

        tracker.update_progress(experiment_id, storage.count_results(experiment_id))
        logger.info(
            "Batch %d: %d stored, %d duplicates, %d empty, %d errors so far",
            index + 1, summary["processed"], summary["skipped_duplicate"],
            summary["skipped_empty"], summary["errored"],
        )

    if summary["stopped_early"]:
        status = tracker.get(experiment_id).status
    else:
        status = tracker.complete(experiment_id).status

    result = RunSummary(experiment_id=experiment_id, status=status, n_total=len(items), **summary)
    logger.info(
        "Run %s finished (%s): %d processed, %d duplicates, %d empty, %d errors, "
        "%d LLM failures, %d parse failures",
        experiment_id, status, result.processed, result.skipped_duplicate, result.skipped_empty,
        result.errored, result.llm_failures, result.parse_failures,
    )
    return result
