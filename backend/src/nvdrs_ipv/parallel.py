"""Shared parallel LLM execution utility."""

import logging
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)


def run_parallel_llm(invoke_fn, jobs, max_concurrency):
    """Execute LLM calls on a bounded thread pool and return results in job order.

    Args:
        invoke_fn: callable(job) -> result. Must not raise; the LLM client
            reports failures inside its return value.
        jobs: iterable of job arguments, one per call.
        max_concurrency: maximum concurrent threads. 1 runs inline.

    Only the calls run in worker threads. The caller consumes the returned
    list on its own thread, so all database writes stay single-threaded.
    """
    jobs = list(jobs)
    if max_concurrency <= 1 or len(jobs) <= 1:
        return [invoke_fn(job) for job in jobs]

    workers = min(max_concurrency, len(jobs))
    logger.info("Submitting %d parallel LLM calls (concurrency=%d)", len(jobs), workers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(invoke_fn, jobs))
