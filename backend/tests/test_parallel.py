from __future__ import annotations

import threading
import time

from nvdrs_ipv.parallel import run_parallel_llm


def test_results_come_back_in_job_order() -> None:
    def slow_square(n):
        time.sleep(0.01 * (5 - n))
        return n * n

    assert run_parallel_llm(slow_square, range(5), max_concurrency=3) == [0, 1, 4, 9, 16]


def test_concurrency_is_bounded() -> None:
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def track(_):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.02)
        with lock:
            active["now"] -= 1

    run_parallel_llm(track, range(8), max_concurrency=2)

    assert active["peak"] <= 2


def test_single_worker_runs_inline() -> None:
    threads = []
    run_parallel_llm(lambda _: threads.append(threading.current_thread()), range(3), max_concurrency=1)

    assert set(threads) == {threading.main_thread()}
