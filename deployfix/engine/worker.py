from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from deployfix.engine.queue import EventQueue, QueuedEvent
from deployfix.engine.steps import RetryPolicy, StepContext
from deployfix.errors import StepFailed
from deployfix.store.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FunctionDef:
    """
    One durable function: the handler runs once per event of `event`, at most `concurrency`
    at a time. `on_step_error` sees every failed step attempt; `on_failure` runs once when the
    whole run gives up (retries exhausted or non-retriable error).
    """

    id: str
    event: str
    handler: Callable[[QueuedEvent, StepContext], Any]
    concurrency: int = 10
    on_step_error: Optional[Callable[[QueuedEvent, str, int, BaseException], None]] = None
    on_failure: Optional[Callable[[QueuedEvent, BaseException], None]] = None


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    interval_s: float
    fn: Callable[[], Any]


def _error_message(e: BaseException) -> str:
    if isinstance(e, StepFailed):
        return e.error_message
    return str(e) or type(e).__name__


class Worker:
    """
    Polls the outbox and executes functions on a thread pool, bounded per function.

    `start()`/`stop()` tie the pool to the process lifecycle (app startup/shutdown).
    `drain()` processes everything synchronously on the calling thread; tests and one-shot
    scripts use it instead of the background loop.
    """

    def __init__(
        self,
        *,
        db: Database,
        queue: EventQueue,
        functions: Sequence[FunctionDef],
        policy: RetryPolicy,
        poll_interval_s: float = 0.5,
        lease_s: float = 900.0,
        periodic: Sequence[PeriodicJob] = (),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        names = [f.event for f in functions]
        if len(names) != len(set(names)):
            raise ValueError("one function per event name")
        self.db = db
        self.queue = queue
        self.functions: List[FunctionDef] = list(functions)
        self.policy = policy
        self.poll_interval_s = float(poll_interval_s)
        self.lease_s = float(lease_s)
        self.periodic = list(periodic)
        self._sleep = sleep
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._inflight: Dict[str, int] = {f.id: 0 for f in self.functions}
        self._last_periodic: Dict[str, float] = {}

    # ---------- lifecycle ----------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        max_workers = max(1, sum(max(1, f.concurrency) for f in self.functions))
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="deployfix-fn")
        self._thread = threading.Thread(target=self._run, name="deployfix-worker", daemon=True)
        self._thread.start()
        logger.info("worker started (%d functions, %d threads)", len(self.functions), max_workers)

    def stop(self, *, wait: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=10.0)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("worker stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                dispatched = self._dispatch_once()
                self._run_periodic()
            except Exception:  # noqa: BLE001
                # Keep the loop alive across transient DB errors (locked, disk hiccups).
                logger.exception("worker loop iteration failed")
                dispatched = 0
            if not dispatched:
                self._stop.wait(self.poll_interval_s)

    def _dispatch_once(self) -> int:
        assert self._executor is not None
        n = 0
        for fn in self.functions:
            with self._lock:
                capacity = fn.concurrency - self._inflight[fn.id]
            if capacity <= 0:
                continue
            for ev in self.queue.claim(fn.event, limit=capacity, lease_s=self.lease_s):
                with self._lock:
                    self._inflight[fn.id] += 1
                self._executor.submit(self._execute_tracked, fn, ev)
                n += 1
        return n

    def _execute_tracked(self, fn: FunctionDef, ev: QueuedEvent) -> None:
        try:
            self.execute(fn, ev)
        finally:
            with self._lock:
                self._inflight[fn.id] -= 1

    def _run_periodic(self, *, now: float | None = None) -> None:
        t = time.monotonic() if now is None else now
        for job in self.periodic:
            last = self._last_periodic.get(job.name)
            if last is not None and t - last < job.interval_s:
                continue
            self._last_periodic[job.name] = t
            try:
                job.fn()
            except Exception:  # noqa: BLE001
                logger.exception("periodic job %s failed", job.name)

    # ---------- execution ----------

    def execute(self, fn: FunctionDef, ev: QueuedEvent) -> None:
        on_error = None
        if fn.on_step_error is not None:
            hook = fn.on_step_error

            def on_error(step_name: str, attempt: int, exc: BaseException) -> None:
                hook(ev, step_name, attempt, exc)

        step = StepContext(db=self.db, event_id=ev.id, policy=self.policy, on_error=on_error, sleep=self._sleep)
        try:
            result = fn.handler(ev, step)
        except Exception as e:  # noqa: BLE001
            msg = _error_message(e)
            logger.error("function %s failed for event %s: %s", fn.id, ev.id, msg)
            if fn.on_failure is not None:
                try:
                    fn.on_failure(ev, e)
                except Exception:  # noqa: BLE001
                    logger.exception("on_failure hook of %s raised for event %s", fn.id, ev.id)
            self.queue.fail(ev.id, msg)
            return
        self.queue.complete(ev.id, result)

    def drain(self, *, max_rounds: int = 100) -> int:
        processed = 0
        for _ in range(max_rounds):
            round_n = 0
            for fn in self.functions:
                for ev in self.queue.claim(fn.event, limit=max(1, fn.concurrency), lease_s=self.lease_s):
                    self.execute(fn, ev)
                    round_n += 1
            processed += round_n
            if round_n == 0:
                break
        return processed
