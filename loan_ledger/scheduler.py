"""
Background Scheduler Module

Runs periodic ledger maintenance (credit score refresh, overdue sweeps) on a
small worker pool, independently of foreground requests.

A task never overlaps with itself: if its previous run is still going when
it comes due again, the new run is skipped. A task that raises is logged and
counted; the scheduler keeps going. Shutdown is cooperative: tasks receive a
``should_stop`` callable and are expected to check it between units of work.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .clock import Clock, SystemClock
from .exceptions import NotFoundError, ValidationError

logger = logging.getLogger("ledger.scheduler")

StopCheck = Callable[[], bool]


@dataclass
class PeriodicTask:
    """A unit of background work and its run statistics"""
    name: str
    interval_seconds: float
    func: Callable[[StopCheck], Any]
    run_immediately: bool = False

    next_run_at: Optional[datetime] = None
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    running: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'interval_seconds': self.interval_seconds,
            'next_run_at': self.next_run_at.isoformat() if self.next_run_at else None,
            'last_started_at': self.last_started_at.isoformat() if self.last_started_at else None,
            'last_finished_at': self.last_finished_at.isoformat() if self.last_finished_at else None,
            'last_error': self.last_error,
            'runs': self.runs,
            'failures': self.failures,
            'skipped': self.skipped,
            'running': self.running
        }


class BackgroundScheduler:
    """
    Periodic task runner backed by a thread pool

    ``start()`` launches a daemon thread that wakes every ``poll_interval``
    seconds and submits due tasks to the pool. ``tick()`` does one such
    pass synchronously, which is how tests drive it with a FixedClock.
    """

    def __init__(self, max_workers: int = 2, clock: Optional[Clock] = None,
                 poll_interval: float = 1.0):
        if max_workers < 1:
            raise ValidationError("Scheduler needs at least one worker")
        self.max_workers = max_workers
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval

        self._tasks: Dict[str, PeriodicTask] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    def add_task(self, name: str, interval_seconds: float, func: Callable[[StopCheck], Any],
                 run_immediately: bool = False) -> PeriodicTask:
        """Register a task; it first runs one interval from now unless ``run_immediately``"""
        if interval_seconds <= 0:
            raise ValidationError(f"Task interval must be positive, got {interval_seconds}")
        with self._lock:
            if name in self._tasks:
                raise ValidationError(f"Task {name} already registered")
            task = PeriodicTask(name=name, interval_seconds=interval_seconds, func=func,
                                run_immediately=run_immediately)
            task.next_run_at = self._first_run(task)
            self._tasks[name] = task
        logger.debug(f"Registered task {name} every {interval_seconds}s")
        return task

    def get_task(self, name: str) -> PeriodicTask:
        with self._lock:
            task = self._tasks.get(name)
        if task is None:
            raise NotFoundError(f"Task {name} not registered")
        return task

    def _first_run(self, task: PeriodicTask) -> datetime:
        now = self.clock.now()
        return now if task.run_immediately else now + timedelta(seconds=task.interval_seconds)

    # Lifecycle

    def start(self) -> None:
        """Start the polling thread and worker pool"""
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                thread_name_prefix="ledger-worker")
            for task in self._tasks.values():
                task.next_run_at = self._first_run(task)
            self._thread = threading.Thread(target=self._loop, name="ledger-scheduler", daemon=True)
            self._thread.start()
        logger.info(f"Scheduler started with {len(self._tasks)} tasks and {self.max_workers} workers")

    def stop(self, timeout: float = 30.0) -> bool:
        """
        Request shutdown and wait for running tasks

        Running tasks see ``should_stop()`` turn true and finish their current
        unit of work. Returns False if any task was still running at timeout.
        """
        self._stop_event.set()
        deadline = time.monotonic() + timeout

        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

        with self._lock:
            pending = [f for f in self._futures.values() if not f.done()]
            executor = self._executor
            self._executor = None

        remaining = max(0.0, deadline - time.monotonic())
        _, not_done = wait(pending, timeout=remaining) if pending else (set(), set())
        if executor is not None:
            executor.shutdown(wait=False)

        if not_done:
            logger.warning(f"Scheduler stopped with {len(not_done)} tasks still running")
            return False
        logger.info("Scheduler stopped")
        return True

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}", exc_info=True)
            self._stop_event.wait(self.poll_interval)

    # Dispatch

    def tick(self) -> List[str]:
        """Submit every due task once; returns the names submitted"""
        if self._stop_event.is_set():
            return []
        now = self.clock.now()
        submitted = []
        with self._lock:
            for task in self._tasks.values():
                if task.next_run_at is None or task.next_run_at > now:
                    continue
                task.next_run_at = now + timedelta(seconds=task.interval_seconds)
                if not self._claim(task):
                    continue
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                        thread_name_prefix="ledger-worker")
                self._futures[task.name] = self._executor.submit(self._execute, task)
                submitted.append(task.name)
        return submitted

    def run_task_now(self, name: str) -> Any:
        """
        Run a task synchronously on the calling thread

        Returns the task's result, or None when the task is already running
        and this call was skipped.
        """
        task = self.get_task(name)
        with self._lock:
            if not self._claim(task):
                return None
        self._execute(task)
        return task.last_result

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until submitted runs finish"""
        with self._lock:
            pending = [f for f in self._futures.values() if not f.done()]
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _claim(self, task: PeriodicTask) -> bool:
        if task.running:
            task.skipped += 1
            logger.info(f"Task {task.name} still running, skipping this run")
            return False
        task.running = True
        return True

    def _execute(self, task: PeriodicTask) -> None:
        task.last_started_at = self.clock.now()
        logger.debug(f"Task {task.name} started")
        try:
            task.last_result = task.func(self.should_stop)
            task.last_error = None
            task.runs += 1
        except Exception as e:
            task.failures += 1
            task.last_error = str(e)
            logger.error(f"Task {task.name} failed: {e}", exc_info=True)
        finally:
            task.last_finished_at = self.clock.now()
            with self._lock:
                task.running = False

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'running': self.is_running,
                'stopping': self._stop_event.is_set(),
                'max_workers': self.max_workers,
                'tasks': {name: task.to_dict() for name, task in self._tasks.items()}
            }


def build_default_scheduler(system) -> BackgroundScheduler:
    """Scheduler with the ledger's standard maintenance tasks"""
    config = system.config
    scheduler = BackgroundScheduler(max_workers=config.scheduler_max_workers, clock=system.clock)
    scheduler.add_task(
        "credit_refresh",
        config.credit_refresh_interval_seconds,
        lambda should_stop: system.credit_engine.refresh_all(should_stop=should_stop)
    )
    scheduler.add_task(
        "credit_queue",
        config.credit_queue_interval_seconds,
        lambda should_stop: system.credit_engine.process_pending_updates(should_stop=should_stop)
    )
    scheduler.add_task(
        "overdue_sweep",
        config.overdue_sweep_interval_seconds,
        lambda should_stop: system.overdue_processor.run_sweep(should_stop=should_stop),
        run_immediately=True
    )
    return scheduler
