"""Async job execution engine."""

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from concurrent.futures import Future, ThreadPoolExecutor

from refinery.jobs.manager import JobManager
from refinery.jobs.models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)

# Type for job execution functions
JobExecutorFunc = Callable[[Job], None]
AsyncJobExecutorFunc = Callable[[Job], Awaitable[None]]


class JobExecutor:
    """Executes jobs on a thread pool with status tracking.

    Jobs are persisted before they run. A worker thread hands pending jobs to
    the pool; async handlers get a fresh event loop via ``asyncio.run``.
    """

    def __init__(self, job_manager: JobManager, max_workers: int = 4):
        """Initialize JobExecutor.

        Args:
            job_manager: JobManager instance for job persistence
            max_workers: Maximum number of concurrent workers
        """
        self.job_manager = job_manager
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._running = False
        self._job_handlers: dict[JobType, JobExecutorFunc] = {}
        self._async_job_handlers: dict[JobType, AsyncJobExecutorFunc] = {}
        self._worker_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        # Wakes the worker immediately when a new job is submitted
        self._new_job_event = threading.Event()
        self._futures: dict[str, Future] = {}
        self._futures_cond = threading.Condition()

    def register_handler(self, job_type: JobType, handler: JobExecutorFunc) -> None:
        """Register a synchronous job handler."""
        self._job_handlers[job_type] = handler
        logger.info(f"Registered sync handler for job type: {job_type}")

    def register_async_handler(
        self, job_type: JobType, handler: AsyncJobExecutorFunc
    ) -> None:
        """Register an asynchronous job handler."""
        self._async_job_handlers[job_type] = handler
        logger.info(f"Registered async handler for job type: {job_type}")

    def has_handler(self, job_type: JobType) -> bool:
        return job_type in self._job_handlers or job_type in self._async_job_handlers

    def start(self) -> None:
        """Start the worker thread, re-queuing jobs interrupted by a crash."""
        if self._running:
            logger.warning("JobExecutor is already running")
            return

        self.job_manager.requeue_interrupted_jobs()

        self._running = True
        self._stop_event.clear()
        self._new_job_event.set()
        self._worker_thread = threading.Thread(target=self._worker_loop, daemon=True)
        self._worker_thread.start()
        logger.info("JobExecutor started")

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the job executor and wait for current jobs to finish."""
        if not self._running:
            return

        logger.info("Stopping JobExecutor...")
        self._running = False
        self._stop_event.set()
        self._new_job_event.set()

        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=timeout)

        self._executor.shutdown(wait=True)
        with self._futures_cond:
            self._futures_cond.notify_all()
        logger.info("JobExecutor stopped")

    def submit_job(
        self,
        job_type: JobType,
        plan_id: str | None = None,
        message: str = "",
    ) -> Job:
        """Submit a new job for execution.

        Raises:
            ValueError: If no handler is registered for the job type
        """
        if not self.has_handler(job_type):
            raise ValueError(f"No handler registered for job type: {job_type}")

        job = self.job_manager.create_job(job_type, plan_id, message)
        logger.info(f"Submitted job {job.job_id} for execution")
        self._new_job_event.set()
        return job

    def cancel_job(self, job_id: str) -> bool:
        """Mark a job cancelled.

        A running handler is not interrupted; it is expected to observe its
        own cancellation signal and return early.
        """
        return self.job_manager.cancel_job(job_id)

    def _worker_loop(self) -> None:
        """Main worker loop that hands pending jobs to the pool."""
        logger.info("Worker loop started")

        while self._running:
            # Clear before reading so a submit racing with the scan re-wakes us
            self._new_job_event.clear()
            try:
                for job in self.job_manager.get_pending_jobs():
                    if not self._running:
                        break

                    with self._futures_cond:
                        existing = self._futures.get(job.job_id)
                        if existing is not None and not existing.done():
                            continue
                        self._futures[job.job_id] = self._executor.submit(
                            self._execute_job, job
                        )
                        self._futures_cond.notify_all()

            except Exception as e:
                logger.error(f"Error in worker loop: {e}")

            if self._stop_event.is_set():
                break
            self._new_job_event.wait()

        logger.info("Worker loop stopped")

    def _execute_job(self, job: Job) -> None:
        """Execute a single job and record its outcome."""
        try:
            current = self.job_manager.get_job(job.job_id)
            if current is None or current.status != JobStatus.PENDING:
                logger.info(f"Skipping job {job.job_id}: no longer pending")
                return

            job.start("Executing job")
            self.job_manager.update_job(job)
            logger.info(f"Started executing job {job.job_id} ({job.type.value})")

            if job.type in self._job_handlers:
                self._job_handlers[job.type](job)
            elif job.type in self._async_job_handlers:
                asyncio.run(self._async_job_handlers[job.type](job))
            else:
                raise ValueError(f"No handler found for job type: {job.type}")

            current = self.job_manager.get_job(job.job_id)
            if current and current.status != JobStatus.CANCELLED:
                job.complete("Job completed successfully")
                self.job_manager.update_job(job)
                logger.info(f"Completed job {job.job_id}")
            else:
                logger.info(f"Job {job.job_id} finished after cancellation")

        except Exception as e:
            logger.error(f"Job {job.job_id} failed: {e}")
            current = self.job_manager.get_job(job.job_id)
            if current and current.is_active:
                job.fail(str(e))
                self.job_manager.update_job(job)
            raise

    def wait_for_job(self, job_id: str, timeout: float | None = 30.0) -> None:
        """Block until the job's handler has finished executing.

        Re-raises the handler's exception, if any.
        """
        with self._futures_cond:
            fut = self._futures.get(job_id)
            while fut is None and self._running:
                if not self._futures_cond.wait(timeout=timeout):
                    logger.warning(f"Timeout waiting for job {job_id} to be scheduled")
                    return
                fut = self._futures.get(job_id)
        if fut is not None:
            fut.result(timeout=timeout)

    @property
    def is_running(self) -> bool:
        """Check if the executor is currently running."""
        return self._running

    def get_stats(self) -> dict:
        """Get executor statistics."""
        stats = self.job_manager.get_job_statistics()
        stats.update({"max_workers": self.max_workers, "is_running": self._running})
        return stats
