from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Dict


@dataclass
class Job:
    job_id: str
    kind: str
    created_at: float
    task: asyncio.Task


def generate_job_id(kind: str) -> str:
    return f"{kind}_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


class BackgroundJobs:
    """Fire-and-forget task registry.

    Spawners never await the result. The registry keeps a strong reference
    to each task until it finishes (asyncio only holds weak ones) and logs
    any failure, since nobody else will look at the exception.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._shutting_down = False

    def spawn(self, kind: str, coro: Awaitable[Any]) -> Job:
        if self._shutting_down:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError("Shutting down; refusing new background jobs.")
        job_id = generate_job_id(kind)
        task = asyncio.ensure_future(coro)
        job = Job(job_id=job_id, kind=kind, created_at=time.time(), task=task)
        self._jobs[job_id] = job
        task.add_done_callback(lambda t: self._finished(job_id, t))
        return job

    def _finished(self, job_id: str, task: asyncio.Task) -> None:
        job = self._jobs.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logging.error(
                "Background job %s failed",
                job_id,
                exc_info=exc,
                extra={"operation": job.kind if job else "unknown"},
            )

    def active(self, kind: str | None = None) -> int:
        return sum(1 for job in self._jobs.values() if kind is None or job.kind == kind)

    async def wait_idle(self, *, timeout_s: float = 30.0) -> None:
        """Wait until every job, including ones spawned meanwhile, is done."""
        deadline = time.monotonic() + timeout_s
        while self._jobs:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise asyncio.TimeoutError("Background jobs still running")
            tasks = [job.task for job in self._jobs.values()]
            await asyncio.wait(tasks, timeout=remaining)
            # let done-callbacks run
            await asyncio.sleep(0)

    async def shutdown(self, *, timeout_s: float = 5.0) -> None:
        self._shutting_down = True
        tasks = [job.task for job in self._jobs.values()]
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        try:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout_s)
        except asyncio.TimeoutError:
            logging.warning("Background jobs did not stop within %.1fs", timeout_s)
