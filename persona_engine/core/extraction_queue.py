"""Background queue for post-turn memory extraction.

Extraction hits the generation backend, so it runs off the request path: the
orchestrator submits a job and returns immediately. A single worker drains
the queue in submission order. Failures are logged and kept in a bounded
in-memory log; they never reach the submitter.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from persona_engine.config import ENGINE_CONFIG
from persona_engine.core.curator import MemoryCurator
from persona_engine.models import ExtractionFailure, ExtractionJob

logger = logging.getLogger(__name__)


class ExtractionQueue:
    def __init__(self, curator: MemoryCurator, config: dict | None = None) -> None:
        self.curator = curator
        self.config = config or ENGINE_CONFIG
        self.failures: deque[ExtractionFailure] = deque(
            maxlen=self.config["extraction_failure_log_size"],
        )
        self.completed = 0
        self._queue: asyncio.Queue[ExtractionJob] | None = None
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker on the running event loop. Idempotent."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="memory-extraction")

    def submit(self, job: ExtractionJob) -> None:
        """Enqueue a job, starting the worker on first use."""
        if not self.running:
            self.start()
        self._queue.put_nowait(job)

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Drain outstanding jobs, then stop the worker."""
        if self._worker is None:
            return
        await self.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.curator.extract_from_exchange(
                    job.persona_id,
                    job.user_message,
                    job.assistant_reply,
                    source_turn_id=job.source_turn_id,
                )
                self.completed += 1
            except Exception as exc:
                logger.exception("Memory extraction failed for persona %s", job.persona_id)
                self.failures.append(ExtractionFailure(persona_id=job.persona_id, error=str(exc)))
            finally:
                self._queue.task_done()
