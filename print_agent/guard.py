"""Exactly-once execution of jobs that can arrive by both push and pickup."""

import logging

logger = logging.getLogger(__name__)


class ProcessingGuard:
    """Tracks jobs in progress and jobs already done for one agent session.

    The sets outlive individual push connections, so a job pushed just before
    a reconnect and then picked up again is still only executed once.
    """

    def __init__(self):
        self._processing: set[int] = set()
        self._processed: set[int] = set()

    def admit(self, job_id: int, source: str = "") -> bool:
        if job_id in self._processing:
            logger.info("Job %s already processing; skipping %s copy", job_id, source or "duplicate")
            return False
        if job_id in self._processed:
            logger.info("Job %s already processed; skipping %s copy", job_id, source or "duplicate")
            return False
        self._processing.add(job_id)
        return True

    def complete(self, job_id: int) -> None:
        self._processing.discard(job_id)
        self._processed.add(job_id)

    def fail(self, job_id: int) -> None:
        # Failed jobs stay failed server-side; a requeue makes them ready again
        self._processing.discard(job_id)

    def is_processing(self, job_id: int) -> bool:
        return job_id in self._processing

    def is_processed(self, job_id: int) -> bool:
        return job_id in self._processed

    @property
    def processing(self) -> frozenset[int]:
        return frozenset(self._processing)

    @property
    def processed(self) -> frozenset[int]:
        return frozenset(self._processed)
