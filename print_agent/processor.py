import logging

import httpx

from backend.app.schemas.print_job import PrintJobDelivery
from print_agent.api import PrintBridgeClient, StatusRejected
from print_agent.guard import ProcessingGuard
from print_agent.renderer import RenderAgent, RenderError

logger = logging.getLogger(__name__)


class JobProcessor:
    """Runs one job through guard, status reports and the render agent.

    Push and pickup both end up here; the guard decides which copy runs.
    """

    def __init__(self, guard: ProcessingGuard, renderer: RenderAgent, client: PrintBridgeClient):
        self.guard = guard
        self._renderer = renderer
        self._client = client

    async def process(self, job: PrintJobDelivery, source: str) -> bool:
        """Returns True if this call executed the job (successfully or not)."""
        if not self.guard.admit(job.id, source):
            return False

        logger.info("Processing job %s '%s' (via %s)", job.id, job.document_name, source)
        try:
            await self._client.update_status(job.id, "processing")
        except StatusRejected as e:
            # Already settled elsewhere
            logger.info("Not printing job %s: %s", job.id, e.detail)
            self.guard.complete(job.id)
            return False
        except httpx.HTTPError as e:
            logger.warning("Could not report job %s as processing: %s", job.id, e)

        try:
            await self._renderer.render(job)
        except RenderError as e:
            logger.error("Job %s failed: %s", job.id, e)
            self.guard.fail(job.id)
            await self._report(job.id, "failed", str(e))
            return True
        except Exception as e:
            logger.error("Job %s failed unexpectedly: %s", job.id, e, exc_info=True)
            self.guard.fail(job.id)
            await self._report(job.id, "failed", f"Unexpected error: {e}")
            return True

        self.guard.complete(job.id)
        await self._report(job.id, "completed")
        logger.info("Job %s completed", job.id)
        return True

    async def _report(self, job_id: int, status: str, error: str | None = None) -> None:
        try:
            await self._client.update_status(job_id, status, error)
        except (StatusRejected, httpx.HTTPError) as e:
            logger.warning("Could not report job %s as %s: %s", job_id, status, e)
