import logging

import httpx

from backend.app.schemas.print_job import PrintJobDelivery
from print_agent.config import AgentSettings

logger = logging.getLogger(__name__)


class StatusRejected(Exception):
    """The server refused a status report (unknown job or invalid transition)."""

    def __init__(self, job_id: int, status: str, detail: str):
        super().__init__(f"Status {status} for job {job_id} rejected: {detail}")
        self.job_id = job_id
        self.status = status
        self.detail = detail


class PrintBridgeClient:
    """HTTP side of the agent: pickup and status reporting."""

    def __init__(self, settings: AgentSettings, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.api_base_url,
                headers={"X-API-Key": self._settings.api_key},
                timeout=self._settings.request_timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def list_ready(self) -> list[PrintJobDelivery]:
        response = await self._get_client().get("/print-jobs/pending")
        response.raise_for_status()
        return [PrintJobDelivery.model_validate(item) for item in response.json()]

    async def update_status(self, job_id: int, status: str, error: str | None = None) -> bool:
        """Report a status. Returns whether the server changed anything."""
        payload = {"status": status}
        if error:
            payload["error"] = error
        response = await self._get_client().put(f"/print-jobs/{job_id}/status", json=payload)
        if response.status_code in (400, 404):
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise StatusRejected(job_id, status, str(detail))
        response.raise_for_status()
        return bool(response.json().get("changed", False))

    async def sync_printers(self, printers: list[dict]) -> dict:
        response = await self._get_client().post("/printers/sync", json={"printers": printers})
        response.raise_for_status()
        return response.json()
