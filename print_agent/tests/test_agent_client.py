"""Tests for the agent's HTTP client against a mocked transport."""

import json

import httpx
import pytest

from print_agent.api import PrintBridgeClient, StatusRejected
from print_agent.config import AgentSettings

SETTINGS = AgentSettings(server_url="http://printbridge.test", api_key="pb_clientkey12345")


def _delivery(job_id: int) -> dict:
    return {
        "id": job_id,
        "document_name": "invoice.pdf",
        "document_url": "https://files.example.com/invoice.pdf",
        "source_type": "url",
        "printer_id": 1,
        "printer_name": "Office",
        "printer_unique_id": "office",
        "status": "ready",
        "copies": 1,
        "duplex": False,
        "orientation": "portrait",
        "render_payload": None,
        "created_at": "2026-01-05T10:00:00Z",
    }


class TestPrintBridgeClient:
    @pytest.mark.asyncio
    async def test_list_ready_sends_api_key(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[_delivery(1), _delivery(2)])

        client = PrintBridgeClient(SETTINGS, transport=httpx.MockTransport(handler))
        jobs = await client.list_ready()
        await client.close()

        assert [job.id for job in jobs] == [1, 2]
        assert str(seen[0].url) == "http://printbridge.test/api/v1/print-jobs/pending"
        assert seen[0].headers["X-API-Key"] == "pb_clientkey12345"

    @pytest.mark.asyncio
    async def test_update_status_returns_changed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            assert json.loads(request.content) == {"status": "failed", "error": "Out of paper"}
            return httpx.Response(200, json={"job": {}, "changed": True})

        client = PrintBridgeClient(SETTINGS, transport=httpx.MockTransport(handler))

        assert await client.update_status(4, "failed", "Out of paper") is True
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404])
    async def test_rejected_status_raises(self, status_code):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={"detail": "cannot move from completed to processing"})

        client = PrintBridgeClient(SETTINGS, transport=httpx.MockTransport(handler))

        with pytest.raises(StatusRejected) as exc_info:
            await client.update_status(4, "processing")
        await client.close()

        assert exc_info.value.job_id == 4
        assert "cannot move" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_server_error_propagates(self):
        client = PrintBridgeClient(SETTINGS, transport=httpx.MockTransport(lambda request: httpx.Response(503)))

        with pytest.raises(httpx.HTTPStatusError):
            await client.update_status(4, "completed")
        await client.close()
