"""Tests for running a job through guard, status reports and renderer."""

from unittest.mock import AsyncMock, call

import httpx
import pytest

from backend.app.schemas.print_job import PrintJobDelivery
from print_agent.api import StatusRejected
from print_agent.guard import ProcessingGuard
from print_agent.processor import JobProcessor
from print_agent.renderer import DryRunRenderAgent, RenderAgent, RenderError


def _job(job_id: int = 1, **kwargs) -> PrintJobDelivery:
    defaults = {
        "id": job_id,
        "document_name": "invoice.pdf",
        "document_url": "https://files.example.com/invoice.pdf",
        "source_type": "url",
        "printer_id": 1,
        "printer_name": "Front Desk",
        "printer_unique_id": "front-desk",
        "status": "ready",
        "copies": 1,
        "duplex": False,
        "orientation": "portrait",
        "render_payload": {"printer": "Front Desk", "data": [{"type": "pixel", "flavor": "file"}]},
    }
    defaults.update(kwargs)
    return PrintJobDelivery(**defaults)


class FailingRenderAgent(RenderAgent):
    def __init__(self, error: Exception):
        self.error = error

    async def render(self, job):
        raise self.error


@pytest.fixture
def client():
    mock = AsyncMock()
    mock.update_status.return_value = True
    return mock


class TestJobProcessor:
    @pytest.mark.asyncio
    async def test_successful_job_reports_processing_then_completed(self, client):
        renderer = DryRunRenderAgent()
        processor = JobProcessor(ProcessingGuard(), renderer, client)

        executed = await processor.process(_job(5), "push")

        assert executed is True
        assert renderer.rendered == [5]
        assert client.update_status.await_args_list == [call(5, "processing"), call(5, "completed")]
        assert processor.guard.is_processed(5)

    @pytest.mark.asyncio
    async def test_duplicate_copy_is_skipped(self, client):
        renderer = DryRunRenderAgent()
        processor = JobProcessor(ProcessingGuard(), renderer, client)

        await processor.process(_job(5), "push")
        executed = await processor.process(_job(5), "pickup")

        assert executed is False
        assert renderer.rendered == [5]

    @pytest.mark.asyncio
    async def test_render_error_reports_failed(self, client):
        processor = JobProcessor(ProcessingGuard(), FailingRenderAgent(RenderError("Paper jam")), client)

        executed = await processor.process(_job(8), "pickup")

        assert executed is True
        client.update_status.assert_awaited_with(8, "failed", "Paper jam")
        assert not processor.guard.is_processing(8)
        assert not processor.guard.is_processed(8)

    @pytest.mark.asyncio
    async def test_unexpected_error_reports_failed(self, client):
        processor = JobProcessor(ProcessingGuard(), FailingRenderAgent(KeyError("data")), client)

        await processor.process(_job(9), "push")

        status, error = client.update_status.await_args.args[1:]
        assert status == "failed"
        assert error.startswith("Unexpected error")

    @pytest.mark.asyncio
    async def test_job_settled_elsewhere_is_not_printed(self, client):
        client.update_status.side_effect = StatusRejected(4, "processing", "cannot move from completed")
        renderer = DryRunRenderAgent()
        processor = JobProcessor(ProcessingGuard(), renderer, client)

        executed = await processor.process(_job(4), "pickup")

        assert executed is False
        assert renderer.rendered == []
        assert processor.guard.is_processed(4)

    @pytest.mark.asyncio
    async def test_unreachable_server_does_not_stop_printing(self, client):
        client.update_status.side_effect = httpx.ConnectError("connection refused")
        renderer = DryRunRenderAgent()
        processor = JobProcessor(ProcessingGuard(), renderer, client)

        executed = await processor.process(_job(6), "push")

        assert executed is True
        assert renderer.rendered == [6]
        assert processor.guard.is_processed(6)
