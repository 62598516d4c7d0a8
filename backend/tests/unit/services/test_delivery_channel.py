"""Unit tests for the push channel session handling."""

import asyncio

import pytest
from starlette.websockets import WebSocketState

from backend.app.services.connection_registry import CLOSE_CODE_REPLACED
from backend.app.services.delivery_channel import (
    CLOSE_CODE_AUTH_FAILED,
    CLOSE_CODE_AUTH_TIMEOUT,
    ChannelState,
)
from backend.app.services.job_store import to_delivery
from backend.tests.conftest import FakeWebSocket


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_successful_authentication_registers_user(self, services, user_factory, connect_agent):
        user, api_key = await user_factory(username="alice")

        ws, _ = await connect_agent(api_key)

        reply = ws.events("authenticated")[0]
        assert reply["success"] is True
        assert reply["user_id"] == user.id
        assert reply["username"] == "alice"
        assert services.registry.lookup(user.id) == reply["connection_id"]
        assert services.channel.session(reply["connection_id"]).state == ChannelState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_invalid_key_is_rejected_and_closed(self, services, connect_agent):
        ws, task = await connect_agent("pb_not-a-real-key-at-all")
        await asyncio.wait_for(task, 1)

        reply = ws.events("authenticated")[0]
        assert reply["success"] is False
        assert reply["error"]
        assert ws.close_code == CLOSE_CODE_AUTH_FAILED
        assert len(services.registry) == 0

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected(self, services, fake_websocket, wait_until):
        ws = fake_websocket()
        task = asyncio.create_task(services.channel.serve(ws))
        ws.push({"type": "authenticate"})
        await asyncio.wait_for(task, 1)

        assert ws.events("authenticated")[0]["error"] == "API key required"
        assert ws.close_code == CLOSE_CODE_AUTH_FAILED

    @pytest.mark.asyncio
    async def test_disabled_account_is_told_so(self, services, user_factory, connect_agent):
        _, api_key = await user_factory(is_active=False)

        ws, task = await connect_agent(api_key)
        await asyncio.wait_for(task, 1)

        assert ws.events("authenticated")[0]["error"] == "User account is disabled"
        assert ws.close_code == CLOSE_CODE_AUTH_FAILED

    @pytest.mark.asyncio
    async def test_silent_connection_times_out(self, services, fake_websocket):
        ws = fake_websocket()

        await asyncio.wait_for(services.channel.serve(ws), 2)

        assert ws.events("auth_timeout")
        assert ws.close_code == CLOSE_CODE_AUTH_TIMEOUT
        assert services.channel.sessions() == []

    @pytest.mark.asyncio
    async def test_events_before_authentication_get_an_error(self, services, fake_websocket, wait_until):
        ws = fake_websocket()
        task = asyncio.create_task(services.channel.serve(ws))
        ws.push({"type": "job-received", "job_id": 1})
        ws.push({"type": "heartbeat"})

        await wait_until(lambda: ws.events("heartbeat-ack"))

        assert ws.events("error")[0]["message"] == "Not authenticated"
        ws.drop()
        await asyncio.wait_for(task, 1)


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_heartbeat_is_acknowledged(self, services, user_factory, connect_agent, wait_until):
        user, api_key = await user_factory()
        ws, _ = await connect_agent(api_key)
        services.registry.get(user.id).last_activity = 0.0

        ws.push({"type": "heartbeat"})
        await wait_until(lambda: ws.events("heartbeat-ack"))

        assert isinstance(ws.events("heartbeat-ack")[0]["timestamp"], int)
        assert services.registry.get(user.id).last_activity > 0.0

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_end_the_session(self, services, user_factory, connect_agent, wait_until):
        user, api_key = await user_factory()
        ws, task = await connect_agent(api_key)

        ws.push_raw("{not json")
        ws.push({"type": "teleport"})
        await wait_until(lambda: len(ws.events("error")) == 2)

        assert not task.done()
        assert services.registry.lookup(user.id) is not None

    @pytest.mark.asyncio
    async def test_binary_frame_is_answered_as_malformed(self, services, user_factory, connect_agent, wait_until):
        user, api_key = await user_factory()
        ws, task = await connect_agent(api_key)

        ws.push_bytes(b"\x00\x01")
        await wait_until(lambda: ws.events("error"))

        assert ws.events("error")[0]["message"] == "Malformed event"
        assert not task.done()
        assert services.registry.lookup(user.id) is not None

        ws.push({"type": "heartbeat"})
        await wait_until(lambda: ws.events("heartbeat-ack"))

    @pytest.mark.asyncio
    async def test_status_update_is_applied_and_acknowledged(
        self, services, user_factory, printer_factory, job_factory, connect_agent, wait_until
    ):
        user, api_key = await user_factory()
        printer = await printer_factory()
        job = await job_factory(user.id, printer.id)
        ws, _ = await connect_agent(api_key)

        ws.push({"type": "status-update", "job_id": job.id, "status": "completed"})
        await wait_until(lambda: ws.events("status-ack"))
        ws.push({"type": "status-update", "job_id": job.id, "status": "completed"})
        await wait_until(lambda: len(ws.events("status-ack")) == 2)

        first, second = ws.events("status-ack")
        assert first == {"type": "status-ack", "job_id": job.id, "status": "completed", "changed": True}
        assert second["changed"] is False
        assert (await services.job_store.get(job.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_status_update_for_foreign_job_is_an_error(
        self, services, user_factory, printer_factory, job_factory, connect_agent, wait_until
    ):
        owner, _ = await user_factory()
        _, intruder_key = await user_factory()
        printer = await printer_factory()
        job = await job_factory(owner.id, printer.id)
        ws, _ = await connect_agent(intruder_key)

        ws.push({"type": "status-update", "job_id": job.id, "status": "completed"})
        await wait_until(lambda: ws.events("error"))

        assert ws.events("error")[0]["job_id"] == job.id
        assert (await services.job_store.get(job.id)).status == "ready"

    @pytest.mark.asyncio
    async def test_disconnect_removes_mapping(self, services, user_factory, connect_agent):
        user, api_key = await user_factory()
        ws, task = await connect_agent(api_key)

        ws.drop()
        await asyncio.wait_for(task, 1)

        assert services.registry.get(user.id) is None
        assert services.channel.sessions() == []


class TestPush:
    @pytest.mark.asyncio
    async def test_push_moves_session_to_active_then_idle(
        self, services, user_factory, printer_factory, job_factory, connect_agent, wait_until
    ):
        user, api_key = await user_factory()
        printer = await printer_factory()
        job = await job_factory(user.id, printer.id)
        ws, _ = await connect_agent(api_key)
        connection_id = services.registry.lookup(user.id)
        job = await services.job_store.get(job.id)

        assert await services.channel.push_job(connection_id, to_delivery(job)) is True
        session = services.channel.session(connection_id)
        assert session.state == ChannelState.ACTIVE
        assert ws.events("job-ready")[0]["job"]["id"] == job.id

        ws.push({"type": "status-update", "job_id": job.id, "status": "completed"})
        await wait_until(lambda: ws.events("status-ack"))

        assert session.state == ChannelState.IDLE

    @pytest.mark.asyncio
    async def test_push_to_unknown_connection_fails(self, services, user_factory, printer_factory, job_factory):
        user, _ = await user_factory()
        printer = await printer_factory()
        job = await services.job_store.get((await job_factory(user.id, printer.id)).id)

        assert await services.channel.push_job("missing", to_delivery(job)) is False

    @pytest.mark.asyncio
    async def test_receipt_cancels_the_window(
        self, services, user_factory, printer_factory, job_factory, connect_agent, wait_until, capture_logs
    ):
        user, api_key = await user_factory()
        printer = await printer_factory()
        job = await services.job_store.get((await job_factory(user.id, printer.id)).id)
        ws, _ = await connect_agent(api_key)
        connection_id = services.registry.lookup(user.id)

        await services.channel.push_job(connection_id, to_delivery(job))
        assert services.channel.awaiting_receipt(job.id)

        ws.push({"type": "job-received", "job_id": job.id})
        await wait_until(lambda: not services.channel.awaiting_receipt(job.id))
        await asyncio.sleep(0.3)

        assert not any("No receipt" in r.getMessage() for r in capture_logs.get_warnings())

    @pytest.mark.asyncio
    async def test_missing_receipt_is_logged_and_job_stays_ready(
        self, services, user_factory, printer_factory, job_factory, connect_agent, wait_until, capture_logs
    ):
        user, api_key = await user_factory()
        printer = await printer_factory()
        job = await services.job_store.get((await job_factory(user.id, printer.id)).id)
        await connect_agent(api_key)
        connection_id = services.registry.lookup(user.id)

        await services.channel.push_job(connection_id, to_delivery(job))
        await wait_until(lambda: not services.channel.awaiting_receipt(job.id))

        assert any("No receipt" in r.getMessage() for r in capture_logs.get_warnings())
        assert [j.id for j in await services.job_store.list_ready(user.id)] == [job.id]

    @pytest.mark.asyncio
    async def test_settling_the_last_job_idles_the_session(
        self, services, user_factory, printer_factory, job_factory, connect_agent
    ):
        user, api_key = await user_factory()
        printer = await printer_factory()
        first = await services.job_store.get((await job_factory(user.id, printer.id)).id)
        second = await services.job_store.get((await job_factory(user.id, printer.id)).id)
        await connect_agent(api_key)
        connection_id = services.registry.lookup(user.id)
        session = services.channel.session(connection_id)

        await services.channel.push_job(connection_id, to_delivery(first))
        await services.channel.push_job(connection_id, to_delivery(second))

        services.channel.job_settled(first.id)
        assert session.state == ChannelState.ACTIVE
        assert session.in_flight == {second.id}

        services.channel.job_settled(second.id)
        services.channel.job_settled(second.id)
        assert session.state == ChannelState.IDLE
        assert session.in_flight == set()


class ServerClosedWebSocket(FakeWebSocket):
    """Reads after a server-side close fail the way Starlette's do."""

    async def receive(self):
        message = await super().receive()
        if self.application_state == WebSocketState.DISCONNECTED:
            raise RuntimeError('WebSocket is not connected. Need to call "accept" first.')
        return message


class TestServerSideClose:
    @pytest.mark.asyncio
    async def test_evicted_session_ends_without_error_logs(
        self, services, user_factory, connect_agent, wait_until, capture_logs
    ):
        _, api_key = await user_factory()
        old_ws = ServerClosedWebSocket()
        old_task = asyncio.create_task(services.channel.serve(old_ws))
        old_ws.push({"type": "authenticate", "api_key": api_key})
        await wait_until(lambda: old_ws.events("authenticated"))

        await connect_agent(api_key)
        await asyncio.wait_for(old_task, 1)

        assert old_ws.close_code == CLOSE_CODE_REPLACED
        assert not capture_logs.has_errors(), capture_logs.format_errors()
        assert any("closed by server" in r.getMessage() for r in capture_logs.records)
        assert len(services.channel.sessions()) == 1
