"""Tests for the protocol session against the scripted fake server."""

import asyncio
import logging
from contextlib import asynccontextmanager

import pytest

from vlsclient.errors import (
    InitializeError,
    LanguageClientError,
    ResponseError,
    SessionClosed,
    SpawnError,
)
from vlsclient.config import ServerOptions
from vlsclient.host import Settings
from vlsclient.process import ProcessSupervisor
from vlsclient.session import ProtocolSession, SessionState
from tests.utils import methods_of, wait_for_state, wait_until


@asynccontextmanager
async def new_session(configuration, settings=None):
    """Yield an unstarted session and make sure its server is gone afterwards."""
    supervisor = ProcessSupervisor()
    session = ProtocolSession(supervisor, configuration, settings)
    try:
        yield session
    finally:
        await session.stop()
        if session.handle is not None:
            await supervisor.terminate(session.handle, grace_period=2)


def session_errors(caplog):
    return [r for r in caplog.records if r.name == "vlsclient.session" and r.levelno >= logging.ERROR]


@pytest.mark.asyncio
async def test_start_negotiates_capabilities(make_configuration, tmp_path):
    async with new_session(make_configuration()) as session:
        capabilities = await session.start()

        assert session.state is SessionState.READY
        assert capabilities == {"textDocumentSync": 1, "hoverProvider": True}
        assert session.server_capabilities == capabilities
        assert session.server_info == {"name": "fake-vls", "version": "0.0.1"}

        received = await session.request("test/received")
        assert methods_of(received) == ["initialize", "initialized", "workspace/didChangeConfiguration"]

        params = received[0]["params"]
        assert params["rootPath"] == str(tmp_path)
        assert params["rootUri"].startswith("file://")
        assert params["capabilities"]["experimental"] == {
            "documentSelector": [{"language": "volt"}],
            "configurationSection": "volt",
        }
        assert received[2]["params"] == {"settings": {"volt": None}}


@pytest.mark.asyncio
async def test_traffic_before_ready_is_sent_after_initialized(make_configuration):
    settings = Settings({"volt": {"trace": "verbose"}})
    async with new_session(make_configuration("--init-delay", "0.3"), settings) as session:
        start = asyncio.create_task(session.start())
        await wait_for_state(session, SessionState.INITIALIZING)

        session.notify("test/early", {"n": 1})
        echo = asyncio.create_task(session.request("test/echo", {"n": 2}))

        await start
        assert await asyncio.wait_for(echo, timeout=5) == {"n": 2}

        received = await session.request("test/received")
        assert methods_of(received) == [
            "initialize",
            "initialized",
            "workspace/didChangeConfiguration",
            "test/early",
            "test/echo",
        ]
        assert received[2]["params"] == {"settings": {"volt": {"trace": "verbose"}}}


@pytest.mark.asyncio
async def test_request_round_trip(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()

        results = await asyncio.gather(*(session.request("test/echo", {"i": i}) for i in range(20)))
        assert results == [{"i": i} for i in range(20)]


@pytest.mark.asyncio
async def test_error_response_raises(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()

        with pytest.raises(ResponseError) as excinfo:
            await session.request("test/unknownMethod")
        assert excinfo.value.code == -32601
        assert "test/unknownMethod" in excinfo.value.message
        assert session.is_ready


@pytest.mark.asyncio
async def test_response_with_unknown_id_is_ignored(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()

        hold = asyncio.create_task(session.request("test/hold"))
        assert await session.request("test/unknownId") == "ok"
        assert not hold.done()
        assert session.is_ready

        await session.stop()
        with pytest.raises(SessionClosed):
            await hold


@pytest.mark.asyncio
async def test_crash_fails_every_pending_request(make_configuration, caplog):
    async with new_session(make_configuration()) as session:
        await session.start()
        closed = []
        session.on_close(closed.append)

        first = asyncio.create_task(session.request("test/hold"))
        second = asyncio.create_task(session.request("test/hold"))
        await asyncio.sleep(0)
        session.notify("test/crash")

        for hold in (first, second):
            with pytest.raises(SessionClosed, match="exited unexpectedly with code 3"):
                await asyncio.wait_for(hold, timeout=5)

        assert session.state is SessionState.CLOSED
        assert len(closed) == 1
        assert len(session_errors(caplog)) == 1

        with pytest.raises(SessionClosed):
            await session.request("test/echo")
        with pytest.raises(SessionClosed):
            session.notify("test/event")


@pytest.mark.asyncio
async def test_malformed_frame_closes_session(make_configuration, caplog):
    async with new_session(make_configuration()) as session:
        await session.start()
        hold = asyncio.create_task(session.request("test/hold"))
        await asyncio.sleep(0)
        session.notify("test/garbage")

        await wait_for_state(session, SessionState.CLOSED)
        assert "Malformed message" in str(session.close_reason)
        with pytest.raises(SessionClosed):
            await hold
        assert len(session_errors(caplog)) == 1


@pytest.mark.asyncio
async def test_server_request_answered_by_handler(make_configuration):
    async with new_session(make_configuration()) as session:
        session.on_request("test/ask", lambda params: {"answer": params["q"] * 2})

        async def slow(params):
            await asyncio.sleep(0.01)
            return "later"

        session.on_request("test/slow", slow)
        await session.start()

        answer = await session.request("test/serverRequest", {"method": "test/ask", "params": {"q": 21}})
        assert answer == {"id": "srv-1", "result": {"answer": 42}, "error": None}

        answer = await session.request("test/serverRequest", {"method": "test/slow"})
        assert answer["result"] == "later"


@pytest.mark.asyncio
async def test_unhandled_server_request_gets_method_not_found(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()

        answer = await session.request("test/serverRequest", {"method": "test/nobodyHome"})
        assert answer["result"] is None
        assert answer["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_failing_server_request_handler_reports_internal_error(make_configuration):
    async with new_session(make_configuration()) as session:
        def broken(params):
            raise ValueError("no such thing")

        session.on_request("test/broken", broken)
        await session.start()

        answer = await session.request("test/serverRequest", {"method": "test/broken"})
        assert answer["error"] == {"code": -32603, "message": "no such thing"}
        assert session.is_ready


@pytest.mark.asyncio
async def test_workspace_configuration_answered_from_settings(make_configuration):
    settings = Settings({"volt": {"lint": {"enabled": True}}})
    async with new_session(make_configuration(), settings) as session:
        await session.start()

        answer = await session.request("test/serverRequest", {
            "method": "workspace/configuration",
            "params": {"items": [{"section": "volt.lint"}, {"section": "missing"}]},
        })
        assert answer["result"] == [{"enabled": True}, None]


@pytest.mark.asyncio
async def test_server_notifications_reach_handlers(make_configuration):
    async with new_session(make_configuration()) as session:
        received = []
        session.on_notification("test/event", received.append)
        await session.start()

        session.notify("test/notifyClient", {"method": "test/event", "params": {"n": 1}})
        session.notify("test/notifyClient", {"method": "test/unhandled", "params": {}})
        session.notify("test/notifyClient", {"method": "test/event", "params": {"n": 2}})

        await wait_until(lambda: len(received) == 2)
        assert received == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_log_message_forwarded_to_logger(make_configuration, caplog):
    caplog.set_level(logging.INFO, logger="vlsclient.server")
    async with new_session(make_configuration()) as session:
        await session.start()

        session.notify("test/notifyClient", {
            "method": "window/logMessage",
            "params": {"type": 2, "message": "index is stale"},
        })
        await wait_until(lambda: any("index is stale" in r.getMessage() for r in caplog.records))

        record = next(r for r in caplog.records if "index is stale" in r.getMessage())
        assert record.name == "vlsclient.server"
        assert record.levelno == logging.WARNING


@pytest.mark.asyncio
async def test_timed_out_request_is_cancelled(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()

        with pytest.raises(asyncio.TimeoutError):
            await session.request("test/hold", timeout=0.1)
        assert session.is_ready

        received = await session.request("test/received")
        hold = next(m for m in received if m.get("method") == "test/hold")
        cancel = next(m for m in received if m.get("method") == "$/cancelRequest")
        assert hold["kind"] == "request"
        assert cancel["params"]["id"] == 2


@pytest.mark.asyncio
async def test_stop_runs_shutdown_and_exit(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()
        await session.stop()

        assert session.state is SessionState.CLOSED
        assert await asyncio.wait_for(session.handle.wait(), timeout=5) == 0

        await session.stop()
        assert session.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_concurrent_stops_share_the_handshake(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()
        await asyncio.gather(session.stop(), session.stop())

        assert session.state is SessionState.CLOSED
        assert await asyncio.wait_for(session.handle.wait(), timeout=5) == 0


@pytest.mark.asyncio
async def test_unanswered_shutdown_still_exits(make_configuration, caplog):
    configuration = make_configuration("--ignore-shutdown", shutdown_timeout=0.3)
    async with new_session(configuration) as session:
        await session.start()
        await session.stop()

        assert session.state is SessionState.CLOSED
        assert any("did not answer shutdown" in r.getMessage() for r in caplog.records)
        assert await asyncio.wait_for(session.handle.wait(), timeout=5) == 0


@pytest.mark.asyncio
async def test_rejected_initialize(make_configuration, caplog):
    async with new_session(make_configuration("--init-error")) as session:
        with pytest.raises(InitializeError, match="refusing to initialize"):
            await session.start()

        assert session.state is SessionState.CLOSED
        assert session_errors(caplog) == []


@pytest.mark.asyncio
async def test_initialize_timeout(make_configuration):
    configuration = make_configuration("--init-delay", "5", initialize_timeout=0.2)
    async with new_session(configuration) as session:
        with pytest.raises(InitializeError, match="did not answer initialize"):
            await session.start()
        assert session.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_spawn_failure_closes_session(make_configuration, tmp_path):
    configuration = make_configuration(server=ServerOptions(command=str(tmp_path / "missing-vls")))
    async with new_session(configuration) as session:
        with pytest.raises(SpawnError):
            await session.start()
        assert session.state is SessionState.CLOSED
        assert session.handle is None


@pytest.mark.asyncio
async def test_session_starts_only_once(make_configuration):
    async with new_session(make_configuration()) as session:
        await session.start()
        with pytest.raises(LanguageClientError, match="only be started once"):
            await session.start()


@pytest.mark.asyncio
@pytest.mark.parametrize("server_arg, reason", [
    ("--crash-on-initialize", "exited unexpectedly with code 4"),
    ("--garbage-on-initialize", "Malformed message"),
])
async def test_failure_during_initialize_fails_queued_requests(make_configuration, caplog, server_arg, reason):
    async with new_session(make_configuration("--init-delay", "0.2", server_arg)) as session:
        start = asyncio.create_task(session.start())
        await wait_for_state(session, SessionState.INITIALIZING)
        queued = asyncio.create_task(session.request("test/echo", {"n": 1}))

        with pytest.raises(SessionClosed, match=reason):
            await asyncio.wait_for(start, timeout=5)
        with pytest.raises(SessionClosed, match=reason):
            await queued

        assert session.state is SessionState.CLOSED
        assert session_errors(caplog) == []


@pytest.mark.asyncio
async def test_traffic_before_start_is_rejected(make_configuration):
    async with new_session(make_configuration()) as session:
        with pytest.raises(SessionClosed, match="session is unstarted"):
            await session.request("test/echo")
        with pytest.raises(SessionClosed, match="session is unstarted"):
            session.notify("test/event")
        assert session.state is SessionState.UNSTARTED
