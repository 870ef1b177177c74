"""Tests for the serial prompt/answer handshake engine."""

import asyncio

import pytest

from conftest import FakeConnection
from iot_provisioner.errors import HandshakeTimeout, SerialLinkError
from iot_provisioner.protocol.handshake import HandshakeSession, HandshakeStep, run_step


@pytest.mark.asyncio
async def test_timeout_with_always_resolve_settles_none():
    conn = FakeConnection()
    result = await run_step(conn, prompt="SSID:", timeout=0.01, always_resolve=True)
    assert result is None
    assert conn.subscribers == []


@pytest.mark.asyncio
async def test_timeout_without_always_resolve_fails():
    conn = FakeConnection()
    with pytest.raises(HandshakeTimeout):
        await run_step(conn, prompt="SSID:", timeout=0.01)
    assert conn.subscribers == []


@pytest.mark.asyncio
async def test_prompt_match_flushes_then_answers():
    conn = FakeConnection()
    asyncio.get_running_loop().call_later(0.01, conn.emit, "Enter SSID: ")

    result = await run_step(conn, prompt="SSID:", answer=b"HomeNet\n", timeout=1.0)

    assert result == "Enter SSID: "
    assert conn.flushes == 1
    assert conn.writes == [b"HomeNet\n"]
    assert conn.subscribers == []


@pytest.mark.asyncio
async def test_prompt_without_answer_settles_on_match():
    conn = FakeConnection()
    asyncio.get_running_loop().call_later(0.01, conn.emit, "Spark <3 you!")

    result = await run_step(conn, prompt="Spark <3 you!", timeout=1.0)

    assert result == "Spark <3 you!"
    assert conn.writes == []
    assert conn.flushes == 0


@pytest.mark.asyncio
async def test_answer_without_prompt_writes_immediately():
    conn = FakeConnection()
    assert await run_step(conn, answer=b"w") == ""
    assert conn.writes == [b"w"]
    assert conn.subscribers == []


@pytest.mark.asyncio
async def test_non_matching_data_ignored():
    conn = FakeConnection()
    loop = asyncio.get_running_loop()
    loop.call_later(0.005, conn.emit, "noise")
    loop.call_later(0.01, conn.emit, "Password:")

    assert await run_step(conn, prompt="Password:", timeout=1.0) == "noisePassword:"


@pytest.mark.asyncio
async def test_prompt_split_across_chunks():
    conn = FakeConnection(chunk_size=1)
    asyncio.get_running_loop().call_later(0.01, conn.emit, "SSID: ")

    result = await run_step(conn, prompt="SSID:", answer=b"HomeNet\n", timeout=1.0)

    assert result == "SSID:"
    assert conn.writes == [b"HomeNet\n"]


@pytest.mark.asyncio
async def test_chunks_from_before_the_step_do_not_complete_a_prompt():
    conn = FakeConnection()
    conn.emit("SS")
    asyncio.get_running_loop().call_later(0.01, conn.emit, "ID: ")

    assert await run_step(conn, prompt="SSID:", timeout=0.05, always_resolve=True) is None


@pytest.mark.asyncio
async def test_connection_error_fails_step():
    conn = FakeConnection()
    asyncio.get_running_loop().call_later(0.01, conn.fail, SerialLinkError("port gone"))

    with pytest.raises(SerialLinkError):
        await run_step(conn, prompt="SSID:", timeout=1.0)
    assert conn.subscribers == []


@pytest.mark.asyncio
async def test_data_between_steps_is_not_buffered():
    conn = FakeConnection()
    conn.emit("SSID:")

    assert await run_step(conn, prompt="SSID:", timeout=0.02, always_resolve=True) is None


class TestSession:
    @pytest.mark.asyncio
    async def test_runs_steps_in_order_and_closes(self):
        conn = FakeConnection({b"w": "SSID: "})
        session = HandshakeSession(conn, [
            HandshakeStep(answer=b"w"),
            HandshakeStep(prompt="SSID:", answer=b"HomeNet\n", timeout=1.0),
        ])

        results = await session.run()

        assert results == ["", "SSID: "]
        assert conn.writes == [b"w", b"HomeNet\n"]
        assert conn.opened == 1
        assert conn.closed == 1

    @pytest.mark.asyncio
    async def test_failure_still_closes(self):
        conn = FakeConnection()
        session = HandshakeSession(conn, [HandshakeStep(prompt="SSID:", timeout=0.01)])

        with pytest.raises(HandshakeTimeout):
            await session.run()
        assert conn.closed == 1
        assert not conn.is_open

    @pytest.mark.asyncio
    async def test_already_open_connection_not_reopened(self):
        conn = FakeConnection()
        conn.is_open = True
        async with HandshakeSession(conn) as session:
            await session.run_step(HandshakeStep(answer=b"\n"))
        assert conn.opened == 0
        assert conn.closed == 1

    @pytest.mark.asyncio
    async def test_cancellation_closes_connection(self):
        conn = FakeConnection()
        session = HandshakeSession(conn, [HandshakeStep(prompt="SSID:")])

        task = asyncio.ensure_future(session.run())
        await asyncio.sleep(0.01)
        assert conn.subscribers
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert conn.closed == 1
        assert conn.subscribers == []
