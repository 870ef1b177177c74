"""Tests for serial device discovery."""

import asyncio
from types import SimpleNamespace

import pytest
import serial

from iot_provisioner.errors import SerialLinkError
from iot_provisioner.protocol.handshake import run_step
from iot_provisioner.protocol.serial_link import READ_POLL_TIMEOUT, SerialLink, find_serial_devices


def port(device, vid=None, pid=None, hwid="n/a", serial_number=None):
    return SimpleNamespace(device=device, vid=vid, pid=pid, hwid=hwid, serial_number=serial_number)


def test_match_by_usb_ids(registry):
    devices = find_serial_devices(registry, ports=[
        port("/dev/ttyS0"),
        port("/dev/ttyACM0", vid=0x2B04, pid=0xC006, serial_number="3a001d000647343138333038"),
    ])
    assert len(devices) == 1
    assert devices[0].port == "/dev/ttyACM0"
    assert devices[0].type_name == "Photon"
    assert devices[0].serial_number == "3a001d000647343138333038"


def test_match_by_hwid(registry):
    devices = find_serial_devices(registry, ports=[
        port("COM4", hwid="USB VID:PID=2B04:C00A SER=123 LOCATION=1-1"),
        port("COM5", hwid=r"USB\VID_2B04&PID_C008\6&1"),
    ])
    assert [d.type_name for d in devices] == ["Electron", "P1"]


def test_match_by_serial_number(registry):
    devices = find_serial_devices(registry, ports=[
        port("/dev/cu.usbmodem1411", serial_number="Spark_Core_8D8F"),
    ])
    assert devices[0].type_name == "Core"


def test_fallback_to_acm_ports(registry):
    devices = find_serial_devices(registry, ports=[
        port("/dev/ttyS0"),
        port("/dev/ttyACM1", vid=0x1234, pid=0x5678),
        port("/dev/cuaU0"),
    ])
    assert [d.port for d in devices] == ["/dev/ttyACM1", "/dev/cuaU0"]
    assert all(d.model is None and d.type_name == "" for d in devices)


def test_nothing_found(registry):
    assert find_serial_devices(registry, ports=[port("/dev/ttyS0")]) == []


@pytest.mark.asyncio
async def test_write_requires_open_port():
    link = SerialLink("/dev/ttyACM9")
    assert not link.is_open
    with pytest.raises(SerialLinkError):
        await link.write(b"w")


def test_subscribe_returns_unsubscribe():
    link = SerialLink("/dev/ttyACM9")
    received = []
    unsubscribe = link.subscribe(received.append)
    link._dispatch(b"SSID:")
    unsubscribe()
    link._dispatch(b"ignored")
    unsubscribe()
    assert received == [b"SSID:"]


class LoopbackLink(SerialLink):
    """SerialLink over pyserial's loop:// port: everything written is read back."""

    def _open_port(self):
        return serial.serial_for_url("loop://", timeout=READ_POLL_TIMEOUT)


class TestLoopback:
    @pytest.mark.asyncio
    async def test_reader_delivers_written_bytes(self):
        link = LoopbackLink("loop://")
        received = []
        await link.open()
        try:
            link.subscribe(received.append)
            await link.write(b"SSID: ")
            await link.drain()
            for _ in range(50):
                if b"".join(received) == b"SSID: ":
                    break
                await asyncio.sleep(0.01)
        finally:
            await link.close()

        assert b"".join(received) == b"SSID: "
        assert not link.is_open

    @pytest.mark.asyncio
    async def test_prompt_split_across_reads_still_matches(self):
        link = LoopbackLink("loop://")
        chunks = []
        await link.open()
        try:
            link.subscribe(chunks.append)
            step = asyncio.ensure_future(run_step(link, prompt="SSID:", timeout=2.0))
            await asyncio.sleep(0)
            await link.write(b"SS")
            await asyncio.sleep(0.1)
            await link.write(b"ID: ")
            result = await step
        finally:
            await link.close()

        assert len(chunks) >= 2
        assert result is not None
        assert "SSID:" in result

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        link = LoopbackLink("loop://")
        await link.open()
        await link.close()
        await link.close()
        assert not link.is_open
