"""Shared fakes for device-free tests."""

import asyncio
from pathlib import Path

import pytest

from iot_provisioner.config import Settings
from iot_provisioner.errors import TransportFailure
from iot_provisioner.models import load_registry


class FakeDfu:
    """Recording stand-in for DfuUtil; segment contents keyed by address argument."""

    def __init__(self, attached=None, segment_data=None, fail_reads=False, fail_writes=False):
        self.attached = list(attached or [])
        self.segment_data = dict(segment_data or {})
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.calls = []
        self.written = {}

    def enumerate(self, timeout=6.0):
        self.calls.append(("enumerate", timeout))
        return list(self.attached)

    def read(self, device_id, alt_setting, address_arg, dest_path, leave):
        self.calls.append(("read", device_id, alt_setting, address_arg, dest_path, leave))
        if self.fail_reads:
            raise TransportFailure("dfu-util exited with status 74", raw="Error during upload")
        Path(dest_path).write_bytes(self.segment_data.get(address_arg, b""))
        return "Upload done."

    def write(self, device_id, alt_setting, address_arg, src_path, leave):
        self.calls.append(("write", device_id, alt_setting, address_arg, src_path, leave))
        if self.fail_writes:
            raise TransportFailure("dfu-util exited with status 74", raw="Error during download")
        self.written[address_arg] = Path(src_path).read_bytes()
        return "Download done."


class FakeConnection:
    """
    Scripted serial peer.

    responses maps each written payload to the text the firmware prints in
    reply: a string (every time) or a list consumed one reply per write,
    with None meaning silence. With chunk_size set, each reply is delivered
    in pieces of that many bytes, the way a serial reader hands them over.
    """

    def __init__(self, responses=None, delay=0.01, chunk_size=None):
        self.responses = {
            key: list(value) if isinstance(value, list) else value
            for key, value in (responses or {}).items()
        }
        self.delay = delay
        self.chunk_size = chunk_size
        self.is_open = False
        self.opened = 0
        self.closed = 0
        self.flushes = 0
        self.writes = []
        self.subscribers = []

    async def open(self):
        self.is_open = True
        self.opened += 1

    async def close(self):
        self.is_open = False
        self.closed += 1

    def subscribe(self, on_data, on_error=None):
        entry = (on_data, on_error)
        self.subscribers.append(entry)

        def unsubscribe():
            if entry in self.subscribers:
                self.subscribers.remove(entry)

        return unsubscribe

    async def write(self, data):
        self.writes.append(data)
        reply = self.responses.get(data)
        if isinstance(reply, list):
            reply = reply.pop(0) if reply else None
        if reply is not None:
            asyncio.get_running_loop().call_later(self.delay, self.emit, reply)

    async def drain(self):
        pass

    async def flush(self):
        self.flushes += 1

    def emit(self, text):
        data = text.encode()
        size = self.chunk_size or len(data) or 1
        for start in range(0, len(data), size):
            for on_data, _ in list(self.subscribers):
                on_data(data[start:start + size])

    def fail(self, error):
        for _, on_error in list(self.subscribers):
            if on_error is not None:
                on_error(error)


@pytest.fixture
def registry():
    return load_registry()


@pytest.fixture
def settings(tmp_path):
    return Settings(home=tmp_path, device_specs_file=None)


@pytest.fixture
def fake_dfu():
    return FakeDfu()
