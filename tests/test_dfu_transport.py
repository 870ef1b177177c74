"""Tests for the dfu-util transport with subprocess stubbed out."""

import subprocess
from types import SimpleNamespace

import pytest

from conftest import FakeDfu
from iot_provisioner.errors import DeviceNotFoundError, TransportFailure
from iot_provisioner.protocol import dfu_transport
from iot_provisioner.protocol.dfu_transport import DfuUtil, find_compatible_device

DFU_LIST_OUTPUT = """\
dfu-util 0.9

Found DFU: [2b04:d006] ver=0200, devnum=12, cfg=1, intf=0, path="1-1", alt=1, name="@DCT Flash   /0x00000000/01*016Ke", serial="00000000010C"
Found DFU: [2b04:d006] ver=0200, devnum=12, cfg=1, intf=0, path="1-1", alt=0, name="@Internal Flash   /0x08000000/03*016Ka,01*016Kg", serial="00000000010C"
Found DFU: [0483:DF11] ver=2200, devnum=5, cfg=1, intf=0, path="1-2", alt=0, name="@Internal Flash", serial="3276"
"""


class Recorder:
    def __init__(self, returncode=0, stdout="", stderr="", exc=None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.exc = exc
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(returncode=self.returncode, stdout=self.stdout, stderr=self.stderr)


@pytest.fixture
def run(monkeypatch):
    recorder = Recorder(stdout="Download done.\n")
    monkeypatch.setattr(dfu_transport.subprocess, "run", recorder)
    return recorder


def test_write_command(run):
    DfuUtil().write("2b04:d006", 1, "2082:512", "/tmp/key.der", leave=False)
    assert run.commands == [[
        "dfu-util", "-d", "2b04:d006", "-a", "1", "-i", "0", "-s", "2082:512", "-D", "/tmp/key.der",
    ]]


def test_read_command_with_leave(run):
    DfuUtil().read("2b04:d006", 0, "0x080A0000", "/tmp/user.bin", leave=True)
    assert run.commands == [[
        "dfu-util", "-d", "2b04:d006", "-a", "0", "-s", "0x080A0000:leave", "-U", "/tmp/user.bin",
    ]]


def test_sudo_prefix(run):
    DfuUtil(binary="/opt/dfu-util", use_sudo=True).write("2b04:d006", 1, "34:612", "k.der", leave=False)
    assert run.commands[0][:2] == ["sudo", "/opt/dfu-util"]


def test_returns_raw_output(run):
    assert DfuUtil().write("2b04:d006", 1, "34:612", "k.der", leave=False) == "Download done.\n"


def test_enumerate_parses_ids(monkeypatch):
    monkeypatch.setattr(dfu_transport.subprocess, "run", Recorder(stdout=DFU_LIST_OUTPUT))
    assert DfuUtil().enumerate() == ["2b04:d006", "0483:df11"]


def test_nonzero_exit_raises_with_raw_output(monkeypatch):
    monkeypatch.setattr(
        dfu_transport.subprocess, "run",
        Recorder(returncode=74, stderr="dfu-util: No DFU capable USB device available\n"),
    )
    with pytest.raises(TransportFailure) as exc_info:
        DfuUtil().write("2b04:d006", 1, "34:612", "k.der", leave=False)
    assert "No DFU capable USB device" in exc_info.value.raw


def test_missing_binary(monkeypatch):
    monkeypatch.setattr(dfu_transport.subprocess, "run", Recorder(exc=FileNotFoundError("dfu-util")))
    dfu = DfuUtil()
    with pytest.raises(TransportFailure):
        dfu.enumerate()
    assert dfu.is_installed() is False


def test_timeout(monkeypatch):
    monkeypatch.setattr(
        dfu_transport.subprocess, "run",
        Recorder(exc=subprocess.TimeoutExpired(["dfu-util", "-l"], 6.0)),
    )
    with pytest.raises(TransportFailure):
        DfuUtil().enumerate(timeout=6.0)


class TestFindCompatibleDevice:
    def test_first_registered_id(self, registry):
        dfu = FakeDfu(attached=["0483:df11", "2b04:d00a"])
        assert find_compatible_device(dfu, registry, timeout=1.0) == "2b04:d00a"

    def test_nothing_compatible(self, registry):
        dfu = FakeDfu(attached=["0483:df11"])
        with pytest.raises(DeviceNotFoundError) as exc_info:
            find_compatible_device(dfu, registry, timeout=1.0)
        assert "0483:df11" in exc_info.value.raw

    def test_enumeration_failure_is_not_found(self, registry, monkeypatch):
        monkeypatch.setattr(dfu_transport.subprocess, "run", Recorder(exc=FileNotFoundError("dfu-util")))
        with pytest.raises(DeviceNotFoundError):
            find_compatible_device(DfuUtil(), registry, timeout=1.0)
