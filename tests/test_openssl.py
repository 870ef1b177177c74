"""Tests for openssl key generation and conversion with subprocess stubbed out."""

from pathlib import Path
from types import SimpleNamespace

import pytest

from iot_provisioner.errors import ErrorKind, ImageFileNotFound, KeyToolError
from iot_provisioner.utils import openssl
from iot_provisioner.utils.openssl import KeyFiles, OpenSsl, key_algorithm_for_protocol, key_stem


class FakeOpenSsl:
    """Records commands and writes a placeholder file for every -out argument."""

    def __init__(self, returncode=0, stderr="", exc=None):
        self.returncode = returncode
        self.stderr = stderr
        self.exc = exc
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        if self.exc is not None:
            raise self.exc
        if self.returncode == 0 and "-out" in cmd:
            Path(cmd[cmd.index("-out") + 1]).write_bytes(b"\x30\x82")
        return SimpleNamespace(returncode=self.returncode, stdout="", stderr=self.stderr)


@pytest.fixture
def run(monkeypatch):
    recorder = FakeOpenSsl()
    monkeypatch.setattr(openssl.subprocess, "run", recorder)
    return recorder


def test_algorithm_for_protocol():
    assert key_algorithm_for_protocol("udp") == "ec"
    assert key_algorithm_for_protocol("tcp") == "rsa"
    assert key_algorithm_for_protocol(None) == "rsa"


def test_key_stem():
    assert key_stem("keys/device.pub.pem") == Path("keys/device")
    assert key_stem("device.der") == Path("device")
    assert key_stem("device") == Path("device")


def test_key_files_names(tmp_path):
    files = KeyFiles.for_stem(tmp_path / "lab.der")
    assert files.all() == [tmp_path / "lab.pem", tmp_path / "lab.pub.pem", tmp_path / "lab.der"]


class TestNewKeySet:
    def test_rsa(self, run, tmp_path):
        files = OpenSsl().new_key_set(tmp_path / "device", "rsa")

        pem = str(tmp_path / "device.pem")
        assert run.commands == [
            ["openssl", "genrsa", "-out", pem, "1024"],
            ["openssl", "rsa", "-in", pem, "-pubout", "-out", str(tmp_path / "device.pub.pem")],
            ["openssl", "rsa", "-in", pem, "-outform", "DER", "-out", str(tmp_path / "device.der")],
        ]
        assert files.private_der.exists()

    def test_ec(self, run, tmp_path):
        OpenSsl(binary="/usr/local/bin/openssl").new_key_set(tmp_path / "device", "ec")
        assert run.commands[0] == [
            "/usr/local/bin/openssl", "ecparam", "-name", "prime256v1", "-genkey",
            "-out", str(tmp_path / "device.pem"),
        ]
        assert run.commands[1][1] == "ec"

    def test_unknown_algorithm(self, run, tmp_path):
        with pytest.raises(ValueError):
            OpenSsl().new_key_set(tmp_path / "device", "dsa")
        assert run.commands == []


class TestPublicKeyToDer:
    def test_der_passes_through(self, run, tmp_path):
        key = tmp_path / "server.der"
        assert OpenSsl().public_key_to_der(key, "rsa") == key
        assert run.commands == []

    def test_pem_converted(self, run, tmp_path):
        key = tmp_path / "server.pub.pem"
        key.write_text("-----BEGIN PUBLIC KEY-----\n")

        der = OpenSsl().public_key_to_der(key, "ec")

        assert der == tmp_path / "server.pub.der"
        assert run.commands == [[
            "openssl", "ec", "-in", str(key), "-pubin", "-pubout", "-outform", "DER", "-out", str(der),
        ]]

    def test_existing_der_reused(self, run, tmp_path):
        key = tmp_path / "server.pem"
        key.write_text("pem")
        (tmp_path / "server.der").write_bytes(b"\x30")

        assert OpenSsl().public_key_to_der(key, "rsa") == tmp_path / "server.der"
        assert run.commands == []

    def test_missing_file(self, run, tmp_path):
        with pytest.raises(ImageFileNotFound):
            OpenSsl().public_key_to_der(tmp_path / "nope.pem", "rsa")


def test_failure_carries_openssl_output(monkeypatch, tmp_path):
    monkeypatch.setattr(openssl.subprocess, "run", FakeOpenSsl(returncode=1, stderr="unable to load Public Key\n"))
    key = tmp_path / "private.pem"
    key.write_text("pem")

    with pytest.raises(KeyToolError) as exc_info:
        OpenSsl().public_key_to_der(key, "rsa")
    assert exc_info.value.kind is ErrorKind.KEY_TOOL_FAILURE
    assert exc_info.value.raw == "unable to load Public Key"


def test_missing_binary(monkeypatch, tmp_path):
    monkeypatch.setattr(openssl.subprocess, "run", FakeOpenSsl(exc=FileNotFoundError("openssl")))
    with pytest.raises(KeyToolError):
        OpenSsl().new_key_set(tmp_path / "device", "rsa")
