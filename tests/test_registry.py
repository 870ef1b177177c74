"""Tests for the device spec registry and override loading."""

import json

import pytest

from iot_provisioner.errors import DeviceNotFoundError, SegmentUndefinedError
from iot_provisioner.models import (
    KeyAlgorithm,
    SegmentFormat,
    base_specs,
    load_registry,
    private_key_segment,
    server_key_segment,
)


BUILT_IN_MODELS = ["1d50:607f", "2b04:d006", "2b04:d008", "2b04:d00a", "2b04:d058"]


class TestBaseTable:
    """The built-in device table."""

    def test_all_models_registered(self, registry):
        assert registry.model_ids() == BUILT_IN_MODELS

    def test_every_segment_resolves_with_address(self, registry):
        for model in registry.models():
            assert model.segments, model.model_id
            for name in model.segment_names:
                segment = registry.lookup_segment(model.model_id, name)
                assert segment.address
                assert segment.name == name

    def test_photon_server_key_layout(self, registry):
        seg = registry.lookup_segment("2b04:d006", "serverKey")
        assert seg.address == "2082"
        assert seg.size == 512
        assert seg.alt == 1
        assert seg.format is SegmentFormat.DER
        assert seg.alg is KeyAlgorithm.RSA
        assert seg.address_offset == 384
        assert seg.port_offset == 450
        assert seg.address_arg == "2082:512"

    def test_ec_server_key_uses_its_own_offsets(self, registry):
        seg = registry.lookup_segment("2b04:d00a", "altServerKey")
        assert seg.alg is KeyAlgorithm.EC
        assert seg.address_offset == 192
        assert seg.port_offset == 258

    def test_sizeless_segment_address_arg(self, registry):
        seg = registry.lookup_segment("2b04:d006", "userFirmware")
        assert seg.size is None
        assert seg.address_arg == "0x080A0000"

    def test_protocols(self, registry):
        electron = registry.lookup("2b04:d00a")
        assert electron.default_protocol == "udp"
        assert electron.supported_protocols == ["udp", "tcp"]
        assert registry.lookup("2b04:d006").supported_protocols == ["tcp"]

    def test_wifi_done_tokens(self, registry):
        assert registry.lookup("1d50:607f").wifi_done_token == "Spark <3 you!"
        assert registry.lookup("2b04:d006").wifi_done_token == "\n"

    def test_base_specs_is_a_copy(self):
        specs = base_specs()
        specs["2b04:d006"]["serverKey"]["address"] = "0"
        assert base_specs()["2b04:d006"]["serverKey"]["address"] == "2082"


class TestLookup:
    def test_unknown_model(self, registry):
        with pytest.raises(DeviceNotFoundError):
            registry.lookup("ffff:ffff")

    def test_unknown_segment(self, registry):
        with pytest.raises(SegmentUndefinedError):
            registry.lookup_segment("2b04:d006", "bogus")

    def test_empty_segment_name(self, registry):
        with pytest.raises(SegmentUndefinedError):
            registry.lookup_segment("2b04:d006", "")

    def test_lookup_is_case_insensitive(self, registry):
        assert registry.lookup("2B04:D006").name == "Photon"
        assert "2B04:D00A" in registry

    def test_find_by_serial(self, registry):
        assert registry.find_by_serial("2b04", "c006").name == "Photon"
        assert registry.find_by_serial("dead", "beef") is None


class TestOverrides:
    def _write(self, path, data):
        path.write_text(json.dumps(data))
        return path

    def test_override_replaces_one_model(self, tmp_path):
        overrides = self._write(tmp_path / "specs.json", {
            "2b04:d006": {
                "productName": "Photon (custom)",
                "userFirmware": {"address": "0x08000000", "alt": 0},
            },
        })
        base = load_registry()
        merged = load_registry(overrides_file=overrides)

        photon = merged.lookup("2b04:d006")
        assert photon.name == "Photon (custom)"
        assert photon.segment_names == ["userFirmware"]
        with pytest.raises(SegmentUndefinedError):
            merged.lookup_segment("2b04:d006", "serverKey")

        for model_id in BUILT_IN_MODELS:
            if model_id != "2b04:d006":
                assert merged.lookup(model_id) == base.lookup(model_id)

    def test_override_adds_model(self, tmp_path):
        overrides = self._write(tmp_path / "specs.json", {
            "1234:abcd": {"productName": "Widget", "userFirmware": {"address": "0x08000000"}},
        })
        merged = load_registry(overrides_file=overrides)
        assert len(merged) == len(BUILT_IN_MODELS) + 1
        assert merged.lookup_segment("1234:abcd", "userFirmware").alt == 0

    def test_missing_file_ignored(self, tmp_path):
        registry = load_registry(overrides_file=tmp_path / "nope.json")
        assert registry.model_ids() == BUILT_IN_MODELS

    def test_malformed_entry_ignores_whole_file(self, tmp_path):
        overrides = self._write(tmp_path / "specs.json", {
            "2b04:d006": {"productName": "Fine", "userFirmware": {"address": "0x0"}},
            "2b04:d008": {"serverKey": {"size": 512}},
        })
        registry = load_registry(overrides_file=overrides)
        assert registry.lookup("2b04:d006").name == "Photon"
        assert registry.lookup("2b04:d008").segments["serverKey"].address == "2082"

    def test_invalid_json_ignored(self, tmp_path):
        path = tmp_path / "specs.json"
        path.write_text("{not json")
        registry = load_registry(overrides_file=path)
        assert registry.lookup("2b04:d006").name == "Photon"


def test_key_segment_names():
    assert server_key_segment("tcp") == "serverKey"
    assert private_key_segment("tcp") == "privateKey"
    assert server_key_segment("udp") == "altServerKey"
    assert private_key_segment("udp") == "altPrivateKey"
