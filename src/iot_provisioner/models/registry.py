"""
Device spec registry for DFU-programmable IoT devices.

Provides a single source of truth for:
- Device models keyed by USB "vendorHex:productHex" id
- Named flash segments (address, size, format, DFU alt setting)
- Key segment metadata (algorithm, address/port record offsets)
- Serial identification and Wi-Fi completion tokens

Usage:
    from iot_provisioner.models import load_registry

    registry = load_registry(overrides_file=Path("~/.iot-provisioner/device_specs.json"))
    model = registry.lookup("2b04:d006")
    segment = registry.lookup_segment("2b04:d006", "serverKey")
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from iot_provisioner.errors import DeviceNotFoundError, SegmentUndefinedError

logger = logging.getLogger(__name__)

# Offset of the TLV server address record inside a server key segment
DEFAULT_ADDRESS_OFFSET = 384

# Model metadata keys in spec/override dicts; every other dict value is a segment
_METADATA_KEYS = {
    "productName",
    "serial",
    "defaultProtocol",
    "alternativeProtocol",
    "wifiDoneToken",
    "knownApps",
    "productId",
    "writePadding",
}


class SegmentFormat(Enum):
    """On-flash encoding of a segment's contents."""
    DER = "der"
    NONE = "none"


class KeyAlgorithm(Enum):
    """Key algorithm stored in a key segment."""
    RSA = "rsa"
    EC = "ec"


@dataclass(frozen=True)
class Segment:
    """A named, addressed flash region."""
    name: str
    address: str
    alt: int
    size: Optional[int] = None
    format: SegmentFormat = SegmentFormat.NONE
    alg: KeyAlgorithm = KeyAlgorithm.RSA
    address_offset: int = DEFAULT_ADDRESS_OFFSET
    port_offset: Optional[int] = None

    @property
    def address_arg(self) -> str:
        """Transport address argument: "address:size", or "address" when sizeless."""
        if self.size:
            return f"{self.address}:{self.size}"
        return self.address


@dataclass(frozen=True)
class SerialIds:
    """USB ids the device enumerates with when running (not in DFU mode)."""
    vid: str
    pid: str
    serial_number: str = ""


@dataclass(frozen=True)
class DeviceModel:
    """
    A device model and its flash layout.

    The segment map is replaced wholesale by overrides, never merged.
    """
    model_id: str
    name: str
    segments: Dict[str, Segment] = field(default_factory=dict)
    serial: Optional[SerialIds] = None
    default_protocol: str = "tcp"
    alternative_protocol: Optional[str] = None
    wifi_done_token: str = "\n"

    @property
    def segment_names(self) -> List[str]:
        return list(self.segments)

    @property
    def supported_protocols(self) -> List[str]:
        protocols = [self.default_protocol]
        if self.alternative_protocol:
            protocols.append(self.alternative_protocol)
        return protocols


# Key segment names per cloud protocol: (server public key, device private key)
KEY_SEGMENTS = {
    "tcp": ("serverKey", "privateKey"),
    "udp": ("altServerKey", "altPrivateKey"),
}


def server_key_segment(protocol: str) -> str:
    """Segment holding the server public key for a cloud protocol."""
    return KEY_SEGMENTS[protocol][0]


def private_key_segment(protocol: str) -> str:
    """Segment holding the device private key for a cloud protocol."""
    return KEY_SEGMENTS[protocol][1]


# ============================================================================
# BUILT-IN DEVICE TABLE
# ============================================================================

_BASE_SPECS: Dict[str, Dict[str, Any]] = {}


def _register_spec(model_id: str, spec: Dict[str, Any]) -> None:
    """Register a raw device spec."""
    _BASE_SPECS[model_id] = spec


def _gen2_key_segments() -> Dict[str, Dict[str, Any]]:
    # Photon/P1/Electron share the same DCT key layout
    return {
        "serverKey": {
            "address": "2082", "size": 512, "format": "der", "alt": 1,
            "alg": "rsa", "addressOffset": 384, "portOffset": 450,
        },
        "altServerKey": {
            "address": "3298", "size": 320, "format": "der", "alt": 1,
            "alg": "ec", "addressOffset": 192, "portOffset": 258,
        },
        "privateKey": {
            "address": "34", "size": 612, "format": "der", "alt": 1, "alg": "rsa",
        },
        "altPrivateKey": {
            "address": "3106", "size": 192, "format": "der", "alt": 1, "alg": "ec",
        },
    }


def _init_base_specs() -> None:
    """Initialize the built-in device table."""

    # Core (STM32F103, keys on external flash)
    _register_spec("1d50:607f", {
        "productName": "Core",
        "serverKey": {
            "address": "0x00001000", "size": 2048, "format": "der", "alt": 1,
            "alg": "rsa", "addressOffset": 384, "portOffset": 450,
        },
        "privateKey": {
            "address": "0x00002000", "size": 1024, "format": "der", "alt": 1,
            "alg": "rsa",
        },
        "factoryReset": {"address": "0x00020000", "alt": 1},
        "userFirmware": {"address": "0x08005000", "alt": 0},
        "serial": {"vid": "1d50", "pid": "607d", "serialNumber": "Spark_Core"},
        "defaultProtocol": "tcp",
        "wifiDoneToken": "Spark <3 you!",
    })

    # Photon
    _register_spec("2b04:d006", {
        "productName": "Photon",
        **_gen2_key_segments(),
        "factoryReset": {"address": "0x080E0000", "alt": 0},
        "userFirmware": {"address": "0x080A0000", "alt": 0},
        "systemFirmwareOne": {"address": "0x08020000", "alt": 0},
        "systemFirmwareTwo": {"address": "0x08060000", "alt": 0},
        "serial": {"vid": "2b04", "pid": "c006", "serialNumber": "Particle_Photon"},
        "defaultProtocol": "tcp",
    })

    # P1
    _register_spec("2b04:d008", {
        "productName": "P1",
        **_gen2_key_segments(),
        "factoryReset": {"address": "0x080E0000", "alt": 0},
        "userFirmware": {"address": "0x080A0000", "alt": 0},
        "systemFirmwareOne": {"address": "0x08020000", "alt": 0},
        "systemFirmwareTwo": {"address": "0x08060000", "alt": 0},
        "serial": {"vid": "2b04", "pid": "c008", "serialNumber": "Particle_P1"},
        "defaultProtocol": "tcp",
    })

    # Electron (UDP by default, TCP selectable via the transport byte)
    _register_spec("2b04:d00a", {
        "productName": "Electron",
        **_gen2_key_segments(),
        "transport": {"address": "2977", "size": 1, "alt": 1},
        "systemFirmwareOne": {"address": "0x08020000", "alt": 0},
        "systemFirmwareTwo": {"address": "0x08040000", "alt": 0},
        "systemFirmwareThree": {"address": "0x08060000", "alt": 0},
        "userFirmware": {"address": "0x08080000", "alt": 0},
        "factoryReset": {"address": "0x080A0000", "alt": 0},
        "serial": {"vid": "2b04", "pid": "c00a", "serialNumber": "Particle_Electron"},
        "defaultProtocol": "udp",
        "alternativeProtocol": "tcp",
    })

    # RedBear Duo
    _register_spec("2b04:d058", {
        "productName": "Duo",
        "serverKey": {
            "address": "2082", "size": 512, "format": "der", "alt": 1,
            "alg": "rsa", "addressOffset": 384, "portOffset": 450,
        },
        "privateKey": {
            "address": "34", "size": 612, "format": "der", "alt": 1, "alg": "rsa",
        },
        "factoryReset": {"address": "0x00140000", "alt": 2},
        "userFirmware": {"address": "0x080C0000", "alt": 0},
        "systemFirmwareOne": {"address": "0x08020000", "alt": 0},
        "systemFirmwareTwo": {"address": "0x08040000", "alt": 0},
        "serial": {"vid": "2b04", "pid": "c058", "serialNumber": "RedBear_Duo"},
        "defaultProtocol": "tcp",
    })


_init_base_specs()


# ============================================================================
# SPEC PARSING
# ============================================================================

def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"Expected integer, got {value!r}")
    return int(value)


def segment_from_dict(name: str, data: Mapping[str, Any]) -> Segment:
    """
    Build a Segment from a raw spec dict.

    Raises:
        KeyError: If address is missing
        ValueError/TypeError: If a field has the wrong shape
    """
    address = data["address"]
    if isinstance(address, bool) or not isinstance(address, (str, int)):
        raise TypeError(f"Segment {name}: address must be a string or integer")
    address = str(address).strip()
    if not address:
        raise ValueError(f"Segment {name}: empty address")

    address_offset = _optional_int(data.get("addressOffset"))
    return Segment(
        name=name,
        address=address,
        alt=int(data.get("alt", 0)),
        size=_optional_int(data.get("size")),
        format=SegmentFormat(data.get("format", "none")),
        alg=KeyAlgorithm(data.get("alg", "rsa")),
        address_offset=DEFAULT_ADDRESS_OFFSET if address_offset is None else address_offset,
        port_offset=_optional_int(data.get("portOffset")),
    )


def model_from_dict(model_id: str, data: Mapping[str, Any]) -> DeviceModel:
    """
    Build a DeviceModel from a raw spec dict.

    Raises:
        KeyError/ValueError/TypeError: If the dict is malformed
    """
    if not isinstance(data, Mapping):
        raise TypeError(f"Model {model_id}: spec must be an object")

    segments = {}
    for key, value in data.items():
        if key in _METADATA_KEYS:
            continue
        if not isinstance(value, Mapping):
            continue
        segments[key] = segment_from_dict(key, value)

    serial = None
    serial_data = data.get("serial")
    if serial_data:
        serial = SerialIds(
            vid=str(serial_data["vid"]).lower(),
            pid=str(serial_data["pid"]).lower(),
            serial_number=str(serial_data.get("serialNumber", "")),
        )

    return DeviceModel(
        model_id=model_id.lower(),
        name=str(data.get("productName", model_id)),
        segments=segments,
        serial=serial,
        default_protocol=str(data.get("defaultProtocol", "tcp")),
        alternative_protocol=data.get("alternativeProtocol"),
        wifi_done_token=str(data.get("wifiDoneToken", "\n")),
    )


# ============================================================================
# REGISTRY
# ============================================================================

class DeviceSpecRegistry:
    """
    Read-only lookup table of device models.

    Built once per process by load_registry(); never mutated afterwards.
    """

    def __init__(self, models: Mapping[str, DeviceModel]):
        self._models = {model_id.lower(): model for model_id, model in models.items()}

    def __contains__(self, model_id: str) -> bool:
        return model_id.lower() in self._models

    def __len__(self) -> int:
        return len(self._models)

    def model_ids(self) -> List[str]:
        """Model ids in registration order."""
        return list(self._models)

    def models(self) -> List[DeviceModel]:
        return list(self._models.values())

    def lookup(self, model_id: str) -> DeviceModel:
        """
        Get a device model.

        Raises:
            DeviceNotFoundError: If the model id is not registered
        """
        model = self._models.get(model_id.lower())
        if model is None:
            raise DeviceNotFoundError(f"No device specification for {model_id}")
        return model

    def lookup_segment(self, model_id: str, segment_name: str) -> Segment:
        """
        Get a named segment of a device model.

        Raises:
            DeviceNotFoundError: If the model id is not registered
            SegmentUndefinedError: If the model has no such segment
        """
        if not segment_name:
            raise SegmentUndefinedError("Segment name required; don't know where to read/write")
        model = self.lookup(model_id)
        segment = model.segments.get(segment_name)
        if segment is None:
            raise SegmentUndefinedError(
                f"{model.name} ({model.model_id}) has no segment '{segment_name}'"
            )
        return segment

    def find_by_serial(self, vid: str, pid: str) -> Optional[DeviceModel]:
        """Find the model whose runtime USB ids match vid/pid."""
        vid, pid = vid.lower(), pid.lower()
        for model in self._models.values():
            if model.serial and model.serial.vid == vid and model.serial.pid == pid:
                return model
        return None


def base_specs() -> Dict[str, Dict[str, Any]]:
    """Copy of the built-in raw spec table."""
    return json.loads(json.dumps(_BASE_SPECS))


def _read_overrides(path: Path) -> Dict[str, DeviceModel]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("override file must contain a JSON object")
    return {model_id.lower(): model_from_dict(model_id, spec) for model_id, spec in raw.items()}


def load_registry(
    base: Optional[Mapping[str, Mapping[str, Any]]] = None,
    overrides_file: Optional[Union[str, Path]] = None,
) -> DeviceSpecRegistry:
    """
    Build the registry from the base table plus an optional override file.

    Overrides replace a model's entire spec (segment map included). A missing
    override file is ignored silently; an unreadable or malformed one is
    logged and ignored as a whole. Never raises for override problems.

    Args:
        base: Raw base spec table (defaults to the built-in table)
        overrides_file: Optional JSON file keyed by "vendorHex:productHex"
    """
    if base is None:
        base = _BASE_SPECS

    models = {model_id.lower(): model_from_dict(model_id, spec) for model_id, spec in base.items()}

    if overrides_file is not None:
        path = Path(overrides_file).expanduser()
        if path.exists():
            try:
                overrides = _read_overrides(path)
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Ignoring device spec overrides in {path}: {e}")
            else:
                for model_id, model in overrides.items():
                    logger.debug(f"Device spec override for {model_id} from {path}")
                    models[model_id] = model

    return DeviceSpecRegistry(models)
