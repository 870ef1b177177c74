"""
Core module for iot-provisioner.

This module provides the single source of truth for:
- Segment transfers (segments.py)
- Server address key images (address.py)
- Wi-Fi provisioning over serial (wifi.py)
- Value parsing (parsing.py)
- Result objects (results.py)
- Provisioning workflows (actions.py)
- Standardized warnings/messages (messages.py)

Front ends should call into this module rather than implementing their own
logic.
"""

from .segments import Direction, TransferRequest, SegmentTransfer, pad_to_even_length
from .address import (
    AddressType,
    ServerAddress,
    build_addressed_key_image,
    build_padded_key_image,
    decode_address_record,
    decode_server_address,
    encode_address_record,
    resolve_address,
)
from .wifi import SecurityType, WifiCredentials, WifiTimeouts, WifiProvisioningFlow
from .parsing import parse_security, parse_port, parse_protocol, parse_model_id
from .results import OperationResult
from .messages import MessageLevel, WarningCode, WarningItem, result_to_warnings
from .actions import (
    configure_wifi,
    configure_wifi_async,
    fetch_device_protocol,
    list_dfu_devices,
    list_serial_devices,
    load_device_key,
    read_segment,
    read_server_address,
    resolve_protocol,
    create_device_key,
    save_device_key,
    set_device_protocol,
    write_segment,
    write_server_key,
)

__all__ = [
    # Segments
    "Direction",
    "TransferRequest",
    "SegmentTransfer",
    "pad_to_even_length",
    # Addresses
    "AddressType",
    "ServerAddress",
    "build_addressed_key_image",
    "build_padded_key_image",
    "decode_address_record",
    "decode_server_address",
    "encode_address_record",
    "resolve_address",
    # Wi-Fi
    "SecurityType",
    "WifiCredentials",
    "WifiTimeouts",
    "WifiProvisioningFlow",
    # Parsing
    "parse_security",
    "parse_port",
    "parse_protocol",
    "parse_model_id",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "result_to_warnings",
    # Actions
    "configure_wifi",
    "configure_wifi_async",
    "fetch_device_protocol",
    "list_dfu_devices",
    "list_serial_devices",
    "load_device_key",
    "read_segment",
    "read_server_address",
    "resolve_protocol",
    "create_device_key",
    "save_device_key",
    "set_device_protocol",
    "write_segment",
    "write_server_key",
]
