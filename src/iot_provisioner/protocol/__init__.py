"""Device transports - DFU programming and serial console handshakes."""

from .dfu_transport import DfuUtil, find_compatible_device
from .serial_link import SerialLink, SerialDevice, find_serial_devices
from .handshake import HandshakeStep, HandshakeSession, run_step

__all__ = [
    # DFU
    "DfuUtil",
    "find_compatible_device",
    # Serial
    "SerialLink",
    "SerialDevice",
    "find_serial_devices",
    # Handshake
    "HandshakeStep",
    "HandshakeSession",
    "run_step",
]
