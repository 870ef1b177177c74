"""
Error taxonomy for device provisioning.

Every error carries a structured kind plus the raw collaborator message, so
front ends can render guidance without re-deriving what went wrong.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Stable error kinds surfaced to callers."""
    DEVICE_NOT_FOUND = "device_not_found"
    SEGMENT_UNDEFINED = "segment_undefined"
    TRANSPORT_FAILURE = "transport_failure"
    TIMEOUT = "timeout"
    AMBIGUOUS_ADDRESS = "ambiguous_address"
    NO_ADDRESS = "no_address"
    FILE_NOT_FOUND = "file_not_found"
    FILE_TOO_LARGE = "file_too_large"
    SERIAL_FAILURE = "serial_failure"
    KEY_TOOL_FAILURE = "key_tool_failure"


class ProvisionError(Exception):
    """
    Base exception for provisioning errors.

    Attributes:
        kind: Structured error kind
        raw: Raw message from the collaborator (dfu-util output, serial error)
    """
    kind = ErrorKind.TRANSPORT_FAILURE

    def __init__(self, message: str, raw: Optional[str] = None):
        self.raw = raw if raw is not None else message
        super().__init__(message)


class DeviceNotFoundError(ProvisionError):
    """No compatible device attached, or model id unknown."""
    kind = ErrorKind.DEVICE_NOT_FOUND


class SegmentUndefinedError(ProvisionError):
    """Segment name not defined for the device model."""
    kind = ErrorKind.SEGMENT_UNDEFINED


class NoDeviceSpecError(SegmentUndefinedError):
    """Device has no spec for the segment an image is being built for."""


class TransportFailure(ProvisionError):
    """Programming transport reported a failure."""
    kind = ErrorKind.TRANSPORT_FAILURE


class HandshakeTimeout(ProvisionError):
    """A serial handshake step did not settle in time."""
    kind = ErrorKind.TIMEOUT


class SerialLinkError(ProvisionError):
    """Serial port could not be opened, or failed while in use."""
    kind = ErrorKind.SERIAL_FAILURE


class AmbiguousAddressError(ProvisionError):
    """More than one local IPv4 address matched 'mine'."""
    kind = ErrorKind.AMBIGUOUS_ADDRESS


class NoAddressError(ProvisionError):
    """No local IPv4 address available for 'mine'."""
    kind = ErrorKind.NO_ADDRESS


class ImageFileNotFound(ProvisionError, FileNotFoundError):
    """Key or firmware image file does not exist."""
    kind = ErrorKind.FILE_NOT_FOUND


class ImageTooLarge(ProvisionError):
    """Image (or address record) does not fit in the target segment."""
    kind = ErrorKind.FILE_TOO_LARGE


class KeyToolError(ProvisionError):
    """openssl failed to create or convert a key."""
    kind = ErrorKind.KEY_TOOL_FAILURE
