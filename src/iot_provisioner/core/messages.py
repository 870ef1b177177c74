"""
Standardized warning and message system for iot-provisioner.

Provides structured warning items with stable codes and remediation hints,
derived from result errors and warnings.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any

from iot_provisioner.errors import ErrorKind


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_SEGMENT_UNDEFINED = "W_SEGMENT_UNDEFINED"

    # Transfer
    W_TRANSPORT_FAILURE = "W_TRANSPORT_FAILURE"
    W_DATA_PADDED = "W_DATA_PADDED"

    # Files
    W_FILE_NOT_FOUND = "W_FILE_NOT_FOUND"
    W_FILE_TOO_LARGE = "W_FILE_TOO_LARGE"

    # Addresses
    W_AMBIGUOUS_ADDRESS = "W_AMBIGUOUS_ADDRESS"
    W_NO_ADDRESS = "W_NO_ADDRESS"

    # Serial
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"

    # Keys
    W_KEY_TOOL_FAILURE = "W_KEY_TOOL_FAILURE"

    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Put the device in DFU mode (hold SETUP, tap RESET, release when it blinks yellow) "
        "and check it shows up in 'dfu-list'.",
    WarningCode.W_SEGMENT_UNDEFINED:
        "Check the segment names for this model with 'show-model'.",
    WarningCode.W_TRANSPORT_FAILURE:
        "Make sure dfu-util is installed and can access USB devices (try IOT_PROVISIONER_DFU_SUDO=1).",
    WarningCode.W_DATA_PADDED:
        "The file had an odd length and was padded with one zero byte.",
    WarningCode.W_FILE_NOT_FOUND:
        "Check the file path.",
    WarningCode.W_FILE_TOO_LARGE:
        "The key or address does not fit the segment. Use a key generated for this device.",
    WarningCode.W_AMBIGUOUS_ADDRESS:
        "This host has several addresses. Pass the one the device should use instead of 'mine'.",
    WarningCode.W_NO_ADDRESS:
        "No network address found. Connect to a network or pass an address explicitly.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Put the device in listening mode (hold SETUP until it blinks blue) and try again.",
    WarningCode.W_SERIAL_ERROR:
        "Close other serial apps using the port. Check the USB cable.",
    WarningCode.W_KEY_TOOL_FAILURE:
        "Make sure openssl is installed (or set IOT_PROVISIONER_OPENSSL) and the file is a public key.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}

ERROR_KIND_CODES: Dict[ErrorKind, WarningCode] = {
    ErrorKind.DEVICE_NOT_FOUND: WarningCode.W_DEVICE_NOT_FOUND,
    ErrorKind.SEGMENT_UNDEFINED: WarningCode.W_SEGMENT_UNDEFINED,
    ErrorKind.TRANSPORT_FAILURE: WarningCode.W_TRANSPORT_FAILURE,
    ErrorKind.TIMEOUT: WarningCode.W_SERIAL_TIMEOUT,
    ErrorKind.AMBIGUOUS_ADDRESS: WarningCode.W_AMBIGUOUS_ADDRESS,
    ErrorKind.NO_ADDRESS: WarningCode.W_NO_ADDRESS,
    ErrorKind.FILE_NOT_FOUND: WarningCode.W_FILE_NOT_FOUND,
    ErrorKind.FILE_TOO_LARGE: WarningCode.W_FILE_TOO_LARGE,
    ErrorKind.SERIAL_FAILURE: WarningCode.W_SERIAL_ERROR,
    ErrorKind.KEY_TOOL_FAILURE: WarningCode.W_KEY_TOOL_FAILURE,
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "", remediation: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail, remediation)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "", remediation: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail, remediation)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def code_for_warning(message: str) -> WarningCode:
    """Pick a code for a plain warning string."""
    msg_lower = message.lower()
    if "padded" in msg_lower:
        return WarningCode.W_DATA_PADDED
    if "timeout" in msg_lower or "timed out" in msg_lower:
        return WarningCode.W_SERIAL_TIMEOUT
    return WarningCode.W_UNKNOWN


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert a result's warnings and errors to WarningItem list.

    Errors are coded from the result's structured error kind; the raw
    collaborator output, when present, becomes the detail line.
    """
    items = [
        WarningItem.warn(code_for_warning(msg), msg)
        for msg in result.warnings
    ]

    kind = result.error_kind
    code = ERROR_KIND_CODES.get(kind, WarningCode.W_UNKNOWN) if kind else WarningCode.W_UNKNOWN
    detail = result.metadata.get("raw", "")
    for err in result.errors:
        items.append(WarningItem.error(code, err, detail))

    return items
