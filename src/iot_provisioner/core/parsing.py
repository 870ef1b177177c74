"""
Centralized parsing helpers for user-supplied values.

Front ends import these helpers rather than re-implement them.
"""

from typing import Optional, Union

from iot_provisioner.core.wifi import SecurityType

PROTOCOLS = ("tcp", "udp")

_SECURITY_NAMES = {
    "NONE": SecurityType.OPEN,
    "OPEN": SecurityType.OPEN,
    "UNSECURED": SecurityType.OPEN,
    "WEP": SecurityType.WEP,
}


def parse_security(value: Union[str, int]) -> SecurityType:
    """
    Parse a Wi-Fi security type.

    Accepts the numeric codes 0-3 and names such as "WPA2", "WPA2-PSK",
    "WPA", "WEP", "OPEN", "NONE" or "UNSECURED" (case-insensitive).

    Raises:
        ValueError: If the value is not recognized
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return SecurityType(value)

    text = str(value).strip().upper()
    if text.isdigit():
        return SecurityType(int(text))

    # WPA2 must be checked before WPA
    if "WPA2" in text:
        return SecurityType.WPA2
    if "WPA" in text:
        return SecurityType.WPA
    if text in _SECURITY_NAMES:
        return _SECURITY_NAMES[text]

    raise ValueError(
        f"Invalid security type '{value}'. Use 0-3, WPA2, WPA, WEP or OPEN."
    )


def parse_port(value: Optional[str]) -> Optional[int]:
    """
    Parse a TCP/UDP port number.

    Returns:
        Port, or None if value is None or empty

    Raises:
        ValueError: If value is not an integer in 1-65535
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        port = int(value)
    except ValueError:
        raise ValueError(f"Invalid port '{value}'.")
    if not 0 < port <= 0xFFFF:
        raise ValueError(f"Invalid port '{value}'. Use 1-65535.")
    return port


def parse_protocol(value: Optional[str]) -> Optional[str]:
    """
    Normalize a cloud protocol name ("tcp" or "udp").

    Raises:
        ValueError: If value is not a known protocol
    """
    if value is None:
        return None
    text = value.strip().lower()
    if not text:
        return None
    if text not in PROTOCOLS:
        raise ValueError(f"Invalid protocol '{value}'. Use tcp or udp.")
    return text


def parse_model_id(value: str) -> str:
    """
    Normalize a "vendorHex:productHex" model id.

    Raises:
        ValueError: If value is not two 4-digit hex numbers joined by ':'
    """
    parts = value.strip().lower().split(":")
    if len(parts) != 2 or not all(len(p) == 4 for p in parts):
        raise ValueError(f"Invalid model id '{value}'. Use vendor:product hex, e.g. 2b04:d006.")
    try:
        for part in parts:
            int(part, 16)
    except ValueError:
        raise ValueError(f"Invalid model id '{value}'. Use vendor:product hex, e.g. 2b04:d006.")
    return ":".join(parts)
