"""
Server address records for device server-key segments.

A server key segment holds the DER public key followed by erased flash
(0xFF). A type-length-value record at the segment's address offset tells the
device which server to contact instead of the default:

    [ type (1) | length (1) | payload (length) ]

    type 0: IPv4, length 4, payload = 4 dotted-decimal octets
    type 1: domain name, payload = ASCII characters

Segments that define a port offset also carry a big-endian 16-bit port there.
The offsets are fixed per device family and never derived from key length.
"""

import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import List, Optional, Union

import psutil

from iot_provisioner.errors import (
    AmbiguousAddressError,
    ImageFileNotFound,
    ImageTooLarge,
    NoAddressError,
    NoDeviceSpecError,
)
from iot_provisioner.models.registry import Segment

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

ERASED = 0xFF
RECORD_HEADER_LEN = 2
MINE = "mine"

DEFAULT_HOSTS = {"tcp": "device.spark.io", "udp": "udp.particle.io"}
DEFAULT_PORTS = {"tcp": 5683, "udp": 5684}

_IPV4_RE = re.compile(r"^[0-9.]+$")


class AddressType(IntEnum):
    IPV4 = 0
    DOMAIN = 1


@dataclass(frozen=True)
class ServerAddress:
    """Server address decoded from a key segment."""
    host: str
    port: int
    protocol: str = "tcp"

    @property
    def url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


def classify_address(ip_or_domain: str) -> AddressType:
    """Digits and dots only is an IPv4 address; anything else is a domain."""
    if _IPV4_RE.match(ip_or_domain):
        return AddressType.IPV4
    return AddressType.DOMAIN


def encode_address_record(ip_or_domain: str) -> bytes:
    """
    Build the TLV record for an IPv4 address or domain name.

    Raises:
        ValueError: If the address is malformed or too long for one record
    """
    if not ip_or_domain:
        raise ValueError("Server address must not be empty")

    if classify_address(ip_or_domain) is AddressType.IPV4:
        try:
            packed = ipaddress.IPv4Address(ip_or_domain).packed
        except ipaddress.AddressValueError as e:
            raise ValueError(f"Invalid IPv4 address '{ip_or_domain}'") from e
        return bytes([AddressType.IPV4, len(packed)]) + packed

    try:
        payload = ip_or_domain.encode("ascii")
    except UnicodeEncodeError as e:
        raise ValueError(f"Domain name must be ASCII: '{ip_or_domain}'") from e
    if len(payload) > 0xFF:
        raise ValueError(f"Domain name longer than 255 characters: '{ip_or_domain}'")
    return bytes([AddressType.DOMAIN, len(payload)]) + payload


def decode_address_record(buf: bytes, offset: int = 0) -> Optional[str]:
    """
    Decode the TLV record at offset.

    Returns:
        Dotted IPv4 string or domain name, or None for an empty, erased or
        unknown record
    """
    if len(buf) < offset + RECORD_HEADER_LEN:
        return None
    record_type = buf[offset]
    length = buf[offset + 1]
    if length == 0 or record_type == ERASED:
        return None
    payload = bytes(buf[offset + RECORD_HEADER_LEN:offset + RECORD_HEADER_LEN + length])
    if len(payload) != length:
        return None

    if record_type == AddressType.IPV4:
        return ".".join(str(b) for b in payload)
    if record_type == AddressType.DOMAIN:
        return payload.decode("ascii", errors="replace")
    return None


def decode_server_address(buf: bytes, segment: Segment, protocol: str = "tcp") -> ServerAddress:
    """
    Read the server address configured in a server key image.

    Falls back to the cloud defaults for the protocol when no record or no
    port is present.
    """
    host = decode_address_record(buf, segment.address_offset) or DEFAULT_HOSTS.get(protocol, DEFAULT_HOSTS["tcp"])

    port = DEFAULT_PORTS.get(protocol, DEFAULT_PORTS["tcp"])
    if segment.port_offset is not None and len(buf) >= segment.port_offset + 2:
        stored = int.from_bytes(buf[segment.port_offset:segment.port_offset + 2], "big")
        if stored != 0xFFFF:
            port = stored

    return ServerAddress(host=host, port=port, protocol=protocol)


def local_ipv4_addresses() -> List[str]:
    """Non-loopback IPv4 addresses of this host."""
    addresses = []
    for iface, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            if ipaddress.IPv4Address(addr.address).is_loopback:
                continue
            if addr.address not in addresses:
                addresses.append(addr.address)
    return addresses


def resolve_address(ip_or_domain: str) -> str:
    """
    Resolve "mine" to this host's single IPv4 address; pass anything else through.

    Raises:
        AmbiguousAddressError: More than one local address
        NoAddressError: No local address
    """
    if ip_or_domain != MINE:
        return ip_or_domain

    addresses = local_ipv4_addresses()
    if len(addresses) == 1:
        logger.info(f"Using local address {addresses[0]}")
        return addresses[0]
    if addresses:
        raise AmbiguousAddressError(
            "Multiple valid IP addresses; specify one explicitly",
            raw=", ".join(addresses),
        )
    raise NoAddressError("No IP addresses found on this host")


def _load_key(key_source_path: PathLike, segment: Optional[Segment]) -> bytes:
    if segment is None:
        raise NoDeviceSpecError("No device specs for the server key segment")
    if not segment.size:
        raise NoDeviceSpecError(f"Segment {segment.name} has no size; cannot build a key image")

    path = Path(key_source_path)
    if not path.is_file():
        raise ImageFileNotFound(f"No such key file: {path}")
    key = path.read_bytes()
    if len(key) > segment.size:
        raise ImageTooLarge(
            f"Key {path.name} is {len(key)} bytes; segment {segment.name} holds {segment.size}"
        )
    return key


def addressed_key_filename(key_source_path: PathLike, ip_or_domain: str, segment: Segment) -> Path:
    """Output name: <stem>-<address with dots as underscores>-<alg>.der beside the source."""
    path = Path(key_source_path)
    tag = ip_or_domain.replace(".", "_")
    return path.with_name(f"{path.stem}-{tag}-{segment.alg.value}.der")


def build_addressed_key_image_bytes(
    key: bytes,
    ip_or_domain: str,
    segment: Segment,
    port: Optional[int] = None,
) -> bytes:
    """
    Lay out a server key image in memory.

    Raises:
        ImageTooLarge: If the record does not fit in the segment
        ValueError: If the address or port is malformed
    """
    record = encode_address_record(ip_or_domain)
    end = segment.address_offset + len(record)
    if end > segment.size:
        raise ImageTooLarge(
            f"Address record for '{ip_or_domain}' ends at byte {end}; "
            f"segment {segment.name} holds {segment.size}"
        )
    if len(key) > segment.address_offset:
        logger.warning(
            f"Key ({len(key)} bytes) overlaps the address record at offset {segment.address_offset}"
        )

    buf = bytearray([ERASED]) * segment.size
    buf[:len(key)] = key
    buf[segment.address_offset:end] = record

    if port is not None and segment.port_offset is not None:
        if not 0 < port <= 0xFFFF:
            raise ValueError(f"Invalid port {port}")
        buf[segment.port_offset:segment.port_offset + 2] = port.to_bytes(2, "big")

    return bytes(buf)


def build_addressed_key_image(
    key_source_path: PathLike,
    ip_or_domain: str,
    segment: Optional[Segment],
    port: Optional[int] = None,
    output_path: Optional[PathLike] = None,
) -> Path:
    """
    Write a server key image that points the device at a custom server.

    The image is exactly segment.size bytes: key bytes first, 0xFF fill, the
    address record at segment.address_offset and, when given, the port at
    segment.port_offset. Identical inputs always produce identical output.

    Args:
        key_source_path: DER public key file
        ip_or_domain: IPv4 address, domain name, or "mine"
        segment: Server key segment of the target device
        port: Optional server port
        output_path: Destination (defaults to addressed_key_filename())

    Returns:
        Path of the written image

    Raises:
        NoDeviceSpecError, ImageFileNotFound, ImageTooLarge,
        AmbiguousAddressError, NoAddressError
    """
    key = _load_key(key_source_path, segment)
    address = resolve_address(ip_or_domain)
    image = build_addressed_key_image_bytes(key, address, segment, port)

    out = Path(output_path) if output_path else addressed_key_filename(key_source_path, address, segment)
    out.write_bytes(image)
    logger.info(f"Wrote {len(image)}-byte key image for {address} to {out}")
    return out


def build_padded_key_image(
    key_source_path: PathLike,
    segment: Optional[Segment],
    output_path: Optional[PathLike] = None,
) -> Path:
    """
    Pad a key shorter than its segment with erased-flash bytes.

    Returns the source path unchanged when no padding is needed.
    """
    key = _load_key(key_source_path, segment)
    if len(key) == segment.size:
        return Path(key_source_path)

    source = Path(key_source_path)
    out = Path(output_path) if output_path else source.with_name(f"{source.stem}-padded.der")
    out.write_bytes(key + bytes([ERASED]) * (segment.size - len(key)))
    logger.info(f"Padded {source.name} to {segment.size} bytes at {out}")
    return out
