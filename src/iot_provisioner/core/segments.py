"""
Flash segment transfer.

Moves bytes between a local file and a named flash segment of a device that
is already in DFU mode. Segment lookup happens before any transport call,
so an unknown segment never reaches the device.
"""

import logging
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

from iot_provisioner.errors import ImageFileNotFound, TransportFailure
from iot_provisioner.models.registry import DeviceSpecRegistry, Segment

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class Direction(Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class TransferRequest:
    """
    One segment transfer.

    leave_running has no default: read and write call sites choose it
    explicitly.
    """
    model_id: str
    segment_name: str
    direction: Direction
    path: Path
    leave_running: bool


def pad_to_even_length(path: PathLike) -> bool:
    """
    Append one zero byte to an odd-length file, in place.

    Returns:
        True if the file was padded
    """
    path = Path(path)
    if path.stat().st_size % 2 == 0:
        return False
    with open(path, "ab") as f:
        f.write(b"\x00")
    logger.warning(f"Padded {path} to even length")
    return True


class SegmentTransfer:
    """
    Segment-level reads and writes over a programming transport.

    The transport must provide read/write(device_id, alt_setting,
    address_arg, path, leave) and raise TransportFailure on error.
    No retries are attempted here.
    """

    def __init__(self, registry: DeviceSpecRegistry, transport):
        self.registry = registry
        self.transport = transport

    def execute(self, request: TransferRequest) -> str:
        """
        Run a transfer request.

        Returns:
            Raw transport output

        Raises:
            DeviceNotFoundError: Model not registered
            SegmentUndefinedError: Segment not defined for the model
            ImageFileNotFound: Write source does not exist
            TransportFailure: Transport reported failure
        """
        segment = self.registry.lookup_segment(request.model_id, request.segment_name)

        if request.direction is Direction.WRITE:
            return self._write(request, segment)
        return self._read(request, segment)

    def write(self, model_id: str, segment_name: str, file_path: PathLike, leave_running: bool) -> str:
        """Write a local file into a named segment."""
        return self.execute(TransferRequest(
            model_id, segment_name, Direction.WRITE, Path(file_path), leave_running
        ))

    def read(self, model_id: str, segment_name: str, dest_path: PathLike, leave_running: bool) -> str:
        """Read a named segment into a local file."""
        return self.execute(TransferRequest(
            model_id, segment_name, Direction.READ, Path(dest_path), leave_running
        ))

    def read_buffer(self, model_id: str, segment_name: str, leave_running: bool = False) -> bytes:
        """Read a named segment and return its bytes."""
        # dfu-util refuses to upload into an existing file, so only the directory is created
        with tempfile.TemporaryDirectory() as tmpdir:
            dest = Path(tmpdir) / f"{segment_name}.bin"
            self.read(model_id, segment_name, dest, leave_running)
            return dest.read_bytes()

    def write_buffer(self, model_id: str, segment_name: str, data: bytes, leave_running: bool = False) -> str:
        """Write bytes into a named segment through a temporary file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            src = Path(tmpdir) / f"{segment_name}.bin"
            src.write_bytes(data)
            return self.write(model_id, segment_name, src, leave_running)

    def _write(self, request: TransferRequest, segment: Segment) -> str:
        if not request.path.is_file():
            raise ImageFileNotFound(f"No such file: {request.path}")

        pad_to_even_length(request.path)

        logger.info(
            f"Writing {request.path.name} to {segment.name} "
            f"(alt {segment.alt}, {segment.address_arg})"
        )
        try:
            return self.transport.write(
                request.model_id,
                segment.alt,
                segment.address_arg,
                str(request.path),
                request.leave_running,
            )
        except TransportFailure:
            logger.error(f"Write to {segment.name} failed")
            raise

    def _read(self, request: TransferRequest, segment: Segment) -> str:
        logger.info(
            f"Reading {segment.name} (alt {segment.alt}, {segment.address_arg}) "
            f"into {request.path}"
        )
        try:
            return self.transport.read(
                request.model_id,
                segment.alt,
                segment.address_arg,
                str(request.path),
                request.leave_running,
            )
        except TransportFailure:
            logger.error(f"Read of {segment.name} failed")
            raise
