"""
Serial Link Layer

Handles the byte-stream connection to a device's USB serial console.

This module provides:
- Serial port discovery matched against the device spec registry
- An asyncio-facing connection over pyserial (open/close, write, drain,
  flush, inbound data subscriptions)

Inbound data is read on a background thread and handed to subscribers on
the event loop, one chunk at a time. Chunks are delivered as they arrive, so
a prompt may be split across several of them; there is no line buffering
and nothing is kept for late subscribers.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import serial
import serial.tools.list_ports

from iot_provisioner.errors import SerialLinkError
from iot_provisioner.models.registry import DeviceModel, DeviceSpecRegistry

logger = logging.getLogger(__name__)

DEFAULT_BAUD_RATE = 9600
READ_CHUNK = 256
READ_POLL_TIMEOUT = 0.1

DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class SerialDevice:
    """A serial port that looks like a provisionable device."""
    port: str
    model: Optional[DeviceModel] = None
    serial_number: str = ""

    @property
    def type_name(self) -> str:
        return self.model.name if self.model else ""


def _port_matches(port, model: DeviceModel) -> bool:
    """Match on hwid text or serial number."""
    ids = model.serial
    if ids is None:
        return False
    hwid = (port.hwid or "").upper()
    if f"VID:PID={ids.vid}:{ids.pid}".upper() in hwid:
        return True
    if f"VID_{ids.vid.upper()}" in hwid and f"PID_{ids.pid.upper()}" in hwid:
        return True
    return bool(ids.serial_number and port.serial_number and ids.serial_number in port.serial_number)


def _match_port(port, registry: DeviceSpecRegistry) -> Optional[DeviceModel]:
    if port.vid is not None and port.pid is not None:
        model = registry.find_by_serial(f"{port.vid:04x}", f"{port.pid:04x}")
        if model is not None:
            return model
    for model in registry.models():
        if _port_matches(port, model):
            return model
    return None


def find_serial_devices(registry: DeviceSpecRegistry, ports=None) -> List[SerialDevice]:
    """
    List serial ports belonging to known devices.

    When nothing matches, bare /dev/ttyACM* and /dev/cuaU* ports are returned
    untyped so the user still has something to pick.

    Args:
        registry: Registry whose serial ids are matched
        ports: Port list (defaults to serial.tools.list_ports.comports())
    """
    if ports is None:
        ports = list(serial.tools.list_ports.comports())

    devices = []
    for port in ports:
        model = _match_port(port, registry)
        if model is not None:
            devices.append(SerialDevice(port.device, model, port.serial_number or ""))

    if not devices:
        for port in ports:
            if port.device.startswith("/dev/ttyACM") or port.device.startswith("/dev/cuaU"):
                devices.append(SerialDevice(port.device))

    return devices


class SerialLink:
    """
    Duplex byte-stream connection to a device console.

    Example:
        link = SerialLink("/dev/ttyACM0")
        await link.open()
        unsubscribe = link.subscribe(on_data, on_error)
        await link.write(b"w")
        await link.drain()
        unsubscribe()
        await link.close()
    """

    def __init__(self, port: str, baudrate: int = DEFAULT_BAUD_RATE):
        """
        Args:
            port: Serial port (e.g., "/dev/ttyACM0", "COM3")
            baudrate: Serial baud rate (default 9600)
        """
        self.port = port
        self.baudrate = baudrate
        self.ser: Optional[serial.Serial] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._subscribers: List[tuple] = []

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open)

    async def open(self) -> None:
        """
        Open the port and start delivering inbound data.

        Raises:
            SerialLinkError: If the port cannot be opened
        """
        self._loop = asyncio.get_running_loop()
        try:
            self.ser = await self._loop.run_in_executor(None, self._open_port)
        except serial.SerialException as e:
            raise SerialLinkError(f"Cannot open port {self.port}", raw=str(e)) from e

        self._stopping.clear()
        self._reader = threading.Thread(
            target=self._read_loop, name=f"serial-reader-{self.port}", daemon=True
        )
        self._reader.start()
        logger.debug(f"Opened {self.port} at {self.baudrate} bps")

    def _open_port(self) -> serial.Serial:
        return serial.Serial(
            port=self.port,
            baudrate=self.baudrate,
            bytesize=8,
            parity="N",
            stopbits=1,
            timeout=READ_POLL_TIMEOUT,
        )

    async def close(self) -> None:
        """Stop the reader and close the port. Safe to call more than once."""
        self._stopping.set()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not threading.current_thread():
            await asyncio.get_running_loop().run_in_executor(None, reader.join, 1.0)
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def subscribe(self, on_data: DataCallback, on_error: Optional[ErrorCallback] = None) -> Callable[[], None]:
        """
        Attach an inbound data listener.

        Returns:
            Callable that detaches the listener
        """
        entry = (on_data, on_error)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def _read_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                chunk = self.ser.read(min(self.ser.in_waiting, READ_CHUNK) or 1)
                if chunk and self.ser.in_waiting:
                    chunk += self.ser.read(min(self.ser.in_waiting, READ_CHUNK))
            except (serial.SerialException, OSError, TypeError) as e:
                if not self._stopping.is_set():
                    self._loop.call_soon_threadsafe(
                        self._dispatch_error,
                        SerialLinkError(f"Serial port {self.port} failed", raw=str(e)),
                    )
                return
            if chunk:
                self._loop.call_soon_threadsafe(self._dispatch, chunk)

    def _dispatch(self, chunk: bytes) -> None:
        logger.debug(f"<<< {chunk!r}")
        for on_data, _ in list(self._subscribers):
            on_data(chunk)

    def _dispatch_error(self, error: Exception) -> None:
        for _, on_error in list(self._subscribers):
            if on_error is not None:
                on_error(error)

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise SerialLinkError("Serial port not open")
        return self.ser

    async def write(self, data: bytes) -> None:
        """
        Write bytes to the device.

        Raises:
            SerialLinkError: If the port is closed or the write fails
        """
        ser = self._require_open()
        try:
            written = await asyncio.get_running_loop().run_in_executor(None, ser.write, data)
        except serial.SerialException as e:
            raise SerialLinkError("Write error", raw=str(e)) from e
        if written is not None and written != len(data):
            raise SerialLinkError(f"Incomplete write: sent {written}/{len(data)} bytes")
        logger.debug(f">>> {data!r}")

    async def drain(self) -> None:
        """Wait until all written bytes have left the host."""
        ser = self._require_open()
        try:
            await asyncio.get_running_loop().run_in_executor(None, ser.flush)
        except serial.SerialException as e:
            raise SerialLinkError("Drain error", raw=str(e)) from e

    async def flush(self) -> None:
        """Discard unsent output and unread input."""
        ser = self._require_open()
        ser.reset_output_buffer()
        ser.reset_input_buffer()
