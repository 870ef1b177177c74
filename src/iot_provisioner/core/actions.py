"""
Core workflow actions for iot-provisioner.

This module exposes functions that any front end can call. Each one finds
its collaborators (settings, device registry, dfu-util), runs one
provisioning task and reports it as an OperationResult; provisioning errors
never escape as exceptions.
"""

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from iot_provisioner.config import Settings, load_settings
from iot_provisioner.errors import ProvisionError
from iot_provisioner.models.registry import (
    DeviceModel,
    DeviceSpecRegistry,
    load_registry,
    private_key_segment,
    server_key_segment,
)
from iot_provisioner.protocol.dfu_transport import DfuUtil, find_compatible_device
from iot_provisioner.protocol.serial_link import SerialLink, find_serial_devices
from iot_provisioner.utils.openssl import KeyFiles, OpenSsl, key_algorithm_for_protocol
from .address import build_addressed_key_image, build_padded_key_image, decode_server_address
from .parsing import parse_model_id, parse_protocol
from .results import OperationResult
from .segments import SegmentTransfer
from .wifi import WifiCredentials, WifiProvisioningFlow, WifiTimeouts

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
ProgressCallback = Callable[[str, int, int], None]

TRANSPORT_SEGMENT = "transport"
TRANSPORT_DEFAULT_FLAG = 0xFF


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "iot_provisioner"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _collaborators(
    settings: Optional[Settings],
    registry: Optional[DeviceSpecRegistry],
    transport,
) -> Tuple[Settings, DeviceSpecRegistry, object]:
    settings = settings or load_settings()
    if registry is None:
        registry = load_registry(overrides_file=settings.device_specs_file)
    if transport is None:
        transport = DfuUtil(settings.dfu_util, use_sudo=settings.use_sudo_for_dfu)
    return settings, registry, transport


def _target_model(
    settings: Settings,
    registry: DeviceSpecRegistry,
    transport,
    model_id: Optional[str],
) -> DeviceModel:
    """Explicit model id, or the first compatible device in DFU mode."""
    if model_id:
        return registry.lookup(parse_model_id(model_id))
    return registry.lookup(find_compatible_device(transport, registry, settings.discovery_timeout))


def _progress(progress_cb: Optional[ProgressCallback], step: str, current: int, total: int) -> None:
    if progress_cb:
        progress_cb(step, current, total)


def fetch_device_protocol(transfer: SegmentTransfer, model: DeviceModel) -> str:
    """
    Read the cloud protocol a dual-protocol device is set to.

    The one-byte transport segment holds 0xFF (erased) for the model's default
    protocol and anything else for the alternative.
    """
    flag = transfer.read_buffer(model.model_id, TRANSPORT_SEGMENT, leave_running=False)
    if not flag or flag[0] == TRANSPORT_DEFAULT_FLAG:
        return model.default_protocol
    return model.alternative_protocol or model.default_protocol


def resolve_protocol(
    transfer: SegmentTransfer,
    model: DeviceModel,
    protocol: Optional[str] = None,
) -> str:
    """
    Pick the cloud protocol whose key segments an operation should use.

    An explicit protocol wins; otherwise dual-protocol devices are asked,
    and single-protocol devices use their default.

    Raises:
        ValueError: If the model does not support the explicit protocol
    """
    protocol = parse_protocol(protocol)
    if protocol:
        if protocol not in model.supported_protocols:
            raise ValueError(
                f"{model.name} does not support {protocol}; "
                f"use {' or '.join(model.supported_protocols)}"
            )
        return protocol

    if model.alternative_protocol and TRANSPORT_SEGMENT in model.segments:
        protocol = fetch_device_protocol(transfer, model)
        logger.info(f"Device protocol is {protocol}")
        return protocol
    return model.default_protocol


def list_dfu_devices(
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
) -> OperationResult:
    """
    List attached DFU devices.

    Returns:
        OperationResult with:
            - metadata["devices"]: list of {"id", "name"} (name "" when unknown)
            - model: first compatible device id, if any
    """
    with _capture_logs() as logs:
        try:
            settings, registry, transport = _collaborators(settings, registry, transport)
            ids = transport.enumerate(timeout=settings.discovery_timeout)
            devices = [
                {"id": device_id, "name": registry.lookup(device_id).name if device_id in registry else ""}
                for device_id in ids
            ]
            compatible = next((d["id"] for d in devices if d["name"]), "")
            result = OperationResult.success(operation="dfu_list", model=compatible)
            result.metadata["devices"] = devices
            if not devices:
                result.add_warning("No DFU devices attached")
        except ProvisionError as e:
            result = OperationResult.from_error("dfu_list", e)
        result.logs = logs
        return result


def read_segment(
    segment_name: str,
    dest_path: PathLike,
    *,
    leave_running: bool,
    model_id: Optional[str] = None,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
) -> OperationResult:
    """
    Read a named flash segment into a file.

    Args:
        segment_name: Segment name (e.g., "serverKey")
        dest_path: Destination file (must not exist; dfu-util will not overwrite)
        leave_running: Leave DFU mode after the transfer
        model_id: Target model id (defaults to the first compatible device)

    Returns:
        OperationResult with bytes_len and metadata["output"] (raw dfu-util output)
    """
    with _capture_logs() as logs:
        model = None
        try:
            settings, registry, transport = _collaborators(settings, registry, transport)
            model = _target_model(settings, registry, transport, model_id)
            transfer = SegmentTransfer(registry, transport)
            output = transfer.read(model.model_id, segment_name, dest_path, leave_running)

            dest = Path(dest_path)
            result = OperationResult.success(
                operation="read_segment",
                model=model.model_id,
                segment=segment_name,
                bytes_len=dest.stat().st_size if dest.exists() else 0,
                path=str(dest),
            )
            result.metadata["output"] = output
        except ProvisionError as e:
            result = OperationResult.from_error(
                "read_segment", e, model=model.model_id if model else "", segment=segment_name
            )
        except ValueError as e:
            result = OperationResult.failure("read_segment", str(e), segment=segment_name)
        result.logs = logs
        return result


def write_segment(
    segment_name: str,
    file_path: PathLike,
    *,
    leave_running: bool,
    model_id: Optional[str] = None,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
) -> OperationResult:
    """
    Write a file into a named flash segment.

    Odd-length files are padded in place with one zero byte first.

    Returns:
        OperationResult with bytes_len (after padding) and metadata["output"]
    """
    with _capture_logs() as logs:
        model = None
        try:
            settings, registry, transport = _collaborators(settings, registry, transport)
            model = _target_model(settings, registry, transport, model_id)
            transfer = SegmentTransfer(registry, transport)

            path = Path(file_path)
            original_size = path.stat().st_size if path.is_file() else 0
            output = transfer.write(model.model_id, segment_name, path, leave_running)

            result = OperationResult.success(
                operation="write_segment",
                model=model.model_id,
                segment=segment_name,
                bytes_len=path.stat().st_size,
                path=str(path),
            )
            if result.bytes_len != original_size:
                result.add_warning(f"{path.name} padded to even length")
            result.metadata["output"] = output
        except ProvisionError as e:
            result = OperationResult.from_error(
                "write_segment", e, model=model.model_id if model else "", segment=segment_name
            )
        except ValueError as e:
            result = OperationResult.failure("write_segment", str(e), segment=segment_name)
        result.logs = logs
        return result


def write_server_key(
    key_path: PathLike,
    ip_or_domain: Optional[str] = None,
    port: Optional[int] = None,
    protocol: Optional[str] = None,
    model_id: Optional[str] = None,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
    progress_cb: Optional[ProgressCallback] = None,
    key_tool: Optional[OpenSsl] = None,
) -> OperationResult:
    """
    Switch the server public key, optionally pointing the device at a custom server.

    With an address the key is laid out with a server address record (and
    port); without one it is only padded to the segment size.

    Args:
        key_path: Server public key, DER or PEM (PEM is converted with openssl)
        ip_or_domain: IPv4 address, domain name, or "mine"
        port: Optional server port
        protocol: "tcp" or "udp" (detected from the device when omitted)
        model_id: Target model id (defaults to the first compatible device)
        progress_cb: Optional callback(step_name, current, total)
        key_tool: openssl wrapper for PEM input (defaults to settings.openssl)

    Returns:
        OperationResult with path (image written) and metadata["protocol"]
    """
    operation = "write_server_key"
    with _capture_logs() as logs:
        model = None
        try:
            settings, registry, transport = _collaborators(settings, registry, transport)
            _progress(progress_cb, "Finding device", 0, 3)
            model = _target_model(settings, registry, transport, model_id)
            transfer = SegmentTransfer(registry, transport)
            protocol = resolve_protocol(transfer, model, protocol)
            segment_name = server_key_segment(protocol)
            segment = model.segments.get(segment_name)

            _progress(progress_cb, "Preparing key", 1, 3)
            if segment is not None:
                key_tool = key_tool or OpenSsl(settings.openssl)
                key_path = key_tool.public_key_to_der(key_path, segment.alg.value)
            if ip_or_domain:
                image = build_addressed_key_image(key_path, ip_or_domain, segment, port=port)
            else:
                image = build_padded_key_image(key_path, segment)

            _progress(progress_cb, "Writing key", 2, 3)
            output = transfer.write(model.model_id, segment_name, image, leave_running=False)
            _progress(progress_cb, "Writing key", 3, 3)

            result = OperationResult.success(
                operation=operation,
                model=model.model_id,
                segment=segment_name,
                bytes_len=image.stat().st_size,
                path=str(image),
            )
            result.metadata["protocol"] = protocol
            result.metadata["output"] = output
            logger.info(f"Server key {Path(key_path).name} written to {segment_name}")
        except ProvisionError as e:
            result = OperationResult.from_error(operation, e, model=model.model_id if model else "")
        except ValueError as e:
            result = OperationResult.failure(operation, str(e), model=model.model_id if model else "")
        result.logs = logs
        return result


def read_server_address(
    protocol: Optional[str] = None,
    model_id: Optional[str] = None,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
) -> OperationResult:
    """
    Read which server the device is configured to contact.

    Returns:
        OperationResult with metadata["address"] (ServerAddress) and
        metadata["url"]
    """
    operation = "read_server_address"
    with _capture_logs() as logs:
        model = None
        try:
            settings, registry, transport = _collaborators(settings, registry, transport)
            model = _target_model(settings, registry, transport, model_id)
            transfer = SegmentTransfer(registry, transport)
            protocol = resolve_protocol(transfer, model, protocol)
            segment_name = server_key_segment(protocol)
            segment = registry.lookup_segment(model.model_id, segment_name)

            buf = transfer.read_buffer(model.model_id, segment_name, leave_running=False)
            address = decode_server_address(buf, segment, protocol)

            result = OperationResult.success(
                operation=operation,
                model=model.model_id,
                segment=segment_name,
                bytes_len=len(buf),
            )
            result.metadata["address"] = address
            result.metadata["url"] = address.url
            logger.info(f"Device server is {address.url}")
        except ProvisionError as e:
            result = OperationResult.from_error(operation, e, model=model.model_id if model else "")
        except ValueError as e:
            result = OperationResult.failure(operation, str(e), model=model.model_id if model else "")
        result.logs = logs
        return result


def set_device_protocol(
    protocol: str,
    model_id: Optional[str] = None,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
) -> OperationResult:
    """Switch a dual-protocol device between its default and alternative protocol."""
    operation = "set_device_protocol"
    with _capture_logs() as logs:
        model = None
        try:
            protocol = parse_protocol(protocol)
            if not protocol:
                raise ValueError("Protocol required (tcp or udp)")
            settings, registry, transport = _collaborators(settings, registry, transport)
            model = _target_model(settings, registry, transport, model_id)
            if TRANSPORT_SEGMENT not in model.segments:
                raise ValueError(f"{model.name} has no transport flag; its protocol is fixed")
            if protocol not in model.supported_protocols:
                raise ValueError(f"{model.name} does not support {protocol}")

            flag = TRANSPORT_DEFAULT_FLAG if protocol == model.default_protocol else 0x00
            transfer = SegmentTransfer(registry, transport)
            transfer.write_buffer(model.model_id, TRANSPORT_SEGMENT, bytes([flag]), leave_running=False)

            result = OperationResult.success(
                operation=operation,
                model=model.model_id,
                segment=TRANSPORT_SEGMENT,
                bytes_len=1,
            )
            result.metadata["protocol"] = protocol
            logger.info(f"Protocol changed to {protocol}")
        except ProvisionError as e:
            result = OperationResult.from_error(operation, e, model=model.model_id if model else "")
        except ValueError as e:
            result = OperationResult.failure(operation, str(e), model=model.model_id if model else "")
        result.logs = logs
        return result


def create_device_key(
    filename: PathLike = "device",
    protocol: Optional[str] = None,
    model_id: Optional[str] = None,
    force: bool = False,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
    key_tool: Optional[OpenSsl] = None,
) -> OperationResult:
    """
    Generate a new device key set (<name>.pem, <name>.pub.pem, <name>.der).

    The algorithm follows the device: with an explicit protocol and no model
    id it is picked from the protocol alone (udp gives ec, tcp rsa) and no
    device is needed; otherwise the target device's private key segment
    decides.

    Returns:
        OperationResult with path (DER private key) and metadata["files"]
    """
    operation = "create_device_key"
    files = KeyFiles.for_stem(filename)
    existing = [str(p) for p in files.all() if p.exists()]
    if existing and not force:
        return OperationResult.failure(
            operation,
            f"{', '.join(existing)} already exist; choose another name or use force",
            path=str(files.private_der),
        )

    with _capture_logs() as logs:
        model = None
        try:
            explicit = parse_protocol(protocol)
            settings, registry, transport = _collaborators(settings, registry, transport)
            if explicit and not model_id:
                alg = key_algorithm_for_protocol(explicit)
            else:
                model = _target_model(settings, registry, transport, model_id)
                transfer = SegmentTransfer(registry, transport)
                segment_name = private_key_segment(resolve_protocol(transfer, model, explicit))
                alg = registry.lookup_segment(model.model_id, segment_name).alg.value

            key_tool = key_tool or OpenSsl(settings.openssl)
            files = key_tool.new_key_set(filename, alg)

            result = OperationResult.success(
                operation=operation,
                model=model.model_id if model else "",
                bytes_len=files.private_der.stat().st_size if files.private_der.exists() else 0,
                path=str(files.private_der),
            )
            result.metadata["alg"] = alg
            result.metadata["files"] = [str(p) for p in files.all()]
        except ProvisionError as e:
            result = OperationResult.from_error(operation, e, model=model.model_id if model else "")
        except ValueError as e:
            result = OperationResult.failure(operation, str(e), model=model.model_id if model else "")
        result.logs = logs
        return result


def save_device_key(
    dest_path: PathLike,
    force: bool = False,
    protocol: Optional[str] = None,
    model_id: Optional[str] = None,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
) -> OperationResult:
    """
    Save the device private key to a file.

    An existing destination is only replaced when force is set.
    """
    operation = "save_device_key"
    dest = Path(dest_path)
    if dest.exists() and not force:
        return OperationResult.failure(
            operation,
            f"{dest} already exists; choose another file or use force",
            path=str(dest),
        )

    with _capture_logs() as logs:
        model = None
        try:
            settings, registry, transport = _collaborators(settings, registry, transport)
            model = _target_model(settings, registry, transport, model_id)
            transfer = SegmentTransfer(registry, transport)
            segment_name = private_key_segment(resolve_protocol(transfer, model, protocol))

            if dest.exists():
                dest.unlink()
            transfer.read(model.model_id, segment_name, dest, leave_running=False)

            result = OperationResult.success(
                operation=operation,
                model=model.model_id,
                segment=segment_name,
                bytes_len=dest.stat().st_size if dest.exists() else 0,
                path=str(dest),
            )
            logger.info(f"Saved device key to {dest}")
        except ProvisionError as e:
            result = OperationResult.from_error(operation, e, model=model.model_id if model else "")
        except ValueError as e:
            result = OperationResult.failure(operation, str(e), model=model.model_id if model else "")
        result.logs = logs
        return result


def load_device_key(
    key_path: PathLike,
    protocol: Optional[str] = None,
    model_id: Optional[str] = None,
    leave_running: bool = True,
    backup: bool = True,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
    transport=None,
) -> OperationResult:
    """
    Load a private key from a file onto the device.

    The key already on the device is first saved beside the new one as
    backup_<alg>_<name>. A failed backup is reported as a warning and does
    not stop the load.
    """
    operation = "load_device_key"
    key = Path(key_path)
    with _capture_logs() as logs:
        model = None
        try:
            settings, registry, transport = _collaborators(settings, registry, transport)
            model = _target_model(settings, registry, transport, model_id)
            transfer = SegmentTransfer(registry, transport)
            segment_name = private_key_segment(resolve_protocol(transfer, model, protocol))
            segment = registry.lookup_segment(model.model_id, segment_name)

            warnings = []
            backup_path = key.with_name(f"backup_{segment.alg.value}_{key.name}")
            if backup:
                try:
                    transfer.read(model.model_id, segment_name, backup_path, leave_running=False)
                except ProvisionError as e:
                    logger.warning(f"Could not back up the current key: {e}")
                    warnings.append(f"Backup of the current key failed: {e}")

            output = transfer.write(model.model_id, segment_name, key, leave_running)

            result = OperationResult.success(
                operation=operation,
                model=model.model_id,
                segment=segment_name,
                bytes_len=key.stat().st_size,
                path=str(key),
            )
            for warning in warnings:
                result.add_warning(warning)
            if backup and not warnings:
                result.metadata["backup"] = str(backup_path)
            result.metadata["output"] = output
        except ProvisionError as e:
            result = OperationResult.from_error(operation, e, model=model.model_id if model else "")
        except ValueError as e:
            result = OperationResult.failure(operation, str(e), model=model.model_id if model else "")
        result.logs = logs
        return result


def list_serial_devices(
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
) -> OperationResult:
    """
    List serial ports of attached devices.

    Returns:
        OperationResult with metadata["devices"]: list of SerialDevice
    """
    with _capture_logs() as logs:
        settings = settings or load_settings()
        if registry is None:
            registry = load_registry(overrides_file=settings.device_specs_file)
        devices = find_serial_devices(registry)
        result = OperationResult.success(operation="serial_list")
        result.metadata["devices"] = devices
        if not devices:
            result.add_warning("No devices found on serial ports")
        result.logs = logs
        return result


async def configure_wifi_async(
    connection,
    credentials: WifiCredentials,
    done_token: str = "\n",
    timeouts: Optional[WifiTimeouts] = None,
) -> OperationResult:
    """Run the Wi-Fi provisioning conversation over an open or closed connection."""
    operation = "configure_wifi"
    with _capture_logs() as logs:
        try:
            flow = WifiProvisioningFlow(connection, done_token=done_token, timeouts=timeouts)
            confirmation = await flow.run(credentials)
            result = OperationResult.success(operation=operation)
            result.metadata["ssid"] = credentials.ssid
            result.metadata["confirmation"] = confirmation
        except ProvisionError as e:
            result = OperationResult.from_error(operation, e)
        except ValueError as e:
            result = OperationResult.failure(operation, str(e))
        result.logs = logs
        return result


def configure_wifi(
    port: str,
    credentials: WifiCredentials,
    model_id: Optional[str] = None,
    timeouts: Optional[WifiTimeouts] = None,
    settings: Optional[Settings] = None,
    registry: Optional[DeviceSpecRegistry] = None,
) -> OperationResult:
    """
    Send Wi-Fi credentials to a device in listening mode.

    Args:
        port: Serial port of the device
        credentials: Network to join
        model_id: Device model id; picks the completion token for the family
                  (default: bare line feed)
    """
    settings = settings or load_settings()
    done_token = "\n"
    if model_id:
        try:
            if registry is None:
                registry = load_registry(overrides_file=settings.device_specs_file)
            done_token = registry.lookup(parse_model_id(model_id)).wifi_done_token
        except ProvisionError as e:
            return OperationResult.from_error("configure_wifi", e)
        except ValueError as e:
            return OperationResult.failure("configure_wifi", str(e))

    link = SerialLink(port, baudrate=settings.baud_rate)
    result = asyncio.run(configure_wifi_async(link, credentials, done_token, timeouts))
    result.model = model_id or ""
    return result
