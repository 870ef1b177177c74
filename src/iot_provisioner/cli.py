"""
iot-provisioner CLI

Command-line interface for flashing keys and firmware segments over DFU and
provisioning Wi-Fi over the serial console.
"""

import sys
import logging
import json
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from iot_provisioner.config import load_settings
from iot_provisioner.core.parsing import (
    parse_model_id as _parse_model_id_core,
    parse_port as _parse_port_core,
    parse_security as _parse_security_core,
)
from iot_provisioner.core.results import OperationResult
from iot_provisioner.core.actions import (
    configure_wifi as core_configure_wifi,
    create_device_key as core_create_device_key,
    list_dfu_devices as core_list_dfu_devices,
    list_serial_devices as core_list_serial_devices,
    load_device_key as core_load_device_key,
    read_segment as core_read_segment,
    read_server_address as core_read_server_address,
    save_device_key as core_save_device_key,
    set_device_protocol as core_set_device_protocol,
    write_segment as core_write_segment,
    write_server_key as core_write_server_key,
)
from iot_provisioner.core.messages import (
    WarningItem,
    MessageLevel,
    result_to_warnings,
)
from iot_provisioner.core.wifi import SecurityType, WifiCredentials
from iot_provisioner.errors import ProvisionError
from iot_provisioner.models import load_registry

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, console=Console(stderr=True))],
)
logger = logging.getLogger("iot_provisioner")

# Setup Rich console
console = Console()

app = typer.Typer(help="🔧 IoT device provisioner - DFU key/firmware flashing and Wi-Fi setup")

# Global options set by the app callback
state = {"json": False}


@app.callback()
def global_options(
    output_json: bool = typer.Option(False, "--json", help="Print each result as JSON (for scripting)"),
) -> None:
    state["json"] = output_json
    console.quiet = output_json


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def _json_default(value):
    if is_dataclass(value):
        return asdict(value)
    return str(value)


def finish(result: OperationResult, success_message: str, verbose: bool = True) -> None:
    """Print warnings/errors of a result and exit 1 on failure."""
    warnings = result_to_warnings(result)
    if state["json"]:
        payload = result.to_dict()
        payload["messages"] = [w.to_dict() for w in warnings]
        print(json.dumps(payload, indent=2, default=_json_default))
        if not result.ok:
            sys.exit(1)
        return

    for warning in warnings:
        print_structured_warning(warning, verbose=verbose)
    if not result.ok:
        sys.exit(1)
    print_success(success_message)


def _model_option(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return _parse_model_id_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


@app.command("list-models")
def list_models() -> None:
    """List supported device models."""
    print_header("Supported Device Models")

    registry = load_registry(overrides_file=load_settings().device_specs_file)

    table = Table(title="DFU Devices")
    table.add_column("Model ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Protocols", style="magenta")
    table.add_column("Segments", style="yellow")

    for model in registry.models():
        table.add_row(
            model.model_id,
            model.name,
            ", ".join(model.supported_protocols),
            str(len(model.segments)),
        )

    console.print(table)
    console.print()
    console.print("Use [cyan]show-model <model-id>[/cyan] for the segment layout.")


@app.command("show-model")
def show_model(
    model_id: str = typer.Argument(..., help="Model id (e.g., 2b04:d006)"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Show the flash segment layout of a device model."""
    registry = load_registry(overrides_file=load_settings().device_specs_file)
    try:
        model = registry.lookup(_model_option(model_id))
    except ProvisionError as e:
        print_error(str(e))
        sys.exit(1)

    if output_json or state["json"]:
        print(json.dumps({
            "model_id": model.model_id,
            "name": model.name,
            "default_protocol": model.default_protocol,
            "alternative_protocol": model.alternative_protocol,
            "segments": {
                name: {
                    "address": seg.address,
                    "size": seg.size,
                    "alt": seg.alt,
                    "format": seg.format.value,
                    "alg": seg.alg.value,
                }
                for name, seg in model.segments.items()
            },
        }, indent=2))
        return

    print_header(f"{model.name} ({model.model_id})")
    table = Table(title="Segments")
    table.add_column("Segment", style="cyan")
    table.add_column("Address", style="yellow")
    table.add_column("Size", style="green")
    table.add_column("Alt", style="magenta")
    table.add_column("Format", style="blue")

    for name, seg in model.segments.items():
        table.add_row(
            name,
            seg.address,
            f"{seg.size:,}" if seg.size else "-",
            str(seg.alt),
            seg.format.value if seg.format.value != "none" else "-",
        )

    console.print(table)
    console.print(f"Protocols: {', '.join(model.supported_protocols)} (default {model.default_protocol})")


@app.command("dfu-list")
def dfu_list() -> None:
    """List devices attached in DFU mode."""
    print_header("DFU Devices")

    result = core_list_dfu_devices()
    if result.ok and result.metadata.get("devices"):
        table = Table(title="Attached")
        table.add_column("ID", style="cyan")
        table.add_column("Model", style="green")
        for device in result.metadata["devices"]:
            table.add_row(device["id"], device["name"] or "[dim]unknown[/dim]")
        console.print(table)

    finish(result, f"Compatible device: {result.model}" if result.model else "Done")


@app.command("read-segment")
def read_segment(
    segment: str = typer.Argument(..., help="Segment name (e.g., serverKey)"),
    output: Path = typer.Argument(..., help="Destination file"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
    leave: bool = typer.Option(False, "--leave/--stay", help="Leave DFU mode afterwards"),
) -> None:
    """Read a flash segment into a file."""
    print_header(f"Read {segment}")

    result = core_read_segment(segment, output, leave_running=leave, model_id=_model_option(model))
    finish(result, f"Read {result.bytes_len:,} bytes into {output}")


@app.command("write-segment")
def write_segment(
    segment: str = typer.Argument(..., help="Segment name (e.g., userFirmware)"),
    file: Path = typer.Argument(..., help="File to write"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
    leave: bool = typer.Option(False, "--leave/--stay", help="Leave DFU mode afterwards"),
) -> None:
    """Write a file into a flash segment."""
    print_header(f"Write {segment}")

    result = core_write_segment(segment, file, leave_running=leave, model_id=_model_option(model))
    finish(result, f"Wrote {result.bytes_len:,} bytes to {segment}")


@app.command("keys-server")
def keys_server(
    key: Path = typer.Argument(..., help="Server public key (DER, or PEM converted with openssl)"),
    host: Optional[str] = typer.Argument(None, help="Server IP address, domain, or 'mine'"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Server port"),
    protocol: Optional[str] = typer.Option(None, "--protocol", help="tcp or udp (default: detect)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
) -> None:
    """Switch the server public key, optionally with a custom server address."""
    print_header("Switch Server Key")

    try:
        server_port = _parse_port_core(port)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task("Starting...", total=3)

        def on_progress(step: str, current: int, total: int) -> None:
            progress.update(task, description=step, completed=current, total=total)

        result = core_write_server_key(
            key,
            ip_or_domain=host,
            port=server_port,
            protocol=protocol,
            model_id=_model_option(model),
            progress_cb=on_progress,
        )

    finish(result, f"Server key written ({result.metadata.get('protocol', '')})")


@app.command("keys-address")
def keys_address(
    protocol: Optional[str] = typer.Option(None, "--protocol", help="tcp or udp (default: detect)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
) -> None:
    """Show the server address the device will connect to."""
    print_header("Server Address")

    result = core_read_server_address(protocol=protocol, model_id=_model_option(model))
    if result.ok:
        console.print(result.metadata["url"], style="bold")
    finish(result, "Address read")


@app.command("keys-protocol")
def keys_protocol(
    protocol: str = typer.Argument(..., help="tcp or udp"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
) -> None:
    """Switch a dual-protocol device between tcp and udp."""
    print_header("Change Protocol")

    result = core_set_device_protocol(protocol, model_id=_model_option(model))
    finish(result, f"Protocol changed to {protocol}")


@app.command("keys-new")
def keys_new(
    name: str = typer.Argument("device", help="File name stem (writes NAME.pem, NAME.pub.pem, NAME.der)"),
    protocol: Optional[str] = typer.Option(None, "--protocol", help="tcp (rsa) or udp (ec); skips device detection"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing key files"),
) -> None:
    """Generate a new device key set with openssl."""
    print_header("New Device Key")

    result = core_create_device_key(name, protocol=protocol, model_id=_model_option(model), force=force)
    for path in result.metadata.get("files", []):
        console.print(f"  {path}", style="dim")
    finish(result, f"New {result.metadata.get('alg', '')} key created")


@app.command("keys-save")
def keys_save(
    output: Path = typer.Argument(..., help="Destination file (DER)"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
    protocol: Optional[str] = typer.Option(None, "--protocol", help="tcp or udp (default: detect)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
) -> None:
    """Save the device private key to a file."""
    print_header("Save Device Key")

    result = core_save_device_key(output, force=force, protocol=protocol, model_id=_model_option(model))
    finish(result, f"Saved device key to {output}")


@app.command("keys-load")
def keys_load(
    key: Path = typer.Argument(..., help="Private key file (DER)"),
    protocol: Optional[str] = typer.Option(None, "--protocol", help="tcp or udp (default: detect)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (default: detect)"),
    backup: bool = typer.Option(True, "--backup/--no-backup", help="Save the current key first"),
) -> None:
    """Load a private key from a file onto the device."""
    print_header("Load Device Key")

    result = core_load_device_key(key, protocol=protocol, model_id=_model_option(model), backup=backup)
    if result.metadata.get("backup"):
        console.print(f"Previous key saved to {result.metadata['backup']}", style="dim")
    finish(result, "Key loaded")


@app.command("serial-list")
def serial_list() -> None:
    """List devices connected over USB serial."""
    print_header("Serial Devices")

    result = core_list_serial_devices()
    devices = result.metadata.get("devices", [])
    if devices:
        table = Table(title="Serial Devices")
        table.add_column("Port", style="cyan")
        table.add_column("Type", style="green")
        table.add_column("Serial Number", style="dim")
        for device in devices:
            table.add_row(device.port, device.type_name or "-", device.serial_number or "-")
        console.print(table)

    finish(result, f"Found {len(devices)} device(s)")


@app.command("serial-wifi")
def serial_wifi(
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial port (default: first device)"),
    ssid: Optional[str] = typer.Option(None, "--ssid", help="Network name"),
    security: Optional[str] = typer.Option(None, "--security", "-s", help="0-3, WPA2, WPA, WEP or OPEN"),
    password: Optional[str] = typer.Option(None, "--password", help="Network password"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id (picks the confirmation token)"),
) -> None:
    """Send Wi-Fi credentials to a device in listening mode."""
    print_header("Wi-Fi Setup")

    model_id = _model_option(model)
    if port is None:
        devices = core_list_serial_devices().metadata.get("devices", [])
        if not devices:
            print_error("No serial devices found; pass --port")
            sys.exit(1)
        port = devices[0].port
        if model_id is None and devices[0].model is not None:
            model_id = devices[0].model.model_id
        console.print(f"Using {port} {devices[0].type_name}")

    if ssid is None:
        ssid = typer.prompt("SSID")
    if security is None:
        security = typer.prompt("Security (0=unsecured, 1=WEP, 2=WPA, 3=WPA2)", default="3")
    try:
        security_type = _parse_security_core(security)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    if password is None and security_type is not SecurityType.OPEN:
        password = typer.prompt("Password", hide_input=True)

    console.print("Make sure the device is blinking blue (listening mode)", style="dim")
    result = core_configure_wifi(
        port,
        WifiCredentials(ssid=ssid, security=security_type, password=password),
        model_id=model_id,
    )
    finish(result, f"Wi-Fi credentials sent for '{ssid}'")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
