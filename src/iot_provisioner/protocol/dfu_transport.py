"""
DFU programming transport.

Drives the external dfu-util tool to move files in and out of device flash.
Output from dfu-util is treated as an opaque success/failure signal; only
device enumeration looks at its text, and only for "[vvvv:pppp]" ids.

Example:
    dfu = DfuUtil()
    device_id = find_compatible_device(dfu, registry)
    dfu.write(device_id, 1, "2082:512", "server-key.der", leave=False)
"""

import logging
import re
import subprocess
import time
from typing import List, Optional, Sequence

from iot_provisioner.errors import DeviceNotFoundError, TransportFailure

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_TIMEOUT = 6.0

_DEVICE_ID_RE = re.compile(r"\[([0-9a-fA-F]{4}):([0-9a-fA-F]{4})\]")


class DfuUtil:
    """
    Programming transport backed by dfu-util.

    Each call names its target device explicitly; the transport holds no
    notion of a "current" device.
    """

    def __init__(
        self,
        binary: str = "dfu-util",
        use_sudo: bool = False,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            binary: dfu-util executable name or path
            use_sudo: Prefix every invocation with sudo
            timeout: Optional per-transfer timeout in seconds
        """
        self.binary = binary
        self.use_sudo = use_sudo
        self.timeout = timeout

    def _command(self, args: Sequence[str]) -> List[str]:
        prefix = ["sudo"] if self.use_sudo else []
        return prefix + [self.binary] + list(args)

    def _run(self, args: Sequence[str], timeout: Optional[float] = None) -> str:
        cmd = self._command(args)
        logger.debug(f">>> {' '.join(cmd)}")
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except FileNotFoundError as e:
            raise TransportFailure(f"{self.binary} is not installed", raw=str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise TransportFailure(f"{self.binary} timed out", raw=str(e)) from e

        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            raise TransportFailure(
                f"{self.binary} exited with status {proc.returncode}",
                raw=output.strip(),
            )
        logger.debug(f"<<< {self.binary} ok ({len(output)} bytes of output)")
        return output

    def is_installed(self) -> bool:
        """Check whether dfu-util can be run."""
        try:
            self._run(["-l"])
        except TransportFailure:
            return False
        return True

    def enumerate(self, timeout: float = DEFAULT_DISCOVERY_TIMEOUT) -> List[str]:
        """
        List ids of attached DFU devices.

        Returns:
            Lower-case "vvvv:pppp" ids, de-duplicated, in output order.

        Raises:
            TransportFailure: If dfu-util fails or exceeds timeout
        """
        output = self._run(["-l"], timeout=timeout)
        ids = []
        for vid, pid in _DEVICE_ID_RE.findall(output):
            device_id = f"{vid}:{pid}".lower()
            if device_id not in ids:
                ids.append(device_id)
        return ids

    @staticmethod
    def _address(address_arg: str, leave: bool) -> str:
        return address_arg + ":leave" if leave else address_arg

    def read(
        self,
        device_id: str,
        alt_setting: int,
        address_arg: str,
        dest_path: str,
        leave: bool,
    ) -> str:
        """
        Upload (device → file) a flash region.

        Returns:
            Raw dfu-util output
        """
        return self._run([
            "-d", device_id,
            "-a", str(alt_setting),
            "-s", self._address(address_arg, leave),
            "-U", str(dest_path),
        ])

    def write(
        self,
        device_id: str,
        alt_setting: int,
        address_arg: str,
        src_path: str,
        leave: bool,
    ) -> str:
        """
        Download (file → device) a flash region.

        Returns:
            Raw dfu-util output
        """
        return self._run([
            "-d", device_id,
            "-a", str(alt_setting),
            "-i", "0",
            "-s", self._address(address_arg, leave),
            "-D", str(src_path),
        ])


def find_compatible_device(
    transport,
    registry,
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
) -> str:
    """
    Find the first attached DFU device with a registered spec.

    Args:
        transport: Object with enumerate(timeout) -> list of ids
        registry: DeviceSpecRegistry to match against
        timeout: Bound on enumeration time in seconds

    Returns:
        Matching model id

    Raises:
        DeviceNotFoundError: If nothing compatible is attached in time
    """
    started = time.monotonic()
    try:
        attached = transport.enumerate(timeout=timeout)
    except TransportFailure as e:
        raise DeviceNotFoundError("No DFU device found", raw=e.raw) from e

    if time.monotonic() - started > timeout:
        raise DeviceNotFoundError(f"DFU discovery timed out after {timeout:.0f}s")

    for model_id in registry.model_ids():
        if model_id in attached:
            logger.info(f"Found DFU device {model_id}")
            return model_id

    logger.debug(f"No registered DFU device among {attached}")
    raise DeviceNotFoundError(
        "No DFU device found",
        raw=", ".join(attached) if attached else "no devices listed",
    )
