"""
Runtime settings for iot-provisioner.

Defaults can be overridden through environment variables:

    IOT_PROVISIONER_HOME               settings directory (~/.iot-provisioner)
    IOT_PROVISIONER_DEVICE_SPECS       device spec override JSON
    IOT_PROVISIONER_DFU_UTIL           dfu-util binary
    IOT_PROVISIONER_DFU_SUDO           run dfu-util through sudo (1/true/yes)
    IOT_PROVISIONER_OPENSSL            openssl binary (key conversion and generation)
    IOT_PROVISIONER_BAUD               serial baud rate
    IOT_PROVISIONER_DISCOVERY_TIMEOUT  DFU discovery timeout in seconds
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "IOT_PROVISIONER_"
DEVICE_SPECS_FILENAME = "device_specs.json"

DEFAULT_BAUD_RATE = 9600
DEFAULT_DISCOVERY_TIMEOUT = 6.0


@dataclass(frozen=True)
class Settings:
    """Resolved settings for one process."""
    home: Path
    device_specs_file: Optional[Path]
    dfu_util: str = "dfu-util"
    use_sudo_for_dfu: bool = False
    openssl: str = "openssl"
    baud_rate: int = DEFAULT_BAUD_RATE
    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}, using {default}")
        return default


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build settings from defaults and environment overrides.

    Never raises; malformed values fall back to defaults.

    Args:
        env: Environment mapping (defaults to os.environ)
    """
    if env is None:
        env = os.environ

    home = Path(env.get(ENV_PREFIX + "HOME") or Path.home() / ".iot-provisioner")

    specs_raw = env.get(ENV_PREFIX + "DEVICE_SPECS")
    specs_file = Path(specs_raw) if specs_raw else home / DEVICE_SPECS_FILENAME

    return Settings(
        home=home,
        device_specs_file=specs_file,
        dfu_util=env.get(ENV_PREFIX + "DFU_UTIL") or "dfu-util",
        use_sudo_for_dfu=_truthy(env.get(ENV_PREFIX + "DFU_SUDO", "")),
        openssl=env.get(ENV_PREFIX + "OPENSSL") or "openssl",
        baud_rate=_number(env, "BAUD", DEFAULT_BAUD_RATE, int),
        discovery_timeout=_number(env, "DISCOVERY_TIMEOUT", DEFAULT_DISCOVERY_TIMEOUT, float),
    )
