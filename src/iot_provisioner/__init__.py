"""
iot-provisioner - Flash keys and firmware to DFU-mode IoT devices and
provision their Wi-Fi over the serial console.
"""

__version__ = "0.1.0"

from iot_provisioner.models import load_registry
from iot_provisioner.core.segments import SegmentTransfer
from iot_provisioner.core.wifi import WifiProvisioningFlow

__all__ = [
    "load_registry",
    "SegmentTransfer",
    "WifiProvisioningFlow",
    "__version__",
]
