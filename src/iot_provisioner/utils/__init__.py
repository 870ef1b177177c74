"""
Utility modules for iot-provisioner.

Helpers around external tools shared by the core workflows.
"""

from .openssl import KeyFiles, OpenSsl, key_algorithm_for_protocol

__all__ = [
    "KeyFiles",
    "OpenSsl",
    "key_algorithm_for_protocol",
]
