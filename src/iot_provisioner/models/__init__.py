"""
Device spec registry.

Provides a unified layer for device models, flash segments, and overrides.
"""

from .registry import (
    DEFAULT_ADDRESS_OFFSET,
    DeviceModel,
    DeviceSpecRegistry,
    KeyAlgorithm,
    Segment,
    SegmentFormat,
    SerialIds,
    KEY_SEGMENTS,
    private_key_segment,
    server_key_segment,
    base_specs,
    load_registry,
    model_from_dict,
    segment_from_dict,
)

__all__ = [
    "DEFAULT_ADDRESS_OFFSET",
    "DeviceModel",
    "DeviceSpecRegistry",
    "KeyAlgorithm",
    "Segment",
    "SegmentFormat",
    "SerialIds",
    "KEY_SEGMENTS",
    "private_key_segment",
    "server_key_segment",
    "base_specs",
    "load_registry",
    "model_from_dict",
    "segment_from_dict",
]
