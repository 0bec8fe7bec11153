"""
Denon/Marantz receiver access over the legacy goform HTTP API.

``ReceiverClient`` talks to one receiver; ``protocol`` holds the wire format
(command tokens, volume codec, status parsing).
"""

from .client import (
    DeviceState,
    MuteChanged,
    ReceiverClient,
    ReceiverError,
    ReceiverEvent,
    SuppressionWindow,
    VolumeChanged,
)
from .protocol import ReceiverStatus, decode_volume, encode_volume, parse_status

__all__ = [
    "DeviceState",
    "MuteChanged",
    "ReceiverClient",
    "ReceiverError",
    "ReceiverEvent",
    "ReceiverStatus",
    "SuppressionWindow",
    "VolumeChanged",
    "decode_volume",
    "encode_volume",
    "parse_status",
]
