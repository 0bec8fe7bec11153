"""
Denon/Marantz legacy HTTP (goform) protocol helpers.

Commands are plain GETs against ``formiPhoneAppDirect.xml`` with the command
as the raw query string:

  MVUP / MVDN        step master volume up / down
  MV{level}          absolute volume, display units (see ``encode_volume``)
  MUON / MUOFF       mute on / off

Status comes from ``formMainZone_MainZoneXmlStatusLite.xml``::

  <item>
    <Power><value>ON</value></Power>
    <MasterVolume><value>-29.5</value></MasterVolume>
    <Mute><value>off</value></Mute>
  </item>

MasterVolume is reported in dB relative to reference; the front panel shows
``dB + 80``.  ``--`` means the receiver is at minimum.
"""

import math
from dataclasses import dataclass
from xml.etree import ElementTree

from ..errors import ProtocolError

DEFAULT_PORT = 8080
COMMAND_PATH = "/goform/formiPhoneAppDirect.xml"
STATUS_PATH = "/goform/formMainZone_MainZoneXmlStatusLite.xml"

VOLUME_MIN = 0.0
VOLUME_MAX = 98.0
VOLUME_STEP = 0.5
DB_OFFSET = 80.0
NO_VALUE = "--"

CMD_VOLUME_UP = "MVUP"
CMD_VOLUME_DOWN = "MVDN"
CMD_MUTE_ON = "MUON"
CMD_MUTE_OFF = "MUOFF"


@dataclass(frozen=True)
class ReceiverStatus:
    """One parsed status document.  ``None`` fields were absent or unreadable."""
    volume: float | None
    muted: bool | None
    power_on: bool | None


def clamp_volume(value: float) -> float:
    """Clamp to the receiver range and snap to the nearest half step (halves round up)."""
    value = max(VOLUME_MIN, min(VOLUME_MAX, float(value)))
    return math.floor(value * 2 + 0.5) / 2


def encode_volume(display: float) -> str:
    """Display value -> MV level token.

    Whole steps are sent as their digits (``50``), half steps as value x10
    padded to three digits (``505``, ``055``) so the two forms never collide.
    """
    half_steps = int(clamp_volume(display) * 2)
    if half_steps % 2 == 0:
        return str(half_steps // 2)
    return f"{half_steps * 5:03d}"


def decode_volume(token: str) -> float:
    """MV level token -> display value.  Inverse of ``encode_volume``."""
    token = token.strip()
    if not token.isdigit():
        raise ValueError(f"invalid volume token {token!r}")
    if len(token) == 3:
        return int(token) / 10
    return float(int(token))


def display_to_db(display: float) -> float:
    return clamp_volume(display) - DB_OFFSET


def db_to_display(raw: str | None) -> float | None:
    """Status-document dB string -> display value.

    ``--`` is the receiver's "no value" marker and maps to 0.  Empty or
    unparsable values return None so callers keep their cached value.
    """
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    if raw == NO_VALUE:
        return VOLUME_MIN
    try:
        db = float(raw)
    except ValueError:
        return None
    if math.isnan(db) or math.isinf(db):
        return None
    return db + DB_OFFSET


def volume_command(display: float) -> str:
    return f"MV{encode_volume(display)}"


def mute_command(muted: bool) -> str:
    return CMD_MUTE_ON if muted else CMD_MUTE_OFF


def step_command(direction: int) -> str:
    return CMD_VOLUME_UP if direction > 0 else CMD_VOLUME_DOWN


def _xml_value(root: ElementTree.Element, tag: str) -> str | None:
    """Text of ``<tag><value>`` or None."""
    el = root.find(f"{tag}/value")
    if el is None or el.text is None:
        return None
    return el.text


def parse_status(text: str) -> ReceiverStatus:
    """Parse a MainZoneXmlStatusLite document.  Raises ProtocolError if unreadable."""
    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError as e:
        raise ProtocolError(f"unparsable status document: {e}") from e
    if root.tag != "item":
        raise ProtocolError(f"unexpected status root <{root.tag}>")

    mute_raw = _xml_value(root, "Mute")
    power_raw = _xml_value(root, "Power")
    return ReceiverStatus(
        volume=db_to_display(_xml_value(root, "MasterVolume")),
        muted=None if mute_raw is None else mute_raw.strip().lower() == "on",
        power_on=None if power_raw is None else power_raw.strip().upper() == "ON",
    )
