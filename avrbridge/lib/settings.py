"""
In-memory receiver settings, edited by the host and applied by reinitialising
the coordinator.

The host sends raw values that may be plain strings or ``{"value": ...}``
wrappers.  Either a ``receivers`` list or the single-receiver keys
``ip_address`` / ``port`` / ``device_name`` are accepted.  Nothing is written
to disk; a restart goes back to config.json.
"""

import logging
from typing import Callable

from .config import ReceiverEndpoint, parse_receivers
from .errors import ConfigurationError

logger = logging.getLogger("avrbridge.settings")


def _value(val):
    """Unwrap ``{"value": x}`` and trim strings."""
    if isinstance(val, dict) and "value" in val:
        val = val["value"]
    if isinstance(val, str):
        return val.strip()
    return val


def normalize_values(values: dict) -> list[dict]:
    """Raw host settings -> list of receiver dicts (not yet validated)."""
    if not isinstance(values, dict):
        raise ConfigurationError("settings must be an object")
    if "receivers" in values:
        entries = _value(values["receivers"])
        if not isinstance(entries, list):
            raise ConfigurationError("'receivers' must be a list")
        return [
            {k: _value(v) for k, v in entry.items()} if isinstance(entry, dict) else entry
            for entry in entries
        ]
    if "ip_address" in values or "address" in values:
        return [{
            "address": _value(values.get("address", values.get("ip_address"))),
            "port": _value(values.get("port")),
            "label": _value(values.get("label", values.get("device_name"))),
        }]
    raise ConfigurationError("no receivers given")


class SettingsManager:
    """Holds the current receiver list and notifies on change."""

    def __init__(self, receivers: list[ReceiverEndpoint] | None = None,
                 on_change: Callable[[list[ReceiverEndpoint]], None] | None = None):
        self._receivers: list[ReceiverEndpoint] = list(receivers or [])
        self.on_change = on_change

    @property
    def receivers(self) -> list[ReceiverEndpoint]:
        return list(self._receivers)

    def to_dict(self) -> dict:
        return {"receivers": [r.to_dict() for r in self._receivers]}

    def save(self, values: dict, dry_run: bool = False) -> list[ReceiverEndpoint]:
        """Validate and (unless *dry_run*) apply new settings.

        Raises ConfigurationError when invalid.  ``on_change`` fires only if the
        receiver list actually differs from the current one.
        """
        receivers = parse_receivers(normalize_values(values))
        if dry_run:
            return receivers
        if receivers == self._receivers:
            logger.info("Settings saved, no changes")
            return receivers
        old = self._receivers
        self._receivers = receivers
        logger.info("Settings changed: %s -> %s",
                    [r.address for r in old], [r.address for r in receivers])
        if self.on_change is not None:
            self.on_change(self.receivers)
        return receivers

    def status_message(self) -> tuple[str, bool]:
        """(message, is_error) for the host's status line."""
        if not self._receivers:
            return "Not configured - please set IP address", True
        if len(self._receivers) == 1:
            return f"Configured for {self._receivers[0].address}", False
        return f"Configured for {len(self._receivers)} receivers", False
