"""
Shared configuration loader for avrbridge.

Loads a single JSON config file.  Search order:
  1. $AVRBRIDGE_CONFIG              (explicit override)
  2. /etc/avrbridge/config.json     (deployed install)
  3. config.json                    (CWD, for local dev)

Example::

    {
      "receivers": [
        {"address": "192.168.1.40", "port": 8080, "label": "Living Room"},
        {"address": "avr-den.local", "label": "Den"}
      ],
      "polling": {"interval": 5},
      "bridge": {"port": 8780}
    }

Usage:
    from avrbridge.lib.config import cfg, load_receivers

    interval  = cfg("polling", "interval", default=5)
    receivers = load_receivers()   # list[ReceiverEndpoint], validated
"""

import json
import logging
import os
import re
from dataclasses import dataclass

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RECEIVER_PORT = 8080
DEFAULT_LABEL = "Denon/Marantz Receiver"
MAX_RECEIVERS = 4

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/avrbridge/config.json",
    "config.json",
]

_HOSTNAME_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


@dataclass(frozen=True)
class ReceiverEndpoint:
    """Where a receiver lives.  Replaced wholesale on reconfiguration."""
    address: str
    port: int = DEFAULT_RECEIVER_PORT
    label: str = DEFAULT_LABEL

    @classmethod
    def from_dict(cls, data: dict, position: int = 0) -> "ReceiverEndpoint":
        if not isinstance(data, dict):
            raise ConfigurationError(f"receiver {position}: expected an object, got {type(data).__name__}")
        address = str(data.get("address") or data.get("ip_address") or "").strip()
        if not valid_address(address):
            raise ConfigurationError(f"receiver {position}: invalid address {address!r}")
        port = parse_port(data.get("port"), position)
        label = str(data.get("label") or data.get("device_name") or "").strip() or DEFAULT_LABEL
        return cls(address=address, port=port, label=label)

    def to_dict(self) -> dict:
        return {"address": self.address, "port": self.port, "label": self.label}


def valid_address(address: str) -> bool:
    """Dotted-quad IPv4 or an RFC 1123 hostname."""
    if not address:
        return False
    if re.search(r"[a-zA-Z]", address):
        return bool(_HOSTNAME_RE.match(address))
    parts = address.split(".")
    if len(parts) != 4:
        return False
    return all(p.isdigit() and str(int(p)) == p and 0 <= int(p) <= 255 for p in parts)


def parse_port(value, position: int = 0) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return DEFAULT_RECEIVER_PORT
    try:
        port = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"receiver {position}: invalid port {value!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"receiver {position}: port {port} out of range")
    return port


def parse_receivers(entries) -> list[ReceiverEndpoint]:
    """Validate a raw receiver list.  Raises ConfigurationError."""
    if not isinstance(entries, list):
        raise ConfigurationError("'receivers' must be a list")
    if not entries:
        raise ConfigurationError("no receivers configured")
    if len(entries) > MAX_RECEIVERS:
        raise ConfigurationError(f"at most {MAX_RECEIVERS} receivers supported, got {len(entries)}")
    return [ReceiverEndpoint.from_dict(entry, i) for i, entry in enumerate(entries)]


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    receivers = config.get("receivers")
    if not receivers:
        logger.warning("Config %s: no 'receivers', bridge will idle until configured", path)
    elif not isinstance(receivers, list):
        logger.error("Config %s: 'receivers' must be a list", path)
    interval = (config.get("polling") or {}).get("interval")
    if interval is not None and (not isinstance(interval, (int, float)) or interval <= 0):
        logger.warning("Config %s: polling.interval %r ignored", path, interval)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    paths = list(_SEARCH_PATHS)
    override = os.environ.get("AVRBRIDGE_CONFIG")
    if override:
        paths.insert(0, override)

    for path in paths:
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found, using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("receivers")                      → config["receivers"]
    cfg("polling", "interval", default=5) → config["polling"]["interval"] or 5
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def load_receivers() -> list[ReceiverEndpoint]:
    """Receivers from the loaded config.  Raises ConfigurationError."""
    return parse_receivers(cfg("receivers", default=[]))


def poll_interval() -> float:
    interval = cfg("polling", "interval", default=5)
    if not isinstance(interval, (int, float)) or interval <= 0:
        return 5.0
    return float(interval)


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
