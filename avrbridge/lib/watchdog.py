"""systemd sd_notify support for the bridge service.

``sd_notify`` writes to the datagram socket named by ``$NOTIFY_SOCKET``
(abstract-namespace names start with ``@``).  Without that variable every
call is a no-op and returns False, so the bridge runs the same under systemd,
in a container or from a shell.

The heartbeat interval follows ``$WATCHDOG_USEC`` when systemd sets it (half
the configured WatchdogSec), otherwise the caller's default.
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger("avrbridge.watchdog")

DEFAULT_INTERVAL = 20.0


def _notify_address() -> str | None:
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return None
    if addr[0] == "@":
        return "\0" + addr[1:]
    return addr


def sd_notify(msg: str) -> bool:
    """Send one notify message.  False when there is no socket or the send fails."""
    addr = _notify_address()
    if addr is None:
        return False
    with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
        try:
            sock.sendto(msg.encode(), addr)
        except OSError as e:
            logger.debug("sd_notify(%r) to %s failed: %s", msg, addr, e)
            return False
    return True


def sd_status(message: str) -> bool:
    """Show *message* as the unit's status line (``systemctl status``)."""
    return sd_notify(f"STATUS={message}")


def watchdog_interval(default: float = DEFAULT_INTERVAL) -> float:
    """Seconds between heartbeats: half of $WATCHDOG_USEC, or *default*."""
    raw = os.environ.get("WATCHDOG_USEC", "")
    try:
        usec = int(raw)
    except ValueError:
        return default
    if usec <= 0:
        return default
    return usec / 2_000_000


async def watchdog_loop(interval: float | None = None):
    """Report READY, then keep the systemd watchdog fed until cancelled."""
    interval = interval or watchdog_interval()
    if not sd_notify("READY=1"):
        logger.debug("No NOTIFY_SOCKET, watchdog heartbeats are no-ops")
    logger.info("Watchdog heartbeat every %.1fs", interval)
    try:
        while True:
            sd_notify("WATCHDOG=1")
            await asyncio.sleep(interval)
    finally:
        sd_notify("STOPPING=1")
