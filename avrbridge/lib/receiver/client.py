# avrbridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
ReceiverClient: one Denon/Marantz receiver over the goform HTTP API.

Owns the network relationship with a single receiver: sends commands,
polls the status document and keeps a cached ``DeviceState``.  Changes found
by polling are reported through the ``on_event`` callback given at
construction; the client never calls back into its owner any other way.

Events:
    VolumeChanged(volume)   display value changed (0-98)
    MuteChanged(muted)      mute flag changed
    ReceiverError(error)    a poll failed (transport or parse); cache untouched

A poll that lands inside the suppression window still updates the cache but
emits nothing.  The next poll outside the window reports whatever differs
from the last value the owner was told about, so a suppressed change is
delayed, never lost.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Callable, Union

import aiohttp

from ..config import ReceiverEndpoint
from ..errors import CommandError, ProtocolError, TransportError
from .protocol import (
    COMMAND_PATH,
    STATUS_PATH,
    ReceiverStatus,
    clamp_volume,
    display_to_db,
    mute_command,
    parse_status,
    step_command,
    volume_command,
)

logger = logging.getLogger("avrbridge.receiver")

REQUEST_TIMEOUT = 5.0         # seconds, per HTTP request
DEFAULT_POLL_INTERVAL = 5.0   # seconds


# ── Events ──

@dataclass(frozen=True)
class VolumeChanged:
    volume: float


@dataclass(frozen=True)
class MuteChanged:
    muted: bool


@dataclass(frozen=True)
class ReceiverError:
    error: Exception


ReceiverEvent = Union[VolumeChanged, MuteChanged, ReceiverError]


@dataclass
class DeviceState:
    """Cached receiver state.  ``None`` means not yet seen by a poll."""
    volume: float | None = None
    muted: bool | None = None
    power_on: bool | None = None
    last_polled_at: float | None = None


class SuppressionWindow:
    """Deadline before which polled changes are not reported upward.

    The deadline only ever moves forward and is measured on a monotonic clock,
    so every window expires on its own.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadline = 0.0

    @property
    def deadline(self) -> float:
        return self._deadline

    def extend(self, seconds: float) -> None:
        self._deadline = max(self._deadline, self._clock() + seconds)

    def active(self) -> bool:
        return self._clock() < self._deadline


class ReceiverClient:
    """HTTP client, status cache and polling loop for one receiver."""

    def __init__(
        self,
        endpoint: ReceiverEndpoint,
        session: aiohttp.ClientSession,
        on_event: Callable[[ReceiverEvent], None] | None = None,
        suppressed: Callable[[], bool] | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.endpoint = endpoint
        self._session = session
        self._on_event = on_event
        self._suppressed = suppressed or (lambda: False)
        self._timeout = timeout
        self._base_url = f"http://{endpoint.address}:{endpoint.port}"
        self._state = DeviceState()
        # Last values handed to on_event; polls are compared against these
        self._reported_volume: float | None = None
        self._reported_mute: bool | None = None
        self._poll_task: asyncio.Task | None = None
        # The receiver only copes with one connection at a time
        self._lock = asyncio.Lock()
        self._destroyed = False

    def __repr__(self):
        return f"<ReceiverClient {self.endpoint.label!r} @ {self._base_url}>"

    # ── accessors ──

    @property
    def state(self) -> DeviceState:
        """Copy of the cached state."""
        return dataclasses.replace(self._state)

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    # ── HTTP ──

    async def _get(self, url: str) -> str:
        """GET *url* and return the body.  Raises TransportError / ProtocolError."""
        async with self._lock:
            try:
                async with self._session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self._timeout)
                ) as resp:
                    if not 200 <= resp.status < 300:
                        raise ProtocolError(f"HTTP {resp.status} from {url}")
                    return await resp.text()
            except asyncio.TimeoutError as e:
                raise TransportError(f"timeout after {self._timeout:.0f}s: {url}") from e
            except aiohttp.ClientError as e:
                raise TransportError(f"{self.endpoint.address} unreachable: {e}") from e
            except UnicodeDecodeError as e:
                raise ProtocolError(f"undecodable response from {url}: {e}") from e

    async def _send(self, command: str) -> None:
        if self._destroyed:
            raise CommandError(f"{self.endpoint.label}: client destroyed")
        await self._get(f"{self._base_url}{COMMAND_PATH}?{command}")

    # ── commands ──

    async def issue_volume_command(self, target: float) -> float:
        """Set absolute volume.  Returns the display value actually sent."""
        volume = clamp_volume(target)
        await self._send(volume_command(volume))
        logger.info("-> %s volume: %.1f (%.1f dB)",
                    self.endpoint.label, volume, display_to_db(volume))
        return volume

    async def step_volume(self, direction: int) -> None:
        """Step volume up (direction > 0) or down (< 0).

        The receiver's step size is its own business, so the cache is left
        alone; the next poll picks up the real value.
        """
        if direction == 0:
            return
        await self._send(step_command(direction))
        logger.info("-> %s volume %s", self.endpoint.label,
                    "up" if direction > 0 else "down")

    async def set_mute(self, muted: bool) -> None:
        await self._send(mute_command(muted))
        logger.info("-> %s mute %s", self.endpoint.label, "on" if muted else "off")

    def apply_optimistic_volume(self, volume: float) -> None:
        """Record a volume the owner has already shown to the user.

        The next poll overwrites it, and reports the receiver's value if it
        turns out different.
        """
        self._state.volume = volume
        self._reported_volume = volume

    # ── status ──

    async def poll(self) -> ReceiverStatus | None:
        """Fetch and apply the status document.  Never raises on receiver failure."""
        try:
            text = await self._get(f"{self._base_url}{STATUS_PATH}")
            status = parse_status(text)
        except CommandError as e:
            logger.warning("%s status poll failed: %s", self.endpoint.label, e)
            self._emit(ReceiverError(e))
            return None
        if self._destroyed:
            return None
        self._apply_status(status)
        return status

    def _apply_status(self, status: ReceiverStatus) -> None:
        state = self._state
        state.last_polled_at = time.time()
        if status.power_on is not None:
            state.power_on = status.power_on

        suppressed = self._suppressed()
        logger.debug("%s status: volume=%s mute=%s power=%s%s", self.endpoint.label,
                     status.volume, status.muted, status.power_on,
                     " (suppressed)" if suppressed else "")

        if status.volume is not None:
            state.volume = status.volume
            if status.volume != self._reported_volume and not suppressed:
                logger.info("%s volume: %s -> %.1f", self.endpoint.label,
                            self._reported_volume, status.volume)
                self._reported_volume = status.volume
                self._emit(VolumeChanged(status.volume))

        if status.muted is not None:
            state.muted = status.muted
            if status.muted != self._reported_mute and not suppressed:
                logger.info("%s mute: %s -> %s", self.endpoint.label,
                            self._reported_mute, status.muted)
                self._reported_mute = status.muted
                self._emit(MuteChanged(status.muted))

    def _emit(self, event: ReceiverEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("%s event handler failed for %s", self.endpoint.label, event)

    # ── polling loop ──

    def start_polling(self, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        """Poll now, then every *interval* seconds.  Replaces any running loop."""
        self.stop_polling()
        if self._destroyed:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(interval))

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self, interval: float) -> None:
        logger.info("Polling %s every %.1fs", self, interval)
        while True:
            try:
                await self.poll()
            except Exception:
                # receiver failures are handled inside poll()
                logger.exception("Unexpected error polling %s", self)
            await asyncio.sleep(interval)

    def destroy(self) -> None:
        """Stop polling and drop callbacks.  Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        self.stop_polling()
        self._on_event = None
        self._suppressed = lambda: False
        logger.debug("Destroyed %s", self)
