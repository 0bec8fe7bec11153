# avrbridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
VolumeCoordinator: maps host volume/mute requests onto receiver clients.

Receivers are addressed by their position in the configured list.  Per
receiver the coordinator runs a small state machine::

    idle --request--> debouncing --200 ms--> committing --done--> idle

Volume requests arriving while one is debouncing replace it, so a burst from
a volume knob turns into a single command.  Only one command per receiver is
in flight; a request that comes due while one is running waits for it and is
sent next.  Mute requests skip the debounce.

After an absolute/relative command the sent value is shown to the host right
away (optimistic update), polls are kept quiet for a short suppression window
so the command's own transient doesn't echo back, and a confirming poll
corrects the host if the receiver ended up somewhere else.  Stepped requests
have no optimistic value; a poll shortly after fetches the real one.

Every timer and task belongs to a ``_ReceiverSlot`` and is cancelled with it.
Slots carry the generation they were built in; callbacks from an older
generation are dropped, so nothing touches a client after reconfiguration.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable

import aiohttp

from .config import ReceiverEndpoint
from .errors import CommandError, RequestError
from .receiver import (
    MuteChanged,
    ReceiverClient,
    ReceiverError,
    ReceiverEvent,
    SuppressionWindow,
    VolumeChanged,
)
from .receiver.protocol import VOLUME_MAX, VOLUME_MIN, VOLUME_STEP

logger = logging.getLogger("avrbridge.volume")

DEBOUNCE_DELAY = 0.2        # seconds, coalescing window for volume requests
SUPPRESS_WINDOW = 1.0       # seconds, polls stay quiet after a command
CONFIRM_DELAY = 1.0         # seconds, confirming poll after absolute/relative
STEP_CONFIRM_DELAY = 0.5    # seconds, poll after a step command

MODE_ABSOLUTE = "absolute"
MODE_RELATIVE = "relative"
MODE_RELATIVE_STEP = "relative_step"
VOLUME_MODES = (MODE_ABSOLUTE, MODE_RELATIVE, MODE_RELATIVE_STEP)
MUTE_ACTIONS = ("mute", "unmute")

StateCallback = Callable[[int, dict], None]
ErrorCallback = Callable[[int, Exception], None]


@dataclass
class PendingCommand:
    mode: str
    value: float
    scheduled_at: float


class _ReceiverSlot:
    """Client, timers and host-visible state for one receiver index."""

    def __init__(self, index: int, generation: int, endpoint: ReceiverEndpoint,
                 window: SuppressionWindow):
        self.index = index
        self.generation = generation
        self.endpoint = endpoint
        self.window = window
        self.client: ReceiverClient | None = None
        self.phase = "idle"  # idle | debouncing | committing
        self.pending: PendingCommand | None = None
        self.debounce: asyncio.TimerHandle | None = None
        self.timers: set[asyncio.TimerHandle] = set()
        self.tasks: set[asyncio.Task] = set()
        self.committing = False
        # What the host has been told
        self.volume_value: float = 0
        self.is_muted: bool = False

    def cancel(self) -> None:
        if self.debounce is not None:
            self.debounce.cancel()
            self.debounce = None
        for handle in self.timers:
            handle.cancel()
        self.timers.clear()
        for task in self.tasks:
            task.cancel()
        self.tasks.clear()
        self.pending = None
        self.committing = False
        self.phase = "idle"


def _default_client_factory(endpoint, session, on_event, suppressed):
    return ReceiverClient(endpoint, session, on_event=on_event, suppressed=suppressed)


class VolumeCoordinator:
    """Fan host requests out to receiver clients by index."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None,
        on_state: StateCallback | None = None,
        on_error: ErrorCallback | None = None,
        *,
        poll_interval: float | None = 5.0,
        debounce_delay: float = DEBOUNCE_DELAY,
        suppress_window: float = SUPPRESS_WINDOW,
        confirm_delay: float = CONFIRM_DELAY,
        step_confirm_delay: float = STEP_CONFIRM_DELAY,
        client_factory=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session = session
        self._on_state = on_state
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._debounce_delay = debounce_delay
        self._suppress_window = suppress_window
        self._confirm_delay = confirm_delay
        self._step_confirm_delay = step_confirm_delay
        self._client_factory = client_factory or _default_client_factory
        self._clock = clock
        self._slots: list[_ReceiverSlot] = []
        self._generation = 0

    # ── lifecycle ──

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def endpoints(self) -> list[ReceiverEndpoint]:
        return [slot.endpoint for slot in self._slots]

    def __len__(self) -> int:
        return len(self._slots)

    def initialize(self, endpoints: list[ReceiverEndpoint]) -> None:
        """Tear down everything and build one client per endpoint, in order."""
        self._teardown()
        self._generation += 1
        generation = self._generation

        for index, endpoint in enumerate(endpoints):
            window = SuppressionWindow(self._clock)
            slot = _ReceiverSlot(index, generation, endpoint, window)
            slot.client = self._client_factory(
                endpoint,
                self._session,
                partial(self._handle_event, generation, index),
                window.active,
            )
            self._slots.append(slot)
            logger.info("Volume control registered: [%d] %s (%s:%d)",
                        index, endpoint.label, endpoint.address, endpoint.port)
            self._publish(slot)
            if self._poll_interval:
                slot.client.start_polling(self._poll_interval)

        if not endpoints:
            logger.info("No receivers configured")

    def update_settings(self, endpoints: list[ReceiverEndpoint]) -> None:
        logger.info("Updating volume control settings (%d receivers)", len(endpoints))
        self.initialize(endpoints)

    def destroy(self) -> None:
        self._teardown()
        self._generation += 1

    def _teardown(self) -> None:
        for slot in self._slots:
            slot.cancel()
            if slot.client is not None:
                slot.client.destroy()
        self._slots = []

    # ── host-facing state ──

    def state(self, index: int) -> dict:
        slot = self._slot(index)
        return {"volume_value": slot.volume_value, "is_muted": slot.is_muted}

    def volume_control_info(self, index: int) -> dict:
        """Registration payload for the host's volume-control surface."""
        slot = self._slot(index)
        return {
            "index": index,
            "display_name": slot.endpoint.label,
            "volume_type": "number",
            "volume_min": VOLUME_MIN,
            "volume_max": VOLUME_MAX,
            "volume_step": VOLUME_STEP,
            **self.state(index),
        }

    def phase(self, index: int) -> str:
        return self._slot(index).phase

    def client(self, index: int) -> ReceiverClient:
        return self._slot(index).client

    def _slot(self, index) -> _ReceiverSlot:
        if isinstance(index, bool) or not isinstance(index, int):
            raise RequestError(f"receiver index must be an integer, got {index!r}")
        if not 0 <= index < len(self._slots):
            raise RequestError(f"no receiver at index {index}")
        slot = self._slots[index]
        if slot.client is None or slot.client.destroyed:
            raise RequestError(f"receiver {index} is not available")
        return slot

    def _publish(self, slot: _ReceiverSlot) -> None:
        if self._on_state is None:
            return
        try:
            self._on_state(slot.index, {"volume_value": slot.volume_value,
                                        "is_muted": slot.is_muted})
        except Exception:
            logger.exception("State callback failed for receiver %d", slot.index)

    def _report_error(self, slot: _ReceiverSlot, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(slot.index, error)
        except Exception:
            logger.exception("Error callback failed for receiver %d", slot.index)

    # ── requests ──

    def set_volume(self, index: int, mode: str, value) -> None:
        """Queue a volume request; the last one inside the debounce window wins."""
        slot = self._slot(index)
        if mode not in VOLUME_MODES:
            raise RequestError(f"unknown volume mode {mode!r}")
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise RequestError(f"invalid volume value {value!r}") from None
        if not math.isfinite(value):
            raise RequestError(f"invalid volume value {value!r}")

        logger.info("Volume change request [%d]: mode=%s, value=%s", index, mode, value)
        loop = asyncio.get_running_loop()
        if slot.debounce is not None:
            slot.debounce.cancel()
            logger.debug("[%d] superseding pending %s", index, slot.pending)
        slot.pending = PendingCommand(mode, value, loop.time())
        slot.phase = "debouncing"
        slot.debounce = loop.call_later(self._debounce_delay, self._debounce_elapsed, slot)

    async def set_mute(self, index: int, action: str) -> bool:
        """Mute or unmute immediately (no debounce).  Returns False on command failure."""
        slot = self._slot(index)
        if action not in MUTE_ACTIONS:
            raise RequestError(f"unknown mute action {action!r}")
        logger.info("Mute change request [%d]: action=%s", index, action)
        try:
            await slot.client.set_mute(action == "mute")
        except CommandError as e:
            logger.error("Error setting mute on [%d] %s: %s", index, slot.endpoint.label, e)
            self._report_error(slot, e)
            return False
        if slot.generation == self._generation:
            self._schedule(slot, self._confirm_delay, self._confirm_poll)
        return True

    # ── debounce / commit ──

    def _debounce_elapsed(self, slot: _ReceiverSlot) -> None:
        slot.debounce = None
        if slot.generation != self._generation or slot.pending is None:
            return
        if slot.committing:
            # one command in flight per receiver; picked up when it finishes
            logger.debug("[%d] holding %s until the running command finishes",
                         slot.index, slot.pending)
            slot.phase = "committing"
            return
        self._start_commit(slot)

    def _start_commit(self, slot: _ReceiverSlot) -> None:
        command, slot.pending = slot.pending, None
        slot.committing = True
        slot.phase = "committing"
        self._spawn(slot, self._commit(slot, command))

    async def _commit(self, slot: _ReceiverSlot, command: PendingCommand) -> None:
        client = slot.client
        try:
            if command.mode == MODE_RELATIVE_STEP:
                await self._commit_step(slot, command)
                return

            if command.mode == MODE_RELATIVE:
                current = client.state.volume or 0
                target = current + command.value
                logger.info("Adjusting volume [%d]: %s + %s = %s",
                            slot.index, current, command.value, target)
            else:
                target = command.value
                logger.info("Setting volume [%d] to: %s", slot.index, target)

            try:
                sent = await client.issue_volume_command(target)
            except CommandError as e:
                logger.error("Error setting volume on [%d] %s: %s",
                             slot.index, slot.endpoint.label, e)
                self._report_error(slot, e)
                return

            if slot.generation != self._generation:
                return
            slot.window.extend(self._suppress_window)
            client.apply_optimistic_volume(sent)
            slot.volume_value = sent
            self._publish(slot)
            self._schedule(slot, self._confirm_delay, self._confirm_poll)
        finally:
            slot.committing = False
            if slot.generation == self._generation and slot.debounce is None:
                if slot.pending is not None:
                    self._start_commit(slot)
                else:
                    slot.phase = "idle"

    async def _commit_step(self, slot: _ReceiverSlot, command: PendingCommand) -> None:
        direction = (command.value > 0) - (command.value < 0)
        if direction == 0:
            logger.debug("[%d] zero step ignored", slot.index)
            return
        try:
            await slot.client.step_volume(direction)
        except CommandError as e:
            logger.error("Error stepping volume on [%d] %s: %s",
                         slot.index, slot.endpoint.label, e)
            self._report_error(slot, e)
            return
        if slot.generation == self._generation:
            self._schedule(slot, self._step_confirm_delay, self._confirm_poll)

    def _confirm_poll(self, slot: _ReceiverSlot) -> None:
        self._spawn(slot, slot.client.poll())

    # ── timers / tasks ──

    def _schedule(self, slot: _ReceiverSlot, delay: float, callback) -> None:
        """Run callback(slot) after *delay* unless the slot is torn down first."""
        loop = asyncio.get_running_loop()

        def fire():
            slot.timers.discard(handle)
            if slot.generation == self._generation:
                callback(slot)

        handle = loop.call_later(delay, fire)
        slot.timers.add(handle)

    def _spawn(self, slot: _ReceiverSlot, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        slot.tasks.add(task)
        task.add_done_callback(slot.tasks.discard)
        return task

    # ── receiver events ──

    def _handle_event(self, generation: int, index: int, event: ReceiverEvent) -> None:
        if generation != self._generation or index >= len(self._slots):
            return
        slot = self._slots[index]
        if isinstance(event, VolumeChanged):
            slot.volume_value = event.volume
            self._publish(slot)
        elif isinstance(event, MuteChanged):
            slot.is_muted = event.muted
            self._publish(slot)
        elif isinstance(event, ReceiverError):
            self._report_error(slot, event.error)
