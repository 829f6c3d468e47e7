"""Scan lifecycle and target/action dispatch.

``ScanController`` owns the registry, the filter config and the selected
target.  The lifecycle is::

    IDLE --start_scan--> SCANNING --stop_scan--> STOPPED --start_scan--> SCANNING

Starting a scan always begins from an empty registry and no target.
``wait_for_first_device`` implements the "stop at first hit" flow: it
returns as soon as one device is tracked, the operator cancels, or the scan
is stopped elsewhere, and stops the scan on the way out.

Actions run as asyncio tasks and resolve to an ``ActionResult``.  Input
problems (empty registry, bad index, bad file) raise before any primitive
runs.
"""

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from .adapters import PlatformAdapter
from .errors import (ActionFailed, AdapterUnavailable, EmptyRegistry,
                     InvalidInput, OutOfRange, ScanError)
from .filters import FilterConfig, normalize_address, rejection_reason
from .registry import DEFAULT_MAX_DEVICES, Device, DeviceRegistry

LOGGER = logging.getLogger(__name__)

ACTION_TRIGGER = "action"
ACTION_PLAYBACK = "playback"

AUDIO_EXTENSIONS = (".mp3",)

# Seconds between cancel/state checks while waiting for the first device
WAIT_POLL_INTERVAL = 0.1


class ScanState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    STOPPED = "stopped"


@dataclass
class ActionResult:
    action: str
    address: str
    ok: bool
    error: Optional[ScanError] = None


def validate_audio_path(file_path: Optional[str]) -> str:
    """Check a playback path by extension only; the content is not read."""
    if not file_path:
        raise InvalidInput("no song selected")
    if not file_path.lower().endswith(AUDIO_EXTENSIONS):
        raise InvalidInput("please select an .mp3 file")
    return file_path


class ScanController:
    def __init__(self, adapter: PlatformAdapter, config: FilterConfig,
                 max_devices: int = DEFAULT_MAX_DEVICES,
                 optimistic_actions: bool = False,
                 on_accept: Optional[Callable[[Device], None]] = None):
        self.adapter = adapter
        self.registry = DeviceRegistry(max_devices)
        self.optimistic_actions = optimistic_actions
        self.on_accept = on_accept
        self.rejected_count = 0
        self.evicted_count = 0
        self._config = config
        self._state = ScanState.IDLE
        self._lock = threading.Lock()
        self._target_address: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._first_device: Optional[asyncio.Event] = None

    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._state

    @property
    def filter_config(self) -> FilterConfig:
        return self._config

    def set_filter_config(self, config: FilterConfig):
        """Swap in a new filter config; takes effect with the next advertisement."""
        self._config = config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_scan(self):
        with self._lock:
            if self._state is ScanState.SCANNING:
                LOGGER.debug("start_scan ignored, already scanning")
                return
            self.registry.clear()
            self._target_address = None
            self.rejected_count = 0
            self.evicted_count = 0
            self._loop = asyncio.get_running_loop()
            self._first_device = asyncio.Event()
            self._state = ScanState.SCANNING
        self.adapter.clear_cancel()

        try:
            await self.adapter.start_scan(self.on_advertisement)
        except AdapterUnavailable as e:
            # Nothing will ever arrive; let waiters return straight away
            LOGGER.error("Scanning unavailable: %s", e)
            with self._lock:
                self._state = ScanState.STOPPED
            self._wake()
            return
        LOGGER.info("Scan started via %s adapter", self.adapter.name)

    async def stop_scan(self):
        with self._lock:
            was_scanning = self._state is ScanState.SCANNING
            self._state = ScanState.STOPPED
        if was_scanning:
            await self.adapter.stop_scan()
            LOGGER.info("Scan stopped with %d device(s), %d rejected, %d evicted",
                        self.registry.count(), self.rejected_count,
                        self.evicted_count)
        self._wake()

    async def reset(self):
        """Stop any scan and return to IDLE with an empty registry."""
        await self.stop_scan()
        with self._lock:
            self.registry.clear()
            self._target_address = None
            self._state = ScanState.IDLE

    async def wait_for_first_device(
            self, poll_interval: float = WAIT_POLL_INTERVAL) -> Optional[Device]:
        """Wait until a device is tracked, the operator cancels, or the scan stops.

        There is no timeout.  The scan is always stopped before returning.
        The first tracked device, if any, becomes the selected target and
        is returned.
        """
        try:
            while True:
                if self.registry.count() >= 1:
                    break
                if self.adapter.cancel_requested():
                    LOGGER.info("Scan cancelled by operator")
                    break
                if self.state is not ScanState.SCANNING or self._first_device is None:
                    break
                try:
                    await asyncio.wait_for(self._first_device.wait(), poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop_scan()

        with self._lock:
            first = self.registry.get(1)
            if first is not None:
                self._target_address = first.address
        if first is not None:
            LOGGER.info("Target: %s", first.label())
        return first

    def _wake(self):
        event, loop = self._first_device, self._loop
        if event is None or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    # ------------------------------------------------------------------
    # Advertisement path
    # ------------------------------------------------------------------

    def on_advertisement(self, address: str, name: str, rssi: int):
        """Adapter callback.  Safe to call from any thread."""
        if self.state is not ScanState.SCANNING:
            return
        address = normalize_address(address)
        if not address:
            LOGGER.debug("Dropped advertisement without an address")
            return

        reason = rejection_reason(address, name, rssi, self._config)
        if reason is not None:
            with self._lock:
                self.rejected_count += 1
            LOGGER.debug("Rejected %s: %s", address, reason)
            return

        with self._lock:
            # The scan may have stopped while the filter ran
            if self._state is not ScanState.SCANNING:
                return
            evicted = self.registry.upsert(address, name, rssi)
            if evicted is not None:
                self.evicted_count += 1
                if evicted.address == self._target_address:
                    self._target_address = None
                    LOGGER.info("Target %s evicted, selection cleared",
                                evicted.address)

        if self.on_accept is not None:
            device = self.registry.get_by_address(address)
            if device is not None:
                self.on_accept(device)
        self._wake()

    # ------------------------------------------------------------------
    # Reads for the UI
    # ------------------------------------------------------------------

    def device_count(self) -> int:
        return self.registry.count()

    def list_devices(self) -> List[Device]:
        return self.registry.snapshot()

    @property
    def selected_target(self) -> Optional[Device]:
        address = self._target_address
        if address is None:
            return None
        device = self.registry.get_by_address(address)
        if device is None:
            LOGGER.info("Target %s is no longer tracked, selection cleared", address)
            with self._lock:
                if self._target_address == address:
                    self._target_address = None
        return device

    # ------------------------------------------------------------------
    # Target selection and dispatch
    # ------------------------------------------------------------------

    def select_target(self, index: int) -> Device:
        with self._lock:
            count = self.registry.count()
            if count == 0:
                raise EmptyRegistry()
            device = self.registry.get(index)
            if device is None:
                raise OutOfRange(index, count)
            self._target_address = device.address
        return device

    def trigger_action(self, device: Optional[Device],
                       on_complete: Optional[Callable[[ActionResult], None]] = None
                       ) -> "asyncio.Task[ActionResult]":
        """Run the action primitive once against *device*.  No retry."""
        if device is None:
            raise InvalidInput("no target device, start scan first")
        LOGGER.info("Triggering action for %s", device.label())
        return self._dispatch(ACTION_TRIGGER, device.address,
                              lambda: self.adapter.trigger_action(device.address),
                              on_complete)

    def play_file(self, device: Optional[Device], file_path: str,
                  on_complete: Optional[Callable[[ActionResult], None]] = None
                  ) -> "asyncio.Task[ActionResult]":
        validate_audio_path(file_path)
        if device is None or self.registry.get_by_address(device.address) is None:
            raise InvalidInput("no target device, start scan first")
        LOGGER.info("Playing %s on %s", file_path, device.label())
        return self._dispatch(ACTION_PLAYBACK, device.address,
                              lambda: self.adapter.play_file(device.address, file_path),
                              on_complete)

    def select_and_trigger(self, index: int,
                           on_complete: Optional[Callable[[ActionResult], None]] = None
                           ) -> "asyncio.Task[ActionResult]":
        return self.trigger_action(self.select_target(index), on_complete)

    def select_and_play(self, index: int, file_path: str,
                        on_complete: Optional[Callable[[ActionResult], None]] = None
                        ) -> "asyncio.Task[ActionResult]":
        if self.registry.count() == 0:
            raise EmptyRegistry()
        validate_audio_path(file_path)
        return self.play_file(self.select_target(index), file_path, on_complete)

    def play_on_target(self, file_path: str,
                       on_complete: Optional[Callable[[ActionResult], None]] = None
                       ) -> "asyncio.Task[ActionResult]":
        target = self.selected_target
        if target is None:
            raise InvalidInput("no target device, start scan first")
        return self.play_file(target, file_path, on_complete)

    def _dispatch(self, action: str, address: str,
                  primitive: Callable[[], Awaitable[bool]],
                  on_complete: Optional[Callable[[ActionResult], None]]
                  ) -> "asyncio.Task[ActionResult]":
        async def run() -> ActionResult:
            result = await self._run_action(action, address, primitive)
            if on_complete is not None:
                try:
                    on_complete(result)
                except Exception:
                    LOGGER.exception("Completion callback for %s on %s failed",
                                     action, address)
            return result

        return asyncio.get_running_loop().create_task(run())

    async def _run_action(self, action: str, address: str,
                          primitive: Callable[[], Awaitable[bool]]) -> ActionResult:
        try:
            ok = bool(await primitive())
        except AdapterUnavailable as e:
            if self.optimistic_actions:
                LOGGER.warning("%s; optimistic mode reports %s on %s as OK",
                               e, action, address)
                return ActionResult(action, address, True)
            LOGGER.error("%s on %s not possible: %s", action, address, e)
            return ActionResult(action, address, False, e)
        except ActionFailed as e:
            LOGGER.error("%s FAILED for %s: %s", action, address, e)
            return ActionResult(action, address, False, e)
        except Exception as e:
            LOGGER.exception("%s FAILED for %s", action, address)
            return ActionResult(action, address, False,
                                ActionFailed(f"{type(e).__name__}: {e}"))

        if not ok:
            err = ActionFailed(f"{action} FAILED for {address}")
            LOGGER.error("%s", err)
            return ActionResult(action, address, False, err)
        LOGGER.info("%s OK for %s", action, address)
        return ActionResult(action, address, True)
