"""Platform adapters: where advertisements come from and actions go to.

``BleakAdapter`` scans with bleak on any platform bleak supports.  It has
no native action or playback primitive, so both raise AdapterUnavailable
and the controller decides how to report that.  ``SimulatedAdapter``
produces synthetic advertisements and simulated primitives for dry runs.
"""

import asyncio
import logging
import platform
import random
import threading
from typing import Callable, List, Optional, Sequence

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .errors import AdapterUnavailable
from .filters import UNKNOWN_RSSI

LOGGER = logging.getLogger(__name__)

# (address, name, rssi)
AdvertisementCallback = Callable[[str, str, int], None]


class PlatformAdapter:
    """Interface the controller drives.  Every primitive is missing here."""

    name = "none"

    def __init__(self):
        self._cancel = threading.Event()

    async def start_scan(self, callback: AdvertisementCallback):
        raise AdapterUnavailable(f"{self.name}: no scan primitive available")

    async def stop_scan(self):
        LOGGER.warning("%s: no scan primitive to stop", self.name)

    async def trigger_action(self, address: str) -> bool:
        raise AdapterUnavailable(f"{self.name}: no action primitive available")

    async def play_file(self, address: str, file_path: str) -> bool:
        raise AdapterUnavailable(f"{self.name}: no playback primitive available")

    # Operator abort, polled while waiting for the first device
    def request_cancel(self):
        self._cancel.set()

    def clear_cancel(self):
        self._cancel.clear()

    def cancel_requested(self) -> bool:
        return self._cancel.is_set()


class BleakAdapter(PlatformAdapter):
    name = "bleak"

    def __init__(self, active: bool = False,
                 adapters: Optional[Sequence[str]] = None,
                 use_bdaddr: bool = False):
        super().__init__()
        self.active = active
        self.adapters = list(adapters or [])
        # macOS hides real addresses behind CoreBluetooth UUIDs, which can
        # never match a MAC prefix or resolve against an IRK
        self.use_bdaddr = use_bdaddr
        self._scanners: List[BleakScanner] = []

    def _scanner_kwargs(self, callback: AdvertisementCallback) -> dict:
        def detection_callback(device: BLEDevice, adv: AdvertisementData):
            rssi = adv.rssi if isinstance(adv.rssi, int) else UNKNOWN_RSSI
            callback(device.address or "", device.name or adv.local_name or "", rssi)

        kwargs: dict = {"detection_callback": detection_callback}
        if self.active:
            kwargs["scanning_mode"] = "active"
        if self.use_bdaddr and platform.system() == "Darwin":
            # Undocumented CoreBluetooth option; may break in future bleak
            # releases.
            kwargs["cb"] = {"use_bdaddr": True}
        return kwargs

    async def start_scan(self, callback: AdvertisementCallback):
        kwargs = self._scanner_kwargs(callback)
        started: List[BleakScanner] = []
        try:
            if self.adapters:
                scanners = [BleakScanner(**kwargs, adapter=a) for a in self.adapters]
            else:
                scanners = [BleakScanner(**kwargs)]
            for s in scanners:
                await s.start()
                started.append(s)
        except (BleakError, OSError) as e:
            for s in started:
                await s.stop()
            raise AdapterUnavailable(f"BLE scan could not start: {e}") from e
        self._scanners = started
        LOGGER.info("bleak scan started (%s, %s)",
                    "active" if self.active else "passive",
                    ", ".join(self.adapters) or "default adapter")

    async def stop_scan(self):
        scanners, self._scanners = self._scanners, []
        for s in scanners:
            try:
                await s.stop()
            except (BleakError, OSError) as e:
                LOGGER.error("bleak scan stop failed: %s", e)


_SIM_NAMES = ["Pixel Buds Pro", "Galaxy Buds2", "Fast Pair Speaker",
              "JBL Flip 6", "Mi Band", ""]


class SimulatedAdapter(PlatformAdapter):
    """Synthetic advertisements at *rate* per second, seeded for repeatability."""

    name = "simulate"

    def __init__(self, rate: float = 5.0, seed: int = 42,
                 prefixes: Sequence[str] = (),
                 action_ok: bool = True, playback_ok: bool = True,
                 action_delay: float = 0.2):
        super().__init__()
        self.rate = max(0.1, rate)
        self.prefixes = list(prefixes)
        self.action_ok = action_ok
        self.playback_ok = playback_ok
        self.action_delay = action_delay
        self._rng = random.Random(seed)
        self._task: Optional[asyncio.Task] = None

    def _random_mac(self) -> str:
        octets = [f"{self._rng.randint(0, 255):02X}" for _ in range(6)]
        if self.prefixes and self._rng.random() < 0.5:
            prefix = self._rng.choice(self.prefixes).split(":")
            octets[:len(prefix)] = prefix
        return ":".join(octets)

    async def _run(self, callback: AdvertisementCallback):
        seen: List[str] = []
        while True:
            await asyncio.sleep(1.0 / self.rate)
            # Repeat a known address now and then, like a real advertiser
            if seen and self._rng.random() < 0.3:
                addr = self._rng.choice(seen)
            else:
                addr = self._random_mac()
                seen.append(addr)
            callback(addr, self._rng.choice(_SIM_NAMES), self._rng.randint(-95, -30))

    async def start_scan(self, callback: AdvertisementCallback):
        await self.stop_scan()
        self._task = asyncio.get_running_loop().create_task(self._run(callback))
        LOGGER.info("Simulated scan started (%.1f adverts/s)", self.rate)

    async def stop_scan(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def trigger_action(self, address: str) -> bool:
        await asyncio.sleep(self.action_delay)
        LOGGER.info("Simulated action on %s -> %s", address, self.action_ok)
        return self.action_ok

    async def play_file(self, address: str, file_path: str) -> bool:
        await asyncio.sleep(self.action_delay)
        LOGGER.info("Simulated playback of %s on %s -> %s",
                    file_path, address, self.playback_ok)
        return self.playback_ok
