"""Bounded registry of tracked devices.

Addresses are unique.  When the registry is full a new address evicts the
weakest device (lowest RSSI, first one found on ties).  Every method takes
the same lock, so adapter callbacks may upsert from another thread while
the UI reads.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from .filters import normalize_address

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_DEVICES = 10
SEEN_COUNT_MAX = 0x7FFFFFFF


@dataclass
class Device:
    address: str
    name: str
    rssi: int
    last_seen: float
    seen_count: int = 1

    def label(self) -> str:
        return f"{self.name or 'Unknown'} [{self.address}]"


class DeviceRegistry:
    def __init__(self, max_devices: int = DEFAULT_MAX_DEVICES):
        if max_devices < 1:
            raise ValueError("max_devices must be at least 1")
        self.max_devices = max_devices
        self._devices: Dict[str, Device] = {}
        self._lock = threading.Lock()

    def upsert(self, address: str, name: str, rssi: int,
               now: Optional[float] = None) -> Optional[Device]:
        """Record one accepted observation.

        Returns the device evicted to make room, if any.
        """
        key = normalize_address(address)
        if not key:
            raise ValueError("device address must not be empty")
        if now is None:
            now = time.monotonic()

        with self._lock:
            existing = self._devices.get(key)
            if existing is not None:
                existing.rssi = rssi
                existing.last_seen = now
                if name:
                    existing.name = name
                if existing.seen_count < SEEN_COUNT_MAX:
                    existing.seen_count += 1
                LOGGER.debug("Seen %s again (%d dBm, %dx)",
                             key, rssi, existing.seen_count)
                return None

            evicted = None
            if len(self._devices) >= self.max_devices:
                # min() keeps the first of equal keys, which makes ties
                # resolve in insertion order
                evicted = min(self._devices.values(), key=lambda d: d.rssi)
                del self._devices[evicted.address]
                LOGGER.info("Registry full (%d), evicted %s at %d dBm",
                            self.max_devices, evicted.address, evicted.rssi)

            self._devices[key] = Device(address=key, name=name or "",
                                        rssi=rssi, last_seen=now)
            LOGGER.info("Tracking %s %r at %d dBm", key, name or "", rssi)
            return evicted

    def count(self) -> int:
        with self._lock:
            return len(self._devices)

    __len__ = count

    def get(self, index: int) -> Optional[Device]:
        """Copy of the device at 1-based *index*, or None."""
        with self._lock:
            if not 1 <= index <= len(self._devices):
                return None
            return replace(list(self._devices.values())[index - 1])

    def get_by_address(self, address: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(normalize_address(address))
            return replace(device) if device is not None else None

    def snapshot(self) -> List[Device]:
        with self._lock:
            return [replace(d) for d in self._devices.values()]

    def clear(self):
        with self._lock:
            self._devices.clear()
