from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from traversal.core.exceptions import DeviceBusyError

log = logging.getLogger(__name__)


class DeviceReservationPool:
    """Process-wide exclusive reservation of devices, one run per device."""

    def __init__(self) -> None:
        self._reserved: dict[str, str] = {}
        self._lock = threading.Lock()

    def acquire(self, device_id: str, run_id: str) -> None:
        with self._lock:
            holder = self._reserved.get(device_id)
            if holder is not None:
                raise DeviceBusyError(f"Device {device_id} is already reserved by run {holder}")
            self._reserved[device_id] = run_id
        log.info("Device %s reserved for run %s", device_id, run_id)

    def release(self, device_id: str, run_id: str | None = None) -> None:
        with self._lock:
            holder = self._reserved.get(device_id)
            if holder is None or (run_id is not None and holder != run_id):
                return
            del self._reserved[device_id]
        log.info("Device %s released", device_id)

    def is_reserved(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._reserved

    @contextmanager
    def reserve(self, device_id: str, run_id: str) -> Iterator[None]:
        self.acquire(device_id, run_id)
        try:
            yield
        finally:
            self.release(device_id, run_id)
