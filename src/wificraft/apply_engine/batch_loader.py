"""Per-site, per-type device snapshot loaded once per apply run."""
import logging
import threading
from contextlib import contextmanager

from ..errors import DeviceNotFoundError
from ..utils.logging_config import timed
from ..utils.macaddr import normalize_or_empty
from ..vendors.base import CacheAccessor, DeviceRecord, DeviceType

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class DeviceBatchLoader:
    """MAC-keyed map of every device of one type assigned to one site.

    The diff and update phases of a run share one instance so the cache is
    walked once instead of once per device.
    """

    def __init__(self, site_id: str, device_type: DeviceType, devices: list[DeviceRecord]):
        self.site_id = site_id
        self.device_type = DeviceType.parse(device_type)
        self._lock = ReadWriteLock()
        self._devices: dict[str, DeviceRecord] = {}
        with self._lock.write():
            for device in devices:
                mac = normalize_or_empty(device.mac)
                if not mac:
                    logger.warning(f"Skipping cached {self.device_type} with invalid MAC '{device.mac}'")
                    continue
                self._devices[mac] = device

    @classmethod
    @timed("batch_load")
    def load(cls, cache: CacheAccessor, site_id: str, device_type: DeviceType) -> "DeviceBatchLoader":
        device_type = DeviceType.parse(device_type)
        loader = cls(site_id, device_type, cache.get_devices_by_site(site_id, str(device_type)))
        logger.debug(f"Batch loaded {loader.get_device_count()} {device_type} device(s) for site {site_id}")
        return loader

    def get_device_by_mac(self, mac: str) -> DeviceRecord:
        """Look up one device.

        Raises:
            DeviceNotFoundError: For invalid MACs and devices not at this site
        """
        key = normalize_or_empty(mac)
        if not key:
            raise DeviceNotFoundError(f"invalid MAC address: {mac!r}")
        with self._lock.read():
            device = self._devices.get(key)
        if device is None:
            raise DeviceNotFoundError(f"device not found: {key} ({self.device_type}, site {self.site_id})")
        return device

    def has_device(self, mac: str) -> bool:
        key = normalize_or_empty(mac)
        with self._lock.read():
            return bool(key) and key in self._devices

    def get_device_count(self) -> int:
        with self._lock.read():
            return len(self._devices)
