from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

from prometheus_client.core import Metric

from .client import Credentials, TapoClient, connect
from .device import Device
from .metrics import POWER_CAPABLE_MODEL, MetricSink, Sample

log = logging.getLogger(__name__)

Connector = Callable[[str, Credentials, float], TapoClient]


class Exporter:
    """prometheus_client collector over a fixed set of devices.

    Every collect() refreshes all devices in parallel and only returns once
    each of them has been refreshed (or has failed) for this scrape.
    """

    def __init__(self, devices: Dict[str, Device], logger: Optional[logging.Logger] = None) -> None:
        self.devices = dict(devices)
        self.logger = logger or log
        self.lock = Lock()
        self.executor = ThreadPoolExecutor(
            max_workers=max(1, len(self.devices)),
            thread_name_prefix="tapo-refresh",
        )

    @classmethod
    def from_addresses(
        cls,
        addresses: Iterable[str],
        credentials: Credentials,
        timeout: float,
        logger: Optional[logging.Logger] = None,
        connector: Optional[Connector] = None,
        power_model: str = POWER_CAPABLE_MODEL,
    ) -> "Exporter":
        """Build one Device per address.

        A DeviceConnectError for any address propagates: a partially built
        fleet is not started.
        """
        connector = connector or connect
        lg = logger or log
        devices: Dict[str, Device] = {}
        for address in addresses:
            if address in devices:
                continue
            client = connector(address, credentials, timeout)
            devices[address] = Device(address, client, logger=lg, power_model=power_model)
        return cls(devices, logger=lg)

    def close(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)
        for dev in self.devices.values():
            close = getattr(dev.client, "close", None)
            if close is not None:
                close()

    def describe(self) -> List[Metric]:
        with self.lock:
            sink = MetricSink()
            for dev in self.devices.values():
                for definition in dev.describe():
                    sink.declare(definition)
            return sink.families()

    def _refresh_and_collect(self, dev: Device) -> List[Sample]:
        dev.refresh()
        return dev.collect()

    def collect(self) -> List[Metric]:
        with self.lock:
            t0 = time.monotonic()

            futs = {self.executor.submit(self._refresh_and_collect, dev): address for address, dev in self.devices.items()}
            results: Dict[str, List[Sample]] = {}
            for fut in as_completed(futs):
                address = futs[fut]
                try:
                    results[address] = fut.result()
                except Exception:
                    self.logger.exception("device=%s refresh failed unexpectedly", address)

            sink = MetricSink()
            for address in self.devices:
                for sample in results.get(address, ()):
                    sink.add(sample)

            self.logger.debug("op=collect devices=%d time=%.3f", len(self.devices), time.monotonic() - t0)
            return sink.families()
