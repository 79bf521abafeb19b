from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, List, Optional

from .metrics import (
    ERRORS,
    POWER_CAPABLE_MODEL,
    UP,
    DeviceMetric,
    MetricDef,
    MetricSet,
    Sample,
)

log = logging.getLogger(__name__)


class Device:
    """Live metric state for one plug.

    refresh() is the only writer and collect() the only reader; both hold
    the device lock, so a collect during an in-flight refresh waits for it.
    """

    def __init__(
        self,
        address: str,
        client: Any,
        logger: Optional[logging.Logger] = None,
        power_model: str = POWER_CAPABLE_MODEL,
    ) -> None:
        self.address = address
        self.client = client
        self.logger = logger or log
        self.power_model = power_model
        self.lock = Lock()

        self.last_was_valid: bool = False
        # None until the first successful reading.
        self.metrics: Optional[MetricSet] = None

        self.up = DeviceMetric(UP, (address,))
        self.errors = DeviceMetric(ERRORS, (address,))

    @property
    def initialised(self) -> bool:
        return self.metrics is not None

    @property
    def supports_power(self) -> bool:
        return self.metrics is not None and self.metrics.supports_power

    def refresh(self) -> None:
        with self.lock:
            t0 = time.monotonic()
            try:
                info = self.client.get_device_info()
            except Exception as e:
                self.logger.warning("device=%s err=%r time=%.3f", self.address, str(e), time.monotonic() - t0)
                self.last_was_valid = False
                self.up.set(0)
                self.errors.inc()
                return

            self.logger.debug("device=%s on=%s time=%.3f", self.address, info.device_on, time.monotonic() - t0)
            self.last_was_valid = True
            self.up.set(1)

            if self.metrics is None:
                self.metrics = MetricSet.create(info, self.power_model)
                self.logger.info(
                    "device=%s model=%s name=%r supports_power=%s",
                    self.address,
                    info.model,
                    info.nickname,
                    self.metrics.supports_power,
                )

            self.metrics.update(info)

            if self.metrics.supports_power:
                try:
                    usage = self.client.get_energy_usage()
                except Exception as e:
                    # Energy is best effort: keep the previous values.
                    self.logger.debug("device=%s energy_err=%r", self.address, str(e))
                    return
                self.metrics.update_energy(usage)

    def describe(self) -> List[MetricDef]:
        with self.lock:
            defs = [self.up.definition, self.errors.definition]
            if self.metrics is not None:
                defs.extend(m.definition for m in self.metrics.instruments())
            return defs

    def collect(self) -> List[Sample]:
        with self.lock:
            out = [self.up.sample(), self.errors.sample()]
            if self.last_was_valid and self.metrics is not None:
                out.extend(m.sample() for m in self.metrics.instruments())
            return out
