from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from .client import DeviceInfo, EnergyUsage

NAMESPACE = "tapo"
SUBSYSTEM = "device"

# Only this model answers energy usage requests.
POWER_CAPABLE_MODEL = "P110"

ADDRESS_LABELS: Tuple[str, ...] = ("ip",)
DEVICE_LABELS: Tuple[str, ...] = ("model", "ip", "mac", "type", "name")


@dataclass(frozen=True)
class MetricDef:
    name: str
    documentation: str
    labelnames: Tuple[str, ...]
    counter: bool = False

    @property
    def full_name(self) -> str:
        return f"{NAMESPACE}_{SUBSYSTEM}_{self.name}"

    def family(self) -> Metric:
        if self.counter:
            return CounterMetricFamily(self.full_name, self.documentation, labels=list(self.labelnames))
        return GaugeMetricFamily(self.full_name, self.documentation, labels=list(self.labelnames))


UP = MetricDef("up", "Is the device up", ADDRESS_LABELS)
ERRORS = MetricDef("errors", "Count of errors retrieving details", ADDRESS_LABELS, counter=True)
ON = MetricDef("on", "Is the plug on", DEVICE_LABELS)
# A gauge, not a counter: the plug resets it.
ON_TIME = MetricDef("onTime", "Cumulative on time", DEVICE_LABELS)
OVERHEATED = MetricDef("overheated", "Is the plug overheated", DEVICE_LABELS)
POWER = MetricDef("power", "power (watts)", DEVICE_LABELS)
TODAY_RUNTIME = MetricDef("today_runtime", "Runtime today (mins)", DEVICE_LABELS)
TODAY_ENERGY = MetricDef("today_energy", "Energy today (watt-hours)", DEVICE_LABELS)


class Sample(NamedTuple):
    metric: MetricDef
    labelvalues: Tuple[str, ...]
    value: float


class DeviceMetric:
    """One labelled gauge or counter. Labels are fixed, the value is not."""

    __slots__ = ("definition", "labelvalues", "value")

    def __init__(self, definition: MetricDef, labelvalues: Tuple[str, ...]) -> None:
        if len(labelvalues) != len(definition.labelnames):
            raise ValueError(f"{definition.full_name}: expected {len(definition.labelnames)} label values, got {len(labelvalues)}")
        self.definition = definition
        self.labelvalues = tuple(labelvalues)
        self.value = 0.0

    def set(self, value: float) -> None:
        self.value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        self.value += float(amount)

    def sample(self) -> Sample:
        return Sample(self.definition, self.labelvalues, self.value)


def b2f(b: bool) -> float:
    return 1.0 if b else 0.0


def device_labels(info: DeviceInfo) -> Tuple[str, ...]:
    dev_type = info.avatar.lower()
    if not dev_type:
        dev_type = info.model
    return (info.model, info.ip, info.mac, dev_type, info.nickname)


def supports_power(model: str, power_model: str = POWER_CAPABLE_MODEL) -> bool:
    return model.casefold() == power_model.casefold()


@dataclass
class PowerMetrics:
    power: DeviceMetric
    today_runtime: DeviceMetric
    today_energy: DeviceMetric


@dataclass
class MetricSet:
    """Instruments discovered from a device's first successful reading.

    Created once and never rebuilt: labels and power capability stay what
    the first reading reported for the lifetime of the process.
    """

    on: DeviceMetric
    on_time: DeviceMetric
    overheated: DeviceMetric
    power: Optional[PowerMetrics] = None

    @classmethod
    def create(cls, info: DeviceInfo, power_model: str = POWER_CAPABLE_MODEL) -> "MetricSet":
        labels = device_labels(info)
        ms = cls(
            on=DeviceMetric(ON, labels),
            on_time=DeviceMetric(ON_TIME, labels),
            overheated=DeviceMetric(OVERHEATED, labels),
        )
        if supports_power(info.model, power_model):
            ms.power = PowerMetrics(
                power=DeviceMetric(POWER, labels),
                today_runtime=DeviceMetric(TODAY_RUNTIME, labels),
                today_energy=DeviceMetric(TODAY_ENERGY, labels),
            )
        return ms

    @property
    def supports_power(self) -> bool:
        return self.power is not None

    def update(self, info: DeviceInfo) -> None:
        self.on.set(b2f(info.device_on))
        self.on_time.set(info.on_time)
        self.overheated.set(b2f(info.overheated))

    def update_energy(self, usage: EnergyUsage) -> None:
        if self.power is None:
            return
        self.power.today_runtime.set(float(usage.today_runtime))
        self.power.today_energy.set(float(usage.today_energy))
        self.power.power.set(float(usage.current_power) / 1000.0)

    def instruments(self) -> Iterator[DeviceMetric]:
        yield self.on
        yield self.on_time
        yield self.overheated
        if self.power is not None:
            yield self.power.power
            yield self.power.today_runtime
            yield self.power.today_energy


class MetricSink:
    """Merges samples from many devices into one family per metric name."""

    def __init__(self) -> None:
        self._families: Dict[str, Metric] = {}

    def _family(self, definition: MetricDef) -> Metric:
        fam = self._families.get(definition.full_name)
        if fam is None:
            fam = definition.family()
            self._families[definition.full_name] = fam
        return fam

    def declare(self, definition: MetricDef) -> None:
        self._family(definition)

    def add(self, sample: Sample) -> None:
        self._family(sample.metric).add_metric(list(sample.labelvalues), sample.value)

    def families(self) -> List[Metric]:
        return list(self._families.values())
