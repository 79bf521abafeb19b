import threading
import time

import pytest

from tapo_exporter.client import DeviceInfo, DeviceReadError, EnergyUsage


def make_info(**overrides):
    fields = dict(
        device_on=True,
        on_time=120.0,
        overheated=False,
        model="P110",
        avatar="Plug",
        nickname="Kitchen",
        ip="192.168.1.20",
        mac="AA-BB-CC-DD-EE-FF",
    )
    fields.update(overrides)
    return DeviceInfo(**fields)


class FakeClient:
    """Scripted stand-in for TapoClient.

    infos / energies are consumed in order; an exception instance in either
    list is raised instead of returned. The last entry repeats forever.
    """

    def __init__(self, infos=None, energies=None, delay=0.0):
        self.infos = list(infos or [make_info()])
        self.energies = list(energies or [EnergyUsage(today_runtime=30, today_energy=250, current_power=15000)])
        self.delay = delay
        self.info_calls = 0
        self.energy_calls = 0
        self.gate = None

    def _next(self, items):
        item = items[0] if len(items) == 1 else items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get_device_info(self):
        self.info_calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.delay:
            time.sleep(self.delay)
        return self._next(self.infos)

    def get_energy_usage(self):
        self.energy_calls += 1
        return self._next(self.energies)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def failing_client():
    return FakeClient(infos=[DeviceReadError("connection refused")])


def samples_by_name(families):
    out = {}
    for fam in families:
        for s in fam.samples:
            out.setdefault(s.name, []).append(s)
    return out


@pytest.fixture
def gate():
    return threading.Event()
