import threading
import time

import pytest

from tapo_exporter.client import (
    Credentials,
    DeviceConnectError,
    DeviceInfo,
    DeviceReadError,
    EnergyUsage,
    connect,
    decode_nickname,
)

CREDS = Credentials("user@example.com", "hunter2")

DEVICE_INFO = {
    "device_on": True,
    "on_time": 5400,
    "overheated": False,
    "model": "P110",
    "avatar": "plug",
    "nickname": "S2l0Y2hlbg==",
    "ip": "192.168.1.20",
    "mac": "AA-BB-CC-DD-EE-FF",
}

ENERGY = {"today_runtime": 90, "today_energy": 412, "current_power": 15000, "month_energy": 9000}


class FakeSession:
    def __init__(self, info=None, energy=None, hang=None):
        self.info = DEVICE_INFO if info is None else info
        self.energy = ENERGY if energy is None else energy
        self.hang = hang

    def getDeviceInfo(self):
        if self.hang is not None:
            self.hang.wait(5)
        if isinstance(self.info, Exception):
            raise self.info
        return self.info

    def getEnergyUsage(self):
        return self.energy


class Factory:
    def __init__(self, *sessions):
        self.sessions = list(sessions)
        self.calls = []

    def __call__(self, address, username, password):
        self.calls.append((address, username, password))
        return self.sessions.pop(0) if len(self.sessions) > 1 else self.sessions[0]


def test_credentials_repr_hides_password():
    assert "hunter2" not in repr(CREDS)


@pytest.mark.parametrize("address", ["", "   ", "http://10.0.0.1", "10.0.0.1/24", "bad host", "a..b"])
def test_connect_rejects_invalid_addresses(address):
    with pytest.raises(DeviceConnectError):
        connect(address, CREDS, 1.0, session_factory=Factory(FakeSession()))


def test_connect_rejects_non_positive_timeout():
    with pytest.raises(DeviceConnectError):
        connect("10.0.0.1", CREDS, 0, session_factory=Factory(FakeSession()))


def test_connect_wraps_session_errors():
    def factory(address, username, password):
        raise ValueError("bad key")

    with pytest.raises(DeviceConnectError, match="10.0.0.1"):
        connect("10.0.0.1", CREDS, 1.0, session_factory=factory)


def test_connect_accepts_host_names():
    factory = Factory(FakeSession())
    client = connect("plug-1.lan", CREDS, 1.0, session_factory=factory)
    assert client.address == "plug-1.lan"
    assert factory.calls == [("plug-1.lan", "user@example.com", "hunter2")]


def test_get_device_info_parses_response():
    client = connect("10.0.0.1", CREDS, 1.0, session_factory=Factory(FakeSession()))
    info = client.get_device_info()
    assert info == DeviceInfo(
        device_on=True,
        on_time=5400.0,
        overheated=False,
        model="P110",
        avatar="plug",
        nickname="Kitchen",
        ip="192.168.1.20",
        mac="AA-BB-CC-DD-EE-FF",
    )


def test_get_energy_usage_parses_response():
    client = connect("10.0.0.1", CREDS, 1.0, session_factory=Factory(FakeSession()))
    assert client.get_energy_usage() == EnergyUsage(today_runtime=90, today_energy=412, current_power=15000)


def test_enveloped_responses_are_unwrapped():
    session = FakeSession(info={"error_code": 0, "result": DEVICE_INFO})
    client = connect("10.0.0.1", CREDS, 1.0, session_factory=Factory(session))
    assert client.get_device_info().model == "P110"


def test_error_code_is_a_read_error():
    session = FakeSession(info={"error_code": -1501, "result": {}})
    client = connect("10.0.0.1", CREDS, 1.0, session_factory=Factory(session))
    with pytest.raises(DeviceReadError, match="-1501"):
        client.get_device_info()


def test_missing_fields_are_a_read_error():
    client = connect("10.0.0.1", CREDS, 1.0, session_factory=Factory(FakeSession(info={"model": "P100"})))
    with pytest.raises(DeviceReadError):
        client.get_device_info()


def test_library_errors_become_read_errors_and_reset_session():
    broken = FakeSession(info=ConnectionError("refused"))
    healthy = FakeSession()
    factory = Factory(broken, healthy)
    client = connect("10.0.0.1", CREDS, 1.0, session_factory=factory)

    with pytest.raises(DeviceReadError, match="refused"):
        client.get_device_info()
    assert client.session is None

    assert client.get_device_info().nickname == "Kitchen"
    assert len(factory.calls) == 2
    assert client.session is healthy


def test_calls_queued_behind_a_hung_call_time_out_without_new_threads():
    class CountingSession(FakeSession):
        calls = 0

        def getDeviceInfo(self):
            CountingSession.calls += 1
            return super().getDeviceInfo()

    hang = threading.Event()
    client = connect("10.0.0.1", CREDS, 0.1, session_factory=Factory(CountingSession(hang=hang)))
    try:
        for _ in range(3):
            with pytest.raises(DeviceReadError, match="timed out"):
                client.get_device_info()
        assert CountingSession.calls == 1
    finally:
        hang.set()
        client.close()


def test_closed_client_raises_read_error():
    client = connect("10.0.0.1", CREDS, 1.0, session_factory=Factory(FakeSession()))
    client.close()
    with pytest.raises(DeviceReadError, match="not started"):
        client.get_device_info()


def test_hung_call_times_out():
    hang = threading.Event()
    client = connect("10.0.0.1", CREDS, 0.2, session_factory=Factory(FakeSession(hang=hang)))
    t0 = time.monotonic()
    try:
        with pytest.raises(DeviceReadError, match="timed out"):
            client.get_device_info()
    finally:
        hang.set()
    assert time.monotonic() - t0 < 2.0
    assert client.session is None


def test_legacy_sessions_log_in_once():
    class LegacySession(FakeSession):
        logins = 0

        def handshake(self):
            pass

        def login(self):
            LegacySession.logins += 1

    client = connect("10.0.0.1", CREDS, 1.0, session_factory=Factory(LegacySession()))
    client.get_device_info()
    client.get_energy_usage()
    assert LegacySession.logins == 1


@pytest.mark.parametrize(
    "raw,expected",
    [("S2l0Y2hlbg==", "Kitchen"), ("Kitchen", "Kitchen"), ("", ""), ("TGl2aW5nIHJvb20=", "Living room")],
)
def test_decode_nickname(raw, expected):
    assert decode_nickname(raw) == expected
