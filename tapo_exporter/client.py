from __future__ import annotations

import base64
import binascii
import ipaddress
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from PyP100 import PyP110


class DeviceError(Exception):
    pass


class DeviceConnectError(DeviceError):
    """The client handle for a device could not be built."""


class DeviceReadError(DeviceError):
    """A call to the device failed, timed out or returned garbage."""


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class DeviceInfo:
    device_on: bool
    on_time: float
    overheated: bool
    model: str
    avatar: str
    nickname: str
    ip: str
    mac: str

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "DeviceInfo":
        try:
            return cls(
                device_on=bool(data["device_on"]),
                on_time=float(data.get("on_time", 0) or 0),
                overheated=bool(data.get("overheated", False)),
                model=str(data.get("model", "")),
                avatar=str(data.get("avatar", "")),
                nickname=decode_nickname(str(data.get("nickname", ""))),
                ip=str(data.get("ip", "")),
                mac=str(data.get("mac", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DeviceReadError(f"malformed device info: {e!r}") from e


@dataclass(frozen=True)
class EnergyUsage:
    today_runtime: int
    today_energy: int
    current_power: int

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "EnergyUsage":
        try:
            return cls(
                today_runtime=int(data["today_runtime"]),
                today_energy=int(data["today_energy"]),
                current_power=int(data["current_power"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DeviceReadError(f"malformed energy usage: {e!r}") from e


def decode_nickname(raw: str) -> str:
    # Tapo firmware reports nicknames base64 encoded.
    if not raw:
        return ""
    try:
        return base64.b64decode(raw, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return raw


def _unwrap(resp: Any) -> Dict[str, Any]:
    if not isinstance(resp, dict):
        raise DeviceReadError(f"unexpected response type {type(resp).__name__}")
    if "result" in resp and "error_code" in resp:
        code = resp.get("error_code")
        if code != 0:
            raise DeviceReadError(f"device returned error_code={code}")
        resp = resp["result"]
        if not isinstance(resp, dict):
            raise DeviceReadError("device returned an empty result")
    return resp


def _validate_address(address: str) -> str:
    addr = address.strip()
    if not addr:
        raise DeviceConnectError("empty device address")
    if "://" in addr or "/" in addr or " " in addr:
        raise DeviceConnectError(f"invalid device address {address!r}")
    try:
        ipaddress.ip_address(addr)
    except ValueError:
        # Host names are allowed, as long as they look like one.
        labels = addr.split(".")
        if not all(lbl and len(lbl) <= 63 and lbl.replace("-", "").isalnum() for lbl in labels):
            raise DeviceConnectError(f"invalid device address {address!r}")
    return addr


SessionFactory = Callable[[str, str, str], Any]


def _default_session_factory(address: str, username: str, password: str) -> Any:
    return PyP110.P110(address, username, password)


class TapoClient:
    """Thin synchronous wrapper over a PyP100 session.

    Every call runs on a one-worker pool and is abandoned once the timeout
    expires, so a hung device costs one timeout per cycle and at most one
    stuck thread.
    A failed call drops the session; the next call builds a fresh one.
    """

    def __init__(
        self,
        address: str,
        credentials: Credentials,
        timeout: float,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.address = address
        self.credentials = credentials
        self.timeout = float(timeout)
        self.session_factory = session_factory or _default_session_factory
        self.session: Optional[Any] = None
        self.needs_login = True
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tapo-{address}")

    def _build_session(self) -> Any:
        return self.session_factory(self.address, self.credentials.username, self.credentials.password)

    def _reset(self) -> None:
        self.session = None
        self.needs_login = True

    def _call(self, method: str) -> Dict[str, Any]:
        sess = self.session
        if sess is None:
            try:
                sess = self._build_session()
            except Exception as e:
                raise DeviceReadError(f"session setup failed: {e}") from e
            self.needs_login = True
        login = self.needs_login

        def run() -> Any:
            # Older PyP100 releases need an explicit handshake before use.
            if login and hasattr(sess, "handshake") and hasattr(sess, "login"):
                sess.handshake()
                sess.login()
            return getattr(sess, method)()

        try:
            fut = self.executor.submit(run)
        except RuntimeError as e:
            raise DeviceReadError(f"{method} not started: {e}") from e

        try:
            resp = fut.result(timeout=self.timeout)
        except FutureTimeoutError:
            # Single worker: at most one hung call per device, later calls
            # queue behind it and time out in turn.
            fut.cancel()
            self._reset()
            raise DeviceReadError(f"{method} timed out after {self.timeout:.1f}s") from None
        except DeviceReadError:
            self._reset()
            raise
        except Exception as e:
            self._reset()
            raise DeviceReadError(f"{method} failed: {e}") from e

        try:
            data = _unwrap(resp)
        except DeviceReadError:
            self._reset()
            raise

        self.session = sess
        self.needs_login = False
        return data

    def close(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)

    def get_device_info(self) -> DeviceInfo:
        return DeviceInfo.from_response(self._call("getDeviceInfo"))

    def get_energy_usage(self) -> EnergyUsage:
        return EnergyUsage.from_response(self._call("getEnergyUsage"))


def connect(
    address: str,
    credentials: Credentials,
    timeout: float,
    session_factory: Optional[SessionFactory] = None,
) -> TapoClient:
    addr = _validate_address(address)
    if timeout <= 0:
        raise DeviceConnectError(f"timeout must be positive, got {timeout}")

    client = TapoClient(addr, credentials, timeout, session_factory=session_factory)
    try:
        client.session = client._build_session()
    except Exception as e:
        raise DeviceConnectError(f"device {addr}: {e}") from e
    return client
