# device/transport.py
# -*- coding: utf-8 -*-
"""
transport.py — HVPS 바이트 스트림 transport

의존성:
    pip install pyserial-asyncio

개요:
  - Transport: 코어가 요구하는 최소 인터페이스
      open() / close() / write(bytes) / attach(on_data, on_lost) / is_open
      · write 는 논블로킹(fire-and-forget). 실패는 TransportError
      · on_lost 는 '요청하지 않은' 끊김에서만 호출(사용자 close() 에서는 호출 안 함)
  - SerialTransport: serial_asyncio + asyncio.Protocol. 프레이밍은 상위(코어)가 담당하므로
    여기서는 수신 바이트를 그대로 넘긴다.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Optional

try:
    import serial
    import serial_asyncio
except Exception as e:
    raise RuntimeError("pyserial-asyncio가 필요합니다. `pip install pyserial-asyncio`") from e

from lib.config_common import (
    HVPS_BYTESIZE, HVPS_PARITY, HVPS_STOPBITS, HVPS_OPEN_TIMEOUT_S, HVPS_CLOSE_TIMEOUT_S,
)
from util.app_logging import get_app_logger
from util.errors import TransportError

DataFn = Callable[[bytes], None]
LostFn = Callable[[Optional[Exception]], None]


class Transport(ABC):
    def __init__(self) -> None:
        self._on_data: Optional[DataFn] = None
        self._on_lost: Optional[LostFn] = None

    def attach(self, on_data: DataFn, on_lost: LostFn) -> None:
        self._on_data = on_data
        self._on_lost = on_lost

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def write(self, data: bytes) -> None: ...

    @property
    def description(self) -> str:
        return type(self).__name__

    # 하위 클래스 공용
    def _deliver(self, data: bytes) -> None:
        if data and self._on_data is not None:
            self._on_data(data)

    def _report_lost(self, exc: Optional[Exception]) -> None:
        if self._on_lost is not None:
            self._on_lost(exc)


# ================== Protocol (바이트 전달만) ==================
class _HvpsSerialProtocol(asyncio.Protocol):
    def __init__(self, owner: "SerialTransport"):
        self.owner = owner
        self.transport: Optional[asyncio.Transport] = None

    def connection_made(self, transport: asyncio.BaseTransport):
        self.transport = transport  # type: ignore
        self.owner._on_connection_made(self.transport)

    def data_received(self, data: bytes):
        self.owner._deliver(data)

    def connection_lost(self, exc: Optional[Exception]):
        self.owner._on_connection_lost(exc)


class SerialTransport(Transport):
    def __init__(self, port: str, baudrate: int = 9600, *, open_timeout_s: float = HVPS_OPEN_TIMEOUT_S):
        super().__init__()
        self.port = port
        self.baudrate = int(baudrate)
        self.open_timeout_s = float(open_timeout_s)
        self._transport: Optional[asyncio.Transport] = None
        self._protocol: Optional[_HvpsSerialProtocol] = None
        self._closing = False
        self._closed_evt: Optional[asyncio.Event] = None
        self._log = get_app_logger("serial")

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    @property
    def description(self) -> str:
        return f"{self.port}@{self.baudrate}"

    async def open(self) -> None:
        if self.is_open:
            return
        self._closing = False
        self._closed_evt = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await asyncio.wait_for(
                serial_asyncio.create_serial_connection(
                    loop, lambda: _HvpsSerialProtocol(self), self.port,
                    baudrate=self.baudrate, bytesize=HVPS_BYTESIZE,
                    parity=HVPS_PARITY, stopbits=HVPS_STOPBITS,
                ),
                timeout=self.open_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connection failed: {self.port} open timeout", code="E102") from e
        except (serial.SerialException, OSError, ValueError) as e:
            raise TransportError(f"Connection failed: {self.port}: {e}", code="E102") from e
        self._transport = transport
        self._protocol = protocol  # type: ignore
        self._log.info("%s opened", self.description)

    def _on_connection_made(self, transport: asyncio.Transport):
        # pyserial-asyncio의 SerialTransport 는 .serial 을 노출함
        ser = getattr(transport, "serial", None)
        if ser is None:
            return
        try:
            ser.reset_input_buffer()
            ser.reset_output_buffer()
        except Exception as e:
            self._log.debug("buffer reset skipped: %s", e)

    def _on_connection_lost(self, exc: Optional[Exception]):
        unsolicited = not self._closing
        self._transport = None
        self._protocol = None
        if self._closed_evt is not None:
            self._closed_evt.set()
        if unsolicited:
            self._log.warning("%s connection lost: %s", self.description, exc)
            self._report_lost(exc)

    async def close(self) -> None:
        """사용자 종료. on_lost 는 호출되지 않음. 모든 경로에서 핸들 해제."""
        t = self._transport
        if t is None:
            return
        self._closing = True
        try:
            t.close()
            if self._closed_evt is not None:
                try:
                    await asyncio.wait_for(self._closed_evt.wait(), timeout=HVPS_CLOSE_TIMEOUT_S)
                except asyncio.TimeoutError:
                    self._log.warning("%s close timed out; aborting", self.description)
                    t.abort()
        finally:
            self._transport = None
            self._protocol = None
            self._log.info("%s closed", self.description)

    def write(self, data: bytes) -> None:
        t = self._transport
        if t is None or t.is_closing():
            raise TransportError("Not connected to device", code="E106")
        try:
            t.write(data)
        except Exception as e:
            raise TransportError(f"Send failed: {e}", code="E103") from e
