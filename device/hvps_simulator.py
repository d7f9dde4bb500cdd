# device/hvps_simulator.py
# -*- coding: utf-8 -*-
"""
hvps_simulator.py — 프로세스 내 HVPS 장비 모델 + SimulatedTransport

장비 모델(HvpsSimulator):
  [XTMP]  → [S_Tnnn]  온도
  [XV]    → [S_Vnnn]  전압(0.1V 단위 정수)
  [XA]    → [S_Annn]  전류
  [XVnnn] → [X_Vnnn]  전압 설정, 전류 = min(floor(V*0.5), 전류제한)
  [XAnnn] → [X_Annn]  전류 제한 설정, 전류가 제한 초과 시 제한값으로
  [ERST]  → [E_RST]   전압/전류 0
  그 외   → 응답 없음

SimulatedTransport: Transport 구현. 테스트/`main.py --simulate` 에서 실제 포트 대신 사용.
  - 응답 지연, 주기적 LIVE, 응답 음소거(mute), 요청하지 않은 끊김(drop), open 실패 주입
"""
from __future__ import annotations

import asyncio
from typing import List, Optional

from protocol.framing import FrameExtractor, wrap
from util.app_logging import get_app_logger
from util.errors import TransportError

from .transport import Transport


class HvpsSimulator:
    def __init__(self, *, temperature: int = 25, voltage: int = 0, current: int = 0, current_limit: int = 100):
        # 값은 전부 프로토콜 원시 정수(0.1 단위)
        self.temperature = int(temperature)
        self.voltage = int(voltage)
        self.current = int(current)
        self.current_limit = int(current_limit)
        self.received: List[str] = []

    @staticmethod
    def _fmt(n: int) -> str:
        return f"{max(0, min(999, int(n))):03d}"

    def process_command(self, cmd: str) -> Optional[str]:
        cmd = (cmd or "").strip()
        self.received.append(cmd)

        if cmd == "XTMP":
            return f"S_T{self._fmt(self.temperature)}"
        if cmd == "XV":
            return f"S_V{self._fmt(self.voltage)}"
        if cmd == "XA":
            return f"S_A{self._fmt(self.current)}"
        if cmd == "ERST":
            self.voltage = 0
            self.current = 0
            return "E_RST"

        if len(cmd) == 5 and cmd[2:].isdigit() and cmd[2:].isascii():
            n = int(cmd[2:])
            if cmd.startswith("XV"):
                self.voltage = n
                self.current = min(int(self.voltage * 0.5), self.current_limit)
                return f"X_V{self._fmt(self.voltage)}"
            if cmd.startswith("XA"):
                self.current_limit = n
                self.current = min(self.current, self.current_limit)
                return f"X_A{self._fmt(self.current_limit)}"

        return None

    def state(self) -> dict:
        return {
            "temperature_c": self.temperature,
            "voltage": self.voltage / 10.0,
            "current": self.current / 10.0,
            "current_limit": self.current_limit / 10.0,
        }


class SimulatedTransport(Transport):
    def __init__(
        self,
        simulator: Optional[HvpsSimulator] = None,
        *,
        response_delay_ms: float = 5.0,
        heartbeat_interval_ms: Optional[float] = None,
        fail_open: int = 0,
    ):
        super().__init__()
        self.sim = simulator or HvpsSimulator()
        self.response_delay_ms = float(response_delay_ms)
        self.heartbeat_interval_ms = heartbeat_interval_ms
        self.fail_open = int(fail_open)     # 남은 open 실패 횟수
        self.muted = False
        self.open_count = 0
        self.written: List[bytes] = []
        self._framer = FrameExtractor()
        self._open = False
        self._hb_task: Optional[asyncio.Task] = None
        self._log = get_app_logger("sim")

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def description(self) -> str:
        return "simulator"

    @property
    def commands(self) -> List[str]:
        """장비가 받은 명령(괄호 제거) 목록."""
        return list(self.sim.received)

    async def open(self) -> None:
        if self.fail_open > 0:
            self.fail_open -= 1
            self._log.info("simulated open failure (%d left)", self.fail_open)
            raise TransportError("Connection failed: simulated open failure", code="E102")
        self._open = True
        self.open_count += 1
        self._framer.reset()
        if self.heartbeat_interval_ms:
            self._hb_task = asyncio.get_running_loop().create_task(self._heartbeat_loop(), name="SimHeartbeat")

    async def close(self) -> None:
        self._shutdown()

    def _shutdown(self) -> None:
        self._open = False
        if self._hb_task is not None:
            self._hb_task.cancel()
            self._hb_task = None

    def drop(self, exc: Optional[Exception] = None) -> None:
        """장비 쪽에서 끊김(USB 분리 등) 흉내."""
        if not self._open:
            return
        self._log.info("simulated disconnect")
        self._shutdown()
        self._report_lost(exc or ConnectionResetError("simulated disconnect"))

    def inject(self, raw: bytes | str) -> None:
        """장비가 임의 바이트를 보낸 것처럼 전달(즉시)."""
        data = raw.encode("ascii") if isinstance(raw, str) else raw
        self._deliver(data)

    def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("Not connected to device", code="E106")
        self.written.append(bytes(data))
        for token in self._framer.feed(data):
            reply = self.sim.process_command(token)
            if reply is None or self.muted:
                continue
            self._schedule_reply(wrap(reply).encode("ascii"))

    def _schedule_reply(self, payload: bytes) -> None:
        loop = asyncio.get_running_loop()

        def _send():
            if self._open:
                self._deliver(payload)

        if self.response_delay_ms > 0:
            loop.call_later(self.response_delay_ms / 1000.0, _send)
        else:
            loop.call_soon(_send)

    async def _heartbeat_loop(self) -> None:
        while self._open:
            await asyncio.sleep(float(self.heartbeat_interval_ms) / 1000.0)
            if self._open and not self.muted:
                self._deliver(wrap("LIVE").encode("ascii"))
