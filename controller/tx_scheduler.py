# controller/tx_scheduler.py
# -*- coding: utf-8 -*-
"""
tx_scheduler.py — 고정 주기 TX 스케줄러

개요:
  - 매 tick 마다 정확히 1개 프레임 송신(우선순위 사다리)
      1) E-STOP(ERST)  : 디바운스 간격 경과 시에만
      2) 보조 큐        : 우선순위 오름차순, 동순위 FIFO, 용량 초과 시 가장 오래된 항목 폐기
      3) 전압 셋포인트   : 최신 값만(coalescing)
      4) 전류 셋포인트   : 최신 값만(coalescing)
      5) 폴링           : XTMP → XV → XA 순환 (폴 분기가 실제로 나간 tick 에서만 phase 진행)
  - 송신은 fire-and-forget 태스크. 이전 tick 의 송신이 안 끝났으면 이번 tick 은 건너뜀(중첩 금지)
  - stop() 은 큐/셋포인트/E-STOP 플래그 전부 비움(재연결 후 묵은 명령 송신 방지)
"""
from __future__ import annotations

import asyncio
import bisect
import itertools
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from lib.config_common import HVPS_TICK_INTERVAL_MIN_MS, HVPS_QUEUE_DEFAULT_PRIORITY
from protocol import commands as cmds
from util.app_logging import track_task
from util.errors import QueueOverflow

from .context import HvpsContext

SendFn = Callable[[str], Awaitable[None]]


# ================== 보조 큐 항목 ==================
@dataclass(order=True)
class QueuedCommand:
    priority: int
    seq: int
    command: str = field(compare=False)
    queued_at: float = field(compare=False, default=0.0)


@dataclass
class SchedulerStats:
    total_ticks: int = 0
    commands_sent: int = 0
    estops_sent: int = 0
    setpoints_sent: int = 0
    polls_sent: int = 0
    queued_sent: int = 0
    queue_overruns: int = 0
    skipped_ticks: int = 0
    send_failures: int = 0


class TxScheduler:
    def __init__(
        self,
        ctx: HvpsContext,
        send: SendFn,
        *,
        on_send_error: Optional[Callable[[BaseException], None]] = None,
    ):
        self._ctx = ctx
        self._send = send
        self._on_send_error = on_send_error
        self._log = ctx.child_logger("scheduler")

        s = ctx.settings
        self._tick_ms = self._check_interval(s.tick_interval_ms)
        self._debounce_ms = max(0, int(s.estop_debounce_ms))
        self._capacity = max(1, int(s.queue_capacity))

        # 태스크
        self._tick_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._running = False

        # 보조 큐 (항상 정렬 유지)
        self._queue: List[QueuedCommand] = []
        self._seq = itertools.count()

        # 대기 상태
        self._estop_requested = False
        self._last_estop_sent: Optional[float] = None   # clock() 초
        self._pending_voltage: Optional[float] = None
        self._pending_current: Optional[float] = None
        self._poll_phase = 0

        self.stats = SchedulerStats()

    # ---------- 상태 조회 ----------
    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tick_interval_ms(self) -> int:
        return self._tick_ms

    @property
    def estop_debounce_ms(self) -> int:
        return self._debounce_ms

    @property
    def poll_phase(self) -> int:
        return self._poll_phase

    @property
    def pending_voltage(self) -> Optional[float]:
        return self._pending_voltage

    @property
    def pending_current(self) -> Optional[float]:
        return self._pending_current

    @property
    def estop_pending(self) -> bool:
        return self._estop_requested

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def send_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # ---------- 수명주기 ----------
    def start(self) -> None:
        """재호출 안전. 실행 중인 이벤트 루프 필요."""
        if self._running:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._tick_task = track_task(loop.create_task(self._tick_loop(), name="HvpsTxTick"), self._log)
        self._log.info("TxScheduler started (%d ms)", self._tick_ms)

    def stop(self) -> None:
        """재호출 안전. 대기 중인 모든 명령 폐기."""
        was_running = self._running
        self._running = False
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None
        self.clear_pending()
        if was_running:
            self._log.info("TxScheduler stopped")

    async def wait_idle(self) -> None:
        """진행 중인 송신 태스크가 끝날 때까지 대기(예외는 콜백에서 처리됨)."""
        t = self._inflight
        if t is not None and not t.done():
            await asyncio.wait({t})

    # ---------- 공개 요청 API ----------
    def request_estop(self) -> None:
        self._estop_requested = True
        self._log.warning("E-STOP requested")

    def set_voltage(self, volts: float) -> None:
        v = cmds.validate_voltage(volts, self._ctx.settings.max_voltage_kv)
        if self._pending_voltage is not None:
            self._log.debug("voltage setpoint coalesced: %.2f -> %.2f", self._pending_voltage, v)
        self._pending_voltage = v

    def set_current(self, amps: float) -> None:
        a = cmds.validate_current(amps, self._ctx.settings.max_current_ma)
        if self._pending_current is not None:
            self._log.debug("current setpoint coalesced: %.2f -> %.2f", self._pending_current, a)
        self._pending_current = a

    def queue_command(self, command: str, priority: int = HVPS_QUEUE_DEFAULT_PRIORITY) -> Optional[QueueOverflow]:
        """보조 명령 적재. 용량 초과 시 가장 오래 대기한 항목을 버리고 QueueOverflow 반환."""
        command = (command or "").strip()
        if not command:
            raise ValueError("empty command")

        overflow: Optional[QueueOverflow] = None
        if len(self._queue) >= self._capacity:
            oldest = min(self._queue, key=lambda q: q.seq)
            self._queue.remove(oldest)
            self.stats.queue_overruns += 1
            overflow = QueueOverflow(oldest.command, self._capacity)
            self._log.warning(overflow.message)
            self._ctx.emit("warning", message=overflow.message, code=overflow.code)

        item = QueuedCommand(int(priority), next(self._seq), command, self._ctx.clock())
        bisect.insort(self._queue, item)
        self._log.debug("queued %s (priority %d)", command, item.priority)
        return overflow

    def clear_pending(self) -> None:
        self._queue.clear()
        self._pending_voltage = None
        self._pending_current = None
        self._estop_requested = False

    # ---------- 설정 ----------
    @staticmethod
    def _check_interval(ms: int) -> int:
        ms = int(ms)
        if ms < HVPS_TICK_INTERVAL_MIN_MS:
            raise ValueError(f"Tick interval cannot be less than {HVPS_TICK_INTERVAL_MIN_MS}ms")
        return ms

    def set_tick_interval(self, ms: int) -> None:
        """실행 중이면 타이머만 재가동(대기 명령은 유지)."""
        self._tick_ms = self._check_interval(ms)
        if self._running and self._tick_task is not None:
            self._tick_task.cancel()
            loop = asyncio.get_running_loop()
            self._tick_task = track_task(loop.create_task(self._tick_loop(), name="HvpsTxTick"), self._log)
        self._log.info("tick interval set to %d ms", self._tick_ms)

    def set_estop_debounce(self, ms: int) -> None:
        self._debounce_ms = max(0, int(ms))
        self._log.info("E-STOP debounce set to %d ms", self._debounce_ms)

    # ---------- 선택 로직 ----------
    def next_command(self, now: Optional[float] = None) -> str:
        """이번 tick 에 보낼 페이로드 1개를 고르고 해당 대기 상태를 소모한다."""
        now = self._ctx.clock() if now is None else now

        # 1) E-STOP (디바운스)
        if self._estop_requested:
            if self._last_estop_sent is None or (now - self._last_estop_sent) * 1000.0 >= self._debounce_ms:
                self._estop_requested = False
                self._last_estop_sent = now
                self.stats.estops_sent += 1
                return cmds.format_reset_command()

        # 2) 보조 큐
        if self._queue:
            item = self._queue.pop(0)
            self.stats.queued_sent += 1
            return item.command

        # 3) 전압 셋포인트
        if self._pending_voltage is not None:
            v, self._pending_voltage = self._pending_voltage, None
            self.stats.setpoints_sent += 1
            return cmds.format_voltage_command(v)

        # 4) 전류 셋포인트
        if self._pending_current is not None:
            a, self._pending_current = self._pending_current, None
            self.stats.setpoints_sent += 1
            return cmds.format_current_command(a)

        # 5) 폴링
        cmd = cmds.format_poll_command(self._poll_phase)
        self._poll_phase = (self._poll_phase + 1) % len(cmds.POLL_CYCLE)
        self.stats.polls_sent += 1
        return cmd

    def tick(self) -> Optional[str]:
        """1 tick 실행. 송신한 페이로드(또는 건너뛴 경우 None) 반환."""
        if not self._running:
            return None

        self.stats.total_ticks += 1

        # 이전 송신이 아직 진행 중 → 이번 tick 송신 금지(중복/순서 뒤바뀜 방지)
        if self.send_in_flight:
            self.stats.skipped_ticks += 1
            self._log.debug("tick skipped: previous send still in flight")
            return None

        cmd = self.next_command()
        self.stats.commands_sent += 1
        loop = asyncio.get_running_loop()
        self._inflight = loop.create_task(self._send(cmd), name=f"HvpsTx[{cmd}]")
        self._inflight.add_done_callback(self._on_send_done)
        return cmd

    def _on_send_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.stats.send_failures += 1
        self._log.error("send failed: %s", exc)
        if self._on_send_error is not None:
            self._on_send_error(exc)

    async def _tick_loop(self) -> None:
        loop = asyncio.get_running_loop()
        period = self._tick_ms / 1000.0
        next_at = loop.time()
        while self._running:
            self.tick()
            # 드리프트 없는 고정 주기. 밀렸으면 따라잡지 않고 다음 슬롯으로
            next_at += period
            delay = next_at - loop.time()
            if delay < 0:
                next_at = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    # ---------- 진단 ----------
    def pending_operations(self) -> list[dict]:
        pending: list[dict] = []
        if self._estop_requested:
            pending.append({"type": "estop", "priority": 1})
        for item in self._queue:
            pending.append({"type": "custom", "command": item.command, "priority": item.priority})
        if self._pending_voltage is not None:
            pending.append({"type": "voltage", "value": self._pending_voltage, "priority": 3})
        if self._pending_current is not None:
            pending.append({"type": "current", "value": self._pending_current, "priority": 4})
        pending.append({"type": "poll", "command": cmds.format_poll_command(self._poll_phase), "priority": 5})
        return pending

    def get_status(self) -> dict:
        return {
            "is_running": self._running,
            "tick_interval_ms": self._tick_ms,
            "estop_debounce_ms": self._debounce_ms,
            "queue_length": len(self._queue),
            "pending_voltage": self._pending_voltage,
            "pending_current": self._pending_current,
            "estop_pending": self._estop_requested,
            "poll_phase": self._poll_phase,
            "send_in_flight": self.send_in_flight,
            "stats": dict(vars(self.stats)),
        }

    def reset_stats(self) -> None:
        self.stats = SchedulerStats()
