# device/hvps.py
# -*- coding: utf-8 -*-
"""
hvps.py — asyncio 기반 HVPS(고전압 전원) 컨트롤러

의존성:
    pip install pyserial-asyncio

개요:
  - 대괄호 프레이밍 ASCII 프로토콜 ('[XV123]' → '[X_V123]')
  - 고정 주기 TxScheduler: tick 당 1 프레임 (ERST > 보조 큐 > 전압 > 전류 > 폴링)
  - 수신은 콜백 기반: bytes → FrameExtractor → MessageDecoder → 이벤트/상태 갱신
  - LinkHealthMonitor: 인식된 수신이 threshold 동안 없으면 STALE
  - 요청하지 않은 끊김(송신 실패 포함)은 ERROR → 고정 지연 자동 재연결(최대 N회)
  - 공개 API: connect / disconnect / set_voltage / set_current / request_estop / queue_command
              set_tick_interval / set_estop_debounce / update_settings / get_diagnostics / events

Qt 의존성 없음. UI 는 events() 를 소비하면 됨.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Optional

from controller.context import HvpsContext, HvpsEvent
from controller.link_health import LinkHealthMonitor
from controller.session import (
    ConnectionState, EstopState, EstopStateMachine, SessionStateMachine, SetpointTracker,
)
from controller.tx_scheduler import TxScheduler
from lib.config_common import DEBUG_PRINT, HVPS_QUEUE_DEFAULT_PRIORITY
from lib.settings import HvpsSettings, SettingsRepository
from protocol import commands as cmds
from protocol.decoder import (
    CurrentAck, CurrentReading, DecodedMessage, Heartbeat, MessageDecoder, ResetAck,
    Temperature, Unrecognized, VoltageAck, VoltageReading,
)
from protocol.framing import FrameExtractor, wrap
from util.app_logging import track_task
from util.error_reporter import notify_all
from util.errors import FramingError, HvpsError, HvpsWarning, QueueOverflow, TransportError

from .transport import SerialTransport, Transport


class AsyncHVPS:
    def __init__(
        self,
        ctx: Optional[HvpsContext] = None,
        transport: Optional[Transport] = None,
        settings_repo: Optional[SettingsRepository] = None,
    ):
        if ctx is None:
            settings = settings_repo.load() if settings_repo is not None else HvpsSettings()
            ctx = HvpsContext(settings=settings.validate())
        self.ctx = ctx
        self._repo = settings_repo
        self._log = ctx.child_logger("device")
        self._rx_log = ctx.child_logger("rx")
        self.debug_print = DEBUG_PRINT or ctx.settings.debug_mode

        s = ctx.settings
        self._transport = transport or SerialTransport(s.port, s.baud_rate)
        self._transport.attach(self._on_bytes, self._on_transport_lost)

        # 수신 경로
        self._framer = FrameExtractor(max_buffer=s.rx_buffer_max, on_overflow=self._on_framing_overflow)
        self._decoder = MessageDecoder(ctx.clock)

        # 상태머신
        self._session = SessionStateMachine(ctx, on_change=self._on_connection_change)
        self._estop = EstopStateMachine(ctx, on_change=self._on_estop_change, on_warning=self._warn)
        self._setpoints = SetpointTracker(s.ack_epsilon)

        # 링크/송신
        self._link = LinkHealthMonitor(
            ctx, is_connected=lambda: self._session.link_up, on_change=self._session.stale_changed,
        )
        self._scheduler = TxScheduler(ctx, self._send_payload, on_send_error=self._on_send_error)

        # 태스크
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None

        # 최근 측정값 (연결 해제 시 초기화)
        self.temperature: Optional[int] = None
        self.voltage: Optional[float] = None
        self.current: Optional[float] = None

    # ---------- 조회 ----------
    @property
    def state(self) -> ConnectionState:
        return self._session.state

    @property
    def estop_state(self) -> EstopState:
        return self._estop.state

    @property
    def is_connected(self) -> bool:
        return self._session.link_up

    @property
    def is_stale(self) -> bool:
        return self._session.state is ConnectionState.STALE

    @property
    def scheduler(self) -> TxScheduler:
        return self._scheduler

    @property
    def link(self) -> LinkHealthMonitor:
        return self._link

    @property
    def setpoints(self) -> SetpointTracker:
        return self._setpoints

    @property
    def transport(self) -> Transport:
        return self._transport

    # ---------- 연결 ----------
    async def connect(self) -> bool:
        """사용자 연결. 성공 시 True. 실패하면 ERROR 로 남고 자동 재연결은 하지 않음."""
        if self._session.link_up:
            return True
        await self._cancel_task("_reconnect_task")
        self._session.begin_connect(user=True)
        self._status(f"Connecting to {self._transport.description}")
        return await self._open_link()

    async def disconnect(self) -> None:
        """사용자 종료. 자동 재연결 없음. 모든 경로에서 포트 해제."""
        self._session.user_disconnect = True
        await self._cancel_task("_reconnect_task")
        self._stop_runtime()
        try:
            await self._transport.close()
        finally:
            self._framer.reset()
            self.reset_readings()
            self._setpoints.reset()
            self._estop.clear()
            if self._session.state is not ConnectionState.DISCONNECTED:
                self._session.disconnected(user_initiated=True)
            self._status("Disconnected")

    async def cleanup(self) -> None:
        await self.disconnect()

    async def events(self) -> AsyncGenerator[HvpsEvent, None]:
        """상위에서 소비하는 이벤트 스트림."""
        async for ev in self.ctx.bus.stream():
            yield ev

    async def _open_link(self) -> bool:
        try:
            await self._transport.open()
        except TransportError as e:
            self._report(e, kind="status")
            self._session.transport_failed(e)
            return False

        self._framer.reset()
        self._link.reset()
        self._session.connected()
        self._link.start()
        self._scheduler.start()
        self._start_stats()
        self._status(f"Connected to {self._transport.description}")
        return True

    def _stop_runtime(self) -> None:
        self._scheduler.stop()
        self._link.stop()
        if self._stats_task is not None:
            self._stats_task.cancel()
            self._stats_task = None

    # ---------- 끊김/재연결 ----------
    def _on_transport_lost(self, exc: Optional[Exception]) -> None:
        self._link_failed(TransportError(f"Read error: connection lost ({exc})", code="E104"))

    def _on_send_error(self, exc: BaseException) -> None:
        if isinstance(exc, HvpsError):
            err = exc
        else:
            err = TransportError(f"Send failed: {exc}", code="E103")
        self._report(err, kind="warning")
        self._link_failed(err, reported=True)

    def _link_failed(self, err: HvpsError, *, reported: bool = False) -> None:
        if not self._session.link_up:
            return
        self._stop_runtime()
        self._framer.reset()
        self.reset_readings()
        self._setpoints.reset()
        if not reported:
            self._report(err, kind="status")
        self._session.transport_failed(err)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if not self._session.should_auto_reconnect():
            self._reconnect_exhausted()
            return
        loop = asyncio.get_running_loop()
        self._reconnect_task = track_task(
            loop.create_task(self._reconnect_loop(), name="HvpsReconnect"), self._log,
        )

    async def _reconnect_loop(self) -> None:
        delay_s = self._session.reconnect_delay_ms / 1000.0
        # 송신 실패 경로에서는 포트가 아직 열려 있을 수 있음
        if self._transport.is_open:
            await self._transport.close()

        while self._session.should_auto_reconnect():
            n = self._session.note_reconnect_attempt()
            self._status(
                f"Reconnecting in {self._session.reconnect_delay_ms} ms "
                f"(attempt {n}/{self._session.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay_s)
            if self._session.state is not ConnectionState.ERROR:
                return
            self._session.begin_connect(user=False)
            if await self._open_link():
                return

        if self._session.state is ConnectionState.ERROR and not self._session.user_disconnect:
            self._reconnect_exhausted()

    def _reconnect_exhausted(self) -> None:
        err = TransportError(
            f"Reconnection failed after {self._session.max_reconnect_attempts} attempts", code="E105",
        )
        self._report(err, kind="warning", level=logging.WARNING)

    # ---------- 제어 API ----------
    def set_voltage(self, volts: float) -> float:
        """전압 셋포인트 요청. 실제 전송될(0.1 단위) 값 반환. 범위 밖이면 ValidationError."""
        v = cmds.validate_voltage(volts, self.ctx.settings.max_voltage_kv)
        self._require_link()
        self._scheduler.set_voltage(v)
        self._setpoints.request_voltage(v)
        return cmds.quantize(v)

    def set_current(self, amps: float) -> float:
        a = cmds.validate_current(amps, self.ctx.settings.max_current_ma)
        self._require_link()
        self._scheduler.set_current(a)
        self._setpoints.request_current(a)
        return cmds.quantize(a)

    def request_estop(self) -> None:
        """ERST 요청. CONNECTING/ERROR 에서도 받아 두었다가 스케줄러 재가동 시 첫 tick 에 송신."""
        if not self._session.estop_allowed:
            raise TransportError("Not connected to device", code="E106")
        self._scheduler.request_estop()
        self._estop.trigger()

    def queue_command(self, command: str, priority: int = HVPS_QUEUE_DEFAULT_PRIORITY) -> Optional[QueueOverflow]:
        self._require_link()
        return self._scheduler.queue_command(command, priority)

    def set_tick_interval(self, ms: int) -> None:
        self._scheduler.set_tick_interval(ms)
        self.ctx.settings.tick_interval_ms = self._scheduler.tick_interval_ms

    def set_estop_debounce(self, ms: int) -> None:
        self._scheduler.set_estop_debounce(ms)
        self.ctx.settings.estop_debounce_ms = self._scheduler.estop_debounce_ms

    def update_settings(self, **changes: Any) -> HvpsSettings:
        """설정 변경 + 저장소 반영. port/baud/rx_buffer_max/queue_capacity 는 다음 생성 시 적용."""
        merged = {**self.ctx.settings.to_dict(), **changes}
        new = HvpsSettings.from_mapping(merged, strict=True).validate()
        if self._repo is not None:
            self._repo.save(new)
        self.ctx.settings = new
        self._apply_settings(new)
        return new

    def _apply_settings(self, s: HvpsSettings) -> None:
        if s.tick_interval_ms != self._scheduler.tick_interval_ms:
            self._scheduler.set_tick_interval(s.tick_interval_ms)
        if s.estop_debounce_ms != self._scheduler.estop_debounce_ms:
            self._scheduler.set_estop_debounce(s.estop_debounce_ms)
        self._link.threshold_ms = int(s.staleness_threshold_ms)
        self._link.interval_ms = int(s.watchdog_interval_ms)
        self._setpoints.epsilon = float(s.ack_epsilon)
        self._session.max_reconnect_attempts = max(0, int(s.reconnect_attempts))
        self._session.reconnect_delay_ms = max(0, int(s.reconnect_delay_ms))
        self._estop.ack_timeout_ms = int(s.estop_ack_timeout_ms)
        self._estop.grace_ms = int(s.estop_grace_ms)
        self.debug_print = DEBUG_PRINT or s.debug_mode

    def _require_link(self) -> None:
        if not self._session.link_up:
            raise TransportError("Not connected to device", code="E106")

    # ---------- 송신 ----------
    async def _send_payload(self, payload: str) -> None:
        frame = wrap(payload)
        self._transport.write(frame.encode("ascii"))
        self._link.mark_tx()
        self._dbg("TX", frame)

    # ---------- 수신 ----------
    def _on_bytes(self, data: bytes) -> None:
        for token in self._framer.feed(data):
            self._dispatch(self._decoder.decode(token))

    def _dispatch(self, msg: DecodedMessage) -> None:
        if isinstance(msg, Unrecognized):
            self._parse_error(FramingError(f"{msg.reason}: {msg.raw!r}", token=msg.raw))
            return

        self._dbg("RX", repr(msg))
        self._link.mark_rx()
        self._link.refresh()

        if isinstance(msg, Temperature):
            self.temperature = msg.celsius
            self.ctx.emit("temperature", value=float(msg.celsius))
        elif isinstance(msg, VoltageReading):
            self.voltage = msg.volts
            self.ctx.emit("voltage", value=msg.volts)
        elif isinstance(msg, CurrentReading):
            self.current = msg.amps
            self.ctx.emit("current", value=msg.amps)
        elif isinstance(msg, VoltageAck):
            self.ctx.emit("voltage_ack", value=msg.volts)
            warn = self._setpoints.on_voltage_ack(msg.volts)
            if warn is not None:
                self._warn(warn)
        elif isinstance(msg, CurrentAck):
            self.ctx.emit("current_ack", value=msg.amps)
            warn = self._setpoints.on_current_ack(msg.amps)
            if warn is not None:
                self._warn(warn)
        elif isinstance(msg, ResetAck):
            self.ctx.emit("reset_ack")
            self._estop.acknowledge()
        elif isinstance(msg, Heartbeat):
            self.ctx.emit("heartbeat")

    def _on_framing_overflow(self, err: FramingError) -> None:
        # 토큰 단위 통계(parse_errors)와 섞지 않음. buffer_overflows 로만 집계
        self._parse_error(err)

    def _parse_error(self, err: FramingError) -> None:
        def _emit(_src: str, code: str, text: str) -> None:
            self.ctx.emit("parse_error", message=text, token=err.token, code=code)

        notify_all(log=self._rx_log, emit=_emit, src="HVPS", code=err.code, message=err, level=logging.WARNING)

    # ---------- 상태 변경 → 이벤트 ----------
    def _on_connection_change(self, prev: ConnectionState, new: ConnectionState, reason: str) -> None:
        self.ctx.emit("connection", state=new.value, previous=prev.value, message=reason or None)

    def _on_estop_change(self, prev: EstopState, new: EstopState, message: str) -> None:
        self.ctx.emit("estop", state=new.value, previous=prev.value, message=message or None)

    def _warn(self, warning: HvpsWarning) -> None:
        self._report(warning, kind="warning", level=logging.WARNING)

    def _report(self, err: BaseException, *, kind: str = "warning", level: int = logging.ERROR) -> None:
        def _emit(_src: str, code: str, text: str) -> None:
            self.ctx.emit(kind, message=text, code=code)  # type: ignore[arg-type]

        notify_all(log=self._log, emit=_emit, src="HVPS", code=getattr(err, "code", None), message=err, level=level)

    def _status(self, msg: str) -> None:
        self._log.info(msg)
        self.ctx.emit("status", message=msg)

    # ---------- 측정값/진단 ----------
    def reset_readings(self) -> None:
        self.temperature = None
        self.voltage = None
        self.current = None

    def reset_stats(self) -> None:
        self._decoder.reset_stats()
        self._scheduler.reset_stats()
        self._framer.overflows = 0

    def get_diagnostics(self) -> dict:
        parser = self._decoder.stats().as_dict()
        parser["buffer_overflows"] = self._framer.overflows
        return {
            "connection": {
                "state": self._session.state.value,
                "transport": self._transport.description,
                "reconnect_attempts": self._session.reconnect_attempts,
                "last_error": self._session.last_error,
            },
            "estop": self._estop.snapshot(),
            "link": self._link.snapshot(),
            "readings": {
                "temperature_c": self.temperature,
                "voltage": self.voltage,
                "current": self.current,
            },
            "setpoints": {
                "voltage": self._setpoints.voltage_setpoint,
                "current": self._setpoints.current_setpoint,
                "pending_voltage_ack": self._setpoints.pending_voltage_ack,
                "pending_current_ack": self._setpoints.pending_current_ack,
            },
            "pending_operations": self._scheduler.pending_operations(),
            "scheduler": self._scheduler.get_status(),
            "parser": parser,
            "events_dropped": self.ctx.bus.dropped,
        }

    def _start_stats(self) -> None:
        if self._stats_task is not None and not self._stats_task.done():
            return
        if self.ctx.settings.stats_interval_ms <= 0:
            return
        loop = asyncio.get_running_loop()
        self._stats_task = track_task(loop.create_task(self._stats_loop(), name="HvpsStats"), self._log)

    async def _stats_loop(self) -> None:
        period = self.ctx.settings.stats_interval_ms / 1000.0
        while True:
            await asyncio.sleep(period)
            self.ctx.emit("stats", data=self.get_diagnostics())

    # ---------- 유틸 ----------
    async def _cancel_task(self, name: str) -> None:
        t: Optional[asyncio.Task] = getattr(self, name)
        if t is None:
            return
        setattr(self, name, None)
        if t.done() or t is asyncio.current_task():
            return
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass

    def _dbg(self, src: str, msg: str) -> None:
        self._log.debug("[%s] %s", src, msg)
        if self.debug_print:
            print(f"[HVPS][{src}] {msg}")
