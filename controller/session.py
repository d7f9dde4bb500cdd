# controller/session.py
# -*- coding: utf-8 -*-
"""
session.py — 연결/E-STOP 상태머신 + 셋포인트 ACK 추적

연결:
  DISCONNECTED → CONNECTING → CONNECTED ⇄ STALE
  CONNECTING/CONNECTED/STALE → ERROR        (transport 실패)
  CONNECTED/STALE/ERROR/CONNECTING → DISCONNECTED (명시적/치명적 종료)
  ERROR → CONNECTING                         (자동 재연결 시도)
  - 상태 변경은 transport 이벤트와 링크헬스만 호출한다.
  - 사용자 종료가 아닌 끊김만 자동 재연결(최대 N회, 고정 지연)

E-STOP:
  IDLE → REQUESTED(트리거) → ACKNOWLEDGED(E_RST) → IDLE(유예 후)
  - 다음 트리거는 어느 상태에서든 즉시 REQUESTED 재진입(타이머 전부 취소)
  - REQUESTED 에서 ACK 타임아웃 → 경고만(폴링/조작 계속)
"""
from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

from protocol.commands import quantize
from util.errors import AckMismatchWarning, EstopTimeoutWarning, InvalidTransition
from util.timed_action import CancellableTimer

from .context import HvpsContext


# ================== 연결 상태 ==================
class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STALE = "stale"
    ERROR = "error"


_CS = ConnectionState
_ALLOWED: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    _CS.DISCONNECTED: frozenset({_CS.CONNECTING}),
    _CS.CONNECTING:   frozenset({_CS.CONNECTED, _CS.ERROR, _CS.DISCONNECTED}),
    _CS.CONNECTED:    frozenset({_CS.STALE, _CS.ERROR, _CS.DISCONNECTED}),
    _CS.STALE:        frozenset({_CS.CONNECTED, _CS.ERROR, _CS.DISCONNECTED}),
    _CS.ERROR:        frozenset({_CS.CONNECTING, _CS.DISCONNECTED}),
}

StateListener = Callable[[ConnectionState, ConnectionState, str], None]


class SessionStateMachine:
    def __init__(self, ctx: HvpsContext, on_change: Optional[StateListener] = None):
        self._ctx = ctx
        self._on_change = on_change
        self._log = ctx.child_logger("session")
        self._state = ConnectionState.DISCONNECTED

        self.max_reconnect_attempts = max(0, int(ctx.settings.reconnect_attempts))
        self.reconnect_delay_ms = max(0, int(ctx.settings.reconnect_delay_ms))
        self.reconnect_attempts = 0
        self.user_disconnect = False
        self.last_error: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def link_up(self) -> bool:
        """transport 가 열려 있는 상태(STALE 포함)."""
        return self._state in (ConnectionState.CONNECTED, ConnectionState.STALE)

    @property
    def estop_allowed(self) -> bool:
        return self._state is not ConnectionState.DISCONNECTED

    def can_transition(self, new: ConnectionState) -> bool:
        return new == self._state or new in _ALLOWED[self._state]

    def transition(self, new: ConnectionState, reason: str = "") -> bool:
        """허용되지 않은 전이는 InvalidTransition. 동일 상태는 no-op(False)."""
        if new == self._state:
            return False
        if new not in _ALLOWED[self._state]:
            raise InvalidTransition(f"Invalid state transition: {self._state.value} -> {new.value}")
        prev, self._state = self._state, new
        self._log.info("connection %s -> %s%s", prev.value, new.value, f" ({reason})" if reason else "")
        if self._on_change is not None:
            self._on_change(prev, new, reason)
        return True

    # ---------- transport 이벤트 ----------
    def begin_connect(self, *, user: bool = True) -> None:
        if user:
            self.user_disconnect = False
            self.reconnect_attempts = 0
        self.transition(ConnectionState.CONNECTING, "user connect" if user else "auto reconnect")

    def connected(self) -> None:
        self.reconnect_attempts = 0
        self.last_error = None
        self.transition(ConnectionState.CONNECTED, "transport open")

    def transport_failed(self, err: BaseException | str) -> None:
        self.last_error = str(err)
        if self._state is ConnectionState.DISCONNECTED:
            return
        self.transition(ConnectionState.ERROR, self.last_error)

    def disconnected(self, *, user_initiated: bool, reason: str = "") -> None:
        if user_initiated:
            self.user_disconnect = True
        self.transition(ConnectionState.DISCONNECTED, reason or ("user" if user_initiated else "lost"))

    # ---------- 링크헬스 이벤트 ----------
    def stale_changed(self, stale: bool) -> None:
        if stale and self._state is ConnectionState.CONNECTED:
            self.transition(ConnectionState.STALE, "no recent rx")
        elif not stale and self._state is ConnectionState.STALE:
            self.transition(ConnectionState.CONNECTED, "rx restored")

    # ---------- 자동 재연결 정책 ----------
    def should_auto_reconnect(self) -> bool:
        return (not self.user_disconnect) and self.reconnect_attempts < self.max_reconnect_attempts

    def note_reconnect_attempt(self) -> int:
        self.reconnect_attempts += 1
        return self.reconnect_attempts


# ================== E-STOP 상태 ==================
class EstopState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    ACKNOWLEDGED = "acknowledged"


EstopListener = Callable[[EstopState, EstopState, str], None]

MSG_ESTOP_REQUESTED = "E-STOP sent, waiting for acknowledgment..."
MSG_ESTOP_ACKED = "Emergency stop acknowledged"
MSG_ESTOP_NO_ACK = "E-STOP not acknowledged yet - check device"


class EstopStateMachine:
    def __init__(
        self,
        ctx: HvpsContext,
        *,
        on_change: Optional[EstopListener] = None,
        on_warning: Optional[Callable[[EstopTimeoutWarning], None]] = None,
    ):
        self._ctx = ctx
        self._on_change = on_change
        self._on_warning = on_warning
        self._log = ctx.child_logger("estop")

        self.ack_timeout_ms = int(ctx.settings.estop_ack_timeout_ms)
        self.grace_ms = int(ctx.settings.estop_grace_ms)

        self._state = EstopState.IDLE
        self.message = ""
        self.requested_at: Optional[float] = None
        self.timeouts = 0

        self._ack_timer = CancellableTimer(self._on_ack_timeout, name="estop-ack-timeout")
        self._grace_timer = CancellableTimer(self._on_grace_elapsed, name="estop-grace")

    @property
    def state(self) -> EstopState:
        return self._state

    def _set(self, new: EstopState, message: str) -> None:
        prev, self._state = self._state, new
        self.message = message
        if self._on_change is not None:
            self._on_change(prev, new, message)

    def _cancel_timers(self) -> None:
        self._ack_timer.cancel()
        self._grace_timer.cancel()

    def trigger(self) -> None:
        self._cancel_timers()
        self.requested_at = self._ctx.clock()
        self._set(EstopState.REQUESTED, MSG_ESTOP_REQUESTED)
        self._ack_timer.start(self.ack_timeout_ms)

    def acknowledge(self) -> bool:
        """E_RST 수신. REQUESTED 가 아닐 때의 E_RST 는 상태 변경 없음."""
        if self._state is not EstopState.REQUESTED:
            self._log.info("E_RST received while %s - ignored", self._state.value)
            return False
        self._cancel_timers()
        self._set(EstopState.ACKNOWLEDGED, MSG_ESTOP_ACKED)
        self._grace_timer.start(self.grace_ms)
        return True

    def clear(self) -> None:
        self._cancel_timers()
        if self._state is not EstopState.IDLE:
            self._set(EstopState.IDLE, "")
        self.requested_at = None

    def _on_ack_timeout(self) -> None:
        if self._state is not EstopState.REQUESTED:
            return
        self.timeouts += 1
        warn = EstopTimeoutWarning(self.ack_timeout_ms)
        self._log.warning(warn.message)
        self.message = MSG_ESTOP_NO_ACK
        if self._on_warning is not None:
            self._on_warning(warn)

    def _on_grace_elapsed(self) -> None:
        if self._state is EstopState.ACKNOWLEDGED:
            self._set(EstopState.IDLE, "")
            self.requested_at = None

    def snapshot(self) -> dict:
        return {
            "state": self._state.value,
            "message": self.message,
            "requested_at": self.requested_at,
            "timeouts": self.timeouts,
        }


# ================== 셋포인트 ACK 추적 ==================
class SetpointTracker:
    """
    마지막 요청값(실제로 전송될 0.1 단위 값)과 ACK 대기 플래그.
    ACK 수신 시 플래그는 무조건 해제, 차이가 epsilon 초과면 경고 반환(재시도 없음).
    """

    def __init__(self, epsilon: float = 0.01):
        self.epsilon = float(epsilon)
        self.voltage_setpoint: Optional[float] = None
        self.current_setpoint: Optional[float] = None
        self.pending_voltage_ack = False
        self.pending_current_ack = False

    def request_voltage(self, volts: float) -> None:
        self.voltage_setpoint = quantize(volts)
        self.pending_voltage_ack = True

    def request_current(self, amps: float) -> None:
        self.current_setpoint = quantize(amps)
        self.pending_current_ack = True

    def on_voltage_ack(self, volts: float) -> Optional[AckMismatchWarning]:
        self.pending_voltage_ack = False
        return self._check("voltage", self.voltage_setpoint, volts)

    def on_current_ack(self, amps: float) -> Optional[AckMismatchWarning]:
        self.pending_current_ack = False
        return self._check("current", self.current_setpoint, amps)

    def _check(self, kind: str, requested: Optional[float], acked: float) -> Optional[AckMismatchWarning]:
        if requested is None:
            return None
        if abs(acked - requested) > self.epsilon + 1e-9:
            return AckMismatchWarning(kind, requested, acked)
        return None

    def reset(self) -> None:
        """세션 종료 시 호출. 이전 세션 요청값과 비교하지 않도록 셋포인트도 비움."""
        self.voltage_setpoint = None
        self.current_setpoint = None
        self.pending_voltage_ack = False
        self.pending_current_ack = False
