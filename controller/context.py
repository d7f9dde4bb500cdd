# controller/context.py
# -*- coding: utf-8 -*-
"""
공유 컨텍스트 + 이벤트 버스
- 설정/시계/로거/이벤트 버스를 한 곳에 모아 한 번만 생성하고
  스케줄러/디코더/링크헬스/상태머신에 참조로 넘긴다(전역 싱글톤 없음).
- 이벤트는 고정된 kind 집합(HvpsEvent)만 사용.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Dict, Literal, Optional

from lib.settings import HvpsSettings
from lib.config_common import HVPS_EVENT_QUEUE_MAX
from util.app_logging import get_app_logger

Clock = Callable[[], float]

# ================== 이벤트 모델 ==================
EventKind = Literal[
    "temperature", "voltage", "current",
    "voltage_ack", "current_ack", "reset_ack", "heartbeat",
    "parse_error", "connection", "estop", "warning", "status", "stats",
]


@dataclass
class HvpsEvent:
    kind: EventKind
    value: Optional[float] = None          # readings / acks
    message: Optional[str] = None          # status / warning / parse_error / estop
    token: Optional[str] = None            # parse_error
    code: Optional[str] = None             # warning / parse_error (catalog code)
    state: Optional[str] = None            # connection / estop
    previous: Optional[str] = None         # connection / estop
    data: Optional[Dict[str, Any]] = None  # stats
    at: float = field(default_factory=time.monotonic)


class EventBus:
    """
    asyncio.Queue 기반 단일 소비자 버스.
    - publish() 는 동기/논블로킹. 가득 차면 가장 오래된 이벤트 폐기
    - 선택적으로 동기 리스너(subscribe) 호출 (테스트/브리지용)
    """

    def __init__(self, maxsize: int = HVPS_EVENT_QUEUE_MAX) -> None:
        self._q: asyncio.Queue[HvpsEvent] = asyncio.Queue(maxsize=maxsize)
        self._listeners: list[Callable[[HvpsEvent], None]] = []
        self.dropped = 0
        self._log = get_app_logger("events")

    def subscribe(self, fn: Callable[[HvpsEvent], None]) -> None:
        self._listeners.append(fn)

    def unsubscribe(self, fn: Callable[[HvpsEvent], None]) -> None:
        if fn in self._listeners:
            self._listeners.remove(fn)

    def publish(self, ev: HvpsEvent) -> None:
        for fn in list(self._listeners):
            try:
                fn(ev)
            except Exception:
                self._log.exception("event listener failed (kind=%s)", ev.kind)
        try:
            self._q.put_nowait(ev)
        except asyncio.QueueFull:
            self.dropped += 1
            self._q.get_nowait()
            self._q.put_nowait(ev)

    def get_nowait(self) -> Optional[HvpsEvent]:
        try:
            return self._q.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[HvpsEvent]:
        out: list[HvpsEvent] = []
        while True:
            ev = self.get_nowait()
            if ev is None:
                return out
            out.append(ev)

    async def stream(self) -> AsyncGenerator[HvpsEvent, None]:
        while True:
            yield await self._q.get()


@dataclass
class HvpsContext:
    settings: HvpsSettings = field(default_factory=HvpsSettings)
    clock: Clock = time.monotonic
    bus: EventBus = field(default_factory=EventBus)
    log: logging.Logger = field(default_factory=get_app_logger)

    def now_ms(self) -> float:
        return self.clock() * 1000.0

    def emit(self, kind: EventKind, **kw: Any) -> None:
        self.bus.publish(HvpsEvent(kind=kind, at=self.clock(), **kw))

    def child_logger(self, name: str) -> logging.Logger:
        return self.log.getChild(name)
