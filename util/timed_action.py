# util/timed_action.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

_log = logging.getLogger(__name__)


class CancellableTimer:
    """
    단발(single-shot) 지연 실행 타이머. asyncio loop.call_later 기반.
    - start() 재호출 시 이전 예약은 취소 후 다시 예약(re-arm)
    - ms <= 0 이면 예약하지 않음
    - 콜백 예외는 로그만 남기고 삼킴(타이머 소유자 상태머신 보호)
    """

    def __init__(self, callback: Callable[[], None], *, name: str = "timer") -> None:
        self._callback = callback
        self._name = name
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, ms: int, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        self.cancel()
        try:
            ms = int(ms)
        except (TypeError, ValueError):
            return False
        if ms <= 0:
            return False
        loop = loop or asyncio.get_running_loop()
        self._handle = loop.call_later(ms / 1000.0, self._fire)
        return True

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        except Exception:
            _log.exception("timer callback failed (%s)", self._name)
