# controller/link_health.py
# -*- coding: utf-8 -*-
"""
링크 헬스(워치독)
- stale = (now - last_rx_at) > threshold  (연결 중일 때만; 미연결이면 항상 False)
- last_tx_at / 스케줄러 활동은 판정에 절대 쓰지 않음
- 주기 태스크(_watch_loop)가 판정하고, 변화가 있을 때만 on_change(stale) 호출
- 수신 경로는 mark_rx() 후 refresh() 로 즉시 재판정(회복을 다음 주기까지 미루지 않음)
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from util.app_logging import track_task

from .context import HvpsContext


class LinkHealthMonitor:
    def __init__(
        self,
        ctx: HvpsContext,
        *,
        is_connected: Callable[[], bool],
        on_change: Optional[Callable[[bool], None]] = None,
    ):
        self._ctx = ctx
        self._is_connected = is_connected
        self._on_change = on_change
        self._log = ctx.child_logger("link")

        self.threshold_ms = int(ctx.settings.staleness_threshold_ms)
        self.interval_ms = int(ctx.settings.watchdog_interval_ms)

        self.last_rx_at: Optional[float] = None
        self.last_tx_at: Optional[float] = None
        self._stale = False
        self._task: Optional[asyncio.Task] = None

    # ---------- 타임스탬프 ----------
    def mark_rx(self, at: Optional[float] = None) -> None:
        self.last_rx_at = self._ctx.clock() if at is None else at

    def mark_tx(self, at: Optional[float] = None) -> None:
        self.last_tx_at = self._ctx.clock() if at is None else at

    def reset(self) -> None:
        """새 연결 시작 시점 기준으로 초기화(연결 직후 바로 stale 로 뜨지 않게)."""
        now = self._ctx.clock()
        self.last_rx_at = now
        self.last_tx_at = None
        self._stale = False

    # ---------- 판정 ----------
    @property
    def stale(self) -> bool:
        return self._stale

    def is_stale(self, now: Optional[float] = None) -> bool:
        if not self._is_connected():
            return False
        if self.last_rx_at is None:
            return False
        now = self._ctx.clock() if now is None else now
        return (now - self.last_rx_at) * 1000.0 > self.threshold_ms

    def refresh(self, now: Optional[float] = None) -> bool:
        stale = self.is_stale(now)
        if stale != self._stale:
            self._stale = stale
            if stale:
                self._log.warning("link stale - no recognized message for > %d ms", self.threshold_ms)
            else:
                self._log.info("link freshness restored")
            if self._on_change is not None:
                self._on_change(stale)
        return stale

    def since_rx_ms(self, now: Optional[float] = None) -> Optional[float]:
        if self.last_rx_at is None:
            return None
        now = self._ctx.clock() if now is None else now
        return (now - self.last_rx_at) * 1000.0

    def since_tx_ms(self, now: Optional[float] = None) -> Optional[float]:
        if self.last_tx_at is None:
            return None
        now = self._ctx.clock() if now is None else now
        return (now - self.last_tx_at) * 1000.0

    # ---------- 주기 태스크 ----------
    def start(self) -> None:
        if self._task and not self._task.done():
            return
        loop = asyncio.get_running_loop()
        self._task = track_task(loop.create_task(self._watch_loop(), name="HvpsLinkWatch"), self._log)

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
        self._stale = False

    async def _watch_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000.0)
            self.refresh()

    def snapshot(self) -> dict:
        return {
            "stale": self._stale,
            "threshold_ms": self.threshold_ms,
            "since_rx_ms": self.since_rx_ms(),
            "since_tx_ms": self.since_tx_ms(),
        }
