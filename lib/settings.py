# lib/settings.py
# -*- coding: utf-8 -*-
"""
HVPS 런타임 설정
- 기본값은 lib.config_common 상수에서 가져온다.
- 영속화는 코어가 하지 않는다: SettingsRepository(load/save)를 외부에서 주입.
- JsonSettingsRepository 는 기본 제공 구현(파일 1개, tmp -> replace 원자적 저장).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from lib import config_common as cfgc


@dataclass
class HvpsSettings:
    port: str = cfgc.HVPS_PORT
    baud_rate: int = cfgc.HVPS_BAUD

    staleness_threshold_ms: int = cfgc.HVPS_STALENESS_THRESHOLD_MS
    watchdog_interval_ms: int = cfgc.HVPS_WATCHDOG_INTERVAL_MS

    max_voltage_kv: float = cfgc.HVPS_MAX_VOLTAGE_KV
    max_current_ma: float = cfgc.HVPS_MAX_CURRENT_MA
    ack_epsilon: float = cfgc.HVPS_ACK_EPSILON

    tick_interval_ms: int = cfgc.HVPS_TICK_INTERVAL_MS
    estop_debounce_ms: int = cfgc.HVPS_ESTOP_DEBOUNCE_MS
    queue_capacity: int = cfgc.HVPS_QUEUE_CAPACITY

    reconnect_attempts: int = cfgc.HVPS_RECONNECT_ATTEMPTS
    reconnect_delay_ms: int = cfgc.HVPS_RECONNECT_DELAY_MS

    estop_ack_timeout_ms: int = cfgc.HVPS_ESTOP_ACK_TIMEOUT_MS
    estop_grace_ms: int = cfgc.HVPS_ESTOP_GRACE_MS

    rx_buffer_max: int = cfgc.HVPS_RX_BUFFER_MAX
    stats_interval_ms: int = cfgc.HVPS_STATS_INTERVAL_MS

    debug_mode: bool = cfgc.DEBUG_PRINT

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], *, strict: bool = False) -> "HvpsSettings":
        """
        알 수 없는 키는 무시, 타입은 기본값 타입으로 강제 변환.
        변환 실패 값은 기본값 유지. strict=True 면 ValueError (호출자 입력 검증용).
        """
        base = cls()
        if not data:
            return base
        for f in fields(cls):
            if f.name not in data:
                continue
            default = getattr(base, f.name)
            raw = data[f.name]
            try:
                if isinstance(default, bool):
                    value: Any = raw if isinstance(raw, bool) else str(raw).strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(default, int):
                    value = int(raw)
                elif isinstance(default, float):
                    value = float(raw)
                else:
                    value = str(raw)
            except (TypeError, ValueError) as e:
                if strict:
                    raise ValueError(f"{f.name}: invalid value {raw!r}") from e
                continue
            setattr(base, f.name, value)
        return base

    def validate(self) -> "HvpsSettings":
        if self.tick_interval_ms < cfgc.HVPS_TICK_INTERVAL_MIN_MS:
            raise ValueError(
                f"tick_interval_ms must be >= {cfgc.HVPS_TICK_INTERVAL_MIN_MS} (got {self.tick_interval_ms})"
            )
        for name in ("staleness_threshold_ms", "watchdog_interval_ms", "queue_capacity",
                     "estop_ack_timeout_ms", "estop_grace_ms", "rx_buffer_max"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("estop_debounce_ms", "reconnect_attempts", "reconnect_delay_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.max_voltage_kv <= 0 or self.max_current_ma <= 0:
            raise ValueError("max_voltage_kv / max_current_ma must be positive")
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SettingsRepository(Protocol):
    def load(self) -> HvpsSettings: ...
    def save(self, settings: HvpsSettings) -> None: ...


class JsonSettingsRepository:
    """JSON 파일 1개. 파일이 없거나 깨졌으면 기본값."""

    def __init__(self, path: Path = cfgc.HVPS_SETTINGS_PATH) -> None:
        self.path = Path(path)

    def read(self) -> Optional[dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def load(self) -> HvpsSettings:
        return HvpsSettings.from_mapping(self.read())

    def save(self, settings: HvpsSettings) -> None:
        """원자적 저장(tmp -> replace). 상위 디렉토리는 자동 생성."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        txt = json.dumps(settings.to_dict(), ensure_ascii=False, indent=2)
        tmp.write_text(txt, encoding="utf-8")
        tmp.replace(self.path)

    def patch(self, fields_: Mapping[str, Any]) -> HvpsSettings:
        cur = self.read() or {}
        cur.update(dict(fields_))
        settings = HvpsSettings.from_mapping(cur, strict=True).validate()
        self.save(settings)
        return settings


class MemorySettingsRepository:
    """테스트/임베드용 메모리 저장소."""

    def __init__(self, settings: Optional[HvpsSettings] = None) -> None:
        self._settings = settings or HvpsSettings()

    def load(self) -> HvpsSettings:
        return HvpsSettings.from_mapping(self._settings.to_dict())

    def save(self, settings: HvpsSettings) -> None:
        self._settings = HvpsSettings.from_mapping(settings.to_dict())
