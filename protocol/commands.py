# protocol/commands.py
# -*- coding: utf-8 -*-
"""
송신 명령 인코딩 + 셋포인트 입력 검증
- 셋포인트: 0.1 단위 반올림 → 정수(tenths) → [0, 999] 클램프 → 3자리 zero-pad
- 폴/리셋: 고정 문자열
- 괄호 래핑은 framing.wrap() 에서 (여기서는 페이로드만)
"""
from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple

from util.errors import ValidationError

CMD_POLL_TEMPERATURE = "XTMP"
CMD_POLL_VOLTAGE = "XV"
CMD_POLL_CURRENT = "XA"
CMD_RESET = "ERST"

POLL_CYCLE: Tuple[str, str, str] = (CMD_POLL_TEMPERATURE, CMD_POLL_VOLTAGE, CMD_POLL_CURRENT)

PREFIX_SET_VOLTAGE = "XV"
PREFIX_SET_CURRENT = "XA"

TENTHS_MIN = 0
TENTHS_MAX = 999


def to_tenths(value: float) -> int:
    """0.1 단위 반올림(half-up) 후 [0, 999] 클램프."""
    # float 그대로 round() 하면 12.25 같은 값이 banker's rounding 으로 흔들림
    tenths = int((Decimal(str(value)) * 10).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(TENTHS_MIN, min(TENTHS_MAX, tenths))


def quantize(value: float) -> float:
    """실제로 전송될 값(0.1 단위, 클램프 적용)."""
    return to_tenths(value) / 10.0


def _format(prefix: str, value: float) -> str:
    return f"{prefix}{to_tenths(value):03d}"


def format_voltage_command(volts: float) -> str:
    return _format(PREFIX_SET_VOLTAGE, volts)


def format_current_command(amps: float) -> str:
    return _format(PREFIX_SET_CURRENT, amps)


def format_poll_command(phase: int) -> str:
    return POLL_CYCLE[phase % len(POLL_CYCLE)]


def format_reset_command() -> str:
    return CMD_RESET


# ---------- 입력 검증 ----------
def _validate(value: object, upper: float, what: str, unit: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{what} must be a number", code="E302")
    v = float(value)
    if math.isnan(v) or math.isinf(v):
        raise ValidationError(f"{what} must be a number", code="E302")
    if v < 0 or v > upper:
        raise ValidationError(f"Setpoint out of range: {what} must be between 0 and {upper:g} {unit}")
    return v


def validate_voltage(value: object, max_voltage: float) -> float:
    return _validate(value, max_voltage, "Voltage", "kV")


def validate_current(value: object, max_current: float) -> float:
    return _validate(value, max_current, "Current", "mA")
