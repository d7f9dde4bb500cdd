# util/errors.py
# -*- coding: utf-8 -*-
"""
HVPS 오류/경고 타입
- HvpsError 계열: 호출자에게 raise 되는 예외
- HvpsWarning 계열: raise 하지 않고 이벤트/로그로만 흘리는 값(스케줄러/E-STOP 경로 보호)
모든 타입은 카탈로그 코드(util.error_codes_default)를 가진다.
"""
from __future__ import annotations
from typing import Optional


class HvpsError(Exception):
    code = "E100"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class TransportError(HvpsError):
    code = "E101"


class FramingError(HvpsError):
    code = "E201"

    def __init__(self, message: str = "", *, token: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.token = token


class ValidationError(HvpsError, ValueError):
    code = "E301"


class InvalidTransition(HvpsError):
    code = "E501"


class HvpsWarning(UserWarning):
    code = "E400"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class AckMismatchWarning(HvpsWarning):
    code = "E401"

    def __init__(self, kind: str, requested: float, acknowledged: float):
        unit = "V" if kind == "voltage" else "A"
        super().__init__(
            f"{kind} setpoint mismatch: sent {requested:.1f}{unit}, device acknowledged {acknowledged:.1f}{unit}"
        )
        self.kind = kind
        self.requested = requested
        self.acknowledged = acknowledged


class QueueOverflow(HvpsWarning):
    code = "E402"

    def __init__(self, dropped: str, capacity: int):
        super().__init__(f"aux queue full (cap={capacity}), dropped oldest: {dropped}")
        self.dropped = dropped
        self.capacity = capacity


class EstopTimeoutWarning(HvpsWarning):
    code = "E403"

    def __init__(self, waited_ms: int):
        super().__init__(f"E-STOP not acknowledged within {waited_ms} ms")
        self.waited_ms = waited_ms
