# protocol/decoder.py
# -*- coding: utf-8 -*-
"""
토큰 → 타입 메시지
- 정규식 대신 고정 폭 구조 파싱: 접두어 + 정확히 3자리 ASCII 숫자
  (자릿수 위반은 부분 매칭 없이 Unrecognized)
- MessageDecoder: 누적 통계(total/valid/errors/last error) 보관, stats() 로 읽기 전용 스냅샷
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Literal, Optional, Union
import time

MessageKind = Literal[
    "temperature", "voltage", "current", "voltage_ack", "current_ack",
    "reset_ack", "heartbeat", "unrecognized",
]


# ================== 메시지 모델 ==================
@dataclass(frozen=True)
class Temperature:
    celsius: int
    kind: MessageKind = "temperature"


@dataclass(frozen=True)
class VoltageReading:
    volts: float
    kind: MessageKind = "voltage"


@dataclass(frozen=True)
class CurrentReading:
    amps: float
    kind: MessageKind = "current"


@dataclass(frozen=True)
class VoltageAck:
    volts: float
    kind: MessageKind = "voltage_ack"


@dataclass(frozen=True)
class CurrentAck:
    amps: float
    kind: MessageKind = "current_ack"


@dataclass(frozen=True)
class ResetAck:
    kind: MessageKind = "reset_ack"


@dataclass(frozen=True)
class Heartbeat:
    kind: MessageKind = "heartbeat"


@dataclass(frozen=True)
class Unrecognized:
    raw: str
    reason: str = "Unknown token format"
    kind: MessageKind = "unrecognized"


DecodedMessage = Union[
    Temperature, VoltageReading, CurrentReading, VoltageAck, CurrentAck,
    ResetAck, Heartbeat, Unrecognized,
]

# 접두어 → 생성자 (값은 원시 3자리 정수)
_NUMERIC: Dict[str, Callable[[int], DecodedMessage]] = {
    "S_T": lambda n: Temperature(n),
    "S_V": lambda n: VoltageReading(n / 10.0),
    "S_A": lambda n: CurrentReading(n / 10.0),
    "X_V": lambda n: VoltageAck(n / 10.0),
    "X_A": lambda n: CurrentAck(n / 10.0),
}
_EXACT: Dict[str, Callable[[], DecodedMessage]] = {
    "E_RST": ResetAck,
    "LIVE": Heartbeat,
}

FIELD_WIDTH = 3
_DIGITS = frozenset("0123456789")


def _parse_field(text: str) -> Optional[int]:
    # str.isdigit() 는 유니코드 숫자도 통과시키므로 ASCII 집합으로 직접 검사
    if len(text) != FIELD_WIDTH or not all(ch in _DIGITS for ch in text):
        return None
    return int(text)


def decode(token: str) -> DecodedMessage:
    if not isinstance(token, str) or not token:
        return Unrecognized(raw=token if isinstance(token, str) else repr(token),
                            reason="Invalid token format")

    ctor = _EXACT.get(token)
    if ctor is not None:
        return ctor()

    head, tail = token[:3], token[3:]
    make = _NUMERIC.get(head)
    if make is not None:
        n = _parse_field(tail)
        if n is not None:
            return make(n)

    return Unrecognized(raw=token)


def is_recognized(msg: DecodedMessage) -> bool:
    return not isinstance(msg, Unrecognized)


# ================== 통계 포함 디코더 ==================
@dataclass(frozen=True)
class DecoderStats:
    total_messages: int
    valid_messages: int
    parse_errors: int
    last_error_time: Optional[float]
    last_error_token: Optional[str]

    @property
    def success_rate(self) -> float:
        if self.total_messages <= 0:
            return 0.0
        return self.valid_messages / self.total_messages * 100.0

    def as_dict(self) -> dict:
        return {
            "total_messages": self.total_messages,
            "valid_messages": self.valid_messages,
            "parse_errors": self.parse_errors,
            "last_error_time": self.last_error_time,
            "last_error_token": self.last_error_token,
            "success_rate": f"{self.success_rate:.1f}%",
        }


class MessageDecoder:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.reset_stats()

    def reset_stats(self) -> None:
        self._total = 0
        self._valid = 0
        self._errors = 0
        self._last_error_time: Optional[float] = None
        self._last_error_token: Optional[str] = None

    def decode(self, token: str) -> DecodedMessage:
        self._total += 1
        msg = decode(token)
        if isinstance(msg, Unrecognized):
            self.record_error(msg.raw)
        else:
            self._valid += 1
        return msg

    def record_error(self, token: Optional[str]) -> None:
        self._errors += 1
        self._last_error_time = self._clock()
        self._last_error_token = token

    def stats(self) -> DecoderStats:
        return DecoderStats(
            total_messages=self._total,
            valid_messages=self._valid,
            parse_errors=self._errors,
            last_error_time=self._last_error_time,
            last_error_token=self._last_error_token,
        )
