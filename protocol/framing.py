# protocol/framing.py
# -*- coding: utf-8 -*-
"""
대괄호 프레이밍: 바이트 스트림 → '[...]' 토큰
- extract(): 순수 함수. (tokens, remainder)
- FrameExtractor: 읽기마다 feed(), 잔여(remainder)를 다음 읽기와 이어붙임
- 이스케이프 없음: 토큰 안의 '[' 는 "마지막 '[' 부터가 토큰"으로 처리(더 안쪽 쌍 우선)
- 닫히지 않은 잔여가 max_buffer 를 넘으면 버퍼 리셋 + FramingError 보고
"""
from __future__ import annotations

from typing import Callable, List, Optional, Tuple

from util.errors import FramingError

OPEN = "["
CLOSE = "]"


def wrap(payload: str) -> str:
    """송신 페이로드를 프레임으로."""
    return f"{OPEN}{payload}{CLOSE}"


def extract(buffer: str) -> Tuple[List[str], str]:
    tokens: List[str] = []
    pos = 0
    while True:
        i_open = buffer.find(OPEN, pos)
        if i_open == -1:
            break
        i_close = buffer.find(CLOSE, i_open + 1)
        if i_close == -1:
            break
        # 앞쪽 짝 없는 '[' 는 버리고 ']' 에 가장 가까운 '[' 로 재동기화
        i_open = buffer.rfind(OPEN, i_open, i_close)
        tokens.append(buffer[i_open + 1:i_close])
        pos = i_close + 1
    return tokens, buffer[pos:]


class FrameExtractor:
    def __init__(
        self,
        *,
        max_buffer: int = 256,
        on_overflow: Optional[Callable[[FramingError], None]] = None,
        encoding: str = "ascii",
    ) -> None:
        self._buf = ""
        self._max = int(max_buffer)
        self._on_overflow = on_overflow
        self._encoding = encoding
        self.overflows = 0

    @property
    def pending(self) -> str:
        return self._buf

    def reset(self) -> None:
        self._buf = ""

    def feed(self, data: bytes | str) -> List[str]:
        if not data:
            return []
        if isinstance(data, (bytes, bytearray)):
            text = bytes(data).decode(self._encoding, errors="replace")
        else:
            text = data
        tokens, rest = extract(self._buf + text)

        # '[' 가 없는 잔여는 절대 토큰이 될 수 없음 → 즉시 폐기
        i_open = rest.rfind(OPEN) if rest else -1
        rest = rest[i_open:] if i_open != -1 else ""

        if len(rest) > self._max:
            self.overflows += 1
            err = FramingError(
                f"RX buffer overflow: {len(rest)} chars without '{CLOSE}' (max {self._max})",
                token=rest[:32],
                code="E202",
            )
            rest = ""
            if self._on_overflow is not None:
                self._on_overflow(err)

        self._buf = rest
        return tokens
