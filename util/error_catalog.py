# util/error_catalog.py
from __future__ import annotations
from dataclasses import dataclass
import re
from typing import Dict, Optional

from .error_codes_default import DEFAULT_CODES

_CODE_RE = re.compile(r"\b(E\d{3})\b")


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    cause: str
    fix: str


class ErrorCatalog:
    """
    - DEFAULT_CODES 를 기본으로 사용 (extra 로 덮어쓰기 가능)
    - 예외 객체면 .code 속성을 우선
    - message 안에 E### 가 있으면 그 코드 사용
    - 없으면 cause 텍스트(대소문자 무시) 최장 매칭으로 '추정'
    """

    def __init__(self, extra: Optional[Dict[str, Dict[str, str]]] = None) -> None:
        self._codes: Dict[str, Dict[str, str]] = dict(DEFAULT_CODES)
        if extra:
            self._codes.update(extra)

    def __contains__(self, code: str) -> bool:
        return code in self._codes

    def get(self, code: str, *, default_message: str = "") -> ErrorInfo:
        info = self._codes.get(code)
        if info:
            return ErrorInfo(code=code, cause=info.get("cause", ""), fix=info.get("fix", ""))
        return ErrorInfo(
            code=code,
            cause=default_message or f"Unmapped error code: {code}",
            fix="코드 매핑이 없습니다. util/error_codes_default.py 에 코드 추가",
        )

    def for_exception(self, exc: BaseException) -> ErrorInfo:
        code = getattr(exc, "code", None)
        msg = str(exc)
        if isinstance(code, str) and code in self._codes:
            return self.get(code, default_message=msg)
        guessed = self.guess_code(msg)
        return self.get(guessed or "E100", default_message=msg)

    def guess_code(self, message: str) -> Optional[str]:
        if not message:
            return None

        msg = str(message).strip()

        # 1) 직접 코드가 포함된 경우
        m = _CODE_RE.search(msg)
        if m:
            return m.group(1)

        # 2) cause 최장 매칭 (대소문자 무시)
        low = msg.lower()
        best_code = None
        best_len = 0
        for code, info in self._codes.items():
            cause = (info.get("cause") or "").strip().lower()
            if not cause:
                continue
            if cause in low and len(cause) > best_len:
                best_code, best_len = code, len(cause)

        return best_code
