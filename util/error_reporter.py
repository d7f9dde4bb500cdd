# util/error_reporter.py
from __future__ import annotations
import logging
from typing import Any, Callable, Optional

from .error_catalog import ErrorCatalog, ErrorInfo

_CATALOG = ErrorCatalog()

def _to_text(err: Any) -> str:
    try:
        return "" if err is None else str(err)
    except Exception:
        return repr(err)

def build_error_info(*, code: Optional[str] = None, message: Any = "") -> ErrorInfo:
    if isinstance(message, BaseException) and not code:
        return _CATALOG.for_exception(message)

    msg = _to_text(message).strip()

    if code:
        c = code if code.startswith("E") else f"E{code}"
        return _CATALOG.get(c, default_message=msg)

    guessed = _CATALOG.guess_code(msg)
    if guessed:
        return _CATALOG.get(guessed, default_message=msg)

    # 최후 fallback
    return _CATALOG.get("E100", default_message=msg or "HVPS error")

def format_error_message(info: ErrorInfo, *, detail: str = "") -> str:
    # ✅ 1줄로 정리: "[E###] 원인 (detail) 해결방법: ..."
    cause = " ".join((info.cause or "").replace("\r", "\n").splitlines()).strip()
    fix   = " ".join((info.fix   or "").replace("\r", "\n").splitlines()).strip()
    detail = " ".join((detail or "").splitlines()).strip()

    head = f"[{info.code}] {cause}".strip()
    if detail and detail != cause:
        head = f"{head} ({detail})"
    if fix:
        return f"{head} 해결방법: {fix}"
    return head

def build_fail_payload(*, code: Optional[str] = None, message: Any = "") -> dict:
    info = build_error_info(code=code, message=message)
    human = format_error_message(info, detail=_to_text(message).strip())
    return {
        "result": "fail",
        "message": human,
        "error_code": info.code,
    }

def notify_all(
    *,
    log: Optional[logging.Logger] = None,
    emit: Optional[Callable[[str, str, str], None]] = None,
    src: str = "HVPS",
    code: Optional[str] = None,
    message: Any = "",
    level: int = logging.ERROR,
) -> dict:
    """
    오류 1건을 로그/이벤트 버스로 동시에 흘린다. 절대 raise 하지 않음.
    emit(src, error_code, text) 형식.
    """
    payload = build_fail_payload(code=code, message=message)
    text = payload.get("message", "")

    # 1) 로거
    if log is not None:
        try:
            log.log(level, "%s %s", src, text)
        except Exception:
            pass

    # 2) 이벤트 버스(UI/진단 소비자)
    if callable(emit):
        try:
            emit(src, str(payload.get("error_code", "") or ""), text)
        except Exception:
            pass

    return payload
