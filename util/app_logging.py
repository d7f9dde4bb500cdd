# util/app_logging.py
# -*- coding: utf-8 -*-
r"""
HVPS 로깅 유틸
- 앱 로거 1개(이름 = app_name) + 하루 1개 파일 핸들러 + (선택) 콘솔
- 코어 모듈은 child 로거(app_name.scheduler / app_name.rx ...)로 기록
- asyncio 루프 예외/태스크 크래시, sys/threading 미처리 예외, warnings 를 같은 파일에 남김
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import sys
import threading
import warnings
from datetime import datetime, date
from pathlib import Path
from typing import Optional

from lib.config_common import HVPS_LOG_ROOT

DEFAULT_APP_NAME = "HVPS"
_DEFAULT_LOGGER_NAME: Optional[str] = None

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _safe_mkdir(p: Path) -> Path:
    try:
        p.mkdir(parents=True, exist_ok=True)
        return p
    except OSError:
        # 지정 경로 실패 시 로컬 폴백
        fallback = Path.cwd() / "Logs" / "HVPS"
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback


def daily_log_path(app_name: str, root: Path, day: Optional[date] = None) -> Path:
    d = (day or date.today()).strftime("%Y%m%d")
    return root / f"{app_name}_{d}.log"


class DailyFileHandler(logging.Handler):
    """
    하루 1개 파일을 유지하는 핸들러.
    - 파일명에 날짜가 들어가며, 날짜가 바뀌면 자동으로 새 파일로 reopen.
    """
    def __init__(self, app_name: str, root: Path, level: int = logging.INFO, encoding: str = "utf-8"):
        super().__init__(level=level)
        self._app_name = app_name
        self._root = _safe_mkdir(Path(root))
        self._encoding = encoding
        self._cur_date: date = date.today()
        self._stream = None
        self._write_lock = threading.Lock()
        self._open_for_today()

    @property
    def current_path(self) -> Path:
        return daily_log_path(self._app_name, self._root, self._cur_date)

    def _open_for_today(self) -> None:
        self._stream = open(self.current_path, "a", encoding=self._encoding, buffering=1)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            with self._write_lock:
                today = date.today()
                if today != self._cur_date:
                    self._cur_date = today
                    if self._stream:
                        self._stream.close()
                    self._open_for_today()
                self._stream.write(self.format(record) + "\n")
        except Exception:
            # 로깅 중 예외는 앱을 죽이면 안 됨
            self.handleError(record)

    def close(self) -> None:
        with self._write_lock:
            if self._stream:
                try:
                    self._stream.close()
                finally:
                    self._stream = None
        super().close()


def setup_app_logging(
    app_name: str = DEFAULT_APP_NAME,
    root: Optional[Path] = HVPS_LOG_ROOT,
    file_level: int = logging.INFO,
    console_level: int = logging.INFO,
    enable_console: bool = True,
) -> logging.Logger:
    """
    앱 로거 초기화 (재호출 안전)
    - root=None 이면 파일 핸들러 없이 콘솔만
    """
    global _DEFAULT_LOGGER_NAME
    _DEFAULT_LOGGER_NAME = app_name

    logger = logging.getLogger(app_name)

    # 중복 초기화 방지
    if getattr(logger, "_hvps_log_ready", False):
        return logger

    logger.setLevel(min(file_level, console_level))
    logger.propagate = False

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if root is not None:
        file_handler = DailyFileHandler(app_name=app_name, root=Path(root), level=file_level)
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    if enable_console:
        console = logging.StreamHandler(stream=sys.__stdout__)
        console.setLevel(console_level)
        console.setFormatter(fmt)
        logger.addHandler(console)

    def _on_exit():
        try:
            logger.info("process exiting (atexit)")
        except Exception:
            pass

    atexit.register(_on_exit)

    setattr(logger, "_hvps_log_ready", True)
    logger.info("logging ready (%s) at %s", app_name, datetime.now().isoformat(timespec="seconds"))
    return logger


def get_app_logger(child: Optional[str] = None, default_name: str = DEFAULT_APP_NAME) -> logging.Logger:
    name = _DEFAULT_LOGGER_NAME or default_name
    return logging.getLogger(f"{name}.{child}" if child else name)


def install_global_exception_hooks(logger: logging.Logger) -> None:
    """메인 스레드/스레드 미처리 예외 로깅"""
    def _sys_hook(exc_type, exc, tb):
        logger.critical("UNCAUGHT EXCEPTION (sys.excepthook)", exc_info=(exc_type, exc, tb))
        sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _sys_hook

    def _thread_hook(args: threading.ExceptHookArgs):
        logger.critical(
            "UNCAUGHT EXCEPTION (threading.excepthook) thread=%s",
            getattr(args, "thread", None),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    threading.excepthook = _thread_hook


def install_asyncio_exception_logging(loop: asyncio.AbstractEventLoop, logger: logging.Logger) -> None:
    """asyncio loop 예외 핸들러. 태스크 크래시는 track_task() 로 개별 등록."""
    def _loop_handler(_loop, context):
        msg = context.get("message")
        exc = context.get("exception")
        if exc:
            logger.error("ASYNCIO EXCEPTION: %s", msg or "(no message)", exc_info=exc)
        else:
            logger.error("ASYNCIO EXCEPTION: %s | context=%s", msg, context)

    loop.set_exception_handler(_loop_handler)
    logger.info("asyncio exception handler installed")


def track_task(task: asyncio.Task, logger: logging.Logger) -> asyncio.Task:
    """태스크가 예외로 죽으면 즉시 로깅."""
    def _done_callback(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc:
            logger.error("TASK CRASHED (%s)", t.get_name(), exc_info=exc)

    task.add_done_callback(_done_callback)
    return task


def install_warnings_logging(logger: logging.Logger) -> None:
    """warnings.warn() 류를 파일에 남김"""
    def _showwarning(message, category, filename, lineno, file=None, line=None):
        logger.warning("PYTHON WARNING %s:%s %s: %s", filename, lineno, category.__name__, message)

    warnings.showwarning = _showwarning
