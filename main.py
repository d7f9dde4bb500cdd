# main.py
# -*- coding: utf-8 -*-
"""
HVPS 콘솔 러너
  python main.py --port COM5
  python main.py --simulate --debug

명령(stdin):
  v <kV>            전압 셋포인트
  a <mA>            전류 셋포인트
  estop             비상정지(ERST)
  raw <cmd> [prio]  보조 큐에 원시 명령 적재
  diag              진단 스냅샷 출력
  quit              종료
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from controller.context import HvpsContext, HvpsEvent
from device.hvps import AsyncHVPS
from device.hvps_simulator import SimulatedTransport
from lib import config_common as cfgc
from lib.settings import JsonSettingsRepository
from util.app_logging import (
    install_asyncio_exception_logging, install_global_exception_hooks,
    install_warnings_logging, setup_app_logging, track_task,
)
from util.errors import HvpsError


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="HVPS serial controller (console)")
    p.add_argument("--port", type=str, default=None, help="시리얼 포트 (설정 파일 값보다 우선)")
    p.add_argument("--baud", type=int, default=None)
    p.add_argument("--simulate", action="store_true", help="실제 포트 대신 내장 시뮬레이터 사용")
    p.add_argument("--settings", type=str, default=str(cfgc.HVPS_SETTINGS_PATH))
    p.add_argument("--log-dir", dest="log_dir", type=str, default=str(cfgc.HVPS_LOG_ROOT))
    p.add_argument("--debug", action="store_true")
    return p


def _print_event(ev: HvpsEvent) -> None:
    if ev.kind == "stats":
        return
    parts = [f"[{ev.kind}]"]
    if ev.state is not None:
        parts.append(f"{ev.previous} -> {ev.state}" if ev.previous else ev.state)
    if ev.value is not None:
        parts.append(f"{ev.value:g}")
    if ev.token is not None:
        parts.append(f"token={ev.token!r}")
    if ev.message:
        parts.append(ev.message)
    print(" ".join(parts))


async def _print_events(hvps: AsyncHVPS) -> None:
    async for ev in hvps.events():
        _print_event(ev)


def _handle_line(hvps: AsyncHVPS, line: str) -> bool:
    """False 를 반환하면 종료."""
    parts = line.strip().split()
    if not parts:
        return True
    cmd, args = parts[0].lower(), parts[1:]

    if cmd in ("quit", "exit", "q"):
        return False
    try:
        if cmd == "v" and args:
            print(f"voltage setpoint -> {hvps.set_voltage(float(args[0])):.1f}")
        elif cmd == "a" and args:
            print(f"current setpoint -> {hvps.set_current(float(args[0])):.1f}")
        elif cmd == "estop":
            hvps.request_estop()
        elif cmd == "raw" and args:
            prio = int(args[1]) if len(args) > 1 else cfgc.HVPS_QUEUE_DEFAULT_PRIORITY
            hvps.queue_command(args[0], prio)
        elif cmd == "diag":
            print(json.dumps(hvps.get_diagnostics(), ensure_ascii=False, indent=2, default=str))
        else:
            print("commands: v <kV> | a <mA> | estop | raw <cmd> [prio] | diag | quit")
    except (HvpsError, ValueError) as e:
        print(f"[error] {e}")
    return True


async def _amain(argv=None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO
    log = setup_app_logging(root=Path(args.log_dir), file_level=level, console_level=level)
    install_global_exception_hooks(log)
    install_warnings_logging(log)
    loop = asyncio.get_running_loop()
    install_asyncio_exception_logging(loop, log)

    repo = JsonSettingsRepository(Path(args.settings))
    settings = repo.load()
    if args.port:
        settings.port = args.port
    if args.baud:
        settings.baud_rate = args.baud
    if args.debug:
        settings.debug_mode = True
    settings.validate()

    transport = SimulatedTransport(heartbeat_interval_ms=1000) if args.simulate else None
    hvps = AsyncHVPS(HvpsContext(settings=settings, log=log), transport=transport, settings_repo=repo)

    printer = track_task(loop.create_task(_print_events(hvps), name="HvpsConsole"), log)
    try:
        if not await hvps.connect():
            log.error("connect failed: %s", hvps.transport.description)
            return 2
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line or not _handle_line(hvps, line):
                break
        return 0
    finally:
        await hvps.cleanup()
        printer.cancel()


def main(argv=None) -> int:
    try:
        return asyncio.run(_amain(argv))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
