# lib/config_common.py
import os
from pathlib import Path

# === 디버그 프린트 여부 ===
DEBUG_PRINT = False

# ======================================================================
# HVPS 시리얼 링크 (transport 소유, 코어는 값만 전달)
# ======================================================================
HVPS_PORT = os.environ.get("HVPS_PORT", "COM3")
HVPS_BAUD = 9600
HVPS_BYTESIZE = 8
HVPS_PARITY = "N"
HVPS_STOPBITS = 1
HVPS_OPEN_TIMEOUT_S = 3.0
HVPS_CLOSE_TIMEOUT_S = 1.0

# ======================================================================
# TX 스케줄러
# ======================================================================
HVPS_TICK_INTERVAL_MS     = 100     # 10 Hz
HVPS_TICK_INTERVAL_MIN_MS = 50      # 하한(이보다 작으면 거부)
HVPS_ESTOP_DEBOUNCE_MS    = 250
HVPS_QUEUE_CAPACITY       = 10
HVPS_QUEUE_DEFAULT_PRIORITY = 10

# ======================================================================
# 링크 헬스(워치독)
# ======================================================================
HVPS_STALENESS_THRESHOLD_MS = 500
HVPS_WATCHDOG_INTERVAL_MS   = 250

# ======================================================================
# 연결/재연결
# ======================================================================
HVPS_RECONNECT_ATTEMPTS = 3
HVPS_RECONNECT_DELAY_MS = 2000

# ======================================================================
# E-STOP
# ======================================================================
HVPS_ESTOP_ACK_TIMEOUT_MS = 1000    # REQUESTED 상태에서 ACK 없을 때 경고
HVPS_ESTOP_GRACE_MS       = 3000    # ACKNOWLEDGED → IDLE 자동 복귀

# ======================================================================
# 셋포인트 검증/ACK 비교
# ======================================================================
HVPS_MAX_VOLTAGE_KV = 120.0
HVPS_MAX_CURRENT_MA = 10.0
HVPS_ACK_EPSILON    = 0.01

# ======================================================================
# RX 프레이밍
# ======================================================================
HVPS_RX_BUFFER_MAX = 256            # 닫히지 않은 '[' 잔여 버퍼 상한(문자)

# ======================================================================
# 진단/이벤트
# ======================================================================
HVPS_STATS_INTERVAL_MS = 5000
HVPS_EVENT_QUEUE_MAX   = 1024

# ======================================================================
# 설정/로그 경로
# ======================================================================
HVPS_SETTINGS_PATH = Path.cwd() / "hvps_settings.json"
HVPS_LOG_ROOT      = Path.cwd() / "Logs" / "HVPS"
