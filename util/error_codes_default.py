# util/error_codes_default.py
# -*- coding: utf-8 -*-
# 코드 대역: E1xx 통신 / E2xx 프레이밍 / E3xx 입력검증 / E4xx 경고 / E5xx 내부 상태

DEFAULT_CODES: dict[str, dict[str, str]] = {
    "E100": {"cause": "HVPS 내부 오류", "fix": "로그의 스택트레이스를 확인"},
    "E101": {"cause": "시리얼 통신 오류", "fix": "케이블/전원 확인 후 재연결"},
    "E102": {"cause": "Connection failed", "fix": "포트 이름/보레이트 확인, 다른 프로그램이 포트를 점유 중인지 확인"},
    "E103": {"cause": "Send failed", "fix": "링크 상태 확인. 자동 재연결 결과를 기다린 뒤 다시 시도"},
    "E104": {"cause": "Read error", "fix": "USB-시리얼 어댑터 연결 상태 확인"},
    "E105": {"cause": "Reconnection failed after maximum attempts", "fix": "장비 전원/케이블 확인 후 수동으로 연결"},
    "E106": {"cause": "Not connected to device", "fix": "먼저 연결한 뒤 명령을 보내세요"},

    "E201": {"cause": "Unknown token format", "fix": "장비 펌웨어 프로토콜 버전 확인(무시하고 계속 동작)"},
    "E202": {"cause": "RX buffer overflow", "fix": "닫히지 않은 '[' 가 너무 길게 수신됨. 노이즈/보레이트 확인"},

    "E301": {"cause": "Setpoint out of range", "fix": "허용 범위 안의 값으로 다시 입력"},
    "E302": {"cause": "Setpoint must be a number", "fix": "숫자로 다시 입력"},
    "E303": {"cause": "Tick interval cannot be less than", "fix": "50 ms 이상으로 설정"},

    "E400": {"cause": "HVPS 경고", "fix": ""},
    "E401": {"cause": "setpoint mismatch", "fix": "장비가 보고한 값 확인. 필요 시 다시 설정(자동 재시도 없음)"},
    "E402": {"cause": "aux queue full", "fix": "명령 입력 속도를 낮추세요(가장 오래된 명령이 폐기됨)"},
    "E403": {"cause": "E-STOP not acknowledged", "fix": "장비 상태를 직접 확인. 폴링은 계속 진행됨"},

    "E501": {"cause": "Invalid state transition", "fix": "내부 상태 불일치. 연결을 끊고 다시 연결"},
}
