import time


def now_ms() -> int:
    """エポックミリ秒"""
    return int(time.time() * 1000)
