from __future__ import annotations

import os
import threading
import time


AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_IP = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_IP") or "50")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")

_GUARD_LOCK = threading.Lock()
_ATTEMPTS_BY_IP: dict[str, list[float]] = {}
_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}


def _prune(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _store(bucket: dict[str, list[float]], key: str, attempts: list[float]) -> None:
    if attempts:
        bucket[key] = attempts
    else:
        bucket.pop(key, None)


def _sweep_unlocked(now_ts: float) -> None:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    for bucket in (_ATTEMPTS_BY_IP, _ATTEMPTS_BY_ACCOUNT):
        for key, attempts in list(bucket.items()):
            if not attempts or attempts[-1] < cutoff:
                bucket.pop(key, None)
    for key, until in list(_LOCKOUT_UNTIL_BY_ACCOUNT.items()):
        if until <= now_ts:
            _LOCKOUT_UNTIL_BY_ACCOUNT.pop(key, None)


def check_login_guard(client_ip: str, account_key: str) -> int | None:
    """Seconds the caller must wait before another attempt, or None."""
    now_ts = time.time()
    with _GUARD_LOCK:
        lockout_until = _LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until:
            _LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)

        ip_attempts = _prune(_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        _store(_ATTEMPTS_BY_IP, client_ip, ip_attempts)
        _store(_ATTEMPTS_BY_ACCOUNT, account_key, _prune(_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts))

        if len(ip_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_IP, 1):
            return max(1, int((ip_attempts[0] + AUTH_ATTEMPT_WINDOW_SECONDS) - now_ts))
    return None


def record_login_failure(client_ip: str, account_key: str) -> None:
    now_ts = time.time()
    with _GUARD_LOCK:
        _sweep_unlocked(now_ts)
        ip_attempts = _prune(_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune(_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        ip_attempts.append(now_ts)
        account_attempts.append(now_ts)
        _store(_ATTEMPTS_BY_IP, client_ip, ip_attempts)
        _ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def record_login_success(account_key: str) -> None:
    with _GUARD_LOCK:
        _ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)


def reset_login_guard() -> None:
    with _GUARD_LOCK:
        _ATTEMPTS_BY_IP.clear()
        _ATTEMPTS_BY_ACCOUNT.clear()
        _LOCKOUT_UNTIL_BY_ACCOUNT.clear()
