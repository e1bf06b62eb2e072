from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _csv_env(name: str) -> list[str]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return []
    return [p.strip() for p in raw.split(",") if p.strip()]


# ── Sandbox lifecycle ─────────────────────────────────────────────────


def sandbox_backend_name() -> str:
    return (os.environ.get("SANDBOX_BACKEND") or "local").strip().lower() or "local"


def sandbox_root_dir() -> str:
    return (os.environ.get("SANDBOX_ROOT_DIR") or "/workspace").strip() or "/workspace"


def local_sandbox_base_dir() -> str | None:
    raw = (os.environ.get("LOCAL_SANDBOX_BASE_DIR") or "").strip()
    return raw or None


def sandbox_idle_timeout_s() -> float:
    return max(1.0, _env_float("SANDBOX_IDLE_TIMEOUT_S", 600.0))


def sandbox_provision_max_attempts() -> int:
    return max(1, _env_int("SANDBOX_PROVISION_MAX_ATTEMPTS", 3))


def sandbox_retry_base_delay_s() -> float:
    return max(0.0, _env_float("SANDBOX_RETRY_BASE_DELAY_S", 0.5))


def sandbox_retry_max_delay_s() -> float:
    return max(0.0, _env_float("SANDBOX_RETRY_MAX_DELAY_S", 8.0))


def sandbox_request_timeout_s() -> float:
    return max(1.0, _env_float("SANDBOX_REQUEST_TIMEOUT_S", 60.0))


# ── Sync ──────────────────────────────────────────────────────────────

WATCHER_MIN_INTERVAL_S = 0.5
WATCHER_MAX_INTERVAL_S = 10.0


def watcher_scan_interval_s() -> float:
    v = _env_float("WATCHER_SCAN_INTERVAL_S", 2.0)
    return min(WATCHER_MAX_INTERVAL_S, max(WATCHER_MIN_INTERVAL_S, v))


def sync_echo_window_s() -> float:
    return max(0.1, _env_float("SYNC_ECHO_WINDOW_S", 10.0))


def sync_max_text_bytes() -> int:
    # Larger files are tracked by hash only; content is not mirrored to the store.
    return max(1024, _env_int("SYNC_MAX_TEXT_BYTES", 500_000))


# ── Terminals ─────────────────────────────────────────────────────────


def terminal_max_sessions() -> int:
    return max(1, _env_int("TERMINAL_MAX_SESSIONS", 50))


def terminal_reconnect_grace_s() -> float:
    return max(0.0, _env_float("TERMINAL_RECONNECT_GRACE_S", 30.0))


def terminal_buffer_max_chars() -> int:
    return max(1024, _env_int("TERMINAL_BUFFER_MAX_CHARS", 200_000))


def terminal_idle_timeout_s() -> float:
    return max(60.0, _env_float("TERMINAL_IDLE_TIMEOUT_S", 30 * 60.0))


def terminal_shell() -> str:
    return (os.environ.get("TERMINAL_SHELL") or "/bin/bash").strip() or "/bin/bash"


def terminal_default_size() -> tuple[int, int]:
    return (
        max(1, _env_int("TERMINAL_DEFAULT_COLS", 80)),
        max(1, _env_int("TERMINAL_DEFAULT_ROWS", 24)),
    )


# ── Presence ──────────────────────────────────────────────────────────


def presence_grace_s() -> float:
    return max(0.0, _env_float("PRESENCE_GRACE_S", 10.0))


def presence_typing_timeout_s() -> float:
    return max(0.5, _env_float("PRESENCE_TYPING_TIMEOUT_S", 5.0))


# ── Server ────────────────────────────────────────────────────────────


def auth_mode() -> str:
    return (os.environ.get("AUTH_MODE") or "none").strip().lower() or "none"


def cors_allow_origins() -> list[str]:
    return _csv_env("CORS_ALLOW_ORIGINS")


def maintenance_interval_s() -> float:
    return max(1.0, _env_float("MAINTENANCE_INTERVAL_S", 60.0))


def debug_enabled() -> bool:
    return _env_bool("COLLABHUB_DEBUG", default=False)
