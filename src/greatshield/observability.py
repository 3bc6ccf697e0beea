from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

log = logging.getLogger("greatshield.observability")

# Events raised by the rate limit and input validation stages.
SECURITY_EVENTS = frozenset({"rate_limit_hit", "security_violation"})


class LogLevel(Enum):
    """Structured log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class ActionType(Enum):
    """Action types for structured logging."""
    MODERATION = "moderation"
    SECURITY = "security"
    STARTUP = "startup"
    ERROR = "error"


@dataclass
class StructuredLogEntry:
    """Structured log entry with context."""
    timestamp: datetime
    level: LogLevel
    action: ActionType
    message: str
    details: dict[str, Any]
    guild_id: int | None = None
    user_id: int | None = None
    duration_ms: float | None = None
    success: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["level"] = self.level.value
        data["action"] = self.action.value
        return data


class ObservabilityManager:
    """Timers, event counters and health flags, logged as structured lines.

    Satisfies the pipeline's observability sink contract
    (``start_timer`` / ``end_timer`` / ``record_event``).
    """

    def __init__(self) -> None:
        self._startup_time = datetime.now(timezone.utc)
        self._timers: dict[str, float] = {}
        self._event_counts: dict[str, int] = {}
        self._action_counts: dict[str, int] = {}
        self._durations_ms: dict[str, float] = {}
        self._health_status: dict[str, bool] = {
            "database": False,
            "pipeline": False,
        }

    def log_structured(
        self,
        level: LogLevel,
        action: ActionType,
        message: str,
        *,
        guild_id: int | None = None,
        user_id: int | None = None,
        details: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        success: bool | None = None,
    ) -> None:
        entry = StructuredLogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            action=action,
            message=message,
            details=details or {},
            guild_id=guild_id,
            user_id=user_id,
            duration_ms=duration_ms,
            success=success,
        )
        log_method = {
            LogLevel.DEBUG: log.debug,
            LogLevel.INFO: log.info,
            LogLevel.WARNING: log.warning,
            LogLevel.ERROR: log.error,
        }.get(level, log.info)
        log_method(f"[{action.value}] {message} | {json.dumps(entry.to_dict(), separators=(',', ':'))}")

    def start_timer(self, name: str) -> None:
        self._timers[name] = time.perf_counter()

    def end_timer(self, name: str) -> float:
        started = self._timers.pop(name, None)
        if started is None:
            return 0.0
        return (time.perf_counter() - started) * 1000

    def record_event(self, name: str, duration_ms: Optional[float] = None, action: Optional[str] = None) -> None:
        self._event_counts[name] = self._event_counts.get(name, 0) + 1
        if action:
            self._action_counts[action] = self._action_counts.get(action, 0) + 1
        if duration_ms is not None:
            self._durations_ms[name] = self._durations_ms.get(name, 0.0) + duration_ms

        kind = ActionType.SECURITY if name in SECURITY_EVENTS else ActionType.MODERATION
        level = LogLevel.WARNING if name == "stage_error" or kind is ActionType.SECURITY else LogLevel.DEBUG
        details: dict[str, Any] = {"event": name}
        if action:
            details["moderation_action"] = action
        self.log_structured(level, kind, f"Event {name}", details=details, duration_ms=duration_ms)

    def log_startup_event(self, component: str, status: str, details: dict[str, Any] | None = None) -> None:
        self.log_structured(
            level=LogLevel.INFO if status == "OK" else LogLevel.ERROR,
            action=ActionType.STARTUP,
            message=f"Startup component {component}: {status}",
            details=details or {"component": component, "status": status},
            success=status == "OK",
        )
        self._health_status[component] = status == "OK"

    def get_health_summary(self) -> dict[str, Any]:
        uptime_ms = (datetime.now(timezone.utc) - self._startup_time).total_seconds() * 1000
        return {
            "uptime_ms": uptime_ms,
            "startup_time": self._startup_time.isoformat(),
            "health_status": dict(self._health_status),
            "all_healthy": all(self._health_status.values()),
            "event_counts": dict(self._event_counts),
            "action_counts": dict(self._action_counts),
        }

    def average_duration_ms(self, name: str) -> float:
        count = self._event_counts.get(name, 0)
        if not count:
            return 0.0
        return self._durations_ms.get(name, 0.0) / count

    def reset_counters(self) -> None:
        self._event_counts.clear()
        self._action_counts.clear()
        self._durations_ms.clear()


class NullObservability:
    """No-op sink used when the pipeline is built without one."""

    def start_timer(self, name: str) -> None:
        return None

    def end_timer(self, name: str) -> float:
        return 0.0

    def record_event(self, name: str, duration_ms: Optional[float] = None, action: Optional[str] = None) -> None:
        return None


# Global observability manager instance
observability = ObservabilityManager()
