# logger.py
# Per-run structured log. A side channel only: nothing here may raise into,
# or influence, the execution loop.
#
# Entries are kept in order for callers (ExecutionLogger.get_logs()) and
# mirrored to stdlib logging as "[domain/operation] message".

import logging
from typing import Any

from plan_engine.models import LogEntry, LogLevel, now_ms

_stdlib_logger = logging.getLogger("plan_engine.run")

_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_EVENT_MESSAGES = {
    "execution_started": "Execution started for plan {plan_id}",
    "step_started": "Step started: {step_title}",
    "step_completed": "Step completed: {step_id} in {duration}ms",
    "step_failed": "Step failed: {step_id}: {error}",
    "execution_completed": "Execution completed in {duration}ms",
    "execution_stopped": "Execution stopped: {reason}",
    "execution_failed": "Execution failed: {error}",
}


class ExecutionLogger:
    """Append-only, ordered log scoped to a single run id."""

    def __init__(self, run_id: str) -> None:
        self._run_id = run_id
        self._logs: list[LogEntry] = []

    @property
    def run_id(self) -> str:
        return self._run_id

    def info(self, domain: str, operation: str, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(LogLevel.INFO, domain, operation, message, context)

    def debug(self, domain: str, operation: str, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(LogLevel.DEBUG, domain, operation, message, context)

    def warn(self, domain: str, operation: str, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(LogLevel.WARN, domain, operation, message, context)

    def error(self, domain: str, operation: str, message: str, context: dict[str, Any] | None = None) -> None:
        self._log(LogLevel.ERROR, domain, operation, message, context)

    def log_event(self, event_type: str, **fields: Any) -> None:
        """Record a lifecycle event under the 'events' domain."""
        template = _EVENT_MESSAGES.get(event_type)
        try:
            message = template.format(**fields) if template else event_type
        except KeyError:
            message = event_type
        level = LogLevel.ERROR if event_type in ("step_failed", "execution_failed") else LogLevel.INFO
        self._log(level, "events", event_type, message, fields or None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_logs(self) -> list[LogEntry]:
        return list(self._logs)

    def get_logs_by_level(self, level: LogLevel | str) -> list[LogEntry]:
        level = LogLevel(level)
        return [entry for entry in self._logs if entry.level is level]

    def clear_logs(self) -> None:
        self._logs = []

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _log(
        self,
        level: LogLevel,
        domain: str,
        operation: str,
        message: str,
        context: dict[str, Any] | None,
    ) -> None:
        entry = LogEntry.model_construct(
            run_id=self._run_id,
            level=level,
            domain=str(domain),
            operation=str(operation),
            message=str(message),
            context=context,
            timestamp=now_ms(),
        )
        self._logs.append(entry)

        # stdlib logging reports its own handler failures; it does not raise.
        _stdlib_logger.log(
            _STDLIB_LEVELS[level],
            "[%s/%s] %s",
            entry.domain,
            entry.operation,
            entry.message,
            extra={"run_id": self._run_id},
        )
