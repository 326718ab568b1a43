"""Structured operation logging for nodeprep.

Every CLI command records one JSON line in ``operations.jsonl`` describing the
arguments it received and the result it produced. Logging must never be the
reason a bootstrap run fails, so the logger disables itself when the log
directory cannot be created or a write fails.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class OperationScope:
    """Collects the outcome of a single logged operation."""

    def __init__(self, command: str) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.result: dict[str, object] | None = None
        self.steps: list[dict[str, object]] = []

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Append a named sub-step outcome to the operation record."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._set("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._set(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome."""
        self._set(
            "error",
            message,
            errors=list(errors) if errors else [message],
            warnings=warnings or (),
            rc=rc,
            context=context,
        )

    def _set(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(dict(context))
        self.result = result


class StructuredLogger:
    """Append-only JSON lines logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it is unusable."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist its outcome on exit."""
        scope = OperationScope(command)
        started_at = _timestamp()
        start = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled {type(exc).__name__}: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            record = {
                "id": uuid.uuid4().hex,
                "command": command,
                "args": _sanitise(dict(args or {})),
                "target": _sanitise(dict(target or {})),
                "started_at": started_at,
                "finished_at": _timestamp(),
                "duration_ms": int((time.perf_counter() - start) * 1000),
                "steps": scope.steps,
                "result": scope.result,
            }
            self._write(record)

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OPERATIONS_LOG", "OperationScope", "StructuredLogger"]
