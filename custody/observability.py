"""
Custody Observability

Structured logging and a tamper-evident audit trail for custody workflows.

    ┌─────────────────────────────────────────────────────────┐
    │                  CustodyStateMachine                     │
    │  logger.info("msg", asset_id=x)   audit.record(...)     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              CustodyLogger / AuditLogger                 │
    │  correlation ids, layer tags, hash-chained audit events │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  logging.Handler                         │
    │          StructuredHandler (json) │ text                 │
    └─────────────────────────────────────────────────────────┘

A workflow sets one correlation id for its lifetime so every log line and
audit event produced by its operations can be joined afterwards.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class CustodyLayer(Enum):
    """Components of the custody core, used to tag log events."""
    REGISTRY = "registry"
    KIOSK = "kiosk"
    ISSUER = "issuer"
    MACHINE = "machine"
    LEDGER = "ledger"
    SIGNER = "signer"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that writes one JSON object per record."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install the root ``custody`` handler once, in json or text format."""
    root = logging.getLogger("custody")
    root.setLevel(getattr(logging, level.upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)


class CustodyLogger:
    """
    Layer-tagged logger for custody components.

    Records carry the layer, the operation name and arbitrary structured
    context; the correlation id is attached by the handler.
    """

    def __init__(self, name: str, layer: CustodyLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"custody.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "committed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    return f"wf-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_logger(name: str, layer: CustodyLayer) -> CustodyLogger:
    return CustodyLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: CustodyLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditEventType(Enum):
    """Types of audit events."""
    CAPABILITY_ISSUED = "capability_issued"
    CAPABILITY_CONSUMED = "capability_consumed"
    CAPABILITY_REPLAYED = "capability_replayed"
    TRANSITION = "transition"
    TRANSITION_REJECTED = "transition_rejected"
    RECONCILED = "reconciled"


@dataclass
class AuditEvent:
    """An audit log entry, chained to its predecessor by digest."""
    event_id: str
    event_type: AuditEventType
    timestamp: str
    actor: str
    resource_type: str
    resource_id: str
    action: str
    outcome: str  # success, failure
    details: Dict[str, Any]
    correlation_id: str = ""
    previous_event_digest: Optional[str] = None
    event_digest: str = ""

    def __post_init__(self):
        if not self.event_digest:
            self.event_digest = self._compute_digest()

    def _compute_digest(self) -> str:
        content = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "action": self.action,
            "outcome": self.outcome,
            "details": self.details,
            "previous_event_digest": self.previous_event_digest,
        }
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "action": self.action,
            "outcome": self.outcome,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "event_digest": self.event_digest,
        }


class AuditLogger:
    """
    Tamper-evident audit logger.

    Each event includes the digest of the previous event, so removing or
    editing an entry breaks the chain at that index.
    """

    def __init__(self, logger: Optional[CustodyLogger] = None):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()
        self._counter = 0
        self._logger = logger or get_logger("audit", CustodyLayer.MACHINE)

    def record(
        self,
        event_type: AuditEventType,
        actor: str,
        resource_type: str,
        resource_id: str,
        action: str,
        outcome: str = "success",
        **details: Any,
    ) -> AuditEvent:
        with self._lock:
            self._counter += 1
            previous = self._events[-1].event_digest if self._events else None
            event = AuditEvent(
                event_id=f"evt-{self._counter:012d}",
                event_type=event_type,
                timestamp=datetime.now(timezone.utc).isoformat(),
                actor=actor,
                resource_type=resource_type,
                resource_id=resource_id,
                action=action,
                outcome=outcome,
                details=details,
                correlation_id=correlation_id_var.get(),
                previous_event_digest=previous,
            )
            self._events.append(event)

        self._logger.debug(
            f"AUDIT: {action} on {resource_type}/{resource_id}",
            operation="audit",
            outcome=outcome,
            event_digest=event.event_digest,
        )
        return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the audit log chain integrity.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            for i, event in enumerate(self._events):
                if event._compute_digest() != event.event_digest:
                    return (False, i)
                if i > 0 and event.previous_event_digest != self._events[i - 1].event_digest:
                    return (False, i)
            return (True, None)

    def events(
        self,
        resource_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            events = list(self._events)
        if resource_id:
            events = [e for e in events if e.resource_id == resource_id]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._events]
