"""Observability helpers."""

from pixel_agents.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_agent_lifecycle,
    record_discovery,
    record_operation_started,
    record_scan_failure,
    record_tail_bytes,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_agent_lifecycle",
    "record_discovery",
    "record_operation_started",
    "record_scan_failure",
    "record_tail_bytes",
]
