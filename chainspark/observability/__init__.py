"""
Observability & Audit Layer

RESPONSIBILITY: Audit trail, metrics, logging setup
ALLOWED INPUTS: Records pushed by the other layers
OUTPUTS: AuditLogEntry lists, metric totals, report dicts

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Make decisions based on logged data

Library modules log through ``logging.getLogger(__name__)`` and never
install handlers; entry points call configure_logging().
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import hashlib
import logging
import threading

from ..contracts.base import Timestamp, ErrorCode
from ..contracts.errors import ValidationError
from ..contracts.events import AuditEventType, AuditLogEntry, MetricPoint


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler. Only entry points call this."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValidationError(
            f"unknown log level {level!r}", code=ErrorCode.INVALID_CONFIGURATION
        )
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"
    enable_audit: bool = True


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditLog:
    """
    Append-only audit trail shared by all layers of one client.
    Entries are never modified once collected.
    """

    def __init__(self):
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def record(
        self,
        layer: str,
        action: str,
        event_type: AuditEventType,
        entity_id: Optional[str] = None,
        metadata: Tuple[Tuple[str, str], ...] = ()
    ) -> AuditLogEntry:
        timestamp = Timestamp.now()
        with self._lock:
            sequence = len(self._entries) + 1
            entry_hash = hashlib.sha256(
                f"{layer}|{action}|{entity_id}|{sequence}|{timestamp.to_iso()}".encode()
            ).hexdigest()[:16]
            entry = AuditLogEntry(
                entry_id=f"audit_{entry_hash}",
                event_type=event_type,
                timestamp=timestamp,
                layer=layer,
                action=action,
                entity_id=entity_id,
                metadata=metadata,
            )
            self._entries.append(entry)
        return entry

    def get_entries(
        self,
        layer: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        entity_id: Optional[str] = None
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        with self._lock:
            entries = list(self._entries)
        if layer:
            entries = [e for e in entries if e.layer == layer]
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if entity_id:
            entries = [e for e in entries if e.entity_id == entity_id]
        return entries

    @property
    def entry_count(self) -> int:
        return len(self._entries)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class MetricDefinition:
    """Definition of a metric to collect."""
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


DEFAULT_METRICS = (
    MetricDefinition("chains_started_total", MetricType.COUNTER, "Chains created"),
    MetricDefinition("contributions_total", MetricType.COUNTER, "Fragments appended",
                     labels=("queued",)),
    MetricDefinition("chains_completed_total", MetricType.COUNTER, "Chains that reached Completed"),
    MetricDefinition("conflict_retries_total", MetricType.COUNTER, "Lost optimistic-concurrency races"),
    MetricDefinition("ops_queued_total", MetricType.COUNTER, "Writes absorbed into the offline queue",
                     labels=("kind",)),
    MetricDefinition("ops_replayed_total", MetricType.COUNTER, "Queued writes confirmed by Remote",
                     labels=("kind",)),
    MetricDefinition("ops_rejected_total", MetricType.COUNTER, "Queued writes permanently rejected",
                     labels=("kind",)),
    MetricDefinition("reconciliations_total", MetricType.COUNTER, "Remote documents reconciled"),
    MetricDefinition("reactions_total", MetricType.COUNTER, "Likes and dislikes recorded",
                     labels=("kind",)),
    MetricDefinition("comments_total", MetricType.COUNTER, "Comments appended"),
    MetricDefinition("pending_ops", MetricType.GAUGE, "Writes awaiting Remote confirmation"),
)


class MetricsCollector:
    """
    Append-only metric points; counters are summed, gauges report the
    latest value.
    """

    def __init__(self):
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        self._lock = threading.Lock()
        for definition in DEFAULT_METRICS:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        self._definitions[definition.name] = definition
        self._metrics.setdefault(definition.name, [])

    def record(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        label_tuple = tuple(sorted(labels.items())) if labels else ()
        point = MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=Timestamp.now(),
            labels=label_tuple,
        )
        with self._lock:
            self._metrics.setdefault(metric_name, []).append(point)

    def increment(self, metric_name: str, labels: Optional[Dict[str, str]] = None):
        self.record(metric_name, 1.0, labels)

    def total(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Sum of a counter, optionally restricted to points carrying labels."""
        wanted = set(labels.items()) if labels else set()
        with self._lock:
            points = list(self._metrics.get(metric_name, []))
        return sum(p.value for p in points if wanted <= set(p.labels))

    def latest(self, metric_name: str) -> Optional[float]:
        with self._lock:
            points = self._metrics.get(metric_name, [])
            return points[-1].value if points else None

    def summary(self) -> Dict[str, float]:
        result = {}
        for name, definition in self._definitions.items():
            if definition.metric_type is MetricType.GAUGE:
                result[name] = self.latest(name) or 0.0
            else:
                result[name] = self.total(name)
        return result


# =============================================================================
# HUB
# =============================================================================

class ObservabilityHub:
    """One audit log and one metrics collector per client."""

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()
        self._audit = AuditLog()
        self._metrics = MetricsCollector()

    def audit(
        self,
        layer: str,
        action: str,
        event_type: AuditEventType,
        entity_id: Optional[str] = None,
        **metadata: object
    ) -> Optional[AuditLogEntry]:
        if not self._config.enable_audit:
            return None
        return self._audit.record(
            layer=layer,
            action=action,
            event_type=event_type,
            entity_id=entity_id,
            metadata=tuple(sorted((k, str(v)) for k, v in metadata.items())),
        )

    def increment(self, metric_name: str, **labels: object):
        self._metrics.increment(
            metric_name, {k: str(v) for k, v in labels.items()} or None
        )

    def gauge(self, metric_name: str, value: float):
        self._metrics.record(metric_name, value)

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def generate_report(self) -> Dict[str, object]:
        entries = self._audit.get_entries()
        by_layer: Dict[str, int] = {}
        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
        return {
            'generated_at': Timestamp.now().to_iso(),
            'audit_entries': len(entries),
            'entries_by_layer': by_layer,
            'errors': len([e for e in entries if e.event_type is AuditEventType.ERROR]),
            'metrics': self._metrics.summary(),
        }


__all__ = [
    'AuditLog',
    'MetricsCollector',
    'MetricDefinition',
    'MetricType',
    'ObservabilityConfig',
    'ObservabilityHub',
    'configure_logging',
]
