"""In-process metrics for dispatching and executing connection checks."""

import logging
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


logger = logging.getLogger(__name__)


class MetricsCollector:
    """Collects counters, gauges and bounded histogram samples."""

    def __init__(self, max_samples_per_metric: int = 1000):
        """Initialize metrics collector.

        Args:
            max_samples_per_metric: Maximum histogram samples kept per metric
        """
        self.max_samples_per_metric = max_samples_per_metric

        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_samples_per_metric))
        self._descriptions: Dict[str, str] = {}

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None,
        description: Optional[str] = None
    ) -> None:
        """Increment a counter metric."""
        self._counters[self._make_metric_key(name, labels)] += value
        if description:
            self._descriptions[name] = description

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        description: Optional[str] = None
    ) -> None:
        """Set a gauge metric value."""
        self._gauges[self._make_metric_key(name, labels)] = value
        if description:
            self._descriptions[name] = description

    def record_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        description: Optional[str] = None
    ) -> None:
        """Record a histogram sample."""
        self._histograms[self._make_metric_key(name, labels)].append(value)
        if description:
            self._descriptions[name] = description

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._counters.get(self._make_metric_key(name, labels), 0.0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self._gauges.get(self._make_metric_key(name, labels))

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get histogram statistics."""
        values = sorted(self._histograms.get(self._make_metric_key(name, labels), []))
        if not values:
            return {}

        count = len(values)
        return {
            'count': count,
            'sum': sum(values),
            'min': values[0],
            'max': values[-1],
            'mean': sum(values) / count,
            'p50': values[int(count * 0.5)],
            'p95': values[int(count * 0.95)],
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all current metrics."""
        return {
            'counters': dict(self._counters),
            'gauges': dict(self._gauges),
            'histograms': {
                key: self.get_histogram_stats(*self._parse_metric_key(key))
                for key in self._histograms
            },
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    def export_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for kind, series in (('counter', self._counters), ('gauge', self._gauges)):
            for metric_key, value in series.items():
                name, labels = self._parse_metric_key(metric_key)
                if name in self._descriptions:
                    lines.append(f"# HELP {name} {self._descriptions[name]}")
                lines.append(f"# TYPE {name} {kind}")
                lines.append(f"{name}{self._format_prometheus_labels(labels)} {value}")

        for metric_key in self._histograms:
            name, labels = self._parse_metric_key(metric_key)
            stats = self.get_histogram_stats(name, labels)
            if not stats:
                continue
            labels_str = self._format_prometheus_labels(labels)
            if name in self._descriptions:
                lines.append(f"# HELP {name} {self._descriptions[name]}")
            lines.append(f"# TYPE {name} summary")
            lines.append(f"{name}_count{labels_str} {stats['count']}")
            lines.append(f"{name}_sum{labels_str} {stats['sum']}")

        return '\n'.join(lines) + '\n'

    def _make_metric_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        return f"{name}|{','.join(f'{k}={v}' for k, v in sorted(labels.items()))}"

    def _parse_metric_key(self, metric_key: str) -> Tuple[str, Dict[str, str]]:
        if '|' not in metric_key:
            return metric_key, {}

        name, labels_str = metric_key.split('|', 1)
        labels = {}
        for label_pair in labels_str.split(','):
            if '=' in label_pair:
                key, value = label_pair.split('=', 1)
                labels[key] = value
        return name, labels

    def _format_prometheus_labels(self, labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = []
        for key, value in sorted(labels.items()):
            escaped_value = value.replace('"', '\\"')
            parts.append(f'{key}="{escaped_value}"')
        return '{' + ','.join(parts) + '}'


class SchedulingMetrics:
    """Pre-defined metrics for the dispatcher and executor."""

    def __init__(self, collector: Optional[MetricsCollector] = None):
        self.collector = collector or MetricsCollector()

    def record_tick_duration(self, duration_ms: float) -> None:
        self.collector.record_histogram(
            'pulse_tick_duration_seconds',
            duration_ms / 1000.0,
            description='Time taken by each dispatcher tick'
        )

    def increment_claims(self, won: bool) -> None:
        self.collector.increment_counter(
            'pulse_claims_total',
            1.0,
            {'result': 'won' if won else 'conflict'},
            description='Claim attempts on due schedules'
        )

    def increment_runs_dispatched(self, trigger: str) -> None:
        self.collector.increment_counter(
            'pulse_runs_dispatched_total',
            1.0,
            {'trigger': trigger},
            description='Total number of runs handed to workers'
        )

    def increment_runs_completed(self, status: str) -> None:
        self.collector.increment_counter(
            'pulse_runs_completed_total',
            1.0,
            {'status': status},
            description='Total number of runs that reached a terminal status'
        )

    def set_queue_depth(self, depth: int) -> None:
        self.collector.set_gauge(
            'pulse_queue_depth',
            depth,
            description='Claimed runs waiting for a free worker'
        )

    def set_running_runs(self, count: int) -> None:
        self.collector.set_gauge(
            'pulse_runs_running',
            count,
            description='Number of runs currently executing'
        )

    def record_run_duration(self, duration_seconds: float, status: str) -> None:
        self.collector.record_histogram(
            'pulse_run_duration_seconds',
            duration_seconds,
            {'status': status},
            description='Duration of connection test runs'
        )

    def record_dispatch_error(self, error_type: str) -> None:
        self.collector.increment_counter(
            'pulse_dispatch_errors_total',
            1.0,
            {'error_type': error_type},
            description='Errors caught at the dispatch boundary'
        )
