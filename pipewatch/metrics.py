# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - METRICS STORE
# =============================================================================
"""
Metrics Store

Bounded per-name time series with two-tier bottleneck detection, a cheap
trend heuristic, derived signals and periodic performance snapshots.
Latest values are mirrored into a Prometheus registry for scraping.

Features:
    - Ring buffer per metric name (oldest sample evicted)
    - Warning/critical thresholds per metric class (cpu, memory, disk,
      response_time, error_rate)
    - Trend: half-window average comparison, not a forecast
    - Derived signals registered as callables and recorded on collect()
    - Advisory analytics: health, score, capacity planning

Usage:
    store = MetricsStore(MetricsConfig(), clock=clock, sampler=sampler)
    store.record("api.response_time", "timer", 1250.0, unit="ms")
    store.detect_bottleneck("api.response_time")
    store.trend("api.response_time")
"""

from __future__ import annotations

import logging
import math
import numbers
import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union, TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest
from prometheus_client import start_http_server as prometheus_start_http_server

from pipewatch.bus import DomainEventType, EventBus
from pipewatch.clock import Clock, PeriodicTask, SystemClock
from pipewatch.config import MetricsConfig, ThresholdPair
from pipewatch.exceptions import ValidationError

if TYPE_CHECKING:
    from pipewatch.event_log import StructuredEventLog


logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMER = "timer"
    RATE = "rate"


@dataclass(frozen=True)
class Metric:
    name: str
    type: MetricType
    value: float
    timestamp: datetime
    unit: str = ""
    tags: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "value": self.value,
            "unit": self.unit,
            "timestamp": self.timestamp.isoformat(),
            "tags": dict(self.tags),
        }


class BottleneckSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(BottleneckSeverity).index(self)


@dataclass(frozen=True)
class Bottleneck:
    metric: str
    metric_class: str
    severity: BottleneckSeverity
    current_value: float
    threshold: float
    impact: str
    recommendation: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "metric_class": self.metric_class,
            "severity": self.severity.value,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "impact": self.impact,
            "recommendation": self.recommendation,
            "timestamp": self.timestamp.isoformat(),
        }


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"
    VOLATILE = "volatile"


@dataclass(frozen=True)
class Trend:
    """Half-window comparison. A quick signal, not a statistical forecast."""
    metric: str
    direction: TrendDirection
    change_rate: float
    confidence: float
    prediction: float
    sample_count: int


@dataclass(frozen=True)
class ResourceSample:
    cpu_percent: float = 0.0
    memory_used: float = 0.0
    memory_total: float = 0.0
    disk_used: float = 0.0
    disk_total: float = 0.0
    network_bytes: float = 0.0

    @property
    def memory_percent(self) -> float:
        return self.memory_used / self.memory_total * 100.0 if self.memory_total else 0.0

    @property
    def disk_percent(self) -> float:
        return self.disk_used / self.disk_total * 100.0 if self.disk_total else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "cpu_percent": self.cpu_percent,
            "memory_used": self.memory_used,
            "memory_total": self.memory_total,
            "memory_percent": self.memory_percent,
            "disk_used": self.disk_used,
            "disk_total": self.disk_total,
            "disk_percent": self.disk_percent,
            "network_bytes": self.network_bytes,
        }


@dataclass(frozen=True)
class PerformanceSnapshot:
    id: str
    timestamp: datetime
    resources: Optional[ResourceSample]
    metrics: Dict[str, float]
    bottlenecks: List[Bottleneck]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "resources": self.resources.to_dict() if self.resources else None,
            "metrics": dict(self.metrics),
            "bottlenecks": [b.to_dict() for b in self.bottlenecks],
        }


# =============================================================================
# RESOURCE SAMPLING
# =============================================================================

class ResourceSampler(ABC):
    """Supplies host resource readings. pipewatch never measures the OS itself."""

    @abstractmethod
    def sample(self) -> ResourceSample:
        pass


class StaticResourceSampler(ResourceSampler):
    """Returns whatever sample was last set. Used in tests and replays."""

    def __init__(self, sample: Optional[ResourceSample] = None):
        self._sample = sample or ResourceSample()
        self._lock = threading.Lock()

    def set(self, sample: Optional[ResourceSample] = None, **values: float) -> None:
        with self._lock:
            if sample is None:
                current = self._sample.to_dict()
                merged = {k: current[k] for k in (
                    "cpu_percent", "memory_used", "memory_total",
                    "disk_used", "disk_total", "network_bytes")}
                merged.update(values)
                sample = ResourceSample(**merged)
            self._sample = sample

    def sample(self) -> ResourceSample:
        with self._lock:
            return self._sample


# =============================================================================
# BOTTLENECK DETECTOR
# =============================================================================

_CLASS_TEXT = {
    "cpu": ("CPU saturation degrades throughput",
            "Scale up CPU or optimize CPU-intensive operations"),
    "memory": ("Memory pressure risks exhaustion",
               "Scale up memory or reduce memory usage"),
    "disk": ("Disk is close to full",
             "Free disk space or add capacity"),
    "response_time": ("Response times are slower than expected",
                      "Optimize slow operations or scale resources"),
    "error_rate": ("Error rate is elevated",
                   "Inspect recent errors and failing dependencies"),
}

_WARNING_SEVERITY = {
    "cpu": BottleneckSeverity.HIGH,
    "memory": BottleneckSeverity.HIGH,
    "disk": BottleneckSeverity.HIGH,
    "response_time": BottleneckSeverity.MEDIUM,
    "error_rate": BottleneckSeverity.MEDIUM,
}


class BottleneckDetector:
    """Two-tier threshold check per metric class."""

    def __init__(self, thresholds: Dict[str, ThresholdPair]):
        self.thresholds = dict(thresholds)

    @staticmethod
    def metric_class(name: str) -> Optional[str]:
        lowered = name.lower()
        if "error" in lowered and "rate" in lowered:
            return "error_rate"
        if "cpu" in lowered:
            return "cpu"
        if "memory" in lowered or "mem_" in lowered:
            return "memory"
        if "disk" in lowered:
            return "disk"
        if any(k in lowered for k in ("response", "duration", "latency")):
            return "response_time"
        return None

    def _resolve(self, name: str) -> Tuple[Optional[str], Optional[ThresholdPair]]:
        if name in self.thresholds:
            return name, self.thresholds[name]
        cls = self.metric_class(name)
        if cls is None:
            return None, None
        return cls, self.thresholds.get(cls)

    def detect(self, metric: Metric) -> Optional[Bottleneck]:
        return self.check(metric.name, metric.value, metric.timestamp)

    def check(self, name: str, value: float, timestamp: datetime) -> Optional[Bottleneck]:
        cls, pair = self._resolve(name)
        if pair is None:
            return None
        impact, recommendation = _CLASS_TEXT.get(
            cls, (f"{name} is above its threshold", f"Investigate {name}")
        )
        if value >= pair.critical:
            return Bottleneck(name, cls, BottleneckSeverity.CRITICAL, value, pair.critical,
                              impact, recommendation, timestamp)
        if value >= pair.warning:
            severity = _WARNING_SEVERITY.get(cls, BottleneckSeverity.HIGH)
            return Bottleneck(name, cls, severity, value, pair.warning,
                              impact, recommendation, timestamp)
        return None

    def detect_resources(self, sample: ResourceSample, timestamp: datetime) -> List[Bottleneck]:
        found = []
        for name, value in (("system.cpu_percent", sample.cpu_percent),
                            ("system.memory_percent", sample.memory_percent),
                            ("system.disk_percent", sample.disk_percent)):
            bottleneck = self.check(name, value, timestamp)
            if bottleneck:
                found.append(bottleneck)
        return found


# =============================================================================
# METRICS STORE
# =============================================================================

SignalFn = Callable[[], float]


class MetricsStore:
    """Concurrent metric ring buffers plus detection and analytics."""

    def __init__(
        self,
        config: Optional[MetricsConfig] = None,
        clock: Optional[Clock] = None,
        sampler: Optional[ResourceSampler] = None,
        event_log: Optional["StructuredEventLog"] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.config = config or MetricsConfig()
        self.clock = clock or SystemClock()
        self.sampler = sampler
        self.event_log = event_log
        self.bus = bus
        self.detector = BottleneckDetector(self.config.thresholds)

        self._series: Dict[str, Deque[Metric]] = {}
        self._lock = threading.Lock()
        self._bottlenecks: Dict[str, Bottleneck] = {}
        self._signals: Dict[str, Tuple[SignalFn, MetricType, str]] = {}
        self._signals_lock = threading.Lock()
        self._snapshots: Deque[PerformanceSnapshot] = deque(maxlen=self.config.max_snapshots)
        self._latest_resources: Optional[ResourceSample] = None
        self._collect_task = PeriodicTask(
            "metrics-collect", self.config.collection_interval, self.collect, self.clock
        )

        self.registry = registry or CollectorRegistry()
        self._value_gauge = Gauge(
            "pipewatch_metric_value", "Latest recorded value per metric", ["name"],
            registry=self.registry,
        )
        self._samples_total = Counter(
            "pipewatch_metric_samples", "Recorded metric samples", ["name", "type"],
            registry=self.registry,
        )

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record(
        self,
        name: str,
        type: Union[MetricType, str],
        value: float,
        unit: str = "",
        tags: Optional[Dict[str, str]] = None,
    ) -> Metric:
        metric_type = self._check_type(name, type)
        value = self._check_value(name, value)
        return self._append(name, metric_type, unit, tags, lambda previous: value)

    def _check_type(self, name: str, type: Union[MetricType, str]) -> MetricType:
        if not name or not isinstance(name, str):
            raise ValidationError("Metric name must be a non-empty string")
        try:
            return MetricType(type)
        except ValueError:
            raise ValidationError(f"Unknown metric type: {type!r}")

    @staticmethod
    def _check_value(name: str, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ValidationError(f"Metric {name} value must be numeric, got {value!r}")
        value = float(value)
        if not math.isfinite(value):
            raise ValidationError(f"Metric {name} value must be finite, got {value}")
        return value

    def _append(
        self,
        name: str,
        metric_type: MetricType,
        unit: str,
        tags: Optional[Dict[str, str]],
        next_value: Callable[[Optional[float]], float],
    ) -> Metric:
        """Append one sample; *next_value* sees the previous value under the series lock."""
        timestamp = self.clock.now()
        with self._lock:
            series = self._series.get(name)
            if series is None:
                series = self._series[name] = deque(maxlen=self.config.max_samples)
            value = next_value(series[-1].value if series else None)
            metric = Metric(name=name, type=metric_type, value=value,
                            timestamp=timestamp, unit=unit, tags=dict(tags or {}))
            series.append(metric)

        self._value_gauge.labels(name=name).set(value)
        self._samples_total.labels(name=name, type=metric_type.value).inc()
        self._update_bottleneck(metric)
        return metric

    def _update_bottleneck(self, metric: Metric) -> None:
        bottleneck = self.detector.detect(metric)
        with self._lock:
            previous = self._bottlenecks.get(metric.name)
            if bottleneck is None:
                self._bottlenecks.pop(metric.name, None)
                return
            self._bottlenecks[metric.name] = bottleneck
        if previous is not None and previous.severity.rank >= bottleneck.severity.rank:
            return

        if self.bus:
            self.bus.publish(DomainEventType.BOTTLENECK_DETECTED, metric=metric.name,
                             severity=bottleneck.severity.value, value=metric.value,
                             threshold=bottleneck.threshold)
        if self.event_log:
            self.event_log.warn(
                f"Performance bottleneck detected: {metric.name}",
                operation="metrics",
                tags=["bottleneck", bottleneck.severity.value],
                metadata={"type": "performance", **bottleneck.to_dict()},
            )

    def counter(self, name: str, increment: float = 1.0, unit: str = "",
                tags: Optional[Dict[str, str]] = None) -> Metric:
        """Cumulative counter: records previous total plus increment."""
        metric_type = self._check_type(name, MetricType.COUNTER)
        increment = self._check_value(name, increment)
        return self._append(name, metric_type, unit, tags,
                            lambda previous: (previous or 0.0) + increment)

    def gauge(self, name: str, value: float, unit: str = "",
              tags: Optional[Dict[str, str]] = None) -> Metric:
        return self.record(name, MetricType.GAUGE, value, unit, tags)

    def timer(self, name: str, duration_ms: float,
              tags: Optional[Dict[str, str]] = None) -> Metric:
        return self.record(name, MetricType.TIMER, duration_ms, "ms", tags)

    def rate(self, name: str, value: float, unit: str = "per_second",
             tags: Optional[Dict[str, str]] = None) -> Metric:
        return self.record(name, MetricType.RATE, value, unit, tags)

    def histogram(self, name: str, value: float, unit: str = "",
                  tags: Optional[Dict[str, str]] = None) -> Metric:
        return self.record(name, MetricType.HISTOGRAM, value, unit, tags)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def latest(self, name: str) -> Optional[Metric]:
        with self._lock:
            series = self._series.get(name)
            return series[-1] if series else None

    def latest_value(self, name: str) -> Optional[float]:
        metric = self.latest(name)
        return metric.value if metric else None

    def series(self, name: str, limit: Optional[int] = None) -> List[Metric]:
        """Samples in arrival order."""
        with self._lock:
            samples = list(self._series.get(name, ()))
        return samples[-limit:] if limit else samples

    def detect_bottleneck(self, name: str) -> Optional[Bottleneck]:
        metric = self.latest(name)
        return self.detector.detect(metric) if metric else None

    def bottlenecks(self) -> List[Bottleneck]:
        """Recomputed from the latest sample of every metric and the latest resources."""
        with self._lock:
            latest = [s[-1] for s in self._series.values() if s]
            resources = self._latest_resources
        found = [b for b in (self.detector.detect(m) for m in latest) if b]
        if resources is not None:
            seen = {b.metric for b in found}
            found.extend(b for b in self.detector.detect_resources(resources, self.clock.now())
                         if b.metric not in seen)
        found.sort(key=lambda b: b.severity.rank, reverse=True)
        return found

    def trend(self, name: str) -> Optional[Trend]:
        """
        Compare the averages of the two halves of the most recent window.

        > +10% degrading, < -10% improving, otherwise volatile above 5%
        and stable below. The prediction just extends the change rate one
        step; treat it as a hint, not a forecast.
        """
        with self._lock:
            values = [m.value for m in self._series.get(name, ())]
        if len(values) < self.config.min_trend_samples:
            return None

        window = values[-self.config.trend_window:]
        half = len(window) // 2
        first, second = window[:half], window[half:]
        first_avg = sum(first) / len(first)
        second_avg = sum(second) / len(second)

        if first_avg == 0:
            change_rate = 0.0 if second_avg == 0 else math.copysign(100.0, second_avg)
        else:
            change_rate = (second_avg - first_avg) / abs(first_avg) * 100.0

        if change_rate > 10:
            direction = TrendDirection.DEGRADING
        elif change_rate < -10:
            direction = TrendDirection.IMPROVING
        elif abs(change_rate) > 5:
            direction = TrendDirection.VOLATILE
        else:
            direction = TrendDirection.STABLE

        return Trend(
            metric=name,
            direction=direction,
            change_rate=change_rate,
            confidence=min(abs(change_rate) / 10.0, 1.0),
            prediction=second_avg + change_rate / 100.0 * second_avg,
            sample_count=len(values),
        )

    def trends(self) -> Dict[str, Trend]:
        result = {}
        for name in self.names():
            t = self.trend(name)
            if t is not None:
                result[name] = t
        return result

    # -------------------------------------------------------------------------
    # Signals and snapshots
    # -------------------------------------------------------------------------

    def register_signal(
        self,
        name: str,
        fn: SignalFn,
        type: Union[MetricType, str] = MetricType.GAUGE,
        unit: str = "",
    ) -> None:
        """Register a derived numeric signal recorded on every collect()."""
        with self._signals_lock:
            self._signals[name] = (fn, MetricType(type), unit)

    def unregister_signal(self, name: str) -> None:
        with self._signals_lock:
            self._signals.pop(name, None)

    def _sample_resources(self) -> Optional[ResourceSample]:
        if self.sampler is None:
            return None
        try:
            sample = self.sampler.sample()
        except Exception as e:
            logger.warning(f"Resource sampler failed: {e}")
            return None
        with self._lock:
            self._latest_resources = sample
        return sample

    def snapshot(self) -> PerformanceSnapshot:
        """Latest resource sample merged with the latest value of every metric."""
        resources = self._sample_resources()
        if resources is None:
            with self._lock:
                resources = self._latest_resources
        with self._lock:
            values = {name: s[-1].value for name, s in self._series.items() if s}
        return PerformanceSnapshot(
            id=uuid.uuid4().hex,
            timestamp=self.clock.now(),
            resources=resources,
            metrics=values,
            bottlenecks=self.bottlenecks(),
        )

    def collect(self) -> PerformanceSnapshot:
        """Record signals and resources, then snapshot into history."""
        with self._signals_lock:
            signals = list(self._signals.items())
        for name, (fn, metric_type, unit) in signals:
            try:
                self.record(name, metric_type, fn(), unit)
            except Exception as e:
                logger.warning(f"Signal {name} failed: {e}")

        resources = self._sample_resources()
        if resources is not None:
            self.record("system.cpu_percent", MetricType.GAUGE, resources.cpu_percent, "%")
            self.record("system.memory_percent", MetricType.GAUGE, resources.memory_percent, "%")
            self.record("system.disk_percent", MetricType.GAUGE, resources.disk_percent, "%")

        snap = self.snapshot()
        with self._lock:
            self._snapshots.append(snap)
        if self.bus:
            self.bus.publish(DomainEventType.SNAPSHOT_COLLECTED, snapshot_id=snap.id,
                             bottlenecks=len(snap.bottlenecks))
        return snap

    def snapshots(self, limit: Optional[int] = None) -> List[PerformanceSnapshot]:
        with self._lock:
            snaps = list(self._snapshots)
        return snaps[-limit:] if limit else snaps

    # -------------------------------------------------------------------------
    # Analytics (advisory)
    # -------------------------------------------------------------------------

    def analytics(self) -> Dict[str, Any]:
        """
        Health, score, capacity planning and optimization hints.

        Capacity cost figures come from a fixed table and only indicate
        relative scale.
        """
        with self._lock:
            resources = self._latest_resources
        bottlenecks = self.bottlenecks()
        trends = self.trends()
        by_severity = {s: sum(1 for b in bottlenecks if b.severity is s) for s in BottleneckSeverity}

        cpu = resources.cpu_percent if resources else None
        memory = resources.memory_percent if resources else None

        if resources is None:
            health = "fair"
        elif by_severity[BottleneckSeverity.CRITICAL]:
            health = "critical"
        elif by_severity[BottleneckSeverity.HIGH] > 2:
            health = "poor"
        elif by_severity[BottleneckSeverity.HIGH] or cpu > 80:
            health = "fair"
        elif cpu < 50 and memory < 70:
            health = "excellent"
        else:
            health = "good"

        if resources is None:
            score = 50.0
        else:
            score = 100.0
            score -= by_severity[BottleneckSeverity.CRITICAL] * 20
            score -= by_severity[BottleneckSeverity.HIGH] * 10
            score -= by_severity[BottleneckSeverity.MEDIUM] * 5
            score -= 15 if cpu > 90 else 10 if cpu > 70 else 0
            score -= 15 if memory > 90 else 10 if memory > 80 else 0
            score = max(0.0, min(100.0, score))

        utilization = max(cpu, memory) if resources else 0.0
        cpu_trend = next((t for n, t in trends.items() if "cpu" in n), None)
        growth = abs(cpu_trend.change_rate) if cpu_trend else 0.0
        if resources is None:
            scaling = "none"
        elif utilization > 90 or growth > 20:
            scaling = "both"
        elif utilization > 80 or growth > 10:
            scaling = "horizontal"
        elif utilization > 70:
            scaling = "vertical"
        else:
            scaling = "none"

        optimizations = []
        if resources is not None and cpu > 70:
            optimizations.append({"area": "cpu", "current": cpu, "potential_improvement_percent": 20,
                                  "effort": "medium",
                                  "recommendation": "Optimize CPU-intensive operations and consider caching"})
        if resources is not None and memory > 80:
            optimizations.append({"area": "memory", "current": memory, "potential_improvement_percent": 25,
                                  "effort": "high",
                                  "recommendation": "Reduce memory usage and reuse buffers"})
        slow = [b for b in bottlenecks if b.metric_class == "response_time"]
        if slow:
            optimizations.append({"area": "response_time", "current": max(b.current_value for b in slow),
                                  "potential_improvement_percent": 40, "effort": "medium",
                                  "recommendation": "Optimize slow operations and add caching"})

        return {
            "overall_health": health,
            "performance_score": score,
            "bottlenecks": [b.to_dict() for b in bottlenecks],
            "trends": {n: t.direction.value for n, t in trends.items()},
            "capacity_planning": {
                "current_utilization": utilization,
                "projected_growth": growth,
                "recommended_scaling": scaling,
                "estimated_cost": {"both": 1000, "horizontal": 500, "vertical": 300}.get(scaling, 0),
                "advisory": True,
            },
            "optimization_opportunities": optimizations,
        }

    # -------------------------------------------------------------------------
    # Export and lifecycle
    # -------------------------------------------------------------------------

    def render_prometheus(self) -> str:
        return generate_latest(self.registry).decode("utf-8")

    def start_http_server(self, port: int = 9108) -> None:
        """Expose this store's registry for Prometheus scraping."""
        prometheus_start_http_server(port, registry=self.registry)
        logger.info(f"Metrics HTTP server started on port {port}")

    def start(self) -> None:
        self._collect_task.start()

    def stop(self) -> None:
        self._collect_task.stop()

    @property
    def collect_task(self) -> PeriodicTask:
        return self._collect_task

    def update_config(self, **changes: Any) -> None:
        for key in changes:
            if not hasattr(self.config, key):
                raise ValidationError(f"Unknown metrics option: {key}")
        if "collection_interval" in changes:
            self._collect_task.reschedule(float(changes["collection_interval"]))
        if "thresholds" in changes:
            merged = dict(self.config.thresholds)
            for name, value in changes["thresholds"].items():
                merged[name] = ThresholdPair.from_value(name, value)
            changes["thresholds"] = merged
            self.detector = BottleneckDetector(merged)
        for key, value in changes.items():
            setattr(self.config, key, value)

    def destroy(self) -> None:
        self._collect_task.stop()
        with self._lock:
            self._series.clear()
            self._bottlenecks.clear()
            self._snapshots.clear()
            self._latest_resources = None
        with self._signals_lock:
            self._signals.clear()


__all__ = [
    "MetricType",
    "Metric",
    "BottleneckSeverity",
    "Bottleneck",
    "TrendDirection",
    "Trend",
    "ResourceSample",
    "PerformanceSnapshot",
    "ResourceSampler",
    "StaticResourceSampler",
    "BottleneckDetector",
    "MetricsStore",
]
