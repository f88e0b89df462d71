from __future__ import annotations

import logging
import secrets
from typing import Any, Literal

from statsd import StatsClient

from leadsignal.config import Settings, settings

logger = logging.getLogger("leadsignal.metrics")

MetricType = Literal["timing", "gauge", "counter"]


class _StatsdSink:
    """Forwards already-sampled metrics to a StatsD daemon over UDP."""

    def __init__(self, host: str, port: int) -> None:
        self._client = StatsClient(host=host, port=port, prefix="")

    def send(self, metric_type: MetricType, name: str, value: float, rate: float) -> None:
        if metric_type == "timing":
            self._client.timing(name, value, rate=rate)
        elif metric_type == "gauge":
            self._client.gauge(name, value)
        else:
            self._client.incr(name, value, rate=rate)


class MetricsReporter:
    """Emits verification metrics as structured log lines and, optionally, to StatsD."""

    def __init__(
        self,
        *,
        namespace: str = "verification",
        backend: str = "stdout",
        sample_rate: float = 1.0,
        disabled: bool = False,
        statsd_host: str = "127.0.0.1",
        statsd_port: int = 8125,
    ) -> None:
        self.namespace = namespace or "verification"
        self.backend = (backend or "stdout").lower()
        self.sample_rate = max(0.0, min(sample_rate, 1.0))
        self.disabled = disabled
        self._sink: _StatsdSink | None = None
        if self.backend == "statsd" and not disabled:
            try:
                self._sink = _StatsdSink(statsd_host, statsd_port)
            except OSError as exc:  # pragma: no cover - socket setup failure
                self._backend_failed("statsd.init", exc)

    @classmethod
    def from_settings(cls, config: Settings) -> MetricsReporter:
        return cls(
            namespace=config.metrics_namespace,
            backend=config.metrics_backend,
            sample_rate=config.metrics_sample_rate,
            disabled=config.metrics_disable,
            statsd_host=config.metrics_statsd_host,
            statsd_port=config.metrics_statsd_port,
        )

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("timing", metric, value_ms, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("gauge", metric, value, tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._record("counter", metric, value, tags)

    def qualified_name(self, metric: str) -> str:
        name = (metric or "").strip()
        if not name:
            return self.namespace
        if name.startswith(f"{self.namespace}."):
            return name
        return f"{self.namespace}.{name}"

    def _record(
        self, metric_type: MetricType, metric: str, value: float | None, tags: dict[str, Any] | None
    ) -> None:
        if self.disabled or value is None:
            return
        # Gauges are absolute readings and are never sampled.
        rate = 1.0 if metric_type == "gauge" else self.sample_rate
        if rate < 1.0 and secrets.randbelow(1_000_000) / 1_000_000 > rate:
            return

        name = self.qualified_name(metric)
        event: dict[str, Any] = {
            "metric": name,
            "type": metric_type,
            "value": round(float(value), 4),
            "tags": dict(tags or {}),
        }
        if rate < 1.0:
            event["sample_rate"] = round(rate, 4)
        logger.debug("verification.metric", extra={"metrics": event})

        if self._sink is None:
            return
        try:
            self._sink.send(metric_type, name, value, rate)
        except OSError as exc:  # pragma: no cover - UDP send failure
            self._backend_failed(name, exc)

    def _backend_failed(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self.backend, "error": type(exc).__name__},
        )


metrics = MetricsReporter.from_settings(settings)
