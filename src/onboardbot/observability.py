"""Metrics emitted through logging, optionally mirrored to a Prometheus registry."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter as PromCounter,
    Histogram as PromHistogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")
_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_PATTERN = re.compile(r"(?:(?:\+\d{1,3}[\s.-]?)?(?:\(\d{2,4}\)|\d{2,4})[\s.-]?){2,4}\d{2,4}")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def redact_text(value: str, *, limit: int = 80) -> str:
    """Mask emails and phone numbers and clip ``value`` for log lines."""

    text = _EMAIL_PATTERN.sub("[email]", value or "")
    text = _PHONE_PATTERN.sub("[phone]", text)
    text = _WHITESPACE_PATTERN.sub(" ", text).strip()
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


class MetricsRecorder:
    """Emit counters and timings as ``<namespace>.<metric> key=value`` log lines."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "onboardbot",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "onboardbot"
        self._logger = logger or logging.getLogger("onboardbot.metrics")
        self._prometheus_enabled = bool(prometheus_enabled)
        if registry is None and self._prometheus_enabled:
            registry = CollectorRegistry()
        self._prom_registry = registry
        self._prom_metrics: dict[Tuple[str, str, Tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._prom_registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._prom_registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        if not self._enabled:
            return
        value = int(value)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom_metric("counter", metric, clean_tags).inc(float(max(value, 0)))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs."""

        if not self._enabled:
            return
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom_metric("histogram", metric, clean_tags).observe(max(duration_seconds, 0.0))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any) -> Iterator[None]:
        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={self._stringify(value)}" for key, value in sorted(fields.items())]
        segments.extend(f"{key}={self._stringify(value)}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _prom_metric(self, kind: str, metric: str, tags: dict[str, Any]) -> Any:
        label_keys = tuple(sorted(tags))
        label_names = tuple(self._sanitize_label(name) for name in label_keys)
        key = (kind, metric, label_names)
        instrument = self._prom_metrics.get(key)
        if instrument is None:
            factory = PromCounter if kind == "counter" else PromHistogram
            instrument = factory(
                self._prom_metric_name(metric),
                f"{metric} {kind}",
                labelnames=list(label_names),
                registry=self._prom_registry,
            )
            self._prom_metrics[key] = instrument
        if not label_names:
            return instrument
        values = {name: self._stringify(tags[key]) for name, key in zip(label_names, label_keys)}
        return instrument.labels(**values)

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        return _PROM_NAME_RE.sub("_", label) or "label"

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, float):
            return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
        return str(value)
