from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_BATCH_PARTITION_BUCKETS_MS = (1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 5000.0, 30000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id and request_id != "n/a":
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total: Dict[tuple[str, str, str], int] = {}
            self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}
            self._item_transition_total: Dict[tuple[str, str], int] = {}
            self._batch_run_total: Dict[tuple[str, str], int] = {}
            self._batch_item_total: Dict[tuple[str, str], int] = {}
            self._batch_partition_duration_ms = self._new_histogram_state(_BATCH_PARTITION_BUCKETS_MS)
            self._domain_event_emitted_total: Dict[str, int] = {}

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _increment(counter: dict, key) -> None:
        counter[key] = int(counter.get(key, 0)) + 1

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            self._increment(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_item_transition(self, action: str, outcome: str) -> None:
        with self._lock:
            self._increment(self._item_transition_total, (str(action or "unknown"), str(outcome or "unknown")))

    def observe_batch(self, action: str, succeeded: int, failed: int) -> None:
        action_key = str(action or "unknown")
        if failed and succeeded:
            outcome = "partial"
        elif failed:
            outcome = "failed"
        else:
            outcome = "succeeded"
        with self._lock:
            self._increment(self._batch_run_total, (action_key, outcome))
            for result, count in (("succeeded", succeeded), ("failed", failed)):
                key = (action_key, result)
                self._batch_item_total[key] = int(self._batch_item_total.get(key, 0)) + max(0, int(count))

    def observe_batch_partition(self, duration_ms: float) -> None:
        with self._lock:
            self._observe_histogram(self._batch_partition_duration_ms, duration_ms, _BATCH_PARTITION_BUCKETS_MS)

    def observe_domain_event_emitted(self, event_type: str) -> None:
        with self._lock:
            self._increment(self._domain_event_emitted_total, str(event_type or "unknown"))

    def snapshot(self) -> dict:
        with self._lock:
            transitions_by_action: Dict[str, int] = {}
            for (action, _outcome), value in self._item_transition_total.items():
                transitions_by_action[action] = transitions_by_action.get(action, 0) + int(value)
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "item_transitions": {
                    "total": int(sum(self._item_transition_total.values())),
                    "by_action": dict(sorted(transitions_by_action.items())),
                },
                "batches": {
                    "total": int(sum(self._batch_run_total.values())),
                    "partitions": int(self._batch_partition_duration_ms["count"]),
                },
                "domain_events": {
                    "emitted_total": int(sum(self._domain_event_emitted_total.values())),
                    "by_type": dict(sorted(self._domain_event_emitted_total.items())),
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": int(value)}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route, **json.loads(json.dumps(state))}
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "item_transition_total": [
                    {"action": action, "outcome": outcome, "value": int(value)}
                    for (action, outcome), value in sorted(self._item_transition_total.items())
                ],
                "batch_run_total": [
                    {"action": action, "outcome": outcome, "value": int(value)}
                    for (action, outcome), value in sorted(self._batch_run_total.items())
                ],
                "batch_item_total": [
                    {"action": action, "result": result, "value": int(value)}
                    for (action, result), value in sorted(self._batch_item_total.items())
                ],
                "batch_partition_duration_ms": json.loads(json.dumps(self._batch_partition_duration_ms)),
                "domain_event_emitted_total": [
                    {"event_type": event_type, "value": int(value)}
                    for event_type, value in sorted(self._domain_event_emitted_total.items())
                ],
            }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_item_transition(action: str, outcome: str) -> None:
    _METRICS.observe_item_transition(action, outcome)


def observe_batch(action: str, succeeded: int, failed: int) -> None:
    _METRICS.observe_batch(action, succeeded, failed)


def observe_batch_partition(duration_ms: float) -> None:
    _METRICS.observe_batch_partition(duration_ms)


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def prometheus_metrics_text() -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={"method": sample["method"], "route": sample["route"], "status": sample["status"]},
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    lines.append("# HELP request_item_transition_total Request item transitions by action and outcome.")
    lines.append("# TYPE request_item_transition_total counter")
    for sample in snapshot["item_transition_total"]:
        lines.append(
            _prom_line(
                "request_item_transition_total",
                int(sample["value"]),
                labels={"action": sample["action"], "outcome": sample["outcome"]},
            )
        )

    lines.append("# HELP batch_run_total Batch runs by action and outcome.")
    lines.append("# TYPE batch_run_total counter")
    for sample in snapshot["batch_run_total"]:
        lines.append(
            _prom_line(
                "batch_run_total",
                int(sample["value"]),
                labels={"action": sample["action"], "outcome": sample["outcome"]},
            )
        )

    lines.append("# HELP batch_item_total Items processed by batch runs, by action and result.")
    lines.append("# TYPE batch_item_total counter")
    for sample in snapshot["batch_item_total"]:
        lines.append(
            _prom_line(
                "batch_item_total",
                int(sample["value"]),
                labels={"action": sample["action"], "result": sample["result"]},
            )
        )

    lines.append("# HELP batch_partition_duration_ms Batch partition duration in milliseconds.")
    lines.append("# TYPE batch_partition_duration_ms histogram")
    _prom_histogram(lines, "batch_partition_duration_ms", snapshot["batch_partition_duration_ms"])

    lines.append("# HELP domain_event_emitted_total Domain events emitted by type.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for sample in snapshot["domain_event_emitted_total"]:
        lines.append(
            _prom_line(
                "domain_event_emitted_total",
                int(sample["value"]),
                labels={"event_type": sample["event_type"]},
            )
        )

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
