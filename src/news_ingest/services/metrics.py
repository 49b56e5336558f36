"""In-process metrics with Prometheus text exposition."""

from __future__ import annotations

from threading import Lock

LabelKey = tuple[tuple[str, str], ...]
SeriesKey = tuple[str, LabelKey]


class MetricsRegistry:
    def __init__(self, *, namespace: str = "news_ingest") -> None:
        self._namespace = namespace
        self._lock = Lock()
        self._counters: dict[SeriesKey, float] = {}
        self._gauges: dict[SeriesKey, float] = {}

    def inc_counter(
        self, name: str, value: float = 1.0, *, labels: dict[str, str] | None = None
    ) -> None:
        if value < 0:
            raise ValueError("counters can only increase")
        key = _series_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    def set_gauge(
        self, name: str, value: float, *, labels: dict[str, str] | None = None
    ) -> None:
        key = _series_key(name, labels)
        with self._lock:
            self._gauges[key] = float(value)

    def counter_value(self, name: str, *, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get(_series_key(name, labels), 0.0)

    def gauge_value(self, name: str, *, labels: dict[str, str] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(_series_key(name, labels))

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()

    def render(self) -> str:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)

        lines: list[str] = []
        for kind, series in (("counter", counters), ("gauge", gauges)):
            for name, entries in _group_by_name(series).items():
                full_name = f"{self._namespace}_{name}" if self._namespace else name
                lines.append(f"# TYPE {full_name} {kind}")
                for labels, value in entries:
                    lines.append(f"{full_name}{_format_labels(labels)} {value}")
        return "\n".join(lines) + "\n"


def _series_key(name: str, labels: dict[str, str] | None) -> SeriesKey:
    if not labels:
        return name, ()
    return name, tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _group_by_name(data: dict[SeriesKey, float]) -> dict[str, list[tuple[LabelKey, float]]]:
    grouped: dict[str, list[tuple[LabelKey, float]]] = {}
    for (name, labels), value in data.items():
        grouped.setdefault(name, []).append((labels, value))
    for entries in grouped.values():
        entries.sort(key=lambda item: item[0])
    return dict(sorted(grouped.items()))


def _format_labels(labels: LabelKey) -> str:
    if not labels:
        return ""
    parts = []
    for key, value in labels:
        escaped = value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')
        parts.append(f'{key}="{escaped}"')
    return "{" + ",".join(parts) + "}"


metrics = MetricsRegistry()
