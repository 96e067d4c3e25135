from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Mapping


class MetricRegistry:
    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._counters[key] += value

    @contextmanager
    def timer(self, name: str, labels: Mapping[str, str] | None = None) -> Iterator[None]:
        """Accumulate elapsed milliseconds into ``{name}_ms_total`` and count calls in ``{name}_count``."""
        started = time.perf_counter()
        try:
            yield
        finally:
            took_ms = int((time.perf_counter() - started) * 1000)
            self.inc(f"{name}_ms_total", labels, value=max(0, took_ms))
            self.inc(f"{name}_count", labels)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    @staticmethod
    def _format_key(name: str, labels: Mapping[str, str] | None) -> str:
        if not labels:
            return name
        parts = [f"{k}={labels[k]}" for k in sorted(labels.keys())]
        return f"{name}{{{','.join(parts)}}}"


metrics = MetricRegistry()
