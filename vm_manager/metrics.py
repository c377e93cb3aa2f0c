from collections import Counter, defaultdict
from threading import Lock


class Metrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._durations: defaultdict[str, float] = defaultdict(float)

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def observe(self, key: str, seconds: float) -> None:
        with self._lock:
            self._durations[f"{key}_seconds_total"] += seconds
            self._counters[f"{key}_count"] += 1

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return {**self._counters, **self._durations}


metrics = Metrics()
