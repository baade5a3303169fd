import threading
from collections import defaultdict

_lock = threading.Lock()
_counters: dict[tuple, int] = defaultdict(int)
_timings: dict[tuple, list[float]] = defaultdict(list)

# Per-series cap on retained latency samples.
_MAX_SAMPLES = 500


def _series(name: str, labels: dict) -> tuple:
    return (name, tuple(sorted((k, str(v)) for k, v in labels.items())))


def incr(name: str, value: int = 1, **labels) -> None:
    with _lock:
        _counters[_series(name, labels)] += int(value)


def observe_ms(name: str, duration_ms: float, **labels) -> None:
    with _lock:
        samples = _timings[_series(name, labels)]
        samples.append(float(duration_ms))
        if len(samples) > _MAX_SAMPLES:
            del samples[: len(samples) - _MAX_SAMPLES]


def snapshot() -> dict:
    with _lock:
        counters = [
            {"name": name, "labels": dict(labels), "value": value}
            for (name, labels), value in _counters.items()
        ]
        timings = []
        for (name, labels), samples in _timings.items():
            if not samples:
                continue
            timings.append(
                {
                    "name": name,
                    "labels": dict(labels),
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 3),
                    "max_ms": round(max(samples), 3),
                }
            )
    return {"counters": counters, "timings": timings}


def reset() -> None:
    with _lock:
        _counters.clear()
        _timings.clear()
