"""In-process counters, gauges and latency histograms.

Series are keyed by metric name plus a sorted label tuple. One lock guards
all stores: the session scheduler thread and request handlers record
concurrently. Exposed as JSON at /metrics.
"""

from bisect import bisect_left
from typing import Any, Dict, List, Optional, Sequence, Tuple
import threading


LabelKey = Tuple[Tuple[str, str], ...]

DEFAULT_BINS_MS: Tuple[float, ...] = (1, 5, 10, 50, 100, 250, 500, 1000)
# Cache round trips are usually well under a millisecond
FAST_BINS_MS: Tuple[float, ...] = (0.25, 0.5, 1, 2, 5, 10, 25, 50, 100)

_LOCK = threading.Lock()
_COUNTERS: Dict[Tuple[str, LabelKey], int] = {}
_GAUGES: Dict[Tuple[str, LabelKey], float] = {}
# name -> {"bins": tuple, "series": {labels: {"counts": [...], "sum_ms": float}}}
_HISTOGRAMS: Dict[str, Dict[str, Any]] = {}


def _labels_key(labels: Optional[Dict[str, Any]]) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def inc_counter(metric: str, labels: Optional[Dict[str, Any]] = None, value: int = 1) -> None:
    key = (metric, _labels_key(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0) + value


def get_counter(metric: str, labels: Optional[Dict[str, Any]] = None) -> int:
    with _LOCK:
        return _COUNTERS.get((metric, _labels_key(labels)), 0)


def set_gauge(metric: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    with _LOCK:
        _GAUGES[(metric, _labels_key(labels))] = float(value)


def record_timing(
    metric: str,
    value_ms: Optional[float],
    labels: Optional[Dict[str, Any]] = None,
    bins: Sequence[float] = DEFAULT_BINS_MS,
) -> None:
    """Add one observation. Bins are fixed by the first observation of a metric."""
    if value_ms is None:
        return
    lk = _labels_key(labels)
    with _LOCK:
        hist = _HISTOGRAMS.setdefault(metric, {"bins": tuple(bins), "series": {}})
        entry = hist["series"].get(lk)
        if entry is None:
            entry = {"counts": [0] * (len(hist["bins"]) + 1), "sum_ms": 0.0}
            hist["series"][lk] = entry
        # Last slot is the overflow bucket
        entry["counts"][bisect_left(hist["bins"], value_ms)] += 1
        entry["sum_ms"] += float(value_ms)


def _series(store: Dict[Tuple[str, LabelKey], Any]) -> List[Dict[str, Any]]:
    return [
        {"name": name, "labels": dict(labels), "value": value}
        for (name, labels), value in store.items()
    ]


def get_metrics_snapshot() -> Dict[str, Any]:
    with _LOCK:
        counters = _series(_COUNTERS)
        gauges = _series(_GAUGES)
        histograms = [
            {
                "name": name,
                "labels": dict(labels),
                "bins_ms": list(hist["bins"]),
                "counts": list(entry["counts"]),
                "sum_ms": entry["sum_ms"],
            }
            for name, hist in _HISTOGRAMS.items()
            for labels, entry in hist["series"].items()
        ]
    return {"counters": counters, "gauges": gauges, "histograms": histograms}


def reset_metrics() -> None:
    """Drop all recorded series. Used by tests."""
    with _LOCK:
        _COUNTERS.clear()
        _GAUGES.clear()
        _HISTOGRAMS.clear()
