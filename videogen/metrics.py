"""
Thread-safe in-memory metrics for the generation worker.

  - Traffic:     submissions and admission denials by reason
  - Outcomes:    completed / failed jobs by error kind, settlements by operation
  - Latency:     per-phase duration samples (ms)
  - Saturation:  active jobs, jobs waiting on settlement

Resets on restart. Job history lives in the job store.
"""

import time
import threading
from typing import Deque, Dict
from collections import Counter, defaultdict, deque

MAX_SAMPLES = 100     # per phase
MAX_ERRORS = 50

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)
_latency_samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_recent_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)

_started_at = time.time()


def inc_counter(name: str, amount: int = 1):
    """Increment a counter, e.g. 'jobs.submitted', 'admission.rate_limited'."""
    with _lock:
        _counters[name] += amount


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def record_latency(phase: str, duration_ms: float):
    with _lock:
        _latency_samples[phase].append(duration_ms)


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def adjust_gauge(name: str, delta: float):
    with _lock:
        _gauges[name] += delta


def record_error(phase: str, error_kind: str, message: str, job_id: str = ""):
    with _lock:
        _recent_errors.append(
            dict(at=time.time(), phase=phase, error_kind=error_kind, job_id=job_id, message=message[:300])
        )


def reset():
    """Clear everything. Tests only."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for phase, samples in _latency_samples.items():
            if not samples:
                continue
            ordered = sorted(samples)
            n = len(ordered)
            latency_stats[phase] = dict(
                p50=ordered[n // 2],
                p95=ordered[min(n - 1, int(n * 0.95))],
                avg=sum(ordered) / n,
                count=n,
            )

        patterns = Counter(f"{e['phase']}:{e['error_kind']}" for e in _recent_errors)

        submitted = _counters.get("jobs.submitted", 0)
        failed = _counters.get("jobs.failed", 0)
        failure_rate = (failed / submitted * 100) if submitted else 0

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "failure_rate": round(failure_rate, 2),
            "recent_errors": list(_recent_errors)[-10:],
            "error_patterns": dict(patterns),
            "uptime_seconds": now - _started_at,
        }
