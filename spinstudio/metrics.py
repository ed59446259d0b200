"""
Stage outcome metrics for the spin service.

Every pipeline stage reports how it ended and how long it took. The /metrics
endpoint turns that into per-stage success/error counts, an error ratio and
latency percentiles, plus job totals and the last few failures. In-process
only; saved products in Supabase are the durable history.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

MAX_SAMPLES = 100
MAX_ERRORS = 50


class StageStats:
    def __init__(self):
        self.success = 0
        self.error = 0
        self.durations_ms: Deque[float] = deque(maxlen=MAX_SAMPLES)

    def summary(self) -> dict:
        total = self.success + self.error
        summary = {
            "success": self.success,
            "error": self.error,
            "error_ratio": round(self.error / total, 3) if total else 0.0,
        }
        if self.durations_ms:
            ordered = sorted(self.durations_ms)
            n = len(ordered)
            summary["latency_ms"] = {
                "p50": ordered[n // 2],
                "p95": ordered[min(n - 1, int(n * 0.95))],
                "avg": sum(ordered) / n,
            }
        return summary


_lock = threading.Lock()
_stages: Dict[str, StageStats] = defaultdict(StageStats)
_jobs = StageStats()
_jobs_started = 0
_recent_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)
_started_at: Optional[float] = None


def mark_started():
    global _started_at
    with _lock:
        _started_at = time.time()


def job_started():
    global _jobs_started
    with _lock:
        _jobs_started += 1


def job_finished(ok: bool, duration_ms: float):
    with _lock:
        if ok:
            _jobs.success += 1
        else:
            _jobs.error += 1
        _jobs.durations_ms.append(duration_ms)


def stage_succeeded(stage: str, duration_ms: float):
    with _lock:
        stats = _stages[stage]
        stats.success += 1
        stats.durations_ms.append(duration_ms)


def stage_failed(stage: str, error_type: str, message: str, job_id: str = ""):
    with _lock:
        _stages[stage].error += 1
        _recent_errors.append({
            "timestamp": time.time(),
            "stage": stage,
            "error_type": error_type,
            "message": message[:300],
            "job_id": job_id,
        })


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        return {
            "timestamp": now,
            "uptime_seconds": now - _started_at if _started_at else 0.0,
            "jobs": {"started": _jobs_started, **_jobs.summary()},
            "stages": {stage: stats.summary() for stage, stats in _stages.items()},
            "recent_errors": list(_recent_errors)[-10:],
        }


def reset():
    """Clear everything. Used by tests."""
    global _started_at, _jobs, _jobs_started
    with _lock:
        _stages.clear()
        _jobs = StageStats()
        _jobs_started = 0
        _recent_errors.clear()
        _started_at = None
