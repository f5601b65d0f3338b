from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_relocation_dispatched() -> None:
    _inc("relocations_dispatched")


def record_relocation_outcome(outcome: str) -> None:
    _inc(f"relocations_{outcome}")


def record_sidecar_skipped() -> None:
    _inc("sidecars_skipped")


def record_enrichment_failure() -> None:
    _inc("enrichment_failures")


def record_project_count_corrected() -> None:
    _inc("project_counts_corrected")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
