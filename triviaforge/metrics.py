"""
Metrics sink: counters and histograms behind an injected interface.

Every component that reports metrics takes a `MetricsSink` in its
constructor (or as a keyword argument for module-level functions).
There is no process-wide metrics state.

Implementations:
- NullMetrics: discards everything (default)
- InMemoryMetrics: thread-safe counters/histograms for tests and diagnostics
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

Tags = dict[str, str]


class MetricsSink(Protocol):
    """Observability port consumed by the codec, registries and services."""

    def increment(self, name: str, value: int = 1, tags: Tags | None = None) -> None: ...

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None: ...


class NullMetrics:
    """Metrics sink that records nothing."""

    def increment(self, name: str, value: int = 1, tags: Tags | None = None) -> None:
        return None

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None:
        return None


NULL_METRICS = NullMetrics()


def _key(name: str, tags: Tags | None) -> str:
    if not tags:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}[{rendered}]"


@dataclass
class InMemoryMetrics:
    """
    Thread-safe in-memory metrics sink.

    Counters and histograms are keyed by name plus sorted tags, e.g.
    ``asset_name.generated[outcome=success,tier=category]``.
    """

    _counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _histograms: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    _lock: Lock = field(default_factory=Lock)

    def increment(self, name: str, value: int = 1, tags: Tags | None = None) -> None:
        with self._lock:
            self._counters[_key(name, tags)] += value

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None:
        with self._lock:
            self._histograms[_key(name, tags)].append(value)

    def count(self, name: str, tags: Tags | None = None) -> int:
        """Get a counter value (0 if never incremented)."""
        with self._lock:
            return self._counters.get(_key(name, tags), 0)

    def total(self, name: str) -> int:
        """Sum a counter across all tag combinations."""
        with self._lock:
            return sum(
                v for k, v in self._counters.items() if k == name or k.startswith(f"{name}[")
            )

    def observations(self, name: str, tags: Tags | None = None) -> list[float]:
        with self._lock:
            return list(self._histograms.get(_key(name, tags), []))

    def snapshot(self) -> dict[str, int]:
        """Copy of all counters, for diagnostics."""
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
