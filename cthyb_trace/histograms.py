from __future__ import annotations

import os
from pathlib import Path
import threading
import warnings

import numpy as np


class Histogram:
    """Counts on a uniform grid of `n_bins` points spanning [lower, upper].

    A value is counted at the nearest grid point; values outside the range
    (or non-finite) are counted in `n_lost`.
    """

    def __init__(self, lower: float, upper: float, n_bins: int, path: str | os.PathLike | None = None) -> None:
        lower = float(lower)
        upper = float(upper)
        n_bins = int(n_bins)
        if n_bins < 1:
            raise ValueError("n_bins must be >= 1")
        if not upper >= lower:
            raise ValueError("upper must be >= lower")
        self.lower = lower
        self.upper = upper
        self.n_bins = n_bins
        self.path = None if path is None else str(path)
        self._step = (upper - lower) / (n_bins - 1) if n_bins > 1 else 0.0
        self._counts = np.zeros(n_bins, dtype=np.int64)
        self._n_lost = 0

    @classmethod
    def for_indices(cls, n: int, path: str | os.PathLike | None = None) -> "Histogram":
        """Histogram over the integers 0..n-1."""

        n = int(n)
        if n < 1:
            raise ValueError("n must be >= 1")
        return cls(0.0, float(n - 1), n, path)

    @property
    def settings(self) -> tuple[float, float, int, str | None]:
        return (self.lower, self.upper, self.n_bins, self.path)

    def add(self, value: float) -> None:
        x = float(value)
        if not np.isfinite(x) or x < self.lower or x > self.upper:
            self._n_lost += 1
            return
        k = 0 if self._step == 0.0 else int(np.floor((x - self.lower) / self._step + 0.5))
        self._counts[min(k, self.n_bins - 1)] += 1

    @property
    def counts(self) -> np.ndarray:
        return self._counts.copy()

    @property
    def n_lost(self) -> int:
        return int(self._n_lost)

    @property
    def n_data(self) -> int:
        return int(self._counts.sum()) + self.n_lost

    @property
    def mesh(self) -> np.ndarray:
        return self.lower + self._step * np.arange(self.n_bins, dtype=np.float64)

    def pdf(self) -> np.ndarray:
        """Counts normalized by the number of in-range points."""

        total = int(self._counts.sum())
        if total == 0:
            return np.zeros(self.n_bins, dtype=np.float64)
        return self._counts / float(total)

    def save(self, path: str | os.PathLike | None = None) -> Path:
        target = self.path if path is None else path
        if target is None:
            raise ValueError("histogram has no output path")
        target = Path(target)
        data = np.column_stack((self.mesh, self._counts.astype(np.float64)))
        np.savetxt(target, data, header=f"n_data={self.n_data} n_lost={self.n_lost}")
        return target


class HistogramRegistry:
    """Label -> Histogram, created on registration; safe to share across threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, Histogram] = {}

    def register(
        self,
        label: str,
        lower: float,
        upper: float,
        n_bins: int,
        path: str | os.PathLike | None = None,
    ) -> Histogram:
        """Register `label`; a repeated registration with identical settings is a no-op."""

        new = Histogram(lower, upper, n_bins, path)
        return self._insert(str(label), new)

    def register_indices(self, label: str, n: int, path: str | os.PathLike | None = None) -> Histogram:
        return self._insert(str(label), Histogram.for_indices(n, path))

    def _insert(self, label: str, new: Histogram) -> Histogram:
        with self._lock:
            old = self._data.get(label)
            if old is not None:
                if old.settings == new.settings:
                    return old
                warnings.warn(
                    f"histogram {label!r} re-registered with different settings; replacing it",
                    RuntimeWarning,
                    stacklevel=3,
                )
            self._data[label] = new
            return new

    def record(self, label: str, value: float) -> None:
        with self._lock:
            hist = self._data.get(label)
            if hist is None:
                raise KeyError(f"histogram {label!r} is not registered")
            hist.add(value)

    def get(self, label: str) -> Histogram | None:
        with self._lock:
            return self._data.get(label)

    def __contains__(self, label: object) -> bool:
        with self._lock:
            return label in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def labels(self) -> list[str]:
        with self._lock:
            return list(self._data)

    def save_all(self, directory: str | os.PathLike | None = None) -> list[Path]:
        """Write every histogram that has an output path; returns the written paths."""

        with self._lock:
            hists = list(self._data.values())
        out: list[Path] = []
        for hist in hists:
            if hist.path is None:
                continue
            target = Path(hist.path) if directory is None else Path(directory) / Path(hist.path).name
            out.append(hist.save(target))
        return out
