"""Counters describing the work done by scan evaluations."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict


@dataclass
class ProcessingStatistics:
    """Running totals over all scans evaluated with this object.

    An instance is passed explicitly to every scan evaluation.  It is not synchronised, scans
    evaluated in parallel should each use their own instance.
    """

    evaluated_spectra: int = 0
    ignored_spectra: int = 0
    failed_spectra: int = 0
    corrupted_spectra: int = 0
    evaluated_scans: int = 0
    failed_scans: int = 0
    evaluation_time_ms: float = 0.0

    def insert_evaluated_spectrum(self, elapsed_ms: float) -> None:
        self.evaluated_spectra += 1
        self.evaluation_time_ms += elapsed_ms

    def insert_ignored_spectrum(self) -> None:
        self.ignored_spectra += 1

    def insert_failed_spectrum(self) -> None:
        self.failed_spectra += 1

    def insert_corrupted_spectrum(self) -> None:
        self.corrupted_spectra += 1

    def insert_scan(self, success: bool) -> None:
        if success:
            self.evaluated_scans += 1
        else:
            self.failed_scans += 1

    @property
    def mean_evaluation_time_ms(self) -> float:
        if self.evaluated_spectra == 0:
            return 0.0
        return self.evaluation_time_ms / self.evaluated_spectra

    def to_dict(self) -> Dict[str, object]:
        """Return a plain dictionary representation."""

        return asdict(self)


__all__ = ["ProcessingStatistics"]
