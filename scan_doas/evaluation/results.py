"""Results of single fits and of whole scans."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Set, Union

import torch

from ..spectra.spectrum import DTYPE, SpectrumInfo


@dataclass
class ReferenceResult:
    """Fitted parameters of one reference, columns in the physical units of the reference."""

    name: str
    column: float = 0.0
    column_error: float = 0.0
    shift: float = 0.0
    shift_error: float = 0.0
    squeeze: float = 1.0
    squeeze_error: float = 0.0

    def is_finite(self) -> bool:
        values = (self.column, self.column_error, self.shift, self.shift_error, self.squeeze, self.squeeze_error)
        return all(math.isfinite(value) for value in values)


@dataclass
class EvaluationResult:
    """Outcome of one successful DOAS fit.

    Attributes:
        references: Per-reference results, in the order of the fit window.
        polynomial: Coefficients of the baseline polynomial, lowest order first.  The polynomial
            is expressed in ``t = (pixel - poly_centre) / poly_half_width``.
        steps: Number of nonlinear iterations.
        chi_square: Sum of the squared residuals.
        delta: Peak-to-peak spread of the residual.
        fit_low: First pixel of the fit range.
        fit_high: End (exclusive) of the fit range.
        residual: Residual of the fit over the fit range.
    """

    references: List[ReferenceResult] = field(default_factory=list)
    polynomial: List[float] = field(default_factory=list)
    steps: int = 0
    chi_square: float = 0.0
    delta: float = 0.0
    fit_low: int = 0
    fit_high: int = 0
    poly_centre: float = 0.0
    poly_half_width: float = 1.0
    residual: Optional[torch.Tensor] = None

    def reference(self, name: str) -> ReferenceResult:
        for result in self.references:
            if result.name == name:
                return result
        raise KeyError(name)

    def evaluate_polynomial(self, pixels: torch.Tensor) -> torch.Tensor:
        """Evaluate the fitted baseline polynomial at ``pixels``."""

        t = (torch.as_tensor(pixels, dtype=DTYPE) - self.poly_centre) / self.poly_half_width
        values = torch.zeros_like(t)
        for coefficient in reversed(self.polynomial):
            values = values * t + coefficient
        return values

    def is_finite(self) -> bool:
        return math.isfinite(self.chi_square) and all(result.is_finite() for result in self.references)

    def copy(self) -> "EvaluationResult":
        return replace(
            self,
            references=[replace(result) for result in self.references],
            polynomial=list(self.polynomial),
            residual=None if self.residual is None else self.residual.clone(),
        )


class FitStatus(enum.Enum):
    OK = "ok"
    LENGTH_MISMATCH = "length_mismatch"
    FAILED = "failed"
    FIT_EXCEPTION = "fit_exception"
    NO_CALIBRATION_REFERENCE = "no_calibration_reference"


@dataclass
class FitOutcome:
    """Return value of the fit engine entry points, ``result`` is only set on success."""

    status: FitStatus
    result: Optional[EvaluationResult] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is FitStatus.OK


@dataclass
class ScanResult:
    """Accumulated fit results of one scan.

    ``results``, ``infos`` and ``ok`` are parallel lists with one entry per evaluated spectrum.
    ``most_absorbing_position`` is the container position of the spectrum with the largest
    accepted column of the first reference, ``most_absorbing_index`` its index in ``results``.
    """

    results: List[EvaluationResult] = field(default_factory=list)
    infos: List[SpectrumInfo] = field(default_factory=list)
    ok: List[bool] = field(default_factory=list)
    corrupted: Set[int] = field(default_factory=set)
    sky_info: Optional[SpectrumInfo] = None
    dark_info: Optional[SpectrumInfo] = None
    most_absorbing_position: int = -1
    most_absorbing_index: int = -1

    def __len__(self) -> int:
        return len(self.results)

    @property
    def evaluated_count(self) -> int:
        return len(self.results)

    def append(self, result: EvaluationResult, info: SpectrumInfo) -> int:
        """Store ``result`` and return its index."""

        self.results.append(result)
        self.infos.append(info)
        self.ok.append(True)
        return len(self.results) - 1

    def mark_corrupted(self, position: int) -> None:
        self.corrupted.add(position)

    def check_goodness_of_fit(
        self,
        index: int,
        dynamic_range: float,
        max_saturation: float = 0.95,
        max_chi_square: Optional[float] = None,
    ) -> bool:
        """Classify result ``index`` and return whether it is ok.

        A result is bad if the spectrum was saturated in the fit region, if its chi-square exceeds
        ``max_chi_square`` or if any of its values is not finite.
        """

        result = self.results[index]
        info = self.infos[index]
        good = result.is_finite()
        saturation = info.fit_intensity / (max(info.num_spectra, 1) * dynamic_range)
        if saturation > max_saturation:
            good = False
        if max_chi_square is not None and result.chi_square > max_chi_square:
            good = False
        self.ok[index] = good
        return good

    def _reference_index(self, reference: Union[int, str]) -> int:
        if isinstance(reference, int):
            return reference
        names: Sequence[str] = [result.name for result in self.results[0].references] if self.results else []
        if reference not in names:
            raise KeyError(reference)
        return names.index(reference)

    def columns(self, reference: Union[int, str] = 0) -> torch.Tensor:
        """Columns of ``reference`` (index or name) for every evaluated spectrum."""

        index = self._reference_index(reference)
        return torch.tensor([result.references[index].column for result in self.results], dtype=DTYPE)

    def column_errors(self, reference: Union[int, str] = 0) -> torch.Tensor:
        index = self._reference_index(reference)
        return torch.tensor([result.references[index].column_error for result in self.results], dtype=DTYPE)

    def scan_angles(self) -> torch.Tensor:
        return torch.tensor([info.scan_angle for info in self.infos], dtype=DTYPE)

    def to_dict(self) -> Dict[str, object]:
        """Return a plain dictionary summary of the scan."""

        return {
            "evaluated": len(self.results),
            "ok": sum(self.ok),
            "corrupted": sorted(self.corrupted),
            "most_absorbing_position": self.most_absorbing_position,
            "most_absorbing_index": self.most_absorbing_index,
        }


__all__ = [
    "ReferenceResult",
    "EvaluationResult",
    "FitStatus",
    "FitOutcome",
    "ScanResult",
]
