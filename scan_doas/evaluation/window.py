"""Fit window configuration: pixel range, references and their parameter constraints."""

from __future__ import annotations

import dataclasses
import enum
import pathlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from ..errors import FitWindowError, SpectrumFileError
from ..spectra.files import load_samples
from ..spectra.spectrum import DTYPE

DEFAULT_SHIFT_LIMITS: Tuple[float, float] = (-10.0, 10.0)
DEFAULT_SQUEEZE_LIMITS: Tuple[float, float] = (0.98, 1.02)
SKY_SHIFT_LIMITS: Tuple[float, float] = (-3.0, 3.0)
SKY_SQUEEZE_LIMITS: Tuple[float, float] = (0.95, 1.05)

# References with this name are treated as solar references by the optimal shift search.
FRAUNHOFER_NAME = "FraunhoferRef"

PARAMETER_KINDS = ("column", "shift", "squeeze")

# Longer names first so that e.g. "NO3" is not reported as "O3".
_SPECIES: Tuple[Tuple[str, str], ...] = (
    ("FORMALDEHYDE", "HCHO"),
    ("GLYOXAL", "CHOCHO"),
    ("CHOCHO", "CHOCHO"),
    ("HCHO", "HCHO"),
    ("HONO", "HONO"),
    ("RING", "RING"),
    ("SO2", "SO2"),
    ("NO2", "NO2"),
    ("NO3", "NO3"),
    ("H2O", "H2O"),
    ("CLO", "ClO"),
    ("BRO", "BrO"),
    ("O3", "O3"),
    ("O4", "O4"),
)


def guess_species_name(path: str) -> str:
    """Guess the absorbing species from the file name of a cross section."""

    stem = pathlib.Path(path).stem
    upper = stem.upper()
    for fragment, species in _SPECIES:
        if fragment in upper:
            return species
    return stem


class ParameterOption(enum.Enum):
    FREE = "free"
    FIXED = "fixed"
    LINKED = "linked"
    LIMITED = "limited"


@dataclass(frozen=True)
class ParameterConstraint:
    """How one fit parameter (column, shift or squeeze) of a reference is treated.

    ``value`` holds the fixed value, or the lower bound for limited parameters, ``max_value``
    the upper bound.  ``link`` names the reference whose parameter of the same kind this one
    follows, ``step`` is an optional cap on the change per solver iteration.
    """

    option: ParameterOption = ParameterOption.FREE
    value: float = 0.0
    max_value: float = 0.0
    link: Optional[str] = None
    step: float = 0.0

    @classmethod
    def free(cls) -> "ParameterConstraint":
        return cls()

    @classmethod
    def fixed(cls, value: float) -> "ParameterConstraint":
        return cls(ParameterOption.FIXED, value=float(value))

    @classmethod
    def linked(cls, name: str) -> "ParameterConstraint":
        return cls(ParameterOption.LINKED, link=name)

    @classmethod
    def limited(cls, low: float, high: float, step: float = 0.0) -> "ParameterConstraint":
        if high < low:
            raise FitWindowError(f"invalid parameter limits [{low}, {high}]")
        return cls(ParameterOption.LIMITED, value=float(low), max_value=float(high), step=float(step))

    @property
    def is_free(self) -> bool:
        return self.option in (ParameterOption.FREE, ParameterOption.LIMITED)


@dataclass(frozen=True, eq=False)
class ReferenceSpectrum:
    """A cross section (or solar) reference sampled on the pixel grid of the spectrometer."""

    name: str
    data: Optional[torch.Tensor] = None
    path: Optional[str] = None
    column: ParameterConstraint = field(default_factory=ParameterConstraint)
    shift: ParameterConstraint = field(default_factory=ParameterConstraint)
    squeeze: ParameterConstraint = field(default_factory=ParameterConstraint)

    @classmethod
    def from_file(cls, path: str, name: Optional[str] = None, **constraints) -> "ReferenceSpectrum":
        """Create a reference backed by ``path``, its samples are read by :meth:`load`."""

        return cls(name=name or guess_species_name(path), path=str(path), **constraints)

    def load(self) -> "ReferenceSpectrum":
        """Return a copy of the reference with its samples read from :attr:`path`.

        Raises:
            FitWindowError: If the reference has neither samples nor a readable file.
        """

        if self.data is not None:
            return self
        if not self.path:
            raise FitWindowError(f"reference {self.name!r} has neither data nor a path")
        try:
            samples, _ = load_samples(self.path)
        except SpectrumFileError as exc:
            raise FitWindowError(f"could not load reference {self.name!r}: {exc}") from exc
        return dataclasses.replace(self, data=torch.as_tensor(samples, dtype=DTYPE))

    def constraint(self, kind: str) -> ParameterConstraint:
        return getattr(self, kind)

    def with_constraints(self, **constraints) -> "ReferenceSpectrum":
        return dataclasses.replace(self, **constraints)


class FitType(enum.Enum):
    """Preprocessing variant of a fit window."""

    HP_DIV = "hp_div"
    HP_SUB = "hp_sub"
    POLY = "poly"


def link_roots(names: Sequence[str], constraints: Sequence[ParameterConstraint]) -> List[int]:
    """Resolve every constraint to the index of the (non linked) constraint it follows.

    Raises:
        FitWindowError: On unknown link targets and on link cycles.
    """

    index: Dict[str, int] = {}
    for position, name in enumerate(names):
        if name in index:
            raise FitWindowError(f"duplicate reference name {name!r}")
        index[name] = position

    roots: List[int] = []
    for start in range(len(names)):
        visited = {start}
        current = start
        while constraints[current].option is ParameterOption.LINKED:
            target = constraints[current].link
            if target not in index:
                raise FitWindowError(f"reference {names[current]!r} is linked to unknown reference {target!r}")
            current = index[target]
            if current in visited:
                raise FitWindowError(f"link cycle through reference {names[start]!r}")
            visited.add(current)
        roots.append(current)
    return roots


@dataclass(frozen=True)
class FitWindow:
    """Description of one DOAS fit.

    ``fit_low``/``fit_high`` delimit the half-open pixel range of the fit in detector pixels,
    ``spec_length`` is the number of samples of the (de-interlaced) spectra.  Spectra starting
    at a detector pixel other than zero have the range shifted by their start channel.
    """

    name: str = "window"
    fit_low: int = 0
    fit_high: int = 0
    poly_order: int = 3
    spec_length: int = 2048
    start_channel: int = 0
    interlace_step: int = 1
    fit_type: FitType = FitType.HP_DIV
    uv: bool = True
    shift_sky: bool = False
    references: Tuple[ReferenceSpectrum, ...] = ()
    fraunhofer_reference: Optional[ReferenceSpectrum] = None
    find_optimal_shift: bool = False

    @property
    def reference_names(self) -> Tuple[str, ...]:
        return tuple(reference.name for reference in self.references)

    def fit_range(self, start_channel: int = 0, length: Optional[int] = None) -> Tuple[int, int]:
        """Return the fit range in sample coordinates of a spectrum starting at ``start_channel``.

        Raises:
            FitWindowError: If the range does not fit inside the spectrum.
        """

        length = self.spec_length if length is None else length
        low = self.fit_low - start_channel
        high = self.fit_high - start_channel
        if low < 0 or high > length or high <= low:
            raise FitWindowError(
                f"fit range [{low}, {high}) does not fit a spectrum of length {length}"
            )
        return low, high

    def resolve_link_roots(self, kind: str) -> List[int]:
        """Root reference index for every reference, for the parameter ``kind``."""

        if kind not in PARAMETER_KINDS:
            raise ValueError(f"unknown parameter kind {kind!r}")
        return link_roots(self.reference_names, [reference.constraint(kind) for reference in self.references])

    def validate(self) -> "FitWindow":
        """Check the window for consistency and return it.

        Raises:
            FitWindowError: On an empty fit range, a negative polynomial order, unknown link
                targets or link cycles.
        """

        if self.fit_high <= self.fit_low:
            raise FitWindowError(f"empty fit range [{self.fit_low}, {self.fit_high})")
        if self.poly_order < 0:
            raise FitWindowError("polynomial order must be non-negative")
        if self.spec_length <= 0:
            raise FitWindowError("spectrum length must be positive")
        for kind in PARAMETER_KINDS:
            self.resolve_link_roots(kind)
        return self

    def load_references(self) -> "FitWindow":
        """Return a copy of the window with every reference's samples loaded."""

        fraunhofer = self.fraunhofer_reference
        if fraunhofer is not None and (fraunhofer.data is not None or fraunhofer.path):
            fraunhofer = fraunhofer.load()
        return dataclasses.replace(
            self,
            references=tuple(reference.load() for reference in self.references),
            fraunhofer_reference=fraunhofer,
        )

    def with_references(self, references: Sequence[ReferenceSpectrum]) -> "FitWindow":
        return dataclasses.replace(self, references=tuple(references))


__all__ = [
    "DEFAULT_SHIFT_LIMITS",
    "DEFAULT_SQUEEZE_LIMITS",
    "SKY_SHIFT_LIMITS",
    "SKY_SQUEEZE_LIMITS",
    "FRAUNHOFER_NAME",
    "ParameterOption",
    "ParameterConstraint",
    "ReferenceSpectrum",
    "FitType",
    "FitWindow",
    "guess_species_name",
    "link_roots",
]
