"""In-memory representation of a single spectrum and its metadata."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import torch

from ..errors import SpectrumLengthError
from .instruments import SpectrometerModel, guess_model_from_serial

MAX_SPECTRUM_LENGTH = 4096
DTYPE = torch.float64

Operand = Union["SpectrumRecord", float, int]


class SpectrumRole(enum.Enum):
    """Semantic role of a spectrum inside a scan."""

    SKY = "sky"
    DARK = "dark"
    OFFSET = "offset"
    DARK_CURRENT = "dark_current"
    MEASUREMENT = "measurement"


@dataclass
class SpectrumInfo:
    """Metadata describing how a spectrum was acquired."""

    scan_index: int = -1
    name: str = ""
    role: SpectrumRole = SpectrumRole.MEASUREMENT
    num_spectra: int = 1
    exposure_time: float = 0.0
    channel: int = 0
    interlace_step: int = 1
    start_channel: int = 0
    device: str = ""
    start_time: float = 0.0
    stop_time: float = 0.0
    scan_angle: float = 0.0
    peak_intensity: float = 0.0
    fit_intensity: float = 0.0

    @property
    def model(self) -> SpectrometerModel:
        return guess_model_from_serial(self.device)

    def copy(self) -> "SpectrumInfo":
        return dataclasses.replace(self)


class SpectrumRecord:
    """A spectrum: a one dimensional tensor of intensities plus :class:`SpectrumInfo`.

    Arithmetic between two records requires equal lengths and raises
    :class:`~scan_doas.errors.SpectrumLengthError` otherwise.  The operators ``+ - * /`` return
    new records carrying a copy of the left operand's metadata, the ``add_``/``sub_``/``mul_``/
    ``div_`` methods modify the record in place and return it.
    """

    def __init__(self, samples, info: Optional[SpectrumInfo] = None) -> None:
        tensor = torch.as_tensor(samples, dtype=DTYPE)
        if tensor.ndim != 1:
            raise ValueError("spectrum samples must be one dimensional")
        if tensor.numel() > MAX_SPECTRUM_LENGTH:
            raise SpectrumLengthError(
                f"spectrum length {tensor.numel()} exceeds the maximum of {MAX_SPECTRUM_LENGTH}"
            )
        self.samples = tensor.clone()
        self.info = info if info is not None else SpectrumInfo()

    @classmethod
    def zeros(cls, length: int, info: Optional[SpectrumInfo] = None) -> "SpectrumRecord":
        return cls(torch.zeros(length, dtype=DTYPE), info)

    @classmethod
    def zeros_like(cls, other: "SpectrumRecord") -> "SpectrumRecord":
        """Zero placeholder with the length and metadata of ``other``."""

        return cls(torch.zeros_like(other.samples), other.info.copy())

    def __len__(self) -> int:
        return int(self.samples.numel())

    @property
    def length(self) -> int:
        return len(self)

    @property
    def num_spectra(self) -> int:
        return self.info.num_spectra

    @property
    def exposure_time(self) -> float:
        return self.info.exposure_time

    @property
    def scan_index(self) -> int:
        return self.info.scan_index

    @property
    def is_dark(self) -> bool:
        return self.info.role in (SpectrumRole.DARK, SpectrumRole.OFFSET, SpectrumRole.DARK_CURRENT)

    def copy(self) -> "SpectrumRecord":
        return SpectrumRecord(self.samples, self.info.copy())

    def numpy(self) -> np.ndarray:
        return self.samples.detach().cpu().numpy().copy()

    # ------------------------------------------------------------------ arithmetic

    def _operand(self, other: Operand) -> Union[torch.Tensor, float]:
        if isinstance(other, SpectrumRecord):
            if other.length != self.length:
                raise SpectrumLengthError(
                    f"cannot combine spectra of length {self.length} and {other.length}"
                )
            return other.samples
        return float(other)

    def add_(self, other: Operand) -> "SpectrumRecord":
        self.samples = self.samples + self._operand(other)
        return self

    def sub_(self, other: Operand) -> "SpectrumRecord":
        self.samples = self.samples - self._operand(other)
        return self

    def mul_(self, other: Operand) -> "SpectrumRecord":
        self.samples = self.samples * self._operand(other)
        return self

    def div_(self, other: Operand) -> "SpectrumRecord":
        divisor = self._operand(other)
        if isinstance(divisor, torch.Tensor):
            safe = torch.where(divisor == 0, torch.ones_like(divisor), divisor)
            self.samples = torch.where(divisor == 0, torch.zeros_like(self.samples), self.samples / safe)
        else:
            if divisor == 0:
                raise ZeroDivisionError("cannot divide a spectrum by zero")
            self.samples = self.samples / divisor
        return self

    def __add__(self, other: Operand) -> "SpectrumRecord":
        return self.copy().add_(other)

    def __sub__(self, other: Operand) -> "SpectrumRecord":
        return self.copy().sub_(other)

    def __mul__(self, other: Operand) -> "SpectrumRecord":
        return self.copy().mul_(other)

    def __truediv__(self, other: Operand) -> "SpectrumRecord":
        return self.copy().div_(other)

    # ------------------------------------------------------------------ statistics

    def _window(self, low: int, high: Optional[int]) -> torch.Tensor:
        high = self.length if high is None else high
        low = max(int(low), 0)
        high = min(int(high), self.length)
        if high <= low:
            raise ValueError(f"empty pixel range [{low}, {high}) for spectrum of length {self.length}")
        return self.samples[low:high]

    def max_value(self, low: int = 0, high: Optional[int] = None) -> float:
        """Maximum intensity in the half-open pixel range ``[low, high)``."""

        return float(self._window(low, high).max())

    def min_value(self, low: int = 0, high: Optional[int] = None) -> float:
        """Minimum intensity in the half-open pixel range ``[low, high)``."""

        return float(self._window(low, high).min())

    def mean_value(self, low: int = 0, high: Optional[int] = None) -> float:
        return float(self._window(low, high).mean())

    # ------------------------------------------------------------------ interlace

    def interpolate_interlaced(self) -> "SpectrumRecord":
        """Expand an interlaced spectrum to full resolution, in place.

        A spectrum acquired with interlace step ``N`` holds every ``N``-th detector pixel.  The
        missing pixels are filled by linear interpolation between their neighbours, pixels past
        the last acquired one repeat its value.  The result has ``N`` times as many samples and an
        interlace step of one.
        """

        step = int(self.info.interlace_step)
        if step <= 1 or self.length == 0:
            return self
        full_length = self.length * step
        if full_length > MAX_SPECTRUM_LENGTH:
            raise SpectrumLengthError(
                f"interlaced spectrum expands to {full_length} samples, maximum is {MAX_SPECTRUM_LENGTH}"
            )
        position = torch.arange(full_length, dtype=DTYPE) / step
        lower = torch.clamp(position.floor().long(), max=self.length - 1)
        upper = torch.clamp(lower + 1, max=self.length - 1)
        fraction = torch.clamp(position - lower.to(DTYPE), 0.0, 1.0)
        self.samples = self.samples[lower] * (1.0 - fraction) + self.samples[upper] * fraction
        self.info.interlace_step = 1
        return self

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            f"SpectrumRecord(name={self.info.name!r}, scan_index={self.info.scan_index}, "
            f"length={self.length}, num_spectra={self.info.num_spectra})"
        )


__all__ = [
    "MAX_SPECTRUM_LENGTH",
    "SpectrumRole",
    "SpectrumInfo",
    "SpectrumRecord",
]
