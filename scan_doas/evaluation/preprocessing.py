"""Spectrum preparation applied before the DOAS fit.

All functions take and return one dimensional ``torch.float64`` tensors and never modify their
input.  The three fit variants prepare the measurement differently:

* ``HP_DIV``: the measurement is divided by the sky, high-pass filtered and logarithmised.
* ``HP_SUB``: measurement and sky are high-pass filtered and logarithmised separately, the sky
  enters the fit as a reference with a fixed column of ``+1``.
* ``POLY``: measurement and sky are logarithmised, the measurement is negated and the sky enters
  the fit with a fixed column of ``-1``.  A polynomial takes the place of the high-pass filter.
"""

from __future__ import annotations

from typing import Optional, Tuple

import torch

from ..spectra.spectrum import DTYPE
from .window import FitType

UV_OFFSET_RANGE: Tuple[int, int] = (50, 200)
VISIBLE_OFFSET_RANGE: Tuple[int, int] = (2, 20)
HIGH_PASS_ITERATIONS = 500


def _as_tensor(spectrum) -> torch.Tensor:
    return torch.as_tensor(spectrum, dtype=DTYPE)


def offset_range(uv: bool) -> Tuple[int, int]:
    """Pixel range used to estimate the electronic offset of a spectrum."""

    return UV_OFFSET_RANGE if uv else VISIBLE_OFFSET_RANGE


def remove_offset(spectrum: torch.Tensor, uv: bool = True) -> torch.Tensor:
    """Subtract the mean intensity of the offset region from every sample.

    In the UV the first pixels of the detector receive no light, pixels ``[50, 200)`` are used.
    Otherwise pixels ``[2, 20)`` are used.
    """

    spectrum = _as_tensor(spectrum)
    low, high = offset_range(uv)
    high = min(high, spectrum.numel())
    if high <= low:
        return spectrum.clone()
    return spectrum - spectrum[low:high].mean()


def low_pass_binomial(spectrum: torch.Tensor, iterations: int) -> torch.Tensor:
    """Smooth with ``iterations`` passes of the ``[1, 2, 1] / 4`` kernel, endpoints are kept."""

    smoothed = _as_tensor(spectrum).clone()
    if smoothed.numel() < 3:
        return smoothed
    for _ in range(int(iterations)):
        inner = 0.25 * smoothed[:-2] + 0.5 * smoothed[1:-1] + 0.25 * smoothed[2:]
        smoothed[1:-1] = inner
    return smoothed


def divide_spectra(numerator: torch.Tensor, denominator: torch.Tensor) -> torch.Tensor:
    """Sample-wise division, samples with a zero divisor become zero."""

    numerator = _as_tensor(numerator)
    denominator = _as_tensor(denominator)
    if numerator.shape != denominator.shape:
        raise ValueError(f"cannot divide spectra of shape {tuple(numerator.shape)} and {tuple(denominator.shape)}")
    zero = denominator == 0
    safe = torch.where(zero, torch.ones_like(denominator), denominator)
    return torch.where(zero, torch.zeros_like(numerator), numerator / safe)


def high_pass_binomial(spectrum: torch.Tensor, iterations: int = HIGH_PASS_ITERATIONS, mode: str = "divide") -> torch.Tensor:
    """Remove the broad band structure of a spectrum.

    Args:
        spectrum: Spectrum to filter.
        iterations: Number of binomial smoothing passes used to estimate the broad band part.
        mode: ``"divide"`` divides the spectrum by its smoothed version, ``"subtract"`` subtracts it.

    Returns:
        The filtered spectrum.
    """

    spectrum = _as_tensor(spectrum)
    smoothed = low_pass_binomial(spectrum, iterations)
    if mode == "divide":
        return divide_spectra(spectrum, smoothed)
    if mode == "subtract":
        return spectrum - smoothed
    raise ValueError(f"unknown high-pass mode {mode!r}")


def log_spectrum(spectrum: torch.Tensor) -> torch.Tensor:
    """Natural logarithm of every sample, non-positive samples map to zero."""

    spectrum = _as_tensor(spectrum)
    positive = spectrum > 0
    safe = torch.where(positive, spectrum, torch.ones_like(spectrum))
    return torch.where(positive, torch.log(safe), torch.zeros_like(spectrum))


def prepare_sky(sky: torch.Tensor, fit_type: FitType, uv: bool = True, iterations: int = HIGH_PASS_ITERATIONS) -> torch.Tensor:
    """Prepare the sky spectrum for the given fit variant.

    For ``HP_DIV`` the result is the offset corrected divisor of the measurement, for the other
    variants it is the sky reference entering the fit.
    """

    prepared = remove_offset(sky, uv)
    if fit_type is FitType.HP_DIV:
        return prepared
    if fit_type is FitType.HP_SUB:
        prepared = high_pass_binomial(prepared, iterations)
    return log_spectrum(prepared)


def prepare_ratio(
    measured: torch.Tensor,
    sky: Optional[torch.Tensor],
    uv: bool = True,
    iterations: int = HIGH_PASS_ITERATIONS,
) -> torch.Tensor:
    """``HP_DIV``: divide by the prepared sky, high-pass filter and take the logarithm."""

    prepared = remove_offset(measured, uv)
    if sky is not None:
        prepared = divide_spectra(prepared, sky)
    prepared = high_pass_binomial(prepared, iterations)
    return log_spectrum(prepared)


def prepare_subtractive(measured: torch.Tensor, uv: bool = True, iterations: int = HIGH_PASS_ITERATIONS) -> torch.Tensor:
    """``HP_SUB``: high-pass filter and take the logarithm of the measurement alone."""

    prepared = high_pass_binomial(remove_offset(measured, uv), iterations)
    return log_spectrum(prepared)


def prepare_polynomial(measured: torch.Tensor, uv: bool = True) -> torch.Tensor:
    """``POLY``: negated logarithm of the offset corrected measurement."""

    return -log_spectrum(remove_offset(measured, uv))


def prepare_measurement(
    measured: torch.Tensor,
    fit_type: FitType,
    sky: Optional[torch.Tensor] = None,
    uv: bool = True,
    iterations: int = HIGH_PASS_ITERATIONS,
) -> torch.Tensor:
    """Dispatch to the preparation of ``fit_type``, ``sky`` is the output of :func:`prepare_sky`."""

    if fit_type is FitType.HP_DIV:
        return prepare_ratio(measured, sky, uv, iterations)
    if fit_type is FitType.HP_SUB:
        return prepare_subtractive(measured, uv, iterations)
    if fit_type is FitType.POLY:
        return prepare_polynomial(measured, uv)
    raise ValueError(f"unknown fit type {fit_type!r}")


def prepare_for_calibration(
    measured: torch.Tensor,
    fit_type: FitType,
    uv: bool = True,
    iterations: int = HIGH_PASS_ITERATIONS,
) -> torch.Tensor:
    """Prepare a spectrum for the fit against the solar (Fraunhofer) reference."""

    prepared = remove_offset(measured, uv)
    if fit_type in (FitType.HP_DIV, FitType.HP_SUB):
        prepared = high_pass_binomial(prepared, iterations)
    prepared = log_spectrum(prepared)
    if fit_type is FitType.POLY:
        prepared = -prepared
    return prepared


__all__ = [
    "UV_OFFSET_RANGE",
    "VISIBLE_OFFSET_RANGE",
    "HIGH_PASS_ITERATIONS",
    "offset_range",
    "remove_offset",
    "low_pass_binomial",
    "high_pass_binomial",
    "divide_spectra",
    "log_spectrum",
    "prepare_sky",
    "prepare_ratio",
    "prepare_subtractive",
    "prepare_polynomial",
    "prepare_measurement",
    "prepare_for_calibration",
]
