import math
import pathlib
import sys

import pytest
import torch

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scan_doas.evaluation.preprocessing import (
    divide_spectra,
    high_pass_binomial,
    log_spectrum,
    low_pass_binomial,
    prepare_for_calibration,
    prepare_measurement,
    prepare_polynomial,
    prepare_ratio,
    prepare_sky,
    prepare_subtractive,
    remove_offset,
)
from scan_doas.evaluation.window import FitType


def _make_spectrum(length: int = 300) -> torch.Tensor:
    pixels = torch.arange(length, dtype=torch.float64)
    spectrum = 1000.0 + 200.0 * torch.sin(pixels / 25.0)
    spectrum[:25] = 0.0
    return spectrum


def test_remove_offset_uses_region_for_wavelength_range():
    spectrum = torch.full((300,), 10.0, dtype=torch.float64)
    spectrum[50:200] = 4.0

    torch.testing.assert_close(remove_offset(spectrum, uv=True)[0], torch.tensor(6.0, dtype=torch.float64))
    torch.testing.assert_close(remove_offset(spectrum, uv=False)[0], torch.tensor(0.0, dtype=torch.float64))


def test_log_maps_non_positive_samples_to_zero():
    result = log_spectrum(torch.tensor([-1.0, 0.0, 1.0, math.e]))
    torch.testing.assert_close(result, torch.tensor([0.0, 0.0, 0.0, 1.0], dtype=torch.float64))


def test_divide_maps_zero_divisor_to_zero():
    result = divide_spectra(torch.tensor([2.0, 3.0]), torch.tensor([0.0, 1.5]))
    torch.testing.assert_close(result, torch.tensor([0.0, 2.0], dtype=torch.float64))


def test_binomial_smoothing_keeps_endpoints_and_constants():
    spectrum = torch.tensor([4.0, 0.0, 8.0, 0.0, 4.0], dtype=torch.float64)
    smoothed = low_pass_binomial(spectrum, iterations=1)

    torch.testing.assert_close(smoothed, torch.tensor([4.0, 3.0, 4.0, 3.0, 4.0], dtype=torch.float64))
    constant = torch.full((20,), 7.0, dtype=torch.float64)
    torch.testing.assert_close(low_pass_binomial(constant, iterations=50), constant)


def test_high_pass_of_constant_spectrum():
    constant = torch.full((40,), 5.0, dtype=torch.float64)

    torch.testing.assert_close(high_pass_binomial(constant, 10, mode="divide"), torch.ones(40, dtype=torch.float64))
    torch.testing.assert_close(high_pass_binomial(constant, 10, mode="subtract"), torch.zeros(40, dtype=torch.float64))
    with pytest.raises(ValueError, match="mode"):
        high_pass_binomial(constant, 10, mode="bogus")


def test_polynomial_preparation_is_negated_log():
    spectrum = _make_spectrum()
    expected = -log_spectrum(spectrum)

    torch.testing.assert_close(prepare_polynomial(spectrum, uv=False), expected)
    torch.testing.assert_close(prepare_measurement(spectrum, FitType.POLY, uv=False), expected)


def test_ratio_preparation_divides_by_sky():
    sky = _make_spectrum()
    measured = sky * 0.5

    prepared = prepare_ratio(measured, prepare_sky(sky, FitType.HP_DIV, uv=False), uv=False, iterations=20)

    # a constant ratio has no differential structure left
    torch.testing.assert_close(prepared[50:], torch.zeros(250, dtype=torch.float64), atol=1e-12, rtol=0.0)
    dispatched = prepare_measurement(
        measured, FitType.HP_DIV, sky=prepare_sky(sky, FitType.HP_DIV, uv=False), uv=False, iterations=20
    )
    torch.testing.assert_close(dispatched, prepared)


def test_subtractive_sky_and_measurement_share_preparation():
    sky = _make_spectrum()

    torch.testing.assert_close(prepare_sky(sky, FitType.HP_SUB, uv=False, iterations=30), prepare_subtractive(sky, uv=False, iterations=30))
    torch.testing.assert_close(prepare_sky(sky, FitType.POLY, uv=False), log_spectrum(sky))


def test_calibration_preparation_negates_only_for_polynomial_fits():
    spectrum = _make_spectrum()

    poly = prepare_for_calibration(spectrum, FitType.POLY, uv=False)
    hp = prepare_for_calibration(spectrum, FitType.HP_SUB, uv=False, iterations=30)

    torch.testing.assert_close(poly, -log_spectrum(spectrum))
    torch.testing.assert_close(hp, prepare_subtractive(spectrum, uv=False, iterations=30))
