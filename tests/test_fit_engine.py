import pathlib
import sys

import pytest
import torch

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scan_doas.errors import FitNumericalError
from scan_doas.evaluation.engine import FitEngine
from scan_doas.evaluation.results import FitStatus
from scan_doas.evaluation.solver import DOASFitModel, FitComponent
from scan_doas.evaluation.window import FitType, FitWindow, ParameterConstraint, ReferenceSpectrum
from scan_doas.spectra.spectrum import SpectrumInfo, SpectrumRecord

LENGTH = 200
PIXELS = torch.arange(LENGTH, dtype=torch.float64)


def _pinned(name: str, data: torch.Tensor, **constraints) -> FitComponent:
    constraints.setdefault("shift", ParameterConstraint.fixed(0.0))
    constraints.setdefault("squeeze", ParameterConstraint.fixed(1.0))
    return FitComponent(name, data, **constraints)


def _make_reference(name: str, data: torch.Tensor, **constraints) -> ReferenceSpectrum:
    constraints.setdefault("shift", ParameterConstraint.fixed(0.0))
    constraints.setdefault("squeeze", ParameterConstraint.fixed(1.0))
    return ReferenceSpectrum(name=name, data=data, **constraints)


def _make_window(*references, **kwargs) -> FitWindow:
    kwargs.setdefault("fit_low", 30)
    kwargs.setdefault("fit_high", 170)
    kwargs.setdefault("spec_length", LENGTH)
    kwargs.setdefault("poly_order", 2)
    kwargs.setdefault("fit_type", FitType.POLY)
    kwargs.setdefault("uv", False)
    return FitWindow(references=tuple(references), **kwargs)


def _intensity(optical_depth: torch.Tensor) -> SpectrumRecord:
    """Spectrum with no light on the first pixels, so that the offset correction removes nothing."""

    samples = 1000.0 * torch.exp(-optical_depth)
    samples[:25] = 0.0
    return SpectrumRecord(samples, SpectrumInfo(num_spectra=1, exposure_time=100.0))


def test_linear_parameters_are_recovered_exactly():
    first = 1e-3 * torch.sin(PIXELS / 7.0)
    second = 4e-3 * torch.cos(PIXELS / 11.0)
    model = DOASFitModel([_pinned("A", first), _pinned("B", second)], poly_order=2, fit_low=20, fit_high=180)
    t = (PIXELS - 99.5) / 79.5
    prepared = 2.5 * first - 0.7 * second + 0.3 - 0.1 * t + 0.05 * t ** 2

    result = model.fit(prepared)

    assert result.steps == 1
    assert result.reference("A").column == pytest.approx(2.5, rel=1e-6)
    assert result.reference("B").column == pytest.approx(-0.7, rel=1e-6)
    assert result.polynomial == pytest.approx([0.3, -0.1, 0.05], abs=1e-8)
    assert result.chi_square < 1e-20
    torch.testing.assert_close(result.evaluate_polynomial(PIXELS[20:180]), (0.3 - 0.1 * t + 0.05 * t ** 2)[20:180])


def test_free_shift_is_recovered():
    reference = torch.sin(PIXELS / 5.0)
    model = DOASFitModel(
        [_pinned("SO2", reference, shift=ParameterConstraint.free())], poly_order=1, fit_low=20, fit_high=180
    )
    prepared = 1.5 * torch.sin((PIXELS - 0.4) / 5.0)

    result = model.fit(prepared, max_steps=100)

    fitted = result.reference("SO2")
    assert fitted.shift == pytest.approx(0.4, abs=0.02)
    assert fitted.column == pytest.approx(1.5, rel=1e-2)
    assert fitted.squeeze == 1.0
    assert fitted.shift_error >= 0.0
    assert result.steps >= 1


def test_linked_shifts_share_one_value():
    first = torch.sin(PIXELS / 5.0)
    second = torch.cos(PIXELS / 9.0)
    model = DOASFitModel(
        [
            _pinned("SO2", first, shift=ParameterConstraint.free()),
            _pinned("O3", second, shift=ParameterConstraint.linked("SO2")),
        ],
        poly_order=1,
        fit_low=20,
        fit_high=180,
    )
    prepared = torch.sin((PIXELS - 0.3) / 5.0) + 0.5 * torch.cos((PIXELS - 0.3) / 9.0)

    result = model.fit(prepared, max_steps=100)

    assert result.reference("SO2").shift == result.reference("O3").shift
    assert result.reference("O3").shift == pytest.approx(0.3, abs=0.02)


def test_limited_column_is_clamped_to_its_range():
    reference = torch.sin(PIXELS / 7.0)
    model = DOASFitModel(
        [_pinned("SO2", reference, column=ParameterConstraint.limited(0.0, 1.0))],
        poly_order=1,
        fit_low=20,
        fit_high=180,
    )

    result = model.fit(2.0 * reference)

    assert result.reference("SO2").column == 1.0
    assert result.reference("SO2").column_error == 0.0


def test_linearly_dependent_references_are_a_numerical_error():
    reference = torch.sin(PIXELS / 7.0)
    model = DOASFitModel([_pinned("A", reference), _pinned("B", 2.0 * reference)], 1, 20, 180)

    with pytest.raises(FitNumericalError):
        model.fit(reference)


def test_engine_recovers_column_with_sky_reference():
    sigma = 0.5 + 0.3 * torch.sin(PIXELS / 6.0)
    background = 0.2 * torch.sin(PIXELS / 40.0)
    engine = FitEngine(_make_window(_make_reference("SO2", sigma)))
    engine.set_sky_spectrum(_intensity(background))

    outcome = engine.evaluate(_intensity(background + 0.2 * sigma))

    assert outcome.status is FitStatus.OK
    assert [reference.name for reference in outcome.result.references] == ["SO2"]
    assert outcome.result.reference("SO2").column == pytest.approx(0.2, abs=1e-6)
    assert engine.last_result is outcome.result


def test_engine_reports_fit_exceptions_and_keeps_last_result(caplog):
    reference = torch.sin(PIXELS / 7.0)
    engine = FitEngine(_make_window(_make_reference("A", reference), _make_reference("B", reference.clone())))

    outcome = engine.evaluate(_intensity(0.1 * reference))

    assert outcome.status is FitStatus.FIT_EXCEPTION
    assert outcome.result is None
    assert engine.last_result is None
    assert "fit exception" in caplog.text


def test_engine_rejects_spectra_of_wrong_length():
    engine = FitEngine(_make_window(_make_reference("SO2", torch.sin(PIXELS / 7.0))))

    outcome = engine.evaluate(SpectrumRecord(torch.ones(150, dtype=torch.float64)))

    assert outcome.status is FitStatus.LENGTH_MISMATCH


@pytest.mark.parametrize("fraunhofer", [None, ReferenceSpectrum("FraunhoferRef", torch.ones(LENGTH), path="a.txt")])
def test_shift_evaluation_needs_a_fraunhofer_reference(fraunhofer):
    window = _make_window(_make_reference("SO2", torch.sin(PIXELS / 7.0)), fraunhofer_reference=fraunhofer)

    outcome = FitEngine(window).evaluate_shift(_intensity(torch.zeros(LENGTH, dtype=torch.float64)))

    assert outcome.status is FitStatus.NO_CALIBRATION_REFERENCE


def test_shift_evaluation_recovers_the_solar_shift():
    solar = 0.05 * torch.sin(PIXELS / 5.0)
    sigma = torch.cos(PIXELS / 13.0)
    fraunhofer = ReferenceSpectrum("FraunhoferRef", solar, path="solar_kurucz.xs")
    window = _make_window(
        _make_reference("SO2", sigma, shift=ParameterConstraint.free()), fraunhofer_reference=fraunhofer
    )

    # the measurement carries the solar structure shifted by 0.4 pixels and no absorber
    outcome = FitEngine(window).evaluate_shift(_intensity(-0.05 * torch.sin((PIXELS - 0.4) / 5.0)), max_steps=200)

    assert outcome.ok
    solar_result = outcome.result.references[0]
    assert solar_result.name == "FraunhoferRef"
    assert solar_result.column == -1.0
    assert solar_result.squeeze == 1.0
    assert solar_result.shift == pytest.approx(0.4, abs=0.02)
    assert outcome.result.reference("SO2").shift == solar_result.shift
    assert outcome.result.reference("SO2").column == pytest.approx(0.0, abs=1e-3)


def test_fit_range_shorter_than_the_linear_parameters_is_reported():
    window = _make_window(_make_reference("SO2", torch.sin(PIXELS / 7.0)), fit_low=30, fit_high=33, poly_order=3)
    engine = FitEngine(window)

    outcome = engine.evaluate(_intensity(0.1 * torch.sin(PIXELS / 7.0)))

    assert outcome.status is FitStatus.FIT_EXCEPTION
    assert engine.last_result is None
    assert "linear parameters" in outcome.message


HIGH_PASS_LENGTH = 400
HIGH_PASS_PIXELS = torch.arange(HIGH_PASS_LENGTH, dtype=torch.float64)


def _high_pass_spectrum(optical_depth: torch.Tensor) -> SpectrumRecord:
    """Smooth continuum times ``exp(-optical_depth)``, dark below pixel 25."""

    samples = 1000.0 * torch.exp(0.001 * (HIGH_PASS_PIXELS - 200.0) - optical_depth)
    samples[:25] = 0.0
    return SpectrumRecord(samples, SpectrumInfo(num_spectra=1, exposure_time=100.0))


def _high_pass_engine(fit_type: FitType, sigma: torch.Tensor) -> FitEngine:
    # far enough from the dark pixels and the last pixel for the smoothing to settle
    window = _make_window(
        _make_reference("SO2", sigma), fit_low=120, fit_high=300, spec_length=HIGH_PASS_LENGTH, fit_type=fit_type
    )
    return FitEngine(window)


def test_ratio_fit_reports_negated_column():
    sigma = 0.3 * torch.sin(HIGH_PASS_PIXELS / 3.0)
    engine = _high_pass_engine(FitType.HP_DIV, sigma)
    engine.set_sky_spectrum(_high_pass_spectrum(torch.zeros(HIGH_PASS_LENGTH, dtype=torch.float64)))

    outcome = engine.evaluate(_high_pass_spectrum(0.2 * sigma))

    assert outcome.status is FitStatus.OK
    assert outcome.result.reference("SO2").column == pytest.approx(-0.2, abs=1e-3)


def test_subtractive_fit_removes_sky_structure_with_unit_column():
    sigma = 0.3 * torch.sin(HIGH_PASS_PIXELS / 3.0)
    solar = -0.05 * torch.sin(HIGH_PASS_PIXELS)
    engine = _high_pass_engine(FitType.HP_SUB, sigma)
    engine.set_sky_spectrum(_high_pass_spectrum(solar))

    outcome = engine.evaluate(_high_pass_spectrum(solar + 0.2 * sigma))

    assert outcome.status is FitStatus.OK
    assert [reference.name for reference in outcome.result.references] == ["SO2"]
    assert outcome.result.reference("SO2").column == pytest.approx(-0.2, abs=1e-3)
