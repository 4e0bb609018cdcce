"""Fit engine evaluating single spectra with one fit window."""

from __future__ import annotations

import logging
from typing import List, Optional, Union

import torch

from ..errors import FitError, FitWindowError
from ..spectra.spectrum import DTYPE, SpectrumRecord
from .preprocessing import HIGH_PASS_ITERATIONS, prepare_for_calibration, prepare_measurement, prepare_sky
from .results import EvaluationResult, FitOutcome, FitStatus
from .solver import DOASFitModel, FitComponent
from .window import SKY_SHIFT_LIMITS, SKY_SQUEEZE_LIMITS, FitType, FitWindow, ParameterConstraint

logger = logging.getLogger(__name__)

SKY_REFERENCE_NAME = "__sky__"
CALIBRATION_POLY_ORDER = 2
CALIBRATION_MAX_STEPS = 5000
# Shorter calibration reference paths are treated as unset.
MIN_CALIBRATION_PATH_LENGTH = 6


class FitEngine:
    """Evaluate spectra with the references and settings of one :class:`FitWindow`.

    The engine owns the sky spectrum of the scan being evaluated.  The sky is stored as given
    and prepared for every fit, the prepared form depends on the fit type of the window.  An
    engine is used by a single scan evaluation at a time.
    """

    def __init__(
        self,
        window: FitWindow,
        min_chi_square_improvement: float = 1e-4,
        high_pass_iterations: int = HIGH_PASS_ITERATIONS,
    ) -> None:
        self.window = window.validate().load_references()
        self.min_chi_square_improvement = min_chi_square_improvement
        self.high_pass_iterations = high_pass_iterations
        self._sky: Optional[torch.Tensor] = None
        self.last_result: Optional[EvaluationResult] = None

    def set_sky_spectrum(self, sky: Union[SpectrumRecord, torch.Tensor]) -> None:
        """Set the (dark corrected) sky spectrum used by the following fits."""

        samples = sky.samples if isinstance(sky, SpectrumRecord) else torch.as_tensor(sky, dtype=DTYPE)
        self._sky = samples.detach().clone()

    @property
    def sky(self) -> Optional[torch.Tensor]:
        return None if self._sky is None else self._sky.clone()

    def prepared_sky(self) -> Optional[torch.Tensor]:
        if self._sky is None:
            return None
        return prepare_sky(self._sky, self.window.fit_type, self.window.uv, self.high_pass_iterations)

    def _sky_component(self, prepared_sky: torch.Tensor) -> FitComponent:
        column = 1.0 if self.window.fit_type is FitType.HP_SUB else -1.0
        if self.window.shift_sky:
            shift = ParameterConstraint.limited(*SKY_SHIFT_LIMITS)
            squeeze = ParameterConstraint.limited(*SKY_SQUEEZE_LIMITS)
        else:
            shift = ParameterConstraint.fixed(0.0)
            squeeze = ParameterConstraint.fixed(1.0)
        return FitComponent(SKY_REFERENCE_NAME, prepared_sky, ParameterConstraint.fixed(column), shift, squeeze)

    def _check_length(self, measured: SpectrumRecord) -> Optional[FitOutcome]:
        if measured.length != self.window.spec_length:
            message = f"spectrum length {measured.length} does not match the fit window length {self.window.spec_length}"
            return FitOutcome(FitStatus.LENGTH_MISMATCH, message=message)
        return None

    def _run(self, components: List[FitComponent], poly_order: int, prepared: torch.Tensor, measured: SpectrumRecord, max_steps: int) -> FitOutcome:
        try:
            low, high = self.window.fit_range(measured.info.start_channel, measured.length)
            model = DOASFitModel(components, poly_order, low, high, self.min_chi_square_improvement)
            result = model.fit(prepared, max_steps)
        except FitError as exc:
            logger.warning("A fit exception has occurred, are the reference files ok? (%s)", exc)
            return FitOutcome(FitStatus.FIT_EXCEPTION, message=str(exc))
        except (FitWindowError, ValueError) as exc:
            logger.warning("Fit failed: %s", exc)
            return FitOutcome(FitStatus.FAILED, message=str(exc))
        return FitOutcome(FitStatus.OK, result=result)

    def evaluate(self, measured: SpectrumRecord, max_steps: int = 1000) -> FitOutcome:
        """Fit the references of the window to the dark corrected spectrum ``measured``.

        On success the result is also kept in :attr:`last_result`, failures leave it untouched.
        The result lists the references of the window, the sky reference is not reported.
        """

        mismatch = self._check_length(measured)
        if mismatch is not None:
            return mismatch

        prepared_sky = self.prepared_sky()
        window = self.window
        prepared = prepare_measurement(
            measured.samples,
            window.fit_type,
            sky=prepared_sky if window.fit_type is FitType.HP_DIV else None,
            uv=window.uv,
            iterations=self.high_pass_iterations,
        )
        components = [FitComponent.from_reference(reference) for reference in window.references]
        if prepared_sky is not None and window.fit_type in (FitType.HP_SUB, FitType.POLY):
            components.append(self._sky_component(prepared_sky))

        outcome = self._run(components, window.poly_order, prepared, measured, max_steps)
        if outcome.ok:
            outcome.result.references = [
                reference for reference in outcome.result.references if reference.name != SKY_REFERENCE_NAME
            ]
            self.last_result = outcome.result
        return outcome

    def evaluate_shift(self, measured: SpectrumRecord, max_steps: int = CALIBRATION_MAX_STEPS) -> FitOutcome:
        """Determine the wavelength calibration of ``measured`` against the Fraunhofer reference.

        The Fraunhofer reference enters with a fixed column, a free shift and a squeeze fixed to
        one.  Shift and squeeze of every ordinary reference follow the Fraunhofer reference.  The
        first reference of the returned result is the Fraunhofer reference.
        """

        mismatch = self._check_length(measured)
        if mismatch is not None:
            return mismatch
        solar = self.window.fraunhofer_reference
        if solar is None or len(solar.path or "") < MIN_CALIBRATION_PATH_LENGTH or solar.data is None:
            return FitOutcome(FitStatus.NO_CALIBRATION_REFERENCE, message="no Fraunhofer reference configured")

        window = self.window
        prepared = prepare_for_calibration(measured.samples, window.fit_type, window.uv, self.high_pass_iterations)
        column = -1.0 if window.fit_type is FitType.POLY else 1.0
        components = [
            FitComponent(
                solar.name,
                solar.data,
                ParameterConstraint.fixed(column),
                ParameterConstraint.free(),
                ParameterConstraint.fixed(1.0),
            )
        ]
        for reference in window.references:
            components.append(
                FitComponent(
                    reference.name,
                    reference.data,
                    reference.column,
                    ParameterConstraint.linked(solar.name),
                    ParameterConstraint.linked(solar.name),
                )
            )
        return self._run(components, CALIBRATION_POLY_ORDER, prepared, measured, max_steps)


__all__ = ["FitEngine", "SKY_REFERENCE_NAME"]
