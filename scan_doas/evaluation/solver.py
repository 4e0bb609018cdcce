"""Combined linear and nonlinear least-squares solver of the DOAS model.

The model of a prepared spectrum over the fit range is

    y(p) = sum_i C_i * R_i(c + (p - c) * squeeze_i - shift_i) + sum_k a_k * t**k,

with the reference spectra ``R_i``, their columns ``C_i``, the centre ``c`` of the fit range
and the normalised pixel coordinate ``t = (p - c) / h``.  Columns and polynomial coefficients
enter linearly and are eliminated by a least-squares solve at every evaluation (variable
projection).  The free shifts and squeezes are refined with damped Gauss-Newton
(Levenberg-Marquardt) steps, the Jacobian is obtained with forward-mode automatic
differentiation.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import torch
import torch.autograd.forward_ad as fwAD

from ..errors import FitConvergenceError, FitNumericalError
from ..spectra.spectrum import DTYPE
from .reference import ReferenceFunction
from .results import EvaluationResult, ReferenceResult
from .window import (
    DEFAULT_SHIFT_LIMITS,
    DEFAULT_SQUEEZE_LIMITS,
    ParameterConstraint,
    ParameterOption,
    ReferenceSpectrum,
    link_roots,
)

logger = logging.getLogger(__name__)

_NEUTRAL = {"shift": 0.0, "squeeze": 1.0}
_DEFAULT_LIMITS = {"shift": DEFAULT_SHIFT_LIMITS, "squeeze": DEFAULT_SQUEEZE_LIMITS}


@dataclass
class FitComponent:
    """One reference of the model together with its parameter constraints."""

    name: str
    samples: torch.Tensor
    column: ParameterConstraint = field(default_factory=ParameterConstraint)
    shift: ParameterConstraint = field(default_factory=ParameterConstraint)
    squeeze: ParameterConstraint = field(default_factory=ParameterConstraint)

    @classmethod
    def from_reference(cls, reference: ReferenceSpectrum) -> "FitComponent":
        if reference.data is None:
            raise ValueError(f"reference {reference.name!r} has no data loaded")
        return cls(reference.name, reference.data, reference.column, reference.shift, reference.squeeze)


@dataclass
class _Nonlinear:
    kind: str
    root: int
    low: float
    high: float
    step: float
    initial: float


class DOASFitModel:
    """Least-squares fit of reference spectra and a polynomial to a prepared spectrum.

    Args:
        components: References of the model.  Links between parameters refer to other
            components by name.
        poly_order: Order of the baseline polynomial.
        fit_low: First sample of the fit range.
        fit_high: End (exclusive) of the fit range.
        min_chi_square_improvement: Relative chi-square improvement below which the nonlinear
            iteration stops.
        rank_tolerance: Relative size of the smallest diagonal element of the QR factor below
            which the design matrix is considered singular.
    """

    def __init__(
        self,
        components: Sequence[FitComponent],
        poly_order: int,
        fit_low: int,
        fit_high: int,
        min_chi_square_improvement: float = 1e-4,
        rank_tolerance: float = 1e-10,
    ) -> None:
        if fit_high <= fit_low:
            raise ValueError(f"empty fit range [{fit_low}, {fit_high})")
        if poly_order < 0:
            raise ValueError("polynomial order must be non-negative")
        self.components = list(components)
        self.poly_order = int(poly_order)
        self.fit_low = int(fit_low)
        self.fit_high = int(fit_high)
        self.min_chi_square_improvement = float(min_chi_square_improvement)
        self.rank_tolerance = float(rank_tolerance)

        self.functions = [ReferenceFunction(component.samples) for component in self.components]
        names = [component.name for component in self.components]
        self.roots = {
            kind: link_roots(names, [getattr(component, kind) for component in self.components])
            for kind in ("column", "shift", "squeeze")
        }

        self.pixels = torch.arange(self.fit_low, self.fit_high, dtype=DTYPE)
        self.centre = 0.5 * (self.fit_low + self.fit_high - 1)
        self.half_width = max(0.5 * (self.fit_high - 1 - self.fit_low), 1.0)
        t = (self.pixels - self.centre) / self.half_width
        self.poly_basis = torch.stack([t ** order for order in range(self.poly_order + 1)], dim=1)

        self._column_roots = sorted(set(self.roots["column"]))
        self._free_columns = [root for root in self._column_roots if self.components[root].column.is_free]
        self._nonlinear: List[_Nonlinear] = []
        self._theta_index: Dict[Tuple[str, int], int] = {}
        for kind in ("shift", "squeeze"):
            for root in sorted(set(self.roots[kind])):
                constraint: ParameterConstraint = getattr(self.components[root], kind)
                if constraint.option is ParameterOption.FREE:
                    low, high = _DEFAULT_LIMITS[kind]
                elif constraint.option is ParameterOption.LIMITED:
                    low, high = constraint.value, constraint.max_value
                else:
                    continue
                initial = min(max(_NEUTRAL[kind], low), high)
                self._theta_index[(kind, root)] = len(self._nonlinear)
                self._nonlinear.append(_Nonlinear(kind, root, low, high, constraint.step, initial))

    @property
    def parameter_count(self) -> int:
        return len(self._free_columns) + self.poly_order + 1 + len(self._nonlinear)

    # ------------------------------------------------------------------ model

    def _nonlinear_value(self, kind: str, component: int, theta: torch.Tensor):
        root = self.roots[kind][component]
        index = self._theta_index.get((kind, root))
        if index is not None:
            return theta[index]
        constraint: ParameterConstraint = getattr(self.components[root], kind)
        if constraint.option is ParameterOption.FIXED:
            return constraint.value
        return _NEUTRAL[kind]

    def _curves(self, theta: torch.Tensor) -> List[torch.Tensor]:
        """Reference values over the fit range, in the units of the literal reference."""

        curves = []
        for index, function in enumerate(self.functions):
            shift = self._nonlinear_value("shift", index, theta)
            squeeze = self._nonlinear_value("squeeze", index, theta)
            curves.append(function.sample(self.pixels, self.centre, shift, squeeze) * function.scale)
        return curves

    def _design(
        self, theta: torch.Tensor, clamped: Dict[int, float]
    ) -> Tuple[torch.Tensor, torch.Tensor, List[int]]:
        """Return the design matrix, the fixed part of the model and the free column roots."""

        curves = self._curves(theta)
        grouped: Dict[int, torch.Tensor] = {}
        for index, curve in enumerate(curves):
            root = self.roots["column"][index]
            grouped[root] = grouped[root] + curve if root in grouped else curve

        fixed = torch.zeros_like(self.pixels)
        columns = []
        free = []
        for root in self._column_roots:
            constraint = self.components[root].column
            if root in clamped:
                fixed = fixed + clamped[root] * grouped[root]
            elif constraint.is_free:
                columns.append(grouped[root] / self.functions[root].scale)
                free.append(root)
            else:
                fixed = fixed + constraint.value * grouped[root]
        columns.extend(self.poly_basis.unbind(dim=1))
        return torch.stack(columns, dim=1), fixed, free

    def _least_squares(self, design: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        if design.shape[0] < design.shape[1]:
            raise FitNumericalError(
                f"the fit range has {design.shape[0]} pixels but the fit has {design.shape[1]} linear parameters"
            )
        q, r = torch.linalg.qr(design)
        diagonal = r.diagonal().abs()
        if not bool(torch.isfinite(diagonal).all()):
            raise FitConvergenceError("non-finite values in the design matrix")
        largest = float(diagonal.max())
        if largest == 0.0 or float(diagonal.min()) <= self.rank_tolerance * largest:
            raise FitNumericalError("the design matrix is singular, are the references linearly dependent?")
        rhs = (q.transpose(0, 1) @ target).unsqueeze(1)
        return torch.linalg.solve_triangular(r, rhs, upper=True).squeeze(1)

    def _solve_linear(self, theta: torch.Tensor, target: torch.Tensor):
        """Solve for columns and polynomial at ``theta``, limited columns are clamped to their range."""

        clamped: Dict[int, float] = {}
        while True:
            design, fixed, free = self._design(theta, clamped)
            coefficients = self._least_squares(design, target - fixed)
            violated = False
            for position, root in enumerate(free):
                constraint = self.components[root].column
                if constraint.option is not ParameterOption.LIMITED:
                    continue
                physical = float(coefficients[position]) / self.functions[root].scale
                if physical < constraint.value:
                    clamped[root] = constraint.value
                    violated = True
                elif physical > constraint.max_value:
                    clamped[root] = constraint.max_value
                    violated = True
            if not violated:
                residual = target - fixed - design @ coefficients
                return coefficients, residual, clamped, free

    def _jacobian(
        self, theta: torch.Tensor, target: torch.Tensor, coefficients: torch.Tensor, clamped: Dict[int, float]
    ) -> torch.Tensor:
        """Derivative of the residual with respect to the nonlinear parameters at fixed columns."""

        jacobian = torch.zeros(self.pixels.numel(), theta.numel(), dtype=DTYPE)
        for index in range(theta.numel()):
            tangent = torch.zeros_like(theta)
            tangent[index] = 1.0
            with fwAD.dual_level():
                dual = fwAD.make_dual(theta, tangent)
                design, fixed, _ = self._design(dual, clamped)
                residual = target - fixed - design @ coefficients
                derivative = fwAD.unpack_dual(residual).tangent
            if derivative is not None:
                jacobian[:, index] = derivative
        return jacobian

    # ------------------------------------------------------------------ fitting

    def fit(self, prepared: torch.Tensor, max_steps: int = 1000) -> EvaluationResult:
        """Fit the model to ``prepared`` (the full prepared spectrum).

        Raises:
            FitNumericalError: If the design matrix is singular.
            FitConvergenceError: If the solver produces non-finite values.
        """

        prepared = torch.as_tensor(prepared, dtype=DTYPE)
        if prepared.numel() < self.fit_high:
            raise ValueError(f"spectrum of length {prepared.numel()} does not cover the fit range")
        target = prepared[self.fit_low:self.fit_high]
        if not bool(torch.isfinite(target).all()):
            raise FitConvergenceError("the prepared spectrum contains non-finite values")

        lower = torch.tensor([item.low for item in self._nonlinear], dtype=DTYPE)
        upper = torch.tensor([item.high for item in self._nonlinear], dtype=DTYPE)
        steps_cap = torch.tensor([item.step for item in self._nonlinear], dtype=DTYPE)
        theta = torch.tensor([item.initial for item in self._nonlinear], dtype=DTYPE)

        coefficients, residual, clamped, free = self._solve_linear(theta, target)
        chi_square = float(residual @ residual)
        if not math.isfinite(chi_square):
            raise FitConvergenceError("non-finite chi-square at the start of the fit")

        steps = 1
        damping = 1e-3
        if theta.numel() > 0:
            steps = 0
            while steps < max_steps:
                steps += 1
                jacobian = self._jacobian(theta, target, coefficients, clamped)
                gradient = jacobian.transpose(0, 1) @ residual
                normal = jacobian.transpose(0, 1) @ jacobian
                scaling = torch.clamp(normal.diagonal(), min=1e-12)
                accepted = False
                while damping < 1e10:
                    try:
                        delta = torch.linalg.solve(normal + damping * torch.diag(scaling), -gradient)
                    except RuntimeError:
                        damping *= 10.0
                        continue
                    delta = torch.where(steps_cap > 0, torch.clamp(delta, -steps_cap, steps_cap), delta)
                    candidate = torch.minimum(torch.maximum(theta + delta, lower), upper)
                    trial = self._solve_linear(candidate, target)
                    trial_chi = float(trial[1] @ trial[1])
                    if math.isfinite(trial_chi) and trial_chi < chi_square:
                        accepted = True
                        damping = max(damping / 10.0, 1e-12)
                        break
                    damping *= 10.0
                if not accepted:
                    break
                improvement = (chi_square - trial_chi) / max(chi_square, 1e-300)
                theta = candidate
                coefficients, residual, clamped, free = trial
                chi_square = trial_chi
                if improvement < self.min_chi_square_improvement or chi_square <= 1e-300:
                    break

        if not bool(torch.isfinite(theta).all()) or not bool(torch.isfinite(coefficients).all()):
            raise FitConvergenceError("the fit diverged")
        errors = self._standard_errors(theta, target, coefficients, clamped, free, chi_square)
        return self._result(theta, coefficients, residual, clamped, free, errors, chi_square, steps)

    def _standard_errors(
        self,
        theta: torch.Tensor,
        target: torch.Tensor,
        coefficients: torch.Tensor,
        clamped: Dict[int, float],
        free: List[int],
        chi_square: float,
    ) -> torch.Tensor:
        design, _, _ = self._design(theta, clamped)
        parts = [-design]
        if theta.numel() > 0:
            parts.append(self._jacobian(theta, target, coefficients, clamped))
        jacobian = torch.cat(parts, dim=1)
        count = jacobian.shape[1]
        try:
            covariance = torch.linalg.inv(jacobian.transpose(0, 1) @ jacobian)
        except RuntimeError as exc:
            raise FitNumericalError(f"could not estimate the parameter errors: {exc}") from exc
        dof = max(self.pixels.numel() - count, 1)
        covariance = covariance * (chi_square / dof)
        return torch.sqrt(torch.clamp(covariance.diagonal(), min=0.0))

    def _result(
        self,
        theta: torch.Tensor,
        coefficients: torch.Tensor,
        residual: torch.Tensor,
        clamped: Dict[int, float],
        free: List[int],
        errors: torch.Tensor,
        chi_square: float,
        steps: int,
    ) -> EvaluationResult:
        linear_count = len(free) + self.poly_order + 1
        references = []
        for index, component in enumerate(self.components):
            root = self.roots["column"][index]
            scale = self.functions[root].scale
            if root in clamped:
                column, column_error = clamped[root], 0.0
            elif root in free:
                position = free.index(root)
                column = float(coefficients[position]) / scale
                column_error = float(errors[position]) / scale
            else:
                column, column_error = self.components[root].column.value, 0.0
            values = {}
            for kind in ("shift", "squeeze"):
                parameter_root = self.roots[kind][index]
                theta_index = self._theta_index.get((kind, parameter_root))
                if theta_index is None:
                    values[kind] = (float(self._nonlinear_value(kind, index, theta)), 0.0)
                else:
                    values[kind] = (float(theta[theta_index]), float(errors[linear_count + theta_index]))
            references.append(
                ReferenceResult(
                    name=component.name,
                    column=column,
                    column_error=column_error,
                    shift=values["shift"][0],
                    shift_error=values["shift"][1],
                    squeeze=values["squeeze"][0],
                    squeeze_error=values["squeeze"][1],
                )
            )
        polynomial = [float(value) for value in coefficients[len(free):]]
        result = EvaluationResult(
            references=references,
            polynomial=polynomial,
            steps=steps,
            chi_square=chi_square,
            delta=float(residual.max() - residual.min()),
            fit_low=self.fit_low,
            fit_high=self.fit_high,
            poly_centre=self.centre,
            poly_half_width=self.half_width,
            residual=residual.detach().clone(),
        )
        if not result.is_finite():
            raise FitConvergenceError("the fit produced non-finite results")
        logger.debug("fit converged after %d steps, chi-square %.4g", steps, chi_square)
        return result


__all__ = ["FitComponent", "DOASFitModel"]
