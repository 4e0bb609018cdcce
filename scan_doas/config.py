"""Package level configuration objects."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


class SkyOption(enum.Enum):
    """Where the sky (reference) spectrum of a scan comes from."""

    SCAN = "scan"
    AVERAGE_OF_GOOD = "average_of_good"
    INDEX = "index"
    USER = "user"


class DarkOption(enum.Enum):
    """Strategy used to obtain the dark spectrum of a measurement."""

    MEASURED = "measured"
    MODEL_SOMETIMES = "model_sometimes"
    MODEL_ALWAYS = "model_always"
    USER_SUPPLIED = "user_supplied"


class ComponentSource(enum.Enum):
    """Origin of the offset or dark-current spectrum for a modeled dark."""

    SCAN = "scan"
    USER_SUPPLIED = "user_supplied"


@dataclass(frozen=True)
class DarkSettings:
    """How dark spectra are resolved for the measurements of a scan.

    ``offset_correct_dark_current`` decides whether the (exposure-scaled) offset spectrum is
    removed from the dark-current spectrum before the dark-current is scaled to the
    measurement.  It applies to the ``MODEL_ALWAYS`` strategy and to the modeled fallback of
    the ``MEASURED`` strategy alike.
    """

    dark_option: DarkOption = DarkOption.MEASURED
    offset_source: ComponentSource = ComponentSource.SCAN
    offset_path: Optional[str] = None
    dark_current_source: ComponentSource = ComponentSource.SCAN
    dark_current_path: Optional[str] = None
    dark_path: Optional[str] = None
    offset_correct_dark_current: bool = True

    def to_dict(self) -> Dict[str, object]:
        """Return a plain dictionary representation."""

        return {
            "dark_option": self.dark_option.value,
            "offset_source": self.offset_source.value,
            "offset_path": self.offset_path,
            "dark_current_source": self.dark_current_source.value,
            "dark_current_path": self.dark_current_path,
            "dark_path": self.dark_path,
            "offset_correct_dark_current": self.offset_correct_dark_current,
        }


@dataclass(frozen=True)
class EvaluationSettings:
    """Container for the user settings of a scan evaluation.

    The object is read-only and is passed explicitly to every scan evaluation, so that several
    scans can be evaluated side by side with the same (or different) settings.
    """

    sky_option: SkyOption = SkyOption.SCAN
    sky_index: int = 0
    sky_spectrum_path: Optional[str] = None
    min_saturation_in_fit_region: float = 0.05
    max_saturation_in_fit_region: float = 0.95
    max_chi_square: Optional[float] = None
    averaged_spectra: bool = False
    main_fit_steps: int = 1000
    calibration_fit_steps: int = 5000
    min_chi_square_improvement: float = 1e-4
    high_pass_iterations: int = 500
    max_calibration_shift_error: float = 1.0
    max_calibration_squeeze_error: float = 0.01
    calibration_saturation_range: Tuple[float, float] = (0.1, 0.9)

    def to_dict(self) -> Dict[str, object]:
        """Return a plain dictionary representation."""

        return {
            "sky_option": self.sky_option.value,
            "sky_index": self.sky_index,
            "sky_spectrum_path": self.sky_spectrum_path,
            "min_saturation_in_fit_region": self.min_saturation_in_fit_region,
            "max_saturation_in_fit_region": self.max_saturation_in_fit_region,
            "max_chi_square": self.max_chi_square,
            "averaged_spectra": self.averaged_spectra,
            "main_fit_steps": self.main_fit_steps,
            "calibration_fit_steps": self.calibration_fit_steps,
            "min_chi_square_improvement": self.min_chi_square_improvement,
            "high_pass_iterations": self.high_pass_iterations,
            "max_calibration_shift_error": self.max_calibration_shift_error,
            "max_calibration_squeeze_error": self.max_calibration_squeeze_error,
            "calibration_saturation_range": self.calibration_saturation_range,
        }


DEFAULT_SETTINGS = EvaluationSettings()
DEFAULT_DARK_SETTINGS = DarkSettings()
