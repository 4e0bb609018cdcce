"""scan_doas package.

Provides the evaluation core of scanning DOAS instruments: reading binary scan containers,
preparing spectra, resolving dark and sky spectra and fitting absorption cross sections to every
spectrum of a scan.
"""

from .config import (
    DEFAULT_DARK_SETTINGS,
    DEFAULT_SETTINGS,
    ComponentSource,
    DarkOption,
    DarkSettings,
    EvaluationSettings,
    SkyOption,
)
from .errors import (
    DarkSpectrumError,
    FitConvergenceError,
    FitError,
    FitNumericalError,
    FitWindowError,
    ReadErrorCode,
    ScanDOASError,
    ScanFileError,
    SkySpectrumError,
    SpectrumFileError,
    SpectrumLengthError,
    SpectrumReadError,
)
from .spectra.container import ScanContainerReader, write_scan_file
from .spectra.files import read_sky_file, read_spectrum_file, write_spectrum_npz, write_spectrum_txt
from .spectra.instruments import SpectrometerModel, dynamic_range_for_device
from .spectra.spectrum import SpectrumInfo, SpectrumRecord, SpectrumRole
from .evaluation.dark import DarkSpectrumResolver
from .evaluation.engine import FitEngine
from .evaluation.results import EvaluationResult, FitOutcome, FitStatus, ReferenceResult, ScanResult
from .evaluation.scan import ScanEvaluation
from .evaluation.solver import DOASFitModel, FitComponent
from .evaluation.statistics import ProcessingStatistics
from .evaluation.window import FitType, FitWindow, ParameterConstraint, ParameterOption, ReferenceSpectrum

__all__ = [
    "DEFAULT_SETTINGS",
    "DEFAULT_DARK_SETTINGS",
    "ComponentSource",
    "DarkOption",
    "DarkSettings",
    "EvaluationSettings",
    "SkyOption",
    "ScanDOASError",
    "SpectrumLengthError",
    "ReadErrorCode",
    "SpectrumReadError",
    "SpectrumFileError",
    "ScanFileError",
    "DarkSpectrumError",
    "SkySpectrumError",
    "FitWindowError",
    "FitError",
    "FitConvergenceError",
    "FitNumericalError",
    "ScanContainerReader",
    "write_scan_file",
    "read_spectrum_file",
    "read_sky_file",
    "write_spectrum_npz",
    "write_spectrum_txt",
    "SpectrometerModel",
    "dynamic_range_for_device",
    "SpectrumInfo",
    "SpectrumRecord",
    "SpectrumRole",
    "DarkSpectrumResolver",
    "FitEngine",
    "EvaluationResult",
    "FitOutcome",
    "FitStatus",
    "ReferenceResult",
    "ScanResult",
    "ScanEvaluation",
    "DOASFitModel",
    "FitComponent",
    "ProcessingStatistics",
    "FitType",
    "FitWindow",
    "ParameterConstraint",
    "ParameterOption",
    "ReferenceSpectrum",
]
