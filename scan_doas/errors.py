"""Exception types raised by the scan evaluation core."""

from __future__ import annotations

import enum
from typing import Optional


class ScanDOASError(Exception):
    """Base class for all errors raised by :mod:`scan_doas`."""


class SpectrumLengthError(ScanDOASError, ValueError):
    """Two spectra (or a spectrum and a fit window) disagree in length."""


class ReadErrorCode(enum.Enum):
    """Per-record failure codes of the scan container."""

    NOT_FOUND = "not-found"
    END_OF_DATA = "end-of-data"
    CHECKSUM_MISMATCH = "checksum-mismatch"
    DECOMPRESSION_ERROR = "decompression-error"
    MALFORMED = "malformed"


class SpectrumReadError(ScanDOASError):
    """A single record of a scan container could not be decoded."""

    def __init__(self, code: ReadErrorCode, position: Optional[int] = None, message: str = "") -> None:
        self.code = code
        self.position = position
        text = message or code.value
        if position is not None:
            text = f"{text} (spectrum {position})"
        super().__init__(text)

    @property
    def is_end_of_data(self) -> bool:
        return self.code in (ReadErrorCode.END_OF_DATA, ReadErrorCode.NOT_FOUND)


class SpectrumFileError(ScanDOASError):
    """A literal spectrum file could not be parsed in any accepted format."""


class ScanFileError(ScanDOASError):
    """The classification pass over a scan container failed."""


class DarkSpectrumError(ScanDOASError):
    """No dark spectrum could be resolved for a measurement."""


class SkySpectrumError(ScanDOASError):
    """The sky spectrum of a scan could not be acquired."""


class FitWindowError(ScanDOASError, ValueError):
    """The fit window configuration is inconsistent."""


class FitError(ScanDOASError):
    """Base class of failures inside the DOAS fit."""


class FitConvergenceError(FitError):
    """The nonlinear solver diverged or produced non-finite values."""


class FitNumericalError(FitError):
    """The design matrix of the fit is singular or ill-conditioned."""


__all__ = [
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
]
