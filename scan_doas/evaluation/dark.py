"""Resolution of the dark spectrum belonging to a measurement."""

from __future__ import annotations

import logging
from typing import Optional

from ..config import DEFAULT_DARK_SETTINGS, ComponentSource, DarkOption, DarkSettings
from ..errors import DarkSpectrumError, SpectrumFileError, SpectrumLengthError
from ..spectra.container import ScanContainerReader
from ..spectra.files import read_spectrum_file
from ..spectra.spectrum import SpectrumRecord, SpectrumRole

logger = logging.getLogger(__name__)

# Shorter paths to user supplied spectra are treated as unset.
MIN_PATH_LENGTH = 3


def _expanded(record: SpectrumRecord) -> SpectrumRecord:
    record = record.copy()
    if record.info.interlace_step > 1:
        record.interpolate_interlaced()
    return record


def model_dark_spectrum(
    spectrum: SpectrumRecord,
    offset: SpectrumRecord,
    dark_current: SpectrumRecord,
    offset_correct_dark_current: bool = True,
) -> SpectrumRecord:
    """Build a dark spectrum for ``spectrum`` from an offset and a dark-current spectrum.

    The offset is scaled to the number of exposures of ``spectrum``.  If
    ``offset_correct_dark_current`` is set, the offset (scaled to the exposures of the dark-current
    spectrum) is first removed from the dark-current spectrum.  The dark current is then scaled by
    the ratio of total integration times, ``(n * t)`` of the measurement over ``(n * t)`` of the
    dark-current spectrum.

    Raises:
        DarkSpectrumError: If the spectra disagree in length or carry no exposure information.
    """

    offset = _expanded(offset)
    dark_current = _expanded(dark_current)
    if offset.num_spectra <= 0 or dark_current.num_spectra <= 0:
        raise DarkSpectrumError("offset and dark-current spectra need a positive number of exposures")
    if dark_current.exposure_time <= 0:
        raise DarkSpectrumError("the dark-current spectrum has no exposure time")
    try:
        scaled_offset = offset * (spectrum.num_spectra / offset.num_spectra)
        if offset_correct_dark_current:
            dark_current = dark_current - offset * (dark_current.num_spectra / offset.num_spectra)
        factor = (spectrum.num_spectra * spectrum.exposure_time) / (dark_current.num_spectra * dark_current.exposure_time)
        dark = scaled_offset + dark_current * factor
    except SpectrumLengthError as exc:
        raise DarkSpectrumError(f"could not model the dark spectrum: {exc}") from exc
    dark.info = spectrum.info.copy()
    dark.info.role = SpectrumRole.DARK
    dark.info.name = "dark"
    dark.info.interlace_step = 1
    return dark


class DarkSpectrumResolver:
    """Find the dark spectrum of a measurement according to :class:`~scan_doas.config.DarkSettings`.

    :meth:`resolve` returns a new record, already expanded to full resolution and scaled to the
    number of exposures of the measurement.
    """

    def __init__(self, settings: DarkSettings = DEFAULT_DARK_SETTINGS) -> None:
        self.settings = settings

    def resolve(self, spectrum: SpectrumRecord, reader: ScanContainerReader) -> SpectrumRecord:
        """Return the dark spectrum for ``spectrum`` measured in the scan of ``reader``.

        Raises:
            DarkSpectrumError: If a required spectrum is missing or cannot be read.
        """

        option = self.settings.dark_option
        if option in (DarkOption.MEASURED, DarkOption.MODEL_SOMETIMES):
            dark = self._measured(spectrum, reader)
        elif option is DarkOption.MODEL_ALWAYS:
            offset = self._component(
                self.settings.offset_source, self.settings.offset_path, reader.offset, "offset"
            )
            dark_current = self._component(
                self.settings.dark_current_source, self.settings.dark_current_path, reader.dark_current, "dark-current"
            )
            dark = model_dark_spectrum(spectrum, offset, dark_current, self.settings.offset_correct_dark_current)
        elif option is DarkOption.USER_SUPPLIED:
            dark = self._read_user_file(self.settings.dark_path, "dark")
        else:
            raise DarkSpectrumError(f"unsupported dark option {option!r}")
        return self._match(dark, spectrum, reader)

    def _measured(self, spectrum: SpectrumRecord, reader: ScanContainerReader) -> SpectrumRecord:
        dark = reader.dark
        if dark is not None:
            return dark
        offset, dark_current = reader.offset, reader.dark_current
        if offset is not None and dark_current is not None:
            logger.warning(
                "Incorrect settings: scan %s has no dark but an offset and a dark-current spectrum, "
                "check the settings for dark current correction",
                reader.path,
            )
            return model_dark_spectrum(spectrum, offset, dark_current, self.settings.offset_correct_dark_current)
        logger.warning("No dark spectrum found in scan %s, incorrect dark current correction", reader.path)
        placeholder = SpectrumRecord.zeros_like(spectrum)
        placeholder.info.role = SpectrumRole.DARK
        return placeholder

    def _component(
        self,
        source: ComponentSource,
        path: Optional[str],
        from_scan: Optional[SpectrumRecord],
        label: str,
    ) -> SpectrumRecord:
        if source is ComponentSource.USER_SUPPLIED:
            return self._read_user_file(path, label)
        if from_scan is None:
            raise DarkSpectrumError(f"the scan contains no {label} spectrum")
        return from_scan

    def _read_user_file(self, path: Optional[str], label: str) -> SpectrumRecord:
        if path is None or len(path) < MIN_PATH_LENGTH:
            raise DarkSpectrumError(f"no valid path to the user supplied {label} spectrum")
        try:
            return read_spectrum_file(path, role=SpectrumRole.DARK)
        except SpectrumFileError as exc:
            raise DarkSpectrumError(f"could not read the {label} spectrum: {exc}") from exc

    def _match(self, dark: SpectrumRecord, spectrum: SpectrumRecord, reader: ScanContainerReader) -> SpectrumRecord:
        dark = _expanded(dark)
        if dark.length != spectrum.length:
            raise DarkSpectrumError(
                f"dark spectrum of length {dark.length} does not match the spectrum length {spectrum.length}"
            )
        if dark.exposure_time != spectrum.exposure_time:
            logger.warning(
                "Exposure time of the dark spectrum (%s ms) differs from the measured spectrum (%s ms), "
                "incorrect dark correction (%s)",
                dark.exposure_time,
                spectrum.exposure_time,
                reader.path,
            )
        if dark.num_spectra != spectrum.num_spectra and dark.num_spectra > 0:
            dark.mul_(spectrum.num_spectra / dark.num_spectra)
            dark.info.num_spectra = spectrum.num_spectra
        return dark


__all__ = ["DarkSpectrumResolver", "model_dark_spectrum"]
