"""Evaluation of all spectra of one scan."""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from typing import Callable, List, Optional, Tuple

from ..config import DEFAULT_DARK_SETTINGS, DEFAULT_SETTINGS, DarkSettings, EvaluationSettings, SkyOption
from ..errors import (
    ScanDOASError,
    SkySpectrumError,
    SpectrumFileError,
    SpectrumReadError,
)
from ..spectra.container import ScanContainerReader
from ..spectra.files import read_sky_file
from ..spectra.instruments import dynamic_range_for_device
from ..spectra.spectrum import SpectrumRecord, SpectrumRole
from .dark import DarkSpectrumResolver
from .engine import FitEngine
from .results import ScanResult
from .statistics import ProcessingStatistics
from .window import FRAUNHOFER_NAME, FitWindow, ParameterConstraint

logger = logging.getLogger(__name__)

InstrumentLookup = Callable[[str], float]

# Shorter Fraunhofer reference paths mean that no wavelength calibration is requested.
MIN_FRAUNHOFER_PATH_LENGTH = 5


class ScanEvaluation:
    """Evaluate the spectra of a scan with one fit window.

    Settings, dark settings, statistics and the instrument lookup are explicit parameters, an
    instance holds no other state than the result of the last evaluated scan.  Scans may be
    evaluated in parallel with separate instances and readers.

    Args:
        settings: User settings of the evaluation.
        dark_settings: How dark spectra are obtained.
        statistics: Running processing statistics, updated by every evaluated scan.
        instrument_lookup: Maps a device serial to the dynamic range of one exposure.
    """

    def __init__(
        self,
        settings: EvaluationSettings = DEFAULT_SETTINGS,
        dark_settings: DarkSettings = DEFAULT_DARK_SETTINGS,
        statistics: Optional[ProcessingStatistics] = None,
        instrument_lookup: InstrumentLookup = dynamic_range_for_device,
    ) -> None:
        self.settings = settings
        self.dark_resolver = DarkSpectrumResolver(dark_settings)
        self.statistics = statistics if statistics is not None else ProcessingStatistics()
        self.instrument_lookup = instrument_lookup
        self.result: Optional[ScanResult] = None

    # ------------------------------------------------------------------ entry point

    def evaluate_scan(self, reader: ScanContainerReader, window: FitWindow) -> int:
        """Evaluate every measurement spectrum of ``reader`` and return the number evaluated.

        The per-spectrum results are available in :attr:`result` afterwards.  Zero is returned
        if the sky, the dark or the wavelength calibration of the scan cannot be obtained.
        """

        try:
            if not reader.initialized:
                reader.check_scan_file()
            adjusted = self._adjust_window(reader, window)
            solar = adjusted.fraunhofer_reference
            if solar is not None and len(solar.path or "") >= MIN_FRAUNHOFER_PATH_LENGTH:
                logger.info("Determining shift from the Fraunhofer reference")
                engine = self._calibrated_engine(reader, adjusted)
            elif adjusted.find_optimal_shift:
                engine = self._optimal_shift_engine(reader, adjusted)
            else:
                engine = self._engine(adjusted)
            result = self._evaluate_opened_scan(reader, engine, self.statistics)
        except ScanDOASError as exc:
            logger.error("Could not evaluate scan %s: %s", reader.path, exc)
            self.statistics.insert_scan(False)
            return 0
        self.statistics.insert_scan(True)
        self.result = result
        return result.evaluated_count

    # ------------------------------------------------------------------ helpers

    def _adjust_window(self, reader: ScanContainerReader, window: FitWindow) -> FitWindow:
        interlace = max(reader.interlace_steps, 1)
        adjusted = dataclasses.replace(
            window,
            interlace_step=interlace,
            spec_length=reader.spectrum_length * interlace,
            start_channel=reader.start_channel,
        )
        return adjusted.validate().load_references()

    def _engine(self, window: FitWindow) -> FitEngine:
        return FitEngine(window, self.settings.min_chi_square_improvement, self.settings.high_pass_iterations)

    def _dynamic_range(self, record: SpectrumRecord) -> float:
        return self.instrument_lookup(record.info.device)

    def _divide_by_coadds(self, *records: SpectrumRecord) -> None:
        if self.settings.averaged_spectra:
            return
        for record in records:
            if record.num_spectra > 0:
                record.div_(record.num_spectra)

    def ignore(self, spectrum: SpectrumRecord, dark: SpectrumRecord, fit_low: int, fit_high: int) -> bool:
        """Return True if ``spectrum`` has too little signal in the fit region to be evaluated."""

        intensity = spectrum.max_value(fit_low, fit_high) - dark.min_value(fit_low, fit_high)
        return intensity < self._dynamic_range(spectrum) * self.settings.min_saturation_in_fit_region

    def _measurements(self, reader: ScanContainerReader) -> List[Tuple[int, SpectrumRecord]]:
        """Read all decodable measurement spectra of the scan, the cursor is reset afterwards."""

        spectra = []
        reader.reset_counter()
        while True:
            try:
                record = reader.next_spectrum()
            except SpectrumReadError as exc:
                if exc.is_end_of_data:
                    break
                continue
            spectra.append((reader.last_position, record))
        reader.reset_counter()
        return spectra

    # ------------------------------------------------------------------ sky

    def _acquire_sky(self, reader: ScanContainerReader, window: FitWindow) -> SpectrumRecord:
        option = self.settings.sky_option
        if option is SkyOption.SCAN:
            sky = reader.sky
            if sky is None:
                raise SkySpectrumError(f"scan {reader.path} has no sky spectrum")
        elif option is SkyOption.AVERAGE_OF_GOOD:
            sky = self._average_sky(reader, window)
        elif option is SkyOption.INDEX:
            try:
                sky = reader.spectrum_at(self.settings.sky_index)
            except SpectrumReadError as exc:
                raise SkySpectrumError(f"could not read sky spectrum {self.settings.sky_index}: {exc}") from exc
        elif option is SkyOption.USER:
            path = self.settings.sky_spectrum_path
            if not path:
                raise SkySpectrumError("no user supplied sky spectrum configured")
            try:
                sky = read_sky_file(path)
            except SpectrumFileError as exc:
                raise SkySpectrumError(str(exc)) from exc
        else:
            raise SkySpectrumError(f"unsupported sky option {option!r}")
        sky.interpolate_interlaced()
        sky.info.role = SpectrumRole.SKY
        return sky

    def _average_sky(self, reader: ScanContainerReader, window: FitWindow) -> SpectrumRecord:
        low, high = window.fit_range(window.start_channel, window.spec_length)
        candidates = []
        if reader.sky is not None:
            candidates.append(reader.sky)
        candidates.extend(record for _, record in self._measurements(reader))
        sky: Optional[SpectrumRecord] = None
        for candidate in candidates:
            candidate.interpolate_interlaced()
            intensity = candidate.max_value(low, high)
            if candidate.is_dark or intensity >= self._dynamic_range(candidate) * candidate.num_spectra:
                continue
            if sky is None:
                sky = candidate.copy()
            else:
                sky.add_(candidate)
                sky.info.num_spectra += candidate.num_spectra
        if sky is None:
            raise SkySpectrumError(f"no unsaturated spectrum in scan {reader.path} to average as sky")
        return sky

    def _prepare_sky(
        self, reader: ScanContainerReader, window: FitWindow
    ) -> Tuple[SpectrumRecord, SpectrumRecord, Optional[SpectrumRecord]]:
        """Return the dark corrected sky, the sky without dark correction and the dark of the sky."""

        sky = self._acquire_sky(reader, window)
        original = sky.copy()
        dark = None
        if self.settings.sky_option is not SkyOption.USER:
            dark = self.dark_resolver.resolve(sky, reader)
            sky.sub_(dark)
        self._divide_by_coadds(sky, original)
        return sky, original, dark

    # ------------------------------------------------------------------ main loop

    def _evaluate_opened_scan(
        self, reader: ScanContainerReader, engine: FitEngine, statistics: ProcessingStatistics
    ) -> ScanResult:
        window = engine.window
        sky, original_sky, sky_dark = self._prepare_sky(reader, window)
        engine.set_sky_spectrum(sky)
        fit_low, fit_high = window.fit_range(window.start_channel, window.spec_length)

        result = ScanResult(
            sky_info=original_sky.info.copy(),
            dark_info=None if sky_dark is None else sky_dark.info.copy(),
        )
        skipped = set()
        if self.settings.sky_option in (SkyOption.SCAN, SkyOption.INDEX):
            skipped.add(sky.scan_index)
        highest_column = 0.0

        reader.reset_counter()
        while True:
            try:
                current = reader.next_spectrum()
            except SpectrumReadError as exc:
                if exc.is_end_of_data:
                    break
                logger.warning("Faulty spectrum found in %s, %s. Spectrum ignored", reader.path, exc)
                result.mark_corrupted(exc.position)
                statistics.insert_corrupted_spectrum()
                continue
            position = reader.last_position
            if position in skipped:
                continue

            current.interpolate_interlaced()
            dark = self.dark_resolver.resolve(current, reader)

            current.info.peak_intensity = current.max_value(0, current.length - 1)
            current.info.fit_intensity = current.max_value(fit_low, fit_high)

            self._divide_by_coadds(current, dark)

            if self.ignore(current, dark, fit_low, fit_high):
                logger.info("  - Ignoring spectrum %d in scan %s", position, reader.path)
                statistics.insert_ignored_spectrum()
                continue

            current.sub_(dark)

            started = time.perf_counter()
            outcome = engine.evaluate(current, self.settings.main_fit_steps)
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            if not outcome.ok:
                logger.warning(
                    "Failed to evaluate spectrum %d in scan %s from spectrometer %s: %s",
                    position,
                    reader.path,
                    current.info.device,
                    outcome.message,
                )
                statistics.insert_failed_spectrum()
                continue
            statistics.insert_evaluated_spectrum(elapsed_ms)

            index = result.append(outcome.result, current.info.copy())
            good = result.check_goodness_of_fit(
                index,
                self._dynamic_range(current),
                self.settings.max_saturation_in_fit_region,
                self.settings.max_chi_square,
            )
            if good and outcome.result.references:
                column = abs(outcome.result.references[0].column)
                if column > highest_column:
                    highest_column = column
                    result.most_absorbing_position = position
                    result.most_absorbing_index = index
        return result

    # ------------------------------------------------------------------ wavelength calibration

    def _fixed_shift_window(self, window: FitWindow, shift: float, squeeze: float, skip_fraunhofer: bool) -> FitWindow:
        references = []
        for reference in window.references:
            if skip_fraunhofer and reference.name == FRAUNHOFER_NAME:
                references.append(reference)
                continue
            references.append(
                reference.with_constraints(
                    shift=ParameterConstraint.fixed(shift), squeeze=ParameterConstraint.fixed(squeeze)
                )
            )
        return window.with_references(references)

    def _released_shift_window(self, window: FitWindow) -> FitWindow:
        references = [
            reference.with_constraints(shift=ParameterConstraint.free(), squeeze=ParameterConstraint.fixed(1.0))
            for reference in window.references
        ]
        return window.with_references(references)

    def _calibration_candidate(self, reader: ScanContainerReader, window: FitWindow) -> Optional[SpectrumRecord]:
        low, high = window.fit_range(window.start_channel, window.spec_length)
        lowest, highest = self.settings.calibration_saturation_range
        candidates = []
        if reader.sky is not None:
            candidates.append(reader.sky)
        candidates.extend(record for _, record in self._measurements(reader))

        best: Optional[SpectrumRecord] = None
        best_saturation = -1.0
        for candidate in candidates:
            candidate.interpolate_interlaced()
            dynamic_range = self._dynamic_range(candidate)
            coadds = candidate.num_spectra
            if coadds <= 0:
                coadds = max(1, math.floor(candidate.max_value() / dynamic_range))
            saturation = candidate.max_value(low, high) / (coadds * dynamic_range)
            if lowest < saturation < highest and saturation > best_saturation:
                best, best_saturation = candidate, saturation
        return best

    def _calibrated_engine(self, reader: ScanContainerReader, window: FitWindow) -> FitEngine:
        """Determine shift and squeeze against the Fraunhofer reference and fix them for the scan.

        If the calibration fit fails or its errors are too large, the scan is evaluated with the
        shift of every reference free and the squeeze fixed to one.
        """

        engine = self._engine(self._released_shift_window(window))
        spectrum = self._calibration_candidate(reader, window)
        if spectrum is None:
            raise ScanDOASError(f"could not find any suitable spectrum in {reader.path} to determine the shift from")
        logger.info("Determining shift and squeeze from spectrum %d", spectrum.scan_index)

        dark = self.dark_resolver.resolve(spectrum, reader)
        self._divide_by_coadds(spectrum, dark)
        spectrum.sub_(dark)

        outcome = engine.evaluate_shift(spectrum, self.settings.calibration_fit_steps)
        if not outcome.ok:
            logger.warning(
                "Failed to determine shift and squeeze in scan %s, will proceed with default parameters (%s)",
                reader.path,
                outcome.message,
            )
            return engine
        solar = outcome.result.references[0]
        if (
            abs(solar.shift_error) < self.settings.max_calibration_shift_error
            and abs(solar.squeeze_error) < self.settings.max_calibration_squeeze_error
        ):
            logger.info(
                "  Shift: %.2f +- %.2f; Squeeze: %.2f +- %.2f",
                solar.shift,
                solar.shift_error,
                solar.squeeze,
                solar.squeeze_error,
            )
            return self._engine(self._fixed_shift_window(window, solar.shift, solar.squeeze, skip_fraunhofer=False))
        logger.warning("Fit not good enough, will proceed with default parameters")
        return engine

    def _optimal_shift_engine(self, reader: ScanContainerReader, window: FitWindow) -> FitEngine:
        pinned = self._engine(self._fixed_shift_window(window, 0.0, 1.0, skip_fraunhofer=False))
        first = self._evaluate_opened_scan(reader, pinned, ProcessingStatistics())

        position = first.most_absorbing_position
        if position < 0:
            logger.warning("Could not determine optimal shift & squeeze, no good spectra in scan %s", reader.path)
            return pinned
        best = first.results[first.most_absorbing_index].references[0]
        if best.column < 2 * best.column_error:
            logger.warning("Could not determine optimal shift & squeeze, maximum column is too low")
            return pinned

        logger.info("Re-evaluating spectrum %d to determine optimum shift and squeeze", position)
        lead = window.references[0].name
        references = [
            window.references[0].with_constraints(
                shift=ParameterConstraint.free(), squeeze=ParameterConstraint.fixed(1.0)
            )
        ]
        for reference in window.references[1:]:
            if reference.name == FRAUNHOFER_NAME:
                references.append(
                    reference.with_constraints(
                        shift=ParameterConstraint.fixed(0.0), squeeze=ParameterConstraint.fixed(1.0)
                    )
                )
            else:
                references.append(
                    reference.with_constraints(
                        shift=ParameterConstraint.linked(lead), squeeze=ParameterConstraint.linked(lead)
                    )
                )
        refining = self._engine(window.with_references(references))
        refining.set_sky_spectrum(pinned.sky)

        try:
            spectrum = reader.spectrum_at(position)
        except SpectrumReadError as exc:
            logger.warning("Could not re-read spectrum %d: %s", position, exc)
            return pinned
        spectrum.interpolate_interlaced()
        dark = self.dark_resolver.resolve(spectrum, reader)
        self._divide_by_coadds(spectrum, dark)
        spectrum.sub_(dark)

        outcome = refining.evaluate(spectrum, self.settings.calibration_fit_steps)
        if not outcome.ok:
            logger.warning("Could not determine optimal shift & squeeze: %s", outcome.message)
            return pinned
        shift = outcome.result.references[0].shift
        squeeze = outcome.result.references[0].squeeze
        logger.info("Optimum shift set to: %.2f. Optimum squeeze set to: %.2f", shift, squeeze)
        return self._engine(self._fixed_shift_window(refining.window, shift, squeeze, skip_fraunhofer=True))


__all__ = ["ScanEvaluation"]
