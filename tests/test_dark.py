import pathlib
import sys

import pytest
import torch

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scan_doas.config import ComponentSource, DarkOption, DarkSettings
from scan_doas.errors import DarkSpectrumError
from scan_doas.evaluation.dark import DarkSpectrumResolver, model_dark_spectrum
from scan_doas.spectra.container import ScanContainerReader, write_scan_file
from scan_doas.spectra.files import write_spectrum_npz
from scan_doas.spectra.spectrum import SpectrumInfo, SpectrumRecord, SpectrumRole

LENGTH = 50


def _make_record(name: str, value: float, length: int = LENGTH, **info) -> SpectrumRecord:
    info.setdefault("num_spectra", 1)
    info.setdefault("exposure_time", 100.0)
    return SpectrumRecord(torch.full((length,), value, dtype=torch.float64), SpectrumInfo(name=name, **info))


def _make_reader(tmp_path, records) -> ScanContainerReader:
    path = tmp_path / "scan.pak"
    write_scan_file(path, records)
    reader = ScanContainerReader(path)
    reader.check_scan_file()
    return reader


def _measurement(**info) -> SpectrumRecord:
    return _make_record("", 1000.0, **info)


def test_measured_dark_is_scaled_to_the_exposures_of_the_spectrum(tmp_path):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("dark", 100.0, num_spectra=5)])

    dark = DarkSpectrumResolver().resolve(_measurement(num_spectra=10), reader)

    torch.testing.assert_close(dark.samples, torch.full((LENGTH,), 200.0, dtype=torch.float64))
    assert dark.num_spectra == 10
    assert reader.dark.max_value() == 100.0


def test_offset_and_dark_current_are_modelled_when_the_dark_is_missing(tmp_path, caplog):
    reader = _make_reader(
        tmp_path,
        [
            _make_record("sky", 1000.0),
            _make_record("offset", 50.0),
            _make_record("dark_cur", 80.0, exposure_time=1000.0),
        ],
    )
    spectrum = _measurement(exposure_time=500.0)

    dark = DarkSpectrumResolver().resolve(spectrum, reader)

    torch.testing.assert_close(dark.samples, torch.full((LENGTH,), 65.0, dtype=torch.float64))
    assert dark.info.role is SpectrumRole.DARK
    assert "Incorrect settings" in caplog.text

    uncorrected = DarkSpectrumResolver(DarkSettings(offset_correct_dark_current=False)).resolve(spectrum, reader)
    torch.testing.assert_close(uncorrected.samples, torch.full((LENGTH,), 90.0, dtype=torch.float64))


def test_missing_dark_yields_zero_placeholder_with_warning(tmp_path, caplog):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("offset", 50.0), _measurement()])

    dark = DarkSpectrumResolver(DarkSettings(dark_option=DarkOption.MODEL_SOMETIMES)).resolve(_measurement(), reader)

    torch.testing.assert_close(dark.samples, torch.zeros(LENGTH, dtype=torch.float64))
    assert "No dark spectrum found" in caplog.text


def test_model_always_reads_user_supplied_components(tmp_path):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("dark", 999.0)])
    offset_path = write_spectrum_npz(tmp_path / "offset.npz", _make_record("offset", 50.0))
    dark_current_path = write_spectrum_npz(tmp_path / "dark_cur.npz", _make_record("dark_cur", 80.0, exposure_time=1000.0))
    settings = DarkSettings(
        dark_option=DarkOption.MODEL_ALWAYS,
        offset_source=ComponentSource.USER_SUPPLIED,
        offset_path=str(offset_path),
        dark_current_source=ComponentSource.USER_SUPPLIED,
        dark_current_path=str(dark_current_path),
    )

    dark = DarkSpectrumResolver(settings).resolve(_measurement(exposure_time=500.0), reader)

    torch.testing.assert_close(dark.samples, torch.full((LENGTH,), 65.0, dtype=torch.float64))


def test_model_always_needs_components_in_the_scan(tmp_path):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("offset", 50.0), _measurement()])
    resolver = DarkSpectrumResolver(DarkSettings(dark_option=DarkOption.MODEL_ALWAYS))

    with pytest.raises(DarkSpectrumError, match="dark-current"):
        resolver.resolve(_measurement(), reader)


@pytest.mark.parametrize("dark_path", [None, "ab"])
def test_user_supplied_dark_needs_a_path(tmp_path, dark_path):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("dark", 100.0)])
    resolver = DarkSpectrumResolver(DarkSettings(dark_option=DarkOption.USER_SUPPLIED, dark_path=dark_path))

    with pytest.raises(DarkSpectrumError, match="no valid path"):
        resolver.resolve(_measurement(), reader)


def test_user_supplied_dark_is_read_from_file(tmp_path):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("dark", 100.0)])
    dark_path = write_spectrum_npz(tmp_path / "user_dark.npz", _make_record("dark", 120.0))
    resolver = DarkSpectrumResolver(DarkSettings(dark_option=DarkOption.USER_SUPPLIED, dark_path=str(dark_path)))

    dark = resolver.resolve(_measurement(), reader)

    assert dark.max_value() == 120.0


def test_exposure_mismatch_is_logged(tmp_path, caplog):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("dark", 100.0, exposure_time=200.0)])

    DarkSpectrumResolver().resolve(_measurement(exposure_time=100.0), reader)

    assert "Exposure time of the dark spectrum" in caplog.text


def test_interlaced_dark_is_expanded_to_full_resolution(tmp_path):
    reader = _make_reader(
        tmp_path,
        [_make_record("sky", 1000.0), _make_record("dark", 100.0, length=LENGTH // 2, interlace_step=2)],
    )

    dark = DarkSpectrumResolver().resolve(_measurement(), reader)

    assert dark.length == LENGTH
    assert dark.info.interlace_step == 1
    torch.testing.assert_close(dark.samples, torch.full((LENGTH,), 100.0, dtype=torch.float64))


def test_dark_of_wrong_length_is_rejected(tmp_path):
    reader = _make_reader(tmp_path, [_make_record("sky", 1000.0), _make_record("dark", 100.0, length=20)])

    with pytest.raises(DarkSpectrumError, match="length"):
        DarkSpectrumResolver().resolve(_measurement(), reader)


def test_model_requires_matching_lengths():
    with pytest.raises(DarkSpectrumError):
        model_dark_spectrum(_measurement(), _make_record("offset", 50.0, length=10), _make_record("dark_cur", 80.0))
