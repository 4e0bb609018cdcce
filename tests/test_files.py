import pathlib
import sys

import numpy as np
import pytest
import torch

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scan_doas.errors import SpectrumFileError
from scan_doas.spectra.container import write_scan_file
from scan_doas.spectra.files import read_sky_file, read_spectrum_file, write_spectrum_npz, write_spectrum_txt
from scan_doas.spectra.spectrum import SpectrumInfo, SpectrumRecord, SpectrumRole


def _make_record(**info) -> SpectrumRecord:
    return SpectrumRecord(torch.linspace(100.0, 200.0, steps=32, dtype=torch.float64), SpectrumInfo(**info))


def test_structured_file_keeps_samples_and_metadata(tmp_path):
    record = _make_record(num_spectra=5, exposure_time=320.0, device="USB2G1234", interlace_step=2)
    path = write_spectrum_npz(tmp_path / "offset.npz", record)

    loaded = read_spectrum_file(path, role=SpectrumRole.OFFSET)

    torch.testing.assert_close(loaded.samples, record.samples)
    assert loaded.info.num_spectra == 5
    assert loaded.info.exposure_time == 320.0
    assert loaded.info.device == "USB2G1234"
    assert loaded.info.interlace_step == 2
    assert loaded.info.role is SpectrumRole.OFFSET


def test_text_file_uses_last_column(tmp_path):
    path = tmp_path / "dark.txt"
    pixels = np.arange(10, dtype=np.float64)
    np.savetxt(path, np.column_stack([pixels * 0.1 + 300.0, pixels * 2.0]))

    loaded = read_spectrum_file(path)

    torch.testing.assert_close(loaded.samples, torch.as_tensor(pixels * 2.0))
    assert loaded.info.num_spectra == 1


def test_single_column_text_round_trip(tmp_path):
    record = _make_record()
    path = write_spectrum_txt(tmp_path / "sky.std", record)

    loaded = read_spectrum_file(path)

    torch.testing.assert_close(loaded.samples, record.samples)


def test_unparsable_file_fails_in_both_formats(tmp_path):
    path = tmp_path / "broken.txt"
    path.write_text("not a spectrum\nat all\n")

    with pytest.raises(SpectrumFileError, match="could not read"):
        read_spectrum_file(path)


def test_missing_file_is_reported(tmp_path):
    with pytest.raises(SpectrumFileError, match="does not exist"):
        read_spectrum_file(tmp_path / "missing.npz")


def test_sky_file_may_be_a_scan_container(tmp_path):
    first = _make_record(name="sky")
    second = SpectrumRecord(torch.zeros(32, dtype=torch.float64), SpectrumInfo(name="dark"))
    path = tmp_path / "sky.pak"
    write_scan_file(path, [first, second])

    sky = read_sky_file(path)

    torch.testing.assert_close(sky.samples, first.samples)
    assert sky.info.role is SpectrumRole.SKY
