"""Literal spectrum files supplied by the user (sky, dark, offset and dark-current spectra).

Two on-disk formats are accepted:

* a structured ``.npz`` archive with the key ``intensity`` and optional metadata keys
  (``num_spectra``, ``exposure_time``, ``interlace_step``, ``start_channel``, ``device``, ...),
* plain text with one value per line, or several columns of which the last one holds the
  intensities (e.g. ``wavelength intensity``).

Readers always try the structured form first and fall back to text.
"""

from __future__ import annotations

import logging
import pathlib
import zipfile
from typing import Dict, Tuple, Union

import numpy as np

from ..errors import SpectrumFileError, SpectrumReadError
from .container import read_container_spectrum
from .spectrum import SpectrumInfo, SpectrumRecord, SpectrumRole

logger = logging.getLogger(__name__)

PathLike = Union[str, pathlib.Path]
CONTAINER_SUFFIXES = (".pak",)

_INT_KEYS = ("num_spectra", "interlace_step", "start_channel", "channel")
_FLOAT_KEYS = ("exposure_time", "start_time", "stop_time", "scan_angle")
_TEXT_KEYS = ("name", "device")


def _load_structured(path: pathlib.Path) -> Tuple[np.ndarray, Dict[str, object]]:
    data = np.load(path, allow_pickle=False)
    if isinstance(data, np.ndarray):
        return np.asarray(data, dtype=np.float64).ravel(), {}
    with data:
        if "intensity" not in data.files:
            raise KeyError(f"{path} has no 'intensity' entry")
        samples = np.asarray(data["intensity"], dtype=np.float64).ravel()
        metadata: Dict[str, object] = {}
        for key in _INT_KEYS:
            if key in data.files:
                metadata[key] = int(data[key])
        for key in _FLOAT_KEYS:
            if key in data.files:
                metadata[key] = float(data[key])
        for key in _TEXT_KEYS:
            if key in data.files:
                metadata[key] = str(data[key])
    return samples, metadata


def _load_text(path: pathlib.Path) -> np.ndarray:
    table = np.loadtxt(path, dtype=np.float64, comments=("#", "%"), ndmin=2)
    if table.size == 0:
        raise ValueError(f"{path} contains no values")
    return table[:, -1].copy()


def load_samples(path: PathLike) -> Tuple[np.ndarray, Dict[str, object]]:
    """Return the samples and metadata stored in a literal spectrum file.

    Raises:
        SpectrumFileError: If the file is neither a structured nor a text spectrum.
    """

    path = pathlib.Path(path)
    if not path.is_file():
        raise SpectrumFileError(f"spectrum file {path} does not exist")
    try:
        return _load_structured(path)
    except (OSError, ValueError, KeyError, zipfile.BadZipFile) as structured_error:
        logger.debug("%s is not a structured spectrum (%s), trying text", path, structured_error)
    try:
        return _load_text(path), {}
    except (OSError, ValueError) as text_error:
        raise SpectrumFileError(f"could not read spectrum file {path}: {text_error}") from text_error


def read_spectrum_file(path: PathLike, role: SpectrumRole = SpectrumRole.MEASUREMENT) -> SpectrumRecord:
    """Read a literal spectrum file into a :class:`SpectrumRecord`."""

    samples, metadata = load_samples(path)
    info = SpectrumInfo(role=role, name=pathlib.Path(path).stem)
    for key, value in metadata.items():
        setattr(info, key, value)
    info.num_spectra = max(int(info.num_spectra), 1)
    info.interlace_step = max(int(info.interlace_step), 1)
    return SpectrumRecord(samples, info)


def read_sky_file(path: PathLike) -> SpectrumRecord:
    """Read a user supplied sky spectrum, scan containers yield their first spectrum."""

    path = pathlib.Path(path)
    if path.suffix.lower() in CONTAINER_SUFFIXES:
        try:
            record = read_container_spectrum(path, 0)
        except SpectrumReadError as exc:
            raise SpectrumFileError(f"could not read sky spectrum from {path}: {exc}") from exc
        record.info.role = SpectrumRole.SKY
        return record
    return read_spectrum_file(path, role=SpectrumRole.SKY)


def write_spectrum_npz(path: PathLike, record: SpectrumRecord) -> pathlib.Path:
    """Store ``record`` as a structured spectrum archive."""

    path = pathlib.Path(path)
    info = record.info
    with path.open("wb") as handle:
        np.savez(
            handle,
            intensity=record.numpy(),
            num_spectra=info.num_spectra,
            exposure_time=info.exposure_time,
            interlace_step=info.interlace_step,
            start_channel=info.start_channel,
            channel=info.channel,
            start_time=info.start_time,
            stop_time=info.stop_time,
            scan_angle=info.scan_angle,
            name=info.name,
            device=info.device,
        )
    return path


def write_spectrum_txt(path: PathLike, record: SpectrumRecord) -> pathlib.Path:
    """Store the samples of ``record`` as plain text, one value per line."""

    path = pathlib.Path(path)
    np.savetxt(path, record.numpy(), fmt="%.9g")
    return path


__all__ = [
    "load_samples",
    "read_spectrum_file",
    "read_sky_file",
    "write_spectrum_npz",
    "write_spectrum_txt",
]
