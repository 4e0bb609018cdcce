"""Spectrometer models and their dynamic range."""

from __future__ import annotations

import enum
from typing import Dict, Tuple


class SpectrometerModel(enum.Enum):
    S2000 = "S2000"
    USB2000 = "USB2000"
    USB4000 = "USB4000"
    HR2000 = "HR2000"
    HR4000 = "HR4000"
    QE65000 = "QE65000"
    MAYAPRO = "MAYAPRO"
    UNKNOWN = "UNKNOWN"


_MAX_INTENSITY: Dict[SpectrometerModel, float] = {
    SpectrometerModel.S2000: 4095.0,
    SpectrometerModel.USB2000: 4095.0,
    SpectrometerModel.USB4000: 65535.0,
    SpectrometerModel.HR2000: 4095.0,
    SpectrometerModel.HR4000: 16383.0,
    SpectrometerModel.QE65000: 65535.0,
    SpectrometerModel.MAYAPRO: 65535.0,
    SpectrometerModel.UNKNOWN: 4095.0,
}

# Checked in order, the first matching fragment of the serial number wins.
_SERIAL_FRAGMENTS: Tuple[Tuple[str, SpectrometerModel], ...] = (
    ("D2J", SpectrometerModel.S2000),
    ("I2J", SpectrometerModel.S2000),
    ("USB2", SpectrometerModel.USB2000),
    ("USB4", SpectrometerModel.USB4000),
    ("HR2", SpectrometerModel.HR2000),
    ("HR4", SpectrometerModel.HR4000),
    ("QE", SpectrometerModel.QE65000),
    ("MAYP", SpectrometerModel.MAYAPRO),
)


def guess_model_from_serial(serial: str) -> SpectrometerModel:
    """Guess the spectrometer model from the serial number of the device."""

    upper = (serial or "").upper()
    for fragment, model in _SERIAL_FRAGMENTS:
        if fragment in upper:
            return model
    return SpectrometerModel.UNKNOWN


def max_intensity(model: SpectrometerModel) -> float:
    """Return the maximum intensity of a single exposure for ``model``."""

    return _MAX_INTENSITY.get(model, _MAX_INTENSITY[SpectrometerModel.UNKNOWN])


def dynamic_range_for_device(serial: str) -> float:
    """Dynamic range (maximum counts of one exposure) of the device with ``serial``."""

    return max_intensity(guess_model_from_serial(serial))


__all__ = [
    "SpectrometerModel",
    "guess_model_from_serial",
    "max_intensity",
    "dynamic_range_for_device",
]
