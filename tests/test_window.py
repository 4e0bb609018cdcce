import pathlib
import sys

import numpy as np
import pytest
import torch

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scan_doas.errors import FitWindowError
from scan_doas.evaluation.window import (
    FitWindow,
    ParameterConstraint,
    ParameterOption,
    ReferenceSpectrum,
    guess_species_name,
)


def _make_reference(name: str, **constraints) -> ReferenceSpectrum:
    return ReferenceSpectrum(name=name, data=torch.linspace(0.0, 1.0, steps=100, dtype=torch.float64), **constraints)


def _make_window(*references, **kwargs) -> FitWindow:
    kwargs.setdefault("fit_low", 10)
    kwargs.setdefault("fit_high", 90)
    kwargs.setdefault("spec_length", 100)
    return FitWindow(references=tuple(references), **kwargs)


def test_link_chains_resolve_to_their_root():
    window = _make_window(
        _make_reference("SO2"),
        _make_reference("O3", shift=ParameterConstraint.linked("SO2")),
        _make_reference("RING", shift=ParameterConstraint.linked("O3")),
    )

    assert window.validate() is window
    assert window.resolve_link_roots("shift") == [0, 0, 0]
    assert window.resolve_link_roots("column") == [0, 1, 2]


def test_link_cycles_are_rejected():
    window = _make_window(
        _make_reference("SO2", squeeze=ParameterConstraint.linked("O3")),
        _make_reference("O3", squeeze=ParameterConstraint.linked("SO2")),
    )
    with pytest.raises(FitWindowError, match="cycle"):
        window.validate()


def test_links_to_unknown_references_are_rejected():
    window = _make_window(_make_reference("SO2", column=ParameterConstraint.linked("BrO")))
    with pytest.raises(FitWindowError, match="unknown"):
        window.validate()


def test_empty_fit_range_is_rejected():
    with pytest.raises(FitWindowError, match="empty"):
        _make_window(fit_low=50, fit_high=50).validate()


def test_fit_range_follows_start_channel():
    window = _make_window(fit_low=320, fit_high=460, spec_length=2048)

    assert window.fit_range() == (320, 460)
    assert window.fit_range(start_channel=300, length=500) == (20, 160)
    with pytest.raises(FitWindowError):
        window.fit_range(start_channel=400, length=500)


def test_constraint_constructors():
    assert ParameterConstraint.free().option is ParameterOption.FREE
    assert ParameterConstraint.fixed(1.5).value == 1.5
    limited = ParameterConstraint.limited(-3.0, 3.0, step=0.5)
    assert (limited.value, limited.max_value, limited.step) == (-3.0, 3.0, 0.5)
    assert limited.is_free
    assert not ParameterConstraint.linked("SO2").is_free
    with pytest.raises(FitWindowError):
        ParameterConstraint.limited(2.0, 1.0)


def test_species_names_are_guessed_from_file_names():
    assert guess_species_name("/refs/SO2_Bogumil_293K_Air.xs") == "SO2"
    assert guess_species_name("no3_vandaele.txt") == "NO3"
    assert guess_species_name("O3_223K.txt") == "O3"
    assert guess_species_name("Glyoxal_Volkamer.xs") == "CHOCHO"
    assert guess_species_name("solar_kurucz.txt") == "solar_kurucz"


def test_references_are_loaded_from_file(tmp_path):
    path = tmp_path / "BrO_Fleischmann.txt"
    values = np.linspace(-1.0, 1.0, num=40)
    np.savetxt(path, np.column_stack([np.arange(40.0), values]))

    reference = ReferenceSpectrum.from_file(str(path), shift=ParameterConstraint.fixed(0.0))
    assert reference.name == "BrO"
    assert reference.data is None

    loaded = _make_window(reference, fit_low=5, fit_high=35, spec_length=40).load_references().references[0]

    torch.testing.assert_close(loaded.data, torch.as_tensor(values))
    assert loaded.shift.option is ParameterOption.FIXED


def test_missing_reference_file_is_a_window_error(tmp_path):
    reference = ReferenceSpectrum.from_file(str(tmp_path / "SO2.txt"))
    with pytest.raises(FitWindowError, match="SO2"):
        reference.load()
