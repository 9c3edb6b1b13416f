import logging

import numpy as np
import pytest

from diffraction_errors import DiffractionError, UnsupportedElementError
from scattering_factors import (ELEMENT_SYMBOLS, SCATTERING_COEFFICIENTS, atomic_number,
                                atomic_scattering_factor, scattering_coefficients)


def test_table_covers_hydrogen_to_californium():
    assert sorted(SCATTERING_COEFFICIENTS) == list(range(1, 99))
    assert len(ELEMENT_SYMBOLS) == 98
    assert ELEMENT_SYMBOLS[28] == 'Cu'


@pytest.mark.parametrize('z', range(1, 99))
def test_forward_scattering_equals_electron_count(z):
    assert atomic_scattering_factor(z, 0.0) == pytest.approx(z, abs=0.2)


def test_symbol_lookup_is_case_insensitive():
    assert atomic_number('Cu') == 29
    assert atomic_number('cu') == 29
    assert atomic_number(' FE ') == 26
    assert atomic_number(8) == 8


@pytest.mark.parametrize('element', [0, 99, 'Xx', ''])
def test_unsupported_element_raises(element):
    with pytest.raises(UnsupportedElementError):
        scattering_coefficients(element)


def test_unsupported_element_is_a_key_error():
    with pytest.raises(KeyError):
        atomic_number(120)
    assert issubclass(UnsupportedElementError, DiffractionError)


def test_scattering_factor_decreases_with_angle():
    s = np.linspace(0.0, 1.5, 20)
    f = atomic_scattering_factor('Cu', s)
    assert f.shape == s.shape
    assert np.all(np.diff(f) < 0)


def test_coefficients_record_is_accepted():
    coeffs = scattering_coefficients('O')
    assert atomic_scattering_factor(coeffs, 0.3) == pytest.approx(atomic_scattering_factor('O', 0.3))
    assert isinstance(atomic_scattering_factor(coeffs, 0.3), float)


def test_out_of_range_argument_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger='scattering_factors'):
        atomic_scattering_factor('Cu', 2.5)
    assert 'beyond the fitted range' in caplog.text
