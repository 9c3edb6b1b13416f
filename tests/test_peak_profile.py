import numpy as np
import pytest
from scipy.integrate import quad, trapezoid

from peak_profile import (SPECIMEN_DISPLACEMENT, ZERO_SHIFT, Background, PeakProfile,
                          caglioti_fwhm, chebyshev_background, fit_background,
                          mixing_parameter, peak_shift, peak_signal, power_background,
                          pseudo_voigt)


@pytest.mark.parametrize('eta', [0.0, 0.3, 1.0])
def test_pseudo_voigt_is_normalised(eta):
    area, _ = quad(lambda x: pseudo_voigt(x, 0.2, eta), -np.inf, np.inf)
    assert area == pytest.approx(1.0, rel=1e-6)


def test_pseudo_voigt_half_maximum_at_half_width():
    for eta in (0.0, 1.0):
        peak = pseudo_voigt(0.0, 0.4, eta)
        assert pseudo_voigt(0.2, 0.4, eta) == pytest.approx(peak / 2.0)


def test_caglioti_width():
    assert caglioti_fwhm(40.0, 0.0, 0.0, 0.04) == pytest.approx(0.2)
    tan = np.tan(np.radians(30.0))
    assert caglioti_fwhm(60.0, 0.1, -0.05, 0.02) == pytest.approx(np.sqrt(0.02 + tan * (-0.05 + 0.1 * tan)))


def test_caglioti_width_never_imaginary():
    assert caglioti_fwhm(40.0, 0.0, 0.0, -1.0) == pytest.approx(1e-3)


def test_mixing_parameter_is_quadratic():
    assert mixing_parameter(10.0, 0.5, 0.01, 0.001) == pytest.approx(0.5 + 0.1 + 0.1)


def test_peak_shift_terms():
    shifts = np.zeros(6)
    shifts[ZERO_SHIFT] = 0.05
    assert peak_shift(40.0, shifts) == pytest.approx(0.05)
    shifts[:] = 0.0
    shifts[SPECIMEN_DISPLACEMENT] = 0.1
    assert peak_shift(60.0, shifts) == pytest.approx(0.1 * np.cos(np.radians(60.0)))


def test_peak_signal_integrates_to_peak_intensities():
    tth     = np.arange(20.0, 60.0, 0.005)
    profile = PeakProfile(W=0.01, eta0=0.9)
    signal  = peak_signal(tth, [30.0, 45.0], [100.0, 50.0], profile)
    area    = trapezoid(signal, tth)
    # truncation at six widths loses a little of the Lorentzian tails
    assert area == pytest.approx(150.0, rel=0.02)
    assert tth[np.argmax(signal)] == pytest.approx(30.0, abs=0.005)


def test_peak_signal_is_truncated():
    tth     = np.arange(20.0, 40.0, 0.01)
    profile = PeakProfile(W=0.01, eta0=1.0)
    signal  = peak_signal(tth, [30.0], [1.0], profile)
    assert np.all(signal[np.abs(tth - 30.0) > 6 * 0.1 + 0.01] == 0.0)


def test_peak_signal_follows_shifted_centre():
    tth     = np.arange(20.0, 40.0, 0.001)
    shift   = np.zeros(6)
    shift[ZERO_SHIFT] = 0.05
    profile = PeakProfile(W=0.01, eta0=1.0, shift=shift)
    signal  = peak_signal(tth, [30.0], [1.0], profile)
    assert tth[np.argmax(signal)] == pytest.approx(30.05, abs=0.001)


def test_peak_beyond_range_is_skipped():
    tth     = np.arange(20.0, 40.0, 0.01)
    profile = PeakProfile(W=0.01)
    signal  = peak_signal(tth, [45.0], [1.0], profile, max_two_theta=40.0)
    assert np.all(signal == 0.0)


def test_chebyshev_background_matches_numpy():
    tth    = np.linspace(10.0, 90.0, 50)
    coeffs = [3.0, -1.0, 0.5, 0.25]
    x      = 2.0 * (tth - 10.0) / 80.0 - 1.0
    np.testing.assert_allclose(chebyshev_background(tth, coeffs, 10.0, 90.0),
                               np.polynomial.chebyshev.chebval(x, coeffs))


def test_power_background():
    tth = np.array([10.0, 20.0])
    np.testing.assert_allclose(power_background(tth, [2.0, 1.0, 0.5], start_power=-1),
                               2.0 / tth + 1.0 + 0.5 * tth)


def test_empty_background_is_zero():
    assert np.all(Background().evaluate(np.linspace(10, 20, 5), 10, 20) == 0.0)


@pytest.mark.parametrize('use_chebyshev, coeffs', [(True, [5.0, 1.0, -0.5]),
                                                  (False, [5000.0, 1.0, -0.5])])
def test_background_fit_reconstructs_polynomial(use_chebyshev, coeffs):
    tth        = np.linspace(10.0, 90.0, 400)
    background = Background(use_chebyshev=use_chebyshev, poly_start=0)
    true       = Background(coeffs, use_chebyshev, poly_start=0).evaluate(tth, 10.0, 90.0)
    background.coefficients = fit_background(background, tth, true, 3, 10.0, 90.0, weights=1.0 / true)
    np.testing.assert_allclose(background.evaluate(tth, 10.0, 90.0), true, rtol=1e-6)


def test_profile_summary():
    summary = PeakProfile(U=0.1, W=0.2).as_dict()
    assert summary['U'] == 0.1
    assert summary['W'] == 0.2
    assert summary['zero_shift'] == 0.0
