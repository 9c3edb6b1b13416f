"""
Peak-shape and background model for calculated powder patterns.

Key components
--------------
caglioti_fwhm         : Caglioti peak-width formula
mixing_parameter      : pseudo-Voigt Gaussian fraction as a quadratic in 2θ
pseudo_voigt          : normalised profile function
peak_shift            : six-term 2θ shift (zero-shift, specimen displacement, ...)
PeakProfile           : refinable U, V, W, η0..η2 and shift terms
peak_signal           : sum of truncated profiles over a 2θ grid
chebyshev_background  : Chebyshev polynomial background (refineable)
power_background      : power-series background  Σ c_k·2θ^(start+k)
Background            : background coefficients and basis choice
fit_background        : weighted least-squares background coefficients
"""

import numpy as np

# ─── Constants ───────────────────────────────────────────────────────────────

PROFILE_CUTOFF = 6.0    # profile truncated at ±PROFILE_CUTOFF·FWHM
_FOUR_LN2      = 4.0 * np.log(2.0)

SHIFT_TERMS = ('tan', 'sin', 'tan_half', 'displacement_sin', 'displacement', 'zero')
SPECIMEN_DISPLACEMENT = 4
ZERO_SHIFT            = 5


# ─── Peak width and shape ────────────────────────────────────────────────────

def caglioti_fwhm(two_theta_deg, U, V, W):
    """
    FWHM from the Caglioti equation:  H² = W + tanθ·(V + U·tanθ)

    θ is half of *two_theta_deg*.  Returns FWHM in degrees, clipped at 0.001°.
    """
    tan_th = np.tan(np.radians(np.asarray(two_theta_deg, dtype=float) / 2.0))
    fwhm2  = W + tan_th * (V + U * tan_th)
    return np.sqrt(np.clip(fwhm2, 1e-6, None))


def mixing_parameter(two_theta_deg, eta0, eta1, eta2):
    """η = η0 + 2θ·(η1 + 2θ·η2), with 2θ in degrees."""
    tth = np.asarray(two_theta_deg, dtype=float)
    return eta0 + tth * (eta1 + tth * eta2)


def pseudo_voigt(x, fwhm, eta):
    """
    Normalised pseudo-Voigt profile (integrates to 1).

    Parameters
    ----------
    x    : deviation from peak centre [degrees]
    fwhm : full width at half maximum [degrees]
    eta  : Gaussian fraction (1 = pure Gaussian, 0 = pure Lorentzian)

    Returns
    -------
    profile : same shape as x
    """
    u2      = (np.asarray(x, dtype=float) / fwhm) ** 2
    gauss   = np.sqrt(_FOUR_LN2 / np.pi) / fwhm * np.exp(-_FOUR_LN2 * u2)
    lorentz = 2.0 / (np.pi * fwhm) / (1.0 + 4.0 * u2)
    return eta * gauss + (1.0 - eta) * lorentz


def peak_shift(two_theta_deg, shifts):
    """
    Shift of a peak centre [degrees]:

        p0/tan c + p1/sin c + p2/tan(c/2) + p3·sin c + p4·cos c + p5

    with c = 2θ in radians.  p4 is the specimen displacement, p5 the zero shift.
    """
    c = np.radians(two_theta_deg)
    p = np.asarray(shifts, dtype=float)
    return (p[0] / np.tan(c) + p[1] / np.sin(c) + p[2] / np.tan(c / 2.0)
            + p[3] * np.sin(c) + p[4] * np.cos(c) + p[5])


class PeakProfile:
    """
    Refinable profile parameters shared by all reflections of a pattern.

    U, V, W   : Caglioti width terms
    eta0..2   : Gaussian fraction  η(2θ) = η0 + η1·2θ + η2·2θ²
    shift     : six 2θ-shift terms, see peak_shift()
    """

    def __init__(self, U=0.0, V=0.0, W=0.3, eta0=0.5, eta1=0.0, eta2=0.0, shift=None):
        self.U     = float(U)
        self.V     = float(V)
        self.W     = float(W)
        self.eta0  = float(eta0)
        self.eta1  = float(eta1)
        self.eta2  = float(eta2)
        self.shift = np.zeros(len(SHIFT_TERMS)) if shift is None else np.asarray(shift, dtype=float)

    def fwhm(self, two_theta_deg):
        return caglioti_fwhm(two_theta_deg, self.U, self.V, self.W)

    def eta(self, two_theta_deg):
        return mixing_parameter(two_theta_deg, self.eta0, self.eta1, self.eta2)

    def center(self, two_theta_deg):
        return two_theta_deg + peak_shift(two_theta_deg, self.shift)

    def as_dict(self):
        return {
            'U': self.U, 'V': self.V, 'W': self.W,
            'eta0': self.eta0, 'eta1': self.eta1, 'eta2': self.eta2,
            'specimen_displacement': float(self.shift[SPECIMEN_DISPLACEMENT]),
            'zero_shift': float(self.shift[ZERO_SHIFT]),
        }


def peak_signal(two_theta, peak_angles, intensities, profile, max_two_theta=None):
    """
    Sum of pseudo-Voigt peaks evaluated on a sorted 2θ grid.

    Each peak is only evaluated within ±PROFILE_CUTOFF·FWHM of its shifted
    centre; peaks whose window starts at or beyond *max_two_theta* are skipped.

    Parameters
    ----------
    two_theta    : ascending 1-D array of 2θ [degrees]
    peak_angles  : nominal peak positions [degrees]
    intensities  : integrated intensity of each peak
    profile      : PeakProfile
    """
    two_theta = np.asarray(two_theta, dtype=float)
    signal    = np.zeros_like(two_theta)

    for tth_k, I_k in zip(peak_angles, intensities):
        fwhm   = float(profile.fwhm(tth_k))
        center = float(profile.center(tth_k))
        reach  = PROFILE_CUTOFF * fwhm
        if max_two_theta is not None and center - reach >= max_two_theta:
            continue

        lo, hi = np.searchsorted(two_theta, [center - reach, center + reach])
        if lo == hi:
            continue
        signal[lo:hi] += I_k * pseudo_voigt(two_theta[lo:hi] - center, fwhm,
                                            float(profile.eta(tth_k)))

    return signal


# ─── Background ───────────────────────────────────────────────────────────────

def _to_unit_interval(two_theta, tth_min, tth_max):
    return 2.0 * (np.asarray(two_theta, dtype=float) - tth_min) / (tth_max - tth_min) - 1.0


def chebyshev_background(two_theta, coeffs, tth_min, tth_max):
    """
    Background modelled as a sum of Chebyshev polynomials of the first kind.
    Mapping [tth_min, tth_max] → [-1, 1] improves numerical stability.
    """
    x = _to_unit_interval(two_theta, tth_min, tth_max)
    n = len(coeffs)
    if n == 0:
        return np.zeros_like(x)

    T = np.zeros((n, len(x)))
    T[0] = 1.0
    if n >= 2:
        T[1] = x
    for i in range(2, n):
        T[i] = 2.0 * x * T[i-1] - T[i-2]

    return np.asarray(coeffs, dtype=float) @ T


def power_background(two_theta, coeffs, start_power=-1):
    """Background  Σ_k c_k · 2θ^(start_power + k)."""
    tth    = np.asarray(two_theta, dtype=float)
    powers = start_power + np.arange(len(coeffs))
    if len(coeffs) == 0:
        return np.zeros_like(tth)
    return np.asarray(coeffs, dtype=float) @ (tth[None, :] ** powers[:, None])


class Background:
    """Background coefficients with the choice of Chebyshev or power-series basis."""

    def __init__(self, coefficients=(), use_chebyshev=True, poly_start=-1):
        self.coefficients  = np.asarray(coefficients, dtype=float)
        self.use_chebyshev = bool(use_chebyshev)
        self.poly_start    = int(poly_start)

    def __len__(self):
        return len(self.coefficients)

    def evaluate(self, two_theta, tth_min, tth_max):
        if self.use_chebyshev:
            return chebyshev_background(two_theta, self.coefficients, tth_min, tth_max)
        return power_background(two_theta, self.coefficients, self.poly_start)

    def design_matrix(self, two_theta, n_terms, tth_min, tth_max):
        """Basis functions evaluated on *two_theta*, shape (len(two_theta), n_terms)."""
        if self.use_chebyshev:
            x = _to_unit_interval(two_theta, tth_min, tth_max)
            return np.polynomial.chebyshev.chebvander(x, n_terms - 1)
        tth = np.asarray(two_theta, dtype=float)
        return tth[:, None] ** (self.poly_start + np.arange(n_terms))[None, :]


def fit_background(background, two_theta, intensity, n_terms, tth_min, tth_max, weights=None):
    """
    Weighted least-squares coefficients of *background*'s basis through
    (two_theta, intensity).

    Returns
    -------
    coeffs : 1-D array of length n_terms
    """
    A = background.design_matrix(two_theta, n_terms, tth_min, tth_max)
    y = np.asarray(intensity, dtype=float)
    if weights is not None:
        w = np.sqrt(np.asarray(weights, dtype=float))
        A, y = A * w[:, None], y * w
    coeffs, *_ = np.linalg.lstsq(A, y, rcond=None)
    return coeffs
