"""
Integrated intensity of a single reflection.

    I = |F|² · LP · multiplicity · texture

Key components
--------------
Method                    : X-ray, neutron, or simplified (no thermal factor) model
lorentz_polarization      : LP correction  (1 + cos²2θ) / (cosθ · sin²θ)
thermal_factor            : Debye-Waller factor  exp(-B·(sinθ/λ)²)
texture_factor            : March-Dollase preferred-orientation correction
structure_factor_squared  : |F(hkl)|² summed over orbits
"""

from enum import Enum

import numpy as np

from scattering_factors import atomic_scattering_factor


class Method(Enum):
    XRAY    = 'xray'
    NEUTRON = 'neutron'
    SIMPLE  = 'simple'


# ─── Angular corrections ─────────────────────────────────────────────────────

def lorentz_polarization(theta):
    """
    LP correction for an unpolarised beam without monochromator.

    Parameters
    ----------
    theta : Bragg angle θ [radians], scalar or array
    """
    cos2_2th = np.cos(2.0 * theta) ** 2
    return (1.0 + cos2_2th) / (np.cos(theta) * np.sin(theta) ** 2)


def thermal_factor(theta, wavelength, b_factor):
    """Isotropic Debye-Waller factor for Bragg angle *theta* [radians]."""
    s = np.sin(theta) / wavelength
    return np.exp(-b_factor * s * s)


def texture_factor(preferred_orientation, reciprocal_vectors):
    """
    March-Dollase correction averaged over the equivalent reflections.

    The orientation vector p sets both the preferred direction and the
    March coefficient τ = |p|:

        T = mean_j ( τ²·cos²φ_j + sin²φ_j / τ )^(-3/2)

    where φ_j is the angle between p and reciprocal vector j.  A zero-length
    p is treated as an untextured sample.
    """
    p   = np.asarray(preferred_orientation, dtype=float)
    tau = np.linalg.norm(p)
    if tau == 0.0:
        return 1.0

    g      = np.atleast_2d(np.asarray(reciprocal_vectors, dtype=float))
    cosphi = (g @ p) / (np.linalg.norm(g, axis=1) * tau)
    cos2   = cosphi ** 2
    return float(np.mean((tau * tau * cos2 + (1.0 - cos2) / tau) ** -1.5))


# ─── Structure factor ────────────────────────────────────────────────────────

def structure_factor_squared(hkl, theta, wavelength, orbits, b_factors,
                             scattering, method=Method.XRAY):
    """
    |F(hkl)|² including Debye-Waller factors and site occupancies.

    Parameters
    ----------
    hkl        : Miller indices (conventional cell)
    theta      : Bragg angle [radians]
    wavelength : [Angstrom]
    orbits     : list of Orbit, atoms carry fractional positions and occupancies
    b_factors  : isotropic B per orbit [Angstrom²]
    scattering : ScatteringCoefficients per orbit
    method     : Method.SIMPLE drops the thermal factor
    """
    hkl = np.asarray(hkl, dtype=float)
    s   = np.sin(theta) / wavelength
    F   = 0.0 + 0.0j

    for orbit, b_factor, coeffs in zip(orbits, b_factors, scattering):
        f = atomic_scattering_factor(coeffs, s)
        if method is not Method.SIMPLE:
            f *= thermal_factor(theta, wavelength, b_factor)
        phase = 2.0 * np.pi * (orbit.positions() @ hkl)
        F += f * np.sum(orbit.occupancies() * np.exp(1j * phase))

    return float(F.real ** 2 + F.imag ** 2)
