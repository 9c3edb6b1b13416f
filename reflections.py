"""
Reflection geometry: which (hkl) families are observable, where they fall in 2θ,
and how many equivalent reflections each family contains.

Key components
--------------
diffraction_angle     : Bragg angle of one reflection, clamped to ±90°
DiffractionPeak       : 2θ position + intensity (+ index of a matched peak)
CalculatedPeak        : reflection family with Miller indices and equivalents
generate_reflections  : enumerate all symmetry-distinct families in a 2θ range
"""

import logging
from itertools import product

import numpy as np

from intensity_model import (Method, lorentz_polarization, texture_factor,
                             structure_factor_squared)

logger = logging.getLogger(__name__)

HKL_TOLERANCE = 1e-4


def diffraction_angle(inverse_basis, hkl, wavelength):
    """
    Bragg angle θ [radians] of reflection *hkl*:

        θ = asin( |B⁻¹·hkl| · λ / 2 )

    The argument of asin is clamped to [-1, 1], so reflections beyond the
    limiting sphere sit at 90°.
    """
    g = np.asarray(inverse_basis, dtype=float) @ np.asarray(hkl, dtype=float)
    value = np.linalg.norm(g) * wavelength / 2.0
    return float(np.arcsin(np.clip(value, -1.0, 1.0)))


# ─── Peak types ──────────────────────────────────────────────────────────────

class DiffractionPeak:
    """A peak at *two_theta* [degrees] with integrated *intensity*."""

    def __init__(self, two_theta, intensity, pattern_index=-1):
        self.two_theta     = float(two_theta)
        self.intensity     = float(intensity)
        self.pattern_index = pattern_index

    def __lt__(self, other):
        return self.two_theta < other.two_theta

    def __repr__(self):
        return f'{type(self).__name__}(2θ={self.two_theta:.4f}, I={self.intensity:.4g})'


class CalculatedPeak(DiffractionPeak):
    """
    One family of symmetry-equivalent reflections.

    Attributes
    ----------
    hkl                : generating Miller indices (conventional cell)
    equivalents        : all distinct equivalent indices, shape (multiplicity, 3)
    theta              : Bragg angle [radians]
    lp_factor          : Lorentz-polarisation factor at theta
    reciprocal_vectors : Cartesian reciprocal vectors of the equivalents
    systematic_absence : a symmetry operation forbids this reflection
    """

    def __init__(self, hkl, equivalents, wavelength, method=Method.XRAY):
        super().__init__(0.0, 0.0)
        self.hkl                = np.asarray(hkl, dtype=float)
        self.equivalents        = np.atleast_2d(np.asarray(equivalents, dtype=float))
        self.wavelength         = float(wavelength)
        self.method             = method
        self.theta              = 0.0
        self.lp_factor          = 0.0
        self.structure_factor   = 0.0
        self.reciprocal_vectors = np.zeros_like(self.equivalents)
        self.systematic_absence = False

    @property
    def multiplicity(self):
        return len(self.equivalents)

    def update_position(self, lattice):
        """Recompute angle, LP factor and reciprocal vectors for *lattice*."""
        self.theta              = diffraction_angle(lattice.inverse, self.hkl, self.wavelength)
        self.two_theta          = float(np.degrees(2.0 * self.theta))
        self.lp_factor          = float(lorentz_polarization(self.theta))
        self.reciprocal_vectors = self.equivalents @ lattice.inverse.T

    def update_intensity(self, orbits, b_factors, scattering, preferred_orientation):
        """Recompute |F|² and the integrated intensity at the current geometry."""
        self.structure_factor = structure_factor_squared(
            self.hkl, self.theta, self.wavelength, orbits, b_factors, scattering, self.method)
        texture = texture_factor(preferred_orientation, self.reciprocal_vectors)
        self.intensity = self.structure_factor * self.lp_factor * self.multiplicity * texture
        return self.intensity

    def representative_hkl(self):
        """Equivalent with the most non-negative indices, largest first."""
        best = max(self.equivalents, key=lambda h: (int(np.sum(h >= 0)), tuple(h)))
        return tuple(int(v) for v in np.round(best))

    def __repr__(self):
        h, k, l = self.representative_hkl()
        return (f'CalculatedPeak(({h} {k} {l}), 2θ={self.two_theta:.4f}, '
                f'I={self.intensity:.4g}, m={self.multiplicity})')


# ─── Reflection generation ───────────────────────────────────────────────────

def _lexicographically_less(a, b, tol=HKL_TOLERANCE):
    for x, y in zip(a, b):
        if abs(x - y) > tol:
            return x < y
    return False


def _unique_rows(rows, tol=HKL_TOLERANCE):
    unique = []
    for row in rows:
        if not any(np.all(np.abs(row - u) <= tol) for u in unique):
            unique.append(row)
    return np.array(unique)


def _is_absent(hkl, operations):
    for rotation, intrinsic in operations:
        if not np.allclose(hkl @ rotation, hkl, atol=HKL_TOLERANCE):
            continue
        for t in intrinsic:
            phase = hkl @ t
            if abs(phase - np.round(phase)) > HKL_TOLERANCE:
                return True
    return False


def generate_reflections(structure, symmetry, wavelength, min_two_theta, max_two_theta,
                         method=Method.XRAY):
    """
    Enumerate all symmetry-distinct (hkl) families with min ≤ 2θ ≤ max.

    The search runs in the reduced basis  B_r = M·B  up to the limiting radius
    2·sin(θmax/2)/λ.  A candidate is kept only if it is the lexicographically
    smallest member of its orbit under the point group; every kept family
    carries its equivalents in conventional indices  h = M⁻¹·h_r.

    Returns
    -------
    list of CalculatedPeak sorted by increasing two_theta.
    """
    lattice = structure.lattice
    M       = lattice.unit_to_reduced.astype(float)
    M_inv   = np.linalg.inv(M)
    reduced = M @ lattice.vectors

    radius = 2.0 * np.sin(np.radians(max_two_theta) / 2.0) / wavelength
    limits = np.ceil(radius * np.linalg.norm(reduced, axis=1)).astype(int)

    # point-group operations acting on reduced hkl row vectors, identity dropped
    hkl_ops = [(M_inv.T @ rot @ M.T).T for rot in symmetry.point_group
               if not np.allclose(rot, np.eye(3))]

    absence_ops = [(op.rotation, op.intrinsic_translations()) for op in symmetry.operations]

    grid = np.array(list(product(*(range(-n, n + 1) for n in limits))), dtype=float)
    g    = grid @ np.linalg.inv(reduced).T
    tth  = np.degrees(2.0 * np.arcsin(np.clip(np.linalg.norm(g, axis=1) * wavelength / 2.0,
                                              -1.0, 1.0)))
    in_range = (tth >= min_two_theta) & (tth <= max_two_theta) & np.any(grid != 0, axis=1)

    peaks = []
    for h_r in grid[in_range]:
        images = [np.round(op @ h_r) for op in hkl_ops]
        if any(_lexicographically_less(image, h_r) for image in images):
            continue

        equivalents = np.round(_unique_rows([h_r] + images) @ M_inv.T)
        hkl         = equivalents[0]

        peak = CalculatedPeak(hkl, equivalents, wavelength, method)
        peak.update_position(lattice)
        peak.systematic_absence = _is_absent(hkl, absence_ops)
        peaks.append(peak)

    peaks.sort()
    logger.debug('Generated %d reflections between %.2f and %.2f deg',
                 len(peaks), min_two_theta, max_two_theta)
    return peaks
