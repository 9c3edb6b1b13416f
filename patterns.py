"""
Powder diffraction patterns and their comparison.

Key components
--------------
RMethod              : agreement-factor flavours (ABS, SQUARED, RIETVELD)
DiffractionPattern   : shared state, peak matching and peak-level R factors
ExperimentalPattern  : measured data, either a continuous trace or integrated peaks
CalculatedPattern    : reflections of a structure plus the refinable profile model

A calculated pattern never carries a scale factor in its intensities; the
scale lives in `optimal_scale` and is applied when comparing to a reference.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum

import numpy as np

from crystal_structures import Lattice
from diffraction_errors import PreconditionError, UnsupportedMethodError
from intensity_model import Method
from peak_extraction import extract_peaks
from peak_profile import Background, PeakProfile, fit_background, peak_signal
from reflections import DiffractionPeak, generate_reflections
from scattering_factors import scattering_coefficients

logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────

DEFAULT_WAVELENGTH  = 1.5418    # Cu Kα [Angstrom]
MATCH_TOLERANCE     = 0.15      # degrees
RAW_DATA_MIN_POINTS = 500
N_BACKGROUND_TERMS  = 5
DEFAULT_B_FACTOR    = 0.5       # Angstrom²


class RMethod(Enum):
    ABS      = 'abs'        # Rp-like, sum of absolute deviations
    SQUARED  = 'squared'    # weighted squared deviations, square-rooted
    RIETVELD = 'rietveld'   # unnormalised weighted squared deviations over the profile


def _inverse_weights(intensity):
    weights = np.zeros_like(intensity, dtype=float)
    np.divide(1.0, intensity, out=weights, where=intensity > 0)
    return weights


# ─── Base pattern ────────────────────────────────────────────────────────────

class DiffractionPattern(ABC):
    """
    State shared by every pattern.

    Attributes
    ----------
    wavelength      : [Angstrom]
    method          : intensity model used to produce / interpret the pattern
    min_two_theta   : lower end of the angular range [degrees]
    max_two_theta   : upper end of the angular range [degrees]
    resolution      : angular step [degrees]
    optimal_scale   : scale that best maps this pattern onto the last reference
    matching_peaks  : for each reference peak, indices of this pattern's peaks matched to it
    unmatched_peaks : indices of this pattern's peaks matched to nothing
    """

    def __init__(self, wavelength=DEFAULT_WAVELENGTH, method=Method.XRAY,
                 min_two_theta=10.0, max_two_theta=100.0, resolution=0.02):
        self.wavelength      = float(wavelength)
        self.method          = method
        self.min_two_theta   = float(min_two_theta)
        self.max_two_theta   = float(max_two_theta)
        self.resolution      = float(resolution)
        self.optimal_scale   = 1.0
        self.matching_peaks  = None
        self.unmatched_peaks = []

    @abstractmethod
    def peaks(self):
        """Discrete peaks (sorted by angle)."""

    @abstractmethod
    def measurement_angles(self):
        """Angles of the continuous profile."""

    @abstractmethod
    def measured_intensities(self):
        """Intensities of the continuous profile at measurement_angles()."""

    @abstractmethod
    def intensity_at(self, two_theta):
        """Continuous intensity evaluated at arbitrary angles."""

    @property
    def is_matched(self):
        return self.matching_peaks is not None

    def reset_matching(self):
        self.matching_peaks  = None
        self.unmatched_peaks = []

    # ── Peak matching ────────────────────────────────────────────────────────

    def match_peaks_to(self, reference):
        """
        Assign every peak of this pattern to the nearest reference peak.

        Peaks farther than MATCH_TOLERANCE from every reference peak are
        recorded as unmatched.  Ties go to the lowest reference index.
        """
        ref_angles = np.array([p.two_theta for p in reference.peaks()])
        self.matching_peaks  = [[] for _ in ref_angles]
        self.unmatched_peaks = []

        for i, peak in enumerate(self.peaks()):
            if len(ref_angles) == 0:
                peak.pattern_index = -1
                self.unmatched_peaks.append(i)
                continue
            dist    = np.abs(ref_angles - peak.two_theta)
            nearest = int(np.argmin(dist))
            if dist[nearest] > MATCH_TOLERANCE:
                peak.pattern_index = -1
                self.unmatched_peaks.append(i)
            else:
                peak.pattern_index = nearest
                self.matching_peaks[nearest].append(i)

        logger.debug('Matched %d peaks to %d reference peaks (%d unmatched)',
                     len(self.peaks()) - len(self.unmatched_peaks), len(ref_angles),
                     len(self.unmatched_peaks))

    # ── Peak-level agreement ─────────────────────────────────────────────────

    def current_r_factor(self, reference, r_method=RMethod.ABS):
        """
        R factor between matched integrated intensities.

        Recomputes and stores `optimal_scale` for the chosen method:
          ABS     : scale from the candidate ratios I_ref/I_matched with least total error
          SQUARED : closed form  Σ I_ref·I_m / (Σ I_m² + Σ I_unmatched²)

        Raises PreconditionError if match_peaks_to() has not been called.
        """
        if not self.is_matched:
            raise PreconditionError('Peaks must be matched to the reference before computing an R factor')
        if r_method not in (RMethod.ABS, RMethod.SQUARED):
            raise UnsupportedMethodError(f'{r_method} cannot be used with integrated peaks')

        own_peaks   = self.peaks()
        reference_I = np.array([p.intensity for p in reference.peaks()])
        matched_I   = np.array([sum(own_peaks[j].intensity for j in group)
                                for group in self.matching_peaks])
        unmatched_I = np.array([own_peaks[j].intensity for j in self.unmatched_peaks])

        if r_method is RMethod.ABS:
            def total_error(scale):
                return (np.sum(np.abs(reference_I - scale * matched_I))
                        + np.sum(np.abs(scale * unmatched_I)))

            candidates = [r / m for r, m in zip(reference_I, matched_I) if m != 0]
            self.optimal_scale = min(candidates, key=total_error) if candidates else 1.0
            norm = np.sum(reference_I)
            if norm == 0:
                return 1.0
            return float(total_error(self.optimal_scale) / norm)

        denom = np.sum(matched_I ** 2) + np.sum(unmatched_I ** 2)
        self.optimal_scale = float(np.sum(reference_I * matched_I) / denom) if denom > 0 else 1.0
        norm = np.sum(reference_I ** 2)
        if norm == 0:
            return 1.0
        residual = (np.sum((reference_I - self.optimal_scale * matched_I) ** 2)
                    + np.sum((self.optimal_scale * unmatched_I) ** 2))
        return float(np.sqrt(residual / norm))

    def r_factor(self, reference):
        """Match to *reference* and return the DR_ABS agreement."""
        self.match_peaks_to(reference)
        r = self.current_r_factor(reference, RMethod.ABS)
        logger.info('R factor compared to reference pattern: %.4f', r)
        return r


# ─── Experimental pattern ────────────────────────────────────────────────────

class ExperimentalPattern(DiffractionPattern):
    """
    Measured pattern.  Holds a continuous trace, a list of integrated peaks,
    or both (peaks extracted from the trace).
    """

    def __init__(self, wavelength=DEFAULT_WAVELENGTH, method=Method.XRAY, resolution=0.02):
        super().__init__(wavelength, method, resolution=resolution)
        self.continuous_two_theta = None
        self.continuous_intensity = None
        self.diffraction_peaks    = []
        self.extraction           = None

    @classmethod
    def from_peaks(cls, two_theta, intensity, **kwargs):
        """Pattern made of already-integrated peaks."""
        pattern = cls(**kwargs)
        pattern._set_peaks(two_theta, intensity)
        return pattern

    @classmethod
    def from_profile(cls, two_theta, intensity, **kwargs):
        """Pattern made of a continuous trace, without peak extraction."""
        pattern = cls(**kwargs)
        pattern._set_trace(*_sorted_pairs(two_theta, intensity))
        return pattern

    @classmethod
    def from_measurement(cls, two_theta, intensity, **kwargs):
        """
        Import measured data, deciding whether it is a raw trace or a peak list.

        Input with non-uniform spacing and fewer than RAW_DATA_MIN_POINTS points
        is taken as integrated peaks.  Anything else is a raw trace, which is
        kept and passed through peak extraction.  A failed extraction leaves the
        pattern without peaks; the reason is kept in `extraction`.
        """
        pattern = cls(**kwargs)
        tth, inten = _sorted_pairs(two_theta, intensity)

        steps = np.diff(tth)
        if len(steps):
            min_step, max_step = steps.min(), steps.max()
        else:
            min_step = max_step = 0.0

        if (max_step > 1.1 * min_step or max_step == 0) and len(tth) < RAW_DATA_MIN_POINTS:
            logger.info('Importing an already-processed pattern')
            pattern._set_peaks(tth, inten)
            return pattern

        logger.info('Processing raw diffraction pattern')
        pattern._set_trace(tth, inten)
        result = extract_peaks(tth, inten, pattern.min_two_theta, pattern.max_two_theta)
        pattern.extraction = result
        if result.ok:
            pattern.diffraction_peaks = sorted(result.peaks)
            logger.info('Found %d peaks', len(result.peaks))
        else:
            logger.warning('Peak extraction failed: %s', result.failure)
        return pattern

    def _set_peaks(self, two_theta, intensity):
        peaks = sorted(DiffractionPeak(t, i) for t, i in zip(two_theta, intensity))
        self.diffraction_peaks = peaks
        if peaks:
            self.min_two_theta = peaks[0].two_theta - self.resolution
            self.max_two_theta = peaks[-1].two_theta + self.resolution / 2.0

    def _set_trace(self, two_theta, intensity):
        self.continuous_two_theta = two_theta
        self.continuous_intensity = intensity
        if len(two_theta):
            self.min_two_theta = float(two_theta[0])
            self.max_two_theta = float(two_theta[-1])

    @property
    def has_profile(self):
        return self.continuous_two_theta is not None and len(self.continuous_two_theta) > 0

    def peaks(self):
        if not self.diffraction_peaks:
            raise PreconditionError('No diffracted intensities were set; peak import or extraction may have failed')
        return list(self.diffraction_peaks)

    def measurement_angles(self):
        if not self.has_profile:
            raise PreconditionError('Pattern has no continuous measurement')
        return self.continuous_two_theta.copy()

    def measured_intensities(self):
        if not self.has_profile:
            raise PreconditionError('Pattern has no continuous measurement')
        return self.continuous_intensity.copy()

    def intensity_at(self, two_theta):
        """
        Linear interpolation of the measured trace, in the order of *two_theta*.
        Raises ValueError outside the trace.
        """
        if not self.has_profile:
            raise PreconditionError('Pattern has no continuous measurement')
        angles = np.asarray(two_theta, dtype=float)
        lo, hi = self.continuous_two_theta[0], self.continuous_two_theta[-1]
        if angles.min() < lo:
            raise ValueError(f'No data before {lo}')
        if angles.max() > hi:
            raise ValueError(f'No data after {hi}')
        return np.interp(angles, self.continuous_two_theta, self.continuous_intensity)


def _sorted_pairs(two_theta, intensity):
    tth   = np.asarray(two_theta, dtype=float)
    inten = np.asarray(intensity, dtype=float)
    if tth.shape != inten.shape:
        raise ValueError('two_theta and intensity must have the same length')
    order = np.argsort(tth, kind='stable')
    return tth[order], inten[order]


# ─── Calculated pattern ──────────────────────────────────────────────────────

class CalculatedPattern(DiffractionPattern):
    """
    Pattern computed from a structure.

    Refinable state: optimal_scale, profile (U, V, W, η0..η2, shift terms),
    background coefficients, lattice (through the structure), atomic
    positions (through the symmetry orbits), b_factors and
    preferred_orientation.
    """

    def __init__(self, wavelength=DEFAULT_WAVELENGTH, method=Method.XRAY,
                 min_two_theta=10.0, max_two_theta=100.0, resolution=0.02,
                 min_b_factor=0.1, max_b_factor=4.0, max_lattice_change=0.05,
                 n_background=N_BACKGROUND_TERMS, use_chebyshev=True, background_poly_start=-1):
        super().__init__(wavelength, method, min_two_theta, max_two_theta, resolution)
        self.structure             = None
        self.symmetry              = None
        self.reflections           = []
        self.scattering            = []
        self.b_factors             = np.zeros(0)
        self.original_lengths      = None
        self.original_angles       = None
        self.min_b_factor          = float(min_b_factor)
        self.max_b_factor          = float(max_b_factor)
        self.max_lattice_change    = float(max_lattice_change)
        self.n_background          = int(n_background)
        self.profile               = PeakProfile()
        self.background            = Background((), use_chebyshev, background_poly_start)
        self.preferred_orientation = np.array([1.0, 0.0, 0.0])
        self._measurement_angles   = None

    # ── Structure and reference ──────────────────────────────────────────────

    @property
    def structure_defined(self):
        return self.symmetry is not None

    def require_structure(self):
        if not self.structure_defined:
            raise PreconditionError('Structure not yet defined')

    def define_structure(self, structure, symmetry):
        """Attach a structure, generate its reflections and reset B factors."""
        self.structure = structure
        self.symmetry  = symmetry
        if not symmetry.orbits:
            symmetry.build_orbits(structure)

        self.scattering       = [scattering_coefficients(orbit.atomic_number)
                                 for orbit in symmetry.orbits]
        self.original_lengths = structure.lattice.lengths.copy()
        self.original_angles  = structure.lattice.angles.copy()
        self.b_factors        = np.full(len(symmetry.orbits), DEFAULT_B_FACTOR)
        self.calculate_peak_locations()

    def define_reference(self, reference):
        """Adopt the wavelength, method and angular range of *reference*."""
        self.wavelength    = reference.wavelength
        self.method        = reference.method
        self.min_two_theta = reference.min_two_theta
        self.max_two_theta = reference.max_two_theta
        if isinstance(reference, ExperimentalPattern) and reference.has_profile:
            self._measurement_angles = reference.measurement_angles()
        if self.structure_defined:
            self.calculate_peak_locations()

    # ── Reflections ──────────────────────────────────────────────────────────

    def calculate_peak_locations(self):
        self.require_structure()
        self.reflections = generate_reflections(
            self.structure, self.symmetry, self.wavelength,
            self.min_two_theta, self.max_two_theta, self.method)
        self.reset_matching()
        logger.info('Total number of peaks: %d', len(self.reflections))

    def update_peak_positions(self):
        """Recompute reflection geometry after a lattice change, keeping the list sorted."""
        for peak in self.reflections:
            peak.update_position(self.structure.lattice)
        order = sorted(range(len(self.reflections)), key=lambda i: self.reflections[i].two_theta)
        if order != list(range(len(self.reflections))):
            self.reflections = [self.reflections[i] for i in order]
            self.reset_matching()

    def calculate_peak_intensities(self):
        for peak in self.reflections:
            peak.update_intensity(self.symmetry.orbits, self.b_factors, self.scattering,
                                  self.preferred_orientation)

    def peaks(self):
        return list(self.reflections)

    # ── Refinable structure updates ──────────────────────────────────────────

    def set_basis(self, parameters):
        """
        Replace the lattice with lengths parameters[0:3] and angles parameters[3:6],
        symmetrised by the space group, then update reflection positions.
        """
        lattice = Lattice(parameters[:3], parameters[3:6])
        self.structure.lattice = self.symmetry.refine_lattice(lattice)
        self.update_peak_positions()

    def representative_positions(self):
        return np.concatenate([orbit.representative.fractional for orbit in self.symmetry.orbits])

    def set_positions(self, positions):
        """Place each orbit's representative at positions[3i:3i+3] (projected onto its site)."""
        positions = np.asarray(positions, dtype=float)
        for i, orbit in enumerate(self.symmetry.orbits):
            orbit.set_position(positions[3 * i:3 * i + 3])

    # ── Continuous signal ────────────────────────────────────────────────────

    def measurement_angles(self):
        if self._measurement_angles is not None:
            return self._measurement_angles.copy()
        n = int(round((self.max_two_theta - self.min_two_theta) / self.resolution))
        return self.min_two_theta + self.resolution * np.arange(n + 1)

    def measured_intensities(self):
        """Scaled model intensity at measurement_angles()."""
        return self.optimal_scale * self.intensity_at(self.measurement_angles())

    def peak_signal(self, two_theta):
        return peak_signal(two_theta,
                           [p.two_theta for p in self.reflections],
                           [p.intensity for p in self.reflections],
                           self.profile, self.max_two_theta)

    def background_signal(self, two_theta):
        if len(self.background) == 0:
            return np.zeros(len(two_theta))
        return self.background.evaluate(two_theta, self.min_two_theta, self.max_two_theta)

    def intensity_at(self, two_theta):
        """Unscaled background + peak signal at *two_theta* (ascending)."""
        two_theta = np.asarray(two_theta, dtype=float)
        return self.background_signal(two_theta) + self.peak_signal(two_theta)

    # ── Full-profile agreement ───────────────────────────────────────────────

    def rietveld_r_factor(self, reference, r_method=RMethod.ABS):
        """
        Agreement over the reference's continuous profile, using the stored scale.

          ABS      : Σ|I_ref − s·I_peaks| / Σ I_ref  over points where I_ref > 0,
                     with I_ref = raw − s·background
          SQUARED  : sqrt( Σ w·(I_ref − s·I_peaks)² / Σ w·I_ref² ),  w = 1/raw
          RIETVELD : Σ w·(raw − s·(I_peaks + background))²  (not normalised)
        """
        angles     = reference.measurement_angles()
        raw        = reference.measured_intensities()
        background = self.background_signal(angles)
        signal     = self.peak_signal(angles)
        s          = self.optimal_scale

        if r_method is RMethod.RIETVELD:
            w = _inverse_weights(raw)
            return float(np.sum(w * (raw - s * (signal + background)) ** 2))

        ref_I = raw - s * background
        if r_method is RMethod.ABS:
            mask  = ref_I > 0
            denom = np.sum(ref_I[mask])
            if denom <= 0:
                return 1.0
            return float(np.sum(np.abs(ref_I[mask] - s * signal[mask])) / denom)

        if r_method is RMethod.SQUARED:
            w     = _inverse_weights(raw)
            denom = np.sum(w * ref_I ** 2)
            if denom <= 0:
                return 1.0
            return float(np.sqrt(np.sum(w * (ref_I - s * signal) ** 2) / denom))

        raise UnsupportedMethodError(f'Cannot calculate a Rietveld R factor with {r_method}')

    # ── Starting guesses ─────────────────────────────────────────────────────

    def guess_background(self, two_theta, intensity):
        """
        Background coefficients fitted away from the reflections.

        Points within ±(reflection span)/100 of any reflection are excluded.
        If fewer than 100 points per coefficient remain, returns zeros.
        The result is divided by the current scale so it lives in model units.
        """
        tth   = np.asarray(two_theta, dtype=float)
        inten = np.asarray(intensity, dtype=float)
        keep  = np.ones(len(tth), dtype=bool)
        if self.reflections:
            half_window = (self.reflections[-1].two_theta - self.reflections[0].two_theta) / 100.0
            for peak in self.reflections:
                keep &= ~((tth >= peak.two_theta - half_window) & (tth < peak.two_theta + half_window))

        if keep.sum() < self.n_background * 100:
            return np.zeros(self.n_background)

        coeffs = fit_background(self.background, tth[keep], inten[keep], self.n_background,
                                self.min_two_theta, self.max_two_theta,
                                weights=_inverse_weights(inten[keep]))
        scale = self.optimal_scale if self.optimal_scale > 0 else 1.0
        return coeffs / scale

    @staticmethod
    def guess_peak_width(two_theta, intensity):
        """Mean distance between up- and down-crossings of half the maximum, at most 1.0."""
        tth   = np.asarray(two_theta, dtype=float)
        inten = np.asarray(intensity, dtype=float)
        half  = inten.max() / 2.0

        pos = 0
        while pos < len(inten) and inten[pos] > half:
            pos += 1

        widths, above, start = [], False, 0.0
        for i in range(pos, len(inten)):
            if above and inten[i] < half:
                above = False
                widths.append(tth[i] - start)
            elif not above and inten[i] > half:
                above = True
                start = tth[i]

        if not widths:
            return 1.0
        return float(min(np.mean(widths), 1.0))

    # ── Reporting helpers ────────────────────────────────────────────────────

    def scale_to_tallest(self, height=1000.0):
        tallest = max((p.intensity for p in self.reflections), default=0.0)
        self.optimal_scale = height / tallest if tallest > 0 else 1.0

    def combined_peaks(self):
        """
        Reflections merged for display.

        After matching, consecutive reflections sharing a reference peak are
        summed and the result scaled so the tallest is 1000.  Otherwise
        reflections within MATCH_TOLERANCE of a group's first angle are summed
        without rescaling.
        """
        if not self.reflections:
            return []

        angles, intens = [self.reflections[0].two_theta], [self.reflections[0].intensity]
        if self.is_matched:
            last_index = self.reflections[0].pattern_index
            for peak in self.reflections[1:]:
                if peak.pattern_index == -1 or peak.pattern_index != last_index:
                    angles.append(peak.two_theta)
                    intens.append(peak.intensity)
                else:
                    intens[-1] += peak.intensity
                last_index = peak.pattern_index
            tallest = max(intens)
            scale   = 1000.0 / tallest if tallest > 0 else 1.0
        else:
            for peak in self.reflections[1:]:
                if peak.two_theta - angles[-1] > MATCH_TOLERANCE:
                    angles.append(peak.two_theta)
                    intens.append(peak.intensity)
                else:
                    intens[-1] += peak.intensity
            scale = 1.0

        return [DiffractionPeak(t, i * scale) for t, i in zip(angles, intens)]

    def reflection_table(self, min_relative=1e-6):
        """Rows of (two_theta, intensity scaled to 1000, hkl, multiplicity, absent) for display."""
        tallest = max((p.intensity for p in self.reflections), default=0.0)
        rows = []
        for peak in self.reflections:
            if tallest <= 0 or peak.intensity < min_relative * tallest:
                continue
            rows.append({
                'two_theta':          peak.two_theta,
                'intensity':          1000.0 * peak.intensity / tallest,
                'hkl':                peak.representative_hkl(),
                'multiplicity':       peak.multiplicity,
                'systematic_absence': peak.systematic_absence,
            })
        return rows
