"""
Parameter management and staged refinement of a calculated pattern.

Usage example
-------------
    from patterns import ExperimentalPattern
    from refinement import refine_structure

    reference = ExperimentalPattern.from_measurement(two_theta, counts)
    result    = refine_structure(structure, symmetry, reference, rietveld=True)
    print(result.r_factor, result.terminated_early)

Parameter groups
----------------
Every optimisation call refines a set of Parameter groups.  The parameter
vector is always laid out in Parameter declaration order:

    SCALE                  → optimal scale factor
    SPECIMEN_DISPLACEMENT  → shift term 4
    BACKGROUND             → background coefficients
    BASIS                  → lattice lengths then angles
    UV_FACTORS             → U, V, η1, η2
    W_FACTOR               → W, η0
    POSITIONS              → representative position of every orbit
    B_FACTORS              → isotropic B of every orbit
    TEXTURE                → preferred-orientation vector
    ZERO_SHIFT             → shift term 5
"""

import logging
from enum import Enum

import numpy as np
from scipy.optimize import Bounds, minimize

from patterns import CalculatedPattern, RMethod
from peak_profile import SPECIMEN_DISPLACEMENT, ZERO_SHIFT

logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────

POOR_FIT_THRESHOLD = 0.9
GRADIENT_STEP      = 1e-6
_DISPLACEMENT_LIMIT = 0.1    # degrees, specimen displacement and zero shift
_POSITION_LIMITS    = (-1.0, 2.0)
_TEXTURE_LIMIT      = 10.0


class Parameter(Enum):
    SCALE                 = 'scale'
    SPECIMEN_DISPLACEMENT = 'specimen_displacement'
    BACKGROUND            = 'background'
    BASIS                 = 'basis'
    UV_FACTORS            = 'uv_factors'
    W_FACTOR              = 'w_factor'
    POSITIONS             = 'positions'
    B_FACTORS             = 'b_factors'
    TEXTURE               = 'texture'
    ZERO_SHIFT            = 'zero_shift'


# groups whose change requires reflection intensities to be recomputed
_STRUCTURAL = frozenset({Parameter.BASIS, Parameter.POSITIONS,
                         Parameter.B_FACTORS, Parameter.TEXTURE})


# ─── Parameter pack / bounds / apply ─────────────────────────────────────────

def _group_values(pattern, group):
    profile = pattern.profile
    if group is Parameter.SCALE:
        return [pattern.optimal_scale]
    if group is Parameter.SPECIMEN_DISPLACEMENT:
        return [profile.shift[SPECIMEN_DISPLACEMENT]]
    if group is Parameter.BACKGROUND:
        return list(pattern.background.coefficients)
    if group is Parameter.BASIS:
        return list(pattern.structure.lattice.parameters)
    if group is Parameter.UV_FACTORS:
        return [profile.U, profile.V, profile.eta1, profile.eta2]
    if group is Parameter.W_FACTOR:
        return [profile.W, profile.eta0]
    if group is Parameter.POSITIONS:
        return list(pattern.representative_positions())
    if group is Parameter.B_FACTORS:
        return list(pattern.b_factors)
    if group is Parameter.TEXTURE:
        return list(pattern.preferred_orientation)
    return [profile.shift[ZERO_SHIFT]]


def _group_bounds(pattern, group):
    n = len(_group_values(pattern, group))
    if group is Parameter.SCALE:
        return [0.0], [np.inf]
    if group in (Parameter.SPECIMEN_DISPLACEMENT, Parameter.ZERO_SHIFT):
        return [-_DISPLACEMENT_LIMIT], [_DISPLACEMENT_LIMIT]
    if group in (Parameter.BACKGROUND, Parameter.UV_FACTORS):
        return [-np.inf] * n, [np.inf] * n
    if group is Parameter.BASIS:
        original = np.concatenate([pattern.original_lengths, pattern.original_angles])
        change   = pattern.max_lattice_change
        return list(original * (1.0 - change)), list(original * (1.0 + change))
    if group is Parameter.W_FACTOR:
        return [0.0, 0.0], [20.0, 1.0]
    if group is Parameter.POSITIONS:
        return [_POSITION_LIMITS[0]] * n, [_POSITION_LIMITS[1]] * n
    if group is Parameter.B_FACTORS:
        return [pattern.min_b_factor] * n, [pattern.max_b_factor] * n
    return [-_TEXTURE_LIMIT] * n, [_TEXTURE_LIMIT] * n


def _apply_group(pattern, group, values):
    profile = pattern.profile
    if group is Parameter.SCALE:
        pattern.optimal_scale = float(values[0])
    elif group is Parameter.SPECIMEN_DISPLACEMENT:
        profile.shift[SPECIMEN_DISPLACEMENT] = values[0]
    elif group is Parameter.BACKGROUND:
        pattern.background.coefficients = np.array(values, dtype=float)
    elif group is Parameter.BASIS:
        pattern.set_basis(values)
    elif group is Parameter.UV_FACTORS:
        profile.U, profile.V, profile.eta1, profile.eta2 = (float(v) for v in values)
    elif group is Parameter.W_FACTOR:
        profile.W, profile.eta0 = (float(v) for v in values)
    elif group is Parameter.POSITIONS:
        pattern.set_positions(values)
    elif group is Parameter.B_FACTORS:
        pattern.b_factors = np.array(values, dtype=float)
    elif group is Parameter.TEXTURE:
        pattern.preferred_orientation = np.array(values, dtype=float)
    else:
        profile.shift[ZERO_SHIFT] = values[0]


def _ordered(refining):
    return [group for group in Parameter if group in refining]


def parameter_vector(pattern, refining):
    """Current values of the groups in *refining*, in Parameter order."""
    values = []
    for group in _ordered(refining):
        values.extend(_group_values(pattern, group))
    return np.array(values, dtype=float)


def parameter_bounds(pattern, refining):
    """Lower and upper bound vectors matching parameter_vector()."""
    lower, upper = [], []
    for group in _ordered(refining):
        lo, hi = _group_bounds(pattern, group)
        lower += lo
        upper += hi
    return np.array(lower, dtype=float), np.array(upper, dtype=float)


def apply_parameters(pattern, refining, x):
    """Write vector *x* back into the pattern, structure and symmetry."""
    x = np.asarray(x, dtype=float)
    start = 0
    for group in _ordered(refining):
        n = len(_group_values(pattern, group))
        _apply_group(pattern, group, x[start:start + n])
        start += n


# ─── Refinement driver ───────────────────────────────────────────────────────

class RefinementResult:
    """
    Outcome of a refinement.

    r_factor         : final DR_ABS agreement (0.0 when there was no reference)
    stages           : list of (stage label, R after the stage)
    terminated_early : the staged protocol stopped on a very poor match
    pattern          : the refined CalculatedPattern
    """

    def __init__(self, r_factor, stages=(), terminated_early=False, pattern=None):
        self.r_factor         = float(r_factor)
        self.stages           = list(stages)
        self.terminated_early = bool(terminated_early)
        self.pattern          = pattern

    def __repr__(self):
        return (f'RefinementResult(r_factor={self.r_factor:.4f}, stages={len(self.stages)}, '
                f'terminated_early={self.terminated_early})')


class PatternRefinement:
    """
    Staged refinement of a CalculatedPattern against a reference pattern.

    Each call to refine() receives the set of parameter groups to optimise;
    the pattern is changed only by writing the optimised vector back.
    """

    def __init__(self, pattern, reference):
        self.pattern          = pattern
        self.reference        = reference
        self.stages           = []
        self.terminated_early = False
        self.rietveld         = False

    # ── Objective ────────────────────────────────────────────────────────────

    def objective(self, x, refining, rietveld):
        apply_parameters(self.pattern, refining, x)
        if _STRUCTURAL & refining:
            self.pattern.calculate_peak_intensities()
        if rietveld:
            return self.pattern.rietveld_r_factor(self.reference, RMethod.RIETVELD)
        return self.pattern.current_r_factor(self.reference, RMethod.SQUARED)

    def residual(self, rietveld):
        if rietveld:
            return self.pattern.rietveld_r_factor(self.reference, RMethod.ABS)
        return self.pattern.current_r_factor(self.reference, RMethod.ABS)

    # ── Single refinement step ───────────────────────────────────────────────

    def refine(self, refining, rietveld=False):
        """
        Optimise the groups in *refining* with bound-constrained L-BFGS-B.

        Gradients are estimated numerically.  The optimised vector is written
        back, intensities are recomputed and the DR_ABS agreement returned.
        """
        self.pattern.require_structure()
        refining = frozenset(refining)
        x0       = parameter_vector(self.pattern, refining)
        if len(x0) == 0:
            return self.residual(rietveld)

        lower, upper = parameter_bounds(self.pattern, refining)
        result = minimize(
            self.objective, np.clip(x0, lower, upper),
            args=(refining, rietveld),
            method='L-BFGS-B',
            bounds=Bounds(lower, upper),
            options={'eps': GRADIENT_STEP, 'ftol': 1e-12, 'maxiter': 30 * max(len(x0), 10)},
        )
        logger.debug('Optimised %s: %s (%d evaluations)',
                     ', '.join(g.value for g in _ordered(refining)), result.message, result.nfev)

        apply_parameters(self.pattern, refining, result.x)
        self.pattern.calculate_peak_intensities()
        return self.residual(rietveld)

    def _record(self, label, r_factor):
        self.stages.append((label, r_factor))
        logger.info('Refined %s. Current R: %.4f', label, r_factor)
        return r_factor

    # ── Peak-based protocol ──────────────────────────────────────────────────

    def run_peak_based(self, to_refine=(Parameter.POSITIONS, Parameter.B_FACTORS)):
        """
        Refine against integrated intensities: positions alone, then
        positions and B factors together.
        """
        self.pattern.require_structure()
        self.rietveld = False
        self.pattern.calculate_peak_intensities()
        self.pattern.match_peaks_to(self.reference)

        refining = set()
        if Parameter.POSITIONS in to_refine:
            refining.add(Parameter.POSITIONS)
            self._record('atomic positions', self.refine(refining))
        if Parameter.B_FACTORS in to_refine:
            refining.add(Parameter.B_FACTORS)
            self._record('B factors', self.refine(refining))

        for orbit, b_factor in zip(self.pattern.symmetry.orbits, self.pattern.b_factors):
            logger.debug('Orbit %s: position %s, B = %.4f', orbit.element,
                         np.round(orbit.representative.fractional, 5), b_factor)
        return self.residual(False)

    # ── Full-profile protocol ────────────────────────────────────────────────

    def run_rietveld(self, to_refine=(Parameter.POSITIONS, Parameter.B_FACTORS)):
        """
        Staged full-profile refinement.

        Stage order: scale, specimen displacement, background, lattice
        (if max_lattice_change > 0), W, then (after the poor-fit check)
        positions, texture, B factors, U/V, zero shift.  Atomic positions and
        B factors are refined only if listed in *to_refine*.  Each newly added
        group is refined first with its own stage set, then jointly with
        everything refined so far.
        """
        pattern = self.pattern
        pattern.require_structure()
        self.rietveld = True
        self.terminated_early = False

        pattern.calculate_peak_intensities()
        angles     = self.reference.measurement_angles()
        raw        = self.reference.measured_intensities()
        calculated = pattern.intensity_at(angles)
        refined_so_far = set()

        def run(refining):
            return self.refine(refining, rietveld=True)

        # scale
        pattern.optimal_scale = float(raw.max() / calculated.max()) if calculated.max() > 0 else 1.0
        current = {Parameter.SCALE}
        refined_so_far |= current
        self._record('scale factor', run(current))

        # specimen displacement
        current = {Parameter.SPECIMEN_DISPLACEMENT}
        refined_so_far |= current
        run(current)
        current |= refined_so_far
        self._record('specimen displacement', run(current))

        # background
        pattern.background.coefficients = pattern.guess_background(angles, raw)
        current = {Parameter.BACKGROUND, Parameter.SCALE}
        refined_so_far.add(Parameter.BACKGROUND)
        run(current)
        current |= refined_so_far
        self._record('background functions', run(current))

        # lattice, alone, then restore the previous set
        if pattern.max_lattice_change > 0:
            previous = set(current)
            current  = {Parameter.BASIS}
            refined_so_far.add(Parameter.BASIS)
            r_factor = run(current)
            current |= previous
            self._record('lattice parameters', r_factor)

        # angle-independent broadening
        pattern.profile.W = pattern.guess_peak_width(angles, raw)
        current.add(Parameter.W_FACTOR)
        refined_so_far.add(Parameter.W_FACTOR)
        run(current)
        current |= refined_so_far
        r_factor = self._record('peak-broadening term', run(current))
        logger.info('Peak-broadening term W = %.4f', pattern.profile.W)

        if r_factor > POOR_FIT_THRESHOLD:
            logger.warning('Very poor pattern match (R = %.4f), not refining further', r_factor)
            self.terminated_early = True
            return r_factor

        if Parameter.POSITIONS in to_refine:
            current.add(Parameter.POSITIONS)
            self._record('atomic positions', run(current))

        current.add(Parameter.TEXTURE)
        r_factor = run(current)
        logger.info('Preferred orientation magnitude: %.3f',
                    np.linalg.norm(pattern.preferred_orientation))
        self._record('preferred orientation factor', r_factor)

        if Parameter.B_FACTORS in to_refine:
            current.add(Parameter.B_FACTORS)
            self._record('B factors', run(current))

        current.add(Parameter.UV_FACTORS)
        self._record('all broadening factors', run(current))

        current.add(Parameter.ZERO_SHIFT)
        return self._record('zero shift', run(current))

    def result(self):
        r_factor = self.residual(self.rietveld)
        return RefinementResult(r_factor, self.stages, self.terminated_early, self.pattern)

    # ── Report ───────────────────────────────────────────────────────────────

    def report(self):
        """Print a summary of refined parameters and stage R factors."""
        pattern = self.pattern
        profile = pattern.profile
        lattice = pattern.structure.lattice

        sep = '=' * 60
        print(f'\n{sep}')
        print('  RIETVELD REFINEMENT RESULTS' if self.rietveld else '  PEAK-BASED REFINEMENT RESULTS')
        print(sep)

        print(f'\n  R = {self.residual(self.rietveld):.5f}'
              + ('     (stopped early: very poor match)' if self.terminated_early else ''))

        if self.stages:
            print('\n  Stages')
            for label, r_factor in self.stages:
                print(f'  {label:28s}: R = {r_factor:.4f}')

        print('\n  Global parameters')
        print(f'  {"scale factor":20s}: {pattern.optimal_scale:.4e}')
        print(f'  {"U, V, W":20s}: {profile.U:.5f}  {profile.V:.5f}  {profile.W:.5f}')
        print(f'  {"eta0, eta1, eta2":20s}: {profile.eta0:.4f}  {profile.eta1:.4g}  {profile.eta2:.4g}')
        print(f'  {"specimen displ.":20s}: {profile.shift[SPECIMEN_DISPLACEMENT]:+.4f} deg')
        print(f'  {"zero shift":20s}: {profile.shift[ZERO_SHIFT]:+.4f} deg')
        print(f'  {"texture":20s}: ' + '  '.join(f'{p:.3f}' for p in pattern.preferred_orientation))
        if len(pattern.background):
            print(f'  {"background":20s}: ' +
                  '  '.join(f'{b:.3g}' for b in pattern.background.coefficients))

        print('\n  Lattice')
        a, b, c, alpha, beta, gamma = lattice.parameters
        print(f'  {"a, b, c":20s}: {a:.5f}  {b:.5f}  {c:.5f} Å')
        print(f'  {"alpha, beta, gamma":20s}: {alpha:.3f}  {beta:.3f}  {gamma:.3f} deg')

        print('\n  Orbits')
        for i, (orbit, b_factor) in enumerate(zip(pattern.symmetry.orbits, pattern.b_factors)):
            x, y, z = orbit.representative.fractional
            print(f'  {i + 1:2d} {orbit.element:3s} x{len(orbit):<3d}: '
                  f'{x:.5f}  {y:.5f}  {z:.5f}   B = {b_factor:.4f}')

        print(f'\n{sep}')


# ─── Entry points ────────────────────────────────────────────────────────────

def calculate_pattern(structure, symmetry, reference=None, rietveld=False,
                      fit_b_factors=False, pattern=None):
    """
    Calculate the pattern of *structure*.

    With a reference, the scale (and B factors if *fit_b_factors*) are fitted
    to it, using the full profile if *rietveld*.  Without one, the scale makes
    the tallest reflection 1000.

    Returns
    -------
    RefinementResult, r_factor is 0.0 without a reference
    """
    pattern = CalculatedPattern() if pattern is None else pattern
    if reference is not None:
        pattern.define_reference(reference)
    pattern.define_structure(structure, symmetry)
    pattern.calculate_peak_intensities()

    if reference is None:
        pattern.scale_to_tallest(1000.0)
        logger.info('Generated %d peaks', len(pattern.reflections))
        return RefinementResult(0.0, pattern=pattern)

    to_refine  = {Parameter.B_FACTORS} if fit_b_factors else set()
    refinement = PatternRefinement(pattern, reference)
    if rietveld:
        refinement.run_rietveld(to_refine)
    else:
        refinement.run_peak_based(to_refine)
    result = refinement.result()
    logger.info('Optimal R factor: %.4f', result.r_factor)
    return result


def refine_structure(structure, symmetry, reference, rietveld=False, pattern=None):
    """
    Refine atomic positions and B factors of *structure* against *reference*
    (plus every profile stage when *rietveld*).  The structure is modified in place.
    """
    pattern = CalculatedPattern() if pattern is None else pattern
    pattern.define_reference(reference)
    pattern.define_structure(structure, symmetry)

    refinement = PatternRefinement(pattern, reference)
    to_refine  = {Parameter.POSITIONS, Parameter.B_FACTORS}
    if rietveld:
        refinement.run_rietveld(to_refine)
    else:
        refinement.run_peak_based(to_refine)
    result = refinement.result()
    logger.info('Optimal R factor: %.4f', result.r_factor)
    return result
