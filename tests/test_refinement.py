import numpy as np
import pytest

from diffraction_errors import PreconditionError
from patterns import CalculatedPattern, ExperimentalPattern
from refinement import (Parameter, PatternRefinement, RefinementResult, apply_parameters,
                        calculate_pattern, parameter_bounds, parameter_vector, refine_structure)


@pytest.fixture
def fcc_pattern(fcc_copper):
    structure, symmetry = fcc_copper
    pattern = CalculatedPattern()
    pattern.define_structure(structure, symmetry)
    pattern.profile.W = 0.02
    pattern.calculate_peak_intensities()
    return pattern


def _peak_reference(pattern, scale):
    peaks = [p for p in pattern.reflections if p.intensity > 1e-9]
    return ExperimentalPattern.from_peaks([p.two_theta for p in peaks],
                                          [scale * p.intensity for p in peaks])


def _profile_reference(pattern, scale):
    angles    = pattern.measurement_angles()
    reference = ExperimentalPattern.from_profile(angles, scale * pattern.intensity_at(angles))
    pattern.define_reference(reference)
    pattern.calculate_peak_intensities()
    return reference


# ─── Parameter vector ────────────────────────────────────────────────────────

def test_vector_follows_declaration_order(fcc_pattern):
    fcc_pattern.optimal_scale = 3.0
    fcc_pattern.b_factors[:]  = 0.7
    x = parameter_vector(fcc_pattern, {Parameter.B_FACTORS, Parameter.W_FACTOR, Parameter.SCALE})
    np.testing.assert_allclose(x, [3.0, 0.02, fcc_pattern.profile.eta0, 0.7])


def test_every_group_has_bounds(fcc_pattern):
    refining = set(Parameter)
    x = parameter_vector(fcc_pattern, refining)
    lower, upper = parameter_bounds(fcc_pattern, refining)
    assert len(lower) == len(upper) == len(x)
    assert np.all(lower <= upper)


def test_lattice_bounds_follow_allowed_change(fcc_pattern):
    lower, upper = parameter_bounds(fcc_pattern, {Parameter.BASIS})
    np.testing.assert_allclose(lower[:3], 3.615 * 0.95)
    np.testing.assert_allclose(upper[3:], 90.0 * 1.05)


def test_b_factor_bounds(fcc_pattern):
    lower, upper = parameter_bounds(fcc_pattern, {Parameter.B_FACTORS})
    np.testing.assert_allclose(lower, [0.1])
    np.testing.assert_allclose(upper, [4.0])


def test_apply_writes_values_back(fcc_pattern):
    refining = {Parameter.SCALE, Parameter.UV_FACTORS, Parameter.BASIS, Parameter.ZERO_SHIFT}
    x = parameter_vector(fcc_pattern, refining)
    x[0]    = 2.5
    x[1:4]  = 3.7
    x[-1]   = 0.03
    apply_parameters(fcc_pattern, refining, x)
    assert fcc_pattern.optimal_scale == 2.5
    np.testing.assert_allclose(fcc_pattern.structure.lattice.lengths, 3.7)
    np.testing.assert_allclose(parameter_vector(fcc_pattern, refining), x)


# ─── Single refinement steps ─────────────────────────────────────────────────

def test_scale_refinement_against_profile(fcc_pattern):
    reference  = _profile_reference(fcc_pattern, 7.0)
    fcc_pattern.optimal_scale = 5.0
    refinement = PatternRefinement(fcc_pattern, reference)
    r_factor   = refinement.refine({Parameter.SCALE}, rietveld=True)
    assert fcc_pattern.optimal_scale == pytest.approx(7.0, rel=1e-3)
    assert r_factor == pytest.approx(0.0, abs=1e-3)


def test_refinement_needs_a_structure(fcc_pattern):
    reference  = _peak_reference(fcc_pattern, 1.0)
    refinement = PatternRefinement(CalculatedPattern(), reference)
    with pytest.raises(PreconditionError):
        refinement.refine({Parameter.SCALE})
    with pytest.raises(PreconditionError):
        refinement.run_peak_based()


# ─── Protocols ───────────────────────────────────────────────────────────────

def test_peak_based_recovers_b_factor(fcc_pattern):
    reference = _peak_reference(fcc_pattern, 4.0)
    fcc_pattern.b_factors[:] = 1.5
    refinement = PatternRefinement(fcc_pattern, reference)
    r_factor   = refinement.run_peak_based()
    assert [label for label, _ in refinement.stages] == ['atomic positions', 'B factors']
    assert r_factor < 0.01
    assert fcc_pattern.b_factors[0] == pytest.approx(0.5, abs=0.05)
    assert fcc_pattern.optimal_scale == pytest.approx(4.0, rel=0.02)


def test_rietveld_stages_grow_the_parameter_set(fcc_pattern, monkeypatch):
    reference = _profile_reference(fcc_pattern, 2.0)
    calls = []

    def fake_refine(self, refining, rietveld=False):
        calls.append(frozenset(refining))
        return 0.1

    monkeypatch.setattr(PatternRefinement, 'refine', fake_refine)
    refinement = PatternRefinement(fcc_pattern, reference)
    refinement.run_rietveld()

    assert calls[0] == {Parameter.SCALE}
    assert calls[1] == {Parameter.SPECIMEN_DISPLACEMENT}
    assert calls[3] == {Parameter.BACKGROUND, Parameter.SCALE}
    assert calls[5] == {Parameter.BASIS}
    assert calls[-1] == frozenset(Parameter)
    assert [label for label, _ in refinement.stages] == [
        'scale factor', 'specimen displacement', 'background functions', 'lattice parameters',
        'peak-broadening term', 'atomic positions', 'preferred orientation factor', 'B factors',
        'all broadening factors', 'zero shift']
    assert not refinement.terminated_early


def test_rietveld_stops_on_a_poor_match(fcc_pattern, monkeypatch):
    reference = _profile_reference(fcc_pattern, 2.0)
    fcc_pattern.max_lattice_change = 0.0
    monkeypatch.setattr(PatternRefinement, 'refine', lambda self, refining, rietveld=False: 0.95)

    refinement = PatternRefinement(fcc_pattern, reference)
    assert refinement.run_rietveld() == 0.95
    assert refinement.terminated_early
    assert [label for label, _ in refinement.stages] == [
        'scale factor', 'specimen displacement', 'background functions', 'peak-broadening term']


def test_report_lists_stages(fcc_pattern, capsys):
    reference  = _peak_reference(fcc_pattern, 1.0)
    refinement = PatternRefinement(fcc_pattern, reference)
    refinement.run_peak_based(to_refine=())
    refinement.report()
    out = capsys.readouterr().out
    assert 'PEAK-BASED REFINEMENT RESULTS' in out
    assert 'Lattice' in out


# ─── Entry points ────────────────────────────────────────────────────────────

def test_calculate_without_reference(fcc_copper):
    structure, symmetry = fcc_copper
    result = calculate_pattern(structure, symmetry)
    assert isinstance(result, RefinementResult)
    assert result.r_factor == 0.0
    tallest = max(p.intensity for p in result.pattern.reflections)
    assert result.pattern.optimal_scale * tallest == pytest.approx(1000.0)


def test_calculate_against_peak_reference(fcc_copper):
    structure, symmetry = fcc_copper
    template  = calculate_pattern(structure, symmetry).pattern
    reference = _peak_reference(template, 2.0)
    result    = calculate_pattern(structure, symmetry, reference)
    assert result.r_factor == pytest.approx(0.0, abs=1e-9)
    assert result.pattern.optimal_scale == pytest.approx(2.0)
    assert result.stages == []


def test_refine_structure_peak_based(fcc_copper):
    structure, symmetry = fcc_copper
    template  = calculate_pattern(structure, symmetry).pattern
    reference = _peak_reference(template, 1.0)
    result    = refine_structure(structure, symmetry, reference)
    assert len(result.stages) == 2
    assert result.r_factor < 0.01
    assert 'terminated_early=False' in repr(result)
