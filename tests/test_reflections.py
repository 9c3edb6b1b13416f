import numpy as np
import pytest

from crystal_structures import Lattice, Structure, Symmetry
from patterns import CalculatedPattern
from reflections import DiffractionPeak, diffraction_angle, generate_reflections

from conftest import WAVELENGTH


def _family(peaks, hkl):
    target = sorted(np.abs(hkl))
    for peak in peaks:
        if sorted(np.abs(peak.hkl)) == target:
            return peak
    raise AssertionError(f'No reflection family {hkl}')


def test_bragg_angle_of_cubic_reflection():
    inverse = np.linalg.inv(3.0 * np.eye(3))
    theta   = diffraction_angle(inverse, [1, 0, 0], WAVELENGTH)
    assert np.sin(theta) == pytest.approx(WAVELENGTH / (2.0 * 3.0))


def test_bragg_angle_is_clamped_beyond_limiting_sphere():
    inverse = np.linalg.inv(1.0 * np.eye(3))
    assert diffraction_angle(inverse, [2, 0, 0], WAVELENGTH) == pytest.approx(np.pi / 2.0)


def test_cubic_multiplicities(simple_cubic):
    structure, symmetry = simple_cubic
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 160.0)
    assert _family(peaks, (1, 0, 0)).multiplicity == 6
    assert _family(peaks, (1, 1, 0)).multiplicity == 12
    assert _family(peaks, (1, 1, 1)).multiplicity == 8
    assert _family(peaks, (1, 2, 3)).multiplicity == 48


def test_every_family_appears_once(simple_cubic):
    structure, symmetry = simple_cubic
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 140.0)
    keys = [tuple(sorted(np.abs(p.hkl))) for p in peaks]
    assert len(keys) == len(set(keys))


def test_reflections_obey_braggs_law_and_are_sorted(simple_cubic):
    structure, symmetry = simple_cubic
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 20.0, 120.0)
    angles = [p.two_theta for p in peaks]
    assert angles == sorted(angles)
    assert all(20.0 <= a <= 120.0 for a in angles)
    for peak in peaks:
        d = 3.0 / np.linalg.norm(peak.hkl)
        assert WAVELENGTH == pytest.approx(2.0 * d * np.sin(peak.theta))


def test_first_simple_cubic_peak(simple_cubic):
    structure, symmetry = simple_cubic
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 100.0)
    expected = np.degrees(2.0 * np.arcsin(WAVELENGTH / 6.0))
    assert peaks[0].two_theta == pytest.approx(expected)
    assert peaks[0].multiplicity == 6


def test_equivalents_share_the_same_angle(fcc_copper):
    structure, symmetry = fcc_copper
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 120.0)
    for peak in peaks:
        norms = np.linalg.norm(peak.equivalents, axis=1)
        np.testing.assert_allclose(norms, norms[0])


def test_fcc_absences_are_flagged(fcc_copper):
    structure, symmetry = fcc_copper
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 120.0)
    for peak in peaks:
        h, k, l = np.abs(peak.hkl).astype(int)
        mixed = len({h % 2, k % 2, l % 2}) > 1
        assert peak.systematic_absence == mixed
    assert not _family(peaks, (1, 1, 1)).systematic_absence
    assert _family(peaks, (1, 0, 0)).systematic_absence


def test_lattice_change_moves_peaks(simple_cubic):
    structure, symmetry = simple_cubic
    peak = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 100.0)[0]
    before = peak.two_theta
    peak.update_position(Lattice([3.1, 3.1, 3.1]))
    assert peak.two_theta < before


def test_representative_hkl_prefers_positive_indices(simple_cubic):
    structure, symmetry = simple_cubic
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 100.0)
    assert _family(peaks, (1, 1, 1)).representative_hkl() == (1, 1, 1)
    assert _family(peaks, (1, 0, 0)).representative_hkl() == (1, 0, 0)


def test_triclinic_cell_generates_friedel_pairs():
    symmetry  = Symmetry.from_generators([])
    structure = Structure.from_sites(Lattice([3.0, 3.2, 3.5], [80.0, 95.0, 100.0]),
                                     symmetry, [('Cu', (0.0, 0.0, 0.0))])
    peaks = generate_reflections(structure, symmetry, WAVELENGTH, 10.0, 60.0)
    assert peaks
    # no symmetry: each family holds a single reflection, and +h and -h are separate
    assert all(p.multiplicity == 1 for p in peaks)
    assert len(peaks) % 2 == 0


def test_peaks_sort_by_angle():
    peaks = sorted([DiffractionPeak(40.0, 1.0), DiffractionPeak(20.0, 2.0)])
    assert [p.two_theta for p in peaks] == [20.0, 40.0]


@pytest.mark.parametrize('wavelength', [0.7093, WAVELENGTH, 2.2909])
def test_bragg_angle_grows_with_reciprocal_length(wavelength):
    lengths = np.linspace(0.05, 0.99, 25) * 2.0 / wavelength
    thetas  = [diffraction_angle(np.eye(3), [g, 0.0, 0.0], wavelength) for g in lengths]
    assert np.all(np.diff(thetas) > 0)

    inverse = Lattice([3.0, 3.2, 3.5], [80.0, 95.0, 100.0]).inverse
    hkls    = [n * np.array([1, 2, -1]) for n in range(1, 20)]
    hkls    = [hkl for hkl in hkls if np.linalg.norm(inverse @ hkl) * wavelength / 2.0 < 1.0]
    thetas  = [diffraction_angle(inverse, hkl, wavelength) for hkl in hkls]
    assert len(thetas) > 2
    assert np.all(np.diff(thetas) > 0)


def test_regenerated_reflections_are_identical(fcc_copper):
    structure, symmetry = fcc_copper
    pattern = CalculatedPattern()
    pattern.define_structure(structure, symmetry)

    def listing():
        return [(tuple(p.hkl), p.multiplicity, p.two_theta) for p in pattern.reflections]

    first = listing()
    pattern.calculate_peak_locations()
    second = listing()
    assert first == second
    assert [entry[2] for entry in second] == sorted(entry[2] for entry in second)
