import numpy as np
import pytest

from crystal_structures import (Atom, Lattice, Structure, Symmetry, SymmetryOperation,
                                generate_operations, intrinsic_translation, periodic_distance,
                                wrap_fractional)


# ─── Lattice ─────────────────────────────────────────────────────────────────

def test_cubic_lattice_vectors():
    lattice = Lattice([3.0, 3.0, 3.0])
    np.testing.assert_allclose(lattice.vectors, 3.0 * np.eye(3), atol=1e-12)
    np.testing.assert_allclose(lattice.inverse, np.eye(3) / 3.0, atol=1e-12)
    assert lattice.volume == pytest.approx(27.0)
    np.testing.assert_allclose(lattice.parameters, [3, 3, 3, 90, 90, 90])


def test_monoclinic_parameters_survive_metric_round_trip():
    lattice = Lattice([4.0, 5.0, 6.0], [90.0, 100.0, 90.0])
    rebuilt = Lattice.from_vectors(lattice.vectors)
    np.testing.assert_allclose(rebuilt.lengths, [4.0, 5.0, 6.0])
    np.testing.assert_allclose(rebuilt.angles, [90.0, 100.0, 90.0])
    assert rebuilt.volume == pytest.approx(4 * 5 * 6 * np.sin(np.radians(100.0)))


def test_reduction_of_a_skewed_cell():
    gamma   = np.degrees(np.arccos(3.0 / np.sqrt(10.0)))
    lattice = Lattice([1.0, np.sqrt(10.0), 1.0], [90.0, 90.0, gamma])
    M = lattice.unit_to_reduced
    assert abs(round(np.linalg.det(M))) == 1
    np.testing.assert_allclose(np.linalg.norm(lattice.reduced_vectors, axis=1), 1.0, atol=1e-9)


def test_reduced_cubic_cell_is_unchanged():
    np.testing.assert_array_equal(Lattice([3.0, 3.0, 3.0]).unit_to_reduced, np.eye(3))


# ─── Symmetry operations ─────────────────────────────────────────────────────

def test_parse_operation():
    op = SymmetryOperation.from_xyz('-y, x+1/2, z')
    np.testing.assert_allclose(op.rotation, [[0, -1, 0], [1, 0, 0], [0, 0, 1]])
    np.testing.assert_allclose(op.translation, [0.0, 0.5, 0.0])
    assert op.order == 4
    np.testing.assert_allclose(op.apply([0.1, 0.2, 0.3]), [-0.2, 0.6, 0.3])


def test_parse_rejects_malformed_operation():
    with pytest.raises(ValueError):
        SymmetryOperation.from_xyz('x,y')


def test_screw_axis_has_intrinsic_translation():
    screw = np.diag([-1.0, -1.0, 1.0])
    np.testing.assert_allclose(intrinsic_translation(screw, [0.0, 0.0, 0.5]), [0.0, 0.0, 0.5])
    np.testing.assert_allclose(intrinsic_translation(screw, [0.5, 0.5, 0.0]), [0.0, 0.0, 0.0])


def test_cubic_group_closure():
    operations = generate_operations(['-x,-y,z', '-x,y,-z', 'z,x,y', 'y,x,-z', '-x,-y,-z'], 'P')
    assert len(operations) == 48
    assert operations[0].is_identity()


def test_face_centring_is_folded_into_each_rotation():
    operations = generate_operations(['-x,-y,z', '-x,y,-z', 'z,x,y', 'y,x,-z', '-x,-y,-z'], 'F')
    assert len(operations) == 48
    assert all(len(op.translations) == 4 for op in operations)


def test_wrap_and_periodic_distance():
    np.testing.assert_allclose(wrap_fractional([1.25, -0.25, 1.0 - 1e-12]), [0.25, 0.75, 0.0])
    assert periodic_distance([0.99, 0.0, 0.0], [0.01, 0.0, 0.0]) == pytest.approx(0.02)


# ─── Orbits ──────────────────────────────────────────────────────────────────

def test_fcc_expansion_gives_one_orbit_of_four(fcc_copper):
    structure, symmetry = fcc_copper
    assert len(structure) == 4
    assert len(symmetry.orbits) == 1
    assert len(symmetry.orbits[0]) == 4


def test_atom_on_highest_symmetry_site_cannot_move(simple_cubic):
    _, symmetry = simple_cubic
    orbit = symmetry.orbits[0]
    assert orbit.special_position.degrees_of_freedom == 0
    orbit.set_position([0.1, 0.2, 0.3])
    np.testing.assert_allclose(orbit.representative.fractional, [0.0, 0.0, 0.0], atol=1e-12)


def test_mirror_site_moves_within_the_plane():
    symmetry  = Symmetry.from_generators(['x,y,-z'])
    structure = Structure.from_sites(Lattice([4.0, 5.0, 6.0]), symmetry, [('O', (0.1, 0.2, 0.0))])
    orbit = symmetry.orbits[0]
    assert len(structure) == 1
    assert orbit.special_position.degrees_of_freedom == 2
    orbit.set_position([0.3, 0.4, 0.25])
    np.testing.assert_allclose(orbit.representative.fractional, [0.3, 0.4, 0.0], atol=1e-12)


def test_general_position_update_propagates_to_images():
    symmetry  = Symmetry.from_generators(['x,y,-z'])
    structure = Structure.from_sites(Lattice([4.0, 5.0, 6.0]), symmetry, [Atom('O', (0.1, 0.2, 0.3))])
    orbit = symmetry.orbits[0]
    assert len(structure) == 2
    orbit.set_position([0.15, 0.2, 0.3])
    positions = sorted(map(tuple, np.round(orbit.positions(), 10)))
    np.testing.assert_allclose(positions, [(0.15, 0.2, 0.3), (0.15, 0.2, 0.7)])


def test_refine_lattice_restores_cubic_metric(simple_cubic):
    _, symmetry = simple_cubic
    refined = symmetry.refine_lattice(Lattice([3.0, 3.1, 2.9]))
    a = np.sqrt((9.0 + 9.61 + 8.41) / 3.0)
    np.testing.assert_allclose(refined.lengths, [a, a, a])
    np.testing.assert_allclose(refined.angles, [90.0, 90.0, 90.0])
