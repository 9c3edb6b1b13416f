"""Shared structures for the test-suite."""

import numpy as np
import pytest

from crystal_structures import Lattice, Structure, Symmetry

# generators of m-3m
CUBIC_GENERATORS = ['-x,-y,z', '-x,y,-z', 'z,x,y', 'y,x,-z', '-x,-y,-z']
WAVELENGTH       = 1.5418


def make_cubic(a, centering, element='Cu'):
    symmetry  = Symmetry.from_generators(CUBIC_GENERATORS, centering=centering)
    structure = Structure.from_sites(Lattice([a, a, a]), symmetry, [(element, (0.0, 0.0, 0.0))])
    return structure, symmetry


@pytest.fixture
def simple_cubic():
    """Primitive cubic Cu, a = 3 Å, one atom per cell."""
    return make_cubic(3.0, 'P')


@pytest.fixture
def fcc_copper():
    """Face-centred cubic Cu, a = 3.615 Å, four atoms per cell."""
    return make_cubic(3.615, 'F')


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
