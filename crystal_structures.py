"""
Crystal structure and symmetry model used by the pattern calculation.

Key components
--------------
Lattice            : unit cell as a row-vector basis, metric tensor, reduced-cell transform
Atom               : element, fractional position and occupancy
SymmetryOperation  : rotation together with every translation that accompanies it
SpecialPosition    : projector that keeps a refined atom on its site
Orbit              : set of symmetry-equivalent atoms sharing one refinable position
Symmetry           : space group, orbit assignment, symmetrised lattice refinement
Structure          : lattice + atoms, expansion of an asymmetric unit

Conventions
-----------
Fractional coordinates are column vectors:  x' = R·x + t.
Lattice vectors are the rows of `Lattice.vectors`, so Cartesian = xᵀ·vectors.
"""

import logging
import re
from fractions import Fraction

import numpy as np

from scattering_factors import ELEMENT_SYMBOLS, atomic_number

logger = logging.getLogger(__name__)

POSITION_TOLERANCE = 1e-3       # fractional units
_TRANSLATION_GRID  = 24         # translations are multiples of 1/24 in every space group

CENTERING_TRANSLATIONS = {
    'P': (),
    'A': ((0.0, 0.5, 0.5),),
    'B': ((0.5, 0.0, 0.5),),
    'C': ((0.5, 0.5, 0.0),),
    'I': ((0.5, 0.5, 0.5),),
    'F': ((0.0, 0.5, 0.5), (0.5, 0.0, 0.5), (0.5, 0.5, 0.0)),
    'R': ((2/3, 1/3, 1/3), (1/3, 2/3, 2/3)),
}


def wrap_fractional(position):
    """Move a fractional position into [0, 1)."""
    wrapped = np.mod(np.asarray(position, dtype=float), 1.0)
    wrapped[np.isclose(wrapped, 1.0, atol=1e-10)] = 0.0
    return wrapped


def periodic_distance(x, y):
    """Largest per-axis fractional distance between x and y modulo lattice translations."""
    d = np.asarray(x, dtype=float) - np.asarray(y, dtype=float)
    return float(np.max(np.abs(d - np.round(d))))


# ─── Lattice ─────────────────────────────────────────────────────────────────

class Lattice:
    """
    Unit cell defined by three lengths [Angstrom] and three angles [degrees].

    Vector a lies along x, b in the xy plane.  The reduced-cell transform is an
    integer unimodular matrix M with reduced rows  B_r = M·B.
    """

    def __init__(self, lengths, angles=(90.0, 90.0, 90.0)):
        self.lengths = np.asarray(lengths, dtype=float)
        self.angles  = np.asarray(angles,  dtype=float)
        self.vectors = self._vectors_from_parameters(self.lengths, self.angles)
        self.inverse = np.linalg.inv(self.vectors)
        self._unit_to_reduced = None

    @staticmethod
    def _vectors_from_parameters(lengths, angles):
        a, b, c = lengths
        alpha, beta, gamma = np.radians(angles)
        cx = c * np.cos(beta)
        cy = c * (np.cos(alpha) - np.cos(beta) * np.cos(gamma)) / np.sin(gamma)
        cz = np.sqrt(max(c * c - cx * cx - cy * cy, 0.0))
        return np.array([
            [a, 0.0, 0.0],
            [b * np.cos(gamma), b * np.sin(gamma), 0.0],
            [cx, cy, cz],
        ])

    @classmethod
    def from_vectors(cls, vectors):
        vectors = np.asarray(vectors, dtype=float)
        return cls.from_metric(vectors @ vectors.T)

    @classmethod
    def from_metric(cls, metric):
        metric  = np.asarray(metric, dtype=float)
        lengths = np.sqrt(np.diag(metric))
        a, b, c = lengths
        angles = np.degrees(np.arccos(np.clip([
            metric[1, 2] / (b * c),
            metric[0, 2] / (a * c),
            metric[0, 1] / (a * b),
        ], -1.0, 1.0)))
        return cls(lengths, angles)

    @property
    def parameters(self):
        """Lengths followed by angles, as a length-6 array."""
        return np.concatenate([self.lengths, self.angles])

    @property
    def metric(self):
        return self.vectors @ self.vectors.T

    @property
    def volume(self):
        return float(abs(np.linalg.det(self.vectors)))

    @property
    def unit_to_reduced(self):
        if self._unit_to_reduced is None:
            self._unit_to_reduced = _reduction_transform(self.vectors)
        return self._unit_to_reduced

    @property
    def reduced_vectors(self):
        return self.unit_to_reduced @ self.vectors

    def __repr__(self):
        a, b, c = self.lengths
        al, be, ga = self.angles
        return (f'Lattice(a={a:.5f}, b={b:.5f}, c={c:.5f}, '
                f'alpha={al:.3f}, beta={be:.3f}, gamma={ga:.3f})')


def _reduction_transform(vectors, max_iterations=100):
    """
    Greedy pairwise reduction of a basis.

    Repeatedly orders the vectors by length and subtracts integer multiples of
    shorter vectors from longer ones until no projection exceeds one half.
    Returns the integer matrix M such that M·vectors is the reduced basis.
    """
    vecs = np.array(vectors, dtype=float)
    M    = np.eye(3, dtype=int)
    for _ in range(max_iterations):
        order = np.argsort(np.round(np.linalg.norm(vecs, axis=1), 8), kind='stable')
        vecs, M = vecs[order], M[order]
        changed = False
        for i in range(1, 3):
            for j in range(i):
                mu = vecs[i] @ vecs[j] / (vecs[j] @ vecs[j])
                if abs(mu) > 0.5 + 1e-8:
                    k = int(np.round(mu))
                    vecs[i] -= k * vecs[j]
                    M[i]    -= k * M[j]
                    changed = True
        if not changed:
            break
    return M


# ─── Atoms ───────────────────────────────────────────────────────────────────

class Atom:
    """Atom of a given element at a fractional position."""

    def __init__(self, element, fractional, occupancy=1.0):
        self.atomic_number = atomic_number(element)
        self.element       = ELEMENT_SYMBOLS[self.atomic_number - 1]
        self.fractional    = np.asarray(fractional, dtype=float)
        self.occupancy     = float(occupancy)

    def copy(self):
        return Atom(self.element, self.fractional.copy(), self.occupancy)

    def __repr__(self):
        x, y, z = self.fractional
        return f'Atom({self.element}, [{x:.5f}, {y:.5f}, {z:.5f}], occ={self.occupancy:g})'


# ─── Symmetry operations ─────────────────────────────────────────────────────

_TERM = re.compile(r'([+-]?)([^+-]+)')


def _parse_component(text):
    row, shift = np.zeros(3), Fraction(0)
    for sign, term in _TERM.findall(text.replace(' ', '').lower()):
        factor = -1 if sign == '-' else 1
        if term[-1] in 'xyz':
            coeff = term[:-1].rstrip('*')
            row['xyz'.index(term[-1])] += factor * (float(Fraction(coeff)) if coeff else 1.0)
        else:
            shift += factor * Fraction(term)
    return row, float(shift)


def rotation_order(rotation):
    """Smallest n with R^n = 1 (at most 6 for crystallographic rotations)."""
    power = np.eye(3)
    for n in range(1, 7):
        power = rotation @ power
        if np.allclose(power, np.eye(3)):
            return n
    raise ValueError(f'Not a crystallographic rotation:\n{rotation}')


def intrinsic_translation(rotation, translation):
    """
    Screw/glide part of an operation:  (1/n)·Σ_k R^k·t  over the rotation order n.

    A zero result means the operation has a fixed point.
    """
    rotation    = np.asarray(rotation, dtype=float)
    translation = np.asarray(translation, dtype=float)
    n = rotation_order(rotation)
    total, power = np.zeros(3), np.eye(3)
    for _ in range(n):
        total += power @ translation
        power  = rotation @ power
    return total / n


class SymmetryOperation:
    """
    Rotation R acting on fractional coordinates, with every translation that
    accompanies it in the group (the first one plus centring shifts).
    """

    def __init__(self, rotation, translations=((0.0, 0.0, 0.0),)):
        self.rotation     = np.asarray(rotation, dtype=float)
        self.translations = [wrap_fractional(t) for t in translations]

    @classmethod
    def from_xyz(cls, text):
        """Parse a Jones-faithful string such as '-y, x+1/2, z'."""
        parts = text.split(',')
        if len(parts) != 3:
            raise ValueError(f'Cannot parse symmetry operation {text!r}')
        rows, shift = zip(*(_parse_component(p) for p in parts))
        return cls(np.array(rows), [shift])

    @property
    def translation(self):
        return self.translations[0]

    @property
    def order(self):
        return rotation_order(self.rotation)

    def intrinsic_translations(self):
        return [intrinsic_translation(self.rotation, t) for t in self.translations]

    def apply(self, position, index=0):
        return self.rotation @ np.asarray(position, dtype=float) + self.translations[index]

    def is_identity(self):
        return np.allclose(self.rotation, np.eye(3))

    def __repr__(self):
        names = 'xyz'
        out = []
        for row, shift in zip(self.rotation, self.translation):
            term = ''
            for coeff, name in zip(row, names):
                if coeff:
                    term += ('-' if coeff < 0 else '+') + name
            if shift:
                term += '+' + str(Fraction(shift).limit_denominator(_TRANSLATION_GRID))
            out.append(term.lstrip('+'))
        return f'SymmetryOperation({",".join(out)}; {len(self.translations)} translation(s))'


def _operation_key(rotation, translation):
    grid = np.mod(np.round(np.asarray(translation) * _TRANSLATION_GRID), _TRANSLATION_GRID)
    return (tuple(np.round(rotation).astype(int).ravel()), tuple(grid.astype(int)))


def generate_operations(generators, centering=()):
    """
    Close a set of generators into a space group (modulo lattice translations).

    Parameters
    ----------
    generators : iterable of SymmetryOperation or 'x,y,z'-style strings
    centering  : centring letter ('P', 'I', 'F', ...) or explicit translations

    Returns
    -------
    list of SymmetryOperation, one per distinct rotation, identity first.
    """
    if isinstance(centering, str):
        centering = CENTERING_TRANSLATIONS[centering.upper()]

    seeds = []
    for gen in generators:
        if isinstance(gen, str):
            gen = SymmetryOperation.from_xyz(gen)
        seeds.extend((gen.rotation, t) for t in gen.translations)
    seeds.extend((np.eye(3), np.asarray(c, dtype=float)) for c in centering)

    group = {_operation_key(np.eye(3), np.zeros(3)): (np.eye(3), np.zeros(3))}
    frontier = list(group.values())
    while frontier:
        new = []
        for r1, t1 in frontier:
            for r2, t2 in seeds:
                rot   = r1 @ r2
                trans = np.mod(r1 @ t2 + t1, 1.0)
                key   = _operation_key(rot, trans)
                if key not in group:
                    group[key] = (rot, trans)
                    new.append((rot, trans))
        if len(group) > 192:
            raise ValueError('Generators do not close into a crystallographic group')
        frontier = new

    by_rotation = {}
    for (rot_key, _), (rot, trans) in group.items():
        by_rotation.setdefault(rot_key, (rot, []))[1].append(trans)

    return [SymmetryOperation(np.round(rot), translations)
            for rot, translations in by_rotation.values()]


# ─── Special positions and orbits ────────────────────────────────────────────

class SpecialPosition:
    """Projector  x' = P·(x − t) + t  onto the subspace allowed by a site symmetry."""

    def __init__(self, rotation, translation):
        self.rotation    = np.asarray(rotation, dtype=float)
        self.translation = np.asarray(translation, dtype=float)

    def apply(self, position):
        position = np.asarray(position, dtype=float)
        return self.rotation @ (position - self.translation) + self.translation

    @property
    def degrees_of_freedom(self):
        return int(np.round(np.trace(self.rotation)))


class Orbit:
    """
    Symmetry-equivalent atoms.  Atom j is generator_j applied to the
    representative (atom 0, whose generator is the identity).
    """

    def __init__(self, atoms, generators, special_position):
        self.atoms            = list(atoms)
        self.generators       = list(generators)
        self.special_position = special_position

    @property
    def representative(self):
        return self.atoms[0]

    @property
    def element(self):
        return self.atoms[0].element

    @property
    def atomic_number(self):
        return self.atoms[0].atomic_number

    def positions(self):
        return np.array([atom.fractional for atom in self.atoms])

    def occupancies(self):
        return np.array([atom.occupancy for atom in self.atoms])

    def set_position(self, position):
        """Project *position* onto the site and propagate it to every atom."""
        rep = self.special_position.apply(position)
        for atom, (rotation, translation) in zip(self.atoms, self.generators):
            atom.fractional = wrap_fractional(rotation @ rep + translation)

    def __len__(self):
        return len(self.atoms)

    def __repr__(self):
        return f'Orbit({self.element}, {len(self.atoms)} atoms, rep={self.representative.fractional})'


# ─── Space-group symmetry ────────────────────────────────────────────────────

class Symmetry:
    """Space group of a structure together with the orbits it induces."""

    def __init__(self, operations, name=''):
        self.operations = list(operations)
        self.name       = name
        self.orbits     = []

    @classmethod
    def from_generators(cls, generators, centering='P', name=''):
        return cls(generate_operations(generators, centering), name=name)

    @property
    def point_group(self):
        return [op.rotation for op in self.operations]

    def __len__(self):
        return len(self.operations)

    def images(self, position):
        """All images of *position* under the group, wrapped into the cell."""
        position = np.asarray(position, dtype=float)
        for op in self.operations:
            for i in range(len(op.translations)):
                yield op.rotation, op.translations[i], wrap_fractional(op.apply(position, i))

    def build_orbits(self, structure, tolerance=POSITION_TOLERANCE):
        """Group the atoms of *structure* into orbits and store them."""
        atoms    = structure.atoms
        assigned = [False] * len(atoms)
        orbits   = []

        for i, atom in enumerate(atoms):
            if assigned[i]:
                continue
            assigned[i] = True
            members    = [atom]
            generators = [(np.eye(3), np.zeros(3))]
            stabilizer = []

            for rotation, translation, image in self.images(atom.fractional):
                if periodic_distance(image, atom.fractional) < tolerance:
                    stabilizer.append(rotation)
                for j in range(i + 1, len(atoms)):
                    if (not assigned[j] and atoms[j].atomic_number == atom.atomic_number
                            and periodic_distance(image, atoms[j].fractional) < tolerance):
                        assigned[j] = True
                        members.append(atoms[j])
                        generators.append((rotation, translation))
                        break

            special = SpecialPosition(np.mean(stabilizer, axis=0), atom.fractional.copy())
            orbits.append(Orbit(members, generators, special))

        self.orbits = orbits
        logger.debug('Assigned %d atoms to %d orbits', len(atoms), len(orbits))
        return orbits

    def refine_lattice(self, lattice):
        """Symmetrise a lattice by averaging its metric tensor over the point group."""
        metric = lattice.metric
        averaged = np.mean([rot.T @ metric @ rot for rot in self.point_group], axis=0)
        return Lattice.from_metric(averaged)


# ─── Structure ───────────────────────────────────────────────────────────────

class Structure:
    """Lattice plus the full list of atoms in the unit cell."""

    def __init__(self, lattice, atoms=(), name=''):
        self.lattice = lattice
        self.atoms   = list(atoms)
        self.name    = name

    @classmethod
    def from_sites(cls, lattice, symmetry, sites, name='', tolerance=POSITION_TOLERANCE):
        """
        Expand an asymmetric unit into the full cell and assign orbits.

        Parameters
        ----------
        lattice  : Lattice
        symmetry : Symmetry, its orbits are rebuilt for the new structure
        sites    : iterable of Atom or (element, position[, occupancy]) tuples
        """
        atoms = []
        for site in sites:
            if not isinstance(site, Atom):
                site = Atom(*site)
            placed = []
            for _, _, image in symmetry.images(site.fractional):
                if all(periodic_distance(image, p) >= tolerance for p in placed):
                    placed.append(image)
                    atoms.append(Atom(site.element, image, site.occupancy))
        structure = cls(lattice, atoms, name=name)
        symmetry.build_orbits(structure, tolerance)
        return structure

    def __len__(self):
        return len(self.atoms)

    def __repr__(self):
        return f'Structure({self.name or "unnamed"}, {len(self.atoms)} atoms, {self.lattice!r})'
