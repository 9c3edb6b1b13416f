"""
Command-line pattern calculation and refinement.

Usage
-----
    # Calculated pattern of a structure (no reference)
    python run_refinement.py structure.json

    # Refine against a single measurement
    python run_refinement.py structure.json path/to/sample.xy

    # Full-profile refinement of every .xy file in a directory (batch mode)
    python run_refinement.py structure.json path/to/XRD/ --rietveld

Data format
-----------
    Two-column ASCII:  2theta [deg]   intensity
    Lines beginning with #, ! or ' are ignored.  A line 'Wavelength <value>'
    sets the wavelength [Angstrom]; the command-line value wins otherwise.
    Uniformly spaced data with 500 points or more is treated as a raw trace,
    anything else as a list of integrated peaks.

Structure format (JSON)
-----------------------
    {
      "name":     "Cu",
      "lattice":  {"lengths": [3.615, 3.615, 3.615], "angles": [90, 90, 90]},
      "symmetry": {"generators": ["-x,-y,z", "-x,y,-z", "z,x,y", "y,x,-z", "-x,-y,-z"],
                   "centering": "F"},
      "sites":    [{"element": "Cu", "position": [0, 0, 0], "occupancy": 1.0}]
    }
"""

import argparse
import csv
import json
import logging
import re
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')   # non-interactive backend – works without a display
import numpy as np

from crystal_structures import Atom, Lattice, Structure, Symmetry
from diffraction_errors import DiffractionError
from intensity_model import Method
from logging_config import setup_logging
from patterns import DEFAULT_WAVELENGTH, N_BACKGROUND_TERMS, CalculatedPattern, ExperimentalPattern
from plotting import plot_all_samples, plot_peaks, plot_rietveld
from refinement import calculate_pattern, refine_structure

logger = logging.getLogger(__name__)

_HEADER = re.compile(r'^\s*(wavelength|resolution)\s+([-+0-9.eE]+)', re.IGNORECASE)


# ─── Input ───────────────────────────────────────────────────────────────────

def load_xy(filepath):
    """
    Load a two-column diffraction file.

    Returns
    -------
    two_theta, intensity : 1-D numpy arrays
    header               : dict with 'wavelength' / 'resolution' if present
    """
    header = {}
    with open(filepath, encoding='utf-8') as f:
        for line in f:
            match = _HEADER.match(line)
            if match:
                header[match.group(1).lower()] = float(match.group(2))

    data = np.loadtxt(filepath, comments=['#', '!', "'", 'Wavelength', 'wavelength',
                                          'Resolution', 'resolution'], ndmin=2)
    return data[:, 0], data[:, 1], header


def load_structure(filepath):
    """
    Build a Structure and its Symmetry from a JSON description.

    The symmetry block holds either "generators" (closed into a group) or the
    full "operations" list, both as 'x,y,z'-style strings, plus an optional
    centring letter.  Sites form the asymmetric unit.
    """
    with open(filepath, encoding='utf-8') as f:
        spec = json.load(f)

    lattice  = Lattice(spec['lattice']['lengths'], spec['lattice'].get('angles', (90.0, 90.0, 90.0)))
    sym_spec = spec.get('symmetry', {})
    name     = spec.get('name', Path(filepath).stem)
    symmetry = Symmetry.from_generators(
        sym_spec.get('generators', sym_spec.get('operations', [])),
        centering=sym_spec.get('centering', 'P'),
        name=sym_spec.get('name', ''))

    sites = [Atom(site['element'], site['position'], site.get('occupancy', 1.0))
             for site in spec['sites']]
    structure = Structure.from_sites(lattice, symmetry, sites, name=name)
    logger.info('Loaded %s: %d atoms in %d orbits, %d symmetry operations',
                name, len(structure), len(symmetry.orbits), len(symmetry))
    return structure, symmetry


def load_reference(filepath, wavelength=None, method=Method.XRAY):
    """Read a measurement into an ExperimentalPattern (raw trace or integrated peaks)."""
    two_theta, intensity, header = load_xy(filepath)
    if wavelength is None:
        wavelength = header.get('wavelength', DEFAULT_WAVELENGTH)
    kwargs = dict(wavelength=wavelength, method=method)
    if 'resolution' in header:
        kwargs['resolution'] = header['resolution']
    logger.info('Data: %.2f–%.2f° (%d points)', two_theta.min(), two_theta.max(), len(two_theta))
    return ExperimentalPattern.from_measurement(two_theta, intensity, **kwargs)


# ─── Output ──────────────────────────────────────────────────────────────────

def write_pattern(pattern, filepath, continuous=False):
    """
    Write a calculated pattern as two-column text with a wavelength and
    resolution header.

    Peaks are written with their scaled intensity, skipping those below 1.
    With *continuous*, the scaled profile is written at measurement_angles().
    """
    lines = [f'Wavelength {pattern.wavelength:.6f}',
             f'Resolution {pattern.resolution:.6f}']
    if continuous:
        angles = pattern.measurement_angles()
        for angle, value in zip(angles, pattern.measured_intensities()):
            lines.append(f'{angle:.4f} {value:.6f}')
    else:
        for peak in pattern.peaks():
            value = peak.intensity * pattern.optimal_scale
            if value < 1.0:
                continue
            lines.append(f'{peak.two_theta:.4f} {value:.6f}')

    Path(filepath).write_text('\n'.join(lines) + '\n', encoding='utf-8')
    logger.info('Pattern written to %s', Path(filepath).name)


def summarize(name, result):
    """Flat dict of the refined quantities of a RefinementResult."""
    pattern = result.pattern
    profile = pattern.profile.as_dict()
    a, b, c, alpha, beta, gamma = pattern.structure.lattice.parameters
    summary = {
        'name':             name,
        'r_factor':         result.r_factor,
        'terminated_early': result.terminated_early,
        'scale':            float(pattern.optimal_scale),
        'a': float(a), 'b': float(b), 'c': float(c),
        'alpha': float(alpha), 'beta': float(beta), 'gamma': float(gamma),
    }
    summary.update({key: float(value) for key, value in profile.items()})
    return summary


def _orbit_rows(pattern):
    return [{'element':  orbit.element,
             'count':    len(orbit),
             'position': [float(v) for v in orbit.representative.fractional],
             'b_factor': float(b_factor)}
            for orbit, b_factor in zip(pattern.symmetry.orbits, pattern.b_factors)]


# ─── Single-file refinement ──────────────────────────────────────────────────

def refine_file(structure_path, filepath, rietveld=False, wavelength=None, method=Method.XRAY,
                max_lattice_change=0.05, n_background=N_BACKGROUND_TERMS,
                plot=True, save_results=True):
    """
    Refine the structure in *structure_path* against the data in *filepath*.

    Returns
    -------
    dict of key refined parameters
    """
    filepath = Path(filepath)
    stem     = filepath.stem
    logger.info('Sample: %s', stem)

    structure, symmetry = load_structure(structure_path)
    reference = load_reference(filepath, wavelength, method)
    if rietveld and not reference.has_profile:
        logger.warning('%s has no continuous profile; using peak-based refinement', stem)
        rietveld = False

    pattern = CalculatedPattern(max_lattice_change=max_lattice_change, n_background=n_background)
    result  = refine_structure(structure, symmetry, reference, rietveld=rietveld, pattern=pattern)

    summary = summarize(stem, result)
    if plot:
        if rietveld:
            plot_rietveld(pattern, reference, title=stem,
                          save_path=str(filepath.parent / f'{stem}_rietveld.png'))
        else:
            plot_peaks(pattern, reference, title=stem,
                       save_path=str(filepath.parent / f'{stem}_peaks.png'))

    if save_results:
        out = filepath.parent / f'{stem}_results.json'
        with open(out, 'w', encoding='utf-8') as f:
            json.dump(dict(summary, stages=result.stages, orbits=_orbit_rows(pattern)), f, indent=2)
        write_pattern(pattern, filepath.parent / f'{stem}_calculated.xy', continuous=rietveld)
        logger.info('Results saved to %s', out.name)

    return summary


# ─── Batch mode ──────────────────────────────────────────────────────────────

def batch_refine(structure_path, directory, plot_summary=True, **kwargs):
    """
    Refine against every .xy file in *directory*.

    Returns
    -------
    list of result dicts, one per file that refined without error
    """
    directory = Path(directory)
    files = sorted(directory.glob('*.xy'))
    if not files:
        logger.warning('No .xy files found in %s', directory)
        return []

    logger.info('Found %d .xy file(s) in %s', len(files), directory)

    all_results = []
    for fp in files:
        try:
            all_results.append(refine_file(structure_path, fp, plot=False, **kwargs))
        except (DiffractionError, ValueError, OSError) as e:
            logger.error('Error processing %s: %s', fp.name, e)

    # Summary table
    print('\n' + '=' * 70)
    print(f'{"Sample":<20} {"R":>8} {"a (Å)":>9} {"b (Å)":>9} {"c (Å)":>9} {"early":>7}')
    print('-' * 70)
    for r in all_results:
        print(f'{r["name"]:<20} {r["r_factor"]:8.4f} {r["a"]:9.5f} {r["b"]:9.5f}'
              f' {r["c"]:9.5f} {str(r["terminated_early"]):>7}')
    print('=' * 70)

    if all_results:
        csv_path = directory / 'all_results.csv'
        with open(csv_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=all_results[0].keys())
            writer.writeheader()
            writer.writerows(all_results)
        logger.info('Combined results saved to %s', csv_path)

    if plot_summary and all_results:
        plot_all_samples(all_results, save_dir=str(directory))

    return all_results


# ─── Entry point ─────────────────────────────────────────────────────────────

def build_parser():
    parser = argparse.ArgumentParser(
        description='Powder diffraction pattern calculation and refinement')
    parser.add_argument('structure',
        help='JSON structure description')
    parser.add_argument('path', nargs='?',
        help='Reference .xy file OR a directory containing .xy files')
    parser.add_argument('--wavelength', type=float, default=None,
        help=f'Wavelength [Angstrom] (default: from the data file, else {DEFAULT_WAVELENGTH})')
    parser.add_argument('--method', choices=[m.value for m in Method], default=Method.XRAY.value,
        help='Intensity model (default: xray)')
    parser.add_argument('--rietveld', action='store_true',
        help='Refine against the full profile instead of integrated peaks')
    parser.add_argument('--max-lattice-change', type=float, default=0.05,
        help='Maximum fractional lattice change; 0 disables lattice refinement (default: 0.05)')
    parser.add_argument('--background-terms', type=int, default=N_BACKGROUND_TERMS,
        help=f'Number of background coefficients (default: {N_BACKGROUND_TERMS})')
    parser.add_argument('--no-plot', action='store_true',
        help='Suppress plots')
    parser.add_argument('--log-file', default=None,
        help='Also write log messages to this file')
    parser.add_argument('--verbose', action='store_true',
        help='Log per-evaluation detail')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)
    method = Method(args.method)

    if args.path is None:
        structure, symmetry = load_structure(args.structure)
        pattern = CalculatedPattern(wavelength=args.wavelength or DEFAULT_WAVELENGTH, method=method)
        calculate_pattern(structure, symmetry, pattern=pattern)
        for row in pattern.reflection_table():
            h, k, l = row['hkl']
            print(f'{row["two_theta"]:9.4f} {row["intensity"]:10.3f}   ({h} {k} {l})'
                  f'  m={row["multiplicity"]}' + ('  absent' if row['systematic_absence'] else ''))
        out = Path(args.structure).with_suffix('.pattern')
        write_pattern(pattern, out)
        if not args.no_plot:
            plot_peaks(pattern, title=structure.name, save_path=str(out.with_suffix('.png')))
        return 0

    options = dict(rietveld=args.rietveld, wavelength=args.wavelength, method=method,
                   max_lattice_change=args.max_lattice_change,
                   n_background=args.background_terms)
    p = Path(args.path)
    if p.is_dir():
        batch_refine(args.structure, p, plot_summary=not args.no_plot, **options)
    elif p.is_file():
        refine_file(args.structure, p, plot=not args.no_plot, **options)
    else:
        logger.error('%s is not a valid file or directory', p)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
