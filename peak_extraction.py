"""
Peak extraction from a raw, uniformly sampled powder pattern.

Pipeline
--------
smooth_intensity   : weighted moving average with linearly decaying weights
remove_background  : intensity-weighted moving average over a 4° box, subtracted
locate_peaks       : derivative-based segmentation into single-peak regions
group_segments     : segments closer than 0.1° are fitted together
fit_group          : Gaussian, then pseudo-Voigt least-squares fit (curve_fit)
extract_peaks      : the whole pipeline, returning an ExtractionResult

Failures (negative integrated intensity, peak maximum outside the measured
range, non-converging fit) are reported through ExtractionResult.failure.
"""

import logging

import numpy as np
from scipy.integrate import quad
from scipy.ndimage import convolve1d
from scipy.optimize import curve_fit

from peak_profile import pseudo_voigt
from reflections import DiffractionPeak

logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────

PEAK_TOLERANCE      = 0.01    # fraction of max: points below are never on a peak
MIN_RELATIVE_HEIGHT = 0.02    # fraction of max: lower segments are merged away
MIN_PEAK_WIDTH      = 0.05    # degrees
GROUP_GAP           = 0.1     # degrees
BACKGROUND_BOX      = 4.0     # degrees
_FOUR_LN2           = 4.0 * np.log(2.0)


class ExtractionResult:
    """Extracted peaks, or the reason extraction failed."""

    def __init__(self, peaks=(), failure=None):
        self.peaks   = list(peaks)
        self.failure = failure

    @property
    def ok(self):
        return self.failure is None

    def __repr__(self):
        if self.ok:
            return f'ExtractionResult({len(self.peaks)} peaks)'
        return f'ExtractionResult(failed: {self.failure})'


# ─── Signal conditioning ─────────────────────────────────────────────────────

def smooth_intensity(intensity, num_per_side=2, power=0.25):
    """
    Weighted moving average.  The centre weight is 1 and the weight falls
    linearly to *power* at *num_per_side* points away.  The first and last
    num_per_side points are left untouched.
    """
    y = np.asarray(intensity, dtype=float)
    offsets = np.arange(-num_per_side, num_per_side + 1)
    weights = 1.0 + (power - 1.0) * np.abs(offsets) / num_per_side
    weights /= weights.sum()

    out = y.copy()
    if len(y) > 2 * num_per_side:
        out[num_per_side:-num_per_side] = convolve1d(y, weights, mode='nearest')[num_per_side:-num_per_side]
    return out


def remove_background(two_theta, intensity, box_size=BACKGROUND_BOX):
    """
    Subtract a background estimated as a moving average weighted by (1/I)⁴.

    Low points dominate the average, so peaks barely lift the background.
    Non-positive points get the weight 10⁴.

    Returns
    -------
    signal, background : 1-D arrays
    """
    tth = np.asarray(two_theta, dtype=float)
    y   = np.asarray(intensity, dtype=float)
    n   = len(y)
    per_side = int(box_size / (tth[1] - tth[0])) // 2

    inv = np.full(n, 10.0)
    np.divide(1.0, y, out=inv, where=y > 0)
    weights = inv ** 4

    box = np.ones(2 * per_side + 1)
    background = convolve1d(weights * y, box, mode='constant') / convolve1d(weights, box, mode='constant')

    # the window shrinks symmetrically towards the ends
    for i in list(range(min(per_side, n))) + list(range(max(n - per_side, per_side), n)):
        half = min(i, n - 1 - i)
        window = slice(i - half, i + half + 1)
        background[i] = np.dot(weights[window], y[window]) / weights[window].sum()

    return y - background, background


def _first_derivative(two_theta, y):
    h = two_theta[1] - two_theta[0]
    d = np.zeros_like(y)
    d[1:-1] = (y[2:] - y[:-2]) / (2.0 * h)
    d[0], d[-1] = d[1], d[-2]
    return d


def _second_derivative(two_theta, y):
    h2 = (two_theta[1] - two_theta[0]) ** 2
    d = np.zeros_like(y)
    d[1:-1] = (y[2:] - 2.0 * y[1:-1] + y[:-2]) / h2
    d[0], d[-1] = d[1], d[-2]
    return d


# ─── Segmentation ────────────────────────────────────────────────────────────

def _peak_centres(signal, d1, d2, tolerance):
    n, pos, centres = len(signal), 0, []
    while pos < n:
        while pos < n and (signal[pos] < tolerance or d2[pos] < 0):
            pos += 1
        while pos < n and d2[pos] > 0:
            pos += 1
        while pos < n and d1[pos] > 0:
            pos += 1
        if pos >= n:
            break
        centre = pos
        while pos < n and d2[pos] < 0:
            pos += 1
        if pos >= n:
            break
        centres.append(centre)
        pos = max(pos, centre + 1)
    return centres


def locate_peaks(two_theta, signal):
    """
    Split a background-free signal into single-peak segments.

    A peak starts where the signal is above 1% of the maximum with positive
    curvature, its centre is where the slope turns negative, and it ends where
    the curvature turns positive again.  Each segment extends to the minima
    between neighbouring peaks or to where the signal drops to zero.
    Segments lower than 2% of the maximum or narrower than 0.05° are merged
    into a connected neighbour or dropped.

    Returns
    -------
    list of (angles, intensities) tuples of 1-D arrays
    """
    tth = np.asarray(two_theta, dtype=float)
    y   = np.asarray(signal, dtype=float)
    n   = len(y)
    max_height = y.max()

    d1 = smooth_intensity(_first_derivative(tth, y), 3, 1.0)
    d2 = smooth_intensity(_second_derivative(tth, y), 3, 1.0)
    centres = _peak_centres(y, d1, d2, PEAK_TOLERANCE * max_height)
    if not centres:
        return []

    segments = []
    left_min = int(np.argmin(y[:centres[0]])) if centres[0] > 0 else 0
    for i, centre in enumerate(centres):
        right_limit = centres[i + 1] if i + 1 < len(centres) else n
        right_min   = centre + int(np.argmin(y[centre:right_limit]))

        lo = centre
        while lo >= left_min and y[lo] > 0:
            lo -= 1
        hi = centre + 1
        while hi <= right_min and hi < n and y[hi] > 0:
            hi += 1
        if hi - lo - 1 > 0:
            segments.append([tth[lo + 1:hi], y[lo + 1:hi]])
        left_min = right_min

    i = 0
    while i < len(segments):
        angles, inten = segments[i]
        remove = inten.max() < MIN_RELATIVE_HEIGHT * max_height or angles[-1] - angles[0] < MIN_PEAK_WIDTH
        if not remove:
            i += 1
            continue
        if i + 1 < len(segments) and angles[-1] == segments[i + 1][0][0]:
            segments[i + 1] = [np.concatenate([angles, segments[i + 1][0]]),
                               np.concatenate([inten, segments[i + 1][1]])]
        elif i > 0 and angles[0] == segments[i - 1][0][-1]:
            segments[i - 1] = [np.concatenate([segments[i - 1][0], angles]),
                               np.concatenate([segments[i - 1][1], inten])]
        del segments[i]

    return [tuple(seg) for seg in segments]


def group_segments(segments, gap=GROUP_GAP):
    """Indices of segments, grouped when a segment starts within *gap* of the previous end."""
    if not segments:
        return []
    groups = [[0]]
    for i in range(1, len(segments)):
        if segments[i][0][0] - segments[groups[-1][-1]][0][-1] < gap:
            groups[-1].append(i)
        else:
            groups.append([i])
    return groups


# ─── Peak fitting ────────────────────────────────────────────────────────────

def _gaussian_sum(x, *params):
    out = np.zeros_like(x, dtype=float)
    for centre, fwhm, height in zip(params[0::3], params[1::3], params[2::3]):
        out += height * np.exp(-_FOUR_LN2 * ((x - centre) / fwhm) ** 2)
    return out


def _pseudo_voigt_sum(x, *params):
    out = np.zeros_like(x, dtype=float)
    for centre, fwhm, eta, area in zip(params[0::4], params[1::4], params[2::4], params[3::4]):
        out += area * pseudo_voigt(x - centre, fwhm, eta)
    return out


def _initial_gaussian(angles, inten):
    top = int(np.argmax(inten))
    p0  = [angles[top], 0.25, inten[top]]
    if len(angles) < 3:
        return p0
    params, _ = curve_fit(_gaussian_sum, angles, inten, p0=p0, maxfev=5000)
    return list(params)


def fit_group(segments, group):
    """
    Fit a composite pseudo-Voigt to the segments in *group*.

    Each segment is first fitted with a Gaussian, the group with a sum of
    Gaussians, and the result seeds a sum of pseudo-Voigts.

    Returns
    -------
    list of (centre, fwhm, eta, area), one per segment.  Raises RuntimeError
    if a fit does not converge.
    """
    angles = np.concatenate([segments[i][0] for i in group])
    inten  = np.concatenate([segments[i][1] for i in group])

    gauss = []
    for i in group:
        gauss.extend(_initial_gaussian(*segments[i]))
    if len(group) > 1 and len(angles) >= len(gauss):
        gauss, _ = curve_fit(_gaussian_sum, angles, inten, p0=gauss, maxfev=5000)

    p0, lower, upper = [], [], []
    for centre, fwhm, height in zip(gauss[0::3], gauss[1::3], gauss[2::3]):
        fwhm = abs(fwhm)
        p0    += [centre, fwhm, 1.0, height * fwhm * np.sqrt(np.pi / _FOUR_LN2)]
        lower += [-np.inf, 1e-4, 0.0, -np.inf]
        upper += [np.inf, np.inf, 1.0, np.inf]
    p0 = np.maximum(p0, lower)

    if len(angles) >= len(p0):
        p0, _ = curve_fit(_pseudo_voigt_sum, angles, inten, p0=p0,
                          bounds=(lower, upper), max_nfev=5000)
    return [tuple(p0[k:k + 4]) for k in range(0, len(p0), 4)]


def extract_peaks(two_theta, intensity, min_two_theta=None, max_two_theta=None):
    """
    Locate and integrate the peaks of a raw pattern.

    Parameters
    ----------
    two_theta     : ascending, uniformly spaced 2θ [degrees]
    intensity     : measured counts
    min_two_theta : lower bound a peak maximum may take (default: first angle)
    max_two_theta : upper bound a peak maximum may take (default: last angle)

    Returns
    -------
    ExtractionResult
    """
    tth = np.asarray(two_theta, dtype=float)
    y   = np.asarray(intensity, dtype=float)
    if len(tth) < 3:
        return ExtractionResult(failure='Too few points to extract peaks')
    lo = tth[0] if min_two_theta is None else min_two_theta
    hi = tth[-1] if max_two_theta is None else max_two_theta

    signal, _ = remove_background(tth, smooth_intensity(y))
    segments  = locate_peaks(tth, signal)
    logger.debug('Located %d peak segments', len(segments))

    peaks = []
    for group in group_segments(segments):
        try:
            fitted = fit_group(segments, group)
        except RuntimeError as err:
            return ExtractionResult(failure=f'Peak fit did not converge near {segments[group[0]][0][0]:.3f}: {err}')

        group_min = segments[group[0]][0][0]
        group_max = segments[group[-1]][0][-1]
        for centre, fwhm, eta, area in fitted:
            area_value, _ = quad(lambda x: area * pseudo_voigt(x - centre, fwhm, eta),
                                 group_min, group_max, epsabs=1e-8)
            if area_value < 0.0:
                return ExtractionResult(failure=f'Negative intensity found near {centre:.3f}')
            if centre < lo or centre > hi:
                return ExtractionResult(failure=f'Peak maximum outside of measured range: {centre:.3f}')
            peaks.append(DiffractionPeak(centre, area_value))

    return ExtractionResult(sorted(peaks))
