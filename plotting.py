"""
Plots of calculated patterns against a reference.

Functions
---------
plot_rietveld     : full-profile 3-panel plot (observed/calculated, reflections, difference)
plot_peaks        : stick plot of integrated peaks, reference drawn downwards
plot_all_samples  : R factor and lattice length of every sample in a batch

Design principles
-----------------
- Wong (2011) colorblind-safe palette throughout.
- Minimum 10 pt font; consistent rcParams context.
- Reflection ticks come from the current (refined) lattice of the pattern.
"""

import logging
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt
import matplotlib.gridspec as gridspec
import matplotlib.ticker as mticker

from patterns import RMethod

logger = logging.getLogger(__name__)

# ─── Wong (2011) colorblind-safe palette ─────────────────────────────────────
_BLACK      = '#000000'
_ORANGE     = '#E69F00'
_SKY_BLUE   = '#56B4E9'
_BLUE       = '#0072B2'
_VERMILLION = '#D55E00'

_CALC_COLOR   = _ORANGE
_BG_COLOR     = _SKY_BLUE
_TICK_COLOR   = _BLUE
_ABSENT_COLOR = '#bbbbbb'
_DIFF_COLOR   = '#666666'

# ─── Shared rcParams ─────────────────────────────────────────────────────────
_RC = {
    'font.family':       'sans-serif',
    'font.size':         11,
    'axes.titlesize':    12,
    'axes.labelsize':    12,
    'legend.fontsize':   10,
    'xtick.labelsize':   10,
    'ytick.labelsize':   10,
    'axes.linewidth':    0.8,
    'xtick.major.width': 0.8,
    'ytick.major.width': 0.8,
}


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _k_formatter(x, _):
    """Format y-axis values as e.g. '12k' or '500'."""
    return f'{x/1000:.0f}k' if abs(x) >= 1000 else f'{x:.0f}'


def _obs_circles(ax, tth, y_obs, **kw):
    """Observed data as open black circles."""
    defaults = dict(
        marker='o', markersize=2.5,
        markerfacecolor='none', markeredgecolor=_BLACK,
        markeredgewidth=0.5, linestyle='none',
        zorder=3, label='Observed',
    )
    defaults.update(kw)
    return ax.plot(tth, y_obs, **defaults)[0]


def _r_factor_text(ax, lines):
    """Add an agreement-factor text box at the top-left of *ax*."""
    ax.text(
        0.01, 0.97, '\n'.join(lines),
        transform=ax.transAxes,
        ha='left', va='top', fontsize=10,
        fontfamily='monospace',
        bbox=dict(boxstyle='round,pad=0.4', facecolor='white',
                  edgecolor='#aaaaaa', alpha=0.92, linewidth=0.8),
    )


def _finish(fig, save_path, dpi, what):
    if save_path:
        fig.savefig(save_path, dpi=dpi, bbox_inches='tight')
        logger.info('%s saved to %s', what, Path(save_path).name)
    plt.show()


# ─── Full-profile plot ───────────────────────────────────────────────────────

def plot_rietveld(pattern, reference, title=None, save_path=None, dpi=150):
    """
    Three-panel plot of a CalculatedPattern against a measured profile:
      ○  Observed          open black circles
      ─  Calculated        orange line (scaled background + peaks)
      -- Background        sky-blue dashed
      |  reflections       blue, systematic absences grey
      ─  Difference        grey line below
    """
    with plt.rc_context(_RC):
        tth    = reference.measurement_angles()
        y_obs  = reference.measured_intensities()
        scale  = pattern.optimal_scale
        y_bg   = scale * pattern.background_signal(tth)
        y_calc = y_bg + scale * pattern.peak_signal(tth)
        diff   = y_obs - y_calc

        fig = plt.figure(figsize=(13, 8))
        gs  = gridspec.GridSpec(
            3, 1, height_ratios=[5, 0.45, 1.8],
            hspace=0.0, left=0.09, right=0.97, top=0.93, bottom=0.09,
        )
        ax_main  = fig.add_subplot(gs[0])
        ax_ticks = fig.add_subplot(gs[1], sharex=ax_main)
        ax_diff  = fig.add_subplot(gs[2], sharex=ax_main)

        # ── Main panel ──────────────────────────────────────────────────────
        _obs_circles(ax_main, tth, y_obs)
        ax_main.plot(tth, y_calc, '-', color=_CALC_COLOR, lw=1.5,
                     label='Calculated', zorder=4)
        ax_main.plot(tth, y_bg, '--', color=_BG_COLOR, lw=1.0, alpha=0.85,
                     label='Background', zorder=2)

        ax_main.set_ylabel('Intensity (arb. units)')
        ax_main.set_xlim(tth.min(), tth.max())
        ax_main.yaxis.set_major_formatter(mticker.FuncFormatter(_k_formatter))

        leg = ax_main.legend(
            loc='upper right',
            framealpha=0.92, edgecolor='#aaaaaa',
            handlelength=2.5, handletextpad=0.8,
            borderpad=0.7, labelspacing=0.5,
            markerscale=3.0, fontsize=11,
        )
        leg.get_frame().set_linewidth(0.8)

        _r_factor_text(ax_main, [
            f'$R_{{abs}}$ = {pattern.rietveld_r_factor(reference, RMethod.ABS):.4f}',
            f'$R_{{sq}}$  = {pattern.rietveld_r_factor(reference, RMethod.SQUARED):.4f}',
        ])

        if title:
            ax_main.set_title(title, fontsize=13, pad=6, fontweight='bold')

        # ── Reflection ticks ─────────────────────────────────────────────────
        present = [p.two_theta for p in pattern.reflections if not p.systematic_absence]
        absent  = [p.two_theta for p in pattern.reflections if p.systematic_absence]
        ax_ticks.vlines(present, 0.1, 0.9, colors=_TICK_COLOR, lw=0.9)
        if absent:
            ax_ticks.vlines(absent, 0.3, 0.7, colors=_ABSENT_COLOR, lw=0.6)
        ax_ticks.set_ylim(0, 1)
        ax_ticks.set_yticks([])
        ax_ticks.set_ylabel('hkl', fontsize=9, rotation=0, labelpad=20,
                            va='center', color=_TICK_COLOR, fontweight='bold')
        for sp in ['top', 'bottom', 'right']:
            ax_ticks.spines[sp].set_visible(False)

        # ── Difference panel ─────────────────────────────────────────────────
        ax_diff.plot(tth, diff, '-', color=_DIFF_COLOR, lw=0.8)
        ax_diff.axhline(0, color=_BLACK, lw=0.6, ls='--', alpha=0.4)
        ax_diff.set_ylabel('Difference')
        ax_diff.set_xlabel(r'2$\theta$ (degrees)')
        ax_diff.yaxis.set_major_formatter(mticker.FuncFormatter(_k_formatter))

        for ax in [ax_main, ax_ticks]:
            plt.setp(ax.get_xticklabels(), visible=False)
            ax.tick_params(bottom=False)

        _finish(fig, save_path, dpi, 'Rietveld plot')
    return fig


# ─── Integrated peaks ────────────────────────────────────────────────────────

def plot_peaks(pattern, reference=None, title=None, save_path=None, dpi=150):
    """
    Stick plot of the calculated peaks (scaled so the tallest is 1000).
    Reference peaks, if given, are drawn downwards on the same scale.
    """
    with plt.rc_context(_RC):
        fig, ax = plt.subplots(figsize=(11, 5), constrained_layout=True)

        calc = pattern.combined_peaks()
        tallest = max((p.intensity for p in calc), default=0.0)
        norm = 1000.0 / tallest if tallest > 0 else 1.0
        ax.vlines([p.two_theta for p in calc], 0, [p.intensity * norm for p in calc],
                  colors=_CALC_COLOR, lw=1.6, label='Calculated')

        if reference is not None:
            ref_peaks = reference.peaks()
            ref_max   = max((p.intensity for p in ref_peaks), default=0.0)
            ref_norm  = 1000.0 / ref_max if ref_max > 0 else 1.0
            ax.vlines([p.two_theta for p in ref_peaks], 0,
                      [-p.intensity * ref_norm for p in ref_peaks],
                      colors=_BLACK, lw=1.2, label='Reference')
            if pattern.is_matched:
                # current_r_factor overwrites the scale
                scale = pattern.optimal_scale
                _r_factor_text(ax, [f'$R$ = {pattern.current_r_factor(reference):.4f}'])
                pattern.optimal_scale = scale

        ax.axhline(0, color=_BLACK, lw=0.6)
        ax.set_xlim(pattern.min_two_theta, pattern.max_two_theta)
        ax.set_xlabel(r'2$\theta$ (degrees)')
        ax.set_ylabel('Relative intensity')
        ax.legend(loc='upper right', framealpha=0.92, edgecolor='#aaaaaa')
        if title:
            ax.set_title(title, fontweight='bold')

        _finish(fig, save_path, dpi, 'Peak plot')
    return fig


# ─── Batch summary ────────────────────────────────────────────────────────────

def plot_all_samples(results, save_dir=None):
    """R factor and refined lattice length a of every sample."""
    with plt.rc_context(_RC):
        names = [r['name']     for r in results]
        rs    = [r['r_factor'] for r in results]
        a_len = [r['a']        for r in results]
        x     = np.arange(len(names))

        fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(10, 6),
                                       sharex=True, constrained_layout=True)
        ax1.bar(x, rs, 0.6, color=_VERMILLION, alpha=0.85)
        ax1.set_ylabel('R factor')
        ax1.set_title('Goodness of fit', fontweight='bold')

        ax2.plot(x, a_len, 'o-', color=_BLACK, ms=6)
        ax2.set_ylabel('a (Å)')
        ax2.set_title('Refined lattice', fontweight='bold')
        ax2.set_xticks(x)
        ax2.set_xticklabels(names, rotation=30, ha='right')

        _finish(fig, str(Path(save_dir) / 'summary.png') if save_dir else None, 150,
                'Summary figure')
    return fig
