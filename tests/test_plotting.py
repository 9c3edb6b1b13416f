import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pytest

from patterns import CalculatedPattern, ExperimentalPattern
from plotting import plot_all_samples, plot_peaks, plot_rietveld


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close('all')


@pytest.fixture
def fcc_pattern(fcc_copper):
    structure, symmetry = fcc_copper
    pattern = CalculatedPattern()
    pattern.define_structure(structure, symmetry)
    pattern.profile.W = 0.02
    pattern.calculate_peak_intensities()
    return pattern


@pytest.mark.filterwarnings('ignore::UserWarning')
def test_rietveld_plot_is_saved(fcc_pattern, tmp_path):
    angles    = fcc_pattern.measurement_angles()
    reference = ExperimentalPattern.from_profile(angles, fcc_pattern.intensity_at(angles) + 10.0)
    out = tmp_path / 'fit.png'
    fig = plot_rietveld(fcc_pattern, reference, title='Cu', save_path=str(out))
    assert len(fig.axes) == 3
    assert out.exists()


@pytest.mark.filterwarnings('ignore::UserWarning')
def test_peak_plot_keeps_the_scale(fcc_pattern):
    peaks     = [p for p in fcc_pattern.reflections if p.intensity > 0]
    reference = ExperimentalPattern.from_peaks([p.two_theta for p in peaks],
                                               [3.0 * p.intensity for p in peaks])
    fcc_pattern.match_peaks_to(reference)
    fcc_pattern.optimal_scale = 0.5
    plot_peaks(fcc_pattern, reference)
    assert fcc_pattern.optimal_scale == 0.5


@pytest.mark.filterwarnings('ignore::UserWarning')
def test_batch_summary_plot(tmp_path):
    results = [{'name': 'a', 'r_factor': 0.1, 'a': 3.61},
               {'name': 'b', 'r_factor': 0.2, 'a': 3.62}]
    fig = plot_all_samples(results, save_dir=str(tmp_path))
    assert (tmp_path / 'summary.png').exists()
    np.testing.assert_allclose(fig.axes[1].lines[0].get_ydata(), [3.61, 3.62])
