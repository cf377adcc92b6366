import pytest
import numpy as np
from tpc_calib.distortion.grid import (
    TpcDistortionCorrectionContainer, DistortionAccumulator, compute_residuals, fill_distortions,
    normalize_distortions, fill_guarding_bins,
)
from tpc_calib.matching.greedy_match import MatchResult

def test_grid_includes_guard_bins():
    dcc = TpcDistortionCorrectionContainer(phibins=24, rbins=12, phi_min=0.0, phi_max=2 * np.pi,
                                           r_min=20.0, r_max=78.0)
    h = dcc.h_dr[0]
    assert h.nbins_x == 26
    assert h.nbins_y == 14
    assert h.xaxis.xmin == pytest.approx(-2 * np.pi / 24)
    assert h.xaxis.xmax == pytest.approx(2 * np.pi + 2 * np.pi / 24)
    assert h.yaxis.xmin == pytest.approx(20.0 - 58.0 / 12)
    assert [hist.name for hist in dcc.all_histograms()] == [
        "hIntDistortionR_negz", "hIntDistortionP_negz", "hIntDistortionZ_negz", "hEntries_negz",
        "hIntDistortionR_posz", "hIntDistortionP_posz", "hIntDistortionZ_posz", "hEntries_posz",
    ]

def test_residuals_are_cluster_minus_truth():
    truth = np.array([[20.0, 0.0, 1.0], [0.0, -30.0, -1.0]])
    reco = np.array([[20.5, 0.0, 1.2], [0.0, -30.0, -1.5]])
    res = compute_residuals(truth, reco, np.array([[0, 0], [1, 1]]))
    assert res["side"].tolist() == [1, 0]
    assert res["dr"] == pytest.approx([0.5, 0.0])
    assert res["rdphi"] == pytest.approx([0.0, 0.0])
    assert res["dz"] == pytest.approx([0.2, -0.5])
    # negative azimuth shifted into [0, 2pi)
    assert res["phi"] == pytest.approx([0.0, 1.5 * np.pi])

def test_rdphi_uses_wrapped_dphi():
    truth = np.array([[-20.0, 0.001, 1.0]])
    reco = np.array([[-20.0, -0.001, 1.0]])
    res = compute_residuals(truth, reco, np.array([[0, 0]]))
    assert abs(res["rdphi"][0]) == pytest.approx(0.002, rel=1e-3)

def test_normalize_divides_only_multi_entry_cells():
    dcc = TpcDistortionCorrectionContainer()
    dcc.fill(1, [0.1, 0.1, 3.0], [22.0, 22.0, 50.0], [1.0, 3.0, 5.0], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0])
    normalize_distortions(dcc)

    h = dcc.h_dr[1]
    ix, iy = h.xaxis.find_bin(0.1), h.yaxis.find_bin(22.0)
    assert h.get_bin_content(ix, iy) == pytest.approx(2.0)
    assert h.get_bin_error(ix, iy) == pytest.approx(np.sqrt(10.0) / 2.0)
    assert h.get_bin_content(h.xaxis.find_bin(3.0), h.yaxis.find_bin(50.0)) == pytest.approx(5.0)

def test_normalize_is_idempotent():
    dcc = TpcDistortionCorrectionContainer()
    dcc.fill(0, [0.1, 0.1], [22.0, 22.0], [1.0, 3.0], [0.0, 0.0], [0.0, 0.0])
    normalize_distortions(dcc)
    once = dcc.h_dr[0].values()
    normalize_distortions(dcc)
    assert np.array_equal(dcc.h_dr[0].values(), once)

def test_guard_bins_filled():
    dcc = TpcDistortionCorrectionContainer()
    dcc.fill(0, [0.1], [22.0], [0.7], [0.0], [0.0])
    fill_guarding_bins(dcc)

    arr = dcc.h_dr[0].sumw
    n = dcc.h_dr[0].nbins_x
    assert dcc.h_dr[0].xaxis.find_bin(0.1) == 2
    assert dcc.h_dr[0].yaxis.find_bin(22.0) == 2
    # periodic in phi, clamped in r
    assert arr[n, 2] == pytest.approx(0.7)
    assert arr[2, 1] == pytest.approx(0.7)
    assert arr[n, 1] == pytest.approx(0.7)
    assert arr[1, 2] == 0.0

def test_reset_clears_normalized_flag():
    dcc = TpcDistortionCorrectionContainer()
    dcc.fill(0, [0.1], [22.0], [0.7], [0.0], [0.0])
    normalize_distortions(dcc)
    dcc.reset()
    assert not dcc.normalized
    assert dcc.total_entries(0) == 0

def test_accumulator_lifecycle():
    acc = DistortionAccumulator()
    with pytest.raises(RuntimeError):
        acc.finalize()

    acc.init()
    truth = np.array([[30.0, 0.0, 1.0], [30.0, 0.0, -1.0]])
    reco = np.array([[30.4, 0.0, 1.0], [30.2, 0.0, -1.0]])
    result = MatchResult(truth_pos=truth, reco_pos=reco, reco_nclusters=np.array([1, 2]),
                         pairs=np.array([[0, 0], [1, 1]]))
    acc.accumulate(result)
    acc.accumulate(result)
    dcc = acc.finalize()

    assert acc.n_events == 2
    assert acc.n_pairs == 4
    assert dcc.normalized
    h = dcc.h_dr[1]
    assert h.get_bin_content(h.xaxis.find_bin(0.0), h.yaxis.find_bin(30.4)) == pytest.approx(0.4)

def test_fill_distortions_splits_sides():
    dcc = TpcDistortionCorrectionContainer()
    truth = np.array([[30.0, 0.0, 1.0], [30.0, 0.0, -1.0], [40.0, 0.0, -1.0]])
    reco = truth.copy()
    fill_distortions(dcc, compute_residuals(truth, reco, np.array([[0, 0], [1, 1], [2, 2]])))
    assert dcc.total_entries(0) == 2
    assert dcc.total_entries(1) == 1

def test_wrapped_container_has_same_attributes():
    dcc = TpcDistortionCorrectionContainer()
    wrapped = TpcDistortionCorrectionContainer.from_histograms(dcc.h_dr, dcc.h_dp, dcc.h_dz, dcc.h_entries)
    assert set(vars(wrapped)) == set(vars(dcc))
    assert wrapped.phibins == dcc.phibins
    assert wrapped.rbins == dcc.rbins
