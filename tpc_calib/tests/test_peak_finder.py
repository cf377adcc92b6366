import pytest
import numpy as np
from tpc_calib.finders.peak_finder import get_r_peaks, get_phi_gaps, get_r_gap_index, get_hit_matches
from tpc_calib.utils.hist_helpers import Hist2D

def make_r_phi():
    return Hist2D("r_phi", "r_phi", 360, -np.pi, np.pi, 500, 0.0, 100.0)

def fill_ring(h, r, n):
    # one entry per phi bin center, n times
    phis = h.xaxis.bin_center(np.arange(1, n + 1) * 5)
    h.fill(phis, np.full(phis.size, r))

def test_single_peaks():
    h = make_r_phi()
    for r in (30.1, 40.1, 50.1):
        fill_ring(h, r, 10)
    assert get_r_peaks(h) == pytest.approx([30.1, 40.1, 50.1])

def test_close_peaks_keep_higher():
    h = make_r_phi()
    fill_ring(h, 30.1, 10)
    fill_ring(h, 30.5, 5)
    assert get_r_peaks(h) == pytest.approx([30.1])

def test_peaks_below_threshold_ignored():
    h = make_r_phi()
    fill_ring(h, 30.1, 50)
    fill_ring(h, 50.1, 5)
    assert get_r_peaks(h) == pytest.approx([30.1])

def test_empty_histogram_has_no_peaks():
    assert get_r_peaks(make_r_phi()) == []

def test_phi_gaps_rising_edges():
    h = make_r_phi()
    h.fill(h.xaxis.bin_center(9), 30.0)
    h.fill(h.xaxis.bin_center(181), 30.0)
    gaps = get_phi_gaps(h)
    assert len(gaps) == 3
    assert gaps[0] == pytest.approx([h.xaxis.bin_center(9), h.xaxis.bin_center(181)])
    assert gaps[1] == []
    assert gaps[2] == []

def test_phi_gaps_close_edges_merged():
    h = make_r_phi()
    h.fill(h.xaxis.bin_center(9), 30.0)
    h.fill(h.xaxis.bin_center(11), 30.0)
    gaps = get_phi_gaps(h)
    assert gaps[0] == pytest.approx([h.xaxis.bin_center(9)])

def test_r_gap_index_last_large_separation():
    peaks = [20.0, 21.0, 24.0, 25.0, 28.0]
    assert get_r_gap_index(peaks) == 3
    assert get_hit_matches(peaks, 3) == [20, 21, 22, 23, 24]

def test_r_gap_index_none():
    assert get_r_gap_index([20.0, 21.0, 22.0]) == -1
    assert get_r_gap_index([]) == -1
