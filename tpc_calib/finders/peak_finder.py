"""
Radial peak and azimuthal gap finding on (phi, r) occupancy histograms.
"""

from tpc_calib.calib_constants import (
    PEAK_THRESHOLD_FRACTION, PEAK_MIN_SEPARATION, PHI_GAP_MIN_SEPARATION, PHI_GAP_R_EDGES,
    R23_GAP_MIN, R23_GAP_LAYER,
)


def get_r_peaks(r_phi):
    """
    Radii of the peaks of the r projection of r_phi.

    A bin is a peak candidate when it exceeds 15% of the projection maximum and
    is not lower than either neighbour. Peaks closer than 0.75 cm are merged by
    dropping the lower one, until no close pair remains.
    """
    proj = r_phi.projection_y("R_proj", 1, r_phi.nbins_x)
    threshold = PEAK_THRESHOLD_FRACTION * proj.get_maximum()

    r_peaks = []
    for i in range(2, proj.nbins):
        content = proj.get_bin_content(i)
        if (content > threshold and content >= proj.get_bin_content(i - 1)
                and content >= proj.get_bin_content(i + 1)):
            r_peaks.append(proj.get_bin_center(i))

    i = 0
    while i < len(r_peaks) - 1:
        if r_peaks[i + 1] - r_peaks[i] > PEAK_MIN_SEPARATION:
            i += 1
            continue
        content_i = proj.get_bin_content(proj.find_bin(r_peaks[i]))
        content_next = proj.get_bin_content(proj.find_bin(r_peaks[i + 1]))
        if content_i > content_next:
            del r_peaks[i + 1]
        else:
            del r_peaks[i]

    return r_peaks


def get_phi_gaps(r_phi):
    """
    Rising edges of the phi projections in the three radial bands.

    Returns one list per band; an edge closer than pi/36 to the previous one
    is treated as the same gap.
    """
    r_bins = [r_phi.yaxis.find_bin(r) for r in PHI_GAP_R_EDGES]
    phi_hists = [
        r_phi.projection_x(f"phiHist_R{band + 1}", r_bins[band], r_bins[band + 1])
        for band in range(3)
    ]

    phi_gaps = []
    for hist in phi_hists:
        gaps = []
        for i in range(2, hist.nbins + 1):
            if hist.get_bin_content(i) > 0 and hist.get_bin_content(i - 1) == 0:
                center = hist.get_bin_center(i)
                if not gaps or center - gaps[-1] > PHI_GAP_MIN_SEPARATION:
                    gaps.append(center)
        phi_gaps.append(gaps)

    return phi_gaps


def get_r_gap_index(r_peaks):
    """Index of the last peak followed by a gap of at least 2.5 cm, or -1."""
    gap_index = -1
    for i in range(len(r_peaks) - 1):
        if r_peaks[i + 1] - r_peaks[i] >= R23_GAP_MIN:
            gap_index = i
    return gap_index


def get_hit_matches(r_peaks, gap_index):
    """Expected truth layer index of each observed peak, anchored on the mid/outer gap."""
    return [i + R23_GAP_LAYER - gap_index for i in range(len(r_peaks))]
