"""
Acceptance gates of the truth/cluster matching.

Each gate is a pure function so it can be checked on its own; the scalar
gates are compiled with numba and reused inside the matching kernel.
"""

import os
import numpy as np
import pandas as pd
from numba import njit

from tpc_calib.calib_constants import ANGLE_REGION_R_EDGES, TRUTH_PEAK_TOLERANCE

DEFAULT_R_WINDOW_TABLE = os.path.join(os.path.dirname(__file__), "..", "geom", "data",
                                      "cluster_r_windows.tsv")


@njit
def delta_phi(phi):
    """Wrap an angle difference into (-pi, pi]."""
    if phi > np.pi:
        return phi - 2.0 * np.pi
    elif phi <= -np.pi:
        return phi + 2.0 * np.pi
    return phi


def delta_phi_array(phi):
    phi = np.asarray(phi, dtype=float)
    phi = np.where(phi > np.pi, phi - 2.0 * np.pi, phi)
    return np.where(phi <= -np.pi, phi + 2.0 * np.pi, phi)


@njit
def same_side(z_truth, z_reco):
    return (z_truth > 0) == (z_reco > 0)


@njit
def phi_window(phi_truth, phi_reco, phi_cut):
    return abs(delta_phi(phi_truth - phi_reco)) < phi_cut


def angle_region(r):
    """Radial region used for the rotation offsets: 0 inner, 1 mid, 2 outer."""
    if r < ANGLE_REGION_R_EDGES[0]:
        return 0
    if r < ANGLE_REGION_R_EDGES[1]:
        return 1
    return 2


def truth_radial_index(r, truth_peaks, tolerance=TRUTH_PEAK_TOLERANCE):
    """Index of the first truth peak within tolerance of r, or -1."""
    for k, peak in enumerate(truth_peaks):
        if abs(r - peak) < tolerance:
            return k
    return -1


class RWindowTable:
    """
    Ordered (first_layer, last_layer, low_gap, high_gap) rows giving the radial
    window accepted around a peak, by the truth layer index that peak maps to.
    """

    COLUMNS = ["first_layer", "last_layer", "low_gap", "high_gap"]

    def __init__(self, rows):
        self.rows = [tuple(float(v) for v in row) for row in rows]

    @classmethod
    def from_tsv(cls, tsv_path=DEFAULT_R_WINDOW_TABLE):
        df = pd.read_csv(tsv_path, sep="\t", comment="#", names=cls.COLUMNS)
        if df.empty:
            raise ValueError(f"No radial windows found in {tsv_path}")
        return cls(df[cls.COLUMNS].itertuples(index=False, name=None))

    def window(self, layer):
        """(low_gap, high_gap) for a layer index; (0, 0) when no row covers it."""
        for first, last, low, high in self.rows:
            if first <= layer <= last:
                return low, high
        return 0.0, 0.0


def cluster_r_match(hit_matches, cluster_peaks, cluster_r, windows):
    """
    Truth layer index of the first observed peak whose window contains
    cluster_r, or -1 when the radius falls between windows.
    """
    for layer, peak in zip(hit_matches, cluster_peaks):
        low_gap, high_gap = windows.window(layer)
        if peak - low_gap < cluster_r <= peak + high_gap:
            return layer
    return -1
