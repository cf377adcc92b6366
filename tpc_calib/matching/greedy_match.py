import numpy as np
from dataclasses import dataclass, field
from numba import njit

from tpc_calib.calib_constants import N_MATCH_ITERATIONS
from tpc_calib.matching.gates import (
    delta_phi, same_side, phi_window, angle_region, truth_radial_index, cluster_r_match,
)


@dataclass
class MatchResult:
    """Matched (truth index, cluster index) pairs of one event."""
    truth_pos: np.ndarray
    reco_pos: np.ndarray
    reco_nclusters: np.ndarray
    pairs: np.ndarray = field(default_factory=lambda: np.empty((0, 2), dtype=np.int64))
    rotations: dict = field(default_factory=dict)

    @property
    def n_pairs(self):
        return len(self.pairs)

    def matched_nclusters(self):
        return self.reco_nclusters[self.pairs[:, 1]] if self.n_pairs else np.empty(0, dtype=np.int64)


def truth_radial_indices(truth_pos, truth_peaks):
    r = np.hypot(truth_pos[:, 0], truth_pos[:, 1])
    return np.array([truth_radial_index(ri, truth_peaks) for ri in r], dtype=np.int64)


def cluster_radial_indices(reco_pos, hit_matches_pos, peaks_pos, hit_matches_neg, peaks_neg, windows):
    """Truth layer index of each cluster, using the peaks of the cluster's own side."""
    r = np.hypot(reco_pos[:, 0], reco_pos[:, 1])
    out = np.empty(r.size, dtype=np.int64)
    for j in range(r.size):
        if reco_pos[j, 2] > 0:
            out[j] = cluster_r_match(hit_matches_pos, peaks_pos, r[j], windows)
        else:
            out[j] = cluster_r_match(hit_matches_neg, peaks_neg, r[j], windows)
    return out


def rotated_cluster_phi(reco_pos, hit_rotation, clust_rotation_pos, clust_rotation_neg):
    """
    Cluster azimuth moved into the truth frame:
    phi + hit_rotation[region + 1] - cluster_rotation_side[region].
    """
    phi = np.arctan2(reco_pos[:, 1], reco_pos[:, 0])
    r = np.hypot(reco_pos[:, 0], reco_pos[:, 1])
    out = phi.copy()
    for j in range(phi.size):
        region = angle_region(r[j])
        if reco_pos[j, 2] > 0:
            out[j] += hit_rotation[region + 1] - clust_rotation_pos[region]
        else:
            out[j] += hit_rotation[region + 1] - clust_rotation_neg[region]
    return out


@njit
def greedy_match_kernel(truth_phi, truth_z, truth_index, reco_phi, reco_z, reco_index,
                        phi_cut, n_iterations, hits_matched, clusts_matched):
    """
    Greedy nearest-in-phi assignment. For every unmatched truth point, the
    unmatched cluster with the smallest |dphi| among those passing all gates is
    taken; both are then consumed.
    """
    n_max = min(truth_phi.size, reco_phi.size)
    pairs = np.empty((n_max, 2), dtype=np.int64)
    n_pairs = 0

    for match_it in range(n_iterations):
        for i in range(truth_phi.size):
            if hits_matched[i]:
                continue

            prev_dphi = 1.1 * phi_cut
            match_j = -1

            for j in range(reco_phi.size):
                if clusts_matched[j]:
                    continue
                if reco_index[j] == -1:
                    continue
                if not same_side(truth_z[i], reco_z[j]):
                    continue
                if truth_index[i] != reco_index[j]:
                    continue
                if not phi_window(truth_phi[i], reco_phi[j], phi_cut):
                    continue

                dphi = delta_phi(truth_phi[i] - reco_phi[j])
                if abs(dphi) < abs(prev_dphi):
                    prev_dphi = dphi
                    match_j = j

            if match_j != -1:
                hits_matched[i] = True
                clusts_matched[match_j] = True
                pairs[n_pairs, 0] = i
                pairs[n_pairs, 1] = match_j
                n_pairs += 1

    return pairs[:n_pairs]


def greedy_match(truth_pos, reco_pos, truth_index, reco_index, reco_phi, phi_cut,
                 n_iterations=N_MATCH_ITERATIONS, hits_matched=None, clusts_matched=None):
    """
    Python wrapper: prepares contiguous arrays and runs the compiled assignment.

    hits_matched / clusts_matched may be passed in to continue from an earlier
    assignment; they are updated in place.
    """
    truth_pos = np.asarray(truth_pos, dtype=np.float64).reshape(-1, 3)
    reco_pos = np.asarray(reco_pos, dtype=np.float64).reshape(-1, 3)
    if hits_matched is None:
        hits_matched = np.zeros(len(truth_pos), dtype=np.bool_)
    if clusts_matched is None:
        clusts_matched = np.zeros(len(reco_pos), dtype=np.bool_)

    truth_phi = np.arctan2(truth_pos[:, 1], truth_pos[:, 0])

    return greedy_match_kernel(
        np.ascontiguousarray(truth_phi),
        np.ascontiguousarray(truth_pos[:, 2]),
        np.asarray(truth_index, dtype=np.int64),
        np.asarray(reco_phi, dtype=np.float64),
        np.ascontiguousarray(reco_pos[:, 2]),
        np.asarray(reco_index, dtype=np.int64),
        float(phi_cut),
        int(n_iterations),
        hits_matched,
        clusts_matched,
    )
