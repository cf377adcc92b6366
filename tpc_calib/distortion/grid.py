"""
Distortion correction grids filled from matched central membrane pairs.

Each grid holds, per side of the membrane, the summed radial, r*phi and z
residuals and an entry count over (phi, r), with one guard bin added on every
edge so that bilinear interpolation never leaves the histogram.
"""

import numpy as np

from tpc_calib.calib_constants import (
    SIDE_EXTENSIONS, DEFAULT_PHI_BINS, DEFAULT_R_BINS,
    DEFAULT_PHI_MIN, DEFAULT_PHI_MAX, DEFAULT_R_MIN, DEFAULT_R_MAX,
)
from tpc_calib.matching.gates import delta_phi_array
from tpc_calib.utils.hist_helpers import Hist2D


class TpcDistortionCorrectionContainer:
    """
    Two sides (0: z < 0, 1: z >= 0) of R, P (r*dphi), Z residual surfaces plus
    an entries surface.
    """

    def __init__(self, phibins=DEFAULT_PHI_BINS, rbins=DEFAULT_R_BINS,
                 phi_min=DEFAULT_PHI_MIN, phi_max=DEFAULT_PHI_MAX,
                 r_min=DEFAULT_R_MIN, r_max=DEFAULT_R_MAX):
        self.phibins = phibins
        self.rbins = rbins

        # axis limits widened by one bin on each side for the guard bins
        phi_step = (phi_max - phi_min) / phibins
        r_step = (r_max - r_min) / rbins
        limits = (phibins + 2, phi_min - phi_step, phi_max + phi_step,
                  rbins + 2, r_min - r_step, r_max + r_step)

        self.h_dr = [Hist2D(f"hIntDistortionR{ext}", f"hIntDistortionR{ext}", *limits)
                     for ext in SIDE_EXTENSIONS]
        self.h_dp = [Hist2D(f"hIntDistortionP{ext}", f"hIntDistortionP{ext}", *limits)
                     for ext in SIDE_EXTENSIONS]
        self.h_dz = [Hist2D(f"hIntDistortionZ{ext}", f"hIntDistortionZ{ext}", *limits)
                     for ext in SIDE_EXTENSIONS]
        self.h_entries = [Hist2D(f"hEntries{ext}", f"hEntries{ext}", *limits)
                          for ext in SIDE_EXTENSIONS]
        self.normalized = False

    @classmethod
    def from_histograms(cls, h_dr, h_dp, h_dz, h_entries=None):
        """Wrap existing per-side histograms (e.g. read back from a file)."""
        dcc = cls.__new__(cls)
        dcc.phibins = h_dr[0].nbins_x - 2
        dcc.rbins = h_dr[0].nbins_y - 2
        dcc.h_dr = list(h_dr)
        dcc.h_dp = list(h_dp)
        dcc.h_dz = list(h_dz)
        dcc.h_entries = list(h_entries) if h_entries is not None else [None, None]
        dcc.normalized = True
        return dcc

    def residual_histograms(self, side):
        return self.h_dr[side], self.h_dp[side], self.h_dz[side]

    def all_histograms(self):
        for side in range(2):
            for h in (self.h_dr[side], self.h_dp[side], self.h_dz[side], self.h_entries[side]):
                if h is not None:
                    yield h

    def reset(self):
        for h in self.all_histograms():
            h.reset()
        self.normalized = False

    def fill(self, side, phi, r, dr, rdphi, dz):
        self.h_dr[side].fill(phi, r, dr)
        self.h_dp[side].fill(phi, r, rdphi)
        self.h_dz[side].fill(phi, r, dz)
        self.h_entries[side].fill(phi, r)

    def total_entries(self, side):
        return self.h_entries[side].entries


def compute_residuals(truth_pos, reco_pos, pairs):
    """
    Cluster-minus-truth residuals of the matched pairs.

    Returns a dict of arrays: side, phi (cluster, in [0, 2pi)), r (cluster),
    dr, rdphi and dz.
    """
    pairs = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
    truth = np.asarray(truth_pos, dtype=float)[pairs[:, 0]].reshape(-1, 3)
    reco = np.asarray(reco_pos, dtype=float)[pairs[:, 1]].reshape(-1, 3)

    truth_r = np.hypot(truth[:, 0], truth[:, 1])
    truth_phi = np.arctan2(truth[:, 1], truth[:, 0])
    reco_r = np.hypot(reco[:, 0], reco[:, 1])
    reco_phi = np.arctan2(reco[:, 1], reco[:, 0])

    dphi = delta_phi_array(reco_phi - truth_phi)
    return {
        "side": np.where(reco[:, 2] < 0, 0, 1),
        "phi": np.where(reco_phi < 0, reco_phi + 2.0 * np.pi, reco_phi),
        "r": reco_r,
        "dr": reco_r - truth_r,
        "rdphi": reco_r * dphi,
        "dz": reco[:, 2] - truth[:, 2],
    }


def fill_distortions(dcc, residuals):
    for side in range(2):
        mask = residuals["side"] == side
        if not np.any(mask):
            continue
        dcc.fill(side, residuals["phi"][mask], residuals["r"][mask],
                 residuals["dr"][mask], residuals["rdphi"][mask], residuals["dz"][mask])


def normalize_distortions(dcc):
    """
    Divide residual sums and their errors by the entry count of each cell that
    was filled more than once. A container is only normalized once.
    """
    if dcc.normalized:
        return dcc

    for side in range(2):
        entries = dcc.h_entries[side].sumw
        mask = entries > 1
        for h in dcc.residual_histograms(side):
            h.sumw[mask] = h.sumw[mask] / entries[mask]
            # error scales as content: sumw2 / entries^2
            h.sumw2[mask] = h.sumw2[mask] / (entries[mask] * entries[mask])

    dcc.normalized = True
    return dcc


def fill_guarding_bins(dcc):
    """
    Fill guard bins: along phi by 2pi periodicity (last valid bin into the first
    guard bin, first valid bin into the last one), along r by copying the
    nearest valid bin.
    """
    for h in dcc.all_histograms():
        phibins = h.nbins_x
        rbins = h.nbins_y
        for arr in (h.sumw, h.sumw2):
            arr[1, 1:rbins + 1] = arr[phibins - 1, 1:rbins + 1]
            arr[phibins, 1:rbins + 1] = arr[2, 1:rbins + 1]

            arr[1:phibins + 1, 1] = arr[1:phibins + 1, 2]
            arr[1:phibins + 1, rbins] = arr[1:phibins + 1, rbins - 1]
    return dcc


class DistortionAccumulator:
    """
    Run-level aggregate of the distortion grids: init at run start,
    accumulate every event, finalize at run end.
    """

    def __init__(self):
        self.dcc = None
        self.n_events = 0
        self.n_pairs = 0

    def init(self, phibins=DEFAULT_PHI_BINS, rbins=DEFAULT_R_BINS,
             phi_min=DEFAULT_PHI_MIN, phi_max=DEFAULT_PHI_MAX,
             r_min=DEFAULT_R_MIN, r_max=DEFAULT_R_MAX):
        self.dcc = TpcDistortionCorrectionContainer(phibins, rbins, phi_min, phi_max, r_min, r_max)
        self.n_events = 0
        self.n_pairs = 0
        return self.dcc

    def accumulate(self, event_result):
        if self.dcc is None:
            raise RuntimeError("DistortionAccumulator.accumulate called before init")
        residuals = compute_residuals(event_result.truth_pos, event_result.reco_pos, event_result.pairs)
        fill_distortions(self.dcc, residuals)
        self.n_events += 1
        self.n_pairs += len(residuals["r"])
        return residuals

    def finalize(self):
        if self.dcc is None:
            raise RuntimeError("DistortionAccumulator.finalize called before init")
        normalize_distortions(self.dcc)
        fill_guarding_bins(self.dcc)
        return self.dcc
