"""
Estimation of the global azimuthal rotation between the truth pattern and the
reconstructed central membrane clusters, per radial region.

Two strategies are provided:
  - GapAlignmentRotation: pairs the petal gaps found in truth and in data and
    averages their offsets.
  - ProfileFitRotation: fits the smoothed data phi profile with a scaled,
    shifted copy of the smoothed truth profile.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from scipy.optimize import curve_fit
from scipy.signal import medfilt

from tpc_calib.calib_constants import N_PETALS, PROFILE_R_BIN_RANGES
from tpc_calib.finders.peak_finder import get_phi_gaps
from tpc_calib.matching.gates import delta_phi

REGION_NAMES = ("R1", "R2", "R3")


@dataclass
class RotationEstimate:
    region: int
    offset: Optional[float]
    sufficient: bool
    strategy: str

    def offset_or(self, default=0.0):
        return self.offset if self.sufficient else default


def _insufficient(region, strategy):
    return RotationEstimate(region=region, offset=None, sufficient=False, strategy=strategy)


class RotationStrategy:
    name = "base"

    def estimate(self, hit_r_phi, clust_r_phi, tag=""):
        """Return one RotationEstimate per region."""
        raise NotImplementedError


def get_average_rotation(hit_gaps, clust_gaps, strategy="gap_alignment"):
    """
    Average signed offset (data - truth) of the gaps that pair up within a
    quarter of the summed mean gap spacings, per region.
    """
    estimates = []
    for region, (hit, clust) in enumerate(zip(hit_gaps, clust_gaps)):
        if len(hit) < 2 or len(clust) < 2:
            estimates.append(_insufficient(region, strategy))
            continue

        di = float(np.mean(np.diff(hit)))
        dj = float(np.mean(np.diff(clust)))
        window = (di + dj) / 4.0

        total = 0.0
        n_match = 0
        for h in hit:
            for c in clust:
                if abs(c - h) > window:
                    continue
                total += c - h
                n_match += 1

        if n_match == 0:
            estimates.append(_insufficient(region, strategy))
        else:
            estimates.append(RotationEstimate(region=region, offset=total / n_match,
                                              sufficient=True, strategy=strategy))
    return estimates


class GapAlignmentRotation(RotationStrategy):
    name = "gap_alignment"

    def estimate(self, hit_r_phi, clust_r_phi, tag=""):
        return get_average_rotation(get_phi_gaps(hit_r_phi), get_phi_gaps(clust_r_phi), self.name)


def _running_353h(values):
    # the phi profile is periodic, so pad by wrapping before the running medians
    pad = 5
    padded = np.pad(values, pad, mode="wrap")
    smoothed = medfilt(padded, 3)
    smoothed = medfilt(smoothed, 5)
    smoothed = medfilt(smoothed, 3)
    smoothed = np.convolve(smoothed, [0.25, 0.5, 0.25], mode="same")
    return smoothed[pad:-pad]


def smooth_profile(values):
    """353H smoothing with a second pass on the residuals."""
    values = np.asarray(values, dtype=float)
    if values.size < 5:
        return values.copy()
    smoothed = _running_353h(values)
    return smoothed + _running_353h(values - smoothed)


def scan_bin_shift(observed, model, max_shift):
    """
    Whole-bin shift k in [-max_shift, max_shift] minimising
    |observed - A * model(phi - k)|^2, with the best amplitude A for each k.
    The smaller |k| wins a tie.
    """
    observed = np.asarray(observed, dtype=float)
    obs2 = float(np.dot(observed, observed))
    best_k, best_cost = 0, np.inf
    for k in sorted(range(-max_shift, max_shift + 1), key=abs):
        shifted = np.roll(model, k)
        norm = float(np.dot(shifted, shifted))
        cost = obs2 - float(np.dot(observed, shifted)) ** 2 / norm if norm > 0 else obs2
        if cost < best_cost:
            best_k, best_cost = k, cost
    return best_k


def fit_phi_rotation(hit_hist, clust_hist, plot_path=None):
    """
    Fit clust(phi) = A * hit(phi - shift) on the smoothed phi profiles and
    return the shift wrapped into (-pi, pi] together with A.

    Both profiles go through the same periodic smoothing, so identical
    profiles give no shift. The shifted truth profile is read by bin lookup,
    which makes the least-squares cost a step function of the shift: the
    shift is minimised over whole bins, up to half a petal, and the amplitude
    is then fitted at that shift.

    Raises RuntimeError when the fit does not converge.
    """
    axis = hit_hist.xaxis
    centers = axis.centers
    period = axis.xmax - axis.xmin
    smoothed = smooth_profile(hit_hist.values())
    observed = smooth_profile(clust_hist.values())

    def shifted_profile(x, amp, shift):
        wrapped = axis.xmin + np.mod(np.asarray(x) - shift - axis.xmin, period)
        return amp * smoothed[(axis.find_bin(wrapped) - 1) % axis.nbins]

    max_shift = max(axis.nbins // (2 * N_PETALS) - 1, 0)
    shift = scan_bin_shift(observed, smoothed, max_shift) * axis.width

    popt, _ = curve_fit(lambda x, amp: shifted_profile(x, amp, shift), centers, observed, p0=[1.0])
    amp = float(popt[0])

    if plot_path is not None:
        _plot_fit(centers, clust_hist.values(), shifted_profile(centers, amp, shift), clust_hist.name, plot_path)

    return float(delta_phi(float(shift))), amp


def _plot_fit(centers, observed, fitted, title, plot_path):
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    plt.step(centers, observed, where="mid", label="clusters")
    plt.plot(centers, fitted, "r--", label="fit")
    plt.xlabel("phi (rad)")
    plt.ylabel("Counts")
    plt.title(title)
    plt.legend()
    plt.grid(True)
    plt.savefig(plot_path, dpi=150)
    plt.close()


class ProfileFitRotation(RotationStrategy):
    name = "profile_fit"

    def __init__(self, r_bin_ranges=PROFILE_R_BIN_RANGES, plot_dir=None):
        self.r_bin_ranges = r_bin_ranges
        self.plot_dir = plot_dir

    def estimate(self, hit_r_phi, clust_r_phi, tag=""):
        estimates: List[RotationEstimate] = []
        for region, (first, last) in enumerate(self.r_bin_ranges):
            hit_hist = hit_r_phi.projection_x(f"h{REGION_NAMES[region]}", first, last)
            clust_hist = clust_r_phi.projection_x(f"c{REGION_NAMES[region]}{tag}", first, last)
            if clust_hist.integral() <= 0 or hit_hist.integral() <= 0:
                estimates.append(_insufficient(region, self.name))
                continue

            plot_path = None
            if self.plot_dir is not None:
                os.makedirs(self.plot_dir, exist_ok=True)
                plot_path = os.path.join(self.plot_dir, f"{clust_hist.name}_fit.png")

            shift, _ = fit_phi_rotation(hit_hist, clust_hist, plot_path)
            estimates.append(RotationEstimate(region=region, offset=shift, sufficient=True,
                                              strategy=self.name))
        return estimates


def format_rotations(estimates):
    parts = []
    for est in estimates:
        value = f"{est.offset:.5f}" if est.sufficient else "n/a"
        parts.append(f"{REGION_NAMES[est.region]}: {value}")
    return "   ".join(parts)
