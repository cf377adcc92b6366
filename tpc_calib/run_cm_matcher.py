"""
Match reconstructed central membrane clusters to the stripe pattern and
derive the 2D distortion correction grids.
"""

import argparse
import os
import time
import numpy as np

from tpc_calib.calib_constants import (
    EVENT_OK, ABORTEVENT, ABORTRUN,
    R_PHI_PHI_BINS, R_PHI_R_BINS, R_PHI_R_MIN, R_PHI_R_MAX,
    N_MATCH_ITERATIONS, DIAG_REGION_R_EDGES, DEFAULT_PHI_CUT, DEFAULT_HIT_ROTATION,
    DEFAULT_PHI_BINS, DEFAULT_R_BINS, DEFAULT_PHI_MIN, DEFAULT_PHI_MAX, DEFAULT_R_MIN, DEFAULT_R_MAX,
    MAX_DR, MAX_DPHI,
)
from tpc_calib.distortion.correction import TpcDistortionCorrection
from tpc_calib.distortion.grid import (
    TpcDistortionCorrectionContainer, DistortionAccumulator,
    fill_distortions, normalize_distortions, fill_guarding_bins,
)
from tpc_calib.finders.peak_finder import get_r_peaks, get_r_gap_index, get_hit_matches
from tpc_calib.finders.rotation import GapAlignmentRotation, ProfileFitRotation, format_rotations
from tpc_calib.geom.cm_geometry import CMGeometry
from tpc_calib.matching.gates import RWindowTable, DEFAULT_R_WINDOW_TABLE, delta_phi_array
from tpc_calib.matching.greedy_match import (
    MatchResult, greedy_match, truth_radial_indices, cluster_radial_indices, rotated_cluster_phi,
)
from tpc_calib.trackbase import CMFlashDifference, CMFlashDifferenceContainer
from tpc_calib.utils.hist_helpers import Hist1D, Hist2D
from tpc_calib.utils.io_helpers import (
    read_cm_clusters, read_distortion_container, write_distortion_container, write_histograms,
    differences_to_frame, dump_differences,
)
from tpc_calib.utils.node_helpers import MissingNodeError, find_node, add_node

MODULE_NAME = "CentralMembraneMatcher"
CM_CLUSTER_NODE = "CORRECTED_CM_CLUSTER"
DCC_IN_NODE = "TpcDistortionCorrectionContainer"
CM_DIFFERENCES_NODE = "CM_FLASH_DIFFERENCES"


def _r_phi_hist(name, title):
    return Hist2D(name, title, R_PHI_PHI_BINS, -np.pi, np.pi, R_PHI_R_BINS, R_PHI_R_MIN, R_PHI_R_MAX)


def _phi_r(positions):
    return np.arctan2(positions[:, 1], positions[:, 0]), np.hypot(positions[:, 0], positions[:, 1])


class CentralMembraneMatcher:

    def __init__(self, verbosity=0):
        self.verbosity = verbosity
        self.phi_cut = DEFAULT_PHI_CUT
        self.hit_rotation = list(DEFAULT_HIT_ROTATION)

        self.phibins = DEFAULT_PHI_BINS
        self.rbins = DEFAULT_R_BINS
        self.phi_min = DEFAULT_PHI_MIN
        self.phi_max = DEFAULT_PHI_MAX
        self.r_min = DEFAULT_R_MIN
        self.r_max = DEFAULT_R_MAX

        self.output_file = "CMDistortionCorrections.root"
        self.output_file2 = "CMrPhi.root"
        self.histogram_filename = "PHTpcCentralMembraneMatcher.root"
        self.savehistograms = False
        self.r_window_table = DEFAULT_R_WINDOW_TABLE

        self.geometry = CMGeometry(verbosity)
        self.truth_pos = self.geometry.generate_truth_positions()

        self.gap_rotation = GapAlignmentRotation()
        self.profile_rotation = ProfileFitRotation()
        self.distortion_correction = TpcDistortionCorrection()
        self.accumulator = DistortionAccumulator()

        self.dcc_in = None
        self.dcc_event = None
        self.cm_flash_diffs = None
        self.windows = None
        self.last_result = None
        self.graphs = {}
        self.diag = {}
        self.n_events = 0

    # --- configuration ---

    def set_verbosity(self, verbosity):
        self.verbosity = verbosity

    def set_phi_cut(self, phi_cut):
        self.phi_cut = phi_cut

    def set_hit_rotation(self, hit_rotation):
        if len(hit_rotation) != 4:
            raise ValueError(f"hit_rotation needs 4 values, got {len(hit_rotation)}")
        self.hit_rotation = list(hit_rotation)

    def set_grid_dimensions(self, phibins, rbins):
        self.phibins = phibins
        self.rbins = rbins

    def set_phi_range(self, phi_min, phi_max):
        self.phi_min = phi_min
        self.phi_max = phi_max

    def set_r_range(self, r_min, r_max):
        self.r_min = r_min
        self.r_max = r_max

    def set_output_file(self, output_file):
        self.output_file = output_file

    def set_output_file2(self, output_file2):
        self.output_file2 = output_file2

    def set_histogram_outputfile(self, histogram_filename):
        self.histogram_filename = histogram_filename

    def set_savehistograms(self, value):
        self.savehistograms = value

    def set_r_window_table(self, path):
        self.r_window_table = path

    # --- run lifecycle ---

    def _create_histograms(self):
        self.hit_r_phi = _r_phi_hist("hit_r_phi", "hit r vs phi")
        self.hit_r_phi_pos = _r_phi_hist("hit_r_phi_pos", "hit r vs phi z>0")
        self.hit_r_phi_neg = _r_phi_hist("hit_r_phi_neg", "hit r vs phi z<0")
        self.clust_r_phi = _r_phi_hist("clust_r_phi", "clust r vs phi")
        self.clust_r_phi_pos = _r_phi_hist("clust_r_phi_pos", "clust r vs phi z>0")
        self.clust_r_phi_neg = _r_phi_hist("clust_r_phi_neg", "clust r vs phi z<0")

        if not self.savehistograms:
            self.diag = {}
            return

        self.diag = {
            "hxy_reco": Hist2D("hxy_reco", "reco cluster x:y", 800, -100, 100, 800, -80, 80),
            "hxy_truth": Hist2D("hxy_truth", "truth cluster x:y", 800, -100, 100, 800, -80, 80),
            "hdrdphi": Hist2D("hdrdphi", "dr vs dphi", 800, -MAX_DR, MAX_DR, 800, -MAX_DPHI, MAX_DPHI),
            "hrdr": Hist2D("hrdr", "dr vs r", 800, 0.0, 80.0, 800, -MAX_DR, MAX_DR),
            "hrdphi": Hist2D("hrdphi", "dphi vs r", 800, 0.0, 80.0, 800, -MAX_DPHI, MAX_DPHI),
            "hdphi": Hist1D("hdphi", "dphi", 800, -MAX_DPHI, MAX_DPHI),
            "hdrphi": Hist1D("hdrphi", "r * dphi", 200, -0.05, 0.05),
            "hnclus": Hist1D("hnclus", "nclusters", 3, 0.0, 3.0),
        }
        for band, label in enumerate(("inner", "mid", "outer")):
            for mult in ("single", "double"):
                name = f"hdr{band + 1}_{mult}"
                self.diag[name] = Hist1D(name, f"{label} dr {mult}", 200, -MAX_DR, MAX_DR)

    def _fill_truth(self):
        phi, r = _phi_r(self.truth_pos)
        pos = self.truth_pos[:, 2] > 0
        self.hit_r_phi.fill(phi, r)
        self.hit_r_phi_pos.fill(phi[pos], r[pos])
        self.hit_r_phi_neg.fill(phi[~pos], r[~pos])
        self.graphs["hit_r_phi_gr"] = (phi[pos], r[pos])

        if "hxy_truth" in self.diag:
            self.diag["hxy_truth"].fill(self.truth_pos[pos, 0], self.truth_pos[pos, 1])

        self.hit_r_peaks = get_r_peaks(self.hit_r_phi)
        self.truth_index = truth_radial_indices(self.truth_pos, self.hit_r_peaks)

    def get_nodes(self, top_node):
        find_node(top_node, CM_CLUSTER_NODE, required=True, module_name=MODULE_NAME)

        self.dcc_in = find_node(top_node, DCC_IN_NODE)
        if self.dcc_in is not None:
            print(f"[INFO] {MODULE_NAME}: found TPC distortion correction container")

        self.cm_flash_diffs = CMFlashDifferenceContainer()
        add_node(top_node, CM_DIFFERENCES_NODE, self.cm_flash_diffs)
        if self.verbosity > 0:
            print(f"[INFO] {MODULE_NAME}: created node {CM_DIFFERENCES_NODE}")

    def init_run(self, top_node):
        self._create_histograms()
        self._fill_truth()
        self.windows = RWindowTable.from_tsv(self.r_window_table)

        if self.savehistograms:
            plot_dir = os.path.join(os.path.dirname(self.histogram_filename) or ".", "rotation_fits")
            self.profile_rotation = ProfileFitRotation(plot_dir=plot_dir)

        try:
            self.get_nodes(top_node)
        except MissingNodeError as err:
            print(f"[ERROR] {err}")
            return ABORTRUN

        grid = (self.phibins, self.rbins, self.phi_min, self.phi_max, self.r_min, self.r_max)
        self.dcc_event = TpcDistortionCorrectionContainer(*grid)
        self.accumulator.init(*grid)
        self.n_events = 0

        if self.verbosity > 0:
            print(f"[INFO] {MODULE_NAME}: {len(self.truth_pos)} truth positions, "
                  f"{len(self.hit_r_peaks)} truth radial peaks")
        return EVENT_OK

    def _read_clusters(self, clusters):
        raw = clusters.positions()
        corrected = self.distortion_correction.get_corrected_positions(raw, self.dcc_in)

        keep = ~clusters.is_rgap
        reco_pos = corrected[keep]
        reco_nclusters = clusters.nclusters[keep]

        if self.verbosity > 1:
            raw_kept = raw[keep]
            for j in range(len(reco_pos)):
                print(f"[DEBUG] cluster {j} raw ({raw_kept[j, 0]:.4f}, {raw_kept[j, 1]:.4f}, {raw_kept[j, 2]:.4f}) "
                      f"radius {np.hypot(raw_kept[j, 0], raw_kept[j, 1]):.4f} corrected "
                      f"({reco_pos[j, 0]:.4f}, {reco_pos[j, 1]:.4f}, {reco_pos[j, 2]:.4f}) "
                      f"radius {np.hypot(reco_pos[j, 0], reco_pos[j, 1]):.4f}")

        return reco_pos, reco_nclusters

    def _fill_occupancy(self, reco_pos, reco_nclusters):
        for h in (self.clust_r_phi, self.clust_r_phi_pos, self.clust_r_phi_neg):
            h.reset()

        phi, r = _phi_r(reco_pos)
        z = reco_pos[:, 2]
        pos = z > 0
        neg = z < 0
        single = reco_nclusters == 1

        self.clust_r_phi.fill(phi, r)
        self.clust_r_phi_pos.fill(phi[pos], r[pos])
        self.clust_r_phi_neg.fill(phi[neg], r[neg])

        for suffix, mult in (("", None), ("1", single), ("2", ~single)):
            sel = np.ones(len(r), dtype=bool) if mult is None else mult
            self.graphs[f"clust_r_phi_gr{suffix}"] = (phi[sel], r[sel])
            self.graphs[f"clust_r_phi_gr{suffix}_pos"] = (phi[sel & pos], r[sel & pos])
            self.graphs[f"clust_r_phi_gr{suffix}_neg"] = (phi[sel & neg], r[sel & neg])

        if "hxy_reco" in self.diag:
            self.diag["hxy_reco"].fill(reco_pos[:, 0], reco_pos[:, 1])

    def _estimate_rotations(self):
        rotations = {
            "gap_alignment": self.gap_rotation.estimate(self.hit_r_phi, self.clust_r_phi),
            "gap_alignment_pos": self.gap_rotation.estimate(self.hit_r_phi_pos, self.clust_r_phi_pos),
            "gap_alignment_neg": self.gap_rotation.estimate(self.hit_r_phi_neg, self.clust_r_phi_neg),
            # observed profiles of every population are fit against the full truth profile
            "profile_fit": self.profile_rotation.estimate(self.hit_r_phi, self.clust_r_phi),
            "profile_fit_pos": self.profile_rotation.estimate(self.hit_r_phi, self.clust_r_phi_pos, "_pos"),
            "profile_fit_neg": self.profile_rotation.estimate(self.hit_r_phi, self.clust_r_phi_neg, "_neg"),
        }

        print(f"[INFO] clust rotation      {format_rotations(rotations['profile_fit'])}")
        print(f"[INFO] pos clust rotation  {format_rotations(rotations['profile_fit_pos'])}")
        print(f"[INFO] neg clust rotation  {format_rotations(rotations['profile_fit_neg'])}")
        if self.verbosity > 0:
            print(f"[INFO] gap alignment       {format_rotations(rotations['gap_alignment'])}")
            print(f"[INFO] pos gap alignment   {format_rotations(rotations['gap_alignment_pos'])}")
            print(f"[INFO] neg gap alignment   {format_rotations(rotations['gap_alignment_neg'])}")
        return rotations

    def _cluster_layers(self, reco_pos):
        peaks_pos = get_r_peaks(self.clust_r_phi_pos)
        peaks_neg = get_r_peaks(self.clust_r_phi_neg)
        gap_pos = get_r_gap_index(peaks_pos)
        gap_neg = get_r_gap_index(peaks_neg)
        hit_matches_pos = get_hit_matches(peaks_pos, gap_pos)
        hit_matches_neg = get_hit_matches(peaks_neg, gap_neg)

        if self.verbosity > 0:
            print(f"[INFO] R23Gap_pos: {gap_pos}   hit matches pos = {hit_matches_pos}")
            print(f"[INFO] R23Gap_neg: {gap_neg}   hit matches neg = {hit_matches_neg}")

        return cluster_radial_indices(reco_pos, hit_matches_pos, peaks_pos,
                                      hit_matches_neg, peaks_neg, self.windows)

    def _fill_diagnostics(self, result):
        if not self.diag or result.n_pairs == 0:
            return

        truth = result.truth_pos[result.pairs[:, 0]]
        reco = result.reco_pos[result.pairs[:, 1]]
        nclus = result.matched_nclusters()
        phi1, rad1 = _phi_r(truth)
        phi2, rad2 = _phi_r(reco)

        dr = rad1 - rad2
        dphi = delta_phi_array(phi1 - phi2)

        self.diag["hnclus"].fill(nclus)
        self.diag["hdrphi"].fill(rad2 * dphi)
        self.diag["hdphi"].fill(dphi)
        self.diag["hrdphi"].fill(rad2, dphi)
        self.diag["hdrdphi"].fill(dr, dphi)
        self.diag["hrdr"].fill(rad2, dr)

        inner, outer = DIAG_REGION_R_EDGES
        bands = [rad2 < inner, (rad2 >= inner) & (rad2 < outer), rad2 >= outer]
        single = nclus == 1
        for band, in_band in enumerate(bands):
            self.diag[f"hdr{band + 1}_single"].fill(dr[in_band & single])
            self.diag[f"hdr{band + 1}_double"].fill(dr[in_band & ~single])

    def _store_differences(self, result):
        self.cm_flash_diffs.clear()
        nclus = result.matched_nclusters()
        for ip, (i, j) in enumerate(result.pairs):
            truth = result.truth_pos[i]
            reco = result.reco_pos[j]
            diff = CMFlashDifference(
                truth_phi=float(np.arctan2(truth[1], truth[0])),
                truth_r=float(np.hypot(truth[0], truth[1])),
                truth_z=float(truth[2]),
                reco_phi=float(np.arctan2(reco[1], reco[0])),
                reco_r=float(np.hypot(reco[0], reco[1])),
                reco_z=float(reco[2]),
                nclusters=int(nclus[ip]),
            )
            self.cm_flash_diffs.add_difference_specify_key(int(i), diff)

    def _print_event_summary(self, result):
        n_valid_truth = int(np.count_nonzero(np.hypot(self.truth_pos[:, 0], self.truth_pos[:, 1]) > 30))
        print(f"[INFO] {MODULE_NAME}: event {self.n_events}")
        print(f"    truth positions:         {len(self.truth_pos)} ({n_valid_truth} with r > 30 cm)")
        print(f"    reco clusters:           {len(result.reco_pos)} "
              f"(single {int(np.count_nonzero(result.reco_nclusters == 1))}, "
              f"double {int(np.count_nonzero(result.reco_nclusters == 2))})")
        print(f"    matched pairs:           {result.n_pairs}")
        print(f"    differences:             {self.cm_flash_diffs.size()}")
        print(f"    grid entries (neg, pos): {self.dcc_event.total_entries(0)}, {self.dcc_event.total_entries(1)}")

    def _print_differences(self):
        for key, diff in self.cm_flash_diffs.get_differences():
            print(f"[DEBUG] key {key} nclus {diff.nclusters} "
                  f"truth phi {diff.truth_phi:.5f} reco phi {diff.reco_phi:.5f} "
                  f"truth r {diff.truth_r:.4f} reco r {diff.reco_r:.4f} "
                  f"truth z {diff.truth_z:.4f} reco z {diff.reco_z:.4f}")

    def process_event(self, top_node):
        try:
            clusters = find_node(top_node, CM_CLUSTER_NODE, required=True, module_name=MODULE_NAME)
        except MissingNodeError as err:
            print(f"[ERROR] {err}")
            return ABORTEVENT

        self.dcc_event.reset()

        reco_pos, reco_nclusters = self._read_clusters(clusters)
        self._fill_occupancy(reco_pos, reco_nclusters)
        rotations = self._estimate_rotations()

        reco_index = self._cluster_layers(reco_pos)
        reco_phi = rotated_cluster_phi(
            reco_pos, self.hit_rotation,
            [est.offset_or(0.0) for est in rotations["profile_fit_pos"]],
            [est.offset_or(0.0) for est in rotations["profile_fit_neg"]],
        )

        pairs = greedy_match(self.truth_pos, reco_pos, self.truth_index, reco_index, reco_phi,
                             self.phi_cut, N_MATCH_ITERATIONS)
        result = MatchResult(truth_pos=self.truth_pos, reco_pos=reco_pos,
                             reco_nclusters=reco_nclusters, pairs=pairs, rotations=rotations)

        self._fill_diagnostics(result)
        self._store_differences(result)

        residuals = self.accumulator.accumulate(result)
        fill_distortions(self.dcc_event, residuals)

        if self.verbosity > 0:
            self._print_event_summary(result)

        normalize_distortions(self.dcc_event)
        fill_guarding_bins(self.dcc_event)

        if self.verbosity > 0:
            self._print_differences()

        self.last_result = result
        self.n_events += 1
        return EVENT_OK

    def occupancy_histograms(self):
        return [self.hit_r_phi, self.hit_r_phi_pos, self.hit_r_phi_neg,
                self.clust_r_phi, self.clust_r_phi_pos, self.clust_r_phi_neg]

    def end(self, top_node=None):
        dcc = self.accumulator.finalize()
        write_distortion_container(self.output_file, dcc)
        write_histograms(self.output_file2, self.occupancy_histograms(), self.graphs)

        if self.savehistograms:
            write_histograms(self.histogram_filename, list(self.diag.values()))

        print(f"[INFO] {MODULE_NAME}: {self.accumulator.n_events} events, "
              f"{self.accumulator.n_pairs} matched pairs accumulated")
        return EVENT_OK


def build_matcher(output_file, output_file2, **kwargs):
    """
    Configured CentralMembraneMatcher.

    Keyword arguments: histogram_file, phi_cut, phibins, rbins, phi_min,
    phi_max, r_min, r_max, hit_rotation, r_window_table, verbosity.
    """
    matcher = CentralMembraneMatcher(kwargs.get("verbosity", 0))
    matcher.set_output_file(output_file)
    matcher.set_output_file2(output_file2)
    matcher.set_phi_cut(kwargs.get("phi_cut", DEFAULT_PHI_CUT))
    matcher.set_grid_dimensions(kwargs.get("phibins", DEFAULT_PHI_BINS), kwargs.get("rbins", DEFAULT_R_BINS))
    matcher.set_phi_range(kwargs.get("phi_min", DEFAULT_PHI_MIN), kwargs.get("phi_max", DEFAULT_PHI_MAX))
    matcher.set_r_range(kwargs.get("r_min", DEFAULT_R_MIN), kwargs.get("r_max", DEFAULT_R_MAX))
    if kwargs.get("hit_rotation") is not None:
        matcher.set_hit_rotation(kwargs["hit_rotation"])
    if kwargs.get("r_window_table"):
        matcher.set_r_window_table(kwargs["r_window_table"])
    if kwargs.get("histogram_file"):
        matcher.set_histogram_outputfile(kwargs["histogram_file"])
        matcher.set_savehistograms(True)
    return matcher


def run_cm_matching(input_file, output_file, output_file2, **kwargs):
    """
    Read CM cluster events, match them to the stripe pattern and write the
    aggregated distortion grids.

    Keyword arguments: tree_name, correction_file, differences_file, and the
    matcher settings taken by build_matcher.
    """

    total_start = time.perf_counter()

    matcher = build_matcher(output_file, output_file2, **kwargs)

    top_node = {}
    dcc_in = read_distortion_container(kwargs.get("correction_file"))
    if dcc_in is not None:
        add_node(top_node, DCC_IN_NODE, dcc_in)
    elif kwargs.get("correction_file"):
        print(f"[WARNING] Correction file {kwargs['correction_file']} not found, clusters are not corrected")

    diff_frames = []
    status = None

    match_start = time.perf_counter()
    for i, clusters in enumerate(read_cm_clusters(input_file, kwargs.get("tree_name", "tree"))):
        top_node[CM_CLUSTER_NODE] = clusters
        if status is None:
            status = matcher.init_run(top_node)
            if status == ABORTRUN:
                print("[ERROR] Run aborted, no events processed")
                return matcher

        if matcher.process_event(top_node) != EVENT_OK:
            continue
        if kwargs.get("differences_file"):
            diff_frames.append(differences_to_frame(matcher.cm_flash_diffs, event=i))
    match_end = time.perf_counter()

    if status is None:
        print(f"[WARNING] No events found in {input_file}")
        return matcher

    write_start = time.perf_counter()
    matcher.end(top_node)
    if kwargs.get("differences_file"):
        dump_differences(diff_frames, kwargs["differences_file"])
    write_end = time.perf_counter()

    total_end = time.perf_counter()

    print("\n--- Timing Summary ---")
    print(f"Matching time:  {match_end - match_start:.2f} s")
    print(f"Write time:     {write_end - write_start:.2f} s")
    print(f"Total runtime:  {total_end - total_start:.2f} s")

    return matcher


def main():
    parser = argparse.ArgumentParser(description="Central membrane cluster matching and distortion grids.")
    parser.add_argument("input_file", help="ROOT file with the CM cluster tree")
    parser.add_argument("--output", default="CMDistortionCorrections.root", help="Aggregated distortion grids")
    parser.add_argument("--output2", default="CMrPhi.root", help="Occupancy histograms and graphs")
    parser.add_argument("--histograms", default=None, help="Diagnostic histogram file (enables diagnostics)")
    parser.add_argument("--correction", default=None, help="Distortion file applied to the input clusters")
    parser.add_argument("--differences", default=None, help="TSV dump of the matched differences")
    parser.add_argument("--tree", default="tree")
    parser.add_argument("--phi-cut", type=float, default=DEFAULT_PHI_CUT)
    parser.add_argument("--phibins", type=int, default=DEFAULT_PHI_BINS)
    parser.add_argument("--rbins", type=int, default=DEFAULT_R_BINS)
    parser.add_argument("--phi-min", type=float, default=DEFAULT_PHI_MIN)
    parser.add_argument("--phi-max", type=float, default=DEFAULT_PHI_MAX)
    parser.add_argument("--r-min", type=float, default=DEFAULT_R_MIN, help="cm")
    parser.add_argument("--r-max", type=float, default=DEFAULT_R_MAX, help="cm")
    parser.add_argument("--hit-rotation", type=float, nargs=4, default=None)
    parser.add_argument("--r-window-table", default=None)
    parser.add_argument("-v", "--verbosity", type=int, default=0)
    args = parser.parse_args()

    run_cm_matching(
        input_file=args.input_file,
        output_file=args.output,
        output_file2=args.output2,
        histogram_file=args.histograms,
        correction_file=args.correction,
        differences_file=args.differences,
        tree_name=args.tree,
        phi_cut=args.phi_cut,
        phibins=args.phibins,
        rbins=args.rbins,
        phi_min=args.phi_min,
        phi_max=args.phi_max,
        r_min=args.r_min,
        r_max=args.r_max,
        hit_rotation=args.hit_rotation,
        r_window_table=args.r_window_table,
        verbosity=args.verbosity,
    )


if __name__ == "__main__":
    main()
