import pytest
import numpy as np
from tpc_calib.calib_constants import EVENT_OK, ABORTEVENT, ABORTRUN, R_PHI_PHI_BINS
from tpc_calib.finders.rotation import RotationEstimate, RotationStrategy
from tpc_calib.run_cm_matcher import CentralMembraneMatcher, build_matcher, CM_CLUSTER_NODE, CM_DIFFERENCES_NODE
from tpc_calib.trackbase import CMFlashClusterContainer
from tpc_calib.utils.io_helpers import read_distortion_container

class FixedRotation(RotationStrategy):
    name = "fixed"

    def __init__(self, offset):
        self.offset = offset

    def estimate(self, hit_r_phi, clust_r_phi, tag=""):
        return [RotationEstimate(region=r, offset=self.offset, sufficient=True, strategy=self.name)
                for r in range(3)]

def clusters_at_truth(matcher, is_rgap=None):
    truth = matcher.truth_pos
    return CMFlashClusterContainer(truth[:, 0], truth[:, 1], 5.0 * truth[:, 2],
                                   np.ones(len(truth), dtype=np.int64), is_rgap)

@pytest.fixture
def matcher(tmp_path):
    m = CentralMembraneMatcher()
    m.set_output_file(str(tmp_path / "distortions.root"))
    m.set_output_file2(str(tmp_path / "r_phi.root"))
    m.profile_rotation = FixedRotation(0.0)
    return m

def test_missing_cluster_node_aborts_run(matcher):
    assert matcher.init_run({}) == ABORTRUN

def test_missing_cluster_node_in_event(matcher):
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher)}
    assert matcher.init_run(top_node) == EVENT_OK
    del top_node[CM_CLUSTER_NODE]
    assert matcher.process_event(top_node) == ABORTEVENT

def test_ideal_event_matches_every_truth_point(matcher):
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher)}
    assert matcher.init_run(top_node) == EVENT_OK
    assert CM_DIFFERENCES_NODE in top_node
    assert len(matcher.hit_r_peaks) == 32

    assert matcher.process_event(top_node) == EVENT_OK
    result = matcher.last_result
    assert result.n_pairs == len(matcher.truth_pos)
    assert np.array_equal(np.sort(result.pairs[:, 0]), np.arange(len(matcher.truth_pos)))
    assert np.array_equal(result.pairs[:, 0], result.pairs[:, 1])
    assert top_node[CM_DIFFERENCES_NODE].size() == result.n_pairs

    dcc = matcher.dcc_event
    assert dcc.normalized
    assert dcc.total_entries(0) + dcc.total_entries(1) == result.n_pairs
    assert np.allclose(dcc.h_dr[1].values(), 0.0)

def test_pairs_stay_on_one_side(matcher):
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher)}
    matcher.init_run(top_node)
    matcher.process_event(top_node)
    result = matcher.last_result
    truth_z = result.truth_pos[result.pairs[:, 0], 2]
    reco_z = result.reco_pos[result.pairs[:, 1], 2]
    assert np.all((truth_z > 0) == (reco_z > 0))

def test_rgap_clusters_dropped(matcher):
    n = len(matcher.truth_pos)
    is_rgap = np.zeros(n, dtype=bool)
    is_rgap[::2] = True
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher, is_rgap)}
    matcher.init_run(top_node)
    matcher.process_event(top_node)
    assert len(matcher.last_result.reco_pos) == n // 2
    assert np.all(matcher.last_result.reco_pos[:, 2] < 0)

def test_gap_alignment_does_not_steer_matching(matcher):
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher)}
    matcher.init_run(top_node)
    matcher.process_event(top_node)
    reference = matcher.last_result.pairs.copy()

    matcher.gap_rotation = FixedRotation(1.0)
    matcher.process_event(top_node)
    assert "gap_alignment" in matcher.last_result.rotations
    assert matcher.last_result.rotations["gap_alignment"][0].offset == 1.0
    assert np.array_equal(matcher.last_result.pairs, reference)

def test_profile_fit_rotation_steers_matching(matcher):
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher)}
    matcher.init_run(top_node)
    matcher.profile_rotation = FixedRotation(1.0)
    matcher.process_event(top_node)
    assert matcher.last_result.n_pairs < len(matcher.truth_pos)

def test_empty_event(matcher):
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher)}
    matcher.init_run(top_node)
    top_node[CM_CLUSTER_NODE] = CMFlashClusterContainer([], [], [], [])
    assert matcher.process_event(top_node) == EVENT_OK
    assert matcher.last_result.n_pairs == 0
    assert matcher.cm_flash_diffs.size() == 0

def test_end_writes_outputs(matcher, tmp_path):
    matcher.set_savehistograms(True)
    matcher.set_histogram_outputfile(str(tmp_path / "diag.root"))
    top_node = {CM_CLUSTER_NODE: clusters_at_truth(matcher)}
    matcher.init_run(top_node)
    matcher.profile_rotation = FixedRotation(0.0)
    matcher.process_event(top_node)
    assert matcher.end() == EVENT_OK

    assert (tmp_path / "r_phi.root").exists()
    assert (tmp_path / "diag.root").exists()
    assert matcher.diag["hnclus"].entries == len(matcher.truth_pos)

    dcc = read_distortion_container(str(tmp_path / "distortions.root"))
    assert dcc is not None
    assert dcc.h_dr[0].nbins_x == matcher.phibins + 2
    assert np.allclose(dcc.h_dr[0].values(), 0.0)

PHI_BIN = 2 * np.pi / R_PHI_PHI_BINS

def rotate(positions, angle):
    c, s = np.cos(angle), np.sin(angle)
    out = positions.copy()
    out[:, 0] = c * positions[:, 0] - s * positions[:, 1]
    out[:, 1] = s * positions[:, 0] + c * positions[:, 1]
    return out

def cluster_event(positions):
    return CMFlashClusterContainer(positions[:, 0], positions[:, 1], 5.0 * positions[:, 2],
                                   np.ones(len(positions), dtype=np.int64))

def test_profile_fit_sees_no_rotation_on_truth_pattern(tmp_path):
    m = build_matcher(str(tmp_path / "distortions.root"), str(tmp_path / "r_phi.root"))
    top_node = {CM_CLUSTER_NODE: cluster_event(m.truth_pos)}
    m.init_run(top_node)
    m.process_event(top_node)

    rotations = m.last_result.rotations
    for key in ("profile_fit", "profile_fit_pos", "profile_fit_neg"):
        for est in rotations[key]:
            assert est.sufficient
            assert abs(est.offset) < PHI_BIN
    assert m.last_result.n_pairs == len(m.truth_pos)

def test_profile_fit_recovers_rotation_beyond_phi_cut(tmp_path):
    m = build_matcher(str(tmp_path / "distortions.root"), str(tmp_path / "r_phi.root"))
    angle = 2 * PHI_BIN
    assert angle > m.phi_cut

    top_node = {CM_CLUSTER_NODE: cluster_event(rotate(m.truth_pos, angle))}
    m.init_run(top_node)
    m.process_event(top_node)

    rotations = m.last_result.rotations
    for key in ("profile_fit_pos", "profile_fit_neg"):
        for est in rotations[key]:
            assert abs(est.offset - angle) < PHI_BIN
    assert m.last_result.n_pairs == len(m.truth_pos)

def test_build_matcher_passes_grid_ranges(tmp_path):
    m = build_matcher(str(tmp_path / "distortions.root"), str(tmp_path / "r_phi.root"),
                      phibins=10, rbins=6, phi_min=0.5, phi_max=1.5, r_min=30.0, r_max=60.0)
    assert m.init_run({CM_CLUSTER_NODE: clusters_at_truth(m)}) == EVENT_OK

    h = m.dcc_event.h_dr[0]
    assert h.nbins_x == 12
    assert h.nbins_y == 8
    assert h.xaxis.xmin == pytest.approx(0.5 - 0.1)
    assert h.xaxis.xmax == pytest.approx(1.5 + 0.1)
    assert h.yaxis.xmin == pytest.approx(30.0 - 5.0)
    assert h.yaxis.xmax == pytest.approx(60.0 + 5.0)
