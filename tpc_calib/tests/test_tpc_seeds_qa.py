import pytest
from tpc_calib.calib_constants import EVENT_OK, ABORTEVENT, ABORTRUN
from tpc_calib.qa.tpc_seeds_qa import TpcSeedsQA, get_dca, count_clusters, build_layer_region_map
from tpc_calib.trackbase import (
    ActsGeometry, SvtxTrack, SvtxVertex, TrkrCluster, TPC_ID, MVTX_ID, MICROMEGAS_ID, make_cluster_key,
)

def make_event(n_tpc=30, z=5.0, vertex_id=0, charge=1, pt=2.0):
    cluster_map = {}
    keys = []
    for i in range(n_tpc):
        key = make_cluster_key(TPC_ID, 10, i)
        cluster_map[key] = TrkrCluster(x=30.0, y=0.0, z=z, phi_size=1, z_size=2)
        keys.append(key)
    mvtx_key = make_cluster_key(MVTX_ID, 1, 0)
    cluster_map[mvtx_key] = TrkrCluster(x=2.5, y=0.0, z=z, phi_size=3, z_size=1)
    keys.append(mvtx_key)

    track = SvtxTrack(track_id=0, charge=charge, px=pt, py=0.0, pz=0.0, x=0.0, y=0.1, z=0.3,
                      quality=2.0, vertex_id=vertex_id, cluster_keys=keys)
    vertex = SvtxVertex(vertex_id=0, x=0.0, y=0.0, z=0.0, t0=0.0, chisq=4.0, ndof=2, track_ids=[0])
    return {
        "SvtxTrackMap": {0: track},
        "SvtxVertexMap": {0: vertex},
        "TRKR_CLUSTER": cluster_map,
        "ActsGeometry": ActsGeometry(),
        "CYLINDERCELLGEOM_SVTX": list(range(7, 55)),
    }

def test_get_dca():
    track = SvtxTrack(track_id=0, charge=1, px=0.0, py=1.0, pz=0.0, x=1.0, y=0.0, z=2.0)
    assert get_dca(track) == pytest.approx((1.0, 2.0))
    assert get_dca(track, (1.0, 0.0, 0.5)) == pytest.approx((0.0, 1.5))

def test_count_clusters():
    keys = [make_cluster_key(TPC_ID, 10, i) for i in range(3)] + [make_cluster_key(MICROMEGAS_ID, 55, 0)]
    counts = count_clusters(keys)
    assert counts[TPC_ID] == 3
    assert counts[MICROMEGAS_ID] == 1
    assert counts[MVTX_ID] == 0

def test_layer_region_map():
    region_map = build_layer_region_map(range(0, 57))
    assert region_map[7] == 0
    assert region_map[22] == 0
    assert region_map[23] == 1
    assert region_map[54] == 2
    assert 3 not in region_map
    assert 55 not in region_map

def test_missing_required_node_aborts():
    top_node = make_event()
    del top_node["SvtxTrackMap"]
    assert TpcSeedsQA().init_run(top_node) == ABORTEVENT

def test_missing_layer_geometry_aborts_run():
    top_node = make_event()
    del top_node["CYLINDERCELLGEOM_SVTX"]
    assert TpcSeedsQA().init_run(top_node) == ABORTRUN

def test_histogram_prefix():
    qa = TpcSeedsQA("MyQA")
    qa.create_histos()
    assert all(name.startswith("h_MyQA_") for name in qa.histos)
    assert "h_MyQA_clusphisize1frac_side1_2" in qa.histos

def test_track_histograms():
    top_node = make_event()
    qa = TpcSeedsQA()
    assert qa.init_run(top_node) == EVENT_OK
    assert qa.process_event(top_node) == EVENT_OK

    assert qa.h("nrecotracks1d").entries == 1
    assert qa.h("pt_pos").get_bin_content(qa.h("pt_pos").find_bin(2.0)) == 1.0
    assert qa.h("pt_neg").entries == 0
    assert qa.h("ntpc_pos").get_bin_content(qa.h("ntpc_pos").find_bin(30)) == 1.0
    assert qa.h("ntpc_fullpt_pos").entries == 1
    assert qa.h("ntrack_isfromvtx_pos").get_bin_content(2) == 1.0
    assert qa.h("ntrack_isfromvtx_pos").get_bin_content(1) == 0.0
    assert qa.h("dcaxyvtx_phi_pos").entries == 1
    assert qa.h("vertexchi2dof").get_bin_content(qa.h("vertexchi2dof").find_bin(2.0)) == 1.0
    assert qa.h("ntrackspervertex").get_bin_content(qa.h("ntrackspervertex").find_bin(1)) == 1.0

def test_track_without_vertex():
    top_node = make_event(vertex_id=5)
    qa = TpcSeedsQA()
    qa.init_run(top_node)
    qa.process_event(top_node)
    assert qa.h("ntrack_isfromvtx_pos").get_bin_content(1) == 1.0
    assert qa.h("dcaxyvtx_phi_pos").entries == 0
    assert qa.h("dcaxyorigin_phi_pos").entries == 1

def test_phi_size_per_region_and_side():
    top_node = make_event(z=5.0)
    qa = TpcSeedsQA()
    qa.init_run(top_node)
    qa.process_event(top_node)
    # layer 10 is in the inner region, z > 0 is side 1
    assert qa.h("clusphisize1pT_side1_0").entries == 30
    assert qa.h("clusphisizegeq1pT_side1_0").entries == 30
    assert qa.h("clusphisize1pT_side0_0").entries == 0
    assert qa.h("clusphisize1frac_side1_0").entries == 1
    assert qa.h("clusphisize1frac_side0_0").entries == 0

def test_phi_size_requires_enough_tpc_clusters():
    top_node = make_event(n_tpc=20)
    qa = TpcSeedsQA()
    qa.init_run(top_node)
    qa.process_event(top_node)
    assert qa.h("clusphisize1pT_side1_0").entries == 0
    assert qa.h("cluster_phisize1_fraction_pos").entries == 1

def test_low_pt_track_skips_pt_cut_histograms():
    top_node = make_event(pt=0.5, charge=-1)
    qa = TpcSeedsQA()
    qa.init_run(top_node)
    qa.process_event(top_node)
    assert qa.h("ntpc_fullpt_neg").entries == 1
    assert qa.h("ntpc_neg").entries == 0
    assert qa.h("nrecotracks1d_ptg1").get_bin_content(qa.h("nrecotracks1d_ptg1").find_bin(0)) == 1.0
