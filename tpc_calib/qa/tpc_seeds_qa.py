"""
Quality-assurance histograms for reconstructed TPC seeds and vertices.
"""

import numpy as np

from tpc_calib.calib_constants import (
    EVENT_OK, ABORTEVENT, ABORTRUN,
    TPC_REGION_LAYER_LOW, TPC_REGION_LAYER_HIGH, QA_PT_CUT, QA_MIN_TPC_CLUSTERS,
)
from tpc_calib.distortion.correction import TpcDistortionCorrection, apply_distortion_corrections
from tpc_calib.trackbase import MVTX_ID, INTT_ID, TPC_ID, MICROMEGAS_ID, get_trkr_id, get_layer
from tpc_calib.utils.hist_helpers import Hist1D, Hist2D, Profile2D
from tpc_calib.utils.node_helpers import MissingNodeError, find_node

PHI_LOW = -3.14159
PHI_HIGH = 3.1459

DCC_NODES = (
    ("module edge", "TpcDistortionCorrectionContainerModuleEdge"),
    ("static", "TpcDistortionCorrectionContainerStatic"),
    ("average", "TpcDistortionCorrectionContainerAverage"),
    ("fluctuation", "TpcDistortionCorrectionContainerFluctuation"),
)


def get_dca(track, vertex=(0.0, 0.0, 0.0)):
    """
    Transverse and longitudinal distance of closest approach of the track
    reference point to a vertex, in the frame rotated along the track momentum.
    """
    dx = track.x - vertex[0]
    dy = track.y - vertex[1]
    dz = track.z - vertex[2]
    pt = np.hypot(track.px, track.py)
    if pt == 0:
        return float(np.hypot(dx, dy)), float(dz)
    return float((track.py * dx - track.px * dy) / pt), float(dz)


def count_clusters(cluster_keys):
    """Number of clusters per tracker subsystem."""
    counts = {MVTX_ID: 0, INTT_ID: 0, TPC_ID: 0, MICROMEGAS_ID: 0}
    for ckey in cluster_keys:
        trkr_id = get_trkr_id(ckey)
        if trkr_id in counts:
            counts[trkr_id] += 1
    return counts


def build_layer_region_map(layers):
    """Map each TPC layer to its region: 0 inner, 1 mid, 2 outer."""
    region_map = {}
    for layer in layers:
        for region, (low, high) in enumerate(zip(TPC_REGION_LAYER_LOW, TPC_REGION_LAYER_HIGH)):
            if low <= layer <= high:
                region_map[layer] = region
    return region_map


class TpcSeedsQA:

    def __init__(self, name="TpcSeedsQA", verbosity=0):
        self.name = name
        self.verbosity = verbosity

        self.track_map_name = "SvtxTrackMap"
        self.cluster_container_name = "TRKR_CLUSTER"
        self.acts_geom_name = "ActsGeometry"
        self.g4_geom_name = "CYLINDERCELLGEOM_SVTX"
        self.vertex_map_name = "SvtxVertexMap"

        self.histos = {}
        self.layers = set()
        self.layer_region_map = {}
        self.dccs = [None] * len(DCC_NODES)
        self.distortion_correction = TpcDistortionCorrection()

    def get_histo_prefix(self):
        return f"h_{self.name}_"

    def _add(self, hist):
        self.histos[hist.name] = hist

    def h(self, name):
        return self.histos[self.get_histo_prefix() + name]

    def create_histos(self):
        p = self.get_histo_prefix()
        self.histos = {}

        for charge in ("pos", "neg"):
            self._add(Hist1D(f"{p}ntpc_fullpt_{charge}", f"TPC clusters per {charge} track", 55, -0.5, 54.5))
            self._add(Hist1D(f"{p}ntpc_{charge}", f"TPC clusters per {charge} track (pT>1GeV)", 55, -0.5, 54.5))
            self._add(Hist1D(f"{p}ntpot_{charge}", f"TPOT clusters per {charge} track (pT>1GeV)", 2, -0.5, 1.5))
            self._add(Hist2D(f"{p}ntpc_quality_{charge}", f"TPC clusters vs quality, {charge} track (pT>1GeV)",
                             55, -0.5, 54.5, 100, 0, 10))

        for suffix in ("", "_pos", "_neg", "_ptg1", "_ptg1_pos", "_ptg1_neg"):
            self._add(Hist1D(f"{p}nrecotracks1d{suffix}", f"Number of reconstructed tracks{suffix}", 50, 0, 200))

        for suffix in ("", "_pos", "_neg"):
            self._add(Hist1D(f"{p}pt{suffix}", f"pT distribution of reconstructed tracks{suffix}", 100, 0, 10))

        for charge in ("pos", "neg"):
            self._add(Hist2D(f"{p}nrecotracks_{charge}", f"Reconstructed {charge} tracks (pT>1GeV)",
                             100, -1.1, 1.1, 300, PHI_LOW, PHI_HIGH))
            self._add(Profile2D(f"{p}avgnclus_eta_phi_{charge}", f"Average clusters per {charge} track (pT>1GeV)",
                                100, -1.1, 1.1, 300, PHI_LOW, PHI_HIGH))
            for ref in ("origin", "vtx"):
                self._add(Hist2D(f"{p}dcaxy{ref}_phi_{charge}", f"DCA xy {ref} vs phi, {charge} track",
                                 300, PHI_LOW, PHI_HIGH, 90, -3, 3))
                self._add(Hist2D(f"{p}dcaz{ref}_phi_{charge}", f"DCA z {ref} vs phi, {charge} track",
                                 300, PHI_LOW, PHI_HIGH, 100, -10, 10))
            self._add(Hist1D(f"{p}ntrack_isfromvtx_{charge}", f"{charge} tracks associated to a vertex", 2, -0.5, 1.5))
            self._add(Hist1D(f"{p}cluster_phisize1_fraction_{charge}",
                             f"Fraction of TPC clusters with phi size 1, {charge} track (pT>1GeV)", 100, 0, 1))

        self._add(Hist1D(f"{p}nrecovertices", "Num of reco vertices per event", 20, 0, 20))
        self._add(Hist1D(f"{p}vx", "Vertex x", 100, -2.5, 2.5))
        self._add(Hist1D(f"{p}vy", "Vertex y", 100, -2.5, 2.5))
        self._add(Hist2D(f"{p}vx_vy", "Vertex x vs y", 100, -2.5, 2.5, 100, -2.5, 2.5))
        self._add(Hist1D(f"{p}vz", "Vertex z", 50, -25, 25))
        self._add(Hist1D(f"{p}vt", "Vertex t", 100, -1000, 20000))
        self._add(Hist1D(f"{p}vertexchi2dof", "Vertex chi2/ndof", 100, 0, 20))
        self._add(Hist1D(f"{p}ntrackspervertex", "Num of tracks per vertex", 50, 0, 50))

        for region in range(3):
            for side in (0, 1):
                self._add(Hist1D(f"{p}clusphisize1pT_side{side}_{region}",
                                 f"TPC Cluster Phi Size == 1, side {side}, region_{region}", 4, 1, 3.2))
                self._add(Hist1D(f"{p}clusphisizegeq1pT_side{side}_{region}",
                                 f"TPC Cluster Phi Size >= 1, side {side}, region_{region}", 4, 1, 3.2))
                self._add(Hist1D(f"{p}clusphisize1frac_side{side}_{region}",
                                 f"Fraction of TPC Cluster Phi Size == 1, side {side}, region_{region}", 100, 0, 1))

    def init_run(self, top_node):
        self.create_histos()

        try:
            for node_name in (self.track_map_name, self.cluster_container_name,
                              self.acts_geom_name, self.vertex_map_name):
                find_node(top_node, node_name, required=True, module_name=self.name)
        except MissingNodeError as err:
            print(f"[ERROR] {err} Missing node(s), can't continue")
            return ABORTEVENT

        g4geom = find_node(top_node, self.g4_geom_name)
        if g4geom is None:
            print(f"[ERROR] {self.name}: unable to find DST node {self.g4_geom_name}")
            return ABORTRUN

        for i, (label, node_name) in enumerate(DCC_NODES):
            self.dccs[i] = find_node(top_node, node_name)
            if self.dccs[i] is not None:
                print(f"[INFO] {self.name}: found {label} TPC distortion correction container")

        self.layers = set(int(layer) for layer in g4geom)
        self.layer_region_map = build_layer_region_map(self.layers)
        return EVENT_OK

    def _global_position(self, ckey, cluster, acts_geom):
        pos = acts_geom.get_global_position(ckey, cluster)
        if get_trkr_id(ckey) == TPC_ID:
            pos = apply_distortion_corrections(pos, self.distortion_correction, *self.dccs)[0]
        return pos

    def _fill_tracks(self, track_map, vertex_map, cluster_map):
        self.h("nrecotracks1d").fill(len(track_map))

        n_charge = {1: 0, -1: 0}
        n_charge_ptg1 = {1: 0, -1: 0}
        # [not from a vertex, from a vertex]
        from_vtx = {1: [0, 0], -1: [0, 0]}

        for track in track_map.values():
            if track is None:
                continue

            charge = track.charge
            pt = track.pt
            phi = track.phi
            eta = track.eta

            self.h("pt").fill(pt)
            if charge not in (1, -1):
                continue
            tag = "pos" if charge == 1 else "neg"

            n_charge[charge] += 1
            if pt > QA_PT_CUT:
                n_charge_ptg1[charge] += 1
            self.h(f"pt_{tag}").fill(pt)

            counts = count_clusters(track.cluster_keys)
            ntpc = counts[TPC_ID]
            nmms = counts[MICROMEGAS_ID]
            ntpc_phisize1 = sum(1 for ckey in track.cluster_keys
                                if get_trkr_id(ckey) == TPC_ID and cluster_map[ckey].phi_size == 1)

            dcaxy_origin, dcaz_origin = get_dca(track)

            vertex = vertex_map.get(track.vertex_id)
            if vertex is None:
                from_vtx[charge][0] += 1
            else:
                from_vtx[charge][1] += 1
                dcaxy_vtx, dcaz_vtx = get_dca(track, (vertex.x, vertex.y, vertex.z))
                self.h(f"dcaxyvtx_phi_{tag}").fill(phi, dcaxy_vtx)
                self.h(f"dcazvtx_phi_{tag}").fill(phi, dcaz_vtx)

            self.h(f"ntpc_fullpt_{tag}").fill(ntpc)
            self.h(f"dcaxyorigin_phi_{tag}").fill(phi, dcaxy_origin)
            self.h(f"dcazorigin_phi_{tag}").fill(phi, dcaz_origin)

            if pt > QA_PT_CUT:
                self.h(f"nrecotracks_{tag}").fill(eta, phi)
                self.h(f"ntpc_{tag}").fill(ntpc)
                self.h(f"ntpot_{tag}").fill(nmms)
                self.h(f"ntpc_quality_{tag}").fill(ntpc, track.quality)
                self.h(f"avgnclus_eta_phi_{tag}").fill(eta, phi, ntpc)
                if ntpc > 0:
                    self.h(f"cluster_phisize1_fraction_{tag}").fill(ntpc_phisize1 / ntpc)

        self.h("nrecotracks1d_pos").fill(n_charge[1])
        self.h("nrecotracks1d_neg").fill(n_charge[-1])
        self.h("nrecotracks1d_ptg1_pos").fill(n_charge_ptg1[1])
        self.h("nrecotracks1d_ptg1_neg").fill(n_charge_ptg1[-1])
        self.h("nrecotracks1d_ptg1").fill(n_charge_ptg1[1] + n_charge_ptg1[-1])

        for charge, tag in ((1, "pos"), (-1, "neg")):
            h = self.h(f"ntrack_isfromvtx_{tag}")
            h.set_bin_content(1, h.get_bin_content(1) + from_vtx[charge][0])
            h.set_bin_content(2, h.get_bin_content(2) + from_vtx[charge][1])

    def _fill_vertices(self, vertex_map):
        self.h("nrecovertices").fill(len(vertex_map))
        for vertex in vertex_map.values():
            if vertex is None:
                continue
            self.h("vx").fill(vertex.x)
            self.h("vy").fill(vertex.y)
            self.h("vx_vy").fill(vertex.x, vertex.y)
            self.h("vz").fill(vertex.z)
            self.h("vt").fill(vertex.t0)
            if vertex.ndof != 0:
                self.h("vertexchi2dof").fill(vertex.chisq / vertex.ndof)
            self.h("ntrackspervertex").fill(vertex.size_tracks())

    def _fill_cluster_sizes(self, track_map, cluster_map, acts_geom):
        """
        Per region and side: pT of tracks for clusters with phi size 1 (and any
        phi size), and the fraction of phi-size-1 clusters per track. Only
        clusters with z size > 1 on tracks with pT > 1 GeV and more than 25 TPC
        clusters count.
        """
        for track in track_map.values():
            if track is None:
                continue
            pt = track.pt
            ntpc = count_clusters(track.cluster_keys)[TPC_ID]

            n_phisize1 = np.zeros((3, 2), dtype=int)
            n_all = np.zeros((3, 2), dtype=int)

            if pt > QA_PT_CUT and ntpc > QA_MIN_TPC_CLUSTERS:
                for ckey in track.cluster_keys:
                    region = self.layer_region_map.get(get_layer(ckey))
                    if region is None:
                        continue
                    cluster = cluster_map[ckey]
                    z = self._global_position(ckey, cluster, acts_geom)[2]
                    if z == 0 or cluster.z_size <= 1:
                        continue
                    side = 0 if z < 0 else 1

                    if cluster.phi_size == 1:
                        self.h(f"clusphisize1pT_side{side}_{region}").fill(pt)
                        n_phisize1[region, side] += 1
                    if cluster.phi_size >= 1:
                        self.h(f"clusphisizegeq1pT_side{side}_{region}").fill(pt)
                        n_all[region, side] += 1

            for region in range(3):
                for side in (0, 1):
                    if n_all[region, side] > 0:
                        self.h(f"clusphisize1frac_side{side}_{region}").fill(
                            n_phisize1[region, side] / n_all[region, side])

    def process_event(self, top_node):
        track_map = find_node(top_node, self.track_map_name)
        vertex_map = find_node(top_node, self.vertex_map_name)
        cluster_map = find_node(top_node, self.cluster_container_name)
        acts_geom = find_node(top_node, self.acts_geom_name)
        if track_map is None or vertex_map is None or cluster_map is None or acts_geom is None:
            print(f"[WARNING] {self.name}: missing event node(s), skipping event")
            return ABORTEVENT

        self._fill_tracks(track_map, vertex_map, cluster_map)
        self._fill_vertices(vertex_map)
        self._fill_cluster_sizes(track_map, cluster_map, acts_geom)

        if self.verbosity > 0:
            print(f"[INFO] {self.name}: {len(track_map)} tracks, {len(vertex_map)} vertices")
        return EVENT_OK

    def end(self, top_node=None):
        return EVENT_OK

    def histograms(self):
        return list(self.histos.values())
