import os
import numpy as np
import pandas as pd
import uproot

from tpc_calib.calib_constants import SIDE_EXTENSIONS
from tpc_calib.distortion.grid import TpcDistortionCorrectionContainer
from tpc_calib.trackbase import (
    CMFlashClusterContainer, SvtxTrack, SvtxVertex, TrkrCluster,
)
from tpc_calib.utils.hist_helpers import Hist2D

CM_CLUSTER_BRANCHES = ["x", "y", "z", "nclusters", "isRGap"]


def _ensure_dir(path):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def read_cm_clusters(input_file, tree_name="tree"):
    """
    Yield one CMFlashClusterContainer per entry of the central membrane cluster tree.
    """
    with uproot.open(input_file) as f:
        if tree_name not in f:
            raise RuntimeError(f"Could not find '{tree_name}' in {input_file}")
        tree = f[tree_name]
        branches = [b for b in CM_CLUSTER_BRANCHES if b in tree.keys()]
        arrays = tree.arrays(branches, library="np")

    n_events = len(arrays["x"])
    for i in range(n_events):
        is_rgap = arrays["isRGap"][i] if "isRGap" in arrays else None
        nclusters = arrays["nclusters"][i] if "nclusters" in arrays else np.ones(len(arrays["x"][i]))
        yield CMFlashClusterContainer(arrays["x"][i], arrays["y"][i], arrays["z"][i], nclusters, is_rgap)


def write_distortion_container(output_file, dcc):
    """Write the per-side R, P, Z and entries surfaces of a distortion container."""
    _ensure_dir(output_file)
    with uproot.recreate(output_file) as f:
        for h in dcc.all_histograms():
            f[h.name] = h.to_numpy()
    print(f"[INFO] Wrote distortion corrections to '{output_file}'")


def _hist2d_from_numpy(name, values, xedges, yedges):
    h = Hist2D(name, name, len(xedges) - 1, xedges[0], xedges[-1], len(yedges) - 1, yedges[0], yedges[-1])
    h.sumw[1:-1, 1:-1] = values
    return h


def read_distortion_container(input_file):
    """
    Read a distortion container written by write_distortion_container.

    Returns None when the file is missing.
    """
    if not input_file or not os.path.isfile(input_file):
        return None

    hists = {}
    with uproot.open(input_file) as f:
        for kind in ("hIntDistortionR", "hIntDistortionP", "hIntDistortionZ", "hEntries"):
            hists[kind] = []
            for ext in SIDE_EXTENSIONS:
                key = f"{kind}{ext}"
                if key not in f:
                    hists[kind].append(None)
                    continue
                values, xedges, yedges = f[key].to_numpy()
                hists[kind].append(_hist2d_from_numpy(key, values, xedges, yedges))

    for kind in ("hIntDistortionR", "hIntDistortionP", "hIntDistortionZ"):
        if any(h is None for h in hists[kind]):
            raise RuntimeError(f"Distortion file {input_file} is missing {kind} histograms")

    return TpcDistortionCorrectionContainer.from_histograms(
        hists["hIntDistortionR"], hists["hIntDistortionP"], hists["hIntDistortionZ"], hists["hEntries"])


def write_histograms(output_file, hists, graphs=None):
    """
    Write histograms (anything with name/to_numpy) and (phi, r) graphs, stored
    as two-branch trees, to a new file.
    """
    _ensure_dir(output_file)
    with uproot.recreate(output_file) as f:
        for h in hists:
            f[h.name] = h.to_numpy()
        for name, (phi, r) in (graphs or {}).items():
            if len(phi) == 0:
                continue
            f[name] = {"phi": np.asarray(phi, dtype=np.float64), "r": np.asarray(r, dtype=np.float64)}
    print(f"[INFO] Wrote {len(hists)} histograms to '{output_file}'")


DIFFERENCE_COLUMNS = ["event", "key", "nclusters", "truth_phi", "truth_r", "truth_z",
                      "reco_phi", "reco_r", "reco_z"]


def differences_to_frame(container, event=0):
    rows = []
    for key, diff in container.get_differences():
        rows.append({
            "event": event,
            "key": key,
            "nclusters": diff.nclusters,
            "truth_phi": diff.truth_phi,
            "truth_r": diff.truth_r,
            "truth_z": diff.truth_z,
            "reco_phi": diff.reco_phi,
            "reco_r": diff.reco_r,
            "reco_z": diff.reco_z,
        })
    return pd.DataFrame(rows, columns=DIFFERENCE_COLUMNS)


def dump_differences(frames, output_path):
    """Concatenate per-event difference frames and write them as one TSV."""
    df = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=DIFFERENCE_COLUMNS)
    _ensure_dir(output_path)
    df.to_csv(output_path, sep="\t", index=False)
    return df


def read_tracking_events(input_file, track_tree="tracks", vertex_tree="vertices", cluster_tree="clusters"):
    """
    Yield (track_map, vertex_map, cluster_map) per event from flat per-event trees.

    Tracks: id, charge, px, py, pz, x, y, z, quality, vertex_id, crossing and a
    jagged cluster_keys branch. Vertices: id, x, y, z, t0, chisq, ndof.
    Clusters: key, x, y, z, phi_size, z_size (global positions).
    """
    with uproot.open(input_file) as f:
        for name in (track_tree, vertex_tree, cluster_tree):
            if name not in f:
                raise RuntimeError(f"Could not find '{name}' in {input_file}")
        tracks = f[track_tree].arrays(library="np")
        vertices = f[vertex_tree].arrays(library="np")
        clusters = f[cluster_tree].arrays(library="np")

    n_events = len(tracks["id"])
    for i in range(n_events):
        track_map = {}
        for t in range(len(tracks["id"][i])):
            track_id = int(tracks["id"][i][t])
            track_map[track_id] = SvtxTrack(
                track_id=track_id,
                charge=int(tracks["charge"][i][t]),
                px=float(tracks["px"][i][t]),
                py=float(tracks["py"][i][t]),
                pz=float(tracks["pz"][i][t]),
                x=float(tracks["x"][i][t]),
                y=float(tracks["y"][i][t]),
                z=float(tracks["z"][i][t]),
                quality=float(tracks["quality"][i][t]),
                vertex_id=int(tracks["vertex_id"][i][t]),
                crossing=int(tracks["crossing"][i][t]),
                cluster_keys=[int(k) for k in tracks["cluster_keys"][i][t]],
            )

        vertex_map = {}
        for v in range(len(vertices["id"][i])):
            vertex_id = int(vertices["id"][i][v])
            vertex_map[vertex_id] = SvtxVertex(
                vertex_id=vertex_id,
                x=float(vertices["x"][i][v]),
                y=float(vertices["y"][i][v]),
                z=float(vertices["z"][i][v]),
                t0=float(vertices["t0"][i][v]),
                chisq=float(vertices["chisq"][i][v]),
                ndof=int(vertices["ndof"][i][v]),
                track_ids=[tid for tid, trk in track_map.items() if trk.vertex_id == vertex_id],
            )

        cluster_map = {}
        for c in range(len(clusters["key"][i])):
            cluster_map[int(clusters["key"][i][c])] = TrkrCluster(
                x=float(clusters["x"][i][c]),
                y=float(clusters["y"][i][c]),
                z=float(clusters["z"][i][c]),
                phi_size=int(clusters["phi_size"][i][c]),
                z_size=int(clusters["z_size"][i][c]),
            )

        yield track_map, vertex_map, cluster_map
