"""
Fill the TPC seed QA histograms over a file of reconstructed tracks and vertices.
"""

import argparse
import time

from tpc_calib.calib_constants import EVENT_OK, ABORTRUN, ABORTEVENT
from tpc_calib.qa.tpc_seeds_qa import TpcSeedsQA, DCC_NODES
from tpc_calib.trackbase import ActsGeometry
from tpc_calib.utils.io_helpers import read_tracking_events, read_distortion_container, write_histograms
from tpc_calib.utils.node_helpers import add_node

TPC_LAYERS = range(7, 55)


def run_seeds_qa(input_file, output_file, **kwargs):
    """
    Keyword arguments: module_name, verbosity and, per distortion container,
    module_edge_file, static_file, average_file, fluctuation_file.
    """

    total_start = time.perf_counter()

    qa = TpcSeedsQA(kwargs.get("module_name", "TpcSeedsQA"), kwargs.get("verbosity", 0))

    top_node = {}
    add_node(top_node, qa.acts_geom_name, ActsGeometry())
    add_node(top_node, qa.g4_geom_name, list(TPC_LAYERS))
    for (label, node_name), key in zip(DCC_NODES, ("module_edge_file", "static_file",
                                                  "average_file", "fluctuation_file")):
        dcc = read_distortion_container(kwargs.get(key))
        if dcc is not None:
            add_node(top_node, node_name, dcc)

    status = None
    n_events = 0
    n_skipped = 0

    fill_start = time.perf_counter()
    for track_map, vertex_map, cluster_map in read_tracking_events(input_file):
        top_node[qa.track_map_name] = track_map
        top_node[qa.vertex_map_name] = vertex_map
        top_node[qa.cluster_container_name] = cluster_map

        if status is None:
            status = qa.init_run(top_node)
            if status in (ABORTRUN, ABORTEVENT):
                print("[ERROR] Run aborted, no events processed")
                return qa

        if qa.process_event(top_node) == EVENT_OK:
            n_events += 1
        else:
            n_skipped += 1
    fill_end = time.perf_counter()

    if status is None:
        print(f"[WARNING] No events found in {input_file}")
        return qa

    qa.end(top_node)

    write_start = time.perf_counter()
    write_histograms(output_file, qa.histograms())
    write_end = time.perf_counter()

    total_end = time.perf_counter()

    print(f"[INFO] Processed {n_events} events ({n_skipped} skipped)")
    print("\n--- Timing Summary ---")
    print(f"Fill time:      {fill_end - fill_start:.2f} s")
    print(f"Write time:     {write_end - write_start:.2f} s")
    print(f"Total runtime:  {total_end - total_start:.2f} s")

    return qa


def main():
    parser = argparse.ArgumentParser(description="TPC seed and vertex QA histograms.")
    parser.add_argument("input_file", help="ROOT file with tracks, vertices and clusters trees")
    parser.add_argument("--output", default="TpcSeedsQA.root")
    parser.add_argument("--name", default="TpcSeedsQA", help="Module name used in the histogram prefix")
    parser.add_argument("--module-edge", default=None, help="Module edge distortion file")
    parser.add_argument("--static", default=None, help="Static distortion file")
    parser.add_argument("--average", default=None, help="Average distortion file")
    parser.add_argument("--fluctuation", default=None, help="Fluctuation distortion file")
    parser.add_argument("-v", "--verbosity", type=int, default=0)
    args = parser.parse_args()

    run_seeds_qa(
        input_file=args.input_file,
        output_file=args.output,
        module_name=args.name,
        module_edge_file=args.module_edge,
        static_file=args.static,
        average_file=args.average,
        fluctuation_file=args.fluctuation,
        verbosity=args.verbosity,
    )


if __name__ == "__main__":
    main()
