"""
Event data records exchanged between the framework and the calibration/QA passes.
"""

from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np

# Tracker subsystem ids, as encoded in the cluster keys
MVTX_ID = 1
INTT_ID = 2
TPC_ID = 3
MICROMEGAS_ID = 4

_HITSET_SHIFT = 32
_TRKR_ID_SHIFT = 24
_LAYER_SHIFT = 16


def make_cluster_key(trkr_id, layer, cluster_id=0):
    hitset = (int(trkr_id) << _TRKR_ID_SHIFT) | (int(layer) << _LAYER_SHIFT)
    return (hitset << _HITSET_SHIFT) | int(cluster_id)


def get_trkr_id(ckey):
    return (int(ckey) >> (_HITSET_SHIFT + _TRKR_ID_SHIFT)) & 0xFF


def get_layer(ckey):
    return (int(ckey) >> (_HITSET_SHIFT + _LAYER_SHIFT)) & 0xFF


class CMFlashClusterContainer:
    """Reconstructed central membrane clusters of one event, stored column-wise."""

    def __init__(self, x, y, z, nclusters, is_rgap=None):
        self.x = np.asarray(x, dtype=float)
        self.y = np.asarray(y, dtype=float)
        self.z = np.asarray(z, dtype=float)
        self.nclusters = np.asarray(nclusters, dtype=np.int64)
        if is_rgap is None:
            is_rgap = np.zeros(self.x.size, dtype=bool)
        self.is_rgap = np.asarray(is_rgap, dtype=bool)

    def size(self):
        return self.x.size

    def positions(self):
        return np.column_stack((self.x, self.y, self.z))


@dataclass
class CMFlashDifference:
    truth_phi: float
    truth_r: float
    truth_z: float
    reco_phi: float
    reco_r: float
    reco_z: float
    nclusters: int


class CMFlashDifferenceContainer:
    def __init__(self):
        self._map = {}

    def add_difference_specify_key(self, key, difference):
        self._map[int(key)] = difference

    def get_differences(self):
        return sorted(self._map.items())

    def size(self):
        return len(self._map)

    def clear(self):
        self._map.clear()


@dataclass
class TrkrCluster:
    x: float
    y: float
    z: float
    phi_size: int = 1
    z_size: int = 1


@dataclass
class SvtxTrack:
    track_id: int
    charge: int
    px: float
    py: float
    pz: float
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    quality: float = 0.0
    vertex_id: int = -1
    crossing: int = 0
    cluster_keys: List[int] = field(default_factory=list)

    @property
    def pt(self):
        return float(np.hypot(self.px, self.py))

    @property
    def phi(self):
        return float(np.arctan2(self.py, self.px))

    @property
    def eta(self):
        p = np.sqrt(self.px ** 2 + self.py ** 2 + self.pz ** 2)
        if p == abs(self.pz):
            return float(np.sign(self.pz) * np.inf)
        return float(0.5 * np.log((p + self.pz) / (p - self.pz)))


@dataclass
class SvtxVertex:
    vertex_id: int
    x: float
    y: float
    z: float
    t0: float = 0.0
    chisq: float = 0.0
    ndof: int = 1
    track_ids: List[int] = field(default_factory=list)

    def size_tracks(self):
        return len(self.track_ids)


class ActsGeometry:
    """Global-position lookup for clusters whose coordinates are already global."""

    def get_global_position(self, ckey, cluster):
        return np.array([cluster.x, cluster.y, cluster.z], dtype=float)


SvtxTrackMap = Dict[int, SvtxTrack]
SvtxVertexMap = Dict[int, SvtxVertex]
TrkrClusterContainer = Dict[int, TrkrCluster]
