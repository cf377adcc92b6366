"""
Application of previously derived distortion corrections to cluster positions.
"""

import numpy as np
from scipy.interpolate import RegularGridInterpolator


class _Surface:
    """Bilinear interpolation of one (phi, r) correction histogram over its bin centers."""

    def __init__(self, hist):
        self.phi_centers = hist.xaxis.centers
        self.r_centers = hist.yaxis.centers
        self._interp = RegularGridInterpolator((self.phi_centers, self.r_centers), hist.values(),
                                               method="linear")

    def __call__(self, phi, r):
        phi = np.clip(phi, self.phi_centers[0], self.phi_centers[-1])
        r = np.clip(r, self.r_centers[0], self.r_centers[-1])
        return self._interp(np.column_stack((np.atleast_1d(phi), np.atleast_1d(r))))


class TpcDistortionCorrection:
    """
    Corrects positions with the R, P (r*dphi) and Z surfaces of a
    TpcDistortionCorrectionContainer. Side 0 covers z < 0, side 1 z >= 0.
    """

    def __init__(self):
        self._cache = {}

    def _surfaces(self, dcc):
        key = id(dcc)
        if key not in self._cache:
            self._cache[key] = [
                tuple(_Surface(h) for h in dcc.residual_histograms(side)) for side in range(2)
            ]
        return self._cache[key]

    def get_corrected_positions(self, positions, dcc):
        """Return corrected (N, 3) positions; dcc=None leaves them unchanged."""
        positions = np.asarray(positions, dtype=float).reshape(-1, 3)
        if dcc is None or len(positions) == 0:
            return positions.copy()

        x, y, z = positions[:, 0], positions[:, 1], positions[:, 2]
        r = np.hypot(x, y)
        phi = np.arctan2(y, x)
        phi = np.where(phi < 0, phi + 2.0 * np.pi, phi)

        out = positions.copy()
        surfaces = self._surfaces(dcc)
        for side in range(2):
            mask = (z < 0) if side == 0 else (z >= 0)
            if not np.any(mask):
                continue
            s_dr, s_dp, s_dz = surfaces[side]
            r_side = r[mask]
            phi_side = phi[mask]

            r_new = r_side - s_dr(phi_side, r_side)
            phi_new = phi_side - s_dp(phi_side, r_side) / np.where(r_side > 0, r_side, 1.0)
            out[mask, 0] = r_new * np.cos(phi_new)
            out[mask, 1] = r_new * np.sin(phi_new)
            out[mask, 2] = z[mask] - s_dz(phi_side, r_side)

        return out

    def get_corrected_position(self, position, dcc):
        return self.get_corrected_positions(position, dcc)[0]


def apply_distortion_corrections(positions, correction, *containers):
    """Apply each available container in turn (module edge, static, average, fluctuation)."""
    out = np.asarray(positions, dtype=float).reshape(-1, 3)
    for dcc in containers:
        if dcc is not None:
            out = correction.get_corrected_positions(out, dcc)
    return out
