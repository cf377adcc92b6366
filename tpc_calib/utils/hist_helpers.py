"""
Binned accumulators used as the numeric backend of the calibration and QA passes.

Bin numbering follows the ROOT convention: bin 0 is underflow, bins 1..n are
the regular bins and bin n+1 is overflow.
"""

import numpy as np


class Axis:
    def __init__(self, nbins, xmin, xmax):
        self.nbins = int(nbins)
        self.xmin = float(xmin)
        self.xmax = float(xmax)
        self.width = (self.xmax - self.xmin) / self.nbins

    def find_bin(self, x):
        """Return the bin index of x (scalar or array)."""
        x = np.asarray(x, dtype=float)
        idx = np.floor((x - self.xmin) / self.width).astype(int) + 1
        idx = np.where(x < self.xmin, 0, idx)
        idx = np.where(x >= self.xmax, self.nbins + 1, idx)
        idx = np.clip(idx, 0, self.nbins + 1)
        return int(idx) if idx.ndim == 0 else idx

    def bin_center(self, i):
        return self.xmin + (np.asarray(i) - 0.5) * self.width

    def bin_low_edge(self, i):
        return self.xmin + (np.asarray(i) - 1) * self.width

    @property
    def centers(self):
        return self.bin_center(np.arange(1, self.nbins + 1))

    @property
    def edges(self):
        return np.linspace(self.xmin, self.xmax, self.nbins + 1)


class Hist1D:
    def __init__(self, name, title, nbins, xmin, xmax):
        self.name = name
        self.title = title
        self.xaxis = Axis(nbins, xmin, xmax)
        self.reset()

    def reset(self):
        self.sumw = np.zeros(self.xaxis.nbins + 2)
        self.sumw2 = np.zeros(self.xaxis.nbins + 2)
        self.entries = 0

    @property
    def nbins(self):
        return self.xaxis.nbins

    def fill(self, x, w=1.0):
        x = np.atleast_1d(np.asarray(x, dtype=float))
        w = np.broadcast_to(np.asarray(w, dtype=float), x.shape)
        idx = self.xaxis.find_bin(x)
        np.add.at(self.sumw, idx, w)
        np.add.at(self.sumw2, idx, w * w)
        self.entries += x.size

    def find_bin(self, x):
        return self.xaxis.find_bin(x)

    def get_bin_center(self, i):
        return float(self.xaxis.bin_center(i))

    def get_bin_content(self, i):
        return float(self.sumw[i])

    def set_bin_content(self, i, value):
        self.sumw[i] = value

    def get_bin_error(self, i):
        return float(np.sqrt(self.sumw2[i]))

    def set_bin_error(self, i, error):
        self.sumw2[i] = error * error

    def get_maximum(self):
        return float(self.sumw[1:-1].max())

    def values(self):
        return self.sumw[1:-1].copy()

    def errors(self):
        return np.sqrt(self.sumw2[1:-1])

    def integral(self):
        return float(self.sumw[1:-1].sum())

    def to_numpy(self):
        return self.values(), self.xaxis.edges


class Hist2D:
    def __init__(self, name, title, nx, xmin, xmax, ny, ymin, ymax):
        self.name = name
        self.title = title
        self.xaxis = Axis(nx, xmin, xmax)
        self.yaxis = Axis(ny, ymin, ymax)
        self.reset()

    def reset(self):
        shape = (self.xaxis.nbins + 2, self.yaxis.nbins + 2)
        self.sumw = np.zeros(shape)
        self.sumw2 = np.zeros(shape)
        self.entries = 0

    @property
    def nbins_x(self):
        return self.xaxis.nbins

    @property
    def nbins_y(self):
        return self.yaxis.nbins

    def fill(self, x, y, w=1.0):
        x = np.atleast_1d(np.asarray(x, dtype=float))
        y = np.atleast_1d(np.asarray(y, dtype=float))
        w = np.broadcast_to(np.asarray(w, dtype=float), x.shape)
        ix = self.xaxis.find_bin(x)
        iy = self.yaxis.find_bin(y)
        np.add.at(self.sumw, (ix, iy), w)
        np.add.at(self.sumw2, (ix, iy), w * w)
        self.entries += x.size

    def get_bin_content(self, ix, iy):
        return float(self.sumw[ix, iy])

    def set_bin_content(self, ix, iy, value):
        self.sumw[ix, iy] = value

    def get_bin_error(self, ix, iy):
        return float(np.sqrt(self.sumw2[ix, iy]))

    def set_bin_error(self, ix, iy, error):
        self.sumw2[ix, iy] = error * error

    def projection_x(self, name, first_ybin, last_ybin):
        """Sum y bins first_ybin..last_ybin (inclusive) into a 1D histogram over x."""
        proj = Hist1D(name, name, self.xaxis.nbins, self.xaxis.xmin, self.xaxis.xmax)
        proj.sumw = self.sumw[:, first_ybin:last_ybin + 1].sum(axis=1)
        proj.sumw2 = self.sumw2[:, first_ybin:last_ybin + 1].sum(axis=1)
        proj.entries = int(proj.sumw[1:-1].sum())
        return proj

    def projection_y(self, name, first_xbin, last_xbin):
        """Sum x bins first_xbin..last_xbin (inclusive) into a 1D histogram over y."""
        proj = Hist1D(name, name, self.yaxis.nbins, self.yaxis.xmin, self.yaxis.xmax)
        proj.sumw = self.sumw[first_xbin:last_xbin + 1, :].sum(axis=0)
        proj.sumw2 = self.sumw2[first_xbin:last_xbin + 1, :].sum(axis=0)
        proj.entries = int(proj.sumw[1:-1].sum())
        return proj

    def values(self):
        return self.sumw[1:-1, 1:-1].copy()

    def errors(self):
        return np.sqrt(self.sumw2[1:-1, 1:-1])

    def to_numpy(self):
        return self.values(), self.xaxis.edges, self.yaxis.edges


class Profile2D:
    """Mean of a value per (x, y) cell."""

    def __init__(self, name, title, nx, xmin, xmax, ny, ymin, ymax):
        self.name = name
        self.title = title
        self._sum = Hist2D(name + "_sum", title, nx, xmin, xmax, ny, ymin, ymax)
        self._count = Hist2D(name + "_count", title, nx, xmin, xmax, ny, ymin, ymax)

    def reset(self):
        self._sum.reset()
        self._count.reset()

    @property
    def entries(self):
        return self._count.entries

    def fill(self, x, y, value):
        self._sum.fill(x, y, value)
        self._count.fill(x, y)

    def values(self):
        counts = self._count.values()
        sums = self._sum.values()
        return np.divide(sums, counts, out=np.zeros_like(sums), where=counts > 0)

    def to_numpy(self):
        return self.values(), self._sum.xaxis.edges, self._sum.yaxis.edges
