# geom/cm_geometry.py

import math
import numpy as np
import pandas as pd
from tpc_calib.calib_constants import (
    MM, CM, N_RADII, N_PETALS, PHI_PETAL, PHI_MODULE, PR_MULT, DW_MULT, DIFFWIDTH, ADJUST,
    N_PADS_R1, N_PADS_R2, N_PADS_R3, R1_E, R1, R2, R3,
    KEEP_THIS_AND_AFTER, KEEP_UNTIL_R1_E, KEEP_UNTIL_R1, KEEP_UNTIL_R2, KEEP_UNTIL_R3,
)


class StripeRegion:
    """
    One radial band of the central membrane pattern: eight rows of stripes,
    computed for a single petal.
    """

    def __init__(self, name, n_pads, radii, keep_until, keep_this_and_after=KEEP_THIS_AND_AFTER,
                 verbosity=0):
        self.name = name
        self.n_pads = n_pads
        self.radii = tuple(radii)
        self.keep_until = tuple(keep_until)
        self.keep_this_and_after = tuple(keep_this_and_after)

        self.spacing = [0.0] * N_RADII
        self.n_good_stripes = [0] * N_RADII
        self.n_stripes_in = [0] * N_RADII
        self.n_stripes_before = [0] * N_RADII

        # cx[j], cy[j] hold the stripe centers (cm) of row j
        self.cx = [[] for _ in range(N_RADII)]
        self.cy = [[] for _ in range(N_RADII)]

        self.calculate_centers(verbosity)

    def calculate_centers(self, verbosity=0):
        """
        Stripe centers of one petal. Odd and even rows are staggered by half a
        spacing; the spacing combines a diffusion-width term and a pad-pitch term.
        """
        for j in range(N_RADII):
            self.spacing[j] = 2.0 * ((DW_MULT * DIFFWIDTH / self.radii[j]) +
                                     (PR_MULT * PHI_MODULE / self.n_pads))

        for j in range(N_RADII):
            radius = self.radii[j]
            spacing = self.spacing[j]
            self.cx[j] = []
            self.cy[j] = []
            for i in range(self.keep_this_and_after[j], self.keep_until[j]):
                if j % 2 == 0:
                    theta = i * spacing + (spacing / 2) - ADJUST
                else:
                    theta = (i + 1) * spacing - ADJUST
                self.cx[j].append(radius * math.cos(theta) / CM)
                self.cy[j].append(radius * math.sin(theta) / CM)

                if verbosity > 2:
                    print(f"[DEBUG] {self.name} j {j} i {i} theta {theta:.5f} "
                          f"cx {self.cx[j][-1]:.4f} cy {self.cy[j][-1]:.4f} "
                          f"radius {math.hypot(self.cx[j][-1], self.cy[j][-1]):.4f}")

            self.n_stripes_in[j] = self.keep_until[j] - self.keep_this_and_after[j]
            if j == 0:
                self.n_stripes_before[j] = 0
            else:
                self.n_stripes_before[j] = self.n_stripes_in[j - 1] + self.n_stripes_before[j - 1]
            self.n_good_stripes[j] = len(self.cx[j])

    def petal_centers(self):
        """(x, y) stripe centers of one petal, row by row."""
        xs = [x for j in range(N_RADII) for x in self.cx[j]]
        ys = [y for j in range(N_RADII) for y in self.cy[j]]
        return np.array(xs), np.array(ys)


class CMGeometry:
    """
    Truth pattern of the central membrane stripes, replicated over the 18 petals
    and both sides of the membrane.
    """

    def __init__(self, verbosity=0):
        self.verbosity = verbosity
        self.regions = [
            StripeRegion("R1_e", N_PADS_R1, [r * MM for r in R1_E], KEEP_UNTIL_R1_E, verbosity=verbosity),
            StripeRegion("R1", N_PADS_R1, [r * MM for r in R1], KEEP_UNTIL_R1, verbosity=verbosity),
            StripeRegion("R2", N_PADS_R2, [r * MM for r in R2], KEEP_UNTIL_R2, verbosity=verbosity),
            StripeRegion("R3", N_PADS_R3, [r * MM for r in R3], KEEP_UNTIL_R3, verbosity=verbosity),
        ]

    def generate_truth_positions(self):
        """
        Return an (N, 3) array of truth positions.

        Order: region, row, stripe, petal; every position appears twice in a
        row, first with z = +1 then with z = -1.
        """
        positions = []
        for region in self.regions:
            for j in range(N_RADII):
                for cx, cy in zip(region.cx[j], region.cy[j]):
                    for k in range(N_PETALS):
                        angle = k * PHI_PETAL
                        cos_a, sin_a = math.cos(angle), math.sin(angle)
                        x = cx * cos_a - cy * sin_a
                        y = cx * sin_a + cy * cos_a
                        positions.append((x, y, 1.0))
                        positions.append((x, y, -1.0))

                        if self.verbosity > 2:
                            print(f"[DEBUG] {region.name} j {j} k {k} x {x:.4f} y {y:.4f} "
                                  f"theta {math.atan2(y, x):.5f} radius {math.hypot(x, y):.4f}")

        return np.array(positions, dtype=float).reshape(-1, 3)

    def n_truth_positions(self):
        return 2 * N_PETALS * sum(sum(region.n_good_stripes) for region in self.regions)

    def dump_geometry_summary(self, output_path="cm_geometry_dump.tsv"):
        rows = []
        for region in self.regions:
            for j in range(N_RADII):
                rows.append({
                    "region": region.name,
                    "row": j,
                    "radius_cm": region.radii[j] / CM,
                    "n_pads": region.n_pads,
                    "spacing": region.spacing[j],
                    "n_good_stripes": region.n_good_stripes[j],
                    "n_stripes_in": region.n_stripes_in[j],
                    "n_stripes_before": region.n_stripes_before[j],
                    "first_cx": region.cx[j][0] if region.cx[j] else None,
                    "first_cy": region.cy[j][0] if region.cy[j] else None,
                })

        df = pd.DataFrame(rows)
        df.to_csv(output_path, sep="\t", index=False)
        print(f"[INFO] CM geometry summary dumped to {output_path}")
        return df
