"""Exposure compensation for panorama stitching.

Solves a per-image, per-channel gain and bias so that overlapping regions
agree in brightness, with priors keeping every image close to its
original exposure.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from panostitch.core.types import WarpedPatch

logger = logging.getLogger(__name__)


def _overlap(a: WarpedPatch, b: WarpedPatch) -> Optional[Tuple[slice, slice, slice, slice]]:
    """Slices of a and b covering the intersection of their ROIs (may be empty)"""
    x0, y0 = max(a.x, b.x), max(a.y, b.y)
    x1 = min(a.x + a.width, b.x + b.width)
    y1 = min(a.y + a.height, b.y + b.height)
    if x1 <= x0 or y1 <= y0:
        return None
    return (slice(y0 - a.y, y1 - a.y), slice(x0 - a.x, x1 - a.x),
            slice(y0 - b.y, y1 - b.y), slice(x0 - b.x, x1 - b.x))


class GainCompensator:
    """
    Gain/bias exposure compensation

    Minimizes, per channel,
        sum_ij N_ij * ((g_i*m_ij + b_i) - (g_j*m_ji + b_j))^2 / sigma_n^2
        + sum_i N_i * ((g_i - 1)^2 / sigma_g^2 + b_i^2 / sigma_b^2)
    where m_ij is the mean of image i over its overlap with image j.
    """

    def __init__(
        self,
        sigma_n: float = 10.0,
        sigma_g: float = 0.1,
        sigma_b: float = 10.0,
        min_overlap: int = 64,
        gain_limits: Tuple[float, float] = (0.5, 2.0)
    ):
        self.sigma_n = sigma_n
        self.sigma_g = sigma_g
        self.sigma_b = sigma_b
        self.min_overlap = min_overlap
        self.gain_limits = gain_limits

    def overlap_statistics(self, patches: Sequence[WarpedPatch]) -> List[Tuple[int, int, int, np.ndarray, np.ndarray]]:
        """(a, b, pixel count, mean of a, mean of b) for every overlapping patch pair"""
        stats = []
        for a in range(len(patches)):
            for b in range(a + 1, len(patches)):
                slices = _overlap(patches[a], patches[b])
                if slices is None:
                    continue
                ya, xa, yb, xb = slices
                both = (patches[a].mask[ya, xa] > 0) & (patches[b].mask[yb, xb] > 0)
                count = int(both.sum())
                if count < self.min_overlap:
                    continue
                mean_a = patches[a].pixels[ya, xa][both].reshape(count, -1).mean(axis=0)
                mean_b = patches[b].pixels[yb, xb][both].reshape(count, -1).mean(axis=0)
                stats.append((a, b, count, mean_a.astype(np.float64), mean_b.astype(np.float64)))
        return stats

    def solve(self, patches: Sequence[WarpedPatch]) -> Tuple[np.ndarray, np.ndarray]:
        """
        Returns:
            Tuple of (gains, biases), each of shape (n_patches, channels)
        """
        n = len(patches)
        channels = 1 if patches[0].pixels.ndim == 2 else patches[0].pixels.shape[2]
        gains = np.ones((n, channels))
        biases = np.zeros((n, channels))

        stats = self.overlap_statistics(patches)
        if not stats:
            logger.info("Exposure compensation skipped: no overlapping patches")
            return gains, biases

        totals = np.zeros(n)
        for a, b, count, _, _ in stats:
            totals[a] += count
            totals[b] += count
        # Images without overlap still get a prior so the system stays well posed
        totals[totals == 0] = 1.0

        for c in range(channels):
            rows = []
            rhs = []
            for a, b, count, mean_a, mean_b in stats:
                w = np.sqrt(count) / self.sigma_n
                row = np.zeros(2 * n)
                row[2 * a] = w * mean_a[c]
                row[2 * a + 1] = w
                row[2 * b] = -w * mean_b[c]
                row[2 * b + 1] = -w
                rows.append(row)
                rhs.append(0.0)
            for i in range(n):
                row = np.zeros(2 * n)
                row[2 * i] = np.sqrt(totals[i]) / self.sigma_g
                rows.append(row)
                rhs.append(np.sqrt(totals[i]) / self.sigma_g)
                row = np.zeros(2 * n)
                row[2 * i + 1] = np.sqrt(totals[i]) / self.sigma_b
                rows.append(row)
                rhs.append(0.0)

            solution, _, _, _ = np.linalg.lstsq(np.array(rows), np.array(rhs), rcond=None)
            gains[:, c] = np.clip(solution[0::2], *self.gain_limits)
            biases[:, c] = solution[1::2]

        logger.info(f"Exposure compensation over {len(stats)} overlaps: gains "
                    f"{gains.min():.3f}..{gains.max():.3f}, biases {biases.min():.1f}..{biases.max():.1f}")
        return gains, biases

    def compensate(self, patches: Sequence[WarpedPatch]) -> List[WarpedPatch]:
        """New float32 patches with gain and bias applied inside each mask"""
        if len(patches) < 2:
            return [WarpedPatch(p.index, p.x, p.y, p.pixels.astype(np.float32), p.mask) for p in patches]

        gains, biases = self.solve(patches)
        result = []
        for k, patch in enumerate(patches):
            pixels = patch.pixels.astype(np.float32) * gains[k].astype(np.float32) \
                + biases[k].astype(np.float32)
            pixels = np.clip(pixels, 0.0, 255.0)
            pixels[patch.mask == 0] = 0.0
            result.append(WarpedPatch(patch.index, patch.x, patch.y, pixels, patch.mask))
        return result
