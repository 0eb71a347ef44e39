"""
Pairwise geometry: robust homography / similarity estimation
"""

import logging
import math
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import least_squares

from panostitch.core.types import Transform

logger = logging.getLogger(__name__)

SAMPLE_SIZES = {
    'homography': 4,
    'similarity': 2,
}

# Parameters per model in the nonlinear refinement (h22 fixed to 1)
PARAM_COUNTS = {
    'homography': 8,
    'similarity': 4,
}

_EPS = 1e-12


def normalize_points(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Hartley normalisation: centroid to origin, mean distance sqrt(2)

    Returns:
        Tuple of (normalized points, 3x3 normalizing transform)
    """
    points = np.asarray(points, dtype=np.float64)
    centroid = points.mean(axis=0)
    mean_dist = np.mean(np.linalg.norm(points - centroid, axis=1))
    scale = math.sqrt(2.0) / mean_dist if mean_dist > _EPS else 1.0
    T = np.array([
        [scale, 0.0, -scale * centroid[0]],
        [0.0, scale, -scale * centroid[1]],
        [0.0, 0.0, 1.0],
    ])
    return (points - centroid) * scale, T


def apply_transform(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Map Nx2 points through a 3x3 matrix; points at infinity become inf"""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    homog = np.hstack([points, np.ones((len(points), 1))]) @ matrix.T
    w = homog[:, 2:3]
    with np.errstate(divide='ignore', invalid='ignore'):
        mapped = homog[:, :2] / w
    mapped[np.abs(w[:, 0]) < _EPS] = np.inf
    return mapped


def reprojection_errors(matrix: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Forward reprojection distance of every correspondence"""
    diff = apply_transform(matrix, src) - np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    errors = np.linalg.norm(diff, axis=1)
    errors[~np.isfinite(errors)] = np.inf
    return errors


def dlt_rows(src_n: np.ndarray, dst_n: np.ndarray) -> np.ndarray:
    """DLT system (two rows per correspondence) whose null vector is the homography"""
    n = len(src_n)
    A = np.zeros((2 * n, 9))
    x, y = src_n[:, 0], src_n[:, 1]
    u, v = dst_n[:, 0], dst_n[:, 1]
    A[0::2, 0] = -x
    A[0::2, 1] = -y
    A[0::2, 2] = -1
    A[0::2, 6] = u * x
    A[0::2, 7] = u * y
    A[0::2, 8] = u
    A[1::2, 3] = -x
    A[1::2, 4] = -y
    A[1::2, 5] = -1
    A[1::2, 6] = v * x
    A[1::2, 7] = v * y
    A[1::2, 8] = v
    return A


def fit_homography(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
    """Normalized DLT over 4 or more correspondences"""
    src_n, T_src = normalize_points(src)
    dst_n, T_dst = normalize_points(dst)
    A = dlt_rows(src_n, dst_n)

    try:
        _, _, vt = np.linalg.svd(A)
    except np.linalg.LinAlgError:
        return None
    H_n = vt[-1].reshape(3, 3)
    H = np.linalg.inv(T_dst) @ H_n @ T_src
    if abs(H[2, 2]) < _EPS:
        return None
    return H / H[2, 2]


def fit_similarity(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
    """Linear least squares for x' = a*x - b*y + tx, y' = b*x + a*y + ty"""
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    n = len(src)
    A = np.zeros((2 * n, 4))
    A[0::2] = np.column_stack([src[:, 0], -src[:, 1], np.ones(n), np.zeros(n)])
    A[1::2] = np.column_stack([src[:, 1], src[:, 0], np.zeros(n), np.ones(n)])
    rhs = dst.reshape(-1)
    params, _, rank, _ = np.linalg.lstsq(A, rhs, rcond=None)
    if rank < 4:
        return None
    return similarity_matrix(params)


def similarity_matrix(params: np.ndarray) -> np.ndarray:
    a, b, tx, ty = params
    return np.array([
        [a, -b, tx],
        [b, a, ty],
        [0.0, 0.0, 1.0],
    ])


def homography_matrix(params: np.ndarray) -> np.ndarray:
    return np.append(params, 1.0).reshape(3, 3)


def matrix_to_params(matrix: np.ndarray, model: str) -> np.ndarray:
    matrix = matrix / matrix[2, 2]
    if model == 'similarity':
        return np.array([matrix[0, 0], matrix[1, 0], matrix[0, 2], matrix[1, 2]])
    return matrix.reshape(-1)[:8].copy()


def params_to_matrix(params: np.ndarray, model: str) -> np.ndarray:
    if model == 'similarity':
        return similarity_matrix(params)
    return homography_matrix(params)


def is_degenerate(src: np.ndarray, dst: np.ndarray, model: str) -> bool:
    """True when a minimal sample has coincident or collinear points"""
    for pts in (src, dst):
        if model == 'similarity':
            if np.linalg.norm(pts[0] - pts[1]) < 1e-6:
                return True
            continue
        # Any three of the four points collinear
        for a, b, c in ((0, 1, 2), (0, 1, 3), (0, 2, 3), (1, 2, 3)):
            area = (pts[b, 0] - pts[a, 0]) * (pts[c, 1] - pts[a, 1]) \
                - (pts[b, 1] - pts[a, 1]) * (pts[c, 0] - pts[a, 0])
            if abs(area) < 1e-6:
                return True
    return False


def is_well_formed(matrix: Optional[np.ndarray]) -> bool:
    """Finite, orientation preserving and not collapsing the plane"""
    if matrix is None or not np.all(np.isfinite(matrix)):
        return False
    det = np.linalg.det(matrix[:2, :2])
    return det > 1e-6


def adaptive_iterations(inlier_ratio: float, sample_size: int, confidence: float,
                        max_iterations: int) -> int:
    """Iterations needed to draw one all-inlier sample with the given confidence"""
    if inlier_ratio <= 0.0:
        return max_iterations
    if inlier_ratio >= 1.0:
        return 1
    denom = math.log(1.0 - inlier_ratio ** sample_size)
    if denom >= 0.0:
        return max_iterations
    return min(max_iterations, int(math.ceil(math.log(1.0 - confidence) / denom)))


class TransformEstimator:
    """RANSAC estimator for the transform mapping image i onto image j"""

    def __init__(
        self,
        model: str = 'homography',
        threshold: float = 4.0,
        max_iterations: int = 2000,
        confidence: float = 0.995,
        min_inliers: int = 20,
        refine: bool = True
    ):
        if model not in SAMPLE_SIZES:
            raise ValueError(f"Unknown transform model: {model}")
        self.model = model
        self.threshold = threshold
        self.max_iterations = max_iterations
        self.confidence = confidence
        self.min_inliers = min_inliers
        self.refine = refine
        self.sample_size = SAMPLE_SIZES[model]

    def _fit(self, src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
        if self.model == 'similarity':
            return fit_similarity(src, dst)
        return fit_homography(src, dst)

    def estimate(self, src: np.ndarray, dst: np.ndarray,
                 rng: Optional[np.random.Generator] = None) -> Transform:
        """
        Estimate a transform from correspondences

        Args:
            src: Nx2 points in image i
            dst: Nx2 points in image j
            rng: Seeded generator; identical seeds give identical results

        Returns:
            Transform; valid=False if no sample could be formed or too few inliers
        """
        rng = rng if rng is not None else np.random.default_rng(0)
        src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
        dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
        n = len(src)

        if n < self.sample_size:
            return Transform.invalid(f"{n} correspondences, need {self.sample_size}", self.model)

        best_matrix = None
        best_mask = None
        best_count = 0
        best_error = np.inf
        needed = self.max_iterations
        iteration = 0
        while iteration < needed:
            iteration += 1
            sample = rng.choice(n, self.sample_size, replace=False)
            if is_degenerate(src[sample], dst[sample], self.model):
                continue
            matrix = self._fit(src[sample], dst[sample])
            if not is_well_formed(matrix):
                continue

            errors = reprojection_errors(matrix, src, dst)
            mask = errors < self.threshold
            count = int(mask.sum())
            if count < self.sample_size:
                continue
            error = float(np.sum(errors[mask] ** 2))
            if count > best_count or (count == best_count and error < best_error):
                best_matrix, best_mask, best_count, best_error = matrix, mask, count, error
                needed = adaptive_iterations(count / n, self.sample_size,
                                             self.confidence, self.max_iterations)

        if best_matrix is None:
            return Transform.invalid("no non-degenerate sample", self.model)

        matrix, mask = best_matrix, best_mask
        # Refit on all inliers, then refine; keep the refit only if it does not lose inliers
        refit = self._fit(src[mask], dst[mask])
        if is_well_formed(refit):
            if self.refine:
                refit = self._refine(refit, src[mask], dst[mask])
            refit_mask = reprojection_errors(refit, src, dst) < self.threshold
            if refit_mask.sum() >= mask.sum():
                matrix, mask = refit, refit_mask

        count = int(mask.sum())
        rms = float(np.sqrt(np.mean(reprojection_errors(matrix, src[mask], dst[mask]) ** 2))) \
            if count else float('inf')
        logger.debug(f"RANSAC: {count}/{n} inliers after {iteration} iterations, rms {rms:.3f}")

        if count < self.min_inliers:
            return Transform(matrix, False, count, mask, rms, self.model,
                             f"{count} inliers (need {self.min_inliers})")
        return Transform(matrix, True, count, mask, rms, self.model)

    def _refine(self, matrix: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
        """Minimize inlier reprojection error with scipy least squares"""
        x0 = matrix_to_params(matrix, self.model)
        if 2 * len(src) < len(x0):
            return matrix

        def residuals(params):
            mapped = apply_transform(params_to_matrix(params, self.model), src)
            res = (mapped - dst).reshape(-1)
            res[~np.isfinite(res)] = 1e6
            return res

        try:
            result = least_squares(residuals, x0, method='lm', max_nfev=200)
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.debug(f"Transform refinement failed: {e}")
            return matrix
        refined = params_to_matrix(result.x, self.model)
        if not is_well_formed(refined):
            return matrix
        return refined
