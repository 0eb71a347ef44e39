"""
Global bundle adjustment of image -> reference transforms
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.optimize import least_squares

from panostitch.core.errors import ConvergenceFailure
from panostitch.core.geometry import (
    PARAM_COUNTS, apply_transform, is_well_formed, matrix_to_params, params_to_matrix
)
from panostitch.core.types import PairEstimate

logger = logging.getLogger(__name__)

# Residual substituted for points mapped to infinity
_FAR = 1e6


@dataclass
class Observation:
    """Inlier correspondences between image i (src) and image j (dst)"""
    image_i: int
    image_j: int
    src: np.ndarray
    dst: np.ndarray

    def __len__(self) -> int:
        return len(self.src)


@dataclass
class BundleResult:
    transforms: Dict[int, np.ndarray]
    converged: bool
    initial_error: float
    final_error: float
    iterations: int = 0
    reason: str = ''
    error: Optional[ConvergenceFailure] = None


def observations_from(estimates: Sequence[PairEstimate]) -> List[Observation]:
    return [Observation(e.pair[0], e.pair[1], e.inlier_src, e.inlier_dst) for e in estimates]


def _residuals(transforms: Dict[int, np.ndarray], observations: Sequence[Observation],
               inverses: Optional[Dict[int, np.ndarray]] = None) -> np.ndarray:
    """Symmetric transfer residuals of every observation, in pixels"""
    if inverses is None:
        inverses = {k: np.linalg.inv(m) for k, m in transforms.items()}
    parts = []
    for obs in observations:
        T_i, T_j = transforms[obs.image_i], transforms[obs.image_j]
        forward = apply_transform(inverses[obs.image_j] @ T_i, obs.src) - obs.dst
        backward = apply_transform(inverses[obs.image_i] @ T_j, obs.dst) - obs.src
        parts.append(forward.reshape(-1))
        parts.append(backward.reshape(-1))
    if not parts:
        return np.zeros(0)
    res = np.concatenate(parts)
    res[~np.isfinite(res)] = _FAR
    return res


def total_reprojection_error(transforms: Dict[int, np.ndarray],
                             observations: Sequence[Observation]) -> float:
    """Sum of squared symmetric transfer residuals over all observations"""
    return float(np.sum(_residuals(transforms, observations) ** 2))


class BundleAdjuster:
    """
    Joint refinement of all transforms in one connected component.

    The reference image stays fixed at identity; every other image is
    parameterized as a homography (8 parameters) or a similarity (4).
    Every inlier correspondence of every edge in the component contributes,
    so loop closures pull accumulated chaining drift back into place.
    """

    def __init__(
        self,
        model: str = 'homography',
        max_iterations: int = 100,
        tolerance: float = 1e-8,
        loss: str = 'linear'
    ):
        """
        Args:
            model: 'homography' or 'similarity'
            max_iterations: Bound on optimizer iterations (scaled by parameter count)
            tolerance: ftol/xtol of the optimizer
            loss: Loss function ('linear', 'huber', 'soft_l1', 'cauchy')
        """
        self.model = model
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.loss = loss

    def adjust(
        self,
        component: Sequence[int],
        reference: int,
        initial: Dict[int, np.ndarray],
        observations: Sequence[Observation]
    ) -> BundleResult:
        """
        Perform global bundle adjustment.

        Args:
            component: Image indices of the component
            reference: Index held fixed at identity
            initial: Chained image -> reference transforms
            observations: Inlier correspondences of all component edges

        Returns:
            BundleResult; on failure the initial transforms with converged=False
        """
        initial = {k: initial[k] / initial[k][2, 2] for k in component}
        initial_error = total_reprojection_error(initial, observations)
        free = [k for k in component if k != reference]

        if not free or not observations:
            return BundleResult(initial, True, initial_error, initial_error, 0, 'nothing to adjust')

        logger.info(f"Starting bundle adjustment for {len(component)} images "
                    f"({sum(len(o) for o in observations)} correspondences)")

        step = PARAM_COUNTS[self.model]
        x0 = np.concatenate([matrix_to_params(initial[k], self.model) for k in free])

        def unpack(params):
            transforms = {reference: np.eye(3)}
            for n, k in enumerate(free):
                transforms[k] = params_to_matrix(params[n * step:(n + 1) * step], self.model)
            return transforms

        def residuals(params):
            transforms = unpack(params)
            try:
                inverses = {k: np.linalg.inv(m) for k, m in transforms.items()}
            except np.linalg.LinAlgError:
                return np.full(n_residuals, _FAR)
            return _residuals(transforms, observations, inverses)

        n_residuals = 4 * sum(len(o) for o in observations)
        method = 'lm' if n_residuals >= len(x0) and self.loss == 'linear' else 'trf'

        try:
            result = least_squares(
                residuals,
                x0,
                method=method,
                loss=self.loss,
                x_scale='jac',
                max_nfev=self.max_iterations * len(x0),
                ftol=self.tolerance,
                xtol=self.tolerance
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            return self._failed(initial, initial_error, component, f"optimizer error: {e}")

        if result.status <= 0:
            return self._failed(initial, initial_error, component,
                                f"did not converge: {result.message}", result.nfev)
        if not np.all(np.isfinite(result.x)):
            return self._failed(initial, initial_error, component, "non-finite parameters", result.nfev)

        adjusted = unpack(result.x)
        degenerate = [k for k in free if not is_well_formed(adjusted[k])]
        if degenerate:
            return self._failed(initial, initial_error, component,
                                f"degenerate transform for images {degenerate}", result.nfev)

        final_error = total_reprojection_error(adjusted, observations)
        # Round-off on an already exact alignment is not an increase
        if final_error > initial_error + 1e-9 * max(initial_error, 1.0):
            return self._failed(initial, initial_error, component,
                                f"error increased ({initial_error:.3f} -> {final_error:.3f})", result.nfev)

        improvement = (initial_error - final_error) / (initial_error + 1e-12) * 100
        logger.info(f"Bundle adjustment complete ({method}): {improvement:.1f}% improvement, "
                    f"error {initial_error:.2f} -> {final_error:.2f} in {result.nfev} evaluations")
        return BundleResult(adjusted, True, initial_error, final_error, result.nfev)

    def _failed(self, initial, initial_error, component, reason, iterations=0) -> BundleResult:
        logger.warning(f"Bundle adjustment failed, keeping chained transforms: {reason}")
        error = ConvergenceFailure(f"bundle adjustment failed: {reason}", component)
        return BundleResult(initial, False, initial_error, initial_error, iterations, reason, error)
