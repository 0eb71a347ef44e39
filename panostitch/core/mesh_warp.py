"""
As-projective-as-possible (APAP) mesh warping

A global homography cannot follow parallax. Moving DLT instead fits one
homography per mesh cell, weighting every correspondence by its distance
to the cell centre:

    w_i = max(gamma, exp(-d_i^2 / sigma^2))

Cells far from all correspondences get uniform weights, which reduces to
the global fit.
Homographies map reference-frame coordinates into image pixels, which is
the direction cv2.remap needs.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from panostitch.core.bundle_adjuster import Observation
from panostitch.core.geometry import (
    apply_transform, dlt_rows, fit_homography, is_well_formed, normalize_points
)

logger = logging.getLogger(__name__)

DEFAULT_MESH_SIZE = 100
DEFAULT_SIGMA = 8.5
DEFAULT_GAMMA = 0.1

# Cells solved per batch; bounds the (cells x points) weight matrix
_CELL_BATCH = 1024
# Canvas rows mapped per batch when building remap tables
_ROW_BATCH = 256


@dataclass
class MeshWarp:
    """Grid of local reference -> image homographies over a reference-frame box"""
    x0: float
    y0: float
    step_x: float
    step_y: float
    homographies: np.ndarray

    @property
    def rows(self) -> int:
        return self.homographies.shape[0]

    @property
    def cols(self) -> int:
        return self.homographies.shape[1]

    def cell_of(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """(row, col) of the cell holding each point; outside points use the nearest cell"""
        col = np.floor((points[:, 0] - self.x0) / self.step_x).astype(np.intp)
        row = np.floor((points[:, 1] - self.y0) / self.step_y).astype(np.intp)
        return np.clip(row, 0, self.rows - 1), np.clip(col, 0, self.cols - 1)

    def map_points(self, points: np.ndarray) -> np.ndarray:
        """
        Map Nx2 reference-frame points into image pixels through their cell

        Points sent to infinity come back as -1 so resampling treats them
        as outside the image.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        row, col = self.cell_of(points)
        H = self.homographies[row, col]
        homog = np.einsum('nij,nj->ni', H, np.hstack([points, np.ones((len(points), 1))]))
        w = homog[:, 2:3]
        with np.errstate(divide='ignore', invalid='ignore'):
            mapped = homog[:, :2] / w
        bad = (np.abs(w[:, 0]) < 1e-12) | ~np.all(np.isfinite(mapped), axis=1)
        mapped[bad] = -1.0
        return mapped


def moving_dlt(
    ref_points: np.ndarray,
    image_points: np.ndarray,
    centers: np.ndarray,
    sigma: float = DEFAULT_SIGMA,
    gamma: float = DEFAULT_GAMMA,
    fallback: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Weighted DLT solved once per location

    Args:
        ref_points: Nx2 correspondences in the reference frame
        image_points: Nx2 matching points in the image
        centers: Mx2 reference-frame locations to solve at
        sigma: Gaussian scale of the distance weights, in pixels
        gamma: Weight floor
        fallback: Used where a local fit degenerates (default: global DLT)

    Returns:
        Mx3x3 homographies mapping reference-frame points into the image
    """
    ref_points = np.asarray(ref_points, dtype=np.float64)
    image_points = np.asarray(image_points, dtype=np.float64)
    centers = np.asarray(centers, dtype=np.float64).reshape(-1, 2)
    if fallback is None:
        fallback = fit_homography(ref_points, image_points)
    if fallback is None:
        fallback = np.eye(3)

    src_n, T_src = normalize_points(ref_points)
    dst_n, T_dst = normalize_points(image_points)
    n = len(src_n)
    rows = dlt_rows(src_n, dst_n).reshape(n, 2, 9)
    # Each correspondence adds the outer products of its two DLT rows
    outer = np.einsum('npi,npj->nij', rows, rows).reshape(n, 81)
    T_dst_inv = np.linalg.inv(T_dst)

    result = np.empty((len(centers), 3, 3))
    for start in range(0, len(centers), _CELL_BATCH):
        batch = centers[start:start + _CELL_BATCH]
        d2 = ((batch[:, None, :] - ref_points[None, :, :]) ** 2).sum(axis=2)
        weights = np.maximum(np.exp(-d2 / sigma ** 2), gamma)
        normal = ((weights ** 2) @ outer).reshape(-1, 9, 9)
        _, vectors = np.linalg.eigh(normal)
        H = T_dst_inv @ vectors[:, :, 0].reshape(-1, 3, 3) @ T_src

        scale = H[:, 2, 2].copy()
        ok = np.abs(scale) > 1e-8
        H[ok] /= scale[ok, None, None]
        for k in range(len(H)):
            if not ok[k] or not is_well_formed(H[k]):
                H[k] = fallback
        result[start:start + len(batch)] = H
    return result


def fit_mesh_warp(
    ref_points: np.ndarray,
    image_points: np.ndarray,
    bounds: Tuple[float, float, float, float],
    mesh_size: int = DEFAULT_MESH_SIZE,
    sigma: float = DEFAULT_SIGMA,
    gamma: float = DEFAULT_GAMMA,
    fallback: Optional[np.ndarray] = None
) -> MeshWarp:
    """
    Fit local homographies on a mesh_size x mesh_size grid over bounds

    Args:
        bounds: (x_min, y_min, x_max, y_max) of the mesh in the reference frame
    """
    x_min, y_min, x_max, y_max = bounds
    step_x = max((x_max - x_min) / mesh_size, 1e-6)
    step_y = max((y_max - y_min) / mesh_size, 1e-6)
    cx = x_min + (np.arange(mesh_size) + 0.5) * step_x
    cy = y_min + (np.arange(mesh_size) + 0.5) * step_y
    gx, gy = np.meshgrid(cx, cy)
    centers = np.column_stack([gx.ravel(), gy.ravel()])

    homographies = moving_dlt(ref_points, image_points, centers, sigma, gamma, fallback)
    return MeshWarp(float(x_min), float(y_min), step_x, step_y,
                    homographies.reshape(mesh_size, mesh_size, 3, 3))


def _correspondences(index: int, transforms: Dict[int, np.ndarray],
                     observations: Sequence[Observation]) -> Tuple[np.ndarray, np.ndarray]:
    """Points of one image paired with their partners placed in the reference frame"""
    ref_parts, image_parts = [], []
    for obs in observations:
        if obs.image_i == index and obs.image_j in transforms:
            image_parts.append(obs.src)
            ref_parts.append(apply_transform(transforms[obs.image_j], obs.dst))
        elif obs.image_j == index and obs.image_i in transforms:
            image_parts.append(obs.dst)
            ref_parts.append(apply_transform(transforms[obs.image_i], obs.src))
    if not ref_parts:
        return np.zeros((0, 2)), np.zeros((0, 2))
    ref_points, image_points = np.vstack(ref_parts), np.vstack(image_parts)
    finite = np.all(np.isfinite(ref_points), axis=1)
    return ref_points[finite], image_points[finite]


def mesh_warps_for(
    component: Sequence[int],
    reference: int,
    transforms: Dict[int, np.ndarray],
    observations: Sequence[Observation],
    sizes: Dict[int, Tuple[int, int]],
    mesh_size: int = DEFAULT_MESH_SIZE,
    sigma: float = DEFAULT_SIGMA,
    gamma: float = DEFAULT_GAMMA
) -> Dict[int, MeshWarp]:
    """
    Mesh warps of every non-reference image of a component

    Images with fewer than 4 usable correspondences keep their global
    transform and get no entry.
    """
    warps = {}
    for k in component:
        if k == reference or k not in transforms:
            continue
        ref_points, image_points = _correspondences(k, transforms, observations)
        if len(ref_points) < 4:
            logger.debug(f"Image {k}: {len(ref_points)} correspondences, keeping global warp")
            continue

        w, h = sizes[k]
        footprint = apply_transform(transforms[k], np.array([[0, 0], [w, 0], [w, h], [0, h]], float))
        if not np.all(np.isfinite(footprint)):
            continue
        bounds = (*footprint.min(axis=0), *footprint.max(axis=0))
        warps[k] = fit_mesh_warp(ref_points, image_points, bounds, mesh_size, sigma, gamma,
                                 fallback=np.linalg.inv(transforms[k]))
        logger.info(f"Image {k}: fitted {mesh_size}x{mesh_size} mesh from {len(ref_points)} correspondences")
    return warps


def remap_tables(mesh: MeshWarp, canvas_to_reference: np.ndarray, x0: int, y0: int,
                 width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
    """float32 cv2.remap tables for a canvas ROI, filled in row batches"""
    map_x = np.empty((height, width), dtype=np.float32)
    map_y = np.empty((height, width), dtype=np.float32)
    xs = np.arange(x0, x0 + width, dtype=np.float64)
    for start in range(0, height, _ROW_BATCH):
        stop = min(start + _ROW_BATCH, height)
        gx, gy = np.meshgrid(xs, np.arange(y0 + start, y0 + stop, dtype=np.float64))
        canvas_points = np.column_stack([gx.ravel(), gy.ravel()])
        source = mesh.map_points(apply_transform(canvas_to_reference, canvas_points))
        map_x[start:stop] = source[:, 0].reshape(stop - start, width)
        map_y[start:stop] = source[:, 1].reshape(stop - start, width)
    return map_x, map_y
