"""
Canvas compositor: warping, exposure compensation and blending
"""

import cv2
import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math

from panostitch.core.errors import NoValidPanorama
from panostitch.core.exposure import GainCompensator
from panostitch.core.geometry import apply_transform
from panostitch.core.mesh_warp import MeshWarp, remap_tables
from panostitch.core.types import Canvas, Composite, Image, WarpedPatch

logger = logging.getLogger(__name__)

# Default maximum pixels for the output canvas (50 megapixels)
# Blending works in float32, so 50MP needs roughly 600MB per full-canvas buffer
DEFAULT_MAX_CANVAS_PIXELS = 50_000_000

# Warped corners closer than this to an integer pixel are treated as on it,
# so estimation round-off does not grow the canvas by a row or column
CORNER_SNAP = 1e-3


def _pixel_bounds(corners: np.ndarray) -> Tuple[int, int, int, int]:
    """Integer (x0, y0, x1, y1) enclosing the corners, tolerant to round-off"""
    x0, y0 = np.floor(corners.min(axis=0) + CORNER_SNAP)
    x1, y1 = np.ceil(corners.max(axis=0) - CORNER_SNAP)
    return int(x0), int(y0), int(x1), int(y1)


def _translation(tx: float, ty: float) -> np.ndarray:
    return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]])


def _corners(width: int, height: int) -> np.ndarray:
    return np.array([[0, 0], [width, 0], [width, height], [0, height]], dtype=np.float64)


def compute_canvas(
    transforms: Dict[int, np.ndarray],
    sizes: Dict[int, Tuple[int, int]],
    max_pixels: Optional[int] = DEFAULT_MAX_CANVAS_PIXELS
) -> Canvas:
    """
    Smallest integer canvas covering every warped image

    Args:
        transforms: image -> reference transforms
        sizes: (width, height) per image
        max_pixels: Canvas is uniformly scaled down above this many pixels

    Raises:
        NoValidPanorama: If a transform maps a corner to infinity
    """
    corners = np.vstack([apply_transform(transforms[k], _corners(*sizes[k])) for k in sorted(transforms)])
    if not np.all(np.isfinite(corners)):
        raise NoValidPanorama("warped image corners are not finite", sorted(transforms))

    x_min, y_min, x_max, y_max = _pixel_bounds(corners)
    width, height = max(x_max - x_min, 1), max(y_max - y_min, 1)
    offset = _translation(-x_min, -y_min)

    scale = 1.0
    if max_pixels and width * height > max_pixels:
        scale = math.sqrt(max_pixels / float(width * height))
        offset = np.diag([scale, scale, 1.0]) @ offset
        logger.warning(f"Canvas {width}x{height} exceeds {max_pixels:,} pixels, scaling by {scale:.3f}")
        width = max(int(math.floor(width * scale)), 1)
        height = max(int(math.floor(height * scale)), 1)

    logger.info(f"Canvas: {width}x{height} (origin {x_min:.0f}, {y_min:.0f})")
    return Canvas(float(x_min), float(y_min), width, height, offset, scale)


def warp_image(image: Image, transform: np.ndarray, canvas: Canvas,
               mesh: Optional[MeshWarp] = None) -> Optional[WarpedPatch]:
    """
    Resample one image into canvas space, restricted to its bounding ROI

    With a mesh the pixels follow its local homographies; the ROI still
    comes from the global transform.

    Returns:
        WarpedPatch, or None if the image does not land on the canvas
    """
    M = canvas.offset @ transform
    corners = apply_transform(M, _corners(image.width, image.height))
    x0, y0, x1, y1 = _pixel_bounds(corners)
    x0, y0 = max(x0, 0), max(y0, 0)
    x1, y1 = min(x1, canvas.width), min(y1, canvas.height)
    if x1 <= x0 or y1 <= y0:
        logger.warning(f"Image {image.index} falls outside the canvas")
        return None

    source_mask = np.full((image.height, image.width), 255, dtype=np.uint8)
    size = (x1 - x0, y1 - y0)

    if mesh is not None:
        map_x, map_y = remap_tables(mesh, np.linalg.inv(canvas.offset), x0, y0, *size)
        pixels = cv2.remap(image.pixels, map_x, map_y, cv2.INTER_LINEAR,
                           borderMode=cv2.BORDER_CONSTANT, borderValue=0)
        mask = cv2.remap(source_mask, map_x, map_y, cv2.INTER_NEAREST,
                         borderMode=cv2.BORDER_CONSTANT, borderValue=0)
        return WarpedPatch(image.index, x0, y0, pixels, mask)

    M_roi = _translation(-x0, -y0) @ M
    pixels = cv2.warpPerspective(image.pixels, M_roi, size, flags=cv2.INTER_LINEAR,
                                 borderMode=cv2.BORDER_CONSTANT, borderValue=0)
    mask = cv2.warpPerspective(source_mask, M_roi, size, flags=cv2.INTER_NEAREST,
                               borderMode=cv2.BORDER_CONSTANT, borderValue=0)
    return WarpedPatch(image.index, x0, y0, pixels, mask)


def _distance_weights(mask: np.ndarray) -> np.ndarray:
    """Distance of every covered pixel to the nearest uncovered one (>= 1 inside)"""
    padded = cv2.copyMakeBorder((mask > 0).astype(np.uint8), 1, 1, 1, 1, cv2.BORDER_CONSTANT, value=0)
    dist = cv2.distanceTransform(padded, cv2.DIST_L2, 3)
    return dist[1:-1, 1:-1].astype(np.float32)


def blend_weights(patches: Sequence[WarpedPatch], canvas: Canvas,
                  method: str = 'feather') -> List[np.ndarray]:
    """
    Per-patch blend weights (ROI-shaped float32), normalized so that the
    summed weight at every covered canvas pixel is exactly 1

    Args:
        method: 'feather' (distance to mask edge) or 'none' (one image per pixel)
    """
    raw = [_distance_weights(p.mask) for p in patches]

    if method == 'none':
        # Winner-take-all; ties go to the earlier patch
        best = np.zeros(canvas.shape, dtype=np.float32)
        owner = np.full(canvas.shape, -1, dtype=np.int32)
        for k, (patch, weight) in enumerate(zip(patches, raw)):
            roi = patch.roi()
            better = weight > best[roi]
            best[roi][better] = weight[better]
            owner[roi][better] = k
        return [(owner[p.roi()] == k).astype(np.float32) for k, p in enumerate(patches)]

    total = np.zeros(canvas.shape, dtype=np.float32)
    for patch, weight in zip(patches, raw):
        total[patch.roi()] += weight

    weights = []
    for patch, weight in zip(patches, raw):
        denom = total[patch.roi()]
        normalized = np.zeros_like(weight)
        np.divide(weight, denom, out=normalized, where=denom > 0)
        weights.append(normalized)
    return weights


def weight_sum_map(patches: Sequence[WarpedPatch], weights: Sequence[np.ndarray],
                   canvas: Canvas) -> np.ndarray:
    """Summed blend weight at every canvas pixel"""
    total = np.zeros(canvas.shape, dtype=np.float32)
    for patch, weight in zip(patches, weights):
        total[patch.roi()] += weight
    return total


def coverage_mask(patches: Sequence[WarpedPatch], canvas: Canvas) -> np.ndarray:
    coverage = np.zeros(canvas.shape, dtype=np.uint8)
    for patch in patches:
        roi = patch.roi()
        coverage[roi] = np.maximum(coverage[roi], patch.mask)
    return coverage


def _feather_blend(patches, weights, canvas) -> np.ndarray:
    channels = patches[0].pixels.shape[2]
    result = np.zeros((canvas.height, canvas.width, channels), dtype=np.float32)
    for patch, weight in zip(patches, weights):
        result[patch.roi()] += patch.pixels.astype(np.float32) * weight[:, :, None]
    return result


def _multiband_blend(patches, weights, canvas, levels: int) -> np.ndarray:
    """Laplacian pyramid blending with Gaussian-smoothed weights"""
    channels = patches[0].pixels.shape[2]
    max_levels = max(int(math.log2(max(min(canvas.height, canvas.width), 1))) - 1, 1)
    levels = max(min(levels, max_levels), 1)

    blended = None
    weight_sums = None
    for patch, weight in zip(patches, weights):
        image = np.zeros((canvas.height, canvas.width, channels), dtype=np.float32)
        image[patch.roi()] = patch.pixels
        w = np.zeros(canvas.shape, dtype=np.float32)
        w[patch.roi()] = weight

        # Gaussian pyramids
        gp_image = [image]
        gp_weight = [w]
        for _ in range(levels - 1):
            gp_image.append(cv2.pyrDown(gp_image[-1]))
            gp_weight.append(cv2.pyrDown(gp_weight[-1]))

        # Laplacian pyramid, coarsest level last
        lp = []
        for i in range(levels - 1):
            up = cv2.pyrUp(gp_image[i + 1], dstsize=(gp_image[i].shape[1], gp_image[i].shape[0]))
            lp.append(gp_image[i] - up)
        lp.append(gp_image[-1])

        if blended is None:
            blended = [np.zeros_like(band) for band in lp]
            weight_sums = [np.zeros_like(gw) for gw in gp_weight]
        for i in range(levels):
            blended[i] += lp[i] * gp_weight[i][:, :, None]
            weight_sums[i] += gp_weight[i]

    for i in range(levels):
        denom = weight_sums[i][:, :, None]
        np.divide(blended[i], denom, out=blended[i], where=denom > 1e-6)

    # Collapse
    result = blended[-1]
    for i in range(levels - 2, -1, -1):
        result = cv2.pyrUp(result, dstsize=(blended[i].shape[1], blended[i].shape[0])) + blended[i]
    return result


def to_output_format(bgr: np.ndarray, coverage: np.ndarray, color_format: str) -> np.ndarray:
    """Convert an internal BGR composite; alpha channels carry the coverage mask"""
    if color_format == 'BGR':
        return bgr.copy()
    if color_format == 'RGB':
        return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    if color_format == 'GRAY':
        return cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
    if color_format == 'RGBA':
        out = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGBA)
    elif color_format == 'BGRA':
        out = cv2.cvtColor(bgr, cv2.COLOR_BGR2BGRA)
    else:
        raise ValueError(f"Unsupported output color format: {color_format}")
    out[:, :, 3] = coverage
    return out


class Compositor:
    """Blend aligned images into one panorama"""

    def __init__(
        self,
        blend_method: str = 'feather',
        exposure_compensation: str = 'gain_bias',
        multiband_levels: int = 5,
        max_canvas_pixels: Optional[int] = DEFAULT_MAX_CANVAS_PIXELS
    ):
        """
        Initialize compositor

        Args:
            blend_method: 'feather', 'multiband' or 'none'
            exposure_compensation: 'gain_bias' or 'none'
            multiband_levels: Pyramid depth for multiband blending
            max_canvas_pixels: Maximum output pixels (None or 0 = unlimited)
        """
        self.blend_method = blend_method
        self.exposure_compensation = exposure_compensation
        self.multiband_levels = multiband_levels
        self.max_canvas_pixels = max_canvas_pixels if max_canvas_pixels else None
        self.compensator = GainCompensator() if exposure_compensation == 'gain_bias' else None
        logger.info(f"Compositor initialized (blend: {blend_method}, exposure: {exposure_compensation}, "
                    f"max_pixels: {self.max_canvas_pixels or 'unlimited'})")

    def composite(self, images: Sequence[Image], transforms: Dict[int, np.ndarray],
                  reference: Optional[int] = None,
                  mesh_warps: Optional[Dict[int, MeshWarp]] = None) -> Composite:
        """
        Warp, compensate and blend images into a BGR composite

        Args:
            images: Images of one component
            transforms: image -> reference transform per image index
            reference: Reference image index, recorded on the result
            mesh_warps: Local warps replacing the global transform per image index

        Returns:
            Composite in BGR with a coverage mask; uncovered pixels are zero
        """
        images = [image for image in images if image.index in transforms]
        if not images:
            raise NoValidPanorama("no images to composite")

        canvas = compute_canvas(
            {image.index: transforms[image.index] for image in images},
            {image.index: image.size for image in images},
            self.max_canvas_pixels
        )

        patches = []
        for image in images:
            mesh = mesh_warps.get(image.index) if mesh_warps else None
            patch = warp_image(image, transforms[image.index], canvas, mesh)
            if patch is not None:
                patches.append(patch)
        if not patches:
            raise NoValidPanorama("no image landed on the canvas", [i.index for i in images])

        if self.compensator is not None:
            patches = self.compensator.compensate(patches)

        logger.info(f"Blending {len(patches)} images using {self.blend_method} method")
        if self.blend_method == 'multiband':
            weights = blend_weights(patches, canvas, 'feather')
            result = _multiband_blend(patches, weights, canvas, self.multiband_levels)
        else:
            weights = blend_weights(patches, canvas, self.blend_method)
            result = _feather_blend(patches, weights, canvas)

        coverage = coverage_mask(patches, canvas)
        pixels = np.clip(np.rint(result), 0, 255).astype(np.uint8)
        pixels[coverage == 0] = 0

        return Composite(
            pixels=pixels,
            width=canvas.width,
            height=canvas.height,
            color_format='BGR',
            coverage=coverage,
            image_indices=[p.index for p in patches],
            reference_index=reference if reference is not None else patches[0].index,
        )
