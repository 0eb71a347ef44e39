import numpy as np
import pytest

from panostitch.core.compositor import (
    Compositor, blend_weights, compute_canvas, coverage_mask, to_output_format,
    warp_image, weight_sum_map
)
from panostitch.core.errors import NoValidPanorama
from panostitch.core.exposure import GainCompensator
from panostitch.core.types import Image, WarpedPatch


def translation(tx, ty=0.0):
    return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]])


def as_image(pixels, index):
    h, w = pixels.shape[:2]
    return Image(pixels, w, h, 3, 'BGR', index)


@pytest.fixture
def bgr_views(views):
    # Views are RGB crops; channel order is irrelevant for these checks
    return [as_image(v, k) for k, v in enumerate(views)]


@pytest.fixture
def view_transforms():
    return {0: np.eye(3), 1: translation(200), 2: translation(400)}


def test_canvas_covers_all_warped_corners():
    canvas = compute_canvas({0: np.eye(3), 1: translation(60, 10)}, {0: (100, 80), 1: (100, 80)})
    assert (canvas.width, canvas.height) == (160, 90)
    assert canvas.scale == 1.0

    shifted = compute_canvas({0: np.eye(3), 1: translation(-30.5, -4.2)}, {0: (100, 80), 1: (100, 80)})
    assert (shifted.x_min, shifted.y_min) == (-31.0, -5.0)
    assert np.allclose(shifted.offset, translation(31.0, 5.0))


def test_canvas_ignores_round_off_in_transforms(views):
    noisy = np.eye(3) + np.array([[1e-12, -1e-12, 1e-9], [2e-12, 1e-12, -1e-9], [0.0, 0.0, 0.0]])
    canvas = compute_canvas({0: np.eye(3), 1: noisy}, {0: (400, 360), 1: (400, 360)})
    assert (canvas.width, canvas.height) == (400, 360)
    assert (canvas.x_min, canvas.y_min) == (0.0, 0.0)

    patch = warp_image(as_image(views[0], 1), noisy, canvas)
    assert (patch.x, patch.y, patch.width, patch.height) == (0, 0, 400, 360)


def test_canvas_downscaled_to_pixel_limit():
    canvas = compute_canvas({0: np.eye(3), 1: translation(60, 10)}, {0: (100, 80), 1: (100, 80)},
                            max_pixels=3600)
    assert canvas.width * canvas.height <= 3600
    assert canvas.scale == pytest.approx(0.5)


def test_canvas_rejects_points_at_infinity():
    vanishing = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.01, 0.0, 0.0]])
    with pytest.raises(NoValidPanorama):
        compute_canvas({0: np.eye(3), 1: vanishing}, {0: (100, 80), 1: (100, 80)})


@pytest.mark.parametrize("method", ['feather', 'none'])
def test_weights_sum_to_one_where_covered(bgr_views, view_transforms, method):
    canvas = compute_canvas(view_transforms, {i.index: i.size for i in bgr_views})
    patches = [warp_image(i, view_transforms[i.index], canvas) for i in bgr_views]
    weights = blend_weights(patches, canvas, method)

    total = weight_sum_map(patches, weights, canvas)
    covered = coverage_mask(patches, canvas) > 0
    assert covered.all()
    assert np.allclose(total[covered], 1.0, atol=1e-5)
    if method == 'none':
        assert set(np.unique(np.concatenate([w.ravel() for w in weights]))) <= {0.0, 1.0}


def test_weights_are_zero_outside_coverage():
    canvas = compute_canvas({0: np.eye(3), 1: translation(60, 10)}, {0: (100, 80), 1: (100, 80)})
    images = [as_image(np.full((80, 100, 3), 50, np.uint8), 0),
              as_image(np.full((80, 100, 3), 90, np.uint8), 1)]
    patches = [warp_image(images[0], np.eye(3), canvas), warp_image(images[1], translation(60, 10), canvas)]
    total = weight_sum_map(patches, blend_weights(patches, canvas), canvas)
    covered = coverage_mask(patches, canvas) > 0
    assert not covered[85, 10]
    assert np.all(total[~covered] == 0.0)
    assert np.allclose(total[covered], 1.0, atol=1e-5)


@pytest.mark.parametrize("blend", ['feather', 'none'])
def test_aligned_views_reproduce_scene(scene, bgr_views, view_transforms, blend):
    compositor = Compositor(blend_method=blend, exposure_compensation='gain_bias')
    result = compositor.composite(bgr_views, view_transforms, reference=0)
    assert (result.width, result.height) == (800, 360)
    assert result.color_format == 'BGR'
    assert result.image_indices == [0, 1, 2]
    assert np.all(result.coverage == 255)
    assert np.abs(result.pixels.astype(int) - scene.astype(int)).max() <= 1


def test_multiband_blend_close_to_scene(scene, bgr_views, view_transforms):
    result = Compositor(blend_method='multiband', multiband_levels=4).composite(bgr_views, view_transforms)
    assert result.pixels.shape == scene.shape
    assert result.pixels.dtype == np.uint8
    assert np.abs(result.pixels.astype(float) - scene.astype(float)).mean() < 6.0


def test_uncovered_pixels_are_zero():
    images = [as_image(np.full((80, 100, 3), 200, np.uint8), 0),
              as_image(np.full((80, 100, 3), 200, np.uint8), 1)]
    result = Compositor(exposure_compensation='none').composite(images, {0: np.eye(3), 1: translation(60, 10)})
    assert result.coverage[85, 10] == 0
    assert result.pixels[85, 10].tolist() == [0, 0, 0]
    assert result.pixels[40, 80].tolist() == [200, 200, 200]


def test_gain_compensation_equalizes_overlap():
    dark = WarpedPatch(0, 0, 0, np.full((50, 80, 3), 100, np.uint8), np.full((50, 80), 255, np.uint8))
    bright = WarpedPatch(1, 40, 0, np.full((50, 80, 3), 140, np.uint8), np.full((50, 80), 255, np.uint8))
    compensated = GainCompensator().compensate([dark, bright])
    before = 140.0 - 100.0
    after = compensated[1].pixels.mean() - compensated[0].pixels.mean()
    assert abs(after) < 0.5 * before
    assert compensated[0].pixels.dtype == np.float32


def test_output_formats_carry_coverage_as_alpha():
    bgr = np.zeros((2, 2, 3), np.uint8)
    bgr[..., 0] = 255
    coverage = np.array([[255, 0], [255, 255]], np.uint8)
    rgba = to_output_format(bgr, coverage, 'RGBA')
    assert rgba.shape == (2, 2, 4)
    assert rgba[0, 0].tolist() == [0, 0, 255, 255]
    assert rgba[0, 1, 3] == 0
    assert to_output_format(bgr, coverage, 'BGRA')[0, 0].tolist() == [255, 0, 0, 255]
    assert to_output_format(bgr, coverage, 'RGB')[0, 0].tolist() == [0, 0, 255]
    assert to_output_format(bgr, coverage, 'GRAY').shape == (2, 2)
    with pytest.raises(ValueError):
        to_output_format(bgr, coverage, 'CMYK')
