import numpy as np
import pytest

from panostitch import PanoramaStitcher
from panostitch.core.errors import InsufficientMatches, NoValidPanorama
from panostitch.core.types import PipelineState, StitchStatus
from panostitch.ml.refiner import Refiner
from panostitch.utils.buffer_store import ImageBuffer


@pytest.fixture
def offset_buffers(scene):
    # Vertically offset views leave uncovered canvas corners
    top = np.ascontiguousarray(scene[0:300, 0:400])
    bottom = np.ascontiguousarray(scene[60:360, 200:600])
    return [ImageBuffer.from_array(top, 'RGB'), ImageBuffer.from_array(bottom, 'RGB')]


class ConstantRefiner(Refiner):
    name = 'constant'

    def __init__(self):
        self.calls = 0

    def infer(self, image, coverage=None, cancel_event=None):
        self.calls += 1
        return np.full_like(image, 77)


def test_single_image_is_no_panorama(buffers, config):
    result = PanoramaStitcher(config).stitch(buffers[:1])
    assert result.status == StitchStatus.NO_PANORAMA
    assert isinstance(result.error, NoValidPanorama)
    assert result.composite is None
    assert result.report.states[-1] == PipelineState.ABORTED
    assert result.report.diagnostics_of('no_valid_panorama')
    with pytest.raises(NoValidPanorama):
        result.raise_for_status()


def test_three_overlapping_views_stitch_fully(buffers, config):
    result = PanoramaStitcher(config).stitch(buffers)

    assert result.status == StitchStatus.FULL
    assert result.ok
    assert result.report.used_images == [0, 1, 2]
    assert result.report.excluded_images == {}
    assert result.report.states == [
        PipelineState.IDLE,
        PipelineState.EXTRACTING,
        PipelineState.ALIGNING,
        PipelineState.GRAPH_BUILT,
        PipelineState.BUNDLE_ADJUSTED,
        PipelineState.COMPOSITED,
        PipelineState.DONE,
    ]
    composite = result.composite
    assert abs(composite.width - 800) <= 4
    assert abs(composite.height - 360) <= 4
    assert composite.color_format == 'RGBA'
    assert composite.pixels.shape == (composite.height, composite.width, 4)
    assert np.array_equal(composite.pixels[:, :, 3], composite.coverage)
    assert composite.reference_index == 1
    assert result.report.bundle_adjusted
    assert len(result.panoramas) == 1
    # Views 0 and 2 do not overlap, so that pair is dropped
    assert any(d.images == (0, 2) for d in result.report.diagnostics_of('insufficient_matches'))


def test_output_is_deterministic(buffers, config):
    first = PanoramaStitcher(config).stitch(buffers)
    second = PanoramaStitcher(config.replace(max_workers=4)).stitch(buffers)
    assert first.composite.pixels.tobytes() == second.composite.pixels.tobytes()


def test_config_mapping_and_output_format(buffers):
    stitcher = PanoramaStitcher({'maxKeypointsPerImage': 2000, 'output_color_format': 'BGR',
                                 'max_workers': 2})
    result = stitcher.stitch(buffers)
    assert result.status == StitchStatus.FULL
    assert result.composite.pixels.ndim == 3 and result.composite.pixels.shape[2] == 3


def test_corrupt_buffer_gives_partial_result(buffers, config):
    result = PanoramaStitcher(config).stitch(buffers + [ImageBuffer(b"", 10, 10, 'RGB')])
    assert result.status == StitchStatus.PARTIAL
    assert result.report.used_images == [0, 1, 2]
    assert 3 in result.report.excluded_images
    [diagnostic] = result.report.diagnostics_of('input_error')
    assert diagnostic.images == (3,)


def test_unrelated_image_is_excluded(buffers, config, unrelated_view):
    result = PanoramaStitcher(config).stitch(buffers + [ImageBuffer.from_array(unrelated_view)])
    assert result.status == StitchStatus.PARTIAL
    assert result.report.used_images == [0, 1, 2]
    assert result.report.excluded_images[3] == "image does not overlap any other image"
    assert result.report.diagnostics_of('disconnected_component')[0].images == (3,)


def test_disjoint_images_are_no_panorama(views, config, unrelated_view):
    buffers = [ImageBuffer.from_array(views[0]), ImageBuffer.from_array(unrelated_view)]
    result = PanoramaStitcher(config).stitch(buffers)
    assert result.status == StitchStatus.NO_PANORAMA
    disconnected = result.report.diagnostics_of('disconnected_component')
    assert sorted(d.images for d in disconnected) == [(0,), (1,)]
    assert result.report.diagnostics_of('insufficient_matches')[0].images == (0, 1)


def test_missing_model_degrades_to_unrefined(offset_buffers, config, tmp_path):
    plain = PanoramaStitcher(config).stitch(offset_buffers)
    refined_config = config.replace(enable_neural_refinement=True,
                                    model_path=str(tmp_path / "missing.onnx"))
    result = PanoramaStitcher(refined_config).stitch(offset_buffers)

    assert result.status == StitchStatus.FULL
    assert not result.report.refined
    assert result.report.diagnostics_of('inference_unavailable')
    assert PipelineState.REFINED not in result.report.states
    assert result.composite.pixels.tobytes() == plain.composite.pixels.tobytes()
    # Offset views leave part of the canvas uncovered
    assert (plain.composite.coverage == 0).any()


def test_refiner_output_replaces_composite(offset_buffers, config):
    refiner = ConstantRefiner()
    stitcher = PanoramaStitcher(config.replace(enable_neural_refinement=True), refiner=refiner)
    result = stitcher.stitch(offset_buffers)

    assert refiner.calls == 1
    assert result.report.refined
    assert result.report.components[0].refined
    assert PipelineState.REFINED in result.report.states
    assert np.all(result.composite.pixels[:, :, :3] == 77)
    assert np.all(result.composite.pixels[:, :, 3] == 255)


def test_cancel_flag_cancels(buffers, config):
    result = PanoramaStitcher(config, cancel_flag=lambda: True).stitch(buffers)
    assert result.status == StitchStatus.CANCELLED
    assert result.composite is None
    assert result.report.states == [PipelineState.IDLE, PipelineState.ABORTED]
    with pytest.raises(InterruptedError):
        result.raise_for_status()


def test_cancel_from_progress_callback(buffers, config):
    stitcher = None

    def on_progress(percentage, message):
        if percentage >= 30:
            stitcher.cancel()

    stitcher = PanoramaStitcher(config, progress_callback=on_progress)
    result = stitcher.stitch(buffers)
    assert result.status == StitchStatus.CANCELLED
    assert PipelineState.GRAPH_BUILT not in result.report.states


def test_progress_is_monotonic_and_completes(buffers, config):
    seen = []
    PanoramaStitcher(config, progress_callback=lambda p, m: seen.append(p)).stitch(buffers)
    assert seen[0] == 0
    assert seen[-1] == 100
    assert seen == sorted(seen)


def test_bundle_adjustment_can_be_disabled(buffers, config):
    result = PanoramaStitcher(config.replace(bundle_adjustment=False)).stitch(buffers)
    assert result.status == StitchStatus.FULL
    assert not result.report.bundle_adjusted
    assert not result.report.bundle_converged
    assert PipelineState.BUNDLE_ADJUSTED in result.report.states


def test_identical_views_give_exact_canvas(views, config):
    view = views[0]
    result = PanoramaStitcher(config).stitch([ImageBuffer.from_array(view), ImageBuffer.from_array(view)])

    assert result.status == StitchStatus.FULL
    composite = result.composite
    assert (composite.width, composite.height) == (400, 360)
    assert np.all(composite.coverage == 255)
    [summary] = result.report.components
    assert summary.reference == 0
    assert np.allclose(summary.transforms[0], np.eye(3))
    assert np.allclose(summary.transforms[1], np.eye(3), atol=1e-4)


def test_missing_model_reported_for_fully_covered_panorama(views, config, tmp_path):
    view = views[1]
    refined_config = config.replace(enable_neural_refinement=True,
                                    model_path=str(tmp_path / "missing.onnx"))
    result = PanoramaStitcher(refined_config).stitch([ImageBuffer.from_array(view),
                                                      ImageBuffer.from_array(view)])

    assert result.status == StitchStatus.FULL
    assert np.all(result.composite.coverage == 255)
    assert not result.report.refined
    assert not result.report.components[0].refined
    assert result.report.diagnostics_of('inference_unavailable')
    assert PipelineState.REFINED not in result.report.states


def test_recoverable_error_escaping_a_stage_ends_run(buffers, config, monkeypatch):
    stitcher = PanoramaStitcher(config)

    def failing_composite(images, transforms, reference=None, mesh_warps=None):
        raise InsufficientMatches("lost correspondences", [0, 1])

    monkeypatch.setattr(stitcher.compositor, 'composite', failing_composite)
    result = stitcher.stitch(buffers)

    assert result.status == StitchStatus.NO_PANORAMA
    assert isinstance(result.error, NoValidPanorama)
    assert "unhandled insufficient_matches" in result.error.message
    assert result.error.images == (0, 1)
    assert result.report.states[-1] == PipelineState.ABORTED
