"""
Main stitching orchestrator
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from panostitch.core.bundle_adjuster import BundleAdjuster, BundleResult, observations_from
from panostitch.core.compositor import Compositor, to_output_format
from panostitch.core.config import StitchConfig
from panostitch.core.errors import (
    DisconnectedComponent, InferenceUnavailable, InputError, InsufficientMatches,
    NoValidPanorama, StitchingError
)
from panostitch.core.geometry import TransformEstimator
from panostitch.core.graph import StitchGraph
from panostitch.core.mesh_warp import MeshWarp, mesh_warps_for
from panostitch.core.types import (
    ComponentSummary, Composite, FeatureSet, Image, PairEstimate, PipelineState,
    StitchReport, StitchResult, StitchStatus
)
from panostitch.ml.feature_detector import create_detector
from panostitch.ml.matcher import FeatureMatcher, candidate_pairs
from panostitch.ml.refiner import Refiner, create_refiner
from panostitch.utils.buffer_store import ImageBuffer, ImageBufferStore
from panostitch.utils.parallel import parallel_map

logger = logging.getLogger(__name__)


class PanoramaStitcher:
    """Runs the whole pipeline from caller buffers to a structured result"""

    def __init__(
        self,
        config: Optional[Union[StitchConfig, Dict]] = None,
        progress_callback: Optional[Callable[[int, str], None]] = None,
        cancel_flag: Optional[Callable[[], bool]] = None,
        refiner: Optional[Refiner] = None
    ):
        """
        Initialize the stitcher

        Args:
            config: StitchConfig or a mapping accepted by StitchConfig.from_dict
            progress_callback: Called with (percentage, message)
            cancel_flag: Polled between stages; returning True cancels the run
            refiner: Refinement stage; built from config when omitted
        """
        if config is None:
            config = StitchConfig()
        elif isinstance(config, dict):
            config = StitchConfig.from_dict(config)
        else:
            config.validate()
        self.config = config
        self.progress_callback = progress_callback
        self.cancel_flag = cancel_flag
        self._cancelled = False
        self._cancel_event = threading.Event()

        self.detector = create_detector(config.detector, config.max_keypoints_per_image,
                                        config.detection_max_dimension)
        self.matcher = FeatureMatcher(config.matcher, config.match_ratio_threshold,
                                      config.min_matches_per_pair)
        self.estimator = TransformEstimator(
            model=config.transform_model,
            threshold=config.ransac_threshold,
            max_iterations=config.ransac_max_iterations,
            confidence=config.ransac_confidence,
            min_inliers=config.min_inliers_per_pair
        )
        self.bundle_adjuster = BundleAdjuster(
            model=config.transform_model,
            max_iterations=config.ba_max_iterations,
            tolerance=config.ba_tolerance,
            loss=config.ba_loss
        )
        self.compositor = Compositor(
            blend_method=config.blend_method,
            exposure_compensation=config.exposure_compensation,
            multiband_levels=config.multiband_levels,
            max_canvas_pixels=config.max_canvas_pixels
        )
        self.refiner = refiner
        if self.refiner is None and config.enable_neural_refinement:
            self.refiner = create_refiner(config)

        logger.info(f"Panorama stitcher initialized (detector: {config.detector}, "
                    f"model: {config.transform_model}, warp: {config.warp_model}, "
                    f"blend: {config.blend_method}, "
                    f"refinement: {config.enable_neural_refinement})")

    def stitch(self, buffers: Sequence[ImageBuffer]) -> StitchResult:
        """
        Stitch image buffers into a panorama

        Never raises for pipeline failures: they are reported through the
        result status and report.

        Args:
            buffers: Decoded images in capture order

        Returns:
            StitchResult with the primary composite and every other panorama
        """
        self._cancelled = False
        self._cancel_event.clear()
        report = StitchReport(input_count=len(buffers))
        self._set_state(report, PipelineState.IDLE)

        logger.info(f"Starting stitching process for {len(buffers)} images")
        self._update_progress(0, "Starting stitching process...")

        try:
            with ImageBufferStore() as store:
                return self._run(store, buffers, report)
        except InterruptedError:
            logger.info("Stitching operation cancelled")
            self._set_state(report, PipelineState.ABORTED)
            return StitchResult(StitchStatus.CANCELLED, report)
        except StitchingError as e:
            # A recoverable error that escaped its stage still ends the run
            error = e if e.fatal else NoValidPanorama(f"unhandled {e.kind}: {e.message}", e.images)
            logger.error(f"No panorama produced: {error}")
            report.add(error)
            self._set_state(report, PipelineState.ABORTED)
            return StitchResult(StitchStatus.NO_PANORAMA, report, error=error)
        except Exception as e:
            logger.error(f"Stitching failed: {e}", exc_info=True)
            error = NoValidPanorama(f"internal error: {e}")
            report.add(error)
            self._set_state(report, PipelineState.ABORTED)
            return StitchResult(StitchStatus.NO_PANORAMA, report, error=error)

    def cancel(self):
        """Cancel the current stitching operation"""
        self._cancelled = True
        self._cancel_event.set()
        logger.info("Stitching operation cancelled by user")

    def _check_cancel(self):
        """Check if operation should be cancelled"""
        if self._cancelled or (self.cancel_flag and self.cancel_flag()):
            self._cancel_event.set()
            raise InterruptedError("Stitching operation cancelled")

    def _update_progress(self, percentage: int, message: str = ""):
        """Update progress callback"""
        if self.progress_callback:
            self.progress_callback(percentage, message)

    def _set_state(self, report: StitchReport, state: PipelineState):
        report.states.append(state)
        logger.debug(f"Pipeline state: {state.name}")

    def _progress_hook(self, start: int, end: int, message: str):
        def hook(done: int, total: int):
            self._check_cancel()
            self._update_progress(start + int((end - start) * done / total), f"{message} ({done}/{total})")
        return hook

    def _run(self, store: ImageBufferStore, buffers: Sequence[ImageBuffer],
             report: StitchReport) -> StitchResult:
        config = self.config

        # Step 1: Ingest buffers and detect features
        self._check_cancel()
        self._set_state(report, PipelineState.EXTRACTING)
        logger.info("Step 1: Detecting features...")
        self._update_progress(5, "Validating images...")
        images, input_errors = store.ingest(buffers, config.input_color_format)
        for error in input_errors:
            self._record_exclusion(report, error)

        features = self._detect_features(images, report)
        usable = [image for image in images if image.index in features]
        if len(usable) < 2:
            raise NoValidPanorama(f"{len(usable)} usable image(s), need at least 2",
                                  [image.index for image in usable])

        # Step 2: Match features and estimate pairwise transforms
        self._check_cancel()
        self._set_state(report, PipelineState.ALIGNING)
        logger.info("Step 2: Matching features and estimating pairwise transforms...")
        self._update_progress(30, "Matching features between images...")
        estimates = self._estimate_pairs(sorted(features), features, report)

        # Step 3: Build stitch graph
        self._check_cancel()
        self._set_state(report, PipelineState.GRAPH_BUILT)
        logger.info("Step 3: Building stitch graph...")
        self._update_progress(60, "Building stitch graph...")
        graph = StitchGraph.build(sorted(features), estimates, config.min_inliers_per_pair)
        components = []
        for component in graph.components():
            if len(component) < 2:
                self._record_exclusion(report, DisconnectedComponent(
                    "image does not overlap any other image", component))
            else:
                components.append(component)
        if not components:
            raise NoValidPanorama("no pair of images could be aligned", sorted(features))
        logger.info(f"Found {len(components)} connected component(s): "
                    f"{[len(c) for c in components]} images")

        references = [graph.reference_for(c) for c in components]
        chained = [graph.chain_transforms(c, r) for c, r in zip(components, references)]

        # Step 4: Bundle adjustment
        self._check_cancel()
        if config.bundle_adjustment:
            logger.info("Step 4: Bundle adjustment optimization...")
            self._update_progress(65, "Optimizing global alignment (bundle adjustment)...")
            adjusted = self._bundle_adjust(graph, components, references, chained, report)
        else:
            logger.info("Step 4: Bundle adjustment disabled, using chained transforms")
            adjusted = [BundleResult(t, False, 0.0, 0.0, reason='disabled') for t in chained]
        self._set_state(report, PipelineState.BUNDLE_ADJUSTED)

        # Step 5: Composite every component
        self._check_cancel()
        logger.info("Step 5: Compositing...")
        self._update_progress(80, "Blending images...")
        by_index = {image.index: image for image in usable}
        panoramas: List[Tuple[Composite, ComponentSummary]] = []
        for component, reference, result in zip(components, references, adjusted):
            self._check_cancel()
            mesh_warps = None
            if config.warp_model == 'apap':
                mesh_warps = self._mesh_warps(graph, component, reference, result.transforms, by_index)
            try:
                composite = self.compositor.composite(
                    [by_index[k] for k in component], result.transforms, reference, mesh_warps)
            except NoValidPanorama as e:
                logger.warning(f"Could not composite component {component}: {e}")
                self._record_exclusion(report, e)
                continue
            summary = ComponentSummary(component, reference, result.converged,
                                       result.initial_error, result.final_error,
                                       transforms=dict(result.transforms))
            panoramas.append((composite, summary))
        if not panoramas:
            raise NoValidPanorama("no component could be composited", sorted(features))
        self._set_state(report, PipelineState.COMPOSITED)

        # Largest panorama first; ties go to the lowest reference index
        panoramas.sort(key=lambda p: (-len(p[0].image_indices), p[0].reference_index))

        # Step 6: Neural refinement (optional)
        if config.enable_neural_refinement:
            self._check_cancel()
            logger.info("Step 6: Neural refinement...")
            self._update_progress(92, "Refining panorama...")
            self._refine(panoramas, report)
            if any(summary.refined for _, summary in panoramas):
                self._set_state(report, PipelineState.REFINED)

        composites = []
        for composite, summary in panoramas:
            composite.pixels = to_output_format(composite.pixels, composite.coverage,
                                                config.output_color_format)
            composite.color_format = config.output_color_format
            composites.append(composite)
            report.components.append(summary)

        primary = composites[0]
        report.used_images = sorted(primary.image_indices)
        for index in range(len(buffers)):
            if index not in primary.image_indices:
                report.exclude(index, "not part of the primary panorama")
        report.bundle_adjusted = config.bundle_adjustment
        report.bundle_converged = report.components[0].bundle_converged
        report.refined = report.components[0].refined

        self._set_state(report, PipelineState.DONE)
        status = StitchStatus.FULL if len(report.used_images) == len(buffers) else StitchStatus.PARTIAL
        self._update_progress(100, "Stitching completed successfully!")
        logger.info(f"Stitching completed ({status.value}): {len(report.used_images)}/{len(buffers)} "
                    f"images, {primary.width}x{primary.height}")
        return StitchResult(status, report, primary, composites)

    def _record_exclusion(self, report: StitchReport, error: StitchingError):
        report.add(error)
        for index in error.images:
            report.exclude(index, error.message)

    def _detect_features(self, images: List[Image], report: StitchReport) -> Dict[int, FeatureSet]:
        def detect(image: Image):
            try:
                return self.detector.detect(image)
            except InputError as e:
                return e

        results = parallel_map(detect, images, self.config.max_workers, self._cancel_event,
                               self._progress_hook(10, 30, "Detecting features"))
        features = {}
        for image, result in zip(images, results):
            if isinstance(result, InputError):
                logger.warning(f"Excluding image {image.index}: {result.message}")
                self._record_exclusion(report, result)
            else:
                features[image.index] = result
        logger.info(f"Detected features in {len(features)}/{len(images)} images")
        return features

    def _estimate_pairs(self, indices: List[int], features: Dict[int, FeatureSet],
                        report: StitchReport) -> List[PairEstimate]:
        pairs = candidate_pairs(indices, self.config.match_window)
        logger.info(f"Matching {len(pairs)} image pairs")

        def estimate(pair: Tuple[int, int]):
            i, j = pair
            try:
                matches = self.matcher.match(features[i], features[j])
            except InsufficientMatches as e:
                return e
            # Per-pair seed keeps results independent of scheduling
            rng = np.random.default_rng([self.config.seed, i, j])
            transform = self.estimator.estimate(matches.src_points, matches.dst_points, rng)
            if not transform.valid:
                return InsufficientMatches(f"pair rejected: {transform.reason}", pair)
            return PairEstimate(matches, transform)

        results = parallel_map(estimate, pairs, self.config.max_workers, self._cancel_event,
                               self._progress_hook(30, 60, "Matching image pairs"))
        estimates = []
        for pair, result in zip(pairs, results):
            if isinstance(result, InsufficientMatches):
                logger.debug(f"Dropping pair {pair}: {result.message}")
                report.add(result)
            else:
                logger.debug(f"Pair {pair}: {result.transform.inlier_count} inliers")
                estimates.append(result)
        logger.info(f"{len(estimates)}/{len(pairs)} pairs have a reliable transform")
        return estimates

    def _bundle_adjust(self, graph: StitchGraph, components, references, chained,
                       report: StitchReport) -> List[BundleResult]:
        def adjust(k: int) -> BundleResult:
            observations = observations_from(graph.component_edges(components[k]))
            return self.bundle_adjuster.adjust(components[k], references[k], chained[k], observations)

        results = parallel_map(adjust, list(range(len(components))), self.config.max_workers,
                               self._cancel_event)
        for result in results:
            if result.error is not None:
                report.add(result.error)
        return results

    def _mesh_warps(self, graph: StitchGraph, component, reference, transforms,
                    by_index: Dict[int, Image]) -> Dict[int, MeshWarp]:
        config = self.config
        observations = observations_from(graph.component_edges(component))
        return mesh_warps_for(component, reference, transforms, observations,
                              {k: by_index[k].size for k in component},
                              config.apap_mesh_size, config.apap_sigma, config.apap_gamma)

    def _refine(self, panoramas: List[Tuple[Composite, ComponentSummary]], report: StitchReport):
        for composite, summary in panoramas:
            self._check_cancel()
            try:
                refined = self.refiner.infer(composite.pixels, composite.coverage, self._cancel_event)
            except InferenceUnavailable as e:
                logger.warning(f"Refinement unavailable, keeping unrefined composite: {e}")
                report.add(e)
                # The same failure would repeat for every panorama
                return
            except InterruptedError:
                raise
            except Exception as e:
                logger.error(f"Refinement failed: {e}", exc_info=True)
                report.add(InferenceUnavailable(f"refinement failed: {e}", composite.image_indices))
                return

            if refined is None or refined.shape != composite.pixels.shape or refined.dtype != np.uint8:
                report.add(InferenceUnavailable("refiner returned an invalid image", composite.image_indices))
                return
            composite.pixels = refined
            composite.coverage = np.full_like(composite.coverage, 255)
            summary.refined = True
