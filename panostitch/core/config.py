"""
Pipeline configuration
"""

from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

import yaml

from panostitch.core.types import COLOR_FORMATS

logger = logging.getLogger(__name__)

# Keys of the caller-facing contract, mapped to field names
CONTRACT_KEYS = {
    'maxKeypointsPerImage': 'max_keypoints_per_image',
    'matchRatioThreshold': 'match_ratio_threshold',
    'ransacThreshold': 'ransac_threshold',
    'minInliersPerPair': 'min_inliers_per_pair',
    'enableNeuralRefinement': 'enable_neural_refinement',
    'modelPath': 'model_path',
}

DETECTORS = ('sift', 'orb')
MATCHERS = ('bf', 'flann')
TRANSFORM_MODELS = ('homography', 'similarity')
WARP_MODELS = ('global', 'apap')
EXPOSURE_METHODS = ('gain_bias', 'none')
BLEND_METHODS = ('feather', 'multiband', 'none')
REFINEMENT_METHODS = ('onnx', 'telea')
BA_LOSSES = ('linear', 'huber', 'soft_l1', 'cauchy')


@dataclass
class StitchConfig:
    """
    All tunable options of a stitching run

    The first six fields form the caller contract; the rest have defaults
    that work for typical handheld photos.
    """
    max_keypoints_per_image: int = 4000
    match_ratio_threshold: float = 0.75
    ransac_threshold: float = 4.0
    min_inliers_per_pair: int = 20
    enable_neural_refinement: bool = False
    model_path: Optional[str] = None

    # Feature extraction and matching
    detector: str = 'sift'
    matcher: str = 'bf'
    min_matches_per_pair: int = 10
    match_window: Optional[int] = None
    detection_max_dimension: int = 1600

    # Pairwise geometry
    transform_model: str = 'homography'
    ransac_max_iterations: int = 2000
    ransac_confidence: float = 0.995
    seed: int = 0

    # Bundle adjustment
    bundle_adjustment: bool = True
    ba_max_iterations: int = 100
    ba_tolerance: float = 1e-8
    ba_loss: str = 'linear'

    # Warping; apap fits local homographies on a mesh (sigma in pixels)
    warp_model: str = 'global'
    apap_mesh_size: int = 100
    apap_sigma: float = 8.5
    apap_gamma: float = 0.1

    # Compositing
    exposure_compensation: str = 'gain_bias'
    blend_method: str = 'feather'
    multiband_levels: int = 5
    max_canvas_pixels: int = 50_000_000

    # Neural refinement
    refinement_method: str = 'onnx'
    inference_timeout: float = 120.0
    use_accelerator: bool = False

    # Execution and buffers
    max_workers: Optional[int] = None
    input_color_format: str = 'RGB'
    output_color_format: str = 'RGBA'

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'StitchConfig':
        """Build a config from a mapping; contract (camelCase) keys are accepted"""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (values or {}).items():
            name = CONTRACT_KEYS.get(key, key)
            if name not in known:
                logger.warning(f"Ignoring unknown config option: {key}")
                continue
            kwargs[name] = value
        config = cls(**kwargs)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'StitchConfig':
        """Load a config from a YAML file"""
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            values = yaml.safe_load(f) or {}
        if not isinstance(values, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        logger.info(f"Loaded configuration from {path}")
        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> 'StitchConfig':
        values = self.to_dict()
        values.update(changes)
        return StitchConfig.from_dict(values)

    def validate(self):
        """Raise ValueError for out-of-range or unknown options"""
        if self.max_keypoints_per_image <= 0:
            raise ValueError("max_keypoints_per_image must be positive")
        if not 0.0 < self.match_ratio_threshold <= 1.0:
            raise ValueError("match_ratio_threshold must be in (0, 1]")
        if self.ransac_threshold <= 0:
            raise ValueError("ransac_threshold must be positive")
        if self.min_inliers_per_pair < 1:
            raise ValueError("min_inliers_per_pair must be at least 1")
        if self.min_matches_per_pair < 1:
            raise ValueError("min_matches_per_pair must be at least 1")
        if not 0.0 < self.ransac_confidence < 1.0:
            raise ValueError("ransac_confidence must be in (0, 1)")
        if self.ransac_max_iterations < 1 or self.ba_max_iterations < 1:
            raise ValueError("iteration limits must be positive")
        if self.match_window is not None and self.match_window < 1:
            raise ValueError("match_window must be positive or None")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be positive or None")
        if self.max_canvas_pixels <= 0:
            raise ValueError("max_canvas_pixels must be positive")
        if self.multiband_levels < 1:
            raise ValueError("multiband_levels must be at least 1")
        if self.inference_timeout <= 0:
            raise ValueError("inference_timeout must be positive")
        if self.apap_mesh_size < 1 or self.apap_sigma <= 0:
            raise ValueError("apap_mesh_size and apap_sigma must be positive")
        if not 0.0 <= self.apap_gamma <= 1.0:
            raise ValueError("apap_gamma must be in [0, 1]")

        choices = {
            'detector': DETECTORS,
            'matcher': MATCHERS,
            'transform_model': TRANSFORM_MODELS,
            'warp_model': WARP_MODELS,
            'exposure_compensation': EXPOSURE_METHODS,
            'blend_method': BLEND_METHODS,
            'refinement_method': REFINEMENT_METHODS,
            'ba_loss': BA_LOSSES,
        }
        for name, allowed in choices.items():
            if getattr(self, name) not in allowed:
                raise ValueError(f"{name} must be one of {allowed}, got {getattr(self, name)!r}")

        for name in ('input_color_format', 'output_color_format'):
            if getattr(self, name) not in COLOR_FORMATS:
                raise ValueError(f"{name} must be one of {tuple(COLOR_FORMATS)}")
