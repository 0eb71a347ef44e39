"""
Keypoint detection and description for stitching
"""

import cv2
import numpy as np
from typing import Optional, Tuple
import logging

from panostitch.core.errors import InputError
from panostitch.core.types import FeatureSet, Image

logger = logging.getLogger(__name__)

# Fewer keypoints than this cannot support even one minimal sample per pair
MIN_KEYPOINTS = 8


class _Detector:
    """Shared scaling, preprocessing and packing for OpenCV detectors"""

    name = 'detector'

    def __init__(self, n_features: int = 4000, max_dimension: int = 1600):
        self.n_features = n_features
        self.max_dimension = max_dimension

    def _detect(self, gray: np.ndarray) -> Tuple[list, Optional[np.ndarray]]:
        raise NotImplementedError

    def _preprocess(self, image: np.ndarray) -> np.ndarray:
        """Preprocess image for better feature detection"""
        # Apply CLAHE (Contrast Limited Adaptive Histogram Equalization)
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        return clahe.apply(image)

    def detect(self, image: Image) -> FeatureSet:
        """
        Detect features and compute descriptors

        Large images are scaled down to max_dimension for detection and the
        keypoints are scaled back to original image coordinates.

        Raises:
            InputError: If the image is unreadable or has too little texture
        """
        pixels = image.pixels
        if pixels is None or pixels.size == 0:
            raise InputError("image has no pixels", [image.index])

        gray = cv2.cvtColor(pixels, cv2.COLOR_BGR2GRAY) if pixels.ndim == 3 else pixels

        # Scale down very large images for faster feature detection
        h, w = gray.shape[:2]
        scale = 1.0
        if max(h, w) > self.max_dimension:
            scale = self.max_dimension / max(h, w)
            new_w, new_h = int(w * scale), int(h * scale)
            gray = cv2.resize(gray, (new_w, new_h), interpolation=cv2.INTER_AREA)
            logger.debug(f"Scaled image {image.index} from {w}x{h} to {new_w}x{new_h} for feature detection")

        gray = self._preprocess(gray)

        try:
            keypoints, descriptors = self._detect(gray)
        except cv2.error as e:
            raise InputError(f"feature detection failed: {e}", [image.index]) from e

        if descriptors is None or len(keypoints) < MIN_KEYPOINTS:
            raise InputError(f"too little texture ({len(keypoints)} keypoints)", [image.index])

        # Limit to max features by response strength; stable for equal responses
        responses = np.array([kp.response for kp in keypoints], dtype=np.float32)
        order = np.argsort(-responses, kind='stable')[:self.n_features]
        keypoints = [keypoints[k] for k in order]
        descriptors = descriptors[order]

        inv_scale = 1.0 / scale
        points = np.array([kp.pt for kp in keypoints], dtype=np.float64) * inv_scale
        sizes = np.array([kp.size for kp in keypoints], dtype=np.float32) * inv_scale
        angles = np.array([kp.angle for kp in keypoints], dtype=np.float32)

        logger.debug(f"Image {image.index}: {len(points)} {self.name} keypoints")
        return FeatureSet(
            image_index=image.index,
            points=points,
            descriptors=np.ascontiguousarray(descriptors),
            sizes=sizes,
            angles=angles,
            responses=responses[order],
        )


class SIFTDetector(_Detector):
    """SIFT detector on CLAHE-enhanced grayscale"""

    name = 'sift'

    def _detect(self, gray):
        # Fresh instance per call so worker threads never share detector state
        sift = cv2.SIFT_create(
            nfeatures=self.n_features,
            contrastThreshold=0.04,
            edgeThreshold=10,
            sigma=1.6
        )
        return sift.detectAndCompute(gray, None)


class ORBDetector(_Detector):
    """ORB detector as alternative (binary descriptors, Hamming distance)"""

    name = 'orb'

    def _detect(self, gray):
        orb = cv2.ORB_create(nfeatures=self.n_features)
        return orb.detectAndCompute(gray, None)


def create_detector(method: str = 'sift', n_features: int = 4000,
                    max_dimension: int = 1600) -> _Detector:
    if method == 'sift':
        return SIFTDetector(n_features, max_dimension)
    if method == 'orb':
        return ORBDetector(n_features, max_dimension)
    raise ValueError(f"Unknown detector: {method}")
