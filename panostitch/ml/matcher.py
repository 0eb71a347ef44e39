"""
Descriptor matching with Lowe's ratio test
"""

import cv2
import numpy as np
from typing import List, Optional, Sequence, Tuple
import logging

from panostitch.core.errors import InsufficientMatches
from panostitch.core.types import FeatureSet, Match, PairMatches

logger = logging.getLogger(__name__)


def candidate_pairs(indices: Sequence[int], window: Optional[int] = None) -> List[Tuple[int, int]]:
    """
    Image pairs to match

    Args:
        indices: Usable image indices, in input order
        window: If set, only pairs at most this many positions apart are matched

    Returns:
        Sorted list of (i, j) with i < j
    """
    ordered = sorted(indices)
    pairs = []
    for a in range(len(ordered)):
        for b in range(a + 1, len(ordered)):
            if window is not None and b - a > window:
                break
            pairs.append((ordered[a], ordered[b]))
    return pairs


class FeatureMatcher:
    """k=2 nearest-neighbour matcher with ratio test"""

    def __init__(
        self,
        method: str = 'bf',
        ratio_threshold: float = 0.75,
        min_matches: int = 10
    ):
        """
        Initialize matcher

        Args:
            method: Matching method ('bf' or 'flann')
            ratio_threshold: Lowe's ratio test threshold
            min_matches: Fewer surviving matches than this drop the pair
        """
        self.method = method
        self.ratio_threshold = ratio_threshold
        self.min_matches = min_matches
        logger.info(f"Feature matcher initialized (method: {method}, ratio: {ratio_threshold})")

    def _create_matcher(self, binary: bool):
        """Create matcher appropriate for descriptor type"""
        if self.method == 'flann':
            if binary:
                FLANN_INDEX_LSH = 6
                index_params = dict(algorithm=FLANN_INDEX_LSH, table_number=6, key_size=12,
                                    multi_probe_level=1)
            else:
                # KDTREE for float descriptors
                FLANN_INDEX_KDTREE = 1
                index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=5)
            return cv2.FlannBasedMatcher(index_params, dict(checks=100))
        # Brute force matcher
        return cv2.BFMatcher(cv2.NORM_HAMMING if binary else cv2.NORM_L2, crossCheck=False)

    def match(self, features_i: FeatureSet, features_j: FeatureSet) -> PairMatches:
        """
        Match descriptors of image i against image j

        Returns:
            PairMatches with src points in image i and dst points in image j

        Raises:
            InsufficientMatches: If fewer than min_matches survive the ratio test
        """
        pair = (features_i.image_index, features_j.image_index)
        desc_i, desc_j = features_i.descriptors, features_j.descriptors

        if len(desc_i) < 2 or len(desc_j) < 2:
            raise InsufficientMatches("too few descriptors to match", pair)
        if desc_i.shape[1] != desc_j.shape[1]:
            raise InsufficientMatches(f"descriptor dimension mismatch: "
                                      f"{desc_i.shape[1]} vs {desc_j.shape[1]}", pair)

        binary = desc_i.dtype == np.uint8
        if not binary:
            desc_i = desc_i.astype(np.float32, copy=False)
            desc_j = desc_j.astype(np.float32, copy=False)

        matcher = self._create_matcher(binary)
        try:
            knn = matcher.knnMatch(desc_i, desc_j, k=2)
        except cv2.error as e:
            logger.warning(f"FLANN matching failed for pair {pair}, falling back to brute force: {e}")
            knn = cv2.BFMatcher(cv2.NORM_HAMMING if binary else cv2.NORM_L2).knnMatch(desc_i, desc_j, k=2)

        # Apply Lowe's ratio test
        matches: List[Match] = []
        for match_pair in knn:
            if len(match_pair) != 2:
                continue
            m, n = match_pair
            if m.distance < self.ratio_threshold * n.distance:
                confidence = 1.0 - m.distance / n.distance if n.distance > 0 else 1.0
                matches.append(Match(m.queryIdx, m.trainIdx, float(m.distance), float(confidence)))

        logger.debug(f"Pair {pair}: {len(matches)} of {len(knn)} matches passed ratio test")

        if len(matches) < self.min_matches:
            raise InsufficientMatches(f"only {len(matches)} matches (need {self.min_matches})", pair)

        if logger.isEnabledFor(logging.DEBUG):
            best = min(matches, key=lambda m: m.distance)
            a, b = features_i[best.query_idx], features_j[best.train_idx]
            logger.debug(f"Pair {pair}: best match ({a.x:.1f}, {a.y:.1f}) -> ({b.x:.1f}, {b.y:.1f}), "
                         f"distance {best.distance:.1f}")

        query = np.array([m.query_idx for m in matches], dtype=np.intp)
        train = np.array([m.train_idx for m in matches], dtype=np.intp)
        return PairMatches(
            image_i=pair[0],
            image_j=pair[1],
            matches=matches,
            src_points=features_i.points[query],
            dst_points=features_j.points[train],
        )
