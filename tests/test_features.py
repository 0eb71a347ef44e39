import logging

import numpy as np
import pytest

from panostitch.core.errors import InputError, InsufficientMatches
from panostitch.ml.feature_detector import ORBDetector, SIFTDetector, create_detector
from panostitch.ml.matcher import FeatureMatcher, candidate_pairs
from panostitch.utils.buffer_store import ImageBuffer, ImageBufferStore


def ingest(*arrays):
    store = ImageBufferStore()
    images, errors = store.ingest([ImageBuffer.from_array(a) for a in arrays])
    assert errors == []
    return images


def test_sift_detects_capped_keypoints(views):
    image = ingest(views[0])[0]
    features = SIFTDetector(n_features=300).detect(image)
    assert 8 <= len(features) <= 300
    assert features.descriptors.shape == (len(features), 128)
    assert np.all(np.diff(features.responses) <= 0)
    keypoint = features[0]
    assert keypoint.image_index == image.index
    assert keypoint.descriptor.shape == (128,)


def test_keypoints_scaled_back_to_original_coordinates(scene):
    image = ingest(scene)[0]
    features = SIFTDetector(n_features=500, max_dimension=200).detect(image)
    assert features.points[:, 0].max() > 200
    assert features.points[:, 0].max() < image.width
    assert features.points[:, 1].max() < image.height


def test_textureless_image_is_an_input_error():
    image = ingest(np.full((120, 160, 3), 90, dtype=np.uint8))[0]
    with pytest.raises(InputError) as excinfo:
        SIFTDetector().detect(image)
    assert excinfo.value.images == (0,)


def test_orb_descriptors_are_binary(views):
    features = ORBDetector(n_features=500).detect(ingest(views[0])[0])
    assert features.descriptors.dtype == np.uint8


def test_create_detector_rejects_unknown_method():
    assert isinstance(create_detector('sift'), SIFTDetector)
    with pytest.raises(ValueError):
        create_detector('surf')


def test_candidate_pairs_all_and_windowed():
    assert candidate_pairs([0, 1, 2]) == [(0, 1), (0, 2), (1, 2)]
    assert candidate_pairs([3, 0, 5, 7], window=1) == [(0, 3), (3, 5), (5, 7)]


def test_overlapping_views_match_with_translation(views):
    images = ingest(views[0], views[1])
    detector = SIFTDetector(n_features=2000)
    fi, fj = detector.detect(images[0]), detector.detect(images[1])
    pair = FeatureMatcher(ratio_threshold=0.75, min_matches=10).match(fi, fj)

    assert pair.pair == (0, 1)
    assert len(pair) >= 20
    assert len(pair.src_points) == len(pair.dst_points) == len(pair.matches)
    assert all(0.0 < m.confidence <= 1.0 for m in pair.matches)
    # View 1 starts 200 px to the right of view 0
    shift = np.median(pair.src_points - pair.dst_points, axis=0)
    assert shift == pytest.approx([200.0, 0.0], abs=1.0)


def test_best_match_keypoints_are_logged(views, caplog):
    images = ingest(views[0], views[1])
    detector = SIFTDetector(n_features=1000)
    fi, fj = detector.detect(images[0]), detector.detect(images[1])
    with caplog.at_level(logging.DEBUG, logger='panostitch.ml.matcher'):
        FeatureMatcher().match(fi, fj)
    assert "best match (" in caplog.text


def test_unrelated_views_raise_insufficient_matches(views, unrelated_view):
    images = ingest(views[0], unrelated_view)
    detector = SIFTDetector(n_features=500)
    matcher = FeatureMatcher(ratio_threshold=0.5, min_matches=200)
    with pytest.raises(InsufficientMatches) as excinfo:
        matcher.match(detector.detect(images[0]), detector.detect(images[1]))
    assert excinfo.value.images == (0, 1)
