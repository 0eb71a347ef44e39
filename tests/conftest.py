"""Shared fixtures: synthetic textured scenes cropped into overlapping views"""

import cv2
import numpy as np
import pytest

from panostitch.core.config import StitchConfig
from panostitch.utils.buffer_store import ImageBuffer


def make_scene(width: int = 800, height: int = 360, seed: int = 7) -> np.ndarray:
    """RGB scene with blob texture and sharp shapes, deterministic per seed"""
    rng = np.random.default_rng(seed)
    noise = rng.integers(0, 256, (height // 6, width // 6, 3), dtype=np.uint8)
    scene = cv2.resize(noise, (width, height), interpolation=cv2.INTER_CUBIC)
    for _ in range(80):
        color = tuple(int(c) for c in rng.integers(0, 256, 3))
        x, y = int(rng.integers(0, width)), int(rng.integers(0, height))
        if rng.random() < 0.5:
            cv2.circle(scene, (x, y), int(rng.integers(4, 20)), color, -1)
        else:
            cv2.rectangle(scene, (x, y), (x + int(rng.integers(6, 30)), y + int(rng.integers(6, 30))), color, -1)
    return scene


def crop_views(scene: np.ndarray, width: int = 400, step: int = 200):
    """Horizontally overlapping crops (neighbours share width - step columns)"""
    views = []
    for x in range(0, scene.shape[1] - width + 1, step):
        views.append(np.ascontiguousarray(scene[:, x:x + width]))
    return views


@pytest.fixture(scope="session")
def scene():
    return make_scene()


@pytest.fixture(scope="session")
def views(scene):
    return crop_views(scene)


@pytest.fixture
def buffers(views):
    return [ImageBuffer.from_array(v, 'RGB') for v in views]


@pytest.fixture
def unrelated_view():
    return crop_views(make_scene(seed=99))[0]


@pytest.fixture
def config():
    return StitchConfig(max_workers=2)
