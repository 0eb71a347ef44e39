"""
panostitch - multi-image panorama stitching
"""

from panostitch.core.config import StitchConfig
from panostitch.core.errors import (
    ConvergenceFailure, DisconnectedComponent, InferenceUnavailable, InputError,
    InsufficientMatches, NoValidPanorama, StitchingError
)
from panostitch.core.stitcher import PanoramaStitcher
from panostitch.core.types import Composite, PipelineState, StitchReport, StitchResult, StitchStatus
from panostitch.utils.buffer_store import ImageBuffer

__version__ = "0.1.0"

__all__ = [
    'PanoramaStitcher',
    'StitchConfig',
    'ImageBuffer',
    'StitchResult',
    'StitchReport',
    'StitchStatus',
    'PipelineState',
    'Composite',
    'StitchingError',
    'InputError',
    'InsufficientMatches',
    'DisconnectedComponent',
    'ConvergenceFailure',
    'InferenceUnavailable',
    'NoValidPanorama',
]
