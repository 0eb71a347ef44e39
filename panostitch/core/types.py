"""
Data model shared by all pipeline stages
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from panostitch.core.errors import StitchingError


# Channel counts per supported color format tag
COLOR_FORMATS = {
    'GRAY': 1,
    'RGB': 3,
    'BGR': 3,
    'RGBA': 4,
    'BGRA': 4,
}


@dataclass(frozen=True)
class Image:
    """Read-only frame owned by the ImageBufferStore (pixels are BGR uint8)"""
    pixels: np.ndarray
    width: int
    height: int
    channels: int
    color_space: str
    index: int

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True)
class Keypoint:
    x: float
    y: float
    descriptor: np.ndarray
    image_index: int


@dataclass
class FeatureSet:
    """Keypoints and descriptors detected in one image"""
    image_index: int
    points: np.ndarray
    descriptors: np.ndarray
    sizes: np.ndarray
    angles: np.ndarray
    responses: np.ndarray

    def __len__(self) -> int:
        return len(self.points)

    def __getitem__(self, k: int) -> Keypoint:
        x, y = self.points[k]
        return Keypoint(float(x), float(y), self.descriptors[k], self.image_index)


@dataclass(frozen=True)
class Match:
    """Correspondence between keypoint query_idx of image i and train_idx of image j"""
    query_idx: int
    train_idx: int
    distance: float
    confidence: float


@dataclass
class PairMatches:
    image_i: int
    image_j: int
    matches: List[Match]
    src_points: np.ndarray
    dst_points: np.ndarray

    @property
    def pair(self) -> Tuple[int, int]:
        return self.image_i, self.image_j

    def __len__(self) -> int:
        return len(self.matches)


@dataclass
class Transform:
    """3x3 matrix mapping one frame's coordinates into another frame"""
    matrix: np.ndarray
    valid: bool = True
    inlier_count: int = 0
    inlier_mask: Optional[np.ndarray] = None
    rms_error: float = float('inf')
    model: str = 'homography'
    reason: str = ''

    @classmethod
    def invalid(cls, reason: str, model: str = 'homography') -> 'Transform':
        return cls(np.eye(3, dtype=np.float64), False, 0, None, float('inf'), model, reason)

    def inverse(self) -> np.ndarray:
        return np.linalg.inv(self.matrix)


@dataclass
class PairEstimate:
    """Matches plus the robust transform (image_i -> image_j) of one pair"""
    matches: PairMatches
    transform: Transform

    @property
    def pair(self) -> Tuple[int, int]:
        return self.matches.pair

    @property
    def inlier_src(self) -> np.ndarray:
        mask = self.transform.inlier_mask
        if mask is None:
            return self.matches.src_points
        return self.matches.src_points[mask]

    @property
    def inlier_dst(self) -> np.ndarray:
        mask = self.transform.inlier_mask
        if mask is None:
            return self.matches.dst_points
        return self.matches.dst_points[mask]


@dataclass
class Canvas:
    """Output coordinate system; offset maps reference-frame coords to canvas pixels"""
    x_min: float
    y_min: float
    width: int
    height: int
    offset: np.ndarray
    scale: float = 1.0

    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width


@dataclass
class WarpedPatch:
    """One image resampled into canvas space, restricted to its bounding ROI"""
    index: int
    x: int
    y: int
    pixels: np.ndarray
    mask: np.ndarray

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    def roi(self) -> Tuple[slice, slice]:
        return slice(self.y, self.y + self.height), slice(self.x, self.x + self.width)


@dataclass
class Composite:
    """Final pixel buffer; the caller owns it once returned"""
    pixels: np.ndarray
    width: int
    height: int
    color_format: str
    coverage: np.ndarray
    image_indices: List[int]
    reference_index: int

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else self.pixels.shape[2]


class PipelineState(Enum):
    IDLE = 'idle'
    EXTRACTING = 'extracting'
    ALIGNING = 'aligning'
    GRAPH_BUILT = 'graph_built'
    BUNDLE_ADJUSTED = 'bundle_adjusted'
    COMPOSITED = 'composited'
    REFINED = 'refined'
    DONE = 'done'
    ABORTED = 'aborted'


class StitchStatus(Enum):
    FULL = 'full'
    PARTIAL = 'partial'
    NO_PANORAMA = 'no_panorama'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class Diagnostic:
    kind: str
    message: str
    images: Tuple[int, ...] = ()

    @classmethod
    def from_error(cls, error: StitchingError) -> 'Diagnostic':
        return cls(error.kind, error.message, error.images)


@dataclass
class ComponentSummary:
    images: List[int]
    reference: int
    bundle_converged: bool
    initial_error: float
    final_error: float
    refined: bool = False
    # image -> reference transform used for compositing
    transforms: Dict[int, np.ndarray] = field(default_factory=dict)


@dataclass
class StitchReport:
    input_count: int = 0
    used_images: List[int] = field(default_factory=list)
    excluded_images: Dict[int, str] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    bundle_adjusted: bool = False
    bundle_converged: bool = False
    refined: bool = False
    states: List[PipelineState] = field(default_factory=list)
    components: List[ComponentSummary] = field(default_factory=list)

    def add(self, error: StitchingError):
        self.diagnostics.append(Diagnostic.from_error(error))

    def exclude(self, index: int, reason: str):
        # The first reason recorded for an image wins
        self.excluded_images.setdefault(index, reason)

    def diagnostics_of(self, kind: str) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]


@dataclass
class StitchResult:
    status: StitchStatus
    report: StitchReport
    composite: Optional[Composite] = None
    panoramas: List[Composite] = field(default_factory=list)
    error: Optional[StitchingError] = None

    @property
    def ok(self) -> bool:
        return self.status in (StitchStatus.FULL, StitchStatus.PARTIAL)

    def raise_for_status(self):
        if self.error is not None and not self.ok:
            raise self.error
        if self.status == StitchStatus.CANCELLED:
            raise InterruptedError("Stitching operation cancelled")
