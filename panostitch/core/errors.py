"""
Error taxonomy for the stitching pipeline

Only NoValidPanorama is fatal. Every other error is raised by a stage,
caught by the orchestrator and recorded in the result report.
"""

from typing import Optional, Sequence, Tuple


class StitchingError(Exception):
    """Base class for all pipeline errors"""

    kind = "stitching_error"
    fatal = False

    def __init__(self, message: str, images: Optional[Sequence[int]] = None):
        super().__init__(message)
        self.message = message
        self.images: Tuple[int, ...] = tuple(images or ())

    def __str__(self) -> str:
        if self.images:
            return f"{self.message} (images: {', '.join(str(i) for i in self.images)})"
        return self.message


class InputError(StitchingError):
    """Malformed, empty or featureless buffer. The image is dropped."""

    kind = "input_error"


class InsufficientMatches(StitchingError):
    """An image pair has too few matches or inliers. The pair is dropped."""

    kind = "insufficient_matches"


class DisconnectedComponent(StitchingError):
    """An image is not connected to any other image."""

    kind = "disconnected_component"


class ConvergenceFailure(StitchingError):
    """Bundle adjustment failed; chained transforms are used unrefined."""

    kind = "convergence_failure"


class InferenceUnavailable(StitchingError):
    """Neural refinement could not run; the unrefined composite is returned."""

    kind = "inference_unavailable"


class NoValidPanorama(StitchingError):
    """No usable images or no connected component with at least two images."""

    kind = "no_valid_panorama"
    fatal = True
