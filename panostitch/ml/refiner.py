"""
Neural refinement of composites: fills uncovered canvas regions

The ONNX refiner expects a LaMa-style inpainting model with inputs
"image" [1,3,S,S] (float, 0..1) and "mask" [1,1,S,S] (1 = fill) and one
output [1,3,S,S]. Every refiner is a pure function of its inputs.
"""

import concurrent.futures
import logging
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

from panostitch.core.errors import InferenceUnavailable

logger = logging.getLogger(__name__)

# Optional runtime; the pipeline degrades to the unrefined composite without it
try:
    import onnxruntime as ort
    ORT_AVAILABLE = True
except ImportError:
    ort = None
    ORT_AVAILABLE = False

MODEL_INPUT_SIZE = 512
BLACK_THRESHOLD = 2
PAD_VALUE = 127
INPUT_NAMES = ('image', 'mask')

ACCELERATOR_PROVIDERS = (
    'CUDAExecutionProvider',
    'DmlExecutionProvider',
    'CoreMLExecutionProvider',
    'NnapiExecutionProvider',
)

# How often the waiting thread checks for cancellation, in seconds
_POLL_INTERVAL = 0.05


def black_border_mask(image: np.ndarray, threshold: int = BLACK_THRESHOLD) -> np.ndarray:
    """Near-black region connected to the image corners, via flood fill"""
    gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image.copy()
    h, w = gray.shape
    flood = np.zeros((h + 2, w + 2), dtype=np.uint8)
    for seed in ((0, 0), (w - 1, 0), (0, h - 1), (w - 1, h - 1)):
        if gray[seed[1], seed[0]] <= threshold:
            cv2.floodFill(gray, flood, seed, 255, threshold, threshold,
                          cv2.FLOODFILL_MASK_ONLY | (255 << 8))
    return flood[1:-1, 1:-1].copy()


def fill_mask(image: np.ndarray, coverage: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Region to fill: the uncovered canvas if a coverage mask is known, else
    the black border; closed and dilated so the fill blends into content
    """
    if coverage is not None:
        mask = np.where(coverage > 0, 0, 255).astype(np.uint8)
    else:
        mask = black_border_mask(image)
    if not mask.any():
        return mask
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (5, 5))
    mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel)
    return cv2.dilate(mask, kernel, iterations=2)


class Refiner:
    """Interface of a refinement stage"""

    name = 'refiner'

    def infer(self, image: np.ndarray, coverage: Optional[np.ndarray] = None,
              cancel_event: Optional[threading.Event] = None) -> np.ndarray:
        """
        Args:
            image: BGR uint8 composite (never modified)
            coverage: Coverage mask of the composite (0 = no source pixel)
            cancel_event: Set to abandon inference

        Returns:
            New BGR uint8 image of the same size

        Raises:
            InferenceUnavailable: If refinement cannot run
            InterruptedError: If cancelled
        """
        raise NotImplementedError


class TeleaRefiner(Refiner):
    """Classical completion with OpenCV's fast-marching inpainting"""

    name = 'telea'

    def __init__(self, radius: int = 3):
        self.radius = radius

    def infer(self, image, coverage=None, cancel_event=None):
        if coverage is not None:
            mask = np.where(coverage > 0, 0, 255).astype(np.uint8)
        else:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
            _, mask = cv2.threshold(gray, 1, 255, cv2.THRESH_BINARY_INV)
        if not mask.any():
            logger.info("Image is complete, nothing to fill")
            return image.copy()

        mask = cv2.dilate(mask, cv2.getStructuringElement(cv2.MORPH_RECT, (5, 5)))
        logger.info(f"Telea inpainting {int(np.count_nonzero(mask))} pixels")
        return cv2.inpaint(image, mask, self.radius, cv2.INPAINT_TELEA)


class OnnxInpaintRefiner(Refiner):
    """LaMa-style inpainting through ONNX Runtime"""

    name = 'onnx'

    def __init__(
        self,
        model_path: Optional[str] = None,
        timeout: float = 120.0,
        use_accelerator: bool = False,
        session=None,
        input_size: int = MODEL_INPUT_SIZE
    ):
        """
        Args:
            model_path: Path to the .onnx model file
            timeout: Inference latency bound in seconds
            use_accelerator: Prefer GPU/NPU execution providers when available
            session: Pre-built session exposing run(output_names, feeds, run_options)
            input_size: Square model input size
        """
        self.model_path = model_path
        self.timeout = timeout
        self.use_accelerator = use_accelerator
        self.input_size = input_size
        self._session = session
        self._lock = threading.Lock()

    def _providers(self):
        available = ort.get_available_providers()
        providers = []
        if self.use_accelerator:
            providers = [p for p in ACCELERATOR_PROVIDERS if p in available]
            if not providers:
                logger.info("No accelerator provider available, using CPU")
        providers.append('CPUExecutionProvider')
        return providers

    def load(self):
        """Create the inference session on first use"""
        with self._lock:
            if self._session is not None:
                return self._session
            if not ORT_AVAILABLE:
                raise InferenceUnavailable("onnxruntime is not installed")
            if not self.model_path:
                raise InferenceUnavailable("no model path configured")
            if not Path(self.model_path).is_file():
                raise InferenceUnavailable(f"model file not found: {self.model_path}")

            options = ort.SessionOptions()
            options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
            options.intra_op_num_threads = 4
            try:
                self._session = ort.InferenceSession(str(self.model_path), sess_options=options,
                                                     providers=self._providers())
            except Exception as e:
                raise InferenceUnavailable(f"could not load model {self.model_path}: {e}") from e
            logger.info(f"Loaded inpainting model {self.model_path} "
                        f"(providers: {self._session.get_providers()})")
            return self._session

    def preprocess(self, image: np.ndarray, mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray, dict]:
        """Letterbox to the model size with grey padding; padding is masked"""
        size = self.input_size
        orig_h, orig_w = image.shape[:2]
        scale = min(size / orig_w, size / orig_h)
        new_w, new_h = max(int(orig_w * scale), 1), max(int(orig_h * scale), 1)

        img_resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)
        mask_resized = cv2.resize(mask, (new_w, new_h), interpolation=cv2.INTER_NEAREST)

        pad_top = (size - new_h) // 2
        pad_left = (size - new_w) // 2
        pad_img = np.full((size, size, 3), PAD_VALUE, dtype=np.uint8)
        pad_mask = np.full((size, size), 255, dtype=np.uint8)
        pad_img[pad_top:pad_top + new_h, pad_left:pad_left + new_w] = img_resized
        pad_mask[pad_top:pad_top + new_h, pad_left:pad_left + new_w] = mask_resized

        image_tensor = (pad_img.astype(np.float32) / 255.0).transpose(2, 0, 1)[None]
        mask_tensor = (pad_mask > 127).astype(np.float32)[None, None]
        meta = {
            'orig_w': orig_w, 'orig_h': orig_h,
            'new_w': new_w, 'new_h': new_h,
            'pad_top': pad_top, 'pad_left': pad_left,
        }
        return np.ascontiguousarray(image_tensor), np.ascontiguousarray(mask_tensor), meta

    def postprocess(self, output: np.ndarray, image: np.ndarray, mask: np.ndarray,
                    meta: dict) -> np.ndarray:
        """Crop padding, resize back and merge: orig * (1 - m) + pred * m"""
        output = np.asarray(output, dtype=np.float32)
        if output.shape != (1, 3, self.input_size, self.input_size):
            raise InferenceUnavailable(f"unexpected model output shape {output.shape}")
        pred = output[0].transpose(1, 2, 0)
        # Models export either 0..1 or 0..255 outputs
        if pred.max() <= 1.0 + 1e-3:
            pred = pred * 255.0
        pred = np.clip(pred, 0, 255).astype(np.uint8)

        top, left = meta['pad_top'], meta['pad_left']
        valid = pred[top:top + meta['new_h'], left:left + meta['new_w']]
        pred = cv2.resize(valid, (meta['orig_w'], meta['orig_h']), interpolation=cv2.INTER_LANCZOS4)

        m = (mask.astype(np.float32) / 255.0)[:, :, None]
        merged = image.astype(np.float32) * (1.0 - m) + pred.astype(np.float32) * m
        return np.clip(np.rint(merged), 0, 255).astype(np.uint8)

    def _run(self, session, feeds: dict, cancel_event: Optional[threading.Event]):
        run_options = ort.RunOptions() if ORT_AVAILABLE else None
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(session.run, None, feeds, run_options)
        deadline = time.monotonic() + self.timeout
        try:
            while True:
                try:
                    return future.result(timeout=_POLL_INTERVAL)
                except concurrent.futures.TimeoutError:
                    pass
                if cancel_event is not None and cancel_event.is_set():
                    if run_options is not None:
                        run_options.terminate = True
                    raise InterruptedError("Stitching operation cancelled")
                if time.monotonic() > deadline:
                    if run_options is not None:
                        run_options.terminate = True
                    raise InferenceUnavailable(f"inference exceeded {self.timeout:.0f}s")
        finally:
            executor.shutdown(wait=False)

    def infer(self, image, coverage=None, cancel_event=None):
        # A missing model is reported even when there is nothing to fill
        session = self.load()

        mask = fill_mask(image, coverage)
        if not mask.any():
            logger.info("Image is complete, nothing to fill")
            return image.copy()

        image_tensor, mask_tensor, meta = self.preprocess(image, mask)
        feeds = {INPUT_NAMES[0]: image_tensor, INPUT_NAMES[1]: mask_tensor}

        start = time.monotonic()
        try:
            outputs = self._run(session, feeds, cancel_event)
        except (InferenceUnavailable, InterruptedError):
            raise
        except Exception as e:
            raise InferenceUnavailable(f"inference failed: {e}") from e
        logger.info(f"Inpainting inference took {time.monotonic() - start:.2f}s")

        if not outputs:
            raise InferenceUnavailable("model returned no outputs")
        return self.postprocess(outputs[0], image, mask, meta)


def create_refiner(config) -> Refiner:
    """Refiner selected by config.refinement_method"""
    if config.refinement_method == 'telea':
        return TeleaRefiner()
    return OnnxInpaintRefiner(
        model_path=config.model_path,
        timeout=config.inference_timeout,
        use_accelerator=config.use_accelerator,
    )
