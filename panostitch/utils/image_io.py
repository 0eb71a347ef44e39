"""
File adapters for the CLI: load images into buffers, save panoramas
"""

import logging
from pathlib import Path
from typing import List, Tuple, Union

import cv2
import numpy as np
import tifffile
from PIL import Image as PILImage

from panostitch.utils.buffer_store import ImageBuffer

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.tif', '.tiff', '.bmp', '.webp')

QUALITY_SETTINGS = {
    'ultra_high': {'tiff_compression': None, 'png_level': 0, 'jpeg_quality': 100},
    'high': {'tiff_compression': 'lzw', 'png_level': 3, 'jpeg_quality': 95},
    'medium': {'tiff_compression': 'lzw', 'png_level': 6, 'jpeg_quality': 85},
    'low': {'tiff_compression': 'lzw', 'png_level': 8, 'jpeg_quality': 70},
}


def find_images(directory: Union[str, Path]) -> List[Path]:
    """Image files in a directory, sorted by name (capture order)"""
    directory = Path(directory)
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)


def load_image(path: Union[str, Path]) -> ImageBuffer:
    """
    Decode an image file into an RGB buffer

    Unreadable files become empty buffers so the pipeline reports them
    as input errors instead of aborting the whole run.
    """
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        logger.warning(f"Could not decode {path}")
        return ImageBuffer(None, 0, 0, 'RGB')
    rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    return ImageBuffer.from_array(rgb, 'RGB')


def load_images(directory: Union[str, Path]) -> Tuple[List[Path], List[ImageBuffer]]:
    paths = find_images(directory)
    buffers = [load_image(p) for p in paths]
    logger.info(f"Loaded {len(buffers)} images from {directory}")
    return paths, buffers


def _to_rgb(image: np.ndarray, color_format: str) -> np.ndarray:
    """RGB or RGBA (or grayscale) array in the channel order PIL and TIFF expect"""
    if color_format == 'BGR':
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    if color_format == 'BGRA':
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
    return image


def save_panorama(image: np.ndarray, output_path: Union[str, Path], color_format: str = 'RGBA',
                  quality: str = 'high', dpi: int = 300) -> Path:
    """
    Save stitched panorama with quality and DPI settings

    Args:
        image: Panorama pixels
        output_path: Output file path (.png, .jpg, .tif; anything else is PNG)
        color_format: Channel layout of image
        quality: Quality preset ('ultra_high', 'high', 'medium', 'low')
        dpi: Output DPI (dots per inch)
    """
    if image is None or image.size == 0:
        raise ValueError("Cannot save empty panorama")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    settings = QUALITY_SETTINGS.get(quality, QUALITY_SETTINGS['high'])
    rgb = _to_rgb(image, color_format)

    logger.info(f"Saving panorama: shape={image.shape}, format={color_format}, quality={quality}, dpi={dpi}")

    suffix = output_path.suffix.lower()
    if suffix in ('.tif', '.tiff'):
        _save_tiff(rgb, output_path, settings['tiff_compression'], dpi)
    elif suffix in ('.jpg', '.jpeg'):
        # JPEG has no alpha channel
        if rgb.ndim == 3 and rgb.shape[2] == 4:
            rgb = rgb[:, :, :3]
        PILImage.fromarray(rgb).save(str(output_path), quality=settings['jpeg_quality'], dpi=(dpi, dpi))
        logger.info(f"JPEG saved with quality={settings['jpeg_quality']}, dpi={dpi}")
    else:
        if suffix != '.png':
            logger.warning(f"Unknown extension {suffix!r}, writing PNG data")
        PILImage.fromarray(rgb).save(str(output_path), format='PNG',
                                     compress_level=settings['png_level'], dpi=(dpi, dpi))
        logger.info(f"PNG saved with compression={settings['png_level']}, dpi={dpi}")

    file_size = output_path.stat().st_size
    logger.info(f"Output file size: {file_size / 1024 / 1024:.2f} MB")
    return output_path


def _save_tiff(image: np.ndarray, path: Path, compression, dpi: int):
    """Save as TIFF, uncompressed if the codec is unavailable"""
    photometric = 'minisblack' if image.ndim == 2 else 'rgb'
    extrasamples = ['unassalpha'] if image.ndim == 3 and image.shape[2] == 4 else None
    # Resolution in pixels per cm
    resolution = (dpi / 2.54, dpi / 2.54)
    kwargs = dict(photometric=photometric, resolution=resolution, resolutionunit='CENTIMETER')
    if extrasamples:
        kwargs['extrasamples'] = extrasamples
    try:
        tifffile.imwrite(str(path), image, compression=compression, **kwargs)
    except (KeyError, ValueError) as e:
        if 'imagecodecs' not in str(e):
            raise
        logger.warning("Compression codec not available, saving uncompressed TIFF")
        tifffile.imwrite(str(path), image, **kwargs)
    logger.info(f"TIFF saved with tifffile (compression={compression}, dpi={dpi})")
