"""
IC Engine - Image Provider
==========================

The matching pistons read layer images only through this contract, so the
engine never deals with file formats or tiling.

    provider = ArrayImageProvider({0: metal_image, 1: logic_image})
    tile = provider.get_tile(1, BoundingBox(0, 0, 256, 256))

Tiles are always 2D float64 grayscale arrays. Colour input (H, W, 3|4) is
converted with ITU-R 601 luma weights; an alpha channel is ignored.
"""

import math
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import numpy as np

from .common_types import BoundingBox
from .errors import NotFoundError

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Convert a grayscale or RGB(A) array to float64 grayscale."""
    image = np.asarray(image)
    if image.ndim == 2:
        return image.astype(np.float64)
    if image.ndim == 3 and image.shape[2] in (3, 4):
        return image[:, :, :3].astype(np.float64) @ LUMA_WEIGHTS
    raise ValueError(f"Unsupported image shape: {image.shape}")


def pixel_window(bbox: BoundingBox, width: int, height: int) -> Tuple[int, int, int, int]:
    """Integer (x0, y0, x1, y1) covering bbox, clipped to the image."""
    x0 = max(0, int(math.floor(bbox.min_x)))
    y0 = max(0, int(math.floor(bbox.min_y)))
    x1 = min(width, int(math.ceil(bbox.max_x)))
    y1 = min(height, int(math.ceil(bbox.max_y)))
    return x0, y0, max(x0, x1), max(y0, y1)


class ImageProvider(ABC):
    """Read access to aligned layer images."""

    @abstractmethod
    def layer_size(self, layer_index: int) -> Tuple[int, int]:
        """(width, height) of a layer image."""

    @abstractmethod
    def get_tile(self, layer_index: int, bbox: BoundingBox) -> np.ndarray:
        """Grayscale pixels inside bbox, clipped to the image bounds."""

    def get_layer(self, layer_index: int) -> np.ndarray:
        width, height = self.layer_size(layer_index)
        return self.get_tile(layer_index, BoundingBox(0, 0, width, height))


class ArrayImageProvider(ImageProvider):
    """ImageProvider backed by in-memory numpy arrays, one per layer."""

    def __init__(self, images: Optional[Dict[int, np.ndarray]] = None):
        self._images: Dict[int, np.ndarray] = {}
        for layer_index, image in (images or {}).items():
            self.set_image(layer_index, image)

    def set_image(self, layer_index: int, image: np.ndarray):
        self._images[layer_index] = to_grayscale(image)

    def has_image(self, layer_index: int) -> bool:
        return layer_index in self._images

    def _image(self, layer_index: int) -> np.ndarray:
        image = self._images.get(layer_index)
        if image is None:
            raise NotFoundError('layer image', layer_index)
        return image

    def layer_size(self, layer_index: int) -> Tuple[int, int]:
        image = self._image(layer_index)
        return image.shape[1], image.shape[0]

    def get_tile(self, layer_index: int, bbox: BoundingBox) -> np.ndarray:
        image = self._image(layer_index)
        x0, y0, x1, y1 = pixel_window(bbox, image.shape[1], image.shape[0])
        return image[y0:y1, x0:x1].copy()
