"""
Numba JIT-accelerated normalized cross correlation.

Standalone module: ALL kernels operate on flat NumPy arrays, not engine
objects. Kernels are compiled with nogil=True so MatchingPiston can spread
grid rows over a thread pool.

Usage:
    from .correlation_accel import JITCorrelator, PreparedTemplate
    correlator = JITCorrelator(image)
    tmpl = PreparedTemplate.from_image(template_image)
    score = correlator.score(tmpl, x, y)
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from numba import njit


# ──────────────────────────────────────────────────────────────
#  JIT kernels: pure numeric, no Python objects
# ──────────────────────────────────────────────────────────────

@njit(cache=True, nogil=True)
def _ncc_at(image, ii, ii2, tmpl_centered, tmpl_norm, x, y):
    """
    NCC between the template and the image patch with top-left (x, y).

    image         : (H, W) float64
    ii, ii2       : (H+1, W+1) float64: integral image of image and image**2
    tmpl_centered : (h, w) float64: template minus its mean
    tmpl_norm     : float: sqrt(sum(tmpl_centered**2))
    Returns a score in [-1, 1]; 0 for flat patches.
    """
    h = tmpl_centered.shape[0]
    w = tmpl_centered.shape[1]
    n = h * w

    s = ii[y + h, x + w] - ii[y, x + w] - ii[y + h, x] + ii[y, x]
    s2 = ii2[y + h, x + w] - ii2[y, x + w] - ii2[y + h, x] + ii2[y, x]
    var = s2 - s * s / n
    if var <= 1e-9 or tmpl_norm <= 1e-9:
        return 0.0

    acc = 0.0
    for j in range(h):
        for i in range(w):
            acc += image[y + j, x + i] * tmpl_centered[j, i]
    return acc / (np.sqrt(var) * tmpl_norm)


@njit(cache=True, nogil=True)
def _ncc_row(image, ii, ii2, tmpl_centered, tmpl_norm, y, xs, out):
    """
    NCC for every x in xs on grid row y.

    xs  : (K,) int64: top-left x positions
    out : (K,) float64: filled in place
    """
    for k in range(xs.shape[0]):
        out[k] = _ncc_at(image, ii, ii2, tmpl_centered, tmpl_norm, xs[k], y)


@njit(cache=True, nogil=True)
def _box_downscale(image, factor):
    """Average factor x factor blocks; trailing partial blocks are dropped."""
    h = image.shape[0] // factor
    w = image.shape[1] // factor
    out = np.zeros((h, w), dtype=np.float64)
    inv = 1.0 / (factor * factor)
    for y in range(h):
        for x in range(w):
            acc = 0.0
            for j in range(factor):
                for i in range(factor):
                    acc += image[y * factor + j, x * factor + i]
            out[y, x] = acc * inv
    return out


# ──────────────────────────────────────────────────────────────
#  Python wrappers
# ──────────────────────────────────────────────────────────────

def integral_images(image: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Zero-padded summed-area tables of image and image**2."""
    image = np.asarray(image, dtype=np.float64)
    ii = np.zeros((image.shape[0] + 1, image.shape[1] + 1), dtype=np.float64)
    ii2 = np.zeros_like(ii)
    ii[1:, 1:] = image.cumsum(axis=0).cumsum(axis=1)
    ii2[1:, 1:] = (image * image).cumsum(axis=0).cumsum(axis=1)
    return ii, ii2


def box_downscale(image: np.ndarray, factor: int) -> np.ndarray:
    """Box-filter downscale by an integer factor (factor 1 is a copy)."""
    image = np.ascontiguousarray(image, dtype=np.float64)
    if factor <= 1:
        return image.copy()
    return _box_downscale(image, int(factor))


@dataclass
class PreparedTemplate:
    """Mean-free template image plus its L2 norm."""
    centered: np.ndarray
    norm: float

    @property
    def width(self) -> int:
        return self.centered.shape[1]

    @property
    def height(self) -> int:
        return self.centered.shape[0]

    @property
    def std(self) -> float:
        return self.norm / np.sqrt(self.centered.size)

    @classmethod
    def from_image(cls, image: np.ndarray) -> 'PreparedTemplate':
        image = np.asarray(image, dtype=np.float64)
        centered = np.ascontiguousarray(image - image.mean())
        return cls(centered=centered, norm=float(np.sqrt((centered * centered).sum())))


class JITCorrelator:
    """
    Image snapshot with integral images for repeated NCC evaluation.

    Read-only after construction, so one instance can be shared by worker
    threads.
    """

    def __init__(self, image: np.ndarray):
        self.image = np.ascontiguousarray(image, dtype=np.float64)
        self.ii, self.ii2 = integral_images(self.image)

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    def fits(self, tmpl: PreparedTemplate, x: int, y: int) -> bool:
        return (0 <= x and 0 <= y and x + tmpl.width <= self.width
                and y + tmpl.height <= self.height)

    def score(self, tmpl: PreparedTemplate, x: int, y: int) -> float:
        if not self.fits(tmpl, x, y):
            return -1.0
        return float(_ncc_at(self.image, self.ii, self.ii2,
                             tmpl.centered, tmpl.norm, int(x), int(y)))

    def score_row(self, tmpl: PreparedTemplate, y: int, xs: np.ndarray) -> np.ndarray:
        xs = np.ascontiguousarray(xs, dtype=np.int64)
        out = np.zeros(xs.shape[0], dtype=np.float64)
        _ncc_row(self.image, self.ii, self.ii2, tmpl.centered, tmpl.norm, int(y), xs, out)
        return out
