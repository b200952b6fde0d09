"""
Reference implementations of the numeric operators used by the tube filter.

These run on the host with numpy and scipy. The tube filter only relies on
their input and output layouts, so a faster implementation can be swapped in
by passing another TubeKernels instance.

Layouts (all arrays in (z, y, x) order):
    intensity volume: float32 (z, y, x)
    vector field:     (z, y, x, 4), components (x, y, z, unused), int16 normalized or float32
    TDF:              float32 in [0, 1]
    radius:           float32, >= 0
"""

import gc
import logging
from typing import List, Tuple
import numpy as np
from scipy import ndimage
from tqdm import tqdm

logger = logging.getLogger(__name__)

SNORM16_SCALE = 32767.0
UNORM16_SCALE = 65535.0

# Samples on each fitted circle
CIRCLE_SAMPLES = 12

# Voxels processed per chunk during tube detection
TDF_CHUNK_VOXELS = 1 << 18

def create_blur_mask(sigma: float) -> Tuple[np.ndarray, int]:
    """Normalized 3-D Gaussian mask

    The half width is ceil(sigma / 0.5) clamped to [1, 5], so the mask is
    between 3x3x3 and 11x11x11.

    Returns:
        (mask, half_width)
    """
    mask_size = int(np.ceil(sigma / 0.5))
    mask_size = min(max(mask_size, 1), 5)
    offsets = np.arange(-mask_size, mask_size + 1, dtype=np.float32)
    a, b, c = np.meshgrid(offsets, offsets, offsets, indexing='ij')
    mask = np.exp(-(a * a + b * b + c * c) / (2 * sigma * sigma)).astype(np.float32)
    return mask / mask.sum(), mask_size

def encode_vectors(vectors: np.ndarray, out: np.ndarray) -> None:
    """Write (..., 3) float vectors in [-1, 1] into a (..., 4) vector array"""
    if out.dtype == np.int16:
        out[..., :3] = np.round(np.clip(vectors, -1.0, 1.0) * SNORM16_SCALE).astype(np.int16)
    else:
        out[..., :3] = vectors
    out[..., 3] = 0

def decode_vectors(field: np.ndarray) -> np.ndarray:
    """(..., 3) float32 vectors from a (..., 3) or (..., 4) vector array"""
    components = field[..., :3]
    if field.dtype == np.int16:
        return np.maximum(-1.0, components.astype(np.float32) / SNORM16_SCALE)
    return components.astype(np.float32)

def encode_tdf(tdf: np.ndarray, dtype) -> np.ndarray:
    if np.dtype(dtype) == np.uint16:
        return np.round(np.clip(tdf, 0.0, 1.0) * UNORM16_SCALE).astype(np.uint16)
    return tdf.astype(np.float32)

def decode_tdf(tdf: np.ndarray) -> np.ndarray:
    if tdf.dtype == np.uint16:
        return tdf.astype(np.float32) / UNORM16_SCALE
    return tdf.astype(np.float32)

def radius_range(radius_min: float, radius_max: float, step: float) -> np.ndarray:
    """Radii from radius_min up to and including radius_max"""
    count = int(np.floor((radius_max - radius_min) / step + 1e-6)) + 1
    return radius_min + step * np.arange(max(count, 1), dtype=np.float32)

class TubeKernels:
    """Numeric operators invoked by the dual pass tube filter"""

    def blur(self, volume: np.ndarray, sigma: float) -> np.ndarray:
        """Gaussian blur with edge clamping"""
        mask, _ = create_blur_mask(sigma)
        return ndimage.correlate(volume.astype(np.float32, copy=False), mask, mode='nearest')

    def create_vector_field(self, volume: np.ndarray, fmax: float, sign: int,
                            slabs: List[Tuple[int, np.ndarray]]) -> None:
        """Write the normalized, signed intensity gradient into slabs

        Args:
            volume: Float intensity volume
            fmax: Gradient magnitude where vectors saturate at length 1
            sign: +1 for bright tubes, -1 for dark tubes
            slabs: (z_offset, (nz, y, x, 4) array) pairs covering the volume
        """
        gz, gy, gx = np.gradient(volume.astype(np.float32, copy=False))
        vectors = sign * np.stack((gx, gy, gz), axis=-1)
        del gx, gy, gz
        length = np.linalg.norm(vectors, axis=-1, keepdims=True)
        scale = np.where(length > fmax, 1.0 / np.maximum(length, 1e-12), 1.0 / fmax)
        vectors *= scale
        for z_offset, slab in slabs:
            encode_vectors(vectors[z_offset:z_offset + slab.shape[0]], slab)

    def gradient_vector_flow(self, field: np.ndarray, mu: float, iterations: int,
                             variant: str = 'standard') -> np.ndarray:
        """Diffuse a vector field with gradient vector flow

        Variants:
            standard: all components iterated together
            low-memory: one component at a time, the components do not interact
            multigrid: solve on a half resolution grid first, then refine
        """
        initial = decode_vectors(field)
        if variant == 'multigrid':
            result = self._gvf_multigrid(initial, mu, iterations)
        elif variant == 'low-memory':
            magnitude = np.sum(initial * initial, axis=-1)
            result = np.empty_like(initial)
            for component in range(3):
                result[..., component] = self._gvf_component(
                    initial[..., component], magnitude, mu, iterations,
                    desc=f"GVF component {component}")
                gc.collect()
        else:
            result = self._gvf(initial, initial, mu, iterations)

        out = np.empty_like(field)
        encode_vectors(result, out)
        return out

    def _gvf(self, initial: np.ndarray, start: np.ndarray, mu: float, iterations: int,
             desc: str = "GVF") -> np.ndarray:
        magnitude = np.sum(initial * initial, axis=-1, keepdims=True)
        v = start.copy()
        for _ in tqdm(range(iterations), desc=desc, leave=False):
            laplacian = np.stack([ndimage.laplace(v[..., c], mode='nearest') for c in range(3)], axis=-1)
            v += mu * laplacian - (v - initial) * magnitude
        return v

    def _gvf_component(self, initial: np.ndarray, magnitude: np.ndarray, mu: float,
                       iterations: int, desc: str) -> np.ndarray:
        v = initial.copy()
        for _ in tqdm(range(iterations), desc=desc, leave=False):
            v += mu * ndimage.laplace(v, mode='nearest') - (v - initial) * magnitude
        return v

    def _gvf_multigrid(self, initial: np.ndarray, mu: float, iterations: int) -> np.ndarray:
        shape = initial.shape[:3]
        if min(shape) < 8:
            return self._gvf(initial, initial, mu, iterations)
        coarse_initial = initial[::2, ::2, ::2]
        coarse = self._gvf(coarse_initial, coarse_initial, mu, iterations, desc="GVF coarse grid")
        factors = [full / part for full, part in zip(shape, coarse.shape[:3])]
        start = np.stack([ndimage.zoom(coarse[..., c], factors, order=1) for c in range(3)], axis=-1)
        start = start[:shape[0], :shape[1], :shape[2]]
        return self._gvf(initial, start, mu, max(iterations // 4, 1), desc="GVF fine grid")

    def circle_fitting_tdf(self, field: np.ndarray, radius_min: float, radius_max: float,
                           radius_step: float) -> Tuple[np.ndarray, np.ndarray]:
        """Tube detection by fitting circles across the local tube direction

        Returns:
            (tdf, radius) float32 arrays
        """
        return self._fit_circles(field, radius_range(radius_min, radius_max, radius_step),
                                 order=1, penalize_spread=False)

    def spline_tdf(self, field: np.ndarray, radius_min: float, radius_max: float,
                   radius_step: float) -> Tuple[np.ndarray, np.ndarray]:
        """Tube detection with cubic spline sampling; uneven responses around the circle are penalized"""
        return self._fit_circles(field, radius_range(radius_min, radius_max, radius_step),
                                 order=3, penalize_spread=True)

    def combine(self, tdf_small: np.ndarray, radius_small: np.ndarray,
                tdf_large: np.ndarray, radius_large: np.ndarray, small_limit: float) -> None:
        """Overwrite large pass results in place where the small pass found a small tube"""
        small = radius_small < small_limit
        tdf_large[small] = tdf_small[small]
        radius_large[small] = radius_small[small]

    def _tube_frames(self, vectors: np.ndarray) -> np.ndarray:
        """Per voxel eigenvectors of the symmetrized Jacobian, sorted by eigenvalue magnitude

        Returns:
            (z, y, x, 3, 3) array; [..., :, 0] is the tube direction
        """
        jacobian = np.empty(vectors.shape[:3] + (3, 3), dtype=np.float32)
        for i in range(3):
            dz, dy, dx = np.gradient(vectors[..., i])
            jacobian[..., i, 0] = dx
            jacobian[..., i, 1] = dy
            jacobian[..., i, 2] = dz
        hessian = 0.5 * (jacobian + np.swapaxes(jacobian, -1, -2))
        del jacobian
        eigenvalues, eigenvectors = np.linalg.eigh(hessian)
        order = np.argsort(np.abs(eigenvalues), axis=-1)
        return np.take_along_axis(eigenvectors, order[..., None, :], axis=-1)

    def _fit_circles(self, field: np.ndarray, radii: np.ndarray, order: int,
                     penalize_spread: bool) -> Tuple[np.ndarray, np.ndarray]:
        vectors = decode_vectors(field)
        shape = vectors.shape[:3]
        frames = self._tube_frames(vectors).reshape(-1, 3, 3)
        components = [vectors[..., c] for c in range(3)]
        positions = np.indices(shape, dtype=np.float32).reshape(3, -1)  # z, y, x
        angles = np.arange(CIRCLE_SAMPLES) * (2 * np.pi / CIRCLE_SAMPLES)

        total = positions.shape[1]
        best_tdf = np.zeros(total, dtype=np.float32)
        best_radius = np.full(total, radii[0], dtype=np.float32)
        for start in tqdm(range(0, total, TDF_CHUNK_VOXELS), desc="Tube detection", leave=False):
            end = min(start + TDF_CHUNK_VOXELS, total)
            position = positions[:, start:end]
            e2 = frames[start:end, :, 1]
            e3 = frames[start:end, :, 2]
            for radius in radii:
                samples = np.empty((CIRCLE_SAMPLES, end - start), dtype=np.float32)
                for k, angle in enumerate(angles):
                    # Outward direction in xyz
                    direction = np.cos(angle) * e2 + np.sin(angle) * e3
                    coords = position + radius * direction[:, ::-1].T
                    sampled = [ndimage.map_coordinates(c, coords, order=order, mode='nearest')
                               for c in components]
                    samples[k] = -(sampled[0] * direction[:, 0] + sampled[1] * direction[:, 1]
                                   + sampled[2] * direction[:, 2])
                response = samples.mean(axis=0)
                if penalize_spread:
                    response -= samples.std(axis=0)
                response = np.clip(response, 0.0, 1.0)
                better = response > best_tdf[start:end]
                best_tdf[start:end][better] = response[better]
                best_radius[start:end][better] = radius
        return best_tdf.reshape(shape), best_radius.reshape(shape)
