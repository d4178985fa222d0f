"""
Label extraction for marker-guided segmentation fusion.

This module finds, for one marker of the marker image, the label of a
candidate segmentation that overlaps the marker by majority, and provides
numba-accelerated helpers to copy or accumulate such a label into a
floating-point work buffer.
"""

from typing import Optional, Protocol, Tuple

import numpy as np
from numba import njit, prange
from numpy.typing import NDArray


@njit(parallel=True)
def _accumulate_label_kernel(
    source: np.ndarray,
    wanted_label: float,
    out: np.ndarray,
    value: float,
) -> None:
    """
    Add `value` into `out` wherever `source` equals `wanted_label`, in-place.

    Parameters
    ----------
    source : (N,) array
        Flattened candidate image.
    wanted_label : float
        Label to look for.
    out : (N,) float64
        Flattened accumulation buffer.
    value : float
        Amount added per matching voxel.
    """
    for idx in prange(source.size):
        if source[idx] == wanted_label:
            out[idx] += value


class LabelExtractor(Protocol):
    """Role: find and extract one candidate label matching a marker."""

    def find_matching_label(
        self,
        candidate_view: NDArray,
        marker_view: NDArray,
        marker_value: int,
    ) -> Optional[float]:
        ...

    def isolate(
        self,
        candidate: NDArray,
        wanted_label: float,
        out: NDArray,
        value: float,
    ) -> None:
        ...

    def accumulate(
        self,
        candidate: NDArray,
        wanted_label: float,
        out: NDArray,
        value: float,
    ) -> None:
        ...


class MajorityOverlapLabelExtractor:
    """
    Picks the candidate label covering more than a given fraction of a marker.

    Parameters
    ----------
    min_fraction_of_marker : float
        The most frequent (non-background) candidate label under the marker
        is accepted only if it covers strictly more than this fraction of
        the marker voxels.
    """

    def __init__(self, min_fraction_of_marker: float = 0.5):
        self.min_fraction_of_marker = min_fraction_of_marker

    @property
    def min_fraction_of_marker(self) -> float:
        """
        Minimal (exclusive) fraction of the marker a label must cover.
        """
        return self._min_fraction_of_marker

    @min_fraction_of_marker.setter
    def min_fraction_of_marker(self, fraction: float):
        if not 0.0 <= fraction < 1.0:
            raise ValueError("min_fraction_of_marker must be in [0, 1).")
        self._min_fraction_of_marker = float(fraction)

    def find_matching_label(
        self,
        candidate_view: NDArray,
        marker_view: NDArray,
        marker_value: int,
    ) -> Optional[float]:
        """
        Find the candidate label overlapping the marker by majority.

        Both views are expected to cover the same region (usually the
        bounding box of the marker).

        Parameters
        ----------
        candidate_view : NDArray
            Candidate segmentation restricted to the region.
        marker_view : NDArray
            Marker image restricted to the same region.
        marker_value : int
            Marker whose voxels are inspected.

        Returns
        -------
        label : float or None
            The most frequent positive label under the marker if it covers
            more than `min_fraction_of_marker` of the marker, else None.
        """
        if candidate_view.shape != marker_view.shape:
            raise ValueError("Candidate and marker views differ in shape.")

        under_marker = candidate_view[marker_view == marker_value]
        marker_size = under_marker.size
        foreground = under_marker[under_marker > 0]
        if foreground.size == 0:
            return None

        labels, counts = np.unique(foreground, return_counts=True)
        # argmax returns the first maximum, i.e. the smallest label on ties
        best = int(np.argmax(counts))
        if counts[best] > self._min_fraction_of_marker * marker_size:
            return float(labels[best])
        return None

    def isolate(
        self,
        candidate: NDArray,
        wanted_label: float,
        out: NDArray,
        value: float,
    ) -> None:
        """Set `out` to `value` wherever `candidate` holds `wanted_label`."""
        np.copyto(out, value, where=(candidate == wanted_label), casting="unsafe")

    def accumulate(
        self,
        candidate: NDArray,
        wanted_label: float,
        out: NDArray,
        value: float,
    ) -> None:
        """
        Add `value` to `out` wherever `candidate` holds `wanted_label`.

        Parameters
        ----------
        candidate : NDArray
            Candidate segmentation, same shape as `out`.
        wanted_label : float
            Label to accumulate.
        out : float64 NDArray
            C-contiguous accumulation buffer, modified in-place.
        value : float
            Typically the weight of the candidate.
        """
        if candidate.shape != out.shape:
            raise ValueError("Candidate and output buffer differ in shape.")
        if not out.flags.c_contiguous:
            raise ValueError("Output buffer must be C-contiguous.")
        _accumulate_label_kernel(
            np.ascontiguousarray(candidate).reshape(-1),
            float(wanted_label),
            out.reshape(-1),
            float(value),
        )


def find_bounding_box(image: NDArray, value: int) -> Optional[Tuple[slice, ...]]:
    """
    Axis-aligned bounding box of all voxels equal to `value`.

    Parameters
    ----------
    image : NDArray
        Label image.
    value : int
        Label to localize.

    Returns
    -------
    bbox : tuple of slice or None
        One slice per axis (end exclusive), or None if `value` is absent.
    """
    coords = np.nonzero(image == value)
    if coords[0].size == 0:
        return None
    return tuple(slice(int(c.min()), int(c.max()) + 1) for c in coords)
