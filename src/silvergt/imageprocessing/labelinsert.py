"""
Collision-aware insertion of fused labels into the shared output volume.

Consensus masks of individual markers are written one after another into
one output label image. Voxels claimed by more than one marker are set to a
reserved INTERSECTION value (the maximum of the output dtype) and the
colliding/non-colliding volumes of every marker are tracked, so that
markers with too large a colliding portion can be removed when the run is
finalized.

The run state lives in a `FusionContext` that is handed to every call; the
insertor itself keeps no state between calls.
"""

from dataclasses import dataclass, field
from typing import Dict, Protocol, Set

import numpy as np
from numba import njit
from numpy.typing import NDArray


@njit
def _insert_label_kernel(
    mask: np.ndarray,
    out: np.ndarray,
    shape: np.ndarray,
    label,
    intersection,
    displaced: np.ndarray,
):
    """
    Sequential insertion sweep over flattened, C-ordered arrays.

    Parameters
    ----------
    mask : (N,) float64
        Consensus mask, voxels > 0 are inserted.
    out : (N,) integer
        Output volume, modified in-place.
    shape : (ndim,) int64
        Shape of the (unflattened) output volume.
    label : out.dtype scalar
        Value to insert.
    intersection : out.dtype scalar
        Reserved collision value.
    displaced : (N,) out.dtype
        Receives the ids of the markers that lost a voxel to a collision.

    Returns
    -------
    n_free, n_coll, n_displaced : int
        Non-colliding voxels, colliding voxels, valid entries in `displaced`.
    at_border : bool
        True if any inserted voxel lies on the volume boundary.
    """
    n_free = 0
    n_coll = 0
    n_displaced = 0
    at_border = False
    ndim = shape.shape[0]

    for idx in range(mask.size):
        if mask[idx] <= 0:
            continue

        other = out[idx]
        if other == 0:
            out[idx] = label
            n_free += 1
        else:
            out[idx] = intersection
            n_coll += 1
            if other != intersection:
                displaced[n_displaced] = other
                n_displaced += 1

        if not at_border:
            rem = idx
            for d in range(ndim - 1, -1, -1):
                coord = rem % shape[d]
                rem = rem // shape[d]
                if coord == 0 or coord == shape[d] - 1:
                    at_border = True
                    break

    return n_free, n_coll, n_displaced, at_border


@dataclass
class InsertionStatus:
    """
    Outcome of inserting one marker, reusable across markers.

    `clear()` is called at the start of every insertion.
    """

    found_at_all: bool = False
    at_border: bool = False
    in_collision: bool = False
    local_colliders: Set[int] = field(default_factory=set)
    colliding_volume: int = 0
    non_colliding_volume: int = 0

    def clear(self) -> None:
        self.found_at_all = False
        self.at_border = False
        self.in_collision = False
        self.local_colliders.clear()
        self.colliding_volume = 0
        self.non_colliding_volume = 0


@dataclass
class FusionContext:
    """
    Mutable state of one fusion run.

    Attributes
    ----------
    output : NDArray
        Shared output label volume.
    intersection : int
        Reserved collision value, the maximum of the output dtype. Marker
        ids must stay strictly below it.
    colliding_volume, non_colliding_volume : dict
        Per-marker voxel counts.
    colliding, bordering, unmatched : set
        Mutually exclusive marker classifications.
    """

    output: NDArray
    intersection: int
    colliding_volume: Dict[int, int] = field(default_factory=dict)
    non_colliding_volume: Dict[int, int] = field(default_factory=dict)
    colliding: Set[int] = field(default_factory=set)
    bordering: Set[int] = field(default_factory=set)
    unmatched: Set[int] = field(default_factory=set)

    @classmethod
    def create(cls, template: NDArray) -> "FusionContext":
        """New context with an all-zero C-contiguous output shaped like `template`."""
        dtype = np.dtype(template.dtype)
        if not np.issubdtype(dtype, np.integer):
            raise ValueError("Output volume requires an integer dtype.")
        output = np.zeros(template.shape, dtype=dtype)
        return cls(output=output, intersection=int(np.iinfo(dtype).max))

    def record_empty(self, marker: int) -> None:
        """Register a marker that had nothing to insert, with zero volumes."""
        self.colliding_volume[marker] = 0
        self.non_colliding_volume[marker] = 0

    def collision_ratio(self, marker: int) -> float:
        """Colliding fraction of the marker's volume, 0.0 for empty markers."""
        coll = self.colliding_volume.get(marker, 0)
        total = coll + self.non_colliding_volume.get(marker, 0)
        return coll / total if total > 0 else 0.0


class LabelInsertor(Protocol):
    """Role: write consensus masks into the shared output volume."""

    def insert_label(
        self,
        mask: NDArray,
        context: FusionContext,
        marker: int,
        status: InsertionStatus,
    ) -> None:
        ...

    def finalize(
        self,
        context: FusionContext,
        collision_threshold: float,
        remove_bordering: bool,
    ) -> NDArray:
        ...


class CollisionsAwareLabelInsertor:
    """Inserts labels, marks overlaps with INTERSECTION and resolves them at the end."""

    def insert_label(
        self,
        mask: NDArray,
        context: FusionContext,
        marker: int,
        status: InsertionStatus,
    ) -> None:
        """
        Insert every voxel with `mask > 0` into the output as `marker`.

        Parameters
        ----------
        mask : float64 NDArray
            Consensus mask, same shape as the output.
        context : FusionContext
            Run state; its output and volume maps are updated.
        marker : int
            Marker id, must not have been inserted before.
        status : InsertionStatus
            Cleared and filled with the outcome of this insertion.
        """
        status.clear()

        output = context.output
        if mask.shape != output.shape:
            raise ValueError("Mask and output volume differ in shape.")
        if not output.flags.c_contiguous:
            raise ValueError("Output volume must be C-contiguous.")
        if marker in context.colliding_volume:
            raise ValueError(f"Marker {marker} has already been inserted.")
        if not 0 < marker < context.intersection:
            raise ValueError(
                f"Marker {marker} is outside (0, {context.intersection})."
            )

        dtype = output.dtype.type
        displaced = np.empty(mask.size, dtype=output.dtype)
        n_free, n_coll, n_displaced, at_border = _insert_label_kernel(
            np.ascontiguousarray(mask).reshape(-1),
            output.reshape(-1),
            np.asarray(output.shape, dtype=np.int64),
            dtype(marker),
            dtype(context.intersection),
            displaced,
        )

        # move the lost voxels of the previous owners into their colliding volume
        if n_displaced > 0:
            others, counts = np.unique(displaced[:n_displaced], return_counts=True)
            for other, count in zip(others.tolist(), counts.tolist()):
                context.non_colliding_volume[other] -= count
                context.colliding_volume[other] += count
                status.local_colliders.add(other)

        status.non_colliding_volume = int(n_free)
        status.colliding_volume = int(n_coll)
        status.found_at_all = (n_free + n_coll) > 0
        status.in_collision = n_coll > 0
        status.at_border = bool(at_border)

        context.colliding_volume[marker] = status.colliding_volume
        context.non_colliding_volume[marker] = status.non_colliding_volume

    def finalize(
        self,
        context: FusionContext,
        collision_threshold: float,
        remove_bordering: bool,
    ) -> NDArray:
        """
        Classify colliding markers and clean the output volume.

        A marker becomes colliding if its colliding ratio exceeds
        `collision_threshold` (strictly) and it is not bordering. The output
        is then swept once: INTERSECTION voxels and voxels of colliding
        markers (and of bordering markers if `remove_bordering`) are zeroed.

        Parameters
        ----------
        context : FusionContext
            Run state, updated in-place.
        collision_threshold : float
            Maximal acceptable colliding ratio.
        remove_bordering : bool
            If True, bordering markers are removed from the output too.

        Returns
        -------
        histogram : (11,) int64
            Counts of colliding ratios of matched markers in buckets
            0-9%, 10-19%, ..., 90-99% and 100%.
        """
        histogram = np.zeros(11, dtype=np.int64)
        for marker, coll in context.colliding_volume.items():
            total = coll + context.non_colliding_volume[marker]
            if total == 0:
                continue
            ratio = coll / total

            if ratio > collision_threshold and marker not in context.bordering:
                context.colliding.add(marker)

            if marker not in context.unmatched:
                histogram[min(int(ratio * 10), 10)] += 1

        output = context.output
        to_remove = set(context.colliding)
        if remove_bordering:
            to_remove |= context.bordering

        removal = output == context.intersection
        if to_remove:
            removal |= np.isin(output, np.fromiter(to_remove, dtype=output.dtype))
        output[removal] = 0

        return histogram
