"""
Per-marker clean-up of the fused output volume.
"""

from typing import Optional, Protocol, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from silvergt.imageprocessing.labelextract import find_bounding_box


class LabelPostprocessor(Protocol):
    """Role: clean one marker in the finalized output volume."""

    def process_label(
        self,
        output: NDArray,
        marker: int,
        bbox: Optional[Tuple[slice, ...]] = None,
    ) -> int:
        ...


class KeepLargestComponentPostprocessor:
    """
    Keeps only the largest connected component of a marker.

    Components are found with full connectivity (8-neighbourhood in 2D,
    26-neighbourhood in 3D, ...). Equally large components are resolved in
    favour of the one met first in raster order.

    Parameters
    ----------
    debug : bool
        If True, prints which component was kept.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug

    def process_label(
        self,
        output: NDArray,
        marker: int,
        bbox: Optional[Tuple[slice, ...]] = None,
    ) -> int:
        """
        Remove all but the largest component of `marker`, in-place.

        Parameters
        ----------
        output : NDArray
            Label volume.
        marker : int
            Marker to clean.
        bbox : tuple of slice, optional
            Region known to contain every voxel of the marker; computed if
            not given.

        Returns
        -------
        n_components : int
            Number of components the marker consisted of.
        """
        if bbox is None:
            bbox = find_bounding_box(output, marker)
            if bbox is None:
                return 0

        region = output[bbox]
        footprint = region == marker
        structure = ndimage.generate_binary_structure(footprint.ndim, footprint.ndim)
        components, n_components = ndimage.label(footprint, structure=structure)

        if n_components > 1:
            sizes = np.bincount(components.ravel())
            sizes[0] = 0
            largest = int(np.argmax(sizes))
            if self.debug:
                print(
                    f"CCA for marker {marker}: chosen component no. {largest} of "
                    f"{n_components}, which constitutes "
                    f"{sizes[largest] / sizes.sum():.3f} of the original size"
                )
            region[footprint & (components != largest)] = 0

        return int(n_components)


class VoidLabelPostprocessor:
    """Leaves the output untouched."""

    def process_label(
        self,
        output: NDArray,
        marker: int,
        bbox: Optional[Tuple[slice, ...]] = None,
    ) -> int:
        return 0
