"""
Marker-guided weighted-voting fusion of instance segmentations.

The marker image provides one id per object. For every marker, the
matching label is looked up in each candidate segmentation, the matched
labels are fused into a consensus mask, and the consensus is inserted into
the output volume under the marker's id. Overlapping insertions are tracked
and resolved once all markers are processed, and every surviving marker is
finally reduced to its largest connected component.

Two component bundles are provided: BIC (fixed-threshold weighted voting)
and SIMPLE (iterative majority voting with agreement-based re-weighting).

Markers are processed strictly one after another: insertion mutates the
shared output and the per-marker statistics, and collision detection relies
on every marker seeing the output of all previous markers.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage
from tqdm import tqdm

from silvergt.imageprocessing.labelextract import (
    LabelExtractor,
    MajorityOverlapLabelExtractor,
)
from silvergt.imageprocessing.labelfuse import (
    LabelFuser,
    SimpleLabelFuser,
    SimpleParams,
    WeightedVotingLabelFuser,
)
from silvergt.imageprocessing.labelinsert import (
    CollisionsAwareLabelInsertor,
    FusionContext,
    InsertionStatus,
    LabelInsertor,
)
from silvergt.imageprocessing.labelpostprocess import (
    KeepLargestComponentPostprocessor,
    LabelPostprocessor,
)

FUSION_MODELS = ("BIC", "SIMPLE")


@dataclass
class FusionComponents:
    """
    The four stages of the fusion: extract, fuse, insert and clean up.
    """

    extractor: Optional[LabelExtractor] = None
    fuser: Optional[LabelFuser] = None
    insertor: Optional[LabelInsertor] = None
    cleaner: Optional[LabelPostprocessor] = None

    @classmethod
    def bic(
        cls,
        min_fraction_of_marker: float = 0.5,
        debug: bool = False,
    ) -> "FusionComponents":
        """Majority-overlap extraction with fixed-threshold weighted voting."""
        return cls(
            extractor=MajorityOverlapLabelExtractor(min_fraction_of_marker),
            fuser=WeightedVotingLabelFuser(),
            insertor=CollisionsAwareLabelInsertor(),
            cleaner=KeepLargestComponentPostprocessor(debug=debug),
        )

    @classmethod
    def simple(
        cls,
        params: Optional[SimpleParams] = None,
        min_fraction_of_marker: float = 0.5,
        debug: bool = False,
    ) -> "FusionComponents":
        """Majority-overlap extraction with iterative SIMPLE fusion."""
        return cls(
            extractor=MajorityOverlapLabelExtractor(min_fraction_of_marker),
            fuser=SimpleLabelFuser(params, debug=debug),
            insertor=CollisionsAwareLabelInsertor(),
            cleaner=KeepLargestComponentPostprocessor(debug=debug),
        )

    def validate(self) -> None:
        """Raise ValueError if any stage is missing."""
        missing = [
            name
            for name in ("extractor", "fuser", "insertor", "cleaner")
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(f"Fusion components not set: {', '.join(missing)}.")


@dataclass
class FusionReport:
    """
    Aggregated outcome of one fusion run.

    Attributes
    ----------
    discovered : list of int
        Marker ids in the order they were processed.
    matching_images : dict
        Number of candidates matching each marker.
    unmatched, bordering, colliding : set of int
        Markers that were not found, removed at the border, or removed
        because of collisions. The sets are mutually exclusive.
    colliding_volume, non_colliding_volume : dict
        Per-marker voxel counts at the end of the insertion.
    histogram : (11,) int64
        Colliding ratio histogram of matched markers.
    collision_threshold : float
        Threshold the colliding markers were decided with.
    """

    discovered: List[int] = field(default_factory=list)
    matching_images: Dict[int, int] = field(default_factory=dict)
    unmatched: Set[int] = field(default_factory=set)
    bordering: Set[int] = field(default_factory=set)
    colliding: Set[int] = field(default_factory=set)
    colliding_volume: Dict[int, int] = field(default_factory=dict)
    non_colliding_volume: Dict[int, int] = field(default_factory=dict)
    histogram: NDArray = field(default_factory=lambda: np.zeros(11, dtype=np.int64))
    collision_threshold: float = 0.1

    @property
    def secured(self) -> Set[int]:
        """Markers that made it into the output."""
        return set(self.discovered) - self.unmatched - self.bordering - self.colliding

    def _percent(self, count: int) -> float:
        return 100.0 * count / len(self.discovered) if self.discovered else 0.0

    def print_summary(self) -> None:
        """Print the colliding markers, the histogram and the per-class counts."""
        print("reporting colliding markers:")
        for marker, coll in self.colliding_volume.items():
            non_coll = self.non_colliding_volume[marker]
            if coll == 0:
                continue
            ratio = coll / (coll + non_coll)
            verdict = "too much" if ratio > self.collision_threshold else "acceptable"
            print(
                f"marker: {marker}: colliding {coll} and non-colliding {non_coll} "
                f"voxels ( {ratio:.4f} ) {verdict}"
            )

        for hi in range(10):
            print(
                f"HIST: {hi * 10} %- {hi * 10 + 9} % collision area happened "
                f"{self.histogram[hi]} times"
            )
        print(f"HIST: 100 %- 100 % collision area happened {self.histogram[10]} times")

        n_secured = len(self.secured)
        print(
            f"not found markers    = {len(self.unmatched)} = {self._percent(len(self.unmatched)):.2f} %",
            f"\nmarkers at boundary  = {len(self.bordering)} = {self._percent(len(self.bordering)):.2f} %",
            f"\nmarkers in collision = {len(self.colliding)} = {self._percent(len(self.colliding)):.2f} %",
            f"\nsecured markers      = {n_secured} = {self._percent(n_secured):.2f} %",
        )


def discover_markers(marker_image: NDArray) -> List[int]:
    """
    Positive marker ids in the order of their first occurrence (C order).

    Parameters
    ----------
    marker_image : NDArray
        Integer marker image.

    Returns
    -------
    list of int
        Distinct positive ids.
    """
    values, first = np.unique(marker_image.reshape(-1), return_index=True)
    ordered = values[np.argsort(first, kind="stable")]
    return [int(v) for v in ordered if v > 0]


def object_boxes(image: NDArray) -> Dict[int, Tuple[slice, ...]]:
    """
    Bounding box of every positive id present in `image`.

    Ids are compacted to 1..n before `ndimage.find_objects`, so the work
    depends on the number of objects and not on the largest id.

    Parameters
    ----------
    image : NDArray
        Integer label image, possibly empty.

    Returns
    -------
    dict
        Maps each positive id to its tuple of slices.
    """
    if image.size == 0:
        return {}
    ids, inverse = np.unique(image.reshape(-1), return_inverse=True)
    offset = 0 if ids[0] == 0 else 1
    compact = (inverse.reshape(-1) + offset).reshape(image.shape)
    boxes = ndimage.find_objects(compact)
    return {
        int(value): boxes[i + offset - 1]
        for i, value in enumerate(ids.tolist())
        if value > 0
    }


class WeightedVotingFusion:
    """
    Marker-guided fusion of candidate segmentations.

    Parameters
    ----------
    components : FusionComponents
        Extract, fuse, insert and clean-up stages.
    weights : sequence of float, optional
        Weight per candidate image; may be given later to `fuse()`.
    threshold : float
        Minimal sum of weights for a voxel to be voted in (used by
        fixed-threshold fusers).
    collision_threshold : float
        Markers whose colliding ratio exceeds this value are removed.
        Zero removes a marker on its first colliding voxel.
    remove_markers_at_border : bool
        If True, markers touching the image border are removed.
    insert_markers_for_unfused : bool
        If True, colliding and unmatched markers are copied from the marker
        image into the background of the output after the fusion.
    debug : bool
        If True, prints the outcome of every marker.
    show_progress : bool
        If True, shows a progress bar over the markers.
    """

    def __init__(
        self,
        components: FusionComponents,
        weights: Optional[Sequence[float]] = None,
        threshold: float = 1.0,
        collision_threshold: float = 0.1,
        remove_markers_at_border: bool = False,
        insert_markers_for_unfused: bool = False,
        debug: bool = False,
        show_progress: bool = False,
    ):
        components.validate()
        self.components = components

        self._weights: Optional[List[float]] = None
        if weights is not None:
            self.weights = weights
        self.threshold = threshold
        self.collision_threshold = collision_threshold
        self.remove_markers_at_border = bool(remove_markers_at_border)
        self.insert_markers_for_unfused = bool(insert_markers_for_unfused)
        self._debug = bool(debug)
        self.show_progress = bool(show_progress)

        self.last_report: Optional[FusionReport] = None

    @property
    def weights(self) -> Optional[List[float]]:
        """
        Weight per candidate image.
        """
        return self._weights

    @weights.setter
    def weights(self, weights: Sequence[float]):
        weights = [float(w) for w in weights]
        if any(w < 0 for w in weights):
            raise ValueError("Weights must be non-negative.")
        self._weights = weights

    @property
    def threshold(self) -> float:
        """
        Minimal sum of weights for a voxel to be voted in.
        """
        return self._threshold

    @threshold.setter
    def threshold(self, threshold: float):
        self._threshold = float(threshold)

    @property
    def collision_threshold(self) -> float:
        """
        Maximal acceptable colliding ratio of a marker.
        """
        return self._collision_threshold

    @collision_threshold.setter
    def collision_threshold(self, threshold: float):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("collision_threshold must be in [0, 1].")
        self._collision_threshold = float(threshold)

    @property
    def debug(self) -> bool:
        """
        Debug flag for verbose per-marker output.
        """
        return self._debug

    @debug.setter
    def debug(self, flag: bool):
        self._debug = bool(flag)

    def _check_inputs(
        self,
        candidate_images: Sequence[NDArray],
        marker_image: NDArray,
    ) -> None:
        """Fail on any configuration error before touching a voxel."""
        self.components.validate()

        if self._weights is None:
            raise ValueError("Weights have not been set.")
        if len(candidate_images) != len(self._weights):
            raise ValueError(
                "Arrays with input images and weights are of different lengths."
            )
        if len(candidate_images) == 0:
            raise ValueError("At least one candidate image is required.")

        if not np.issubdtype(marker_image.dtype, np.integer):
            raise ValueError("Markers must be stored in an integer-type image.")
        for i, candidate in enumerate(candidate_images):
            if candidate.shape != marker_image.shape:
                raise ValueError(
                    f"Candidate image {i} has shape {candidate.shape}, "
                    f"marker image has {marker_image.shape}."
                )
            if not np.issubdtype(candidate.dtype, np.number):
                raise ValueError(f"Candidate image {i} voxels must be scalars.")

        if marker_image.size > 0:
            if marker_image.min() < 0:
                raise ValueError("Marker ids must be non-negative.")
            intersection = np.iinfo(marker_image.dtype).max
            if marker_image.max() >= intersection:
                raise ValueError(
                    f"Marker ids must stay below {intersection}, reserved for collisions."
                )

    def _report_marker(
        self,
        context: FusionContext,
        marker: int,
        status: InsertionStatus,
        n_matching: int,
    ) -> None:
        """Classify the marker right after its insertion."""
        if not status.found_at_all:
            context.unmatched.add(marker)
            outcome = "not included because not matched in results"
        elif self.remove_markers_at_border and status.at_border:
            context.bordering.add(marker)
            outcome = "detected to be at boundary"
        elif status.in_collision:
            # the colliding class is decided only after all markers are inserted
            outcome = "detected to be in collision"
        else:
            outcome = "secured for now"

        if self._debug:
            print(f"TRA marker: {marker} , images matching: {n_matching} , {outcome}")
            if status.local_colliders:
                colliders = ",".join(str(m) for m in sorted(status.local_colliders))
                print(f"markers colliding with this marker: {colliders}")

    def fuse(
        self,
        candidate_images: Sequence[NDArray],
        marker_image: NDArray,
        weights: Optional[Sequence[float]] = None,
        threshold: Optional[float] = None,
    ) -> NDArray:
        """
        Fuse the candidate segmentations guided by the marker image.

        Parameters
        ----------
        candidate_images : sequence of NDArray
            Candidate segmentations, all shaped like the marker image.
        marker_image : NDArray
            Integer image with one positive id per object.
        weights : sequence of float, optional
            Replaces the configured weights.
        threshold : float, optional
            Replaces the configured voting threshold.

        Returns
        -------
        output : NDArray
            Fused label image, same shape and dtype as the marker image.
        """
        if weights is not None:
            self.weights = weights
        if threshold is not None:
            self.threshold = threshold

        candidate_images = [np.asarray(c) for c in candidate_images]
        marker_image = np.asarray(marker_image)
        self._check_inputs(candidate_images, marker_image)

        extractor = self.components.extractor
        fuser = self.components.fuser
        insertor = self.components.insertor
        cleaner = self.components.cleaner
        weights = self._weights

        context = FusionContext.create(marker_image)
        consensus = np.zeros(marker_image.shape, dtype=np.float64)
        status = InsertionStatus()
        report = FusionReport(collision_threshold=self._collision_threshold)

        markers = discover_markers(marker_image)
        boxes = object_boxes(marker_image)

        for marker in tqdm(markers, desc="markers", leave=False, disable=not self.show_progress):
            bbox = boxes[marker]
            marker_view = marker_image[bbox]

            selected: List[Optional[NDArray]] = []
            labels: List[float] = []
            for candidate in candidate_images:
                label = extractor.find_matching_label(candidate[bbox], marker_view, marker)
                if label is None:
                    selected.append(None)
                    labels.append(0.0)
                else:
                    selected.append(candidate)
                    labels.append(label)
            n_matching = sum(c is not None for c in selected)

            if n_matching > 0:
                consensus.fill(0.0)
                fuser.fuse_matching_labels(
                    selected, labels, weights, self._threshold, extractor, consensus
                )
                insertor.insert_label(consensus, context, marker, status)
            else:
                status.clear()
                context.record_empty(marker)

            self._report_marker(context, marker, status, n_matching)
            report.discovered.append(marker)
            report.matching_images[marker] = n_matching

        report.histogram = insertor.finalize(
            context, self._collision_threshold, self.remove_markers_at_border
        )

        output = context.output
        for marker, bbox in object_boxes(output).items():
            cleaner.process_label(output, marker, bbox)

        unfused = context.colliding | context.unmatched
        if self.insert_markers_for_unfused and unfused:
            fallback = (output == 0) & np.isin(
                marker_image, np.fromiter(unfused, dtype=marker_image.dtype)
            )
            output[fallback] = marker_image[fallback]

        report.unmatched = set(context.unmatched)
        report.bordering = set(context.bordering)
        report.colliding = set(context.colliding)
        report.colliding_volume = dict(context.colliding_volume)
        report.non_colliding_volume = dict(context.non_colliding_volume)
        self.last_report = report
        report.print_summary()

        return output


def make_fusion(
    model: str = "BIC",
    simple_params: Optional[SimpleParams] = None,
    min_fraction_of_marker: float = 0.5,
    **kwargs,
) -> WeightedVotingFusion:
    """
    Build a `WeightedVotingFusion` with the BIC or SIMPLE components.

    Parameters
    ----------
    model : str
        "BIC" or "SIMPLE" (case-insensitive).
    simple_params : SimpleParams, optional
        Tunables of the SIMPLE fuser, ignored for BIC.
    min_fraction_of_marker : float
        Overlap a candidate label needs to match a marker.
    **kwargs
        Passed to `WeightedVotingFusion`.
    """
    model = model.upper()
    debug = bool(kwargs.get("debug", False))
    if model == "BIC":
        components = FusionComponents.bic(min_fraction_of_marker, debug=debug)
    elif model == "SIMPLE":
        components = FusionComponents.simple(
            simple_params, min_fraction_of_marker, debug=debug
        )
    else:
        raise ValueError(f"Unknown fusion model {model!r}, expected one of {FUSION_MODELS}.")
    return WeightedVotingFusion(components, **kwargs)
