"""
Label fusion for marker-guided segmentation fusion.

Fusers combine the candidate labels matched to one marker into a single
binary consensus mask. `WeightedVotingLabelFuser` thresholds a weighted vote,
`SimpleLabelFuser` iterates majority votes while re-weighting the candidates
by their agreement with the current consensus (SIMPLE-style fusion).
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

import numpy as np
from numpy.typing import NDArray

from silvergt.imageprocessing.labelextract import LabelExtractor


class LabelFuser(Protocol):
    """Role: fuse matched candidate labels into a binary consensus mask."""

    def fuse_matching_labels(
        self,
        candidates: Sequence[Optional[NDArray]],
        labels: Sequence[float],
        weights: Sequence[float],
        threshold: float,
        extractor: LabelExtractor,
        out: NDArray,
    ) -> NDArray:
        ...


def jaccard(candidate: NDArray, label: float, mask: NDArray) -> float:
    """
    Jaccard index between one candidate label and a binary mask.

    Parameters
    ----------
    candidate : NDArray
        Candidate segmentation.
    label : float
        Label within `candidate` to compare.
    mask : NDArray
        Mask, non-zero voxels are foreground.

    Returns
    -------
    float
        |A and B| / |A or B|, 0.0 if both are empty.
    """
    a = candidate == label
    b = mask > 0
    union = np.count_nonzero(a | b)
    if union == 0:
        return 0.0
    return np.count_nonzero(a & b) / union


class WeightedVotingLabelFuser:
    """
    Weighted voting with a fixed acceptance threshold.

    Every voxel collects the weights of the candidates whose matched label
    covers it; the voxel belongs to the consensus iff the sum reaches
    `threshold` (inclusive).
    """

    def fuse_matching_labels(
        self,
        candidates: Sequence[Optional[NDArray]],
        labels: Sequence[float],
        weights: Sequence[float],
        threshold: float,
        extractor: LabelExtractor,
        out: NDArray,
    ) -> NDArray:
        """
        Fuse the matched labels into `out`.

        Parameters
        ----------
        candidates : sequence of NDArray or None
            Candidate images, None for candidates without a matching label.
        labels : sequence of float
            Matched label per candidate.
        weights : sequence of float
            Weight per candidate.
        threshold : float
            Minimal sum of weights for a voxel to be accepted.
        extractor : LabelExtractor
            Used to add the labels into `out`.
        out : float64 NDArray
            Work buffer, overwritten with the binary (0/1) consensus.

        Returns
        -------
        out : float64 NDArray
            The consensus mask.
        """
        out.fill(0.0)
        for candidate, label, weight in zip(candidates, labels, weights):
            if candidate is None:
                continue
            extractor.accumulate(candidate, label, out, weight)

        accepted = (out > 0) & (out >= threshold)
        out.fill(0.0)
        out[accepted] = 1.0
        return out


@dataclass
class SimpleParams:
    """Tunables of the iterative SIMPLE fusion."""

    max_iters: int = 4
    no_update_iters: int = 2
    initial_quality_threshold: float = 0.7
    step_down_quality_threshold: float = 0.1
    minimal_quality_threshold: float = 0.3

    def __post_init__(self):
        if self.max_iters < 1:
            raise ValueError("max_iters must be >= 1.")
        if self.no_update_iters < 1:
            raise ValueError("no_update_iters must be >= 1.")
        if self.step_down_quality_threshold < 0:
            raise ValueError("step_down_quality_threshold must be >= 0.")
        if self.minimal_quality_threshold > self.initial_quality_threshold:
            raise ValueError(
                "minimal_quality_threshold must not exceed initial_quality_threshold."
            )


class SimpleLabelFuser:
    """
    Iterative majority voting with agreement-based candidate re-weighting.

    Round 0 is a majority vote with the caller's weights. Every following
    round replaces the weight of each still-active candidate with the
    Jaccard index of its label against the current consensus and votes
    again. From round 2 on, candidates whose new weight falls below the
    quality threshold are dropped and the threshold is stepped down (not
    below its minimum). The loop stops after `max_iters` rounds, once the
    consensus stayed unchanged for `no_update_iters` consecutive rounds, or
    when no candidate is left (keeping the last consensus).

    The `threshold` argument of `fuse_matching_labels` is ignored; each vote
    uses the majority threshold of the currently active weights.

    Parameters
    ----------
    params : SimpleParams
        Iteration tunables.
    debug : bool
        If True, prints the weights of every round.
    """

    def __init__(self, params: Optional[SimpleParams] = None, debug: bool = False):
        self.params = params if params is not None else SimpleParams()
        self.debug = debug
        self._voter = WeightedVotingLabelFuser()

    @staticmethod
    def majority_threshold(
        candidates: Sequence[Optional[NDArray]],
        weights: Sequence[float],
    ) -> float:
        """
        Threshold T such that sum_i w_i * indicator_i >= T means a strict
        majority of the normalized active weights.
        """
        total = sum(w for c, w in zip(candidates, weights) if c is not None)
        # voting accepts >= threshold, the epsilon turns it into a strict >
        return 0.5 * total + 0.0001

    def _report_weights(self, iteration: int, quality: float, candidates, weights) -> None:
        values = "\t".join(
            f"{w:+.3f}" if c is not None else f"{-1.0:+.3f}"
            for c, w in zip(candidates, weights)
        )
        print(f"it: {iteration} quality: {quality:.3f} weights: {values}")

    def fuse_matching_labels(
        self,
        candidates: Sequence[Optional[NDArray]],
        labels: Sequence[float],
        weights: Sequence[float],
        threshold: float,
        extractor: LabelExtractor,
        out: NDArray,
    ) -> NDArray:
        """
        Fuse the matched labels into `out`, see the class docstring.

        Returns
        -------
        out : float64 NDArray
            The binary consensus mask.
        """
        p = self.params
        active: List[Optional[NDArray]] = list(candidates)
        my_weights = [float(w) for w in weights]

        if self.debug:
            self._report_weights(0, p.initial_quality_threshold, active, my_weights)

        self._voter.fuse_matching_labels(
            active, labels, my_weights,
            self.majority_threshold(active, my_weights), extractor, out,
        )

        quality_threshold = p.initial_quality_threshold
        unchanged = 0
        previous = out.copy()
        for iteration in range(1, p.max_iters):
            for i, candidate in enumerate(active):
                if candidate is None:
                    continue
                my_weights[i] = jaccard(candidate, labels[i], out)
                if iteration >= 2 and my_weights[i] < quality_threshold:
                    active[i] = None

            if self.debug:
                self._report_weights(iteration, quality_threshold, active, my_weights)

            if all(c is None for c in active):
                break

            self._voter.fuse_matching_labels(
                active, labels, my_weights,
                self.majority_threshold(active, my_weights), extractor, out,
            )

            if np.array_equal(out, previous):
                unchanged += 1
            else:
                unchanged = 0
                np.copyto(previous, out)
            if unchanged >= p.no_update_iters:
                break

            if iteration >= 2:
                quality_threshold = max(
                    quality_threshold - p.step_down_quality_threshold,
                    p.minimal_quality_threshold,
                )

        return out
