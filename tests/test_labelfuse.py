import numpy as np
import pytest

from silvergt.imageprocessing.labelextract import MajorityOverlapLabelExtractor
from silvergt.imageprocessing.labelfuse import (
    SimpleLabelFuser,
    SimpleParams,
    WeightedVotingLabelFuser,
    jaccard,
)


def test_weighted_voting_threshold_arithmetic():
    """0.6 alone passes 0.5, 0.4 alone does not, both together do."""
    a = np.array([5, 0, 5, 0], dtype=np.uint16)
    b = np.array([0, 7, 7, 0], dtype=np.uint16)
    out = np.zeros(4, dtype=np.float64)
    WeightedVotingLabelFuser().fuse_matching_labels(
        [a, b], [5.0, 7.0], [0.6, 0.4], 0.5, MajorityOverlapLabelExtractor(), out
    )
    assert np.array_equal(out, [1.0, 0.0, 1.0, 0.0])


def test_weighted_voting_skips_unmatched_candidates():
    """Candidates given as None do not vote."""
    a = np.array([1, 1, 0], dtype=np.uint16)
    out = np.full(3, 5.0)
    WeightedVotingLabelFuser().fuse_matching_labels(
        [None, a], [0.0, 1.0], [10.0, 1.0], 1.0, MajorityOverlapLabelExtractor(), out
    )
    assert np.array_equal(out, [1.0, 1.0, 0.0])


def test_jaccard():
    candidate = np.array([2, 2, 2, 0], dtype=np.uint16)
    mask = np.array([0, 1, 1, 1], dtype=np.float64)
    assert jaccard(candidate, 2, mask) == pytest.approx(0.5)
    assert jaccard(np.zeros(3), 1, np.zeros(3)) == 0.0


def test_majority_threshold_counts_only_active_weights():
    threshold = SimpleLabelFuser.majority_threshold([np.zeros(1), None], [2.0, 5.0])
    assert threshold == pytest.approx(1.0001)


def test_simple_fusion_drops_disagreeing_candidate():
    """The outlier candidate gets a low agreement and does not change the consensus."""
    a = np.zeros(10, dtype=np.uint16)
    a[0:6] = 1
    b = a.copy()
    c = np.zeros(10, dtype=np.uint16)
    c[4:10] = 1
    out = np.zeros(10, dtype=np.float64)
    fuser = SimpleLabelFuser()
    fuser.fuse_matching_labels(
        [a, b, c], [1.0, 1.0, 1.0], [1.0, 1.0, 1.0], 0.0,
        MajorityOverlapLabelExtractor(), out,
    )
    expected = np.zeros(10)
    expected[0:6] = 1.0
    assert np.array_equal(out, expected)


def test_simple_fusion_single_round_is_majority_vote():
    """With one iteration SIMPLE is a plain weighted majority vote."""
    a = np.array([1, 1, 0, 0], dtype=np.uint16)
    b = np.array([0, 3, 3, 0], dtype=np.uint16)
    out = np.zeros(4, dtype=np.float64)
    fuser = SimpleLabelFuser(SimpleParams(max_iters=1))
    fuser.fuse_matching_labels(
        [a, b], [1.0, 3.0], [2.0, 1.0], 0.0, MajorityOverlapLabelExtractor(), out
    )
    assert np.array_equal(out, [1.0, 1.0, 0.0, 0.0])


def test_simple_fusion_keeps_consensus_when_all_candidates_drop(capsys):
    """If every candidate falls below the quality threshold the last consensus stays."""
    a = np.array([1, 1, 0, 0, 0, 0], dtype=np.uint16)
    b = np.array([0, 0, 1, 1, 0, 0], dtype=np.uint16)
    c = np.array([0, 0, 0, 0, 1, 1], dtype=np.uint16)
    out = np.zeros(6, dtype=np.float64)
    fuser = SimpleLabelFuser(debug=True)
    fuser.fuse_matching_labels(
        [a, b, c], [1.0, 1.0, 1.0], [1.0, 1.0, 1.0], 0.0,
        MajorityOverlapLabelExtractor(), out,
    )
    assert np.array_equal(out, np.zeros(6))
    assert "it: 0" in capsys.readouterr().out


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_iters": 0},
        {"no_update_iters": 0},
        {"step_down_quality_threshold": -0.1},
        {"minimal_quality_threshold": 0.9},
    ],
)
def test_simple_params_validation(kwargs):
    with pytest.raises(ValueError):
        SimpleParams(**kwargs)


def _trace(capsys):
    return [line for line in capsys.readouterr().out.splitlines() if line.startswith("it: ")]


def _agreeing_pair():
    a = np.zeros(6, dtype=np.uint16)
    a[0:4] = 1
    return [a, a.copy()], [1.0, 1.0], [1.0, 1.0]


def test_simple_stops_once_consensus_is_stable(capsys):
    """With no_update_iters=1 a stable consensus ends the loop after round 1."""
    candidates, labels, weights = _agreeing_pair()
    fuser = SimpleLabelFuser(SimpleParams(max_iters=10, no_update_iters=1), debug=True)
    fuser.fuse_matching_labels(
        candidates, labels, weights, 0.0, MajorityOverlapLabelExtractor(), np.zeros(6)
    )
    trace = _trace(capsys)
    assert [line.split()[1] for line in trace] == ["0", "1"]


def test_simple_runs_at_most_max_iters_rounds(capsys):
    candidates, labels, weights = _agreeing_pair()
    fuser = SimpleLabelFuser(SimpleParams(max_iters=3, no_update_iters=10), debug=True)
    fuser.fuse_matching_labels(
        candidates, labels, weights, 0.0, MajorityOverlapLabelExtractor(), np.zeros(6)
    )
    assert len(_trace(capsys)) == 3


def test_simple_quality_threshold_steps_down_to_minimum(capsys):
    """The threshold drops by the step after every round from round 2 and stops at the minimum."""
    candidates, labels, weights = _agreeing_pair()
    params = SimpleParams(
        max_iters=5,
        no_update_iters=10,
        initial_quality_threshold=0.6,
        step_down_quality_threshold=0.15,
        minimal_quality_threshold=0.4,
    )
    fuser = SimpleLabelFuser(params, debug=True)
    fuser.fuse_matching_labels(
        candidates, labels, weights, 0.0, MajorityOverlapLabelExtractor(), np.zeros(6)
    )
    qualities = [line.split()[3] for line in _trace(capsys)]
    assert qualities == ["0.600", "0.600", "0.600", "0.450", "0.400"]


def _loose_candidate_case():
    """A and B agree on 9 voxels; C covers all 20, so its Jaccard index is 0.45."""
    a = np.zeros(20, dtype=np.uint16)
    a[0:9] = 1
    c = np.ones(20, dtype=np.uint16)
    return [a, a.copy(), c], [1.0, 1.0, 1.0], [1.0, 1.0, 1.0]


def test_simple_drops_candidate_below_quality_threshold(capsys):
    candidates, labels, weights = _loose_candidate_case()
    params = SimpleParams(
        max_iters=4,
        no_update_iters=10,
        initial_quality_threshold=0.5,
        step_down_quality_threshold=0.1,
        minimal_quality_threshold=0.4,
    )
    out = np.zeros(20)
    SimpleLabelFuser(params, debug=True).fuse_matching_labels(
        candidates, labels, weights, 0.0, MajorityOverlapLabelExtractor(), out
    )
    trace = _trace(capsys)
    # round 1 only re-weights, round 2 applies the 0.5 threshold
    assert trace[1].split()[-1] == "+0.450"
    assert trace[2].split()[-1] == "-1.000"
    assert np.array_equal(out[:9], np.ones(9))
    assert not out[9:].any()


def test_simple_keeps_candidate_at_lower_quality_threshold(capsys):
    candidates, labels, weights = _loose_candidate_case()
    params = SimpleParams(
        max_iters=4,
        no_update_iters=10,
        initial_quality_threshold=0.45,
        step_down_quality_threshold=0.1,
        minimal_quality_threshold=0.3,
    )
    SimpleLabelFuser(params, debug=True).fuse_matching_labels(
        candidates, labels, weights, 0.0, MajorityOverlapLabelExtractor(), np.zeros(20)
    )
    assert all(line.split()[-1] == "+0.450" for line in _trace(capsys)[1:])
