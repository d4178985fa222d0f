import numpy as np

from silvergt.imageprocessing.labelpostprocess import (
    KeepLargestComponentPostprocessor,
    VoidLabelPostprocessor,
)


def test_keeps_largest_component():
    """The small fragment of the marker is removed, other labels stay."""
    output = np.zeros((6, 6), dtype=np.uint16)
    output[0:2, 0:2] = 3
    output[5, 5] = 3
    output[4, 0] = 9
    n = KeepLargestComponentPostprocessor().process_label(output, 3)

    assert n == 2
    assert np.count_nonzero(output == 3) == 4
    assert output[5, 5] == 0
    assert output[4, 0] == 9


def test_diagonal_neighbours_are_connected():
    output = np.zeros((3, 3), dtype=np.uint8)
    output[0, 0] = 1
    output[1, 1] = 1
    output[2, 2] = 1
    before = output.copy()
    assert KeepLargestComponentPostprocessor().process_label(output, 1) == 1
    assert np.array_equal(output, before)


def test_equal_components_keep_first_in_raster_order():
    output = np.zeros(7, dtype=np.uint16)
    output[0:2] = 5
    output[4:6] = 5
    KeepLargestComponentPostprocessor().process_label(output, 5)
    assert np.array_equal(output, [5, 5, 0, 0, 0, 0, 0])


def test_bbox_restricts_the_work(capsys):
    output = np.zeros((4, 8), dtype=np.uint16)
    output[1, 1:4] = 2
    output[1, 6] = 2
    n = KeepLargestComponentPostprocessor(debug=True).process_label(
        output, 2, (slice(1, 2), slice(1, 7))
    )
    assert n == 2
    assert np.array_equal(output[1], [0, 2, 2, 2, 0, 0, 0, 0])
    assert "CCA for marker 2" in capsys.readouterr().out


def test_processing_is_idempotent():
    output = np.zeros((5, 5), dtype=np.uint16)
    output[1:3, 1:4] = 1
    output[4, 4] = 1
    cleaner = KeepLargestComponentPostprocessor()
    cleaner.process_label(output, 1)
    once = output.copy()
    assert cleaner.process_label(output, 1) == 1
    assert np.array_equal(output, once)


def test_absent_marker():
    output = np.zeros(5, dtype=np.uint16)
    assert KeepLargestComponentPostprocessor().process_label(output, 4) == 0


def test_void_postprocessor_changes_nothing():
    output = np.array([1, 0, 1], dtype=np.uint16)
    assert VoidLabelPostprocessor().process_label(output, 1) == 0
    assert np.array_equal(output, [1, 0, 1])
