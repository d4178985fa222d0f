import numpy as np
import pytest

from silvergt.dataio.imageio import read_image, write_image


def _labels() -> np.ndarray:
    labels = np.zeros((3, 8, 9), dtype=np.uint16)
    labels[1, 2:5, 3:7] = 12
    labels[2, 6:, :2] = 3
    return labels


def test_tiff_keeps_labels_and_dtype(tmp_path):
    path = tmp_path / "labels.tif"
    write_image(path, _labels())
    loaded = read_image(path)
    assert loaded.dtype == np.uint16
    assert np.array_equal(loaded, _labels())


def test_zarr_store_is_replaced(tmp_path):
    """Writing twice to the same store keeps only the latest image."""
    path = tmp_path / "labels.zarr"
    write_image(path, np.ones((2, 2), dtype=np.uint8))
    write_image(path, _labels())
    loaded = read_image(path)
    assert loaded.dtype == np.uint16
    assert np.array_equal(loaded, _labels())


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_image(tmp_path / "missing.tif")
