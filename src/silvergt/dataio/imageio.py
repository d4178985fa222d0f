"""
Reading and writing of label images.

Paths ending in `.zarr` are handled as zarr v3 stores via tensorstore,
anything else as TIFF via tifffile.
"""

from pathlib import Path
from typing import Union

import numpy as np
import tensorstore as ts
from numpy.typing import NDArray
from tifffile import imread, imwrite


def _is_zarr(path: Path) -> bool:
    return path.suffix.lower() == ".zarr"


def read_image(path: Union[str, Path]) -> NDArray:
    """
    Load a whole image into memory.

    Parameters
    ----------
    path : str or Path
        TIFF file or zarr v3 store.

    Returns
    -------
    image : NDArray
        Image data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    if _is_zarr(path):
        spec = {
            "driver": "zarr3",
            "kvstore": {"driver": "file", "path": str(path)},
        }
        store = ts.open(spec, create=False, open=True).result()
        return np.asarray(store.read().result())

    return imread(path)


def write_image(path: Union[str, Path], data: NDArray) -> None:
    """
    Write an image, replacing any previous content.

    Parameters
    ----------
    path : str or Path
        Target TIFF file or zarr v3 store.
    data : NDArray
        Image to save.
    """
    path = Path(path)
    data = np.asarray(data)

    if _is_zarr(path):
        chunk_shape = [min(256, s) if s > 0 else 1 for s in data.shape]
        config = {
            "driver": "zarr3",
            "kvstore": {"driver": "file", "path": str(path)},
            "metadata": {
                "shape": list(data.shape),
                "chunk_grid": {
                    "name": "regular",
                    "configuration": {"chunk_shape": chunk_shape},
                },
                "chunk_key_encoding": {"name": "default"},
                "codecs": [
                    {"name": "bytes", "configuration": {"endian": "little"}},
                    {"name": "blosc", "configuration": {"cname": "zstd", "clevel": 5, "shuffle": "bitshuffle"}},
                ],
                "data_type": data.dtype.name,
            },
        }
        store = ts.open(config, create=True, delete_existing=True).result()
        store.write(data).result()
        return

    imwrite(path, data, photometric="minisblack", compression="zlib")
