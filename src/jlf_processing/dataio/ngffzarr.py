"""
Zarr v3 output for fusion maps.

Retained posterior and voting weight maps are stacked along a leading
channel axis and written as a single (c, z, y, x) float32 array with
tensorstore.

History:
---------
- **2025/06**: Initial commit.
"""

from pathlib import Path
from typing import Sequence

import numpy as np
import tensorstore as ts


def create_via_tensorstore(output_path: Path | str, data_shape: Sequence[int]):
    """Create a TensorStore Zarr v3 driver with a 4D float32 array.

    The configuration specifies:
      - A 4D array of shape `data_shape` (c, z, y, x).
      - One shard per channel, holding the full volume.
      - Inner chunks of [1, 1, y, x].
      - Compression using Blosc with zstd, compression level 5, and bitshuffle.

    Parameters
    ----------
    output_path : str or Path
        store location on disk
    data_shape : Sequence[int]
        (c, z, y, x)

    Returns
    -------
    ts_store
        tensorstore object
    """

    data_shape = [int(s) for s in data_shape]
    if len(data_shape) != 4:
        raise ValueError(f"Expected a (c, z, y, x) shape, got {data_shape}.")

    chunk_shape = [1, 1, data_shape[2], data_shape[3]]
    shard_shape = [1, data_shape[1], data_shape[2], data_shape[3]]

    config = {
        "driver": "zarr3",
        "kvstore": {
            "driver": "file",
            "path": str(output_path)
        },
        "metadata": {
            "shape": data_shape,
            "chunk_grid": {
                "name": "regular",
                "configuration": {
                    "chunk_shape": shard_shape
                }
            },
            "chunk_key_encoding": {"name": "default"},
            "codecs": [
                {
                    "name": "sharding_indexed",
                    "configuration": {
                        "chunk_shape": chunk_shape,
                        "codecs": [
                            {"name": "bytes", "configuration": {"endian": "little"}},
                            {"name": "blosc", "configuration": {"cname": "zstd", "clevel": 5, "shuffle": "bitshuffle"}}
                        ],
                        "index_codecs": [
                            {"name": "bytes", "configuration": {"endian": "little"}},
                            {"name": "crc32c"}
                        ],
                        "index_location": "end"
                    }
                }
            ],
            "data_type": "float32",
            "dimension_names": ["c", "z", "y", "x"],
        }
    }

    ts_store = ts.open(config, create=True, delete_existing=True).result()

    return ts_store


def write_maps_via_tensorstore(
    output_path: Path | str,
    maps: Sequence[np.ndarray]
):
    """Stack same-shape 2D or 3D maps and write them as one zarr3 array.

    Parameters
    ----------
    output_path : str or Path
        store location on disk
    maps : Sequence[np.ndarray]
        maps to write, one channel each

    Returns
    -------
    ts_store
        tensorstore object holding the written data
    """

    if len(maps) == 0:
        raise ValueError("No maps to write.")

    stack = np.stack([np.asarray(m, dtype=np.float32) for m in maps])
    if stack.ndim == 3:
        stack = stack[:, np.newaxis]

    ts_store = create_via_tensorstore(output_path, stack.shape)
    ts_store.write(stack).result()

    return ts_store
