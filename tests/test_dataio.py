import json
from pathlib import Path

import numpy as np
import pytest
import SimpleITK as sitk
import tensorstore as ts

from jlf_processing import __version__
from jlf_processing.dataio.metadata import (
    parse_label_exclusion,
    parse_radius,
    write_fusion_metadata,
)
from jlf_processing.dataio.ngffzarr import write_maps_via_tensorstore
from jlf_processing.dataio.volumes import (
    check_same_grid,
    read_volume,
    read_volumes,
    write_volume,
)


def _make_image(shape=(3, 4, 5), spacing=(0.5, 0.5, 2.0), origin=(1.0, 2.0, 3.0)):
    """SimpleITK image with non-trivial geometry."""
    data = np.arange(np.prod(shape), dtype=np.float32).reshape(shape)
    image = sitk.GetImageFromArray(data)
    image.SetSpacing(spacing)
    image.SetOrigin(origin)
    return data, image


def test_write_and_read_volume_keeps_geometry(tmp_path):
    """Written volumes carry the reference geometry and data."""
    data, reference = _make_image()
    path = write_volume(data * 2, reference, tmp_path / "sub" / "out.nii.gz")

    read, image = read_volume(path)
    assert np.array_equal(read, data * 2)
    assert np.allclose(image.GetSpacing(), reference.GetSpacing())
    assert np.allclose(image.GetOrigin(), reference.GetOrigin())


def test_read_missing_volume_raises(tmp_path):
    """Missing inputs raise FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        read_volume(tmp_path / "missing.nii.gz")


def test_read_volumes_checks_grid(tmp_path):
    """Volumes on a different grid are rejected."""
    data, reference = _make_image()
    other_data, other = _make_image(spacing=(1.0, 1.0, 1.0))
    first = tmp_path / "a.nrrd"
    second = tmp_path / "b.nrrd"
    sitk.WriteImage(reference, str(first))
    sitk.WriteImage(other, str(second))

    volumes, ref = read_volumes([first, first])
    assert len(volumes) == 2
    assert ref.GetSize() == reference.GetSize()

    with pytest.raises(ValueError):
        read_volumes([first, second])


def test_check_same_grid_size_and_origin():
    """Size and origin mismatches are configuration errors."""
    _, reference = _make_image()
    _, bigger = _make_image(shape=(3, 4, 6))
    _, moved = _make_image(origin=(0.0, 0.0, 0.0))

    check_same_grid(reference, reference)
    with pytest.raises(ValueError):
        check_same_grid(reference, bigger)
    with pytest.raises(ValueError):
        check_same_grid(reference, moved)


@pytest.mark.parametrize(
    "value, expected",
    [("2", 2), ("0", 0), ("2x2x1", (2, 2, 1)), ("3X1", (3, 1))],
)
def test_parse_radius(value, expected):
    """Radii are a single integer or per-axis values."""
    assert parse_radius(value) == expected


@pytest.mark.parametrize("value", ["", "a", "2x", "-1", "1x-1x1"])
def test_parse_radius_rejects_bad_values(value):
    """Non-integer and negative radii raise ValueError."""
    with pytest.raises(ValueError):
        parse_radius(value)


def test_parse_label_exclusion():
    """Exclusions are LABEL:path pairs."""
    label, path = parse_label_exclusion("3:/data/exclude:3.nii.gz")
    assert label == 3
    assert path == Path("/data/exclude:3.nii.gz")

    for bad in ("3", "3:", "x:/data/a.nii.gz"):
        with pytest.raises(ValueError):
            parse_label_exclusion(bad)


def test_write_fusion_metadata(tmp_path):
    """The sidecar stores parameters, labels and outputs as plain JSON."""
    path = write_fusion_metadata(
        tmp_path / "fusion.json",
        {"alpha": np.float64(0.1), "patch_radius": (1, 1, 1), "mask": None},
        [np.int64(0), np.int64(4)],
        {"labels": tmp_path / "Labels.nii.gz"},
    )

    with open(path) as f:
        metadata = json.load(f)

    assert metadata["version"] == __version__
    assert metadata["parameters"] == {"alpha": 0.1, "patch_radius": [1, 1, 1], "mask": None}
    assert metadata["labels"] == [0, 4]
    assert metadata["outputs"]["labels"] == str(tmp_path / "Labels.nii.gz")
    assert "created" in metadata


def test_write_maps_via_tensorstore(tmp_path):
    """Maps are stacked on a channel axis and can be read back."""
    rng = np.random.default_rng(0)
    maps = [rng.random((2, 3, 4)) for _ in range(3)]
    store_path = tmp_path / "maps.zarr"

    write_maps_via_tensorstore(store_path, maps)

    store = ts.open({
        "driver": "zarr3",
        "kvstore": {"driver": "file", "path": str(store_path)},
    }).result()
    data = store.read().result()

    assert data.shape == (3, 2, 3, 4)
    assert data.dtype == np.float32
    assert np.allclose(data, np.stack(maps).astype(np.float32))


def test_write_2d_maps_via_tensorstore(tmp_path):
    """2D maps get a singleton z axis."""
    maps = [np.ones((3, 4)), np.zeros((3, 4))]
    store = write_maps_via_tensorstore(tmp_path / "maps2d.zarr", maps)
    assert tuple(store.shape) == (2, 1, 3, 4)


def test_write_no_maps_raises(tmp_path):
    with pytest.raises(ValueError):
        write_maps_via_tensorstore(tmp_path / "empty.zarr", [])
