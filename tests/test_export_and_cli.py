from __future__ import annotations

import os

import numpy as np
import pytest

import terrain_heightfield
from terrain_heightfield import (
    ElevationField,
    TerrainResult,
    TileCoordinate,
    TileLoadError,
    heightmap_image,
    lat_lon_to_tile,
    main,
    read_png_rgba,
    save_heightmap,
)


def make_result(grid) -> TerrainResult:
    field = ElevationField.from_grid(np.asarray(grid, dtype=np.float64))
    return TerrainResult(field=field, min_elevation=field.min(), max_elevation=field.max(), tile=TileCoordinate(15, 1, 2))


def test_heightmap_image_normalises_to_grey() -> None:
    image = heightmap_image(make_result([[0.0, 50.0], [100.0, 100.0]]))

    assert image.shape == (2, 2, 4)
    assert image[..., 0].tolist() == [[0, 127], [255, 255]]
    assert np.array_equal(image[..., 0], image[..., 1])
    assert np.array_equal(image[..., 0], image[..., 2])
    assert np.all(image[..., 3] == 255)


def test_heightmap_image_flat_field() -> None:
    image = heightmap_image(make_result(np.full((3, 3), 12.0)))

    assert np.all(image[..., :3] == 0)


def test_save_heightmap_default_name(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = make_result([[-20.0, 0.0], [40.0, 80.0]])

    path = save_heightmap(result)

    assert path == "heightmap_15_1_2.png"
    with open(tmp_path / path, "rb") as f:
        assert np.array_equal(read_png_rgba(f.read()), heightmap_image(result))


LAT, LON, ZOOM = 59.8888, 10.5931, 12


def test_main_writes_outputs(tmp_path, monkeypatch: pytest.MonkeyPatch, terrarium_rgba) -> None:
    calls = []

    def fake_fetch(tile, base_url, timeout):
        calls.append((tile, base_url, timeout))
        elevation = np.full((8, 8), 30.0)
        elevation[:, :3] = -2.0
        return terrarium_rgba(elevation)

    monkeypatch.setattr(terrain_heightfield, "fetch_tile_rgba", fake_fetch)
    out_dir = tmp_path / "out"

    code = main([
        "--lat", str(LAT), "--lon", str(LON), "--zoom", str(ZOOM),
        "--passes", "3", "--smooth-passes", "1",
        "--base-url", "http://tiles.test", "--timeout", "2",
        "--output", str(out_dir), "--heightmap",
    ])

    assert code == 0
    assert len(calls) == 4
    assert {(base_url, timeout) for _, base_url, timeout in calls} == {("http://tiles.test", 2.0)}

    x, y = lat_lon_to_tile(LAT, LON, ZOOM)
    elevation = np.load(out_dir / f"elevation_{ZOOM}_{x}_{y}.npy")
    vertices = np.load(out_dir / f"vertices_{ZOOM}_{x}_{y}.npy")
    assert elevation.shape == (16, 16)
    assert vertices.shape == (17, 17)
    assert elevation.max() == 30.0
    assert -3.0 <= elevation.min() <= 0.0
    assert os.path.exists(out_dir / f"heightmap_{ZOOM}_{x}_{y}.png")


def test_main_single_tile(tmp_path, monkeypatch: pytest.MonkeyPatch, terrarium_rgba) -> None:
    monkeypatch.setattr(
        terrain_heightfield, "fetch_tile_rgba",
        lambda tile, base_url, timeout: terrarium_rgba(np.full((4, 4), 5.0)),
    )

    code = main([
        "--lat", str(LAT), "--lon", str(LON), "--zoom", str(ZOOM),
        "--single-tile", "--no-water", "--output", str(tmp_path),
    ])

    assert code == 0
    x, y = lat_lon_to_tile(LAT, LON, ZOOM)
    assert np.load(tmp_path / f"elevation_{ZOOM}_{x}_{y}.npy").shape == (4, 4)
    assert not os.path.exists(tmp_path / f"heightmap_{ZOOM}_{x}_{y}.png")


def test_main_reports_tile_failure(tmp_path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    def failing_fetch(tile, base_url, timeout):
        raise TileLoadError(tile, "tile request failed", status_code=404)

    monkeypatch.setattr(terrain_heightfield, "fetch_tile_rgba", failing_fetch)

    code = main(["--lat", str(LAT), "--lon", str(LON), "--output", str(tmp_path)])

    assert code == 1
    assert "Failed to load terrain tile" in capsys.readouterr().err
