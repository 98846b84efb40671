from __future__ import annotations

import math

import numpy as np
import pytest

from terrain_heightfield import (
    METERS_PER_DEGREE,
    TileBounds,
    TileCoordinate,
    centered_tile_origin,
    group_bounds,
    lat_lon_to_tile,
    lat_lon_to_tile_fraction,
    tile_bounds,
    tile_group,
    tile_size_meters,
)


def test_lat_lon_to_tile_known_values() -> None:
    assert lat_lon_to_tile(0.0, -180.0, 0) == (0, 0)
    assert lat_lon_to_tile(0.0, 0.0, 1) == (1, 1)
    assert lat_lon_to_tile(45.0, -90.0, 1) == (0, 0)
    assert lat_lon_to_tile(-45.0, 90.0, 1) == (1, 1)


def test_tile_bounds_zoom_one() -> None:
    bounds = tile_bounds(0, 0, 1)

    assert bounds.lon_west == pytest.approx(-180.0)
    assert bounds.lon_east == pytest.approx(0.0)
    assert bounds.lat_north == pytest.approx(85.05112878, abs=1e-6)
    assert bounds.lat_south == pytest.approx(0.0, abs=1e-9)
    assert bounds.lon_west < bounds.lon_east
    assert bounds.lat_south < bounds.lat_north


@pytest.mark.parametrize("zoom", [0, 3, 8, 12, 15])
def test_tile_bounds_contain_the_point(zoom: int) -> None:
    for lat in np.linspace(-84.3, 84.7, 23):
        for lon in np.linspace(-179.7, 179.3, 29):
            x, y = lat_lon_to_tile(float(lat), float(lon), zoom)
            assert tile_bounds(x, y, zoom).contains(float(lat), float(lon))


def test_tile_size_meters_equirectangular() -> None:
    bounds = TileBounds(lon_west=10.0, lon_east=11.0, lat_north=60.5, lat_south=59.5)

    width_m, height_m = tile_size_meters(bounds)

    assert width_m == pytest.approx(METERS_PER_DEGREE * math.cos(math.radians(60.0)))
    assert height_m == pytest.approx(METERS_PER_DEGREE)


def test_tile_size_meters_zoom_15_is_about_a_kilometer_in_oslo() -> None:
    x, y = lat_lon_to_tile(59.8888, 10.5931, 15)
    width_m, height_m = tile_size_meters(tile_bounds(x, y, 15))

    assert 500 < width_m < 700
    assert 500 < height_m < 700


@pytest.mark.parametrize(
    ("frac_x", "frac_y", "expected"),
    [
        (1.25, 1.25, (0, 0)),
        (1.75, 1.25, (1, 0)),
        (1.25, 1.75, (0, 1)),
        (1.75, 1.75, (1, 1)),
    ],
)
def test_centered_tile_origin_uses_each_axis_independently(
    frac_x: float, frac_y: float, expected: tuple[int, int]
) -> None:
    zoom = 2
    lon = frac_x / 4 * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * frac_y / 4))))

    origin = centered_tile_origin(lat, lon, zoom)

    assert origin == TileCoordinate(zoom, *expected)


@pytest.mark.parametrize(
    ("lat", "lon"),
    [(59.8888085995981, 10.593090176648504), (59.904706664625266, 10.61104958556299), (-33.86, 151.21), (40.7, -74.0)],
)
def test_centered_tile_origin_puts_point_in_central_half(lat: float, lon: float) -> None:
    zoom = 14
    origin = centered_tile_origin(lat, lon, zoom)
    frac_x, frac_y = lat_lon_to_tile_fraction(lat, lon, zoom)

    assert 0.5 <= frac_x - origin.x < 1.5
    assert 0.5 <= frac_y - origin.y < 1.5
    assert group_bounds(origin).contains(lat, lon)


def test_centered_tile_origin_stays_inside_the_pyramid() -> None:
    assert centered_tile_origin(0.0, -179.99, 2).x == 0
    assert centered_tile_origin(0.0, 179.99, 2).x == 2
    with pytest.raises(ValueError, match="no 2x2"):
        centered_tile_origin(0.0, 0.0, 0)


def test_tile_group_order_and_bounds() -> None:
    origin = TileCoordinate(10, 540, 300)

    assert tile_group(origin) == [
        TileCoordinate(10, 540, 300),
        TileCoordinate(10, 541, 300),
        TileCoordinate(10, 540, 301),
        TileCoordinate(10, 541, 301),
    ]

    bounds = group_bounds(origin)
    assert bounds.lon_west == tile_bounds(540, 300, 10).lon_west
    assert bounds.lat_north == tile_bounds(540, 300, 10).lat_north
    assert bounds.lon_east == tile_bounds(541, 301, 10).lon_east
    assert bounds.lat_south == tile_bounds(541, 301, 10).lat_south


def test_tile_url_template() -> None:
    tile = TileCoordinate(15, 17348, 9527)

    assert tile.url() == "https://s3.amazonaws.com/elevation-tiles-prod/terrarium/15/17348/9527.png"
    assert tile.url("http://localhost:8000/tiles/") == "http://localhost:8000/tiles/15/17348/9527.png"
