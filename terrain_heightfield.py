#!/usr/bin/env python3
"""
terrain_heightfield.py - Build terrain height fields from Terrarium elevation tiles

Fetches a 2x2 block of AWS Terrarium tiles around a point, stitches them into
one full-precision elevation grid, synthesises a sloped sea floor under the
coastline and samples the result onto a mesh grid for a 3D renderer.

Usage:
    python terrain_heightfield.py --lat 59.8888 --lon 10.5931 \
        --zoom 15 --output oslo/ --heightmap

Dependencies:
    pip install numpy rasterio requests scipy
"""

# Standard library
import argparse
import math
import os
import sys
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from functools import partial
from typing import Callable, NamedTuple, Optional, Sequence, Union

# Third party
import numpy as np
import requests
from rasterio.enums import ColorInterp
from rasterio.errors import NotGeoreferencedWarning, RasterioError
from rasterio.io import MemoryFile
from scipy import ndimage


# =============================================================================
# Constants
# =============================================================================

# AWS open data Terrarium tiles: https://registry.opendata.aws/terrain-tiles/
TILE_BASE_URL = "https://s3.amazonaws.com/elevation-tiles-prod/terrarium"

# API Configuration
API_TIMEOUT_SECONDS = 30
FETCH_WORKERS = 4

DEFAULT_ZOOM = 15

# Terrarium encoding: elevation = R * 256 + G + B / 256 - 32768
TERRARIUM_OFFSET = 32768.0

# Water depth synthesis
DEEPEN_PASSES = 100
DEEPEN_STEP_M = 1.0
SMOOTH_PASSES = 10

# Equirectangular ground distance approximation
METERS_PER_DEGREE = 111320.0

# Scene scaling used by the renderer
DEFAULT_MESH_WIDTH = 100.0
DEFAULT_GROUND_SIZE_M = 1000.0


# =============================================================================
# Custom Exceptions
# =============================================================================

class TerrainTileError(Exception):
    """Base exception for terrain height field errors."""
    pass


class TileLoadError(TerrainTileError):
    """A tile could not be fetched or decoded."""

    def __init__(self, tile: "TileCoordinate", message: str = "", url: Optional[str] = None,
                 status_code: Optional[int] = None):
        self.tile = tile
        self.url = url
        self.status_code = status_code
        where = f"{tile.z}/{tile.x}/{tile.y}"
        if url:
            where += f" ({url})"
        if status_code is not None:
            message = f"status {status_code}: {message}"
        super().__init__(f"Failed to load terrain tile {where}: {message}")


class DataError(TerrainTileError):
    """Error processing elevation data."""
    pass


# =============================================================================
# Data Classes
# =============================================================================

class TileCoordinate(NamedTuple):
    """Slippy-map tile index, x and y in [0, 2**z)."""
    z: int
    x: int
    y: int

    def url(self, base_url: str = TILE_BASE_URL) -> str:
        """Terrarium PNG URL of this tile under base_url."""
        return f"{base_url.rstrip('/')}/{self.z}/{self.x}/{self.y}.png"


class TileBounds(NamedTuple):
    """Geographic extent of a tile (or tile group) in degrees."""
    lon_west: float
    lon_east: float
    lat_north: float
    lat_south: float

    def contains(self, lat: float, lon: float) -> bool:
        """True if the point lies inside the bounds, edges included."""
        return (self.lon_west <= lon <= self.lon_east) and (self.lat_south <= lat <= self.lat_north)


@dataclass
class ElevationField:
    """Dense row-major elevation grid in meters.

    ``values`` is a flat float64 array of ``width * height`` samples; ``grid``
    is a (height, width) view onto the same memory, so in-place edits through
    either are visible through both.
    """
    width: int
    height: int
    values: np.ndarray

    def __post_init__(self) -> None:
        self.values = np.ascontiguousarray(self.values, dtype=np.float64).reshape(-1)
        if self.width < 1 or self.height < 1:
            raise DataError(f"Invalid field size {self.width}x{self.height}")
        if self.values.size != self.width * self.height:
            raise DataError(
                f"Field of {self.width}x{self.height} needs {self.width * self.height} "
                f"values, got {self.values.size}"
            )

    @classmethod
    def from_grid(cls, grid: np.ndarray) -> "ElevationField":
        grid = np.asarray(grid, dtype=np.float64)
        if grid.ndim != 2:
            raise DataError("Elevation grid must be 2D")
        height, width = grid.shape
        return cls(width=width, height=height, values=grid.reshape(-1).copy())

    @property
    def grid(self) -> np.ndarray:
        return self.values.reshape(self.height, self.width)

    def min(self) -> float:
        return float(self.values.min())

    def max(self) -> float:
        return float(self.values.max())


@dataclass
class TerrainResult:
    """Elevation field plus the metadata the renderer needs.

    ``ground_width_m`` / ``ground_height_m`` are only set when the field was
    stitched from a centred 2x2 tile group.
    """
    field: ElevationField
    min_elevation: float
    max_elevation: float
    tile: TileCoordinate
    ground_width_m: Optional[float] = None
    ground_height_m: Optional[float] = None

    @property
    def width(self) -> int:
        return self.field.width

    @property
    def height(self) -> int:
        return self.field.height


class SceneScale(NamedTuple):
    """Scene-unit dimensions derived from a TerrainResult."""
    meters_per_unit: float
    mesh_width: float
    mesh_depth: float
    min_height: float
    max_height: float
    subdivisions: int


# Returns a (height, width, 4) uint8 RGBA array or raises TileLoadError
TileFetcher = Callable[[TileCoordinate], np.ndarray]


# =============================================================================
# Coordinate Functions
# =============================================================================

def lat_lon_to_tile_fraction(lat: float, lon: float, zoom: int) -> tuple[float, float]:
    """Continuous Web-Mercator tile position of a point.

    Args:
        lat: Latitude in decimal degrees, within the Mercator range (~85.05)
        lon: Longitude in decimal degrees
        zoom: Zoom level

    Returns:
        Tuple of (frac_x, frac_y) in tile units
    """
    n = 2 ** zoom
    lat_rad = math.radians(lat)
    frac_x = (lon + 180.0) / 360.0 * n
    frac_y = (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n
    return frac_x, frac_y


def lat_lon_to_tile(lat: float, lon: float, zoom: int) -> tuple[int, int]:
    """Convert latitude/longitude to the (x, y) index of the containing tile.

    No clamping is applied; latitudes outside the Mercator range give
    meaningless indices.
    """
    frac_x, frac_y = lat_lon_to_tile_fraction(lat, lon, zoom)
    return int(math.floor(frac_x)), int(math.floor(frac_y))


def tile_x_to_lon(x: float, zoom: int) -> float:
    """Longitude of the west edge of tile column x (fractional x allowed)."""
    return x / (2 ** zoom) * 360.0 - 180.0


def tile_y_to_lat(y: float, zoom: int) -> float:
    """Latitude of the north edge of tile row y (fractional y allowed)."""
    n = 2 ** zoom
    return math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))


def tile_bounds(x: int, y: int, zoom: int) -> TileBounds:
    """Geographic bounding box of tile (x, y) at the given zoom."""
    return TileBounds(
        lon_west=tile_x_to_lon(x, zoom),
        lon_east=tile_x_to_lon(x + 1, zoom),
        lat_north=tile_y_to_lat(y, zoom),
        lat_south=tile_y_to_lat(y + 1, zoom),
    )


def tile_size_meters(bounds: TileBounds) -> tuple[float, float]:
    """Approximate ground size of a bounding box.

    Equirectangular approximation, good for spans of a few tens of
    kilometers.

    Args:
        bounds: Geographic bounding box

    Returns:
        Tuple of (width_m, height_m)
    """
    mid_lat = math.radians((bounds.lat_north + bounds.lat_south) / 2.0)
    meters_per_deg_lon = METERS_PER_DEGREE * math.cos(mid_lat)
    width_m = (bounds.lon_east - bounds.lon_west) * meters_per_deg_lon
    height_m = (bounds.lat_north - bounds.lat_south) * METERS_PER_DEGREE
    return width_m, height_m


def centered_tile_origin(lat: float, lon: float, zoom: int) -> TileCoordinate:
    """Top-left tile of the 2x2 group that puts the point near its centre.

    On each axis, a point in the first half of its tile starts the group one
    tile earlier, so the point always lands in the central half of the
    stitched square. The start is kept inside [0, 2**zoom - 2].

    Raises:
        ValueError: At zoom 0, where a 2x2 group does not exist
    """
    n = 2 ** zoom
    if n < 2:
        raise ValueError(f"Zoom {zoom} has no 2x2 tile neighbourhood")

    frac_x, frac_y = lat_lon_to_tile_fraction(lat, lon, zoom)
    tile_x = math.floor(frac_x)
    tile_y = math.floor(frac_y)
    start_x = tile_x - 1 if frac_x - tile_x < 0.5 else tile_x
    start_y = tile_y - 1 if frac_y - tile_y < 0.5 else tile_y

    start_x = max(0, min(n - 2, start_x))
    start_y = max(0, min(n - 2, start_y))
    return TileCoordinate(zoom, int(start_x), int(start_y))


def tile_group(origin: TileCoordinate) -> list[TileCoordinate]:
    """Tiles of a 2x2 group: top-left, top-right, bottom-left, bottom-right."""
    z, x, y = origin
    return [
        TileCoordinate(z, x, y),
        TileCoordinate(z, x + 1, y),
        TileCoordinate(z, x, y + 1),
        TileCoordinate(z, x + 1, y + 1),
    ]


def group_bounds(origin: TileCoordinate) -> TileBounds:
    """Bounding box of the 2x2 group starting at ``origin``."""
    top_left = tile_bounds(origin.x, origin.y, origin.z)
    bottom_right = tile_bounds(origin.x + 1, origin.y + 1, origin.z)
    return TileBounds(
        lon_west=top_left.lon_west,
        lon_east=bottom_right.lon_east,
        lat_north=top_left.lat_north,
        lat_south=bottom_right.lat_south,
    )


# =============================================================================
# Decoding Functions
# =============================================================================

def decode_terrarium(
    pixels: Union[bytes, bytearray, memoryview, np.ndarray],
    width: int,
    height: int
) -> ElevationField:
    """Decode Terrarium-encoded pixels into an elevation field.

    Args:
        pixels: Flat RGBA8 buffer of width * height * 4 bytes, or a
            (height, width, 3 or 4) uint8 array
        width: Tile width in pixels
        height: Tile height in pixels

    Returns:
        ElevationField with one sample per pixel

    Raises:
        DataError: If the buffer size does not match the dimensions
    """
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        array = np.frombuffer(pixels, dtype=np.uint8)
    else:
        array = np.asarray(pixels)

    channels = array.shape[-1] if array.ndim == 3 else 4
    if channels not in (3, 4):
        raise DataError(f"Expected RGB or RGBA pixels, got {channels} channels")
    if array.size != width * height * channels:
        raise DataError(
            f"Pixel buffer of {array.size} values does not match "
            f"{width}x{height}x{channels}"
        )

    rgb = array.reshape(-1, channels)[:, :3].astype(np.float64)
    elevation = rgb[:, 0] * 256.0 + rgb[:, 1] + rgb[:, 2] / 256.0 - TERRARIUM_OFFSET
    return ElevationField(width=width, height=height, values=elevation)


def read_png_rgba(content: bytes) -> np.ndarray:
    """Decode PNG bytes into a (height, width, 4) uint8 array.

    Palette images are expanded through their colour table, grey images are
    copied into R, G and B, and images without alpha get an opaque one.

    Raises:
        DataError: If the image is not 8-bit, or has more than 4 bands
        RasterioError: If the bytes are not a readable image
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NotGeoreferencedWarning)
        with MemoryFile(content) as memfile:
            with memfile.open() as src:
                bands = src.read()
                palette = None
                if src.count == 1 and src.colorinterp[0] == ColorInterp.palette:
                    palette = src.colormap(1)

    if bands.dtype != np.uint8:
        raise DataError(f"Expected 8-bit image, got {bands.dtype}")

    opaque = np.full((1,) + bands.shape[1:], 255, dtype=np.uint8)
    if palette is not None:
        lookup = np.zeros((256, 4), dtype=np.uint8)
        lookup[:, 3] = 255
        for index, colour in palette.items():
            lookup[index, :len(colour)] = colour
        return lookup[bands[0]]
    if bands.shape[0] == 1:
        bands = np.concatenate([bands, bands, bands, opaque])
    elif bands.shape[0] == 2:
        bands = np.concatenate([bands[:1], bands[:1], bands[:1], bands[1:]])
    elif bands.shape[0] == 3:
        bands = np.concatenate([bands, opaque])
    elif bands.shape[0] != 4:
        raise DataError(f"Expected at most 4 bands, got {bands.shape[0]}")

    return np.ascontiguousarray(np.moveaxis(bands, 0, -1))


def encode_png(rgba: np.ndarray) -> bytes:
    """Encode a (height, width, 4) uint8 array as PNG bytes."""
    rgba = np.asarray(rgba, dtype=np.uint8)
    height, width, count = rgba.shape
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NotGeoreferencedWarning)
        with MemoryFile() as memfile:
            with memfile.open(
                driver="PNG", width=width, height=height, count=count, dtype="uint8"
            ) as dst:
                dst.write(np.moveaxis(rgba, -1, 0))
            return bytes(memfile.getbuffer())


# =============================================================================
# Data Fetching Functions
# =============================================================================

def fetch_tile_rgba(
    tile: TileCoordinate,
    base_url: str = TILE_BASE_URL,
    timeout: float = API_TIMEOUT_SECONDS
) -> np.ndarray:
    """Fetch a single Terrarium tile image.

    There is no retry and no cache; every call goes to the network.

    Args:
        tile: Tile to fetch
        base_url: Tile server root, tiles live at <base_url>/{z}/{x}/{y}.png
        timeout: Request timeout in seconds

    Returns:
        (height, width, 4) uint8 RGBA array

    Raises:
        TileLoadError: On network errors, non-2xx responses or undecodable images
    """
    url = tile.url(base_url)
    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise TileLoadError(tile, str(exc), url=url) from exc

    if not 200 <= response.status_code < 300:
        raise TileLoadError(tile, "tile request failed", url=url, status_code=response.status_code)

    try:
        return read_png_rgba(response.content)
    except (RasterioError, DataError) as exc:
        raise TileLoadError(tile, f"could not decode image: {exc}", url=url) from exc


def load_tile_field(tile: TileCoordinate, fetch: TileFetcher = fetch_tile_rgba) -> ElevationField:
    """Fetch and decode one tile, reporting any failure as a TileLoadError.

    Fetchers should raise TileLoadError themselves; anything else they raise
    is wrapped with the tile attached.
    """
    try:
        rgba = fetch(tile)
        height, width = rgba.shape[:2]
        return decode_terrarium(rgba, width, height)
    except TileLoadError:
        raise
    except (DataError, ValueError) as exc:
        raise TileLoadError(tile, f"could not decode image: {exc}") from exc
    except Exception as exc:
        raise TileLoadError(tile, f"{type(exc).__name__}: {exc}") from exc


def fetch_tile_fields(
    tiles: Sequence[TileCoordinate],
    fetch: TileFetcher = fetch_tile_rgba,
    max_workers: int = FETCH_WORKERS
) -> list[ElevationField]:
    """Fetch and decode several tiles concurrently.

    All or nothing: the first failure cancels whatever has not started yet
    and is re-raised; no partial list is returned.

    Args:
        tiles: Tiles to load
        fetch: Tile image source
        max_workers: Thread pool size

    Returns:
        Elevation fields in the same order as ``tiles``
    """
    fields: list[Optional[ElevationField]] = [None] * len(tiles)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(load_tile_field, tile, fetch): index
            for index, tile in enumerate(tiles)
        }
        try:
            for future in as_completed(futures):
                fields[futures[future]] = future.result()
        except Exception:
            for future in futures:
                future.cancel()
            raise

    return fields


# =============================================================================
# Stitching Functions
# =============================================================================

def stitch_fields(
    top_left: ElevationField,
    top_right: ElevationField,
    bottom_left: ElevationField,
    bottom_right: ElevationField
) -> ElevationField:
    """Merge four equally sized fields into one field of twice the size.

    Tiles are copied verbatim into their quadrants; seams are not blended.

    Raises:
        DataError: If the fields do not all share the same dimensions
    """
    quadrants = (top_left, top_right, bottom_left, bottom_right)
    sizes = {(f.width, f.height) for f in quadrants}
    if len(sizes) != 1:
        raise DataError(f"Cannot stitch tiles of different sizes: {sorted(sizes)}")

    width, height = top_left.width, top_left.height
    out = np.empty((height * 2, width * 2), dtype=np.float64)
    out[:height, :width] = top_left.grid
    out[:height, width:] = top_right.grid
    out[height:, :width] = bottom_left.grid
    out[height:, width:] = bottom_right.grid
    return ElevationField(width=width * 2, height=height * 2, values=out.reshape(-1))


def fetch_stitched_field(
    origin: TileCoordinate,
    fetch: TileFetcher = fetch_tile_rgba,
    quiet: bool = False
) -> tuple[ElevationField, TileBounds]:
    """Fetch the 2x2 tile group starting at ``origin`` and stitch it.

    Args:
        origin: Top-left tile of the group
        fetch: Tile image source
        quiet: Suppress progress output

    Returns:
        Tuple of (stitched field, bounding box of the whole group)

    Raises:
        TileLoadError: If any of the four tiles fails
    """
    tiles = tile_group(origin)
    if not quiet:
        print(f"Fetching tiles {origin.z}/{origin.x}-{origin.x + 1}/{origin.y}-{origin.y + 1}...")

    fields = fetch_tile_fields(tiles, fetch=fetch)
    stitched = stitch_fields(*fields)

    if not quiet:
        print(f"  Stitched size: {stitched.width}x{stitched.height} pixels")
        print(f"  Elevation: {stitched.min():.1f}m to {stitched.max():.1f}m")

    return stitched, group_bounds(origin)


# =============================================================================
# Water Depth Synthesis
# =============================================================================

def water_mask(field: ElevationField) -> np.ndarray:
    """(height, width) boolean mask of cells at or below sea level."""
    return field.grid <= 0.0


def _row_neighbour_max(row: np.ndarray) -> np.ndarray:
    """Max of each cell and its in-bounds left/right neighbours."""
    out = row.copy()
    out[1:] = np.maximum(out[1:], row[:-1])
    out[:-1] = np.maximum(out[:-1], row[1:])
    return out


def deepen_water(
    field: ElevationField,
    mask: np.ndarray,
    passes: int = DEEPEN_PASSES,
    step: float = DEEPEN_STEP_M
) -> None:
    """Lower water cells that have no higher neighbour, in place.

    Each pass scans cells in raster order against live values: a water cell
    whose 8 in-bounds neighbours are all at or below it drops by ``step``.
    Cells next to land or shallower water stay put, so depth grows outward
    from the shore over successive passes.

    Rows are handled with numpy. The row above is already final for the pass
    and the row below is untouched, so only the left neighbour's same-pass
    update needs a scalar scan, and only where it changes the outcome.
    """
    grid = field.grid
    height, width = grid.shape
    step = float(step)
    water_rows = [r for r in range(height) if mask[r].any()]

    for _ in range(passes):
        for r in water_rows:
            row = grid[r]
            water = mask[r]

            higher = np.full(width, -np.inf)
            if r > 0:
                higher = np.maximum(higher, _row_neighbour_max(grid[r - 1]))
            if r < height - 1:
                higher = np.maximum(higher, _row_neighbour_max(grid[r + 1]))
            higher[:-1] = np.maximum(higher[:-1], row[1:])

            lower = water & ~(higher > row)

            # Left neighbour: land never moves, water may drop by step first
            left = row[:-1]
            left_lowered = left - step
            left_water = water[:-1]
            here = row[1:]
            blocked = np.where(left_water, left_lowered > here, left > here)
            undecided = left_water & (left > here) & ~(left_lowered > here)
            lower[1:] &= ~blocked

            for j in np.flatnonzero(undecided & lower[1:]) + 1:
                lower[j] = lower[j - 1]

            row[lower] = row[lower] - step


def smooth_water(field: ElevationField, mask: np.ndarray, passes: int = SMOOTH_PASSES) -> None:
    """Box-blur water cells in place, leaving land untouched.

    Every pass averages each water cell with its in-bounds 8 neighbours,
    land included, read from a snapshot taken at the start of the pass. The
    result is capped at sea level.
    """
    grid = field.grid
    kernel = np.ones((3, 3), dtype=np.float64)
    counts = ndimage.correlate(np.ones(grid.shape, dtype=np.float64), kernel, mode="constant", cval=0.0)

    for _ in range(passes):
        snapshot = grid.copy()
        sums = ndimage.correlate(snapshot, kernel, mode="constant", cval=0.0)
        grid[mask] = np.minimum(sums[mask] / counts[mask], 0.0)


def synthesize_water_depth(
    field: ElevationField,
    passes: int = DEEPEN_PASSES,
    step: float = DEEPEN_STEP_M,
    smooth_passes: int = SMOOTH_PASSES
) -> np.ndarray:
    """Replace the flat 0 m sea with a sloped sea floor, in place.

    Args:
        field: Elevation field to modify
        passes: Number of deepening passes
        step: Depth added per deepening pass in meters
        smooth_passes: Number of smoothing passes

    Returns:
        The water mask, fixed before any cell was modified
    """
    mask = water_mask(field)
    if not mask.any():
        return mask

    field.grid[mask] = 0.0
    deepen_water(field, mask, passes=passes, step=step)
    smooth_water(field, mask, passes=smooth_passes)
    return mask


# =============================================================================
# Sampling Functions
# =============================================================================

def sample_bilinear(field: ElevationField, px: float, py: float) -> float:
    """Bilinear elevation at continuous grid position (px, py), edge clamped.

    Positions outside the grid are clamped onto its border.
    """
    grid = field.grid
    px = min(max(px, 0.0), field.width - 1)
    py = min(max(py, 0.0), field.height - 1)
    x0 = int(math.floor(px))
    y0 = int(math.floor(py))
    x1 = min(x0 + 1, field.width - 1)
    y1 = min(y0 + 1, field.height - 1)
    fx = px - x0
    fy = py - y0

    h00 = grid[y0, x0]
    h10 = grid[y0, x1]
    h01 = grid[y1, x0]
    h11 = grid[y1, x1]

    return float(h00 * (1 - fx) * (1 - fy) +
                 h10 * fx * (1 - fy) +
                 h01 * (1 - fx) * fy +
                 h11 * fx * fy)


def sample_elevation(field: ElevationField, u: float, v: float) -> float:
    """Elevation at normalised position (u, v) in [0, 1] x [0, 1]."""
    return sample_bilinear(field, u * (field.width - 1), v * (field.height - 1))


def sample_vertex_heights(
    field: ElevationField,
    subdivisions: int,
    meters_per_unit: float = 1.0
) -> np.ndarray:
    """Heights for a square mesh of (subdivisions + 1) vertices per side.

    Args:
        field: Elevation field to sample
        subdivisions: Mesh subdivisions per side
        meters_per_unit: Meters per scene unit, applied to the sampled heights

    Returns:
        (subdivisions + 1, subdivisions + 1) array of heights in scene units,
        row 0 along the field's first row
    """
    if subdivisions < 1:
        raise ValueError("subdivisions must be >= 1")

    idx = np.arange(subdivisions + 1, dtype=np.float64)
    px = idx * (field.width - 1) / subdivisions
    py = idx * (field.height - 1) / subdivisions
    pxx, pyy = np.meshgrid(px, py)

    x0 = np.floor(pxx).astype(np.intp)
    y0 = np.floor(pyy).astype(np.intp)
    x1 = np.minimum(x0 + 1, field.width - 1)
    y1 = np.minimum(y0 + 1, field.height - 1)
    fx = pxx - x0
    fy = pyy - y0

    grid = field.grid
    h00 = grid[y0, x0]
    h10 = grid[y0, x1]
    h01 = grid[y1, x0]
    h11 = grid[y1, x1]

    heights = (h00 * (1 - fx) * (1 - fy) +
               h10 * fx * (1 - fy) +
               h01 * (1 - fx) * fy +
               h11 * fx * fy)
    return heights / meters_per_unit


def scene_scale(
    result: TerrainResult,
    mesh_width: float = DEFAULT_MESH_WIDTH,
    subdivision_multiplier: float = 1.0
) -> SceneScale:
    """Scene dimensions with one meters-per-unit ratio on every axis.

    Results without a ground extent are assumed to cover 1 km x 1 km.
    """
    ground_width = result.ground_width_m or DEFAULT_GROUND_SIZE_M
    ground_height = result.ground_height_m or DEFAULT_GROUND_SIZE_M
    meters_per_unit = ground_width / mesh_width
    return SceneScale(
        meters_per_unit=meters_per_unit,
        mesh_width=mesh_width,
        mesh_depth=ground_height / meters_per_unit,
        min_height=result.min_elevation / meters_per_unit,
        max_height=result.max_elevation / meters_per_unit,
        subdivisions=max(1, round(result.width * subdivision_multiplier)),
    )


# =============================================================================
# Pipeline Functions
# =============================================================================

def _finish_result(
    field: ElevationField,
    tile: TileCoordinate,
    water: bool,
    passes: int,
    step: float,
    smooth_passes: int,
    quiet: bool,
    ground_size: Optional[tuple[float, float]] = None
) -> TerrainResult:
    if water:
        if not quiet:
            print(f"  Synthesising water depth ({passes} passes, {smooth_passes} smoothing)...")
        mask = synthesize_water_depth(field, passes=passes, step=step, smooth_passes=smooth_passes)
        if not quiet:
            print(f"  Water cells: {int(mask.sum())}/{mask.size}")

    result = TerrainResult(
        field=field,
        min_elevation=field.min(),
        max_elevation=field.max(),
        tile=tile,
    )
    if ground_size is not None:
        result.ground_width_m, result.ground_height_m = ground_size
    return result


def fetch_terrain(
    lat: float,
    lon: float,
    zoom: int = DEFAULT_ZOOM,
    fetch: TileFetcher = fetch_tile_rgba,
    water: bool = True,
    passes: int = DEEPEN_PASSES,
    step: float = DEEPEN_STEP_M,
    smooth_passes: int = SMOOTH_PASSES,
    quiet: bool = False
) -> TerrainResult:
    """Build a stitched, centred terrain height field around a point.

    Args:
        lat: Latitude in decimal degrees
        lon: Longitude in decimal degrees
        zoom: Tile zoom level
        fetch: Tile image source
        water: Run water depth synthesis
        passes: Deepening passes
        step: Depth per deepening pass in meters
        smooth_passes: Smoothing passes
        quiet: Suppress progress output

    Returns:
        TerrainResult with ground extent of the 2x2 tile group

    Raises:
        TileLoadError: If any tile fails to load
    """
    origin = centered_tile_origin(lat, lon, zoom)
    field, bounds = fetch_stitched_field(origin, fetch=fetch, quiet=quiet)
    tile_x, tile_y = lat_lon_to_tile(lat, lon, zoom)
    return _finish_result(
        field, TileCoordinate(zoom, tile_x, tile_y), water, passes, step, smooth_passes, quiet,
        ground_size=tile_size_meters(bounds),
    )


def fetch_tile_terrain(
    tile: TileCoordinate,
    fetch: TileFetcher = fetch_tile_rgba,
    water: bool = True,
    passes: int = DEEPEN_PASSES,
    step: float = DEEPEN_STEP_M,
    smooth_passes: int = SMOOTH_PASSES,
    quiet: bool = False
) -> TerrainResult:
    """Height field of a single tile, without ground extent."""
    field = load_tile_field(tile, fetch)
    if not quiet:
        print(f"Terrain tile {tile.z}/{tile.x}/{tile.y}: "
              f"elevation range {field.min():.1f}m to {field.max():.1f}m")
    return _finish_result(field, tile, water, passes, step, smooth_passes, quiet)


def fetch_terrain_at_location(
    lat: float,
    lon: float,
    zoom: int = DEFAULT_ZOOM,
    **kwargs
) -> TerrainResult:
    """Height field of the single tile containing a point."""
    x, y = lat_lon_to_tile(lat, lon, zoom)
    return fetch_tile_terrain(TileCoordinate(zoom, x, y), **kwargs)


# =============================================================================
# Heightmap Export
# =============================================================================

def heightmap_image(result: TerrainResult) -> np.ndarray:
    """8-bit greyscale rendering of the field as a (height, width, 4) array.

    Lossy; only for inspection, never as an elevation source.
    """
    elevation_range = (result.max_elevation - result.min_elevation) or 1.0
    normalized = np.floor((result.field.grid - result.min_elevation) / elevation_range * 255)
    grey = np.clip(normalized, 0, 255).astype(np.uint8)

    image = np.empty((result.height, result.width, 4), dtype=np.uint8)
    image[..., 0] = grey
    image[..., 1] = grey
    image[..., 2] = grey
    image[..., 3] = 255
    return image


def heightmap_filename(tile: TileCoordinate) -> str:
    return f"heightmap_{tile.z}_{tile.x}_{tile.y}.png"


def save_heightmap(result: TerrainResult, path: Optional[str] = None) -> str:
    """Write the greyscale heightmap PNG and return its path."""
    if path is None:
        path = heightmap_filename(result.tile)
    with open(path, "wb") as f:
        f.write(encode_png(heightmap_image(result)))
    return path


# =============================================================================
# Main Function Components
# =============================================================================

def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(description='Terrain height fields from Terrarium tiles')
    parser.add_argument('--lat', type=float, required=True, help='Centre latitude')
    parser.add_argument('--lon', type=float, required=True, help='Centre longitude')
    parser.add_argument('--zoom', type=int, default=DEFAULT_ZOOM, help='Tile zoom level')
    parser.add_argument(
        '--single-tile', action='store_true',
        help='Use only the tile containing the point (no stitching, no ground extent)'
    )
    parser.add_argument('--no-water', action='store_true', help='Skip water depth synthesis')
    parser.add_argument('--passes', type=int, default=DEEPEN_PASSES, help='Water deepening passes')
    parser.add_argument('--step', type=float, default=DEEPEN_STEP_M, help='Depth per pass in meters')
    parser.add_argument('--smooth-passes', type=int, default=SMOOTH_PASSES, help='Water smoothing passes')
    parser.add_argument('--mesh-width', type=float, default=DEFAULT_MESH_WIDTH, help='Mesh width in scene units')
    parser.add_argument(
        '--subdivision-multiplier', type=float, default=1.0,
        help='Mesh subdivisions relative to field pixels (1 = one vertex per pixel)'
    )
    parser.add_argument('--output', type=str, default='terrain/', help='Output folder')
    parser.add_argument('--heightmap', action='store_true', help='Also write a greyscale PNG heightmap')
    parser.add_argument('--base-url', type=str, default=TILE_BASE_URL, help='Tile server root URL')
    parser.add_argument('--timeout', type=float, default=API_TIMEOUT_SECONDS, help='Request timeout in seconds')

    return parser.parse_args(argv)


def print_configuration(args: argparse.Namespace) -> None:
    """Print the run configuration.

    Args:
        args: Parsed command line arguments
    """
    print(f"\n=== Terrain Height Field ===")
    print(f"Centre: {args.lat}, {args.lon}")
    print(f"Zoom: {args.zoom}")
    print(f"Tiles: {'single' if args.single_tile else '2x2 centred'}")
    if args.no_water:
        print("Water depth: off")
    else:
        print(f"Water depth: {args.passes} passes x {args.step}m, {args.smooth_passes} smoothing passes")
    print()


def print_summary(result: TerrainResult, scale: SceneScale, written: list[str]) -> None:
    """Print the elevation range, scene scale and written files.

    Args:
        result: Terrain result that was built
        scale: Scene scale derived from the result
        written: Paths of the files written
    """
    print(f"\nElevation: {result.min_elevation:.0f}m to {result.max_elevation:.0f}m")
    if result.ground_width_m is not None:
        print(f"Ground extent: {result.ground_width_m:.0f}m x {result.ground_height_m:.0f}m")
    print(f"Mesh: {scale.mesh_width:g} x {scale.mesh_depth:.2f} units "
          f"(1 unit = {scale.meters_per_unit:.1f}m), {scale.subdivisions} subdivisions")
    print(f"Heights: {scale.min_height:.2f} to {scale.max_height:.2f} units")
    print(f"\nDone! Files written:")
    for path in written:
        print(f"  {path}")


# =============================================================================
# Main Entry Point
# =============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the terrain height field builder."""
    args = parse_arguments(argv)
    print_configuration(args)

    os.makedirs(args.output, exist_ok=True)
    fetch = partial(fetch_tile_rgba, base_url=args.base_url, timeout=args.timeout)
    options = dict(
        fetch=fetch,
        water=not args.no_water,
        passes=args.passes,
        step=args.step,
        smooth_passes=args.smooth_passes,
    )

    try:
        if args.single_tile:
            result = fetch_terrain_at_location(args.lat, args.lon, args.zoom, **options)
        else:
            result = fetch_terrain(args.lat, args.lon, args.zoom, **options)
    except TerrainTileError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    scale = scene_scale(result, args.mesh_width, args.subdivision_multiplier)
    vertices = sample_vertex_heights(result.field, scale.subdivisions, scale.meters_per_unit)

    z, x, y = result.tile
    written = []
    elevation_path = os.path.join(args.output, f"elevation_{z}_{x}_{y}.npy")
    np.save(elevation_path, result.field.grid)
    written.append(elevation_path)

    vertices_path = os.path.join(args.output, f"vertices_{z}_{x}_{y}.npy")
    np.save(vertices_path, vertices)
    written.append(vertices_path)

    if args.heightmap:
        written.append(save_heightmap(result, os.path.join(args.output, heightmap_filename(result.tile))))

    print_summary(result, scale, written)
    return 0


if __name__ == "__main__":
    sys.exit(main())
