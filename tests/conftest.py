import sys
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]

sys.path.insert(0, str(PROJECT_ROOT))


def _encode_terrarium(elevation) -> np.ndarray:
    value = np.asarray(elevation, dtype=np.float64) + 32768.0
    r = np.floor(value / 256.0)
    g = np.floor(value - r * 256.0)
    b = np.round((value - r * 256.0 - g) * 256.0)
    alpha = np.full(value.shape, 255.0)
    return np.stack([r, g, b, alpha], axis=-1).astype(np.uint8)


@pytest.fixture
def terrarium_rgba():
    """Encode a 2D elevation array (meters) as a Terrarium RGBA tile."""
    return _encode_terrarium
