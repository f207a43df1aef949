import sys
from pathlib import Path

import pytest

# Ensure project root on path when tests are run from a checkout.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from segment_reco.geometry import PlanarChamber
from segment_reco.hits import Hit

SIGMA2 = 0.01
LAYER_Z = [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]


def line_hits(u0, slope_u, v0=0.0, slope_v=0.0, layers=(1, 2, 3, 4, 5, 6),
              cov=(SIGMA2, 0.0, SIGMA2), first_id=0):
    """Exact hits on a straight line in a chamber whose layer k sits at z = k - 1."""
    return [
        Hit(layer, (u0 + slope_u * LAYER_Z[layer - 1], v0 + slope_v * LAYER_Z[layer - 1]), cov,
            hit_id=first_id + k)
        for k, layer in enumerate(layers)
    ]


@pytest.fixture
def chamber():
    # chamber above the beam line at positive z; local u runs along global x
    return PlanarChamber(LAYER_Z, origin=(0.0, 200.0, 700.0))


@pytest.fixture
def backward_chamber():
    return PlanarChamber(LAYER_Z, origin=(0.0, 200.0, -700.0))
