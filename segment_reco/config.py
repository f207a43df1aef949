from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Union

import orjson


@dataclass(frozen=True, slots=True)
class SegmentConfig:
    r"""
    Numeric thresholds of the segment builder, read once per builder.

    Attributes
    ----------
    min_layers_apart : int
        Minimum layer separation between the two seed hits.
    min_hits_per_segment : int
        Base hit count for accepting a segment. One extra hit is required in
        chambers with more than 20 hits and another above 30.
    tan_phi_max : float
        Maximum :math:`|du/dz|` of a seed pair.
    tan_theta_max : float
        Maximum :math:`|dv/dz|` of a seed pair.
    d_rphi_fine_max : float
        Maximum :math:`R\,\Delta\phi` between a hit and the segment prediction.
    d_phi_fine_max : float
        Maximum :math:`\Delta\phi` (radians) between a hit and the prediction.
    debug : bool
        Emit per-seed DEBUG records from the builder.
    max_segments : int
        Segment building stops once this many segments were produced.
    min_remaining_hits : int
        Segment building stops once fewer unused hits than this remain.
    """
    min_layers_apart: int = 2
    min_hits_per_segment: int = 3
    tan_phi_max: float = 0.5
    tan_theta_max: float = 1.2
    d_rphi_fine_max: float = 8.0
    d_phi_fine_max: float = 0.025
    debug: bool = False
    max_segments: int = 4
    min_remaining_hits: int = 3

    def __post_init__(self) -> None:
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            cast = bool if f.type in ("bool", bool) else int if f.type in ("int", int) else float
            object.__setattr__(self, f.name, cast(value))
        if self.min_layers_apart < 1:
            raise ValueError("min_layers_apart must be >= 1")
        if self.max_segments < 1:
            raise ValueError("max_segments must be >= 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SegmentConfig":
        r"""
        Build a config from a mapping, rejecting unknown keys.

        Raises
        ------
        ValueError
            If ``data`` contains keys that are not config fields.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown segment config keys: {', '.join(unknown)}")
        return cls(**dict(data))

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def load_config(config_path: Union[str, Path]) -> SegmentConfig:
    r"""
    Load a :class:`SegmentConfig` from JSON.

    The document may either hold the fields directly or nest them under a
    ``"segment_config"`` block.

    Parameters
    ----------
    config_path : str or pathlib.Path
        Path to the JSON file.

    Returns
    -------
    SegmentConfig

    Raises
    ------
    ValueError
        If the file cannot be read or parsed, or holds unknown keys.
    """
    config_path = Path(config_path)
    try:
        doc = orjson.loads(config_path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(doc, dict):
        raise ValueError(f"{config_path} must contain a JSON object")
    block = doc.get("segment_config", doc)
    return SegmentConfig.from_mapping(block)
