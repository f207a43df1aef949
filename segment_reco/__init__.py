__all__ = [
    "ChamberGeometry", "PlanarChamber",
    "Hit", "normalize_hit_order",
    "LineFit", "fit_line", "calculate_error",
    "ProtoSegment", "SearchContext", "CandidateSearch",
    "Segment", "SegmentBuilder", "min_hits_required",
    "SegmentConfig", "load_config",
    "hits_from_frame", "load_hits", "load_chambers", "segments_to_frame",
]

# Geometry
from .geometry import ChamberGeometry, PlanarChamber

# Hits & ordering
from .hits import Hit, normalize_hit_order

# Fitting
from .fitter import LineFit, fit_line, calculate_error

# Search & assembly
from .search import ProtoSegment, SearchContext, CandidateSearch
from .builder import Segment, SegmentBuilder, min_hits_required

# Config & I/O
from .config import SegmentConfig, load_config
from .data import hits_from_frame, load_hits, load_chambers, segments_to_frame
