"""Configuration for reconstruction post-processing."""

from dataclasses import dataclass
from typing import Literal


@dataclass
class ReconstructionConfig:
    """Default thresholds used by the command-line tools.

    Modify the default values here for experimentation.
    Command-line overrides: --param-name value
    """

    # Point filtering
    max_reproj_error: float = 4.0
    """Points with a mean reprojection error above this (pixels) are deleted"""

    min_tri_angle: float = 1.5
    """Points whose largest triangulation angle is below this (degrees) are deleted"""

    # Image filtering
    min_focal_length_ratio: float = 0.1
    """Smallest accepted focal length relative to max(width, height)"""

    max_focal_length_ratio: float = 10.0
    """Largest accepted focal length relative to max(width, height)"""

    max_extra_param: float = 1.0
    """Largest accepted absolute value of a distortion parameter"""

    # Normalization
    normalize_extent: float = 10.0
    """Diagonal of the robust bounding box after normalization"""

    normalize_p0: float = 0.1
    """Lower percentile of the robust bounding box"""

    normalize_p1: float = 0.9
    """Upper percentile of the robust bounding box"""

    normalize_use_images: bool = True
    """Normalize by the camera centers of registered images instead of the 3D points"""

    # Output
    output_type: Literal["bin", "txt", "ply"] = "bin"
    """Output format of written models"""
