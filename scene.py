"""Entities of a reconstruction: cameras, images, 2D/3D points and tracks.

Cross references between entities are plain integer identifiers that are
resolved through the stores of a `Reconstruction`.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, NamedTuple

import numpy as np
from numpy.typing import NDArray

from errors import InvalidArgumentError, NotFoundError
from geometry import NDArrayFloat, Rigid3d

INVALID_POINT3D_ID = -1


class CameraModel(NamedTuple):
    model_id: int
    name: str
    num_params: int
    focal_length_idxs: tuple[int, ...]
    principal_point_idxs: tuple[int, ...]
    extra_params_idxs: tuple[int, ...]


CAMERA_MODELS = [
    CameraModel(0, "SIMPLE_PINHOLE", 3, (0,), (1, 2), ()),
    CameraModel(1, "PINHOLE", 4, (0, 1), (2, 3), ()),
    CameraModel(2, "SIMPLE_RADIAL", 4, (0,), (1, 2), (3,)),
    CameraModel(3, "RADIAL", 5, (0,), (1, 2), (3, 4)),
    CameraModel(4, "OPENCV", 8, (0, 1), (2, 3), (4, 5, 6, 7)),
    CameraModel(5, "OPENCV_FISHEYE", 8, (0, 1), (2, 3), (4, 5, 6, 7)),
    CameraModel(6, "FULL_OPENCV", 12, (0, 1), (2, 3), tuple(range(4, 12))),
    CameraModel(7, "FOV", 5, (0, 1), (2, 3), (4,)),
    CameraModel(8, "SIMPLE_RADIAL_FISHEYE", 4, (0,), (1, 2), (3,)),
    CameraModel(9, "RADIAL_FISHEYE", 5, (0,), (1, 2), (3, 4)),
    CameraModel(10, "THIN_PRISM_FISHEYE", 12, (0, 1), (2, 3), tuple(range(4, 12))),
]
CAMERA_MODEL_NAMES = {m.name: m for m in CAMERA_MODELS}
CAMERA_MODEL_IDS = {m.model_id: m for m in CAMERA_MODELS}


def camera_model(name: str) -> CameraModel:
    try:
        return CAMERA_MODEL_NAMES[name.upper()]
    except KeyError:
        raise InvalidArgumentError(f"Unknown camera model: {name}") from None


@dataclass
class Camera:
    """Intrinsics shared by one or more images."""

    camera_id: int
    model: str
    width: int
    height: int
    params: NDArrayFloat

    def __post_init__(self):
        self.model = camera_model(self.model).name
        self.params = np.asarray(self.params, dtype=float).ravel()

    @property
    def model_id(self) -> int:
        return CAMERA_MODEL_NAMES[self.model].model_id

    @property
    def focal_length_idxs(self) -> tuple[int, ...]:
        return CAMERA_MODEL_NAMES[self.model].focal_length_idxs

    @property
    def principal_point_idxs(self) -> tuple[int, ...]:
        return CAMERA_MODEL_NAMES[self.model].principal_point_idxs

    @property
    def extra_params_idxs(self) -> tuple[int, ...]:
        return CAMERA_MODEL_NAMES[self.model].extra_params_idxs

    @property
    def mean_focal_length(self) -> float:
        return float(np.mean(self.params[list(self.focal_length_idxs)]))

    def verify_params(self) -> bool:
        return self.params.size == CAMERA_MODEL_NAMES[self.model].num_params

    def calibration_matrix(self) -> NDArrayFloat:
        """Pinhole part of the model as a 3x3 K matrix."""
        focal = self.params[list(self.focal_length_idxs)]
        fx, fy = (focal[0], focal[0]) if focal.size == 1 else focal
        cx, cy = self.params[list(self.principal_point_idxs)]
        return np.array([[fx, 0, cx], [0, fy, cy], [0, 0, 1]], dtype=float)

    def has_bogus_params(self, min_focal_length_ratio: float, max_focal_length_ratio: float, max_extra_param: float) -> bool:
        if not self.verify_params():
            return True
        inv_max_size = 1.0 / max(self.width, self.height)
        for idx in self.focal_length_idxs:
            focal_length_ratio = self.params[idx] * inv_max_size
            if focal_length_ratio < min_focal_length_ratio or focal_length_ratio > max_focal_length_ratio:
                return True
        return any(abs(self.params[idx]) > max_extra_param for idx in self.extra_params_idxs)


@dataclass
class Point2D:
    xy: NDArrayFloat
    point3D_id: int = INVALID_POINT3D_ID

    def __post_init__(self):
        self.xy = np.asarray(self.xy, dtype=float).reshape(2)

    @property
    def has_point3D(self) -> bool:
        return self.point3D_id != INVALID_POINT3D_ID


class TrackElement(NamedTuple):
    """A single observation (image_id, point2D_idx) of a 3D point."""

    image_id: int
    point2D_idx: int


class Track:
    def __init__(self, elements: Iterable[tuple[int, int]] = ()):
        self.elements: list[TrackElement] = [TrackElement(*el) for el in elements]

    @property
    def length(self) -> int:
        return len(self.elements)

    def __len__(self) -> int:
        return len(self.elements)

    def __iter__(self) -> Iterator[TrackElement]:
        return iter(self.elements)

    def __contains__(self, el) -> bool:
        return TrackElement(*el) in self.elements

    def __eq__(self, other) -> bool:
        return isinstance(other, Track) and self.elements == other.elements

    def __repr__(self) -> str:
        return f"Track({self.elements})"

    def add_element(self, image_id: int, point2D_idx: int) -> None:
        self.elements.append(TrackElement(image_id, point2D_idx))

    def add_elements(self, elements: Iterable[tuple[int, int]]) -> None:
        self.elements.extend(TrackElement(*el) for el in elements)

    def delete_element(self, image_id: int, point2D_idx: int) -> None:
        el = TrackElement(image_id, point2D_idx)
        if el not in self.elements:
            raise NotFoundError(f"Track has no element {el}")
        self.elements.remove(el)

    def copy(self) -> "Track":
        return Track(self.elements)


@dataclass
class Point3D:
    xyz: NDArrayFloat
    color: NDArray[np.uint8] = field(default_factory=lambda: np.zeros(3, dtype=np.uint8))
    # mean reprojection error, -1 if unknown
    error: float = -1.0
    track: Track = field(default_factory=Track)

    def __post_init__(self):
        self.xyz = np.asarray(self.xyz, dtype=float).reshape(3)
        self.color = np.asarray(self.color, dtype=np.uint8).reshape(3)


@dataclass
class ImagePairStat:
    # triangulated correspondences between the two images
    num_tri_corrs: int = 0
    # all correspondences between the two images
    num_total_corrs: int = 0


@dataclass
class Image:
    """A posed image and its 2D observation slots."""

    image_id: int
    name: str
    camera_id: int
    cam_from_world: Rigid3d = field(default_factory=Rigid3d)
    points2D: list[Point2D] = field(default_factory=list)
    registered: bool = False
    # Number of 2D points with at least one correspondence and total correspondences,
    # filled in from the database
    num_observations: int = 0
    num_correspondences: int = 0

    def __post_init__(self):
        self.points2D = [p if isinstance(p, Point2D) else Point2D(p) for p in self.points2D]
        self.num_points3D = sum(p.has_point3D for p in self.points2D)
        self.num_correspondences_have_point3D = np.zeros(len(self.points2D), dtype=np.int64)

    @classmethod
    def from_keypoints(cls, image_id: int, name: str, camera_id: int, xys: NDArray[Any], **kwargs) -> "Image":
        return cls(image_id, name, camera_id, points2D=[Point2D(xy) for xy in np.asarray(xys, dtype=float)], **kwargs)

    @property
    def num_points2D(self) -> int:
        return len(self.points2D)

    @property
    def num_visible_points3D(self) -> int:
        """Number of 2D points with at least one triangulated correspondence."""
        return int(np.count_nonzero(self.num_correspondences_have_point3D))

    def set_points2D(self, points2D: Iterable[Any]) -> None:
        self.points2D = [Point2D(p.xy) if isinstance(p, Point2D) else Point2D(p) for p in points2D]
        self.num_points3D = 0
        self.num_correspondences_have_point3D = np.zeros(len(self.points2D), dtype=np.int64)

    def point2D(self, point2D_idx: int) -> Point2D:
        if not 0 <= point2D_idx < len(self.points2D):
            raise NotFoundError(f"Image {self.image_id} has no 2D point {point2D_idx}")
        return self.points2D[point2D_idx]

    def set_point3D_for_point2D(self, point2D_idx: int, point3D_id: int) -> None:
        point2D = self.point2D(point2D_idx)
        if not point2D.has_point3D:
            self.num_points3D += 1
        point2D.point3D_id = point3D_id

    def reset_point3D_for_point2D(self, point2D_idx: int) -> None:
        point2D = self.point2D(point2D_idx)
        if point2D.has_point3D:
            point2D.point3D_id = INVALID_POINT3D_ID
            self.num_points3D -= 1

    def has_point3D(self, point3D_id: int) -> bool:
        return any(p.point3D_id == point3D_id for p in self.points2D)

    def increment_correspondence_has_point3D(self, point2D_idx: int) -> None:
        self.num_correspondences_have_point3D[point2D_idx] += 1

    def decrement_correspondence_has_point3D(self, point2D_idx: int) -> None:
        self.num_correspondences_have_point3D[point2D_idx] -= 1

    def reset_correspondence_counts(self) -> None:
        self.num_correspondences_have_point3D = np.zeros(len(self.points2D), dtype=np.int64)

    def projection_center(self) -> NDArrayFloat:
        # Camera center in world coordinates: Xc=0 --> Xw = -R^T t
        return -self.cam_from_world.rotation.T @ self.cam_from_world.translation

    def viewing_direction(self) -> NDArrayFloat:
        return self.cam_from_world.rotation[2, :]

    def iter_triangulated(self) -> Iterator[tuple[int, Point2D]]:
        """Yield (point2D_idx, point2D) for every triangulated slot."""
        yield from ((idx, p) for idx, p in enumerate(self.points2D) if p.has_point3D)
