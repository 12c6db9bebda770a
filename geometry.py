from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

NDArrayFloat = NDArray[np.floating[Any]]


def qvec2rotmat(qvec) -> NDArrayFloat:
    """Rotation matrix from a unit quaternion (w, x, y, z)."""
    w, x, y, z = qvec
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ],
        dtype=float,
    )


def rotmat2qvec(R: NDArrayFloat) -> NDArrayFloat:
    """Unit quaternion (w, x, y, z) with non-negative w from a rotation matrix."""
    Rxx, Ryx, Rzx, Rxy, Ryy, Rzy, Rxz, Ryz, Rzz = np.asarray(R, dtype=float).flat
    # symmetric matrix whose largest eigenvector is the quaternion (x, y, z, w)
    K = (
        np.array(
            [
                [Rxx - Ryy - Rzz, 0, 0, 0],
                [Ryx + Rxy, Ryy - Rxx - Rzz, 0, 0],
                [Rzx + Rxz, Rzy + Ryz, Rzz - Rxx - Ryy, 0],
                [Ryz - Rzy, Rzx - Rxz, Rxy - Ryx, Rxx + Ryy + Rzz],
            ]
        )
        / 3.0
    )
    eigvals, eigvecs = np.linalg.eigh(K)
    qvec = eigvecs[[3, 0, 1, 2], np.argmax(eigvals)]
    if qvec[0] < 0:
        qvec *= -1
    return qvec


@dataclass
class Rigid3d:
    """Rigid transform x' = R x + t, used for cam_from_world poses."""

    rotation: NDArrayFloat = field(default_factory=lambda: np.eye(3))
    translation: NDArrayFloat = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=float).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=float).reshape(3)

    @classmethod
    def from_qvec(cls, qvec, tvec) -> "Rigid3d":
        return cls(qvec2rotmat(np.asarray(qvec, dtype=float)), tvec)

    @property
    def qvec(self) -> NDArrayFloat:
        return rotmat2qvec(self.rotation)

    def matrix(self) -> NDArrayFloat:
        return np.hstack((self.rotation, self.translation[:, None]))

    def transform(self, xyz: NDArrayFloat) -> NDArrayFloat:
        """Apply to a single point (3,) or to an array of points (N, 3)."""
        return np.asarray(xyz, dtype=float) @ self.rotation.T + self.translation

    def inverse(self) -> "Rigid3d":
        R_inv = self.rotation.T
        return Rigid3d(R_inv, -R_inv @ self.translation)


@dataclass
class Sim3d:
    """Similarity transform x' = s R x + t between two world frames."""

    scale: float = 1.0
    rotation: NDArrayFloat = field(default_factory=lambda: np.eye(3))
    translation: NDArrayFloat = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.scale = float(self.scale)
        self.rotation = np.asarray(self.rotation, dtype=float).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=float).reshape(3)

    def matrix(self) -> NDArrayFloat:
        return np.hstack((self.scale * self.rotation, self.translation[:, None]))

    def transform(self, xyz: NDArrayFloat) -> NDArrayFloat:
        return self.scale * (np.asarray(xyz, dtype=float) @ self.rotation.T) + self.translation

    def inverse(self) -> "Sim3d":
        R_inv = self.rotation.T
        return Sim3d(1.0 / self.scale, R_inv, -R_inv @ self.translation / self.scale)

    def transform_camera_world(self, cam_from_world: Rigid3d) -> Rigid3d:
        """Express a camera pose of the old world frame in the new world frame.

        The camera center moves with the similarity, the orientation composes
        with R^T, and the camera frame is rescaled so the pose stays rigid.
        """
        rotation = cam_from_world.rotation @ self.rotation.T
        translation = self.scale * cam_from_world.translation - rotation @ self.translation
        return Rigid3d(rotation, translation)


def calculate_triangulation_angle(center1: NDArrayFloat, center2: NDArrayFloat, xyz: NDArrayFloat) -> float:
    """Angle in radians between the rays from two camera centers to a point."""
    baseline_sq = float(np.sum((center1 - center2) ** 2))
    ray_sq1 = float(np.sum((xyz - center1) ** 2))
    ray_sq2 = float(np.sum((xyz - center2) ** 2))

    # law of cosines
    denominator = 2.0 * np.sqrt(ray_sq1 * ray_sq2)
    if denominator == 0.0:
        return 0.0
    cos_angle = np.clip((ray_sq1 + ray_sq2 - baseline_sq) / denominator, -1.0, 1.0)
    angle = abs(float(np.arccos(cos_angle)))
    # acute and obtuse rays are equally unstable
    return min(angle, np.pi - angle)


def has_point_positive_depth(cam_from_world: Rigid3d, xyz: NDArrayFloat) -> bool:
    depth = cam_from_world.rotation[2] @ np.asarray(xyz, dtype=float) + cam_from_world.translation[2]
    return bool(depth >= np.finfo(float).eps)
