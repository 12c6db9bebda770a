import copy
import dataclasses
import logging
from pathlib import Path
from typing import Iterable

import numpy as np
import pandas as pd

from database import CorrespondenceGraph, DatabaseCache, image_pair_to_pair_id
from errors import (
    DuplicateIdError,
    InvalidArgumentError,
    InvalidStateError,
    InvalidTrackError,
    NotFoundError,
)
from geometry import NDArrayFloat, Sim3d, calculate_triangulation_angle, has_point_positive_depth
from recon_io import ReconIO
from scene import Camera, Image, ImagePairStat, Point2D, Point3D, Track, TrackElement

logger = logging.getLogger(__name__)

BBox = tuple[NDArrayFloat, NDArrayFloat]


def _lookup(store: dict, key: int, kind: str):
    try:
        return store[key]
    except KeyError:
        raise NotFoundError(f"{kind} {key} does not exist") from None


def _check_percentiles(p0: float, p1: float) -> None:
    if not 0.0 <= p0 < p1 <= 1.0:
        raise InvalidArgumentError(f"Percentiles must satisfy 0 <= p0 < p1 <= 1, got p0={p0}, p1={p1}")


class Reconstruction:
    """A single reconstructed model: cameras, posed images and triangulated 3D points.

    Entities are owned by identifier-keyed stores. Entities may be edited in place,
    but the stores themselves must only be changed through the methods below, which
    keep 3D point tracks, triangulated 2D points, the registration index and the
    image pair statistics consistent with each other.
    """

    def __init__(self):
        self.cameras: dict[int, Camera] = {}
        self.images: dict[int, Image] = {}
        self.points3D: dict[int, Point3D] = {}
        self.image_pair_stats: dict[int, ImagePairStat] = {}
        # image ids with `registered == True`, in order of registration
        self._reg_image_ids: list[int] = []
        # not owned, shared between `set_up` and `tear_down`
        self._correspondence_graph: CorrespondenceGraph | None = None
        # largest point id handed out so far
        self._max_point3D_id = 0

    def __repr__(self) -> str:
        return (
            f"Reconstruction(num_cameras={self.num_cameras()}, num_images={self.num_images()}, "
            f"num_reg_images={self.num_reg_images()}, num_points3D={self.num_points3D()})"
        )

    # -- Stores ---------------------------------------------------------------

    def num_cameras(self) -> int:
        return len(self.cameras)

    def num_images(self) -> int:
        return len(self.images)

    def num_reg_images(self) -> int:
        return len(self._reg_image_ids)

    def num_points3D(self) -> int:
        return len(self.points3D)

    def num_image_pairs(self) -> int:
        return len(self.image_pair_stats)

    def camera(self, camera_id: int) -> Camera:
        return _lookup(self.cameras, camera_id, "Camera")

    def image(self, image_id: int) -> Image:
        return _lookup(self.images, image_id, "Image")

    def point3D(self, point3D_id: int) -> Point3D:
        return _lookup(self.points3D, point3D_id, "Point3D")

    def image_pair(self, pair_id: int) -> ImagePairStat:
        return _lookup(self.image_pair_stats, pair_id, "Image pair")

    def image_pair_between(self, image_id1: int, image_id2: int) -> ImagePairStat:
        return self.image_pair(image_pair_to_pair_id(image_id1, image_id2))

    def reg_image_ids(self) -> list[int]:
        return list(self._reg_image_ids)

    def point3D_ids(self) -> set[int]:
        return set(self.points3D)

    def exists_camera(self, camera_id: int) -> bool:
        return camera_id in self.cameras

    def exists_image(self, image_id: int) -> bool:
        return image_id in self.images

    def exists_point3D(self, point3D_id: int) -> bool:
        return point3D_id in self.points3D

    def exists_image_pair(self, pair_id: int) -> bool:
        return pair_id in self.image_pair_stats

    def is_image_registered(self, image_id: int) -> bool:
        return self.image(image_id).registered

    @property
    def is_set_up(self) -> bool:
        return self._correspondence_graph is not None

    # -- Lifecycle ------------------------------------------------------------

    def load(self, database_cache: DatabaseCache) -> None:
        """Populate cameras, images and image pair totals from a database cache.

        Cameras, images and image pair entries that already exist are kept; existing
        images receive the cached 2D points if they have none and the cached
        correspondence counts.
        """
        if self.is_set_up:
            raise InvalidStateError("Cannot load into a reconstruction that is set up")

        for image_id, image in database_cache.images.items():
            existing = self.images.get(image_id)
            if existing is None:
                continue
            if existing.name != image.name:
                raise InvalidArgumentError(f"Image {image_id} is named {existing.name!r}, database has {image.name!r}")
            if existing.num_points2D and existing.num_points2D != image.num_points2D:
                raise InvalidArgumentError(
                    f"Image {image_id} has {existing.num_points2D} 2D points, database has {image.num_points2D}"
                )

        for camera_id, camera in database_cache.cameras.items():
            if camera_id not in self.cameras:
                self.cameras[camera_id] = copy.deepcopy(camera)

        for image_id, image in database_cache.images.items():
            existing = self.images.get(image_id)
            if existing is None:
                new_image = copy.deepcopy(image)
                new_image.set_points2D(image.points2D)
                self.add_image(new_image)
                continue
            if existing.num_points2D == 0:
                existing.set_points2D(image.points2D)
            existing.num_observations = image.num_observations
            existing.num_correspondences = image.num_correspondences

        pair_num_corrs = database_cache.correspondence_graph.num_correspondences_between_images()
        for pair_id, num_corrs in pair_num_corrs.items():
            if pair_id not in self.image_pair_stats:
                self.image_pair_stats[pair_id] = ImagePairStat(num_total_corrs=num_corrs)

        logger.info(
            "Loaded %d cameras, %d images and %d image pairs",
            database_cache.num_cameras,
            database_cache.num_images,
            len(pair_num_corrs),
        )

    def set_up(self, correspondence_graph: CorrespondenceGraph) -> None:
        """Attach the correspondence graph used to propagate triangulations.

        The graph is not copied and must stay unchanged until `tear_down`.
        """
        if correspondence_graph is None:
            raise InvalidArgumentError("Correspondence graph must not be None")
        if self.is_set_up:
            raise InvalidStateError("Reconstruction is already set up, call tear_down first")
        for image in self.images.values():
            if image.camera_id not in self.cameras:
                raise NotFoundError(f"Camera {image.camera_id} of image {image.image_id} does not exist")

        self._correspondence_graph = correspondence_graph
        # existing triangulations, e.g. of a model read from disk
        self._recompute_image_pair_stats()
        logger.info("Set up reconstruction with %d registered images", self.num_reg_images())

    def tear_down(self) -> None:
        """Detach the correspondence graph and drop unregistered images and unused cameras."""
        unregistered = [image for image in self.images.values() if not image.registered]
        for image in unregistered:
            self._delete_image_observations(image.image_id)
        self._correspondence_graph = None

        for image in unregistered:
            del self.images[image.image_id]
        keep_camera_ids = {image.camera_id for image in self.images.values()}
        unused_camera_ids = [camera_id for camera_id in self.cameras if camera_id not in keep_camera_ids]
        for camera_id in unused_camera_ids:
            del self.cameras[camera_id]

        self._recompute_image_pair_stats()
        logger.info("Tore down reconstruction: removed %d images and %d cameras", len(unregistered), len(unused_camera_ids))

    def replace_with(self, other: "Reconstruction") -> None:
        """Take over all entities of `other`, keeping the attached correspondence graph."""
        self.cameras = other.cameras
        self.images = other.images
        self.points3D = other.points3D
        self.image_pair_stats = other.image_pair_stats
        self._reg_image_ids = other._reg_image_ids
        self._max_point3D_id = other._max_point3D_id
        self._recompute_image_pair_stats()

    # -- Consistency ----------------------------------------------------------

    def add_camera(self, camera: Camera) -> None:
        if camera.camera_id in self.cameras:
            raise DuplicateIdError(f"Camera {camera.camera_id} already exists")
        self.cameras[camera.camera_id] = camera

    def add_image(self, image: Image) -> None:
        """Add an image whose 2D points are not triangulated yet."""
        if image.image_id in self.images:
            raise DuplicateIdError(f"Image {image.image_id} already exists")
        if image.num_points3D:
            raise InvalidArgumentError(f"Image {image.image_id} must be added without triangulated 2D points")
        self.images[image.image_id] = image
        if image.registered:
            self._reg_image_ids.append(image.image_id)

    def add_point3D(self, xyz: NDArrayFloat, track: Track | Iterable[tuple[int, int]], color=None) -> int:
        """Add a new 3D point and return its identifier."""
        track = Track(track)
        self._check_track(track)
        point3D_id = self._max_point3D_id + 1
        point3D = Point3D(xyz, track=track)
        if color is not None:
            point3D.color = np.asarray(color, dtype=np.uint8).reshape(3)
        self._insert_point3D(point3D_id, point3D)
        return point3D_id

    def add_point3D_with_id(self, point3D_id: int, point3D: Point3D) -> None:
        if point3D_id < 0:
            raise InvalidArgumentError(f"Invalid point3D id {point3D_id}")
        if point3D_id in self.points3D:
            raise DuplicateIdError(f"Point3D {point3D_id} already exists")
        point3D = copy.deepcopy(point3D)
        self._check_track(point3D.track)
        self._insert_point3D(point3D_id, point3D)

    def add_observation(self, point3D_id: int, track_el: tuple[int, int]) -> None:
        """Extend the track of an existing 3D point by one observation."""
        point3D = self.point3D(point3D_id)
        track_el = TrackElement(*track_el)
        self._check_track(Track([track_el]))

        self.images[track_el.image_id].set_point3D_for_point2D(track_el.point2D_idx, point3D_id)
        point3D.track.add_element(*track_el)
        self._update_tri_observation(track_el, point3D.track, +1, single_observation=True)

    def merge_points3D(self, point3D_id1: int, point3D_id2: int) -> int:
        """Merge two 3D points and return the identifier of the merged point.

        The merged position and color are averages weighted by track length.
        """
        if point3D_id1 == point3D_id2:
            raise InvalidArgumentError(f"Cannot merge point {point3D_id1} with itself")
        point3D1 = self.point3D(point3D_id1)
        point3D2 = self.point3D(point3D_id2)

        weight1, weight2 = point3D1.track.length, point3D2.track.length
        if weight1 + weight2 == 0:
            weight1 = weight2 = 1
        merged_xyz = (weight1 * point3D1.xyz + weight2 * point3D2.xyz) / (weight1 + weight2)
        merged_color = (weight1 * point3D1.color.astype(float) + weight2 * point3D2.color.astype(float)) / (
            weight1 + weight2
        )
        # first occurrence wins
        merged_track = Track(dict.fromkeys([*point3D1.track, *point3D2.track]))

        self.delete_point3D(point3D_id1)
        self.delete_point3D(point3D_id2)
        return self.add_point3D(merged_xyz, merged_track, merged_color.astype(np.uint8))

    def delete_point3D(self, point3D_id: int) -> None:
        """Delete a 3D point and untriangulate all of its observations."""
        point3D = self.point3D(point3D_id)
        # statistics first, they compare the point ids of corresponding observations
        for track_el in point3D.track:
            self._update_tri_observation(track_el, point3D.track, -1, single_observation=False)
        for track_el in point3D.track:
            self.images[track_el.image_id].reset_point3D_for_point2D(track_el.point2D_idx)
        del self.points3D[point3D_id]

    def delete_observation(self, image_id: int, point2D_idx: int) -> None:
        """Delete one observation of a 3D point.

        The whole point is deleted if its track has two elements or fewer.
        """
        image = self.image(image_id)
        point2D = image.point2D(point2D_idx)
        if not point2D.has_point3D:
            raise NotFoundError(f"2D point {point2D_idx} of image {image_id} is not triangulated")
        point3D = self.points3D[point2D.point3D_id]

        if point3D.track.length <= 2:
            self.delete_point3D(point2D.point3D_id)
            return

        track_el = TrackElement(image_id, point2D_idx)
        self._update_tri_observation(track_el, point3D.track, -1, single_observation=True)
        point3D.track.delete_element(*track_el)
        image.reset_point3D_for_point2D(point2D_idx)

    def delete_all_points2D_and_points3D(self) -> None:
        self.points3D.clear()
        for image in self.images.values():
            image.set_points2D([])
        self.image_pair_stats.clear()

    def register_image(self, image_id: int) -> None:
        image = self.image(image_id)
        if not image.registered:
            image.registered = True
            self._reg_image_ids.append(image_id)

    def deregister_image(self, image_id: int) -> None:
        """Remove the image from the registration index; its observations are kept."""
        image = self.image(image_id)
        if image.registered:
            image.registered = False
            self._reg_image_ids.remove(image_id)

    def _check_track(self, track: Track) -> None:
        seen = set()
        for track_el in track:
            image = self.image(track_el.image_id)
            if not 0 <= track_el.point2D_idx < image.num_points2D:
                raise InvalidTrackError(f"Image {track_el.image_id} has no 2D point {track_el.point2D_idx}")
            if track_el in seen:
                raise InvalidTrackError(f"Track contains {track_el} more than once")
            point2D = image.points2D[track_el.point2D_idx]
            if point2D.has_point3D:
                raise InvalidTrackError(f"{track_el} is already triangulated as point {point2D.point3D_id}")
            seen.add(track_el)

    def _insert_point3D(self, point3D_id: int, point3D: Point3D) -> None:
        self.points3D[point3D_id] = point3D
        self._max_point3D_id = max(self._max_point3D_id, point3D_id)
        for track_el in point3D.track:
            self.images[track_el.image_id].set_point3D_for_point2D(track_el.point2D_idx, point3D_id)
        for track_el in point3D.track:
            self._update_tri_observation(track_el, point3D.track, +1, single_observation=False)

    def _update_tri_observation(self, track_el: TrackElement, track: Track, delta: int, single_observation: bool) -> None:
        """Propagate a triangulation change (+1 / -1) of one observation.

        Co-observations come from the correspondence graph if one is attached (a
        correspondence counts when it is bound to the same 3D point), otherwise from
        the other elements of the point's track. With `single_observation` the
        observation is counted against every co-observation, otherwise only against
        images with a larger id, so a whole track counts each pair exactly once.
        """
        image_id, point2D_idx = track_el
        point3D_id = self.images[image_id].points2D[point2D_idx].point3D_id

        if self._correspondence_graph is not None:
            co_image_ids = []
            for corr in self._correspondence_graph.find_correspondences(image_id, point2D_idx):
                corr_image = self.images.get(corr.image_id)
                if corr_image is None or corr.point2D_idx >= corr_image.num_points2D:
                    continue
                if delta > 0:
                    corr_image.increment_correspondence_has_point3D(corr.point2D_idx)
                else:
                    corr_image.decrement_correspondence_has_point3D(corr.point2D_idx)
                if corr_image.points2D[corr.point2D_idx].point3D_id == point3D_id:
                    co_image_ids.append(corr.image_id)
        else:
            co_image_ids = [el.image_id for el in track]

        for co_image_id in co_image_ids:
            if co_image_id == image_id:
                continue
            if single_observation or image_id < co_image_id:
                pair_id = image_pair_to_pair_id(image_id, co_image_id)
                self.image_pair_stats.setdefault(pair_id, ImagePairStat()).num_tri_corrs += delta

    def _recompute_image_pair_stats(self) -> None:
        for stat in self.image_pair_stats.values():
            stat.num_tri_corrs = 0
        for image in self.images.values():
            image.reset_correspondence_counts()
        for point3D in self.points3D.values():
            for track_el in point3D.track:
                self._update_tri_observation(track_el, point3D.track, +1, single_observation=False)

    def _delete_image_observations(self, image_id: int) -> None:
        image = self.images[image_id]
        for point2D_idx in range(image.num_points2D):
            # deleting a two-element track also clears the other observation
            if image.points2D[point2D_idx].has_point3D:
                self.delete_observation(image_id, point2D_idx)

    # -- Filtering ------------------------------------------------------------

    def filter_points3D_with_large_reprojection_error(self, max_reproj_error: float, point3D_ids: Iterable[int]) -> int:
        """Delete points whose stored mean reprojection error exceeds the threshold.

        Returns the number of removed observations.
        """
        num_filtered = 0
        for point3D_id in list(point3D_ids):
            point3D = self.points3D.get(point3D_id)
            if point3D is not None and point3D.error > max_reproj_error:
                num_filtered += point3D.track.length
                self.delete_point3D(point3D_id)
        return num_filtered

    def filter_points3D_with_small_triangulation_angle(self, min_tri_angle: float, point3D_ids: Iterable[int]) -> int:
        """Delete points whose largest triangulation angle (degrees) is below the threshold.

        Returns the number of removed observations.
        """
        min_tri_angle_rad = np.deg2rad(min_tri_angle)
        proj_centers: dict[int, NDArrayFloat] = {}

        def proj_center(image_id: int) -> NDArrayFloat:
            if image_id not in proj_centers:
                proj_centers[image_id] = self.images[image_id].projection_center()
            return proj_centers[image_id]

        num_filtered = 0
        for point3D_id in list(point3D_ids):
            point3D = self.points3D.get(point3D_id)
            if point3D is None:
                continue
            image_ids = [el.image_id for el in point3D.track]
            keep_point = any(
                calculate_triangulation_angle(proj_center(image_ids[i1]), proj_center(image_ids[i2]), point3D.xyz)
                >= min_tri_angle_rad
                for i1 in range(len(image_ids))
                for i2 in range(i1)
            )
            if not keep_point:
                num_filtered += point3D.track.length
                self.delete_point3D(point3D_id)
        return num_filtered

    def filter_points3D(self, max_reproj_error: float, min_tri_angle: float, point3D_ids: Iterable[int]) -> int:
        point3D_ids = list(point3D_ids)
        num_filtered = self.filter_points3D_with_large_reprojection_error(max_reproj_error, point3D_ids)
        num_filtered += self.filter_points3D_with_small_triangulation_angle(min_tri_angle, point3D_ids)
        return num_filtered

    def filter_points3D_in_images(self, max_reproj_error: float, min_tri_angle: float, image_ids: Iterable[int]) -> int:
        point3D_ids = {
            point2D.point3D_id for image_id in image_ids for _, point2D in self.image(image_id).iter_triangulated()
        }
        return self.filter_points3D(max_reproj_error, min_tri_angle, point3D_ids)

    def filter_all_points3D(self, max_reproj_error: float, min_tri_angle: float) -> int:
        num_filtered = self.filter_points3D(max_reproj_error, min_tri_angle, self.point3D_ids())
        logger.info("Filtered %d observations of 3D points", num_filtered)
        return num_filtered

    def filter_observations_with_negative_depth(self) -> int:
        """Delete observations of 3D points behind the observing camera."""
        num_filtered = 0
        for image_id in list(self._reg_image_ids):
            image = self.images[image_id]
            for point2D_idx in range(image.num_points2D):
                point2D = image.points2D[point2D_idx]
                if not point2D.has_point3D:
                    continue
                if not has_point_positive_depth(image.cam_from_world, self.points3D[point2D.point3D_id].xyz):
                    self.delete_observation(image_id, point2D_idx)
                    num_filtered += 1
        logger.info("Filtered %d observations with negative depth", num_filtered)
        return num_filtered

    def filter_images(
        self, min_focal_length_ratio: float, max_focal_length_ratio: float, max_extra_param: float
    ) -> list[int]:
        """Deregister images without 3D points or with bogus camera parameters.

        Their observations are deleted; the image records stay until `tear_down`.
        """
        filtered_image_ids = []
        for image_id in self._reg_image_ids:
            image = self.images[image_id]
            camera = self.camera(image.camera_id)
            if image.num_points3D == 0 or camera.has_bogus_params(
                min_focal_length_ratio, max_focal_length_ratio, max_extra_param
            ):
                filtered_image_ids.append(image_id)

        for image_id in filtered_image_ids:
            self._delete_image_observations(image_id)
            self.deregister_image(image_id)
        logger.info("Filtered %d images", len(filtered_image_ids))
        return filtered_image_ids

    # -- Geometry -------------------------------------------------------------

    def compute_bounds_and_centroid(
        self, p0: float, p1: float, use_images: bool
    ) -> tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat]:
        """Robust bounding box and centroid of camera centers or 3D points.

        Each axis is sorted independently and cut to the [p0, p1] percentile range.
        The centroid is the mean of the values inside that range.
        """
        _check_percentiles(p0, p1)
        if use_images:
            coords = [self.images[image_id].projection_center() for image_id in self._reg_image_ids]
        else:
            coords = [point3D.xyz for point3D in self.points3D.values()]
        if not coords:
            return np.zeros(3), np.zeros(3), np.zeros(3)

        coords = np.sort(np.asarray(coords, dtype=float), axis=0)
        num_coords = len(coords)
        if num_coords > 3:
            idx0, idx1 = int(p0 * (num_coords - 1)), int(p1 * (num_coords - 1))
        else:
            idx0, idx1 = 0, num_coords - 1
        return coords[idx0].copy(), coords[idx1].copy(), coords[idx0 : idx1 + 1].mean(axis=0)

    def compute_centroid(self, p0: float = 0.1, p1: float = 0.9) -> NDArrayFloat:
        return self.compute_bounds_and_centroid(p0, p1, use_images=False)[2]

    def compute_bounding_box(self, p0: float = 0.0, p1: float = 1.0) -> BBox:
        bbox_min, bbox_max, _ = self.compute_bounds_and_centroid(p0, p1, use_images=False)
        return bbox_min, bbox_max

    def normalize(self, extent: float = 10.0, p0: float = 0.1, p1: float = 0.9, use_images: bool = True) -> Sim3d:
        """Translate the robust centroid to the origin and scale the robust bounding box diagonal to `extent`.

        Returns the applied transform.
        """
        if extent <= 0:
            raise InvalidArgumentError(f"Extent must be positive, got {extent}")
        _check_percentiles(p0, p1)
        num_samples = self.num_reg_images() if use_images else self.num_points3D()
        if num_samples < 2:
            return Sim3d()

        bbox_min, bbox_max, centroid = self.compute_bounds_and_centroid(p0, p1, use_images)
        old_extent = float(np.linalg.norm(bbox_max - bbox_min))
        scale = 1.0 if old_extent < np.finfo(float).eps else extent / old_extent

        # translation is applied before scaling
        new_from_old_world = Sim3d(scale, np.eye(3), -scale * centroid)
        self.transform(new_from_old_world)
        logger.info("Normalized reconstruction with scale %.6g", scale)
        return new_from_old_world

    def transform(self, new_from_old_world: Sim3d) -> None:
        for image in self.images.values():
            image.cam_from_world = new_from_old_world.transform_camera_world(image.cam_from_world)
        for point3D in self.points3D.values():
            point3D.xyz = new_from_old_world.transform(point3D.xyz)

    def crop(self, bbox: BBox) -> "Reconstruction":
        """New reconstruction with the 3D points inside `bbox` and the images and cameras observing them.

        Images stay registered if they are registered here. Image pair statistics of
        the result are counted from the retained tracks.
        """
        bbox_min, bbox_max = (np.asarray(corner, dtype=float).reshape(3) for corner in bbox)
        if np.any(bbox_min > bbox_max):
            raise InvalidArgumentError(f"Invalid bounding box: min {bbox_min} exceeds max {bbox_max}")

        points_inside = {
            point3D_id: point3D
            for point3D_id, point3D in self.points3D.items()
            if np.all(point3D.xyz >= bbox_min) and np.all(point3D.xyz <= bbox_max)
        }
        image_ids = sorted({el.image_id for point3D in points_inside.values() for el in point3D.track})

        cropped = Reconstruction()
        for camera_id in sorted({self.images[image_id].camera_id for image_id in image_ids}):
            if camera_id in self.cameras:
                cropped.add_camera(copy.deepcopy(self.cameras[camera_id]))
        for image_id in image_ids:
            image = self.images[image_id]
            cropped.add_image(
                dataclasses.replace(
                    image,
                    cam_from_world=copy.deepcopy(image.cam_from_world),
                    points2D=[Point2D(point2D.xy.copy()) for point2D in image.points2D],
                    registered=False,
                )
            )
        for point3D_id, point3D in points_inside.items():
            cropped.add_point3D_with_id(point3D_id, point3D)
        for image_id in self._reg_image_ids:
            if image_id in cropped.images:
                cropped.register_image(image_id)

        logger.info("Cropped %d of %d 3D points", cropped.num_points3D(), self.num_points3D())
        return cropped

    # -- Statistics and queries -----------------------------------------------

    def compute_num_observations(self) -> int:
        return sum(self.images[image_id].num_points3D for image_id in self._reg_image_ids)

    def compute_mean_track_length(self) -> float:
        if not self.points3D:
            return 0.0
        return sum(point3D.track.length for point3D in self.points3D.values()) / len(self.points3D)

    def compute_mean_observations_per_reg_image(self) -> float:
        if not self._reg_image_ids:
            return 0.0
        return self.compute_num_observations() / len(self._reg_image_ids)

    def compute_mean_reprojection_error(self) -> float:
        errors = [point3D.error for point3D in self.points3D.values() if point3D.error >= 0]
        return float(np.mean(errors)) if errors else 0.0

    def find_image_with_name(self, name: str) -> Image | None:
        """Linear search, returns None if no image has that name."""
        return next((image for image in self.images.values() if image.name == name), None)

    def find_common_reg_image_ids(self, other: "Reconstruction") -> list[tuple[int, int]]:
        common_image_ids = []
        for image_id in self._reg_image_ids:
            other_image = other.find_image_with_name(self.images[image_id].name)
            if other_image is not None and other_image.registered:
                common_image_ids.append((image_id, other_image.image_id))
        return common_image_ids

    def create_image_dirs(self, path: Path) -> None:
        for image in self.images.values():
            (Path(path) / image.name).parent.mkdir(parents=True, exist_ok=True)

    # -- Persistence and export -----------------------------------------------

    def read(self, path: Path) -> None:
        """Read a model directory, preferring the binary files if present."""
        ReconIO(self).read(path)

    def write(self, path: Path) -> None:
        ReconIO(self).write(path)

    def read_text(self, path: Path) -> None:
        ReconIO(self).read_text(path)

    def read_binary(self, path: Path) -> None:
        ReconIO(self).read_binary(path)

    def write_text(self, path: Path) -> None:
        ReconIO(self).write_text(path)

    def write_binary(self, path: Path) -> None:
        ReconIO(self).write_binary(path)

    def convert_to_ply(self) -> pd.DataFrame:
        return ReconIO(self).convert_to_ply()

    def write_ply(self, path: Path, binary: bool = True) -> None:
        ReconIO(self).write_ply(path, binary=binary)

    def import_ply(self, ply: Path | pd.DataFrame) -> None:
        """Replace all 3D points by the positions and colors of a PLY point cloud, without tracks."""
        ReconIO(self).import_ply(ply)

    def extract_colors_for_image(self, image_id: int, image_dir: Path) -> bool:
        return ReconIO(self).extract_colors_for_image(image_id, image_dir)

    def extract_colors_for_all_images(self, image_dir: Path) -> None:
        ReconIO(self).extract_colors_for_all_images(image_dir)
