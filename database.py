"""Image pair identifiers and the read-only collaborators consumed by `Reconstruction.load`."""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

from errors import InvalidArgumentError, NotFoundError
from scene import Camera, Image, TrackElement

logger = logging.getLogger(__name__)

NDArrayInt = NDArray[np.integer[Any]]

# Bit compatible with the pair ids persisted by the feature database
MAX_NUM_IMAGES = 2147483647


def image_pair_to_pair_id(image_id1: int, image_id2: int) -> int:
    """Order independent identifier of an image pair."""
    if image_id1 > image_id2:
        image_id1, image_id2 = image_id2, image_id1
    return MAX_NUM_IMAGES * image_id1 + image_id2


def pair_id_to_image_pair(pair_id: int) -> tuple[int, int]:
    image_id2 = pair_id % MAX_NUM_IMAGES
    image_id1 = (pair_id - image_id2) // MAX_NUM_IMAGES
    return image_id1, image_id2


class CorrespondenceGraph:
    """Which 2D points across images are believed to depict the same 3D point."""

    def __init__(self):
        self._num_points2D: dict[int, int] = {}
        # (image_id, point2D_idx) -> corresponding observations in other images
        self._corrs: dict[TrackElement, list[TrackElement]] = {}
        self._pair_num_corrs: dict[int, int] = {}

    def add_image(self, image_id: int, num_points2D: int) -> None:
        if image_id in self._num_points2D:
            raise InvalidArgumentError(f"Image {image_id} already in correspondence graph")
        self._num_points2D[image_id] = num_points2D

    def exists_image(self, image_id: int) -> bool:
        return image_id in self._num_points2D

    def add_correspondences(self, image_id1: int, image_id2: int, matches: NDArrayInt) -> None:
        """Add symmetric correspondences given as (N, 2) point2D index pairs."""
        if image_id1 == image_id2:
            raise InvalidArgumentError(f"Cannot add correspondences of image {image_id1} with itself")
        for image_id in (image_id1, image_id2):
            if image_id not in self._num_points2D:
                raise NotFoundError(f"Image {image_id} not in correspondence graph")

        matches = np.asarray(matches, dtype=np.int64).reshape(-1, 2)
        if len(matches) and (
            matches.min() < 0
            or matches[:, 0].max() >= self._num_points2D[image_id1]
            or matches[:, 1].max() >= self._num_points2D[image_id2]
        ):
            raise InvalidArgumentError(f"Correspondence index out of range for images {image_id1}, {image_id2}")

        for point2D_idx1, point2D_idx2 in matches:
            el1 = TrackElement(image_id1, int(point2D_idx1))
            el2 = TrackElement(image_id2, int(point2D_idx2))
            self._corrs.setdefault(el1, []).append(el2)
            self._corrs.setdefault(el2, []).append(el1)

        pair_id = image_pair_to_pair_id(image_id1, image_id2)
        self._pair_num_corrs[pair_id] = self._pair_num_corrs.get(pair_id, 0) + len(matches)
        logger.debug("Added %d correspondences between images %d and %d", len(matches), image_id1, image_id2)

    def find_correspondences(self, image_id: int, point2D_idx: int) -> list[TrackElement]:
        return list(self._corrs.get(TrackElement(image_id, point2D_idx), ()))

    def has_correspondences(self, image_id: int, point2D_idx: int) -> bool:
        return bool(self._corrs.get(TrackElement(image_id, point2D_idx)))

    def num_observations_for_image(self, image_id: int) -> int:
        """Number of 2D points of the image with at least one correspondence."""
        return sum(1 for el, corrs in self._corrs.items() if el.image_id == image_id and corrs)

    def num_correspondences_for_image(self, image_id: int) -> int:
        return sum(len(corrs) for el, corrs in self._corrs.items() if el.image_id == image_id)

    def num_correspondences_between_images(self) -> dict[int, int]:
        return dict(self._pair_num_corrs)


@dataclass
class DatabaseCache:
    """In-memory snapshot of cameras, images and matches used to populate a reconstruction."""

    cameras: dict[int, Camera] = field(default_factory=dict)
    images: dict[int, Image] = field(default_factory=dict)
    correspondence_graph: CorrespondenceGraph = field(default_factory=CorrespondenceGraph)

    @classmethod
    def from_matches(
        cls,
        cameras: list[Camera],
        images: list[Image],
        matches: dict[tuple[int, int], NDArrayInt],
    ) -> "DatabaseCache":
        """Build the cache and its correspondence graph from pairwise matches.

        `matches[(i, j)]` holds (N, 2) arrays of point2D indices into image i and image j.
        """
        cache = cls({c.camera_id: copy.deepcopy(c) for c in cameras}, {i.image_id: copy.deepcopy(i) for i in images})
        graph = cache.correspondence_graph
        for image in cache.images.values():
            graph.add_image(image.image_id, image.num_points2D)
        for (image_id1, image_id2), pair_matches in matches.items():
            graph.add_correspondences(image_id1, image_id2, pair_matches)
        for image in cache.images.values():
            image.num_observations = graph.num_observations_for_image(image.image_id)
            image.num_correspondences = graph.num_correspondences_for_image(image.image_id)
        return cache

    @property
    def num_cameras(self) -> int:
        return len(self.cameras)

    @property
    def num_images(self) -> int:
        return len(self.images)

    def find_image_with_name(self, name: str) -> Image | None:
        return next((image for image in self.images.values() if image.name == name), None)
