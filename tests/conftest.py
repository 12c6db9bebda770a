import itertools

import numpy as np
import pytest

from database import DatabaseCache, image_pair_to_pair_id
from geometry import Rigid3d
from reconstruction import Reconstruction
from scene import Camera, Image, TrackElement

# cameras on the x axis looking down +z
CENTERS = {1: [-1.0, 0.0, 0.0], 2: [0.0, 0.0, 0.0], 3: [1.0, 0.0, 0.0]}
NUM_POINTS2D = 6


def make_camera(camera_id: int = 1) -> Camera:
    return Camera(camera_id, "PINHOLE", 640, 480, [500.0, 500.0, 320.0, 240.0])


def make_image(image_id: int, center, camera_id: int = 1, num_points2D: int = NUM_POINTS2D, **kwargs) -> Image:
    xys = np.array([[100.0 + 20 * i, 50.0 + 10 * i] for i in range(num_points2D)])
    pose = Rigid3d(np.eye(3), -np.asarray(center, dtype=float))
    return Image.from_keypoints(image_id, f"images/image{image_id}.png", camera_id, xys, cam_from_world=pose, **kwargs)


def make_reconstruction(register: bool = True) -> Reconstruction:
    recon = Reconstruction()
    recon.add_camera(make_camera(1))
    for image_id, center in CENTERS.items():
        recon.add_image(make_image(image_id, center))
        if register:
            recon.register_image(image_id)
    return recon


@pytest.fixture
def reconstruction() -> Reconstruction:
    """Three registered images sharing one camera, no 3D points."""
    return make_reconstruction()


@pytest.fixture
def triangulated(reconstruction) -> Reconstruction:
    """Points 1 and 2 seen by all images, point 3 seen by images 1 and 2."""
    reconstruction.add_point3D([0.0, 0.0, 5.0], [(1, 0), (2, 0), (3, 0)], color=[10, 20, 30])
    reconstruction.add_point3D([1.0, 1.0, 6.0], [(1, 1), (2, 1), (3, 1)])
    reconstruction.add_point3D([-1.0, 0.5, 4.0], [(1, 2), (2, 2)])
    for point3D in reconstruction.points3D.values():
        point3D.error = 0.5
    return reconstruction


@pytest.fixture
def database_cache() -> DatabaseCache:
    """Same scene as `reconstruction` with every slot i of an image matched to slot i of the others."""
    images = [make_image(image_id, center) for image_id, center in CENTERS.items()]
    identity_matches = np.stack([np.arange(NUM_POINTS2D)] * 2, axis=1)
    matches = {(1, 2): identity_matches, (1, 3): identity_matches, (2, 3): identity_matches}
    return DatabaseCache.from_matches([make_camera(1)], images, matches)


def expected_tri_corrs_from_tracks(recon: Reconstruction) -> dict[int, int]:
    expected = {}
    for point3D in recon.points3D.values():
        for el1, el2 in itertools.combinations(point3D.track, 2):
            if el1.image_id != el2.image_id:
                pair_id = image_pair_to_pair_id(el1.image_id, el2.image_id)
                expected[pair_id] = expected.get(pair_id, 0) + 1
    return expected


def assert_consistent(recon: Reconstruction) -> None:
    """Points, 2D slots, registration index and (track based) pair statistics agree."""
    for point3D_id, point3D in recon.points3D.items():
        assert len(set(point3D.track)) == point3D.track.length
        for el in point3D.track:
            assert recon.images[el.image_id].points2D[el.point2D_idx].point3D_id == point3D_id

    for image in recon.images.values():
        num_triangulated = 0
        for point2D_idx, point2D in image.iter_triangulated():
            assert point2D.point3D_id in recon.points3D
            assert TrackElement(image.image_id, point2D_idx) in recon.points3D[point2D.point3D_id].track
            num_triangulated += 1
        assert image.num_points3D == num_triangulated

    reg_image_ids = recon.reg_image_ids()
    assert len(reg_image_ids) == len(set(reg_image_ids))
    assert set(reg_image_ids) == {image_id for image_id, image in recon.images.items() if image.registered}

    if not recon.is_set_up:
        expected = expected_tri_corrs_from_tracks(recon)
        for pair_id, stat in recon.image_pair_stats.items():
            assert stat.num_tri_corrs == expected.get(pair_id, 0)
        assert set(expected) <= set(recon.image_pair_stats)
