import numpy as np
import pytest

from errors import InvalidArgumentError, NotFoundError
from scene import INVALID_POINT3D_ID, Camera, Image, Point3D, Track, TrackElement, camera_model

from conftest import make_image


def test_camera_model_lookup():
    assert camera_model("pinhole").num_params == 4
    assert camera_model("SIMPLE_RADIAL").extra_params_idxs == (3,)
    with pytest.raises(InvalidArgumentError):
        camera_model("NOT_A_MODEL")


def test_camera_calibration_matrix():
    camera = Camera(1, "SIMPLE_PINHOLE", 100, 80, [90.0, 50.0, 40.0])
    np.testing.assert_allclose(camera.calibration_matrix(), [[90, 0, 50], [0, 90, 40], [0, 0, 1]])
    assert camera.mean_focal_length == 90.0
    assert camera.model_id == 0


@pytest.mark.parametrize(
    "model, params, bogus",
    [
        ("PINHOLE", [500, 500, 320, 240], False),
        ("PINHOLE", [10, 500, 320, 240], True),  # focal ratio below 0.1
        ("PINHOLE", [500, 7000, 320, 240], True),  # focal ratio above 10
        ("SIMPLE_RADIAL", [500, 320, 240, 0.2], False),
        ("SIMPLE_RADIAL", [500, 320, 240, -1.5], True),
        ("PINHOLE", [500, 500, 320], True),  # wrong number of params
    ],
)
def test_camera_has_bogus_params(model, params, bogus):
    camera = Camera(1, model, 640, 480, params)
    assert camera.has_bogus_params(0.1, 10.0, 1.0) is bogus


def test_track_elements():
    track = Track([(1, 0), (2, 3)])
    track.add_element(3, 1)
    track.add_elements([(4, 4)])
    assert track.length == 4
    assert (2, 3) in track
    assert list(track)[0] == TrackElement(1, 0)

    track.delete_element(2, 3)
    assert (2, 3) not in track
    with pytest.raises(NotFoundError):
        track.delete_element(2, 3)


def test_track_copy_is_independent():
    track = Track([(1, 0)])
    copied = track.copy()
    copied.add_element(2, 0)
    assert track.length == 1
    assert copied == Track([(1, 0), (2, 0)])


def test_point3D_defaults():
    point3D = Point3D([1, 2, 3])
    assert point3D.xyz.dtype == float
    assert point3D.color.tolist() == [0, 0, 0]
    assert point3D.error == -1.0
    assert point3D.track.length == 0


def test_image_slot_binding():
    image = make_image(7, [0, 0, 0], num_points2D=3)
    assert image.num_points2D == 3
    assert image.num_points3D == 0

    image.set_point3D_for_point2D(1, 42)
    image.set_point3D_for_point2D(1, 42)
    assert image.num_points3D == 1
    assert image.has_point3D(42)
    assert [idx for idx, _ in image.iter_triangulated()] == [1]

    image.reset_point3D_for_point2D(1)
    image.reset_point3D_for_point2D(1)
    assert image.num_points3D == 0
    assert image.points2D[1].point3D_id == INVALID_POINT3D_ID

    with pytest.raises(NotFoundError):
        image.point2D(3)


def test_image_projection_center_and_viewing_direction():
    image = make_image(1, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(image.projection_center(), [1.0, 2.0, 3.0])
    np.testing.assert_allclose(image.viewing_direction(), [0.0, 0.0, 1.0])


def test_image_visible_points3D_counters():
    image = Image.from_keypoints(1, "a.png", 1, np.zeros((4, 2)))
    image.increment_correspondence_has_point3D(0)
    image.increment_correspondence_has_point3D(0)
    image.increment_correspondence_has_point3D(2)
    assert image.num_visible_points3D == 2
    image.decrement_correspondence_has_point3D(2)
    assert image.num_visible_points3D == 1
    image.reset_correspondence_counts()
    assert image.num_visible_points3D == 0
