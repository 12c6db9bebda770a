import cv2 as cv
import numpy as np
import pandas as pd
import pytest

from errors import NotFoundError, ReconstructionIOError
from recon_io import _interpolate_bilinear, read_ply
from reconstruction import Reconstruction

from conftest import assert_consistent, make_image


def assert_same_model(recon: Reconstruction, other: Reconstruction) -> None:
    assert recon.reg_image_ids() == other.reg_image_ids()
    assert set(recon.cameras) == set(other.cameras)
    for camera_id, camera in recon.cameras.items():
        assert other.cameras[camera_id].model == camera.model
        np.testing.assert_allclose(other.cameras[camera_id].params, camera.params)
    for image_id in recon.reg_image_ids():
        image, other_image = recon.images[image_id], other.images[image_id]
        assert other_image.name == image.name
        assert other_image.camera_id == image.camera_id
        np.testing.assert_allclose(other_image.cam_from_world.rotation, image.cam_from_world.rotation, atol=1e-12)
        np.testing.assert_allclose(other_image.cam_from_world.translation, image.cam_from_world.translation)
        np.testing.assert_allclose([p.xy for p in other_image.points2D], [p.xy for p in image.points2D])
        assert [p.point3D_id for p in other_image.points2D] == [p.point3D_id for p in image.points2D]
    assert recon.point3D_ids() == other.point3D_ids()
    for point3D_id, point3D in recon.points3D.items():
        other_point3D = other.points3D[point3D_id]
        np.testing.assert_allclose(other_point3D.xyz, point3D.xyz)
        assert other_point3D.color.tolist() == point3D.color.tolist()
        assert other_point3D.error == point3D.error
        assert other_point3D.track == point3D.track


@pytest.mark.parametrize("write, read", [("write_text", "read_text"), ("write_binary", "read_binary")])
def test_model_round_trip(triangulated, tmp_path, write, read):
    getattr(triangulated, write)(tmp_path / "model")
    recon = Reconstruction()
    getattr(recon, read)(tmp_path / "model")

    assert_same_model(triangulated, recon)
    assert recon.image_pair_between(1, 2).num_tri_corrs == 3
    assert_consistent(recon)


def test_text_model_layout(triangulated, tmp_path):
    triangulated.write_text(tmp_path)
    lines = (tmp_path / "images.txt").read_text().splitlines()
    assert lines[0].startswith("#")
    data_lines = [line for line in lines if not line.startswith("#")]
    assert len(data_lines) == 2 * triangulated.num_reg_images()
    assert data_lines[0].split()[-1] == "images/image1.png"
    assert (tmp_path / "cameras.txt").read_text().splitlines()[-1] == "1 PINHOLE 640 480 500.0 500.0 320.0 240.0"


def test_image_without_points2D_round_trips(triangulated, tmp_path):
    triangulated.add_image(make_image(4, [2.0, 0.0, 0.0], num_points2D=0, registered=True))
    triangulated.write_text(tmp_path)
    recon = Reconstruction()
    recon.read_text(tmp_path)
    assert recon.images[4].num_points2D == 0
    assert recon.point3D_ids() == {1, 2, 3}


def test_only_registered_images_are_written(triangulated, tmp_path):
    triangulated.deregister_image(3)
    triangulated.write(tmp_path)
    recon = Reconstruction()
    recon.read(tmp_path)

    assert set(recon.images) == {1, 2}
    assert recon.point3D(1).track.length == 2
    assert_consistent(recon)


def test_read_prefers_binary(triangulated, tmp_path):
    triangulated.write_binary(tmp_path)
    Reconstruction().write_text(tmp_path)
    recon = Reconstruction()
    recon.read(tmp_path)
    assert recon.num_points3D() == 3


def test_read_missing_model(tmp_path):
    with pytest.raises(ReconstructionIOError):
        Reconstruction().read(tmp_path)
    with pytest.raises(ReconstructionIOError):
        Reconstruction().read_text(tmp_path / "missing")


def test_read_rejects_invalid_point3D_id(triangulated, tmp_path):
    triangulated.write_text(tmp_path)
    points_file = tmp_path / "points3D.txt"
    lines = points_file.read_text().splitlines()
    idx = next(i for i, line in enumerate(lines) if line.startswith("1 "))
    lines[idx] = "-1" + lines[idx][1:]
    points_file.write_text("\n".join(lines) + "\n")

    with pytest.raises(ReconstructionIOError):
        Reconstruction().read_text(tmp_path)


def test_failed_read_leaves_reconstruction_untouched(triangulated, tmp_path):
    triangulated.write_binary(tmp_path)
    points_file = tmp_path / "points3D.bin"
    points_file.write_bytes(points_file.read_bytes()[:-5])

    recon = Reconstruction()
    recon.add_point3D([1.0, 2.0, 3.0], [])
    with pytest.raises(ReconstructionIOError):
        recon.read_binary(tmp_path)
    assert recon.point3D_ids() == {1}
    assert recon.num_images() == 0


def test_convert_to_ply(triangulated):
    df = triangulated.convert_to_ply()
    assert list(df.columns) == ["x", "y", "z", "red", "green", "blue"]
    assert len(df) == 3
    assert df.loc[0, ["red", "green", "blue"]].tolist() == [10, 20, 30]
    np.testing.assert_allclose(df.loc[0, ["x", "y", "z"]].to_numpy(dtype=float), [0.0, 0.0, 5.0])


@pytest.mark.parametrize("binary", [True, False])
def test_write_and_read_ply(triangulated, tmp_path, binary):
    path = tmp_path / "points.ply"
    triangulated.write_ply(path, binary=binary)
    df = read_ply(path)
    expected = triangulated.convert_to_ply()
    np.testing.assert_allclose(df[["x", "y", "z"]].to_numpy(dtype=float), expected[["x", "y", "z"]].to_numpy())
    np.testing.assert_array_equal(df[["red", "green", "blue"]].to_numpy(), expected[["red", "green", "blue"]].to_numpy())


def test_import_ply_replaces_points(triangulated, tmp_path):
    df = pd.DataFrame({"x": [1.0, 2.0], "y": [0.0, 0.0], "z": [3.0, 4.0], "red": [255, 0], "green": [0, 255], "blue": [0, 0]})
    triangulated.import_ply(df)

    assert triangulated.num_points3D() == 2
    assert all(point3D.track.length == 0 for point3D in triangulated.points3D.values())
    assert all(image.num_points3D == 0 for image in triangulated.images.values())
    assert sorted(p.color.tolist() for p in triangulated.points3D.values()) == [[0, 255, 0], [255, 0, 0]]
    assert_consistent(triangulated)

    path = tmp_path / "points.ply"
    triangulated.write_ply(path)
    recon = Reconstruction()
    recon.import_ply(path)
    np.testing.assert_allclose(recon.compute_bounding_box()[1], [2.0, 0.0, 4.0])


def test_read_ply_rejects_other_files(tmp_path):
    path = tmp_path / "points.ply"
    path.write_text("not a ply\n")
    with pytest.raises(ReconstructionIOError):
        read_ply(path)


def test_interpolate_bilinear():
    bitmap = np.zeros((3, 3, 3), dtype=np.uint8)
    bitmap[0, 0] = [100, 0, 0]
    bitmap[1, 1] = [0, 200, 0]
    np.testing.assert_allclose(_interpolate_bilinear(bitmap, np.array([0.5, 0.5])), [25.0, 50.0, 0.0])
    np.testing.assert_allclose(_interpolate_bilinear(bitmap, np.array([0.0, 0.0])), [100.0, 0.0, 0.0])
    assert _interpolate_bilinear(bitmap, np.array([2.0, 0.0])) is None
    assert _interpolate_bilinear(bitmap, np.array([-0.5, 0.0])) is None


def write_image(root, name, rgb) -> None:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    bitmap = np.zeros((480, 640, 3), dtype=np.uint8)
    bitmap[:] = rgb[::-1]  # BGR on disk
    assert cv.imwrite(str(path), bitmap)


def test_extract_colors_for_image_only_colors_black_points(triangulated, tmp_path):
    write_image(tmp_path, "images/image1.png", [200, 100, 50])
    assert triangulated.extract_colors_for_image(1, tmp_path)
    assert triangulated.point3D(1).color.tolist() == [10, 20, 30]
    assert triangulated.point3D(2).color.tolist() == [200, 100, 50]
    assert triangulated.point3D(3).color.tolist() == [200, 100, 50]

    assert not triangulated.extract_colors_for_image(2, tmp_path)
    with pytest.raises(NotFoundError):
        triangulated.extract_colors_for_image(42, tmp_path)


def test_extract_colors_for_all_images(triangulated, tmp_path):
    write_image(tmp_path, "images/image1.png", [200, 100, 50])
    write_image(tmp_path, "images/image2.png", [100, 100, 52])
    # image 3 is missing and skipped
    triangulated.extract_colors_for_all_images(tmp_path)
    for point3D in triangulated.points3D.values():
        assert point3D.color.tolist() == [150, 100, 51]

    triangulated.extract_colors_for_all_images(tmp_path / "nowhere")
    for point3D in triangulated.points3D.values():
        assert point3D.color.tolist() == [0, 0, 0]
