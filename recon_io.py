import io
import logging
import struct
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import cv2 as cv
import numpy as np
import pandas as pd
from numpy.typing import NDArray

from errors import ReconstructionError, ReconstructionIOError
from geometry import NDArrayFloat, Rigid3d
from scene import CAMERA_MODEL_IDS, Camera, Image, Point2D, Point3D, Track

if TYPE_CHECKING:
    from reconstruction import Reconstruction

logger = logging.getLogger(__name__)

MODEL_FILES = ("cameras", "images", "points3D")

PLY_COLUMNS = ["x", "y", "z", "red", "green", "blue"]
PLY_DTYPES = {
    "char": "i1",
    "int8": "i1",
    "uchar": "u1",
    "uint8": "u1",
    "short": "i2",
    "int16": "i2",
    "ushort": "u2",
    "uint16": "u2",
    "int": "i4",
    "int32": "i4",
    "uint": "u4",
    "uint32": "u4",
    "float": "f4",
    "float32": "f4",
    "double": "f8",
    "float64": "f8",
}


def _read_next_bytes(fid, num_bytes: int, format_char_sequence: str, endian_character: str = "<") -> tuple:
    """Read and unpack the next bytes from a binary file."""
    data = fid.read(num_bytes)
    if len(data) != num_bytes:
        raise ReconstructionIOError(f"Unexpected end of file {fid.name}")
    return struct.unpack(endian_character + format_char_sequence, data)


def _write_next_bytes(fid, data, format_char_sequence: str, endian_character: str = "<") -> None:
    if not isinstance(data, (list, tuple)):
        data = (data,)
    fid.write(struct.pack(endian_character + format_char_sequence, *data))


def _fmt(values) -> str:
    # repr of a python float round-trips exactly
    return " ".join(repr(float(v)) for v in values)


def _data_lines(lines: Iterator[str]) -> Iterator[str]:
    for line in lines:
        line = line.strip()
        if line and not line.startswith("#"):
            yield line


def _interpolate_bilinear(bitmap: NDArray[np.uint8], xy: NDArrayFloat) -> NDArrayFloat | None:
    """Bilinear RGB sample at sub-pixel position `xy`, None if the 2x2 neighborhood leaves the image."""
    height, width = bitmap.shape[:2]
    x, y = float(xy[0]), float(xy[1])
    x0, y0 = int(np.floor(x)), int(np.floor(y))
    if x0 < 0 or y0 < 0 or x0 + 1 >= width or y0 + 1 >= height:
        return None
    dx, dy = x - x0, y - y0
    patch = bitmap[y0 : y0 + 2, x0 : x0 + 2].astype(float)
    return (
        (1 - dx) * (1 - dy) * patch[0, 0]
        + dx * (1 - dy) * patch[0, 1]
        + (1 - dx) * dy * patch[1, 0]
        + dx * dy * patch[1, 1]
    )


def read_ply(path: Path) -> pd.DataFrame:
    """Vertex element of an ascii or binary PLY file as a DataFrame with one column per property."""
    path = Path(path)
    with open(path, "rb") as f:
        if f.readline().strip() != b"ply":
            raise ReconstructionIOError(f"{path} is not a PLY file")
        ply_format, num_vertices, properties = None, 0, []
        in_vertex_element = False
        while True:
            line = f.readline()
            if not line:
                raise ReconstructionIOError(f"{path} has no end_header")
            tokens = line.decode("ascii", errors="replace").split()
            if not tokens or tokens[0] == "comment":
                continue
            if tokens[0] == "end_header":
                break
            if tokens[0] == "format":
                ply_format = tokens[1]
            elif tokens[0] == "element":
                in_vertex_element = tokens[1] == "vertex"
                if in_vertex_element:
                    num_vertices = int(tokens[2])
            elif tokens[0] == "property" and in_vertex_element:
                if tokens[1] == "list" or tokens[1] not in PLY_DTYPES:
                    raise ReconstructionIOError(f"Unsupported vertex property in {path}: {' '.join(tokens)}")
                properties.append((tokens[2], PLY_DTYPES[tokens[1]]))

        if ply_format == "ascii":
            text = f.read().decode("ascii")
            return pd.read_csv(
                io.StringIO(text),
                sep=r"\s+",
                header=None,
                names=[name for name, _ in properties],
                nrows=num_vertices,
            )
        if ply_format in ("binary_little_endian", "binary_big_endian"):
            endian = "<" if ply_format == "binary_little_endian" else ">"
            dtype = np.dtype([(name, endian + code) for name, code in properties])
            data = f.read(dtype.itemsize * num_vertices)
            if len(data) != dtype.itemsize * num_vertices:
                raise ReconstructionIOError(f"{path} is truncated")
            return pd.DataFrame(np.frombuffer(data, dtype=dtype, count=num_vertices))
        raise ReconstructionIOError(f"Unsupported PLY format in {path}: {ply_format}")


class ReconIO:
    """Handles saving and loading of reconstruction models, PLY point clouds and point colors."""

    def __init__(self, reconstruction: "Reconstruction"):
        self.reconstruction = reconstruction

    # -- Model directories ----------------------------------------------------

    def read(self, path: Path) -> None:
        path = Path(path)
        if all((path / f"{name}.bin").is_file() for name in MODEL_FILES):
            self.read_binary(path)
        elif all((path / f"{name}.txt").is_file() for name in MODEL_FILES):
            self.read_text(path)
        else:
            raise ReconstructionIOError(f"No cameras, images and points3D files found in {path}")

    def write(self, path: Path) -> None:
        self.write_binary(path)

    def read_text(self, path: Path) -> None:
        self._read_model(Path(path), ".txt", self._read_cameras_text, self._read_images_text, self._read_points3D_text)

    def read_binary(self, path: Path) -> None:
        self._read_model(
            Path(path), ".bin", self._read_cameras_binary, self._read_images_binary, self._read_points3D_binary
        )

    def _read_model(self, path: Path, ext: str, read_cameras, read_images, read_points3D) -> None:
        """Parse a model into a fresh reconstruction, then swap it in.

        Tracks are authoritative for the point/observation binding, point ids stored
        with the 2D points are not used.
        """
        recon = type(self.reconstruction)()
        try:
            for camera in read_cameras(path / f"cameras{ext}"):
                recon.add_camera(camera)
            for image in read_images(path / f"images{ext}"):
                recon.add_image(image)
            for point3D_id, point3D in read_points3D(path / f"points3D{ext}"):
                recon.add_point3D_with_id(point3D_id, point3D)
        except ReconstructionIOError:
            raise
        except (OSError, ValueError, KeyError, IndexError, struct.error, ReconstructionError) as err:
            raise ReconstructionIOError(f"Failed to read model from {path}: {err}") from err

        self.reconstruction.replace_with(recon)
        logger.info(
            "Read %d cameras, %d images and %d 3D points from %s",
            recon.num_cameras(),
            recon.num_images(),
            recon.num_points3D(),
            path,
        )

    def write_text(self, path: Path) -> None:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        self._write_cameras_text(path / "cameras.txt")
        self._write_images_text(path / "images.txt")
        self._write_points3D_text(path / "points3D.txt")
        logger.info("Wrote text model to %s", path)

    def write_binary(self, path: Path) -> None:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        self._write_cameras_binary(path / "cameras.bin")
        self._write_images_binary(path / "images.bin")
        self._write_points3D_binary(path / "points3D.bin")
        logger.info("Wrote binary model to %s", path)

    def _written_images(self) -> list[Image]:
        return [self.reconstruction.images[image_id] for image_id in self.reconstruction.reg_image_ids()]

    def _written_tracks(self) -> Iterator[tuple[int, Point3D, list]]:
        """(point3D_id, point3D, track elements on written images) for every point."""
        reg_image_ids = set(self.reconstruction.reg_image_ids())
        for point3D_id, point3D in self.reconstruction.points3D.items():
            yield point3D_id, point3D, [el for el in point3D.track if el.image_id in reg_image_ids]

    # cameras

    @staticmethod
    def _read_cameras_text(path: Path) -> Iterator[Camera]:
        with open(path) as f:
            for line in _data_lines(f):
                elems = line.split()
                yield Camera(int(elems[0]), elems[1], int(elems[2]), int(elems[3]), [float(v) for v in elems[4:]])

    @staticmethod
    def _read_cameras_binary(path: Path) -> Iterator[Camera]:
        with open(path, "rb") as fid:
            (num_cameras,) = _read_next_bytes(fid, 8, "Q")
            for _ in range(num_cameras):
                camera_id, model_id, width, height = _read_next_bytes(fid, 24, "IiQQ")
                if model_id not in CAMERA_MODEL_IDS:
                    raise ReconstructionIOError(f"Unknown camera model id {model_id} in {path}")
                model = CAMERA_MODEL_IDS[model_id]
                params = _read_next_bytes(fid, 8 * model.num_params, "d" * model.num_params)
                yield Camera(camera_id, model.name, width, height, params)

    def _write_cameras_text(self, path: Path) -> None:
        cameras = self.reconstruction.cameras
        with open(path, "w") as f:
            f.write("# Camera list with one line of data per camera:\n")
            f.write("#   CAMERA_ID, MODEL, WIDTH, HEIGHT, PARAMS[]\n")
            f.write(f"# Number of cameras: {len(cameras)}\n")
            for camera_id, camera in cameras.items():
                f.write(f"{camera_id} {camera.model} {camera.width} {camera.height} {_fmt(camera.params)}\n")

    def _write_cameras_binary(self, path: Path) -> None:
        cameras = self.reconstruction.cameras
        with open(path, "wb") as fid:
            _write_next_bytes(fid, len(cameras), "Q")
            for camera_id, camera in cameras.items():
                _write_next_bytes(fid, (camera_id, camera.model_id, camera.width, camera.height), "IiQQ")
                _write_next_bytes(fid, tuple(float(p) for p in camera.params), "d" * camera.params.size)

    # images

    @staticmethod
    def _read_images_text(path: Path) -> Iterator[Image]:
        with open(path) as f:
            lines = iter(f)
            for line in _data_lines(lines):
                elems = line.split(maxsplit=9)
                image_id = int(elems[0])
                qvec = [float(v) for v in elems[1:5]]
                tvec = [float(v) for v in elems[5:8]]
                camera_id, name = int(elems[8]), elems[9]
                # second line may be empty if the image has no 2D points
                points_elems = next(lines, "").split()
                xys = np.array([float(v) for v in points_elems], dtype=float).reshape(-1, 3)[:, :2]
                yield Image(
                    image_id,
                    name,
                    camera_id,
                    cam_from_world=Rigid3d.from_qvec(qvec, tvec),
                    points2D=[Point2D(xy) for xy in xys],
                    registered=True,
                )

    @staticmethod
    def _read_images_binary(path: Path) -> Iterator[Image]:
        with open(path, "rb") as fid:
            (num_images,) = _read_next_bytes(fid, 8, "Q")
            for _ in range(num_images):
                props = _read_next_bytes(fid, 64, "IdddddddI")
                image_id, qvec, tvec, camera_id = props[0], props[1:5], props[5:8], props[8]
                name = b""
                current_char = _read_next_bytes(fid, 1, "c")[0]
                while current_char != b"\x00":
                    name += current_char
                    current_char = _read_next_bytes(fid, 1, "c")[0]
                (num_points2D,) = _read_next_bytes(fid, 8, "Q")
                data = _read_next_bytes(fid, 24 * num_points2D, "ddq" * num_points2D)
                xys = np.array(data, dtype=float).reshape(-1, 3)[:, :2]
                yield Image(
                    image_id,
                    name.decode("utf-8"),
                    camera_id,
                    cam_from_world=Rigid3d.from_qvec(qvec, tvec),
                    points2D=[Point2D(xy) for xy in xys],
                    registered=True,
                )

    def _write_images_text(self, path: Path) -> None:
        images = self._written_images()
        mean_observations = self.reconstruction.compute_mean_observations_per_reg_image()
        with open(path, "w") as f:
            f.write("# Image list with two lines of data per image:\n")
            f.write("#   IMAGE_ID, QW, QX, QY, QZ, TX, TY, TZ, CAMERA_ID, NAME\n")
            f.write("#   POINTS2D[] as (X, Y, POINT3D_ID)\n")
            f.write(f"# Number of images: {len(images)}, mean observations per image: {mean_observations}\n")
            for image in images:
                pose = image.cam_from_world
                f.write(
                    f"{image.image_id} {_fmt(pose.qvec)} {_fmt(pose.translation)} {image.camera_id} {image.name}\n"
                )
                f.write(" ".join(f"{_fmt(p.xy)} {p.point3D_id}" for p in image.points2D) + "\n")

    def _write_images_binary(self, path: Path) -> None:
        images = self._written_images()
        with open(path, "wb") as fid:
            _write_next_bytes(fid, len(images), "Q")
            for image in images:
                pose = image.cam_from_world
                _write_next_bytes(
                    fid, (image.image_id, *map(float, pose.qvec), *map(float, pose.translation), image.camera_id), "IdddddddI"
                )
                fid.write(image.name.encode("utf-8") + b"\x00")
                _write_next_bytes(fid, len(image.points2D), "Q")
                for point2D in image.points2D:
                    _write_next_bytes(fid, (float(point2D.xy[0]), float(point2D.xy[1]), point2D.point3D_id), "ddq")

    # points3D

    @staticmethod
    def _read_points3D_text(path: Path) -> Iterator[tuple[int, Point3D]]:
        with open(path) as f:
            for line in _data_lines(f):
                elems = line.split()
                track = Track(zip(map(int, elems[8::2]), map(int, elems[9::2])))
                yield int(elems[0]), Point3D(
                    [float(v) for v in elems[1:4]],
                    color=[int(v) for v in elems[4:7]],
                    error=float(elems[7]),
                    track=track,
                )

    @staticmethod
    def _read_points3D_binary(path: Path) -> Iterator[tuple[int, Point3D]]:
        with open(path, "rb") as fid:
            (num_points,) = _read_next_bytes(fid, 8, "Q")
            for _ in range(num_points):
                props = _read_next_bytes(fid, 43, "QdddBBBd")
                (track_length,) = _read_next_bytes(fid, 8, "Q")
                track_elems = _read_next_bytes(fid, 8 * track_length, "II" * track_length)
                yield props[0], Point3D(
                    props[1:4],
                    color=props[4:7],
                    error=props[7],
                    track=Track(zip(track_elems[0::2], track_elems[1::2])),
                )

    def _write_points3D_text(self, path: Path) -> None:
        recon = self.reconstruction
        with open(path, "w") as f:
            f.write("# 3D point list with one line of data per point:\n")
            f.write("#   POINT3D_ID, X, Y, Z, R, G, B, ERROR, TRACK[] as (IMAGE_ID, POINT2D_IDX)\n")
            f.write(
                f"# Number of points: {recon.num_points3D()}, mean track length: {recon.compute_mean_track_length()}\n"
            )
            for point3D_id, point3D, track in self._written_tracks():
                r, g, b = (int(c) for c in point3D.color)
                track_str = " ".join(f"{el.image_id} {el.point2D_idx}" for el in track)
                f.write(f"{point3D_id} {_fmt(point3D.xyz)} {r} {g} {b} {float(point3D.error)!r} {track_str}".rstrip() + "\n")

    def _write_points3D_binary(self, path: Path) -> None:
        with open(path, "wb") as fid:
            _write_next_bytes(fid, self.reconstruction.num_points3D(), "Q")
            for point3D_id, point3D, track in self._written_tracks():
                _write_next_bytes(
                    fid,
                    (point3D_id, *map(float, point3D.xyz), *map(int, point3D.color), float(point3D.error)),
                    "QdddBBBd",
                )
                _write_next_bytes(fid, len(track), "Q")
                for el in track:
                    _write_next_bytes(fid, el, "II")

    # -- Point clouds ---------------------------------------------------------

    def convert_to_ply(self) -> pd.DataFrame:
        """Positions and colors of all 3D points, one row per point."""
        points3D = list(self.reconstruction.points3D.values())
        xyz = np.array([p.xyz for p in points3D], dtype=float).reshape(-1, 3)
        rgb = np.array([p.color for p in points3D], dtype=np.uint8).reshape(-1, 3)
        df = pd.DataFrame(xyz, columns=["x", "y", "z"])
        for i, channel in enumerate(("red", "green", "blue")):
            df[channel] = rgb[:, i]
        return df

    def write_ply(self, path: Path, binary: bool = True) -> None:
        path = Path(path)
        df = self.convert_to_ply()
        path.parent.mkdir(exist_ok=True, parents=True)
        header = [
            "ply",
            f"format {'binary_little_endian' if binary else 'ascii'} 1.0",
            f"element vertex {len(df)}",
            "property double x",
            "property double y",
            "property double z",
            "property uchar red",
            "property uchar green",
            "property uchar blue",
            "end_header",
        ]
        if binary:
            vertices = np.empty(
                len(df), dtype=[("x", "<f8"), ("y", "<f8"), ("z", "<f8"), ("red", "u1"), ("green", "u1"), ("blue", "u1")]
            )
            for column in PLY_COLUMNS:
                vertices[column] = df[column].to_numpy()
            with open(path, "wb") as f:
                f.write(("\n".join(header) + "\n").encode("ascii"))
                f.write(vertices.tobytes())
        else:
            with open(path, "w") as f:
                f.write("\n".join(header) + "\n")
                df[PLY_COLUMNS].to_csv(f, sep=" ", header=False, index=False, lineterminator="\n")
        logger.info("Wrote %d points to %s", len(df), path)

    def import_ply(self, ply: Path | pd.DataFrame) -> None:
        """Replace all 3D points by the vertices of a PLY point cloud. Imported points have empty tracks."""
        df = ply if isinstance(ply, pd.DataFrame) else read_ply(Path(ply))
        missing = [column for column in ("x", "y", "z") if column not in df.columns]
        if missing:
            raise ReconstructionIOError(f"PLY point cloud has no {', '.join(missing)} columns")

        xyz = df[["x", "y", "z"]].to_numpy(dtype=float)
        if all(channel in df.columns for channel in ("red", "green", "blue")):
            rgb = df[["red", "green", "blue"]].to_numpy().clip(0, 255).astype(np.uint8)
        else:
            rgb = np.zeros((len(df), 3), dtype=np.uint8)

        recon = self.reconstruction
        for point3D_id in recon.point3D_ids():
            recon.delete_point3D(point3D_id)
        for point_xyz, point_rgb in zip(xyz, rgb):
            recon.add_point3D(point_xyz, Track(), point_rgb)
        logger.info("Imported %d points", len(xyz))

    # -- Colors ---------------------------------------------------------------

    @staticmethod
    def _read_rgb(path: Path) -> NDArray[np.uint8] | None:
        bitmap = cv.imread(str(path), cv.IMREAD_COLOR)
        if bitmap is None:
            return None
        return cv.cvtColor(bitmap, cv.COLOR_BGR2RGB)

    def extract_colors_for_image(self, image_id: int, image_dir: Path) -> bool:
        """Color the still black 3D points observed by one image. Returns False if the image cannot be read."""
        image = self.reconstruction.image(image_id)
        bitmap = self._read_rgb(Path(image_dir) / image.name)
        if bitmap is None:
            return False

        for _, point2D in image.iter_triangulated():
            point3D = self.reconstruction.points3D[point2D.point3D_id]
            if np.any(point3D.color):
                continue
            # pixel centers are at integer + 0.5
            color = _interpolate_bilinear(bitmap, point2D.xy - 0.5)
            if color is not None:
                point3D.color = np.clip(np.round(color), 0, 255).astype(np.uint8)
        return True

    def extract_colors_for_all_images(self, image_dir: Path) -> None:
        """Set every point color to the mean of its samples in all registered images."""
        color_sums: dict[int, NDArrayFloat] = {}
        color_counts: dict[int, int] = {}
        for image_id in self.reconstruction.reg_image_ids():
            image = self.reconstruction.images[image_id]
            image_path = Path(image_dir) / image.name
            bitmap = self._read_rgb(image_path)
            if bitmap is None:
                logger.warning("Could not read image %s, skipping it for color extraction", image_path)
                continue
            for _, point2D in image.iter_triangulated():
                color = _interpolate_bilinear(bitmap, point2D.xy - 0.5)
                if color is None:
                    continue
                point3D_id = point2D.point3D_id
                color_sums[point3D_id] = color_sums.get(point3D_id, 0.0) + color
                color_counts[point3D_id] = color_counts.get(point3D_id, 0) + 1

        for point3D_id, point3D in self.reconstruction.points3D.items():
            if point3D_id in color_sums:
                mean_color = color_sums[point3D_id] / color_counts[point3D_id]
                point3D.color = np.clip(np.round(mean_color), 0, 255).astype(np.uint8)
            else:
                point3D.color = np.zeros(3, dtype=np.uint8)
        logger.info("Extracted colors of %d of %d points", len(color_sums), self.reconstruction.num_points3D())
