import logging
from contextlib import contextmanager
from pathlib import Path

import numpy as np
import typer

from config import ReconstructionConfig
from errors import ReconstructionError
from reconstruction import Reconstruction

app = typer.Typer(help="Inspect and post-process sparse reconstruction models.")

CFG = ReconstructionConfig()
OUTPUT_TYPES = ["bin", "txt", "ply"]


@contextmanager
def _report_errors():
    try:
        yield
    except ReconstructionError as err:
        typer.echo(f"Error: {err}", err=True)
        raise typer.Exit(code=1) from err


def _check_output_type(output_type: str) -> None:
    if output_type not in OUTPUT_TYPES:
        typer.echo(f"Error: output type must be one of {', '.join(OUTPUT_TYPES)}, got '{output_type}'", err=True)
        raise typer.Exit(code=1)


def _read(input_path: Path) -> Reconstruction:
    reconstruction = Reconstruction()
    reconstruction.read(input_path)
    return reconstruction


def _write(reconstruction: Reconstruction, output_path: Path, output_type: str) -> None:
    if output_type == "bin":
        reconstruction.write_binary(output_path)
    elif output_type == "txt":
        reconstruction.write_text(output_path)
    else:
        reconstruction.write_ply(output_path)
    typer.echo(f"Saved reconstruction to {output_path}")


def _summary(reconstruction: Reconstruction) -> None:
    typer.echo(f"  Cameras: {reconstruction.num_cameras()}")
    typer.echo(f"  Images: {reconstruction.num_images()}")
    typer.echo(f"  Registered images: {reconstruction.num_reg_images()}")
    typer.echo(f"  Points: {reconstruction.num_points3D()}")
    typer.echo(f"  Observations: {reconstruction.compute_num_observations()}")
    typer.echo(f"  Mean track length: {reconstruction.compute_mean_track_length():.6f}")
    typer.echo(f"  Mean observations per image: {reconstruction.compute_mean_observations_per_reg_image():.6f}")
    typer.echo(f"  Mean reprojection error: {reconstruction.compute_mean_reprojection_error():.6f}px")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress of the library operations"),
):
    """Inspect and post-process sparse reconstruction models."""
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING, format="%(levelname)s %(name)s: %(message)s")


@app.command()
def info(model: Path = typer.Argument(..., help="Model directory (binary or text)")):
    """Print statistics of a model."""
    with _report_errors():
        reconstruction = _read(model)
    typer.echo(f"Reconstruction {model}:")
    _summary(reconstruction)


@app.command()
def convert(
    input_path: Path = typer.Argument(..., help="Model directory (binary or text)"),
    output_path: Path = typer.Argument(..., help="Output model directory, or PLY file for --output-type ply"),
    output_type: str = typer.Option(CFG.output_type, "--output-type", "-t", help="Output format: 'bin', 'txt' or 'ply'"),
):
    """Convert a model between binary, text and PLY formats."""
    _check_output_type(output_type)
    with _report_errors():
        _write(_read(input_path), output_path, output_type)


@app.command("filter")
def filter_model(
    input_path: Path = typer.Argument(..., help="Model directory (binary or text)"),
    output_path: Path = typer.Argument(..., help="Output model directory, or PLY file for --output-type ply"),
    max_reproj_error: float = typer.Option(
        CFG.max_reproj_error, "--max-reproj-error", "-e", help="Maximum mean reprojection error in pixels", min=0.0
    ),
    min_tri_angle: float = typer.Option(
        CFG.min_tri_angle, "--min-tri-angle", "-a", help="Minimum triangulation angle in degrees", min=0.0
    ),
    min_focal_length_ratio: float = typer.Option(
        CFG.min_focal_length_ratio, "--min-focal-length-ratio", help="Minimum focal length ratio of a camera", min=0.0
    ),
    max_focal_length_ratio: float = typer.Option(
        CFG.max_focal_length_ratio, "--max-focal-length-ratio", help="Maximum focal length ratio of a camera", min=0.0
    ),
    max_extra_param: float = typer.Option(
        CFG.max_extra_param, "--max-extra-param", help="Maximum absolute distortion parameter of a camera", min=0.0
    ),
    output_type: str = typer.Option(CFG.output_type, "--output-type", "-t", help="Output format: 'bin', 'txt' or 'ply'"),
):
    """Delete badly triangulated points, observations behind cameras and images with bogus cameras."""
    _check_output_type(output_type)
    with _report_errors():
        reconstruction = _read(input_path)
        num_points = reconstruction.num_points3D()
        num_filtered_obs = reconstruction.filter_all_points3D(max_reproj_error, min_tri_angle)
        num_filtered_obs += reconstruction.filter_observations_with_negative_depth()
        filtered_image_ids = reconstruction.filter_images(
            min_focal_length_ratio, max_focal_length_ratio, max_extra_param
        )
        typer.echo(f"Removed {num_points - reconstruction.num_points3D()} points, {num_filtered_obs} observations")
        typer.echo(f"Deregistered {len(filtered_image_ids)} images")
        _write(reconstruction, output_path, output_type)


@app.command()
def normalize(
    input_path: Path = typer.Argument(..., help="Model directory (binary or text)"),
    output_path: Path = typer.Argument(..., help="Output model directory, or PLY file for --output-type ply"),
    extent: float = typer.Option(
        CFG.normalize_extent, "--extent", help="Diagonal of the robust bounding box after normalization"
    ),
    p0: float = typer.Option(CFG.normalize_p0, "--p0", help="Lower percentile", min=0.0, max=1.0),
    p1: float = typer.Option(CFG.normalize_p1, "--p1", help="Upper percentile", min=0.0, max=1.0),
    use_images: bool = typer.Option(
        CFG.normalize_use_images,
        "--use-images/--use-points",
        help="Normalize by camera centers of registered images or by 3D points",
    ),
    output_type: str = typer.Option(CFG.output_type, "--output-type", "-t", help="Output format: 'bin', 'txt' or 'ply'"),
):
    """Center and scale a model."""
    _check_output_type(output_type)
    with _report_errors():
        reconstruction = _read(input_path)
        tform = reconstruction.normalize(extent, p0, p1, use_images)
        typer.echo(f"Applied scale {tform.scale:.6g} and translation {np.array2string(tform.translation, precision=6)}")
        _write(reconstruction, output_path, output_type)


@app.command()
def crop(
    input_path: Path = typer.Argument(..., help="Model directory (binary or text)"),
    output_path: Path = typer.Argument(..., help="Output model directory, or PLY file for --output-type ply"),
    bbox_min: tuple[float, float, float] = typer.Option(..., "--min", help="Minimum corner X Y Z of the box"),
    bbox_max: tuple[float, float, float] = typer.Option(..., "--max", help="Maximum corner X Y Z of the box"),
    output_type: str = typer.Option(CFG.output_type, "--output-type", "-t", help="Output format: 'bin', 'txt' or 'ply'"),
):
    """Keep the points inside an axis aligned box and the images observing them."""
    _check_output_type(output_type)
    with _report_errors():
        cropped = _read(input_path).crop((np.array(bbox_min), np.array(bbox_max)))
        typer.echo("Cropped reconstruction:")
        _summary(cropped)
        _write(cropped, output_path, output_type)


@app.command()
def colors(
    input_path: Path = typer.Argument(..., help="Model directory (binary or text)"),
    image_dir: Path = typer.Argument(..., help="Directory containing the images, relative to which image names resolve"),
    output_path: Path = typer.Argument(..., help="Output model directory, or PLY file for --output-type ply"),
    output_type: str = typer.Option(CFG.output_type, "--output-type", "-t", help="Output format: 'bin', 'txt' or 'ply'"),
):
    """Color every point by the mean of its observations in the registered images."""
    _check_output_type(output_type)
    with _report_errors():
        reconstruction = _read(input_path)
        reconstruction.extract_colors_for_all_images(image_dir)
        _write(reconstruction, output_path, output_type)


if __name__ == "__main__":
    app()
