#!/usr/bin/env python3
"""
main.py - Global plane extraction tool for LiDAR point clouds

CLI tool that labels every point of a cloud with one of the extracted planes
or as an outlier.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np
import open3d as o3d

from config import CONFIG_PRESETS, ExtractionConfig, InvalidConfiguration, load_config
from extractor import ExtractionResult, extract_planes
from logger import Logger
from primitives import OUTLIER, compute_plane_residual_stats

LOG = Logger.get_logger("main")

RESULT_VERSION = 1
OUTLIER_COLOR = np.array([0.6, 0.6, 0.6])


def load_point_cloud(filepath: str) -> o3d.geometry.PointCloud:
    """Load a point cloud from PCD or PLY file."""
    pcd = o3d.io.read_point_cloud(filepath)
    if pcd.is_empty():
        raise ValueError(f"Failed to load point cloud from {filepath}")
    LOG.info(f"Loaded {len(pcd.points)} points from {filepath}")
    return pcd


def preprocess_point_cloud(
    pcd: o3d.geometry.PointCloud,
    voxel_size: float = 0.0,
    nb_neighbors: int = 0,
    std_ratio: float = 2.0,
) -> o3d.geometry.PointCloud:
    """
    Preprocess point cloud: downsample and optionally remove statistical outliers.

    Args:
        pcd: Input point cloud
        voxel_size: Voxel size for downsampling (0 to skip)
        nb_neighbors: Number of neighbors for outlier removal (0 to skip)
        std_ratio: Standard deviation ratio for outlier removal

    Returns:
        Preprocessed point cloud
    """
    result = pcd
    if voxel_size > 0:
        result = result.voxel_down_sample(voxel_size)
        LOG.info(f"After voxel downsampling: {len(result.points)} points")
    if nb_neighbors > 0:
        result, _ = result.remove_statistical_outlier(
            nb_neighbors=nb_neighbors,
            std_ratio=std_ratio
        )
        LOG.info(f"After outlier removal: {len(result.points)} points")
    return result


def generate_plane_colors(n: int) -> List[np.ndarray]:
    """Generate n distinct colors for plane visualization (HSV hue wheel, s=0.8, v=0.9)."""
    colors = []
    for i in range(n):
        h = (i / max(n, 1)) * 6.0
        c = 0.9 * 0.8
        x = c * (1 - abs(h % 2 - 1))
        m = 0.9 - c
        sector = int(h) % 6
        r, g, b = [(c, x, 0), (x, c, 0), (0, c, x), (0, x, c), (x, 0, c), (c, 0, x)][sector]
        colors.append(np.array([r + m, g + m, b + m]))
    return colors


def colorize_by_label(
    points: np.ndarray,
    labels: np.ndarray,
    plane_ids: List[int],
) -> o3d.geometry.PointCloud:
    """Point cloud colored by plane label; outliers in gray."""
    colors = np.tile(OUTLIER_COLOR, (len(points), 1))
    for model_id, color in zip(plane_ids, generate_plane_colors(len(plane_ids))):
        colors[labels == model_id] = color
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(points)
    pcd.colors = o3d.utility.Vector3dVector(colors)
    return pcd


def build_results(result: ExtractionResult, points: np.ndarray, config: ExtractionConfig) -> dict:
    """JSON-serializable summary of an extraction run."""
    planes = []
    for plane in result.planes:
        inliers = points[result.labels == plane.model_id]
        median, mad, rms = compute_plane_residual_stats(inliers, plane.normal, plane.offset)
        planes.append({
            "id": plane.model_id,
            "normal": plane.normal.tolist(),
            "offset": plane.offset,
            "point": plane.point.tolist(),
            "inlier_count": plane.inlier_count,
            "residual_median": median,
            "residual_mad": mad,
            "rms": rms,
        })
    return {
        "version": RESULT_VERSION,
        "status": result.status,
        "success": result.success,
        "message": result.message,
        "converged": result.converged,
        "iterations": result.iterations,
        "energy": result.energy,
        "energy_history": result.energy_history,
        "scale": result.scale,
        "candidate_count": result.candidate_count,
        "point_count": int(len(points)),
        "outlier_count": result.outlier_count,
        "elapsed_s": result.elapsed_s,
        "config": config.to_dict(),
        "planes": planes,
    }


def save_results(results: dict, filepath: str):
    """Save results to JSON file."""
    with open(filepath, 'w') as f:
        json.dump(results, f, indent=2)
    LOG.info(f"Results saved to {filepath}")


def list_profiles() -> str:
    """Return a formatted string listing available configuration presets."""
    lines = ["Available profiles:"]
    for key, preset in CONFIG_PRESETS.items():
        lines.append(
            f"  {key}: k_neighbors={preset.k_neighbors}, "
            f"min_support_points={preset.min_support_points}, "
            f"n_constraints={preset.n_constraints}, outlier_penalty={preset.outlier_penalty}"
        )
    return "\n".join(lines)


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Global plane extraction for LiDAR point clouds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=list_profiles()
    )
    parser.add_argument("--input", "-i", type=str, required=True,
                        help="Path to input PCD or PLY file")
    parser.add_argument("--output", "-o", type=str, default="planes.json",
                        help="Output JSON file for results (default: planes.json)")
    parser.add_argument("--labels-output", type=str, default=None,
                        help="Write per-point labels (.npy, -1 = outlier)")
    parser.add_argument("--colored-output", type=str, default=None,
                        help="Write the cloud colored by plane label (PLY/PCD)")
    parser.add_argument("--visualize", action="store_true",
                        help="Show the labeled cloud in an Open3D window")

    parser.add_argument("--profile", type=str, default=None,
                        choices=list(CONFIG_PRESETS.keys()), metavar="PROFILE",
                        help=f"Parameter preset. Available: {', '.join(CONFIG_PRESETS.keys())}")
    parser.add_argument("--config", type=str, default=None,
                        help="JSON file with parameter overrides (applied on top of the profile)")

    core = parser.add_argument_group("Extraction Parameters")
    core.add_argument("--k-neighbors", type=int, default=None,
                      help="Neighbor graph fan-out and local-fit neighborhood size")
    core.add_argument("--min-support", type=int, default=None, dest="min_support_points",
                      help="Minimum inliers to keep a plane")
    core.add_argument("--n-constraints", type=int, default=None,
                      help="Sample size used when fitting a candidate plane (>= 3)")
    core.add_argument("--outlier-penalty", type=float, default=None,
                      help="Per-point cost of the outlier label")
    core.add_argument("--distance-threshold", type=float, default=None,
                      help="Fixed inlier scale (default: estimated from the data)")
    core.add_argument("--oracle", type=str, default=None, choices=["graphcut", "icm"],
                      help="Binary labeling oracle used by expansion moves")
    core.add_argument("--seed", type=int, default=None, dest="random_seed",
                      help="Random seed for candidate sampling")
    core.add_argument("--jobs", type=int, default=None, dest="n_jobs",
                      help="Workers for k-NN queries and refits")

    prep = parser.add_argument_group("Preprocessing")
    prep.add_argument("--voxel-size", type=float, default=0.0,
                      help="Voxel size for downsampling (default: 0, no downsampling)")
    prep.add_argument("--remove-outliers", type=int, default=0, metavar="NB_NEIGHBORS",
                      help="Statistical outlier removal neighbors (default: 0, disabled)")

    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")
    return parser.parse_args(argv)


def build_effective_config(args) -> ExtractionConfig:
    """
    Build effective configuration by merging profile, config file and CLI overrides.

    Raises:
        InvalidConfiguration: unknown keys or out-of-range values
    """
    config = CONFIG_PRESETS[args.profile] if args.profile else CONFIG_PRESETS["default"]
    if args.profile:
        LOG.info(f"Using profile: {args.profile}")
    if args.config:
        config = load_config(args.config, base=config)
        LOG.info(f"Loaded overrides from {args.config}")

    config = config.replace(
        k_neighbors=args.k_neighbors,
        min_support_points=args.min_support_points,
        n_constraints=args.n_constraints,
        outlier_penalty=args.outlier_penalty,
        distance_threshold=args.distance_threshold,
        oracle=args.oracle,
        random_seed=args.random_seed,
        n_jobs=args.n_jobs,
    ).validate()

    LOG.info(
        f"Effective configuration: k_neighbors={config.k_neighbors}, "
        f"min_support_points={config.min_support_points}, n_constraints={config.n_constraints}, "
        f"outlier_penalty={config.outlier_penalty}, oracle={config.oracle}"
    )
    return config


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = parse_args(argv)
    Logger.configure(args.log_level, args.log_file)

    try:
        config = build_effective_config(args)
        pcd = load_point_cloud(args.input)
    except (InvalidConfiguration, ValueError, OSError) as exc:
        LOG.error(f"Error: {exc}")
        sys.exit(2)

    pcd = preprocess_point_cloud(pcd, voxel_size=args.voxel_size, nb_neighbors=args.remove_outliers)
    points = np.asarray(pcd.points)
    normals = np.asarray(pcd.normals) if pcd.has_normals() else None

    try:
        result = extract_planes(points, normals, config)
    except InvalidConfiguration as exc:
        LOG.error(f"Error: {exc}")
        sys.exit(2)

    for plane in result.planes:
        LOG.info(
            f"  Plane {plane.model_id}: normal={np.round(plane.normal, 4).tolist()}, "
            f"offset={plane.offset:.4f}, inliers={plane.inlier_count}, rms={plane.rms:.4f}"
        )

    save_results(build_results(result, points, config), args.output)
    if args.labels_output:
        np.save(args.labels_output, result.labels)
        LOG.info(f"Labels saved to {args.labels_output}")

    plane_ids = [plane.model_id for plane in result.planes]
    if args.colored_output or args.visualize:
        colored = colorize_by_label(points, result.labels, plane_ids)
        if args.colored_output:
            Path(args.colored_output).parent.mkdir(parents=True, exist_ok=True)
            o3d.io.write_point_cloud(args.colored_output, colored)
            LOG.info(f"Colored cloud saved to {args.colored_output}")
        if args.visualize:
            o3d.visualization.draw_geometries([colored], window_name="Extracted Planes")

    LOG.info(
        f"{result.status}: {len(result.planes)} planes, "
        f"{int(np.count_nonzero(result.labels == OUTLIER))} outliers"
    )
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
