"""
config.py - Extraction configuration, presets and validation
"""

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np


class InvalidConfiguration(ValueError):
    """Raised when extraction parameters or inputs are rejected before any work."""


DATA_COST_NAMES = ("quadratic", "linear")
SMOOTHNESS_NAMES = ("potts", "gaussian")
ORACLE_NAMES = ("graphcut", "icm")


@dataclass(frozen=True)
class ExtractionConfig:
    """
    Parameters of one plane extraction run.

    Attributes:
        k_neighbors: Neighbor graph fan-out and local-fit neighborhood size
        min_support_points: Minimum inliers to keep a model
        n_constraints: Sample size used when fitting a candidate plane (>= 3)
        outlier_penalty: Per-point cost of the outlier label
        normal_k: Neighborhood size for normal estimation (None: k_neighbors)
        distance_threshold: Inlier scale in point units (None: estimated from data)
        normal_threshold_deg: Normal-deviation gate for candidate growth
        angle_weight: Weight of the normal-agreement part of the data cost
        smoothness_weight: Cost of one neighbor edge crossing a label boundary
        smoothness: Edge weighting strategy ("potts" or "gaussian")
        data_cost: Data cost strategy ("quadratic" or "linear")
        model_cost: L0 cost per active model (None: 0.5 * min_support * outlier_penalty)
        oracle: Binary labeling oracle for expansion moves ("graphcut" or "icm")
        merge_angle_deg: Max normal angle for merging two models
        merge_distance_factor: Max support-centroid to plane distance, in scales
        proposal_ratio: Candidate proposals per input point
        min_proposals: Lower bound on the proposal budget
        min_uncovered_fraction: Stop proposing once this fraction is uncovered
        max_failures: Stop proposing after this many consecutive rejections
        grow_iters: Refit/regrow rounds per candidate
        max_iterations: Cap on label/refine iterations
        max_label_passes: Cap on passes of the label optimizer per iteration
        regeneration_retries: Candidate regenerations after convergence
        energy_tol: Relative energy change treated as converged
        random_seed: Seed for candidate sampling
        n_jobs: Workers for k-NN queries and per-model refits
    """
    k_neighbors: int = 15
    min_support_points: int = 50
    n_constraints: int = 3
    outlier_penalty: float = 1.0
    normal_k: Optional[int] = None
    distance_threshold: Optional[float] = None
    normal_threshold_deg: float = 30.0
    angle_weight: float = 0.5
    smoothness_weight: float = 0.1
    smoothness: str = "potts"
    data_cost: str = "quadratic"
    model_cost: Optional[float] = None
    oracle: str = "graphcut"
    merge_angle_deg: float = 10.0
    merge_distance_factor: float = 2.0
    proposal_ratio: float = 0.01
    min_proposals: int = 20
    min_uncovered_fraction: float = 0.05
    max_failures: int = 25
    grow_iters: int = 4
    max_iterations: int = 20
    max_label_passes: int = 10
    regeneration_retries: int = 1
    energy_tol: float = 1e-6
    random_seed: Optional[int] = 0
    n_jobs: int = 1

    @property
    def effective_normal_k(self) -> int:
        return int(self.normal_k) if self.normal_k is not None else int(self.k_neighbors)

    @property
    def effective_model_cost(self) -> float:
        if self.model_cost is not None:
            return float(self.model_cost)
        return 0.5 * float(self.min_support_points) * float(self.outlier_penalty)

    def validate(self) -> "ExtractionConfig":
        """Check every parameter; raise InvalidConfiguration on the first bad one."""
        if int(self.k_neighbors) <= 0:
            raise InvalidConfiguration(f"k_neighbors must be > 0, got {self.k_neighbors}")
        if int(self.min_support_points) <= 0:
            raise InvalidConfiguration(
                f"min_support_points must be > 0, got {self.min_support_points}"
            )
        if int(self.n_constraints) < 3:
            raise InvalidConfiguration(f"n_constraints must be >= 3, got {self.n_constraints}")
        if not np.isfinite(self.outlier_penalty) or self.outlier_penalty < 0:
            raise InvalidConfiguration(
                f"outlier_penalty must be a finite value >= 0, got {self.outlier_penalty}"
            )
        if self.normal_k is not None and int(self.normal_k) < 3:
            raise InvalidConfiguration(f"normal_k must be >= 3, got {self.normal_k}")
        if self.distance_threshold is not None and (
            not np.isfinite(self.distance_threshold) or self.distance_threshold <= 0
        ):
            raise InvalidConfiguration(
                f"distance_threshold must be > 0, got {self.distance_threshold}"
            )
        if self.model_cost is not None and (not np.isfinite(self.model_cost) or self.model_cost < 0):
            raise InvalidConfiguration(f"model_cost must be >= 0, got {self.model_cost}")
        if not 0.0 < self.normal_threshold_deg <= 90.0:
            raise InvalidConfiguration(
                f"normal_threshold_deg must be in (0, 90], got {self.normal_threshold_deg}"
            )
        if not 0.0 <= self.merge_angle_deg <= 90.0:
            raise InvalidConfiguration(
                f"merge_angle_deg must be in [0, 90], got {self.merge_angle_deg}"
            )
        for name in ("angle_weight", "smoothness_weight", "merge_distance_factor",
                     "proposal_ratio", "min_uncovered_fraction", "energy_tol"):
            value = getattr(self, name)
            if not np.isfinite(value) or value < 0:
                raise InvalidConfiguration(f"{name} must be a finite value >= 0, got {value}")
        for name in ("min_proposals", "max_failures", "grow_iters", "max_iterations",
                     "max_label_passes", "n_jobs"):
            if int(getattr(self, name)) < 1:
                raise InvalidConfiguration(f"{name} must be >= 1, got {getattr(self, name)}")
        if int(self.regeneration_retries) < 0:
            raise InvalidConfiguration(
                f"regeneration_retries must be >= 0, got {self.regeneration_retries}"
            )
        if self.data_cost not in DATA_COST_NAMES:
            raise InvalidConfiguration(
                f"Unknown data_cost {self.data_cost!r}; expected one of {DATA_COST_NAMES}"
            )
        if self.smoothness not in SMOOTHNESS_NAMES:
            raise InvalidConfiguration(
                f"Unknown smoothness {self.smoothness!r}; expected one of {SMOOTHNESS_NAMES}"
            )
        if self.oracle not in ORACLE_NAMES:
            raise InvalidConfiguration(
                f"Unknown oracle {self.oracle!r}; expected one of {ORACLE_NAMES}"
            )
        return self

    def replace(self, **overrides: Any) -> "ExtractionConfig":
        """Return a copy with the given fields overridden (None values are ignored)."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractionConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidConfiguration(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)


# Built-in presets
CONFIG_PRESETS: Dict[str, ExtractionConfig] = {
    "default": ExtractionConfig(),
    "indoor_scan": ExtractionConfig(
        k_neighbors=20,
        min_support_points=200,
        n_constraints=5,
        outlier_penalty=1.0,
        merge_angle_deg=8.0,
    ),
    "outdoor_lidar": ExtractionConfig(
        k_neighbors=12,
        min_support_points=100,
        n_constraints=4,
        outlier_penalty=1.5,
        normal_threshold_deg=35.0,
        smoothness="gaussian",
    ),
}


def load_config(filepath: str, base: Optional[ExtractionConfig] = None) -> ExtractionConfig:
    """Load overrides from a JSON file on top of ``base`` (default preset if None)."""
    path = Path(filepath)
    with open(path, "r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"Config file {filepath} must contain a JSON object")
    base = base if base is not None else CONFIG_PRESETS["default"]
    merged = base.to_dict()
    merged.update(data)
    return ExtractionConfig.from_dict(merged).validate()
