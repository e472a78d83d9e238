"""Runtime configuration for the matching pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from facewatch.io_utils import load_yaml
from facewatch.recognition.metrics import Metric
from facewatch.types import COVERING_NOTICE, UNKNOWN_LABEL

LOGGER = logging.getLogger("facewatch.config")


@dataclass
class MatchConfig:
    """Startup-time knobs for face matching.

    ``l2_threshold`` rejects: a best mean distance above it means "Unknown".
    ``cosine_threshold`` accepts: a best mean similarity above it is a match.
    Defaults assume L2-normalised ArcFace embeddings, where an L2 distance of
    1.0 corresponds to a cosine similarity of 0.5.
    """

    metric: Metric = Metric.L2
    l2_threshold: float = 1.0
    cosine_threshold: float = 0.4
    covering_check_enabled: bool = True
    covering_notice: str = COVERING_NOTICE
    unknown_label: str = UNKNOWN_LABEL
    max_face_workers: int = 1

    def __post_init__(self) -> None:
        self.metric = Metric.parse(self.metric)
        self.l2_threshold = float(self.l2_threshold)
        self.cosine_threshold = float(self.cosine_threshold)
        self.max_face_workers = int(self.max_face_workers)
        if self.l2_threshold < 0:
            raise ValueError(f"l2_threshold must be >= 0, got {self.l2_threshold}")
        if not -1.0 <= self.cosine_threshold <= 1.0:
            raise ValueError(f"cosine_threshold must lie in [-1, 1], got {self.cosine_threshold}")
        if self.max_face_workers < 1:
            raise ValueError(f"max_face_workers must be >= 1, got {self.max_face_workers}")
        if not self.unknown_label or not self.covering_notice:
            raise ValueError("unknown_label and covering_notice must be non-empty")

    @property
    def threshold(self) -> float:
        """Threshold that applies to the configured metric."""
        return self.l2_threshold if self.metric is Metric.L2 else self.cosine_threshold

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "MatchConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            LOGGER.warning("Ignoring unknown match config keys: %s", unknown)
        return cls(**{k: v for k, v in data.items() if k in known})

    def with_overrides(self, **overrides: Any) -> "MatchConfig":
        """Return a copy with every non-None override applied."""
        values: Dict[str, Any] = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return MatchConfig(**values)


def load_config(path: Optional[Path]) -> MatchConfig:
    """Load ``MatchConfig`` from the ``match`` section of a YAML file.

    A missing path yields the defaults. The file may also hold the keys at
    top level.
    """
    if path is None:
        return MatchConfig()
    path = Path(path)
    if not path.exists():
        LOGGER.warning("Config %s not found; using defaults", path)
        return MatchConfig()
    data = load_yaml(path)
    section = data.get("match", data)
    config = MatchConfig.from_mapping(section)
    LOGGER.info(
        "Loaded match config %s: metric=%s l2_th=%.3f cosine_th=%.3f covering_check=%s",
        path,
        config.metric.value,
        config.l2_threshold,
        config.cosine_threshold,
        config.covering_check_enabled,
    )
    return config
