from pathlib import Path

import pytest

from facewatch.config import MatchConfig, load_config
from facewatch.recognition.metrics import Metric
from facewatch.types import COVERING_NOTICE, UNKNOWN_LABEL


def test_defaults():
    config = MatchConfig()
    assert config.metric is Metric.L2
    assert config.threshold == config.l2_threshold == 1.0
    assert config.cosine_threshold == 0.4
    assert config.unknown_label == UNKNOWN_LABEL
    assert config.covering_notice == COVERING_NOTICE


@pytest.mark.parametrize(
    "kwargs",
    [
        {"metric": "hamming"},
        {"l2_threshold": -0.1},
        {"cosine_threshold": 1.5},
        {"max_face_workers": 0},
        {"unknown_label": ""},
    ],
)
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ValueError):
        MatchConfig(**kwargs)


def test_from_mapping_ignores_unknown_keys():
    config = MatchConfig.from_mapping({"metric": "COSINE", "cosine_threshold": 0.6, "colour": "blue"})
    assert config.metric is Metric.COSINE
    assert config.threshold == pytest.approx(0.6)


def test_with_overrides_skips_none():
    base = MatchConfig(l2_threshold=0.8)
    updated = base.with_overrides(metric="cosine", l2_threshold=None, max_face_workers=4)
    assert updated.metric is Metric.COSINE
    assert updated.l2_threshold == pytest.approx(0.8)
    assert updated.max_face_workers == 4
    assert base.metric is Metric.L2


def test_load_config_reads_match_section(tmp_path: Path):
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        "match:\n"
        "  metric: cosine\n"
        "  cosine_threshold: 0.55\n"
        "  covering_check_enabled: false\n"
        "detector:\n"
        "  det_thresh: 0.6\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.metric is Metric.COSINE
    assert config.cosine_threshold == pytest.approx(0.55)
    assert config.covering_check_enabled is False


def test_load_config_missing_file_uses_defaults(tmp_path: Path):
    assert load_config(tmp_path / "absent.yaml") == MatchConfig()
    assert load_config(None) == MatchConfig()
