#!/usr/bin/env python3
"""CLI for running live face recognition over a video file or camera."""

from __future__ import annotations

import argparse
import logging
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import pandas as pd

from facewatch.config import MatchConfig, load_config
from facewatch.detectors.face_retina import RetinaFaceDetector
from facewatch.io_utils import dump_json, ensure_dir, infer_source_stem, load_yaml, setup_logging
from facewatch.recognition.covering import OnnxCoveringClassifier
from facewatch.recognition.embed_arcface import ArcFaceEmbedder, default_providers
from facewatch.recognition.enroll import enroll_directory
from facewatch.recognition.gallery import GalleryIndex
from facewatch.stream.analyser import FrameAnalyser
from facewatch.stream.pipeline import MatchPipeline
from facewatch.types import FrameResult

LOGGER = logging.getLogger("scripts.run_stream")

PREDICTION_COLUMNS = [
    "frame_idx",
    "face_idx",
    "x1",
    "y1",
    "x2",
    "y2",
    "label",
    "covering",
    "score",
    "frame_width",
    "frame_height",
    "elapsed_ms",
]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recognise enrolled people in a live frame stream")
    parser.add_argument("source", type=str, help="Video file path or integer camera index")
    parser.add_argument(
        "--gallery-dir",
        type=Path,
        required=True,
        help="Directory with one sub-directory of face images per identity",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/pipeline.yaml"),
        help="Pipeline configuration YAML",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("data/outputs"),
        help="Output directory root",
    )
    parser.add_argument("--metric", choices=["l2", "cosine"], default=None, help="Override match metric")
    parser.add_argument("--l2-threshold", type=float, default=None, help="Override L2 rejection threshold")
    parser.add_argument("--cosine-threshold", type=float, default=None, help="Override cosine acceptance threshold")
    covering_group = parser.add_mutually_exclusive_group()
    covering_group.add_argument(
        "--covering-model",
        type=str,
        default=None,
        help="ONNX mask classifier; enables the covering check",
    )
    covering_group.add_argument(
        "--no-covering-check",
        dest="covering_check",
        action="store_false",
        help="Disable the covering check",
    )
    covering_group.set_defaults(covering_check=None)
    parser.add_argument("--arcface-model", type=str, default=None, help="Optional ArcFace model override")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="ONNX execution providers (overrides platform defaults)",
    )
    parser.add_argument(
        "--face-workers",
        type=int,
        default=None,
        help="Threads used to classify the faces of one frame",
    )
    parser.add_argument(
        "--realtime",
        action="store_true",
        help="Pace video file reads at the source FPS, as a camera would",
    )
    parser.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def resolve_match_config(args: argparse.Namespace, pipeline_cfg: Dict[str, Any], base: MatchConfig) -> MatchConfig:
    """Apply CLI overrides on top of the configuration file."""
    covering_model = args.covering_model or (pipeline_cfg.get("covering") or {}).get("model_path")
    if args.covering_check is False:
        covering_enabled = False
    elif args.covering_model:
        covering_enabled = True
    else:
        covering_enabled = base.covering_check_enabled and bool(covering_model)
        if base.covering_check_enabled and not covering_model:
            LOGGER.warning("Covering check enabled in config but no covering model given; disabling it")
    return base.with_overrides(
        metric=args.metric,
        l2_threshold=args.l2_threshold,
        cosine_threshold=args.cosine_threshold,
        covering_check_enabled=covering_enabled,
        max_face_workers=args.face_workers,
    )


def resolve_providers(
    cli_providers: Optional[Sequence[str]],
    config_providers: Optional[Sequence[str]],
) -> Tuple[str, ...]:
    if cli_providers:
        return tuple(cli_providers)
    if config_providers:
        if isinstance(config_providers, str):
            return (config_providers,)
        return tuple(config_providers)
    return default_providers()


class PredictionRecorder:
    """Collects published frame results as flat rows."""

    def __init__(self) -> None:
        self.rows: List[Dict[str, Any]] = []
        self.frames: List[int] = []
        self._lock = threading.Lock()

    def __call__(self, result: FrameResult) -> None:
        rows = []
        for pred in result.predictions:
            x1, y1, x2, y2 = pred.bbox
            rows.append(
                {
                    "frame_idx": result.frame_idx,
                    "face_idx": pred.face_idx,
                    "x1": x1,
                    "y1": y1,
                    "x2": x2,
                    "y2": y2,
                    "label": pred.label,
                    "covering": pred.covering.value,
                    "score": pred.score,
                    "frame_width": result.frame_width,
                    "frame_height": result.frame_height,
                    "elapsed_ms": result.elapsed_ms,
                }
            )
        with self._lock:
            self.frames.append(result.frame_idx)
            self.rows.extend(rows)
        if result.predictions:
            LOGGER.info("Frame %d: %s", result.frame_idx, result.labels)

    def to_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self.rows)
        if not rows:
            return pd.DataFrame(columns=PREDICTION_COLUMNS)
        return pd.DataFrame(rows, columns=PREDICTION_COLUMNS)

    def label_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(row["label"] for row in self.rows))


def _open_source(source: str) -> cv2.VideoCapture:
    cap = cv2.VideoCapture(int(source)) if source.isdigit() else cv2.VideoCapture(source)
    if not cap.isOpened():
        raise RuntimeError(f"Unable to open video source {source}")
    return cap


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    pipeline_cfg = load_yaml(args.config) if args.config.exists() else {}
    config = resolve_match_config(args, pipeline_cfg, load_config(args.config))
    detector_cfg = pipeline_cfg.get("detector") or {}
    covering_cfg = pipeline_cfg.get("covering") or {}
    providers = resolve_providers(args.providers, pipeline_cfg.get("providers"))

    LOGGER.info(
        "Match config: metric=%s l2_th=%.3f cosine_th=%.3f covering_check=%s face_workers=%d providers=%s",
        config.metric.value,
        config.l2_threshold,
        config.cosine_threshold,
        config.covering_check_enabled,
        config.max_face_workers,
        providers,
    )

    detector = RetinaFaceDetector(
        providers=providers,
        det_size=tuple(detector_cfg.get("det_size", (640, 640))),
        det_thresh=float(detector_cfg.get("det_thresh", 0.5)),
        min_face_px=int(detector_cfg.get("min_face_px", 0)),
    )
    embedder = ArcFaceEmbedder(model_path=args.arcface_model, providers=providers)
    covering_classifier = None
    if config.covering_check_enabled:
        covering_classifier = OnnxCoveringClassifier(
            model_path=args.covering_model or covering_cfg["model_path"],
            providers=providers,
            input_size=tuple(covering_cfg.get("input_size", (224, 224))),
            covered_index=int(covering_cfg.get("covered_index", 0)),
            covered_threshold=float(covering_cfg.get("covered_threshold", 0.5)),
        )

    gallery = GalleryIndex()
    enroll_directory(gallery, args.gallery_dir, embedder, detector=detector)

    recorder = PredictionRecorder()
    pipeline = MatchPipeline(gallery, embedder, covering_classifier, config)
    cap = _open_source(args.source)
    fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
    frame_interval = 1.0 / fps
    LOGGER.info("Streaming source=%s fps=%.2f realtime=%s", args.source, fps, args.realtime)

    frames_read = 0
    with FrameAnalyser(detector, pipeline, on_result=recorder) as analyser:
        try:
            next_tick = time.perf_counter()
            while args.max_frames is None or frames_read < args.max_frames:
                ret, frame = cap.read()
                if not ret:
                    break
                analyser.submit(frame, frames_read)
                frames_read += 1
                if args.realtime:
                    next_tick += frame_interval
                    delay = next_tick - time.perf_counter()
                    if delay > 0:
                        time.sleep(delay)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted after %d frames", frames_read)
        finally:
            cap.release()
            analyser.wait_idle()
        stats = analyser.stats

    output_dir = ensure_dir(args.output_dir / infer_source_stem(args.source))
    stem = infer_source_stem(args.source)
    predictions_csv = output_dir / f"{stem}-predictions.csv"
    summary_json = output_dir / f"{stem}-summary.json"
    recorder.to_frame().to_csv(predictions_csv, index=False)
    dump_json(
        summary_json,
        {
            "source": args.source,
            "fps": fps,
            "gallery_identities": gallery.identities(),
            "config": config,
            "frames_seen": stats.frames_seen,
            "frames_processed": stats.frames_processed,
            "frames_dropped": stats.frames_dropped,
            "frames_failed": stats.frames_failed,
            "label_counts": recorder.label_counts(),
        },
    )
    LOGGER.info(
        "Stream outputs written: predictions=%s summary=%s (seen=%d processed=%d dropped=%d)",
        predictions_csv,
        summary_json,
        stats.frames_seen,
        stats.frames_processed,
        stats.frames_dropped,
    )


if __name__ == "__main__":
    main()
