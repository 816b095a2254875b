"""CLI for livetalk: ``livetalk detect``, ``animate``, ``lipsync`` and ``models``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import cv2
import numpy as np

from livetalk.config import LiveTalkConfig
from livetalk.errors import LiveTalkError
from livetalk.runtime import MemoryUsage

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".bmp", ".webp"}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="livetalk",
        description="Portrait animation and audio-driven lip sync",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="YAML config file")
    common.add_argument("--models-dir", default=None, help="Root of the model tree")
    common.add_argument(
        "--memory-usage",
        choices=["quality", "performance", "balanced", "optimal"],
        default=None,
        help="Model load policy (default: from config)",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command")

    # livetalk detect
    detect_p = sub.add_parser("detect", parents=[common], help="Detect faces in an image")
    detect_p.add_argument("image", help="Input image")

    # livetalk animate
    animate_p = sub.add_parser(
        "animate", parents=[common], help="Animate a portrait with a driving video"
    )
    animate_p.add_argument("source", help="Source portrait image")
    animate_p.add_argument("driving", help="Driving video or image")
    animate_p.add_argument("-o", "--output", required=True, help="Output video path")

    # livetalk lipsync
    lipsync_p = sub.add_parser("lipsync", parents=[common], help="Lip-sync avatar frames to audio")
    lipsync_p.add_argument("avatar", nargs="+", help="Avatar images or a video")
    lipsync_p.add_argument("--audio", "-a", required=True, help="Audio file (wav, flac, ...)")
    lipsync_p.add_argument("-o", "--output", required=True, help="Output video path")

    # livetalk models
    sub.add_parser("models", parents=[common], help="Check the model tree")

    return parser


def _load_config(args: argparse.Namespace) -> LiveTalkConfig:
    config = LiveTalkConfig.from_yaml(args.config) if args.config else LiveTalkConfig()
    if args.models_dir:
        config.models_dir = args.models_dir
    if args.memory_usage:
        config.memory_usage = MemoryUsage.from_string(args.memory_usage)
    if args.verbose:
        config.log_level = "DEBUG"
    return config


# ── I/O ──

def _read_image(path: str) -> np.ndarray:
    image = cv2.imread(path, cv2.IMREAD_COLOR)
    if image is None:
        raise FileNotFoundError(f"Cannot read image: {path}")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def _iter_video(path: str) -> Iterator[np.ndarray]:
    cap = cv2.VideoCapture(path)
    if not cap.isOpened():
        raise FileNotFoundError(f"Cannot open video: {path}")
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            yield cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    finally:
        cap.release()


def _video_fps(path: str, default: float) -> float:
    cap = cv2.VideoCapture(path)
    try:
        fps = cap.get(cv2.CAP_PROP_FPS)
    finally:
        cap.release()
    return fps if fps and fps > 0 else default


def _is_image(path: str) -> bool:
    return Path(path).suffix.lower() in IMAGE_SUFFIXES


def _read_frames(paths: Sequence[str]) -> List[np.ndarray]:
    frames: List[np.ndarray] = []
    for path in paths:
        if _is_image(path):
            frames.append(_read_image(path))
        else:
            frames.extend(_iter_video(path))
    return frames


def _write_video(frames, output: str, fps: float) -> int:
    """Write RGB frames to *output*; returns the number written."""
    writer = None
    count = 0
    try:
        for frame in frames:
            if writer is None:
                # Lazy init on first frame
                h, w = frame.shape[:2]
                writer = cv2.VideoWriter(output, cv2.VideoWriter_fourcc(*"mp4v"), fps, (w, h))
            writer.write(cv2.cvtColor(frame, cv2.COLOR_RGB2BGR))
            count += 1
    finally:
        if writer is not None:
            writer.release()
    return count


# ── Commands ──

def _cmd_detect(args: argparse.Namespace) -> None:
    """Handle ``livetalk detect``."""
    from livetalk.face import FaceAnalysis

    config = _load_config(args)
    analysis = FaceAnalysis(config)
    try:
        with analysis.analysis_session():
            faces = analysis.detect(_read_image(args.image))
    finally:
        analysis.close()

    if not faces:
        print("No faces detected.")
        return
    for i, face in enumerate(faces):
        x1, y1, x2, y2 = face.bbox
        print(f"  face {i}: bbox=({x1:.1f}, {y1:.1f}, {x2:.1f}, {y2:.1f}) score={face.score:.3f}")


def _cmd_animate(args: argparse.Namespace) -> None:
    """Handle ``livetalk animate``."""
    from livetalk.pipeline import LiveTalkOrchestrator

    config = _load_config(args)
    source = _read_image(args.source)
    if _is_image(args.driving):
        driving = [_read_image(args.driving)]
        fps = float(config.fps)
    else:
        driving = _iter_video(args.driving)
        fps = _video_fps(args.driving, float(config.fps))

    with LiveTalkOrchestrator(config) as livetalk:
        count = _write_video(livetalk.animate(source, driving), args.output, fps)
    print(f"Saved {count} frames to {args.output}")


def _cmd_lipsync(args: argparse.Namespace) -> None:
    """Handle ``livetalk lipsync``."""
    import soundfile as sf

    from livetalk.pipeline import LiveTalkOrchestrator

    config = _load_config(args)
    frames = _read_frames(args.avatar)
    samples, sample_rate = sf.read(args.audio, dtype="float32")

    with LiveTalkOrchestrator(config) as livetalk:
        avatar = livetalk.prepare_avatar(frames)
        count = _write_video(livetalk.lipsync(avatar, samples, sample_rate), args.output, config.fps)
    print(f"Saved {count} frames to {args.output}")


def _all_model_specs():
    from livetalk.face.analysis import MODEL_SPECS as FACE_SPECS
    from livetalk.lipsync.musetalk import MODEL_SPECS as MUSETALK_SPECS
    from livetalk.lipsync.whisper import MODEL_SPEC as WHISPER_SPEC
    from livetalk.motion.liveportrait import MODEL_SPECS as LIVEPORTRAIT_SPECS

    return [
        *FACE_SPECS.values(),
        *LIVEPORTRAIT_SPECS.values(),
        *MUSETALK_SPECS.values(),
        WHISPER_SPEC,
    ]


def _cmd_models(args: argparse.Namespace) -> None:
    """Handle ``livetalk models``."""
    from livetalk.paths import external_data_file

    config = _load_config(args)
    specs = _all_model_specs()
    missing = set(config.missing_models(specs))

    print(f"Models: {config.models_path}")
    for spec in specs:
        path = config.spec_path(spec)
        status = "missing" if path in missing else "ok"
        extra = " (+data)" if external_data_file(path).is_file() else ""
        print(f"  {status:<8}{spec.sub_path}/{path.name}{extra}")

    if missing:
        raise FileNotFoundError(f"{len(missing)} of {len(specs)} model files missing")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``livetalk`` CLI."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    commands = {
        "detect": _cmd_detect,
        "animate": _cmd_animate,
        "lipsync": _cmd_lipsync,
        "models": _cmd_models,
    }
    try:
        commands[args.command](args)
    except (LiveTalkError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
