"""Shared test helpers for livetalk tests.

Mock sessions stand in for ``onnxruntime.InferenceSession``: they expose
``get_inputs()`` / ``get_outputs()`` metadata and a ``run(output_names,
feeds)`` that returns one array per output.
"""

from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np

from livetalk.config import LiveTalkConfig


# ── Sessions ──

class TensorMeta:
    """Input/output metadata like ``onnxruntime.NodeArg``."""

    def __init__(self, name: str, shape: Sequence, type: str = "tensor(float)"):
        self.name = name
        self.shape = list(shape)
        self.type = type


class MockSession:
    """Session whose outputs come from ``fn(feeds) -> list of arrays``."""

    def __init__(
        self,
        inputs: Sequence[Tuple],
        outputs: Sequence[Tuple],
        fn: Callable[[Dict[str, np.ndarray]], List[np.ndarray]],
    ):
        self._inputs = [TensorMeta(*spec) for spec in inputs]
        self._outputs = [TensorMeta(*spec) for spec in outputs]
        self._fn = fn
        self.calls: List[Dict[str, np.ndarray]] = []

    def get_inputs(self):
        return list(self._inputs)

    def get_outputs(self):
        return list(self._outputs)

    def run(self, output_names, feeds):
        self.calls.append({k: np.array(v, copy=True) for k, v in feeds.items()})
        return self._fn(feeds)


class MockSessionFactory:
    """``(spec, precision) -> session`` built from per-model builders.

    Records every load as ``(name, precision)`` and keeps the latest session
    of each model in ``sessions``.
    """

    def __init__(self, builders: Dict[str, Callable[[], MockSession]]):
        self._builders = dict(builders)
        self.loads: List[Tuple[str, str]] = []
        self.sessions: Dict[str, MockSession] = {}

    def __call__(self, spec, precision):
        if spec.name not in self._builders:
            raise FileNotFoundError(f"{spec.name} model not found")
        session = self._builders[spec.name]()
        self.loads.append((spec.name, precision.value))
        self.sessions[spec.name] = session
        return session

    def load_count(self, name: str) -> int:
        return sum(1 for n, _ in self.loads if n == name)


def constant_session(
    inputs: Sequence[Tuple], outputs: Sequence[Tuple], values: Sequence[np.ndarray]
) -> MockSession:
    return MockSession(inputs, outputs, lambda feeds: [np.array(v, copy=True) for v in values])


def make_config(tmp_path, **kwargs) -> LiveTalkConfig:
    return LiveTalkConfig(models_dir=str(tmp_path), **kwargs)


# ── Frames ──

def create_frame(width: int = 512, height: int = 512, value: int = 0) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


def create_gradient_frame(width: int = 512, height: int = 512) -> np.ndarray:
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[..., 0] = (np.arange(width) * 255 // max(width - 1, 1))[np.newaxis, :]
    frame[..., 1] = (np.arange(height) * 255 // max(height - 1, 1))[:, np.newaxis]
    frame[..., 2] = 96
    return frame


# ── Landmarks ──

def unit_face_layout(n: int = 106) -> np.ndarray:
    """Face-like landmark layout in a unit square (x right, y down).

    Eyes, lips and the nose line sit where the 106-point indices expect
    them; the remaining points lie on an ellipse around the face.
    """
    t = np.linspace(0, 2 * np.pi, n, endpoint=False)
    pts = np.stack([0.5 + 0.4 * np.cos(t), 0.5 + 0.45 * np.sin(t)], axis=1)
    for i in (33, 35, 40, 39):
        pts[i] = (0.32, 0.38)
    for i in (87, 89, 94, 93):
        pts[i] = (0.68, 0.38)
    pts[52] = (0.5, 0.70)
    pts[61] = (0.5, 0.78)
    pts[65] = (0.5, 0.50)
    pts[66] = (0.5, 0.56)
    pts[67] = (0.5, 0.62)
    return pts


def landmarks_in_box(box, n: int = 106) -> np.ndarray:
    x1, y1, x2, y2 = box
    unit = unit_face_layout(n)
    return np.stack([x1 + unit[:, 0] * (x2 - x1), y1 + unit[:, 1] * (y2 - y1)], axis=1)


# ── Face models ──

STRIDES = (8, 16, 32)


def detector_outputs(
    boxes: Sequence[Sequence[float]], scores: Sequence[float], input_size: int = 512
) -> List[np.ndarray]:
    """SCRFD outputs placing each canvas box on the stride-32 anchor nearest its centre."""
    outs_score, outs_bbox, outs_kps = [], [], []
    for stride in STRIDES:
        n = (input_size // stride) ** 2 * 2
        outs_score.append(np.zeros((n, 1), dtype=np.float32))
        outs_bbox.append(np.zeros((n, 4), dtype=np.float32))
        outs_kps.append(np.zeros((n, 10), dtype=np.float32))

    grid = input_size // 32
    used = set()
    for box, score in zip(boxes, scores):
        x1, y1, x2, y2 = box
        gx = int(np.clip(round((x1 + x2) / 2 / 32), 0, grid - 1))
        gy = int(np.clip(round((y1 + y2) / 2 / 32), 0, grid - 1))
        idx = (gy * grid + gx) * 2
        if idx in used:
            idx += 1
        used.add(idx)
        ax, ay = gx * 32.0, gy * 32.0
        outs_score[2][idx, 0] = score
        outs_bbox[2][idx] = [(ax - x1) / 32, (ay - y1) / 32, (x2 - ax) / 32, (y2 - ay) / 32]
        kps = np.array([
            (0.3, 0.4), (0.7, 0.4), (0.5, 0.55), (0.35, 0.75), (0.65, 0.75),
        ])
        kps = np.stack([x1 + kps[:, 0] * (x2 - x1), y1 + kps[:, 1] * (y2 - y1)], axis=1)
        outs_kps[2][idx] = ((kps - (ax, ay)) / 32).reshape(-1)
    return outs_score + outs_bbox + outs_kps


def detector_session(script: Sequence[Tuple[Sequence, Sequence]]) -> MockSession:
    """Detector returning ``script[i]`` = (boxes, scores) on call i, the last one repeating."""
    state = {"call": 0}

    def fn(feeds):
        i = min(state["call"], len(script) - 1)
        state["call"] += 1
        boxes, scores = script[i]
        return detector_outputs(boxes, scores)

    outputs = []
    for kind, width in (("score", 1), ("bbox", 4), ("kps", 10)):
        for stride in STRIDES:
            outputs.append((f"{kind}_{stride}", ["N", width]))
    return MockSession([("input.1", [1, 3, 512, 512])], outputs, fn)


def landmark106_session() -> MockSession:
    """106-point model seeing a face that fills the 1/1.5 centre of its crop."""
    pts = (unit_face_layout(106) - 0.5) * 2.0 / 1.5
    return constant_session(
        [("data", [1, 3, 192, 192])], [("fc1", [1, 212])],
        [pts.reshape(1, -1).astype(np.float32)],
    )


def refiner_session(n: int = 203) -> MockSession:
    pts = 0.25 + unit_face_layout(n) * 0.5
    return constant_session(
        [("input", [1, 3, 224, 224])],
        [("out0", [1, 214]), ("out1", [1, 1]), ("landmarks", [1, n * 2])],
        [
            np.zeros((1, 214), dtype=np.float32),
            np.zeros((1, 1), dtype=np.float32),
            pts.reshape(1, -1).astype(np.float32),
        ],
    )


def parsing_session(face_class: int = 1) -> MockSession:
    """Parser labelling every pixel with *face_class*."""
    logits = np.zeros((1, 19, 64, 64), dtype=np.float32)
    logits[0, face_class] = 10.0
    return constant_session(
        [("input", [1, 3, 512, 512])], [("out", [1, 19, 64, 64])], [logits]
    )


def face_builders(script=None) -> Dict[str, Callable[[], MockSession]]:
    """Builders for the four face models. Default script: one 200x240 face."""
    script = script or [([(156, 136, 356, 376)], [0.95])]
    return {
        "det_10g": lambda: detector_session(script),
        "2d106det": landmark106_session,
        "landmark": refiner_session,
        "face_parsing": parsing_session,
    }


# ── Motion models ──

NUM_KP = 21

MOTION_INPUTS = [("img", [1, 3, 256, 256])]
MOTION_OUTPUTS = [
    ("pitch", [1, 66]), ("yaw", [1, 66]), ("roll", [1, 66]),
    ("t", [1, 3]), ("exp", [1, NUM_KP * 3]), ("scale", [1, 1]), ("kp", [1, NUM_KP * 3]),
]


def headpose_logits(peak: int = 32, bins: int = 66) -> np.ndarray:
    """Logits peaked on bins ``peak`` and ``peak + 1``; 32 decodes to 0 degrees."""
    logits = np.zeros((1, bins), dtype=np.float32)
    logits[0, peak] = logits[0, peak + 1] = 5.0
    return logits


def motion_outputs(
    expression_value: float = 0.0,
    scale: float = 1.0,
    translation=(0.0, 0.0, 0.0),
    pose=(32, 32, 32),
) -> List[np.ndarray]:
    kp = np.linspace(-0.5, 0.5, NUM_KP * 3, dtype=np.float32).reshape(1, -1)
    return [
        *(headpose_logits(peak) for peak in pose),
        np.asarray(translation, dtype=np.float32).reshape(1, 3),
        np.full((1, NUM_KP * 3), expression_value, dtype=np.float32),
        np.full((1, 1), scale, dtype=np.float32),
        kp,
    ]


def motion_session(expression_value: float = 0.0, scale: float = 1.0) -> MockSession:
    return constant_session(MOTION_INPUTS, MOTION_OUTPUTS, motion_outputs(expression_value, scale))


def sequence_session(
    inputs: Sequence[Tuple], outputs: Sequence[Tuple], sequence: Sequence[List[np.ndarray]]
) -> MockSession:
    """Session returning ``sequence[i]`` on call ``i``, then repeating the last."""
    calls = [0]

    def fn(feeds):
        values = sequence[min(calls[0], len(sequence) - 1)]
        calls[0] += 1
        return [np.array(v, copy=True) for v in values]

    return MockSession(inputs, outputs, fn)


def motion_builders(
    warp_value: float = 0.5, motion=None, stitching_delta=None
) -> Dict[str, Callable[[], MockSession]]:
    """LivePortrait sessions.

    Args:
        motion: Motion extractor outputs per call (see :func:`motion_outputs`);
            constant neutral motion when omitted.
        stitching_delta: ``(K * 3 + 2,)`` stitching output; zeros when omitted.
    """
    delta = np.zeros(NUM_KP * 3 + 2, dtype=np.float32) if stitching_delta is None else stitching_delta
    motion_factory = (
        motion_session if motion is None
        else lambda: sequence_session(MOTION_INPUTS, MOTION_OUTPUTS, motion)
    )
    return {
        "appearance_feature_extractor": lambda: constant_session(
            [("img", [1, 3, 256, 256])], [("f_s", [1, 32, 16, 8, 8])],
            [np.ones((1, 32, 16, 8, 8), dtype=np.float32)],
        ),
        "motion_extractor": motion_factory,
        "stitching": lambda: constant_session(
            [("input", [1, NUM_KP * 6])], [("out", [1, NUM_KP * 3 + 2])],
            [np.asarray(delta, dtype=np.float32).reshape(1, -1)],
        ),
        "warping_spade": lambda: constant_session(
            [("feature_3d", [1, 32, 16, 8, 8]), ("kp_driving", [1, NUM_KP, 3]),
             ("kp_source", [1, NUM_KP, 3])],
            [("out", [1, 3, 512, 512])],
            [np.full((1, 3, 512, 512), warp_value, dtype=np.float32)],
        ),
    }


# ── Lip-sync models ──

WHISPER_LAYERS = 5


def whisper_session(seq_len: int = 1500) -> MockSession:
    def fn(feeds):
        features = np.zeros((1, seq_len, WHISPER_LAYERS, 384), dtype=np.float32)
        features += np.arange(seq_len, dtype=np.float32)[np.newaxis, :, np.newaxis, np.newaxis]
        return [features]

    return MockSession(
        [("input_features", [1, 80, 3000])],
        [("audio_features_all_layers", [1, seq_len, WHISPER_LAYERS, 384])],
        fn,
    )


def musetalk_builders(decoded_value: float = 0.0) -> Dict[str, Callable[[], MockSession]]:
    def encode(feeds):
        image = next(iter(feeds.values()))
        return [np.full((1, 4, 32, 32), float(image.mean()), dtype=np.float32)]

    return {
        "vae_encoder": lambda: MockSession(
            [("image", [1, 3, 256, 256])], [("latents", [1, 4, 32, 32])], encode
        ),
        "unet": lambda: MockSession(
            [("latent", [1, 8, 32, 32]), ("audio", [1, 50, 384])],
            [("pred", [1, 4, 32, 32])],
            lambda feeds: [np.array(feeds["latent"][:, :4], copy=True)],
        ),
        "vae_decoder": lambda: constant_session(
            [("latents", [1, 4, 32, 32])], [("image", [1, 3, 256, 256])],
            [np.full((1, 3, 256, 256), decoded_value, dtype=np.float32)],
        ),
        "positional_encoding": lambda: MockSession(
            [("audio", [1, 50, 384])], [("encoded", [1, 50, 384])],
            lambda feeds: [np.array(feeds["audio"], copy=True)],
        ),
        "whisper_encoder": whisper_session,
    }


def all_builders(script=None) -> Dict[str, Callable[[], MockSession]]:
    builders = face_builders(script)
    builders.update(motion_builders())
    builders.update(musetalk_builders())
    return builders


def sine_audio(seconds: float, sample_rate: int = 16000, freq: float = 220.0) -> np.ndarray:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (0.3 * np.sin(2 * np.pi * freq * t)).astype(np.float32)
