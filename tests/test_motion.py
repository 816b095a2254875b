"""Tests for livetalk.motion: keypoint math, mask templates and the LivePortrait pipeline."""

import cv2
import numpy as np
import pytest

from livetalk.errors import DetectionFailure, InputError
from livetalk.face import FaceAnalysis
from livetalk.geometry import rotation_matrix
from livetalk.motion import (
    LivePortraitPipeline,
    MotionInfo,
    PredictionState,
    apply_motion,
    apply_stitching,
    compose_driving_motion,
    default_mask_template,
    headpose_from_logits,
    load_mask_template,
    transform_keypoints,
)
from livetalk.motion.mask import resolve_mask_template
from livetalk.motion.transfer import motion_from_outputs, stitching_features
from livetalk.pipeline import OutputStream

from helpers import (
    NUM_KP,
    MockSessionFactory,
    create_frame,
    create_gradient_frame,
    face_builders,
    headpose_logits,
    make_config,
    motion_builders,
    motion_outputs,
)


# ── Mocks ──

def motion(pitch=0.0, yaw=0.0, roll=0.0, t=(0, 0, 0), exp=0.0, scale=1.0, k=4):
    return MotionInfo(
        pitch=pitch,
        yaw=yaw,
        roll=roll,
        translation=np.array(t, dtype=np.float32),
        expression=np.full((k, 3), exp, dtype=np.float32),
        scale=np.array([scale], dtype=np.float32),
        keypoints=np.arange(k * 3, dtype=np.float32).reshape(k, 3) / 10,
    )


def make_pipeline(tmp_path, script=None, motion=None, stitching_delta=None, **config_kwargs):
    builders = face_builders(script)
    builders.update(motion_builders(motion=motion, stitching_delta=stitching_delta))
    factory = MockSessionFactory(builders)
    config = make_config(tmp_path, **config_kwargs)
    analysis = FaceAnalysis(config, session_factory=factory)
    return LivePortraitPipeline(analysis, config, session_factory=factory), factory


# ── Tests ──

class TestHeadpose:
    def test_symmetric_logits_are_zero_degrees(self):
        assert headpose_from_logits(headpose_logits()) == pytest.approx(0.0, abs=1e-6)

    def test_peaked_logits(self):
        logits = np.full(66, -100.0)
        logits[10] = 100.0
        assert headpose_from_logits(logits) == pytest.approx(10 * 3 - 97.5)

    def test_single_value_is_degrees(self):
        assert headpose_from_logits(np.array([[12.5]])) == 12.5

    def test_motion_from_outputs(self):
        outputs = [
            headpose_logits(), headpose_logits(), headpose_logits(),
            np.array([[1, 2, 3]], np.float32),
            np.zeros((1, 12), np.float32),
            np.array([[1.5]], np.float32),
            np.ones((1, 12), np.float32),
        ]
        info = motion_from_outputs(outputs)
        assert info.num_keypoints == 4
        assert info.expression.shape == (4, 3)
        assert info.scale.tolist() == [1.5]
        outputs[6][:] = 7
        assert info.keypoints.max() == 1

    def test_motion_from_too_few_outputs(self):
        with pytest.raises(ValueError):
            motion_from_outputs([np.zeros(1)] * 6)


class TestKeypointMath:
    def test_transform_keypoints_skips_z_translation(self):
        info = motion(t=(1, 2, 3), scale=2.0)
        kp = transform_keypoints(info)
        expected = info.keypoints * 2
        expected[:, 0] += 1
        expected[:, 1] += 2
        np.testing.assert_allclose(kp, expected, atol=1e-6)

    def test_transform_keypoints_uses_pose(self):
        info = motion(roll=90.0)
        np.testing.assert_allclose(
            transform_keypoints(info), info.keypoints @ rotation_matrix(0, 0, 90), atol=1e-6
        )

    def test_identical_driving_reproduces_source(self):
        source = motion(pitch=5, yaw=-10, roll=3, t=(0.1, 0.2, 0.3), exp=0.05, scale=1.2)
        driving = motion(pitch=20, yaw=15, roll=-4, t=(1, 1, 1), exp=0.3, scale=0.8)
        r_new, exp_new, scale_new, t_new = compose_driving_motion(source, driving, driving)
        np.testing.assert_allclose(r_new, rotation_matrix(5, -10, 3), atol=1e-9)
        np.testing.assert_allclose(exp_new, source.expression)
        np.testing.assert_allclose(scale_new, source.scale)
        np.testing.assert_allclose(t_new, [0.1, 0.2, 0.0], atol=1e-6)

    def test_relative_motion(self):
        source = motion(exp=0.1, scale=1.0, t=(0, 0, 0))
        driving0 = motion(exp=0.2, scale=2.0, t=(1, 1, 1))
        driving = motion(yaw=30, exp=0.5, scale=3.0, t=(2, 3, 4))
        r_new, exp_new, scale_new, t_new = compose_driving_motion(source, driving, driving0)
        np.testing.assert_allclose(r_new, rotation_matrix(0, 30, 0), atol=1e-9)
        np.testing.assert_allclose(exp_new, 0.4, atol=1e-6)
        np.testing.assert_allclose(scale_new, [1.5])
        np.testing.assert_allclose(t_new, [1, 2, 0])

    def test_apply_motion_translates_all_axes(self):
        kp = np.ones((2, 3), np.float32)
        out = apply_motion(kp, np.eye(3), np.zeros((2, 3)), np.array([2.0]), np.array([1, 2, 3]))
        np.testing.assert_allclose(out, [[3, 4, 5], [3, 4, 5]])

    def test_stitching_features(self):
        feats = stitching_features(np.zeros((NUM_KP, 3)), np.ones((NUM_KP, 3)))
        assert feats.shape == (1, NUM_KP * 6)
        assert feats[0, :NUM_KP * 3].max() == 0
        assert feats[0, NUM_KP * 3:].min() == 1

    def test_apply_stitching_offsets_and_shift(self):
        kp = np.zeros((2, 3), np.float32)
        delta = np.array([1, 1, 1, 2, 2, 2, 10, 20], np.float32)
        out = apply_stitching(kp, delta)
        np.testing.assert_allclose(out, [[11, 21, 1], [12, 22, 2]])
        assert kp.max() == 0

    def test_apply_stitching_without_shift(self):
        out = apply_stitching(np.zeros((2, 3)), np.ones(6))
        np.testing.assert_allclose(out, 1.0)


class TestMaskTemplate:
    def test_default_template(self):
        mask = default_mask_template()
        assert mask.shape == (512, 512)
        assert mask[256, 256] == 255
        assert mask[0, 0] == 0

    def test_load_resizes(self, tmp_path):
        path = tmp_path / "mask.png"
        cv2.imwrite(str(path), np.full((64, 64), 200, np.uint8))
        mask = load_mask_template(path)
        assert mask.shape == (512, 512)
        assert mask.min() == 200

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_mask_template(tmp_path / "nope.png")

    def test_resolution_order(self, tmp_path):
        configured = tmp_path / "configured.png"
        cv2.imwrite(str(configured), np.full((512, 512), 10, np.uint8))
        cv2.imwrite(str(tmp_path / "mask_template.png"), np.full((512, 512), 20, np.uint8))
        assert resolve_mask_template(str(configured), tmp_path).max() == 10
        assert resolve_mask_template(None, tmp_path).max() == 20
        assert resolve_mask_template(None, tmp_path / "empty").max() == 255


class TestSourcePreprocess:
    def test_limits_long_side(self):
        out = LivePortraitPipeline.preprocess_source(create_frame(2000, 1000))
        assert out.shape == (640, 1280, 3)

    def test_crops_to_even(self):
        out = LivePortraitPipeline.preprocess_source(create_frame(301, 201))
        assert out.shape == (200, 300, 3)

    def test_small_even_frame_untouched(self):
        frame = create_frame(64, 32)
        assert LivePortraitPipeline.preprocess_source(frame) is frame


class TestLivePortraitPipeline:
    def test_process_source(self, tmp_path):
        pipeline, _ = make_pipeline(tmp_path)
        with pipeline.session():
            source = pipeline.process_source(create_gradient_frame())
        assert source.crop_info.image_crop.shape == (512, 512, 3)
        assert source.crop_info.image_crop_256.shape == (256, 256, 3)
        assert source.features.shape == (1, 32, 16, 8, 8)
        assert source.keypoints.shape == (NUM_KP, 3)
        assert source.paste_mask.shape == (512, 512)
        np.testing.assert_allclose(source.rotation, np.eye(3), atol=1e-6)

    def test_source_without_face(self, tmp_path):
        pipeline, _ = make_pipeline(tmp_path, script=[([], [])])
        with pipeline.session():
            with pytest.raises(DetectionFailure):
                pipeline.process_source(create_frame())

    def test_driving_frame_without_face(self, tmp_path):
        script = [([(156, 136, 356, 376)], [0.95]), ([], [])]
        pipeline, _ = make_pipeline(tmp_path, script=script)
        with pipeline.session():
            source = pipeline.process_source(create_gradient_frame())
            with pytest.raises(DetectionFailure) as info:
                pipeline.process_driving_frame(source, PredictionState(), create_frame())
        assert info.value.frame_index == 0

    def test_driving_frame_pastes_render(self, tmp_path):
        pipeline, _ = make_pipeline(tmp_path)
        frame = create_gradient_frame()
        with pipeline.session():
            source = pipeline.process_source(frame)
            state = PredictionState()
            out = pipeline.process_driving_frame(source, state, frame)
        assert out.shape == frame.shape
        assert out[256, 256].tolist() == [128, 128, 128]
        assert out[0, 0].tolist() == frame[0, 0].tolist()
        assert state.frames_processed == 1
        assert state.initial_motion is not None
        assert state.landmarks.shape == (203, 2)

    def test_source_as_first_driving_frame_keeps_source_keypoints(self, tmp_path):
        posed = motion_outputs(0.05, 1.2, (0.1, -0.2, 0.3), pose=(35, 30, 33))
        pipeline, factory = make_pipeline(tmp_path, motion=[posed])
        frame = create_gradient_frame()
        with pipeline.session():
            source = pipeline.process_source(frame)
            pipeline.process_driving_frame(source, PredictionState(), frame)
        assert not np.allclose(source.rotation, np.eye(3), atol=1e-3)

        (stitch,) = factory.sessions["stitching"].calls
        np.testing.assert_allclose(
            stitch["input"], stitching_features(source.keypoints, source.keypoints), atol=1e-5
        )
        (warp,) = factory.sessions["warping_spade"].calls
        np.testing.assert_array_equal(warp["feature_3d"], source.features)
        np.testing.assert_allclose(warp["kp_driving"][0], source.keypoints, atol=1e-5)
        np.testing.assert_allclose(warp["kp_source"][0], source.keypoints, atol=1e-6)

    def test_relative_motion_and_stitching_reach_the_warper(self, tmp_path):
        neutral = motion_outputs()
        delta = np.zeros(NUM_KP * 3 + 2, dtype=np.float32)
        delta[:NUM_KP * 3] = 0.01
        delta[NUM_KP * 3:] = (0.2, -0.1)
        # Source, first driving frame, then a frame with more expression
        sequence = [neutral, neutral, motion_outputs(expression_value=0.1)]
        pipeline, factory = make_pipeline(tmp_path, motion=sequence, stitching_delta=delta)
        frame = create_gradient_frame()
        state = PredictionState()
        with pipeline.session():
            source = pipeline.process_source(frame)
            pipeline.process_driving_frame(source, state, frame)
            pipeline.process_driving_frame(source, state, frame)

        raw = source.keypoints + 0.1
        stitch_calls = factory.sessions["stitching"].calls
        assert len(stitch_calls) == 2
        np.testing.assert_allclose(
            stitch_calls[1]["input"], stitching_features(source.keypoints, raw), atol=1e-5
        )

        first, second = factory.sessions["warping_spade"].calls
        np.testing.assert_allclose(
            first["kp_driving"][0], apply_stitching(source.keypoints, delta), atol=1e-5
        )
        np.testing.assert_allclose(second["kp_driving"][0], apply_stitching(raw, delta), atol=1e-5)
        np.testing.assert_allclose(second["kp_source"][0], source.keypoints, atol=1e-6)

    def test_detects_only_on_first_driving_frame(self, tmp_path):
        pipeline, factory = make_pipeline(tmp_path)
        frame = create_gradient_frame()
        stream = OutputStream()
        produced = pipeline.generate(frame, [frame] * 4, stream)
        assert produced == 4
        assert stream.finished
        assert stream.total_expected_frames == 4
        assert len(stream) == 4
        # Source detection plus the first driving frame
        assert len(factory.sessions["det_10g"].calls) == 2
        assert len(factory.sessions["landmark"].calls) == 4

    def test_generate_accepts_iterators(self, tmp_path):
        pipeline, _ = make_pipeline(tmp_path)
        frame = create_gradient_frame()
        stream = OutputStream()
        pipeline.generate(frame, iter([frame, frame]), stream)
        frames = list(stream)
        assert len(frames) == 2
        assert stream.total_expected_frames == 0

    def test_generate_failure_finishes_stream(self, tmp_path):
        script = [([(156, 136, 356, 376)], [0.95]), ([], [])]
        pipeline, _ = make_pipeline(tmp_path, script=script)
        frame = create_gradient_frame()
        stream = OutputStream()
        with pytest.raises(DetectionFailure):
            pipeline.generate(frame, [create_frame()], stream)
        assert stream.wait(timeout=0)
        assert isinstance(stream.error, DetectionFailure)
        with pytest.raises(DetectionFailure):
            list(stream)

    def test_on_demand_releases_models(self, tmp_path):
        pipeline, factory = make_pipeline(tmp_path, memory_usage="optimal")
        frame = create_gradient_frame()
        pipeline.generate(frame, [frame], OutputStream())
        pipeline.generate(frame, [frame], OutputStream())
        assert factory.load_count("warping_spade") == 2
        assert factory.load_count("det_10g") == 2

    def test_warping_precision_default(self, tmp_path):
        pipeline, factory = make_pipeline(tmp_path)
        with pipeline.session():
            pass
        assert ("warping_spade", "fp16") in factory.loads
        assert ("stitching", "fp32") in factory.loads

    def test_invalid_driving_frame(self, tmp_path):
        pipeline, _ = make_pipeline(tmp_path)
        with pipeline.session():
            source = pipeline.process_source(create_gradient_frame())
            with pytest.raises(InputError):
                pipeline.process_driving_frame(source, PredictionState(), None)
