"""Property-based tests for target-size bitrate planning.

**Feature: vidsqueeze, Property 1: Bitrate Plan Fits Target Size**
"""

import math

import pytest
from hypothesis import assume, given, settings, strategies as st

from vidsqueeze.modules.transcoding.exceptions import (
    CodecInvalid,
    CodecMissing,
    NoVideoStream,
    ProbeFailed,
    TargetNotSmaller,
    TargetSizeInvalid,
    TargetSizeMissing,
    UnrealisticBitrate,
)
from vidsqueeze.modules.transcoding.models import MediaDescriptor, MediaStream
from vidsqueeze.modules.transcoding.planner import (
    PlannerOptions,
    audio_bitrate_kbps,
    even_floor,
    output_dimensions,
    parse_remove_audio,
    parse_target_size,
    plan_bitrate,
    rotated_dimensions,
    round_half_up,
    size_in_mb,
    validate_codec,
)

MB = 1_000_000
NO_FLOOR = PlannerOptions(enforce_bitrate_floor=False)


def make_descriptor(
    duration=120.0,
    audio_bit_rate=128_000,
    with_audio=True,
    with_video=True,
    width=1920,
    height=1080,
    rotation=None,
) -> MediaDescriptor:
    streams = []
    if with_video:
        streams.append(MediaStream(0, "video", "h264", 2_500_000, width, height, rotation))
    if with_audio:
        streams.append(MediaStream(len(streams), "audio", "aac", audio_bit_rate))
    return MediaDescriptor(duration=duration, streams=tuple(streams))


target_strategy = st.integers(min_value=1, max_value=500)
duration_strategy = st.floats(min_value=0.5, max_value=4 * 3600, allow_nan=False, allow_infinity=False)
audio_strategy = st.integers(min_value=8, max_value=512)


class TestBitrateFormula:
    """Property tests for the bitrate computation."""

    def test_reference_example(self) -> None:
        """10 MB over 120 s with 128 kbps audio SHALL plan 539 kbps video."""
        plan = plan_bitrate(50 * MB, 10, make_descriptor(), "libx264")

        assert plan.video_bitrate_kbps == 539
        assert plan.audio_bitrate_kbps == 128
        assert plan.remove_audio is False

    @given(target=target_strategy, duration=duration_strategy, audio=audio_strategy)
    @settings(max_examples=100)
    def test_planned_bitrates_fill_target(self, target: int, duration: float, audio: int) -> None:
        """**Feature: vidsqueeze, Property 1: Bitrate Plan Fits Target Size**

        For any accepted plan, video plus audio bitrate over the duration SHALL
        land within half a kilobit per second of the target size.
        """
        assume(target * 8000 / duration - audio > 0.5)
        descriptor = make_descriptor(duration=duration, audio_bit_rate=audio * 1000)

        plan = plan_bitrate((target + 1) * MB, target, descriptor, "libx264", options=NO_FLOOR)

        budget_kbps = target * 8000 / duration
        assert abs(plan.video_bitrate_kbps + plan.audio_bitrate_kbps - budget_kbps) <= 0.5

    @given(target=target_strategy, duration=duration_strategy, audio=audio_strategy)
    @settings(max_examples=100)
    def test_removed_audio_gives_whole_budget_to_video(self, target: int, duration: float, audio: int) -> None:
        """**Feature: vidsqueeze, Property 1: Bitrate Plan Fits Target Size**

        For any plan with audio removed, the audio budget SHALL be zero.
        """
        assume(target * 8000 / duration > 0.5)
        descriptor = make_descriptor(duration=duration, audio_bit_rate=audio * 1000)

        plan = plan_bitrate((target + 1) * MB, target, descriptor, "libx265", remove_audio=True, options=NO_FLOOR)

        assert plan.audio_bitrate_kbps == 0
        assert plan.video_bitrate_kbps == round_half_up(target * 8000 / duration)

    @given(current_mb=st.integers(min_value=1, max_value=1000), target=target_strategy)
    @settings(max_examples=100)
    def test_target_not_smaller_rejected(self, current_mb: int, target: int) -> None:
        """**Feature: vidsqueeze, Property 1: Bitrate Plan Fits Target Size**

        For any input at or below the target size, planning SHALL fail with
        TargetNotSmaller before any bitrate is computed.
        """
        assume(current_mb <= target)

        with pytest.raises(TargetNotSmaller):
            plan_bitrate(current_mb * MB, target, make_descriptor(), "libx264")


class TestAudioBudget:

    def test_missing_audio_bitrate_defaults_to_128(self) -> None:
        descriptor = make_descriptor(audio_bit_rate=None)
        assert audio_bitrate_kbps(descriptor, remove_audio=False) == 128

    def test_no_audio_stream_means_no_budget(self) -> None:
        descriptor = make_descriptor(with_audio=False)
        assert audio_bitrate_kbps(descriptor, remove_audio=False) == 0

    def test_audio_bitrate_rounded_to_kbps(self) -> None:
        descriptor = make_descriptor(audio_bit_rate=96_500)
        assert audio_bitrate_kbps(descriptor, remove_audio=False) == 97


class TestPlanRejections:

    def test_no_video_stream(self) -> None:
        with pytest.raises(NoVideoStream):
            plan_bitrate(50 * MB, 10, make_descriptor(with_video=False), "libx264")

    @pytest.mark.parametrize("duration", [None, 0.0, -3.0, math.inf])
    def test_unusable_duration(self, duration) -> None:
        with pytest.raises(ProbeFailed):
            plan_bitrate(50 * MB, 10, make_descriptor(duration=duration), "libx264")

    def test_floor_rejects_low_bitrate(self) -> None:
        # 1 MB over 60 s leaves 133 - 128 = 5 kbps for video
        with pytest.raises(UnrealisticBitrate):
            plan_bitrate(50 * MB, 1, make_descriptor(duration=60.0), "libx264")

    def test_floor_can_be_disabled(self) -> None:
        plan = plan_bitrate(50 * MB, 1, make_descriptor(duration=60.0), "libx264", options=NO_FLOOR)
        assert plan.video_bitrate_kbps == 5

    def test_non_positive_bitrate_always_rejected(self) -> None:
        with pytest.raises(UnrealisticBitrate):
            plan_bitrate(50 * MB, 1, make_descriptor(duration=600.0), "libx264", options=NO_FLOOR)

    def test_unknown_codec(self) -> None:
        with pytest.raises(CodecInvalid):
            plan_bitrate(50 * MB, 10, make_descriptor(), "vp9")


class TestRequestFields:

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_missing_target_size(self, raw) -> None:
        with pytest.raises(TargetSizeMissing):
            parse_target_size(raw)

    @pytest.mark.parametrize("raw", ["0", "-5", "abc", "10.5", "1e3"])
    def test_invalid_target_size(self, raw) -> None:
        with pytest.raises(TargetSizeInvalid):
            parse_target_size(raw)

    def test_target_size_parsed(self) -> None:
        assert parse_target_size(" 25 ") == 25

    def test_codec_missing(self) -> None:
        with pytest.raises(CodecMissing):
            validate_codec(None, PlannerOptions())

    def test_codec_allowed(self) -> None:
        assert validate_codec("libx265", PlannerOptions()) == "libx265"

    @pytest.mark.parametrize("raw,expected", [("true", True), ("TRUE", True), ("false", False), (None, False), ("1", False)])
    def test_remove_audio_flag(self, raw, expected) -> None:
        assert parse_remove_audio(raw) is expected

    def test_size_in_mb_rounds_half_up(self) -> None:
        assert size_in_mb(10_500_000) == 11
        assert size_in_mb(10_499_999) == 10


class TestOutputDimensions:
    """Property tests for rotation-aware frame sizing."""

    @given(
        width=st.integers(min_value=2, max_value=7680),
        height=st.integers(min_value=2, max_value=4320),
        rotation=st.sampled_from([0, 90, -90, 180, 270]),
    )
    @settings(max_examples=100)
    def test_right_angle_rotation_swaps_even_dimensions(self, width: int, height: int, rotation: int) -> None:
        """**Feature: vidsqueeze, Property 2: Rotation Keeps Even Dimensions**

        For any right-angle rotation, the output SHALL be the even-floored
        source dimensions, swapped for quarter turns.
        """
        stream = MediaStream(0, "video", "h264", None, width, height, float(rotation))

        out_w, out_h = output_dimensions(stream, correct_rotation=True)

        ew, eh = even_floor(width), even_floor(height)
        if rotation % 180 == 0:
            assert (out_w, out_h) == (ew, eh)
        else:
            assert (out_w, out_h) == (eh, ew)

    @given(
        width=st.integers(min_value=2, max_value=7680),
        height=st.integers(min_value=2, max_value=4320),
        rotation=st.floats(min_value=-360, max_value=360, allow_nan=False),
    )
    @settings(max_examples=100)
    def test_rotated_dimensions_are_even(self, width: int, height: int, rotation: float) -> None:
        """**Feature: vidsqueeze, Property 2: Rotation Keeps Even Dimensions**

        For any rotation angle, the planned frame size SHALL be even.
        """
        out_w, out_h = rotated_dimensions(even_floor(width), even_floor(height), rotation)
        assert out_w % 2 == 0
        assert out_h % 2 == 0

    def test_rotation_correction_disabled(self) -> None:
        stream = MediaStream(0, "video", "h264", None, 1081, 1921, 90.0)
        assert output_dimensions(stream, correct_rotation=False) == (1080, 1920)

    def test_plan_uses_rotated_dimensions(self) -> None:
        descriptor = make_descriptor(width=1920, height=1080, rotation=-90.0)
        plan = plan_bitrate(50 * MB, 10, descriptor, "libx264")
        assert (plan.width, plan.height) == (1080, 1920)
