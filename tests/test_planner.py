"""Tests for rendition planning."""

import pytest

from core.enums import PipelineStage
from core.errors import UnsupportedResolutionError
from core.job_store import PresetInfo
from worker.planner import (
    DEFAULT_ORIGINAL_BITRATE,
    ORIGINAL_RENDITION_NAME,
    Rendition,
    ladder_for,
    plan,
)


def names(renditions):
    return [r.name for r in renditions]


class TestLadder:
    def test_default_ladder_stops_at_1080p(self):
        assert names(ladder_for(PresetInfo())) == ["360p", "480p", "720p", "1080p"]

    def test_opting_out_of_downscale_adds_higher_rungs(self):
        prefs = PresetInfo(prefer_downscale_to_1080=False)
        assert names(ladder_for(prefs)) == ["360p", "480p", "720p", "1080p", "1440p", "2160p"]

    def test_bitrates_are_bits_per_second(self):
        rung = next(r for r in ladder_for(PresetInfo()) if r.name == "720p")
        assert rung.video_bitrate == 3_500_000
        assert rung.audio_bitrate == 192_000
        assert rung.bandwidth == 3_692_000


class TestPlan:
    def test_1080p_source_gets_full_ladder(self):
        assert names(plan(1080)) == ["360p", "480p", "720p", "1080p"]

    def test_never_upscales(self):
        assert names(plan(720)) == ["360p", "480p", "720p"]

    def test_in_between_height_takes_rungs_below(self):
        assert names(plan(600)) == ["360p", "480p"]

    def test_4k_source_downscaled_to_1080_by_default(self):
        assert names(plan(2160)) == ["360p", "480p", "720p", "1080p"]

    def test_4k_source_with_downscale_disabled(self):
        prefs = PresetInfo(prefer_downscale_to_1080=False)
        assert names(plan(2160, prefs)) == ["360p", "480p", "720p", "1080p", "1440p", "2160p"]

    def test_exactly_lowest_rung(self):
        assert names(plan(360)) == ["360p"]

    def test_below_lowest_rung_raises(self):
        with pytest.raises(UnsupportedResolutionError) as exc_info:
            plan(240)
        assert exc_info.value.source_height == 240
        assert exc_info.value.min_height == 360
        assert exc_info.value.stage == PipelineStage.PLAN

    def test_output_is_ascending(self):
        heights = [r.height for r in plan(1440, PresetInfo(prefer_downscale_to_1080=False))]
        assert heights == sorted(heights)

    def test_custom_ladder(self):
        ladder = [
            Rendition("low", 426, 240, 400_000, 64_000),
            Rendition("mid", 1280, 720, 2_500_000, 128_000),
        ]
        assert names(plan(1080, ladder=ladder)) == ["low", "mid"]


class TestKeepOriginal:
    def test_adds_passthrough_when_height_is_not_a_rung(self):
        prefs = PresetInfo(keep_original=True)
        result = plan(900, prefs, source_width=1600, source_bitrate=5_000_000)

        assert names(result) == ["360p", "480p", "720p", ORIGINAL_RENDITION_NAME]
        original = result[-1]
        assert original.passthrough is True
        assert original.width == 1600
        assert original.height == 900
        assert original.video_bitrate == 5_000_000
        assert original.audio_bitrate == 0

    def test_no_passthrough_when_height_matches_a_rung(self):
        prefs = PresetInfo(keep_original=True)
        assert ORIGINAL_RENDITION_NAME not in names(plan(1080, prefs))

    def test_passthrough_defaults_without_source_details(self):
        original = plan(900, PresetInfo(keep_original=True))[-1]
        assert original.width == 1600
        assert original.width % 2 == 0
        assert original.video_bitrate == DEFAULT_ORIGINAL_BITRATE

    def test_4k_downscaled_source_keeps_original(self):
        # 2160 is not a rung of the default ladder
        result = plan(2160, PresetInfo(keep_original=True), source_width=3840)
        assert names(result)[-1] == ORIGINAL_RENDITION_NAME
        assert result[-1].height == 2160

    def test_camel_case_preferences_are_accepted(self):
        prefs = PresetInfo.model_validate({"keepOriginal": True, "preferDownscaleTo1080": False})
        assert prefs.keep_original is True
        assert prefs.prefer_downscale_to_1080 is False
