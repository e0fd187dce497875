"""Tests for config.py environment variable parsing helpers."""

import logging
import os
from unittest import mock


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        """Should return default value when environment variable is not set."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("NONEXISTENT_VAR", 42) == 42

    def test_parses_valid_integer(self):
        """Should parse valid integer from environment variable."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "123"}):
            assert get_int_env("TEST_INT", 0) == 123

    def test_returns_default_on_invalid_value(self, caplog):
        """Should return default and log warning when value is not a valid integer."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "abc"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 42) == 42
                assert "Invalid TEST_INT='abc'" in caplog.text
                assert "using default 42" in caplog.text

    def test_returns_default_on_float_value(self):
        """Should return default when value contains a decimal point."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "3.14"}):
            assert get_int_env("TEST_INT", 42) == 42

    def test_min_validation_enforced(self, caplog):
        """Should return default when value is below minimum."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 10, min_val=1) == 10
                assert "below minimum" in caplog.text

    def test_max_validation_enforced(self, caplog):
        """Should return default when value is above maximum."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "70000"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 8080, max_val=65535) == 8080
                assert "above maximum" in caplog.text

    def test_boundary_values_accepted(self):
        """Values equal to min or max are within range."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "30"}):
            assert get_int_env("TEST_INT", 6, min_val=1, max_val=30) == 30


class TestGetFloatEnv:
    """Tests for get_float_env helper function."""

    def test_parses_valid_float(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "2.5"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 2.5

    def test_accepts_integer_string(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "3"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 3.0

    def test_rejects_special_values(self, caplog):
        """Should reject inf and nan."""
        from config import get_float_env

        for value in ("inf", "-inf", "nan"):
            with mock.patch.dict(os.environ, {"TEST_FLOAT": value}):
                with caplog.at_level(logging.WARNING):
                    assert get_float_env("TEST_FLOAT", 1.5) == 1.5
        assert "special float" in caplog.text

    def test_returns_default_on_invalid_value(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "fast"}):
            assert get_float_env("TEST_FLOAT", 5.0) == 5.0

    def test_min_validation_enforced(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "0.01"}):
            assert get_float_env("TEST_FLOAT", 5.0, min_val=0.1) == 5.0


class TestDefaults:
    """Sanity checks on shipped configuration values."""

    def test_ladder_is_ordered_by_height(self):
        from config import EXTENDED_RENDITION_LADDER, RENDITION_LADDER

        heights = [rung["height"] for rung in RENDITION_LADDER + EXTENDED_RENDITION_LADDER]
        assert heights == sorted(heights)

    def test_every_rung_has_a_timeout_multiplier(self):
        from config import EXTENDED_RENDITION_LADDER, FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS, RENDITION_LADDER

        for rung in RENDITION_LADDER + EXTENDED_RENDITION_LADDER:
            assert rung["height"] in FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS

    def test_default_queue_name(self):
        from config import QUEUE_NAME

        assert QUEUE_NAME == "transcoding:queue"
