"""
Tests for the rate-limited logging helper.
"""
import threading
from unittest.mock import MagicMock, patch

from cachetools import TTLCache

from pingpong_relayer import _rate_limited_log as rll
from pingpong_relayer._rate_limited_log import rate_limited_log


class TestRateLimitedLog:
    """Tests for the rate-limited logging implementation."""

    def test_repeats_are_suppressed(self):
        mock_logger = MagicMock()

        assert rate_limited_log("RPC down", level="warning", logger_instance=mock_logger) is True
        assert rate_limited_log("RPC down", level="warning", logger_instance=mock_logger) is False
        mock_logger.warning.assert_called_once_with("RPC down")

        # Different level is a different key
        assert rate_limited_log("RPC down", level="error", logger_instance=mock_logger) is True
        mock_logger.error.assert_called_once_with("RPC down")

    def test_explicit_key_groups_varying_messages(self):
        mock_logger = MagicMock()

        rate_limited_log("poll failed: timeout", logger_instance=mock_logger, key="poll")
        rate_limited_log("poll failed: refused", logger_instance=mock_logger, key="poll")

        mock_logger.warning.assert_called_once_with("poll failed: timeout")

    def test_intervals_use_separate_caches(self):
        mock_logger = MagicMock()

        rate_limited_log("same", interval=60, logger_instance=mock_logger)
        rate_limited_log("same", interval=5, logger_instance=mock_logger)

        assert mock_logger.warning.call_count == 2
        assert set(rll._caches) == {60, 5}

    def test_expired_entries_log_again(self):
        clock = [0.0]
        cache = TTLCache(maxsize=16, ttl=10, timer=lambda: clock[0])
        mock_logger = MagicMock()

        with patch.dict(rll._caches, {10: cache}):
            rate_limited_log("flapping", interval=10, logger_instance=mock_logger)
            clock[0] = 5.0
            rate_limited_log("flapping", interval=10, logger_instance=mock_logger)
            clock[0] = 11.0
            rate_limited_log("flapping", interval=10, logger_instance=mock_logger)

        assert mock_logger.warning.call_count == 2

    def test_unknown_level_falls_back_to_warning(self):
        mock_logger = MagicMock(spec=["warning"])

        rate_limited_log("odd level", level="verbose", logger_instance=mock_logger)

        mock_logger.warning.assert_called_once_with("odd level")

    def test_reset_forgets_suppressed_keys(self):
        mock_logger = MagicMock()

        rate_limited_log("once", logger_instance=mock_logger)
        rll.reset_rate_limits()
        rate_limited_log("once", logger_instance=mock_logger)

        assert mock_logger.warning.call_count == 2

    def test_concurrent_callers_log_once(self):
        mock_logger = MagicMock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            rate_limited_log("contended", logger_instance=mock_logger)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        mock_logger.warning.assert_called_once_with("contended")
