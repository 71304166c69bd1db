"""Tests for failure classification."""

import ftplib
import socket

import httpx
import pytest

from price_harvester.core.enums import FailureKind, FeedErrorCode
from price_harvester.ingestion.errors import FeedError, classify_exception


class TestClassifyException:
    """Tests for mapping library exceptions."""

    @pytest.mark.parametrize(
        "exc,code,kind",
        [
            (httpx.ReadTimeout("slow"), FeedErrorCode.CONNECTION_TIMEOUT, FailureKind.TRANSIENT),
            (socket.timeout("slow"), FeedErrorCode.CONNECTION_TIMEOUT, FailureKind.TRANSIENT),
            (httpx.ConnectError("refused"), FeedErrorCode.CONNECTION_FAILED, FailureKind.TRANSIENT),
            (ConnectionResetError("reset"), FeedErrorCode.CONNECTION_FAILED, FailureKind.TRANSIENT),
            (ftplib.error_perm("530 Login incorrect"), FeedErrorCode.AUTH_FAILED, FailureKind.CONFIG),
            (ftplib.error_perm("550 No such file"), FeedErrorCode.FILE_NOT_FOUND, FailureKind.PERMANENT),
            (ftplib.error_temp("421 Too many users"), FeedErrorCode.CONNECTION_FAILED, FailureKind.TRANSIENT),
            (OSError("disk"), FeedErrorCode.CONNECTION_FAILED, FailureKind.TRANSIENT),
            (RuntimeError("boom"), FeedErrorCode.UNKNOWN_ERROR, FailureKind.PERMANENT),
        ],
    )
    def test_mapping(self, exc: BaseException, code: FeedErrorCode, kind: FailureKind) -> None:
        """Each exception family gets its code and retry class."""
        error = classify_exception(exc)

        assert error.code == code
        assert error.kind == kind

    def test_http_status_error(self) -> None:
        """Raised status errors are mapped like responses."""
        request = httpx.Request("GET", "https://feeds.example.com/x.csv")
        response = httpx.Response(403, request=request)
        exc = httpx.HTTPStatusError("forbidden", request=request, response=response)

        error = classify_exception(exc)

        assert error.code == FeedErrorCode.AUTH_FAILED
        assert error.status_code == 403

    def test_feed_error_passes_through(self) -> None:
        """Already classified errors are returned unchanged."""
        original = FeedError(FeedErrorCode.FILE_TOO_LARGE, "big", FailureKind.PERMANENT)

        assert classify_exception(original) is original


class TestFeedError:
    """Tests for FeedError."""

    def test_only_transient_is_retryable(self) -> None:
        """Permanent and configuration failures are not retried."""
        assert FeedError(FeedErrorCode.BAD_STATUS, "x", FailureKind.TRANSIENT).retryable
        assert not FeedError(FeedErrorCode.BAD_STATUS, "x", FailureKind.PERMANENT).retryable
        assert not FeedError(FeedErrorCode.AUTH_FAILED, "x", FailureKind.CONFIG).retryable

    def test_from_http_status_message(self) -> None:
        """The URL is included in the message."""
        error = FeedError.from_http_status(404, "https://feeds.example.com/x.csv")

        assert "HTTP 404" in error.message
        assert "https://feeds.example.com/x.csv" in error.message
        assert str(error) == error.message
