"""
Feed Error Module
=================

Run-level failures and their retry classification. Only transport and
infrastructure failures are raised; parse, validation and write-conflict
outcomes are returned as data by their stages.
"""

from __future__ import annotations

import ftplib
import socket

import httpx

from price_harvester.core.enums import FailureKind, FeedErrorCode


class FeedError(Exception):
    """A classified failure that stops a feed run."""

    def __init__(
        self,
        code: FeedErrorCode,
        message: str,
        kind: FailureKind = FailureKind.TRANSIENT,
        status_code: int | None = None,
    ):
        self.code = code
        self.message = message
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Only transient failures are worth retrying."""
        return self.kind == FailureKind.TRANSIENT

    @classmethod
    def from_http_status(cls, status_code: int, url: str = "") -> FeedError:
        """
        Map a non-success HTTP status to a classified error.

        401/403 are configuration problems, 404 and other 4xx are
        permanent, 408/429/5xx are transient.
        """
        suffix = f" for {url}" if url else ""
        if status_code in (401, 403):
            return cls(
                FeedErrorCode.AUTH_FAILED,
                f"Authentication failed (HTTP {status_code}){suffix}",
                FailureKind.CONFIG,
                status_code,
            )
        if status_code == 404:
            return cls(
                FeedErrorCode.FILE_NOT_FOUND,
                f"Feed not found (HTTP 404){suffix}",
                FailureKind.PERMANENT,
                status_code,
            )
        if status_code in (408, 429) or status_code >= 500:
            return cls(
                FeedErrorCode.BAD_STATUS,
                f"Server returned HTTP {status_code}{suffix}",
                FailureKind.TRANSIENT,
                status_code,
            )
        return cls(
            FeedErrorCode.BAD_STATUS,
            f"Unexpected HTTP {status_code}{suffix}",
            FailureKind.PERMANENT,
            status_code,
        )

    def __repr__(self) -> str:
        return f"FeedError(code={self.code.value}, kind={self.kind.value}, message={self.message!r})"


def classify_exception(exc: BaseException) -> FeedError:
    """
    Map a library exception onto the feed error taxonomy.

    Timeouts are kept distinct from connection failures because they are
    retried on a different schedule.
    """
    if isinstance(exc, FeedError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, socket.timeout, TimeoutError)):
        return FeedError(FeedErrorCode.CONNECTION_TIMEOUT, f"Timed out: {exc}", FailureKind.TRANSIENT)
    if isinstance(exc, httpx.HTTPStatusError):
        return FeedError.from_http_status(exc.response.status_code, str(exc.request.url))
    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError, ConnectionError, socket.gaierror)):
        return FeedError(
            FeedErrorCode.CONNECTION_FAILED, f"Connection failed: {exc}", FailureKind.TRANSIENT
        )
    if isinstance(exc, ftplib.error_perm):
        reply = str(exc)
        if reply.startswith("530"):
            return FeedError(FeedErrorCode.AUTH_FAILED, f"FTP login failed: {reply}", FailureKind.CONFIG)
        if reply.startswith("550"):
            return FeedError(
                FeedErrorCode.FILE_NOT_FOUND, f"FTP file not found: {reply}", FailureKind.PERMANENT
            )
        return FeedError(FeedErrorCode.CONNECTION_FAILED, f"FTP error: {reply}", FailureKind.PERMANENT)
    if isinstance(exc, (ftplib.error_temp, ftplib.error_reply, ftplib.error_proto)):
        return FeedError(FeedErrorCode.CONNECTION_FAILED, f"FTP error: {exc}", FailureKind.TRANSIENT)
    if isinstance(exc, httpx.HTTPError):
        return FeedError(FeedErrorCode.CONNECTION_FAILED, f"HTTP error: {exc}", FailureKind.TRANSIENT)
    if isinstance(exc, OSError):
        return FeedError(FeedErrorCode.CONNECTION_FAILED, f"I/O error: {exc}", FailureKind.TRANSIENT)
    return FeedError(FeedErrorCode.UNKNOWN_ERROR, str(exc) or type(exc).__name__, FailureKind.PERMANENT)
