"""
Transport Fetcher Module
========================

Retrieves raw feed bytes over HTTP(S) (anonymous or basic auth), FTP/FTPS,
or from pushed uploads. Every fetch is bounded by an explicit timeout and
a maximum size, and reports change-detection data so unchanged feeds can
be skipped.
"""

from __future__ import annotations

import asyncio
import ftplib
import gzip
import hashlib
import io
import logging
import zlib
from dataclasses import dataclass
from datetime import datetime

import httpx

from price_harvester.core.enums import (
    Compression,
    FailureKind,
    FeedErrorCode,
    FeedFormat,
    FeedTransport,
    SkipReason,
)
from price_harvester.core.schema import Feed, utc_now
from price_harvester.ingestion.errors import FeedError, classify_exception
from price_harvester.ingestion.storage import UploadStorage

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class ChangeState:
    """What the previous successful run saw."""

    content_hash: str | None = None
    remote_mtime: datetime | None = None
    remote_size: int | None = None

    @classmethod
    def from_feed(cls, feed: Feed) -> ChangeState:
        return cls(
            content_hash=feed.last_content_hash,
            remote_mtime=feed.last_remote_mtime,
            remote_size=feed.last_remote_size,
        )


@dataclass
class FetchResult:
    """Result of fetching a feed."""

    content: bytes
    content_hash: str
    content_type: str
    detected_format: FeedFormat | None
    fetched_at: datetime
    remote_mtime: datetime | None = None
    remote_size: int | None = None
    skipped_reason: SkipReason | None = None

    @property
    def unchanged(self) -> bool:
        """Check if the content matches the previous run."""
        return self.skipped_reason is not None

    @property
    def size_bytes(self) -> int:
        return len(self.content)


def compute_hash(content: bytes) -> str:
    """
    Compute SHA-256 hash of content.

    Args:
        content: Raw content bytes

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(content).hexdigest()


def sniff_format(content: bytes, content_type: str = "", hint: FeedFormat = FeedFormat.AUTO) -> FeedFormat:
    """
    Decide which parser variant handles the content.

    An explicit hint wins. Otherwise the body is inspected, then the
    declared content type. HTML pages (login walls, error pages) and
    binary data are rejected.

    Raises:
        FeedError: INVALID_CONTENT_TYPE
    """
    if hint != FeedFormat.AUTO:
        return hint

    head = content[:4096].lstrip(b"\xef\xbb\xbf").lstrip()
    lowered = head[:512].lower()
    if lowered.startswith(b"<!doctype html") or lowered.startswith(b"<html"):
        raise FeedError(
            FeedErrorCode.INVALID_CONTENT_TYPE,
            "Received an HTML page instead of a feed",
            FailureKind.TRANSIENT,
        )
    if b"\x00" in head:
        raise FeedError(
            FeedErrorCode.INVALID_CONTENT_TYPE,
            "Received binary content instead of a feed",
            FailureKind.TRANSIENT,
        )
    if head.startswith((b"{", b"[")):
        return FeedFormat.JSON
    if head.startswith(b"<"):
        return FeedFormat.XML

    content_type = content_type.lower()
    if "json" in content_type:
        return FeedFormat.JSON
    if "xml" in content_type:
        return FeedFormat.XML
    if "tab-separated" in content_type:
        return FeedFormat.TSV

    first_line = head.split(b"\n", 1)[0]
    if first_line.count(b"\t") > first_line.count(b","):
        return FeedFormat.TSV
    return FeedFormat.CSV


def _parse_mdtm(reply: str) -> datetime | None:
    """Parse an FTP MDTM reply such as '213 20250115103000'."""
    parts = reply.split()
    if len(parts) < 2:
        return None
    stamp = parts[1].split(".")[0]
    try:
        return datetime.strptime(stamp, "%Y%m%d%H%M%S")
    except ValueError:
        return None


class TransportFetcher:
    """
    Feed fetcher for all transports.

    Network calls never run inside a database transaction; callers commit
    before awaiting fetch().
    """

    def __init__(
        self,
        user_agent: str = "PriceHarvester/0.1",
        timeout: float = 120.0,
        interactive_timeout: float = 10.0,
        max_file_size_bytes: int = 500 * 1024 * 1024,
        upload_storage: UploadStorage | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            user_agent: User-Agent header for HTTP requests
            timeout: Default timeout for scheduled runs, in seconds
            interactive_timeout: Timeout for test fetches, in seconds
            max_file_size_bytes: Largest accepted feed, after decompression
            upload_storage: Storage holding pushed files for UPLOAD feeds
            client: Optional shared httpx client
        """
        self.user_agent = user_agent
        self.timeout = timeout
        self.interactive_timeout = interactive_timeout
        self.max_file_size_bytes = max_file_size_bytes
        self.upload_storage = upload_storage
        self._client = client

    async def fetch(
        self,
        feed: Feed,
        timeout: float | None = None,
        previous: ChangeState | None = None,
    ) -> FetchResult:
        """
        Fetch a feed's content.

        Args:
            feed: Feed to fetch
            timeout: Override of the default timeout
            previous: Change-detection state of the last successful run

        Returns:
            FetchResult; skipped_reason is set when nothing changed

        Raises:
            FeedError: On any transport failure
        """
        timeout = timeout or self.timeout
        limit = feed.max_file_size_bytes or self.max_file_size_bytes
        fetched_at = utc_now()

        content_type = ""
        remote_mtime: datetime | None = None
        remote_size: int | None = None

        if feed.transport in (FeedTransport.URL, FeedTransport.AUTH_URL):
            content, content_type = await self._fetch_http(feed, timeout, limit)
        elif feed.transport in (FeedTransport.FTP, FeedTransport.FTPS):
            try:
                content, remote_mtime, remote_size = await asyncio.to_thread(
                    self._fetch_ftp, feed, timeout, limit, previous
                )
            except FeedError:
                raise
            except ftplib.all_errors as e:
                raise classify_exception(e) from e
            if content is None:
                logger.info(f"Feed '{feed.name}' unchanged (mtime {remote_mtime}, size {remote_size})")
                return FetchResult(
                    content=b"",
                    content_hash=previous.content_hash if previous and previous.content_hash else "",
                    content_type="",
                    detected_format=None,
                    fetched_at=fetched_at,
                    remote_mtime=remote_mtime,
                    remote_size=remote_size,
                    skipped_reason=SkipReason.UNCHANGED_MTIME,
                )
        elif feed.transport == FeedTransport.UPLOAD:
            content, remote_mtime = self._fetch_upload(feed)
            remote_size = len(content)
        else:
            raise FeedError(
                FeedErrorCode.UNKNOWN_ERROR,
                f"Unsupported transport {feed.transport}",
                FailureKind.CONFIG,
            )

        content = self._maybe_decompress(feed, content, limit)
        content_hash = compute_hash(content)

        if previous and previous.content_hash and previous.content_hash == content_hash:
            logger.info(f"Feed '{feed.name}' unchanged (content hash {content_hash[:12]})")
            return FetchResult(
                content=content,
                content_hash=content_hash,
                content_type=content_type,
                detected_format=None,
                fetched_at=fetched_at,
                remote_mtime=remote_mtime,
                remote_size=remote_size,
                skipped_reason=SkipReason.UNCHANGED_HASH,
            )

        return FetchResult(
            content=content,
            content_hash=content_hash,
            content_type=content_type,
            detected_format=sniff_format(content, content_type, feed.format),
            fetched_at=fetched_at,
            remote_mtime=remote_mtime,
            remote_size=remote_size,
        )

    async def test_fetch(self, feed: Feed) -> FetchResult:
        """Fetch with the short interactive timeout and no change detection."""
        return await self.fetch(feed, timeout=self.interactive_timeout)

    async def _fetch_http(self, feed: Feed, timeout: float, limit: int) -> tuple[bytes, str]:
        """Download over HTTP(S), streaming so the size cap is enforced early."""
        if not feed.url:
            raise FeedError(FeedErrorCode.UNKNOWN_ERROR, "Feed has no URL", FailureKind.CONFIG)

        auth = None
        if feed.transport == FeedTransport.AUTH_URL:
            if not feed.username:
                raise FeedError(
                    FeedErrorCode.AUTH_FAILED, "Authenticated feed has no username", FailureKind.CONFIG
                )
            auth = httpx.BasicAuth(feed.username, feed.password or "")

        client = self._client or httpx.AsyncClient(follow_redirects=True)
        try:
            async with client.stream(
                "GET",
                feed.url,
                auth=auth,
                headers={"User-Agent": self.user_agent},
                timeout=timeout,
            ) as response:
                if not response.is_success:
                    raise FeedError.from_http_status(response.status_code, feed.url)

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise self._too_large(int(declared), limit)

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > limit:
                        raise self._too_large(len(buffer), limit)

                content_type = response.headers.get("content-type", "").split(";")[0].strip()
                return bytes(buffer), content_type
        except FeedError:
            raise
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout fetching feed '{feed.name}' after {timeout}s")
            raise FeedError(
                FeedErrorCode.CONNECTION_TIMEOUT, f"Timeout after {timeout}s", FailureKind.TRANSIENT
            ) from e
        except httpx.HTTPError as e:
            logger.warning(f"HTTP error fetching feed '{feed.name}': {e}")
            raise classify_exception(e) from e
        finally:
            if self._client is None:
                await client.aclose()

    def _fetch_ftp(
        self,
        feed: Feed,
        timeout: float,
        limit: int,
        previous: ChangeState | None,
    ) -> tuple[bytes | None, datetime | None, int | None]:
        """
        Download over FTP or FTPS. Blocking; run in a worker thread.

        Returns (None, mtime, size) when mtime and size match the previous run.
        """
        if not feed.host or not feed.path:
            raise FeedError(
                FeedErrorCode.UNKNOWN_ERROR, "FTP feed needs host and path", FailureKind.CONFIG
            )

        ftp: ftplib.FTP = ftplib.FTP_TLS() if feed.transport == FeedTransport.FTPS else ftplib.FTP()
        try:
            logger.info(f"Connecting to FTP server {feed.host} for feed '{feed.name}'")
            ftp.connect(feed.host, feed.port or 21, timeout=timeout)
            ftp.login(feed.username or "anonymous", feed.password or "")
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
            ftp.voidcmd("TYPE I")

            remote_size: int | None = None
            remote_mtime: datetime | None = None
            try:
                remote_size = ftp.size(feed.path)
            except ftplib.error_perm:
                logger.debug(f"SIZE not supported for {feed.path}")
            try:
                remote_mtime = _parse_mdtm(ftp.voidcmd(f"MDTM {feed.path}"))
            except ftplib.error_perm:
                logger.debug(f"MDTM not supported for {feed.path}")

            if remote_size is not None and remote_size > limit:
                raise self._too_large(remote_size, limit)

            if (
                previous is not None
                and remote_mtime is not None
                and remote_size is not None
                and previous.remote_mtime == remote_mtime
                and previous.remote_size == remote_size
            ):
                return None, remote_mtime, remote_size

            buffer = io.BytesIO()

            def callback(data: bytes) -> None:
                buffer.write(data)
                if buffer.tell() > limit:
                    raise self._too_large(buffer.tell(), limit)

            ftp.retrbinary(f"RETR {feed.path}", callback)
            return buffer.getvalue(), remote_mtime, remote_size
        finally:
            try:
                ftp.quit()
            except ftplib.all_errors:
                ftp.close()

    def _fetch_upload(self, feed: Feed) -> tuple[bytes, datetime]:
        """Read the newest pushed file for the feed."""
        if self.upload_storage is None:
            raise FeedError(
                FeedErrorCode.UNKNOWN_ERROR, "No upload storage configured", FailureKind.CONFIG
            )
        metadata = self.upload_storage.latest_upload(feed.id)
        if metadata is None:
            raise FeedError(
                FeedErrorCode.FILE_NOT_FOUND,
                f"No file has been uploaded for feed '{feed.name}'",
                FailureKind.PERMANENT,
            )
        return self.upload_storage.read(metadata), metadata.uploaded_at

    def _maybe_decompress(self, feed: Feed, content: bytes, limit: int) -> bytes:
        """Gunzip when configured or when the gzip magic bytes are present."""
        if feed.compression != Compression.GZIP and not content.startswith(GZIP_MAGIC):
            return content
        try:
            decompressed = gzip.decompress(content)
        except (OSError, EOFError, zlib.error) as e:
            raise FeedError(
                FeedErrorCode.DECOMPRESS_FAILED, f"Failed to decompress feed: {e}", FailureKind.PERMANENT
            ) from e
        if len(decompressed) > limit:
            raise self._too_large(len(decompressed), limit)
        return decompressed

    @staticmethod
    def _too_large(size: int, limit: int) -> FeedError:
        return FeedError(
            FeedErrorCode.FILE_TOO_LARGE,
            f"Feed is {size} bytes, limit is {limit}",
            FailureKind.PERMANENT,
        )
