"""
Relay Service
Fetch-and-forward of remote playlists, live streams, EPG documents and
downloadable files. Streamed bodies are proxied byte-for-byte with one
upstream connection per caller; nothing is cached or retried.
"""

import asyncio
import anyio
import httpx
import logging
import posixpath
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote, unquote, urlparse
from fastapi.responses import Response, StreamingResponse

from config import settings
from models import LivenessResult, PlaylistResponse, RelayPurpose
from playlist_parser import parse_playlist

logger = logging.getLogger(__name__)


DEFAULT_CONTENT_TYPES = {
    RelayPurpose.LIVE_STREAM: "video/mp2t",
    RelayPurpose.DOWNLOAD: "application/octet-stream",
    RelayPurpose.EPG_DOCUMENT: "application/xml",
}

ERROR_PREFIXES = {
    RelayPurpose.LIVE_STREAM: "Proxy error",
    RelayPurpose.DOWNLOAD: "Download failed",
    RelayPurpose.EPG_DOCUMENT: "Failed to fetch EPG",
}

DEFAULT_DOWNLOAD_NAME = "video.mp4"

# Multipart boundaries and part headers around an uploaded file
MULTIPART_OVERHEAD = 16 * 1024


class RelayError(Exception):
    """Base error surfaced to the caller as {"error": message}."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingInputError(RelayError):
    """Required input (locator, content, file) is missing or unusable."""

    status_code = 400


class UpstreamFetchError(RelayError):
    """Network failure, timeout or non-2xx answer from the remote resource."""

    status_code = 500


class UploadTooLargeError(RelayError):
    status_code = 413


def describe_error(error: BaseException, timeout: Optional[float] = None) -> str:
    """Return a non-empty, single-line description of an upstream failure."""
    if isinstance(error, asyncio.TimeoutError) or isinstance(error, httpx.TimeoutException):
        if timeout is not None:
            return f"timeout of {timeout:g}s exceeded"
    if isinstance(error, httpx.HTTPStatusError):
        return f"Request failed with status code {error.response.status_code}"
    message = str(error).strip().splitlines()
    return message[0] if message else error.__class__.__name__


def decode_locator(url: Optional[str]) -> str:
    """Percent-decode a caller supplied locator."""
    if url is None:
        return ""
    return unquote(url.strip())


def validate_url(url: str) -> str:
    """Validate URL format before dispatching an outbound request"""
    if not url or not url.strip():
        raise MissingInputError("URL required")

    parsed = urlparse(url)

    # Ensure scheme is http or https
    if parsed.scheme.lower() not in ['http', 'https']:
        raise MissingInputError("URL must use HTTP or HTTPS protocol")

    # Ensure there's a valid netloc (domain)
    if not parsed.netloc:
        raise MissingInputError("URL must have a valid domain")

    return url


def derive_filename(url: str, filename: Optional[str] = None) -> str:
    """Pick the download name: caller supplied, else last path segment."""
    if filename and filename.strip():
        name = unquote(filename.strip())
    else:
        name = posixpath.basename(urlparse(url).path)
    # Keep the header value on one line and the quoted-string intact
    name = name.replace("\r", "").replace("\n", "").replace('"', "'")
    return name or DEFAULT_DOWNLOAD_NAME


def content_disposition(name: str) -> str:
    try:
        name.encode("latin-1")
    except UnicodeEncodeError:
        fallback = name.encode("ascii", "ignore").decode("ascii").strip() or DEFAULT_DOWNLOAD_NAME
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"
    return f'attachment; filename="{name}"'


class UpstreamHandle:
    """An open upstream response. Closing is idempotent."""

    def __init__(self, stream_context, target: str):
        self._context = stream_context
        self.target = target
        self.bytes_served = 0
        self.closed = False

    async def aclose(self):
        if self.closed:
            return
        self.closed = True
        with anyio.CancelScope(shield=True):
            await self._context.__aexit__(None, None, None)
        logger.info(f"Relay closed for {self.target}, {self.bytes_served} bytes served")


class RelayStreamingResponse(StreamingResponse):
    """
    StreamingResponse that owns its upstream.

    The upstream is released when the response finishes, even if the body
    iterator never started (caller gone during http.response.start).
    """

    def __init__(self, content, upstream: UpstreamHandle, **kwargs):
        super().__init__(content, **kwargs)
        self.upstream = upstream

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream.aclose()


class RelayService:
    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        user_agent: Optional[str] = None,
        playlist_timeout: Optional[float] = None,
        check_timeout: Optional[float] = None,
        purpose_timeouts: Optional[Dict[RelayPurpose, float]] = None,
        read_timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
        max_upload_size: Optional[int] = None,
    ):
        self.user_agent = user_agent or settings.USER_AGENT
        self.playlist_timeout = playlist_timeout or settings.PLAYLIST_FETCH_TIMEOUT
        self.check_timeout = check_timeout or settings.CHECK_TIMEOUT
        self.read_timeout = read_timeout or settings.STREAM_READ_TIMEOUT
        self.chunk_size = chunk_size or settings.RELAY_CHUNK_SIZE
        self.max_upload_size = max_upload_size or settings.MAX_UPLOAD_SIZE

        self.purpose_timeouts = {
            RelayPurpose.LIVE_STREAM: settings.STREAM_TIMEOUT,
            RelayPurpose.DOWNLOAD: settings.DOWNLOAD_TIMEOUT,
            RelayPurpose.EPG_DOCUMENT: settings.EPG_FETCH_TIMEOUT,
        }
        if purpose_timeouts:
            self.purpose_timeouts.update(purpose_timeouts)

        # Shared client with connection pooling; per-request timeouts override
        # the defaults below.
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=self.playlist_timeout,
                read=self.read_timeout,
                write=10.0,
                pool=10.0
            ),
            follow_redirects=True,
            max_redirects=10,
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30.0
            )
        )

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()
        logger.info("Relay service stopped")

    def _headers(self, streaming: bool = False) -> Dict[str, str]:
        headers = {'User-Agent': self.user_agent}
        if streaming:
            headers['Accept'] = '*/*'
            # Raw bytes are relayed, ask for them unencoded
            headers['Accept-Encoding'] = 'identity'
        return headers

    # ============================================================================
    # PLAYLIST INGESTION
    # ============================================================================

    async def fetch_playlist(self, url: Optional[str]) -> PlaylistResponse:
        """Download a remote playlist as text and parse it."""
        target = validate_url(decode_locator(url))
        logger.info(f"Fetching playlist from {target}")

        try:
            response = await asyncio.wait_for(
                self.http_client.get(
                    target,
                    headers=self._headers(),
                    timeout=self.playlist_timeout,
                    follow_redirects=True
                ),
                timeout=self.playlist_timeout
            )
            response.raise_for_status()
            document = response.text
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
            message = describe_error(e, self.playlist_timeout)
            logger.warning(f"Playlist fetch failed for {target}: {message}")
            raise UpstreamFetchError(f"Failed to fetch M3U: {message}") from e

        result = PlaylistResponse.from_records(parse_playlist(document))
        logger.info(f"Parsed {result.count} channels from {target}")
        return result

    def _upload_too_large(self) -> UploadTooLargeError:
        return UploadTooLargeError(f"File too large, limit is {self.max_upload_size} bytes")

    def check_upload_length(self, content_length: Optional[str]):
        """Reject an upload from its declared length, before the body is read."""
        try:
            declared = int(content_length)
        except (TypeError, ValueError):
            return
        if declared > self.max_upload_size + MULTIPART_OVERHEAD:
            logger.warning(f"Rejected upload of {declared} bytes before reading it")
            raise self._upload_too_large()

    def accept_uploaded_playlist(self, data: Optional[bytes]) -> PlaylistResponse:
        """Parse an uploaded playlist file."""
        if data is None:
            raise MissingInputError("File required")
        if len(data) > self.max_upload_size:
            raise self._upload_too_large()
        document = data.decode("utf-8", errors="replace")
        result = PlaylistResponse.from_records(parse_playlist(document))
        logger.info(f"Parsed {result.count} channels from uploaded playlist ({len(data)} bytes)")
        return result

    def accept_inline_playlist(self, content: Optional[str]) -> PlaylistResponse:
        """Parse playlist text supplied in the request body."""
        if not content:
            raise MissingInputError("Content required")
        result = PlaylistResponse.from_records(parse_playlist(content))
        logger.debug(f"Parsed {result.count} channels from inline playlist")
        return result

    # ============================================================================
    # RELAY
    # ============================================================================

    async def stream_resource(
        self,
        url: Optional[str],
        purpose: RelayPurpose,
        filename: Optional[str] = None
    ) -> Response:
        """
        Relay a remote resource to the caller.

        live-stream and download are proxied chunk by chunk as they arrive;
        the upstream must start answering within the purpose's bound.
        epg-document is fetched whole and returned unmodified as XML.
        """
        purpose = RelayPurpose(purpose)
        target = validate_url(decode_locator(url))

        if purpose == RelayPurpose.EPG_DOCUMENT:
            return await self._fetch_epg(target)

        bound = self.purpose_timeouts[purpose]
        prefix = ERROR_PREFIXES[purpose]

        logger.info(f"Opening upstream connection ({purpose.value}) to {target}")

        stream_context = self.http_client.stream(
            'GET',
            target,
            headers=self._headers(streaming=True),
            timeout=httpx.Timeout(self.read_timeout, connect=bound),
            follow_redirects=True
        )
        try:
            response = await asyncio.wait_for(stream_context.__aenter__(), timeout=bound)
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
            message = describe_error(e, bound)
            logger.warning(f"Upstream connection failed ({purpose.value}) for {target}: {message}")
            raise UpstreamFetchError(f"{prefix}: {message}") from e

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            await stream_context.__aexit__(None, None, None)
            message = describe_error(e)
            logger.warning(f"Upstream rejected ({purpose.value}) {target}: {message}")
            raise UpstreamFetchError(f"{prefix}: {message}") from e

        logger.info(
            f"Upstream connected: {response.status_code}, Content-Type: {response.headers.get('content-type')}")

        headers = {
            "Content-Type": response.headers.get('content-type') or DEFAULT_CONTENT_TYPES[purpose],
            "Access-Control-Allow-Origin": "*",
        }
        if response.headers.get('content-encoding'):
            headers["Content-Encoding"] = response.headers['content-encoding']

        if purpose == RelayPurpose.DOWNLOAD:
            headers["Content-Disposition"] = content_disposition(derive_filename(target, filename))
            if response.headers.get('content-length'):
                headers["Content-Length"] = response.headers['content-length']

        upstream = UpstreamHandle(stream_context, target)
        return RelayStreamingResponse(
            self._relay_body(upstream, response),
            upstream=upstream,
            status_code=200,
            headers=headers
        )

    async def _relay_body(self, upstream: UpstreamHandle, response: httpx.Response) -> AsyncIterator[bytes]:
        """
        Read one chunk, hand it to the caller, repeat.

        Starlette awaits each send, so a slow caller pauses upstream reads.
        The upstream response is closed on completion, on failure, and when
        the caller goes away (generator closed or cancelled).
        """
        try:
            async for chunk in response.aiter_raw(chunk_size=self.chunk_size):
                yield chunk
                upstream.bytes_served += len(chunk)
        except httpx.HTTPError as e:
            logger.warning(
                f"Upstream failed mid-relay for {upstream.target} after {upstream.bytes_served} bytes: "
                f"{describe_error(e)}")
            raise
        finally:
            await upstream.aclose()

    async def _fetch_epg(self, target: str) -> Response:
        bound = self.purpose_timeouts[RelayPurpose.EPG_DOCUMENT]
        logger.info(f"Fetching EPG document from {target}")
        try:
            response = await asyncio.wait_for(
                self.http_client.get(
                    target,
                    headers=self._headers(),
                    timeout=bound,
                    follow_redirects=True
                ),
                timeout=bound
            )
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
            message = describe_error(e, bound)
            logger.warning(f"EPG fetch failed for {target}: {message}")
            raise UpstreamFetchError(f"{ERROR_PREFIXES[RelayPurpose.EPG_DOCUMENT]}: {message}") from e

        return Response(
            content=response.content,
            media_type=DEFAULT_CONTENT_TYPES[RelayPurpose.EPG_DOCUMENT]
        )

    # ============================================================================
    # LIVENESS
    # ============================================================================

    async def check_liveness(self, url: Any) -> LivenessResult:
        """HEAD probe. Failures are reported in the result, never raised."""
        if url is not None and not isinstance(url, str):
            return LivenessResult(alive=False, error=f"URL must be a string, got {type(url).__name__}")
        target = decode_locator(url)
        try:
            validate_url(target)
            response = await asyncio.wait_for(
                self.http_client.head(
                    target,
                    headers=self._headers(),
                    timeout=self.check_timeout,
                    follow_redirects=True
                ),
                timeout=self.check_timeout
            )
            response.raise_for_status()
        except RelayError as e:
            return LivenessResult(alive=False, error=e.message)
        except Exception as e:
            message = describe_error(e, self.check_timeout)
            logger.debug(f"Liveness check failed for {target}: {message}")
            return LivenessResult(alive=False, error=message)

        return LivenessResult(
            alive=True,
            content_type=response.headers.get('content-type'),
            status=response.status_code
        )
