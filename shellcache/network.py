"""Network fetches for intercepted requests."""

import asyncio
import http.client
import logging
import urllib.error
import urllib.parse
import urllib.request

from .config import NetworkConfig
from .models import TYPE_BASIC, TYPE_CORS, Request, Response, origin_of

logger = logging.getLogger(__name__)


class NetworkError(Exception):
    """Raised when a fetch produces no response at all."""

    pass


# Request headers never forwarded upstream. Accept-Encoding is dropped so
# stored bodies are always identity-encoded.
_SKIPPED_REQUEST_HEADERS = frozenset(
    {
        "accept-encoding",
        "connection",
        "content-length",
        "host",
        "keep-alive",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

_SKIPPED_RESPONSE_HEADERS = frozenset({"connection", "keep-alive", "transfer-encoding"})


class _RedirectHandler(urllib.request.HTTPRedirectHandler):
    """Custom redirect handler that follows 307 and 308 redirects."""

    def http_error_307(self, req, fp, code, msg, headers):
        """Handle 307 Temporary Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def http_error_308(self, req, fp, code, msg, headers):
        """Handle 308 Permanent Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def _do_redirect(self, req, fp, code, msg, headers):
        """Follow redirect preserving the original method and body."""
        new_url = headers.get("Location")
        if new_url:
            new_req = urllib.request.Request(
                urllib.parse.urljoin(req.full_url, new_url),
                data=req.data,
                method=req.get_method(),
                headers=dict(req.header_items()),
            )
            return self.parent.open(new_req, timeout=req.timeout)
        return None


_opener = urllib.request.build_opener(_RedirectHandler())


class Fetcher:
    """Fetches requests from the network in a worker thread.

    HTTP error statuses are ordinary responses; only the absence of any
    response (connection refused, DNS failure, timeout, oversized body)
    raises NetworkError.
    """

    def __init__(self, config: NetworkConfig, origin: str) -> None:
        self.config = config
        self.origin = origin_of(origin)

    async def __call__(self, request: Request) -> Response:
        return await self.fetch(request)

    async def fetch(self, request: Request) -> Response:
        return await asyncio.to_thread(self._fetch_sync, request)

    def _build_request(self, request: Request) -> urllib.request.Request:
        headers = {
            name: value for name, value in request.headers.items() if name not in _SKIPPED_REQUEST_HEADERS
        }
        headers.setdefault("user-agent", self.config.user_agent)
        return urllib.request.Request(
            request.url,
            data=request.body,
            method=request.method,
            headers=headers,
        )

    def _read_body(self, fp, url: str) -> bytes:
        body = fp.read(self.config.max_body_bytes + 1)
        if len(body) > self.config.max_body_bytes:
            raise NetworkError(f"Response body for {url} exceeds {self.config.max_body_bytes} bytes")
        return body

    def _to_response(self, request: Request, fp, status: int, reason: str | None, url: str) -> Response:
        headers = {
            name.lower(): value
            for name, value in fp.headers.items()
            if name.lower() not in _SKIPPED_RESPONSE_HEADERS
        }
        return Response(
            status=status,
            status_text=reason or "",
            headers=headers,
            body=self._read_body(fp, request.url),
            url=url,
            type=TYPE_BASIC if origin_of(request.url) == self.origin else TYPE_CORS,
        )

    def _fetch_sync(self, request: Request) -> Response:
        try:
            url_request = self._build_request(request)
        except ValueError as e:
            raise NetworkError(f"Invalid request URL {request.url}: {e}")

        try:
            with _opener.open(url_request, timeout=self.config.timeout) as fp:
                return self._to_response(request, fp, fp.status, getattr(fp, "reason", None), fp.geturl())

        except urllib.error.HTTPError as e:
            # An HTTP error status is still a response, unless its body cannot be read
            try:
                return self._to_response(request, e, e.code, str(e.reason), e.geturl() or request.url)
            except (http.client.HTTPException, OSError) as read_error:
                logger.debug("Reading error body failed for %s: %r", request.url, read_error)
                raise NetworkError(f"Fetch failed for {request.url}: {read_error!r}")
            finally:
                e.close()

        except urllib.error.URLError as e:
            reason = str(e.reason) if e.reason else "Connection failed"
            logger.debug("Network fetch failed for %s: %s", request.url, reason)
            raise NetworkError(f"Fetch failed for {request.url}: {reason}")
        except TimeoutError:
            logger.debug("Network fetch timed out for %s", request.url)
            raise NetworkError(f"Fetch timed out for {request.url}")
        except http.client.HTTPException as e:
            # Truncated bodies (IncompleteRead) and malformed status lines
            logger.debug("Network fetch failed for %s: %r", request.url, e)
            raise NetworkError(f"Fetch failed for {request.url}: {e!r}")
        except OSError as e:
            logger.debug("Network fetch failed for %s: %s", request.url, e)
            raise NetworkError(f"Fetch failed for {request.url}: {e}")
