"""Data models for intercepted requests and stored responses."""

from dataclasses import dataclass, field, replace
from urllib.parse import urljoin, urlsplit

# Request modes as reported by the client (Sec-Fetch-Mode).
MODE_NAVIGATE = "navigate"
MODE_CORS = "cors"
MODE_NO_CORS = "no-cors"
MODE_SAME_ORIGIN = "same-origin"

# Response types. Opaque responses carry no readable status and cannot be stored.
TYPE_BASIC = "basic"
TYPE_CORS = "cors"
TYPE_OPAQUE = "opaque"
TYPE_DEFAULT = "default"


def _lower_keys(headers: dict[str, str] | None) -> dict[str, str]:
    return {k.lower(): v for k, v in (headers or {}).items()}


def origin_of(url: str) -> str:
    """Return the scheme://host[:port] origin of an absolute URL."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


@dataclass(frozen=True)
class Request:
    """An outgoing request seen by the interception layer.

    Attributes:
        url: Absolute request URL.
        method: HTTP method, upper case.
        headers: Request headers with lower-case names.
        mode: Request mode ("navigate" for page loads).
        destination: Requested resource kind ("image", "script", ...), or "".
        body: Request body for non-GET requests.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    mode: str = MODE_CORS
    destination: str = ""
    body: bytes | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", _lower_keys(self.headers))

    @classmethod
    def for_path(cls, origin: str, path: str, **kwargs) -> "Request":
        """Build a request for a path relative to an origin."""
        return cls(url=urljoin(origin.rstrip("/") + "/", path), **kwargs)

    @property
    def key(self) -> tuple[str, str]:
        """Normalized (method, url) cache key."""
        return self.method, self.url

    @property
    def origin(self) -> str:
        return origin_of(self.url)

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def accept(self) -> str:
        return self.headers.get("accept", "")


@dataclass(frozen=True)
class Response:
    """A response snapshot: live from the network, read from a store, or synthesized.

    Attributes:
        status: HTTP status code (0 for opaque responses).
        status_text: Reason phrase.
        headers: Response headers with lower-case names.
        body: Response body bytes.
        url: URL the response was produced for, or "" when synthesized.
        type: Response type ("basic", "cors", "opaque", "default").
    """

    status: int = 200
    status_text: str = "OK"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""
    type: str = TYPE_DEFAULT

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _lower_keys(self.headers))

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    def clone(self) -> "Response":
        """Return an independent copy that can be stored while this one is returned."""
        return replace(self, headers=dict(self.headers))

    @classmethod
    def unavailable(cls) -> "Response":
        """The synthesized 503 returned when neither cache nor network can answer."""
        return cls(status=503, status_text="Service Unavailable")
