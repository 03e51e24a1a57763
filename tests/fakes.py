"""Test doubles shared across test modules."""

from shellcache.models import Request, Response
from shellcache.network import NetworkError

ORIGIN = "https://app.example.com"


class FakeNetwork:
    """Stands in for the network: serves registered responses, fails everything else."""

    def __init__(self) -> None:
        self.routes: dict[str, Response | Exception] = {}
        self.offline = False
        self.requests: list[Request] = []

    def serve(self, path_or_url: str, body: bytes = b"", status: int = 200, **kwargs) -> Response:
        url = path_or_url if "://" in path_or_url else ORIGIN + path_or_url
        response_type = kwargs.pop("type", "basic")
        response = Response(status=status, body=body, url=url, type=response_type, **kwargs)
        self.routes[url] = response
        return response

    async def __call__(self, request: Request) -> Response:
        self.requests.append(request)
        if self.offline:
            raise NetworkError(f"offline: {request.url}")
        route = self.routes.get(request.url)
        if route is None:
            raise NetworkError(f"unreachable: {request.url}")
        if isinstance(route, Exception):
            raise route
        return route.clone()

    def urls(self) -> list[str]:
        return [r.url for r in self.requests]
