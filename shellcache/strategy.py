"""Request classification and caching strategies.

Every intercepted GET request is classified into exactly one RequestKind,
and each kind has its own strategy:

- NAVIGATION: network-first. A copy of every network answer replaces the stored
  root document; when offline the stored root document is served.
- IMAGE: cache-first. When both cache and network fail, the stored
  fallback icon is served.
- GENERIC: cache-first. When both cache and network fail, a bare 503 is
  served; the root document is never substituted for a sub-resource.
"""

import logging
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any

from .config import DEFAULT_IMAGE_EXTENSIONS, CacheConfig
from .models import MODE_NAVIGATE, Request, Response, origin_of
from .network import NetworkError
from .storage import CacheStorage, CacheWriteError, StorageError

logger = logging.getLogger(__name__)

FetchFn = Callable[[Request], Awaitable[Response]]
SpawnFn = Callable[[Coroutine[Any, Any, None]], object]


class RequestKind(Enum):
    """Closed set of request classes, each with its own strategy."""

    NAVIGATION = "navigation"
    IMAGE = "image"
    GENERIC = "generic"


def is_navigation_request(request: Request) -> bool:
    """A page load, or anything that declares it accepts HTML."""
    return request.mode == MODE_NAVIGATE or "text/html" in request.accept


def is_image_request(request: Request, extensions: tuple[str, ...] = DEFAULT_IMAGE_EXTENSIONS) -> bool:
    """An image destination, or a path ending in an image extension (case-insensitive)."""
    if request.destination == "image":
        return True
    return request.path.lower().endswith(tuple(ext.lower() for ext in extensions))


def classify(request: Request, config: CacheConfig) -> RequestKind:
    """Classify a request. Navigation wins over image, image over generic."""
    if is_navigation_request(request):
        return RequestKind.NAVIGATION
    if is_image_request(request, config.image_extensions):
        return RequestKind.IMAGE
    return RequestKind.GENERIC


class StrategySelector:
    """Executes the caching strategy for each request kind against the current store.

    Args:
        config: Cache configuration; its cache_name is the only store touched.
        storage: Storage substrate holding the named stores.
        fetch: Coroutine function performing network fetches.
        spawn: Schedules a detached coroutine (used for navigation refreshes).
    """

    def __init__(
        self,
        config: CacheConfig,
        storage: CacheStorage,
        fetch: FetchFn,
        spawn: SpawnFn,
    ) -> None:
        self.config = config
        self.storage = storage
        self.fetch = fetch
        self.spawn = spawn
        self._origin = origin_of(config.origin)
        self._strategies = {
            RequestKind.NAVIGATION: self.network_first,
            RequestKind.IMAGE: self.cache_first_image,
            RequestKind.GENERIC: self.cache_first_generic,
        }

    @property
    def root_document(self) -> Request:
        return Request.for_path(self.config.origin, self.config.root_document)

    @property
    def fallback_image(self) -> Request | None:
        if not self.config.fallback_image:
            return None
        return Request.for_path(self.config.origin, self.config.fallback_image)

    async def respond(self, request: Request) -> Response:
        """Answer a GET request using the strategy for its kind.

        Raises:
            NetworkError: For a navigation that fails with no stored root document.
        """
        kind = classify(request, self.config)
        logger.debug("%s %s classified as %s", request.method, request.url, kind.value)
        return await self._strategies[kind](request)

    async def network_first(self, request: Request) -> Response:
        try:
            response = await self.fetch(request)
        except NetworkError as e:
            logger.info("Navigation to %s failed (%s), serving stored root document", request.url, e)
            cached = await self._match(self.root_document)
            if cached is None:
                raise
            return cached

        # Whatever the network answered becomes the stored root document
        self.spawn(self._store(self.root_document, response.clone()))
        return response

    async def cache_first_image(self, request: Request) -> Response:
        response = await self._cache_then_network(request)
        if response is not None:
            return response

        fallback = self.fallback_image
        if fallback is not None:
            cached = await self._match(fallback)
            if cached is not None:
                logger.debug("Serving fallback image for %s", request.url)
                return cached

        logger.warning("No fallback image stored for %s, returning 503", request.url)
        return Response.unavailable()

    async def cache_first_generic(self, request: Request) -> Response:
        response = await self._cache_then_network(request)
        if response is not None:
            return response
        logger.debug("Asset %s unavailable offline, returning 503", request.url)
        return Response.unavailable()

    async def _cache_then_network(self, request: Request) -> Response | None:
        """Serve from cache, else fetch and store. None when both are unavailable."""
        cached = await self._match(request)
        if cached is not None:
            logger.debug("Cache hit for %s", request.url)
            return cached

        try:
            response = await self.fetch(request)
        except NetworkError as e:
            logger.debug("Cache miss and network failure for %s: %s", request.url, e)
            return None

        # Only successful same-origin responses are stored
        if response.status == 200 and request.origin == self._origin:
            await self._store(request, response.clone())
        return response

    async def _match(self, request: Request) -> Response | None:
        try:
            cache = await self.storage.open(self.config.cache_name)
            return await cache.match(request)
        except StorageError as e:
            logger.warning("Cache read failed for %s: %s", request.url, e)
            return None

    async def _store(self, request: Request, response: Response) -> None:
        try:
            cache = await self.storage.open(self.config.cache_name)
            await cache.put(request, response)
        except (CacheWriteError, StorageError) as e:
            logger.warning("Cache write failed for %s: %s", request.url, e)
