"""Tests for the models module."""

from shellcache.models import Request, Response, origin_of


class TestRequest:
    """Tests for Request dataclass."""

    def test_method_is_upper_cased(self) -> None:
        """Method is normalized to upper case."""
        assert Request("https://a.example/x", method="get").method == "GET"

    def test_headers_are_lower_cased(self) -> None:
        """Header names are normalized to lower case."""
        request = Request("https://a.example/", headers={"Accept": "text/html"})
        assert request.accept == "text/html"

    def test_key_is_method_and_url(self) -> None:
        """Cache key is the (method, url) pair."""
        assert Request("https://a.example/app.js").key == ("GET", "https://a.example/app.js")

    def test_for_path_resolves_against_origin(self) -> None:
        """Relative paths are resolved against the origin."""
        assert Request.for_path("https://a.example", "/").url == "https://a.example/"
        assert Request.for_path("https://a.example/", "/app.js").url == "https://a.example/app.js"

    def test_for_path_keeps_absolute_urls(self) -> None:
        """Absolute URLs in the manifest are used as-is."""
        assert Request.for_path("https://a.example", "https://cdn.example/x.css").url == "https://cdn.example/x.css"

    def test_path_ignores_query(self) -> None:
        """Path excludes the query string."""
        assert Request("https://a.example/logo.PNG?v=2").path == "/logo.PNG"


class TestResponse:
    """Tests for Response dataclass."""

    def test_clone_is_independent(self) -> None:
        """Mutating a clone's headers does not touch the original."""
        original = Response(headers={"Content-Type": "text/css"}, body=b"a{}")
        copy = original.clone()
        copy.headers["x-extra"] = "1"
        assert "x-extra" not in original.headers
        assert copy == Response(headers={"content-type": "text/css", "x-extra": "1"}, body=b"a{}")

    def test_unavailable_is_empty_503(self) -> None:
        """Synthesized fallback is a 503 with no body."""
        response = Response.unavailable()
        assert response.status == 503
        assert response.status_text == "Service Unavailable"
        assert response.body == b""
        assert not response.ok


def test_origin_of_includes_port() -> None:
    """Origin keeps scheme, host and explicit port."""
    assert origin_of("http://Localhost:8080/a/b") == "http://localhost:8080"
