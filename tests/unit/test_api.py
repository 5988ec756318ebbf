"""Tests for the Flask HTTP adapter."""

import gzip

import pytest

from feed_delivery.api import build_services, create_app
from feed_delivery.config import DeliveryConfig
from feed_delivery.routing import FeedRoute


@pytest.fixture
def services(generator, clock):
    services = build_services(DeliveryConfig(), generator, clock=clock, start_janitor=False)
    yield services
    services.close()


@pytest.fixture
def client(services):
    app = create_app(services)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def secured_client(generator, clock):
    services = build_services(
        DeliveryConfig(admin_token="secret"), generator, clock=clock, start_janitor=False
    )
    app = create_app(services)
    yield app.test_client()
    services.close()


class TestFeedEndpoint:
    """Test feed delivery over HTTP."""

    def test_get_feed(self, client):
        response = client.get("/feed/")
        assert response.status_code == 200
        assert response.headers["Content-Type"] == "application/rss+xml; charset=UTF-8"
        assert response.headers["ETag"]
        assert response.headers["Cache-Control"] == "max-age=3600"
        assert response.data.startswith(b"<rss")

    def test_not_modified(self, client):
        etag = client.get("/feed/").headers["ETag"]
        response = client.get("/feed/", headers={"If-None-Match": etag})

        assert response.status_code == 304
        assert response.data == b""
        assert "Content-Type" not in response.headers
        assert response.headers["ETag"] == etag

    def test_gzip(self, client):
        plain = client.get("/feed/").data
        response = client.get("/feed/", headers={"Accept-Encoding": "gzip"})
        assert response.headers["Content-Encoding"] == "gzip"
        assert gzip.decompress(response.data) == plain

    def test_query_string_passed_through(self, client, generator):
        client.get("/feed/?paged=2&utm_source=x")
        assert generator.calls[0][1]["query"] == {"paged": "2"}

    def test_unknown_feed(self, client):
        assert client.get("/feed/nothing/").status_code == 404

    def test_generation_failure(self, client, generator):
        generator.error = RuntimeError("boom")
        response = client.get("/feed/")
        assert response.status_code == 500
        assert response.headers["Cache-Control"] == "no-store"


class TestAdminAuth:
    """Test the admin API key check."""

    def test_missing_key_rejected(self, secured_client):
        assert secured_client.post("/admin/clear-cache").status_code == 401

    def test_wrong_key_rejected(self, secured_client):
        response = secured_client.get("/admin/cache-stats", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_valid_key_accepted(self, secured_client):
        response = secured_client.post("/admin/clear-cache", headers={"X-API-Key": "secret"})
        assert response.status_code == 200

    def test_feeds_need_no_key(self, secured_client):
        assert secured_client.get("/feed/").status_code == 200


class TestCacheAdmin:
    """Test cache administration endpoints."""

    def test_clear_cache(self, client, services):
        client.get("/feed/")
        assert len(services.store) == 1

        response = client.post("/admin/clear-cache")

        assert response.get_json() == {"status": "cleared"}
        assert len(services.store) == 0

    def test_warm_cache(self, client, services):
        services.registry.add_route(FeedRoute("news"))
        response = client.post("/admin/warm-cache")
        assert response.status_code == 200
        assert response.get_json()["warmed"] == ["feed", "news"]

    def test_warm_cache_partial_failure(self, client, generator):
        generator.error = RuntimeError("boom")
        response = client.post("/admin/warm-cache")
        assert response.status_code == 207
        assert response.get_json()["failed"] == ["feed"]

    def test_cache_stats(self, client):
        client.get("/feed/")
        stats = client.get("/admin/cache-stats").get_json()
        assert stats["total_entries"] == 1
        assert stats["routes"] == 0
        assert stats["backend_available"] is True

    def test_content_changed(self, client, services):
        client.get("/feed/")
        response = client.post(
            "/admin/content-changed", json={"content_type": "post", "post_id": 4, "change": "updated"}
        )
        assert response.get_json() == {"evicted": 1}
        assert len(services.store) == 0

    def test_content_changed_validation(self, client):
        assert client.post("/admin/content-changed", json={}).status_code == 400
        response = client.post(
            "/admin/content-changed", json={"content_type": "post", "change": "archived"}
        )
        assert response.status_code == 400


class TestRouteAdmin:
    """Test route and redirect administration endpoints."""

    def test_create_and_serve_route(self, client):
        response = client.post("/admin/routes", json={"slug": "podcast", "item_limit": 20})
        assert response.status_code == 201
        assert response.get_json()["slug"] == "podcast"

        assert client.get("/feed/podcast/").status_code == 200
        routes = client.get("/admin/routes").get_json()["routes"]
        assert [route["slug"] for route in routes] == ["podcast"]

    def test_create_invalid_route(self, client):
        response = client.post("/admin/routes", json={"slug": "atom", "item_limit": 0})
        assert response.status_code == 400
        assert len(response.get_json()["problems"]) == 2

    def test_create_route_without_slug(self, client):
        assert client.post("/admin/routes", json={"title": "No slug"}).status_code == 400

    def test_update_route(self, client):
        client.post("/admin/routes", json={"slug": "podcast"})
        response = client.put("/admin/routes/podcast", json={"title": "Weekly"})
        assert response.status_code == 200
        assert response.get_json()["title"] == "Weekly"

    def test_update_missing_route(self, client):
        assert client.put("/admin/routes/missing", json={"title": "x"}).status_code == 404

    def test_delete_route(self, client):
        client.post("/admin/routes", json={"slug": "podcast"})
        assert client.delete("/admin/routes/podcast").status_code == 200
        assert client.delete("/admin/routes/podcast").status_code == 404
        assert client.get("/feed/podcast/").status_code == 404

    def test_redirect_lifecycle(self, client):
        response = client.post(
            "/admin/redirects",
            json={"from_path": "/feed/old/", "to_path": "/feed/atom/", "status_code": 302},
        )
        assert response.status_code == 201

        redirected = client.get("/feed/old/")
        assert redirected.status_code == 302
        assert redirected.headers["Location"] == "/feed/atom/"

        log = client.get("/admin/redirect-log").get_json()["redirects"]
        assert log[0]["to_path"] == "/feed/atom/"

        assert client.delete("/admin/redirects", query_string={"from_path": "/feed/old/"}).status_code == 200
        assert client.get("/feed/old/").status_code == 404

    def test_create_invalid_redirect(self, client):
        response = client.post("/admin/redirects", json={"from_path": "/feed/", "to_path": "/x/"})
        assert response.status_code == 400

    def test_delete_redirect_requires_source(self, client):
        assert client.delete("/admin/redirects").status_code == 400
        assert client.delete("/admin/redirects?from_path=/feed/none/").status_code == 404
