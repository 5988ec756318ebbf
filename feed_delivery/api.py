"""HTTP adapter for feed delivery and cache administration."""

import threading
import time
from dataclasses import dataclass
from functools import wraps
from typing import Optional

import structlog
from flask import Flask, Response, current_app, jsonify, request
from werkzeug.serving import make_server

from feed_delivery.cache.backends import CacheBackend, MemoryCacheBackend
from feed_delivery.cache.store import CacheJanitor, FeedCacheStore
from feed_delivery.config.delivery_config import DeliveryConfig
from feed_delivery.core.errors import ConfigurationError
from feed_delivery.core.orchestrator import ContentGenerator, DeliveryOrchestrator, FeedRequest
from feed_delivery.invalidation import InvalidationTrigger
from feed_delivery.routing.models import FeedRoute, RedirectRule
from feed_delivery.routing.registry import CustomRouteRegistry
from feed_delivery.routing.store import InMemoryRouteStore, RouteDefinitionStore

logger = structlog.get_logger(__name__)

EXTENSION_KEY = "feed_delivery"

server = None


@dataclass
class DeliveryServices:
    """Components of one delivery engine, wired together."""

    config: DeliveryConfig
    store: FeedCacheStore
    registry: CustomRouteRegistry
    orchestrator: DeliveryOrchestrator
    invalidation: InvalidationTrigger
    janitor: Optional[CacheJanitor] = None

    def close(self) -> None:
        """Stop background threads."""
        if self.janitor:
            self.janitor.stop()
        self.orchestrator.close()


def build_services(
    config: DeliveryConfig,
    generator: ContentGenerator,
    route_store: Optional[RouteDefinitionStore] = None,
    backend: Optional[CacheBackend] = None,
    clock=time.time,
    start_janitor: bool = True,
) -> DeliveryServices:
    """Construct and connect every component of the delivery engine.

    Args:
        config: Validated delivery settings
        generator: Content generation collaborator
        route_store: Route definitions, an empty in-memory store by default
        backend: Cache backend, an LRU memory backend sized from config by default
        clock: Returns the current time in epoch seconds
        start_janitor: Start the expired-entry cleanup thread

    Returns:
        DeliveryServices holding the connected components
    """
    store = FeedCacheStore(
        backend=backend or MemoryCacheBackend(max_entries=config.cache_max_entries),
        ttl_seconds=config.cache_ttl_seconds,
        clock=clock,
        failure_threshold=config.backend_failure_threshold,
        reset_timeout=config.backend_reset_timeout_seconds,
    )
    registry = CustomRouteRegistry(
        route_store or InMemoryRouteStore(),
        allowed_post_types=config.allowed_post_types,
        redirect_log_size=config.redirect_log_size,
        clock=clock,
    )
    orchestrator = DeliveryOrchestrator(config, registry, store, generator, clock=clock)
    invalidation = InvalidationTrigger(store, orchestrator, registry)

    janitor = None
    if start_janitor and config.cache_cleanup_interval_seconds > 0:
        janitor = CacheJanitor(store, config.cache_cleanup_interval_seconds)
        janitor.start()

    return DeliveryServices(config, store, registry, orchestrator, invalidation, janitor)


def _services() -> DeliveryServices:
    return current_app.extensions[EXTENSION_KEY]


def _error(message: str, status: int, **extra):
    return jsonify({"error": message, **extra}), status


def require_admin_token(f):
    """Reject admin requests without the configured ``X-API-Key``."""

    @wraps(f)
    def wrapped(*args, **kwargs):
        token = _services().config.admin_token
        if token and request.headers.get("X-API-Key") != token:
            logger.warning("admin_request_rejected", path=request.path)
            return _error("Invalid or missing API key", 401)
        return f(*args, **kwargs)

    return wrapped


def _configuration_error(e: ConfigurationError):
    return _error(str(e), 400, problems=e.context.get("problems", []))


def serve_feed(path: str):
    """Deliver a feed through the orchestrator."""
    feed_request = FeedRequest(
        path="/" + path,
        query=request.args.to_dict(flat=False),
        headers=dict(request.headers),
    )
    result = _services().orchestrator.handle(feed_request)
    response = Response(result.body, status=result.status)
    response.headers.pop("Content-Type", None)
    for name, value in result.headers.items():
        response.headers[name] = value
    return response


@require_admin_token
def clear_cache():
    """Flush every cached feed."""
    _services().invalidation.clear_all()
    return jsonify({"status": "cleared"}), 200


@require_admin_token
def warm_cache():
    """Regenerate the default feed and all enabled custom feeds."""
    result = _services().invalidation.warm()
    status = 200 if not result["failed"] else 207
    return jsonify(result), status


@require_admin_token
def cache_stats():
    """Cache statistics plus route counts."""
    services = _services()
    stats = services.store.stats()
    stats["routes"] = len(services.registry.list_routes())
    stats["redirects"] = len(services.registry.list_redirects())
    return jsonify(stats), 200


@require_admin_token
def list_routes():
    routes = _services().registry.list_routes()
    return jsonify({"routes": [route.to_dict() for route in routes]}), 200


@require_admin_token
def create_route():
    try:
        route = FeedRoute.from_dict(request.get_json(force=True) or {})
        _services().registry.add_route(route)
    except ConfigurationError as e:
        return _configuration_error(e)
    except (TypeError, ValueError) as e:
        return _error(f"Invalid route definition: {e}", 400)
    return jsonify(route.to_dict()), 201


@require_admin_token
def update_route(slug: str):
    try:
        data = {"slug": slug, **(request.get_json(force=True) or {})}
        route = FeedRoute.from_dict(data)
        _services().registry.update_route(slug, route)
    except KeyError:
        return _error(f"Route '{slug}' not found", 404)
    except ConfigurationError as e:
        return _configuration_error(e)
    except (TypeError, ValueError) as e:
        return _error(f"Invalid route definition: {e}", 400)
    return jsonify(route.to_dict()), 200


@require_admin_token
def delete_route(slug: str):
    if not _services().registry.delete_route(slug):
        return _error(f"Route '{slug}' not found", 404)
    return jsonify({"deleted": slug}), 200


@require_admin_token
def list_redirects():
    redirects = _services().registry.list_redirects()
    return jsonify({"redirects": [rule.to_dict() for rule in redirects]}), 200


@require_admin_token
def create_redirect():
    try:
        rule = RedirectRule.from_dict(request.get_json(force=True) or {})
        _services().registry.add_redirect(rule)
    except ConfigurationError as e:
        return _configuration_error(e)
    except (TypeError, ValueError) as e:
        return _error(f"Invalid redirect definition: {e}", 400)
    return jsonify(rule.to_dict()), 201


@require_admin_token
def delete_redirect():
    from_path = request.args.get("from_path")
    if not from_path:
        return _error("from_path is required", 400)
    if not _services().registry.delete_redirect(from_path):
        return _error(f"Redirect '{from_path}' not found", 404)
    return jsonify({"deleted": from_path}), 200


@require_admin_token
def redirect_log():
    limit = request.args.get("limit", 50, type=int)
    return jsonify({"redirects": _services().registry.recent_redirects(limit)}), 200


@require_admin_token
def content_changed():
    """Notification from the host platform that content was written."""
    data = request.get_json(force=True) or {}
    content_type = data.get("content_type")
    if not content_type:
        return _error("content_type is required", 400)
    try:
        removed = _services().invalidation.on_content_changed(
            content_type, data.get("post_id"), data.get("change", "updated")
        )
    except ValueError as e:
        return _error(str(e), 400)
    return jsonify({"evicted": removed}), 200


def create_app(services: DeliveryServices) -> Flask:
    """Create the Flask application serving feeds and admin endpoints."""
    app = Flask(__name__)
    app.extensions[EXTENSION_KEY] = services

    app.add_url_rule("/admin/clear-cache", view_func=clear_cache, methods=["POST"])
    app.add_url_rule("/admin/warm-cache", view_func=warm_cache, methods=["POST"])
    app.add_url_rule("/admin/cache-stats", view_func=cache_stats, methods=["GET"])
    app.add_url_rule("/admin/routes", view_func=list_routes, methods=["GET"])
    app.add_url_rule("/admin/routes", view_func=create_route, methods=["POST"])
    app.add_url_rule("/admin/routes/<slug>", view_func=update_route, methods=["PUT"])
    app.add_url_rule("/admin/routes/<slug>", view_func=delete_route, methods=["DELETE"])
    app.add_url_rule("/admin/redirects", view_func=list_redirects, methods=["GET"])
    app.add_url_rule("/admin/redirects", view_func=create_redirect, methods=["POST"])
    app.add_url_rule("/admin/redirects", view_func=delete_redirect, methods=["DELETE"])
    app.add_url_rule("/admin/redirect-log", view_func=redirect_log, methods=["GET"])
    app.add_url_rule("/admin/content-changed", view_func=content_changed, methods=["POST"])
    app.add_url_rule("/<path:path>", view_func=serve_feed, methods=["GET"])
    return app


class ServerThread(threading.Thread):
    def __init__(self, app, host, port):
        threading.Thread.__init__(self)
        self.server = make_server(host, port, app, threaded=True)
        self.ctx = app.app_context()
        self.ctx.push()

    def run(self):
        self.server.serve_forever()

    def shutdown(self):
        self.server.shutdown()


def start_api_server(services: DeliveryServices, host="localhost", port=8000):
    """Start the API server on a background thread."""
    global server
    if services is None:
        raise ValueError("DeliveryServices instance must be provided")

    server = ServerThread(create_app(services), host, port)
    server.daemon = True
    server.start()
    logger.info("api_server_started", host=host, port=port)
    return server


def stop_api_server():
    """Stop the API server."""
    global server
    if server:
        server.shutdown()
        server = None
