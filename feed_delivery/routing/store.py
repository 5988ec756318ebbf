"""Persistence of route and redirect definitions.

The registry never reads definitions on the request path. It compares the
store's ``revision`` with the revision of its index and asks for a
``snapshot()`` only when they differ.
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Union

import structlog

from feed_delivery.core.errors import ConfigurationError
from feed_delivery.routing.models import FeedRoute, RedirectRule, RouteSnapshot

logger = structlog.get_logger(__name__)


class RouteDefinitionStore(ABC):
    """Owner of the route and redirect definitions."""

    @property
    @abstractmethod
    def revision(self) -> int:
        """Counter incremented on every change to the definitions."""

    @abstractmethod
    def snapshot(self) -> RouteSnapshot:
        """Return all definitions together with the current revision."""

    @abstractmethod
    def save_route(self, route: FeedRoute) -> None:
        """Insert ``route`` or replace the route with the same slug."""

    @abstractmethod
    def remove_route(self, slug: str) -> bool:
        """Delete the route with ``slug``; return False if absent."""

    @abstractmethod
    def save_redirect(self, rule: RedirectRule) -> None:
        """Insert ``rule`` or replace the rule with the same source."""

    @abstractmethod
    def remove_redirect(self, from_path: str) -> bool:
        """Delete the rule whose source matches ``from_path``; return False if absent."""


class InMemoryRouteStore(RouteDefinitionStore):
    """Thread-safe store that keeps definitions in process memory."""

    def __init__(self, snapshot: RouteSnapshot = None) -> None:
        snapshot = snapshot or RouteSnapshot()
        self._routes: List[FeedRoute] = list(snapshot.routes)
        self._redirects: List[RedirectRule] = list(snapshot.redirects)
        self._revision = snapshot.revision
        self._lock = threading.RLock()

    @property
    def revision(self) -> int:
        return self._revision

    def snapshot(self) -> RouteSnapshot:
        with self._lock:
            return RouteSnapshot(tuple(self._routes), tuple(self._redirects), self._revision)

    def _changed(self) -> None:
        self._revision += 1

    def save_route(self, route: FeedRoute) -> None:
        with self._lock:
            for i, existing in enumerate(self._routes):
                if existing.slug == route.slug:
                    self._routes[i] = route
                    break
            else:
                self._routes.append(route)
            self._changed()

    def remove_route(self, slug: str) -> bool:
        with self._lock:
            remaining = [r for r in self._routes if r.slug != slug]
            if len(remaining) == len(self._routes):
                return False
            self._routes = remaining
            self._changed()
            return True

    def save_redirect(self, rule: RedirectRule) -> None:
        with self._lock:
            for i, existing in enumerate(self._redirects):
                if existing.identity == rule.identity:
                    self._redirects[i] = rule
                    break
            else:
                self._redirects.append(rule)
            self._changed()

    def remove_redirect(self, from_path: str) -> bool:
        identity = RedirectRule(from_path, "").identity
        with self._lock:
            remaining = [r for r in self._redirects if r.identity != identity]
            if len(remaining) == len(self._redirects):
                return False
            self._redirects = remaining
            self._changed()
            return True


class JsonRouteStore(InMemoryRouteStore):
    """Store backed by a JSON document on disk.

    The file holds ``{"revision": n, "routes": [...], "redirects": [...]}``
    and is rewritten atomically after every change.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> RouteSnapshot:
        if not self.path.exists():
            return RouteSnapshot()
        try:
            with open(self.path) as f:
                return RouteSnapshot.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Cannot read route definitions from {self.path}", {"error": str(e)}
            ) from e

    def reload(self) -> None:
        """Re-read the file, picking up edits made by another process."""
        snapshot = self._load()
        with self._lock:
            self._routes = list(snapshot.routes)
            self._redirects = list(snapshot.redirects)
            # Never move backwards, or the registry would keep a newer index
            self._revision = max(self._revision + 1, snapshot.revision)
        logger.info("route_definitions_reloaded", path=str(self.path), revision=self._revision)

    def _changed(self) -> None:
        super()._changed()
        self._write()

    def _write(self) -> None:
        document = RouteSnapshot(tuple(self._routes), tuple(self._redirects), self._revision)
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document.to_dict(), f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
