"""
auth/access.py -- Declarative per-route authentication requirements.

Routes declare their requirement in an explicit table at registration time,
next to the route definitions, instead of decorating handlers:

    access_rules.require_group("/posts")      # group level: every /posts route
    access_rules.allow("GET", "/posts")       # endpoint level: public index
    access_rules.require("GET", "/")          # endpoint level: home

Paths are route path templates ("/posts/{post_id}"), so one declaration
covers every value of a path parameter. resolve() accepts either a template or
a concrete request path: the interceptor resolves the URL it was given and
never walks the router, so how a framework version nests included routers
cannot change the answer. A literal template wins over a parameterized one
("/posts/new" before "/posts/{post_id}"), the same order Starlette uses when
routes are registered literal-first.

verify() runs at startup: a declaration that names no registered route is a
configuration error and the app refuses to start rather than serve an
unprotected route it believes is protected.

Precedence, highest first:
  1. endpoint allow    -- always permits, whatever else is declared
  2. endpoint require
  3. group require     -- only when no endpoint declaration exists
  4. default ALLOW     -- undeclared routes are public (fail-open). Protect a
                          route by declaring it.

access_rules is the single shared table: web/ and api/ declare into it at
import time, the interceptor in auth/middleware.py reads it from app.state.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from enum import Enum
from functools import lru_cache

from starlette.routing import compile_path


class Requirement(str, Enum):
    REQUIRE = "require"
    ALLOW = "allow"


def _normalize_method(method: str) -> str:
    # Starlette answers HEAD with the GET route, so HEAD must share its rule.
    method = method.upper()
    return "GET" if method == "HEAD" else method


def _normalize_prefix(prefix: str) -> str:
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    return prefix.rstrip("/") or "/"


class AccessTable:
    """Explicit (method, path template) -> requirement declarations."""

    def __init__(self) -> None:
        self._endpoints: dict[tuple[str, str], set[Requirement]] = {}
        self._groups: set[str] = set()

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def require_group(self, prefix: str) -> None:
        """Require authentication for every route at or below prefix."""
        self._groups.add(_normalize_prefix(prefix))

    def require(self, method: str, path: str) -> None:
        self._declare(method, path, Requirement.REQUIRE)

    def allow(self, method: str, path: str) -> None:
        self._declare(method, path, Requirement.ALLOW)

    def _declare(self, method: str, path: str, requirement: Requirement) -> None:
        key = (_normalize_method(method), path)
        self._endpoints.setdefault(key, set()).add(requirement)

    def clear(self) -> None:
        self._endpoints.clear()
        self._groups.clear()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def in_required_group(self, path: str) -> bool:
        for prefix in self._groups:
            if prefix == "/" or path == prefix or path.startswith(prefix + "/"):
                return True
        return False

    def _declared_for(self, method: str, path: str) -> set[Requirement]:
        declared = self._endpoints.get((method, path))
        if declared is not None:
            return declared
        for (declared_method, template), requirements in self._endpoints.items():
            if declared_method == method and "{" in template and _template_regex(template).match(path):
                return requirements
        return set()

    def resolve(self, method: str, path: str) -> Requirement:
        """Apply the precedence rules to one route template or request path."""
        declared = self._declared_for(_normalize_method(method), path)
        if Requirement.ALLOW in declared:
            return Requirement.ALLOW
        if Requirement.REQUIRE in declared:
            return Requirement.REQUIRE
        if self.in_required_group(path):
            return Requirement.REQUIRE
        return Requirement.ALLOW

    def compile(self, routes: Iterable[tuple[str, str]]) -> dict[tuple[str, str], Requirement]:
        """Resolve every (method, path template) pair. Handy for audits and startup logs."""
        return {(method, path): self.resolve(method, path) for method, path in routes}

    def verify(self, routes: Iterable[tuple[str, str]]) -> None:
        """Raise AccessConfigurationError for declarations that match no route.

        An endpoint declaration must name a registered (method, template) pair
        and a group must contain at least one registered route.
        """
        routes = {(_normalize_method(method), path) for method, path in routes}
        paths = {path for _method, path in routes}
        dangling = [f"{method} {path}" for method, path in sorted(self._endpoints) if (method, path) not in routes]
        for prefix in sorted(self._groups):
            if not any(prefix == "/" or p == prefix or p.startswith(prefix + "/") for p in paths):
                dangling.append(f"group {prefix}")
        if dangling:
            raise AccessConfigurationError(
                "Access declarations match no registered route: " + ", ".join(dangling)
            )


class AccessConfigurationError(RuntimeError):
    """The access table declares routes the application does not have."""


def route_keys(app) -> list[tuple[str, str]]:
    """Every documented (METHOD, full path template) pair the app serves.

    Read from the app's OpenAPI schema, which lists included routers with their
    prefixes applied. Routes registered with include_in_schema=False are not
    listed and so cannot be audited or verified.
    """
    keys: list[tuple[str, str]] = []
    for path, operations in app.openapi().get("paths", {}).items():
        for method in operations:
            if method.upper() in _HTTP_METHODS:
                keys.append((method.upper(), path))
    return keys


_HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD", "TRACE"})


def audit_routes(app, table: AccessTable | None = None) -> dict[tuple[str, str], Requirement]:
    """Verify the table against the app's routes and resolve every route.

    Raises AccessConfigurationError when a declaration names no route.
    """
    table = table or getattr(app.state, "access_rules", access_rules)
    routes = route_keys(app)
    table.verify(routes)
    return table.compile(routes)


@lru_cache(maxsize=256)
def _template_regex(template: str) -> re.Pattern:
    regex, _path_format, _convertors = compile_path(template)
    return regex


access_rules = AccessTable()


# ---------------------------------------------------------------------------
# Excluded path patterns
# ---------------------------------------------------------------------------


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern:
    """Translate an Ant-style pattern to a regex.

    "/**" at a segment boundary matches nothing or any tail, so "/passwords/**"
    matches "/passwords" and "/passwords/a/b". "*" matches within one segment,
    "?" matches one character.
    """
    regex = re.escape(pattern)
    regex = regex.replace(r"/\*\*", "(?:/.*)?")
    regex = regex.replace(r"\*\*", ".*")
    regex = regex.replace(r"\*", "[^/]*")
    regex = regex.replace(r"\?", "[^/]")
    return re.compile(f"^{regex}$")


def matches_pattern(path: str, pattern: str) -> bool:
    return _compile_pattern(pattern).match(path) is not None


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(path, p) for p in patterns)
