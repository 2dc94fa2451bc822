"""
Route guard

Every request accepted by MATCHER is checked against PUBLIC_ROUTES. Public
routes pass without a session; everything else needs a session token that
SessionVerifier accepts. Without one, API/RPC paths get a 401 and page
paths are redirected to the sign-in URL.

Patterns follow the path-to-regexp convention: text outside parentheses is
literal, a parenthesised group is a regular expression, the whole path must
match and one trailing slash is allowed.
"""
import logging
import re
from typing import Iterable, List, Optional, Sequence
from urllib.parse import urlencode

import jwt
from fastapi.security import APIKeyCookie, HTTPBearer
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse

logger = logging.getLogger(__name__)

PUBLIC_ROUTES = ["/", "/all-products", "/product(.*)"]

# Requests the guard runs for at all: no static files (anything ending in an
# extension), nothing under the framework-internal prefix, but always the
# API and RPC endpoints.
MATCHER = [r"/((?!.+\.[\w]+$|_internal).*)", "/", "/(api|trpc)(.*)"]

API_ROUTES = ["/(api|trpc)(.*)"]

SESSION_COOKIE = "__session"


def _group_end(pattern: str, start: int) -> int:
    depth = 0
    in_class = False
    i = start
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            i += 2
            continue
        if in_class:
            if ch == "]":
                in_class = False
        elif ch == "[":
            in_class = True
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ValueError(f"Unbalanced group in route pattern {pattern!r}")


class PathPattern:
    def __init__(self, pattern: str):
        self.pattern = pattern
        parts = []
        literal = ""
        i = 0
        while i < len(pattern):
            if pattern[i] == "(":
                end = _group_end(pattern, i)
                parts.append(re.escape(literal))
                parts.append(pattern[i:end + 1])
                literal = ""
                i = end + 1
            else:
                literal += pattern[i]
                i += 1
        parts.append(re.escape(literal))
        body = "".join(parts)
        if not body.endswith("/"):
            body += "/?"
        self.regex = re.compile("^" + body + "$")

    def __repr__(self):
        return f"PathPattern({self.pattern!r})"

    def matches(self, path: str) -> bool:
        return self.regex.match(path) is not None


class RouteMatcher:
    """Ordered patterns, first match wins."""

    def __init__(self, patterns: Iterable[str]):
        self.patterns: List[PathPattern] = [PathPattern(p) for p in patterns]

    def match(self, path: str) -> Optional[str]:
        for pattern in self.patterns:
            if pattern.matches(path):
                return pattern.pattern
        return None

    def __contains__(self, path: str) -> bool:
        return self.match(path) is not None


class SessionVerifier:
    """Verifies the auth provider's session JWT from the Authorization
    header or the session cookie."""

    def __init__(self, key: str, algorithms: Sequence[str] = ("HS256",), cookie_name: str = SESSION_COOKIE):
        self.key = key
        self.algorithms = list(algorithms)
        self.bearer = HTTPBearer(auto_error=False)
        self.cookie = APIKeyCookie(name=cookie_name, auto_error=False)

    async def token_from(self, request: Request) -> Optional[str]:
        credentials = await self.bearer(request)
        if credentials is not None:
            return credentials.credentials
        return await self.cookie(request)

    async def verify(self, request: Request) -> Optional[dict]:
        token = await self.token_from(request)
        if not token:
            return None
        try:
            claims = jwt.decode(token, self.key, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError:
            logger.info("Session token expired for %s", request.url.path)
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("Rejected session token for %s: %s", request.url.path, e)
            return None
        if not claims.get("sub"):
            logger.warning("Session token without subject for %s", request.url.path)
            return None
        return claims


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        verifier: SessionVerifier,
        public_routes: Iterable[str] = PUBLIC_ROUTES,
        matcher: Iterable[str] = MATCHER,
        api_routes: Iterable[str] = API_ROUTES,
        sign_in_url: str = "/sign-in",
    ):
        super().__init__(app)
        self.verifier = verifier
        self.public_routes = RouteMatcher(public_routes)
        self.matcher = RouteMatcher(matcher)
        self.api_routes = RouteMatcher(api_routes)
        self.sign_in_url = sign_in_url

    def is_public(self, path: str) -> bool:
        if self.sign_in_url.startswith("/") and path.rstrip("/") == self.sign_in_url.rstrip("/"):
            return True
        return path in self.public_routes

    def deny(self, request: Request):
        if request.url.path in self.api_routes:
            return JSONResponse({"detail": "Unauthorized"}, status_code=401)
        query = urlencode({"redirect_url": str(request.url)})
        return RedirectResponse(f"{self.sign_in_url}?{query}", status_code=307)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path not in self.matcher:
            return await call_next(request)

        claims = await self.verifier.verify(request)
        request.state.auth = claims
        if claims is not None or self.is_public(path):
            return await call_next(request)

        logger.debug("No session for protected path %s", path)
        return self.deny(request)
