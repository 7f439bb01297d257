"""
FastAPI glue for anonymous user identity.

`user_cookie_middleware` runs before every route: it reads the `auth`
cookie, and when it is missing or fails verification, creates a new user
and sets a fresh cookie on the response. Routes then get the token through
the `get_current_user` dependency.

The cookie is set in middleware rather than in a dependency because
dependency-set cookies are lost when a route returns its own Response
(redirects, plain text bodies).
"""

import logging

from fastapi import Request
from fastapi.responses import PlainTextResponse

from hashlink_platform.storage.errors import RepositoryError

AUTH_COOKIE = "auth"
COOKIE_MAX_AGE = 24 * 60 * 60

log = logging.getLogger("hashlink.auth")


async def user_cookie_middleware(request: Request, call_next):
    manager = request.app.state.manager
    token = request.cookies.get(AUTH_COOKIE)
    fresh = None
    if not token or not manager.tokens.is_token_valid(token):
        try:
            token = fresh = await manager.create_user()
        except RepositoryError as exc:
            log.error("cannot create user: %s", exc)
            return PlainTextResponse("Internal Server Error", status_code=500)
    request.state.user_token = token

    response = await call_next(request)
    if fresh is not None:
        response.set_cookie(AUTH_COOKIE, fresh, max_age=COOKIE_MAX_AGE, httponly=True)
    return response


def get_current_user(request: Request) -> str:
    """
    Dependency returning the caller's signed user token.

    Returns:
        str: Token set by `user_cookie_middleware` for this request.
    """
    return request.state.user_token
