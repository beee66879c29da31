"""WebSocket authentication middleware for JWT query-string tokens."""

import logging
from urllib.parse import parse_qs

from channels.middleware import BaseMiddleware
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.models import TokenUser
from rest_framework_simplejwt.tokens import AccessToken

logger = logging.getLogger(__name__)


def user_from_token(raw_token: str):
    """TokenUser for a valid access token, AnonymousUser otherwise."""
    try:
        return TokenUser(AccessToken(raw_token))
    except TokenError as e:
        logger.debug("JWT auth failed: %s", e)
        return AnonymousUser()


class JWTQueryAuthMiddleware(BaseMiddleware):
    """
    Authenticate WebSocket connections with a JWT in the querystring
    (?token=...). Identity comes from the token's claims; there is no
    user table lookup.
    """

    async def __call__(self, scope, receive, send):
        query_string = scope.get("query_string", b"").decode()
        params = parse_qs(query_string)

        token_list = params.get("token")
        scope["user"] = user_from_token(token_list[0]) if token_list else AnonymousUser()
        return await super().__call__(scope, receive, send)
