# auth_gate.py
from functools import wraps
from typing import Callable, Iterable

from flask import g, request

from errors import Forbidden, TokenDenied
from schemas import Claims
from tokens import TokenService

BEARER_PREFIX = "Bearer "


def require_role(claims: Claims, allowed_roles: Iterable[str]) -> Claims:
    """Pass `claims` through when its role is allowed, else Forbidden."""
    if claims.role not in set(allowed_roles):
        raise Forbidden()
    return claims


class AuthGate:
    """
    Bearer-token gate in front of privileged handlers.
    Raises TokenDenied (401) or Forbidden (403); handlers never run on denial.
    """

    def __init__(self, tokens: TokenService):
        self.tokens = tokens

    def authenticate(self, req) -> Claims:
        header = req.headers.get("Authorization") or ""
        if not header.startswith(BEARER_PREFIX):
            raise TokenDenied("missing")
        token = header[len(BEARER_PREFIX):].strip()
        if not token:
            raise TokenDenied("missing")
        return self.tokens.verify(token)

    def requires(self, *roles: str) -> Callable:
        """
        View decorator. With no roles any valid token passes.
        The caller's claims are stored on g.claims.
        """
        def decorator(view):
            @wraps(view)
            def wrapper(*args, **kwargs):
                claims = self.authenticate(request)
                if roles:
                    require_role(claims, roles)
                g.claims = claims
                return view(*args, **kwargs)
            return wrapper
        return decorator
