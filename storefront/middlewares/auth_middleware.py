from typing import Iterable
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from storefront.auth.dependencies import Authentication
from storefront.common.utils import build_error, json_error
from storefront.middlewares.constants import logger


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """
    Identity comes from outside the checkout core : a signed bearer token carrying the user id (`sub`)
    and a `role`. Public paths (webhooks , health , docs) pass through untouched.
    """

    def __init__(self, app, *, paths: Iterable[str], suffixes: Iterable[str] = ()):
        super().__init__(app)
        self.paths = tuple(paths)
        self.suffixes = tuple(suffixes)

    async def dispatch(self, request: Request, call_next):

        path = request.url.path
        if path.startswith(self.paths) or (self.suffixes and path.endswith(self.suffixes)):
            return await call_next(request)

        try:
            auth_token = await Authentication()(request)
            user_identifier = int(auth_token.get("sub"))
        except Exception as e:
            reason = getattr(e, "detail", "Missing or Invalid Auth Headers")
            logger.warning("auth.middleware.failed", extra={
                "reason": str(reason),
                "path": request.url.path,
                "method": request.method,
            })
            payload = build_error(code="INVALID_AUTH", message="Missing or Invalid Auth Headers")
            return json_error(payload, status_code=status.HTTP_401_UNAUTHORIZED)

        request.state.user_identifier = user_identifier
        request.state.user_role = auth_token.get("role") or "customer"

        logger.debug("auth.middleware.success", extra={
            "user_id": user_identifier,
            "path": request.url.path,
        })

        return await call_next(request)
