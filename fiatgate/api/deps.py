import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from fiatgate.container import Container
from fiatgate.core.errors import UnauthorizedError

CRON_SECRET_HEADER = "X-Cron-Secret"
ADMIN_TOKEN_HEADER = "X-Admin-Token"


def get_container(request: Request) -> Container:
    return request.app.state.container


def _matches(provided: Optional[str], expected: str) -> bool:
    # An unset secret never authenticates
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_cron_secret(
    x_cron_secret: Optional[str] = Header(default=None, alias=CRON_SECRET_HEADER),
    container: Container = Depends(get_container),
) -> None:
    if not _matches(x_cron_secret, container.settings.CRON_SECRET):
        raise UnauthorizedError("Invalid cron secret")


def require_admin_token(
    x_admin_token: Optional[str] = Header(default=None, alias=ADMIN_TOKEN_HEADER),
    container: Container = Depends(get_container),
) -> None:
    if not _matches(x_admin_token, container.settings.ADMIN_TOKEN):
        raise UnauthorizedError("Invalid admin token")
