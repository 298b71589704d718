import logging

from dependency_injector.wiring import Provide, inject
from fastapi import Depends, Header, Request

from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.core.errors import OriginBlockedError
from shop_reconciler.infrastructure.security import (
    ClientAddressResolver,
    JanitorAuthenticator,
)
from shop_reconciler.infrastructure.structured_log import log_event

logger = logging.getLogger(__name__)

# Any of these means the call came from a browser page.
BROWSER_CONTEXT_HEADERS = (
    "origin",
    "referer",
    "sec-fetch-site",
    "sec-fetch-mode",
    "sec-fetch-dest",
)


@inject
def client_identifier(
    request: Request,
    resolver: ClientAddressResolver = Depends(
        Provide[ApplicationContainer.client_address_resolver]
    ),
) -> str:
    peer = request.client.host if request.client is not None else None
    return resolver.resolve(peer, request.headers.get("x-forwarded-for"))


def guard_non_browser(request: Request) -> None:
    present = [name for name in BROWSER_CONTEXT_HEADERS if request.headers.get(name)]
    if present:
        log_event(
            logger,
            logging.WARNING,
            "browser_context_blocked",
            path=request.url.path,
            headers=present,
        )
        raise OriginBlockedError()


@inject
def require_janitor_secret(
    x_internal_janitor_secret: str | None = Header(default=None),
    authenticator: JanitorAuthenticator = Depends(
        Provide[ApplicationContainer.janitor_authenticator]
    ),
) -> None:
    authenticator.authenticate(x_internal_janitor_secret)
