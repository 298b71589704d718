from fastapi import FastAPI

from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.presentation import admin, api, guards, internal, webhooks
from shop_reconciler.presentation.errors import register_error_handlers


def build_api(container: ApplicationContainer) -> FastAPI:
    app = FastAPI()
    app.include_router(api.router)
    app.include_router(webhooks.router)
    app.include_router(internal.router)
    app.include_router(admin.router)
    register_error_handlers(app)
    container.wire(modules=[api, webhooks, internal, admin, guards])
    app.container = container
    return app
