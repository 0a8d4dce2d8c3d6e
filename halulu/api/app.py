from fastapi import FastAPI

from halulu.api.webhook_routes import webhook_router
from halulu.database.db import init_db
from halulu.config.settings import get_settings

settings = get_settings()

VERSION = "1.0.0"


def create_app() -> FastAPI:
    # Disable Swagger/ReDoc in production
    docs_kwargs = {}
    if settings.is_production:
        docs_kwargs = {"docs_url": None, "redoc_url": None}

    app = FastAPI(
        title="Halulu API",
        description="Subscription webhooks for Halulu restaurant discovery",
        version=VERSION,
        **docs_kwargs,
    )

    # Server-to-server only: Lemon Squeezy does not need CORS
    app.include_router(webhook_router)

    @app.get("/health", tags=["health"])
    def health_check():
        return {"status": "ok", "version": VERSION}

    @app.on_event("startup")
    def on_startup():
        settings.validate_production()
        if not settings.is_production:
            init_db()  # Production uses: alembic upgrade head

    return app


app = create_app()
