import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from funnel_studio.api.endpoints import funnels, workflows
from funnel_studio.core.config import settings
from funnel_studio.core.error_handlers import register_funnel_error_handlers
from funnel_studio.db.init_db import init_db

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="Funnel Studio Backend", version=settings.APP_VERSION)
register_funnel_error_handlers(app)


@app.on_event("startup")
def on_startup():
    init_db()


# CORS
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(funnels.router, prefix=f"{settings.API_V1_STR}/funnel", tags=["funnel"])
app.include_router(workflows.router, prefix=f"{settings.API_V1_STR}/workflows", tags=["workflows"])


@app.get("/")
def root():
    return {"message": "Welcome to Funnel Studio API"}
