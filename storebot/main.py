import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storebot.api.routes import router
from storebot.core.settings import SETTINGS

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="storebot", version="v1")
if SETTINGS.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=SETTINGS.cors_allow_origins,
        allow_methods=["GET", "PUT", "DELETE"],
        allow_headers=["*"],
        expose_headers=["x-trace-id", "x-request-id"],
    )
app.include_router(router)
