from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.db import init_db
from app.api.routes import health
from app.api.routes import payment_webhooks
from app.api.routes import admin_enrollments


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # dev only; production schema is migrated
    if os.getenv("DB_AUTO_CREATE", "false").lower() == "true":
        init_db()
    yield


app = FastAPI(title="Academic Payments API", lifespan=lifespan)

origins_env = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
origins = [o.strip().rstrip("/") for o in origins_env.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # exact matches
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(health.router, tags=["Health"])
app.include_router(payment_webhooks.router, tags=["Payment Webhooks"])
app.include_router(admin_enrollments.router, tags=["Admin Enrollments"])
