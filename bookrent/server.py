# FILE: bookrent/server.py
import logging

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from bookrent.core.config import CORS_ORIGINS
from bookrent.core.database import Base, SessionLocal, engine
import bookrent.models  # noqa: F401  (registers tables on Base.metadata)
from bookrent.services.payment_methods import seed_default_methods

from bookrent.api.auth import router as auth_router
from bookrent.api.payment_methods import router as payment_methods_router
from bookrent.api.payments import router as payments_router
from bookrent.api.security_deposits import router as security_deposits_router
from bookrent.api.webhooks import router as webhooks_router
from bookrent.api.maintenance import router as maintenance_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("bookrent")

app = FastAPI(title="BookRent Payments")

app.include_router(auth_router)
app.include_router(payment_methods_router)
app.include_router(payments_router)
app.include_router(security_deposits_router)
app.include_router(webhooks_router)
app.include_router(maintenance_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/")
async def root():
    return {"message": "BookRent payments API"}


@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with SessionLocal() as db:
        await seed_default_methods(db)
    logger.info("Payment core ready")


@app.on_event("shutdown")
async def shutdown():
    await engine.dispose()
