import logging

from fastapi import FastAPI

from festival_payments import config
from festival_payments.database import Base, engine
from festival_payments.gateway import router as webhook_router
from festival_payments.routes import router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

app = FastAPI(title="Festival Payment Webhooks")

app.include_router(webhook_router)
app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.get("/health")
def health():
    return {"status": "ok"}
