"""Delivery service API built with FastAPI.

This module exposes endpoints to start a delivery, read its state and
cancel it. Accepted deliveries are handed to the ``DeliverySimulator``,
which resolves them in the background and publishes the outcome on the
delivery topic for the order service to consume.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel
from pythonjsonlogger import jsonlogger

from events import RedisStreamPublisher
from repo import DeliveryRepo, DeliveryStatus, init_db
from simulator import DeliveryAlreadyInProgress, DeliverySimulator

# logger JSON
logger = logging.getLogger("delivery")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)

_simulator: Optional[DeliverySimulator] = None


def get_repo() -> DeliveryRepo:
    return DeliveryRepo()


def get_simulator() -> DeliverySimulator:
    global _simulator
    if _simulator is None:
        _simulator = DeliverySimulator(
            repo=DeliveryRepo(),
            publisher=RedisStreamPublisher(),
            delay_secs=float(os.getenv("DELIVERY_DELAY_SECS", "10")),
            failure_rate=float(os.getenv("DELIVERY_FAILURE_RATE", "0")),
            max_workers=int(os.getenv("DELIVERY_WORKERS", "8")),
        )
    return _simulator


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    yield
    if _simulator is not None:
        _simulator.shutdown(wait=False)


app = FastAPI(title="Delivery Service", lifespan=lifespan)


class InitiateRequest(BaseModel):
    """Request body for the initiate endpoint.

    Attributes:
        order_id: Order to deliver.
        restaurant_id: Pickup location.
        user_id: Drop-off customer, optional.
    """
    order_id: uuid.UUID
    restaurant_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None


class InitiateResponse(BaseModel):
    delivery_id: uuid.UUID


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/initiate", response_model=InitiateResponse, status_code=202)
def initiate(
    req: InitiateRequest,
    repo: DeliveryRepo = Depends(get_repo),
    simulator: DeliverySimulator = Depends(get_simulator),
):
    """Accept a delivery and start it in the background.

    Raises:
        HTTPException: 409 when a delivery for the order is still running.
    """
    logger.info("Initiating the delivery process...", extra={"order_id": str(req.order_id)})
    if simulator.in_flight(req.order_id):
        raise HTTPException(status_code=409, detail="DELIVERY_IN_PROGRESS")

    row = repo.create(req.order_id, req.restaurant_id, req.user_id)
    try:
        simulator.dispatch(req.order_id, row.delivery_id)
    except DeliveryAlreadyInProgress:
        repo.complete(row.delivery_id, DeliveryStatus.FAILED)
        raise HTTPException(status_code=409, detail="DELIVERY_IN_PROGRESS")
    return InitiateResponse(delivery_id=row.delivery_id)


@app.get("/order/{order_id}")
def delivery_for_order(order_id: uuid.UUID, repo: DeliveryRepo = Depends(get_repo)):
    row = repo.latest_for_order(order_id)
    if row is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return row.as_dict()


@app.post("/order/{order_id}/cancel")
def cancel_delivery(order_id: uuid.UUID, simulator: DeliverySimulator = Depends(get_simulator)):
    if not simulator.cancel(order_id):
        raise HTTPException(status_code=404, detail="NO_DELIVERY_IN_FLIGHT")
    return {"cancelled": True}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
