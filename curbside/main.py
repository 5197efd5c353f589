import asyncio
import logging
import uuid
from typing import Optional

import anyio
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from curbside import __version__
from curbside.aggregation import find_nearby
from curbside.auth import get_user_id
from curbside.backend import Services, build_services
from curbside.config import settings
from curbside.errors import CurbsideError, InvalidCoordinate, MissingField
from curbside.models import (
    ConfirmationReceipt,
    ConfirmRequest,
    NearbyResponse,
    ParkRequest,
    ReportReceipt,
    ReportRequest,
    SessionEnded,
    SessionView,
    SubscriptionMessage,
)
from curbside.parking import current_session, end_session, start_session
from curbside.realtime import handle_client_message
from curbside.reports import confirm_report, submit_report

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Curbside Parking Availability API", version=__version__)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

services = build_services(settings)


def get_services() -> Services:
    return services


@app.exception_handler(CurbsideError)
async def handle_curbside_error(request: Request, exc: CurbsideError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
    return JSONResponse(
        status_code=400,
        content={"error": f"Invalid request: {', '.join(f for f in fields if f) or 'body'}", "kind": "InvalidRequest"},
    )


def _parse_float(v: Optional[str]) -> Optional[float]:
    if v is None:
        return None
    s = v.strip()
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        raise InvalidCoordinate("Invalid lat/lng values") from None


@app.get("/health")
def health():
    return {"status": "ok", "store": settings.store_backend}


@app.post("/report", status_code=201, response_model=ReportReceipt)
def create_report(
    body: ReportRequest,
    user_id: Optional[str] = Depends(get_user_id),
    svc: Services = Depends(get_services),
) -> ReportReceipt:
    """
    Report parking availability at a point.

    - **lat, lng**: where the free spots are (required)
    - **count_bucket**: `1`, `2_5` or `5_plus` (required)
    - **side**: `N`, `S`, `E` or `W`; derived from the point when omitted
    """
    return submit_report(svc, body, user_id=user_id)


@app.post("/confirm", response_model=ConfirmationReceipt)
def confirm(
    body: ConfirmRequest,
    user_id: Optional[str] = Depends(get_user_id),
    svc: Services = Depends(get_services),
) -> ConfirmationReceipt:
    return confirm_report(svc, body, user_id=user_id)


@app.get("/nearby", response_model=NearbyResponse)
def nearby(
    lat: Optional[str] = None,
    lng: Optional[str] = None,
    radius: Optional[str] = None,
    svc: Services = Depends(get_services),
) -> NearbyResponse:
    """
    Live parking clusters around a point.

    - **lat, lng**: search centre (required)
    - **radius**: search radius in meters (default 1000)
    """
    if lat is None or lng is None or not lat.strip() or not lng.strip():
        raise MissingField(["lat", "lng"], what="parameters")
    center_lat = _parse_float(lat)
    center_lng = _parse_float(lng)

    radius_m = svc.default_radius_m
    if radius is not None and radius.strip():
        try:
            radius_m = float(radius)
        except ValueError:
            raise InvalidCoordinate(f"Invalid radius: {radius}") from None

    clusters = find_nearby(svc.reports, center_lat, center_lng, radius_m, now=svc.now())
    return NearbyResponse(clusters=clusters, total=len(clusters))


@app.post("/park/start", status_code=201, response_model=SessionView)
def park_start(
    body: ParkRequest,
    user_id: Optional[str] = Depends(get_user_id),
    svc: Services = Depends(get_services),
) -> SessionView:
    return start_session(svc, body, user_id=user_id)


@app.post("/park/end", response_model=SessionEnded)
def park_end(
    user_id: Optional[str] = Depends(get_user_id),
    svc: Services = Depends(get_services),
) -> SessionEnded:
    return end_session(svc, user_id=user_id)


@app.get("/me/park", response_model=SessionView)
def my_parking_session(
    user_id: Optional[str] = Depends(get_user_id),
    svc: Services = Depends(get_services),
) -> SessionView:
    return current_session(svc, user_id=user_id)


async def _keep_subscription_alive(svc: Services, connection_id: str) -> None:
    while True:
        await asyncio.sleep(svc.heartbeat_interval_s)
        try:
            await run_in_threadpool(svc.registry.touch, connection_id)
        except CurbsideError as e:
            logger.warning(f"Failed to refresh subscription of {connection_id}: {e.message}")


@app.websocket("/ws")
async def live_updates(websocket: WebSocket, svc: Services = Depends(get_services)):
    await websocket.accept()
    connection_id = uuid.uuid4().hex
    if svc.local_sender is not None:
        svc.local_sender.register(connection_id, websocket, asyncio.get_running_loop())
    heartbeat = None
    if svc.heartbeat_interval_s:
        heartbeat = asyncio.create_task(_keep_subscription_alive(svc, connection_id))
    logger.info(f"Connection established: {connection_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = SubscriptionMessage.model_validate_json(raw)
            except ValidationError:
                await websocket.send_json({"type": "error", "error": "Invalid message format"})
                continue
            try:
                reply = await run_in_threadpool(handle_client_message, svc.registry, connection_id, msg.action, msg.area)
            except CurbsideError as e:
                reply = {"type": "error", "error": e.message}
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.info(f"Connection closed: {connection_id}")
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
        if svc.local_sender is not None:
            svc.local_sender.unregister(connection_id)
        # Shielded: also runs when the handler task is being cancelled.
        with anyio.CancelScope(shield=True):
            try:
                await run_in_threadpool(svc.registry.unsubscribe, connection_id)
            except CurbsideError as e:
                logger.warning(f"Failed to drop subscription of {connection_id}: {e.message}")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
