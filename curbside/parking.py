from __future__ import annotations

import logging
from datetime import datetime

from curbside.backend import Services
from curbside.errors import MissingField, SessionNotFound, Unauthenticated
from curbside.geohash import validate_coordinate
from curbside.models import ParkingSession, ParkRequest, SessionEnded, SessionView, format_ts

logger = logging.getLogger(__name__)


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise Unauthenticated()
    return user_id


def _open_session(services: Services, user_id: str) -> ParkingSession | None:
    for item in services.sessions.query(user_id, newest_first=True):
        session = ParkingSession.model_validate(item)
        if session.is_open:
            return session
    return None


def _view(session: ParkingSession) -> SessionView:
    return SessionView(
        session_id=session.session_id,
        start_ts=session.start_ts,
        car_lat=session.car_lat,
        car_lng=session.car_lng,
        note=session.note,
    )


def _close(services: Services, session: ParkingSession, now: datetime) -> SessionEnded:
    closed = session.model_copy(update={"end_ts": format_ts(now)})
    services.sessions.put(closed.user_id, closed.start_ts, closed.to_item())
    return SessionEnded(session_id=closed.session_id, end_ts=closed.end_ts)


def start_session(
    services: Services,
    req: ParkRequest,
    user_id: str | None,
    now: datetime | None = None,
) -> SessionView:
    missing = [name for name in ("lat", "lng") if getattr(req, name) is None]
    if missing:
        raise MissingField(missing)
    lat, lng = validate_coordinate(req.lat, req.lng)
    user_id = _require_user(user_id)

    now = now or services.now()
    previous = _open_session(services, user_id)
    if previous is not None:
        _close(services, previous, now)
        logger.info(f"Closed parking session {previous.session_id} before starting a new one")

    session = ParkingSession(user_id=user_id, start_ts=format_ts(now), car_lat=lat, car_lng=lng, note=req.note)
    services.sessions.put(session.user_id, session.start_ts, session.to_item())
    return _view(session)


def end_session(services: Services, user_id: str | None, now: datetime | None = None) -> SessionEnded:
    user_id = _require_user(user_id)
    session = _open_session(services, user_id)
    if session is None:
        raise SessionNotFound()
    return _close(services, session, now or services.now())


def current_session(services: Services, user_id: str | None) -> SessionView:
    user_id = _require_user(user_id)
    session = _open_session(services, user_id)
    if session is None:
        raise SessionNotFound()
    return _view(session)
