from __future__ import annotations

import logging
from datetime import datetime, timedelta

from curbside.backend import Services
from curbside.errors import InvalidEnum, MissingField, RateLimited, Unauthenticated
from curbside.geo import determine_side
from curbside.geohash import AREA_PRECISION, REPORT_PRECISION, encode, validate_coordinate
from curbside.models import (
    COUNT_BUCKETS,
    REPORT_STATUSES,
    SIDES,
    ConfirmationReceipt,
    ConfirmRequest,
    ParkingReport,
    ReportReceipt,
    ReportRequest,
    ReportUpdateMessage,
    format_ts,
)

logger = logging.getLogger(__name__)

USER_REPORT_CONFIDENCE = 1.0


def _check_rate_limit(services: Services, user_id: str, now: datetime) -> None:
    # Check-then-write is not atomic: two concurrent requests from the same
    # user can both pass.
    since = format_ts(now - timedelta(seconds=services.rate_limit_window_s))
    now_s = now.timestamp()
    for entry in services.user_reports.query(user_id, newest_first=True):
        if entry["ts"] <= since:
            break
        if entry["expiresAt"] >= now_s:
            logger.info(f"Rate limited user {user_id}: last report at {entry['ts']}")
            raise RateLimited("Rate limit exceeded. Please wait before submitting another report.")


def _publish_update(services: Services, report: ParkingReport) -> None:
    if services.notifier is None:
        return
    message = ReportUpdateMessage(
        geo_hash6=report.geo_hash6,
        side=report.side,
        count_bucket=report.count_bucket,
        confidence=report.confidence,
        ts=report.ts,
    )
    area = report.geo_hash6[:AREA_PRECISION]
    try:
        services.notifier.publish(area, message.model_dump(by_alias=True))
    except Exception as e:
        logger.warning(f"Failed to publish update for {report.report_id} to area {area}: {e}")


def submit_report(
    services: Services,
    req: ReportRequest,
    user_id: str | None = None,
    now: datetime | None = None,
) -> ReportReceipt:
    missing = [name for name in ("lat", "lng", "count_bucket") if getattr(req, name) is None]
    if missing:
        raise MissingField(missing)
    lat, lng = validate_coordinate(req.lat, req.lng)

    if req.count_bucket not in COUNT_BUCKETS:
        raise InvalidEnum("Invalid count_bucket. Must be: 1, 2_5, or 5_plus")
    if req.side is not None and req.side not in SIDES:
        raise InvalidEnum("Invalid side. Must be: N, S, E, or W")

    now = now or services.now()
    if user_id:
        _check_rate_limit(services, user_id, now)

    report = ParkingReport(
        geo_hash6=encode(lat, lng, REPORT_PRECISION),
        side=req.side or determine_side(lat, lng),
        lat=lat,
        lng=lng,
        count_bucket=req.count_bucket,
        user_id=user_id or None,
        confidence=USER_REPORT_CONFIDENCE,
        expires_at=int(now.timestamp()) + services.report_ttl_s,
        source="user",
        ts=format_ts(now),
    )
    created = now
    # Reports are never overwritten: a sort key already taken in this
    # partition moves the new report 1 ms later.
    while not services.reports.put_new(report.pk, report.ts, report.to_item(), expires_at=report.expires_at):
        created += timedelta(milliseconds=1)
        report = report.model_copy(update={"ts": format_ts(created)})

    ts = report.ts
    if user_id:
        services.user_reports.put(
            user_id,
            ts,
            {"pk": user_id, "sk": ts, "reportId": report.report_id, "ts": ts, "expiresAt": report.expires_at},
            expires_at=report.expires_at,
        )
    logger.info(f"Accepted report {report.report_id} ({report.count_bucket})")

    _publish_update(services, report)

    return ReportReceipt(
        report_id=report.report_id,
        geo_hash6=report.geo_hash6,
        side=report.side,
        count_bucket=report.count_bucket,
        confidence=report.confidence,
        ts=report.ts,
    )


def confirm_report(
    services: Services,
    req: ConfirmRequest,
    user_id: str | None,
    now: datetime | None = None,
) -> ConfirmationReceipt:
    missing = [name for name, value in (("reportId", req.report_id), ("status", req.status)) if not value]
    if missing:
        raise MissingField(missing)
    if req.status not in REPORT_STATUSES:
        raise InvalidEnum("Invalid status. Must be: still_free or taken")
    if not user_id:
        raise Unauthenticated()

    ts = format_ts(now or services.now())
    # Recorded only; report confidence stays the plain mean of its reports.
    services.confirmations.put(
        req.report_id,
        f"{user_id}#{ts}",
        {"pk": req.report_id, "sk": f"{user_id}#{ts}", "status": req.status, "userId": user_id, "ts": ts},
    )
    return ConfirmationReceipt(report_id=req.report_id, status=req.status, ts=ts)
