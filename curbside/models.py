from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Side = Literal["N", "S", "E", "W"]
CountBucket = Literal["1", "2_5", "5_plus"]
ReportStatus = Literal["still_free", "taken"]
ReportSource = Literal["user", "system"]

SIDES: tuple[str, ...] = ("N", "S", "E", "W")
COUNT_BUCKETS: tuple[str, ...] = ("1", "2_5", "5_plus")
REPORT_STATUSES: tuple[str, ...] = ("still_free", "taken")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. ``2024-05-01T12:00:00.000Z``.

    Fixed width, so timestamps sort lexically in time order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---- Requests ---- #
# Field types stay loose so that missing or out-of-set values surface as
# MissingField / InvalidEnum from the core rather than as schema errors.

class ReportRequest(_WireModel):
    lat: float | None = None
    lng: float | None = None
    count_bucket: str | None = None
    side: str | None = None


class ConfirmRequest(_WireModel):
    report_id: str | None = Field(None, alias="reportId")
    status: str | None = None


class ParkRequest(_WireModel):
    lat: float | None = None
    lng: float | None = None
    note: str | None = None


# ---- Stored records ---- #

class ParkingReport(_WireModel):
    geo_hash6: str = Field(alias="geoHash6")
    side: Side
    lat: float
    lng: float
    count_bucket: CountBucket
    user_id: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    expires_at: int = Field(alias="expiresAt")
    source: ReportSource = "user"
    ts: str

    @property
    def pk(self) -> str:
        return f"{self.geo_hash6}#{self.side}"

    @property
    def report_id(self) -> str:
        return f"{self.pk}#{self.ts}"

    def to_item(self) -> dict:
        return {"pk": self.pk, "sk": self.ts, **self.model_dump(by_alias=True, exclude_none=True)}


class ParkingSession(_WireModel):
    user_id: str
    start_ts: str
    car_lat: float
    car_lng: float
    note: str | None = None
    end_ts: str | None = None

    @property
    def session_id(self) -> str:
        return f"{self.user_id}#{self.start_ts}"

    @property
    def is_open(self) -> bool:
        return self.end_ts is None

    def to_item(self) -> dict:
        return {"pk": self.user_id, "sk": self.start_ts, **self.model_dump(exclude_none=True)}


# ---- Responses ---- #

class Cluster(_WireModel):
    geo_hash6: str = Field(alias="geoHash6")
    side: Side
    count_bucket: CountBucket
    confidence: float
    last_ts: str
    lat: float
    lng: float


class NearbyResponse(_WireModel):
    clusters: list[Cluster]
    total: int


class ReportReceipt(_WireModel):
    report_id: str = Field(alias="reportId")
    geo_hash6: str = Field(alias="geoHash6")
    side: Side
    count_bucket: CountBucket
    confidence: float
    ts: str


class ConfirmationReceipt(_WireModel):
    report_id: str = Field(alias="reportId")
    status: ReportStatus
    ts: str


class SessionView(_WireModel):
    session_id: str = Field(alias="sessionId")
    start_ts: str
    car_lat: float
    car_lng: float
    note: str | None = None


class SessionEnded(_WireModel):
    message: str = "Parking session ended"
    session_id: str = Field(alias="sessionId")
    end_ts: str


# ---- Real-time channel ---- #

class ReportUpdateMessage(_WireModel):
    type: Literal["report_update"] = "report_update"
    geo_hash6: str = Field(alias="geoHash6")
    side: Side
    count_bucket: CountBucket
    confidence: float
    ts: str


class SubscriptionMessage(_WireModel):
    action: str | None = None
    area: str | None = None
