from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from enum import Enum
from datetime import datetime, timezone

from config import VERSION


DEFAULT_GROUP = "Uncategorized"


class RelayPurpose(str, Enum):
    LIVE_STREAM = "live-stream"
    DOWNLOAD = "download"
    EPG_DOCUMENT = "epg-document"


class ChannelRecord(BaseModel):
    """A single playlist entry. Serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    group: str = DEFAULT_GROUP
    logo: str = ""
    url: str = Field(min_length=1)
    tvg_id: str = Field(default="", alias="tvgId")
    tvg_name: str = Field(default="", alias="tvgName")


class PlaylistResponse(BaseModel):
    channels: List[ChannelRecord] = Field(default_factory=list)
    count: int = 0

    @classmethod
    def from_records(cls, records: List[ChannelRecord]) -> "PlaylistResponse":
        return cls(channels=records, count=len(records))


class LivenessResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    alive: bool
    content_type: Optional[str] = Field(default=None, alias="contentType")
    status: Optional[int] = None
    error: Optional[str] = None


class HealthStatus(BaseModel):
    status: str = "ok"
    version: str = VERSION
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RelayPolicy(BaseModel):
    """Inbound policy handed to the application at construction time."""

    window_seconds: float = Field(default=15 * 60, gt=0)
    max_requests: int = Field(default=500, ge=1)
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    trust_proxy_headers: bool = False

    @classmethod
    def from_settings(cls, settings) -> "RelayPolicy":
        return cls(
            window_seconds=settings.RATE_LIMIT_WINDOW,
            max_requests=settings.RATE_LIMIT_MAX,
            allowed_origins=settings.allowed_origins,
            trust_proxy_headers=settings.TRUST_PROXY_HEADERS,
        )


# Request models. Fields are optional so that a missing value surfaces as
# {"error": ...} from the relay service instead of a schema error.
class PlaylistUrlRequest(BaseModel):
    url: Optional[str] = None


class PlaylistTextRequest(BaseModel):
    content: Optional[str] = None


class EpgFetchRequest(BaseModel):
    url: Optional[str] = None
