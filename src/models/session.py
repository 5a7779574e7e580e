"""Data models for job session records.

Sessions are persisted as a JSON array with camelCase keys so the file
stays readable by the other clients that share the remote backend.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from src.utils.clock import now_ms

REMOTE_SCHEMES = ("http://", "https://")


def is_remote_uri(uri: str) -> bool:
    """True for http(s) URLs; local paths and file:// URIs are not cacheable."""
    return uri.startswith(REMOTE_SCHEMES)


class SessionStoreConfig(BaseModel):
    """Session store configuration"""

    data_dir: str = "./data"
    sessions_file: str = "sessions.json"

    @property
    def sessions_path(self) -> Path:
        return Path(self.data_dir) / self.sessions_file


class SessionRecord(BaseModel):
    """A single rope-access job session.

    Unknown keys written by other clients are kept (extra="allow") so a
    load/save cycle never drops fields this version does not know about.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        json_schema_extra={
            "example": {
                "id": "1718000000000",
                "name": "Facade inspection",
                "employer": "Vertical Works Ltd",
                "location": "45.501690, -73.567253",
                "methods": "Two-rope system, descent",
                "coworkers": "A. Martin",
                "notes": "Anchors tested before descent",
                "height": 42.5,
                "hours": 6.5,
                "photos": ["https://storage.example.com/images/u1/1718000001"],
                "startedAt": 1718000000000,
            }
        },
    )

    id: str = Field(..., min_length=1)
    name: str = ""
    employer: str = ""
    location: str = ""
    methods: str = ""
    coworkers: str = ""
    notes: str = ""
    height: float = 0.0
    hours: float = 0.0
    photos: List[str] = Field(default_factory=list)
    started_at: int = Field(default_factory=now_ms)
    last_modified: Optional[int] = None

    @field_validator("height", "hours", mode="before")
    @classmethod
    def blank_number_is_zero(cls, v: Any) -> Any:
        """Forms store an untouched numeric field as an empty string."""
        if isinstance(v, str) and not v.strip():
            return 0.0
        return v

    def to_json_dict(self) -> Dict[str, Any]:
        """Serialize with camelCase keys; lastModified omitted until first edit."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def remote_photos(self) -> List[str]:
        """Photos that point at remote URLs (candidates for the image cache)."""
        return [p for p in self.photos if is_remote_uri(p)]


def sort_sessions(records: List[SessionRecord]) -> List[SessionRecord]:
    """Order sessions newest first by start time."""
    return sorted(records, key=lambda r: r.started_at, reverse=True)
