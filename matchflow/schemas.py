from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, conlist, field_validator, model_validator


def require_http_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value.lower().startswith(("http://", "https://")):
        raise ValueError("link must be an http(s) URL")
    return value


class MatchCreate(BaseModel):
    owner_id: str = Field(min_length=1)
    source_link: Optional[str] = None
    video_bucket: Optional[str] = None
    video_key: Optional[str] = None

    @field_validator("source_link")
    @classmethod
    def require_http_link(cls, value: Optional[str]) -> Optional[str]:
        return require_http_url(value or None)

    @model_validator(mode="after")
    def single_video_source(self) -> "MatchCreate":
        if self.source_link and self.video_key:
            raise ValueError("Provide either source_link or video_key, not both")
        return self


class LinkSubmission(BaseModel):
    link: str = Field(min_length=1)

    @field_validator("link")
    @classmethod
    def require_http_link(cls, value: str) -> str:
        return require_http_url(value)


class PlayerAssignment(BaseModel):
    model_config = ConfigDict(extra="allow")
    player_id: str = Field(min_length=1)
    team: Optional[str] = None
    name: Optional[str] = None


class AnalysisRequest(BaseModel):
    player_assignments: conlist(PlayerAssignment, min_length=1, max_length=4)
    creator_player_index: int = Field(default=0, ge=0, le=3)

    def assignments_payload(self) -> List[Dict[str, Any]]:
        return [item.model_dump(exclude_none=True) for item in self.player_assignments]


class StreamingWebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    job_id: str = Field(alias="jobId", min_length=1)
    status: Literal["completed", "failed"]
    s3_url: Optional[str] = Field(default=None, alias="s3Url")
    error: Optional[Any] = None
