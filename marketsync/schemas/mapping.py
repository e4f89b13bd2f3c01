"""
택소노미 매핑 요청/응답 스키마.
"""
import uuid

from pydantic import BaseModel, Field, field_validator

from marketsync.services.mapping_resolver import normalize_token


class CandidateOut(BaseModel):
    canonical_id: uuid.UUID
    name: str
    confidence: float
    match: str


class UnmappedTokenOut(BaseModel):
    """
    수동 매핑 대기 토큰.
    """
    id: uuid.UUID
    external_system_id: uuid.UUID
    kind: str
    token: str
    normalized_token: str
    seen_count: int
    candidates: list[CandidateOut] = Field(default_factory=list)


class MappingConfirmIn(BaseModel):
    external_system_id: uuid.UUID
    token: str
    canonical_id: uuid.UUID
    conversion_rule: dict | None = None

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        if not normalize_token(v):
            raise ValueError("토큰이 비어 있습니다")
        return v


class MappingOut(BaseModel):
    id: uuid.UUID
    kind: str
    token: str
    normalized_token: str
    canonical_id: uuid.UUID
    confidence: float
    origin: str
    superseded_canonical_id: uuid.UUID | None = None
