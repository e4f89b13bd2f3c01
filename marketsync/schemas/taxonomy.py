"""
표준 택소노미 쓰기 요청/응답 스키마.
"""
import uuid

from pydantic import BaseModel, field_validator


class BrandIn(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("이름이 비어 있습니다")
        return v.strip()


class BrandOut(BaseModel):
    id: uuid.UUID
    name: str


class AttributeIn(BaseModel):
    code: str
    name: str
    unit: str | None = None


class AttributeOut(BaseModel):
    id: uuid.UUID
    code: str
    name: str
    unit: str | None = None


class CategoryIn(BrandIn):
    parent_id: uuid.UUID | None = None


class CategoryParentIn(BaseModel):
    parent_id: uuid.UUID | None = None


class CategoryOut(BaseModel):
    id: uuid.UUID
    name: str
    parent_id: uuid.UUID | None = None
    path: str
