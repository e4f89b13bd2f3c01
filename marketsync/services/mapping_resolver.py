"""
택소노미 매핑 리졸버

외부 토큰(브랜드/카테고리/속성명)을 표준 엔티티 ID로 해석합니다.

해석 순서 (처음 일치에서 중단):
1. 확정 동의어: (tenant, external_system, kind, normalized_token) 활성 매핑 -> 신뢰도 1.0
2. 휴리스틱: 정확 일치 0.95, 부분 일치 [0.5, 0.9) (겹침 비율로 스케일)
3. 후보 없음 -> 수동 매핑 대기열

자동 확정은 신뢰도 >= 임계값 이고 임계값 이상 후보가 유일할 때만 허용합니다.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from marketsync.db import dialect_insert, utcnow
from marketsync.errors import ValidationError
from marketsync.models import (
    CanonicalAttribute,
    CanonicalBrand,
    CanonicalCategory,
    MappingQueueItem,
    TaxonomyMapping,
)
from marketsync.settings import settings

logger = logging.getLogger(__name__)

KINDS = ("brand", "category", "attribute")

EXACT_CONFIDENCE = 0.95
PARTIAL_FLOOR = 0.5
PARTIAL_SPAN = 0.4

_PUNCT_RE = re.compile(r"[^\w\s]|_", re.UNICODE)


def normalize_token(token: str | None) -> str:
    """소문자화, 구두점 제거, 공백 정리"""
    if not token:
        return ""
    text = _PUNCT_RE.sub(" ", str(token).lower())
    return " ".join(text.split())


def similarity_score(token: str, name: str, min_similarity: float | None = None) -> float:
    """
    정규화된 두 문자열의 신뢰도 점수.
    정확 일치 0.95, 포함 관계는 길이 비율, 그 외는 SequenceMatcher 비율로 [0.5, 0.9)에 매핑.
    """
    if min_similarity is None:
        min_similarity = settings.mapping_min_similarity
    if not token or not name:
        return 0.0
    if token == name:
        return EXACT_CONFIDENCE
    shorter, longer = sorted((token, name), key=len)
    if shorter in longer:
        return PARTIAL_FLOOR + PARTIAL_SPAN * (len(shorter) / len(longer))
    ratio = SequenceMatcher(None, token, name).ratio()
    if ratio >= min_similarity:
        return PARTIAL_FLOOR + PARTIAL_SPAN * ratio
    return 0.0


@dataclass(frozen=True)
class Candidate:
    canonical_id: uuid.UUID
    name: str
    confidence: float
    match: str  # synonym, exact, partial

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonical_id": str(self.canonical_id),
            "name": self.name,
            "confidence": round(self.confidence, 4),
            "match": self.match,
        }


@dataclass
class Resolution:
    kind: str
    token: str
    normalized: str
    canonical_id: uuid.UUID | None = None
    confidence: float = 0.0
    origin: str | None = None  # manual, auto
    status: str = "queued"  # mapped, auto_accepted, queued
    candidates: list[Candidate] = field(default_factory=list)
    conversion_rule: dict | None = None

    @property
    def is_mapped(self) -> bool:
        return self.canonical_id is not None


class MappingResolver:
    """
    테넌트 단위 리졸버. 읽기 위주이며 여러 사이클에서 동시에 써도 안전하다.
    확정 쓰기는 저장소 upsert(ON CONFLICT)로 키마다 직렬화된다.
    """

    def __init__(
        self,
        session: Session,
        tenant_id: str,
        *,
        threshold: float | None = None,
        top_k: int | None = None,
        min_similarity: float | None = None,
    ):
        self.session = session
        self.tenant_id = tenant_id
        self.threshold = settings.mapping_auto_accept_threshold if threshold is None else threshold
        self.top_k = top_k or settings.mapping_top_k
        self.min_similarity = settings.mapping_min_similarity if min_similarity is None else min_similarity
        self._names: dict[str, list[tuple[uuid.UUID, str, str]]] = {}

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def _check_kind(self, kind: str) -> None:
        if kind not in KINDS:
            raise ValidationError(f"알 수 없는 매핑 종류입니다: {kind}", error_code="UNKNOWN_KIND")

    def _canonical_names(self, kind: str) -> list[tuple[uuid.UUID, str, str]]:
        """(id, 표시명, 정규화명) 목록. 리졸버 인스턴스 수명 동안 캐시"""
        if kind not in self._names:
            if kind == "brand":
                stmt = select(CanonicalBrand.id, CanonicalBrand.name).where(
                    CanonicalBrand.tenant_id == self.tenant_id, CanonicalBrand.is_active.is_(True)
                )
            elif kind == "category":
                stmt = select(CanonicalCategory.id, CanonicalCategory.name).where(
                    CanonicalCategory.tenant_id == self.tenant_id, CanonicalCategory.is_active.is_(True)
                )
            else:
                stmt = select(CanonicalAttribute.id, CanonicalAttribute.name).where(
                    CanonicalAttribute.tenant_id == self.tenant_id
                )
            self._names[kind] = [(row.id, row.name, normalize_token(row.name)) for row in self.session.execute(stmt)]
        return self._names[kind]

    def lookup_confirmed(self, external_system_id: uuid.UUID, kind: str, token: str) -> TaxonomyMapping | None:
        normalized = normalize_token(token)
        if not normalized:
            return None
        stmt = select(TaxonomyMapping).where(
            TaxonomyMapping.tenant_id == self.tenant_id,
            TaxonomyMapping.external_system_id == external_system_id,
            TaxonomyMapping.kind == kind,
            TaxonomyMapping.normalized_token == normalized,
            TaxonomyMapping.active.is_(True),
        )
        return self.session.scalars(stmt).first()

    def suggest(self, kind: str, token: str, top_k: int | None = None) -> list[Candidate]:
        """휴리스틱 후보 (신뢰도 내림차순, 동점은 표준 이름 사전순)"""
        self._check_kind(kind)
        normalized = normalize_token(token)
        candidates = []
        for canonical_id, name, normalized_name in self._canonical_names(kind):
            score = similarity_score(normalized, normalized_name, self.min_similarity)
            if score <= 0:
                continue
            match = "exact" if score == EXACT_CONFIDENCE else "partial"
            candidates.append(Candidate(canonical_id=canonical_id, name=name, confidence=score, match=match))
        candidates.sort(key=lambda c: (-c.confidence, c.name.lower(), str(c.canonical_id)))
        return candidates[: (top_k or self.top_k)]

    def resolve(self, external_system_id: uuid.UUID, kind: str, token: str) -> Resolution:
        """부작용 없는 해석"""
        self._check_kind(kind)
        normalized = normalize_token(token)
        resolution = Resolution(kind=kind, token=token, normalized=normalized)
        if not normalized:
            return resolution

        mapping = self.lookup_confirmed(external_system_id, kind, token)
        if mapping is not None:
            resolution.canonical_id = mapping.canonical_id
            resolution.confidence = 1.0
            resolution.origin = mapping.origin
            resolution.status = "mapped"
            resolution.conversion_rule = mapping.conversion_rule
            return resolution

        candidates = self.suggest(kind, token)
        resolution.candidates = candidates
        above = [c for c in candidates if c.confidence >= self.threshold]
        if len(above) == 1:
            resolution.canonical_id = above[0].canonical_id
            resolution.confidence = above[0].confidence
            resolution.origin = "auto"
            resolution.status = "auto_accepted"
        return resolution

    def resolve_and_record(self, external_system_id: uuid.UUID, kind: str, token: str) -> Resolution:
        """
        해석 후 결과를 기록한다.
        - 자동 확정: origin=auto 동의어로 저장 (이미 키가 있으면 건드리지 않음)
        - 대기: 수동 매핑 대기열에 upsert
        """
        resolution = self.resolve(external_system_id, kind, token)
        if resolution.status == "auto_accepted":
            self._record_auto(external_system_id, resolution)
            logger.info(
                f"[MAP] auto-mapped {kind} '{token}' -> {resolution.canonical_id} "
                f"(confidence={resolution.confidence:.3f})"
            )
        elif resolution.status == "queued" and resolution.normalized:
            self._enqueue(external_system_id, resolution)
            logger.info(f"[MAP] queued {kind} '{token}' for manual mapping ({len(resolution.candidates)} candidates)")
        return resolution

    # ------------------------------------------------------------------
    # 쓰기
    # ------------------------------------------------------------------

    def _record_auto(self, external_system_id: uuid.UUID, resolution: Resolution) -> None:
        now = utcnow()
        stmt = dialect_insert(self.session, TaxonomyMapping).values(
            id=uuid.uuid4(),
            tenant_id=self.tenant_id,
            external_system_id=external_system_id,
            kind=resolution.kind,
            external_token=resolution.token,
            normalized_token=resolution.normalized,
            canonical_id=resolution.canonical_id,
            confidence=round(resolution.confidence, 4),
            origin="auto",
            active=True,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tenant_id", "external_system_id", "kind", "normalized_token"])
        self.session.execute(stmt)

    def _enqueue(self, external_system_id: uuid.UUID, resolution: Resolution) -> None:
        now = utcnow()
        candidates = [c.to_dict() for c in resolution.candidates]
        stmt = dialect_insert(self.session, MappingQueueItem).values(
            id=uuid.uuid4(),
            tenant_id=self.tenant_id,
            external_system_id=external_system_id,
            kind=resolution.kind,
            external_token=resolution.token,
            normalized_token=resolution.normalized,
            candidates=candidates,
            status="pending",
            seen_count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "external_system_id", "kind", "normalized_token"],
            set_={
                "candidates": stmt.excluded.candidates,
                "status": "pending",
                "seen_count": MappingQueueItem.seen_count + 1,
                "updated_at": now,
            },
        )
        self.session.execute(stmt)

    def _infer_kind(self, canonical_id: uuid.UUID) -> str:
        for kind, model in (("brand", CanonicalBrand), ("category", CanonicalCategory), ("attribute", CanonicalAttribute)):
            found = self.session.scalar(
                select(model.id).where(model.id == canonical_id, model.tenant_id == self.tenant_id)
            )
            if found is not None:
                return kind
        raise ValidationError(
            f"표준 엔티티를 찾을 수 없습니다: {canonical_id}",
            error_code="CANONICAL_NOT_FOUND",
            context={"tenant_id": self.tenant_id, "canonical_id": str(canonical_id)},
        )

    def confirm(
        self,
        external_system_id: uuid.UUID,
        token: str,
        canonical_id: uuid.UUID,
        *,
        kind: str | None = None,
        conversion_rule: dict | None = None,
        origin: str = "manual",
    ) -> TaxonomyMapping:
        """
        매핑 확정 (멱등 upsert).
        같은 키의 기존 활성 매핑은 대체되며 중복 행은 생기지 않는다.
        """
        normalized = normalize_token(token)
        if not normalized:
            raise ValidationError("빈 토큰은 매핑할 수 없습니다", error_code="EMPTY_TOKEN")
        inferred = self._infer_kind(canonical_id)
        if kind is None:
            kind = inferred
        self._check_kind(kind)
        if kind != inferred:
            raise ValidationError(
                f"{canonical_id}는 {kind}가 아니라 {inferred}입니다",
                error_code="KIND_MISMATCH",
            )
        if conversion_rule is not None and kind != "attribute":
            raise ValidationError("변환 규칙은 속성 매핑에만 지정할 수 있습니다", error_code="RULE_NOT_ALLOWED")

        now = utcnow()
        stmt = dialect_insert(self.session, TaxonomyMapping).values(
            id=uuid.uuid4(),
            tenant_id=self.tenant_id,
            external_system_id=external_system_id,
            kind=kind,
            external_token=token,
            normalized_token=normalized,
            canonical_id=canonical_id,
            confidence=1.0,
            origin=origin,
            active=True,
            conversion_rule=conversion_rule,
            created_at=now,
            updated_at=now,
        )
        replaced = TaxonomyMapping.canonical_id != stmt.excluded.canonical_id
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "external_system_id", "kind", "normalized_token"],
            set_={
                "superseded_canonical_id": case(
                    (replaced, TaxonomyMapping.canonical_id), else_=TaxonomyMapping.superseded_canonical_id
                ),
                "superseded_at": case((replaced, now), else_=TaxonomyMapping.superseded_at),
                "canonical_id": stmt.excluded.canonical_id,
                "external_token": stmt.excluded.external_token,
                "confidence": 1.0,
                "origin": origin,
                "active": True,
                "conversion_rule": stmt.excluded.conversion_rule,
                "updated_at": now,
            },
        )
        self.session.execute(stmt)

        self.session.execute(
            update(MappingQueueItem)
            .where(
                MappingQueueItem.tenant_id == self.tenant_id,
                MappingQueueItem.external_system_id == external_system_id,
                MappingQueueItem.kind == kind,
                MappingQueueItem.normalized_token == normalized,
            )
            .values(status="resolved", resolved_canonical_id=canonical_id, updated_at=now)
        )

        mapping = self.session.scalars(
            select(TaxonomyMapping)
            .where(
                TaxonomyMapping.tenant_id == self.tenant_id,
                TaxonomyMapping.external_system_id == external_system_id,
                TaxonomyMapping.kind == kind,
                TaxonomyMapping.normalized_token == normalized,
            )
            .execution_options(populate_existing=True)
        ).one()
        logger.info(f"[MAP] confirmed {kind} '{token}' -> {canonical_id} ({origin})")
        return mapping

    def list_unmapped(self, kind: str, external_system_id: uuid.UUID | None = None) -> list[MappingQueueItem]:
        self._check_kind(kind)
        stmt = select(MappingQueueItem).where(
            MappingQueueItem.tenant_id == self.tenant_id,
            MappingQueueItem.kind == kind,
            MappingQueueItem.status == "pending",
        )
        if external_system_id is not None:
            stmt = stmt.where(MappingQueueItem.external_system_id == external_system_id)
        stmt = stmt.order_by(MappingQueueItem.seen_count.desc(), MappingQueueItem.external_token)
        return list(self.session.scalars(stmt))
