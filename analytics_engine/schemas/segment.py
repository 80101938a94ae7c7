"""
Segment Schemas

Criteria are a flat list of conditions joined by a single AND/OR. Each
condition is an (type, operator) pair; only pairs with an evaluation path
validate, so reserved combinations are rejected when a segment is saved
rather than silently matching nobody.
"""

from __future__ import annotations

import logging
import uuid
from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime
from typing import Optional, Any
from enum import Enum

logger = logging.getLogger(__name__)


class SegmentType(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class ConditionType(str, Enum):
    EVENT = "event"
    PROPERTY = "property"
    # Reserved: no evaluation path yet
    USER = "user"
    SESSION = "session"


class ConditionOperator(str, Enum):
    # Event occurrence
    PERFORMED = "performed"
    NOT_PERFORMED = "not_performed"
    # Property comparison
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    # Reserved
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"


class CriteriaLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class TimeframeType(str, Enum):
    LAST_N_DAYS = "last_n_days"
    BETWEEN = "between"
    SINCE = "since"
    BEFORE = "before"


# Operators each condition type can evaluate. Types missing here are reserved.
SUPPORTED_OPERATORS: dict[ConditionType, frozenset[ConditionOperator]] = {
    ConditionType.EVENT: frozenset({
        ConditionOperator.PERFORMED,
        ConditionOperator.NOT_PERFORMED,
    }),
    ConditionType.PROPERTY: frozenset({
        ConditionOperator.EQUALS,
        ConditionOperator.NOT_EQUALS,
        ConditionOperator.CONTAINS,
        ConditionOperator.NOT_CONTAINS,
        ConditionOperator.EXISTS,
        ConditionOperator.NOT_EXISTS,
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
    }),
}


class Timeframe(BaseModel):
    """
    Time restriction applied to a condition's events.

    value depends on type:
    - last_n_days: number of days
    - between: {"start": <iso datetime>, "end": <iso datetime>}
    - since / before: iso datetime string
    Shape problems in value are not validation errors; they disable the
    restriction (see services.segments.timeframe).
    """
    type: TimeframeType
    value: Any = None


class SegmentCondition(BaseModel):
    """Single audience condition."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: ConditionType
    field: str = Field(..., min_length=1, description="Event name for event conditions, property key otherwise")
    operator: ConditionOperator
    value: Any = Field(None, description="Value to compare against (property conditions)")
    timeframe: Optional[Timeframe] = None

    @field_validator("timeframe", mode="before")
    @classmethod
    def drop_malformed_timeframe(cls, v: Any) -> Any:
        """An unreadable timeframe means "no restriction", never a rejected segment."""
        if v is None or isinstance(v, Timeframe):
            return v
        if not isinstance(v, dict) or v.get("type") not in {t.value for t in TimeframeType}:
            logger.debug("Ignoring malformed timeframe %r", v)
            return None
        return v

    @model_validator(mode="after")
    def check_operator_supported(self) -> SegmentCondition:
        supported = SUPPORTED_OPERATORS.get(self.type)
        if supported is None:
            raise ValueError(f"condition type '{self.type.value}' is not supported yet")
        if self.operator not in supported:
            raise ValueError(
                f"operator '{self.operator.value}' is not supported for {self.type.value} conditions"
            )
        return self


class SegmentCriteria(BaseModel):
    """Flat condition list combined with one logic operator."""
    conditions: list[SegmentCondition] = Field(default_factory=list)
    logic: CriteriaLogic = CriteriaLogic.AND

    @field_validator("logic", mode="before")
    @classmethod
    def normalize_logic(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v


class SegmentBase(BaseModel):
    """Base segment schema."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    segment_type: SegmentType = SegmentType.DYNAMIC
    criteria: SegmentCriteria = Field(default_factory=SegmentCriteria)
    is_active: bool = True


class SegmentCreate(SegmentBase):
    """Schema for creating a segment."""
    project_id: uuid.UUID


class SegmentUpdate(BaseModel):
    """Schema for updating a segment. Unset fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    segment_type: Optional[SegmentType] = None
    criteria: Optional[SegmentCriteria] = None
    is_active: Optional[bool] = None


class SegmentResponse(BaseModel):
    """Segment response schema."""
    id: uuid.UUID
    project_id: uuid.UUID
    name: str
    description: Optional[str] = None
    segment_type: SegmentType
    criteria: dict[str, Any]
    is_active: bool = True

    # Materialization
    cached_size: int = 0
    last_calculated_at: Optional[datetime] = None
    is_approximate: bool = False

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SegmentUserResponse(BaseModel):
    """One materialized segment member."""
    user_id: str
    anonymous_id: Optional[str] = None
    added_at: datetime

    class Config:
        from_attributes = True


class SegmentPreviewResponse(BaseModel):
    """Size a segment would have, without saving it."""
    project_id: uuid.UUID
    preview_size: int
    is_approximate: bool = False


class SegmentExportResponse(BaseModel):
    """Segment definition plus its last materialized members."""
    id: uuid.UUID
    name: str
    criteria: dict[str, Any]
    users: list[SegmentUserResponse]
    exported_at: datetime
