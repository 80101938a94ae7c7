from analytics_engine.schemas.segment import (
    SegmentType,
    ConditionType,
    ConditionOperator,
    CriteriaLogic,
    TimeframeType,
    Timeframe,
    SegmentCondition,
    SegmentCriteria,
    SegmentCreate,
    SegmentUpdate,
    SegmentResponse,
    SegmentUserResponse,
    SegmentPreviewResponse,
    SegmentExportResponse,
)
