from pydantic import BaseModel, Field, ValidationError


class ClassifierSettings(BaseModel):
    auto_apply_confidence: float = Field(0.7, ge=0.0, le=1.0)
    min_adjustment_weight: float = Field(2.0, ge=0.0)
    min_fresh_signals: int = Field(3, ge=1)
    damping_factor: float = Field(6.0, gt=0.0)
    audit_min_workouts: int = Field(4, ge=1)
    audit_eligibility_days: int = Field(14, ge=1)
    signal_window_days: int = Field(28, ge=1)
    confidence_window_days: int = Field(30, ge=1)
    min_progression_sessions: int = Field(3, ge=2)
    store_retry_attempts: int = Field(3, ge=1)
    store_retry_backoff: float = Field(0.05, ge=0.0)
    audit_interval_hours: float = Field(24.0, gt=0.0)
    audit_workers: int = Field(4, ge=1)
    api_key: str = ""


def validate_settings(data: dict) -> ClassifierSettings:
    try:
        return ClassifierSettings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
