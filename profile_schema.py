from typing import Dict, Optional, Union
from pydantic import BaseModel, Field, ValidationError, field_validator

COMPETENCY_LEVELS = {
    "untrained": 1.0,
    "novice": 2.0,
    "intermediate": 3.5,
    "advanced": 5.0,
}


class TrainingBackground(BaseModel):
    current_streak_months: float = Field(0.0, ge=0)
    total_break_months: float = Field(0.0, ge=0)
    total_experience_months: float = Field(0.0, ge=0)
    average_sessions_per_week: float = Field(2.0, gt=0)
    has_used_programs: bool = False
    understands_rpe: bool = False


class MovementCompetency(BaseModel):
    experience_level: Union[float, str] = 1.0

    @field_validator("experience_level")
    @classmethod
    def _level(cls, value):
        if isinstance(value, str):
            if value not in COMPETENCY_LEVELS:
                raise ValueError(f"unknown experience level: {value}")
            return COMPETENCY_LEVELS[value]
        if not 1.0 <= float(value) <= 5.0:
            raise ValueError("experience_level must be between 1 and 5")
        return float(value)


class PhysicalProfile(BaseModel):
    body_weight_kg: Optional[float] = Field(None, gt=0)
    bench_1rm_kg: Optional[float] = Field(None, ge=0)
    squat_1rm_kg: Optional[float] = Field(None, ge=0)
    deadlift_1rm_kg: Optional[float] = Field(None, ge=0)


class UserProfile(BaseModel):
    training_background: TrainingBackground = Field(default_factory=TrainingBackground)
    movement_competencies: Dict[str, MovementCompetency] = Field(default_factory=dict)
    physical_profile: PhysicalProfile = Field(default_factory=PhysicalProfile)


def validate_profile(data: dict) -> UserProfile:
    try:
        return UserProfile.model_validate(data)
    except ValidationError as e:
        raise ValueError(str(e))
