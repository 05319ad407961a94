import datetime
from typing import Callable, List, Optional
from fastapi import (
    FastAPI,
    HTTPException,
    APIRouter,
    Request,
    Header,
    Depends,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from audit_service import AuditLoop, AuditScheduler
from classification_service import ClassificationService
from config import APP_VERSION, YamlConfig
from db import ProfileNotFound, StoreError, Stores
from models import AuditTrigger
from profile_schema import UserProfile
from signal_service import performance_feedback, performance_metrics


class SetIn(BaseModel):
    reps: int = Field(..., ge=0)
    weight: float = Field(..., ge=0)
    rpe: Optional[float] = Field(None, ge=0, le=10)


class ExerciseIn(BaseModel):
    name: str
    category: Optional[str] = None
    target_weight: Optional[float] = None
    sets: List[SetIn] = Field(default_factory=list)


class WorkoutIn(BaseModel):
    date: Optional[str] = None
    exercises: List[ExerciseIn] = Field(default_factory=list)


class TrainingAgeAPI:
    """Composes the classifier services and exposes them over HTTP."""

    def __init__(
        self,
        db_path: str = "trainingage.db",
        yaml_path: str = "settings.yaml",
        *,
        start_scheduler: bool = False,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.db_path = db_path
        self.config = YamlConfig(yaml_path)
        self.settings = self.config.settings()
        self.clock = clock
        self.stores = Stores.from_settings(db_path, self.settings)
        self.profiles = self.stores.profiles
        self.workouts = self.stores.workouts
        self.signals = self.stores.signals
        self.history = self.stores.history
        self.audits = self.stores.audits
        self.classification = ClassificationService(
            self.profiles,
            self.signals,
            self.history,
            self.settings,
            clock=clock,
        )
        self.auditor = AuditScheduler(
            self.workouts,
            self.signals,
            self.audits,
            self.classification,
            self.settings,
        )
        self.app = FastAPI(
            title="Training Age API",
            description="Training-age classification and audit endpoints",
            version=APP_VERSION,
        )
        self.audit_loop: AuditLoop | None = None
        if start_scheduler:
            self.audit_loop = AuditLoop(self.auditor, self.profiles)
            self.audit_loop.start()
        self._setup_routes()

    def _check_api_key(self, x_api_key: Optional[str] = Header(None)) -> None:
        expected = self.settings.api_key
        if expected and x_api_key != expected:
            raise HTTPException(status_code=401, detail="invalid api key")

    def _setup_routes(self) -> None:
        users_router = APIRouter(
            prefix="/users/{user_id}",
            tags=["Users"],
            dependencies=[Depends(self._check_api_key)],
        )

        @self.app.exception_handler(ProfileNotFound)
        async def profile_not_found(_request: Request, exc: ProfileNotFound):
            return JSONResponse(status_code=404, content={"detail": str(exc)})

        @self.app.exception_handler(StoreError)
        async def store_error(_request: Request, exc: StoreError):
            return JSONResponse(
                status_code=503,
                content={"detail": str(exc), "retryable": exc.retryable},
            )

        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        def health():
            self.profiles.user_ids()
            return {"status": "ok"}

        @users_router.put("/profile")
        def save_profile(user_id: str, profile: UserProfile):
            self.profiles.save(user_id, profile)
            return {"status": "saved"}

        @users_router.get("/tier")
        def get_tier(user_id: str):
            tier = self.classification.get_effective_tier(user_id)
            return {"user_id": user_id, "tier": tier.value}

        @users_router.get("/classification")
        def get_detail(user_id: str):
            return self.classification.get_classification_detail(user_id).to_dict()

        @users_router.get("/classification/progressive")
        def get_progressive(user_id: str):
            return self.classification.get_progressive_classification(user_id).to_dict()

        @users_router.post("/classification/initial")
        def record_initial(user_id: str):
            return self.auditor.record_initial_classification(user_id).to_dict()

        @users_router.get("/history")
        def get_history(user_id: str, limit: int = 10):
            entries = self.classification.get_classification_history(user_id, limit)
            return [e.to_dict() for e in entries]

        @users_router.get("/blueprint")
        def get_blueprint(user_id: str):
            tier = self.classification.get_effective_tier(user_id)
            blueprint = self.classification.load_blueprint_for_user(user_id)
            return {"tier": tier.value, "blueprint": blueprint}

        @users_router.post("/workouts")
        def log_workout(user_id: str, workout: WorkoutIn):
            date = workout.date or self.clock().date().isoformat()
            try:
                wid = self.workouts.log_workout(
                    user_id,
                    date,
                    [ex.model_dump() for ex in workout.exercises],
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            if not self.profiles.exists(user_id):
                return {"id": wid, "audit": None}
            outcome = self.auditor.on_workout_completed(user_id)
            return {"id": wid, "audit": outcome.to_dict()}

        @users_router.post("/audit")
        def run_audit(user_id: str):
            return self.auditor.run_audit(user_id, AuditTrigger.MANUAL).to_dict()

        @users_router.get("/audits")
        def list_audits(user_id: str, limit: int = 10):
            return [r.to_dict() for r in self.audits.fetch_for_user(user_id, limit)]

        @users_router.get("/performance")
        def get_performance(user_id: str, weeks: int = 2):
            since = self.clock() - datetime.timedelta(weeks=weeks)
            metrics = performance_metrics(
                self.workouts.query_recent_workouts(user_id, since)
            )
            return {**metrics, "feedback": performance_feedback(metrics)}

        self.app.include_router(users_router)


def create_app() -> FastAPI:
    return TrainingAgeAPI(Stores.default_path()).app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
