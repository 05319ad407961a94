from __future__ import annotations
import datetime
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional, TypeVar

from classification_service import ClassificationService
from confidence_service import (
    ConfidenceEvaluator,
    MisclassificationDetector,
    ProgressiveUpdater,
)
from db import AuditRepository, ProfileRepository, SignalRepository, WorkoutLogRepository
from models import (
    AuditRecord,
    AuditTrigger,
    BehavioralSignal,
    ClassificationConfidence,
    ClassificationHistoryEntry,
    Tier,
)
from settings_schema import ClassifierSettings
from signal_service import BehavioralSignalExtractor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuditState(str, Enum):
    IDLE = "idle"
    ELIGIBLE = "eligible"
    RUNNING = "running"


class AuditStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    COALESCED = "coalesced"
    FAILED = "failed"


@dataclass
class AuditOutcome:
    user_id: str
    status: AuditStatus
    workouts_analyzed: int = 0
    signals: list[BehavioralSignal] = field(default_factory=list)
    previous_tier: Optional[Tier] = None
    new_tier: Optional[Tier] = None
    evaluation: Optional[ClassificationConfidence] = None
    history_entry: Optional[ClassificationHistoryEntry] = None
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.history_entry is not None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "workouts_analyzed": self.workouts_analyzed,
            "signals": [s.to_dict() for s in self.signals],
            "previous_tier": self.previous_tier.value if self.previous_tier else None,
            "new_tier": self.new_tier.value if self.new_tier else None,
            "changed": self.changed,
            "confidence": (
                round(self.evaluation.confidence_score, 4) if self.evaluation else None
            ),
            "error": self.error,
        }


class AuditScheduler:
    """Re-run the classification pipeline when enough new workouts exist.

    At most one audit per user is in flight. A trigger that arrives while the
    user's audit is running is coalesced into a single re-run.
    """

    def __init__(
        self,
        workout_repo: WorkoutLogRepository,
        signal_repo: SignalRepository,
        audit_repo: AuditRepository,
        classification: ClassificationService,
        settings: ClassifierSettings | None = None,
        extractor: BehavioralSignalExtractor | None = None,
        updater: ProgressiveUpdater | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self.workouts = workout_repo
        self.signals = signal_repo
        self.audits = audit_repo
        self.classification = classification
        self.settings = settings or classification.settings
        self.extractor = extractor or BehavioralSignalExtractor(
            self.settings.min_progression_sessions
        )
        self.updater = updater or ProgressiveUpdater(
            self.settings.min_fresh_signals,
            self.settings.min_adjustment_weight,
            self.settings.damping_factor,
        )
        self.clock = clock or classification.clock
        self._guard = threading.Condition()
        self._running: set[str] = set()
        self._pending: set[str] = set()
        self._exclusive: set[str] = set()
        self._states: dict[str, AuditState] = {}

    def state(self, user_id: str) -> AuditState:
        with self._guard:
            return self._states.get(user_id, AuditState.IDLE)

    def _set_state(self, user_id: str, state: AuditState) -> None:
        with self._guard:
            self._states[user_id] = state

    def is_eligible(self, user_id: str) -> tuple[bool, int]:
        since = self.clock() - datetime.timedelta(
            days=self.settings.audit_eligibility_days
        )
        count = self.workouts.count_since(user_id, since)
        return count >= self.settings.audit_min_workouts, count

    def run_audit(
        self, user_id: str, trigger: AuditTrigger = AuditTrigger.MANUAL
    ) -> AuditOutcome:
        with self._guard:
            while user_id in self._exclusive:
                self._guard.wait()
            if user_id in self._running:
                self._pending.add(user_id)
                logger.debug("audit for %s already running; coalesced", user_id)
                return AuditOutcome(user_id, AuditStatus.COALESCED)
            self._running.add(user_id)
        finished = False
        try:
            while True:
                outcome = self._audit(user_id, trigger)
                with self._guard:
                    if user_id not in self._pending:
                        self._running.discard(user_id)
                        self._states[user_id] = AuditState.IDLE
                        self._guard.notify_all()
                        finished = True
                        return outcome
                    self._pending.discard(user_id)
        finally:
            if not finished:
                with self._guard:
                    self._running.discard(user_id)
                    self._pending.discard(user_id)
                    self._states[user_id] = AuditState.IDLE
                    self._guard.notify_all()

    def run_exclusive(self, user_id: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` once no audit or other exclusive write holds ``user_id``.

        Unlike audits, these calls are never coalesced; they wait their turn.
        """
        with self._guard:
            while user_id in self._running or user_id in self._exclusive:
                self._guard.wait()
            self._exclusive.add(user_id)
        try:
            return fn()
        finally:
            with self._guard:
                self._exclusive.discard(user_id)
                self._guard.notify_all()

    def record_initial_classification(self, user_id: str) -> ClassificationHistoryEntry:
        return self.run_exclusive(
            user_id,
            lambda: self.classification.record_initial_classification(user_id),
        )

    def on_workout_completed(self, user_id: str) -> AuditOutcome:
        return self.run_audit(user_id, AuditTrigger.WORKOUT_COMPLETED)

    def _audit(self, user_id: str, trigger: AuditTrigger) -> AuditOutcome:
        eligible, recent_count = self.is_eligible(user_id)
        if not eligible:
            logger.debug(
                "skipping audit for %s: %d workouts in %d days",
                user_id,
                recent_count,
                self.settings.audit_eligibility_days,
            )
            return AuditOutcome(user_id, AuditStatus.SKIPPED, recent_count)
        self._set_state(user_id, AuditState.ELIGIBLE)

        now = self.clock()
        self._set_state(user_id, AuditState.RUNNING)
        # resolve the tier first so a missing profile fails before any write
        current = self.classification.get_effective_tier(user_id)
        window = self.workouts.query_recent_workouts(
            user_id, now - datetime.timedelta(days=self.settings.signal_window_days)
        )
        fresh = self.extractor.extract(user_id, window, now)
        for signal in fresh:
            self.signals.append_signal(signal)

        recent = self.classification.recent_signals(user_id)
        evaluation = ConfidenceEvaluator.evaluate(recent, current)
        entry = None
        if evaluation.needs_validation or fresh:
            entry = self._reclassify(user_id, current, fresh, recent, evaluation)

        self.audits.append_audit_record(
            AuditRecord(user_id, now, len(window), trigger)
        )
        new_tier = entry.tier if entry else current
        logger.info(
            "audit for %s (%s): %d workouts, %d signals, %s -> %s",
            user_id,
            trigger.value,
            len(window),
            len(fresh),
            current,
            new_tier,
        )
        return AuditOutcome(
            user_id,
            AuditStatus.COMPLETED,
            len(window),
            fresh,
            current,
            new_tier,
            evaluation,
            entry,
        )

    def _reclassify(
        self,
        user_id: str,
        current: Tier,
        fresh: list[BehavioralSignal],
        recent: list[BehavioralSignal],
        evaluation: ClassificationConfidence,
    ) -> Optional[ClassificationHistoryEntry]:
        for proposal in MisclassificationDetector.detect(recent, current):
            entry = self.classification.apply_proposal(
                user_id, proposal, current, evaluation
            )
            if entry is not None:
                return entry
        proposal = self.updater.propose(fresh, current)
        if proposal is None:
            return None
        return self.classification.apply_proposal(user_id, proposal, current, evaluation)

    def run_audits(
        self,
        user_ids: Iterable[str],
        trigger: AuditTrigger = AuditTrigger.SCHEDULED_INTERVAL,
    ) -> dict[str, AuditOutcome]:
        """Audit several users in parallel; one failure does not stop the rest."""
        user_ids = list(dict.fromkeys(user_ids))
        results: dict[str, AuditOutcome] = {}
        if not user_ids:
            return results
        with ThreadPoolExecutor(max_workers=self.settings.audit_workers) as pool:
            futures = {uid: pool.submit(self.run_audit, uid, trigger) for uid in user_ids}
            for uid, future in futures.items():
                try:
                    results[uid] = future.result()
                except Exception as e:
                    logger.warning("audit failed for %s: %s", uid, e)
                    results[uid] = AuditOutcome(uid, AuditStatus.FAILED, error=str(e))
        return results


class AuditLoop(threading.Thread):
    """Background thread auditing every profiled user on a fixed cadence."""

    def __init__(
        self,
        scheduler: AuditScheduler,
        profile_repo: ProfileRepository,
        interval_hours: float | None = None,
    ) -> None:
        super().__init__(daemon=True)
        self.scheduler = scheduler
        self.profiles = profile_repo
        hours = interval_hours or scheduler.settings.audit_interval_hours
        self.interval = hours * 3600
        self._stop_event = threading.Event()

    def tick(self) -> dict[str, AuditOutcome]:
        return self.scheduler.run_audits(
            self.profiles.user_ids(), AuditTrigger.SCHEDULED_INTERVAL
        )

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduled audit tick failed")
            self._stop_event.wait(self.interval)

    def stop(self) -> None:
        self._stop_event.set()
