"""
Session-bound training orchestrator.

Drives a federated training run on the external service:

1. acquire a session (created lazily, renewed proactively)
2. submit the client/privacy configuration once per session
3. alternate "train round" and "poll state + metrics" until the service
   reports the final round, or the round failure budget runs out

Two periodic schedules run while training is active: the round loop and
the poll loop. Each one is an asyncio task with its own stop event, and
both are torn down whenever training stops, on reset and on close.

Errors from the service never escape this module: every public operation
catches them, records a user-visible message in ``error`` and reports the
outcome through its return value, ``phase`` and the listeners.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .client_setup import ClientSetup
from .errors import ConfigValidationError, DashboardError, SessionError
from .fl_client import FLServiceClient
from .session import Session, SessionManager, _current_task
from .settings import DashboardSettings
from .shared.logger import get_logger
from .shared.retry import retry_fixed
from .training_state import MetricsHistory, RoundState, RoundStatus, TrainingConfiguration

logger = get_logger(__name__)


class TrainingPhase(str, Enum):
    """Scheduling state of the orchestrator."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    TRAINING = "training"
    POLLING = "polling"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_PHASES = (TrainingPhase.COMPLETE, TrainingPhase.FAILED)
RUNNING_PHASES = (TrainingPhase.TRAINING, TrainingPhase.POLLING)


class OrchestratorEvent(str, Enum):
    """Events pushed to listeners (and from there to WebSocket clients)."""

    STATE_UPDATED = "state_updated"
    ROUND_COMPLETED = "round_completed"
    TRAINING_COMPLETE = "training_complete"
    TRAINING_FAILED = "training_failed"
    TRAINING_ERROR = "training_error"
    SESSION_RENEWED = "session_renewed"


Listener = Callable[[OrchestratorEvent, Dict[str, Any]], Optional[Awaitable[None]]]
Snapshot = Tuple[RoundState, MetricsHistory]


@dataclass
class RoundResult:
    """Outcome of one ``execute_round`` call that reached the network."""

    dispatched: bool
    response: Dict[str, Any] = field(default_factory=dict)
    reconciled: bool = False
    poll_attempts: int = 0
    error: Optional[str] = None


class _Schedule:
    """A coroutine run every ``interval`` seconds until its stop event is set."""

    def __init__(self, name: str, interval: float, tick: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self._tick = tick
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.cancel()
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop), name=f"fl-{self.name}-loop")

    async def _run(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        # First tick fires immediately; later ticks are spaced from the previous tick's start
        while not stop.is_set():
            started = loop.time()
            try:
                await self._tick()
            except Exception:
                logger.exception("Unexpected error in %s loop, stopping it", self.name)
                return

            if stop.is_set():
                return
            remaining = max(self.interval - (loop.time() - started), 0.0)
            try:
                await asyncio.wait_for(stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                continue

    def cancel(self) -> None:
        if self._stop is not None:
            self._stop.set()
        task = self._task
        self._task = None
        self._stop = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()


class TrainingOrchestrator:
    """
    Owns the session, the round state and the metrics history for one
    training run, and the two schedules that keep them up to date.
    """

    def __init__(
        self,
        client: FLServiceClient,
        settings: Optional[DashboardSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            client: External service client
            settings: Timeouts, cadence and budgets
            sleep: Awaitable sleep used between reconciliation polls
            clock: Time source for session expiry
        """
        self._client = client
        self.settings = settings or DashboardSettings()
        self._sleep = sleep

        self.sessions = SessionManager(
            client,
            lifetime=self.settings.session_lifetime,
            renew_margin=self.settings.session_renew_margin,
            clock=clock,
            on_renewed=self._on_session_renewed,
            on_renewal_failed=self._on_session_lost,
        )

        self.phase = TrainingPhase.IDLE
        self.round_state = RoundState(total_rounds=self.settings.default_total_rounds)
        self.metrics = MetricsHistory()
        self.error: Optional[str] = None
        self.configuration: Optional[TrainingConfiguration] = None
        self.consecutive_failures = 0
        self.round_in_flight = False
        self.last_round_response: Optional[Dict[str, Any]] = None

        self._training = False
        # Bumped by reset(); work started under an older value is discarded
        self._run_id = 0
        self._initialized_session: Optional[str] = None
        self._round_schedule = _Schedule("round", self.settings.round_interval, self._round_tick)
        self._poll_schedule = _Schedule("poll", self.settings.poll_interval, self._poll_tick)
        self._listeners: List[Listener] = []

    # ============= Properties =============

    @property
    def session_id(self) -> Optional[str]:
        return self.sessions.session_id

    @property
    def is_training(self) -> bool:
        return self._training

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def schedules_active(self) -> bool:
        return self._round_schedule.active or self._poll_schedule.active

    @property
    def status_message(self) -> str:
        if self.error:
            return f"Error: {self.error}"
        state = self.round_state
        if self.phase == TrainingPhase.COMPLETE or (
            state.total_rounds and state.current_round >= state.total_rounds
        ):
            return "Training Complete!"
        if self.phase == TrainingPhase.IDLE:
            return "Waiting for configuration"
        return f"Training in Progress - Round {state.current_round}/{state.total_rounds}"

    # ============= Listeners =============

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def _emit(self, event: OrchestratorEvent) -> None:
        payload = self.snapshot()
        for listener in list(self._listeners):
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in orchestrator listener: %s", e)

    # ============= Session =============

    async def acquire_session(self, renew: bool = False) -> Optional[str]:
        """Return a valid session id, or None if none could be obtained.

        On failure training is forced inactive and the error is surfaced.
        """
        previous = self.session_id
        try:
            session_id = await self.sessions.acquire(renew=renew)
        except SessionError as e:
            await self._on_session_lost(e)
            return None

        if renew and self._initialized_session and session_id != self._initialized_session:
            logger.warning(
                "Session replaced (%s -> %s); configuration will be re-submitted before the next round",
                self._initialized_session,
                session_id,
            )
        if renew and session_id != previous:
            await self._emit(OrchestratorEvent.SESSION_RENEWED)
        return session_id

    async def _on_session_renewed(self, session: Session, replaced: bool) -> None:
        logger.info("Session renewed: %s (new id: %s)", session.id, replaced)
        await self._emit(OrchestratorEvent.SESSION_RENEWED)

    async def _on_session_lost(self, exc: SessionError) -> None:
        logger.error("Session unavailable: %s", exc)
        self.error = exc.user_message
        self._set_training(False)
        await self._emit(OrchestratorEvent.TRAINING_ERROR)

    # ============= Initialization =============

    async def start_training(self, setup: ClientSetup, **overrides: Any) -> bool:
        """Validate the client setup, initialize training and start the loops.

        A setup that fails validation never reaches the network.
        """
        try:
            config = setup.to_configuration(**overrides)
        except ConfigValidationError as e:
            self.error = e.user_message
            await self._emit(OrchestratorEvent.TRAINING_ERROR)
            return False

        if not await self.initialize_training(config):
            return False

        self._set_training(True)
        return True

    async def initialize_training(
        self,
        config: TrainingConfiguration,
        session_id: Optional[str] = None,
    ) -> bool:
        """Submit ``config`` to the service.

        Allowed once per run: from ``IDLE`` only. On any failure the
        orchestrator goes back to ``IDLE`` as if nothing had been sent.
        """
        if self.phase != TrainingPhase.IDLE:
            self.error = "Training already initialized; reset before submitting a new configuration"
            return False

        run = self._run_id
        self.phase = TrainingPhase.INITIALIZING
        self.error = None
        await self._emit(OrchestratorEvent.STATE_UPDATED)

        session_id = session_id or await self.acquire_session()
        if self._superseded(run):
            return False
        if session_id is None:
            self.phase = TrainingPhase.IDLE
            await self._emit(OrchestratorEvent.STATE_UPDATED)
            return False

        try:
            await self._submit_configuration(session_id, config)
        except SessionError as e:
            if self._superseded(run):
                return False
            logger.warning("Session rejected during initialization: %s", e)
            self.phase = TrainingPhase.IDLE
            await self.acquire_session(renew=True)
            self.error = f"Session expired, please start training again ({e.message})"
            await self._emit(OrchestratorEvent.TRAINING_ERROR)
            return False
        except DashboardError as e:
            if self._superseded(run):
                return False
            logger.error("Failed to initialize training: %s", e)
            self.phase = TrainingPhase.IDLE
            self.error = e.user_message
            await self._emit(OrchestratorEvent.TRAINING_ERROR)
            return False

        if self._superseded(run):
            logger.info("Reset during initialization, discarding it")
            return False

        self.configuration = config
        self._initialized_session = session_id
        self.consecutive_failures = 0
        self.metrics = MetricsHistory()
        self.round_state = RoundState(
            total_rounds=self.settings.default_total_rounds,
            training_active=True,
            status=RoundStatus.TRAINING,
        )
        self.phase = TrainingPhase.TRAINING
        await self._emit(OrchestratorEvent.STATE_UPDATED)
        return True

    async def _submit_configuration(self, session_id: str, config: TrainingConfiguration) -> None:
        logger.info("Initializing training with session %s: %s", session_id, config.to_payload())
        await self._client.initialize(
            session_id, config.to_payload(), timeout=self.settings.initialize_timeout
        )

    async def _reinitialize(self, session_id: str, run: int) -> Optional[RoundResult]:
        """Re-submit the run's configuration under a replaced session.

        Returns a result when the round has to be skipped, None when the
        round can go ahead.
        """
        logger.info("Session changed to %s, re-submitting training configuration", session_id)
        try:
            await self._submit_configuration(session_id, self.configuration)
        except SessionError as e:
            logger.warning("Session rejected while re-initializing: %s", e)
            if not self._superseded(run):
                await self.acquire_session(renew=True)
            return RoundResult(dispatched=False, error=e.user_message)
        except DashboardError as e:
            if not self._superseded(run):
                await self._record_round_failure(e)
            return RoundResult(dispatched=False, error=e.user_message)

        if not self._superseded(run):
            self._initialized_session = session_id
        return None

    # ============= Round execution =============

    async def execute_round(self, session_id: Optional[str] = None) -> Optional[RoundResult]:
        """Run one training round followed by bounded reconciliation.

        Returns None when the trigger was dropped (a round is already in
        flight, training is not running), aborted because of an invalid
        session, or discarded because the run was reset meanwhile.
        """
        if self.round_in_flight:
            logger.debug("Round already in flight, dropping trigger")
            return None
        if self.phase not in RUNNING_PHASES:
            return None
        if self.round_state.current_round >= self.round_state.total_rounds:
            await self._complete()
            return None

        run = self._run_id
        self.round_in_flight = True
        try:
            session_id = session_id or await self.acquire_session()
            if session_id is None or self._superseded(run):
                return None
            if session_id != self._initialized_session:
                skipped = await self._reinitialize(session_id, run)
                if self._superseded(run):
                    return None
                if skipped is not None:
                    return skipped
            return await self._run_round(session_id, run)
        finally:
            # After a reset the flag belongs to the new run
            if not self._superseded(run):
                self.round_in_flight = False

    async def _run_round(self, session_id: str, run: int) -> Optional[RoundResult]:
        previous_round = self.round_state.current_round
        self._transition(TrainingPhase.TRAINING)
        logger.info("Starting training round %d", previous_round + 1)

        try:
            response = await self._client.train_round(
                session_id, timeout=self.settings.long_request_timeout
            )
        except SessionError as e:
            if self._superseded(run):
                return None
            logger.warning("Session rejected during training round: %s", e)
            self.error = "Session expired, renewing session"
            self._transition(TrainingPhase.POLLING)
            await self.acquire_session(renew=True)
            await self._emit(OrchestratorEvent.TRAINING_ERROR)
            return None
        except DashboardError as e:
            if self._superseded(run):
                return None
            await self._record_round_failure(e)
            if self.phase == TrainingPhase.FAILED:
                return RoundResult(dispatched=False, error=self.error)
            self._transition(TrainingPhase.POLLING)
            await self.poll_state(session_id)
            return RoundResult(dispatched=False, error=e.user_message)

        if self._superseded(run):
            logger.info("Run was reset while round %d was in flight, discarding it", previous_round + 1)
            return None

        self.consecutive_failures = 0
        self.last_round_response = response
        self._transition(TrainingPhase.POLLING)

        def reflects_new_round(snapshot: Snapshot) -> bool:
            state = snapshot[0]
            return state.current_round > previous_round or state.is_terminal

        try:
            outcome = await retry_fixed(
                lambda: self._fetch_snapshot(session_id),
                attempts=self.settings.reconcile_attempts,
                delay=self.settings.reconcile_delay,
                until=reflects_new_round,
                retry_on=(DashboardError,),
                give_up_on=(SessionError,),
                sleep=self._sleep,
            )
        except SessionError as e:
            if self._superseded(run):
                return None
            logger.warning("Session rejected while reconciling: %s", e)
            await self.acquire_session(renew=True)
            return RoundResult(dispatched=True, response=response, error=e.user_message)

        if self._superseded(run):
            return None

        if outcome.value is not None:
            await self._apply_snapshot(*outcome.value)
        else:
            logger.warning(
                "Could not refresh state after round (%d attempts): %s",
                outcome.attempts,
                outcome.last_error,
            )
            self.error = "Failed to fetch updated data"

        await self._emit(OrchestratorEvent.ROUND_COMPLETED)
        return RoundResult(
            dispatched=True,
            response=response,
            reconciled=outcome.succeeded,
            poll_attempts=outcome.attempts,
        )

    async def _record_round_failure(self, exc: DashboardError) -> None:
        self.consecutive_failures += 1
        budget = self.settings.max_round_failures
        logger.error(
            "Training round failed (%d/%d): %s", self.consecutive_failures, budget, exc
        )
        if self.consecutive_failures >= budget:
            await self._fail(f"Training failed after {budget} attempts. Please try again.")
        else:
            self.error = exc.user_message
            await self._emit(OrchestratorEvent.TRAINING_ERROR)

    # ============= Polling =============

    async def poll_state(self, session_id: Optional[str] = None) -> bool:
        """Fetch state and metrics; apply both or neither."""
        session_id = session_id or self.session_id
        if session_id is None:
            return False

        run = self._run_id
        try:
            state, history = await self._fetch_snapshot(session_id)
        except SessionError as e:
            if self._superseded(run):
                return False
            logger.warning("Session rejected while polling: %s", e)
            await self.acquire_session(renew=True)
            return False
        except DashboardError as e:
            if self._superseded(run):
                return False
            logger.warning("Poll failed: %s", e)
            self.error = e.user_message
            await self._emit(OrchestratorEvent.STATE_UPDATED)
            return False

        if self._superseded(run):
            return False
        await self._apply_snapshot(state, history)
        return True

    async def _fetch_snapshot(self, session_id: str) -> Snapshot:
        results = await asyncio.gather(
            self._client.current_state(session_id),
            self._client.metrics(session_id),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for err in errors:
                if isinstance(err, SessionError):
                    raise err
            raise errors[0]

        state_data, metrics_data = results
        return (
            RoundState.from_payload(state_data, self.settings.default_total_rounds),
            MetricsHistory.from_payload(metrics_data),
        )

    async def _apply_snapshot(self, state: RoundState, history: MetricsHistory) -> None:
        previous = self.round_state
        if self.phase != TrainingPhase.IDLE and state.current_round < previous.current_round:
            # An older poll answered late; rounds never go backwards
            logger.debug(
                "Ignoring stale round %d (already at %d)", state.current_round, previous.current_round
            )
            state.current_round = min(previous.current_round, state.total_rounds)
            state.status = RoundStatus.COMPLETE if state.is_terminal else RoundStatus.TRAINING

        if self.phase == TrainingPhase.FAILED:
            state.status = RoundStatus.FAILED
        elif self.consecutive_failures == 0:
            # A failed round keeps its message until a round succeeds
            self.error = None

        self.round_state = state
        self.metrics = history

        if state.is_terminal and self.phase in RUNNING_PHASES:
            await self._complete()
        else:
            await self._emit(OrchestratorEvent.STATE_UPDATED)

    # ============= Terminal transitions =============

    def _superseded(self, run: int) -> bool:
        return run != self._run_id

    def _transition(self, phase: TrainingPhase) -> None:
        # Only start_training and reset move in and out of IDLE
        if self.phase in TERMINAL_PHASES or self.phase == TrainingPhase.IDLE:
            return
        self.phase = phase

    async def _complete(self) -> None:
        logger.info(
            "Training complete at round %d/%d",
            self.round_state.current_round,
            self.round_state.total_rounds,
        )
        self.phase = TrainingPhase.COMPLETE
        self.round_state.status = RoundStatus.COMPLETE
        self._set_training(False)
        await self._emit(OrchestratorEvent.TRAINING_COMPLETE)

    async def _fail(self, message: str) -> None:
        logger.error("Training failed: %s", message)
        self.phase = TrainingPhase.FAILED
        self.round_state.status = RoundStatus.FAILED
        self.error = message
        self._set_training(False)
        await self._emit(OrchestratorEvent.TRAINING_FAILED)

    # ============= Scheduling =============

    def _set_training(self, active: bool) -> None:
        """Toggle the training flag; schedules are recreated on every toggle."""
        if active == self._training:
            return
        self._training = active
        self._round_schedule.cancel()
        self._poll_schedule.cancel()
        if active:
            self._round_schedule.start()
            self._poll_schedule.start()

    async def _round_tick(self) -> None:
        await self.execute_round()

    async def _poll_tick(self) -> None:
        if self.phase in RUNNING_PHASES:
            await self.poll_state()

    # ============= Reset / teardown =============

    async def reset(self) -> bool:
        """Reset the run on the service and locally, back to ``IDLE``.

        The session is invalidated; the next initialization acquires a
        fresh one.
        """
        self._run_id += 1
        self.phase = TrainingPhase.IDLE
        self._set_training(False)
        self._round_schedule.cancel()
        self._poll_schedule.cancel()

        ok = True
        session_id = self.session_id
        if session_id is not None:
            try:
                await self._client.reset(session_id)
            except SessionError:
                logger.info("Session %s already invalid at reset", session_id)
            except DashboardError as e:
                logger.error("Failed to reset training: %s", e)
                self.error = e.user_message
                ok = False

        self.sessions.invalidate()
        self.round_in_flight = False
        self.phase = TrainingPhase.IDLE
        self.round_state = RoundState(total_rounds=self.settings.default_total_rounds)
        self.metrics = MetricsHistory()
        self.consecutive_failures = 0
        self.configuration = None
        self.last_round_response = None
        self._initialized_session = None
        if ok:
            self.error = None

        await self._emit(OrchestratorEvent.STATE_UPDATED)
        return ok

    def close(self) -> None:
        """Cancel every timer; nothing runs after this returns."""
        self._training = False
        self._round_schedule.cancel()
        self._poll_schedule.cancel()
        self.sessions.close()
        self.round_in_flight = False

    # ============= Presentation =============

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready view of everything the dashboard renders."""
        session = self.sessions.session
        last_metrics = (self.last_round_response or {}).get("metrics")
        return {
            "phase": self.phase.value,
            "is_training": self._training,
            "round_in_flight": self.round_in_flight,
            "error": self.error,
            "status_message": self.status_message,
            "session": session.to_dict() if session else None,
            "configuration": self.configuration.to_payload() if self.configuration else None,
            "round_state": self.round_state.to_dict(),
            "metrics": self.metrics.to_dict(),
            "last_round_metrics": last_metrics,
            "consecutive_failures": self.consecutive_failures,
            "max_round_failures": self.settings.max_round_failures,
        }
