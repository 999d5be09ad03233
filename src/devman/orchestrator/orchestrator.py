"""Session table, tier admission, checkpointing and recovery."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass

from loguru import logger

from devman.checkpoint.store import Checkpoint, CheckpointStore
from devman.config import Settings
from devman.core.types import AccessScope, CapabilityTier, SessionStatus, StatusUpdate, Usage
from devman.errors import CheckpointWriteFailure, TurnLimitExceeded
from devman.orchestrator.cost import CostTracker, estimate_cost
from devman.orchestrator.pool import TierPool
from devman.orchestrator.triage import classify_tier
from devman.session.session import Session, SessionOutcome, StreamingClient
from devman.status import StatusBoard
from devman.storage.tasks import TaskStore
from devman.tools.router import ToolRegistry


@dataclass(frozen=True)
class TaskRequest:
    task: str
    content: str
    scope: AccessScope
    tier: CapabilityTier | None = None
    consumer: str = "cli"
    interactive: bool = False
    session_id: str | None = None

    def resolved_session_id(self) -> str:
        return self.session_id or f"{self.consumer}:{self.task}"


@dataclass(frozen=True)
class RunResult:
    session_id: str
    task: str
    tier: CapabilityTier
    status: SessionStatus
    reply: str
    turn: int
    usage: Usage
    cost_usd: float
    error: str | None = None
    error_kind: str | None = None
    restarts: int = 0

    @property
    def ok(self) -> bool:
        return self.status in {SessionStatus.COMPLETED, SessionStatus.IDLE}


@dataclass
class _Entry:
    session: Session
    lock: asyncio.Lock


class Orchestrator:
    """Owns every live session.

    The session table is guarded by one lock and each session by its own, so
    two requests for the same session id run one after the other while
    different sessions run concurrently within the tier budgets.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: StreamingClient,
        tools: ToolRegistry,
        store: TaskStore,
        checkpoints: CheckpointStore,
        status_board: StatusBoard | None = None,
        cost: CostTracker | None = None,
        pool: TierPool | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._tools = tools
        self._store = store
        self._checkpoints = checkpoints
        self.status_board = status_board or StatusBoard()
        self.cost = cost or CostTracker()
        self.pool = pool or TierPool(settings.tier_budgets())
        self._sessions: dict[str, _Entry] = {}
        self._table_lock = asyncio.Lock()

    async def submit(self, request: TaskRequest) -> RunResult:
        session_id = request.resolved_session_id()
        while True:
            entry = await self._obtain(session_id, request)
            async with entry.lock:
                # The entry may have been retired while this request waited.
                if self._sessions.get(session_id) is not entry:
                    continue
                outcome, restarts = await self._submit_locked(entry, request)
                break
        session = entry.session
        return RunResult(
            session_id=session_id,
            task=session.task,
            tier=session.tier,
            status=outcome.status,
            reply=outcome.reply,
            turn=outcome.turn,
            usage=outcome.usage,
            cost_usd=estimate_cost(session.model, session.usage),
            error=outcome.error,
            error_kind=outcome.error_kind,
            restarts=restarts,
        )

    async def _submit_locked(self, entry: _Entry, request: TaskRequest) -> tuple[SessionOutcome, int]:
        session = entry.session
        session.scope = request.scope
        async with self.pool.slot(session.tier):
            logger.info(
                "orchestrator.submit session={} task={} tier={}",
                session.id,
                request.task,
                session.tier,
            )
            outcome = await self._run_attempt(session, session.run(request.content))
            outcome, restarts = await self._recover(entry, request, outcome)
            outcome = await self._checkpoint_on_exit(entry.session, outcome)
        if not entry.session.interactive:
            await self.retire(entry.session.id)
        return outcome, restarts

    async def cancel(self, session_id: str) -> bool:
        async with self._table_lock:
            entry = self._sessions.get(session_id)
        if entry is None:
            return False
        logger.info("orchestrator.cancel session={}", session_id)
        entry.session.cancel()
        return True

    async def retire(self, session_id: str) -> bool:
        async with self._table_lock:
            entry = self._sessions.get(session_id)
            if entry is None or entry.session.running:
                return False
            del self._sessions[session_id]
        logger.info("orchestrator.retire session={} status={}", session_id, entry.session.status)
        return True

    def sessions(self) -> list[StatusUpdate]:
        return [self._status_update(entry.session) for _, entry in sorted(self._sessions.items())]

    def get(self, session_id: str) -> Session | None:
        entry = self._sessions.get(session_id)
        return entry.session if entry is not None else None

    async def shutdown(self) -> None:
        async with self._table_lock:
            entries = list(self._sessions.values())
        for entry in entries:
            if entry.session.running:
                entry.session.cancel()

    async def _obtain(self, session_id: str, request: TaskRequest) -> _Entry:
        async with self._table_lock:
            entry = self._sessions.get(session_id)
            if entry is not None:
                return entry
            checkpoint = await asyncio.to_thread(self._checkpoints.load, session_id)
            if checkpoint is not None and checkpoint.resumable:
                session = self._restore(checkpoint, request.scope)
                logger.info("orchestrator.resume session={} turn={}", session_id, checkpoint.turn)
            else:
                tier = request.tier or classify_tier(request.content)
                session = self._create(session_id, request, tier)
                logger.info("orchestrator.create session={} tier={} model={}", session_id, tier, session.model)
            entry = _Entry(session=session, lock=asyncio.Lock())
            self._sessions[session_id] = entry
            self._publish(session)
            return entry

    def _create(self, session_id: str, request: TaskRequest, tier: CapabilityTier) -> Session:
        self._store.ensure(request.task)
        return Session(
            session_id=session_id,
            task=request.task,
            tier=tier,
            model=self._settings.model_for(tier),
            settings=self._settings,
            client=self._client,
            tools=self._tools,
            store=self._store,
            scope=request.scope,
            consumer=request.consumer,
            interactive=request.interactive,
            on_status=self._publish,
            turn_hook=self._after_turn,
        )

    def _restore(self, checkpoint: Checkpoint, scope: AccessScope) -> Session:
        return Session.restore(
            checkpoint,
            settings=self._settings,
            client=self._client,
            tools=self._tools,
            store=self._store,
            scope=scope,
            on_status=self._publish,
            turn_hook=self._after_turn,
        )

    async def _run_attempt(self, session: Session, run: Awaitable[SessionOutcome]) -> SessionOutcome:
        baseline = session.usage
        try:
            return await run
        finally:
            spent = session.usage - baseline
            if spent != Usage():
                self.cost.record(session.model, session.task, spent)

    async def _recover(
        self,
        entry: _Entry,
        request: TaskRequest,
        outcome: SessionOutcome,
    ) -> tuple[SessionOutcome, int]:
        restarts = 0
        while (
            outcome.status is SessionStatus.FAILED
            and self._settings.recovery_policy == "restart"
            and restarts < self._settings.max_restarts
            and outcome.error_kind != TurnLimitExceeded.kind
        ):
            restarts += 1
            failed = entry.session
            checkpoint = await asyncio.to_thread(self._checkpoints.load, failed.id)
            if checkpoint is not None and not _written_by(checkpoint, failed):
                logger.info(
                    "orchestrator.restart.stale_checkpoint session={} sequence={} status={}",
                    failed.id,
                    checkpoint.sequence,
                    checkpoint.status,
                )
                checkpoint = None
            logger.warning(
                "orchestrator.restart session={} attempt={} error={} checkpoint_turn={}",
                failed.id,
                restarts,
                outcome.error,
                checkpoint.turn if checkpoint is not None else None,
            )
            if checkpoint is None:
                session = self._create(failed.id, request, failed.tier)
                entry.session = session
                outcome = await self._run_attempt(session, session.run(request.content))
                continue
            session = self._restore(checkpoint, request.scope)
            entry.session = session
            if session.awaiting_input:
                outcome = await self._run_attempt(session, session.run(request.content))
            else:
                outcome = await self._run_attempt(session, session.resume())
        if outcome.status is SessionStatus.FAILED:
            logger.error(
                "orchestrator.failed session={} kind={} error={}",
                entry.session.id,
                outcome.error_kind,
                outcome.error,
            )
        return outcome, restarts

    async def _after_turn(self, session: Session) -> None:
        if session.turn % self._settings.checkpoint_interval == 0:
            await self._write_checkpoint(session)

    async def _checkpoint_on_exit(self, session: Session, outcome: SessionOutcome) -> SessionOutcome:
        try:
            await self._write_checkpoint(session)
        except CheckpointWriteFailure as exc:
            return session.fail(exc)
        return outcome

    async def _write_checkpoint(self, session: Session) -> None:
        checkpoint = session.snapshot()
        await asyncio.to_thread(self._checkpoints.save, checkpoint)

    def _status_update(self, session: Session) -> StatusUpdate:
        return StatusUpdate(
            session_id=session.id,
            task_id=session.task,
            tier=session.tier,
            status=session.status,
            turn=session.turn,
            input_tokens=session.usage.input_tokens,
            output_tokens=session.usage.output_tokens,
            cost_usd=estimate_cost(session.model, session.usage),
            error=session.error,
        )

    def _publish(self, session: Session) -> None:
        self.status_board.publish(self._status_update(session))


def _written_by(checkpoint: Checkpoint, session: Session) -> bool:
    """True when ``checkpoint`` is the latest resumable one this session lineage wrote."""
    return (
        checkpoint.resumable
        and session.checkpoint_sequence > 0
        and checkpoint.sequence == session.checkpoint_sequence
    )
