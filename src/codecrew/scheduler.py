from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from codecrew.config import CrewConfig
from codecrew.context_gate import ContextGate
from codecrew.drift import DriftMonitor
from codecrew.errors import (
    BackendError,
    CrewError,
    CrewTimeoutError,
    PersistenceError,
    ValidationError,
    VerificationError,
    WorkspaceError,
)
from codecrew.graph import TaskGraph
from codecrew.health import HealthProbe
from codecrew.models import (
    ContextBundle,
    ExecutionResult,
    SessionHandle,
    Task,
    Workspace,
    utcnow_iso,
)
from codecrew.rebase import RebaseEngine
from codecrew.routing import ModelRouter
from codecrew.sessions import AgentSessionBroker
from codecrew.specialists.implementer import ImplementerAgent
from codecrew.state.backlog_store import BacklogStore
from codecrew.workspace import MergeOutcome, WorkspaceManager

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (CrewTimeoutError, BackendError, VerificationError, WorkspaceError)
DISPATCH_PHASE = "implementation-start"
COMPLETION_PHASE = "implementation-end"


def _describe(exc: BaseException) -> str:
    if isinstance(exc, CrewError):
        return exc.describe()
    return f"{type(exc).__name__}: {exc}"


@dataclass(slots=True)
class AttemptOutcome:
    workspace: Workspace
    logs: str
    commits: int


@dataclass(slots=True)
class RunSummary:
    track_id: str
    started_at: str
    ended_at: str = ""
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    review: int = 0
    rebased: int = 0
    recovered: int = 0
    cancelled: bool = False
    results: list[ExecutionResult] = field(default_factory=list)


class Scheduler:
    """Runs ready tasks through bounded workers and settles every result through one lock."""

    def __init__(
        self,
        *,
        config: CrewConfig,
        repo_root: Path,
        store: BacklogStore,
        broker: AgentSessionBroker,
        workspaces: WorkspaceManager,
        gate: ContextGate,
        drift: DriftMonitor,
        health: HealthProbe,
        rebase: RebaseEngine,
        router: ModelRouter | None = None,
        implementer: ImplementerAgent | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.store = store
        self.broker = broker
        self.workspaces = workspaces
        self.gate = gate
        self.drift = drift
        self.health = health
        self.rebase = rebase
        self.router = router or ModelRouter(config.agents)
        self.implementer = implementer or ImplementerAgent(
            model=config.agents.implementation_model
        )
        self.cancel_event = cancel_event or asyncio.Event()
        self._lock = asyncio.Lock()
        self._graph: TaskGraph | None = None
        self._summary: RunSummary | None = None

    @property
    def graph(self) -> TaskGraph:
        if self._graph is None:
            raise RuntimeError("Backlog is not loaded; call load() first.")
        return self._graph

    def load(self) -> TaskGraph:
        self._graph = TaskGraph(self.store.load())
        return self._graph

    async def _persist(self) -> None:
        await asyncio.to_thread(self.store.save, self.graph.backlog)

    async def run(self) -> RunSummary:
        graph = self.load()
        summary = RunSummary(track_id=graph.backlog.track_id, started_at=utcnow_iso())
        self._summary = summary
        self.drift.reset()

        await asyncio.to_thread(self.health.verify_healthy, self.repo_root)
        summary.recovered = await self.recover()

        running: dict[asyncio.Task[None], str] = {}
        try:
            while not self.cancel_event.is_set():
                async with self._lock:
                    graph.refresh_ready()
                    slots = self.config.implementation.max_workers - len(running)
                    batch = graph.ready_tasks(slots) if slots > 0 else []
                    for task in batch:
                        graph.transition(task.id, "in_progress")
                    if batch:
                        await self._persist()
                for task in batch:
                    worker = asyncio.create_task(self._execute(task), name=f"task-{task.id}")
                    running[worker] = task.id
                    summary.dispatched += 1
                    logger.info("Dispatched %s: %s", task.id, task.title)
                if not running:
                    break

                cancel_wait = asyncio.create_task(self.cancel_event.wait())
                done, _ = await asyncio.wait(
                    {*running, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if cancel_wait not in done:
                    cancel_wait.cancel()
                for worker in done:
                    if worker is cancel_wait:
                        continue
                    running.pop(worker)
                    worker.result()
        finally:
            if running:
                summary.cancelled = self.cancel_event.is_set()
                for worker in running:
                    worker.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                logger.warning("Stopped %d in-flight task(s); they stay in_progress.", len(running))
            await self._cleanup_workspaces()
            summary.ended_at = utcnow_iso()

        summary.cancelled = summary.cancelled or self.cancel_event.is_set()
        logger.info("Drift baselines:\n%s", self.drift.report())
        return summary

    async def _cleanup_workspaces(self) -> None:
        try:
            removed = await self.workspaces.cleanup_all()
        except (CrewError, OSError) as exc:
            logger.warning("Could not clean up workspaces: %s", _describe(exc))
            return
        if removed:
            logger.info("Removed %d leftover workspace(s).", removed)

    async def recover(self) -> int:
        """Return interrupted tasks to ready after reclaiming their sessions and workspaces."""
        recovered = 0
        for task in self.graph.in_progress():
            if task.session_id:
                await self.broker.reclaim(task.session_id, "implementation", task_id=task.id)
            removed = await self.workspaces.cleanup_task(task.id)
            async with self._lock:
                self.graph.transition(task.id, "ready")
                await self._persist()
            logger.info("Recovered %s (removed %d stale workspace(s)).", task.id, removed)
            recovered += 1
        return recovered

    async def _execute(self, task: Task) -> None:
        started = time.monotonic()
        try:
            bundle = self.gate.compress(task)
        except ValidationError as exc:
            result = ExecutionResult(
                task_id=task.id,
                attempts=0,
                context_size=0,
                duration_seconds=time.monotonic() - started,
                commits=0,
                logs=exc.describe(),
                success=False,
                error_kind=exc.kind,
            )
            await self._settle(task, result, None, exc)
            return

        model = self.router.model_for(task)
        logs: list[str] = []
        outcome: AttemptOutcome | None = None
        error: CrewError | None = None
        tries = 0
        while tries < self.config.implementation.max_tries:
            tries += 1
            async with self._lock:
                task.attempts += 1
                await self._persist()
            try:
                outcome = await self._attempt(task, bundle, model)
                error = None
                break
            except PersistenceError:
                raise
            except RETRYABLE_ERRORS as exc:
                error = exc
                logs.append(exc.describe())
                logger.warning("%s try %d failed: %s", task.id, tries, exc.describe())
            except CrewError as exc:
                error = exc
                logs.append(exc.describe())
                logger.warning("%s aborted: %s", task.id, exc.describe())
                break

        if outcome is not None:
            logs.append(outcome.logs)
        result = ExecutionResult(
            task_id=task.id,
            attempts=tries,
            context_size=bundle.size_bytes,
            duration_seconds=time.monotonic() - started,
            commits=outcome.commits if outcome else 0,
            logs="\n".join(logs),
            success=outcome is not None,
            error_kind=error.kind if error else None,
        )
        await self._settle(task, result, outcome, error)

    def _check_transcript(
        self, task: Task, handle: SessionHandle, phase: str, transcript: str
    ) -> None:
        metrics = self.gate.verify(
            transcript, "implementation", task_id=task.id, session_id=handle.session_id
        )
        self.drift.check_drift(task.id, phase, metrics)

    async def _attempt(self, task: Task, bundle: ContextBundle, model: str) -> AttemptOutcome:
        workspace = await self.workspaces.acquire(task.id, task.attempts)
        try:
            handle = await self.broker.open(
                "implementation",
                task_id=task.id,
                title=f"{self.implementer.role}: {task.id}",
                model=model,
                working_directory=workspace.path,
            )
            try:
                async with self._lock:
                    task.session_id = handle.session_id
                    await self._persist()
                prompt = self.implementer.render(self.implementer.task_instruction(bundle.text))
                self._check_transcript(task, handle, DISPATCH_PHASE, prompt)
                await self.broker.send(handle, prompt)
                output = await self.broker.wait_for_output(
                    handle, self.config.implementation.timeout_seconds
                )
                self._check_transcript(
                    task, handle, COMPLETION_PHASE, self.broker.transcript(handle)
                )
            except BaseException as exc:
                await self._close_after_failure(handle, exc)
                raise
            await self.broker.close(handle)

            logs = [output]
            if self.config.implementation.verify_after_attempt:
                check = await asyncio.to_thread(self.health.verify_workspace, workspace.path)
                logs.append(check.summary())
                if not check.ok:
                    raise VerificationError(
                        f"Verification failed in {workspace.path}: exit {check.exit_code}",
                        reason="verification_failed",
                        task_id=task.id,
                    )
            await self.workspaces.commit_pending(workspace)
            commits = await self.workspaces.commit_count(workspace)
        except BaseException as exc:
            await self._discard_after_failure(workspace, exc)
            raise
        return AttemptOutcome(workspace=workspace, logs="\n".join(logs), commits=commits)

    async def _close_after_failure(self, handle: SessionHandle, failure: BaseException) -> None:
        try:
            await self.broker.close(handle)
        except CrewError as exc:
            failure.add_note(f"teardown: {exc.describe()}")

    async def _discard_after_failure(self, workspace: Workspace, failure: BaseException) -> None:
        try:
            await self.workspaces.discard(workspace)
        except (CrewError, OSError) as exc:
            failure.add_note(f"workspace cleanup: {exc}")

    async def _settle(
        self,
        task: Task,
        result: ExecutionResult,
        outcome: AttemptOutcome | None,
        error: CrewError | None,
    ) -> None:
        summary = self._summary
        if summary is not None:
            summary.results.append(result)
        assessment = self.rebase.assess(task, result)
        regenerate = (
            assessment.should_rebase
            and self.rebase.can_regenerate(task)
            and not isinstance(error, ValidationError)
        )

        message = error.describe() if error else "failed"
        revised: Task | None = None
        merge: MergeOutcome | None = None
        try:
            revised = await self._regenerate(task, result) if regenerate else None
            if outcome is not None and revised is not None:
                await self.workspaces.discard(outcome.workspace)
            elif outcome is not None:
                merge = await self.workspaces.merge(outcome.workspace)
                result.merge_conflict = merge.conflict
                await self._release_after_merge(outcome.workspace, merge)
        except PersistenceError:
            raise
        except (CrewError, OSError) as exc:
            if outcome is not None:
                await self._discard_after_failure(outcome.workspace, exc)
            message = _describe(exc)
            revised, merge, outcome = None, None, None
            logger.warning("%s could not be settled: %s", task.id, message)

        if outcome is not None and revised is not None:
            async with self._lock:
                self.graph.transition(task.id, "rebasing", error=assessment.reason)
                self._adopt(task, revised)
                self.graph.transition(task.id, "ready")
                await self._persist()
            self._count("rebased")
            logger.info("%s succeeded messily; regenerated spec (%s).", task.id, assessment.reason)
            return

        if merge is not None:
            async with self._lock:
                if merge.conflict:
                    self.graph.transition(
                        task.id, "review", error=f"Merge conflict: {merge.detail[:200]}"
                    )
                else:
                    self.graph.transition(task.id, "completed")
                await self._persist()
            self._count("review" if merge.conflict else "completed")
            logger.info("%s %s.", task.id, "needs review" if merge.conflict else "completed")
            return

        async with self._lock:
            self.graph.transition(task.id, "failed", error=message)
            if revised is not None:
                self.graph.transition(task.id, "rebasing")
                self._adopt(task, revised)
                self.graph.transition(task.id, "ready")
            await self._persist()
        self._count("rebased" if revised is not None else "failed")
        logger.warning("%s failed: %s", task.id, message)

    async def _release_after_merge(self, workspace: Workspace, merge: MergeOutcome) -> None:
        try:
            await self.workspaces.release(workspace, keep_branch=merge.conflict)
        except (CrewError, OSError) as exc:
            logger.warning("Could not release %s after merge: %s", workspace.path, _describe(exc))

    async def _regenerate(self, task: Task, result: ExecutionResult) -> Task | None:
        try:
            return await self.rebase.regenerate(task, result)
        except ValidationError as exc:
            logger.warning("Could not regenerate %s: %s", task.id, exc.describe())
            return None

    def _count(self, field_name: str) -> None:
        if self._summary is not None:
            setattr(self._summary, field_name, getattr(self._summary, field_name) + 1)

    @staticmethod
    def _adopt(task: Task, revised: Task) -> None:
        task.title = revised.title
        task.description = revised.description
        task.acceptance = list(revised.acceptance)
        task.scope = revised.scope
        task.context = revised.context
        task.attempts = revised.attempts
        task.revision = revised.revision
        if revised.last_error:
            task.last_error = revised.last_error

    async def rebase_task(self, task_id: str) -> Task:
        """Regenerate the spec of a failed or review task on request and make it ready."""
        graph = self._graph or self.load()
        task = graph.get(task_id)
        if task.status not in {"failed", "review"}:
            raise ValidationError(
                f"Task {task_id} is {task.status}; only failed or review tasks can be rebased.",
                reason="invalid_transition",
                task_id=task_id,
            )
        result = ExecutionResult(
            task_id=task.id,
            attempts=max(1, task.attempts),
            context_size=0,
            duration_seconds=0.0,
            commits=0,
            logs=task.last_error or "",
            success=False,
            error_kind="ManualRebase",
        )
        revised = await self.rebase.regenerate(task, result)
        async with self._lock:
            if task.status == "review":
                graph.transition(task.id, "failed", error=task.last_error)
            graph.transition(task.id, "rebasing")
            self._adopt(task, revised)
            graph.transition(task.id, "ready")
            await self._persist()
        return task
