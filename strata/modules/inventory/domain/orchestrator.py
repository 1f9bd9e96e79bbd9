"""
Sync task orchestration.

A SyncTask is one (provider, scope, kind) sync run with its own retry
envelope. Each attempt opens a fresh adapter, runs one engine pass under a
start-to-close timeout and a heartbeat watchdog, and then reconciles stale
entities. Provider groups fan a scope out to several kinds concurrently,
with a group-level retry envelope that only re-runs unfinished children.
"""

import asyncio
import importlib
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from strata.modules.inventory.domain.engine import Clock, SyncEngine, utcnow
from strata.modules.inventory.domain.kinds import ResourceKind, get_kind, kinds_for_provider
from strata.modules.inventory.domain.records import SyncResult
from strata.shared.adapters.base import AdapterFactory
from strata.shared.adapters.rate_limiter import RateLimiter, get_provider_rate_limiter
from strata.shared.core.config import get_settings
from strata.shared.core.logging import sync_log_context
from strata.shared.core.exceptions import (
    ConfigurationError,
    ConversionError,
    HeartbeatTimeoutError,
    LedgerIntegrityError,
    PersistenceError,
    ReconciliationError,
    ResourceNotFoundError,
    StrataException,
    SyncGroupError,
    SyncTimeoutError,
    TransportError,
)
from strata.shared.core.ops_metrics import (
    RECONCILE_FAILURES_TOTAL,
    SYNC_TASK_OUTCOMES_TOTAL,
    SYNC_TASK_RETRIES_TOTAL,
    SYNC_TASKS_RUNNING,
)

logger = structlog.get_logger()

RETRYABLE_ERRORS = (TransportError, ConversionError, PersistenceError, SyncTimeoutError)


def is_retryable(exc: BaseException) -> bool:
    """Transient failures are retried; ledger integrity faults never are."""
    if isinstance(exc, LedgerIntegrityError):
        return False
    return isinstance(exc, RETRYABLE_ERRORS)


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.PENDING: {TaskState.RUNNING, TaskState.FAILED},
    TaskState.RUNNING: {TaskState.SUCCEEDED, TaskState.RETRYING, TaskState.FAILED},
    TaskState.RETRYING: {TaskState.RUNNING, TaskState.FAILED},
    TaskState.SUCCEEDED: set(),
    # a group retry re-runs failed children
    TaskState.FAILED: {TaskState.RUNNING},
}


@dataclass(frozen=True)
class RetryPolicy:
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 60.0
    maximum_attempts: int = 3

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            initial_interval=settings.SYNC_RETRY_INITIAL_SECONDS,
            backoff_coefficient=settings.SYNC_RETRY_BACKOFF_COEFFICIENT,
            maximum_interval=settings.SYNC_RETRY_MAX_INTERVAL_SECONDS,
            maximum_attempts=settings.SYNC_RETRY_MAX_ATTEMPTS,
        )

    def wait(self) -> wait_exponential:
        return wait_exponential(
            multiplier=self.initial_interval,
            exp_base=self.backoff_coefficient,
            max=self.maximum_interval,
        )

    def delay_for(self, attempt_number: int) -> float:
        """Delay slept after the given (1-based) failed attempt."""
        return min(
            self.initial_interval * self.backoff_coefficient ** (attempt_number - 1),
            self.maximum_interval,
        )


@dataclass
class SyncTask:
    provider: str
    scope: str
    kind: str
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    group_id: Optional[str] = None
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    item_count: int = 0
    duration_ms: int = 0
    collected_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None

    def transition(self, state: TaskState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Invalid sync task transition {self.state.value} -> {state.value}")
        logger.info(
            "sync_task_state_changed",
            task_id=self.task_id,
            provider=self.provider,
            scope=self.scope,
            kind=self.kind,
            from_state=self.state.value,
            to_state=state.value,
            attempts=self.attempts,
        )
        self.state = state
        now = datetime.now(timezone.utc)
        if state == TaskState.RUNNING and self.started_at is None:
            self.started_at = now
        if state in (TaskState.SUCCEEDED, TaskState.FAILED):
            self.finished_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "group_id": self.group_id,
            "provider": self.provider,
            "scope": self.scope,
            "kind": self.kind,
            "state": self.state.value,
            "attempts": self.attempts,
            "item_count": self.item_count,
            "duration_ms": self.duration_ms,
            "collected_at": self.collected_at,
            "error": self.error,
            "error_code": self.error_code,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class SyncGroupResult:
    provider: str
    scope: str
    tasks: list[SyncTask]
    group_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return all(task.state == TaskState.SUCCEEDED for task in self.tasks)

    def failed_tasks(self) -> list[SyncTask]:
        return [task for task in self.tasks if task.state != TaskState.SUCCEEDED]


class Orchestrator:
    """
    Runs scoped sync tasks with retries, timeouts and per-provider rate limits.

    Not tied to any durable workflow runtime: everything runs on the current
    event loop, which also makes the retry and timeout paths testable.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        policy: Optional[RetryPolicy] = None,
        group_policy: Optional[RetryPolicy] = None,
        attempt_timeout: Optional[float] = None,
        heartbeat_timeout: Optional[float] = None,
        group_timeout: Optional[float] = None,
        clock: Clock = utcnow,
        rate_limiter_factory: Callable[[str], RateLimiter] = get_provider_rate_limiter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        history_limit: Optional[int] = None,
    ):
        settings = get_settings()
        self.session_maker = session_maker
        self.policy = policy or RetryPolicy.from_settings()
        self.group_policy = group_policy or RetryPolicy(
            initial_interval=settings.SYNC_RETRY_INITIAL_SECONDS,
            backoff_coefficient=settings.SYNC_RETRY_BACKOFF_COEFFICIENT,
            maximum_interval=settings.SYNC_RETRY_MAX_INTERVAL_SECONDS,
            maximum_attempts=settings.SYNC_GROUP_MAX_ATTEMPTS,
        )
        self.attempt_timeout = attempt_timeout or settings.SYNC_ATTEMPT_TIMEOUT_SECONDS
        self.heartbeat_timeout = heartbeat_timeout or settings.SYNC_HEARTBEAT_TIMEOUT_SECONDS
        self.group_timeout = group_timeout or settings.SYNC_GROUP_TIMEOUT_SECONDS
        self.clock = clock
        self.rate_limiter_factory = rate_limiter_factory
        self._sleep = sleep
        self._history_limit = history_limit or settings.SYNC_TASK_HISTORY_LIMIT
        self._factories: dict[str, AdapterFactory] = {}
        self._tasks: OrderedDict[str, SyncTask] = OrderedDict()
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}

    # --- adapter registry ---

    def register_adapter(self, kind: str, factory: AdapterFactory) -> None:
        get_kind(kind)
        self._factories[kind] = factory
        logger.info("inventory_adapter_registered", kind=kind)

    def load_adapter_factories(self, mapping: dict[str, str]) -> None:
        """Register factories given as "package.module:attribute" import paths."""
        for kind, path in mapping.items():
            module_name, _, attribute = path.partition(":")
            if not module_name or not attribute:
                raise ConfigurationError(
                    f"Adapter factory for {kind} must look like 'module:attribute'",
                    details={"kind": kind, "path": path},
                )
            try:
                factory = getattr(importlib.import_module(module_name), attribute)
            except (ImportError, AttributeError) as e:
                raise ConfigurationError(
                    f"Cannot load adapter factory {path} for {kind}: {e}",
                    details={"kind": kind, "path": path},
                ) from e
            self.register_adapter(kind, factory)

    def registered_kinds(self) -> list[str]:
        return sorted(self._factories)

    def _resolve(self, provider: str, kind_name: str) -> tuple[ResourceKind, AdapterFactory]:
        kind = get_kind(kind_name)
        if kind.provider != provider:
            raise ResourceNotFoundError(
                f"Resource kind {kind_name} does not belong to provider {provider}",
                details={"provider": provider, "kind": kind_name},
            )
        factory = self._factories.get(kind_name)
        if factory is None:
            raise ConfigurationError(
                f"No adapter registered for {kind_name}",
                details={"kind": kind_name},
            )
        return kind, factory

    # --- task bookkeeping ---

    def _remember(self, task: SyncTask) -> SyncTask:
        self._tasks[task.task_id] = task
        while len(self._tasks) > self._history_limit:
            self._tasks.popitem(last=False)
        return task

    def recent_tasks(self, limit: Optional[int] = None) -> list[SyncTask]:
        tasks = list(reversed(self._tasks.values()))
        return tasks[:limit] if limit else tasks

    def get_task(self, task_id: str) -> SyncTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise ResourceNotFoundError(
                f"Sync task {task_id} not found", details={"task_id": task_id}
            )
        return task

    # --- single task ---

    async def trigger(self, provider: str, scope: str, kind: str) -> SyncTask:
        """
        Run one scoped sync task to completion.

        Returns the succeeded task; raises the terminal error (with the task id
        in its details) when every attempt failed.
        """
        resolved_kind, factory = self._resolve(provider, kind)
        task = self._remember(SyncTask(provider=provider, scope=scope, kind=kind))
        await self._execute(task, resolved_kind, factory)
        return task

    def _before_sleep(self, task: SyncTask) -> Callable[[RetryCallState], None]:
        def hook(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            error_type = type(exc).__name__ if exc else "unknown"
            SYNC_TASK_RETRIES_TOTAL.labels(
                provider=task.provider, kind=task.kind, error_type=error_type
            ).inc()
            task.transition(TaskState.RETRYING)
            logger.warning(
                "inventory_sync_attempt_failed_will_retry",
                task_id=task.task_id,
                provider=task.provider,
                scope=task.scope,
                kind=task.kind,
                attempt=retry_state.attempt_number,
                max_attempts=self.policy.maximum_attempts,
                delay_seconds=round(retry_state.next_action.sleep if retry_state.next_action else 0, 3),
                error=str(exc),
                error_type=error_type,
            )

        return hook

    @asynccontextmanager
    async def _scope_lock(self, key: tuple[str, str]) -> AsyncIterator[None]:
        """Serialize runs of one (kind, scope); the lock is dropped once nobody holds or waits on it."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)

    async def _execute(
        self, task: SyncTask, kind: ResourceKind, factory: AdapterFactory
    ) -> SyncResult:
        async with self._scope_lock((task.kind, task.scope)):
            SYNC_TASKS_RUNNING.labels(provider=task.provider).inc()
            try:
                retrying = AsyncRetrying(
                    stop=stop_after_attempt(self.policy.maximum_attempts),
                    wait=self.policy.wait(),
                    retry=retry_if_exception(is_retryable),
                    before_sleep=self._before_sleep(task),
                    sleep=self._sleep,
                    reraise=True,
                )
                async for attempt in retrying:
                    with attempt:
                        result = await self._attempt(task, kind, factory)
            except asyncio.CancelledError:
                self._fail(task, SyncTimeoutError("Sync task cancelled"))
                raise
            except Exception as e:
                self._fail(task, e)
                raise
            finally:
                SYNC_TASKS_RUNNING.labels(provider=task.provider).dec()

        task.item_count = result.count
        task.duration_ms = result.duration_ms
        task.collected_at = result.collected_at
        task.error = None
        task.error_code = None
        task.transition(TaskState.SUCCEEDED)
        SYNC_TASK_OUTCOMES_TOTAL.labels(
            provider=task.provider, kind=task.kind, state=TaskState.SUCCEEDED.value
        ).inc()
        return result

    def _fail(self, task: SyncTask, exc: Exception) -> None:
        task.error = exc.message if isinstance(exc, StrataException) else str(exc)
        task.error_code = exc.code if isinstance(exc, StrataException) else "internal_error"
        task.transition(TaskState.FAILED)
        SYNC_TASK_OUTCOMES_TOTAL.labels(
            provider=task.provider, kind=task.kind, state=TaskState.FAILED.value
        ).inc()
        if isinstance(exc, StrataException):
            exc.details.setdefault("task_id", task.task_id)
        log = logger.critical if isinstance(exc, LedgerIntegrityError) else logger.error
        log(
            "inventory_sync_task_failed",
            task_id=task.task_id,
            provider=task.provider,
            scope=task.scope,
            kind=task.kind,
            attempts=task.attempts,
            error=task.error,
            error_code=task.error_code,
        )

    async def _attempt(
        self, task: SyncTask, kind: ResourceKind, factory: AdapterFactory
    ) -> SyncResult:
        task.attempts += 1
        task.transition(TaskState.RUNNING)
        with sync_log_context(
            task_id=task.task_id,
            provider=task.provider,
            scope=task.scope,
            kind=task.kind,
            attempt=task.attempts,
        ):
            try:
                async with asyncio.timeout(self.attempt_timeout):
                    return await self._watch_heartbeats(
                        task, lambda heartbeat: self._sync_pass(task, kind, factory, heartbeat)
                    )
            except TimeoutError as e:
                raise SyncTimeoutError(
                    f"Sync attempt exceeded {self.attempt_timeout}s",
                    details={"task_id": task.task_id, "attempt": task.attempts},
                ) from e

    async def _watch_heartbeats(
        self,
        task: SyncTask,
        work: Callable[[Callable[[dict[str, Any]], None]], Awaitable[SyncResult]],
    ) -> SyncResult:
        """Cancel the attempt when it stops reporting progress."""
        loop = asyncio.get_running_loop()
        last_beat = loop.time()

        def heartbeat(progress: dict[str, Any]) -> None:
            nonlocal last_beat
            last_beat = loop.time()
            task.last_heartbeat_at = datetime.now(timezone.utc)

        runner = asyncio.ensure_future(work(heartbeat))
        try:
            while True:
                remaining = self.heartbeat_timeout - (loop.time() - last_beat)
                if remaining <= 0:
                    raise HeartbeatTimeoutError(
                        f"No heartbeat for {self.heartbeat_timeout}s",
                        details={"task_id": task.task_id, "attempt": task.attempts},
                    )
                done, _ = await asyncio.wait({runner}, timeout=remaining)
                if done:
                    return runner.result()
        finally:
            if not runner.done():
                runner.cancel()
                await asyncio.gather(runner, return_exceptions=True)

    async def _sync_pass(
        self,
        task: SyncTask,
        kind: ResourceKind,
        factory: AdapterFactory,
        heartbeat: Callable[[dict[str, Any]], None],
    ) -> SyncResult:
        async with factory(task.scope) as adapter:
            engine = SyncEngine(
                kind,
                adapter,
                self.session_maker,
                rate_limiter=self.rate_limiter_factory(task.provider),
                clock=self.clock,
            )
            result = await engine.run(task.scope, heartbeat=heartbeat)
            try:
                await engine.reconcile(task.scope, result.collected_at)
            except ReconciliationError as e:
                # Stale entities are picked up again by the next pass.
                RECONCILE_FAILURES_TOTAL.labels(kind=kind.name).inc()
                logger.warning(
                    "inventory_reconcile_failed",
                    error=e.message,
                    error_code=e.details.get("cause", e.code),
                )
            return result

    # --- provider groups ---

    def _group_kinds(self, provider: str, kinds: Optional[Iterable[str]]) -> list[str]:
        if kinds:
            return list(dict.fromkeys(kinds))
        return [k.name for k in kinds_for_provider(provider) if k.name in self._factories]

    async def run_group(
        self, provider: str, scope: str, kinds: Optional[Iterable[str]] = None
    ) -> SyncGroupResult:
        """
        Sync several kinds of one provider scope concurrently.

        A child failing terminally does not cancel its siblings. The group
        fails when any child still has not succeeded after the group's own
        retries; only unfinished children are re-run on a group retry.
        """
        names = self._group_kinds(provider, kinds)
        if not names:
            raise ConfigurationError(
                f"No adapters registered for provider {provider}",
                details={"provider": provider},
            )
        resolved = {name: self._resolve(provider, name) for name in names}
        group = SyncGroupResult(provider=provider, scope=scope, tasks=[])
        for name in names:
            group.tasks.append(
                self._remember(
                    SyncTask(provider=provider, scope=scope, kind=name, group_id=group.group_id)
                )
            )

        log = logger.bind(group_id=group.group_id, provider=provider, scope=scope)
        log.info("inventory_group_started", kinds=names)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.group_policy.maximum_attempts),
            wait=self.group_policy.wait(),
            retry=retry_if_exception(
                lambda e: isinstance(e, SyncGroupError) and e.details.get("retryable", False)
            ),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async with asyncio.timeout(self.group_timeout):
                async for attempt in retrying:
                    with attempt:
                        await self._run_group_attempt(group, resolved)
        except TimeoutError as e:
            log.error("inventory_group_timed_out", timeout_seconds=self.group_timeout)
            raise SyncTimeoutError(
                f"Sync group exceeded {self.group_timeout}s",
                details={"group_id": group.group_id, "provider": provider, "scope": scope},
            ) from e
        except SyncGroupError as e:
            log.error("inventory_group_failed", attempts=group.attempts, **e.details)
            raise

        log.info("inventory_group_completed", attempts=group.attempts)
        return group

    async def _run_group_attempt(
        self,
        group: SyncGroupResult,
        resolved: dict[str, tuple[ResourceKind, AdapterFactory]],
    ) -> None:
        group.attempts += 1
        pending = group.failed_tasks()
        results = await asyncio.gather(
            *(self._execute(task, *resolved[task.kind]) for task in pending),
            return_exceptions=True,
        )

        failed: dict[str, str] = {}
        retryable = False
        for task, result in zip(pending, results):
            if not isinstance(result, BaseException):
                continue
            if isinstance(result, asyncio.CancelledError):
                raise result
            failed[task.kind] = getattr(result, "code", "internal_error")
            retryable = retryable or not isinstance(result, LedgerIntegrityError)
            logger.warning(
                "inventory_group_child_failed",
                group_id=group.group_id,
                task_id=task.task_id,
                kind=task.kind,
                error=str(result),
            )

        if failed:
            raise SyncGroupError(
                f"{len(failed)} of {len(group.tasks)} sync tasks failed for "
                f"{group.provider}/{group.scope}",
                details={
                    "group_id": group.group_id,
                    "failed": failed,
                    "retryable": retryable,
                    "attempt": group.attempts,
                },
            )
