import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from strata.modules.inventory.domain.engine import SyncEngine
from strata.modules.inventory.domain.orchestrator import (
    Orchestrator,
    RetryPolicy,
    SyncTask,
    TaskState,
    is_retryable,
)
from strata.shared.adapters.rate_limiter import RateLimiter
from strata.shared.core.exceptions import (
    ConfigurationError,
    ConversionError,
    HeartbeatTimeoutError,
    LedgerIntegrityError,
    PersistenceError,
    ReconciliationError,
    ResourceNotFoundError,
    SyncGroupError,
    SyncTimeoutError,
    TransportError,
)
from tests.helpers import DomainAdapter, StaticAdapter, snapshot_item

SCOPE = "proj-1"


class FlakyAdapter(StaticAdapter):
    """Fails the first `failures` fetches with the given error."""

    def __init__(self, failures: int, error: Exception, pages=None):
        super().__init__(pages or [[snapshot_item("snap-a")]])
        self.failures = failures
        self.error = error

    async def fetch(self, scope, page_token=None):
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return await super().fetch(scope, page_token)


class HangingAdapter(StaticAdapter):
    async def fetch(self, scope, page_token=None):
        await asyncio.sleep(3600)


def _orchestrator(session_maker, clock, sleep=None, **kwargs):
    kwargs.setdefault("policy", RetryPolicy(1.0, 2.0, 60.0, 3))
    kwargs.setdefault("group_policy", RetryPolicy(1.0, 2.0, 60.0, 2))
    return Orchestrator(
        session_maker,
        clock=clock,
        sleep=sleep or AsyncMock(),
        rate_limiter_factory=lambda provider: RateLimiter(1000.0, provider=provider),
        **kwargs,
    )


def test_retry_classification():
    assert is_retryable(TransportError("x"))
    assert is_retryable(ConversionError("x"))
    assert is_retryable(PersistenceError("x"))
    assert is_retryable(SyncTimeoutError("x"))
    assert is_retryable(HeartbeatTimeoutError("x"))
    assert not is_retryable(LedgerIntegrityError("x"))
    assert not is_retryable(ValueError("x"))


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(initial_interval=1.0, backoff_coefficient=2.0, maximum_interval=5.0)

    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_task_rejects_invalid_transition():
    task = SyncTask(provider="gcp", scope=SCOPE, kind="gcp_compute_snapshot")
    task.transition(TaskState.RUNNING)
    task.transition(TaskState.SUCCEEDED)

    with pytest.raises(ValueError):
        task.transition(TaskState.RUNNING)


@pytest.mark.asyncio
async def test_trigger_runs_engine_and_reconcile(session_maker, clock):
    adapter = StaticAdapter([[snapshot_item("snap-a")]])
    orchestrator = _orchestrator(session_maker, clock)
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: adapter)

    task = await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")

    assert task.state == TaskState.SUCCEEDED
    assert task.attempts == 1
    assert task.item_count == 1
    assert task.collected_at == clock.now
    assert adapter.opened == 1
    assert adapter.closed == 1
    assert orchestrator.get_task(task.task_id) is task


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(session_maker, clock):
    sleep = AsyncMock()
    adapter = FlakyAdapter(2, TransportError("503 from provider"))
    orchestrator = _orchestrator(session_maker, clock, sleep=sleep)
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: adapter)

    task = await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")

    assert task.state == TaskState.SUCCEEDED
    assert task.attempts == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
    # a fresh adapter context per attempt
    assert adapter.opened == adapter.closed == 3


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_task(session_maker, clock):
    adapter = FlakyAdapter(10, TransportError("503 from provider"))
    orchestrator = _orchestrator(session_maker, clock)
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: adapter)

    with pytest.raises(TransportError) as exc_info:
        await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")

    task = orchestrator.recent_tasks()[0]
    assert task.state == TaskState.FAILED
    assert task.attempts == 3
    assert task.error_code == "transport_error"
    assert exc_info.value.details["task_id"] == task.task_id


@pytest.mark.asyncio
async def test_ledger_integrity_fault_is_not_retried(session_maker, clock):
    sleep = AsyncMock()
    orchestrator = _orchestrator(session_maker, clock, sleep=sleep)
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: StaticAdapter())

    with patch.object(
        SyncEngine, "run", AsyncMock(side_effect=LedgerIntegrityError("two open rows"))
    ):
        with pytest.raises(LedgerIntegrityError):
            await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")

    task = orchestrator.recent_tasks()[0]
    assert task.attempts == 1
    assert task.state == TaskState.FAILED
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_reconcile_failure_does_not_fail_task(session_maker, clock):
    orchestrator = _orchestrator(session_maker, clock)
    orchestrator.register_adapter(
        "gcp_compute_snapshot", lambda scope: StaticAdapter([[snapshot_item("snap-a")]])
    )

    with patch.object(
        SyncEngine, "reconcile", AsyncMock(side_effect=ReconciliationError("db gone"))
    ):
        task = await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")

    assert task.state == TaskState.SUCCEEDED
    assert task.attempts == 1


@pytest.mark.asyncio
async def test_missing_heartbeat_cancels_attempt(session_maker, clock):
    adapter = HangingAdapter()
    orchestrator = _orchestrator(
        session_maker,
        clock,
        policy=RetryPolicy(0.0, 2.0, 0.0, 2),
        heartbeat_timeout=0.05,
    )
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: adapter)

    with pytest.raises(HeartbeatTimeoutError):
        await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")

    task = orchestrator.recent_tasks()[0]
    assert task.attempts == 2
    assert task.error_code == "heartbeat_timeout"
    assert adapter.closed == 2


@pytest.mark.asyncio
async def test_attempt_timeout_is_retryable_timeout(session_maker, clock):
    orchestrator = _orchestrator(
        session_maker,
        clock,
        policy=RetryPolicy(0.0, 2.0, 0.0, 1),
        attempt_timeout=0.05,
        heartbeat_timeout=10,
    )
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: HangingAdapter())

    with pytest.raises(SyncTimeoutError) as exc_info:
        await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")

    assert exc_info.value.code == "sync_timeout"


@pytest.mark.asyncio
async def test_trigger_validates_kind_and_adapter(session_maker, clock):
    orchestrator = _orchestrator(session_maker, clock)

    with pytest.raises(ResourceNotFoundError):
        await orchestrator.trigger("gcp", SCOPE, "no_such_kind")
    with pytest.raises(ResourceNotFoundError):
        await orchestrator.trigger("digitalocean", SCOPE, "gcp_compute_snapshot")
    with pytest.raises(ConfigurationError):
        await orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot")


@pytest.mark.asyncio
async def test_runs_of_one_scope_are_serialized_and_locks_released(session_maker, clock):
    active = {"now": 0, "max": 0}

    class TrackingAdapter(StaticAdapter):
        async def fetch(self, scope, page_token=None):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.05)
            active["now"] -= 1
            return await super().fetch(scope, page_token)

    orchestrator = _orchestrator(session_maker, clock)
    orchestrator.register_adapter(
        "gcp_compute_snapshot", lambda scope: TrackingAdapter([[snapshot_item("snap-a")]])
    )

    tasks = await asyncio.gather(
        orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot"),
        orchestrator.trigger("gcp", SCOPE, "gcp_compute_snapshot"),
        orchestrator.trigger("gcp", "proj-2", "gcp_compute_snapshot"),
    )

    assert [task.state for task in tasks] == [TaskState.SUCCEEDED] * 3
    assert active["max"] == 2
    assert orchestrator._locks == {}
    assert orchestrator._lock_users == {}


def test_unregistered_kind_is_no_longer_resolvable(gcp_dns_kind):
    from strata.modules.inventory.domain import kinds

    kinds.unregister_kind(gcp_dns_kind.name)

    with pytest.raises(ResourceNotFoundError):
        kinds.get_kind(gcp_dns_kind.name)
    assert gcp_dns_kind not in kinds.kinds_for_provider("gcp")


def test_load_adapter_factories_rejects_bad_paths(session_maker, clock):
    orchestrator = _orchestrator(session_maker, clock)

    with pytest.raises(ConfigurationError):
        orchestrator.load_adapter_factories({"do_domain": "no_colon_here"})
    with pytest.raises(ConfigurationError):
        orchestrator.load_adapter_factories({"do_domain": "tests.helpers:Missing"})

    orchestrator.load_adapter_factories({"do_domain": "tests.helpers:DomainAdapter"})
    assert orchestrator.registered_kinds() == ["do_domain"]


@pytest.fixture
def gcp_dns_kind():
    from strata.models.dns import DnsDomain, DnsDomainHistory
    from strata.modules.inventory.domain import kinds

    kind = kinds.register_kind(
        kinds.ResourceKind(
            name="gcp_dns_zone",
            provider="gcp",
            snapshot_model=DnsDomain,
            history_model=DnsDomainHistory,
        )
    )
    yield kind
    kinds.unregister_kind(kind.name)


@pytest.mark.asyncio
async def test_group_child_failure_does_not_cancel_siblings(session_maker, clock, gcp_dns_kind):
    sleep = AsyncMock()
    orchestrator = _orchestrator(session_maker, clock, sleep=sleep)
    zones = DomainAdapter([[{"name": "example.com", "ttl": 300}]])
    snapshots = FlakyAdapter(100, TransportError("quota exceeded"))
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: snapshots)
    orchestrator.register_adapter("gcp_dns_zone", lambda scope: zones)

    with pytest.raises(SyncGroupError) as exc_info:
        await orchestrator.run_group("gcp", SCOPE)

    assert exc_info.value.details["failed"] == {"gcp_compute_snapshot": "transport_error"}
    tasks = {task.kind: task for task in orchestrator.recent_tasks()}
    assert tasks["gcp_dns_zone"].state == TaskState.SUCCEEDED
    assert tasks["gcp_compute_snapshot"].state == TaskState.FAILED
    # the succeeded sibling is not re-run by the group retry
    assert tasks["gcp_dns_zone"].attempts == 1
    assert zones.opened == 1
    # 3 task attempts per group attempt, 2 group attempts
    assert tasks["gcp_compute_snapshot"].attempts == 6


@pytest.mark.asyncio
async def test_group_retry_recovers_failed_child(session_maker, clock):
    orchestrator = _orchestrator(session_maker, clock)
    domains = DomainAdapter([[{"name": "example.com", "ttl": 1800}]])
    calls = {"n": 0}

    def domain_factory(scope):
        calls["n"] += 1
        # every attempt of the first group try fails
        if calls["n"] <= 3:
            return FlakyAdapter(1, TransportError("connection reset"))
        return domains

    orchestrator.register_adapter("do_domain", domain_factory)

    group = await orchestrator.run_group("digitalocean", SCOPE)

    assert group.attempts == 2
    assert group.succeeded
    task = group.tasks[0]
    assert task.state == TaskState.SUCCEEDED
    assert task.attempts == 4
    assert task.item_count == 1


@pytest.mark.asyncio
async def test_group_integrity_fault_is_not_retried(session_maker, clock):
    orchestrator = _orchestrator(session_maker, clock)
    orchestrator.register_adapter("do_domain", lambda scope: DomainAdapter())

    with patch.object(SyncEngine, "run", AsyncMock(side_effect=LedgerIntegrityError("corrupt"))):
        with pytest.raises(SyncGroupError) as exc_info:
            await orchestrator.run_group("digitalocean", SCOPE)

    assert exc_info.value.details["retryable"] is False
    assert exc_info.value.details["attempt"] == 1


@pytest.mark.asyncio
async def test_group_rejects_kinds_of_other_providers(session_maker, clock):
    orchestrator = _orchestrator(session_maker, clock)
    orchestrator.register_adapter("do_domain", lambda scope: DomainAdapter())
    orchestrator.register_adapter("gcp_compute_snapshot", lambda scope: StaticAdapter())

    with pytest.raises(ResourceNotFoundError):
        await orchestrator.run_group("digitalocean", SCOPE, ["do_domain", "gcp_compute_snapshot"])
    with pytest.raises(ConfigurationError):
        await orchestrator.run_group("aws", SCOPE)
