"""
Tests for the Run Orchestrator.

============================================================
PURPOSE
============================================================
Drives real child processes through the orchestrator, with events
mirrored to the in-process fake deployment tracking service.

TEST PRINCIPLES:
- Local transitions and remote events agree, element for element
- Validation fails before any process starts or event is sent
- Stacks run one at a time, in the given order
- Cancellation ends the current stack as canceled and stops the run

============================================================
"""

import asyncio

import pytest

from cloud.client import fetch_deployment_events
from core.exceptions import ConfigurationError, ValidationError
from core.lifecycle import LifecycleState
from orchestrator.core import RunOrchestrator, derive_run_id
from orchestrator.models import OrchestratorConfig, Stack
from tests.helper import helper_command


PENDING = LifecycleState.PENDING
RUNNING = LifecycleState.RUNNING
OK = LifecycleState.OK
FAILED = LifecycleState.FAILED
CANCELED = LifecycleState.CANCELED

RUN_ID = "4242"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(autouse=True)
def ci_run_id(monkeypatch):
    monkeypatch.setenv("GITHUB_RUN_ID", RUN_ID)


@pytest.fixture
def make_orchestrator(cloud_client, org_id):
    """Build orchestrators reporting to the fake service."""

    def factory(**overrides) -> RunOrchestrator:
        values = dict(
            cloud_sync=True,
            cloud_org_id=org_id,
            report_retry_backoff_base=0.01,
            drain_timeout_seconds=2.0,
        )
        values.update(overrides)
        return RunOrchestrator(
            OrchestratorConfig(**values),
            client=cloud_client,
            install_signal_handlers=False,
        )

    return factory


@pytest.fixture
def stacks(stack_root):
    return [
        Stack(path=stack_root / "stack-a", id="stack-a"),
        Stack(path=stack_root / "stack-b", id="stack-b"),
    ]


# ============================================================
# RUN ID
# ============================================================

class TestDeriveRunId:
    """Tests for derive_run_id."""

    def test_uses_ci_variable(self):
        """The CI run id is reused."""
        assert derive_run_id(environ={"GITHUB_RUN_ID": "99"}) == "99"

    def test_generates_when_absent(self):
        """Without a CI variable a fresh id is generated each time."""
        first = derive_run_id(environ={})
        second = derive_run_id(environ={})
        assert first and second and first != second

    def test_checks_variables_in_order(self):
        """The first non-empty variable wins."""
        environ = {"A": "", "B": "from-b", "C": "from-c"}
        assert derive_run_id(("A", "B", "C"), environ=environ) == "from-b"


# ============================================================
# PRECONDITIONS
# ============================================================

class TestPreconditions:
    """Tests for RunOrchestrator.prepare."""

    def test_invalid_config(self):
        """An invalid configuration is refused at construction."""
        with pytest.raises(ConfigurationError):
            RunOrchestrator(OrchestratorConfig(cloud_sync=True))

    @pytest.mark.asyncio
    async def test_missing_ids_with_sync(self, make_orchestrator, stack_root, deployment_store):
        """Stacks without ids are rejected before anything runs."""
        orchestrator = make_orchestrator()
        stacks = [
            Stack(path=stack_root / "stack-a"),
            Stack(path=stack_root / "stack-b", id="stack-b"),
        ]

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.run(stacks, helper_command("echo", "hi"))

        assert "requires that selected stacks contain an ID field" in exc_info.value.message
        assert exc_info.value.context["stacks"] == [str(stack_root / "stack-a")]
        assert orchestrator.session is None
        assert deployment_store.requests == []

    def test_duplicate_ids_with_sync(self, make_orchestrator, stack_root):
        """Stack ids must be unique when syncing."""
        stacks = [
            Stack(path=stack_root / "stack-a", id="same"),
            Stack(path=stack_root / "stack-b", id="same"),
        ]
        with pytest.raises(ValidationError) as exc_info:
            make_orchestrator().prepare(stacks, ["true"])

        assert "unique" in exc_info.value.message

    def test_ids_optional_without_sync(self, make_orchestrator, stack_root):
        """Without sync, stacks need no id."""
        orchestrator = make_orchestrator(cloud_sync=False)
        session = orchestrator.prepare([Stack(path=stack_root / "stack-a")], ["true"])
        assert len(session.executions) == 1

    def test_empty_command(self, make_orchestrator, stacks):
        """A command is required."""
        with pytest.raises(ValidationError):
            make_orchestrator().prepare(stacks, [])

    def test_run_id_from_ci(self, make_orchestrator, stacks):
        """The session carries the CI run id."""
        assert make_orchestrator().prepare(stacks, ["true"]).run_id == RUN_ID


# ============================================================
# EXECUTION
# ============================================================

class TestExecution:
    """Tests for RunOrchestrator.execute."""

    @pytest.mark.asyncio
    async def test_single_stack_ok(self, make_orchestrator, stacks, stack_root, deployment_store, org_id):
        """A successful stack goes pending, running, ok, locally and remotely."""
        orchestrator = make_orchestrator()
        exit_code = await orchestrator.run(
            stacks[:1], helper_command("stack-abs-path", str(stack_root))
        )

        execution = orchestrator.session.executions[0]
        assert exit_code == 0
        assert execution.lifecycle.states == [PENDING, RUNNING, OK]
        assert execution.reported_states == [PENDING, RUNNING, OK]
        assert execution.stdout.text() == "/stack-a\n"
        assert orchestrator.session.results()[0].stdout == b"/stack-a\n"
        assert execution.exit_code == 0
        assert deployment_store.events(org_id, RUN_ID) == {
            "stack-a": ["pending", "running", "ok"],
        }

    @pytest.mark.asyncio
    async def test_stacks_run_in_order(self, make_orchestrator, stacks, stack_root, deployment_store, org_id):
        """Stacks run one after another in selector order."""
        orchestrator = make_orchestrator()
        exit_code = await orchestrator.run(stacks, helper_command("stack-abs-path", str(stack_root)))

        session = orchestrator.session
        assert exit_code == 0
        assert [e.stdout.text() for e in session.executions] == ["/stack-a\n", "/stack-b\n"]
        assert session.executions[0].completed_at <= session.executions[1].started_at
        assert deployment_store.events(org_id, RUN_ID) == {
            "stack-a": ["pending", "running", "ok"],
            "stack-b": ["pending", "running", "ok"],
        }

    @pytest.mark.asyncio
    async def test_pending_announced_up_front(self, make_orchestrator, stacks, deployment_store):
        """Every stack is reported pending before the first one runs."""
        orchestrator = make_orchestrator()
        await orchestrator.run(stacks, helper_command("echo"))

        order = [(r["stack_id"], r["state"]) for r in deployment_store.requests]
        assert order[:2] == [("stack-a", "pending"), ("stack-b", "pending")]
        assert order[2:] == [
            ("stack-a", "running"),
            ("stack-a", "ok"),
            ("stack-b", "running"),
            ("stack-b", "ok"),
        ]

    @pytest.mark.asyncio
    async def test_failure_stops_run(self, make_orchestrator, stacks, deployment_store, org_id):
        """By default a failed stack leaves the rest pending."""
        orchestrator = make_orchestrator()
        exit_code = await orchestrator.run(stacks, helper_command("exit", "3"))

        first, second = orchestrator.session.executions
        assert exit_code == 1
        assert first.lifecycle.states == [PENDING, RUNNING, FAILED]
        assert first.exit_code == 3
        assert "exit status 3" in first.error
        assert second.lifecycle.states == [PENDING]
        assert second.started_at is None
        assert orchestrator.session.aborted_reason == "stack stack-a failed"
        assert deployment_store.events(org_id, RUN_ID) == {
            "stack-a": ["pending", "running", "failed"],
            "stack-b": ["pending"],
        }

    @pytest.mark.asyncio
    async def test_continue_on_error(self, make_orchestrator, stacks):
        """With continue_on_error every stack runs."""
        orchestrator = make_orchestrator(continue_on_error=True)
        exit_code = await orchestrator.run(stacks, helper_command("exit", "1"))

        assert exit_code == 1
        assert [e.state for e in orchestrator.session.executions] == [FAILED, FAILED]

    @pytest.mark.asyncio
    async def test_executable_not_found(self, make_orchestrator, stacks, deployment_store, org_id):
        """A command that cannot start fails the stack without skipping running."""
        orchestrator = make_orchestrator()
        exit_code = await orchestrator.run(stacks[:1], ["non-existent-command-for-tests"])

        execution = orchestrator.session.executions[0]
        assert exit_code == 1
        assert execution.lifecycle.states == [PENDING, RUNNING, FAILED]
        assert execution.error == (
            "non-existent-command-for-tests: executable file not found in $PATH"
        )
        assert execution.exit_code is None
        assert deployment_store.events(org_id, RUN_ID) == {
            "stack-a": ["pending", "running", "failed"],
        }

    @pytest.mark.asyncio
    async def test_without_sync_nothing_reported(self, make_orchestrator, stack_root, deployment_store):
        """With sync off no event leaves the process."""
        orchestrator = make_orchestrator(cloud_sync=False)
        exit_code = await orchestrator.run(
            [Stack(path=stack_root / "stack-a")], helper_command("echo", "local")
        )

        execution = orchestrator.session.executions[0]
        assert exit_code == 0
        assert execution.lifecycle.states == [PENDING, RUNNING, OK]
        assert execution.reported_states == []
        assert orchestrator.reporter is None
        assert deployment_store.requests == []


# ============================================================
# REPORTING POLICY
# ============================================================

class TestReportingPolicy:
    """Tests for how reporting failures affect the run."""

    @pytest.mark.asyncio
    async def test_reporting_failure_is_advisory(
        self, make_orchestrator, stacks, cloud_client, deployment_store, org_id
    ):
        """Undelivered events do not change the exit code by default."""
        deployment_store.fail_next(1, status=400)
        orchestrator = make_orchestrator()

        exit_code = await orchestrator.run(stacks, helper_command("echo"))

        session = orchestrator.session
        first, second = session.executions
        assert exit_code == 0
        assert session.reporting_failures == 3
        assert first.reported_states == []
        assert second.reported_states == [PENDING, RUNNING, OK]

        events = await fetch_deployment_events(cloud_client, org_id, RUN_ID)
        assert events.as_names() == {"stack-b": ["pending", "running", "ok"]}

    @pytest.mark.asyncio
    async def test_strict_reporting(self, make_orchestrator, stacks, deployment_store):
        """In strict mode an undelivered event fails the run."""
        deployment_store.fail_next(1, status=400)
        orchestrator = make_orchestrator(report_strict=True)

        exit_code = await orchestrator.run(stacks[:1], helper_command("echo"))

        assert exit_code == 1
        assert orchestrator.session.executions[0].state == OK

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, make_orchestrator, stacks, deployment_store, org_id):
        """Transient failures within the attempt budget are invisible."""
        deployment_store.fail_next(2, status=503)
        orchestrator = make_orchestrator(report_max_attempts=3)

        exit_code = await orchestrator.run(stacks[:1], helper_command("echo"))

        assert exit_code == 0
        assert orchestrator.session.reporting_failures == 0
        assert deployment_store.events(org_id, RUN_ID) == {
            "stack-a": ["pending", "running", "ok"],
        }


# ============================================================
# CANCELLATION
# ============================================================

class TestCancellation:
    """Tests for cancellation of a run."""

    @pytest.mark.asyncio
    async def test_interrupts_escalate_to_kill(self, make_orchestrator, stacks, deployment_store, org_id):
        """Repeated interrupts end the stack as canceled and stop the run."""
        orchestrator = make_orchestrator(kill_after_interrupts=3)
        session = orchestrator.prepare(stacks, helper_command("hang"))
        stdout = session.executions[0].stdout

        task = asyncio.create_task(orchestrator.execute(session))

        assert await stdout.wait_for("ready", timeout=10.0)
        orchestrator.cancel()
        assert await stdout.wait_for("interrupt", occurrences=1, timeout=10.0)
        orchestrator.cancel()
        assert await stdout.wait_for("interrupt", occurrences=2, timeout=10.0)
        orchestrator.cancel()

        exit_code = await asyncio.wait_for(task, timeout=10.0)

        first, second = session.executions
        assert exit_code == 1
        assert first.lifecycle.states == [PENDING, RUNNING, CANCELED]
        assert first.forced
        assert first.interrupts == 3
        assert first.termination_cause == "terminated by SIGKILL"
        assert first.stdout.getvalue().startswith(b"ready\ninterrupt\ninterrupt\n")
        assert second.lifecycle.states == [PENDING]
        assert session.cancelled
        assert deployment_store.events(org_id, RUN_ID) == {
            "stack-a": ["pending", "running", "canceled"],
            "stack-b": ["pending"],
        }

    @pytest.mark.asyncio
    async def test_burst_of_interrupts(self, make_orchestrator, stacks):
        """Many interrupts at once still cancel exactly once."""
        orchestrator = make_orchestrator(kill_after_interrupts=3)
        session = orchestrator.prepare(stacks[:1], helper_command("hang"))

        task = asyncio.create_task(orchestrator.execute(session))
        await session.executions[0].stdout.wait_for("ready", timeout=10.0)
        for _ in range(10):
            orchestrator.cancel()

        exit_code = await asyncio.wait_for(task, timeout=10.0)

        assert exit_code == 1
        assert session.executions[0].lifecycle.states == [PENDING, RUNNING, CANCELED]
        assert session.executions[0].forced

    @pytest.mark.asyncio
    async def test_kill_timeout(self, make_orchestrator, stacks):
        """A child ignoring the interrupt is killed after the timeout."""
        orchestrator = make_orchestrator(kill_after_interrupts=10, kill_timeout_seconds=0.2)
        session = orchestrator.prepare(stacks[:1], helper_command("hang"))

        task = asyncio.create_task(orchestrator.execute(session))
        await session.executions[0].stdout.wait_for("ready", timeout=10.0)
        orchestrator.cancel()

        exit_code = await asyncio.wait_for(task, timeout=10.0)

        execution = session.executions[0]
        assert exit_code == 1
        assert execution.state == CANCELED
        assert execution.interrupts == 1
        assert execution.forced

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, make_orchestrator, stacks, deployment_store, org_id):
        """A run cancelled before it starts leaves every stack pending."""
        orchestrator = make_orchestrator()
        orchestrator.cancel()

        exit_code = await orchestrator.run(stacks, helper_command("echo"))

        assert exit_code == 1
        assert [e.lifecycle.states for e in orchestrator.session.executions] == [
            [PENDING],
            [PENDING],
        ]
        assert deployment_store.events(org_id, RUN_ID) == {
            "stack-a": ["pending"],
            "stack-b": ["pending"],
        }
