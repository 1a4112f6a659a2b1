"""End-to-end tests of the workflow engine through its programmatic API."""

import asyncio
import gc

import pytest
from pydantic import BaseModel

from chainflow.agents.base import AgentResult, AgentStream
from chainflow.errors import (
    InvalidStateError,
    ResumeValidationError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
    WorkflowNotFoundError,
)
from chainflow.models.definition import WorkflowDefinition, WorkflowHooks
from chainflow.models.steps import (
    and_agent,
    and_all,
    and_do_until,
    and_tap,
    and_then,
    and_when,
    and_workflow,
)
from chainflow.models.workflow import RetryPolicy, Usage, WorkflowStatus
from chainflow.workflows.context import RunOptions
from chainflow.workflows.engine import create_workflow
from chainflow.workflows.suspend import SuspendController


class Person(BaseModel):
    name: str


class Greeting(BaseModel):
    greeting: str


class Approval(BaseModel):
    approved: bool


def greet(ctx):
    return {"greeting": "Hello, " + ctx.data["name"]}


def shout(ctx):
    return {"greeting": ctx.data["greeting"].upper()}


def approve(ctx):
    if ctx.resume_data is None:
        return ctx.suspend("needs approval")
    return {**ctx.data, "approved": ctx.resume_data["approved"]}


def approval_workflow(engine):
    return create_workflow(
        "approval",
        "Approval",
        [
            and_then(lambda ctx: {"request": ctx.data["request"]}, id="prepare"),
            and_then(approve, id="approve", resume_schema=Approval),
            and_then(lambda ctx: {**ctx.data, "done": True}, id="finish"),
        ],
        engine=engine,
    )


@pytest.mark.unit
@pytest.mark.asyncio
class TestRun:
    """Sequential runs, schemas and data flow."""

    async def test_greeting_scenario(self, engine):
        workflow = create_workflow(
            "greeter",
            "Greeter",
            [
                and_then(greet, id="greet"),
                and_when(
                    lambda ctx: len(ctx.data["greeting"]) > 0,
                    and_then(shout, id="upper"),
                    id="maybe-shout",
                ),
            ],
            input_schema=Person,
            result_schema=Greeting,
            engine=engine,
        )

        execution = await workflow.run({"name": "Alice"})

        assert execution.status == WorkflowStatus.COMPLETED
        assert execution.data == {"greeting": "HELLO, ALICE"}
        assert list(execution.step_results) == ["greet", "maybe-shout"]
        assert execution.result == {"greeting": "HELLO, ALICE"}

    async def test_false_condition_passes_data_through(self, engine):
        workflow = create_workflow(
            "skipper",
            "Skipper",
            [
                and_then(lambda ctx: ctx.data + 1, id="inc"),
                and_when(lambda ctx: False, and_then(lambda ctx: 0, id="zero"), id="never"),
            ],
            engine=engine,
        )

        execution = await workflow.run(1)

        assert execution.data == 2
        assert "never" not in execution.step_results

    async def test_async_step_bodies(self, engine):
        async def fetch(ctx):
            await asyncio.sleep(0)
            return {"fetched": ctx.data}

        workflow = create_workflow("async", "Async", [and_then(fetch, id="fetch")], engine=engine)

        execution = await workflow.run("x")

        assert execution.data == {"fetched": "x"}

    async def test_get_step_data(self, engine):
        seen = {}

        def inspect_state(ctx):
            seen["a"] = ctx.get_step_data("a")
            seen["c"] = ctx.get_step_data("c")
            return ctx.data

        workflow = create_workflow(
            "state",
            "State",
            [
                and_then(lambda ctx: None, id="a"),
                and_then(inspect_state, id="b"),
                and_then(lambda ctx: "end", id="c"),
            ],
            engine=engine,
        )

        await workflow.run()

        assert seen["a"] is not None
        assert seen["a"].output is None
        assert seen["c"] is None

    async def test_tap_keeps_data(self, engine):
        observed = []
        workflow = create_workflow(
            "tap",
            "Tap",
            [
                and_then(lambda ctx: {"n": 1}, id="start"),
                and_tap(lambda ctx: observed.append(ctx.data) or "ignored", id="log"),
            ],
            engine=engine,
        )

        execution = await workflow.run()

        assert execution.data == {"n": 1}
        assert observed == [{"n": 1}]
        assert execution.step_results["log"] == {"n": 1}

    async def test_context_and_meta_visible_to_steps(self, engine):
        captured = {}

        def capture(ctx):
            captured["context"] = dict(ctx.context)
            captured["meta"] = ctx.meta
            return ctx.data

        workflow = create_workflow("ctx", "Context", [and_then(capture, id="capture")], engine=engine)

        execution = await workflow.run(
            None, RunOptions(user_id="u-1", conversation_id="c-1", context={"tenant": "acme"})
        )

        assert captured["context"] == {"tenant": "acme"}
        assert captured["meta"].execution_id == execution.execution_id
        assert captured["meta"].user_id == "u-1"
        assert captured["meta"].step_id == "capture"

    async def test_input_validation_rejects_before_execution(self, engine, store):
        workflow = create_workflow(
            "validated",
            "Validated",
            [and_then(greet, id="greet")],
            input_schema=Person,
            engine=engine,
        )

        with pytest.raises(ValidationError):
            await workflow.run({"nickname": "Al"})

        assert await store.list() == []

    async def test_result_validation_fails_execution(self, engine, store):
        workflow = create_workflow(
            "bad-result",
            "Bad result",
            [and_then(lambda ctx: {"other": 1}, id="produce")],
            result_schema=Greeting,
            engine=engine,
        )

        with pytest.raises(ValidationError):
            await workflow.run()

        [execution] = await store.list(workflow_id="bad-result")
        assert execution.status == WorkflowStatus.FAILED

    async def test_run_by_id(self, engine):
        create_workflow("by-id", "By id", [and_then(lambda ctx: 7, id="seven")], engine=engine)

        execution = await engine.run("by-id")

        assert execution.data == 7

    async def test_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            await engine.run("missing")

    async def test_execution_persisted_with_history(self, engine, store):
        workflow = create_workflow("persist", "Persist", [and_then(lambda ctx: 1, id="one")], engine=engine)

        execution = await workflow.run()
        stored = await store.get(execution.execution_id)

        assert stored.status == WorkflowStatus.COMPLETED
        assert stored.step_results == {"one": 1}
        assert [t.to_state for t in await store.get_history(execution.execution_id)] == [
            WorkflowStatus.COMPLETED
        ]


@pytest.mark.unit
@pytest.mark.asyncio
class TestFailures:
    """Errors, retries and timeouts."""

    async def test_step_error_fails_run(self, engine, store):
        def explode(ctx):
            raise RuntimeError("kaboom")

        workflow = create_workflow(
            "failing",
            "Failing",
            [and_then(lambda ctx: 1, id="ok"), and_then(explode, id="explode")],
            engine=engine,
        )

        with pytest.raises(StepExecutionError) as exc_info:
            await workflow.run()

        assert exc_info.value.step_id == "explode"
        assert isinstance(exc_info.value.cause, RuntimeError)
        [execution] = await store.list(workflow_id="failing")
        assert execution.status == WorkflowStatus.FAILED
        assert execution.failed_step_id == "explode"
        assert execution.step_results == {"ok": 1}

    async def test_all_failure_has_no_rollback(self, engine):
        side_effects = []

        def record(ctx):
            side_effects.append("s1")
            return "s1"

        def fail(ctx):
            raise ValueError("s2 failed")

        workflow = create_workflow(
            "fan-out",
            "Fan out",
            [and_all([and_then(record, id="s1"), and_then(fail, id="s2")], id="both")],
            engine=engine,
        )

        with pytest.raises(StepExecutionError) as exc_info:
            await workflow.run()

        assert exc_info.value.step_id == "s2"
        assert side_effects == ["s1"]

    async def test_retry_until_success(self, engine):
        attempts = []

        def flaky(ctx):
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("transient")
            return "ok"

        workflow = create_workflow(
            "retry",
            "Retry",
            [
                and_then(
                    flaky,
                    id="flaky",
                    retry_policy=RetryPolicy(max_attempts=3, initial_delay_seconds=0.0),
                )
            ],
            engine=engine,
        )

        execution = await workflow.run()

        assert execution.data == "ok"
        assert len(attempts) == 3

    async def test_retry_exhausted(self, engine):
        attempts = []

        def always_fails(ctx):
            attempts.append(1)
            raise ConnectionError("down")

        workflow = create_workflow(
            "retry-exhausted",
            "Retry exhausted",
            [
                and_then(
                    always_fails,
                    id="down",
                    retry_policy=RetryPolicy(max_attempts=2, initial_delay_seconds=0.0),
                )
            ],
            engine=engine,
        )

        with pytest.raises(StepExecutionError):
            await workflow.run()

        assert len(attempts) == 2

    async def test_no_retry_without_policy(self, engine):
        attempts = []

        def fails_once(ctx):
            attempts.append(1)
            raise ConnectionError("down")

        workflow = create_workflow("no-retry", "No retry", [and_then(fails_once, id="once")], engine=engine)

        with pytest.raises(StepExecutionError):
            await workflow.run()

        assert len(attempts) == 1

    async def test_step_timeout(self, engine):
        async def slow(ctx):
            await asyncio.sleep(1)
            return "late"

        workflow = create_workflow(
            "timeout",
            "Timeout",
            [and_then(slow, id="slow", timeout_seconds=0.05)],
            engine=engine,
        )

        with pytest.raises(StepTimeoutError) as exc_info:
            await workflow.run()

        assert exc_info.value.step_id == "slow"

    async def test_zero_timeout_is_enforced(self, engine):
        async def slow(ctx):
            await asyncio.sleep(0.05)
            return "late"

        workflow = create_workflow(
            "zero-timeout",
            "Zero timeout",
            [and_then(slow, id="slow", timeout_seconds=0)],
            engine=engine,
        )

        with pytest.raises(StepTimeoutError):
            await workflow.run()


@pytest.mark.unit
@pytest.mark.asyncio
class TestUsage:
    """Token usage accumulation from agent steps."""

    async def test_usage_totals(self, engine, make_agent):
        first = make_agent({"summary": "s"}, prompt_tokens=10, completion_tokens=5)
        second = make_agent({"title": "t"}, prompt_tokens=20, completion_tokens=8)

        workflow = create_workflow(
            "agents",
            "Agents",
            [
                and_agent("Summarize", first, id="summarize"),
                and_agent(lambda ctx: f"Title for {ctx.data['summary']}", second, id="title"),
            ],
            engine=engine,
        )

        execution = await workflow.run(None, RunOptions(user_id="u-1"))

        assert execution.usage.total_tokens == 43
        assert execution.usage.prompt_tokens == 30
        assert execution.usage.completion_tokens == 13
        assert execution.data == {"title": "t"}
        assert second.calls[0]["prompt"] == "Title for s"
        assert first.calls[0]["options"]["user_id"] == "u-1"
        assert first.calls[0]["options"]["step_id"] == "summarize"

    async def test_zero_usage_without_agents(self, engine):
        workflow = create_workflow("plain", "Plain", [and_then(lambda ctx: 1, id="one")], engine=engine)

        execution = await workflow.run()

        assert execution.usage == Usage(prompt_tokens=0, completion_tokens=0, total_tokens=0)

    async def test_agent_events_piped_when_streaming(self, engine):
        class StreamingAgent:
            name = "streaming"

            async def generate_object(self, prompt, schema, **options):
                raise AssertionError("stream_object should be used")

            def stream_object(self, prompt, schema, **options):
                async def events():
                    yield {"type": "text-delta", "payload": "Hel"}
                    yield {"type": "text-delta", "payload": "lo"}

                async def result():
                    return AgentResult(object="Hello", usage=Usage(total_tokens=4))

                return AgentStream(events=events(), result=result())

        workflow = create_workflow(
            "streamed-agent",
            "Streamed agent",
            [and_agent("Say hello", StreamingAgent(), id="say")],
            engine=engine,
        )

        stream = workflow.stream(None, RunOptions(stream_agent_events=True))
        events = [event async for event in stream]
        execution = await stream.result

        deltas = [e for e in events if e.type == "text-delta"]
        assert [e.payload for e in deltas] == ["Hel", "lo"]
        assert all(e.from_ == "say" for e in deltas)
        assert execution.data == "Hello"
        assert execution.usage.total_tokens == 4


@pytest.mark.unit
@pytest.mark.asyncio
class TestStreaming:
    """Event sequences observed by stream consumers."""

    async def test_event_sequence(self, engine):
        workflow = create_workflow(
            "two-steps",
            "Two steps",
            [and_then(lambda ctx: 1, id="A"), and_then(lambda ctx: 2, id="B")],
            engine=engine,
        )

        stream = workflow.stream()
        events = [event async for event in stream]
        await stream.result

        assert [(e.type, e.from_) for e in events] == [
            ("workflow-start", "workflow"),
            ("step-start", "A"),
            ("step-complete", "A"),
            ("step-start", "B"),
            ("step-complete", "B"),
            ("workflow-complete", "workflow"),
        ]

    async def test_custom_events_from_steps(self, engine):
        def progress(ctx):
            ctx.writer.write("progress", {"percent": 50})
            return ctx.data

        workflow = create_workflow("custom", "Custom", [and_then(progress, id="work")], engine=engine)

        stream = workflow.stream()
        events = [event async for event in stream]

        custom = [e for e in events if e.type == "progress"]
        assert custom[0].from_ == "work"
        assert custom[0].payload == {"percent": 50}

    async def test_stream_spans_suspend_and_resume(self, engine):
        workflow = approval_workflow(engine)

        stream = workflow.stream({"request": "deploy"})
        suspended = await stream.result
        assert suspended.status == WorkflowStatus.SUSPENDED

        completed = await stream.resume({"approved": True})
        events = [event.type async for event in stream]

        assert completed.status == WorkflowStatus.COMPLETED
        assert events.index("workflow-suspended") < events.index("workflow-resumed")
        assert events[-1] == "workflow-complete"

    async def test_failure_event(self, engine):
        def explode(ctx):
            raise RuntimeError("kaboom")

        workflow = create_workflow("boom", "Boom", [and_then(explode, id="explode")], engine=engine)

        stream = workflow.stream()
        events = [event async for event in stream]
        with pytest.raises(StepExecutionError):
            await stream.result

        assert events[-1].type == "workflow-error"
        assert events[-1].payload["step_id"] == "explode"

    async def test_failed_stream_without_awaiting_result(self, engine):
        def explode(ctx):
            raise RuntimeError("kaboom")

        workflow = create_workflow("quiet", "Quiet", [and_then(explode, id="explode")], engine=engine)
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda loop, context: reported.append(context["message"]))
        try:
            stream = workflow.stream()
            events = [event.type async for event in stream]
            await asyncio.sleep(0.01)
            del stream
            gc.collect()
        finally:
            loop.set_exception_handler(None)

        assert events[-1] == "workflow-error"
        assert not [message for message in reported if "never retrieved" in message]


@pytest.mark.unit
@pytest.mark.asyncio
class TestSuspendResume:
    """Suspension, typed resume data and re-entry."""

    async def test_round_trip(self, engine, store):
        workflow = approval_workflow(engine)

        execution = await workflow.run({"request": "deploy"})

        assert execution.status == WorkflowStatus.SUSPENDED
        assert execution.suspension.step_id == "approve"
        assert execution.suspension.reason == "needs approval"
        assert "approved" in execution.suspension.resume_schema["properties"]
        assert "approve" not in execution.step_results
        assert (await store.get(execution.execution_id)).status == WorkflowStatus.SUSPENDED

        resumed = await execution.resume({"approved": True})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.data == {"request": "deploy", "approved": True, "done": True}
        assert resumed.suspension is None

    async def test_resume_validation_keeps_suspension(self, engine, store):
        workflow = approval_workflow(engine)
        execution = await workflow.run({"request": "deploy"})

        with pytest.raises(ResumeValidationError):
            await engine.resume(execution.execution_id, {"approved": "maybe"})

        stored = await store.get(execution.execution_id)
        assert stored.status == WorkflowStatus.SUSPENDED
        assert stored.suspension.step_id == "approve"

    async def test_resume_non_suspended(self, engine):
        workflow = create_workflow("done", "Done", [and_then(lambda ctx: 1, id="one")], engine=engine)
        execution = await workflow.run()

        with pytest.raises(InvalidStateError):
            await engine.resume(execution.execution_id, None)

    async def test_suspend_at_step_boundary(self, engine):
        controller = SuspendController()
        reached = []

        def pause_after(ctx):
            controller.suspend("operator pause")
            return "a"

        def second(ctx):
            reached.append(ctx.resume_data)
            return "b"

        workflow = create_workflow(
            "boundary",
            "Boundary",
            [and_then(pause_after, id="a"), and_then(second, id="b")],
            engine=engine,
        )

        execution = await workflow.run(None, RunOptions(suspend_controller=controller))

        assert execution.status == WorkflowStatus.SUSPENDED
        assert execution.suspension.step_id == "b"
        assert execution.step_results == {"a": "a"}
        assert reached == []

        resumed = await engine.resume(
            execution.execution_id, None, RunOptions(suspend_controller=controller)
        )

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.data == "b"
        assert reached == [None]

    async def test_sub_workflow_suspend_and_resume(self, engine, make_agent):
        agent = make_agent({"reply": "draft"}, prompt_tokens=10, completion_tokens=5)
        child = WorkflowDefinition(
            id="review",
            name="Review",
            steps=(
                and_agent("Draft a reply", agent, id="draft"),
                and_then(approve, id="sign-off", resume_schema=Approval),
            ),
        )
        workflow = create_workflow(
            "outer",
            "Outer",
            [
                and_then(lambda ctx: {"request": ctx.data}, id="prepare"),
                and_workflow(child, id="review-step"),
                and_then(lambda ctx: {**ctx.data, "closed": True}, id="close"),
            ],
            engine=engine,
        )

        execution = await workflow.run("refund")

        assert execution.status == WorkflowStatus.SUSPENDED
        assert execution.suspension.step_id == "review-step"
        assert execution.suspension.child is not None
        assert execution.suspension.child.suspension.origin_step_id == "sign-off"
        assert "approved" in execution.suspension.resume_schema["properties"]

        with pytest.raises(ResumeValidationError):
            await execution.resume({"approved": "perhaps"})

        resumed = await execution.resume({"approved": False})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.data == {"reply": "draft", "approved": False, "closed": True}
        assert resumed.usage.total_tokens == 15
        assert len(agent.calls) == 1

    async def test_sub_workflow_inside_when_resumes_child(self, engine):
        starts = []

        def mark(ctx):
            starts.append(ctx.data)
            return {**ctx.data, "marked": True}

        child = WorkflowDefinition(
            id="review",
            name="Review",
            steps=(
                and_then(mark, id="mark"),
                and_then(approve, id="sign-off", resume_schema=Approval),
            ),
        )
        workflow = create_workflow(
            "gated",
            "Gated",
            [and_when(lambda ctx: True, and_workflow(child, id="review-step"), id="gate")],
            engine=engine,
        )

        execution = await workflow.run({"ticket": 1})

        assert execution.status == WorkflowStatus.SUSPENDED
        assert execution.suspension.step_id == "gate"
        assert execution.suspension.origin_step_id == "review-step"

        with pytest.raises(ResumeValidationError):
            await execution.resume({"approved": "perhaps"})

        resumed = await execution.resume({"approved": True})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.data == {"ticket": 1, "marked": True, "approved": True}
        assert starts == [{"ticket": 1}]

    async def test_suspension_inside_all_resumes(self, engine):
        def sign(ctx):
            if ctx.resume_data is None:
                return ctx.suspend("needs signature")
            return ctx.resume_data

        workflow = create_workflow(
            "fan-in",
            "Fan in",
            [
                and_all(
                    [
                        and_then(lambda ctx: "left", id="left"),
                        and_then(sign, id="right", resume_schema=Approval),
                    ],
                    id="fan",
                )
            ],
            engine=engine,
        )

        execution = await workflow.run()

        assert execution.status == WorkflowStatus.SUSPENDED
        assert execution.suspension.step_id == "fan"
        assert execution.suspension.origin_step_id == "right"

        with pytest.raises(ResumeValidationError):
            await execution.resume({"approved": "perhaps"})

        resumed = await execution.resume({"approved": True})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.data == ["left", {"approved": True}]

    async def test_suspension_inside_loop_resumes(self, engine):
        def ask(ctx):
            if ctx.resume_data is None:
                return ctx.suspend("ask operator")
            return ctx.data + ctx.resume_data["approved"]

        workflow = create_workflow(
            "looped",
            "Looped",
            [
                and_then(lambda ctx: 0, id="start"),
                and_do_until(
                    and_then(ask, id="ask", resume_schema=Approval),
                    lambda ctx: ctx.data >= 3,
                    id="loop",
                ),
            ],
            engine=engine,
        )

        execution = await workflow.run()

        assert execution.status == WorkflowStatus.SUSPENDED
        assert execution.suspension.step_id == "loop"

        resumed = await execution.resume({"approved": True})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.data == 3
        assert resumed.step_results["start"] == 0


@pytest.mark.unit
@pytest.mark.asyncio
class TestCancellation:
    """Cooperative cancellation."""

    async def test_cancel_before_start(self, engine):
        controller = SuspendController()
        controller.cancel("stop")
        workflow = create_workflow(
            "cancel-early",
            "Cancel early",
            [and_then(lambda ctx: 1, id="A"), and_then(lambda ctx: 2, id="B")],
            engine=engine,
        )

        stream = workflow.stream(None, RunOptions(suspend_controller=controller))
        events = [event async for event in stream]
        execution = await stream.result

        assert execution.status == WorkflowStatus.CANCELLED
        assert execution.cancel_reason == "stop"
        assert not [e for e in events if e.type == "step-complete"]
        assert events[-1].type == "workflow-cancelled"

    async def test_cancel_running_execution(self, engine):
        gate = asyncio.Event()
        started = asyncio.Event()

        async def wait_for_gate(ctx):
            started.set()
            await gate.wait()
            return "a"

        workflow = create_workflow(
            "cancel-running",
            "Cancel running",
            [and_then(wait_for_gate, id="A"), and_then(lambda ctx: "b", id="B")],
            engine=engine,
        )

        stream = workflow.stream()
        await started.wait()
        assert await engine.cancel(stream.execution_id, "operator") is True
        gate.set()
        execution = await stream.result

        assert execution.status == WorkflowStatus.CANCELLED
        assert execution.cancel_reason == "operator"
        assert "B" not in execution.step_results

    async def test_cancel_suspended_execution(self, engine, store):
        workflow = approval_workflow(engine)
        execution = await workflow.run({"request": "deploy"})

        assert await engine.cancel(execution.execution_id, "rejected") is True

        stored = await store.get(execution.execution_id)
        assert stored.status == WorkflowStatus.CANCELLED
        with pytest.raises(InvalidStateError):
            await engine.resume(execution.execution_id, {"approved": True})

    async def test_cancel_finished_execution(self, engine):
        workflow = create_workflow("finished", "Finished", [and_then(lambda ctx: 1, id="one")], engine=engine)
        execution = await workflow.run()

        assert await engine.cancel(execution.execution_id) is False


@pytest.mark.unit
@pytest.mark.asyncio
class TestHooks:
    """Lifecycle hooks."""

    async def test_hook_order(self, engine):
        calls = []

        def hook(name):
            async def record(execution):
                calls.append(name)

            return record

        workflow = create_workflow(
            "hooked",
            "Hooked",
            [and_then(lambda ctx: 1, id="A"), and_then(lambda ctx: 2, id="B")],
            hooks=WorkflowHooks(
                on_start=hook("start"),
                on_step_start=hook("step-start"),
                on_step_end=hook("step-end"),
                on_end=hook("end"),
            ),
            engine=engine,
        )

        await workflow.run()

        assert calls == ["start", "step-start", "step-end", "step-start", "step-end", "end"]

    async def test_failing_hook_does_not_change_outcome(self, engine):
        async def broken(execution):
            raise RuntimeError("hook failed")

        workflow = create_workflow(
            "broken-hook",
            "Broken hook",
            [and_then(lambda ctx: "ok", id="A")],
            hooks=WorkflowHooks(on_start=broken, on_end=broken),
            engine=engine,
        )

        execution = await workflow.run()

        assert execution.status == WorkflowStatus.COMPLETED

    async def test_suspend_and_error_hooks(self, engine):
        calls = []

        async def on_suspend(execution):
            calls.append(("suspend", execution.status))

        async def on_error(execution):
            calls.append(("error", execution.failed_step_id))

        def explode(ctx):
            raise RuntimeError("after resume")

        workflow = create_workflow(
            "hooks-2",
            "Hooks 2",
            [and_then(approve, id="approve"), and_then(explode, id="explode")],
            hooks=WorkflowHooks(on_suspend=on_suspend, on_error=on_error),
            engine=engine,
        )

        execution = await workflow.run({})
        with pytest.raises(StepExecutionError):
            await execution.resume({"approved": True})

        assert calls == [("suspend", WorkflowStatus.SUSPENDED), ("error", "explode")]
