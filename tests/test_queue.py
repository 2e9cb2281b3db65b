import pytest

from conductor import queue
from conductor.errors import InvalidTransition, LockContention
from conductor.models import Status, WorkItem
from conductor.queue import QueueState


def _state(*items: WorkItem) -> QueueState:
    state = QueueState()
    for item in items:
        state = queue.add_item(state, item).state
    return state


def test_add_item_assigns_insertion_order_and_is_idempotent() -> None:
    state = _state(WorkItem(id="a", title="A"), WorkItem(id="b", title="B"))
    again = queue.add_item(state, WorkItem(id="a", title="other"))

    assert state.items["a"].sequence == 1
    assert state.items["b"].sequence == 2
    assert again.intents == []
    assert again.state.items["a"].title == "A"


def test_dispatch_takes_lock_and_emits_spawn() -> None:
    state = _state(WorkItem(id="a", title="A"))

    transition = queue.dispatch(state, "a", 2, run_id="run-1")

    item = transition.state.items["a"]
    assert item.status is Status.IN_PROGRESS
    assert item.attempt == 1
    assert transition.state.locks["a"].slot_index == 2
    assert transition.state.locks["a"].run_id == "run-1"
    assert [intent.kind for intent in transition.intents] == ["spawn", "tracker_status"]
    assert transition.intents[0].payload["fresh"] is False
    # The input state is left untouched.
    assert state.items["a"].status is Status.READY
    assert state.locks == {}


def test_dispatch_refuses_open_dependencies() -> None:
    state = _state(WorkItem(id="a", title="A"), WorkItem(id="b", title="B", dependencies={"a"}))

    with pytest.raises(InvalidTransition, match="dependencies not completed"):
        queue.dispatch(state, "b", 0)


def test_dispatch_refuses_unknown_dependency() -> None:
    state = _state(WorkItem(id="b", title="B", dependencies={"ghost"}))

    with pytest.raises(InvalidTransition):
        queue.dispatch(state, "b", 0)


def test_dispatch_refuses_double_lock_and_busy_slot() -> None:
    state = _state(WorkItem(id="a", title="A"), WorkItem(id="b", title="B"))
    state = queue.dispatch(state, "a", 0).state
    state.items["a"].status = Status.READY

    with pytest.raises(LockContention):
        queue.dispatch(state, "a", 1)
    with pytest.raises(InvalidTransition, match="slot 0 is busy"):
        queue.dispatch(state, "b", 0)


def test_dispatch_refuses_cycle_members() -> None:
    state = _state(
        WorkItem(id="a", title="A", dependencies={"b"}),
        WorkItem(id="b", title="B", dependencies={"a"}),
        WorkItem(id="c", title="C"),
    )

    assert queue.find_cycles(state) == [["a", "b"]]
    with pytest.raises(InvalidTransition):
        queue.dispatch(state, "a", 0)
    assert queue.dispatch(state, "c", 0).state.items["c"].status is Status.IN_PROGRESS


def test_dispatch_consumes_fresh_start_flag() -> None:
    state = _state(WorkItem(id="a", title="A", context={"fresh_start": True}))

    transition = queue.dispatch(state, "a", 0)

    assert transition.intents[0].payload["fresh"] is True
    assert "fresh_start" not in transition.state.items["a"].context


def test_complete_releases_lock_and_unblocks_waiters() -> None:
    state = _state(WorkItem(id="a", title="A"), WorkItem(id="b", title="B"))
    state = queue.dispatch(state, "a", 0).state
    state = queue.dispatch(state, "b", 1).state
    state = queue.block(state, "b", blocked_by="a", reason="serialized behind a").state

    transition = queue.complete(state, "a", commit_ref="deadbeef")

    assert transition.state.items["a"].status is Status.COMPLETED
    assert transition.state.items["a"].commit_ref == "deadbeef"
    assert transition.state.items["b"].status is Status.READY
    assert transition.state.locks == {}
    kinds = [intent.kind for intent in transition.intents]
    assert kinds[0] == "tracker_close"
    assert "unblocked" in kinds


def test_requeue_sets_backoff_and_context() -> None:
    state = queue.dispatch(_state(WorkItem(id="a", title="A")), "a", 0).state

    transition = queue.requeue(
        state,
        "a",
        reason="tests failed",
        context_updates={"note": "x"},
        delay_seconds=60,
    )

    item = transition.state.items["a"]
    assert item.status is Status.READY
    assert item.last_failure == "tests failed"
    assert item.context["note"] == "x"
    assert item.not_before is not None
    assert queue.dispatchable(transition.state) == []
    assert [entry.id for entry in queue.waiting_on_backoff(transition.state)] == ["a"]


def test_block_on_completed_blocker_stays_ready() -> None:
    state = _state(WorkItem(id="a", title="A"), WorkItem(id="b", title="B"))
    state = queue.dispatch(state, "a", 0).state
    state = queue.complete(state, "a").state
    state = queue.dispatch(state, "b", 0).state

    transition = queue.block(state, "b", blocked_by="a", reason="serialized")

    assert transition.state.items["b"].status is Status.READY


def test_terminal_states_reject_every_edge() -> None:
    state = queue.dispatch(_state(WorkItem(id="a", title="A")), "a", 0).state
    state = queue.fail(state, "a", reason="gave up", source="retry_exhausted").state

    for attempt in (
        lambda: queue.dispatch(state, "a", 0),
        lambda: queue.requeue(state, "a", reason="again"),
        lambda: queue.complete(state, "a"),
        lambda: queue.block(state, "a", blocked_by=None, reason="x"),
    ):
        with pytest.raises(InvalidTransition):
            attempt()


def test_fail_emits_escalation_intent() -> None:
    state = queue.dispatch(_state(WorkItem(id="a", title="A")), "a", 0).state

    transition = queue.fail(
        state, "a", reason="conflict", source="conflict", diff="d", conflict_attempt=3
    )

    item = transition.state.items["a"]
    assert item.status is Status.FAILED
    assert item.conflict_attempt == 3
    escalate = transition.intents[0]
    assert escalate.kind == "escalate"
    assert escalate.payload == {"reason": "conflict", "source": "conflict", "diff": "d"}


def test_requeue_refused_after_conflict_escalation() -> None:
    state = queue.dispatch(_state(WorkItem(id="a", title="A")), "a", 0).state
    state.items["a"].conflict_attempt = 3

    with pytest.raises(InvalidTransition):
        queue.requeue(state, "a", reason="retry")


def test_apply_cycle_blocks_blocks_and_releases() -> None:
    state = _state(
        WorkItem(id="a", title="A", dependencies={"b"}),
        WorkItem(id="b", title="B", dependencies={"a"}),
    )

    blocked = queue.apply_cycle_blocks(state, queue.find_cycles(state))
    assert {item.status for item in blocked.state.items.values()} == {Status.BLOCKED}
    assert [intent.kind for intent in blocked.intents].count("cycle_blocked") == 2

    released = queue.apply_cycle_blocks(blocked.state, [])
    assert {item.status for item in released.state.items.values()} == {Status.READY}


def test_annotate_rejects_partition_changes() -> None:
    state = _state(WorkItem(id="a", title="A"))

    flagged = queue.annotate(state, "a", regression_flag={"introduced_by": "b"})
    assert flagged.state.items["a"].regression_flags == [{"introduced_by": "b"}]

    with pytest.raises(InvalidTransition):
        queue.annotate(state, "a", status="completed")


def test_check_invariants_reports_violations() -> None:
    state = queue.dispatch(_state(WorkItem(id="a", title="A")), "a", 0).state
    assert queue.check_invariants(state) == []

    state.locks.clear()
    assert queue.check_invariants(state) == ["a is in_progress without a lock"]


def test_state_roundtrip_preserves_sequence() -> None:
    state = _state(WorkItem(id="a", title="A"), WorkItem(id="b", title="B"))
    state = queue.dispatch(state, "a", 0).state

    restored = QueueState.from_dict(state.to_dict())

    assert restored.next_sequence == 3
    assert restored.locks["a"].slot_index == 0
    assert restored.items["b"].sequence == 2
