import pytest

from chunk_merger_engine import MergedOutput, ParseError, ProgressTracker, RunPhase


def _walk_to_merging(tracker, total):
    tracker.transition(RunPhase.COLLECTING)
    tracker.transition(RunPhase.SEQUENCING)
    tracker.transition(RunPhase.PLANNING)
    tracker.transition(RunPhase.MERGING, total=total)


def test_chunk_completion_reports_percentage():
    snapshots = []
    tracker = ProgressTracker(listener=snapshots.append)
    _walk_to_merging(tracker, total=4)

    for number in range(1, 5):
        tracker.chunk_completed(number, 4, output=MergedOutput(number, f"p{number}.pdf", b"x" * number))

    merging = [s for s in snapshots if s.phase is RunPhase.MERGING and s.current]
    assert [(s.current, s.total) for s in merging] == [(1, 4), (2, 4), (3, 4), (4, 4)]
    assert [s.percent for s in merging] == [25.0, 50.0, 75.0, 100.0]
    assert tracker.state.total_bytes == 1 + 2 + 3 + 4


def test_done_carries_outputs_and_total_size():
    tracker = ProgressTracker()
    _walk_to_merging(tracker, total=1)
    tracker.chunk_completed(1, 1, output=MergedOutput(1, "p1.pdf", b"abc"))
    tracker.transition(RunPhase.ARCHIVING)

    tracker.complete(b"zip-bytes")

    state = tracker.state
    assert state.phase is RunPhase.DONE
    assert state.archive_bytes == b"zip-bytes"
    assert state.summary() == ([("p1.pdf", 3)], 3)


def test_failure_keeps_outputs_already_produced():
    tracker = ProgressTracker()
    _walk_to_merging(tracker, total=2)
    tracker.chunk_completed(1, 2, output=MergedOutput(1, "p1.pdf", b"abc"))
    error = ParseError("bad.pdf", 2, "broken xref")

    tracker.fail(error)

    state = tracker.state
    assert state.phase is RunPhase.FAILED
    assert state.error is error
    assert "bad.pdf" in state.message
    assert [output.name for output in state.outputs] == ["p1.pdf"]
    assert state.archive_bytes is None


def test_illegal_transition_is_rejected():
    tracker = ProgressTracker()

    with pytest.raises(RuntimeError, match="idle -> archiving"):
        tracker.transition(RunPhase.ARCHIVING)
    assert tracker.state.phase is RunPhase.IDLE


def test_finished_run_needs_reset_before_reuse():
    tracker = ProgressTracker()
    tracker.fail(RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        tracker.transition(RunPhase.COLLECTING)

    tracker.reset()
    tracker.transition(RunPhase.COLLECTING)
    assert tracker.state.phase is RunPhase.COLLECTING


def test_chunk_completion_outside_merging_is_rejected():
    with pytest.raises(RuntimeError):
        ProgressTracker().chunk_completed(1, 1)


def test_listener_errors_do_not_break_the_run():
    def _explode(_state):
        raise ValueError("listener bug")

    tracker = ProgressTracker(listener=_explode)
    _walk_to_merging(tracker, total=1)

    assert tracker.state.phase is RunPhase.MERGING


def test_state_is_a_snapshot():
    tracker = ProgressTracker()
    _walk_to_merging(tracker, total=1)
    snapshot = tracker.state

    tracker.chunk_completed(1, 1, output=MergedOutput(1, "p1.pdf", b"abc"))

    assert snapshot.outputs == []
    assert snapshot.current == 0
