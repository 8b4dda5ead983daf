"""Tests for the change-control orchestrator."""

import asyncio

import pytest

from portbot.core.change_control import ChangeControlOrchestrator, ChangeRecord, ChangeState, utc_timestamp
from portbot.errors import AuthError, UpstreamError

ARGS = {"DeviceID": "JPE1999", "interface": "Ethernet1"}


def test_build_allocates_fresh_ids_each_time(control_plane):
    orchestrator = ChangeControlOrchestrator(control_plane)
    first = orchestrator.build("shutdownInterface", "portbot", ARGS)
    second = orchestrator.build("shutdownInterface", "portbot", ARGS)

    assert first.workflow_id != second.workflow_id
    assert first.workflow.stages[0].id != second.workflow.stages[0].id
    assert first.state is ChangeState.BUILT
    assert control_plane.calls == []


def test_workflow_document_shape(control_plane):
    record = ChangeControlOrchestrator(control_plane).build("shutdownInterface", "portbot", ARGS)
    config = record.workflow.to_document()["change"]["config"]

    assert config["id"] == record.workflow_id
    rows = config["rootStage"]["stageRow"]
    assert len(rows) == 1 and len(rows[0]["stage"]) == 1
    stage = rows[0]["stage"][0]
    assert stage["name"] == "portbot"
    assert stage["action"] == {"name": "shutdownInterface", "args": ARGS}


def test_run_uses_one_id_for_all_three_calls_in_order(control_plane, audit):
    orchestrator = ChangeControlOrchestrator(control_plane, audit_logger=audit)
    record = asyncio.run(orchestrator.run("shutdownInterface", "portbot", ARGS, timestamp="2024-05-01T10:00:00Z"))

    assert record.succeeded
    assert record.state is ChangeState.EXECUTING
    assert control_plane.call_names() == ["update", "approve", "start"]

    update, approve, start = (body for _, body in control_plane.calls)
    assert update["change"]["config"]["id"] == record.workflow_id
    assert approve == {"ccId": record.workflow_id, "ccTimestamp": "2024-05-01T10:00:00Z"}
    assert start == {"ccId": record.workflow_id}
    assert [e[1][2] for e in audit.events] == ["submitted", "approved", "executing"]


def test_submit_failure_stops_pipeline(control_plane, audit):
    control_plane.failures["update"] = UpstreamError("HTTP 500", status=500)
    record = asyncio.run(ChangeControlOrchestrator(control_plane, audit_logger=audit).run("shutdownInterface", "portbot", ARGS))

    assert control_plane.call_names() == ["update"]
    assert record.state is ChangeState.BUILT
    assert record.failed_step == "submit"
    assert not record.succeeded
    assert not record.orphaned
    assert audit.events == [("failed", (record.workflow_id, "submit", False))]


def test_approve_failure_leaves_orphaned_submission(control_plane):
    control_plane.failures["approve"] = UpstreamError("timed out", retryable=True)
    record = asyncio.run(ChangeControlOrchestrator(control_plane).run("shutdownInterface", "portbot", ARGS))

    assert control_plane.call_names() == ["update", "approve"]
    assert record.state is ChangeState.SUBMITTED
    assert record.failed_step == "approve"
    assert record.orphaned


def test_execute_failure_keeps_approved_state(control_plane):
    control_plane.failures["start"] = AuthError("token expired")
    record = asyncio.run(ChangeControlOrchestrator(control_plane).run("noShutdownInterface", "portbot", ARGS))

    assert record.state is ChangeState.APPROVED
    assert record.failed_step == "execute"
    assert "token expired" in record.error
    assert record.orphaned


def test_transitions_only_move_forward(control_plane):
    record = ChangeControlOrchestrator(control_plane).build("a", "s", {})
    with pytest.raises(ValueError):
        record.advance(ChangeState.APPROVED)

    record.advance(ChangeState.SUBMITTED)
    with pytest.raises(ValueError):
        record.advance(ChangeState.BUILT)
    assert record.history == [ChangeState.BUILT, ChangeState.SUBMITTED]


def test_complete_records_device_outcome(control_plane):
    orchestrator = ChangeControlOrchestrator(control_plane)
    record = asyncio.run(orchestrator.run("shutdownInterface", "portbot", ARGS))

    orchestrator.complete(record, succeeded=True)
    assert record.state is ChangeState.DONE
    with pytest.raises(ValueError):
        orchestrator.complete(record, succeeded=False)


def test_workflow_is_immutable(control_plane):
    record: ChangeRecord = ChangeControlOrchestrator(control_plane).build("a", "s", {})
    with pytest.raises(Exception):
        record.workflow.id = "other"


def test_utc_timestamp_format():
    stamp = utc_timestamp()
    assert stamp.endswith("Z")
    assert "T" in stamp
