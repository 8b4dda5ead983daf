"""Shared fakes for portbot tests."""

from typing import Any

import pytest

from portbot.cvp.models import Approval, PartialEqFilter, StartChange
from portbot.utils.config import Settings


class FakeControlPlane:
    """Stands in for ControlPlaneClient; records every call in order."""

    def __init__(self, tag_records: list[dict[str, Any]] | None = None) -> None:
        self.tag_records = tag_records or []
        self.calls: list[tuple[str, Any]] = []
        self.failures: dict[str, Exception] = {}
        self.token: str | None = "test-token"

    async def query_tag_assignments(self, tag_filter: PartialEqFilter) -> list[dict[str, Any]]:
        self.calls.append(("query", tag_filter.to_wire()))
        if "query" in self.failures:
            raise self.failures["query"]
        return list(self.tag_records)

    async def update_change_control(self, document: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(("update", document))
        if "update" in self.failures:
            raise self.failures["update"]
        return []

    async def approve_change_control(self, approval: Approval) -> list[dict[str, Any]]:
        self.calls.append(("approve", approval.to_wire()))
        if "approve" in self.failures:
            raise self.failures["approve"]
        return []

    async def start_change_control(self, start: StartChange) -> list[dict[str, Any]]:
        self.calls.append(("start", start.to_wire()))
        if "start" in self.failures:
            raise self.failures["start"]
        return []

    def load_token_file(self, filename: Any) -> None:
        self.calls.append(("token_file", str(filename)))
        self.token = "file-token"

    async def authenticate(self, username: str, password: str) -> str:
        self.calls.append(("authenticate", username))
        self.token = "session-token"
        return self.token

    async def close(self) -> None:
        self.calls.append(("close", None))

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeAudit:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def change_transition(self, workflow_id: str, from_state: str, to_state: str, **kwargs: Any) -> None:
        self.events.append(("transition", (workflow_id, from_state, to_state)))

    def change_failed(self, workflow_id: str, step: str, error: str, orphaned: bool, **kwargs: Any) -> None:
        self.events.append(("failed", (workflow_id, step, orphaned)))


def make_tag_record(value: str, device_id: str, interface_id: str, label: str = "walljack") -> dict[str, Any]:
    return {
        "key": {
            "workspaceId": "",
            "elementType": "ELEMENT_TYPE_INTERFACE",
            "label": label,
            "value": value,
            "deviceId": device_id,
            "interfaceId": interface_id,
        }
    }


@pytest.fixture
def tag_record():
    return make_tag_record


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def audit() -> FakeAudit:
    return FakeAudit()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        cvp={"host": "cvp.example.com", "tag_label": "walljack"},
        router={"max_workers": 2, "max_queue_size": 10},
        session={"reconnect_delay": 0, "max_reconnect_attempts": 3},
        slack_app_token="xapp-test",
        cvp_token="test-token",
    )
