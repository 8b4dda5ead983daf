"""Wire documents exchanged with the CloudVision tag and change-control services."""

from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..errors import SerializationError


class WireModel(BaseModel):
    """Base for documents serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        try:
            return self.model_dump(by_alias=True, mode="json")
        except Exception as e:
            raise SerializationError(f"Failed to encode {type(self).__name__}: {e}") from e

    @classmethod
    def from_wire(cls, data: Any) -> Any:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise SerializationError(f"Failed to decode {cls.__name__}: {e}") from e


class ElementType(str, Enum):
    """Tag element types."""

    UNSPECIFIED = "ELEMENT_TYPE_UNSPECIFIED"
    DEVICE = "ELEMENT_TYPE_DEVICE"
    INTERFACE = "ELEMENT_TYPE_INTERFACE"


class TagKey(WireModel):
    workspace_id: str = ""
    element_type: ElementType | None = None
    label: str | None = None
    value: str | None = None


class TagFilter(WireModel):
    key: TagKey


class PartialEqFilter(WireModel):
    """Equality filter; unset key fields match anything."""

    partial_eq_filter: list[TagFilter] = Field(default_factory=list)

    @classmethod
    def for_tag(
        cls,
        label: str | None,
        value: str | None,
        workspace_id: str = "",
        element_type: ElementType | None = ElementType.INTERFACE,
    ) -> "PartialEqFilter":
        key = TagKey(workspace_id=workspace_id, element_type=element_type, label=label, value=value)
        return cls(partial_eq_filter=[TagFilter(key=key)])

    def to_wire(self) -> dict[str, Any]:
        # None fields are left out so they do not constrain the match
        try:
            return self.model_dump(by_alias=True, mode="json", exclude_none=True)
        except Exception as e:
            raise SerializationError(f"Failed to encode filter: {e}") from e


class InterfaceTagKey(WireModel):
    workspace_id: str = ""
    element_type: str = ""
    label: str
    value: str
    device_id: str
    interface_id: str


class InterfaceTagAssignment(WireModel):
    key: InterfaceTagKey


class ChangeAction(WireModel):
    name: str
    args: dict[str, str] = Field(default_factory=dict)


class ChangeStage(WireModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    action: ChangeAction


class ChangeWorkflow(WireModel):
    """
    A change control: one id, one name, ordered stages.

    The id is the only correlation key for the Update, AddApproval and
    Start calls of one invocation and is never changed after creation.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    root_stage_id: str = Field(default_factory=lambda: str(uuid4()))
    stages: tuple[ChangeStage, ...] = ()

    def to_document(self) -> dict[str, Any]:
        """Render the Update request body: one root stage, one row holding every stage."""
        stages = [stage.to_wire() for stage in self.stages]
        return {
            "change": {
                "config": {
                    "id": self.id,
                    "name": self.name,
                    "rootStage": {
                        "id": self.root_stage_id,
                        "name": f"{self.name} root",
                        "stageRow": [{"stage": stages}],
                    },
                }
            }
        }


class Approval(WireModel):
    cc_id: str
    cc_timestamp: str


class StartChange(WireModel):
    cc_id: str
