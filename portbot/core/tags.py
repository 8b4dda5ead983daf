"""Resolve wall-jack tags to the switch interface they are assigned to."""

from dataclasses import dataclass

from ..cvp.client import ControlPlaneClient
from ..cvp.models import ElementType, InterfaceTagAssignment, PartialEqFilter
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TagBinding:
    """Result of one tag lookup. ``found`` is False when nothing matched."""

    label: str
    value: str
    found: bool = False
    device_id: str | None = None
    interface_id: str | None = None

    @classmethod
    def not_found(cls, label: str, value: str) -> "TagBinding":
        return cls(label=label, value=value)


class TagResolver:
    """
    Looks up interface tag assignments by (label, value).

    Zero matches is a normal outcome and comes back as a not-found binding.
    Transport failures propagate as UpstreamError and undecodable records as
    SerializationError, so callers can tell them apart from "not found".
    """

    def __init__(self, client: ControlPlaneClient, workspace_id: str = "") -> None:
        self._client = client
        self._workspace_id = workspace_id

    async def resolve(self, label: str, value: str) -> TagBinding:
        tag_filter = PartialEqFilter.for_tag(
            label,
            value,
            workspace_id=self._workspace_id,
            element_type=ElementType.INTERFACE,
        )
        records = await self._client.query_tag_assignments(tag_filter)

        if not records:
            logger.info("Tag not found", label=label, value=value)
            return TagBinding.not_found(label, value)

        if len(records) > 1:
            # No tie-break rule exists; the first record wins
            logger.warning("Tag matched more than one interface", label=label, value=value, matches=len(records))

        key = InterfaceTagAssignment.from_wire(records[0]).key
        logger.info(
            "Tag resolved",
            label=label,
            value=value,
            device_id=key.device_id,
            interface_id=key.interface_id,
        )
        return TagBinding(
            label=label,
            value=value,
            found=True,
            device_id=key.device_id,
            interface_id=key.interface_id,
        )
