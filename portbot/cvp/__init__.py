"""CloudVision control-plane client and wire documents."""

from .client import ControlPlaneClient
from .models import ChangeWorkflow, ElementType, InterfaceTagKey, PartialEqFilter, TagKey

__all__ = [
    "ChangeWorkflow",
    "ControlPlaneClient",
    "ElementType",
    "InterfaceTagKey",
    "PartialEqFilter",
    "TagKey",
]
