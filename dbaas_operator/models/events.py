"""
Typed watch events delivered to the work queue.
"""
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field


class _ObjectEvent(BaseModel):
    key: str
    object: Dict[str, Any] = Field(default_factory=dict)


class Created(_ObjectEvent):
    type: Literal["ADDED"] = "ADDED"


class Updated(_ObjectEvent):
    type: Literal["MODIFIED"] = "MODIFIED"


class Deleted(_ObjectEvent):
    type: Literal["DELETED"] = "DELETED"


ObjectEvent = Union[Created, Updated, Deleted]

_BY_TYPE = {"ADDED": Created, "MODIFIED": Updated, "DELETED": Deleted}


def object_key(obj: Dict[str, Any]) -> str:
    meta = obj.get("metadata", {})
    namespace = meta.get("namespace")
    return f"{namespace}/{meta['name']}" if namespace else meta["name"]


def from_watch(event_type: str, obj: Dict[str, Any]) -> Optional[ObjectEvent]:
    """Typed event for a raw watch event; None for BOOKMARK and unknown types."""
    cls = _BY_TYPE.get(event_type)
    if cls is None:
        return None
    return cls(key=object_key(obj), object=obj)
