"""Persisted per-stack state models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

STATE_VERSION = "1.0"


class RecordStatus(str, Enum):
    """Lifecycle status of a tracked resource."""
    CREATED = "CREATED"
    UPDATING = "UPDATING"
    FAILED = "FAILED"
    DELETED = "DELETED"


class PendingDelete(BaseModel):
    """A replaced physical resource whose delete has not succeeded yet."""

    physical_id: str
    type_name: str


class StateRecord(BaseModel):
    """Last-applied state of one resource."""

    logical_name: str = Field(..., description="Logical resource name")
    type_name: str = Field(..., description="Resource type (e.g., AWS::Route53::HostedZone)")
    physical_id: Optional[str] = Field(None, description="Provider-assigned identifier")
    properties: Dict[str, Any] = Field(
        default_factory=dict, description="Property snapshot in canonical (unresolved) form"
    )
    resolved_properties: Dict[str, Any] = Field(
        default_factory=dict, description="Properties as last sent to the provider"
    )
    tags: List[Dict[str, Any]] = Field(default_factory=list, description="Tag snapshot")
    resolved_tags: List[Dict[str, Any]] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Attributes returned by the provider"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Logical names this resource depended on"
    )
    status: RecordStatus = RecordStatus.CREATED
    deletion_policy: str = Field("Delete", pattern="^(Delete|Retain)$")
    pending_deletes: List[PendingDelete] = Field(
        default_factory=list, description="Replaced resources still to be deleted"
    )
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def is_retained(self) -> bool:
        return self.deletion_policy == "Retain"

    def add_pending_delete(self, physical_id: str, type_name: str) -> None:
        if all(p.physical_id != physical_id for p in self.pending_deletes):
            self.pending_deletes.append(PendingDelete(physical_id=physical_id, type_name=type_name))

    def clear_pending_delete(self, physical_id: str) -> None:
        self.pending_deletes = [p for p in self.pending_deletes if p.physical_id != physical_id]


class StackState(BaseModel):
    """Complete persisted state of one stack."""

    version: str = Field(STATE_VERSION, description="State file format version")
    stack_name: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    parameters: Dict[str, Any] = Field(
        default_factory=dict, description="Parameter values of the last apply (NoEcho masked)"
    )
    records: Dict[str, StateRecord] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    def get_record(self, logical_name: str) -> Optional[StateRecord]:
        return self.records.get(logical_name)

    def has_record(self, logical_name: str) -> bool:
        return logical_name in self.records

    def put_record(self, record: StateRecord) -> None:
        record.updated_at = datetime.utcnow()
        self.records[record.logical_name] = record
        self.timestamp = record.updated_at

    def remove_record(self, logical_name: str) -> Optional[StateRecord]:
        record = self.records.pop(logical_name, None)
        if record is not None:
            self.timestamp = datetime.utcnow()
        return record

    def is_empty(self) -> bool:
        return not self.records and not self.outputs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StackState":
        """Create StackState from dictionary."""
        return cls.model_validate(data)
