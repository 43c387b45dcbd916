"""
Provisioner - Domain Models

Defines all Pydantic models for resource declarations, the expanded
resource instances, execution plans, state records, run results and API
payloads. These models form the core data structures that flow through
the entire engine.
"""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import json
import re

from pydantic import BaseModel, Field, model_validator

# Key of a repeated resource: int for count, str for for_each, None for single
InstanceKey = Optional[Union[int, str]]

TYPE_PATTERN = r"^[a-z][a-z0-9_]*$"
NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"

_ADDRESS_RE = re.compile(
    r'^([a-z][a-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_-]*)(?:\[(\d+|"(?:[^"\\]|\\.)*")\])?$'
)


def format_address(resource_type: str, name: str, key: InstanceKey = None) -> str:
    """Render a logical identity as an address string."""
    base = f"{resource_type}.{name}"
    if key is None:
        return base
    if isinstance(key, int):
        return f"{base}[{key}]"
    return f"{base}[{json.dumps(key)}]"


def parse_address(address: str) -> Optional[tuple]:
    """
    Parse an address string.

    Returns:
        (type, name, key) or None if the string is not an address
    """
    match = _ADDRESS_RE.match(address.strip())
    if not match:
        return None
    resource_type, name, raw_key = match.groups()
    if raw_key is None:
        key: InstanceKey = None
    elif raw_key.startswith('"'):
        key = json.loads(raw_key)
    else:
        key = int(raw_key)
    return resource_type, name, key


# =============================================================================
# ENUMS
# =============================================================================

class PlanAction(str, Enum):
    """Operation planned for a resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


class OperationStatus(str, Enum):
    """Status of an individual plan operation."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Overall status of a provisioning run."""
    CREATED = "created"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FamilyMode(str, Enum):
    """How a declaration repeats."""
    SINGLE = "single"
    COUNT = "count"
    FOR_EACH = "for_each"


# =============================================================================
# DECLARATIONS (YAML -> Domain Model)
# =============================================================================

class ProjectConfig(BaseModel):
    """Project metadata."""
    name: str = Field(..., description="Project name")
    description: Optional[str] = None


class ResourceDeclaration(BaseModel):
    """
    A declared unit of infrastructure.

    Attribute values may be literals, ${...} references or strings with
    interpolated references. count and for_each turn the declaration into
    a family of instances.
    """
    type: str = Field(..., pattern=TYPE_PATTERN, description="Resource type (e.g., network)")
    name: str = Field(..., pattern=NAME_PATTERN, description="Logical name")
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    count: Optional[int] = Field(default=None, ge=0)
    for_each: Optional[Union[List[str], Dict[str, Any]]] = None

    @model_validator(mode="after")
    def _check_repetition(self) -> "ResourceDeclaration":
        if self.count is not None and self.for_each is not None:
            raise ValueError("count and for_each are mutually exclusive")
        if isinstance(self.for_each, list) and len(set(self.for_each)) != len(self.for_each):
            raise ValueError("for_each list contains duplicate keys")
        return self

    @property
    def family(self) -> str:
        return format_address(self.type, self.name)

    @property
    def mode(self) -> FamilyMode:
        if self.count is not None:
            return FamilyMode.COUNT
        if self.for_each is not None:
            return FamilyMode.FOR_EACH
        return FamilyMode.SINGLE


class DeclarationSet(BaseModel):
    """
    Complete set of declarations - the desired state.

    Parsed from YAML; drives graph construction and planning.
    """
    project: ProjectConfig
    variables: Dict[str, Any] = Field(default_factory=dict)
    resources: List[ResourceDeclaration] = Field(default_factory=list)


class ResourceInstance(BaseModel):
    """A concrete graph node produced by expanding a declaration."""
    resource_type: str
    name: str
    key: InstanceKey = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    position: int = Field(..., description="Declaration order, used for tie-breaks")

    @property
    def address(self) -> str:
        return format_address(self.resource_type, self.name, self.key)

    @property
    def family(self) -> str:
        return format_address(self.resource_type, self.name)


class FamilyInfo(BaseModel):
    """Members of one declaration after expansion."""
    family: str
    mode: FamilyMode
    keys: List[Union[int, str, None]] = Field(default_factory=list)


# =============================================================================
# STATE
# =============================================================================

class StateRecord(BaseModel):
    """Last-known mapping from a logical identity to the real resource."""
    address: str
    resource_type: str
    name: str
    key: InstanceKey = None
    provider_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Last-applied inputs")
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Provider-returned values")
    dependencies: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def family(self) -> str:
        return format_address(self.resource_type, self.name)


# =============================================================================
# EXECUTION MODELS
# =============================================================================

class PlanEntry(BaseModel):
    """Planned operation for one resource."""
    address: str
    resource_type: str
    name: str
    key: InstanceKey = None
    action: PlanAction
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    changed_attributes: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list, description="Entries to wait for")
    provider_id: Optional[str] = None


class PlanCounts(BaseModel):
    """Per-action totals of a plan."""
    to_create: int = 0
    to_update: int = 0
    to_delete: int = 0
    unchanged: int = 0


class ExecutionPlan(BaseModel):
    """Ordered set of operations moving observed state to desired state."""
    run_id: str
    project_name: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    destroy: bool = False
    entries: List[PlanEntry] = Field(default_factory=list)
    counts: PlanCounts = Field(default_factory=PlanCounts)

    @property
    def has_changes(self) -> bool:
        return any(e.action != PlanAction.NOOP for e in self.entries)

    def entry(self, address: str) -> Optional[PlanEntry]:
        for e in self.entries:
            if e.address == address:
                return e
        return None

    def actions(self) -> Dict[str, PlanAction]:
        return {e.address: e.action for e in self.entries}


class OperationResult(BaseModel):
    """Result of a single plan operation."""
    address: str
    action: PlanAction
    status: OperationStatus = OperationStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    attempts: int = 0
    provider_id: Optional[str] = None
    error_message: Optional[str] = None
    blocked_by: Optional[str] = None


class RunSummary(BaseModel):
    """Summary of a provisioning run."""
    run_id: str
    project_name: str
    status: RunStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    total_operations: int = 0
    completed_operations: int = 0
    unchanged_operations: int = 0
    failed_operations: int = 0
    skipped_operations: int = 0
    cancelled_operations: int = 0

    results: List[OperationResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def result(self, address: str) -> Optional[OperationResult]:
        for r in self.results:
            if r.address == address:
                return r
        return None


# =============================================================================
# API MODELS
# =============================================================================

class PlanRequest(BaseModel):
    """Request to compute a plan without executing it."""
    config_yaml: str = Field(..., description="YAML declarations")
    destroy: bool = Field(default=False, description="Plan deletion of everything in state")


class PlanResponse(BaseModel):
    """Machine- and human-readable plan."""
    plan: ExecutionPlan
    text: str


class RunCreateRequest(BaseModel):
    """Request to create a new provisioning run."""
    config_yaml: str = Field(..., description="YAML declarations")
    dry_run: bool = Field(default=False, description="Plan without executing")
    destroy: bool = Field(default=False, description="Delete everything in state")


class RunCreateResponse(BaseModel):
    """Response after creating a run."""
    run_id: str
    status: RunStatus
    message: str
    plan: Optional[ExecutionPlan] = None


class RunStatusResponse(BaseModel):
    """Response for run status query."""
    run_id: str
    status: RunStatus
    message: Optional[str] = None
    progress_percent: float = 0.0
    summary: Optional[RunSummary] = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    run_id: Optional[str] = None
