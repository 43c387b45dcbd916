"""
Provisioner - Run Context

Everything a provisioning run needs, passed explicitly from the graph
builder to the planner and the executor.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import threading
import uuid

from provisioner.engine.graph import ResourceGraph
from provisioner.models import DeclarationSet, ExecutionPlan
from provisioner.state import StateStore


def generate_run_id() -> str:
    """Generate unique run ID."""
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    unique = uuid.uuid4().hex[:6]
    return f"run_{timestamp}_{unique}"


@dataclass
class RunContext:
    """
    Context of one provisioning run.

    Attributes:
        run_id: Unique run identifier
        declarations: Parsed declaration set
        graph: Desired resource graph (empty when destroying)
        state: Handle to the State Store
        plan: Plan, once computed
        destroy: Whether the run removes everything in state
    """
    declarations: DeclarationSet
    graph: ResourceGraph
    state: StateStore
    run_id: str = field(default_factory=generate_run_id)
    plan: Optional[ExecutionPlan] = None
    destroy: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def project_name(self) -> str:
        return self.declarations.project.name

    def cancel(self) -> None:
        """Stop dispatching new operations. In-flight calls are allowed to finish."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()
