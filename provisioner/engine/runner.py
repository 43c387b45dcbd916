"""
Provisioner - Engine

Wires the declaration parser, expander, graph builder, planner and
executor into plan and apply operations over a shared State Store.
"""

from __future__ import annotations
from datetime import datetime
from typing import Callable, Optional
import logging

from provisioner.engine.context import RunContext
from provisioner.engine.executor import create_executor
from provisioner.engine.expander import DeclarationExpander
from provisioner.engine.graph import GraphBuilder, ResourceGraph
from provisioner.engine.parser import ConfigParser
from provisioner.engine.planner import ExecutionPlanner
from provisioner.engine.report import format_plan
from provisioner.models import DeclarationSet, RunStatus, RunSummary
from provisioner.providers import Provider, ProviderFactory
from provisioner.settings import Settings, get_settings
from provisioner.state import StateStore
from provisioner.storage import RunStorage

logger = logging.getLogger(__name__)


def create_provider(settings: Settings) -> Provider:
    """Create the provider named in settings."""
    if settings.provider_type == "fake":
        return ProviderFactory.create(
            "fake",
            latency_seconds=settings.fake_latency_seconds,
            failure_rate=settings.fake_failure_rate,
            inventory_path=settings.fake_inventory_path,
        )
    return ProviderFactory.create(settings.provider_type)


class ProvisioningEngine:
    """
    Plan/apply facade.

    Usage:
        engine = ProvisioningEngine()
        ctx = engine.plan(yaml_content)
        print(format_plan(ctx.plan))
        summary = engine.apply(ctx)

    ConfigurationError and StateCorruptionError raised by plan() are
    fatal: nothing has been attempted.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        state: Optional[StateStore] = None,
        provider: Optional[Provider] = None,
        storage: Optional[RunStorage] = None,
    ):
        self.settings = settings if settings is not None else get_settings()
        self.state = state if state is not None else StateStore(self.settings.state_path)
        self.provider = provider if provider is not None else create_provider(self.settings)
        self.storage = storage if storage is not None else RunStorage(self.settings.runs_path)
        self.parser = ConfigParser()
        self.expander = DeclarationExpander()
        self.builder = GraphBuilder()
        self.planner = ExecutionPlanner()
        self.logger = logging.getLogger(__name__)

    def build_graph(self, declarations: DeclarationSet, destroy: bool = False) -> ResourceGraph:
        """Expand declarations and build the desired graph (empty when destroying)."""
        if destroy:
            return ResourceGraph()
        instances, families = self.expander.expand(declarations)
        return self.builder.build(instances, families)

    def plan_declarations(
        self,
        declarations: DeclarationSet,
        destroy: bool = False,
        run_id: Optional[str] = None,
    ) -> RunContext:
        """Build the graph and plan it against the State Store."""
        graph = self.build_graph(declarations, destroy=destroy)
        ctx = RunContext(
            declarations=declarations,
            graph=graph,
            state=self.state,
            destroy=destroy,
        )
        if run_id:
            ctx.run_id = run_id
        plan = self.planner.create_plan(ctx)
        self.storage.save_plan(plan, text=format_plan(plan))
        return ctx

    def plan(
        self,
        yaml_content: str,
        destroy: bool = False,
        run_id: Optional[str] = None,
    ) -> RunContext:
        """Parse YAML declarations and plan them."""
        declarations = self.parser.parse(yaml_content)
        return self.plan_declarations(declarations, destroy=destroy, run_id=run_id)

    def plan_file(
        self,
        file_path: str,
        destroy: bool = False,
        run_id: Optional[str] = None,
    ) -> RunContext:
        """Parse a declaration file and plan it."""
        declarations = self.parser.parse_file(file_path)
        return self.plan_declarations(declarations, destroy=destroy, run_id=run_id)

    def apply(
        self,
        ctx: RunContext,
        progress_callback: Optional[Callable[[str, int, str], None]] = None,
    ) -> RunSummary:
        """Execute a planned run and save its summary."""
        executor = create_executor(provider=self.provider, settings=self.settings)
        if progress_callback:
            executor.set_progress_callback(progress_callback)
        summary = executor.execute(ctx)
        self.storage.save_summary(summary)
        return summary

    def fatal_summary(self, run_id: str, project_name: str, error: Exception) -> RunSummary:
        """Record a run that stopped before any change was attempted."""
        now = datetime.utcnow()
        summary = RunSummary(
            run_id=run_id,
            project_name=project_name,
            status=RunStatus.FAILED,
            started_at=now,
            completed_at=now,
            errors=[str(error)],
        )
        self.storage.save_summary(summary)
        return summary
