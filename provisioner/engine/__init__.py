"""
Provisioner - Engine Package

Core engine that realizes resource declarations:
- Parser: Validates and parses YAML declarations
- Expander: Expands count / for_each families into instances
- GraphBuilder: Builds the dependency DAG
- Planner: Diffs desired graph against state into an ordered plan
- Executor: Applies plans with bounded parallelism
"""

from provisioner.engine.parser import ConfigParser
from provisioner.engine.expander import DeclarationExpander
from provisioner.engine.graph import GraphBuilder, ResourceGraph
from provisioner.engine.context import RunContext
from provisioner.engine.planner import ExecutionPlanner, topological_order
from provisioner.engine.executor import PlanExecutor
from provisioner.engine.runner import ProvisioningEngine

__all__ = [
    "ConfigParser",
    "DeclarationExpander",
    "GraphBuilder",
    "ResourceGraph",
    "RunContext",
    "ExecutionPlanner",
    "topological_order",
    "PlanExecutor",
    "ProvisioningEngine",
]
