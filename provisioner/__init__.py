"""
Provisioner

A minimal graph-based provisioning engine: builds a dependency DAG from
resource declarations, plans changes against recorded state and applies
them with bounded parallelism.
"""

__version__ = "1.0.0"
__author__ = "Provisioner Team"
