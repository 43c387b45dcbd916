"""
Provisioner - Fake Cloud Provider

Simulates a cloud provider API for prototyping and testing.
Stores resources in-memory with optional JSON persistence so successive
runs see the same inventory.
"""

from __future__ import annotations
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import base64
import hashlib
import json
import logging
import random
import threading
import time
import uuid

from provisioner.errors import (
    ProviderError,
    ProviderTimeoutError,
    ResourceNotFoundError,
    TransientProviderError,
)
from provisioner.providers.base import Provider, ProviderFactory, ProviderResponse

logger = logging.getLogger(__name__)


class FakeCloudProvider(Provider):
    """
    Fake cloud provider for simulation and prototyping.

    Features:
    - In-memory inventory keyed by assigned identifier
    - Type-specific outputs (registry URL, cluster endpoint, role ARN, ...)
    - Failure injection per address (error, transient, timeout)
    - Simulated latency honouring the per-call timeout
    - Call log for ordering inspection
    - State persistence to JSON

    This provider allows running the entire plan/apply flow without
    real cloud credentials.
    """

    # Identifier prefixes per resource type
    ID_PREFIXES: Dict[str, str] = {
        # Network
        "network": "vpc",
        "subnet": "subnet",
        "internet_gateway": "igw",
        "elastic_ip": "eipalloc",
        "nat_gateway": "nat",
        "route_table": "rtb",
        "route_table_association": "rtbassoc",
        "security_group": "sg",

        # Registry
        "container_registry": "repo",

        # IAM
        "iam_role": "role",
        "iam_role_policy_attachment": "rpa",

        # Kubernetes
        "kubernetes_cluster": "cluster",
        "node_group": "ng",
    }

    FAILURE_MODES = ("error", "transient", "timeout")

    def __init__(
        self,
        name: str = "fake",
        latency_seconds: float = 0.0,
        failure_rate: float = 0.0,
        inventory_path: Optional[str] = None,
        account_id: str = "123456789012",
        region: str = "local-1",
    ):
        """
        Initialize Fake Cloud Provider.

        Args:
            name: Provider identifier
            latency_seconds: Simulated duration of every call
            failure_rate: Probability of simulated transient failures (0.0 - 1.0)
            inventory_path: Optional path to persist the inventory
            account_id: Account used in generated ARNs and URLs
            region: Region used in generated endpoints
        """
        super().__init__(name)
        self.latency_seconds = latency_seconds
        self.failure_rate = failure_rate
        self.inventory_path = Path(inventory_path) if inventory_path else None
        self.account_id = account_id
        self.region = region

        self._lock = threading.Lock()
        self._inventory: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, Dict[str, Any]] = {}
        self._connected = False
        self.calls: List[Dict[str, Any]] = []

        if self.inventory_path and self.inventory_path.exists():
            self.import_state(str(self.inventory_path))

        logger.info(f"FakeCloudProvider initialized: region={region}, account={account_id}")

    # =========================================================================
    # CONNECTION
    # =========================================================================

    def connect(self) -> bool:
        """Simulate connection to the provider API."""
        self._connected = True
        logger.info(f"Connected to fake cloud: {self.region}")
        return True

    def disconnect(self) -> None:
        """Simulate disconnection."""
        self._connected = False
        logger.info(f"Disconnected from fake cloud: {self.region}")

    # =========================================================================
    # FAILURE INJECTION
    # =========================================================================

    def inject_failure(self, address: str, mode: str = "error", times: Optional[int] = None) -> None:
        """
        Make calls for an address fail.

        Args:
            address: Logical address the failure applies to
            mode: "error" (permanent), "transient" (retryable) or "timeout"
            times: Number of failing calls (None = every call)
        """
        if mode not in self.FAILURE_MODES:
            raise ValueError(f"Unknown failure mode: {mode}. Available: {self.FAILURE_MODES}")
        with self._lock:
            self._failures[address] = {"mode": mode, "remaining": times}

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    def _take_failure(self, address: str) -> Optional[str]:
        with self._lock:
            failure = self._failures.get(address)
            if failure is None:
                return None
            if failure["remaining"] is not None:
                failure["remaining"] -= 1
                if failure["remaining"] <= 0:
                    del self._failures[address]
            return failure["mode"]

    def _simulate_call(self, address: str, timeout: Optional[float]) -> None:
        """Apply latency and injected failures to a call."""
        mode = self._take_failure(address)

        if mode == "timeout" or (
            timeout is not None and self.latency_seconds > timeout
        ):
            if timeout:
                time.sleep(timeout)
            raise ProviderTimeoutError(
                f"Call for '{address}' timed out after {timeout}s",
                address=address,
            )

        if self.latency_seconds:
            time.sleep(self.latency_seconds)

        if mode == "transient" or random.random() < self.failure_rate:
            raise TransientProviderError(
                f"Simulated transient failure for '{address}'",
                address=address,
            )
        if mode == "error":
            raise ProviderError(f"Simulated failure for '{address}'", address=address)

    def _log_call(self, operation: str, resource_type: str, address: str) -> Dict[str, Any]:
        record = {
            "operation": operation,
            "resource_type": resource_type,
            "address": address,
            "provider_id": None,
            "started": time.monotonic(),
            "finished": None,
            "status": "running",
        }
        with self._lock:
            self.calls.append(record)
        return record

    def _finish_call(self, record: Dict[str, Any], status: str, provider_id: Optional[str] = None) -> None:
        with self._lock:
            record["finished"] = time.monotonic()
            record["status"] = status
            record["provider_id"] = provider_id

    # =========================================================================
    # CRUD
    # =========================================================================

    def create(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
        address: str,
        timeout: Optional[float] = None,
    ) -> ProviderResponse:
        """Create a resource and assign an identifier."""
        start_time = time.time()
        call = self._log_call("create", resource_type, address)
        try:
            self._simulate_call(address, timeout)
        except ProviderError:
            self._finish_call(call, "failed")
            raise

        prefix = self.ID_PREFIXES.get(resource_type, resource_type.replace("_", "-"))
        provider_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
        generated = self._generated_outputs(resource_type, provider_id, attributes)

        with self._lock:
            self._inventory[provider_id] = {
                "resource_type": resource_type,
                "address": address,
                "attributes": dict(attributes),
                "generated": generated,
                "created_at": datetime.utcnow().isoformat(),
            }
            self._persist()

        self._finish_call(call, "completed", provider_id)
        logger.debug(f"Created {resource_type} {provider_id} for {address}")
        return ProviderResponse(
            provider_id=provider_id,
            outputs={**attributes, **generated},
            duration_ms=(time.time() - start_time) * 1000,
        )

    def read(
        self,
        resource_type: str,
        provider_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ProviderResponse]:
        """Read a resource, or None if it does not exist."""
        with self._lock:
            entry = self._inventory.get(provider_id)
        if entry is None or entry["resource_type"] != resource_type:
            return None
        return ProviderResponse(
            provider_id=provider_id,
            outputs={**entry["attributes"], **entry["generated"]},
        )

    def update(
        self,
        resource_type: str,
        provider_id: str,
        attributes: Dict[str, Any],
        address: str,
        timeout: Optional[float] = None,
    ) -> ProviderResponse:
        """Update a resource in place; generated outputs are kept."""
        start_time = time.time()
        call = self._log_call("update", resource_type, address)
        try:
            self._simulate_call(address, timeout)
            with self._lock:
                entry = self._inventory.get(provider_id)
                if entry is None:
                    raise ResourceNotFoundError(
                        f"{resource_type} {provider_id} not found",
                        address=address,
                    )
                entry["attributes"] = dict(attributes)
                entry["updated_at"] = datetime.utcnow().isoformat()
                generated = dict(entry["generated"])
                self._persist()
        except ProviderError:
            self._finish_call(call, "failed")
            raise

        self._finish_call(call, "completed", provider_id)
        logger.debug(f"Updated {resource_type} {provider_id} for {address}")
        return ProviderResponse(
            provider_id=provider_id,
            outputs={**attributes, **generated},
            duration_ms=(time.time() - start_time) * 1000,
        )

    def delete(
        self,
        resource_type: str,
        provider_id: str,
        address: str,
        timeout: Optional[float] = None,
    ) -> None:
        """Delete a resource."""
        call = self._log_call("delete", resource_type, address)
        try:
            self._simulate_call(address, timeout)
            with self._lock:
                if provider_id not in self._inventory:
                    raise ResourceNotFoundError(
                        f"{resource_type} {provider_id} not found",
                        address=address,
                    )
                del self._inventory[provider_id]
                self._persist()
        except ProviderError:
            self._finish_call(call, "failed")
            raise

        self._finish_call(call, "completed", provider_id)
        logger.debug(f"Deleted {resource_type} {provider_id} for {address}")

    def _generated_outputs(
        self,
        resource_type: str,
        provider_id: str,
        attributes: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Values the provider assigns on creation."""
        outputs: Dict[str, Any] = {
            "id": provider_id,
            "arn": f"arn:fake:{resource_type}:{self.region}:{self.account_id}:{provider_id}",
        }
        display_name = attributes.get("name", provider_id)

        if resource_type == "iam_role":
            outputs["arn"] = f"arn:fake:iam::{self.account_id}:role/{display_name}"
        elif resource_type == "container_registry":
            outputs["repository_url"] = (
                f"{self.account_id}.dkr.registry.{self.region}.fake.local/{display_name}"
            )
        elif resource_type == "kubernetes_cluster":
            digest = hashlib.sha256(provider_id.encode()).digest()
            outputs["endpoint"] = f"https://{provider_id}.k8s.{self.region}.fake.local"
            outputs["certificate_authority"] = base64.b64encode(digest).decode()
            outputs["status"] = "ACTIVE"
        elif resource_type in ("elastic_ip", "nat_gateway"):
            outputs["public_ip"] = f"203.0.113.{random.randint(1, 254)}"
        elif resource_type == "node_group":
            outputs["status"] = "ACTIVE"

        return outputs

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def get_inventory(self) -> Dict[str, Dict[str, Any]]:
        """Get a copy of all live resources by identifier."""
        with self._lock:
            return json.loads(json.dumps(self._inventory))

    def calls_for(self, address: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(c) for c in self.calls if c["address"] == address]

    def reset(self) -> None:
        """Reset provider state."""
        with self._lock:
            self._inventory = {}
            self._failures = {}
            self.calls = []
            self._persist()
        logger.info("Fake cloud reset")

    def _persist(self) -> None:
        """Write the inventory if persistence is enabled. Caller holds the lock."""
        if self.inventory_path:
            self._export(self.inventory_path)

    def _export(self, export_path: Path) -> None:
        export_path.parent.mkdir(parents=True, exist_ok=True)
        state = {
            "metadata": {
                "region": self.region,
                "account_id": self.account_id,
                "exported_at": datetime.utcnow().isoformat(),
            },
            "inventory": self._inventory,
        }
        with open(export_path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, default=str)

    def import_state(self, path: str) -> None:
        """Import inventory from JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            state = json.load(f)

        with self._lock:
            self._inventory = state.get("inventory", {})
        logger.info(f"Inventory imported from: {path}")


# Register provider with factory
ProviderFactory.register("fake", FakeCloudProvider)
