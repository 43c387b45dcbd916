"""
Provisioner - Declaration Parser

Parses and validates YAML declaration files.
Transforms raw YAML into a validated DeclarationSet.
"""

from __future__ import annotations
from typing import Any, Dict, List, Tuple
import logging
import yaml
from pydantic import ValidationError

from provisioner.errors import DeclarationError
from provisioner.models import (
    DeclarationSet,
    ProjectConfig,
    ResourceDeclaration,
    parse_address,
)

logger = logging.getLogger(__name__)


class ConfigParser:
    """
    Parser for resource declaration files.

    Responsibilities:
    - Parse YAML content
    - Validate structure and required fields
    - Transform to domain model (DeclarationSet)
    - Report clear validation errors

    Expected document:

        project:
          name: eks-platform
        variables:
          cidr: 10.0.0.0/16
        resources:
          - type: network
            name: main
            attributes:
              cidr_block: ${var.cidr}
    """

    # Required top-level sections
    REQUIRED_SECTIONS = ["project"]

    # Optional sections with defaults
    OPTIONAL_SECTIONS = ["variables", "resources"]

    def __init__(self):
        """Initialize parser."""
        self.logger = logging.getLogger(__name__)

    def parse(self, yaml_content: str) -> DeclarationSet:
        """
        Parse YAML content into a DeclarationSet.

        Args:
            yaml_content: YAML declaration string

        Returns:
            Validated DeclarationSet

        Raises:
            DeclarationError: If parsing or validation fails
        """
        # Step 1: Parse YAML syntax
        raw_config = self._parse_yaml(yaml_content)

        # Step 2: Validate structure
        validation_errors = self._validate_structure(raw_config)
        if validation_errors:
            raise DeclarationError(
                "Declaration validation failed",
                errors=validation_errors,
            )

        # Step 3: Transform to domain model
        try:
            model = self._transform_to_model(raw_config)
        except ValidationError as e:
            errors = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
            raise DeclarationError("Model validation failed", errors=errors)

        # Step 4: Semantic validation
        semantic_errors = self._validate_semantics(model)
        if semantic_errors:
            raise DeclarationError(
                "Semantic validation failed",
                errors=semantic_errors,
            )

        self.logger.info(
            f"Parsed {len(model.resources)} declarations for project: {model.project.name}"
        )
        return model

    def _parse_yaml(self, yaml_content: str) -> Dict[str, Any]:
        """
        Parse YAML string to dictionary.

        Raises:
            DeclarationError: If YAML syntax is invalid
        """
        try:
            config = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise DeclarationError(f"YAML syntax error: {str(e)}")
        if config is None:
            raise DeclarationError("Empty configuration")
        if not isinstance(config, dict):
            raise DeclarationError("Configuration must be a YAML mapping/dictionary")
        return config

    def _validate_structure(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate document structure.

        Returns:
            List of validation errors
        """
        errors = []

        for section in self.REQUIRED_SECTIONS:
            if section not in config:
                errors.append(f"Missing required section: '{section}'")
            elif not isinstance(config[section], dict):
                errors.append(f"Section '{section}' must be a mapping")

        if "project" in config and isinstance(config["project"], dict):
            if "name" not in config["project"]:
                errors.append("project.name is required")

        unknown = set(config) - set(self.REQUIRED_SECTIONS) - set(self.OPTIONAL_SECTIONS)
        for section in sorted(unknown):
            errors.append(f"Unknown section: '{section}'")

        variables = config.get("variables")
        if variables is not None and not isinstance(variables, dict):
            errors.append("variables must be a mapping")

        resources = config.get("resources", [])
        if resources is None:
            resources = []
        if not isinstance(resources, list):
            errors.append("resources must be a list")
        else:
            for i, resource in enumerate(resources):
                if not isinstance(resource, dict):
                    errors.append(f"resources[{i}] must be a mapping")
                    continue
                for required in ("type", "name"):
                    if required not in resource:
                        errors.append(f"resources[{i}].{required} is required")
                attributes = resource.get("attributes", {})
                if attributes is not None and not isinstance(attributes, dict):
                    errors.append(f"resources[{i}].attributes must be a mapping")
                depends_on = resource.get("depends_on", [])
                if depends_on is not None and not isinstance(depends_on, list):
                    errors.append(f"resources[{i}].depends_on must be a list")

        return errors

    def _transform_to_model(self, config: Dict[str, Any]) -> DeclarationSet:
        """Transform dictionary to DeclarationSet."""
        resources = []
        for raw in config.get("resources") or []:
            raw = dict(raw)
            raw["attributes"] = raw.get("attributes") or {}
            raw["depends_on"] = raw.get("depends_on") or []
            resources.append(ResourceDeclaration(**raw))

        return DeclarationSet(
            project=ProjectConfig(**config["project"]),
            variables=config.get("variables") or {},
            resources=resources,
        )

    def _validate_semantics(self, model: DeclarationSet) -> List[str]:
        """
        Validate semantic correctness of the model.

        Returns:
            List of semantic validation errors
        """
        errors = []

        # Check for duplicate logical identities
        seen = set()
        for declaration in model.resources:
            if declaration.family in seen:
                errors.append(f"Duplicate resource declaration: '{declaration.family}'")
            seen.add(declaration.family)

        # Check explicit constraints are well-formed addresses
        for declaration in model.resources:
            for target in declaration.depends_on:
                if parse_address(target) is None:
                    errors.append(
                        f"Resource '{declaration.family}' has malformed depends_on "
                        f"entry '{target}'"
                    )

        return errors

    def parse_file(self, file_path: str) -> DeclarationSet:
        """
        Parse declarations from file.

        Raises:
            DeclarationError: If file cannot be read or parsed
        """
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                yaml_content = f.read()
        except IOError as e:
            raise DeclarationError(f"Cannot read file: {str(e)}")

        return self.parse(yaml_content)

    def validate_only(self, yaml_content: str) -> Tuple[bool, List[str]]:
        """
        Validate declarations without returning the model.

        Returns:
            Tuple of (is_valid, error_list)
        """
        try:
            self.parse(yaml_content)
            return True, []
        except DeclarationError as e:
            return False, e.errors or [e.message]


# Singleton instance
parser = ConfigParser()


def get_parser() -> ConfigParser:
    """Get parser instance."""
    return parser
