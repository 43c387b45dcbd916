"""
Provisioner - Declaration Expander

Turns declarations into concrete resource instances:
- count / for_each declarations become one instance per index / key
- var.*, count.index, each.key and each.value are substituted
- resource references are kept as ${...} expressions, with symbolic
  indices replaced by the instance's own index or key
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import logging

from provisioner.engine.references import (
    Attr,
    Deferred,
    Index,
    Segment,
    Symbol,
    format_segments,
    lookup_path,
    transform,
)
from provisioner.errors import InvalidExpressionError
from provisioner.models import (
    DeclarationSet,
    FamilyInfo,
    FamilyMode,
    ResourceDeclaration,
    ResourceInstance,
)

logger = logging.getLogger(__name__)

_MISSING = object()


class _Scope:
    """Values visible while expanding one instance."""

    def __init__(
        self,
        declaration: ResourceDeclaration,
        variables: Dict[str, Any],
        count_index: Optional[int] = None,
        each_key: Optional[str] = None,
        each_value: Any = _MISSING,
    ):
        self.declaration = declaration
        self.variables = variables
        self.count_index = count_index
        self.each_key = each_key
        self.each_value = each_value

    def resolve_symbol(self, symbol: Symbol, text: str) -> Index:
        if symbol is Symbol.COUNT_INDEX:
            if self.count_index is None:
                raise InvalidExpressionError(
                    f"count.index used in '{self.declaration.family}' which has no count: '{text}'"
                )
            return Index(self.count_index)
        if symbol is Symbol.EACH_KEY:
            if self.each_key is None:
                raise InvalidExpressionError(
                    f"each.key used in '{self.declaration.family}' which has no for_each: '{text}'"
                )
            return Index(self.each_key)
        return Index(symbol)

    def bind_indices(self, segments: List[Segment], text: str) -> List[Segment]:
        bound: List[Segment] = []
        for segment in segments:
            if isinstance(segment, Index) and isinstance(segment.value, Symbol):
                bound.append(self.resolve_symbol(segment.value, text))
            else:
                bound.append(segment)
        return bound

    def evaluate(self, segments: List[Segment]) -> Any:
        text = format_segments(segments)
        root = segments[0].name if isinstance(segments[0], Attr) else None

        if root == "var":
            if len(segments) < 2 or not isinstance(segments[1], Attr):
                raise InvalidExpressionError(f"Malformed variable reference: '{text}'")
            name = segments[1].name
            if name not in self.variables:
                raise InvalidExpressionError(
                    f"Undefined variable '{name}' in '{self.declaration.family}'"
                )
            path = self.bind_indices(segments[2:], text)
            return lookup_path(self.variables[name], tuple(path), text)

        if root == "count":
            if text != "count.index":
                raise InvalidExpressionError(f"Unknown count attribute: '{text}'")
            if self.count_index is None:
                raise InvalidExpressionError(
                    f"count.index used in '{self.declaration.family}' which has no count"
                )
            return self.count_index

        if root == "each":
            if self.each_key is None:
                raise InvalidExpressionError(
                    f"'{text}' used in '{self.declaration.family}' which has no for_each"
                )
            if text == "each.key":
                return self.each_key
            if len(segments) >= 2 and segments[1] == Attr("value"):
                path = self.bind_indices(segments[2:], text)
                return lookup_path(self.each_value, tuple(path), text)
            raise InvalidExpressionError(f"Unknown each attribute: '{text}'")

        # Resource reference: resolved later by the graph builder and planner
        return Deferred(format_segments(self.bind_indices(segments, text)))


class DeclarationExpander:
    """
    Expands a DeclarationSet into resource instances.

    Instances keep declaration order; members of a family follow their
    index (count) or the order of the for_each keys.
    """

    def __init__(self):
        """Initialize expander."""
        self.logger = logging.getLogger(__name__)

    def expand(
        self,
        model: DeclarationSet,
    ) -> Tuple[List[ResourceInstance], Dict[str, FamilyInfo]]:
        """
        Expand declarations.

        Args:
            model: Validated declaration set

        Returns:
            Tuple of (instances, families by family address)

        Raises:
            InvalidExpressionError: If an expression cannot be evaluated
        """
        instances: List[ResourceInstance] = []
        families: Dict[str, FamilyInfo] = {}

        for declaration in model.resources:
            scopes = self._scopes(declaration, model.variables)
            family = FamilyInfo(family=declaration.family, mode=declaration.mode)

            for key, scope in scopes:
                attributes = transform(declaration.attributes, scope.evaluate)
                instances.append(
                    ResourceInstance(
                        resource_type=declaration.type,
                        name=declaration.name,
                        key=key,
                        attributes=attributes,
                        depends_on=list(declaration.depends_on),
                        position=len(instances),
                    )
                )
                family.keys.append(key)

            families[declaration.family] = family

        self.logger.debug(
            f"Expanded {len(model.resources)} declarations into {len(instances)} instances"
        )
        return instances, families

    def _scopes(
        self,
        declaration: ResourceDeclaration,
        variables: Dict[str, Any],
    ) -> List[Tuple[Any, _Scope]]:
        """Build the (key, scope) pair of every family member."""
        if declaration.mode == FamilyMode.COUNT:
            return [
                (i, _Scope(declaration, variables, count_index=i))
                for i in range(declaration.count)
            ]

        if declaration.mode == FamilyMode.FOR_EACH:
            if isinstance(declaration.for_each, dict):
                items = list(declaration.for_each.items())
            else:
                items = [(key, key) for key in declaration.for_each]
            return [
                (key, _Scope(declaration, variables, each_key=key, each_value=value))
                for key, value in items
            ]

        return [(None, _Scope(declaration, variables))]
