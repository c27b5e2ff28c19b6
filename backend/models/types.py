"""Shared type definitions for type checking.

Uses NewType for IDs to provide compile-time type safety - prevents mixing
different ID types (e.g., passing ProfileID where RuleID expected).

Uses TypeAlias for complex types that are purely structural.
"""

from typing import Any, NewType, TypeAlias

# ID types using NewType for type safety
RuleID = NewType("RuleID", str)
TemplateID = NewType("TemplateID", str)
ProfileID = NewType("ProfileID", str)
QueueItemID = NewType("QueueItemID", str)
AlertID = NewType("AlertID", str)

# Structural aliases using TypeAlias
FieldMap: TypeAlias = dict[str, Any]  # Flat column -> value map for one entity
EntityBundle: TypeAlias = dict[str, FieldMap]  # customer / agreement / vehicle
DateBucket: TypeAlias = str  # YYYY-MM-DD format
