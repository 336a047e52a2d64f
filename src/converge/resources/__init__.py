# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Resource kinds known to the engine."""

from typing import Dict, Type

from converge.errors import ValidationError
from converge.resources.base import JobCancelled, OperationContext, ResourceOperation
from converge.resources.dsc import DscScriptConfiguration, DscScriptOperation
from converge.resources.script import ScriptConfiguration, ScriptOperation
from converge.schemas.configuration import Configuration

KINDS: Dict[str, Type[ResourceOperation]] = {
    DscScriptOperation.kind: DscScriptOperation,
    ScriptOperation.kind: ScriptOperation,
}


def operation_class(kind: str) -> Type[ResourceOperation]:
    """Look up a resource kind by name.

    Raises:
        ValidationError: If the kind is unknown.
    """
    try:
        return KINDS[kind]
    except KeyError:
        known = ", ".join(sorted(KINDS))
        raise ValidationError(f"unknown resource kind '{kind}' (known kinds: {known})")


def operation_for(template: Configuration) -> ResourceOperation:
    """Build the operation that handles a template.

    Raises:
        ValidationError: If no kind handles the template's type.
    """
    for cls in KINDS.values():
        if type(template) is cls.configuration_class:
            return cls(template)
    raise ValidationError(f"no resource kind handles {type(template).__name__}")


__all__ = [
    "KINDS",
    "DscScriptConfiguration",
    "DscScriptOperation",
    "JobCancelled",
    "OperationContext",
    "ResourceOperation",
    "ScriptConfiguration",
    "ScriptOperation",
    "operation_class",
    "operation_for",
]
