# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Desired-state templates and persisted configuration snapshots.

A template and a snapshot share one shape: the same dataclass describes
what the caller wants (template) and what collection observed (snapshot).
Comparison is structural and total over every declared persistent field,
including logging flags, so that operator intent changes show up in diffs.

Field metadata:
- persistent=False: observation only, never compared or displayed
- encrypted=True: hidden from display unless unmasked, but always compared
- unordered=True: sequence compared without regard to order
"""

import json
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from converge.errors import ValidationError

C = TypeVar("C", bound="Configuration")

# Template keys accepted in place of the canonical field name
FIELD_ALIASES = {
    "key": "configuration_key",
    "configurationKey": "configuration_key",
}


def persistent(unordered: bool = False, **kwargs: Any) -> Any:
    """Declare a compared, displayed field.

    Sequences declared ``unordered`` compare as sets of names.
    """
    return field(metadata={"persistent": True, "unordered": unordered}, **kwargs)


def encrypted(**kwargs: Any) -> Any:
    """Declare a compared field that is masked from display."""
    return field(metadata={"persistent": True, "encrypted": True}, **kwargs)


def observed(**kwargs: Any) -> Any:
    """Declare a field that only carries collection results."""
    return field(metadata={"persistent": False}, **kwargs)


@dataclass(frozen=True)
class Difference:
    """A single field that differs between template and snapshot."""
    name: str
    desired: Any
    actual: Any
    encrypted: bool = False

    def render(self, show_encrypted: bool = False) -> str:
        """One-line description; encrypted values are masked by default."""
        if self.encrypted and not show_encrypted:
            return f"{self.name}: differs (hidden)"
        return f"{self.name}: desired {self.desired!r}, actual {self.actual!r}"

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class ComparisonResult:
    """Outcome of comparing a snapshot against a template."""
    differences: Tuple[Difference, ...] = ()
    unsatisfied: Tuple[str, ...] = ()

    @property
    def in_desired_state(self) -> bool:
        return not self.differences and not self.unsatisfied


@dataclass(frozen=True)
class Configuration:
    """Base shape shared by every resource kind."""

    configuration_key: str = persistent(default="")
    exists: bool = persistent(default=True)
    # None on a template means "discover"; a snapshot always lists names
    # in the order they were discovered.
    sub_targets: Optional[Tuple[str, ...]] = persistent(unordered=True, default=None)
    sub_target_status: Dict[str, bool] = observed(default_factory=dict)

    @classmethod
    def persistent_fields(cls) -> List[Any]:
        return [f for f in fields(cls) if f.metadata.get("persistent", True)]

    @classmethod
    def encrypted_field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if f.metadata.get("encrypted"))

    @classmethod
    def from_dict(cls: Type[C], data: Dict[str, Any]) -> C:
        """Build a template from a parsed YAML mapping.

        Raises:
            ValidationError: If the mapping contains unknown fields or
                values of the wrong shape.
        """
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for raw_key, value in data.items():
            name = FIELD_ALIASES.get(raw_key, raw_key)
            if name not in known or not known[name].metadata.get("persistent", True):
                raise ValidationError(f"unknown field '{raw_key}' for {cls.__name__}")
            if name == "sub_targets" and value is not None:
                if isinstance(value, str):
                    value = [value]
                if not isinstance(value, (list, tuple)):
                    raise ValidationError(f"sub_targets must be a list, got: {value!r}")
                value = tuple(str(v) for v in value)
            kwargs[name] = value

        try:
            instance = cls(**kwargs)
        except TypeError as e:
            raise ValidationError(f"invalid template for {cls.__name__}: {e}")

        if not instance.configuration_key:
            instance = replace(instance, configuration_key=instance.derive_key())
        return instance

    def derive_key(self) -> str:
        """Key used when a template does not name one explicitly."""
        return ""

    def validate(self) -> None:
        """Validate identity fields.

        Raises:
            ValidationError: If the configuration key is empty.
        """
        if not self.configuration_key or not str(self.configuration_key).strip():
            raise ValidationError(f"{type(self).__name__}: configuration key is required")

    @property
    def configured(self) -> bool:
        """True when the resource exists and every sub-target is satisfied."""
        return self.exists and all(self.sub_target_status.values())

    def unsatisfied_sub_targets(self) -> Tuple[str, ...]:
        names = self.sub_targets or tuple(self.sub_target_status)
        return tuple(n for n in names if not self.sub_target_status.get(n, False))

    def differences(self, actual: "Configuration") -> Tuple[Difference, ...]:
        """Compare every declared persistent field against a snapshot.

        Fields left as None on the template are not declared and are not
        compared. Encrypted fields are compared like any other.
        """
        diffs = []
        for f in self.persistent_fields():
            desired = getattr(self, f.name)
            if desired is None:
                continue
            observed_value = getattr(actual, f.name, None)
            if f.metadata.get("unordered"):
                same = _as_set(desired) == _as_set(observed_value)
            else:
                same = _normalize(desired) == _normalize(observed_value)
            if not same:
                diffs.append(
                    Difference(f.name, desired, observed_value, encrypted=bool(f.metadata.get("encrypted")))
                )
        return tuple(diffs)

    def properties_for_display(self, hide_encrypted: bool = True) -> Dict[str, str]:
        """Flat name → text rendering of the persistent fields.

        Encrypted fields are left out entirely unless ``hide_encrypted`` is
        False.
        """
        props = {}
        for f in self.persistent_fields():
            if hide_encrypted and f.metadata.get("encrypted"):
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            props[f.name] = _render(value)
        return props


def _normalize(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(_normalize(v) for v in value)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    return value


def _as_set(value: Any) -> Any:
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple)):
        return frozenset(_normalize(v) for v in value)
    return value


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)
