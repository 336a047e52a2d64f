# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Generic "ensure by script" resource kind.

The template supplies three PowerShell scripts, each inline or as an asset:

- collect: reports ``$exists``, ``$subTargets`` (name -> satisfied) and
  optionally ``$properties`` (name -> observed value)
- configure: run once per sub-target with ``$subTarget`` bound
- remove: run once per sub-target when the template says ``exists: false``

Every script also sees ``$properties`` and ``$secretProperties`` holding the
desired values from the template.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from converge.assets import ContentProvider
from converge.cache import ContentCache
from converge.capture import bool_mapping, extract
from converge.errors import ValidationError
from converge.resources.base import OperationContext, ResourceOperation
from converge.schemas.configuration import Configuration, encrypted, persistent
from converge.schemas.job import Job

logger = logging.getLogger(__name__)

# Job payload used when the script content was staged from an asset
RUN_STAGED = ". $scriptPath\n"

ROLES = ("collect", "configure", "remove")


@dataclass(frozen=True)
class ScriptConfiguration(Configuration):
    """Desired state described by a trio of scripts."""

    collect_script: Optional[str] = persistent(default=None)
    collect_asset: Optional[str] = persistent(default=None)
    configure_script: Optional[str] = persistent(default=None)
    configure_asset: Optional[str] = persistent(default=None)
    remove_script: Optional[str] = persistent(default=None)
    remove_asset: Optional[str] = persistent(default=None)
    properties: Optional[Dict[str, Any]] = persistent(default=None)
    secret_properties: Optional[Dict[str, Any]] = encrypted(default=None)
    debug_logging: bool = persistent(default=False)
    verbose_logging: bool = persistent(default=False)

    def source(self, role: str) -> Tuple[Optional[str], Optional[str]]:
        """Return (inline script, asset reference) for a role."""
        return getattr(self, f"{role}_script"), getattr(self, f"{role}_asset")

    def validate(self) -> None:
        required = ["collect", "configure" if self.exists else "remove"]
        for role in required:
            inline, asset = self.source(role)
            if not (inline or "").strip() and not (asset or "").strip():
                raise ValidationError(
                    f'{role} script missing. Specify a value for either '
                    f'"{role}_script" or "{role}_asset".'
                )
        super().validate()


class ScriptOperation(ResourceOperation):
    """Ensure-ByScript."""

    kind = "script"
    configuration_class = ScriptConfiguration
    template: ScriptConfiguration

    def stage(self, cache: ContentCache, provider: ContentProvider) -> Dict[str, str]:
        staged = {}
        for role in ROLES:
            _, asset = self.template.source(role)
            if asset:
                staged[role] = str(cache.materialize(asset, provider, ".ps1"))
        return staged

    def _job(self, context: OperationContext, role: str, label: str, **kwargs) -> Job:
        inline, _ = self.template.source(role)
        variables = {
            "properties": dict(self.template.properties or {}),
            "secretProperties": dict(self.template.secret_properties or {}),
        }
        variables.update(kwargs.pop("variables", {}))

        if role in context.staged:
            script_text = RUN_STAGED
            variables["scriptPath"] = context.staged[role]
        else:
            script_text = inline or ""

        return Job(
            script_text=script_text,
            variables=variables,
            debug_logging=self.template.debug_logging,
            verbose_logging=self.template.verbose_logging,
            label=label,
            **kwargs,
        )

    async def collect(self, context: OperationContext) -> Configuration:
        job = self._job(
            context,
            "collect",
            label="script:collect",
            variables={"subTargets": list(self.template.sub_targets or ())},
            collect_output=True,
            out_variables=("exists", "subTargets", "properties"),
        )
        result = await context.run(job)
        values = extract(
            result,
            {"exists": bool, "subTargets": dict, "properties": dict},
            optional=("subTargets", "properties"),
        )

        status = bool_mapping(values.get("subTargets"), "subTargets")
        observed_props = values.get("properties", {})

        snapshot = replace(
            self.template,
            exists=values["exists"],
            sub_targets=_declared_first(status, self.template.sub_targets),
            sub_target_status=status,
        )
        if self.template.properties is not None:
            snapshot = replace(
                snapshot,
                properties={k: observed_props.get(k) for k in self.template.properties},
            )
        if self.template.secret_properties is not None:
            snapshot = replace(
                snapshot,
                secret_properties={k: observed_props.get(k) for k in self.template.secret_properties},
            )
        return snapshot

    def sub_targets_to_configure(self, actual: Configuration) -> Tuple[str, ...]:
        if self.template.exists and self.template.sub_targets:
            return tuple(self.template.sub_targets)
        if actual.sub_targets:
            return tuple(actual.sub_targets)
        # Nothing to split on: the resource is its own single sub-target
        return (self.template.configuration_key,)

    async def configure(self, context: OperationContext, sub_target: str) -> None:
        role = "configure" if self.template.exists else "remove"
        job = self._job(
            context,
            role,
            label=f"script:{role}:{sub_target}",
            variables={"subTarget": sub_target},
        )
        await context.run(job)


def _declared_first(status: Dict[str, bool], declared: Optional[Tuple[str, ...]]) -> Tuple[str, ...]:
    # Hashtable order from the target is not stable
    ordered = [name for name in declared or () if name in status]
    return tuple(ordered) + tuple(name for name in status if name not in ordered)
