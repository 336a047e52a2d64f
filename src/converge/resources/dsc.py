# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Ensure a PowerShell DSC configuration script has been enacted.

Each configuration block in the script is a sub-target. Discovery happens
on the target: one inspection job parses the script, compiles every
configuration it finds (with optional configuration data) and tests each
one. Configuring enacts the compiled configurations one at a time.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional

from converge.assets import ContentProvider
from converge.cache import ContentCache
from converge.capture import bool_mapping, extract
from converge.errors import ValidationError
from converge.resources.base import OperationContext, ResourceOperation
from converge.schemas.configuration import Configuration, persistent
from converge.schemas.job import Job

logger = logging.getLogger(__name__)

INSPECT_SCRIPT = r"""
$exists = Test-Path -LiteralPath $scriptPath
$configNames = @()
$results = @{}

if ($exists) {
    Write-Verbose "Parsing $scriptPath"
    $tokens = $errors = $null
    $ast = [System.Management.Automation.Language.Parser]::ParseFile(
        $scriptPath,
        [ref]$tokens,
        [ref]$errors)

    $configDefs = $ast.FindAll({
        param([System.Management.Automation.Language.Ast] $Ast)
        $Ast -is [System.Management.Automation.Language.ConfigurationDefinitionAst]
    }, $true)
    $configNames = @($configDefs | ForEach-Object { $_.InstanceName.Extent.Text })

    if ($enableRemoting) {
        # Test-DscConfiguration needs WinRM
        Enable-PSRemoting -Force -SkipNetworkProfileCheck -Confirm:$false | Out-Null
        $trustedHosts = Get-Item WSMan:\localhost\Client\TrustedHosts -ErrorAction SilentlyContinue
        if ($trustedHosts -and $trustedHosts.Value -ne '*') {
            Set-Item WSMan:\localhost\Client\TrustedHosts -Value '<local>' -Concatenate -Force
        }
    }

    Set-Location ([IO.Path]::GetDirectoryName($scriptPath))
    . $scriptPath | Out-Null
    Import-Module PSDesiredStateConfiguration | Out-Null

    $configArgs = @{}
    if ($configurationData) { $configArgs['ConfigurationData'] = $configurationData }

    foreach ($name in $configNames) {
        # Each configuration compiles into a directory named after it
        Remove-Item $name -Force -Recurse -ErrorAction SilentlyContinue | Out-Null
        & $name @configArgs | Out-Null
        $results[$name] = [string](Test-DscConfiguration -Path $name).InDesiredState
    }
}
"""

ENACT_SCRIPT = r"""
$configDir = Join-Path ([IO.Path]::GetDirectoryName($scriptPath)) $configName
Start-DscConfiguration -Path $configDir -Wait -Verbose -Force
"""

REMOVE_SCRIPT = r"""
$configDir = Join-Path ([IO.Path]::GetDirectoryName($scriptPath)) $configName
Remove-DscConfigurationDocument -Stage Current, Pending -Force
Remove-Item $configDir -Force -Recurse -ErrorAction SilentlyContinue
"""


@dataclass(frozen=True)
class DscScriptConfiguration(Configuration):
    """Desired state of a DSC configuration script."""

    script_path: Optional[str] = persistent(default=None)
    script_asset: Optional[str] = persistent(default=None)
    config_data_path: Optional[str] = persistent(default=None)
    config_data_asset: Optional[str] = persistent(default=None)
    debug_logging: bool = persistent(default=False)
    verbose_logging: bool = persistent(default=False)
    enable_remoting: bool = persistent(default=True)

    def derive_key(self) -> str:
        return self.script_path or self.script_asset or ""

    def validate(self) -> None:
        if not (self.script_asset or "").strip() and not (self.script_path or "").strip():
            raise ValidationError(
                'DSC configuration script missing. Specify a value for either '
                '"script_asset" or "script_path".'
            )
        super().validate()


class DscScriptOperation(ResourceOperation):
    """Ensure-DscConfiguration."""

    kind = "dsc"
    configuration_class = DscScriptConfiguration
    template: DscScriptConfiguration

    def stage(self, cache: ContentCache, provider: ContentProvider) -> Dict[str, str]:
        staged = {"script": self.template.script_path or ""}
        if self.template.script_asset:
            staged["script"] = str(cache.materialize(self.template.script_asset, provider, ".ps1"))

        if self.template.config_data_asset:
            staged["config_data"] = str(
                cache.materialize(self.template.config_data_asset, provider, ".psd1")
            )
        elif self.template.config_data_path:
            staged["config_data"] = self.template.config_data_path

        logger.info(f"Using DSC configuration script '{staged['script']}'")
        if staged.get("config_data"):
            logger.info(f"Using DSC configuration data from '{staged['config_data']}'")
        return staged

    def _job(self, script_text: str, variables: dict, label: str, **flags) -> Job:
        return Job(
            script_text=script_text,
            variables=variables,
            debug_logging=self.template.debug_logging,
            verbose_logging=self.template.verbose_logging,
            log_output=True,
            label=label,
            **flags,
        )

    async def collect(self, context: OperationContext) -> Configuration:
        script_path = context.staged["script"]
        logger.info(f"Testing DSC configuration '{script_path}'...")

        job = self._job(
            INSPECT_SCRIPT,
            {
                "scriptPath": script_path,
                "configurationData": context.staged.get("config_data"),
                "enableRemoting": self.template.enable_remoting,
            },
            label="dsc:inspect",
            collect_output=True,
            out_variables=("exists", "configNames", "results"),
        )
        result = await context.run(job)
        values = extract(result, {"exists": bool, "configNames": list, "results": dict})

        names = tuple(str(n) for n in values["configNames"])
        status = bool_mapping(values["results"], "results")
        exists = values["exists"] and bool(names)
        if values["exists"] and not names:
            logger.warning(f"No DSC configurations found in '{script_path}'")

        return replace(
            self.template,
            exists=exists,
            sub_targets=names,
            sub_target_status={n: status.get(n, False) for n in names},
        )

    async def configure(self, context: OperationContext, sub_target: str) -> None:
        script_text = ENACT_SCRIPT if self.template.exists else REMOVE_SCRIPT
        job = self._job(
            script_text,
            {"scriptPath": context.staged["script"], "configName": sub_target},
            label=f"dsc:{'enact' if self.template.exists else 'remove'}:{sub_target}",
        )
        logger.debug(f"Enacting DSC configuration '{sub_target}'...")
        await context.run(job)

    def describe_action(self, sub_target: str) -> str:
        if self.template.exists:
            return f"enact DSC configuration '{sub_target}'"
        return f"remove DSC configuration '{sub_target}'"
