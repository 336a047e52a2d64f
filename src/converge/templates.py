# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Template loading.

A template file is YAML with a ``resources`` list. Each entry names its
``kind``; the remaining keys are fields of that kind's configuration:

    resources:
      - kind: dsc
        key: web-baseline
        script_asset: global::WebBaseline.ps1
        verbose_logging: true
"""

from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from converge.errors import ValidationError
from converge.resources import operation_class
from converge.schemas.configuration import Configuration


def parse_template(entry: Dict[str, Any]) -> Configuration:
    """Build one template from its YAML mapping.

    Raises:
        ValidationError: If the kind is missing or unknown, or the mapping
            has fields the kind does not declare.
    """
    if not isinstance(entry, dict):
        raise ValidationError(f"resource entry must be a mapping, got: {entry!r}")
    data = dict(entry)
    kind = data.pop("kind", None)
    if not kind:
        raise ValidationError(f"resource entry is missing 'kind': {entry!r}")
    return operation_class(kind).configuration_class.from_dict(data)


def parse_templates(data: Any) -> List[Configuration]:
    """Build every template in a parsed template document.

    Mandatory identity fields are not checked here; the engine validates
    each template at the start of its run.

    Raises:
        ValidationError: If the document is malformed or two resources
            share a configuration key.
    """
    if not isinstance(data, dict) or "resources" not in data:
        raise ValidationError("template document must be a mapping with a 'resources' list")
    entries = data["resources"] or []
    if not isinstance(entries, list):
        raise ValidationError("'resources' must be a list")

    templates = []
    seen = set()
    for entry in entries:
        template = parse_template(entry)
        key = template.configuration_key
        if key and key in seen:
            raise ValidationError(f"duplicate configuration key '{key}'")
        seen.add(key)
        templates.append(template)
    return templates


def load_templates(path: Union[str, Path]) -> List[Configuration]:
    """Load templates from a YAML file.

    Raises:
        ValidationError: If the file is missing, is not valid YAML, or
            describes malformed resources.
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Template file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}")
    return parse_templates(data)
