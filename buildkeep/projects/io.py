"""Project definition import/export.

This module provides helpers for reading project definitions from YAML or
JSON files and writing them back out.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from buildkeep.projects.schema import ProjectSchema

SUPPORTED_SUFFIXES = (".yaml", ".yml", ".json")


def _check_suffix(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )
    return suffix


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_project(path: Path) -> ProjectSchema:
    """Load and validate a project definition (YAML or JSON).

    File format is determined by extension.

    Args:
        path: Path to the definition file.

    Returns:
        Validated ProjectSchema instance.

    Raises:
        ValueError: If the extension is not supported.
        pydantic.ValidationError: If data does not match the schema.
    """
    if _check_suffix(path) == ".json":
        data = load_json(path)
    else:
        data = load_yaml(path)
    return ProjectSchema.model_validate(data)


def project_to_dict(project: ProjectSchema) -> dict[str, Any]:
    """Plain data form of a project definition, defaults omitted."""
    return project.model_dump(mode="json", exclude_none=True, exclude_defaults=True)


def project_to_yaml_string(project: ProjectSchema) -> str:
    result: str = yaml.dump(
        project_to_dict(project),
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
    )
    return result


def project_to_json_string(project: ProjectSchema) -> str:
    return json.dumps(project_to_dict(project), indent=2, ensure_ascii=False)


def export_project(project: ProjectSchema, path: Path) -> None:
    """Write a project definition to a file (YAML or JSON by extension).

    Raises:
        ValueError: If the extension is not supported.
    """
    if _check_suffix(path) == ".json":
        text = project_to_json_string(project) + "\n"
    else:
        text = project_to_yaml_string(project)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


__all__ = [
    "SUPPORTED_SUFFIXES",
    "export_project",
    "load_json",
    "load_project",
    "load_yaml",
    "project_to_dict",
    "project_to_json_string",
    "project_to_yaml_string",
]
