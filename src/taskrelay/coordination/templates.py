"""Pipeline template files and configuration validation."""

import yaml
from pathlib import Path
from typing import Dict, List, Union

from ..core.exceptions import ConfigError
from ..models.pipeline import PipelineConfig, PipelineTemplate


def validate_pipeline_config(config: PipelineConfig, max_step_count: int = 10) -> None:
    """
    Check a pipeline configuration before anything is created.

    Raises:
        ConfigError: If the configuration is unusable
    """
    if not config.steps:
        raise ConfigError("Pipeline must have at least one step")

    seen: List[str] = []
    for step in config.steps:
        if not step.id:
            raise ConfigError("Pipeline step is missing an id")
        if step.id in seen:
            raise ConfigError(f"Duplicate pipeline step id: {step.id}")
        if not 1 <= step.count <= max_step_count:
            raise ConfigError(
                f"Step '{step.id}' count must be between 1 and {max_step_count}, got {step.count}"
            )
        unknown = [dep for dep in step.depends_on if dep not in seen]
        if unknown:
            raise ConfigError(
                f"Step '{step.id}' depends on steps that do not precede it: {', '.join(unknown)}"
            )
        seen.append(step.id)


def load_pipeline_templates(path: Union[str, Path]) -> Dict[str, PipelineTemplate]:
    """
    Load templates from a YAML file.

    The file holds either a list of templates or ``{"templates": [...]}``.

    Raises:
        ConfigError: If the file is missing, unparsable or holds invalid templates
    """
    filepath = Path(path)
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Pipeline templates file not found: {filepath}", original_error=e)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {filepath}: {e}", original_error=e)

    if isinstance(data, dict):
        data = data.get("templates", [])
    if not isinstance(data, list):
        raise ConfigError(f"{filepath} must contain a list of templates")

    templates = {}
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("id"):
            raise ConfigError(f"{filepath}: every template needs an id")
        template = PipelineTemplate.from_dict(entry)
        validate_pipeline_config(template.to_config())
        templates[template.id] = template
    return templates


def save_pipeline_templates(path: Union[str, Path], templates: List[PipelineTemplate]) -> str:
    """Write templates to a YAML file. Returns the file path."""
    filepath = Path(path)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'w', encoding='utf-8') as f:
        yaml.dump(
            {"templates": [template.to_dict() for template in templates]},
            f,
            allow_unicode=True,
            default_flow_style=False,
            sort_keys=False
        )
    return str(filepath)
