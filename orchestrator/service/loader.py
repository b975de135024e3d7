"""
YAML loaders for deployment configurations and scaling policies.
"""

import logging
from pathlib import Path
from typing import List, Union

import yaml
from pydantic import ValidationError

from .deployment.models import DeploymentConfig
from .errors import ConfigValidationError
from .scaling.models import ScalingPolicy

logger = logging.getLogger(__name__)


def _read(path: Union[str, Path]) -> str:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    return path.read_text(encoding="utf-8")


def load_deployment_config_from_yaml(yaml_content: str) -> DeploymentConfig:
    """
    Parse a deployment configuration from a YAML string.

    Raises:
        ConfigValidationError: If the YAML or the configuration is invalid
    """
    try:
        data = yaml.safe_load(yaml_content)
        if not isinstance(data, dict):
            raise ConfigValidationError("Deployment configuration must be a mapping")
        deployment = DeploymentConfig(**data)
        logger.info(f"Loaded deployment configuration '{deployment.name}' ({deployment.id})")
        return deployment

    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML in deployment configuration: {e}")
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid deployment configuration: {e}")


def load_deployment_config(path: Union[str, Path]) -> DeploymentConfig:
    """
    Load a deployment configuration file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigValidationError: If the configuration is invalid
    """
    return load_deployment_config_from_yaml(_read(path))


def load_scaling_policies_from_yaml(yaml_content: str) -> List[ScalingPolicy]:
    """
    Parse scaling policies from a YAML string.

    The document is either a list of policies or a mapping with a
    ``policies`` key.

    Raises:
        ConfigValidationError: If the YAML or a policy is invalid
    """
    try:
        data = yaml.safe_load(yaml_content) or []
        if isinstance(data, dict):
            data = data.get("policies", [])
        if not isinstance(data, list):
            raise ConfigValidationError("Scaling policies must be a list")
        policies = [ScalingPolicy(**entry) for entry in data]
        logger.info(f"Loaded {len(policies)} scaling policies")
        return policies

    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML in scaling policies: {e}")
    except (ValidationError, TypeError) as e:
        raise ConfigValidationError(f"Invalid scaling policy: {e}")


def load_scaling_policies(path: Union[str, Path]) -> List[ScalingPolicy]:
    """Load scaling policies from a YAML file."""
    return load_scaling_policies_from_yaml(_read(path))
