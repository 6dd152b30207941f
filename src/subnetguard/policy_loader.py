"""Policy file loading with validation.

SECURITY: File size is checked before reading to prevent DoS via large
files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_POLICY_FILE_SIZE_BYTES
from .models import PolicySpec

logger = logging.getLogger(__name__)

POLICY_KIND = "SubnetPolicy"


class PolicyLoadError(Exception):
    """Raised when policy loading or validation fails."""

    pass


def load_policy(policy_path: Path) -> PolicySpec:
    """Load and validate a policy file from YAML.

    Args:
        policy_path: Path to the policy file.

    Returns:
        Validated policy instance.

    Raises:
        PolicyLoadError: If the policy cannot be loaded or fails validation.
    """
    if not policy_path.exists():
        raise PolicyLoadError(f"Policy file not found: {policy_path}")

    try:
        file_size = policy_path.stat().st_size
    except OSError as e:
        raise PolicyLoadError(f"Failed to stat policy file {policy_path}: {e}") from e

    if file_size > MAX_POLICY_FILE_SIZE_BYTES:
        raise PolicyLoadError(
            f"Policy file exceeds maximum size of {MAX_POLICY_FILE_SIZE_BYTES} bytes: {policy_path}"
        )

    try:
        content = policy_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PolicyLoadError(f"Failed to read policy file {policy_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PolicyLoadError(f"Invalid YAML in {policy_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise PolicyLoadError(f"Policy file must contain a YAML mapping: {policy_path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind")
        if kind is not None and kind != POLICY_KIND:
            raise PolicyLoadError(
                f"Unsupported kind '{kind}' in {policy_path}, expected '{POLICY_KIND}'"
            )
        policy_data = raw_data.get("spec", {})
        if not isinstance(policy_data, dict):
            raise PolicyLoadError(f"Spec section must be a mapping: {policy_path}")
    else:
        policy_data = raw_data

    try:
        policy = PolicySpec.model_validate(policy_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")

        error_list = "\n".join(errors)
        raise PolicyLoadError(f"Validation failed for {policy_path}:\n{error_list}") from e

    logger.info(
        "Loaded policy from %s",
        policy_path,
        extra={
            "regions": len(policy.regions),
            "role_assignments": len(policy.role_assignments),
        },
    )
    return policy
