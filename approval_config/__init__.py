"""
approval_config -- single public entrypoint for approval policy sets.

Responsibility:
    ``get_active_policies()`` loads a YAML policy set, validates it and
    returns a ``PolicySet`` of immutable ``ApprovalPolicy`` objects.
    YAML parsing is internal tooling and never exposed to callers.

Architecture position:
    Configuration.  Sits above ``approval_kernel`` and below
    ``approval_services``.  The kernel MUST NEVER import from here.

Failure modes:
    - ``FileNotFoundError`` -- no set file with the requested name.
    - ``ValueError`` -- validation failures, listed one per line.

Audit relevance:
    Every successful load emits an ``APPROVAL_CONFIG_TRACE`` log entry with
    the config id, version, checksum and policy count.
"""

from __future__ import annotations

from pathlib import Path

from approval_config.loader import PolicySet, load_yaml_file, parse_policy_set
from approval_config.validator import validate_policy_set
from approval_kernel.logging_config import get_logger

_logger = get_logger("config")

# Default policy sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_policies(set_name: str, config_dir: Path | None = None) -> PolicySet:
    """Load, validate and return the policy set ``<config_dir>/<set_name>.yaml``.

    Args:
        set_name: File stem of the policy set.
        config_dir: Override path to the sets directory.
            Defaults to approval_config/sets/.

    Raises:
        FileNotFoundError: If the set file does not exist.
        ValueError: If validation fails.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{set_name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Policy set not found: {path}")

    data = load_yaml_file(path)
    validation = validate_policy_set(data)
    if not validation.is_valid:
        raise ValueError(
            "Policy set validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning("policy_set_warning", extra={"warning": warning})

    policy_set = parse_policy_set(data)

    _logger.info(
        "APPROVAL_CONFIG_TRACE",
        extra={
            "trace_type": "APPROVAL_CONFIG_TRACE",
            "config_set_id": policy_set.config_id,
            "config_set_version": policy_set.version,
            "checksum": policy_set.checksum,
            "policy_count": len(policy_set.policies),
        },
    )
    return policy_set


__all__ = ["PolicySet", "get_active_policies"]
