"""
Content hashes for templates and configuration.

A revision is a short SHA-256 over the canonical JSON of an instance
template (version, image, configuration, resource shape). Two templates
with the same content always hash to the same revision, so re-applying an
unchanged desired state never triggers a rollout.
"""

import hashlib
import json

from orchestrator_core.types import InstanceTemplate, UpdateStrategy

REVISION_LENGTH = 10


def config_hash(config: str) -> str:
    """Hash of a configuration blob."""
    return hashlib.sha256(config.encode("utf-8")).hexdigest()[:16]


def compute_revision(template: InstanceTemplate) -> str:
    """
    Content hash of an instance template.

    Args:
        template: Template to hash

    Returns:
        Hex digest prefix identifying the template content
    """
    payload = json.dumps(template.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:REVISION_LENGTH]


def only_config_changed(old: InstanceTemplate, new: InstanceTemplate) -> bool:
    """True if the templates differ in nothing but the config blob."""
    return old.config != new.config and old.model_copy(
        update={"config": new.config}
    ) == new


def can_hot_reload(
    old: InstanceTemplate, new: InstanceTemplate, strategy: UpdateStrategy
) -> bool:
    """Whether moving from ``old`` to ``new`` can skip the restart."""
    return strategy is UpdateStrategy.HOT_RELOAD and only_config_changed(old, new)
