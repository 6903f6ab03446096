"""
Playbook Catalog

Holds every published playbook version:
- publish validates a definition and freezes it under the next version
- resolve returns a pinned version for execution-time lookup
- activation toggles whether new executions may start
- prune drops old versions that no live execution pins
"""

from typing import Dict, Iterable, List, Optional

from playbook_engine.exceptions import NotFoundError, ValidationError
from playbook_engine.logging_config import get_logger

from .graph import PlaybookDefinition, validate
from .nodes import NodeTypeRegistry

logger = get_logger(__name__)


class PlaybookCatalog:
    """
    In-memory catalog of published playbook versions.

    Published definitions are never mutated structurally; a structural edit
    is a new `publish` call. Lookups hand out deep copies, so editing a
    returned node config never reaches the stored version. Version numbers are monotonic per playbook id
    and are never reused, even after pruning.
    """

    def __init__(self, registry: NodeTypeRegistry):
        self._registry = registry
        self._versions: Dict[str, Dict[int, PlaybookDefinition]] = {}
        self._last_version: Dict[str, int] = {}

    def validate(self, definition: PlaybookDefinition) -> str:
        """
        Validate without publishing.

        Returns:
            ID of the entry node

        Raises:
            ValidationError: If the definition is invalid
        """
        return validate(definition, self._registry)

    def publish(self, definition: PlaybookDefinition) -> int:
        """
        Validate and publish a definition as the next version of its id.

        Returns:
            The assigned version number

        Raises:
            ValidationError: If the definition is invalid
        """
        entry = validate(definition, self._registry)

        owner = self._owner(definition.id)
        if owner is not None and owner != definition.organization_id:
            raise ValidationError(
                f"Playbook {definition.id} belongs to another organization"
            )

        version = self._last_version.get(definition.id, 0) + 1
        published = definition.model_copy(
            update={"version": version, "entry_node_id": entry},
            deep=True,
        )

        self._versions.setdefault(definition.id, {})[version] = published
        self._last_version[definition.id] = version

        logger.info(
            "Playbook published",
            playbook_id=definition.id,
            version=version,
            nodes=len(published.nodes),
            active=published.active,
        )
        return version

    def resolve(self, playbook_id: str, version: int) -> PlaybookDefinition:
        """
        Get a specific published version.

        Raises:
            NotFoundError: If the version was never published or was pruned
        """
        definition = self._versions.get(playbook_id, {}).get(version)
        if definition is None:
            raise NotFoundError("PlaybookVersion", f"{playbook_id}@{version}")
        return definition.model_copy(deep=True)

    def latest(self, playbook_id: str) -> PlaybookDefinition:
        """
        Get the most recent published version.

        Raises:
            NotFoundError: If the playbook was never published
        """
        versions = self._versions.get(playbook_id)
        if not versions:
            raise NotFoundError("Playbook", playbook_id)
        return versions[max(versions)].model_copy(deep=True)

    def versions(self, playbook_id: str) -> List[int]:
        """Published versions still resolvable, oldest first."""
        return sorted(self._versions.get(playbook_id, {}))

    def list_latest(self, organization_id: Optional[str] = None) -> List[PlaybookDefinition]:
        """Latest version of every playbook, optionally for one organization."""
        result = []
        for playbook_id in self._versions:
            definition = self.latest(playbook_id)
            if organization_id is None or definition.organization_id == organization_id:
                result.append(definition)
        return result

    def set_active(self, playbook_id: str, active: bool) -> PlaybookDefinition:
        """
        Activate or deactivate a playbook.

        The flag is not structural, so every stored version is swapped for a
        copy carrying the new flag; in-flight executions keep running.

        Raises:
            NotFoundError: If the playbook was never published
        """
        versions = self._versions.get(playbook_id)
        if not versions:
            raise NotFoundError("Playbook", playbook_id)

        for version, definition in list(versions.items()):
            versions[version] = definition.model_copy(update={"active": active})

        logger.info("Playbook activation changed", playbook_id=playbook_id, active=active)
        return self.latest(playbook_id)

    def prune(
        self,
        playbook_id: str,
        keep_last: int,
        pinned: Iterable[int] = (),
    ) -> List[int]:
        """
        Drop old versions.

        Args:
            playbook_id: Playbook to prune
            keep_last: Number of newest versions to keep (0 keeps everything)
            pinned: Versions referenced by live executions; never dropped

        Returns:
            Versions that were removed
        """
        versions = self._versions.get(playbook_id)
        if not versions or keep_last <= 0:
            return []

        keep = set(sorted(versions)[-keep_last:]) | set(pinned)
        removed = [v for v in sorted(versions) if v not in keep]
        for version in removed:
            del versions[version]

        if removed:
            logger.info("Playbook versions pruned", playbook_id=playbook_id, removed=removed)
        return removed

    def _owner(self, playbook_id: str) -> Optional[str]:
        versions = self._versions.get(playbook_id)
        if not versions:
            return None
        return next(iter(versions.values())).organization_id
