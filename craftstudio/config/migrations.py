"""
Global config schema migrations

Schema history:
- v1: instances are embedded as full records in the global document
- v2: the global document keeps only ``{id, dataDir}`` references; full
      instance configs live in ``<dataDir>/config.json``

Migrations run once at load, bump ``schemaVersion`` monotonically, and are
idempotent: migrating an already-migrated document changes nothing.

A v2 document can still carry embedded records: the store keeps a lifted
record embedded until its ``<dataDir>/config.json`` has been written. Those
are lifted again on every load.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1

REF_KEYS = {"id", "dataDir"}


@dataclass
class MigrationResult:
    """Outcome of migrating one raw document"""
    document: Dict[str, Any]
    from_version: int
    to_version: int
    embedded_instances: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.from_version != self.to_version or bool(self.embedded_instances)


def detect_version(document: Dict[str, Any]) -> int:
    """Schema version of a raw document (documents without one are v1)"""
    try:
        return int(document.get("schemaVersion", LEGACY_SCHEMA_VERSION))
    except (TypeError, ValueError):
        logger.warning(f"Invalid schemaVersion {document.get('schemaVersion')!r}, assuming v1")
        return LEGACY_SCHEMA_VERSION


def _is_embedded(entry: Any) -> bool:
    return isinstance(entry, dict) and bool(set(entry) - REF_KEYS)


def _lift_embedded(document: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Replace embedded instance records with references"""
    embedded: List[Dict[str, Any]] = []
    refs: List[Any] = []
    for entry in document.get("instances") or []:
        if _is_embedded(entry):
            embedded.append(copy.deepcopy(entry))
            refs.append({"id": entry.get("id", ""), "dataDir": entry.get("dataDir", "")})
        else:
            refs.append(entry)
    document["instances"] = refs
    return document, embedded


# from_version -> step producing from_version + 1
MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Tuple[Dict[str, Any], List[Dict[str, Any]]]]] = {
    1: _lift_embedded,
}


def migrate(document: Dict[str, Any]) -> MigrationResult:
    """
    Bring a raw global document up to CURRENT_SCHEMA_VERSION

    Args:
        document: Parsed JSON (not modified)

    Returns:
        MigrationResult with the migrated copy and any embedded instance
        records lifted out of it
    """
    doc = copy.deepcopy(document)
    from_version = detect_version(doc)
    version = from_version
    embedded: List[Dict[str, Any]] = []

    while version < CURRENT_SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is not None:
            doc, lifted = step(doc)
            embedded.extend(lifted)
        logger.info(f"Migrated config schema v{version} -> v{version + 1}")
        version += 1

    if from_version <= CURRENT_SCHEMA_VERSION:
        doc, pending = _lift_embedded(doc)
        if pending:
            logger.info(f"Lifting {len(pending)} embedded instance records not yet written to their data dirs")
            embedded.extend(pending)

    # Versions newer than ours are kept as-is; never downgrade
    doc["schemaVersion"] = max(version, from_version)

    return MigrationResult(
        document=doc,
        from_version=from_version,
        to_version=doc["schemaVersion"],
        embedded_instances=embedded,
    )
