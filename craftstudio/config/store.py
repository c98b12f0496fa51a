"""
Application Config Store

Owns the global CraftStudio document (~/.craftstudio/config.json):
- Load with schema migration and default back-fill
- Partial updates merged in memory, persisted asynchronously
- Reset to built-in defaults

The in-memory document is the authority for the running session. A failed
write is logged and leaves the on-disk copy stale until the next successful
write; it never rolls back the in-memory state and is never retried.
"""

import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from craftstudio.config.migrations import CURRENT_SCHEMA_VERSION, migrate
from craftstudio.config.schema import (
    ApplicationConfig,
    InstanceConfig,
    merge_application_config,
)
from craftstudio.core.tasks import BackgroundTasks
from craftstudio.core.utils.atomic_write import atomic_write_json

logger = logging.getLogger(__name__)


def default_application_config() -> ApplicationConfig:
    """Built-in defaults used on first run and by reset()"""
    return ApplicationConfig(schema_version=CURRENT_SCHEMA_VERSION)


class ConfigStore:
    """
    Manages the global application document

    Features:
    - File-based storage with atomic writes
    - Versioned schema, migrated once at load
    - Embedded (schema v1) instance records kept aside for the registry and
      kept in the written document until each has its own config file
    """

    def __init__(self, config_file: Path, tasks: Optional[BackgroundTasks] = None):
        self.config_file = Path(config_file).expanduser()
        self.tasks = tasks or BackgroundTasks("config-store")
        self._config = default_application_config()
        self._legacy_instances: Dict[str, InstanceConfig] = {}
        self._unmigrated: Dict[str, Dict[str, Any]] = {}
        self._write_lock: Optional[asyncio.Lock] = None
        self.loaded = False

    @property
    def config(self) -> ApplicationConfig:
        return self._config

    # ---------- Load ----------

    def load(self) -> ApplicationConfig:
        """
        Load the document from disk

        Missing file: defaults are used and written. Unreadable file: the error
        is logged and defaults are used in memory; the file is left untouched.
        Inside an event loop the write is scheduled, not done inline.
        """
        if not self.config_file.exists():
            logger.info(f"No config file found at {self.config_file}, using defaults")
            self._config = default_application_config()
            self.loaded = True
            self._persist()
            return self._config

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("top-level value is not an object")
        except Exception as e:
            logger.error(f"Failed to load config {self.config_file}: {e}, using defaults")
            self._config = default_application_config()
            self.loaded = True
            return self._config

        result = migrate(raw)
        self._legacy_instances = {}
        self._unmigrated = {}
        for record in result.embedded_instances:
            instance = InstanceConfig.from_dict(record)
            if instance.id:
                self._legacy_instances[instance.id] = instance
                self._unmigrated[instance.id] = record

        config = ApplicationConfig.from_dict(result.document, CURRENT_SCHEMA_VERSION)
        active_fixed = config.ensure_active_instance()
        self._config = config
        self.loaded = True

        logger.info(
            f"Loaded config: schema v{config.schema_version}, {len(config.instances)} instances"
        )

        if result.changed or active_fixed:
            if result.changed:
                logger.info(
                    f"Configuration migrated v{result.from_version} -> v{result.to_version} "
                    f"({len(result.embedded_instances)} embedded instances)"
                )
            self._persist()

        return self._config

    def pop_legacy_instance(self, instance_id: str) -> Optional[InstanceConfig]:
        """
        Hand out, once, a full record lifted from an embedded entry

        The record stays embedded in the written document until
        release_legacy_instance() confirms it has its own config file.
        """
        return self._legacy_instances.pop(instance_id, None)

    def release_legacy_instance(self, instance_id: str) -> Optional[asyncio.Task]:
        """Stop carrying an embedded record; persists the reference-only entry"""
        self._legacy_instances.pop(instance_id, None)
        if self._unmigrated.pop(instance_id, None) is None:
            return None
        logger.info(f"Embedded record for {instance_id} released")
        return self._persist()

    @property
    def legacy_instance_ids(self) -> List[str]:
        return list(self._legacy_instances)

    @property
    def unmigrated_instance_ids(self) -> List[str]:
        return list(self._unmigrated)

    # ---------- Mutation ----------

    def update(self, patch: Dict[str, Any]) -> Optional[asyncio.Task]:
        """
        Merge a partial document and persist it

        Args:
            patch: camelCase keys of ApplicationConfig (e.g. ``instances``,
                ``activeInstanceId``, ``ui``)

        Returns:
            The persistence task when called inside an event loop, else None
            (the write already happened synchronously)
        """
        self._config = merge_application_config(self._config, patch)
        return self._persist()

    def update_section(self, section: str, patch: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Shallow-merge ``patch`` into one dict section (``solana`` or ``ui``)"""
        if section not in ("solana", "ui"):
            raise ValueError(f"Unknown config section: {section}")
        return self.update({section: patch})

    def reset(self) -> Optional[asyncio.Task]:
        """Restore built-in defaults and persist them"""
        self._config = default_application_config()
        self._legacy_instances = {}
        self._unmigrated = {}
        logger.info("Configuration reset to defaults")
        return self._persist()

    # ---------- Persistence ----------

    def _snapshot(self) -> Dict[str, Any]:
        document = self._config.to_dict()
        if self._unmigrated:
            document["instances"] = [self._embed(entry) for entry in document["instances"]]
        return document

    def _embed(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        record = self._unmigrated.get(entry["id"])
        if record is None:
            return entry
        embedded = copy.deepcopy(record)
        embedded.update(entry)
        return embedded

    def _persist(self) -> Optional[asyncio.Task]:
        snapshot = self._snapshot()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._save_now(snapshot)
            return None
        return self.tasks.spawn(self._save_async(snapshot), name="config-store.save")

    async def _save_async(self, snapshot: Dict[str, Any]) -> None:
        # Writes land in the order they were scheduled
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            try:
                await asyncio.to_thread(atomic_write_json, self.config_file, snapshot)
                logger.debug(f"Saved config: {len(snapshot.get('instances', []))} instances")
            except Exception as e:
                logger.error(f"Failed to save config {self.config_file}: {e}")

    def _save_now(self, snapshot: Dict[str, Any]) -> bool:
        try:
            atomic_write_json(self.config_file, snapshot)
            return True
        except Exception as e:
            logger.error(f"Failed to save config {self.config_file}: {e}")
            return False
