"""
Instance Registry

Authoritative in-memory set of daemon instances and the orchestration of
their lifecycle:
- add / update / remove / restart
- control connection setup and connection status tracking
- startup load from the global config document

Three copies of an instance's configuration are kept consistent: the record
held here, ``<dataDir>/config.json`` on disk, and the live configuration of
the running daemon. Edits are written to disk first, then either pushed to
the daemon over the control channel (hot reload) or applied through a
stop -> reconfigure -> start -> reconnect cycle (restart).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from craftstudio.config.runtime import RuntimeConfigError, WorkerRuntimeConfig, read_runtime_config
from craftstudio.config.schema import InstanceConfig
from craftstudio.config.store import ConfigStore
from craftstudio.core.config import CraftStudioSettings, get_config
from craftstudio.core.tasks import BackgroundTasks
from craftstudio.daemon.client import DaemonClient
from craftstudio.daemon.errors import DaemonAlreadyRunning, DaemonClientError
from craftstudio.daemon.events import describe_event, format_bytes
from craftstudio.daemon.logging_utils import OperationTimer, get_daemon_logger
from craftstudio.daemon.supervisor import DaemonDescriptor, DaemonSupervisor
from craftstudio.instances.activity import ActivityCategory, ActivityEvent, ActivityLevel, ActivityLog
from craftstudio.instances.reconciler import (
    ReloadAction,
    apply_patch,
    build_descriptor,
    classify,
    instance_from_runtime,
    merge_runtime_config,
    read_instance_config,
    runtime_patch,
    write_instance_config,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], DaemonClient]


class RegistryError(Exception):
    """Base class for registry boundary errors"""
    pass


class InstanceNotFoundError(RegistryError):
    pass


class DuplicateInstanceError(RegistryError):
    pass


class InvalidInstanceError(RegistryError):
    pass


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RestartPhase(str, Enum):
    IDLE = "idle"
    STOPPING = "stopping"
    RECONFIGURING = "reconfiguring"
    STARTING = "starting"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class RestartResult:
    """Outcome of one restart; step failures are collected, not raised"""
    instance_id: str
    stopped_pid: Optional[int] = None
    started_pid: Optional[int] = None
    already_running: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _same_path(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return Path(a).expanduser() == Path(b).expanduser()


class InstanceRegistry:
    """
    Registry of daemon instances

    Usage:
        registry = InstanceRegistry(store, supervisor)
        await registry.load_from_config()
        action = await registry.update(instance_id, {"maxStorageGB": 100})
        await registry.shutdown()
    """

    def __init__(
        self,
        store: ConfigStore,
        supervisor: DaemonSupervisor,
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[CraftStudioSettings] = None,
        activity: Optional[ActivityLog] = None,
        tasks: Optional[BackgroundTasks] = None,
    ):
        self.settings = settings or get_config()
        self.store = store
        self.supervisor = supervisor
        self.client_factory = client_factory or self._default_client_factory
        self.activity_log = activity or ActivityLog(self.settings.activity_log_capacity)
        self.tasks = tasks or BackgroundTasks("instances")
        self.slog = get_daemon_logger()

        self._instances: Dict[str, InstanceConfig] = {}
        self.active_id: Optional[str] = None
        self._status: Dict[str, ConnectionStatus] = {}
        self._api_keys: Dict[str, str] = {}
        self._clients: Dict[str, DaemonClient] = {}
        self._restart_locks: Dict[str, asyncio.Lock] = {}
        self._write_locks: Dict[str, asyncio.Lock] = {}
        self._phases: Dict[str, RestartPhase] = {}

    def _default_client_factory(self, instance_id: str, url: str) -> DaemonClient:
        return DaemonClient(
            instance_id,
            url,
            reconnect_interval=self.settings.reconnect_interval_seconds,
            request_timeout=self.settings.request_timeout_seconds,
        )

    # ---------- Queries ----------

    @property
    def instances(self) -> List[InstanceConfig]:
        return [instance.copy() for instance in self._instances.values()]

    def get(self, instance_id: str) -> Optional[InstanceConfig]:
        instance = self._instances.get(instance_id)
        return instance.copy() if instance is not None else None

    def get_client(self, instance_id: str) -> Optional[DaemonClient]:
        return self._clients.get(instance_id)

    def get_active_client(self) -> Optional[DaemonClient]:
        if self.active_id is None:
            return None
        return self._clients.get(self.active_id)

    def connection_status(self, instance_id: str) -> Optional[ConnectionStatus]:
        return self._status.get(instance_id)

    def activity(self, instance_id: str) -> List[ActivityEvent]:
        return self.activity_log.events(instance_id)

    def restart_phase(self, instance_id: str) -> RestartPhase:
        return self._phases.get(instance_id, RestartPhase.IDLE)

    # ---------- Internals ----------

    def _log(
        self,
        instance_id: str,
        message: str,
        level: ActivityLevel = ActivityLevel.INFO,
        category: ActivityCategory = ActivityCategory.SYSTEM,
    ) -> None:
        # Removed instances get no new entries
        if instance_id in self._instances:
            self.activity_log.log(instance_id, message, level, category)

    def _set_phase(self, instance_id: str, phase: RestartPhase) -> None:
        if instance_id in self._instances:
            self._phases[instance_id] = phase
        logger.debug(f"[{instance_id}] restart phase -> {phase.value}")

    def _persist_refs(self) -> None:
        self.store.update({
            "instances": [instance.ref().to_dict() for instance in self._instances.values()],
            "activeInstanceId": self.active_id,
        })

    def _require(self, instance_id: str) -> InstanceConfig:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Unknown instance: {instance_id}")
        return instance

    @staticmethod
    def _descriptor_for(instance: InstanceConfig) -> DaemonDescriptor:
        return build_descriptor(merge_runtime_config(None, instance), instance.data_dir)

    async def _destroy_client(self, instance_id: str) -> None:
        client = self._clients.pop(instance_id, None)
        if client is not None:
            await client.destroy()

    async def _write_config(self, instance: InstanceConfig) -> Optional[WorkerRuntimeConfig]:
        """
        Write ``<dataDir>/config.json`` for ``instance``

        Writes for one instance run one at a time, in call order. Returns None
        (nothing written) when the instance has no data directory. A
        successful write also releases any embedded copy the global document
        still carries.
        """
        if not instance.data_dir:
            return None
        snapshot = instance.copy()
        lock = self._write_locks.setdefault(snapshot.id, asyncio.Lock())
        async with lock:
            runtime = await asyncio.to_thread(write_instance_config, snapshot.data_dir, snapshot)
        self.store.release_legacy_instance(snapshot.id)
        return runtime

    # ---------- add ----------

    async def add(self, instance: InstanceConfig, api_key: Optional[str] = None) -> InstanceConfig:
        """
        Register a new instance

        An existing daemon config in the data directory is adopted (its values
        win, ``id`` and ``data_dir`` come from ``instance``).

        Raises:
            InvalidInstanceError: no data directory
            DuplicateInstanceError: id or data directory already registered
        """
        if not instance.data_dir:
            raise InvalidInstanceError(f"Instance {instance.id} has no data directory")
        if instance.id in self._instances:
            raise DuplicateInstanceError(f"Instance id already registered: {instance.id}")
        for other in self._instances.values():
            if _same_path(other.data_dir, instance.data_dir):
                raise DuplicateInstanceError(
                    f"Data directory already used by instance {other.id}: {instance.data_dir}"
                )

        final = instance.copy()
        adopted = False
        try:
            existing = await asyncio.to_thread(read_runtime_config, final.data_dir)
        except RuntimeConfigError as e:
            logger.warning(f"[{instance.id}] Ignoring unreadable config: {e}")
            existing = None
        if existing is not None and existing.capabilities and existing.ws_port > 0:
            final = instance_from_runtime(existing, instance.data_dir, base=instance)
            final.id = instance.id
            adopted = True

        self._instances[final.id] = final
        self.active_id = final.id
        if api_key:
            self._api_keys[final.id] = api_key

        if adopted:
            self._log(final.id, f"Adopted existing configuration in {final.data_dir}")
        logger.info(f"Added instance {final.id} ({final.name}) at {final.data_dir}")

        try:
            await self._write_config(final)
        except OSError as e:
            logger.error(f"[{final.id}] Failed to write instance config: {e}")

        self._persist_refs()

        if final.auto_start:
            await self._auto_start(final.id)
        else:
            await self.init_client(final.id)
        return final.copy()

    async def _auto_start(self, instance_id: str) -> None:
        """Start the daemon (already-running is fine), then connect"""
        instance = self._instances.get(instance_id)
        if instance is None:
            return
        try:
            await self.supervisor.start_daemon(self._descriptor_for(instance))
            self._log(instance_id, "Daemon auto-started", ActivityLevel.SUCCESS)
        except DaemonAlreadyRunning as e:
            logger.debug(f"[{instance_id}] {e}")
        except Exception as e:
            logger.warning(f"[{instance_id}] Auto-start failed: {e}")
            self._log(instance_id, f"Auto-start failed: {e}", ActivityLevel.WARN)
        await self.init_client(instance_id)

    # ---------- update ----------

    async def update(self, instance_id: str, patch: Dict[str, Any]) -> ReloadAction:
        """
        Apply a configuration patch

        The on-disk config is rewritten immediately. Hot-reloadable fields are
        pushed to a connected daemon in the background; restart-required
        fields trigger a restart before this returns. Nothing is applied when
        the instance is removed while its config is being written.

        Raises:
            InstanceNotFoundError: unknown id
        """
        current = self._require(instance_id)
        action = classify(patch)
        updated = apply_patch(current, patch)
        self._instances[instance_id] = updated

        try:
            await self._write_config(updated)
        except OSError as e:
            logger.error(f"[{instance_id}] Failed to write instance config: {e}")

        if instance_id not in self._instances:
            logger.info(f"[{instance_id}] Removed while updating, nothing to apply")
            return action

        if action is ReloadAction.RESTART:
            logger.info(f"[{instance_id}] Restart-required change: {sorted(patch)}")
            await self._restart(instance_id)
            return action

        live = runtime_patch(patch)
        client = self._clients.get(instance_id)
        if live and client is not None and self._status.get(instance_id) == ConnectionStatus.CONNECTED:
            self.tasks.spawn(
                self._push_live_config(instance_id, client, live),
                name=f"instances.set_config:{instance_id}",
            )
        return action

    async def _push_live_config(self, instance_id: str, client: DaemonClient, patch: Dict[str, Any]) -> None:
        try:
            await client.set_runtime_config(patch)
            self._log(instance_id, f"Applied live config: {', '.join(sorted(patch))}", ActivityLevel.SUCCESS)
        except DaemonClientError as e:
            logger.warning(f"[{instance_id}] Live config push failed: {e}")
            self._log(instance_id, f"Live config push failed: {e}", ActivityLevel.WARN)

    # ---------- remove ----------

    async def remove(self, instance_id: str, stop_worker: bool = False) -> None:
        """
        Unregister an instance

        The daemon keeps running unless ``stop_worker`` is set.

        Raises:
            InstanceNotFoundError: unknown id
        """
        instance = self._require(instance_id)
        del self._instances[instance_id]
        self._status.pop(instance_id, None)
        self._api_keys.pop(instance_id, None)
        self._phases.pop(instance_id, None)
        self._restart_locks.pop(instance_id, None)
        self._write_locks.pop(instance_id, None)
        self.activity_log.clear(instance_id)

        if self.active_id == instance_id:
            self.active_id = next(iter(self._instances), None)

        await self._destroy_client(instance_id)

        if stop_worker:
            try:
                await self._stop_worker(instance)
            except Exception as e:
                logger.error(f"[{instance_id}] Failed to stop daemon: {e}")

        self.store.release_legacy_instance(instance_id)
        self._persist_refs()
        logger.info(f"Removed instance {instance_id}")

    async def _stop_worker(self, instance: InstanceConfig) -> Optional[int]:
        """Stop the daemon serving ``instance``; returns its pid when one was stopped"""
        running = await self.supervisor.list_daemons()
        match = next(
            (
                d for d in running
                if d.ws_port == instance.ws_port or _same_path(getattr(d, "data_dir", None), instance.data_dir)
            ),
            None,
        )
        if match is None:
            return None
        await self.supervisor.stop_daemon(match.pid)
        return match.pid

    # ---------- restart ----------

    async def restart_instance(self, instance_id: str) -> RestartResult:
        """
        Stop, reconfigure, start and reconnect one instance

        Restarts of the same instance run one at a time; restarts of different
        instances do not wait for each other. Every step runs even if an
        earlier one failed.

        Raises:
            InstanceNotFoundError: unknown id at the time of the call
        """
        self._require(instance_id)
        return await self._restart(instance_id)

    async def _restart(self, instance_id: str) -> RestartResult:
        lock = self._restart_locks.setdefault(instance_id, asyncio.Lock())

        async with lock:
            # The record is read after the lock is taken; a queued restart sees
            # the latest edits, or finds the instance gone
            current = self._instances.get(instance_id)
            if current is None:
                logger.warning(f"[{instance_id}] Instance removed before restart, skipping")
                return RestartResult(instance_id=instance_id, errors=["instance removed before restart"])
            snapshot = current.copy()
            result = RestartResult(instance_id=instance_id)

            self.slog.log_restart(instance_id, snapshot.ws_port)
            self._log(instance_id, "Restarting daemon...")

            with OperationTimer() as timer:
                self._set_phase(instance_id, RestartPhase.STOPPING)
                await self._destroy_client(instance_id)
                try:
                    result.stopped_pid = await self._stop_worker(snapshot)
                    if result.stopped_pid is not None:
                        self._log(instance_id, "Daemon stopped")
                        await asyncio.sleep(self.settings.stop_grace_seconds)
                except Exception as e:
                    result.errors.append(f"stop: {e}")
                    logger.warning(f"[{instance_id}] Stop failed: {e}")
                    self._log(instance_id, f"Stop failed: {e}", ActivityLevel.WARN)

                self._set_phase(instance_id, RestartPhase.RECONFIGURING)
                runtime: Optional[WorkerRuntimeConfig] = None
                try:
                    runtime = await self._write_config(snapshot)
                except Exception as e:
                    result.errors.append(f"reconfigure: {e}")
                    logger.error(f"[{instance_id}] Failed to write instance config: {e}")
                if runtime is None:
                    runtime = merge_runtime_config(None, snapshot)

                self._set_phase(instance_id, RestartPhase.STARTING)
                try:
                    proc = await self.supervisor.start_daemon(build_descriptor(runtime, snapshot.data_dir))
                    result.started_pid = proc.pid
                    self._log(instance_id, "Daemon restarted", ActivityLevel.SUCCESS)
                except DaemonAlreadyRunning as e:
                    result.already_running = True
                    logger.info(f"[{instance_id}] {e}")
                except Exception as e:
                    result.errors.append(f"start: {e}")
                    logger.error(f"[{instance_id}] Restart failed: {e}")
                    self._log(instance_id, f"Restart failed: {e}", ActivityLevel.ERROR)

                self._set_phase(instance_id, RestartPhase.RECONNECTING)
                await self.init_client(instance_id)

            self._set_phase(instance_id, RestartPhase.FAILED if result.errors else RestartPhase.IDLE)
            self.slog.log_restart_result(
                instance_id, result.ok, elapsed_ms=timer.elapsed_ms(), errors=result.errors
            )
            return result

    # ---------- control connection ----------

    async def init_client(self, instance_id: str) -> Optional[DaemonClient]:
        """
        (Re)create the control connection of an instance

        No-op (returns None) when the instance no longer exists.
        """
        instance = self._instances.get(instance_id)
        if instance is None:
            return None

        await self._destroy_client(instance_id)
        if instance_id not in self._instances:
            return None

        host = self.settings.daemon_host
        self._log(instance_id, f"Connecting to daemon at ws://{host}:{instance.ws_port}...")
        self._status[instance_id] = ConnectionStatus.CONNECTING

        client = self.client_factory(instance_id, f"ws://{host}:{instance.ws_port}/ws")
        client.on_connection(lambda connected: self._on_connection(instance_id, client, connected))
        client.on_event(lambda method, params: self._on_event(instance_id, client, method, params))
        self._clients[instance_id] = client

        await client.start(instance.data_dir, self._api_keys.get(instance_id))
        return client

    def _on_connection(self, instance_id: str, client: DaemonClient, connected: bool) -> None:
        if self._clients.get(instance_id) is not client:
            return
        if connected:
            self._status[instance_id] = ConnectionStatus.CONNECTED
            self._log(instance_id, "WebSocket connected, daemon online", ActivityLevel.SUCCESS)
            self.tasks.spawn(self._enrich_activity(instance_id, client), name=f"instances.enrich:{instance_id}")
        else:
            self._status[instance_id] = ConnectionStatus.DISCONNECTED
            self._log(instance_id, "Disconnected from daemon", ActivityLevel.ERROR)

    def _on_event(self, instance_id: str, client: DaemonClient, method: str, params: Any) -> None:
        if self._clients.get(instance_id) is not client:
            return
        description = describe_event(method, params)
        self._log(
            instance_id,
            description.message,
            ActivityLevel(description.level),
            ActivityCategory(description.category),
        )

    async def _enrich_activity(self, instance_id: str, client: DaemonClient) -> None:
        """Status and peer summaries for the activity log; failures are ignored"""
        try:
            status = await client.status()
            if status:
                self._log(
                    instance_id,
                    f"Node has {status.get('content_count', 0)} content items, "
                    f"{status.get('shard_count', 0)} shards ({format_bytes(status.get('stored_bytes') or 0)})",
                )
        except Exception as e:
            logger.debug(f"[{instance_id}] status query failed: {e}")

        try:
            peers = await client.list_peers()
            if peers is not None:
                count = len(peers)
                storage = sum(
                    1 for peer in peers.values()
                    if isinstance(peer, dict)
                    and "storage" in [str(c).lower() for c in peer.get("capabilities") or []]
                )
                if count > 0:
                    self._log(
                        instance_id,
                        f"Connected to {count} peers ({storage} storage nodes)",
                        ActivityLevel.SUCCESS,
                        ActivityCategory.ANNOUNCEMENT,
                    )
                else:
                    self._log(
                        instance_id,
                        "No peers found yet, DHT discovery in progress",
                        ActivityLevel.WARN,
                        ActivityCategory.ANNOUNCEMENT,
                    )
        except Exception as e:
            logger.debug(f"[{instance_id}] peer query failed: {e}")

    # ---------- active instance ----------

    def set_active(self, instance_id: Optional[str]) -> None:
        """
        Raises:
            InstanceNotFoundError: unknown id
        """
        if instance_id is not None:
            self._require(instance_id)
        self.active_id = instance_id
        self._persist_refs()

    # ---------- startup / shutdown ----------

    async def load_from_config(self, connect: bool = True) -> List[InstanceConfig]:
        """
        Populate the registry from the global document

        Each reference resolves to the embedded record lifted by a schema
        migration when there is one (that record is then written to the data
        directory, and stays embedded in the global document until the write
        succeeds), else to ``<dataDir>/config.json``. Instances that cannot be
        read are skipped.

        Args:
            connect: Auto-start flagged daemons and open control connections;
                False only populates the registry (one-shot CLI commands)
        """
        if not self.store.loaded:
            self.store.load()
        config = self.store.config

        loaded: List[InstanceConfig] = []
        for ref in config.instances:
            instance = await self._resolve_ref(ref.id, ref.data_dir)
            if instance is None:
                continue
            if instance.id in self._instances:
                logger.warning(f"Skipping duplicate instance reference {instance.id}")
                continue
            self._instances[instance.id] = instance
            loaded.append(instance)

        if config.active_instance_id in self._instances:
            self.active_id = config.active_instance_id
        else:
            self.active_id = next(iter(self._instances), None)

        logger.info(f"Loaded {len(loaded)} of {len(config.instances)} instances")

        for instance in loaded if connect else []:
            if instance.auto_start and instance.data_dir:
                await self._auto_start(instance.id)
            else:
                await self.init_client(instance.id)

        return [instance.copy() for instance in loaded]

    async def _resolve_ref(self, instance_id: str, data_dir: str) -> Optional[InstanceConfig]:
        legacy = self.store.pop_legacy_instance(instance_id)
        if legacy is not None:
            legacy.id = instance_id
            legacy.data_dir = data_dir or legacy.data_dir
            # Until written, the record stays embedded in the global document
            if not legacy.data_dir:
                logger.warning(f"[{instance_id}] Embedded record has no data directory, keeping it embedded")
                return legacy
            try:
                await self._write_config(legacy)
                logger.info(f"[{instance_id}] Migrated embedded config to {legacy.data_dir}")
            except OSError as e:
                logger.error(f"[{instance_id}] Failed to write migrated config, keeping it embedded: {e}")
            return legacy

        if not data_dir:
            logger.warning(f"Failed to load instance {instance_id}: no data directory")
            return None
        try:
            instance = await asyncio.to_thread(read_instance_config, data_dir)
        except RuntimeConfigError as e:
            logger.warning(f"Failed to load instance {instance_id} from {data_dir}: {e}")
            return None
        if instance is None:
            logger.warning(f"Failed to load instance {instance_id} from {data_dir}: no config.json")
            return None
        instance.id = instance_id
        instance.data_dir = data_dir
        return instance

    async def drain(self) -> None:
        """Wait for background work (live pushes, enrichment, config writes)"""
        await self.tasks.drain()
        await self.store.tasks.drain()

    async def shutdown(self, stop_workers: bool = False) -> None:
        """Close every control connection and wait for background work"""
        for instance_id in list(self._clients):
            await self._destroy_client(instance_id)
        if stop_workers:
            await self.supervisor.stop_all()
        await self.drain()
