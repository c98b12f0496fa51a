"""
Daemon Control Channel Client

Reconnecting JSON-RPC 2.0 client over WebSocket, one per instance.

Features:
- Connection loop with fixed-interval reconnection until destroyed
- Per-request ids and timeouts; pending calls fail when the socket drops
- Connection-edge and server-push event observers
- Typed wrappers for the daemon's RPC surface

The client never raises out of its connection loop. Connectivity problems
reach callers only as ``DaemonClientError`` subclasses from ``call()`` and
as connection edges.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from craftstudio.config.runtime import read_api_key
from craftstudio.daemon.errors import DaemonOffline, RequestTimeout, RpcError
from craftstudio.daemon.protocol import RpcMessage, RpcRequest

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL = 3.0
DEFAULT_REQUEST_TIMEOUT = 30.0

ConnectionCallback = Callable[[bool], None]
EventCallback = Callable[[str, Any], None]


class DaemonClient:
    """
    Control connection to one daemon

    Usage:
        client = DaemonClient("a1b2", "ws://127.0.0.1:9091")
        client.on_connection(lambda up: print("connected" if up else "offline"))
        await client.start(data_dir="~/.datacraft/nodes/a1b2")
        status = await client.status()
        await client.destroy()
    """

    def __init__(
        self,
        instance_id: str,
        url: str,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.instance_id = instance_id
        self.url = url
        self.reconnect_interval = reconnect_interval
        self.request_timeout = request_timeout
        self.data_dir: Optional[str] = None
        self.api_key: Optional[str] = None

        self._connect = connect or ws_connect
        self._ws: Any = None
        self._connected = False
        self._destroyed = False
        self._next_id = 1
        self._pending: Dict[int, asyncio.Future] = {}
        self._connection_listeners: List[ConnectionCallback] = []
        self._event_listeners: List[EventCallback] = []
        self._runner: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None

    # ---------- Lifecycle ----------

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    async def start(
        self,
        data_dir: Optional[Union[str, Path]] = None,
        api_key: Optional[str] = None,
    ) -> None:
        """
        Begin connecting in the background and return immediately

        Args:
            data_dir: Instance data directory; the daemon's ``api_key`` file
                is read from here when no key is passed
            api_key: Bearer token for the control channel
        """
        if self._destroyed:
            logger.warning(f"[{self.instance_id}] start() on a destroyed client ignored")
            return

        self.data_dir = str(data_dir) if data_dir is not None else None
        if api_key:
            self.api_key = api_key
        elif data_dir is not None:
            self.api_key = await asyncio.to_thread(read_api_key, data_dir)

        if self._runner is None or self._runner.done():
            self._wakeup = asyncio.Event()
            self._runner = asyncio.get_running_loop().create_task(
                self._run(), name=f"daemon-client:{self.instance_id}"
            )

    async def reconnect(self) -> None:
        """Drop the current socket (if any) and connect again without waiting"""
        if self._destroyed:
            return
        if self._wakeup is not None:
            self._wakeup.set()
        ws = self._ws
        if ws is not None:
            await self._close_socket(ws)

    async def destroy(self) -> None:
        """Stop reconnecting, close the socket, fail every pending call"""
        if self._destroyed:
            return
        self._destroyed = True
        logger.debug(f"[{self.instance_id}] Destroying control client")

        if self._wakeup is not None:
            self._wakeup.set()
        ws = self._ws
        if ws is not None:
            await self._close_socket(ws)

        runner = self._runner
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

        self._connected = False
        self._ws = None
        self._reject_all("Client destroyed")

    async def _run(self) -> None:
        while not self._destroyed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
            try:
                ws = await self._connect(self.url, additional_headers=headers)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"[{self.instance_id}] Connect to {self.url} failed: {e}")
                await self._wait_before_retry()
                continue

            if self._destroyed:
                await self._close_socket(ws)
                break

            self._ws = ws
            logger.info(f"[{self.instance_id}] Connected to {self.url}")
            self._set_connected(True)
            try:
                await self._read_loop(ws)
            finally:
                self._ws = None
                self._set_connected(False)
                self._reject_all("WebSocket closed")

            await self._wait_before_retry()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_message(raw)
        except ConnectionClosed as e:
            logger.info(f"[{self.instance_id}] Connection closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{self.instance_id}] Connection error: {e}")

    async def _wait_before_retry(self) -> None:
        if self._destroyed or self._wakeup is None:
            return
        if self._wakeup.is_set():
            # reconnect() asked for an immediate retry
            self._wakeup.clear()
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.reconnect_interval)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[{self.instance_id}] Error closing socket: {e}")

    # ---------- Observers ----------

    def on_connection(self, callback: ConnectionCallback) -> Callable[[], None]:
        """Register a connect/disconnect observer; returns an unsubscribe callable"""
        self._connection_listeners.append(callback)
        return lambda: self._discard(self._connection_listeners, callback)

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """Register a server-push observer ``(method, params)``; returns an unsubscribe callable"""
        self._event_listeners.append(callback)
        return lambda: self._discard(self._event_listeners, callback)

    @staticmethod
    def _discard(listeners: List[Any], callback: Any) -> None:
        try:
            listeners.remove(callback)
        except ValueError:
            pass

    def _set_connected(self, connected: bool) -> None:
        if self._connected == connected:
            return
        self._connected = connected
        if self._destroyed:
            return
        for callback in list(self._connection_listeners):
            try:
                callback(connected)
            except Exception as e:
                logger.error(f"[{self.instance_id}] Connection observer failed: {e}", exc_info=True)

    def _handle_message(self, raw: Union[str, bytes]) -> None:
        try:
            message = RpcMessage.from_json(raw)
        except (ValueError, ValidationError) as e:
            logger.debug(f"[{self.instance_id}] Ignoring malformed message: {e}")
            return

        if message.id is not None and message.id in self._pending:
            future = self._pending.pop(message.id)
            if future.done():
                return
            if message.error is not None:
                future.set_exception(
                    RpcError(message.error.code, message.error.message, message.error.data)
                )
            else:
                future.set_result(message.result)
            return

        if message.method:
            for callback in list(self._event_listeners):
                try:
                    callback(message.method, message.params)
                except Exception as e:
                    logger.error(f"[{self.instance_id}] Event observer failed: {e}", exc_info=True)

    def _reject_all(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(DaemonOffline(reason))

    # ---------- RPC ----------

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send one JSON-RPC request and wait for its response

        Raises:
            DaemonOffline: not connected, or the connection dropped mid-call
            RpcError: the daemon returned an error object
            RequestTimeout: no response within ``request_timeout``
        """
        ws = self._ws
        if ws is None or not self._connected:
            raise DaemonOffline("Daemon offline")

        request_id = self._next_id
        self._next_id += 1
        request = RpcRequest(id=request_id, method=method, params=params)

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(request.to_json())
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(f"Request timeout: {method}") from None
        except ConnectionClosed as e:
            raise DaemonOffline(f"Connection closed during {method}: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def status(self) -> Dict[str, Any]:
        return await self.call("status")

    async def list_peers(self) -> Dict[str, Any]:
        return await self.call("peers")

    async def get_runtime_config(self) -> Dict[str, Any]:
        return await self.call("get_config")

    async def set_runtime_config(self, patch: Dict[str, Any]) -> Any:
        """Push worker-level fields to a running daemon (hot reload)"""
        return await self.call("set_config", patch)

    async def list_content(self) -> List[Dict[str, Any]]:
        return await self.call("list")

    async def publish(self, path: str, encrypted: bool = False) -> Dict[str, Any]:
        params: Dict[str, Any] = {"path": path}
        if encrypted:
            params["encrypted"] = True
        return await self.call("publish", params)

    async def fetch(self, cid: str, output: str, key: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"cid": cid, "output": output}
        if key:
            params["key"] = key
        return await self.call("fetch", params)

    async def grant_access(
        self,
        cid: str,
        creator_secret: str,
        content_key: str,
        recipient_pubkey: str,
    ) -> Any:
        return await self.call("access.grant", {
            "cid": cid,
            "creator_secret": creator_secret,
            "content_key": content_key,
            "recipient_pubkey": recipient_pubkey,
        })

    async def revoke_access(
        self,
        cid: str,
        creator_secret: str,
        revoked_pubkey: str,
        authorized_pubkeys: List[str],
    ) -> Any:
        return await self.call("access.revoke_rotate", {
            "cid": cid,
            "creator_secret": creator_secret,
            "revoked_pubkey": revoked_pubkey,
            "authorized_pubkeys": authorized_pubkeys,
        })

    async def list_access(self, cid: str) -> Dict[str, Any]:
        return await self.call("access.list", {"cid": cid})

    async def list_channels(self, peer: Optional[str] = None) -> Dict[str, Any]:
        return await self.call("channel.list", {"peer": peer} if peer else None)

    async def list_storage_receipts(
        self,
        cid: Optional[str] = None,
        node: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Dict[str, Any]:
        params = {
            key: value
            for key, value in {"cid": cid, "node": node, "limit": limit, "offset": offset}.items()
            if value is not None
        }
        return await self.call("receipt.storage.list", params or None)
