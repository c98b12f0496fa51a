"""
Daemon server-push events -> activity log entries

Event method names are the daemon's snake_case event variants
(``peer_connected``, ``content_published``, ``dht_error``, ...).
"""

from typing import Any, Callable, Dict, NamedTuple

ANNOUNCEMENT_EVENTS = {
    "capability_announced",
    "capability_published",
    "provider_announced",
    "content_reannounced",
    "providers_resolved",
    "manifest_retrieved",
}

GOSSIP_EVENTS = {
    "storage_receipt_received",
    "removal_notice_received",
    "challenger_round_completed",
    "shard_requested",
    "peer_connected",
    "peer_disconnected",
    "peer_discovered",
}

ACTION_EVENTS = {
    "content_published",
    "content_distributed",
    "access_granted",
    "access_revoked",
    "channel_opened",
    "channel_closed",
    "pool_funded",
    "removal_published",
}

SUCCESS_EVENTS = {
    "content_published",
    "access_granted",
    "channel_opened",
    "pool_funded",
    "peer_connected",
    "content_distributed",
    "provider_announced",
}

WARN_EVENTS = {"peer_disconnected", "removal_notice_received"}


class EventDescription(NamedTuple):
    message: str
    level: str
    category: str


def format_bytes(num_bytes: float) -> str:
    """Human-readable size, e.g. ``1.5 GB``"""
    if not num_bytes or num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{value:.1f} {units[i]}" if i > 0 else f"{int(value)} {units[i]}"


def _short(value: Any) -> str:
    return f"{str(value or '')[:12]}…"


_MESSAGES: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "peer_connected": lambda p: f"Peer connected: {p.get('peer_id', '')}",
    "peer_disconnected": lambda p: f"Peer disconnected: {p.get('peer_id', '')}",
    "capability_announced": lambda p: (
        f"Peer {_short(p.get('peer_id'))} capabilities: {', '.join(p.get('capabilities') or [])}"
    ),
    "content_published": lambda p: (
        f"Published content ({p.get('chunks', 0)} chunks, {format_bytes(float(p.get('size') or 0))})"
    ),
    "content_distributed": lambda p: (
        f"Distributed {p.get('shards_pushed', 0)} shards for {_short(p.get('content_id'))}"
    ),
    "provider_announced": lambda p: f"Announced as provider for {_short(p.get('content_id'))}",
    "providers_resolved": lambda p: (
        f"Found {p.get('count', 0)} providers for {_short(p.get('content_id'))}"
    ),
    "dht_error": lambda p: f"DHT error: {p.get('error', 'unknown')}",
    "listening_on": lambda p: f"Listening on {p.get('address', '')}",
    "daemon_started": lambda p: "Daemon started",
    "access_granted": lambda p: f"Access granted to {_short(p.get('recipient'))}",
    "channel_opened": lambda p: f"Payment channel opened: {_short(p.get('channel_id'))}",
    "storage_receipt_received": lambda p: (
        f"Storage receipt: {_short(p.get('content_id'))} from {_short(p.get('storage_node'))}"
    ),
}


def describe_event(method: str, params: Any) -> EventDescription:
    """
    Categorise a server-push event for the activity log

    Args:
        method: Event name
        params: Event payload (any JSON value; non-objects are ignored)

    Returns:
        EventDescription with level ``info|success|warn|error`` and category
        ``announcement|gossip|action|system``
    """
    payload = params if isinstance(params, dict) else {}

    if method in ANNOUNCEMENT_EVENTS:
        category = "announcement"
    elif method in GOSSIP_EVENTS:
        category = "gossip"
    elif method in ACTION_EVENTS:
        category = "action"
    else:
        category = "system"

    level = "info"
    if method in SUCCESS_EVENTS:
        level = "success"
    if "error" in method:
        level = "error"
    if method in WARN_EVENTS:
        level = "warn"

    formatter = _MESSAGES.get(method)
    if formatter is None:
        message = method.replace("_", " ")
    else:
        try:
            message = formatter(payload)
        except (TypeError, ValueError):
            message = method.replace("_", " ")

    return EventDescription(message=message, level=level, category=category)
