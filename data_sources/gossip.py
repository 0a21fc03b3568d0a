import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

import config
from models.observation import NodeTelemetry, Observation
from utils.timeutil import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

RPC_METHOD = "get-pods-with-stats"
ONLINE_WITHIN = timedelta(minutes=5)
SYNCING_WITHIN = timedelta(hours=1)


class GossipFetchError(RuntimeError):
    """No gossip relay returned a usable response."""


def relay_url(host: str) -> str:
    return host if host.startswith("http") else f"http://{host}/rpc"


def _first(record: Dict[str, Any], *names):
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return None


def _number(value, cast=float):
    if value is None or value == "":
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        return None


def parse_last_seen(timestamp) -> Optional[datetime]:
    """Gossip timestamps come in seconds or milliseconds since the epoch."""
    value = _number(timestamp)
    if not value:
        return None
    if value > 1e12:
        value = value / 1000
    elif value <= 1e9:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def status_from_last_seen(last_seen: Optional[datetime], now: datetime) -> str:
    """online when seen within 5 minutes, syncing within an hour, offline otherwise."""
    if last_seen is None:
        return "offline"
    age = now - last_seen
    if age < ONLINE_WITHIN:
        return "online"
    if age < SYNCING_WITHIN:
        return "syncing"
    return "offline"


def parse_pod(record: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Observation]:
    """
    Convert one gossip pod record into an Observation.

    Returns None for records that carry neither a public key nor an address.
    Identity key validation is left to reconciliation.
    """
    now = to_naive_utc(now) or utcnow()
    identity_key = _first(record, "pubkey", "publicKey")
    address = (record.get("address") or "").strip() or None
    if isinstance(identity_key, str):
        identity_key = identity_key.strip() or None
    if not identity_key and not address:
        return None

    last_seen = parse_last_seen(_first(record, "last_seen_timestamp", "lastSeenTimestamp"))
    storage_committed = _number(_first(record, "storage_committed", "storageCommitted"), int)

    telemetry = NodeTelemetry(
        status=status_from_last_seen(last_seen, now),
        cpu_percent=_number(_first(record, "cpu_percent", "cpuPercent")),
        ram_used=_number(_first(record, "ram_used", "ramUsed"), int),
        ram_total=_number(_first(record, "ram_total", "ramTotal"), int),
        packets_sent=_number(_first(record, "packets_sent", "packetsSent")),
        packets_received=_number(_first(record, "packets_received", "packetsReceived")),
        active_streams=_number(_first(record, "active_streams", "activeStreams"), int),
        uptime=_number(_first(record, "uptime", "uptime_seconds"), int),
        storage_capacity=storage_committed if storage_committed is not None
        else _number(_first(record, "storage_capacity", "storageCapacity"), int),
        storage_used=_number(_first(record, "storage_used", "storageUsed"), int),
        storage_committed=storage_committed,
        credits=_number(record.get("credits")),
        last_seen=last_seen,
        is_public=_first(record, "is_public", "isPublic"),
        rpc_port=_number(_first(record, "rpc_port", "rpcPort"), int),
        peer_count=_number(_first(record, "peer_count", "peerCount"), int),
    )
    return Observation(
        identity_key=identity_key,
        address=address,
        version=(record.get("version") or "").strip() or None,
        telemetry=telemetry,
    )


def extract_pods(result) -> List[Dict[str, Any]]:
    """Pull the pod list out of the different response shapes relays return."""
    if isinstance(result, list):
        return result
    if not isinstance(result, dict):
        return []
    for key in ("pods", "nodes", "result"):
        value = result.get(key)
        if isinstance(value, list):
            return value
        if isinstance(value, dict) and isinstance(value.get("pods"), list):
            return value["pods"]
    return []


def fetch_relay(url: str, timeout: float) -> List[Dict[str, Any]]:
    payload = {"jsonrpc": "2.0", "method": RPC_METHOD, "id": 1, "params": []}
    response = requests.post(url, json=payload, timeout=timeout)
    response.raise_for_status()
    body = response.json()
    if body.get("error"):
        raise GossipFetchError(f"{url} returned RPC error: {body['error']}")
    return extract_pods(body.get("result"))


def fetch_observations(relay_urls: Optional[List[str]] = None, timeout: Optional[float] = None,
                       now: Optional[datetime] = None) -> List[Observation]:
    """
    Query every configured relay and return all observations, duplicates included.

    Raises:
        GossipFetchError: when no relay is configured or every relay failed
    """
    relay_urls = relay_urls if relay_urls is not None else config.GOSSIP_RELAY_URLS
    timeout = timeout or config.FETCH_TIMEOUT_SECONDS
    if not relay_urls:
        raise GossipFetchError("No gossip relays configured (GOSSIP_RELAY_URLS)")

    now = to_naive_utc(now) or utcnow()
    observations: List[Observation] = []
    failures = 0
    for host in relay_urls:
        url = relay_url(host)
        try:
            pods = fetch_relay(url, timeout)
        except (requests.RequestException, ValueError, GossipFetchError) as e:
            failures += 1
            logger.warning(f"Gossip relay {url} failed: {e}")
            continue
        parsed = [obs for obs in (parse_pod(p, now) for p in pods if isinstance(p, dict)) if obs]
        for obs in parsed:
            obs.relay = url
        logger.info(f"Gossip relay {url}: {len(parsed)} pods")
        observations.extend(parsed)

    if failures == len(relay_urls):
        raise GossipFetchError(f"All {failures} gossip relays failed")
    return observations
