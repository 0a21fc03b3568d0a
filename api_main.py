import logging
from datetime import datetime
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

import config
from services import db
from services.activity_log import get_activity_logs
from services.history_export import get_daily_stats, get_historical_snapshots, get_node_history
from services.node_export import get_all_nodes, get_node, node_to_dict
from services.region_history import RegionHistoryCache, RegionHistoryService

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Storage Node Registry API",
    description="""
    Read API over the storage node registry and its history.

    DATA:
    - nodes: current registry, one row per identity key (or address when no key is known).
      status is the canonical three-state value: nodes missing from the latest gossip cycle are offline.
    - history: network snapshots, one per 10-minute bucket
    - history/region: per-country snapshots written at snapshot time, served through a short-TTL cache
    - activity: node events (new node, status changes, credits, packets, streams) detected each cycle

    On storage errors endpoints return {"error": "..."}; the last reconciled data stays in place.
    """,
    version="1.0.0"
)

# Region reads share this cache with an in-process scheduler so new buckets invalidate it
region_cache = RegionHistoryCache()
region_service = RegionHistoryService(lambda: db.SessionLocal(), region_cache)
app.state.scheduler = None


# --- Pydantic Schemas ---
class NodeOut(BaseModel):
    node_key: str
    identity_key: Optional[str] = None
    address: Optional[str] = None
    ip_address: Optional[str] = None
    port: Optional[int] = None
    version: Optional[str] = None
    status: str
    reported_status: Optional[str] = None
    cpu_percent: Optional[float] = None
    ram_used: Optional[int] = None
    ram_total: Optional[int] = None
    packets_sent: Optional[float] = None
    packets_received: Optional[float] = None
    active_streams: Optional[int] = None
    uptime: Optional[int] = None
    storage_capacity: Optional[int] = None
    storage_used: Optional[int] = None
    storage_committed: Optional[int] = None
    credits: Optional[float] = None
    last_seen: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    is_public: Optional[bool] = None
    rpc_port: Optional[int] = None
    peer_count: Optional[int] = None
    balance: Optional[float] = None
    is_registered: Optional[bool] = None
    manager_address: Optional[str] = None
    registry_address: Optional[str] = None
    seen_in_gossip: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SnapshotOut(BaseModel):
    bucket_key: str
    bucket_start: Optional[str] = None
    timestamp: Optional[str] = None
    date: Optional[str] = None
    total_nodes: int = 0
    online_nodes: int = 0
    offline_nodes: int = 0
    syncing_nodes: int = 0
    avg_cpu_percent: Optional[float] = None
    avg_ram_percent: Optional[float] = None
    avg_packets_received: Optional[float] = None
    avg_packets_sent: Optional[float] = None
    avg_active_streams: Optional[float] = None
    avg_uptime: Optional[float] = None
    avg_storage_used: Optional[float] = None
    total_storage_capacity: Optional[float] = None
    total_storage_used: Optional[float] = None
    total_credits: Optional[float] = None
    version_distribution: Dict[str, int] = {}
    countries: int = 0
    cities: int = 0
    health_availability: int = 0
    health_version: int = 0
    health_distribution: int = 0
    health_score: int = 0


class RegionSnapshotOut(BaseModel):
    bucket_key: str
    timestamp: Optional[str] = None
    date: Optional[str] = None
    country: str
    country_code: Optional[str] = None
    total_nodes: int = 0
    online_nodes: int = 0
    offline_nodes: int = 0
    syncing_nodes: int = 0
    avg_cpu_percent: Optional[float] = None
    avg_ram_percent: Optional[float] = None
    total_packets_received: Optional[float] = None
    total_packets_sent: Optional[float] = None
    total_active_streams: Optional[int] = None
    total_credits: Optional[float] = None
    avg_uptime: Optional[float] = None
    avg_packet_rate: Optional[float] = None
    cities: int = 0
    version_distribution: Dict[str, int] = {}
    health_availability: int = 0
    health_version: int = 0
    health_distribution: int = 0
    health_score: int = 0
    node_credits: List[dict] = []


# --- Pagination helper ---
def paginate(data: List, skip: int, limit: int):
    total = len(data)
    return {
        "total": total,
        "skip": skip,
        "limit": limit,
        "items": data[skip:skip+limit]
    }


def attach_scheduler(scheduler):
    """Run a refresh scheduler inside the API process and expose its status."""
    app.state.scheduler = scheduler
    scheduler.start()


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", response_model=dict, tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Response:
      - status (str): "ok" if the API is running.
    """
    return {"status": "ok"}


@app.get("/nodes", response_model=dict, tags=["Nodes"])
def get_nodes(
    skip: int = Query(0, ge=0, description="Number of records to skip (for pagination)"),
    limit: int = Query(1000, ge=1, le=10000, description="Maximum number of records to return"),
    seen_only: bool = Query(False, description="Only nodes present in the latest gossip cycle"),
    status: Optional[str] = Query(None, description="Filter by canonical status (online, offline, syncing)"),
    country: Optional[str] = Query(None, description="Filter by country name or code"),
):
    """
    Returns the current node registry.

    EXAMPLES:
    - All nodes: ?limit=1000
    - Online nodes: ?status=online
    - Nodes in Germany: ?country=DE
    """
    session = db.SessionLocal()
    try:
        nodes = [node_to_dict(n) for n in get_all_nodes(session, seen_only=seen_only)]
        if status:
            nodes = [n for n in nodes if n['status'] == status]
        if country:
            nodes = [n for n in nodes if country in (n['country'], n['country_code'])]
        return paginate([NodeOut(**n) for n in nodes], skip, limit)
    except Exception as e:
        logger.error(f"Failed to read nodes: {e}")
        return {"error": str(e)}
    finally:
        session.close()


@app.get("/nodes/{identity_key}", response_model=dict, tags=["Nodes"])
def get_node_by_key(identity_key: str):
    """Returns one node by identity key (or address key for nodes without one)."""
    session = db.SessionLocal()
    try:
        node = get_node(session, identity_key)
        if node is None:
            return {"error": f"Node {identity_key} not found"}
        return {"node": NodeOut(**node_to_dict(node))}
    except Exception as e:
        return {"error": str(e)}
    finally:
        session.close()


@app.get("/nodes/{identity_key}/history", response_model=dict, tags=["Nodes"])
def get_node_history_endpoint(
    identity_key: str,
    start: Optional[datetime] = Query(None, description="Start time (ISO 8601, UTC)"),
    end: Optional[datetime] = Query(None, description="End time (ISO 8601, UTC)"),
):
    """Returns the node's metric points from stored network snapshots, oldest first."""
    session = db.SessionLocal()
    try:
        points = get_node_history(session, identity_key, start, end)
        return {"identity_key": identity_key, "total": len(points), "items": points}
    except Exception as e:
        return {"error": str(e)}
    finally:
        session.close()


@app.get("/history", response_model=dict, tags=["History"])
def get_history(
    start: Optional[datetime] = Query(None, description="Start time (ISO 8601, UTC)"),
    end: Optional[datetime] = Query(None, description="End time (ISO 8601, UTC)"),
    limit: int = Query(1000, ge=1, le=10000, description="Maximum number of snapshots"),
):
    """
    Returns network snapshots (one per bucket), oldest first.

    EXAMPLES:
    - Last day: ?start=2025-01-30T00:00:00
    """
    session = db.SessionLocal()
    try:
        snapshots = get_historical_snapshots(session, start, end, limit)
        return {"total": len(snapshots), "items": [SnapshotOut(**s) for s in snapshots]}
    except Exception as e:
        return {"error": str(e)}
    finally:
        session.close()


@app.get("/history/daily", response_model=dict, tags=["History"])
def get_history_daily(days: int = Query(30, ge=1, le=365)):
    """Returns per-day averages of node counts and health score."""
    session = db.SessionLocal()
    try:
        stats = get_daily_stats(session, days)
        return {"days": days, "items": stats}
    except Exception as e:
        return {"error": str(e)}
    finally:
        session.close()


@app.get("/history/region", response_model=dict, tags=["History"])
def get_region_history(
    country: str = Query(..., description="Country name"),
    country_code: Optional[str] = Query(None, description="ISO country code matched as an alternative"),
    start: Optional[datetime] = Query(None, description="Start time (ISO 8601, UTC)"),
    end: Optional[datetime] = Query(None, description="End time (ISO 8601, UTC)"),
):
    """Returns per-country snapshots, oldest first (max 1000)."""
    try:
        data = region_service.get_region_history(country, country_code, start, end)
        return {"country": country, "total": len(data), "items": [RegionSnapshotOut(**d) for d in data]}
    except Exception as e:
        return {"error": str(e)}


@app.get("/history/region/credits", response_model=dict, tags=["History"])
def get_region_credits(
    country: str = Query(..., description="Country name"),
    country_code: Optional[str] = Query(None, description="ISO country code matched as an alternative"),
    start: Optional[datetime] = Query(None, description="Start time (ISO 8601, UTC)"),
    end: Optional[datetime] = Query(None, description="End time (ISO 8601, UTC)"),
):
    """
    Returns credits earned in a country, tracked per node across buckets.

    A node's gain is measured against the last bucket it was seen in, so nodes
    leaving and rejoining the country are attributed correctly.
    """
    try:
        return {"country": country, **region_service.get_credits_earned(country, country_code, start, end)}
    except Exception as e:
        return {"error": str(e)}


@app.get("/activity", response_model=dict, tags=["Activity"])
def get_activity(
    node: Optional[str] = Query(None, description="Node key or identity key"),
    country_code: Optional[str] = Query(None, description="ISO country code"),
    type: Optional[str] = Query(None, description="Event type, e.g. node_online or credits_earned"),
    skip: int = Query(0, ge=0, description="Number of events to skip"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of events"),
):
    """
    Returns node activity events, newest first.

    EXAMPLES:
    - Latest events: ?limit=50
    - Nodes going offline: ?type=node_offline
    """
    session = db.SessionLocal()
    try:
        logs = get_activity_logs(session, node_key=node, country_code=country_code, activity_type=type,
                                 skip=skip, limit=limit)
        return {"total": len(logs), "skip": skip, "limit": limit, "items": logs}
    except Exception as e:
        logger.error(f"Failed to read activity: {e}")
        return {"error": str(e)}
    finally:
        session.close()


@app.get("/scheduler/status", response_model=dict, tags=["Health"])
def get_scheduler_status():
    """Returns the in-process refresh scheduler state, when one is running."""
    scheduler = app.state.scheduler
    if scheduler is None:
        return {"error": "No scheduler running in this process"}
    return scheduler.status()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    db.init_db()
    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
