import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Storage connection string (required, checked when the database is configured)
DB_URL = os.getenv("DB_URL")
DB_TIMEOUT_SECONDS = int(os.getenv("DB_TIMEOUT_SECONDS", "30"))

# Gossip relay endpoints (comma-separated JSON-RPC URLs)
GOSSIP_RELAY_URLS = [u.strip() for u in os.getenv("GOSSIP_RELAY_URLS", "").split(",") if u.strip()]
FETCH_TIMEOUT_SECONDS = int(os.getenv("FETCH_TIMEOUT_SECONDS", "20"))

# IP geolocation batch endpoint
GEO_API_URL = os.getenv("GEO_API_URL", "http://ip-api.com/batch")

# Refresh scheduler
REFRESH_INTERVAL_SECONDS = int(os.getenv("REFRESH_INTERVAL_SECONDS", "60"))
MAX_CYCLE_SECONDS = int(os.getenv("MAX_CYCLE_SECONDS", "300"))
MAX_SKIPPED_TICKS = int(os.getenv("MAX_SKIPPED_TICKS", "5"))
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30"))
STALE_CYCLE_SECONDS = int(os.getenv("STALE_CYCLE_SECONDS", "600"))

# Historical snapshots
BUCKET_MINUTES = int(os.getenv("BUCKET_MINUTES", "10"))

# Region history cache
REGION_CACHE_TTL_SECONDS = int(os.getenv("REGION_CACHE_TTL_SECONDS", "120"))
REGION_CACHE_MAX_ENTRIES = int(os.getenv("REGION_CACHE_MAX_ENTRIES", "100"))

# Node activity log
ACTIVITY_LOG_ENABLED = os.getenv("ACTIVITY_LOG_ENABLED", "true").lower() in ("1", "true", "yes")

# On-chain enrichment
ENRICH_MAX_WORKERS = int(os.getenv("ENRICH_MAX_WORKERS", "8"))

# Read API
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8002"))
