import logging
from typing import Dict, Iterable

import requests

import config

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
FIELDS = "status,message,country,countryCode,city,lat,lon,query"


def batch_fetch_locations(ips: Iterable[str], url: str = None, timeout: float = None) -> Dict[str, Dict]:
    """
    Resolve IP addresses to locations with the ip-api batch endpoint.

    Returns:
        dict ip -> {lat, lon, city, country, country_code}; failed lookups are left out
    """
    url = url or config.GEO_API_URL
    timeout = timeout or config.FETCH_TIMEOUT_SECONDS
    ips = list(dict.fromkeys(ip for ip in ips if ip))
    locations: Dict[str, Dict] = {}

    for i in range(0, len(ips), BATCH_SIZE):
        batch = ips[i:i + BATCH_SIZE]
        try:
            response = requests.post(url, params={"fields": FIELDS}, json=batch, timeout=timeout)
            response.raise_for_status()
            results = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Geo lookup failed for batch of {len(batch)} IPs: {e}")
            continue

        for item in results:
            if item.get("status") != "success":
                continue
            locations[item["query"]] = {
                "lat": item.get("lat"),
                "lon": item.get("lon"),
                "city": item.get("city") or None,
                "country": item.get("country") or None,
                "country_code": item.get("countryCode") or None,
            }

    logger.info(f"Geo lookup resolved {len(locations)}/{len(ips)} IPs")
    return locations
