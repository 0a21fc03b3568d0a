"""
Network health score.

Formula:
- 40% Availability (share of nodes online)
- 35% Version health (share of nodes on the latest version)
- 25% Distribution (geographic diversity, country weighted 60/40 over city)
"""
from typing import Any, Dict, Iterable

from utils.versions import latest_version, parse_version

AVAILABILITY_WEIGHT = 0.40
VERSION_WEIGHT = 0.35
DISTRIBUTION_WEIGHT = 0.25

# Diversity reference counts that score 100%
COUNTRY_REFERENCE = 10
CITY_REFERENCE = 20


def _field(node: Any, name: str):
    if isinstance(node, dict):
        return node.get(name)
    return getattr(node, name, None)


def calculate_network_health(nodes: Iterable[Any]) -> Dict[str, int]:
    """
    Calculate the composite health score for a set of nodes.

    Nodes may be ORM rows or dictionaries exposing ``status``, ``version``,
    ``country`` and ``city``. An empty set yields all-zero scores.

    Returns:
        dict with availability, version_health, distribution, overall (0-100)
        plus the countries and cities cardinalities used.
    """
    nodes = list(nodes)
    if not nodes:
        return {'availability': 0, 'version_health': 0, 'distribution': 0, 'overall': 0, 'countries': 0, 'cities': 0}

    total = len(nodes)
    online = sum(1 for n in nodes if _field(n, 'status') == 'online')
    availability = online / total * 100

    versions = [_field(n, 'version') for n in nodes]
    latest = latest_version(versions)
    if latest is not None:
        latest_parsed = parse_version(latest)
        on_latest = sum(1 for v in versions if parse_version(v) == latest_parsed)
        version_health = on_latest / total * 100
    else:
        version_health = 0.0

    countries = {_field(n, 'country') for n in nodes if _field(n, 'country')}
    cities = {_field(n, 'city') for n in nodes if _field(n, 'city')}
    country_diversity = min(100.0, len(countries) / COUNTRY_REFERENCE * 100)
    city_diversity = min(100.0, len(cities) / CITY_REFERENCE * 100)
    distribution = country_diversity * 0.6 + city_diversity * 0.4

    overall = round(
        availability * AVAILABILITY_WEIGHT
        + version_health * VERSION_WEIGHT
        + distribution * DISTRIBUTION_WEIGHT
    )

    return {
        'availability': round(availability),
        'version_health': round(version_health),
        'distribution': round(distribution),
        'overall': max(0, min(100, overall)),
        'countries': len(countries),
        'cities': len(cities),
    }
