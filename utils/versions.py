"""
Version string helpers.

Node versions are compared semantically: the leading dot-separated numeric
components are compared left to right (missing components count as zero) and
any trailing qualifier such as ``-trynet.20250101`` is ignored for ordering.
"""
import re
from typing import Iterable, Optional, Tuple

_VERSION_RE = re.compile(r'^[vV]?(\d+(?:\.\d+)*)')
_UNKNOWN_VERSIONS = {'', 'unknown', 'n/a', 'none'}


def parse_version(version: Optional[str]) -> Optional[Tuple[int, ...]]:
    """Return the comparable numeric part of a version string, or None when it has none."""
    if not version or not isinstance(version, str):
        return None
    text = version.strip()
    if text.lower() in _UNKNOWN_VERSIONS:
        return None
    match = _VERSION_RE.match(text)
    if not match:
        return None
    parts = [int(p) for p in match.group(1).split('.')]
    # Trailing zeros do not change ordering: 1.2 == 1.2.0
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def compare_versions(a: Optional[str], b: Optional[str]) -> int:
    """
    Compare two version strings.

    Returns 1 if ``a`` is later, -1 if ``b`` is later, 0 if equal. A parseable
    version is always later than an unparseable one.
    """
    pa, pb = parse_version(a), parse_version(b)
    if pa is None and pb is None:
        return 0
    if pa is None:
        return -1
    if pb is None:
        return 1
    width = max(len(pa), len(pb))
    pa = pa + (0,) * (width - len(pa))
    pb = pb + (0,) * (width - len(pb))
    if pa == pb:
        return 0
    return 1 if pa > pb else -1


def is_later_version(candidate: Optional[str], current: Optional[str]) -> bool:
    return compare_versions(candidate, current) > 0


def latest_version(versions: Iterable[Optional[str]]) -> Optional[str]:
    """Pick the semantically latest valid version string, or None."""
    best = None
    for version in versions:
        if parse_version(version) is None:
            continue
        if best is None or compare_versions(version, best) > 0:
            best = version
    return best
