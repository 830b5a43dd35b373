"""
Known referrer hosts and visit classification.

The built-in catalog ships as ``data/referrers.json`` and is read once per
process. Site owners can add or replace hosts through the settings API;
those overrides are merged on top of the catalog by :func:`resolve_referrers`.
"""

import functools
import json
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping
from urllib.parse import urlsplit

CATALOG_PATH = Path(__file__).with_name("data") / "referrers.json"


class ReferrerType(str, Enum):
    ORGANIC = "organic"      # search engine results
    BACKLINK = "backlink"    # another site linking to us
    BOT = "bot"              # spam / crawler referrers
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReferrerDefinition:
    host: str
    type: str = ""
    name: str = ""
    primary_url: str | None = None
    flagged: bool = False

    @classmethod
    def from_dict(cls, data: Mapping) -> "ReferrerDefinition":
        """
        Build a definition from a catalog entry or a user override.
        The catalog spells the flag ``flag``; both spellings are accepted.
        """
        flagged = data.get("flagged", data.get("flag", False))
        return cls(
            host=str(data.get("host") or "").strip(),
            type=str(data.get("type") or ""),
            name=str(data.get("name") or ""),
            primary_url=data.get("primary_url") or None,
            flagged=bool(flagged),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Referrer:
    """
    A visitor's referrer, parsed and (maybe) matched against a known host.
    Classification fields are blank when the host is not known.
    """
    url: str
    scheme: str = ""
    host: str = ""
    path: str = ""
    type: str = ""
    name: str = ""
    primary_url: str = ""
    flagged: bool = False

    @property
    def classified(self) -> bool:
        return bool(self.type or self.name or self.primary_url)


@functools.lru_cache(maxsize=None)
def load_catalog(path: Path = CATALOG_PATH) -> tuple[ReferrerDefinition, ...]:
    with open(path, "r", encoding="utf-8") as f:
        entries = json.load(f)
    return tuple(ReferrerDefinition.from_dict(entry) for entry in entries)


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------
def resolve_referrers(
    catalog: Iterable[ReferrerDefinition],
    overrides: Iterable[ReferrerDefinition],
    track_all: bool,
) -> dict[str, ReferrerDefinition]:
    """
    Merge the catalog and the user overrides into one host -> definition map.

    The catalog only takes part when every referrer is tracked. Overrides are
    applied afterwards and replace a catalog entry with the same host as a
    whole. An empty result means nothing can be classified.
    """
    hosts: dict[str, ReferrerDefinition] = {}

    if track_all:
        for definition in catalog:
            hosts[definition.host] = definition

    for definition in overrides:
        hosts[definition.host] = definition

    return {host: d for host, d in hosts.items() if host}


# -----------------------------------------------------------------------------
# Classifier
# -----------------------------------------------------------------------------
def split_referrer(referrer_url: str) -> tuple[str, str, str]:
    """
    Return (scheme, host, path). Malformed URLs yield blank parts.
    The host keeps its case; only userinfo and port are removed.
    """
    try:
        parts = urlsplit(referrer_url)
    except ValueError:
        return "", "", ""

    host = parts.netloc.rpartition("@")[2]
    if host.startswith("["):
        host = host[:host.find("]") + 1]
    else:
        host = host.partition(":")[0]
    return parts.scheme, host, parts.path


def classify_referrer(
    referrer_url: str | None,
    referrers: Mapping[str, ReferrerDefinition],
    track_all: bool,
) -> Referrer | None:
    """
    Classify a raw Referer value.

    Returns None when there is no referrer, or when the host is unknown and
    unknown hosts are not tracked.
    """
    if not referrer_url:
        return None

    scheme, host, path = split_referrer(referrer_url)

    definition = referrers.get(host) if host else None
    if definition is not None:
        return Referrer(
            url=referrer_url,
            scheme=scheme,
            host=host,
            path=path,
            type=definition.type,
            name=definition.name,
            primary_url=definition.primary_url or "",
            flagged=definition.flagged,
        )

    if track_all:
        return Referrer(url=referrer_url, scheme=scheme, host=host, path=path)

    return None
