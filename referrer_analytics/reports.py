"""
Aggregation of stored visits for the dashboard and the report API.

Everything here is a plain pass over a list of visit records; nothing reads
the database.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable

NOT_AVAILABLE = "N/A"
TOP_LIMIT = 100


@dataclass
class ReferrerTally:
    name: str
    count: int = 0
    primary_url: str = ""
    flagged: bool = False
    type: str = NOT_AVAILABLE


@dataclass
class ParsedLog:
    referrers: dict[str, ReferrerTally] = field(default_factory=dict)
    types: dict[str, int] = field(default_factory=dict)
    destinations: dict[str, int] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.referrers)

    @property
    def total(self) -> int:
        return sum(self.types.values())


def referrer_key(entry) -> str:
    """
    Display key for a visit: its referrer name, else its host, else N/A.
    """
    return entry.referrer_name or entry.referrer_host or NOT_AVAILABLE


def parse_log(log: Iterable) -> ParsedLog:
    """
    Tally visits by referrer, by type and by destination in one pass.
    Details of a referrer (url, flag, type) come from the first visit seen.
    """
    parsed = ParsedLog()

    for entry in log:
        key = referrer_key(entry)
        entry_type = entry.referrer_type or NOT_AVAILABLE

        tally = parsed.referrers.get(key)
        if tally is None:
            tally = parsed.referrers[key] = ReferrerTally(
                name=key,
                primary_url=entry.referrer_primary_url,
                flagged=entry.is_flagged,
                type=entry_type,
            )
        tally.count += 1

        parsed.types[entry_type] = parsed.types.get(entry_type, 0) + 1
        parsed.destinations[entry.url_destination] = (
            parsed.destinations.get(entry.url_destination, 0) + 1
        )

    return parsed


def top_referrers(parsed: ParsedLog, limit: int = TOP_LIMIT) -> list[ReferrerTally]:
    ranked = sorted(parsed.referrers.values(), key=lambda t: t.count, reverse=True)
    return ranked[:limit]


def most_common(tally: dict[str, int], limit: int = TOP_LIMIT) -> list[tuple[str, int]]:
    return Counter(tally).most_common(limit)


def top_unknown_referrers(log: Iterable, limit: int = TOP_LIMIT) -> list[tuple[str, int]]:
    """
    Hosts of visits that matched no known referrer, most frequent first.
    """
    unknown = Counter(
        entry.referrer_host or NOT_AVAILABLE for entry in log if not entry.referrer_name
    )
    return unknown.most_common(limit)


def tally_countries(log: Iterable, lookup: Callable[[str], str]) -> list[tuple[str, int]]:
    countries = Counter(lookup(entry.visitor_ip) for entry in log)
    return countries.most_common()


def visits_per_day(log: Iterable) -> list[tuple[str, int]]:
    """
    (YYYY-MM-DD, visits) pairs, ascending by day.
    """
    days = Counter(entry.date_recorded[:10] for entry in log)
    return sorted(days.items())


# -----------------------------------------------------------------------------
# Sparkline builder (inline SVG chart)
# -----------------------------------------------------------------------------
def build_sparkline(points, width=320, height=60, stroke="#38bdf8"):
    """
    Tiny inline SVG sparkline.
    points: list[(day_string, visits_int)], ascending by day.
    """
    svg_open = (
        f'<svg width="{width}" height="{height}" viewBox="0 0 {width} {height}" '
        f'fill="none" stroke="{stroke}" stroke-width="2" stroke-linecap="round" '
        f'shape-rendering="geometricPrecision">'
    )
    if not points:
        return {"svg": svg_open + "</svg>", "last_count": 0}

    counts = [p[1] for p in points]
    low = min(counts)
    span = (max(counts) - low) or 1

    n = len(points)
    step = width / (n - 1) if n > 1 else 0
    coords = [
        (i * step if n > 1 else width / 2, height - ((c - low) / span) * (height - 4) - 2)
        for i, c in enumerate(counts)
    ]

    d_attr = " ".join(
        f"{'M' if i == 0 else 'L'}{x:.1f},{y:.1f}" for i, (x, y) in enumerate(coords)
    )
    return {"svg": f'{svg_open}<path d="{d_attr}" /></svg>', "last_count": counts[-1]}
