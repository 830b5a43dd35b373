import logging
import sqlite3
from dataclasses import dataclass
from typing import Mapping

from .referrers import ReferrerDefinition
from .store import get_log, update_visit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    checked: int = 0
    updated: int = 0
    cleared: int = 0


def sync_log(
    db: sqlite3.Connection,
    referrers: Mapping[str, ReferrerDefinition],
) -> SyncResult | None:
    """
    Bring stored visits in line with the current known hosts.

    Matching visits get whichever of type/name/primary url changed; visits
    whose host is no longer known have all three blanked. Returns None,
    without touching anything, when there are no known hosts at all.
    """
    if not referrers:
        logger.info("Referrer sync skipped: no known hosts configured")
        return None

    checked = updated = cleared = 0
    for entry in get_log(db):
        checked += 1
        definition = referrers.get(entry.referrer_host) if entry.referrer_host else None

        if definition is None:
            # always written, even when already blank
            update_visit(db, entry.id, {
                "referrer_type": "",
                "referrer_name": "",
                "referrer_primary_url": "",
            })
            cleared += 1
            continue

        updates = {}
        if entry.referrer_type != definition.type:
            updates["referrer_type"] = definition.type
        if entry.referrer_name != definition.name:
            updates["referrer_name"] = definition.name
        if entry.referrer_primary_url != (definition.primary_url or ""):
            updates["referrer_primary_url"] = definition.primary_url or ""

        if updates:
            update_visit(db, entry.id, updates)
            updated += 1

    result = SyncResult(checked=checked, updated=updated, cleared=cleared)
    logger.info(
        "Referrer sync: %d checked, %d updated, %d cleared",
        result.checked, result.updated, result.cleared,
    )
    return result
