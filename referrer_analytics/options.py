import sqlite3
from dataclasses import dataclass, field

from .referrers import ReferrerDefinition, ReferrerType
from .store import get_option, set_option

TRACK_ALL_KEY = "track_all_referrers"
HOSTS_KEY = "hosts"

VALID_TYPES = {t.value for t in ReferrerType} | {""}


class InvalidOptions(ValueError):
    pass


@dataclass
class Options:
    track_all_referrers: bool = True
    hosts: list[ReferrerDefinition] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            TRACK_ALL_KEY: "enabled" if self.track_all_referrers else "disabled",
            HOSTS_KEY: [h.to_dict() for h in self.hosts],
        }


def parse_flag(value) -> bool:
    """
    Accept the plugin-style "enabled"/"disabled" strings as well as booleans.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("enabled", "true", "1", "yes", "on"):
            return True
        if v in ("disabled", "false", "0", "no", "off", ""):
            return False
    raise InvalidOptions(f"{TRACK_ALL_KEY} must be enabled or disabled, got {value!r}")


def parse_hosts(payload) -> list[ReferrerDefinition]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise InvalidOptions(f"{HOSTS_KEY} must be a list")

    hosts = []
    for idx, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise InvalidOptions(f"{HOSTS_KEY}[{idx}] must be an object")
        definition = ReferrerDefinition.from_dict(entry)
        if definition.type not in VALID_TYPES:
            raise InvalidOptions(
                f"{HOSTS_KEY}[{idx}] has unknown type {definition.type!r}"
            )
        hosts.append(definition)
    return hosts


def load_options(db: sqlite3.Connection, defaults: Options) -> Options:
    track_all = get_option(db, TRACK_ALL_KEY)
    hosts = get_option(db, HOSTS_KEY)
    return Options(
        track_all_referrers=defaults.track_all_referrers if track_all is None else parse_flag(track_all),
        hosts=list(defaults.hosts) if hosts is None else parse_hosts(hosts),
    )


def save_options(db: sqlite3.Connection, options: Options) -> None:
    data = options.to_dict()
    set_option(db, TRACK_ALL_KEY, data[TRACK_ALL_KEY])
    set_option(db, HOSTS_KEY, data[HOSTS_KEY])
