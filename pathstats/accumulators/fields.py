"""
Standard breakdown counters.

Each key function reads one field of a flattened edge row (see
``pathstats.stats.shared.EdgeRow``) and returns the bucket to count it in.
A key function returning None, or raising, leaves the row out of that
breakdown.
"""

from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

import user_agents

from .counters import Counter


@lru_cache(maxsize=4096)
def parse_user_agent(user_agent: str):
    return user_agents.parse(user_agent)


def hour_of(row: Mapping[str, Any]) -> Optional[int]:
    created = row["created"]
    return created.hour if created is not None else None


def country_of(row: Mapping[str, Any]) -> Optional[str]:
    return row["country_code"] or row.get("country")


def city_state_of(row: Mapping[str, Any]):
    if not row["city"]:
        return None
    return (row["city"], row["state"])


def browser_of(row: Mapping[str, Any]) -> Optional[str]:
    if not row["user_agent"]:
        return None
    browser = parse_user_agent(row["user_agent"]).browser
    if browser.version:
        return f"{browser.family} {browser.version[0]}"
    return browser.family


def device_of(row: Mapping[str, Any]) -> Optional[str]:
    if not row["user_agent"]:
        return None
    return parse_user_agent(row["user_agent"]).os.family


def referrer_of(row: Mapping[str, Any]) -> Optional[str]:
    return row["referrer_host"]


def target_of(row: Mapping[str, Any]) -> Optional[str]:
    meta_data = row["meta_data"] or {}
    return meta_data.get("target")


def traffic_counters() -> Dict[str, Counter]:
    """Breakdowns attached to client, page, referrer and user aggregates"""
    return {
        "hour": Counter(hour_of),
        "country": Counter(country_of),
        "city_state": Counter(city_state_of),
        "browser": Counter(browser_of),
        "device": Counter(device_of),
        "referrer": Counter(referrer_of),
    }


def action_counters() -> Dict[str, Counter]:
    """Breakdowns attached to action aggregates"""
    counters = traffic_counters()
    del counters["city_state"]
    counters["target"] = Counter(target_of)
    return counters
