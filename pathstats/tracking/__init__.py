"""
Tracking Module

Session graph construction: path edges, referrers, IP locations and the
attribution of new page views to existing chains.
"""
from .attribution import Attribution, AttributionResolver
from .geolocation import GeoLocation, GeoResolver, get_or_create_ip_location
from .paths import (
    ACTION_PATHS,
    PAGE_VIEW_PATHS,
    ChainLink,
    EdgeSpec,
    PathChain,
    action_paths,
    lift_action_path,
    page_view_paths,
    set_active,
)
from .referrers import get_or_create_referrer, get_referrer_for_url, lift_url

__all__ = [
    "Attribution",
    "AttributionResolver",
    "GeoLocation",
    "GeoResolver",
    "get_or_create_ip_location",
    "ACTION_PATHS",
    "PAGE_VIEW_PATHS",
    "ChainLink",
    "EdgeSpec",
    "PathChain",
    "action_paths",
    "lift_action_path",
    "page_view_paths",
    "set_active",
    "get_or_create_referrer",
    "get_referrer_for_url",
    "lift_url",
]
