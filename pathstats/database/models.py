"""
Database Models - Session Path Graph

This module defines the storage model for visitor journeys and their daily
aggregates. The schema consists of:

Event Tables:
- PageView: A user viewing a client page
- Action: A discrete interaction (click, submit, ...)

Chain Edge Tables:
- PageViewPath: Connects page views into session chains
- ActionPath: Connects actions into chains, optionally anchored to a PageViewPath

Satellite Tables:
- Referrer, IpLocation, Tag and the client/domain/page registry

Aggregate Tables:
- StatType / StatValue bucket keys
- ClientStat, PageStat, ActionStat, PathStat, ReferrerStat, UserStat
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pathstats.utils.dates import utcnow


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# CLIENT REGISTRY
# =============================================================================

class Client(Base):
    """
    Client Table

    A customer account whose websites are tracked.
    """
    __tablename__ = "client"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Domain(Base):
    """
    Domain Table

    Hosts registered to a client. A referrer on one of these hosts is internal.
    """
    __tablename__ = "domain"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    protocol: Mapped[Optional[str]] = mapped_column(String(10))

    __table_args__ = (
        UniqueConstraint("client_id", "host", name="uq_domain_client_host"),
    )


class Page(Base):
    """
    Page Table

    A tracked URL path on one of the client's domains.
    """
    __tablename__ = "page"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    domain_id: Mapped[int] = mapped_column(Integer, ForeignKey("domain.id"), nullable=False)
    path: Mapped[str] = mapped_column(String(1000), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))

    __table_args__ = (
        UniqueConstraint("client_id", "domain_id", "path", name="uq_page_client_domain_path"),
        Index("ix_page_client", "client_id"),
    )


# =============================================================================
# EVENT TABLES
# =============================================================================

class PageView(Base):
    """
    Page View Table

    Instance of a user viewing a page. Owned by ingestion; the only
    mutation allowed afterwards is flipping ``active``.
    """
    __tablename__ = "page_view"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_id: Mapped[int] = mapped_column(Integer, ForeignKey("page.id"), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500))
    created: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_page_view_page_created", "page_id", "created"),
        Index("ix_page_view_user", "user_id"),
    )


class ActionType(Base):
    """Action Type Table"""
    __tablename__ = "action_type"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)


class Action(Base):
    """
    Action Table

    Record of a user-to-application interaction. Immutable after creation.
    """
    __tablename__ = "action"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_type_id: Mapped[int] = mapped_column(Integer, ForeignKey("action_type.id"), nullable=False)
    meta_data: Mapped[Optional[dict]] = mapped_column(JSON)
    created: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_action_type", "action_type_id"),
    )


# =============================================================================
# SATELLITE TABLES
# =============================================================================

class Referrer(Base):
    """
    Referrer Table

    External URLs that brought users into a chain. Deduplicated by href.
    """
    __tablename__ = "referrer"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    href: Mapped[str] = mapped_column(String(2000), unique=True, nullable=False)
    host: Mapped[Optional[str]] = mapped_column(String(255))
    path: Mapped[Optional[str]] = mapped_column(String(1000))
    created: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class IpLocation(Base):
    """
    IP Location Table

    Geolocated IPv4 addresses. Deduplicated by address, resolved lazily.
    """
    __tablename__ = "ip_location"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ipv4: Mapped[str] = mapped_column(String(45), unique=True, nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    country_code: Mapped[Optional[str]] = mapped_column(String(3))
    postal: Mapped[Optional[str]] = mapped_column(String(20))
    created: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Tag(Base):
    """Tag Table"""
    __tablename__ = "tag"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)


# =============================================================================
# CHAIN EDGES
# =============================================================================

class PageViewPath(Base):
    """
    Page View Path Table

    Edge connecting two page views. ``path`` is a materialized path of
    ``p{page_id}-i{index}`` segments joined by commas; children extend the
    parent's path. ``root_id`` names the chain the edge belongs to.
    """
    __tablename__ = "page_view_path"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("page_view_path.id"))
    root_id: Mapped[Optional[int]] = mapped_column(Integer)
    from_page_view_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("page_view.id"))
    to_page_view_id: Mapped[int] = mapped_column(Integer, ForeignKey("page_view.id"), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    referrer_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("referrer.id"))
    ip_location_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("ip_location.id"))
    path: Mapped[str] = mapped_column(String(2000), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta_data: Mapped[Optional[dict]] = mapped_column(JSON)
    created: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_page_view_path_parent", "parent_id"),
        Index("ix_page_view_path_root", "root_id"),
        Index("ix_page_view_path_to", "to_page_view_id"),
        Index("ix_page_view_path_user_created", "user_id", "created"),
        Index("ix_page_view_path_referrer", "referrer_id"),
        Index("ix_page_view_path_path", "path"),
    )


class ActionPath(Base):
    """
    Action Path Table

    Edge connecting two actions, optionally anchored to the page view path
    the actions happened on. Paths use ``t{action_type_id}-i{index}`` segments.
    """
    __tablename__ = "action_path"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("action_path.id"))
    root_id: Mapped[Optional[int]] = mapped_column(Integer)
    page_view_path_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("page_view_path.id"))
    from_action_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("action.id"))
    to_action_id: Mapped[int] = mapped_column(Integer, ForeignKey("action.id"), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    referrer_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("referrer.id"))
    ip_location_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("ip_location.id"))
    path: Mapped[str] = mapped_column(String(2000), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta_data: Mapped[Optional[dict]] = mapped_column(JSON)
    created: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_action_path_parent", "parent_id"),
        Index("ix_action_path_page_view_path", "page_view_path_id"),
        Index("ix_action_path_to", "to_action_id"),
    )


class PageViewPathTag(Base):
    """Maps tags to page view paths"""
    __tablename__ = "page_view_path_tag"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_view_path_id: Mapped[int] = mapped_column(Integer, ForeignKey("page_view_path.id"), nullable=False)
    tag_id: Mapped[int] = mapped_column(Integer, ForeignKey("tag.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("page_view_path_id", "tag_id", name="uq_page_view_path_tag"),
    )


class ActionTag(Base):
    """Maps tags to actions"""
    __tablename__ = "action_tag"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_id: Mapped[int] = mapped_column(Integer, ForeignKey("action.id"), nullable=False)
    tag_id: Mapped[int] = mapped_column(Integer, ForeignKey("tag.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("action_id", "tag_id", name="uq_action_tag"),
    )


# =============================================================================
# AGGREGATE BUCKET KEYS
# =============================================================================

class StatType(Base):
    """
    Stat Type Table

    A dimension aggregates are bucketed by ("date", "hour", ...).
    """
    __tablename__ = "stat_type"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)


class StatValue(Base):
    """
    Stat Value Table

    A value along a StatType dimension. For "date", ``value`` is the epoch
    seconds of the UTC day and ``name`` the ISO date.
    """
    __tablename__ = "stat_value"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stat_type_id: Mapped[int] = mapped_column(Integer, ForeignKey("stat_type.id"), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        UniqueConstraint("stat_type_id", "value", name="uq_stat_value_type_value"),
    )


# =============================================================================
# DAILY AGGREGATES
# =============================================================================

class AggregateCounts:
    """Measures shared by every aggregate family"""

    total_count: Mapped[int] = mapped_column(Integer, default=0)
    unique_count: Mapped[int] = mapped_column(Integer, default=0)
    bounce_count: Mapped[int] = mapped_column(Integer, default=0)
    entry_count: Mapped[int] = mapped_column(Integer, default=0)
    exit_count: Mapped[int] = mapped_column(Integer, default=0)
    session_count: Mapped[int] = mapped_column(Integer, default=0)
    breakdowns: Mapped[Optional[dict]] = mapped_column(JSON)
    created: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ClientStat(AggregateCounts, Base):
    """Daily traffic for all of a client's pages"""
    __tablename__ = "client_stat"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    stat_value_id: Mapped[int] = mapped_column(Integer, ForeignKey("stat_value.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("client_id", "stat_value_id", name="uq_client_stat_day"),
    )


class PageStat(AggregateCounts, Base):
    """Daily traffic for a single page"""
    __tablename__ = "page_stat"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    page_id: Mapped[int] = mapped_column(Integer, ForeignKey("page.id"), nullable=False)
    stat_value_id: Mapped[int] = mapped_column(Integer, ForeignKey("stat_value.id"), nullable=False)
    popularity: Mapped[float] = mapped_column(Float, default=0.0)

    __table_args__ = (
        UniqueConstraint("page_id", "stat_value_id", name="uq_page_stat_day"),
        Index("ix_page_stat_client_day", "client_id", "stat_value_id"),
    )


class PageStatTag(Base):
    """Tag frequency for a PageStat"""
    __tablename__ = "page_stat_tag"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_stat_id: Mapped[int] = mapped_column(Integer, ForeignKey("page_stat.id"), nullable=False)
    tag_id: Mapped[int] = mapped_column(Integer, ForeignKey("tag.id"), nullable=False)
    stat_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("page_stat_id", "tag_id", name="uq_page_stat_tag"),
    )


class PageStatAction(Base):
    """Action-type frequency for a PageStat"""
    __tablename__ = "page_stat_action"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_stat_id: Mapped[int] = mapped_column(Integer, ForeignKey("page_stat.id"), nullable=False)
    action_type_id: Mapped[int] = mapped_column(Integer, ForeignKey("action_type.id"), nullable=False)
    stat_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("page_stat_id", "action_type_id", name="uq_page_stat_action"),
    )


class ActionStat(Base):
    """Daily actions of one type performed on one page"""
    __tablename__ = "action_stat"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    page_stat_id: Mapped[int] = mapped_column(Integer, ForeignKey("page_stat.id"), nullable=False)
    action_type_id: Mapped[int] = mapped_column(Integer, ForeignKey("action_type.id"), nullable=False)
    stat_value_id: Mapped[int] = mapped_column(Integer, ForeignKey("stat_value.id"), nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    unique_count: Mapped[int] = mapped_column(Integer, default=0)
    popularity: Mapped[float] = mapped_column(Float, default=0.0)
    breakdowns: Mapped[Optional[dict]] = mapped_column(JSON)
    created: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("page_stat_id", "action_type_id", name="uq_action_stat_page_type"),
        Index("ix_action_stat_client_day", "client_id", "stat_value_id"),
    )


class PathStat(Base):
    """Daily occurrences of one materialized path"""
    __tablename__ = "path_stat"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    stat_value_id: Mapped[int] = mapped_column(Integer, ForeignKey("stat_value.id"), nullable=False)
    path: Mapped[str] = mapped_column(String(2000), nullable=False)
    from_page_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("page.id"))
    to_page_id: Mapped[int] = mapped_column(Integer, ForeignKey("page.id"), nullable=False)
    index: Mapped[int] = mapped_column(Integer, default=0)
    stat_count: Mapped[int] = mapped_column(Integer, default=0)
    unique_count: Mapped[int] = mapped_column(Integer, default=0)
    exit_count: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("client_id", "stat_value_id", "path", name="uq_path_stat_day_path"),
    )


class PathStatTag(Base):
    """Tag frequency for a PathStat"""
    __tablename__ = "path_stat_tag"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path_stat_id: Mapped[int] = mapped_column(Integer, ForeignKey("path_stat.id"), nullable=False)
    tag_id: Mapped[int] = mapped_column(Integer, ForeignKey("tag.id"), nullable=False)
    stat_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("path_stat_id", "tag_id", name="uq_path_stat_tag"),
    )


class PathStatAction(Base):
    """Action-type frequency for a PathStat"""
    __tablename__ = "path_stat_action"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path_stat_id: Mapped[int] = mapped_column(Integer, ForeignKey("path_stat.id"), nullable=False)
    action_type_id: Mapped[int] = mapped_column(Integer, ForeignKey("action_type.id"), nullable=False)
    stat_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("path_stat_id", "action_type_id", name="uq_path_stat_action"),
    )


class ReferrerStat(AggregateCounts, Base):
    """Daily traffic brought in by one referrer"""
    __tablename__ = "referrer_stat"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    referrer_id: Mapped[int] = mapped_column(Integer, ForeignKey("referrer.id"), nullable=False)
    stat_value_id: Mapped[int] = mapped_column(Integer, ForeignKey("stat_value.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("client_id", "referrer_id", "stat_value_id", name="uq_referrer_stat_day"),
    )


class UserStat(AggregateCounts, Base):
    """Daily journey summary for one user on one client"""
    __tablename__ = "user_stat"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("client.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    stat_value_id: Mapped[int] = mapped_column(Integer, ForeignKey("stat_value.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("client_id", "user_id", "stat_value_id", name="uq_user_stat_day"),
    )
