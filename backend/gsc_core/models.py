"""
Search Console Integration — Database Models
Connections and sites per tenant, OAuth CSRF state, indexation tracking,
the submission queue and the per-day quota ledger.
"""

import uuid
import enum
from datetime import datetime, date, timezone
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, Date, Uuid,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from gsc_core.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class Verdict(str, enum.Enum):
    INDEXED = "indexed"
    NOT_INDEXED = "not_indexed"
    UNKNOWN = "unknown"
    ERROR = "error"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    FAILED = "failed"


class UrlSource(str, enum.Enum):
    SITEMAP = "sitemap"
    MANUAL = "manual"


class SubmitAction(str, enum.Enum):
    URL_UPDATED = "URL_UPDATED"
    URL_DELETED = "URL_DELETED"


class QuotaKind(str, enum.Enum):
    SUBMIT = "submit"    # Indexing API publishes
    INSPECT = "inspect"  # URL Inspection API calls


# ══════════════════════════════════════════════════════════════════════
#  STORES — internal store entities sites can be linked to
# ══════════════════════════════════════════════════════════════════════

class Store(Base):
    """A tenant's store. Only the fields needed for domain matching."""
    __tablename__ = "stores"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_stores_tenant_id", "tenant_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CONNECTIONS — one OAuth connection per tenant
# ══════════════════════════════════════════════════════════════════════

class GscConnection(Base):
    """OAuth tokens for a tenant. Token columns hold Fernet ciphertext."""
    __tablename__ = "gsc_connections"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    sites: Mapped[list["GscSite"]] = relationship("GscSite", back_populates="connection", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_gsc_connections_is_active", "is_active"),
    )


class GscSite(Base):
    """A verified Search Console property discovered for a connection."""
    __tablename__ = "gsc_sites"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("gsc_connections.id", ondelete="CASCADE"), nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    site_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    permission_level: Mapped[str] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    connection: Mapped["GscConnection"] = relationship("GscConnection", back_populates="sites")
    indexation_urls: Mapped[list["IndexationUrl"]] = relationship("IndexationUrl", back_populates="site", cascade="all, delete-orphan")
    queue_items: Mapped[list["QueueItem"]] = relationship("QueueItem", back_populates="site", cascade="all, delete-orphan")
    store_links: Mapped[list["SiteStoreLink"]] = relationship("SiteStoreLink", back_populates="site", cascade="all, delete-orphan")
    settings: Mapped["IndexationSettings"] = relationship("IndexationSettings", back_populates="site", cascade="all, delete-orphan", uselist=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "site_url", name="uq_site_per_connection"),
        Index("ix_gsc_sites_tenant_id", "tenant_id"),
    )


class SiteStoreLink(Base):
    """Association between a site and an internal store matched by domain."""
    __tablename__ = "gsc_site_store_links"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("gsc_sites.id", ondelete="CASCADE"), nullable=False)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    linked_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    site: Mapped["GscSite"] = relationship("GscSite", back_populates="store_links")

    __table_args__ = (
        UniqueConstraint("site_id", "store_id", name="uq_site_store_link"),
    )


# ══════════════════════════════════════════════════════════════════════
#  OAUTH STATE — single-use CSRF tokens
# ══════════════════════════════════════════════════════════════════════

class OAuthState(Base):
    __tablename__ = "gsc_oauth_states"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    state: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_gsc_oauth_states_expires_at", "expires_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  INDEXATION — URL verdicts, settings, submission queue, quota ledger
# ══════════════════════════════════════════════════════════════════════

class IndexationUrl(Base):
    """A URL tracked for a site with its last-known indexing verdict."""
    __tablename__ = "gsc_indexation_urls"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("gsc_sites.id", ondelete="CASCADE"), nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    source: Mapped[str] = mapped_column(String(20), default=UrlSource.MANUAL.value)
    lastmod: Mapped[str] = mapped_column(String(64), nullable=True)  # as published in the sitemap
    verdict: Mapped[str] = mapped_column(String(20), default=Verdict.UNKNOWN.value)
    coverage_state: Mapped[str] = mapped_column(String(255), nullable=True)
    last_crawl_time: Mapped[str] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str] = mapped_column(Text, nullable=True)
    last_inspected_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    site: Mapped["GscSite"] = relationship("GscSite", back_populates="indexation_urls")

    __table_args__ = (
        UniqueConstraint("site_id", "url", name="uq_indexation_url_per_site"),
        Index("ix_gsc_indexation_urls_site_verdict", "site_id", "verdict"),
        Index("ix_gsc_indexation_urls_last_inspected_at", "last_inspected_at"),
    )


class IndexationSettings(Base):
    """Auto-indexation switches per site."""
    __tablename__ = "gsc_indexation_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("gsc_sites.id", ondelete="CASCADE"), nullable=False, unique=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    auto_index_new: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_index_updated: Mapped[bool] = mapped_column(Boolean, default=False)
    last_sitemap_check_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    site: Mapped["GscSite"] = relationship("GscSite", back_populates="settings")


class QueueItem(Base):
    """A URL awaiting (re)submission to the Indexing API."""
    __tablename__ = "gsc_indexation_queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("gsc_sites.id", ondelete="CASCADE"), nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    action: Mapped[str] = mapped_column(String(20), default=SubmitAction.URL_UPDATED.value)
    status: Mapped[str] = mapped_column(String(20), default=QueueStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    site: Mapped["GscSite"] = relationship("GscSite", back_populates="queue_items")

    __table_args__ = (
        UniqueConstraint("site_id", "url", name="uq_queue_url_per_site"),
        Index("ix_gsc_indexation_queue_tenant_status", "tenant_id", "status", "enqueued_at"),
    )


class QuotaCounter(Base):
    """Successful-reservation count per tenant, quota kind and UTC day."""
    __tablename__ = "gsc_quota_counters"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), primary_key=True, default=QuotaKind.SUBMIT.value)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)
