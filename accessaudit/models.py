from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, JSON, ForeignKey, Float,
    Index, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class TimestampMixin:
    """Mixin to add automatic created/updated timestamps"""
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Audit(Base, TimestampMixin):
    __tablename__ = "audits"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String(64), nullable=False, index=True)
    # PENDING, DISCOVERING, AUDITING, AGGREGATING, COMPLETED, FAILED, CANCELLED
    status = Column(String(20), default="PENDING", nullable=False, index=True)
    discovery_method = Column(String(20), nullable=False)
    request = Column(JSON, default=dict, nullable=False)  # full AuditRequest snapshot
    is_scheduled = Column(Boolean, default=False, nullable=False)

    # Progress (polled by observers)
    total_pages = Column(Integer, default=0, nullable=False)
    processed_pages = Column(Integer, default=0, nullable=False)
    failed_pages = Column(Integer, default=0, nullable=False)
    broken_pages_count = Column(Integer, default=0, nullable=False)
    crawl_iterations = Column(Integer, default=0, nullable=False)

    # Results
    summary = Column(JSON, nullable=True)
    health_score = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    previous_audit_id = Column(Integer, ForeignKey("audits.id", ondelete="SET NULL"), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    audit_pages = relationship("AuditPage", back_populates="audit", cascade="all, delete-orphan")
    broken_pages = relationship("BrokenPageRecord", back_populates="audit", cascade="all, delete-orphan")
    aggregated_violations = relationship(
        "AggregatedViolationRecord", back_populates="audit", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_audit_project_status", "project_id", "status"),
    )

    def __repr__(self):
        return f"<Audit(id={self.id}, project='{self.project_id}', status='{self.status}', score={self.health_score})>"


class Page(Base, TimestampMixin):
    __tablename__ = "pages"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String(64), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    path = Column(String(2048), nullable=False, default="/")
    found_via = Column(String(20), nullable=False, default="CRAWL")

    __table_args__ = (
        UniqueConstraint("project_id", "url", name="uq_page_project_url"),
    )

    def __repr__(self):
        return f"<Page(id={self.id}, url='{self.url}')>"


class AuditPage(Base, TimestampMixin):
    __tablename__ = "audit_pages"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    page_id = Column(Integer, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), default="PROCESSING", nullable=False)  # PROCESSING, COMPLETED, FAILED
    error_message = Column(Text, nullable=True)
    violation_count = Column(Integer, default=0, nullable=False)
    load_time = Column(Float, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    audit = relationship("Audit", back_populates="audit_pages")
    page = relationship("Page")
    violations = relationship("Violation", back_populates="audit_page", cascade="all, delete-orphan")


class Violation(Base):
    """One raw rule failure on one page."""
    __tablename__ = "violations"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    audit_page_id = Column(Integer, ForeignKey("audit_pages.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(String(100), nullable=False)
    impact = Column(String(20), nullable=False)
    fingerprint = Column(String(64), nullable=False, index=True)
    selector = Column(Text, nullable=False, default="")
    html = Column(Text, nullable=False, default="")
    parent_html = Column(Text, nullable=True)
    failure_summary = Column(Text, nullable=True)
    help = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    help_url = Column(String(512), nullable=True)
    wcag_tags = Column(JSON, default=list, nullable=False)

    audit_page = relationship("AuditPage", back_populates="violations")


class AggregatedViolationRecord(Base):
    __tablename__ = "aggregated_violations"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    fingerprint = Column(String(64), nullable=False)
    rule_id = Column(String(100), nullable=False)
    impact = Column(String(20), nullable=False)
    help = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    help_url = Column(String(512), nullable=True)
    occurrences = Column(Integer, nullable=False, default=0)
    page_count = Column(Integer, nullable=False, default=0)
    affected_pages = Column(JSON, default=list, nullable=False)
    unique_elements = Column(JSON, default=list, nullable=False)
    sample_selector = Column(Text, nullable=True)
    sample_html = Column(Text, nullable=True)
    sample_page_url = Column(String(2048), nullable=True)
    priority = Column(Integer, nullable=False, default=0, index=True)

    audit = relationship("Audit", back_populates="aggregated_violations")

    __table_args__ = (
        UniqueConstraint("audit_id", "fingerprint", name="uq_aggregated_audit_fingerprint"),
    )


class BrokenPageRecord(Base):
    __tablename__ = "broken_pages"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    error_type = Column(String(30), nullable=False)  # timeout, http_error, connection_error, ssl_error, other
    http_status = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=False, default="")
    discovered_from = Column(String(2048), nullable=True)
    attempted_at = Column(DateTime, nullable=False, server_default=func.now())

    audit = relationship("Audit", back_populates="broken_pages")


class Schedule(Base, TimestampMixin):
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String(64), nullable=False, index=True)
    request = Column(JSON, nullable=False)  # AuditRequest template
    interval_hours = Column(Integer, nullable=False, default=24)
    active = Column(Boolean, default=True, nullable=False)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True, index=True)
    last_audit_id = Column(Integer, ForeignKey("audits.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self):
        return f"<Schedule(id={self.id}, project='{self.project_id}', active={self.active}, every={self.interval_hours}h)>"
