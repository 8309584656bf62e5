from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ScannedLink(Base):
    __tablename__ = "scanned_links"
    __table_args__ = (Index("ix_scanned_links_url", "url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String)
    source_file: Mapped[str | None] = mapped_column(String, nullable=True)
    link_type: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ValidationResult(Base):
    __tablename__ = "validation_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AppliedCorrection(Base):
    __tablename__ = "applied_corrections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_file: Mapped[str | None] = mapped_column(String, nullable=True)
    original_url: Mapped[str] = mapped_column(String)
    corrected_url: Mapped[str | None] = mapped_column(String, nullable=True)
    correction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ResourceRequest(Base):
    __tablename__ = "resource_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requested_url: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    request_count: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditHistory(Base):
    __tablename__ = "audit_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    total_links: Mapped[int | None] = mapped_column(Integer, nullable=True)
    broken_links: Mapped[int | None] = mapped_column(Integer, nullable=True)
    seo_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    execution_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    report_path: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LinkHealthMetric(Base):
    __tablename__ = "link_health_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[str | None] = mapped_column(String, nullable=True)
    health_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    response_time_avg: Mapped[float | None] = mapped_column(Float, nullable=True)
    broken_links: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DegradationLog(Base):
    __tablename__ = "degradation_logs"

    # Track service-level transitions for post-incident review.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    previous_level: Mapped[str] = mapped_column(String)
    new_level: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(Text)
    system_load: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


TRACKED_MODELS: dict[str, type[Base]] = {
    model.__tablename__: model
    for model in (
        ScannedLink,
        ValidationResult,
        AppliedCorrection,
        ResourceRequest,
        AuditHistory,
        LinkHealthMetric,
    )
}
