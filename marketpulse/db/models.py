"""SQLAlchemy database models."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Ticker(Base):
    """Tracked ticker symbol."""

    __tablename__ = "tickers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    spikes: Mapped[list["VolumeSpike"]] = relationship(
        "VolumeSpike", back_populates="ticker", cascade="all, delete-orphan"
    )
    snapshots: Mapped[list["HistoricalSnapshot"]] = relationship(
        "HistoricalSnapshot", back_populates="ticker", cascade="all, delete-orphan"
    )


class HistoricalSnapshot(Base):
    """Daily market snapshot used for volume baselines."""

    __tablename__ = "ticker_historical_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker_id: Mapped[int] = mapped_column(
        ForeignKey("tickers.id", ondelete="CASCADE"), nullable=False
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False)
    close_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    ticker: Mapped["Ticker"] = relationship("Ticker", back_populates="snapshots")

    __table_args__ = (
        UniqueConstraint("ticker_id", "snapshot_date", name="uq_snapshot_ticker_date"),
    )


class VolumeSpike(Base):
    """Detected volume spike."""

    __tablename__ = "volume_spikes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker_id: Mapped[int] = mapped_column(
        ForeignKey("tickers.id", ondelete="CASCADE"), nullable=False
    )
    observed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False)
    average_volume: Mapped[float] = mapped_column(Float, nullable=False)
    spike_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    price_movement: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)

    # AI analysis
    analysis_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analysis_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    analysis_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    ticker: Mapped["Ticker"] = relationship("Ticker", back_populates="spikes")

    __table_args__ = (
        UniqueConstraint("ticker_id", "observed_at", name="uq_volume_spike_ticker_observed"),
    )


class NarrativeContradiction(Base):
    """Divergence between a company's narrative and market behaviour."""

    __tablename__ = "narrative_contradictions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker_id: Mapped[int] = mapped_column(
        ForeignKey("tickers.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    validation_status: Mapped[str] = mapped_column(
        String(16), default="pending", nullable=False
    )  # pending, valid, false_positive, needs_review
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class WatchlistItem(Base):
    """A user's interest in a ticker."""

    __tablename__ = "watchlist_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticker_id: Mapped[int] = mapped_column(
        ForeignKey("tickers.id", ondelete="CASCADE"), nullable=False
    )
    alerts_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("user_id", "ticker_id", name="uq_watchlist_user_ticker"),)


class NewsArticle(Base):
    """News article from a data provider."""

    __tablename__ = "news_articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    ticker_id: Mapped[int] = mapped_column(
        ForeignKey("tickers.id", ondelete="CASCADE"), nullable=False
    )
    headline: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sentiment: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    published_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class SecFiling(Base):
    """SEC filing reference."""

    __tablename__ = "sec_filings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    accession_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    ticker_id: Mapped[int] = mapped_column(
        ForeignKey("tickers.id", ondelete="CASCADE"), nullable=False
    )
    form_type: Mapped[str] = mapped_column(String(16), nullable=False)
    filed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    is_material: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class AlertValidation(Base):
    """Recorded outcome of the validation engine."""

    __tablename__ = "alert_validations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker_id: Mapped[int] = mapped_column(
        ForeignKey("tickers.id", ondelete="CASCADE"), nullable=False
    )
    volume_spike_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("volume_spikes.id", ondelete="SET NULL"), nullable=True
    )
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    false_positive_probability: Mapped[float] = mapped_column(Float, nullable=False)
    recommendation: Mapped[str] = mapped_column(String(16), nullable=False)
    similarity_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reasons: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
