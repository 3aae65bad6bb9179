"""
Relational storage for geocell-indexed entities.

Entities live in `geo_entities`; their geocells (one row per resolution) live
in `geo_entity_cells`, which carries an index on the geocell column. A geocell
query is then a plain `IN` lookup on that index, which any SQL database can
serve without spatial extensions.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, List, Optional

from dotenv import load_dotenv
from sqlalchemy import Column, DateTime, Float, ForeignKey, String, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from .grid import MAX_GEOCELL_RESOLUTION, generate_geocells
from .models import GeocellQuery, Point
from .query_engine import GeocellBackendError

logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()

# Database URL loaded from environment variable
# Set GEOCELL_DATABASE_URL in your .env file or environment
DATABASE_URL = os.getenv("GEOCELL_DATABASE_URL")

# Create engine and session factory
# We only create these if DATABASE_URL is set (allows tests to run without DB)
engine = None
SessionLocal = None

if DATABASE_URL:
    engine = create_engine(DATABASE_URL)
    SessionLocal = sessionmaker(bind=engine)

# Base class for our models
Base = declarative_base()


class GeoEntityRecord(Base):
    """A located entity with its geocells."""
    __tablename__ = "geo_entities"

    id = Column(String(64), primary_key=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    name = Column(String(255), nullable=True)
    category = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    cells = relationship(
        "GeocellRecord",
        back_populates="entity",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def geocells(self) -> List[str]:
        return [cell.geocell for cell in self.cells]


class GeocellRecord(Base):
    """One geocell of one entity."""
    __tablename__ = "geo_entity_cells"

    entity_id = Column(String(64), ForeignKey("geo_entities.id", ondelete="CASCADE"), primary_key=True)
    geocell = Column(String(MAX_GEOCELL_RESOLUTION), primary_key=True, index=True)

    entity = relationship("GeoEntityRecord", back_populates="cells")


def get_db_session():
    """
    Get a database session.

    Returns None if database is not configured (useful for tests).
    """
    if SessionLocal is None:
        return None
    return SessionLocal()


def is_database_configured():
    """Check if database connection is configured."""
    return DATABASE_URL is not None and engine is not None


def init_db(bind=None) -> None:
    """Create the tables on `bind` (defaults to the configured engine)."""
    if bind is None:
        if not is_database_configured():
            raise GeocellBackendError("database is not configured (set GEOCELL_DATABASE_URL)")
        bind = engine
    Base.metadata.create_all(bind)


def save_entity(session: Session, record: GeoEntityRecord) -> GeoEntityRecord:
    """
    Insert or replace an entity together with its geocells.

    Raises:
        ValidationError: If the record's coordinates are out of range
        GeocellBackendError: If the write fails (the session is rolled back)
    """
    point = Point(lat=record.latitude, lon=record.longitude)

    try:
        existing = session.get(GeoEntityRecord, record.id)
        if existing is not None and existing is not record:
            session.delete(existing)
            session.flush()

        # Keep rows for cells that did not change so their primary keys are not re-inserted
        current = {cell.geocell: cell for cell in record.cells}
        record.cells = [current.get(cell) or GeocellRecord(geocell=cell) for cell in generate_geocells(point)]
        session.add(record)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("saving entity %s failed: %s", record.id, exc)
        raise GeocellBackendError(f"saving entity {record.id} failed: {exc}") from exc

    return record


class SQLAlchemyGeocellQueryEngine:
    """
    Query engine over the geo_entities / geo_entity_cells tables.

    Base query filters are translated to column comparisons, so
    `category == categoryParam` becomes `WHERE geo_entities.category = :param`.
    """

    def __init__(self, session_factory=None) -> None:
        # Without a factory, sessions come from the configured database on each query
        self.session_factory = session_factory if session_factory is not None else get_db_session

    def query(
        self,
        base_query: Optional[GeocellQuery],
        geocells: List[str],
        entity_type: Optional[type] = None,
        order_by: Optional[str] = None,
    ) -> List[Any]:
        """
        Raises:
            ValueError: If a filter or order_by names an unknown column
            GeocellBackendError: If the database is not configured or the query fails
        """
        entity_type = entity_type or GeoEntityRecord
        stmt = select(entity_type).where(entity_type.cells.any(GeocellRecord.geocell.in_(geocells)))

        if base_query is not None:
            for query_filter in base_query.filters:
                stmt = stmt.where(query_filter.apply(_column(entity_type, query_filter.field)))

        if order_by:
            column = _column(entity_type, order_by.lstrip("-"))
            stmt = stmt.order_by(column.desc() if order_by.startswith("-") else column)

        session = self.session_factory()
        if session is None:
            raise GeocellBackendError("database is not configured (set GEOCELL_DATABASE_URL)")

        try:
            return list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            logger.error("geocell query over %d cells failed: %s", len(geocells), exc)
            raise GeocellBackendError(f"SQL geocell query failed: {exc}") from exc
        finally:
            session.close()


def _column(entity_type: type, name: str):
    column = getattr(entity_type, name, None)
    if column is None or not hasattr(column, "property"):
        raise ValueError(f"{entity_type.__name__} has no column {name!r}")
    return column
