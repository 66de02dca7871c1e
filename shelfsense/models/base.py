"""
Base database model and session management

There is no module-level engine: the process entry point (FastAPI lifespan,
CLI, scheduler) builds one with create_session_factory() and hands sessions
to the services that need them.
"""
import os
from dataclasses import dataclass, asdict
from typing import Tuple

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from shelfsense.utils.logger import log

# Base class for all models
Base = declarative_base()


def _resolve_sqlite_path(database_url: str) -> str:
    """Resolve relative SQLite paths to absolute so cwd changes can't break it"""
    if database_url.startswith("sqlite:///") and not database_url.startswith("sqlite:////"):
        rel_path = database_url[len("sqlite:///"):]
        if rel_path and rel_path != ":memory:":
            return "sqlite:///" + os.path.abspath(rel_path)
    return database_url


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite gets FK enforcement and a busy timeout"""
    url = _resolve_sqlite_path(database_url)

    if url.startswith("sqlite"):
        in_memory = url in ("sqlite://", "sqlite:///:memory:")
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 60},
            # One shared connection keeps an in-memory database alive across sessions
            poolclass=StaticPool if in_memory else None,
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=3,
        max_overflow=5,
        pool_recycle=300,
    )


def create_session_factory(database_url: str) -> Tuple[Engine, sessionmaker]:
    """Build engine + session factory for one process"""
    engine = create_db_engine(database_url)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create missing tables (development and tests; production schema is provisioned externally)"""
    # Import models so they register with Base.metadata
    from shelfsense.models import store  # noqa: F401

    Base.metadata.create_all(bind=engine)


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional enrichment columns present in the store's schema"""
    has_product_title: bool = True
    has_variant_title: bool = True
    has_product_type: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


def probe_capabilities(engine: Engine) -> SchemaCapabilities:
    """
    Inspect the snapshot table once at startup.

    The schema is owned by an external provisioning step and may lag behind
    the models; analytics only selects the enrichment columns found here.
    """
    inspector = inspect(engine)
    if not inspector.has_table("variant_snapshots"):
        log.warning("variant_snapshots table not found; title enrichment disabled")
        return SchemaCapabilities(False, False, False)

    columns = {c["name"] for c in inspector.get_columns("variant_snapshots")}
    capabilities = SchemaCapabilities(
        has_product_title="product_title" in columns,
        has_variant_title="variant_title" in columns,
        has_product_type="product_type" in columns,
    )
    log.info(f"Schema capabilities: {capabilities.to_dict()}")
    return capabilities
