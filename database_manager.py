"""Database coordination layer: engine, sessions and health reporting."""

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, scoped_session
from contextlib import contextmanager
from typing import Dict
import logging

from errors import RideServiceError
from models import Base, Ride

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and transactional flows."""

    def __init__(self, database_url: str):
        url = make_url(database_url)
        engine_options = {
            "pool_pre_ping": True,  # Reconnect if connection lost
            "echo": False,
        }
        if url.get_backend_name() == "sqlite":
            # Request threads share the file; each checks out its own connection
            engine_options["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            engine_options.update(pool_size=20, max_overflow=40, pool_recycle=3600)

        self.engine = create_engine(url, **engine_options)
        self.session_factory = scoped_session(sessionmaker(bind=self.engine))

        # Create tables
        Base.metadata.create_all(self.engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except RideServiceError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def health_check(self) -> Dict:
        """Report database connectivity and ride count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                ride_count = session.query(Ride).count()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "rides": ride_count
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

    def dispose(self):
        self.session_factory.remove()
        self.engine.dispose()
