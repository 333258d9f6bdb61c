"""Persistence layer: async SQLAlchemy models, database and repositories."""

from soundshelf.infrastructure.persistence.database import Database
from soundshelf.infrastructure.persistence.models import Base

__all__ = ["Base", "Database"]
