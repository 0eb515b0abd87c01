"""docstream database layer."""

from docstream.db.connection import Database
from docstream.db.migrations import MIGRATIONS, run_migrations
from docstream.db.repository import Repository
from docstream.db.schema import initialize
from docstream.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
