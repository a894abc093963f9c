"""pgmgr: PostgreSQL migrations, dumps and loads."""

__version__ = "1.0.0"
