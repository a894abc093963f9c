"""
Database dump and load for pgmgr.

Produces a single replayable SQL script with roles, schema, data, database
settings and ownership, and loads it back with psql.
"""

from pgmgr.dump.executor import CommandExecutor, CommandResult, PgTools, SubprocessExecutor
from pgmgr.dump.pipeline import DumpPipeline
from pgmgr.dump.roles import RoleDumpEntry, RoleExtractor, RoleGraph, render_roles_sql, scan_acl_roles

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "DumpPipeline",
    "PgTools",
    "RoleDumpEntry",
    "RoleExtractor",
    "RoleGraph",
    "SubprocessExecutor",
    "render_roles_sql",
    "scan_acl_roles",
]
