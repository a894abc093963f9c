"""
Role and membership reconstruction for database dumps.

``pg_dump`` does not dump roles, yet a schema dump references them in its
ACL statements (``GRANT``, ``REVOKE``, ``ALTER DEFAULT PRIVILEGES``,
``OWNER TO``). Replaying the schema into an empty cluster therefore needs
those roles, and the roles they are members of, to exist first.

The work happens in three steps:

1. :func:`scan_acl_roles` collects the roles referenced by the schema dump.
2. :class:`RoleExtractor` runs a recursive membership query seeded with those
   roles and turns the result into a :class:`RoleGraph`.
3. :func:`render_roles_sql` renders the graph as an idempotent SQL preamble.

PostgreSQL has no "create or update role" statement, so the preamble defines
two helper functions (create a role if it is missing, run a statement only if
the granting role exists), uses them, and drops them again at the end.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from psycopg.sql import SQL, Composable, Composed, Identifier, Literal

from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.db_adapter import PostgresExecutor

log = get_logger(__name__)

_ROLE_LIST = r"(?P<roles>.+?)"

ACL_PATTERNS = [
    re.compile(
        r"^GRANT\s.*\sTO\s+" + _ROLE_LIST + r"(?:\s+WITH\s+(?:GRANT|ADMIN)\s+OPTION)?(?:\s+GRANTED\s+BY\s+\S+)?;$"
    ),
    re.compile(
        r"^REVOKE\s.*\sFROM\s+" + _ROLE_LIST + r"(?:\s+GRANTED\s+BY\s+\S+)?(?:\s+(?:CASCADE|RESTRICT))?;$"
    ),
    re.compile(
        r"^ALTER DEFAULT PRIVILEGES\s.*\s(?:TO|FROM)\s+" + _ROLE_LIST + r"(?:\s+WITH\s+GRANT\s+OPTION)?;$"
    ),
    re.compile(r"\sOWNER TO\s+" + _ROLE_LIST + r";$"),
]

ROLE_NAME_PATTERN = re.compile(r'"(?:[^"]|"")+"|[^\s,"]+')

# pseudo-roles that may appear as grantees
PSEUDO_ROLES = {"PUBLIC", "CURRENT_USER", "SESSION_USER", "CURRENT_ROLE"}


def _unquote(name: str) -> Optional[str]:
    if name.startswith('"') and name.endswith('"'):
        return name[1:-1].replace('""', '"')
    if name.upper() in PSEUDO_ROLES or name.upper() == "GROUP":
        return None
    # unquoted identifiers are folded to lower case by the server
    return name.lower()


def scan_acl_roles(schema_sql: str) -> list[str]:
    """Return the roles referenced by ACL statements, in order of first appearance."""
    roles: dict[str, None] = {}
    for line in schema_sql.splitlines():
        line = line.rstrip()
        for pattern in ACL_PATTERNS:
            match = pattern.search(line)
            if match is None:
                continue
            for token in ROLE_NAME_PATTERN.findall(match.group("roles")):
                name = _unquote(token)
                if name:
                    roles.setdefault(name, None)
            break
    return list(roles)


@dataclass(frozen=True)
class Membership:
    """``member`` is a member of ``role``, granted by ``grantor``."""

    role: str
    member: str
    admin_option: bool = False
    grantor: Optional[str] = None


@dataclass
class RoleDumpEntry:
    """A role and the attributes needed to recreate it.

    Attributes left as None were not reported and are not emitted.
    """

    name: str
    superuser: Optional[bool] = None
    inherit: Optional[bool] = None
    createrole: Optional[bool] = None
    createdb: Optional[bool] = None
    login: Optional[bool] = None
    replication: Optional[bool] = None
    connection_limit: Optional[int] = None
    valid_until: Optional[str] = None
    comment: Optional[str] = None
    member_of: list[Membership] = field(default_factory=list)

    @property
    def granted_by(self) -> dict[str, str]:
        """Grantor of each membership of this role that records one."""
        return {m.role: m.grantor for m in self.member_of if m.grantor}

    def role_options(self) -> list[Composable]:
        flags = [
            (self.superuser, "SUPERUSER"),
            (self.inherit, "INHERIT"),
            (self.createrole, "CREATEROLE"),
            (self.createdb, "CREATEDB"),
            (self.login, "LOGIN"),
            (self.replication, "REPLICATION"),
        ]
        options: list[Composable] = [
            SQL(keyword if value else f"NO{keyword}") for value, keyword in flags if value is not None
        ]
        if self.connection_limit is not None:
            options.append(SQL(f"CONNECTION LIMIT {int(self.connection_limit)}"))
        if self.valid_until is not None:
            options.append(SQL("VALID UNTIL {}").format(Literal(self.valid_until)))
        return options


@dataclass
class RoleGraph:
    """Roles as nodes, memberships as edges."""

    roles: dict[str, RoleDumpEntry] = field(default_factory=dict)

    @property
    def memberships(self) -> list[Membership]:
        return [m for entry in self.roles.values() for m in entry.member_of]

    def add_role(self, name: str) -> RoleDumpEntry:
        if name not in self.roles:
            self.roles[name] = RoleDumpEntry(name=name)
        return self.roles[name]

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "RoleGraph":
        """Build a graph from the rows of ``ROLE_MEMBERSHIP_QUERY``.

        Each row describes a role (``rolname`` and its attributes) and
        optionally one membership in it (``member``, ``admin_option``,
        ``grantor``).
        """
        graph = cls()
        for row in rows:
            name = row.get("rolname")
            if not name:
                continue

            entry = graph.roles.get(name)
            if entry is None or entry.superuser is None:
                entry = graph.add_role(name)
                entry.superuser = row.get("rolsuper")
                entry.inherit = row.get("rolinherit")
                entry.createrole = row.get("rolcreaterole")
                entry.createdb = row.get("rolcreatedb")
                entry.login = row.get("rolcanlogin")
                entry.replication = row.get("rolreplication")
                entry.connection_limit = row.get("rolconnlimit")
                entry.valid_until = row.get("rolvaliduntil")
                entry.comment = row.get("rolcomment")

            member = row.get("member")
            if member:
                membership = Membership(
                    role=name,
                    member=member,
                    admin_option=bool(row.get("admin_option")),
                    grantor=row.get("grantor"),
                )
                member_entry = graph.add_role(member)
                if membership not in member_entry.member_of:
                    member_entry.member_of.append(membership)
        return graph


CREATE_ROLE_FUNCTION = """\
CREATE OR REPLACE FUNCTION public.pgmgr_create_role_if_missing(rolename VARCHAR)
RETURNS BOOLEAN
AS $pgmgr_create_role_if_missing$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = rolename) THEN
        EXECUTE format('CREATE ROLE %I', rolename);
        RETURN TRUE;
    END IF;
    RETURN FALSE;
END;
$pgmgr_create_role_if_missing$
LANGUAGE plpgsql;
"""

RUN_AS_GRANTOR_FUNCTION = """\
CREATE OR REPLACE FUNCTION public.pgmgr_run_as_grantor(rolename VARCHAR, statement TEXT)
RETURNS BOOLEAN
AS $pgmgr_run_as_grantor$
BEGIN
    IF EXISTS (SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = rolename) THEN
        EXECUTE statement;
        RETURN TRUE;
    END IF;
    RAISE NOTICE 'Role % does not exist, cannot record it as grantor', rolename;
    RETURN FALSE;
END;
$pgmgr_run_as_grantor$
LANGUAGE plpgsql;
"""

DROP_HELPER_FUNCTIONS = """\
DROP FUNCTION public.pgmgr_create_role_if_missing(VARCHAR);
DROP FUNCTION public.pgmgr_run_as_grantor(VARCHAR, TEXT);
"""


def _grant_statement(membership: Membership, with_grantor: bool) -> Composed:
    statement = SQL("GRANT {} TO {}").format(Identifier(membership.role), Identifier(membership.member))
    if membership.admin_option:
        statement += SQL(" WITH ADMIN OPTION")
    if with_grantor and membership.grantor:
        statement += SQL(" GRANTED BY {}").format(Identifier(membership.grantor))
    return statement


def render_roles_sql(graph: RoleGraph) -> str:
    """Render the role preamble of a dump; empty when the graph has no roles."""
    if not graph.roles:
        return ""

    statements: list[Composable] = []

    # every role has to exist before any membership refers to it
    for entry in graph.roles.values():
        statements.append(SQL("SELECT public.pgmgr_create_role_if_missing({});").format(Literal(entry.name)))
        options = entry.role_options()
        if options:
            statements.append(
                SQL("ALTER ROLE {} WITH {};").format(Identifier(entry.name), SQL(" ").join(options))
            )
        if entry.comment is not None:
            statements.append(
                SQL("COMMENT ON ROLE {} IS {};").format(Identifier(entry.name), Literal(entry.comment))
            )

    for membership in graph.memberships:
        statements.append(_grant_statement(membership, with_grantor=False) + SQL(";"))
        if membership.grantor:
            statement = _grant_statement(membership, with_grantor=True).as_string()
            statements.append(
                SQL("SELECT public.pgmgr_run_as_grantor({}, {});").format(
                    Literal(membership.grantor), Literal(statement)
                )
            )

    lines = [CREATE_ROLE_FUNCTION, RUN_AS_GRANTOR_FUNCTION]
    lines.extend(s.as_string() for s in statements)
    lines.append(DROP_HELPER_FUNCTIONS)
    return "\n".join(lines)


# Login roles that are neither superusers nor referenced by the schema are
# application users; their memberships are not followed.
EXCLUDED_ROLES_QUERY = """
SELECT oid::bigint AS oid
FROM pg_catalog.pg_roles
WHERE rolcanlogin
AND NOT rolsuper
AND NOT (rolname = ANY(%(seeds)s::text[]))
"""

ROLE_MEMBERSHIP_QUERY = """
WITH RECURSIVE memberships(roleid, member, admin_option, grantor) AS (
    SELECT ur.oid AS roleid,
           NULL::oid AS member,
           NULL::boolean AS admin_option,
           NULL::oid AS grantor
    FROM pg_catalog.pg_roles ur
    WHERE ur.rolname = ANY(%(seeds)s::text[])
    UNION
    SELECT COALESCE(a.roleid, r.oid) AS roleid,
           a.member AS member,
           a.admin_option AS admin_option,
           a.grantor AS grantor
    FROM pg_catalog.pg_auth_members a
    FULL OUTER JOIN pg_catalog.pg_roles r ON FALSE
    JOIN memberships
        ON (memberships.roleid = a.member)
        OR (memberships.roleid = r.oid OR memberships.member = r.oid)
        OR (memberships.roleid = a.roleid
            AND COALESCE(memberships.member, 0::oid) <> a.member
            AND NOT (a.member = ANY(%(excluded)s::oid[])))
)
SELECT DISTINCT ON (ur.rolname, um.rolname)
       ur.rolname AS roleid,
       um.rolname AS member,
       memberships.admin_option,
       ug.rolname AS grantor,
       ur.rolname,
       ur.rolsuper,
       ur.rolinherit,
       ur.rolcreaterole,
       ur.rolcreatedb,
       ur.rolcanlogin,
       ur.rolconnlimit,
       ur.rolvaliduntil::text AS rolvaliduntil,
       ur.rolreplication,
       pg_catalog.shobj_description(memberships.roleid, 'pg_authid') AS rolcomment
FROM memberships
LEFT JOIN pg_catalog.pg_roles ur ON ur.oid = memberships.roleid
LEFT JOIN pg_catalog.pg_roles um ON um.oid = memberships.member
LEFT JOIN pg_catalog.pg_roles ug ON ug.oid = memberships.grantor
ORDER BY 1, 2 NULLS LAST
"""


class RoleExtractor:
    """Reconstructs the roles a schema dump depends on.

    Args:
        executor: Session factory for the source database
        extra_roles: Roles to dump even when no ACL statement references them
    """

    def __init__(self, executor: PostgresExecutor, extra_roles: Optional[Iterable[str]] = None):
        self.executor = executor
        self.extra_roles = list(extra_roles or [])

    def seed_roles(self, schema_sql: str) -> list[str]:
        seeds = dict.fromkeys(scan_acl_roles(schema_sql))
        seeds.update(dict.fromkeys(self.extra_roles))
        return list(seeds)

    def fetch_graph(self, seeds: list[str]) -> RoleGraph:
        if not seeds:
            return RoleGraph()
        with self.executor.session() as session:
            excluded = [row["oid"] for row in session.fetchall(EXCLUDED_ROLES_QUERY, {"seeds": seeds})]
            rows = session.fetchall(ROLE_MEMBERSHIP_QUERY, {"seeds": seeds, "excluded": excluded})
        graph = RoleGraph.from_rows(rows)
        log.info(f"Dumping {len(graph.roles)} roles and {len(graph.memberships)} memberships")
        return graph

    def extract(self, schema_sql: str) -> str:
        """Return the role preamble for the given schema dump."""
        seeds = self.seed_roles(schema_sql)
        log.debug(f"Roles referenced by the schema: {', '.join(seeds) or '(none)'}")
        return render_roles_sql(self.fetch_graph(seeds))
