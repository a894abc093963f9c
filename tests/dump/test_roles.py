"""
Tests for role reconstruction in database dumps.
"""

import pytest

from pgmgr.dump.roles import (
    DROP_HELPER_FUNCTIONS,
    Membership,
    RoleDumpEntry,
    RoleExtractor,
    RoleGraph,
    render_roles_sql,
    scan_acl_roles,
)

SCHEMA_DUMP = """\
--
-- PostgreSQL database dump
--

CREATE TABLE public.users (
    id integer NOT NULL
);

ALTER TABLE public.users OWNER TO app_owner;
REVOKE ALL ON SCHEMA public FROM PUBLIC;
GRANT SELECT ON TABLE public.users TO readonly;
GRANT ALL ON TABLE public.users TO app_owner WITH GRANT OPTION;
GRANT SELECT,INSERT ON TABLE public.users TO "Reporting Team", writer;
ALTER DEFAULT PRIVILEGES FOR ROLE app_owner IN SCHEMA public GRANT SELECT ON TABLES TO readonly;
"""


class TestScanACLRoles:
    """Tests for collecting roles from ACL statements."""

    def test_collects_roles_in_order_of_appearance(self):
        assert scan_acl_roles(SCHEMA_DUMP) == ["app_owner", "readonly", "Reporting Team", "writer"]

    def test_ignores_public(self):
        assert scan_acl_roles("REVOKE ALL ON SCHEMA public FROM PUBLIC;\n") == []

    def test_quoted_name_with_escaped_quote(self):
        assert scan_acl_roles('GRANT USAGE ON SCHEMA s TO "we""ird";\n') == ['we"ird']

    def test_unquoted_names_are_folded(self):
        assert scan_acl_roles("ALTER SCHEMA s OWNER TO Admin;\n") == ["admin"]

    def test_granted_by_is_not_a_grantee(self):
        roles = scan_acl_roles("GRANT SELECT ON TABLE t TO reader GRANTED BY admin;\n")

        assert roles == ["reader"]

    def test_revoke_cascade(self):
        assert scan_acl_roles("REVOKE SELECT ON TABLE t FROM reader CASCADE;\n") == ["reader"]

    def test_ignores_other_statements(self):
        assert scan_acl_roles("CREATE TABLE grant_to (id int);\nSELECT 1;\n") == []


class TestRoleGraph:
    """Tests for building the role graph from query rows."""

    ROWS = [
        {"rolname": "admin", "member": "alice", "admin_option": True, "grantor": "postgres", "rolsuper": False},
        {"rolname": "admin", "member": "bob", "admin_option": False, "grantor": None, "rolsuper": False},
        {"rolname": "alice", "member": None, "rolsuper": False, "rolcanlogin": True, "rolconnlimit": -1},
        {"rolname": "bob", "member": None, "rolsuper": False, "rolcanlogin": True},
    ]

    def test_roles_and_memberships(self):
        graph = RoleGraph.from_rows(self.ROWS)

        assert list(graph.roles) == ["admin", "alice", "bob"]
        assert graph.memberships == [
            Membership("admin", "alice", admin_option=True, grantor="postgres"),
            Membership("admin", "bob"),
        ]

    def test_attributes_filled_when_member_seen_first(self):
        graph = RoleGraph.from_rows(self.ROWS)

        alice = graph.roles["alice"]
        assert alice.login is True
        assert alice.connection_limit == -1
        assert alice.granted_by == {"admin": "postgres"}

    def test_duplicate_rows(self):
        graph = RoleGraph.from_rows(self.ROWS + self.ROWS[:1])

        assert len(graph.memberships) == 2


class TestRenderRolesSQL:
    """Tests for the role preamble."""

    def test_empty_graph(self):
        assert render_roles_sql(RoleGraph()) == ""

    def test_roles_precede_memberships(self):
        graph = RoleGraph()
        graph.add_role("admin")
        alice = graph.add_role("alice")
        alice.member_of.append(Membership("admin", "alice", admin_option=True, grantor="postgres"))

        sql = render_roles_sql(graph)

        create_alice = sql.index("SELECT public.pgmgr_create_role_if_missing('alice');")
        grant = sql.index('GRANT "admin" TO "alice" WITH ADMIN OPTION;')
        assert sql.index("SELECT public.pgmgr_create_role_if_missing('admin');") < grant
        assert create_alice < grant
        assert (
            "SELECT public.pgmgr_run_as_grantor('postgres', "
            "'GRANT \"admin\" TO \"alice\" WITH ADMIN OPTION GRANTED BY \"postgres\"');"
        ) in sql
        assert sql.endswith(DROP_HELPER_FUNCTIONS)

    def test_admin_option_only_when_granted(self):
        graph = RoleGraph()
        graph.add_role("admin")
        graph.add_role("bob").member_of.append(Membership("admin", "bob"))

        sql = render_roles_sql(graph)

        assert 'GRANT "admin" TO "bob";' in sql
        assert "ADMIN OPTION" not in sql
        assert "pgmgr_run_as_grantor('" not in sql

    def test_role_options(self):
        entry = RoleDumpEntry(
            name="app",
            superuser=False,
            login=True,
            createdb=False,
            connection_limit=5,
            valid_until="2030-01-01 00:00:00+00",
            comment="Application's role",
        )
        graph = RoleGraph({"app": entry})

        sql = render_roles_sql(graph)

        assert (
            'ALTER ROLE "app" WITH NOSUPERUSER NOCREATEDB LOGIN CONNECTION LIMIT 5 '
            "VALID UNTIL '2030-01-01 00:00:00+00';"
        ) in sql
        assert "COMMENT ON ROLE \"app\" IS 'Application''s role';" in sql

    def test_role_without_attributes_has_no_alter(self):
        graph = RoleGraph()
        graph.add_role("bare")

        assert "ALTER ROLE" not in render_roles_sql(graph)

    def test_names_are_quoted(self):
        graph = RoleGraph()
        graph.add_role('we"ird')
        graph.add_role("o'brien").member_of.append(Membership('we"ird', "o'brien"))

        sql = render_roles_sql(graph)

        assert "SELECT public.pgmgr_create_role_if_missing('we\"ird');" in sql
        assert "SELECT public.pgmgr_create_role_if_missing('o''brien');" in sql
        assert 'GRANT "we""ird" TO "o\'brien";' in sql


class TestRoleExtractor:
    """Tests for RoleExtractor against a fake database."""

    def test_no_seeds_skips_database(self, fake_executor):
        extractor = RoleExtractor(fake_executor)

        assert extractor.extract("CREATE TABLE t (id int);\n") == ""
        assert fake_executor.opened == 0

    def test_seeds_include_user_roles(self, fake_executor):
        extractor = RoleExtractor(fake_executor, ["deployer", "readonly"])

        assert extractor.seed_roles(SCHEMA_DUMP) == ["app_owner", "readonly", "Reporting Team", "writer", "deployer"]

    def test_passes_seeds_and_exclusions(self, fake_executor):
        fake_executor.responses = [
            ("AND NOT rolsuper", [{"oid": 16384}, {"oid": 16385}]),
            ("WITH RECURSIVE", [{"rolname": "readonly", "member": None, "rolsuper": False}]),
        ]
        extractor = RoleExtractor(fake_executor)

        sql = extractor.extract("GRANT SELECT ON TABLE t TO readonly;\n")

        (_, excluded_params), (_, membership_params) = fake_executor.queries
        assert excluded_params == {"seeds": ["readonly"]}
        assert membership_params == {"seeds": ["readonly"], "excluded": [16384, 16385]}
        assert "pgmgr_create_role_if_missing('readonly')" in sql
        assert 'ALTER ROLE "readonly" WITH NOSUPERUSER;' in sql

    @pytest.mark.parametrize("schema", ["", "-- nothing here\n"])
    def test_empty_schema(self, fake_executor, schema):
        assert RoleExtractor(fake_executor).extract(schema) == ""
