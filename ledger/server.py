"""
Embedded PostgreSQL for the ledger.

pgserver supplies the binaries and the data directory; on start the
server provisions one login role for every ledger process (API, chain
listener, jobs, push), creates the ledger schema as that role and locks
pg_hba.conf down so only the bootstrap superuser may skip a password.
"""

import logging
import os
import urllib.parse
from contextlib import closing

import pgserver
import psycopg2

from ledger.schema import bootstrap_schema


logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.path.join(
    os.path.dirname(__file__), "..", ".pgdata", "ledger"
)

APP_ROLE = "ledger_app"
APP_PASSWORD = "ledger_secret"  # overridden by database.app_password

# (type, database, user, address, method); the superuser rule must stay
# first so bootstrap and reloads keep working over the private socket.
_HBA_RULES = [
    ("local", "all", "{superuser}", "", "trust"),
    ("local", "all", "all", "", "scram-sha-256"),
    ("host", "all", "all", "127.0.0.1/32", "scram-sha-256"),
    ("host", "all", "all", "::1/128", "scram-sha-256"),
]


def render_hba(superuser):
    lines = ["# TYPE  DATABASE  USER  ADDRESS  METHOD"]
    for kind, db, user, addr, method in _HBA_RULES:
        user = user.format(superuser=superuser)
        lines.append("  ".join(part for part in (kind, db, user, addr, method) if part))
    return "\n".join(lines) + "\n"


class LedgerServer:
    """Owns the embedded PostgreSQL instance that stores all ledger state."""

    def __init__(self, data_dir=None, app_password=None):
        self.data_dir = os.path.abspath(data_dir or DEFAULT_DATA_DIR)
        self.app_password = app_password or APP_PASSWORD
        self._pg = None
        self._superuser = None

    @property
    def running(self):
        return self._pg is not None

    def start(self):
        """Start PostgreSQL, provision the app role and ledger schema."""
        os.makedirs(self.data_dir, exist_ok=True)
        self._pg = pgserver.get_server(self.data_dir)
        self._superuser = urllib.parse.urlparse(self._pg.get_uri()).username \
            or os.getenv("USER", "postgres")
        self._provision_role()
        with closing(self.app_conn()) as conn:
            bootstrap_schema(conn)
        if self._write_hba():
            self._as_superuser("SELECT pg_reload_conf();")
            logger.info("pg_hba.conf rewritten, password auth enforced")
        logger.info("Ledger database ready at %s (db=%s)",
                    self.data_dir, self.conn_info()["dbname"])
        return self

    # ── Provisioning ─────────────────────────────────────────────────

    def _as_superuser(self, *statements):
        """Run (sql, params) pairs or bare SQL strings over the trusted
        socket; returns the rows of the last statement, if it has any."""
        rows = None
        with closing(psycopg2.connect(self._pg.get_uri())) as conn:
            conn.autocommit = True
            with conn.cursor() as cur:
                for stmt in statements:
                    sql, params = stmt if isinstance(stmt, tuple) else (stmt, None)
                    cur.execute(sql, params)
                    rows = cur.fetchall() if cur.description is not None else None
        return rows

    def _provision_role(self):
        exists = self._as_superuser(
            ("SELECT 1 FROM pg_roles WHERE rolname = %s", (APP_ROLE,)))
        if exists:
            role_sql = f"ALTER ROLE {APP_ROLE} PASSWORD %s"
        else:
            role_sql = (f"CREATE ROLE {APP_ROLE} LOGIN PASSWORD %s "
                        f"NOSUPERUSER NOCREATEDB NOCREATEROLE")
        dbname = self.conn_info()["dbname"]
        self._as_superuser(
            (role_sql, (self.app_password,)),
            f"GRANT CREATE, USAGE ON SCHEMA public TO {APP_ROLE};",
            # DBOS keeps its system tables in a schema of its own
            f"GRANT CREATE ON DATABASE {dbname} TO {APP_ROLE};",
        )

    def _write_hba(self):
        """Write pg_hba.conf if it differs; return True when changed."""
        path = os.path.join(self.data_dir, "pg_hba.conf")
        desired = render_hba(self._superuser)
        if os.path.exists(path):
            with open(path) as f:
                if f.read().strip() == desired.strip():
                    return False
        with open(path, "w") as f:
            f.write(desired)
        return True

    # ── Connection parameters ────────────────────────────────────────

    def conn_info(self):
        """Host (socket dir), port and database of the running server."""
        parsed = urllib.parse.urlparse(self._pg.get_uri())
        query = urllib.parse.parse_qs(parsed.query)
        return {
            "host": query.get("host", ["/tmp"])[0],
            "port": parsed.port or 5432,
            "dbname": parsed.path.lstrip("/") or "postgres",
        }

    def dsn(self):
        """psycopg2 keyword arguments for the application role."""
        return dict(self.conn_info(), user=APP_ROLE, password=self.app_password)

    def app_conn(self):
        return psycopg2.connect(**self.dsn())

    def dbos_url(self):
        """SQLAlchemy URL (psycopg 3 driver, unix socket) for DBOS."""
        info = self.conn_info()
        return (
            f"postgresql+psycopg://{APP_ROLE}:{urllib.parse.quote(self.app_password, safe='')}@"
            f":{info['port']}/{info['dbname']}"
            f"?host={urllib.parse.quote(info['host'], safe='')}"
        )

    def stop(self):
        if self._pg:
            self._pg.cleanup()
            self._pg = None
            logger.info("Ledger database stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.stop()
