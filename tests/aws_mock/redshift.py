"""Mock Redshift Data API.

Statements complete on the first describe. DDL is interpreted just enough to
track databases, users and schemas so that re-running DDL reproduces the
errors the real warehouse reports.
"""

from __future__ import annotations

import itertools
import re
from typing import Any

from .base import MockClient


class MockRedshiftDataClient(MockClient):
    """In-memory stand-in for the redshift-data client."""

    def __init__(self) -> None:
        super().__init__()
        self.databases: set[str] = {"dev"}
        self.users: set[str] = set()
        self.schemas: dict[str, set[str]] = {}
        self.executed: list[tuple[str, str]] = []
        self.statements: dict[str, dict[str, Any]] = {}
        # Substring of SQL -> error reported by the statement
        self.statement_failures: dict[str, str] = {}
        # Status reported while a statement is still running, per describe
        self.running_polls = 0
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # API
    # -------------------------------------------------------------------------

    def execute_statement(self, Sql: str, Database: str, **target: Any) -> dict[str, Any]:
        self._record("execute_statement", Sql=Sql, Database=Database, **target)
        return {"Id": self._submit([Sql], Database)}

    def batch_execute_statement(self, Sqls: list[str], Database: str, **target: Any) -> dict[str, Any]:
        self._record("batch_execute_statement", Sqls=Sqls, Database=Database, **target)
        return {"Id": self._submit(Sqls, Database)}

    def describe_statement(self, Id: str) -> dict[str, Any]:
        self._record("describe_statement", Id=Id)
        statement = self.statements[Id]
        if statement["remaining_polls"] > 0:
            statement["remaining_polls"] -= 1
            return {"Id": Id, "Status": "STARTED"}
        response = {"Id": Id, "Status": statement["status"]}
        if statement.get("error"):
            response["Error"] = statement["error"]
        return response

    def list_databases(self, Database: str, **kwargs: Any) -> dict[str, Any]:
        self._record("list_databases", Database=Database, **kwargs)
        return {"Databases": sorted(self.databases)}

    def list_schemas(self, Database: str, SchemaPattern: str = "%", **kwargs: Any) -> dict[str, Any]:
        self._record("list_schemas", Database=Database, SchemaPattern=SchemaPattern, **kwargs)
        schemas = self.schemas.get(Database, set())
        return {"Schemas": sorted(s for s in schemas if SchemaPattern in ("%", s))}

    # -------------------------------------------------------------------------
    # Statement execution
    # -------------------------------------------------------------------------

    def _submit(self, sqls: list[str], database: str) -> str:
        statement_id = f"stmt-{next(self._ids)}"
        error = None
        # A batch runs as one transaction: any failure leaves no trace
        for sql in sqls:
            error = self._check(sql, database)
            if error:
                break
        if error is None:
            for sql in sqls:
                self._apply(sql, database)
                self.executed.append((database, sql))
        self.statements[statement_id] = {
            "status": "FAILED" if error else "FINISHED",
            "error": error,
            "remaining_polls": self.running_polls,
        }
        return statement_id

    def _check(self, sql: str, database: str) -> str | None:
        for fragment, error in self.statement_failures.items():
            if fragment in sql:
                return error
        if m := re.match(r"CREATE DATABASE (\w+)", sql):
            if m.group(1) in self.databases:
                return f'ERROR: database "{m.group(1)}" already exists'
        elif m := re.match(r'CREATE USER "([^"]+)"', sql):
            if m.group(1) in self.users:
                return f'ERROR: user "{m.group(1)}" already exists'
        elif m := re.match(r"DROP DATABASE (\w+)", sql):
            if m.group(1) not in self.databases:
                return f'ERROR: database "{m.group(1)}" does not exist'
        elif sql.startswith(("CREATE SCHEMA", "CREATE TABLE", "DROP SCHEMA")):
            if database not in self.databases:
                return f'ERROR: database "{database}" does not exist'
        return None

    def _apply(self, sql: str, database: str) -> None:
        if m := re.match(r"CREATE DATABASE (\w+)", sql):
            self.databases.add(m.group(1))
        elif m := re.match(r'CREATE USER "([^"]+)"', sql):
            self.users.add(m.group(1))
        elif m := re.match(r"DROP DATABASE (\w+)", sql):
            self.databases.discard(m.group(1))
            self.schemas.pop(m.group(1), None)
        elif m := re.match(r"CREATE SCHEMA IF NOT EXISTS (\w+)", sql):
            self.schemas.setdefault(database, set()).add(m.group(1))
        elif m := re.match(r"DROP SCHEMA IF EXISTS (\w+)", sql):
            self.schemas.get(database, set()).discard(m.group(1))
