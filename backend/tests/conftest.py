import pytest


class FakeResult:
    def __init__(self, rows):
        self._rows = list(rows)

    def mappings(self):
        return self

    def all(self):
        return list(self._rows)

    def first(self):
        return self._rows[0] if self._rows else None

    def scalars(self):
        return FakeResult([next(iter(row.values())) if isinstance(row, dict) else row for row in self._rows])


class FakeSession:
    def __init__(self, db):
        self._db = db

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement, params=None):
        sql = str(statement)
        params = dict(params or {})
        self._db.executed.append((sql, params))
        return FakeResult(self._db.respond(sql, params))


class FakeDatabase:
    """Session factory answering information_schema lookups from a table map.

    Other statements are matched against registered SQL fragments in order.
    """

    def __init__(self, tables=None):
        self.tables = dict(tables or {})
        self.handlers = []
        self.executed = []
        self.schema_error = None

    def on(self, fragment, response):
        self.handlers.append((fragment, response))
        return self

    def statements(self, fragment):
        return [(sql, params) for sql, params in self.executed if fragment in sql]

    def respond(self, sql, params):
        if "information_schema" in sql and self.schema_error is not None:
            raise self.schema_error
        if "information_schema.tables" in sql:
            wanted = params["table"].lower()
            for name in self.tables:
                if name.lower() == wanted:
                    return [{"table_schema": params["schema"], "table_name": name}]
            return []
        if "information_schema.columns" in sql:
            return [{"column_name": col} for col in self.tables.get(params["table"], [])]
        for fragment, response in self.handlers:
            if fragment in sql:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(sql, params)
                return response
        return []

    def __call__(self):
        return FakeSession(self)


@pytest.fixture
def fake_db():
    return FakeDatabase
