import pandas as pd
import pytest
from fastapi.testclient import TestClient

import dashboard_api


class FakeDatabase:
    """Stands in for query_db / query_to_df, answering by SQL fragment."""

    def __init__(self):
        self.calls = []
        self.responses = []

    def on(self, fragment, rows):
        self.responses.append((fragment, rows))
        return self

    def _rows_for(self, sql):
        for fragment, rows in self.responses:
            if fragment in sql:
                return [dict(row) for row in rows]
        return []

    def query_db(self, sql, params=None):
        self.calls.append((sql, tuple(params or ())))
        return self._rows_for(sql)

    def query_to_df(self, sql, params=None):
        self.calls.append((sql, tuple(params or ())))
        return pd.DataFrame(self._rows_for(sql))

    def calls_matching(self, fragment):
        return [call for call in self.calls if fragment in call[0]]


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDatabase()
    monkeypatch.setattr(dashboard_api, "query_db", db.query_db)
    monkeypatch.setattr(dashboard_api, "query_to_df", db.query_to_df)
    return db


@pytest.fixture
def client(fake_db):
    return TestClient(dashboard_api.app)
