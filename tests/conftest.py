from __future__ import annotations

import pytest

from ptw_mvp.app import store


@pytest.fixture()
def db_path(tmp_path):
    path = str(tmp_path / "ptw_test.db")
    token = store.DB_PATH_CTX.set(path)
    store.init_db()
    yield path
    store.DB_PATH_CTX.reset(token)


@pytest.fixture()
def users(db_path):
    return {u.username: u for u in store.list_users()}
