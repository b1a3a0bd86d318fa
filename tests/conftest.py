"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import os
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
from botocore.exceptions import ClientError
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# keep the test run from persisting a key next to the package
os.environ.setdefault("SESSION_SECRET", "test-secret")

# The single-file app lives here:
from allyblog import blog  # noqa: E402
from allyblog.blog import R2_ENV_KEYS, app, get_db, init_db, slugify  # noqa: E402

ADMIN_PASSWORD = "correct horse battery"
PUBLIC_BASE = "https://img.example.com"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        ADMIN_PASSWORD=ADMIN_PASSWORD,
        SESSION_COOKIE_SECURE=False,
        # the page cache has its own tests, which switch it back on
        PAGE_CACHE_ENABLED=False,
        PAGE_SIZE=5,
    )
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _clean_state(monkeypatch: MonkeyPatch) -> Generator[None, None, None]:
    """Empty tables, cache and rate-limit buckets; no R2 credentials."""
    for key in R2_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(blog, "_read_env_file", lambda: {})
    with app.app_context():
        db = get_db()
        db.execute("DELETE FROM post")
        db.execute("DELETE FROM recipe")
        db.commit()
    blog.page_cache.clear()
    blog._rate_hits.clear()
    yield
    blog.page_cache.clear()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch allyblog.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp. Newest-first ordering then never
    depends on two rows sharing a second.
    """
    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── fake image store ───────────────────────────
def _client_error(op: str) -> ClientError:
    return ClientError({"Error": {"Code": "500", "Message": "boom"}}, op)


class FakeS3:
    """The handful of boto3 S3 client calls the app makes, in memory."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str | None]] = {}
        self.deleted: list[str] = []
        self.fail_upload = False
        self.fail_delete = False

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.fail_upload:
            raise _client_error("PutObject")
        self.objects[key] = (fileobj.read(), (ExtraArgs or {}).get("ContentType"))

    def delete_object(self, Bucket, Key):
        if self.fail_delete:
            raise _client_error("DeleteObject")
        self.deleted.append(Key)
        self.objects.pop(Key, None)

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return _FakePaginator(self)


class _FakePaginator:
    def __init__(self, store: FakeS3) -> None:
        self.store = store

    def paginate(self, Bucket, Prefix=""):
        keys = sorted(k for k in self.store.objects if k.startswith(Prefix))
        # two pages, like a real listing split at MaxKeys
        half = len(keys) // 2
        yield {"Contents": [{"Key": k} for k in keys[:half]]}
        yield {"Contents": [{"Key": k} for k in keys[half:]]} if keys[half:] else {}


@pytest.fixture
def fake_r2(monkeypatch: MonkeyPatch) -> FakeS3:
    """R2 credentials in the environment plus an in-memory S3 client."""
    store = FakeS3()
    monkeypatch.setenv("R2_ACCOUNT_ID", "acct")
    monkeypatch.setenv("R2_ACCESS_KEY_ID", "key")
    monkeypatch.setenv("R2_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("R2_BUCKET", "bucket")
    monkeypatch.setenv("R2_PUBLIC_BASE", PUBLIC_BASE)
    monkeypatch.setattr(blog, "_r2_client", lambda cfg: store)
    return store


# ───────────────────────── row factories ──────────────────────────────
_DEFAULTS: dict[str, dict[str, Any]] = {
    "post": {
        "title": "Hello world",
        "description": None,
        "content": "<p>Some body text for this post.</p>",
    },
    "recipe": {
        "title": "Simple bread",
        "description": "<p>A loaf for every day of the week.</p>",
        "ingredients": "<ul><li>flour</li><li>water</li><li>salt</li></ul>",
        "instructions": "<ol><li>Mix.</li><li>Bake for an hour.</li></ol>",
        "prep_time": None,
        "cook_time": None,
        "servings": None,
    },
}


def _insert(kind: str, **fields: Any) -> int:
    row = {**_DEFAULTS[kind], "category": None, "image_url": None, "published": 1}
    row.update(fields)
    row.setdefault("slug", slugify(row["title"]))
    now = blog.utc_now().isoformat(timespec="seconds")
    row.setdefault("created_at", now)
    row.setdefault("updated_at", now)
    cols = ", ".join(row)
    marks = ", ".join("?" for _ in row)
    with app.app_context():
        db = get_db()
        cur = db.execute(
            f"INSERT INTO {kind} ({cols}) VALUES ({marks})", tuple(row.values())
        )
        db.commit()
        return cur.lastrowid


@pytest.fixture
def make_post() -> Callable[..., int]:
    return lambda **fields: _insert("post", **fields)


@pytest.fixture
def make_recipe() -> Callable[..., int]:
    return lambda **fields: _insert("recipe", **fields)


@pytest.fixture
def fetch_row() -> Callable[..., Any]:
    def _fetch(kind: str, item_id: int):
        with app.app_context():
            return get_db().execute(
                f"SELECT * FROM {kind} WHERE id=?", (item_id,)
            ).fetchone()
    return _fetch
