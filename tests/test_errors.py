"""
tests/test_errors.py
"""
from __future__ import annotations

import allyblog.blog as blog
from allyblog.blog import app


def test_unknown_url_gets_friendly_404(client):
    rv = client.get("/does/not/exist")
    assert rv.status_code == 404
    assert b"Page not found" in rv.data
    assert b"Back to the front page" in rv.data


def test_unhandled_error_renders_500(client, monkeypatch):
    def boom(*a, **kw):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(blog, "list_content", boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)
    rv = client.get("/blog")
    assert rv.status_code == 500
    assert b"Internal Server Error" in rv.data
    assert b"kaboom" not in rv.data


def test_security_headers(client):
    rv = client.get("/")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"
    assert rv.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"


def test_wrong_method_is_405(client):
    assert client.post("/blog").status_code == 405
