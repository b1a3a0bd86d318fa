"""tests/test_smoke.py"""

import pytest


@pytest.mark.parametrize(
    "path",
    [
        "/",                # index
        "/blog",            # post listing
        "/recipes",         # recipe listing
        "/admin/login",     # login form
    ],
)
def test_public_routes_ok(client, path):
    """Each public endpoint should return a *successful* HTTP status."""
    rv = client.get(path)
    assert rv.status_code == 200


def test_index_without_content(client):
    rv = client.get("/")
    assert b"Ally's Kitchen" in rv.data
    assert b"No posts yet." in rv.data
    assert b"No recipes yet." in rv.data


@pytest.mark.parametrize(
    "path",
    ["/admin", "/admin/new", "/admin/recipes/new"],
)
def test_admin_pages_render(client, path, make_post, make_recipe):
    make_post()
    make_recipe()
    with client.session_transaction() as sess:
        sess["is_logged_in"] = True
        sess["csrf"] = "t"
    rv = client.get(path)
    assert rv.status_code == 200
    assert b'name="csrf" value="t"' in rv.data
