"""
tests/test_admin.py
"""
from __future__ import annotations

import re

import pytest

CSRF = "test-token"


def _login(client) -> None:
    with client.session_transaction() as sess:
        sess["is_logged_in"] = True
        sess["csrf"] = CSRF


def _order(html: bytes, base: str) -> list[str]:
    """Slugs of the dashboard rows linking under *base*, top to bottom."""
    return re.findall(rf'<td><a href="{base}/([^"]+)">', html.decode())


@pytest.fixture
def seeded(make_post, make_recipe):
    # created in this order, so created_at runs banana < apple < cherry
    for title in ("Banana", "Apple", "Cherry"):
        make_post(title=f"{title} post")
        make_recipe(title=f"{title} dish")


def test_default_is_newest_first(client, seeded):
    _login(client)
    html = client.get("/admin").data
    assert _order(html, "/blog") == ["cherry-post", "apple-post", "banana-post"]
    assert _order(html, "/recipes") == ["cherry-dish", "apple-dish", "banana-dish"]


@pytest.mark.parametrize("order,expected", [
    ("asc", ["apple-post", "banana-post", "cherry-post"]),
    ("desc", ["cherry-post", "banana-post", "apple-post"]),
])
def test_sort_by_title(client, seeded, order, expected):
    _login(client)
    html = client.get(f"/admin?post_sort=title&post_order={order}").data
    assert _order(html, "/blog") == expected


def test_sort_applies_to_one_table_only(client, seeded):
    _login(client)
    html = client.get("/admin?recipe_sort=title&recipe_order=asc").data
    assert _order(html, "/recipes") == ["apple-dish", "banana-dish", "cherry-dish"]
    assert _order(html, "/blog") == ["cherry-post", "apple-post", "banana-post"]


def test_unknown_sort_falls_back(client, seeded):
    _login(client)
    html = client.get("/admin?post_sort=DROP&post_order=sideways").data
    assert _order(html, "/blog") == ["cherry-post", "apple-post", "banana-post"]


def test_sort_by_published(client, make_post):
    make_post(title="Live one", published=1)
    make_post(title="Draft one", published=0)
    _login(client)
    html = client.get("/admin?post_sort=published&post_order=asc").data
    assert _order(html, "/blog") == ["draft-one", "live-one"]


def test_second_dashboard_page(client, make_post):
    for i in range(7):
        make_post(title=f"Entry {i}")
    _login(client)

    first = client.get("/admin").data
    assert _order(first, "/blog") == [f"entry-{i}" for i in (6, 5, 4, 3, 2)]
    assert b"Page 1 of 2" in first

    second = client.get("/admin?post_page=2").data
    assert _order(second, "/blog") == ["entry-1", "entry-0"]
    assert b"Page 2 of 2" in second


def test_sort_links_keep_other_table_state(client, seeded):
    _login(client)
    html = client.get("/admin?recipe_sort=title&recipe_order=asc").data.decode()
    # the title header of the post table toggles post_* and carries recipe_*
    link = re.search(r'href="(/admin\?[^"]*post_sort=title[^"]*)"', html).group(1)
    assert "recipe_sort=title" in link
    assert "post_page=1" in link


def test_huge_dashboard_page_is_empty_not_an_error(client, make_post):
    make_post()
    _login(client)
    rv = client.get("/admin?post_page=99999999999999999999")
    assert rv.status_code == 200
    assert _order(rv.data, "/blog") == []
