#!/usr/bin/env python3
"""
A small blog + recipe site with a single-password admin.
"""

import os
import re
import secrets
import sqlite3
import unicodedata
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from html import unescape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from threading import RLock
from time import time
from typing import DefaultDict
from urllib.parse import urlencode

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    abort,
    flash,
    g,
    get_flashed_messages,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "blog.sqlite3"
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_setting(key: str, default: str = "") -> str:
    """Process env first, then the .env file next to the package."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


def _load_secret_key() -> str:
    key = env_setting("SESSION_SECRET")
    if key:
        return key
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


SECRET_KEY = _load_secret_key()
APP_ENV = env_setting("APP_ENV", "production").lower()

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_PREFIX = "uploads/"
UPLOAD_MAX_BYTES = 8 * 1024 * 1024  # 8 MiB per image

SLUG_MAX_LEN = 255
SLUG_MAX_ATTEMPTS = 100
SLUG_WRITE_RETRIES = 3
SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_SLUG_DROP_RE = re.compile(r"[*+~.()'\"!:@‘’“”]")
_SLUG_SEP_RE = re.compile(r"[^a-z0-9]+")

PAGE_DEFAULT = 5
RECENT_LIMIT = 3
SORT_FIELDS = ("title", "category", "created_at", "published")
SORT_DEFAULT = "created_at"
EXCERPT_LEN = 100
META_DESCRIPTION_LEN = 160
PAGE_CACHE_MAX_ENTRIES = 256
PAGE_CACHE_ARGS = ("page", "category")

# Each content type lives in its own table; field tuples drive validation,
# the admin form and the SQL column lists.
KINDS = {
    "post": {
        "table": "post",
        "label": "Post",
        "base": "/blog",
        "plain_fields": ("description",),
        "rich_fields": ("content",),
    },
    "recipe": {
        "table": "recipe",
        "label": "Recipe",
        "base": "/recipes",
        "plain_fields": ("prep_time", "cook_time", "servings"),
        "rich_fields": ("description", "ingredients", "instructions"),
    },
}
FIELD_LABELS = {
    "title": "Title",
    "slug": "Slug",
    "description": "Description",
    "content": "Content",
    "ingredients": "Ingredients",
    "instructions": "Instructions",
    "prep_time": "Prep time",
    "cook_time": "Cook time",
    "servings": "Servings",
    "category": "Category",
    "image": "Image",
}
RICH_MIN_LEN = 10
TITLE_MIN_LEN = 3
POST_DESCRIPTION_MAX = 200

try:
    PAGE_CACHE_TTL = int(env_setting("PAGE_CACHE_TTL", "300"))
except ValueError:
    PAGE_CACHE_TTL = 300
try:
    PAGE_SIZE = int(env_setting("PAGE_SIZE", str(PAGE_DEFAULT)))
except ValueError:
    PAGE_SIZE = PAGE_DEFAULT

try:
    __version__ = version("allyblog")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=env_setting("DATABASE", str(DB_FILE)),
    ADMIN_PASSWORD=env_setting("ADMIN_PASSWORD"),
    SESSION_COOKIE_NAME="admin-session",
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=APP_ENV == "production",
    PAGE_SIZE=PAGE_SIZE,
    PAGE_CACHE_ENABLED=PAGE_CACHE_TTL > 0,
    PAGE_CACHE_TTL=PAGE_CACHE_TTL,
    UPLOAD_MAX_BYTES=UPLOAD_MAX_BYTES,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]
_HTML_START_RE = re.compile(r"^\s*<[A-Za-z!/]")
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def _markdown_renderer():
    return markdown.Markdown(extensions=MD_EXTENSIONS, output_format="html")


md = _markdown_renderer()


def to_html(text: str | None) -> str:
    """
    Serialise editor input to the HTML that gets stored.

    Input that already starts with a tag came from the rich-text editor and
    is kept verbatim; anything else is treated as Markdown.
    """
    if not text or not text.strip():
        return ""
    if _HTML_START_RE.match(text):
        return text.strip()
    md.reset()
    return md.convert(text.strip())


def plain_text(html: str | None) -> str:
    if not html:
        return ""
    return _WS_RE.sub(" ", unescape(_TAG_RE.sub(" ", html))).strip()


def excerpt(html: str | None, max_len: int = EXCERPT_LEN) -> str:
    """Plain-text preview of stored HTML."""
    text = plain_text(html)
    if len(text) <= max_len:
        return text
    return text[:max_len].rstrip() + "..."


@app.template_filter("excerpt")
def excerpt_filter(html: str | None, max_len: int = EXCERPT_LEN) -> str:
    return excerpt(html, max_len)


@app.template_filter("rich")
def rich_filter(html: str | None) -> Markup:
    """Stored HTML is authored by the admin only."""
    return Markup(html or "")


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return f"{dt:%B} {dt.day}, {dt.year}"


###############################################################################
# Database helpers
###############################################################################
SCHEMA = """
CREATE TABLE IF NOT EXISTS post (
    id          INTEGER PRIMARY KEY,
    title       TEXT NOT NULL,
    slug        TEXT NOT NULL UNIQUE,
    description TEXT,
    content     TEXT NOT NULL,
    category    TEXT,
    image_url   TEXT,
    published   INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_post_published ON post(published, created_at);

CREATE TABLE IF NOT EXISTS recipe (
    id           INTEGER PRIMARY KEY,
    title        TEXT NOT NULL,
    slug         TEXT NOT NULL UNIQUE,
    description  TEXT NOT NULL,
    ingredients  TEXT NOT NULL,
    instructions TEXT NOT NULL,
    prep_time    TEXT,
    cook_time    TEXT,
    servings     TEXT,
    category     TEXT,
    image_url    TEXT,
    published    INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_recipe_published ON recipe(published, created_at);
"""
_SCHEMA_CHECKED: set[str] = set()


def get_db():
    if "db" not in g:
        path = app.config["DATABASE"]
        g.db = sqlite3.connect(path)
        g.db.row_factory = sqlite3.Row
        if path not in _SCHEMA_CHECKED:
            g.db.executescript(SCHEMA)
            _SCHEMA_CHECKED.add(path)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Content helpers
###############################################################################
class ContentError(Exception):
    """Base class for failures surfaced to the admin forms."""


class SlugConflict(ContentError):
    pass


class SlugGenerationExhausted(ContentError):
    pass


class ImageUploadFailure(ContentError):
    pass


class InvalidFileType(ImageUploadFailure):
    pass


def normalize_category(raw: str | None) -> str | None:
    """
    "  desserts " → "Desserts",  "QUICK bites" → "Quick bites".
    Blank input means no category.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    return value[0].upper() + value[1:].lower()


def kind_table(kind: str) -> str:
    return KINDS[kind]["table"]


def kind_label(kind: str) -> str:
    return KINDS[kind]["label"]


def detail_path(kind: str, slug: str) -> str:
    return f"{KINDS[kind]['base']}/{slug}"


def get_row(kind: str, item_id: int, *, db):
    return db.execute(
        f"SELECT * FROM {kind_table(kind)} WHERE id=?", (item_id,)
    ).fetchone()


def get_by_slug(kind: str, slug: str, *, db, include_drafts: bool = False):
    sql = f"SELECT * FROM {kind_table(kind)} WHERE slug=?"
    if not include_drafts:
        sql += " AND published=1"
    return db.execute(sql, (slug,)).fetchone()


# Pagination helpers
def page_size() -> int:
    try:
        size = int(app.config.get("PAGE_SIZE", PAGE_DEFAULT))
    except (TypeError, ValueError):
        return PAGE_DEFAULT
    return size if size > 0 else PAGE_DEFAULT


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    pages = (total + per_page - 1) // per_page
    if page > max(pages, 1):
        return [], pages
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, pages


def list_content(
    kind: str,
    *,
    db,
    page: int = 1,
    per_page: int | None = None,
    category: str | None = None,
    include_drafts: bool = False,
):
    """Newest-first listing; drafts only when *include_drafts*."""
    clauses, params = [], []
    if not include_drafts:
        clauses.append("published=1")
    if category:
        clauses.append("category=?")
        params.append(category)
    sql = f"SELECT * FROM {kind_table(kind)}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at DESC, id DESC"
    return paginate(
        sql, tuple(params), page=max(page, 1), per_page=per_page or page_size(), db=db
    )


def admin_listing(kind: str, *, db, page: int = 1, sort: str = "", order: str = ""):
    """
    Every row of *kind*, sorted by one of SORT_FIELDS.
    Returns (rows, pages, sort, order) with the effective sort applied.
    """
    sort = sort if sort in SORT_FIELDS else SORT_DEFAULT
    order = "asc" if order == "asc" else "desc"
    direction = order.upper()
    sql = (
        f"SELECT * FROM {kind_table(kind)} "
        f"ORDER BY {sort} {direction}, id {direction}"
    )
    rows, pages = paginate(sql, (), page=max(page, 1), per_page=page_size(), db=db)
    return rows, pages, sort, order


def categories(kind: str, *, db, include_drafts: bool = False) -> list[str]:
    sql = (
        f"SELECT DISTINCT category FROM {kind_table(kind)} "
        "WHERE category IS NOT NULL AND TRIM(category) != ''"
    )
    if not include_drafts:
        sql += " AND published=1"
    return [r["category"] for r in db.execute(sql + " ORDER BY category")]


###############################################################################
# Slug allocation
###############################################################################
def slugify(text: str | None) -> str:
    """
    "Grandma's Apple Pie!!" → "grandmas-apple-pie".
    Accents are folded to ASCII, everything else outside [a-z0-9]
    collapses into single hyphens.
    """
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text)
    text = text.encode("ascii", "ignore").decode("ascii").lower()
    text = _SLUG_DROP_RE.sub("", text)
    return _SLUG_SEP_RE.sub("-", text).strip("-")


def slug_exists(kind: str, slug: str, *, exclude_id: int | None = None, db) -> bool:
    sql = f"SELECT 1 FROM {kind_table(kind)} WHERE slug=?"
    params: tuple = (slug,)
    if exclude_id is not None:
        sql += " AND id != ?"
        params += (exclude_id,)
    return db.execute(sql + " LIMIT 1", params).fetchone() is not None


def _with_suffix(base: str, n: int) -> str:
    if n == 0:
        return base[:SLUG_MAX_LEN].strip("-")
    suffix = f"-{n}"
    # the base gives way so the counter is never cut off
    return base[: SLUG_MAX_LEN - len(suffix)].strip("-") + suffix


def allocate_slug(kind: str, title: str, *, exclude_id: int | None = None, db) -> str:
    """
    Derive a slug from *title* that no other row of *kind* owns.

    The row *exclude_id* is ignored while checking, so re-allocating for an
    unchanged title hands back the slug the row already has.
    """
    base = slugify(title)
    if not base:
        raise SlugGenerationExhausted(f"{title!r} does not produce a usable slug")
    for n in range(SLUG_MAX_ATTEMPTS):
        candidate = _with_suffix(base, n)
        if not slug_exists(kind, candidate, exclude_id=exclude_id, db=db):
            return candidate
    raise SlugGenerationExhausted(
        f"no free slug for {base!r} after {SLUG_MAX_ATTEMPTS} attempts"
    )


def _is_slug_violation(exc: sqlite3.IntegrityError) -> bool:
    return ".slug" in str(exc)


###############################################################################
# Image store (S3-compatible, Cloudflare R2 by default)
###############################################################################
def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        base = base.rstrip("/")
        return f"{base}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def r2_key_from_url(cfg: dict[str, str], url: str) -> str | None:
    """Inverse of r2_object_url; None for URLs this store did not hand out."""
    base = r2_object_url(cfg, "")
    if not url or not url.startswith(base):
        return None
    return url[len(base) :] or None


def image_key(filename: str | None) -> str:
    name = secure_filename(filename or "") or "image"
    stamp = utc_now().strftime("%Y%m%d%H%M%S")
    return f"{UPLOAD_PREFIX}{stamp}-{uuid.uuid4().hex[:8]}-{name}"


def file_size(f) -> int:
    stream = f.stream
    pos = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(pos)
    return size


def store_image(f) -> str:
    """Upload a werkzeug FileStorage and return its public URL."""
    mime = (f.mimetype or "").lower()
    if not mime.startswith("image/"):
        raise InvalidFileType("Invalid file type. Only images are allowed.")

    cfg = r2_config()
    if not r2_is_configured(cfg):
        raise ImageUploadFailure("Image uploads are not configured.")

    key = image_key(f.filename)
    try:
        client = _r2_client(cfg)
        f.stream.seek(0)
        client.upload_fileobj(
            f.stream,
            cfg["R2_BUCKET"],
            key,
            ExtraArgs={"ContentType": mime},
        )
    except (BotoCoreError, ClientError) as exc:
        app.logger.exception("R2 upload failed")
        raise ImageUploadFailure("Image upload failed. Please try again.") from exc
    return r2_object_url(cfg, key)


def delete_image(url: str | None) -> bool:
    """
    Best-effort removal of a stored image. Failures are logged and
    reported through the return value, never raised.
    """
    if not url:
        return False
    cfg = r2_config()
    if not r2_is_configured(cfg):
        app.logger.warning("Cannot delete %s: image store not configured", url)
        return False
    key = r2_key_from_url(cfg, url)
    if key is None:
        app.logger.warning("Cannot delete %s: not an image store URL", url)
        return False
    try:
        _r2_client(cfg).delete_object(Bucket=cfg["R2_BUCKET"], Key=key)
    except (BotoCoreError, ClientError):
        app.logger.warning("Failed to delete image %s", url, exc_info=True)
        return False
    return True


###############################################################################
# CLI – schema, password hash, orphaned images
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the post and recipe tables."""
    init_db()
    click.secho("✅  Database ready.", fg="green")


@app.cli.command("hash-password")
@click.option(
    "--password",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help="Admin password to hash",
)
def cli_hash_password(password: str):
    """Print a password hash to use as ADMIN_PASSWORD."""
    click.echo(generate_password_hash(password))


@app.cli.command("prune-images")
@click.option("--dry-run", is_flag=True, help="Only list orphaned images.")
def cli_prune_images(dry_run: bool):
    """Delete stored images that no post or recipe points to."""
    cfg = r2_config()
    if not r2_is_configured(cfg):
        raise click.ClickException("Image uploads are not configured.")

    db = get_db()
    referenced = set()
    for kind in KINDS:
        for row in db.execute(
            f"SELECT image_url FROM {kind_table(kind)} WHERE image_url IS NOT NULL"
        ):
            key = r2_key_from_url(cfg, row["image_url"])
            if key:
                referenced.add(key)

    client = _r2_client(cfg)
    paginator = client.get_paginator("list_objects_v2")
    orphans = [
        obj["Key"]
        for page in paginator.paginate(Bucket=cfg["R2_BUCKET"], Prefix=UPLOAD_PREFIX)
        for obj in page.get("Contents", [])
        if obj["Key"] not in referenced
    ]
    for key in orphans:
        click.echo(key)
        if not dry_run:
            try:
                client.delete_object(Bucket=cfg["R2_BUCKET"], Key=key)
            except (BotoCoreError, ClientError):
                app.logger.warning("Failed to prune %s", key, exc_info=True)

    verb = "found" if dry_run else "pruned"
    click.secho(f"{len(orphans)} orphaned image(s) {verb}.", fg="yellow")


###############################################################################
# Authentication
###############################################################################
ADMIN_PREFIX = "/admin"
ADMIN_OPEN_PATHS = ("/admin/login", "/admin/logout")
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
_HASH_PREFIXES = ("scrypt:", "pbkdf2:")


def verify_password(password: str | None) -> bool:
    """
    Compare against the shared ADMIN_PASSWORD, which may be stored either
    as plain text or as a werkzeug hash.
    """
    stored = app.config.get("ADMIN_PASSWORD") or ""
    if not stored or not password:
        return False
    if stored.startswith(_HASH_PREFIXES):
        return check_password_hash(stored, password)
    return secrets.compare_digest(stored.encode(), password.encode())


def is_admin() -> bool:
    return session.get("is_logged_in") is True


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


_rate_hits: DefaultDict[str, deque] = defaultdict(deque)


def rate_limit(max_requests: int, window: int = 60):
    """Cap POSTs to the wrapped view per client IP."""

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method != "POST":
                return view(*args, **kwargs)
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = _rate_hits[f"{view.__name__}:{ip}"]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return (
                    "Too many requests – try again later.",
                    429,
                    {"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _is_admin_path(path: str) -> bool:
    return path == ADMIN_PREFIX or path.startswith(ADMIN_PREFIX + "/")


@app.before_request
def admin_gate():
    path = request.path or ""
    if not _is_admin_path(path) or path.rstrip("/") in ADMIN_OPEN_PATHS:
        return None
    if is_admin():
        return None
    if request.method in SAFE_METHODS:
        return redirect(url_for("login", next=path))
    return {"message": "Authentication required.", "status": 401}, 401


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ no logged-in flag yet ⇒ allow (covers the login POST)
    if not is_admin():
        return

    # ➌ for authenticated users we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Page cache
###############################################################################
class PageCache:
    """
    Rendered public pages for anonymous visitors, keyed by path + query.
    Holds at most *max_entries* pages; the oldest write goes first.
    """

    def __init__(self, max_entries: int = PAGE_CACHE_MAX_ENTRIES) -> None:
        self._store: dict[tuple[str, str], tuple[float, str]] = {}
        self._lock = RLock()
        self.max_entries = max_entries

    def get(self, path: str, query: str, *, ttl: int) -> str | None:
        with self._lock:
            hit = self._store.get((path, query))
            if hit is None:
                return None
            stored_at, html = hit
            if time() - stored_at > ttl:
                del self._store[(path, query)]
                return None
            return html

    def set(self, path: str, query: str, html: str) -> None:
        with self._lock:
            # re-insert so dict order stays oldest-write first
            self._store.pop((path, query), None)
            self._store[(path, query)] = (time(), html)
            while len(self._store) > self.max_entries:
                del self._store[next(iter(self._store))]

    def invalidate(self, *paths: str) -> int:
        """Drop every cached variant (any query string) of *paths*."""
        targets = {p.rstrip("/") or "/" for p in paths}
        with self._lock:
            stale = [key for key in self._store if key[0] in targets]
            for key in stale:
                del self._store[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


page_cache = PageCache()


def cache_query() -> str:
    """Only the arguments the public views read; anything else is noise."""
    return urlencode(
        [(k, request.args[k]) for k in PAGE_CACHE_ARGS if request.args.get(k)]
    )


def cached_page(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if (
            not app.config.get("PAGE_CACHE_ENABLED")
            or request.method != "GET"
            or is_admin()
        ):
            return view(*args, **kwargs)
        path = request.path.rstrip("/") or "/"
        query = cache_query()
        ttl = int(app.config.get("PAGE_CACHE_TTL", PAGE_CACHE_TTL))
        html = page_cache.get(path, query, ttl=ttl)
        if html is not None:
            return html
        rv = view(*args, **kwargs)
        if isinstance(rv, str):
            page_cache.set(path, query, rv)
        return rv

    return wrapped


def invalidate_content(kind: str, *slugs: str | None) -> None:
    """Forget the home page, the listing and the given detail pages."""
    paths = ["/", KINDS[kind]["base"]]
    paths += [detail_path(kind, s) for s in dict.fromkeys(slugs) if s]
    page_cache.invalidate(*paths)


###############################################################################
# Form validation
###############################################################################
def _text(form, name: str) -> str:
    return (form.get(name) or "").strip()


def _checkbox(form, name: str) -> bool:
    return (form.get(name) or "").lower() in ("on", "1", "true", "yes")


def validate_form(kind: str, form, files) -> tuple[dict, dict[str, list[str]]]:
    """
    Check a submitted post/recipe form.

    Returns ``(data, errors)``. *data* holds the cleaned column values plus
    ``slug`` (explicit slug or None) and ``image`` (FileStorage or None);
    rich-text fields are already serialised to HTML. *errors* maps field
    names to messages and is empty when the form is valid.
    """
    meta = KINDS[kind]
    errors: DefaultDict[str, list[str]] = defaultdict(list)
    data: dict = {}

    title = _text(form, "title")
    if len(title) < TITLE_MIN_LEN:
        errors["title"].append(
            f"Title must be at least {TITLE_MIN_LEN} characters."
        )
    data["title"] = title

    slug = _text(form, "slug") or None
    if slug and (not SLUG_RE.fullmatch(slug) or len(slug) > SLUG_MAX_LEN):
        errors["slug"].append(
            "Slug can only contain lowercase letters, numbers, and hyphens."
        )
    data["slug"] = slug

    for field in meta["plain_fields"]:
        data[field] = _text(form, field) or None
    description = data.get("description") or ""
    if kind == "post" and len(description) > POST_DESCRIPTION_MAX:
        errors["description"].append(
            f"Description must be {POST_DESCRIPTION_MAX} characters or less."
        )

    for field in meta["rich_fields"]:
        raw = _text(form, field)
        if len(plain_text(to_html(raw))) < RICH_MIN_LEN:
            errors[field].append(
                f"{FIELD_LABELS[field]} must be at least {RICH_MIN_LEN} characters."
            )
        data[field] = to_html(raw)

    data["category"] = normalize_category(form.get("category"))
    data["published"] = 1 if _checkbox(form, "published") else 0

    image = files.get("image") if files else None
    if image is not None and image.filename:
        if not (image.mimetype or "").lower().startswith("image/"):
            errors["image"].append("Only images are allowed.")
        elif file_size(image) > app.config.get("UPLOAD_MAX_BYTES", UPLOAD_MAX_BYTES):
            errors["image"].append("Image is too large (8 MiB max).")
        data["image"] = image
    else:
        data["image"] = None

    return data, dict(errors)


###############################################################################
# Publish workflow
###############################################################################
def form_state(
    message: str | None = None,
    *,
    errors: dict[str, list[str]] | None = None,
    status: int = 200,
    **extra,
) -> dict:
    return {"errors": errors or {}, "message": message, "status": status, **extra}


def _auth_state() -> dict:
    return form_state("Authentication required.", status=401)


def _insert_row(kind: str, row: dict, *, db) -> int:
    cols = ", ".join(row)
    marks = ", ".join("?" for _ in row)
    cur = db.execute(
        f"INSERT INTO {kind_table(kind)} ({cols}) VALUES ({marks})",
        tuple(row.values()),
    )
    return cur.lastrowid


def _update_row(kind: str, item_id: int, row: dict, *, db) -> int:
    assigns = ", ".join(f"{c}=?" for c in row)
    db.execute(
        f"UPDATE {kind_table(kind)} SET {assigns} WHERE id=?",
        (*row.values(), item_id),
    )
    return item_id


def write_row(
    kind: str,
    row: dict,
    *,
    db,
    item_id: int | None = None,
    auto_slug: bool,
) -> int:
    """
    Insert (or update *item_id*) and commit.

    The slug check and the write are not atomic, so a concurrent request may
    claim the same slug first. The UNIQUE constraint catches that: an
    auto-generated slug is re-allocated and the write retried, an explicit
    one raises SlugConflict.
    """
    for attempt in range(SLUG_WRITE_RETRIES + 1):
        try:
            if item_id is None:
                result = _insert_row(kind, row, db=db)
            else:
                result = _update_row(kind, item_id, row, db=db)
            db.commit()
            return result
        except sqlite3.IntegrityError as exc:
            db.rollback()
            if not _is_slug_violation(exc):
                raise
            if not auto_slug or attempt == SLUG_WRITE_RETRIES:
                raise SlugConflict(row["slug"]) from exc
            app.logger.info("Slug %r was taken concurrently, retrying", row["slug"])
            row["slug"] = allocate_slug(kind, row["title"], exclude_id=item_id, db=db)
    raise SlugConflict(row["slug"])


def _slug_conflict_state(kind: str, verb: str) -> dict:
    return form_state(
        f"Failed to {verb} {kind_label(kind).lower()} due to slug conflict.",
        errors={"slug": ["This slug is already in use. Please choose another."]},
        status=409,
    )


def _slug_exhausted_state(kind: str, verb: str) -> dict:
    return form_state(
        f"Failed to {verb} {kind_label(kind).lower()}.",
        errors={
            "title": [
                "Could not generate a unique slug from this title. "
                "Please modify the title."
            ]
        },
        status=400,
    )


def create_content(kind: str, form, files=None, *, db) -> dict:
    """
    validate → allocate slug → store image → insert → invalidate pages.
    Returns a form state; on success it also carries ``id`` and ``slug``.
    """
    if not is_admin():
        return _auth_state()
    label = kind_label(kind)
    data, errors = validate_form(kind, form, files)
    if errors:
        return form_state(
            f"Failed to create {label.lower()}. Please check the fields.",
            errors=errors,
            status=400,
        )

    explicit = data.pop("slug")
    image = data.pop("image")
    if explicit:
        if slug_exists(kind, explicit, db=db):
            return _slug_conflict_state(kind, "create")
        slug = explicit
    else:
        try:
            slug = allocate_slug(kind, data["title"], db=db)
        except SlugGenerationExhausted:
            app.logger.warning("Slug allocation exhausted for %r", data["title"])
            return _slug_exhausted_state(kind, "create")

    image_url = None
    if image is not None:
        try:
            image_url = store_image(image)
        except ImageUploadFailure as exc:
            return form_state(
                f"Failed to create {label.lower()}.",
                errors={"image": [str(exc)]},
                status=400,
            )

    now = utc_now().isoformat(timespec="seconds")
    row = {**data, "slug": slug, "image_url": image_url,
           "created_at": now, "updated_at": now}
    try:
        new_id = write_row(kind, row, db=db, auto_slug=not explicit)
    except SlugConflict:
        delete_image(image_url)
        return _slug_conflict_state(kind, "create")
    except SlugGenerationExhausted:
        delete_image(image_url)
        return _slug_exhausted_state(kind, "create")
    except sqlite3.Error:
        app.logger.exception("Failed to create %s %r", kind, data["title"])
        delete_image(image_url)
        return form_state(
            f"Database error: failed to save the {label.lower()}.", status=500
        )

    invalidate_content(kind, row["slug"])
    app.logger.info("Created %s %s (%s)", kind, row["slug"],
                    "published" if row["published"] else "draft")
    return form_state(
        f"{label} created successfully.", status=201, id=new_id, slug=row["slug"]
    )


def update_content(kind: str, item_id: int, form, files=None, *, db) -> dict:
    """
    The slug stays unless a different explicit slug is given, or the title
    changed with the slug field left blank. A replaced image is deleted only
    after the row points at the new one.
    """
    if not is_admin():
        return _auth_state()
    label = kind_label(kind)
    data, errors = validate_form(kind, form, files)
    if errors:
        return form_state(
            f"Failed to update {label.lower()}. Please check the fields.",
            errors=errors,
            status=400,
        )

    current = get_row(kind, item_id, db=db)
    if current is None:
        return form_state(f"{label} not found.", status=404)

    explicit = data.pop("slug")
    image = data.pop("image")
    slug = current["slug"]
    auto_slug = False
    if explicit and explicit != current["slug"]:
        if slug_exists(kind, explicit, exclude_id=item_id, db=db):
            return _slug_conflict_state(kind, "update")
        slug = explicit
    elif not explicit and data["title"] != current["title"]:
        try:
            slug = allocate_slug(kind, data["title"], exclude_id=item_id, db=db)
        except SlugGenerationExhausted:
            return _slug_exhausted_state(kind, "update")
        auto_slug = True

    new_image_url = None
    if image is not None:
        try:
            new_image_url = store_image(image)
        except ImageUploadFailure as exc:
            return form_state(
                f"Failed to update {label.lower()}.",
                errors={"image": [str(exc)]},
                status=400,
            )

    row = {**data, "slug": slug,
           "updated_at": utc_now().isoformat(timespec="seconds")}
    if new_image_url:
        row["image_url"] = new_image_url
    try:
        write_row(kind, row, db=db, item_id=item_id, auto_slug=auto_slug)
    except SlugConflict:
        delete_image(new_image_url)
        return _slug_conflict_state(kind, "update")
    except SlugGenerationExhausted:
        delete_image(new_image_url)
        return _slug_exhausted_state(kind, "update")
    except sqlite3.Error:
        app.logger.exception("Failed to update %s %s", kind, item_id)
        delete_image(new_image_url)
        return form_state(
            f"Database error: failed to save the {label.lower()}.", status=500
        )

    if new_image_url and current["image_url"]:
        delete_image(current["image_url"])
    invalidate_content(kind, current["slug"], row["slug"])
    return form_state(
        f"{label} updated successfully.", status=200, id=item_id, slug=row["slug"]
    )


def toggle_publish(kind: str, item_id: int, *, db) -> dict:
    if not is_admin():
        return _auth_state()
    label = kind_label(kind)
    row = get_row(kind, item_id, db=db)
    if row is None:
        return form_state(f"{label} not found.", status=404)

    published = 0 if row["published"] else 1
    try:
        db.execute(
            f"UPDATE {kind_table(kind)} SET published=?, updated_at=? WHERE id=?",
            (published, utc_now().isoformat(timespec="seconds"), item_id),
        )
        db.commit()
    except sqlite3.Error:
        app.logger.exception("Failed to toggle %s %s", kind, item_id)
        return form_state(
            f"Failed to toggle {label.lower()} publish status.", status=500
        )

    invalidate_content(kind, row["slug"])
    state = "published" if published else "unpublished"
    app.logger.info("%s %s %s", label, row["slug"], state)
    return form_state(
        f"{label} {state} successfully.", status=200, published=bool(published)
    )


def delete_content(kind: str, item_id: int, *, db) -> dict:
    """The row is the record of truth; its image goes best-effort afterwards."""
    if not is_admin():
        return _auth_state()
    label = kind_label(kind)
    row = get_row(kind, item_id, db=db)
    if row is None:
        return form_state(
            f"{label} not found. It may have already been deleted.", status=404
        )

    try:
        db.execute(f"DELETE FROM {kind_table(kind)} WHERE id=?", (item_id,))
        db.commit()
    except sqlite3.Error:
        app.logger.exception("Failed to delete %s %s", kind, item_id)
        return form_state(
            f"Failed to delete {label.lower()} due to a server error. "
            "Please try again.",
            status=500,
        )

    if row["image_url"]:
        delete_image(row["image_url"])
    invalidate_content(kind, row["slug"])
    return form_state(f"{label} deleted successfully.", status=200)


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{% if title %}{{ title }} · {% endif %}Ally's Kitchen</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
{% if meta_description %}<meta name="description" content="{{ meta_description }}">{% endif %}
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif;font-size:1.05rem;line-height:1.6;max-width:52em;margin:auto;padding:1rem;color:#222;background:#fffdf8}
a{color:#8a3b12}h1,h2,h3{line-height:1.2}img{max-width:100%;height:auto;border-radius:6px}
nav{display:flex;gap:1.25rem;align-items:center;border-bottom:1px solid #eadfcf;padding-bottom:.75rem;margin-bottom:1.5rem}
nav .spacer{flex:1}nav form{margin:0}
.flash{background:#f3ead9;border-left:4px solid #8a3b12;padding:.5rem 1rem;margin-bottom:1rem}
.card{border:1px solid #eadfcf;border-radius:8px;padding:1rem;margin-bottom:1rem;background:#fff}
.pill{display:inline-block;padding:.05em .6em;border-radius:1em;background:#eadfcf;font-size:.8em;margin-right:.4em}
.pill.draft{background:#f6d36b}
.draft-banner{background:#fff4c2;border:1px solid #e4c65a;padding:.5rem 1rem;margin-bottom:1rem}
.meta{color:#777;font-size:.85em}
.pager{display:flex;gap:1rem;margin:1rem 0}
table{width:100%;border-collapse:collapse;margin-bottom:1rem}td,th{padding:.4rem;border-bottom:1px solid #eadfcf;text-align:left}
td form{display:inline}
input[type=text],input[type=password],textarea{width:100%;box-sizing:border-box;padding:.4rem;margin-bottom:.25rem}
.field{margin-bottom:1rem}.field-error{color:#b00020;font-size:.85em}
button{cursor:pointer}
</style>
<body>
<nav>
  <a href="{{ url_for('index') }}">Home</a>
  <a href="{{ url_for('blog_index') }}">Blog</a>
  <a href="{{ url_for('recipes_index') }}">Recipes</a>
  <span class="spacer"></span>
  {% if is_admin() %}
    <a href="{{ url_for('admin_dashboard') }}">Admin</a>
    <form method="post" action="{{ url_for('logout') }}">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <button>Log out</button>
    </form>
  {% endif %}
</nav>
{% for msg in get_flashed_messages() %}
  <div class="flash">{{ msg }}</div>
{% endfor %}
<main>
"""

TEMPL_EPILOG = """
</main>
<footer class="meta" style="margin-top:3rem;">allyblog {{ version }}</footer>
</body>
</html>
"""

TEMPL_PAGER = """
{% if pages > 1 %}
<div class="pager">
  {% if page > 1 %}<a href="{{ page_href(page - 1) }}">&larr; Previous</a>{% endif %}
  <span class="meta">Page {{ page }} of {{ pages }}</span>
  {% if page < pages %}<a href="{{ page_href(page + 1) }}">Next &rarr;</a>{% endif %}
</div>
{% endif %}
"""


def page_href(page: int) -> str:
    """Same URL with ?page swapped, other query args kept."""
    params = request.args.to_dict()
    params["page"] = str(page)
    return f"{request.path}?{urlencode(params)}"


def admin_href(kind: str, **updates) -> str:
    params = request.args.to_dict()
    params.update({f"{kind}_{k}": str(v) for k, v in updates.items()})
    return f"{url_for('admin_dashboard')}?{urlencode(params)}"


def _page_arg(name: str = "page") -> int:
    return max(request.args.get(name, 1, type=int) or 1, 1)


# Expose helpers to templates
app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    is_admin=is_admin,
    page_href=page_href,
    admin_href=admin_href,
    detail_path=detail_path,
    kind_label=kind_label,
    field_labels=FIELD_LABELS,
    get_flashed_messages=get_flashed_messages,
    version=__version__,
)


###############################################################################
# Public pages
###############################################################################
@app.route("/")
@cached_page
def index():
    db = get_db()
    admin = is_admin()
    posts, _ = list_content(
        "post", db=db, per_page=RECENT_LIMIT, include_drafts=admin
    )
    recipes, _ = list_content(
        "recipe", db=db, per_page=RECENT_LIMIT, include_drafts=admin
    )
    return render_template_string(
        TEMPL_INDEX, title=None, posts=posts, recipes=recipes
    )


TEMPL_CARD = """
<article class="card">
  {% if item['image_url'] %}
    <a href="{{ detail_path(kind, item['slug']) }}"><img src="{{ item['image_url'] }}" alt="{{ item['title'] }}"></a>
  {% endif %}
  <h3><a href="{{ detail_path(kind, item['slug']) }}">{{ item['title'] }}</a></h3>
  <div class="meta">
    {% if not item['published'] %}<span class="pill draft">Draft</span>{% endif %}
    {% if item['category'] %}<span class="pill">{{ item['category'] }}</span>{% endif %}
    <time datetime="{{ item['created_at'] }}">{{ item['created_at']|ts }}</time>
  </div>
  <p>{{ (item['description'] or item['content'] or '')|excerpt }}</p>
</article>
"""

TEMPL_INDEX = wrap(
    """
{% block body %}
<h1>Ally's Kitchen</h1>
<p>Stories from the kitchen and the recipes that go with them.</p>

<h2>Recent posts</h2>
{% set kind = 'post' %}
{% for item in posts %}"""
    + TEMPL_CARD
    + """{% else %}
  <p class="meta">No posts yet.</p>
{% endfor %}
<p><a href="{{ url_for('blog_index') }}">All posts &rarr;</a></p>

<h2>Recent recipes</h2>
{% set kind = 'recipe' %}
{% for item in recipes %}"""
    + TEMPL_CARD
    + """{% else %}
  <p class="meta">No recipes yet.</p>
{% endfor %}
<p><a href="{{ url_for('recipes_index') }}">All recipes &rarr;</a></p>
{% endblock %}
"""
)

TEMPL_LISTING = wrap(
    """
{% block body %}
<h1>{{ heading }}</h1>
{% if cats %}
<p>
  <a href="{{ request.path }}"{% if not category %} aria-current="page"{% endif %}>All</a>
  {% for c in cats %}
    &middot; <a href="{{ request.path }}?category={{ c|urlencode }}"{% if c == category %} aria-current="page"{% endif %}>{{ c }}</a>
  {% endfor %}
</p>
{% endif %}
{% for item in rows %}"""
    + TEMPL_CARD
    + """{% else %}
  <p class="meta">{% if category %}Nothing found in category "{{ category }}".{% else %}Nothing published yet.{% endif %}</p>
{% endfor %}
"""
    + TEMPL_PAGER
    + """
{% endblock %}
"""
)


def _listing(kind: str, heading: str):
    db = get_db()
    admin = is_admin()
    page = _page_arg()
    category = normalize_category(request.args.get("category"))
    rows, pages = list_content(
        kind, db=db, page=page, category=category, include_drafts=admin
    )
    return render_template_string(
        TEMPL_LISTING,
        title=heading,
        heading=heading,
        kind=kind,
        rows=rows,
        page=page,
        pages=pages,
        category=category,
        cats=categories(kind, db=db, include_drafts=admin),
    )


def _detail(kind: str, slug: str, template: str):
    admin = is_admin()
    row = get_by_slug(kind, slug, db=get_db(), include_drafts=admin)
    if row is None:
        abort(404)
    summary = row["description"] or (row["content"] if kind == "post" else "")
    return render_template_string(
        template,
        title=row["title"],
        meta_description=excerpt(summary, META_DESCRIPTION_LEN),
        item=row,
        kind=kind,
    )


@app.route("/blog")
@cached_page
def blog_index():
    return _listing("post", "Blog")


@app.route("/blog/<slug>")
@cached_page
def blog_detail(slug):
    return _detail("post", slug, TEMPL_POST_DETAIL)


@app.route("/recipes")
@cached_page
def recipes_index():
    return _listing("recipe", "Recipes")


@app.route("/recipes/<slug>")
@cached_page
def recipe_detail(slug):
    return _detail("recipe", slug, TEMPL_RECIPE_DETAIL)


TEMPL_DRAFT_BANNER = """
{% if not item['published'] %}
  <div class="draft-banner"><strong>Draft preview:</strong>
  this {{ kind_label(kind)|lower }} is not published and is only visible to you.</div>
{% endif %}
"""

TEMPL_ADMIN_LINKS = """
{% if is_admin() %}
  <p class="meta">
    <a href="{{ url_for('edit_post' if kind == 'post' else 'edit_recipe', item_id=item['id']) }}">Edit</a>
  </p>
{% endif %}
"""

TEMPL_POST_DETAIL = wrap(
    """
{% block body %}
"""
    + TEMPL_DRAFT_BANNER
    + """
<article>
  <h1>{{ item['title'] }}</h1>
  <div class="meta">
    {% if item['category'] %}<span class="pill">{{ item['category'] }}</span>{% endif %}
    <time datetime="{{ item['created_at'] }}">{{ item['created_at']|ts }}</time>
  </div>
  {% if item['image_url'] %}<p><img src="{{ item['image_url'] }}" alt="{{ item['title'] }}"></p>{% endif %}
  {% if item['description'] %}<p><em>{{ item['description'] }}</em></p>{% endif %}
  <div class="content">{{ item['content']|rich }}</div>
</article>
"""
    + TEMPL_ADMIN_LINKS
    + """
<p><a href="{{ url_for('blog_index') }}">&larr; Back to the blog</a></p>
{% endblock %}
"""
)

TEMPL_RECIPE_DETAIL = wrap(
    """
{% block body %}
"""
    + TEMPL_DRAFT_BANNER
    + """
<article>
  <h1>{{ item['title'] }}</h1>
  <div class="meta">
    {% if item['category'] %}<span class="pill">{{ item['category'] }}</span>{% endif %}
    {% if item['prep_time'] %}<span class="pill">Prep: {{ item['prep_time'] }}</span>{% endif %}
    {% if item['cook_time'] %}<span class="pill">Cook: {{ item['cook_time'] }}</span>{% endif %}
    {% if item['servings'] %}<span class="pill">Serves: {{ item['servings'] }}</span>{% endif %}
  </div>
  {% if item['image_url'] %}<p><img src="{{ item['image_url'] }}" alt="{{ item['title'] }}"></p>{% endif %}
  <div class="content">{{ item['description']|rich }}</div>
  <h2>Ingredients</h2>
  <div class="content">{{ item['ingredients']|rich }}</div>
  <h2>Instructions</h2>
  <div class="content">{{ item['instructions']|rich }}</div>
</article>
"""
    + TEMPL_ADMIN_LINKS
    + """
<p><a href="{{ url_for('recipes_index') }}">&larr; Back to the recipes</a></p>
{% endblock %}
"""
)


###############################################################################
# Login / logout
###############################################################################
def _safe_next(target: str | None) -> str:
    if target and _is_admin_path(target) and not target.startswith("//"):
        return target
    return url_for("admin_dashboard")


@app.route("/admin/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    message = None
    if request.method == "POST":
        if verify_password(request.form.get("password", "")):
            nxt = _safe_next(request.args.get("next") or request.form.get("next"))
            session.clear()
            session.permanent = True
            session["is_logged_in"] = True
            session["csrf"] = secrets.token_hex(16)
            return redirect(nxt)
        app.logger.info("Failed admin login from %s", request.remote_addr)
        message = "Invalid password"
    elif is_admin():
        return redirect(url_for("admin_dashboard"))

    return render_template_string(
        TEMPL_LOGIN,
        title="Admin login",
        message=message,
        next=request.args.get("next", ""),
    )


TEMPL_LOGIN = wrap("""
{% block body %}
<h1>Admin login</h1>
{% if message %}<div class="flash">{{ message }}</div>{% endif %}
<form method="post" style="max-width:24em;">
  <input type="hidden" name="next" value="{{ next }}">
  <div class="field">
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="current-password" required>
  </div>
  <button type="submit">Sign in</button>
</form>
{% endblock %}
""")


@app.route("/admin/logout", methods=["POST"])
def logout():
    session.clear()
    return redirect(url_for("login"))


###############################################################################
# Admin dashboard
###############################################################################
@app.route("/admin")
def admin_dashboard():
    db = get_db()
    tables = {}
    for kind in KINDS:
        page = _page_arg(f"{kind}_page")
        rows, pages, sort, order = admin_listing(
            kind,
            db=db,
            page=page,
            sort=request.args.get(f"{kind}_sort", ""),
            order=request.args.get(f"{kind}_order", ""),
        )
        tables[kind] = {
            "rows": rows,
            "page": page,
            "pages": pages,
            "sort": sort,
            "order": order,
        }
    return render_template_string(
        TEMPL_ADMIN, title="Admin dashboard", tables=tables, sort_fields=SORT_FIELDS
    )


TEMPL_ADMIN = wrap("""
{% block body %}
<h1>Admin dashboard</h1>
{% for kind, t in tables.items() %}
  <section>
    <h2>{{ kind_label(kind) }}s
      <small><a href="{{ url_for('new_post' if kind == 'post' else 'new_recipe') }}">+ New {{ kind_label(kind)|lower }}</a></small>
    </h2>
    <table>
      <thead><tr>
        {% for f in sort_fields %}
          {% set next_order = 'asc' if (t.sort == f and t.order == 'desc') else 'desc' %}
          <th><a href="{{ admin_href(kind, sort=f, order=next_order, page=1) }}">{{ f|replace('_', ' ')|capitalize }}</a>
            {% if t.sort == f %}{{ '▲' if t.order == 'asc' else '▼' }}{% endif %}</th>
        {% endfor %}
        <th></th>
      </tr></thead>
      <tbody>
      {% for item in t.rows %}
        <tr>
          <td><a href="{{ detail_path(kind, item['slug']) }}">{{ item['title'] }}</a></td>
          <td>{{ item['category'] or '' }}</td>
          <td>{{ item['created_at']|ts }}</td>
          <td>{% if item['published'] %}<span class="pill">Published</span>{% else %}<span class="pill draft">Draft</span>{% endif %}</td>
          <td>
            <a href="{{ url_for('edit_post' if kind == 'post' else 'edit_recipe', item_id=item['id']) }}">Edit</a>
            <form method="post" action="{{ url_for('toggle_post' if kind == 'post' else 'toggle_recipe', item_id=item['id']) }}">
              <input type="hidden" name="csrf" value="{{ csrf_token() }}">
              <button>{{ 'Unpublish' if item['published'] else 'Publish' }}</button>
            </form>
            <form method="post" action="{{ url_for('delete_post' if kind == 'post' else 'delete_recipe', item_id=item['id']) }}"
                  onsubmit='return confirm("Delete " + {{ item["title"]|tojson }} + "?");'>
              <input type="hidden" name="csrf" value="{{ csrf_token() }}">
              <button>Delete</button>
            </form>
          </td>
        </tr>
      {% else %}
        <tr><td colspan="5" class="meta">Nothing here yet.</td></tr>
      {% endfor %}
      </tbody>
    </table>
    {% if t.pages > 1 %}
      <div class="pager">
        {% if t.page > 1 %}<a href="{{ admin_href(kind, page=t.page - 1) }}">&larr; Previous</a>{% endif %}
        <span class="meta">Page {{ t.page }} of {{ t.pages }}</span>
        {% if t.page < t.pages %}<a href="{{ admin_href(kind, page=t.page + 1) }}">Next &rarr;</a>{% endif %}
      </div>
    {% endif %}
  </section>
{% endfor %}
{% endblock %}
""")


###############################################################################
# Admin forms + actions
###############################################################################
def _form_view(kind: str, item_id: int | None = None):
    db = get_db()
    current = None
    if item_id is not None:
        current = get_row(kind, item_id, db=db)
        if current is None:
            abort(404)

    if request.method == "POST":
        if item_id is None:
            state = create_content(kind, request.form, request.files, db=db)
        else:
            state = update_content(kind, item_id, request.form, request.files, db=db)
        if state["status"] < 300:
            flash(state["message"])
            return redirect(url_for("admin_dashboard"))
        values = request.form.to_dict()
        values.setdefault("image_url", current["image_url"] if current else None)
        return (
            render_template_string(
                TEMPL_FORM,
                title=f"{'Edit' if current else 'New'} {kind_label(kind).lower()}",
                kind=kind,
                item=values,
                editing=current is not None,
                state=state,
            ),
            state["status"],
        )

    values = dict(current) if current else {}
    if current:
        values["published"] = "on" if current["published"] else ""
    return render_template_string(
        TEMPL_FORM,
        title=f"{'Edit' if current else 'New'} {kind_label(kind).lower()}",
        kind=kind,
        item=values,
        editing=current is not None,
        state=form_state(),
    )


def _action_view(kind: str, action, item_id: int):
    state = action(kind, item_id, db=get_db())
    if request.accept_mimetypes.best == "application/json":
        return state, state["status"]
    flash(state["message"])
    return redirect(url_for("admin_dashboard"))


TEMPL_FIELD_ERRORS = """
{% for err in state.errors.get(name, []) %}<div class="field-error">{{ err }}</div>{% endfor %}
"""

TEMPL_FORM = wrap(
    """
{% block body %}
<h1>{{ title }}</h1>
{% if state.message %}<div class="flash">{{ state.message }}</div>{% endif %}
<form method="post" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">

  {% for name in ['title', 'slug'] %}
  <div class="field">
    <label for="{{ name }}">{{ field_labels[name] }}</label>
    <input type="text" id="{{ name }}" name="{{ name }}" value="{{ item.get(name) or '' }}">
    {% if name == 'slug' %}<small class="meta">Leave blank to derive it from the title.</small>{% endif %}
    """
    + TEMPL_FIELD_ERRORS
    + """
  </div>
  {% endfor %}

  {% if kind == 'post' %}
    {% set fields = [('description', 'input'), ('content', 'textarea')] %}
  {% else %}
    {% set fields = [('description', 'textarea'), ('ingredients', 'textarea'),
                     ('instructions', 'textarea'), ('prep_time', 'input'),
                     ('cook_time', 'input'), ('servings', 'input')] %}
  {% endif %}
  {% for name, widget in fields + [('category', 'input')] %}
  <div class="field">
    <label for="{{ name }}">{{ field_labels[name] }}</label>
    {% if widget == 'textarea' %}
      <textarea id="{{ name }}" name="{{ name }}" rows="{{ 12 if name == 'content' else 6 }}">{{ item.get(name) or '' }}</textarea>
    {% else %}
      <input type="text" id="{{ name }}" name="{{ name }}" value="{{ item.get(name) or '' }}">
    {% endif %}
    """
    + TEMPL_FIELD_ERRORS
    + """
  </div>
  {% endfor %}

  <div class="field">
    <label for="image">{{ field_labels['image'] }}</label>
    {% if item.get('image_url') %}<p><img src="{{ item['image_url'] }}" alt="" style="max-height:8em;"></p>{% endif %}
    <input type="file" id="image" name="image" accept="image/*">
    {% set name = 'image' %}"""
    + TEMPL_FIELD_ERRORS
    + """
  </div>

  <div class="field">
    <label><input type="checkbox" name="published"{% if item.get('published') in ('on', '1', 'true') %} checked{% endif %}> Published</label>
  </div>

  <button type="submit">{{ 'Save changes' if editing else 'Create' }}</button>
  <a href="{{ url_for('admin_dashboard') }}" style="margin-left:1rem;">Cancel</a>
</form>
{% endblock %}
"""
)


@app.route("/admin/new", methods=["GET", "POST"])
def new_post():
    return _form_view("post")


@app.route("/admin/edit/<int:item_id>", methods=["GET", "POST"])
def edit_post(item_id):
    return _form_view("post", item_id)


@app.route("/admin/toggle/<int:item_id>", methods=["POST"])
def toggle_post(item_id):
    return _action_view("post", toggle_publish, item_id)


@app.route("/admin/delete/<int:item_id>", methods=["POST"])
def delete_post(item_id):
    return _action_view("post", delete_content, item_id)


@app.route("/admin/recipes/new", methods=["GET", "POST"])
def new_recipe():
    return _form_view("recipe")


@app.route("/admin/recipes/edit/<int:item_id>", methods=["GET", "POST"])
def edit_recipe(item_id):
    return _form_view("recipe", item_id)


@app.route("/admin/recipes/toggle/<int:item_id>", methods=["POST"])
def toggle_recipe(item_id):
    return _action_view("recipe", toggle_publish, item_id)


@app.route("/admin/recipes/delete/<int:item_id>", methods=["POST"])
def delete_recipe(item_id):
    return _action_view("recipe", delete_content, item_id)


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Page not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page. With debug on, Flask shows the interactive
    traceback instead of calling this handler.
    """
    return render_template_string(TEMPL_500, title="Something went wrong"), 500


TEMPL_404 = wrap("""
{% block body %}
  <h1>Page not found</h1>
  <p>The page you asked for doesn’t exist or isn’t published yet.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h1>Internal Server Error</h1>
  <p>Our fault, not yours. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
    app.run(debug=APP_ENV != "production")
