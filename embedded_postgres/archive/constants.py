"""Constants shared across the archive modules."""

from __future__ import annotations

GITHUB_REPO = "theseus-rs/postgresql-binaries"
RELEASES_URL = f"https://api.github.com/repos/{GITHUB_REPO}/releases"
RELEASES_PAGE_SIZE = 100
MAX_RELEASE_PAGES = 20

ARCHIVE_FORMAT = "tar.gz"
ARCHIVE_EXTENSIONS = (".tar.gz", ".tgz")
HASH_SUFFIX = ".sha256"

INSTALL_MARKER_NAME = ".installed.json"
LOCK_DIR_NAME = ".locks"
STAGING_PREFIX = ".staging-"
DEFAULT_CACHE_DIR = "~/.embedded_postgres/installations"

REQUIRED_EXECUTABLES = ("initdb", "postgres", "pg_ctl", "pg_isready", "psql")

MAX_ARCHIVE_TOTAL_BYTES = 2 * 1024 * 1024 * 1024  # 2 GiB
MAX_ARCHIVE_FILE_SIZE = 512 * 1024 * 1024  # 512 MiB per file
MAX_ARCHIVE_ENTRIES = 20000

DOWNLOAD_CHUNK_SIZE = 64 * 1024
DEFAULT_CATALOG_TTL = 300.0
DEFAULT_CATALOG_TIMEOUT = 30.0
DEFAULT_DOWNLOAD_TIMEOUT = 600.0
DEFAULT_ATTEMPT_TIMEOUT = 60.0
DEFAULT_LOCK_TIMEOUT = 900.0

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
