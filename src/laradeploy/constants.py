"""Filesystem modes, defaults and well-known paths."""

DIR_MODE = 0o755
FILE_MODE = 0o644
SCRIPT_MODE = 0o755
WRITABLE_DIR_MODE = 0o775
SECRET_MODE = 0o600
PRIVATE_DIR_MODE = 0o750

DEFAULT_CONFIG_DIR = "/etc/laravel-deploy"
DEFAULT_WWW_DIR = "/var/www"
DEFAULT_BACKUP_DIR = "/var/backups/laravel"
DEFAULT_RELEASES_DIR = "/var/www/.releases"
DEFAULT_REPORT_DIR = "/var/log/laravel-deploy"
DEFAULT_STATE_DIR = "/var/lib/laravel-deploy"

SUPPORTED_RUNTIME_VERSIONS = ("7.4", "8.0", "8.1", "8.2", "8.3")
DEFAULT_RUNTIME_VERSION = "8.1"
DEFAULT_MAX_BACKUPS = 5
DEFAULT_RETENTION_DAYS = 30
DEFAULT_KEEP_RELEASES = 5
DEFAULT_STAGE_TIMEOUT_SECONDS = 1800.0

# Paths excluded from file archives and preserved across restores.
VOLATILE_PATHS = (
    "vendor",
    "node_modules",
    ".git",
    "storage/logs",
    "storage/framework/cache",
    "storage/framework/sessions",
    "storage/framework/views",
)
VOLATILE_PATTERNS = (".env.backup-*", "*.log")

# Paths never copied into a release directory; shared ones are linked instead.
RELEASE_EXCLUDES = (".git", "node_modules", "storage", ".env")
SHARED_PATHS = ("storage", ".env")

BACKUP_MANIFEST_FILE = "manifest.json"
BACKUP_FILES_ARCHIVE = "files.tar.gz"
BACKUP_DATABASE_ARCHIVE = "database.sql.gz"
RELEASE_SEAL_FILE = ".release-sealed"
