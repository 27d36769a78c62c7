"""Centralized constants for Stackwarden."""

# Backups
BACKUP_DIR_PREFIX = "backup-"
BACKUP_METADATA_FILE = "backup-metadata.json"
DEFAULT_BACKUP_RETENTION = 5
STATE_FILE = "updater-state.json"

# Files copied into every backup, relative to the deployment root
BACKUP_FILES: tuple[str, ...] = (
    "package.json",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "pyproject.toml",
    "uv.lock",
    "poetry.lock",
    "requirements.txt",
    ".env",
    "docker-compose.yml",
    "docker/docker-compose.full.yml",
)

# (lockfile, install command, build command), first match wins
PACKAGE_MANAGERS: tuple[tuple[str, str, str], ...] = (
    ("pnpm-lock.yaml", "pnpm install", "pnpm run build"),
    ("yarn.lock", "yarn install", "yarn build"),
    ("package-lock.json", "npm install", "npm run build"),
    ("uv.lock", "uv sync", "uv build"),
    ("poetry.lock", "poetry install", "poetry build"),
    ("requirements.txt", "pip install -r requirements.txt", "python -m build"),
)
FALLBACK_INSTALL_COMMAND = "npm install"
FALLBACK_BUILD_COMMAND = "npm run build"

# Health checks
HEALTH_CHECK_TIMEOUT = 5

# Containers
STACK_PROGRESS_NAME = "compose-stack"
BYTES_PER_MB = 1024 * 1024
