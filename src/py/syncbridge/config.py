from os import getenv

DEFAULT_ENCODING: str = "utf8"

PORT: int = int(getenv("PORT", 8000))

# If we're starting the proxy in a development environment, we want it to be accessible from everywhere
HOST: str = getenv("HOST", "0.0.0.0")  # nosec: B104

# Runtime mode, `production` hides exception details from error responses.
ENVIRONMENT: str = getenv("SYNCBRIDGE_ENV", "development")

PRODUCTION: bool = ENVIRONMENT == "production"

REWINDABLE: bool = getenv("SYNCBRIDGE_REWINDABLE", "1") == "1"

WORKERS: int = int(getenv("SYNCBRIDGE_WORKERS", 64))

LOG_REQUESTS: bool = getenv("SYNCBRIDGE_LOG_REQUESTS", "1") == "1"

SERVER_NAME: str = "syncbridge"

# EOF
