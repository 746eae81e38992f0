import os
from typing import List

DATABASE_URI = os.getenv("DATABASE_URI") or os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "regal_catalog")

# Pool sizing for a single process-wide client
MONGO_CLIENT_OPTIONS = {
    "maxPoolSize": 10,
    "minPoolSize": 2,
    "serverSelectionTimeoutMS": 5000,
    "socketTimeoutMS": 45000,
    "maxIdleTimeMS": 30000,
    "retryWrites": True,
    "retryReads": True,
}

PUBLIC_CHANNEL_NUMBER = os.getenv("PUBLIC_CHANNEL_NUMBER", "917093913311")

DEFAULT_IMAGE_HOSTS = "images.unsplash.com,*.r2.cloudflarestorage.com,*.cloudflare.com,*.r2.dev"


def _split(value: str) -> List[str]:
    return [part.strip().lower() for part in value.split(",") if part.strip()]


IMAGE_HOST_ALLOWLIST = _split(os.getenv("IMAGE_HOST_ALLOWLIST", DEFAULT_IMAGE_HOSTS))

UPLOAD_SERVICE_URL = os.getenv("UPLOAD_SERVICE_URL")

CATEGORY_CACHE_TTL = int(os.getenv("CATEGORY_CACHE_TTL", "600"))
FACET_CACHE_TTL = min(int(os.getenv("FACET_CACHE_TTL", "60")), 60)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

CATALOG_CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=120"
