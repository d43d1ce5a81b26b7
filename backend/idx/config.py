import os

# =====================
# CONFIG (override via environment)
# =====================

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/showings")
MONGO_DB = os.getenv("MONGO_DB", "showings")
CATALOG_COLLECTION = os.getenv("IDX_CATALOG_COLLECTION", "idx_properties")

# Extraction scheduler
MAX_ATTEMPTS = int(os.getenv("IDX_MAX_ATTEMPTS", "20"))
RETRY_DELAY_MS = int(os.getenv("IDX_RETRY_DELAY_MS", "2000"))
SETTLE_DELAY_MS = int(os.getenv("IDX_SETTLE_DELAY_MS", "1000"))
INITIAL_DELAY_MS = int(os.getenv("IDX_INITIAL_DELAY_MS", "500"))
IMAGE_CAP = int(os.getenv("IDX_IMAGE_CAP", "20"))

# Identity resolver: normalized addresses shorter than this never drive a substring lookup
FUZZY_MIN_LENGTH = int(os.getenv("IDX_FUZZY_MIN_LENGTH", "10"))

# Backfill auto-pass waits so it does not compete with initial page work
AUTO_BACKFILL_DELAY_SEC = float(os.getenv("IDX_AUTO_BACKFILL_DELAY_SEC", "5"))

GOOGLE_PLACES_API_KEY = os.getenv("GOOGLE_PLACES_API_KEY", "").strip()
HTTP_PROXY_URL = os.getenv("HTTP_PROXY_URL", "").strip()
HTTP_DEBUG = os.getenv("HTTP_DEBUG", "").lower() in {"1", "true", "yes"}
IDX_DEBUG = os.getenv("IDX_DEBUG", "").lower() in {"1", "true", "yes"}
