"""
Central configuration — reads from .env file.

Every value is a plain module attribute so code reading config.X always sees
the current value (tests monkeypatch these directly). Nothing here is
required at import time: missing API keys only fail when the collaborator
that needs them is first used.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in ("false", "0", "no")


# ── Storage locations ─────────────────────────────────────────────────────────
# Database, log file and local object storage all live under DATA_DIR so a
# single volume mount (./data:/app/data) captures everything.
DATA_DIR: str = os.getenv("DATA_DIR", "data")

# Base URL under which locally stored uploads are publicly reachable, e.g.
# https://cdn.example.com/storage. Google Lens tool calls need it.
STORAGE_PUBLIC_BASE_URL: str = os.getenv("STORAGE_PUBLIC_BASE_URL", "http://localhost:8080/storage").rstrip("/")

# ── API keys ──────────────────────────────────────────────────────────────────
OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
SERPAPI_KEY: str | None    = os.getenv("SERPAPI_KEY")

# Secret lookups are cached for this many seconds
SECRET_CACHE_TTL: float = float(os.getenv("SECRET_CACHE_TTL", "300"))

# ── Model ─────────────────────────────────────────────────────────────────────
# Default model for identification; a job may override it (see providers/manager.py)
IDENTIFY_MODEL: str = os.getenv("IDENTIFY_MODEL", "gpt-5-mini")
DEFAULT_LOCALE: str = os.getenv("DEFAULT_LOCALE", "de-DE")

# ── Job queue ─────────────────────────────────────────────────────────────────
ID_QUEUE_CONCURRENCY: int = int(os.getenv("ID_QUEUE_CONCURRENCY", "3"))
ID_JOB_MAX_ATTEMPTS: int  = int(os.getenv("ID_JOB_MAX_ATTEMPTS", "3"))

# ── Identification limits ─────────────────────────────────────────────────────
MAX_TOOL_ITERATIONS: int     = int(os.getenv("MAX_TOOL_ITERATIONS", "8"))
MAX_BARCODE_COUNT: int       = int(os.getenv("MAX_BARCODE_COUNT", "10000"))
MAX_IMAGE_PAYLOAD_BYTES: int = int(os.getenv("MAX_IMAGE_PAYLOAD_BYTES", str(25 * 1024 * 1024)))

# ── Backfill ──────────────────────────────────────────────────────────────────
MIN_ENRICHED_IMAGE_COUNT: int = int(os.getenv("MIN_ENRICHED_IMAGE_COUNT", "4"))
DEFAULT_PRICE_CURRENCY: str   = os.getenv("DEFAULT_PRICE_CURRENCY", "EUR")

MIN_IMAGE_WIDTH: int  = int(os.getenv("MIN_IMAGE_WIDTH", "900"))
MIN_IMAGE_HEIGHT: int = int(os.getenv("MIN_IMAGE_HEIGHT", "900"))

MARKETING_IMAGE_LIMIT: int           = int(os.getenv("MARKETING_IMAGE_LIMIT", "12"))
MARKETING_IMAGE_PROBE_TIMEOUT: float = float(os.getenv("MARKETING_IMAGE_PROBE_TIMEOUT", "5"))
MARKETING_IMAGE_USER_AGENT: str      = os.getenv("MARKETING_IMAGE_USER_AGENT", "product-intel-image-probe/1.0")
# Set to false to accept discovered images without a HEAD/GET reachability probe
MARKETING_IMAGE_VERIFY: bool         = _bool("MARKETING_IMAGE_VERIFY", "true")

# ── SerpAPI ───────────────────────────────────────────────────────────────────
# Default locale parameters per engine family
SERPAPI_GL: str            = os.getenv("SERPAPI_GL", "de")
SERPAPI_HL: str            = os.getenv("SERPAPI_HL", "de")
SERPAPI_GOOGLE_DOMAIN: str = os.getenv("SERPAPI_GOOGLE_DOMAIN", "google.de")
SERPAPI_CC: str            = os.getenv("SERPAPI_CC", "DE")
SERPAPI_MARKET: str        = os.getenv("SERPAPI_MARKET", "de-DE")
SERPAPI_KL: str            = os.getenv("SERPAPI_KL", "de-de")
SERPAPI_EBAY_DOMAIN: str   = os.getenv("SERPAPI_EBAY_DOMAIN", "ebay.de")

SERPAPI_MAX_CONCURRENCY: int = int(os.getenv("SERPAPI_MAX_CONCURRENCY", "4"))
SERPAPI_TIMEOUT: float       = float(os.getenv("SERPAPI_TIMEOUT", "30"))

# ── Outbound retry policy (SerpAPI, marketplace) ──────────────────────────────
OUTBOUND_MAX_RETRIES: int   = int(os.getenv("OUTBOUND_MAX_RETRIES", "4"))
OUTBOUND_BASE_DELAY: float  = float(os.getenv("OUTBOUND_BASE_DELAY", "0.5"))
OUTBOUND_MAX_DELAY: float   = float(os.getenv("OUTBOUND_MAX_DELAY", "8"))

# ── Marketplace / inventory sync (BaseLinker) ─────────────────────────────────
# BaseLinker allows 100 RPM and 5 concurrent requests per token
BASELINKER_TOKEN: str | None        = os.getenv("BASELINKER_TOKEN")
BASELINKER_INVENTORY_ID: str | None = os.getenv("BASELINKER_INVENTORY_ID")
BASELINKER_MAX_CONCURRENCY: int     = int(os.getenv("BASELINKER_MAX_CONCURRENCY", "5"))
BASELINKER_TAX_RATE: float          = float(os.getenv("BASELINKER_TAX_RATE", "19"))
BASELINKER_CACHE_TTL: float         = float(os.getenv("BASELINKER_CACHE_TTL", "3600"))

# ── Job HTTP server ───────────────────────────────────────────────────────────
JOB_SERVER_ENABLED: bool = _bool("JOB_SERVER_ENABLED", "true")
JOB_SERVER_PORT: int     = int(os.getenv("JOB_SERVER_PORT", "8080"))
