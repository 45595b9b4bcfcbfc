"""Application configuration."""

import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from backend root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")
TEMP_DIR = Path(os.getenv("LTO_TEMP_DIR", str(BASE_DIR / "temp")))
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(TEMP_DIR / "uploads")))
OCR_TEMP_DIR = TEMP_DIR / "ocr"
STORE_DIR = TEMP_DIR / "store"

# Create directories
for d in [TEMP_DIR, UPLOAD_DIR, OCR_TEMP_DIR, STORE_DIR]:
    d.mkdir(parents=True, exist_ok=True)

# OCR / text extraction
TESSERACT_CMD = os.getenv("TESSERACT_CMD", "")
POPPLER_PATH = os.getenv("POPPLER_PATH", "")
OCR_MAX_PAGES = int(os.getenv("OCR_MAX_PAGES", "5"))                 # Pages rasterized when the text layer is unusable
OCR_RASTER_TIMEOUT = int(os.getenv("OCR_RASTER_TIMEOUT", "30"))      # Seconds before pdftoppm is abandoned
OCR_DPI = int(os.getenv("OCR_DPI", "300"))
OCR_LANGUAGES = os.getenv("OCR_LANGUAGES", "eng")
IMAGE_MAX_WIDTH = 2000                                               # Preprocessed images are downscaled to this width
MIN_TEXT_LAYER_CHARS = 50                                            # Text layers at or below this need a keyword hit

# External registries: leave URL empty to use the seeded in-process registry
INSURANCE_REGISTRY_URL = os.getenv("INSURANCE_REGISTRY_URL", "")
EMISSION_REGISTRY_URL = os.getenv("EMISSION_REGISTRY_URL", "")
HPG_REGISTRY_URL = os.getenv("HPG_REGISTRY_URL", "")
REGISTRY_API_KEY = os.getenv("REGISTRY_API_KEY", "")
REGISTRY_LOOKUP_TIMEOUT = float(os.getenv("REGISTRY_LOOKUP_TIMEOUT", "10"))

# Clearance orchestration: document linkage wait
DOCUMENT_WAIT_ATTEMPTS = int(os.getenv("DOCUMENT_WAIT_ATTEMPTS", "5"))
DOCUMENT_WAIT_BASE_DELAY = float(os.getenv("DOCUMENT_WAIT_BASE_DELAY", "0.1"))   # seconds, doubled per attempt
DOCUMENT_WINDOW_MINUTES = int(os.getenv("DOCUMENT_WINDOW_MINUTES", "2"))

# Emission compliance limits
EMISSION_LIMITS = {
    "co": 4.5,      # % by volume
    "hc": 600.0,    # ppm
    "smoke": 50.0,  # % opacity
}

# Debug trace mode. Set LTO_TRACE=1 to get detailed parser / decision logs
TRACE_ENABLED = os.getenv("LTO_TRACE", "").strip().lower() in ("1", "true", "yes")

# Document types
DOCUMENT_TYPES = [
    "registration_cert",     # Certificate of Registration
    "or_cr",                 # Official Receipt / Certificate of Registration (transfers)
    "insurance_cert",        # CTPL / comprehensive insurance certificate
    "emission_cert",         # Emission test certificate
    "owner_id",              # Owner's government-issued ID
    "hpg_clearance",         # HPG motor vehicle clearance
    "sales_invoice",         # Dealer sales invoice
    "csr",                   # Certificate of Stock Report
    "deed_of_sale",
    "seller_id",
    "buyer_id",
    "other",
]

# Clearance and vehicle statuses
CLEARANCE_TERMINAL_STATUSES = ("REJECTED", "COMPLETED")
VEHICLE_STATUS_SUBMITTED = "SUBMITTED"

# Reviewer roles per clearance track
REVIEWER_ROLES = {
    "hpg": "hpg_admin",
    "insurance": "insurance_verifier",
}


@dataclass(frozen=True)
class AutoVerificationConfig:
    """Switches for the verification decision engine.

    Passed explicitly to the engine so tests and callers can vary the
    threshold without touching the process environment.
    """
    enabled: bool = True
    min_score: int = 90

    @classmethod
    def from_env(cls) -> "AutoVerificationConfig":
        return cls(
            enabled=os.getenv("AUTO_VERIFICATION_ENABLED", "true").strip().lower() != "false",
            min_score=int(os.getenv("AUTO_VERIFICATION_MIN_SCORE", "90")),
        )


@dataclass(frozen=True)
class DocumentWaitConfig:
    """Backoff schedule for waiting on asynchronously linked documents."""
    attempts: int = DOCUMENT_WAIT_ATTEMPTS
    base_delay: float = DOCUMENT_WAIT_BASE_DELAY
    window_minutes: int = DOCUMENT_WINDOW_MINUTES
