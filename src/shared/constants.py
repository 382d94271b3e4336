"""Shared constants used across the workflow builder."""
from __future__ import annotations

# Application version
VERSION: str = "1.0.0"

SERVICE_NAME: str = "workflow-builder"

# ---------------------------------------------------------------------------
# Stage names -- the four generation stages, in pipeline order
# ---------------------------------------------------------------------------
STAGE_REQUIREMENTS = "requirements"
STAGE_ARCHITECTURE = "architecture"
STAGE_SYNTHESIS = "synthesis"
STAGE_VALIDATION = "validation"

ALL_STAGES = [
    STAGE_REQUIREMENTS,
    STAGE_ARCHITECTURE,
    STAGE_SYNTHESIS,
    STAGE_VALIDATION,
]

# Non-stage error sources
STAGE_NORMALIZE = "normalize"
STAGE_PIPELINE = "pipeline"

# ---------------------------------------------------------------------------
# Additional stage_outputs keys
# ---------------------------------------------------------------------------
OUTPUT_STRUCTURAL_REPORT = "structural_report"
OUTPUT_CORRECTED_DOCUMENT = "corrected_document"

# ---------------------------------------------------------------------------
# Input limits
# ---------------------------------------------------------------------------
MIN_BRIEF_LENGTH: int = 10
MAX_BRIEF_LENGTH: int = 2000
MAX_ADDRESS_LENGTH: int = 254
MAX_LOCAL_PART_LENGTH: int = 64

# ---------------------------------------------------------------------------
# Generator defaults (seconds)
# ---------------------------------------------------------------------------
DEFAULT_STAGE_TIMEOUT: float = 60.0
DEFAULT_MAX_RETRIES: int = 2
DEFAULT_BACKOFF_BASE: float = 1.0

# Cache defaults (seconds)
DEFAULT_CACHE_TTL: float = 3600.0

DEFAULT_MAX_CONCURRENT_REQUESTS: int = 8
