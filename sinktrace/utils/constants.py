"""Paths and environment variable names shared across sinktrace."""

from pathlib import Path

# ============================================================================
# OUTPUT DIRECTORIES
# ============================================================================

# Primary output directory for scan artifacts
OUTPUT_DIR = Path("./.sinktrace")

# Log files
ERROR_LOG_FILE = OUTPUT_DIR / "error.log"

# Runtime configuration overrides
CONFIG_FILE = OUTPUT_DIR / "config.json"

# Default findings report
FINDINGS_FILE = OUTPUT_DIR / "findings.json"

# ============================================================================
# ENVIRONMENT VARIABLES
# ============================================================================

ENV_PREFIX = "SINKTRACE_"
ENV_LOG_LEVEL = "SINKTRACE_LOG_LEVEL"
ENV_LOG_JSON = "SINKTRACE_LOG_JSON"
ENV_LOG_FILE = "SINKTRACE_LOG_FILE"
ENV_REQUEST_ID = "SINKTRACE_REQUEST_ID"
ENV_FIDELITY_STRICT = "SINKTRACE_FIDELITY_STRICT"
