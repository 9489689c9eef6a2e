"""
Core Module - Constants.

============================================================
RESPONSIBILITY
============================================================
Defines all system-wide constants.

- Provides single source of truth for environment variable names
- Holds the defaults the configuration falls back to
- Holds the user-facing messages tests grep for

============================================================
"""

# ============================================================
# SYSTEM IDENTIFICATION
# ============================================================

SYSTEM_NAME = "stackrun"
SYSTEM_VERSION = "0.1.0"

# ============================================================
# ENVIRONMENT VARIABLES
# ============================================================

ENV_PREFIX = "STACKRUN_"

ENV_CLOUD_URL = "STACKRUN_CLOUD_URL"
ENV_CLOUD_ORG = "STACKRUN_CLOUD_ORG"
ENV_CLOUD_TOKEN = "STACKRUN_CLOUD_TOKEN"
ENV_CONTINUE_ON_ERROR = "STACKRUN_CONTINUE_ON_ERROR"
ENV_LOG_LEVEL = "STACKRUN_LOG_LEVEL"
ENV_LOG_FORMAT = "STACKRUN_LOG_FORMAT"

# CI systems whose run id is reused as the correlation key, in lookup order
CI_RUN_ID_ENV_VARS = ("GITHUB_RUN_ID",)

# ============================================================
# CLOUD DEFAULTS
# ============================================================

DEFAULT_CLOUD_URL = "http://localhost:3001"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

DEFAULT_REPORT_MAX_ATTEMPTS = 3
DEFAULT_REPORT_RETRY_BACKOFF_BASE = 0.5
DEFAULT_REPORT_FLUSH_TIMEOUT_SECONDS = 30.0

DEPLOYMENT_EVENTS_PATH = "/v1/deployments/{org_id}/{run_id}/events"

# ============================================================
# PROCESS DEFAULTS
# ============================================================

# The Nth interruption received for a running stack kills its process group
DEFAULT_KILL_AFTER_INTERRUPTS = 3
DEFAULT_DRAIN_TIMEOUT_SECONDS = 5.0

# ============================================================
# EXIT CODES
# ============================================================

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

# ============================================================
# MESSAGES
# ============================================================

MSG_STACK_ID_REQUIRED = (
    "--cloud-sync-deployment flag requires that selected stacks contain an ID field"
)
MSG_EXECUTABLE_NOT_FOUND = "{command}: executable file not found in $PATH"
