import os

from dotenv import load_dotenv

load_dotenv(os.getenv("ENV_FILE"), override=True)

# General
PRODUCT = os.getenv("PRODUCT", "ivo-pipeline")
VERSION = os.environ.get("VERSION", "0")
ENV = os.getenv("ENV", "stg")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")

# Generation service
IVO_API_BASE_URL = os.getenv("IVO_API_BASE_URL", "http://localhost:8000")
IVO_API_TOKEN = os.getenv("IVO_API_TOKEN", "") or None

# AI generation takes minutes, plain reads take seconds
GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "600"))
UNIT_FETCH_TIMEOUT_SECONDS = float(os.getenv("UNIT_FETCH_TIMEOUT_SECONDS", "30"))

# Settling intervals between stages (remote writes are not immediately readable)
STAGE_SETTLE_SECONDS = float(os.getenv("STAGE_SETTLE_SECONDS", "3.0"))
ASSESSMENTS_SETTLE_SECONDS = float(os.getenv("ASSESSMENTS_SETTLE_SECONDS", "5.0"))
PIPELINE_COMPLETE_DELAY_SECONDS = float(
    os.getenv("PIPELINE_COMPLETE_DELAY_SECONDS", "0.5")
)

# Persistence
RUN_STATE_FILE = os.getenv("RUN_STATE_FILE", ".ivo/pipeline_runs.json")

# Answer-key fan-out
SOLVE_MAX_WORKERS = int(os.getenv("SOLVE_MAX_WORKERS", "8"))
