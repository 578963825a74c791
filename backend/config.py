# backend/config.py

import os

from scaling.exceptions import ConfigurationError

# Provisioning API (Render-compatible)
PROVISIONING_API_URL = os.getenv("PROVISIONING_API_URL", "https://api.render.com/v1")
PROVISIONING_API_KEY = os.getenv("PROVISIONING_API_KEY")
PROVISIONING_TIMEOUT_SECONDS = float(os.getenv("PROVISIONING_TIMEOUT_SECONDS", "30"))
PROVISIONING_MAX_RETRIES = int(os.getenv("PROVISIONING_MAX_RETRIES", "3"))
PROVISIONING_BACKOFF_FACTOR = float(os.getenv("PROVISIONING_BACKOFF_FACTOR", "1.0"))

# Only services whose name contains every filter are managed
SERVICE_NAME_FILTERS = [
    f.strip() for f in os.getenv("SERVICE_NAME_FILTERS", "ace-crm,hive").split(",") if f.strip()
]

# Dry-run mode (set to False for actual scaling)
DRY_RUN = os.getenv("DRY_RUN", "True").lower() == "true"

# Metrics source: "synthetic" or "prometheus"
METRICS_SOURCE = os.getenv("METRICS_SOURCE", "synthetic")
PROMETHEUS_URL = os.getenv("PROMETHEUS_URL", "http://localhost:9090")
METRICS_WINDOW_SECONDS = 300  # 5 minutes history per query
METRICS_STEP = "15s"

# Loop intervals (seconds)
METRICS_INTERVAL_SECONDS = 30
ANALYSIS_INTERVAL_SECONDS = 60
PREDICTION_INTERVAL_SECONDS = 300
COST_OPTIMIZATION_INTERVAL_SECONDS = 3600
PERFORMANCE_TRACKING_INTERVAL_SECONDS = 600
MONITOR_INTERVAL_SECONDS = 30
HEALTH_CHECK_INTERVAL_SECONDS = 30
PERFORMANCE_INTERVAL_SECONDS = 60
RESOURCE_INTERVAL_SECONDS = 120
INTELLIGENCE_REVIEW_INTERVAL_SECONDS = 300

# Forecasting
MIN_POINTS_FOR_PREDICTION = 10
PREDICTION_WINDOW = 20
PREDICTION_HORIZONS = {"next_hour": 60, "next_6_hours": 360, "next_day": 1440}
PREDICTIVE_CONFIDENCE_THRESHOLD = 0.7

# Cost optimization
LOW_UTILIZATION_CPU = 20.0
COST_LOOKBACK_SECONDS = 3600
MIN_POINTS_FOR_COST_ANALYSIS = 10
INSTANCE_MONTHLY_COST = {
    "backend": 7.0,
    "frontend": 0.0,  # static site, free tier
    "portal": 7.0,
    "worker": 7.0,
    "unknown": 7.0,
}

# Monitor alert thresholds
RESPONSE_TIME_ALERT_MS = 2000.0
ERROR_RATE_ALERT_PERCENT = 5.0
ALERT_RETENTION_SECONDS = 24 * 60 * 60
HEALTHY_PROVIDER_STATES = ("running", "available", "live", "not_suspended")

# Bounds
MAX_SERIES_LENGTH = 1000
MAX_HISTORY_EVENTS = 1000
MAX_DECISION_HISTORY = 1000
MAX_CONSECUTIVE_FAILURES = 3
MAX_RECOVERY_ATTEMPTS = 3
RECOVERY_BACKOFF_SECONDS = 30
SHUTDOWN_TIMEOUT_SECONDS = 30

# Files
LOG_FILE = os.getenv("LOG_FILE", "logs/autoscaler.log")
HISTORY_FILE = os.getenv("HISTORY_FILE", "scaling-history.json")
SCALING_LOG_DIR = os.getenv("SCALING_LOG_DIR", "logs/scaling")
ORCHESTRATOR_LOG_DIR = os.getenv("ORCHESTRATOR_LOG_DIR", "logs")
INTELLIGENCE_DIR = os.getenv("INTELLIGENCE_DIR", "intelligence")
HIVE_CONFIG_FILE = os.getenv("HIVE_CONFIG_FILE", "hive-config.json")

# CLI / admin API
PID_FILE = os.getenv("PID_FILE", "logs/hive-orchestrator.pid")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_URL = os.getenv("API_URL", "http://localhost:8000")


def validate_configuration(api_key=None):
    """Fail fast when a setting the orchestrator cannot run without is missing."""
    key = api_key if api_key is not None else PROVISIONING_API_KEY
    if not key:
        raise ConfigurationError(
            "PROVISIONING_API_KEY is required to manage services; set it in the environment"
        )
    if METRICS_SOURCE not in ("synthetic", "prometheus"):
        raise ConfigurationError(f"Unknown METRICS_SOURCE: {METRICS_SOURCE}")
