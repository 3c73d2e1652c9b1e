"""
Serverless entry point for the SLA Engine API.

The monitoring scheduler needs a long-lived process, so it is disabled
here; sweeps are triggered through ``POST /sla/monitoring/run`` instead.
"""
import os

os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("SLA_CATALOG_PATH", "/var/task/sla_catalog.yaml")
os.environ.setdefault("SLA_MONITORING_ENABLED", "false")

from mangum import Mangum  # noqa: E402

from src.main import app  # noqa: E402

# Lifespan stays on so the database, catalog and monitoring job are initialized per container
handler = Mangum(app, lifespan="auto")
