# Run:
# uvicorn docs.main:app --host 0.0.0.0 --port 8080 --reload

"""
Service Discovery / Documentation Service
Provides a single entry point to discover all SafeCircle microservices.
"""

import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from common.constants import SERVICES
from libs.fastapi_service import (
    CORSMiddlewareConfig,
    FastAPIServiceFactory,
    ServiceAppConfig,
)

DOCS_HOST = os.getenv("DOCS_HOST", "http://127.0.0.1")

# Create service configuration
service_config = ServiceAppConfig(
    title="SafeCircle Services Discovery",
    description="Service discovery and documentation endpoint for all SafeCircle microservices.",
    service_name="service_discovery",
    cors_config=CORSMiddlewareConfig(),
    enable_metrics=False,  # This is just a discovery endpoint
)

# Create factory and build app
factory = FastAPIServiceFactory(service_config)
app = factory.create_app()


@app.get("/")
async def index():
    """Service discovery endpoint - lists all available services."""
    return {
        "services": {
            name: f"{DOCS_HOST}:{port}/docs" for name, (_module, port) in SERVICES.items()
        },
        "description": "SafeCircle Microservices - Click on any service to view its API documentation",
    }
