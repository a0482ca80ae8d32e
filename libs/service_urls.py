"""
Service URL configuration helper.
Works in Docker Compose (dev), Kubernetes (prod), and local Python development.
Automatically detects the environment and uses appropriate URLs.
"""
import os

from common.constants import SERVICES

# Detect if running locally (not in Docker/K8s)
IS_LOCAL_DEV = os.getenv("LOCAL_DEV", "false").lower() == "true"
IS_IN_CONTAINER = os.path.exists("/.dockerenv") or os.getenv("KUBERNETES_SERVICE_HOST") is not None

# If not in container and LOCAL_DEV not explicitly false, assume local dev
if not IS_IN_CONTAINER and not os.getenv("LOCAL_DEV") == "false":
    IS_LOCAL_DEV = True

# Service ports for local development (when running with uvicorn directly)
LOCAL_PORTS = {name.replace("_", "-"): port for name, (_, port) in SERVICES.items()}


def _get_service_url(service_name: str, local_port: int) -> str:
    """Get service URL based on environment."""
    # Explicit override, e.g. LOCATION_SERVICE_URL
    env_var = f"{service_name.upper().replace('-', '_')}_SERVICE_URL"
    if os.getenv(env_var):
        return os.getenv(env_var)

    if IS_LOCAL_DEV:
        return f"http://localhost:{local_port}"

    # Docker/K8s: use service name with port 80
    return f"http://{service_name}-service:80"


USER_MANAGEMENT_SERVICE_URL = _get_service_url("user-management", LOCAL_PORTS["user-management"])
NOTIFICATION_SERVICE_URL = _get_service_url("notification", LOCAL_PORTS["notification"])
INVITATION_SERVICE_URL = _get_service_url("invitation", LOCAL_PORTS["invitation"])
LOCATION_SERVICE_URL = _get_service_url("location", LOCAL_PORTS["location"])
UNSAFE_ZONES_SERVICE_URL = _get_service_url("unsafe-zones", LOCAL_PORTS["unsafe-zones"])
SOS_SERVICE_URL = _get_service_url("sos", LOCAL_PORTS["sos"])
