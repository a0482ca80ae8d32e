"""
Application-wide constants for the SafeCircle backend.

This module contains all shared constants used across the application.
"""

import os

# ========= Service Configuration =========
# Service configuration: service_name -> (module_path, port)
SERVICES = {
    "user_management": ("services.user_management.main", 20000),
    "notification": ("services.notification.main", 20001),
    "invitation": ("services.invitation.main", 20002),
    "location": ("services.location.main", 20003),
    "unsafe_zones": ("services.unsafe_zones.main", 20004),
    "sos": ("services.sos.main", 20006),
}

# ========= Auth Configuration =========
# Firebase ID tokens are RS256 JWTs signed by Google's securetoken service
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID", "safecircle-dev")
API_AUDIENCE = FIREBASE_PROJECT_ID
ISSUER = f"https://securetoken.google.com/{FIREBASE_PROJECT_ID}"
JWKS_URL = os.getenv(
    "FIREBASE_JWKS_URL",
    "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com",
)
ALGORITHMS = ["RS256"]

# ========= Redis Configuration =========
# Redis connection settings
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
# Note: REDIS_PASSWORD should be read from env in redis_client, not here (security)

# ========= Live Location Cache =========
LIVE_LOCATION_KEY_PREFIX = "live_location:"
# Latest known location is cached for 1 hour
LIVE_LOCATION_TTL = 3600

# ========= Invitations =========
INVITE_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
INVITE_CODE_LENGTH = 8

# ========= Unsafe Zones =========
# Approximate degrees per km (used for both axes)
DEGREES_PER_KM = 0.009
# Verifications required before a zone is marked verified
UNSAFE_ZONE_VERIFY_THRESHOLD = 3

# ========= Contacts =========
# Contacts with no reachable phone (app-only guardians)
NO_PHONE_MARKERS = ("", "N/A")
MAPS_URL_TEMPLATE = "https://maps.google.com/?q={lat},{lon}"
