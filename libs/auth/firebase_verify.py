# libs/auth/firebase_verify.py
"""
Firebase ID token verification for FastAPI.

- decode_token:      verify a raw ID token (HTTP routes and WebSocket handshakes)
- verify_token:      FastAPI dependency returning the verified claims
- get_current_user:  FastAPI dependency returning the caller as a CurrentUser
- router:            /auth/verify endpoint for quick health check

Env vars (with safe defaults for local dev):
- FIREBASE_PROJECT_ID  e.g. safecircle-dev
- FIREBASE_JWKS_URL    override for the securetoken JWKS endpoint
"""

import json
from typing import Optional

import certifi
import jwt
import requests
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.algorithms import RSAAlgorithm
from pydantic import BaseModel

from common.constants import ALGORITHMS, API_AUDIENCE, ISSUER, JWKS_URL

# ---------- Security scheme ----------
security = HTTPBearer()


class CurrentUser(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


def decode_token(token: str) -> dict:
    """
    Verify a Firebase ID token using Google's securetoken JWKS.
    Raises HTTPException(401) on any failure.
    """
    try:
        # 1) Fetch JWKS with trusted CA bundle
        resp = requests.get(JWKS_URL, timeout=5, verify=certifi.where())
        resp.raise_for_status()
        jwks = resp.json()

        # 2) Match JWK by kid from token header
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        if not kid:
            raise ValueError("Missing 'kid' in token header")
        key_dict = next((k for k in jwks["keys"] if k.get("kid") == kid), None)
        if not key_dict:
            raise ValueError("No matching JWK for token 'kid'")

        # 3) Build public key and decode
        public_key = RSAAlgorithm.from_jwk(json.dumps(key_dict))
        payload = jwt.decode(
            token,
            public_key,
            algorithms=ALGORITHMS,
            audience=API_AUDIENCE,
            issuer=ISSUER,
        )
        if not payload.get("sub"):
            raise ValueError("Missing 'sub' claim")
        return payload

    except requests.exceptions.SSLError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"SSL error fetching JWKS: {e}",
        ) from e
    except requests.RequestException as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"HTTP error fetching JWKS: {e}",
        ) from e
    except jwt.ExpiredSignatureError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired"
        ) from e
    except jwt.InvalidAudienceError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid audience"
        ) from e
    except jwt.InvalidIssuerError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid issuer"
        ) from e
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Token verification failed: {e}",
        ) from e


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """
    FastAPI dependency for protected routes; returns the verified claims.
    """
    return decode_token(credentials.credentials)


def current_user_from_claims(payload: dict) -> CurrentUser:
    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject"
        )
    email = payload.get("email")
    return CurrentUser(
        user_id=user_id,
        email=email.lower() if email else None,
        name=payload.get("name"),
    )


def get_current_user(payload: dict = Depends(verify_token)) -> CurrentUser:
    return current_user_from_claims(payload)


# ---------- Router ----------
router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/verify")
def verify(user: CurrentUser = Depends(get_current_user)):
    """Protected endpoint, returns the caller if the token is valid."""
    return {"message": "Token valid", "user": user.user_id, "email": user.email}
