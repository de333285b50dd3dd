"""
Firebase Authentication for owner endpoints.

Clients send ``Authorization: Bearer <Firebase ID token>``; the decoded uid
is the user's primary key in the ``users`` table.
"""
import logging
import os
from typing import Dict, Optional

import firebase_admin
from fastapi import Request
from firebase_admin import auth as admin_auth
from firebase_admin import credentials
from firebase_admin import exceptions as firebase_exceptions
from starlette.concurrency import run_in_threadpool

from utils.errors import AuthenticationRequired

logger = logging.getLogger("backend.auth")

_firebase_app: Optional[firebase_admin.App] = None


def initialize_firebase_admin() -> firebase_admin.App:
    """Initialize the Firebase Admin app once (service account file or ADC)."""
    global _firebase_app
    if _firebase_app is not None:
        return _firebase_app
    try:
        _firebase_app = firebase_admin.get_app()
        return _firebase_app
    except ValueError:
        pass
    cred_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    if cred_path and os.path.exists(cred_path):
        logger.info("Initializing Firebase with credentials file: %s", cred_path)
        _firebase_app = firebase_admin.initialize_app(credentials.Certificate(cred_path))
    else:
        logger.info("GOOGLE_APPLICATION_CREDENTIALS not set, using application default credentials")
        _firebase_app = firebase_admin.initialize_app()
    return _firebase_app


def _bearer_token(request: Request) -> Optional[str]:
    authz = request.headers.get("authorization")
    if not authz or not authz.lower().startswith("bearer "):
        return None
    token = authz.split(" ", 1)[1].strip()
    return token or None


async def get_current_user(request: Request) -> Dict[str, Optional[str]]:
    """FastAPI dependency: verify the ID token and return ``{uid, email, name}``."""
    token = _bearer_token(request)
    if not token:
        raise AuthenticationRequired()
    try:
        app = initialize_firebase_admin()
        decoded = await run_in_threadpool(admin_auth.verify_id_token, token, app)
    except (ValueError, firebase_exceptions.FirebaseError) as e:
        logger.info("ID token rejected: %s", e)
        raise AuthenticationRequired()
    uid = decoded.get("uid")
    if not uid:
        raise AuthenticationRequired()
    return {"uid": uid, "email": decoded.get("email"), "name": decoded.get("name")}
