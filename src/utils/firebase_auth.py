"""
Firebase Admin utilities.

Initializes the Firebase Admin SDK (used for ID token verification and the
Storage bucket holding generated story backgrounds) and verifies the Bearer
tokens sent by clients.
"""

import logging
import os
from typing import Dict, Any
import firebase_admin
from firebase_admin import credentials, auth
from src.utils.config import get_settings

logger = logging.getLogger(__name__)

# Global Firebase app instance
_firebase_app = None


def initialize_firebase_admin() -> None:
    """
    Initialize Firebase Admin SDK for authentication and storage.

    Uses the service account JSON file from FIREBASE_SERVICE_ACCOUNT_PATH (or
    FIRESTORE_CREDENTIALS), falling back to Application Default Credentials.
    If already initialized, does nothing.
    """
    global _firebase_app

    if _firebase_app is not None:
        logger.debug("[firebase-auth] Firebase Admin already initialized")
        return

    try:
        settings = get_settings()

        service_account_path = os.getenv('FIREBASE_SERVICE_ACCOUNT_PATH') or settings.FIRESTORE_CREDENTIALS

        cred = None
        if service_account_path:
            service_account_path = os.path.abspath(os.path.expanduser(service_account_path))
            if os.path.exists(service_account_path):
                try:
                    cred = credentials.Certificate(service_account_path)
                    logger.info(f"[firebase-auth] Using explicit service account: {service_account_path}")
                except Exception as cred_err:
                    logger.warning(f"[firebase-auth] Failed to load service account file; falling back to ADC: {str(cred_err)}")
                    cred = None
            else:
                logger.warning(f"[firebase-auth] Service account file not found: {service_account_path}; falling back to ADC")
        else:
            logger.info("[firebase-auth] No service account path provided; using ADC (Application Default Credentials)")

        options = {'projectId': settings.FIRESTORE_PROJECT_ID or settings.GOOGLE_CLOUD_PROJECT}
        if settings.FIREBASE_STORAGE_BUCKET:
            options['storageBucket'] = settings.FIREBASE_STORAGE_BUCKET

        if cred:
            _firebase_app = firebase_admin.initialize_app(cred, options)
        else:
            _firebase_app = firebase_admin.initialize_app(options=options)
            logger.info("[firebase-auth] Using Application Default Credentials (ADC)")

        logger.info("[firebase-auth] Firebase Admin SDK initialized", extra={"bucket": options.get('storageBucket')})

    except Exception as e:
        logger.error(f"[firebase-auth] Failed to initialize Firebase Admin SDK: {str(e)}")
        logger.error("[firebase-auth] Authenticated endpoints and background uploads will not work without Firebase Admin")
        raise


async def verify_firebase_token(token: str) -> Dict[str, Any]:
    """
    Verify a Firebase ID token and return the decoded claims.

    Raises:
        ValueError: If token is invalid, expired, revoked or malformed
    """
    try:
        if not token or not token.strip():
            raise ValueError("Token is empty or missing")

        decoded_token = auth.verify_id_token(token)

        user_id = decoded_token.get('uid', 'unknown')
        logger.info(f"[firebase-auth] Token verified successfully for user: {user_id[:12]}...")

        return decoded_token

    except auth.ExpiredIdTokenError as e:
        logger.warning(f"[firebase-auth] Expired ID token: {str(e)}")
        raise ValueError("Firebase ID token has expired. Please sign in again.")

    except auth.RevokedIdTokenError as e:
        logger.warning(f"[firebase-auth] Revoked ID token: {str(e)}")
        raise ValueError("Firebase ID token has been revoked. Please sign in again.")

    except auth.InvalidIdTokenError as e:
        logger.warning(f"[firebase-auth] Invalid ID token: {str(e)}")
        raise ValueError(f"Invalid Firebase ID token: {str(e)}")

    except auth.CertificateFetchError as e:
        logger.error(f"[firebase-auth] Certificate fetch error: {str(e)}")
        raise ValueError("Unable to verify token: certificate error")

    except ValueError:
        raise

    except Exception as e:
        logger.error(f"[firebase-auth] Unexpected error verifying token: {str(e)}", exc_info=True)
        raise ValueError(f"Token verification failed: {str(e)}")


def is_firebase_initialized() -> bool:
    """Check if Firebase Admin SDK is initialized."""
    return _firebase_app is not None
