"""
Firebase initialization for the complaint portal
Provides shared Firestore, Auth and Storage handles
"""

import os
import logging
import firebase_admin
from firebase_admin import credentials, firestore, storage

logger = logging.getLogger(__name__)

_firebase_app = None
_firestore_client = None
_storage_bucket = None


def initialize_firebase():
    """Initialize the default Firebase app once and return it"""
    global _firebase_app
    if _firebase_app is not None:
        return _firebase_app

    if firebase_admin._apps:
        _firebase_app = firebase_admin.get_app()
        return _firebase_app

    options = {}
    project_id = os.getenv('FIREBASE_PROJECT_ID')
    if project_id:
        options['projectId'] = project_id
    bucket_name = os.getenv('FIREBASE_STORAGE_BUCKET')
    if bucket_name:
        options['storageBucket'] = bucket_name

    cred_path = os.getenv('FIREBASE_CREDENTIALS_PATH', 'firebase-key.json')
    if os.path.exists(cred_path):
        cred = credentials.Certificate(cred_path)
        logger.info(f"Using Firebase service account from {cred_path}")
    else:
        cred = credentials.ApplicationDefault()
        logger.warning(f"{cred_path} not found, falling back to application default credentials")

    _firebase_app = firebase_admin.initialize_app(cred, options)
    logger.info("Firebase initialized")
    return _firebase_app


def get_firebase_app():
    """Get the Firebase app, initializing it on first use"""
    return initialize_firebase()


def get_firestore_client():
    """Get the shared Firestore client"""
    global _firestore_client
    if _firestore_client is None:
        _firestore_client = firestore.client(app=initialize_firebase())
    return _firestore_client


def get_storage_bucket():
    """Get the default Cloud Storage bucket used for chat attachments"""
    global _storage_bucket
    if _storage_bucket is None:
        _storage_bucket = storage.bucket(app=initialize_firebase())
    return _storage_bucket
