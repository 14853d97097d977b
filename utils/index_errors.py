"""
Helpers for Firestore "index required" errors
"""

import re
from google.api_core.exceptions import FailedPrecondition

FIREBASE_CONSOLE_URL = 'https://console.firebase.google.com'
INDEX_URL_PATTERN = re.compile(r'https://console\.firebase\.google\.com[^\s]+')


def is_missing_index(error: Exception) -> bool:
    return isinstance(error, FailedPrecondition)


def extract_index_url(error) -> str:
    """Pull the index-creation link out of a FailedPrecondition message"""
    match = INDEX_URL_PATTERN.search(str(error))
    if match:
        return match.group(0)
    return FIREBASE_CONSOLE_URL
