"""
Prepare a Firebase project for the complaint portal
Prints the composite indexes and security rules to apply, and creates the
first administrator from SETUP_ADMIN_USERNAME / SETUP_ADMIN_PASSWORD
"""

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
from utils.firebase_config import initialize_firebase
from utils.portal_auth import get_auth_system
import logging

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Ordered chat queries need these before real-time updates can start
REQUIRED_INDEXES = [
    {'collection': 'chats', 'fields': [('complaintId', 'ASCENDING'), ('timestamp', 'ASCENDING')]},
    {'collection': 'chatMessages', 'fields': [('roomId', 'ASCENDING'), ('timestamp', 'ASCENDING')]},
]


def create_indexes():
    """Show the indexes to create (they can only be created in Firebase Console or the CLI)"""
    lines = ["Please create the following composite indexes in Firebase Console:", ""]
    for index in REQUIRED_INDEXES:
        fields = ', '.join(f"{name} ({direction.title()})" for name, direction in index['fields'])
        lines.append(f"Collection: {index['collection']}")
        lines.append(f"- {fields}")
        lines.append("")
    lines.append("Until they exist, chats fall back to manual refresh and show a link to create them.")
    logger.info("\n".join(lines))
    return REQUIRED_INDEXES


def setup_security_rules():
    """Display security rules that should be applied"""
    security_rules = """
    Please apply the following security rules in Firebase Console:

    rules_version = '2';
    service cloud.firestore {
      match /databases/{database}/documents {
        function role() {
          return get(/databases/$(database)/documents/users/$(request.auth.uid)).data.role;
        }

        // Users - own profile readable, admins manage accounts
        match /users/{userId} {
          allow read: if request.auth != null && (request.auth.uid == userId || role() == 'admin');
          allow write: if request.auth != null && role() == 'admin';
        }

        // Complaints - students create their own, staff update
        match /complaints/{complaintId} {
          allow read: if request.auth != null;
          allow create: if request.auth != null && request.resource.data.userId == request.auth.uid;
          allow update: if request.auth != null;
        }

        // Complaint chat messages
        match /chats/{messageId} {
          allow read, create, update: if request.auth != null;
          allow delete: if request.auth != null && role() in ['faculty', 'admin'];
        }

        // Chat rooms and their messages - participants only
        match /chatRooms/{roomId} {
          allow read, update: if request.auth != null && request.auth.uid in resource.data.participants;
          allow create: if request.auth != null;
        }
        match /chatMessages/{messageId} {
          allow read, write: if request.auth != null;
        }
      }
    }

    service firebase.storage {
      match /b/{bucket}/o {
        match /chat-attachments/{roomId}/{fileName} {
          allow read: if true;
          allow write: if request.auth != null && request.resource.size < 16 * 1024 * 1024;
        }
      }
    }
    """

    logger.info("Security Rules:")
    logger.info(security_rules)


def bootstrap_admin():
    """Create the first admin account from the environment, if configured"""
    username = os.getenv('SETUP_ADMIN_USERNAME')
    password = os.getenv('SETUP_ADMIN_PASSWORD')
    if not username or not password:
        logger.info("SETUP_ADMIN_USERNAME/SETUP_ADMIN_PASSWORD not set, skipping admin creation (use /setup instead)")
        return None

    result = get_auth_system().create_initial_admin(username, password, password)
    if result['success']:
        logger.info(f"Administrator {username} created")
    else:
        logger.warning(f"Administrator not created: {result['error']}")
    return result


def main():
    """Main setup function"""
    try:
        load_dotenv()
        logger.info("Starting Firebase setup...")

        initialize_firebase()
        logger.info("Firebase initialized")

        bootstrap_admin()

        # Display additional setup instructions
        create_indexes()
        setup_security_rules()

        logger.info("Firebase setup completed!")
        logger.info("Don't forget to:")
        logger.info("1. Create the indexes mentioned above in Firebase Console")
        logger.info("2. Apply the security rules in Firebase Console")

    except Exception as e:
        logger.error(f"Setup error: {str(e)}")

if __name__ == "__main__":
    main()
