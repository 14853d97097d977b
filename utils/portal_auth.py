"""
Portal Authentication System
Handles account creation, username/password login and session tokens
"""

import os
import re
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional
import bcrypt
import jwt
from firebase_admin import auth as firebase_auth
from firebase_admin import firestore
from google.cloud.firestore import FieldFilter
from utils import firebase_config
from utils.catalog import DEPARTMENTS, PROGRAMS, BATCHES, ATTENDANCE_MODES

logger = logging.getLogger(__name__)

ROLES = ('student', 'faculty', 'admin')

# Never leave the server
PRIVATE_FIELDS = ('passwordHash', 'loginAttempts', 'lockedUntil')

USERNAME_PATTERN = re.compile(r'^[a-zA-Z0-9._-]{3,32}$')


class PortalAuthSystem:
    def __init__(self):
        self.db = firebase_config.get_firestore_client()
        self.email_domain = os.getenv('AUTH_EMAIL_DOMAIN', 'university.edu')

        # Security Configuration
        self.jwt_secret = os.getenv('JWT_SECRET_KEY', 'change_this_secret_key')
        self.password_rounds = int(os.getenv('PASSWORD_HASH_ROUNDS', 12))
        self.session_timeout_hours = int(os.getenv('SESSION_TIMEOUT_HOURS', 24))
        self.min_password_length = 6

        # Rate Limiting
        self.max_login_attempts = int(os.getenv('MAX_LOGIN_ATTEMPTS', 5))
        self.account_lockout_minutes = int(os.getenv('ACCOUNT_LOCKOUT_MINUTES', 15))

    def synthesize_email(self, username: str) -> str:
        """Accounts are keyed by username; Firebase Auth still wants an email"""
        return f"{username.strip().lower()}@{self.email_domain}"

    def validate_username(self, username: str) -> Dict[str, Any]:
        if not username or not username.strip():
            return {'valid': False, 'error': 'Username is required'}
        if not USERNAME_PATTERN.match(username.strip()):
            return {
                'valid': False,
                'error': 'Username must be 3-32 characters of letters, numbers, dots, dashes or underscores'
            }
        return {'valid': True}

    def validate_password(self, password: str, confirm_password: Optional[str] = None) -> Dict[str, Any]:
        if not password or len(password) < self.min_password_length:
            return {'valid': False, 'error': f'Password must be at least {self.min_password_length} characters long'}
        if confirm_password is not None and password != confirm_password:
            return {'valid': False, 'error': "Passwords don't match"}
        return {'valid': True}

    def hash_password(self, password: str) -> str:
        """Hash password using bcrypt"""
        salt = bcrypt.gensalt(rounds=self.password_rounds)
        return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    def verify_password(self, password: str, hashed: str) -> bool:
        """Verify password against hash"""
        try:
            return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
        except Exception as e:
            logger.error(f"Error verifying password: {str(e)}")
            return False

    def find_user_by_username(self, username: str):
        docs = self.db.collection('users')\
            .where(filter=FieldFilter('username', '==', username.strip().lower()))\
            .limit(1)\
            .get()
        return docs[0] if docs else None

    def admin_exists(self) -> bool:
        docs = self.db.collection('users')\
            .where(filter=FieldFilter('role', '==', 'admin'))\
            .limit(1)\
            .get()
        return bool(docs)

    def _validate_profile(self, data: Dict[str, Any]) -> Optional[str]:
        role = data.get('role', '')
        if role not in ('student', 'faculty'):
            return 'Role must be student or faculty'

        for field in ['firstName', 'lastName', 'uniqueID', 'department']:
            if not str(data.get(field, '')).strip():
                return f'{field} is required'
        if data['department'] not in DEPARTMENTS:
            return 'Invalid department'

        if role == 'student':
            if data.get('program') not in PROGRAMS:
                return 'Invalid program'
            if data.get('batch', 'fall') not in BATCHES:
                return 'Batch must be fall or spring'
            if data.get('attending', 'regular') not in ATTENDANCE_MODES:
                return 'Attendance must be regular or weekends'
            try:
                start_year = int(data.get('startYear'))
                end_year = int(data.get('endYear'))
            except (TypeError, ValueError):
                return 'Academic years must be numbers'
            if end_year < start_year:
                return 'Academic end year cannot be before the start year'
        return None

    def _create_auth_account(self, username: str, password: str, display_name: str) -> str:
        """Create the Firebase Auth credential and return its uid"""
        record = firebase_auth.create_user(
            email=self.synthesize_email(username),
            password=password,
            display_name=display_name or username,
            app=firebase_config.get_firebase_app()
        )
        return record.uid

    def _write_profile(self, uid: str, profile: Dict[str, Any]):
        """Store the users/{uid} document, removing the Auth credential if that fails"""
        try:
            self.db.collection('users').document(uid).set(profile)
        except Exception:
            try:
                firebase_auth.delete_user(uid, app=firebase_config.get_firebase_app())
            except Exception as e:
                logger.error(f"Could not remove auth account {uid} after failed profile write: {str(e)}")
            raise

    def create_user(self, data: Dict[str, Any], created_by: str) -> Dict[str, Any]:
        """Create a student or faculty account (admin action)"""
        try:
            username_check = self.validate_username(data.get('username', ''))
            if not username_check['valid']:
                return {'success': False, 'error': username_check['error']}

            password_check = self.validate_password(data.get('password', ''))
            if not password_check['valid']:
                return {'success': False, 'error': password_check['error']}

            profile_error = self._validate_profile(data)
            if profile_error:
                return {'success': False, 'error': profile_error}

            username = data['username'].strip().lower()
            if self.find_user_by_username(username):
                return {'success': False, 'error': 'Username already exists', 'code': 409}

            full_name = f"{data['firstName'].strip()} {data['lastName'].strip()}"
            uid = self._create_auth_account(username, data['password'], full_name)

            user_data = {
                'username': username,
                'firstName': data['firstName'].strip(),
                'lastName': data['lastName'].strip(),
                'uniqueID': data['uniqueID'].strip(),
                'role': data['role'],
                'department': data['department'],
                'createdAt': datetime.now(timezone.utc).isoformat(),
                'createdBy': created_by,
                'passwordHash': self.hash_password(data['password']),
                'loginAttempts': 0,
                'lockedUntil': None,
            }

            if data['role'] == 'student':
                user_data.update({
                    'program': data['program'],
                    'academicYears': {
                        'start': str(data['startYear']),
                        'end': str(data['endYear']),
                    },
                    'batch': data.get('batch', 'fall'),
                    'attending': data.get('attending', 'regular'),
                })

            self._write_profile(uid, user_data)

            logger.info(f"User account created for {username} as {data['role']}")
            return {
                'success': True,
                'user_id': uid,
                'message': f"New {data['role']} account created for {full_name}."
            }

        except firebase_auth.EmailAlreadyExistsError:
            return {'success': False, 'error': 'Username already exists', 'code': 409}
        except Exception as e:
            logger.error(f"Error creating user account: {str(e)}")
            return {'success': False, 'error': 'There was a problem creating the user.'}

    def create_initial_admin(self, username: str, password: str, confirm_password: str) -> Dict[str, Any]:
        """Bootstrap the first administrator account"""
        try:
            if self.admin_exists():
                return {'success': False, 'error': 'An administrator account already exists', 'code': 409}

            username_check = self.validate_username(username)
            if not username_check['valid']:
                return {'success': False, 'error': username_check['error']}

            password_check = self.validate_password(password, confirm_password)
            if not password_check['valid']:
                return {'success': False, 'error': password_check['error']}

            username = username.strip().lower()
            uid = self._create_auth_account(username, password, username)

            self._write_profile(uid, {
                'username': username,
                'role': 'admin',
                'createdAt': datetime.now(timezone.utc).isoformat(),
                'passwordHash': self.hash_password(password),
                'loginAttempts': 0,
                'lockedUntil': None,
            })

            logger.info(f"Initial admin account created: {username}")
            return {'success': True, 'user_id': uid, 'message': 'You can now log in as an administrator.'}

        except firebase_auth.EmailAlreadyExistsError:
            return {'success': False, 'error': 'Username already exists', 'code': 409}
        except Exception as e:
            logger.error(f"Admin setup error: {str(e)}")
            return {'success': False, 'error': 'There was a problem creating the admin account.'}

    def authenticate(self, username: str, password: str, role: str) -> Dict[str, Any]:
        """Check credentials and that the account belongs to the requested role"""
        if not username or not password:
            return {'success': False, 'error': 'Username and password are required', 'code': 400}
        if role not in ROLES:
            return {'success': False, 'error': 'Invalid role', 'code': 400}

        user_doc = self.find_user_by_username(username)
        if user_doc is None:
            logger.warning(f"Login failed, no account for {username}")
            return {'success': False, 'error': "This user doesn't exist in our system.", 'code': 401}

        user_data = user_doc.to_dict()
        user_ref = self.db.collection('users').document(user_doc.id)
        now = datetime.now(timezone.utc)

        locked_until = user_data.get('lockedUntil')
        if isinstance(locked_until, datetime) and now < locked_until:
            return {'success': False, 'error': 'Account is temporarily locked. Please try again later.', 'code': 401}

        if not self.verify_password(password, user_data.get('passwordHash', '')):
            login_attempts = user_data.get('loginAttempts', 0) + 1
            update_data = {'loginAttempts': login_attempts}

            if login_attempts >= self.max_login_attempts:
                update_data['lockedUntil'] = now + timedelta(minutes=self.account_lockout_minutes)
                update_data['loginAttempts'] = 0

            user_ref.update(update_data)

            remaining_attempts = self.max_login_attempts - login_attempts
            if remaining_attempts > 0:
                return {'success': False, 'error': f'Invalid password. {remaining_attempts} attempts remaining.', 'code': 401}
            return {'success': False, 'error': 'Account locked due to too many failed attempts.', 'code': 401}

        if user_data.get('role') != role:
            logger.warning(f"Login for {username} rejected: role {user_data.get('role')} is not {role}")
            return {'success': False, 'error': "You don't have permission to access this area.", 'code': 403}

        user_ref.update({
            'loginAttempts': 0,
            'lockedUntil': None,
            'lastLogin': firestore.SERVER_TIMESTAMP
        })

        token = self.generate_jwt_token(user_doc.id, user_data['username'], role)
        logger.info(f"User logged in successfully: {username}")
        return {
            'success': True,
            'user_id': user_doc.id,
            'user': self.public_profile(user_doc.id, user_data),
            'token': token
        }

    def generate_jwt_token(self, user_id: str, username: str, role: str) -> str:
        """Generate JWT token for session"""
        payload = {
            'user_id': user_id,
            'username': username,
            'role': role,
            'exp': datetime.now(timezone.utc) + timedelta(hours=self.session_timeout_hours),
            'iat': datetime.now(timezone.utc)
        }
        return jwt.encode(payload, self.jwt_secret, algorithm='HS256')

    def verify_jwt_token(self, token: str) -> Dict[str, Any]:
        """Verify JWT token"""
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=['HS256'])
            return {'valid': True, 'payload': payload}
        except jwt.ExpiredSignatureError:
            return {'valid': False, 'error': 'Token has expired'}
        except jwt.InvalidTokenError:
            return {'valid': False, 'error': 'Invalid token'}

    @staticmethod
    def public_profile(user_id: str, user_data: Dict[str, Any]) -> Dict[str, Any]:
        profile = {k: v for k, v in user_data.items() if k not in PRIVATE_FIELDS}
        profile['id'] = user_id
        last_login = profile.get('lastLogin')
        if isinstance(last_login, datetime):
            profile['lastLogin'] = last_login.isoformat()
        return profile

    def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        user_doc = self.db.collection('users').document(user_id).get()
        if not user_doc.exists:
            return None
        return self.public_profile(user_id, user_doc.to_dict())

    def list_users(self, role: Optional[str] = None, search: str = '') -> List[Dict[str, Any]]:
        """Users for the admin tables, filtered by role and username search"""
        try:
            query = self.db.collection('users')
            if role:
                query = query.where(filter=FieldFilter('role', '==', role))
            docs = query.get()

            users = [self.public_profile(doc.id, doc.to_dict()) for doc in docs]
            term = search.strip().lower()
            if term:
                users = [u for u in users if term in u.get('username', '').lower()]

            users.sort(key=lambda u: u.get('username', ''))
            return users

        except Exception as e:
            logger.error(f"Error fetching users: {str(e)}")
            return []

    def get_faculty_list(self) -> List[Dict[str, Any]]:
        """Faculty members available for complaint routing"""
        return [
            {
                'id': f['id'],
                'username': f.get('username', ''),
                'firstName': f.get('firstName', ''),
                'lastName': f.get('lastName', ''),
                'uniqueID': f.get('uniqueID', ''),
                'department': f.get('department', ''),
            }
            for f in self.list_users(role='faculty')
        ]


# Global instance
_auth_system = None

def get_auth_system():
    """Get the global auth system instance"""
    global _auth_system
    if _auth_system is None:
        _auth_system = PortalAuthSystem()
    return _auth_system
