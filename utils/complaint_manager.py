"""
Complaint workflow with Firebase integration
Students submit, admins forward, faculty advance, students confirm
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from firebase_admin import firestore
from google.cloud.firestore import FieldFilter
from .firebase_config import get_firestore_client
from .catalog import COMPLAINT_CATEGORIES, SEMESTERS, is_valid_subcategory
from .index_errors import is_missing_index, extract_index_url

logger = logging.getLogger(__name__)

STATUS_PENDING = 'pending'
STATUS_UNDER_REVIEW = 'under review'
STATUS_ACTIVE = 'active'
STATUS_AWAITING_CONFIRMATION = 'awaiting confirmation'
STATUS_RESOLVED = 'resolved'
STATUS_REJECTED = 'rejected'

# Reject-back-to-active is the only edge that moves backwards
ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_UNDER_REVIEW},
    STATUS_UNDER_REVIEW: {STATUS_ACTIVE},
    STATUS_ACTIVE: {STATUS_AWAITING_CONFIRMATION},
    STATUS_AWAITING_CONFIRMATION: {STATUS_RESOLVED, STATUS_ACTIVE},
}

# Transitions a faculty member may trigger on an assigned complaint
FACULTY_TRANSITIONS = {
    STATUS_UNDER_REVIEW: STATUS_ACTIVE,
    STATUS_ACTIVE: STATUS_AWAITING_CONFIRMATION,
}

# Chat threads are removed once faculty consider the issue handled
CHAT_CLEANUP_STATUSES = {STATUS_RESOLVED, STATUS_AWAITING_CONFIRMATION}

STATUS_BADGES = {
    STATUS_PENDING: 'secondary',
    STATUS_UNDER_REVIEW: 'warning',
    STATUS_ACTIVE: 'default',
    'in-progress': 'default',
    STATUS_AWAITING_CONFIRMATION: 'info',
    STATUS_RESOLVED: 'success',
    STATUS_REJECTED: 'destructive',
}

REQUIRED_FIELDS = ['title', 'category', 'subcategory', 'description', 'semester']


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def status_badge(status: str) -> str:
    return STATUS_BADGES.get(status, 'outline')


def status_label(status: str) -> str:
    if status == STATUS_AWAITING_CONFIRMATION:
        return 'Awaiting Confirmation'
    return status[:1].upper() + status[1:]


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.now(timezone.utc)


def _iso(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ComplaintManager:
    """Manages complaint submission, routing and status changes"""

    def __init__(self):
        self.db = get_firestore_client()
        logger.info("Complaint manager initialized")

    def _serialize(self, doc) -> Dict[str, Any]:
        data = doc.to_dict() or {}
        status = data.get('status', STATUS_PENDING)
        created_at = _as_datetime(data.get('createdAt'))
        updated_at = _as_datetime(data.get('updatedAt'))
        return {
            'id': doc.id,
            'title': data.get('title', ''),
            'category': data.get('category', ''),
            'subcategory': data.get('subcategory', ''),
            'description': data.get('description', ''),
            'username': data.get('username', ''),
            'userId': data.get('userId', ''),
            'department': data.get('department', ''),
            'semester': data.get('semester', ''),
            'status': status,
            'statusLabel': status_label(status),
            'badge': status_badge(status),
            'assignedTo': data.get('assignedTo'),
            'studentConfirmed': data.get('studentConfirmed', False),
            'studentResolutionResponse': data.get('studentResolutionResponse', ''),
            'createdAt': created_at,
            'updatedAt': updated_at,
        }

    @staticmethod
    def to_json(complaint: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(complaint)
        result['createdAt'] = _iso(result.get('createdAt'))
        result['updatedAt'] = _iso(result.get('updatedAt'))
        return result

    def _failure(self, error: Exception, message: str) -> Dict[str, Any]:
        result = {'success': False, 'error': message}
        if is_missing_index(error):
            result['index_url'] = extract_index_url(error)
        return result

    def validate_submission(self, data: Dict[str, Any]) -> Optional[str]:
        """Return an error message for an invalid complaint form, else None"""
        for field in REQUIRED_FIELDS:
            if not str(data.get(field, '')).strip():
                return f'{field.title()} is required'

        category = data['category'].strip().lower()
        if category not in COMPLAINT_CATEGORIES:
            return 'Invalid category'
        if not is_valid_subcategory(category, data['subcategory'].strip()):
            return 'Invalid subcategory for the selected category'
        if str(data['semester']).strip() not in SEMESTERS:
            return 'Semester must be between 1 and 8'
        return None

    def submit_complaint(self, student_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Submit a new complaint as the given student"""
        try:
            error = self.validate_submission(data)
            if error:
                return {'success': False, 'error': error}

            student_doc = self.db.collection('users').document(student_id).get()
            if not student_doc.exists:
                return {'success': False, 'error': 'Student profile not found'}
            student = student_doc.to_dict()

            complaint_data = {
                'title': data['title'].strip(),
                'category': data['category'].strip().lower(),
                'subcategory': data['subcategory'].strip(),
                'semester': str(data['semester']).strip(),
                'department': student.get('department', ''),
                'description': data['description'].strip(),
                'userId': student_id,
                'username': student.get('username', ''),
                'status': STATUS_PENDING,
                'createdAt': firestore.SERVER_TIMESTAMP,
                'updatedAt': firestore.SERVER_TIMESTAMP,
            }

            _, complaint_ref = self.db.collection('complaints').add(complaint_data)

            logger.info(f"Complaint submitted successfully. ID: {complaint_ref.id}")
            return {
                'success': True,
                'complaint_id': complaint_ref.id,
                'message': 'Your complaint has been submitted successfully.'
            }

        except Exception as e:
            logger.error(f"Error submitting complaint: {str(e)}")
            return {'success': False, 'error': 'There was a problem submitting your complaint.'}

    def get_student_complaints(self, student_id: str) -> Dict[str, Any]:
        """All complaints filed by a student, newest first"""
        try:
            docs = self.db.collection('complaints')\
                .where(filter=FieldFilter('userId', '==', student_id))\
                .get()

            complaints = [self._serialize(doc) for doc in docs]
            complaints.sort(key=lambda c: c['createdAt'], reverse=True)

            awaiting = [c for c in complaints if c['status'] == STATUS_AWAITING_CONFIRMATION]

            logger.info(f"Retrieved {len(complaints)} complaints for student {student_id}")
            return {'success': True, 'complaints': complaints, 'awaiting_confirmation': awaiting}

        except Exception as e:
            logger.error(f"Error getting student complaints: {str(e)}")
            return self._failure(e, 'Failed to load complaints. Please try again.')

    def get_previous_complaints(self, student_id: str) -> Dict[str, Any]:
        """Closed complaints (resolved or rejected) for a student"""
        try:
            docs = self.db.collection('complaints')\
                .where(filter=FieldFilter('userId', '==', student_id))\
                .where(filter=FieldFilter('status', 'in', [STATUS_RESOLVED, STATUS_REJECTED]))\
                .get()

            complaints = [self._serialize(doc) for doc in docs]
            complaints.sort(key=lambda c: c['updatedAt'], reverse=True)
            return {'success': True, 'complaints': complaints}

        except Exception as e:
            logger.error(f"Error getting previous complaints: {str(e)}")
            return self._failure(e, 'Failed to load previous complaints.')

    def confirm_resolution(self, complaint_id: str, student_id: str, confirmed: bool) -> Dict[str, Any]:
        """Student accepts the resolution or sends the complaint back to active"""
        try:
            complaint_ref = self.db.collection('complaints').document(complaint_id)
            complaint_doc = complaint_ref.get()

            if not complaint_doc.exists:
                return {'success': False, 'error': 'Complaint not found', 'code': 404}

            complaint_data = complaint_doc.to_dict()
            if complaint_data.get('userId') != student_id:
                return {'success': False, 'error': 'Access denied - not your complaint', 'code': 403}

            new_status = STATUS_RESOLVED if confirmed else STATUS_ACTIVE
            if complaint_data.get('status') != STATUS_AWAITING_CONFIRMATION:
                return {'success': False, 'error': 'Complaint is not awaiting confirmation', 'code': 409}

            complaint_ref.update({
                'studentConfirmed': True,
                'status': new_status,
                'studentResolutionResponse': 'confirmed' if confirmed else 'rejected',
                'updatedAt': firestore.SERVER_TIMESTAMP
            })

            logger.info(f"Student {student_id} {'confirmed' if confirmed else 'rejected'} resolution of {complaint_id}")
            if confirmed:
                message = 'Thank you for confirming that your issue has been resolved.'
            else:
                message = 'The complaint has been sent back to the faculty for further action.'
            return {'success': True, 'status': new_status, 'message': message}

        except Exception as e:
            logger.error(f"Error confirming resolution: {str(e)}")
            return {'success': False, 'error': 'Failed to update complaint status. Please try again.'}

    def get_faculty_complaints(self, faculty_id: str) -> Dict[str, Any]:
        """Complaints assigned to a faculty member, grouped by workflow stage"""
        try:
            docs = self.db.collection('complaints')\
                .where(filter=FieldFilter('assignedTo', '==', faculty_id))\
                .get()

            groups = {
                'received': [],
                'active': [],
                'awaiting_confirmation': [],
                'resolved': [],
            }
            stage_for_status = {
                STATUS_UNDER_REVIEW: 'received',
                STATUS_ACTIVE: 'active',
                STATUS_AWAITING_CONFIRMATION: 'awaiting_confirmation',
                STATUS_RESOLVED: 'resolved',
            }

            for doc in docs:
                complaint = self._serialize(doc)
                stage = stage_for_status.get(complaint['status'])
                if stage:
                    groups[stage].append(complaint)

            for complaints in groups.values():
                complaints.sort(key=lambda c: c['updatedAt'], reverse=True)

            logger.info(f"Retrieved complaints for faculty {faculty_id}")
            return {'success': True, 'groups': groups}

        except Exception as e:
            logger.error(f"Error getting faculty complaints: {str(e)}")
            return self._failure(e, 'Failed to load complaints.')

    def delete_complaint_chats(self, complaint_id: str) -> int:
        """Delete every chat message of a complaint, returns the count"""
        try:
            chat_docs = self.db.collection('chats')\
                .where(filter=FieldFilter('complaintId', '==', complaint_id))\
                .get()

            deleted = 0
            for doc in chat_docs:
                doc.reference.delete()
                deleted += 1

            logger.info(f"Deleted {deleted} chat messages for complaint {complaint_id}")
            return deleted

        except Exception as e:
            logger.error(f"Error deleting chat messages: {str(e)}")
            return 0

    def update_complaint_status(self, complaint_id: str, faculty_id: str, new_status: str) -> Dict[str, Any]:
        """Advance an assigned complaint one step (faculty)"""
        try:
            complaint_ref = self.db.collection('complaints').document(complaint_id)
            complaint_doc = complaint_ref.get()

            if not complaint_doc.exists:
                return {'success': False, 'error': 'Complaint not found', 'code': 404}

            complaint_data = complaint_doc.to_dict()
            if complaint_data.get('assignedTo') != faculty_id:
                return {'success': False, 'error': 'Access denied - not your complaint', 'code': 403}

            current_status = complaint_data.get('status')
            if FACULTY_TRANSITIONS.get(current_status) != new_status:
                return {
                    'success': False,
                    'error': f'Cannot change status from {current_status} to {new_status}',
                    'code': 409
                }

            complaint_ref.update({
                'status': new_status,
                'updatedAt': firestore.SERVER_TIMESTAMP
            })

            deleted_messages = 0
            if new_status in CHAT_CLEANUP_STATUSES:
                deleted_messages = self.delete_complaint_chats(complaint_id)

            logger.info(f"Complaint {complaint_id} moved from {current_status} to {new_status}")
            return {
                'success': True,
                'status': new_status,
                'deleted_messages': deleted_messages,
                'message': f'Complaint status has been updated to {new_status}.'
            }

        except Exception as e:
            logger.error(f"Error updating complaint status: {str(e)}")
            return {'success': False, 'error': 'There was a problem updating the complaint status. Please try again.'}

    def get_open_complaints(self) -> Dict[str, Any]:
        """Every complaint not yet resolved, newest first (admin)"""
        try:
            docs = self.db.collection('complaints')\
                .where(filter=FieldFilter('status', 'not-in', [STATUS_RESOLVED]))\
                .get()

            complaints = [self._serialize(doc) for doc in docs]
            complaints.sort(key=lambda c: c['createdAt'], reverse=True)
            return {'success': True, 'complaints': complaints}

        except Exception as e:
            logger.error(f"Error fetching complaints: {str(e)}")
            return self._failure(e, 'Failed to load complaints.')

    def get_resolved_complaints(self, search: str = '') -> Dict[str, Any]:
        """Resolved complaints, optionally filtered by a free-text search (admin)"""
        try:
            docs = self.db.collection('complaints')\
                .where(filter=FieldFilter('status', '==', STATUS_RESOLVED))\
                .get()

            complaints = [self._serialize(doc) for doc in docs]
            complaints.sort(key=lambda c: c['updatedAt'], reverse=True)

            query = search.strip().lower()
            if query:
                searchable = ['category', 'subcategory', 'title', 'description', 'username']
                complaints = [
                    c for c in complaints
                    if any(query in str(c.get(field, '')).lower() for field in searchable)
                ]

            return {'success': True, 'complaints': complaints}

        except Exception as e:
            logger.error(f"Error fetching resolved complaints: {str(e)}")
            return self._failure(e, 'Failed to load resolved complaints.')

    def forward_complaint(self, complaint_id: str, faculty_id: str) -> Dict[str, Any]:
        """Route a pending complaint to a faculty member (admin)"""
        try:
            if not faculty_id:
                return {'success': False, 'error': 'Please select a faculty member to forward this complaint to.'}

            faculty_doc = self.db.collection('users').document(faculty_id).get()
            if not faculty_doc.exists or faculty_doc.to_dict().get('role') != 'faculty':
                return {'success': False, 'error': 'Invalid faculty member'}

            complaint_ref = self.db.collection('complaints').document(complaint_id)
            complaint_doc = complaint_ref.get()
            if not complaint_doc.exists:
                return {'success': False, 'error': 'Complaint not found', 'code': 404}

            current_status = complaint_doc.to_dict().get('status')
            if not can_transition(current_status, STATUS_UNDER_REVIEW):
                return {'success': False, 'error': 'Only pending complaints can be forwarded', 'code': 409}

            complaint_ref.update({
                'status': STATUS_UNDER_REVIEW,
                'assignedTo': faculty_id,
                'updatedAt': firestore.SERVER_TIMESTAMP
            })

            logger.info(f"Complaint {complaint_id} forwarded to faculty {faculty_id}")
            return {
                'success': True,
                'status': STATUS_UNDER_REVIEW,
                'message': 'The complaint has been forwarded to the selected faculty member.'
            }

        except Exception as e:
            logger.error(f"Error forwarding complaint: {str(e)}")
            return {'success': False, 'error': 'There was a problem forwarding the complaint.'}

    def get_complaint(self, complaint_id: str) -> Optional[Dict[str, Any]]:
        doc = self.db.collection('complaints').document(complaint_id).get()
        if not doc.exists:
            return None
        return self._serialize(doc)

    def get_admin_statistics(self) -> Dict[str, int]:
        """Complaint counts per status"""
        try:
            docs = self.db.collection('complaints').get()
            stats = {status: 0 for status in list(ALLOWED_TRANSITIONS) + [STATUS_RESOLVED, STATUS_REJECTED]}
            for doc in docs:
                status = (doc.to_dict() or {}).get('status', STATUS_PENDING)
                stats[status] = stats.get(status, 0) + 1
            stats['total'] = len(docs)
            return stats

        except Exception as e:
            logger.error(f"Error getting complaint statistics: {str(e)}")
            return {'total': 0}


# Global instance
_complaint_manager = None

def get_complaint_manager():
    """Get the global complaint manager instance"""
    global _complaint_manager
    if _complaint_manager is None:
        _complaint_manager = ComplaintManager()
    return _complaint_manager
