"""
Chat rooms and per-complaint chat access
Rooms carry participants, last-message summaries, unread counters and
attachments stored in Cloud Storage
"""

import time
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List
from firebase_admin import firestore
from google.cloud.firestore import FieldFilter
from werkzeug.utils import secure_filename
from .firebase_config import get_firestore_client, get_storage_bucket
from .complaint_manager import STATUS_PENDING, STATUS_UNDER_REVIEW, STATUS_ACTIVE

logger = logging.getLogger(__name__)

CHAT_OPEN_STATUSES = {STATUS_PENDING, STATUS_UNDER_REVIEW, STATUS_ACTIVE}


def can_join_complaint_chat(complaint: Dict[str, Any], user_id: str, role: str) -> bool:
    """Admins see every open thread; students their own; faculty what they were assigned"""
    if complaint.get('status') not in CHAT_OPEN_STATUSES:
        return False
    if role == 'admin':
        return True
    if role == 'student':
        return complaint.get('userId') == user_id
    if role == 'faculty':
        return complaint.get('assignedTo') == user_id
    return False


class ChatRoomManager:
    """Manages chat room documents and attachment uploads"""

    def __init__(self):
        self.db = get_firestore_client()

    def get_sender_profile(self, user_id: str) -> Dict[str, Any]:
        user_doc = self.db.collection('users').document(user_id).get()
        user_data = user_doc.to_dict() if user_doc.exists else {}
        return {
            'username': user_data.get('username') or 'Unknown User',
            'role': user_data.get('role') or 'unknown',
        }

    def _serialize_room(self, doc) -> Dict[str, Any]:
        data = doc.to_dict() or {}
        last_message = data.get('lastMessage')
        if last_message and isinstance(last_message.get('timestamp'), datetime):
            last_message = dict(last_message)
            last_message['timestamp'] = last_message['timestamp'].isoformat()
        created_at = data.get('createdAt')
        return {
            'id': doc.id,
            'complaintId': data.get('complaintId', ''),
            'complaintTitle': data.get('complaintTitle') or 'Untitled Complaint',
            'participants': list(data.get('participants') or []),
            'createdAt': created_at.isoformat() if isinstance(created_at, datetime) else created_at,
            'lastMessage': last_message,
            'unreadCount': dict(data.get('unreadCount') or {}),
        }

    def create_room(self, complaint: Dict[str, Any], creator_id: str) -> Dict[str, Any]:
        """Open (or reuse) the room for a complaint"""
        try:
            existing = self.db.collection('chatRooms')\
                .where(filter=FieldFilter('complaintId', '==', complaint['id']))\
                .limit(1)\
                .get()
            if existing:
                return {'success': True, 'room': self._serialize_room(existing[0]), 'created': False}

            participants = []
            for uid in (complaint.get('userId'), complaint.get('assignedTo'), creator_id):
                if uid and uid not in participants:
                    participants.append(uid)

            room_data = {
                'complaintId': complaint['id'],
                'complaintTitle': complaint.get('title', ''),
                'participants': participants,
                'createdAt': firestore.SERVER_TIMESTAMP,
                'unreadCount': {uid: 0 for uid in participants},
            }
            _, room_ref = self.db.collection('chatRooms').add(room_data)

            logger.info(f"Chat room {room_ref.id} created for complaint {complaint['id']}")
            return {'success': True, 'room': self._serialize_room(room_ref.get()), 'created': True}

        except Exception as e:
            logger.error(f"Error creating chat room: {str(e)}")
            return {'success': False, 'error': 'Failed to create chat room'}

    def get_room(self, room_id: str, user_id: str) -> Dict[str, Any]:
        """Load a room the user participates in"""
        room_doc = self.db.collection('chatRooms').document(room_id).get()
        if not room_doc.exists:
            return {'success': False, 'error': 'Chat room not found', 'code': 404}

        room = self._serialize_room(room_doc)
        if user_id not in room['participants']:
            return {'success': False, 'error': "You don't have access to this chat room", 'code': 403}
        return {'success': True, 'room': room}

    def list_rooms(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            docs = self.db.collection('chatRooms')\
                .where(filter=FieldFilter('participants', 'array_contains', user_id))\
                .get()
            rooms = [self._serialize_room(doc) for doc in docs]
            rooms.sort(key=lambda r: (r['lastMessage'] or {}).get('timestamp') or '', reverse=True)
            return rooms
        except Exception as e:
            logger.error(f"Error listing chat rooms: {str(e)}")
            return []

    def get_participants(self, room: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
        participants = {}
        for uid in room['participants']:
            user_doc = self.db.collection('users').document(uid).get()
            if user_doc.exists:
                user_data = user_doc.to_dict()
                participants[uid] = {
                    'name': user_data.get('username') or 'Unknown User',
                    'role': user_data.get('role') or 'unknown',
                }
        return participants

    def mark_room_read(self, room: Dict[str, Any], user_id: str):
        """Reset the viewer's unread counter when the room is opened"""
        if room['unreadCount'].get(user_id):
            self.db.collection('chatRooms').document(room['id']).update({
                f'unreadCount.{user_id}': 0
            })

    def upload_attachments(self, room_id: str, files) -> List[Dict[str, Any]]:
        """Store uploaded files under chat-attachments/<room>/ and describe them"""
        bucket = get_storage_bucket()
        attachments = []
        for file in files:
            if not file or not file.filename:
                continue
            filename = secure_filename(file.filename) or 'attachment'
            path = f"chat-attachments/{room_id}/{int(time.time() * 1000)}-{filename}"
            content = file.read()
            content_type = file.mimetype or 'application/octet-stream'

            blob = bucket.blob(path)
            blob.upload_from_string(content, content_type=content_type)
            blob.make_public()

            attachments.append({
                'name': file.filename,
                'url': blob.public_url,
                'type': content_type,
                'size': len(content),
            })
            logger.info(f"Uploaded attachment {path} ({len(content)} bytes)")
        return attachments

    def send_room_message(self, feed, room: Dict[str, Any], sender_id: str,
                          text: str, files=None) -> Dict[str, Any]:
        """Post to a room, then update its summary and unread counters"""
        files = [f for f in (files or []) if f and f.filename]
        text = (text or '').strip()
        if not text and not files:
            return {'success': False, 'error': 'Message text or an attachment is required'}

        try:
            sender = self.get_sender_profile(sender_id)
            attachments = self.upload_attachments(room['id'], files) if files else []
            message_id = feed.send(sender, text, attachments=attachments)

            summary = text or f"Shared {len(attachments)} file(s)"
            room_update = {
                'lastMessage': {
                    'content': summary,
                    'timestamp': datetime.now(timezone.utc),
                    'senderId': sender_id,
                },
            }
            for uid in room['participants']:
                if uid != sender_id:
                    room_update[f'unreadCount.{uid}'] = firestore.Increment(1)
            self.db.collection('chatRooms').document(room['id']).update(room_update)

            return {'success': True, 'message_id': message_id}

        except Exception as e:
            logger.error(f"Error sending message: {str(e)}")
            return {'success': False, 'error': 'Failed to send message'}


# Global instance
_room_manager = None

def get_room_manager():
    """Get the global chat room manager instance"""
    global _room_manager
    if _room_manager is None:
        _room_manager = ChatRoomManager()
    return _room_manager
