"""
Chat routes for complaint threads and chat rooms
Every response carries the feed mode so the page can show the index banner
"""

from flask import Blueprint, request, jsonify, render_template, session, redirect, url_for, flash
from auth_routes import role_required
from utils.chat_feed import COMPLAINT_CHATS, ROOM_MESSAGES, get_feed_registry
from utils.chat_rooms import can_join_complaint_chat, get_room_manager
from utils.complaint_manager import get_complaint_manager
from utils.index_errors import is_missing_index, extract_index_url
import logging

chat_bp = Blueprint('chat', __name__)

logger = logging.getLogger(__name__)

ALL_ROLES = ('student', 'faculty', 'admin')


def _feed_payload(feed):
    payload = {'success': True, 'messages': [m.to_dict() for m in feed.messages()]}
    payload.update(feed.status())
    return payload


def _feed_error(error, message):
    response = {'success': False, 'error': message}
    if is_missing_index(error):
        response['index_url'] = extract_index_url(error)
    return jsonify(response), 500


def _load_complaint_thread(complaint_id):
    """Return (complaint, None) or (None, error response)"""
    complaint = get_complaint_manager().get_complaint(complaint_id)
    if complaint is None:
        return None, (jsonify({'success': False, 'error': 'Complaint not found'}), 404)
    if not can_join_complaint_chat(complaint, session['user_id'], session['user_type']):
        return None, (jsonify({'success': False, 'error': 'Chat is not available for this complaint'}), 403)
    return complaint, None


def _load_room(room_id):
    result = get_room_manager().get_room(room_id, session['user_id'])
    if not result['success']:
        return None, (jsonify({'success': False, 'error': result['error']}), result['code'])
    return result['room'], None


# Complaint threads

@chat_bp.route('/api/chat/complaints/<complaint_id>')
@role_required(*ALL_ROLES, api=True)
def open_complaint_chat(complaint_id):
    """Open the complaint thread for the current user and return its messages"""
    complaint, error = _load_complaint_thread(complaint_id)
    if error:
        return error

    try:
        feed = get_feed_registry().open_feed(COMPLAINT_CHATS, complaint_id, session['user_id'])
        payload = _feed_payload(feed)
        payload['complaint'] = get_complaint_manager().to_json(complaint)
        return jsonify(payload)
    except Exception as e:
        logger.error(f"Error opening chat for complaint {complaint_id}: {str(e)}")
        return _feed_error(e, 'Failed to load messages. Please try again.')


@chat_bp.route('/api/chat/complaints/<complaint_id>/messages', methods=['POST'])
@role_required(*ALL_ROLES, api=True)
def send_complaint_message(complaint_id):
    """Post a message to a complaint thread"""
    complaint, error = _load_complaint_thread(complaint_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    text = (data.get('text') or '').strip()
    if not text:
        return jsonify({'success': False, 'error': 'Message text is required'}), 400

    try:
        feed = get_feed_registry().open_feed(COMPLAINT_CHATS, complaint_id, session['user_id'])
        sender = {'username': session.get('username'), 'role': session.get('user_type')}
        message_id = feed.send(sender, text)

        payload = _feed_payload(feed)
        payload['message_id'] = message_id
        return jsonify(payload)
    except Exception as e:
        logger.error(f"Error sending message: {str(e)}")
        return _feed_error(e, 'Failed to send message. Please try again.')


@chat_bp.route('/api/chat/complaints/<complaint_id>/refresh', methods=['POST'])
@role_required(*ALL_ROLES, api=True)
def refresh_complaint_chat(complaint_id):
    """Manual refresh, used while real-time updates are unavailable"""
    complaint, error = _load_complaint_thread(complaint_id)
    if error:
        return error

    try:
        feed = get_feed_registry().open_feed(COMPLAINT_CHATS, complaint_id, session['user_id'])
        feed.refresh()
        return jsonify(_feed_payload(feed))
    except Exception as e:
        logger.error(f"Error refreshing messages: {str(e)}")
        return _feed_error(e, 'Failed to refresh messages.')


@chat_bp.route('/api/chat/complaints/<complaint_id>', methods=['DELETE'])
@role_required(*ALL_ROLES, api=True)
def close_complaint_chat(complaint_id):
    """Release the subscription or index watcher for this viewer"""
    closed = get_feed_registry().close_feed(COMPLAINT_CHATS, complaint_id, session['user_id'])
    return jsonify({'success': True, 'closed': closed})


# Chat rooms

@chat_bp.route('/api/chat/rooms')
@role_required(*ALL_ROLES, api=True)
def list_chat_rooms():
    """Rooms the current user participates in"""
    try:
        rooms = get_room_manager().list_rooms(session['user_id'])
        return jsonify({'success': True, 'rooms': rooms})
    except Exception as e:
        logger.error(f"Error listing chat rooms: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to load chat rooms'}), 500


@chat_bp.route('/api/chat/rooms', methods=['POST'])
@role_required(*ALL_ROLES, api=True)
def create_chat_room():
    """Create (or reuse) the room attached to a complaint"""
    data = request.get_json(silent=True) or {}
    complaint_id = data.get('complaint_id')
    if not complaint_id:
        return jsonify({'success': False, 'error': 'Complaint ID is required'}), 400

    complaint, error = _load_complaint_thread(complaint_id)
    if error:
        return error

    result = get_room_manager().create_room(complaint, session['user_id'])
    if not result['success']:
        return jsonify(result), 500

    result['redirect_url'] = url_for('chat.chat_room_page', room_id=result['room']['id'])
    return jsonify(result), 201 if result['created'] else 200


@chat_bp.route('/api/chat/rooms/<room_id>')
@role_required(*ALL_ROLES, api=True)
def open_chat_room(room_id):
    """Open a room, reset the viewer's unread count and return its messages"""
    room, error = _load_room(room_id)
    if error:
        return error

    try:
        room_manager = get_room_manager()
        feed = get_feed_registry().open_feed(ROOM_MESSAGES, room_id, session['user_id'])
        room_manager.mark_room_read(room, session['user_id'])

        payload = _feed_payload(feed)
        payload['room'] = room
        payload['participants'] = room_manager.get_participants(room)
        return jsonify(payload)
    except Exception as e:
        logger.error(f"Error opening chat room {room_id}: {str(e)}")
        return _feed_error(e, 'Failed to load messages. Please try again.')


@chat_bp.route('/api/chat/rooms/<room_id>/messages', methods=['POST'])
@role_required(*ALL_ROLES, api=True)
def send_room_message(room_id):
    """Post a message with optional attachments to a room"""
    room, error = _load_room(room_id)
    if error:
        return error

    if request.is_json:
        text = (request.get_json(silent=True) or {}).get('text', '')
        files = []
    else:
        text = request.form.get('text', '')
        files = request.files.getlist('attachments')

    try:
        feed = get_feed_registry().open_feed(ROOM_MESSAGES, room_id, session['user_id'])
    except Exception as e:
        logger.error(f"Error opening chat room {room_id}: {str(e)}")
        return _feed_error(e, 'Failed to send message. Please try again.')

    result = get_room_manager().send_room_message(feed, room, session['user_id'], text, files)
    if not result['success']:
        status_code = 400 if 'required' in result['error'] else 500
        return jsonify(result), status_code

    payload = _feed_payload(feed)
    payload['message_id'] = result['message_id']
    return jsonify(payload)


@chat_bp.route('/api/chat/rooms/<room_id>/refresh', methods=['POST'])
@role_required(*ALL_ROLES, api=True)
def refresh_chat_room(room_id):
    room, error = _load_room(room_id)
    if error:
        return error

    try:
        feed = get_feed_registry().open_feed(ROOM_MESSAGES, room_id, session['user_id'])
        feed.refresh()
        return jsonify(_feed_payload(feed))
    except Exception as e:
        logger.error(f"Error refreshing messages: {str(e)}")
        return _feed_error(e, 'Failed to refresh messages.')


@chat_bp.route('/api/chat/rooms/<room_id>', methods=['DELETE'])
@role_required(*ALL_ROLES, api=True)
def close_chat_room(room_id):
    closed = get_feed_registry().close_feed(ROOM_MESSAGES, room_id, session['user_id'])
    return jsonify({'success': True, 'closed': closed})


@chat_bp.route('/dashboard/chat/<room_id>')
@role_required(*ALL_ROLES)
def chat_room_page(room_id):
    """Chat room page"""
    result = get_room_manager().get_room(room_id, session['user_id'])
    if not result['success']:
        flash(result['error'], 'error')
        return redirect(url_for('dashboard'))
    return render_template('chat_room.html', room=result['room'], user_data=session, with_attachments=True)
