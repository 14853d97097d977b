from flask import Flask, render_template, request, jsonify, redirect, url_for, session, flash
import os
import logging
from dotenv import load_dotenv

# Load environment variables FIRST
load_dotenv()

# Configure logging first
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Firebase FIRST before importing other modules
from utils.firebase_config import initialize_firebase
firebase_app = initialize_firebase()

# Now import other modules that depend on Firebase
from utils.catalog import get_catalog
from utils.complaint_manager import get_complaint_manager, CHAT_CLEANUP_STATUSES
from utils.portal_auth import get_auth_system
from utils.chat_feed import COMPLAINT_CHATS, get_feed_registry
from auth_routes import auth_bp, role_required
from chat_routes import chat_bp

# Initialize Flask app
app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'your-secret-key-here')
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max file size

# Register blueprints
app.register_blueprint(auth_bp)
app.register_blueprint(chat_bp)


def _error_response(result, default_code=400):
    """JSON error from a manager result dict"""
    body = {'success': False, 'error': result.get('error', 'Request failed')}
    if result.get('index_url'):
        body['index_url'] = result['index_url']
    return jsonify(body), result.get('code', default_code)


def _complaints_json(complaints):
    complaint_manager = get_complaint_manager()
    return [complaint_manager.to_json(c) for c in complaints]


@app.route('/')
def index():
    """Landing page with the three role entry points"""
    if 'user_id' in session:
        return redirect(url_for('dashboard'))

    needs_setup = False
    try:
        needs_setup = not get_auth_system().admin_exists()
    except Exception as e:
        logger.error(f"Error checking for admin account: {str(e)}")
    return render_template('index.html', needs_setup=needs_setup)


@app.route('/dashboard')
def dashboard():
    """Send the user to the dashboard of their role"""
    user_type = session.get('user_type')
    if user_type == 'student':
        return redirect(url_for('student_dashboard'))
    elif user_type == 'faculty':
        return redirect(url_for('faculty_dashboard'))
    elif user_type == 'admin':
        return redirect(url_for('admin_dashboard'))
    return redirect(url_for('index'))


# Student pages

@app.route('/dashboard/student')
@role_required('student')
def student_dashboard():
    """Student dashboard"""
    result = get_complaint_manager().get_student_complaints(session['user_id'])
    if not result['success']:
        flash(result['error'], 'error')
    return render_template(
        'student/dashboard.html',
        user_data=session,
        complaints=result.get('complaints', []),
        awaiting_confirmation=result.get('awaiting_confirmation', []),
        index_url=result.get('index_url')
    )


@app.route('/dashboard/student/make-complaint')
@role_required('student')
def make_complaint():
    """Complaint submission form"""
    return render_template('student/make_complaint.html', user_data=session, catalog=get_catalog())


@app.route('/dashboard/student/previous-complaints')
@role_required('student')
def previous_complaints():
    """Resolved and rejected complaints"""
    result = get_complaint_manager().get_previous_complaints(session['user_id'])
    if not result['success']:
        flash(result['error'], 'error')
    return render_template(
        'student/previous_complaints.html',
        user_data=session,
        complaints=result.get('complaints', []),
        index_url=result.get('index_url')
    )


# Faculty and admin pages

@app.route('/dashboard/faculty')
@role_required('faculty')
def faculty_dashboard():
    """Faculty dashboard"""
    result = get_complaint_manager().get_faculty_complaints(session['user_id'])
    if not result['success']:
        flash(result['error'], 'error')
    groups = result.get('groups', {'received': [], 'active': [], 'awaiting_confirmation': [], 'resolved': []})
    return render_template(
        'faculty/dashboard.html',
        user_data=session,
        groups=groups,
        index_url=result.get('index_url')
    )


@app.route('/dashboard/admin')
@role_required('admin')
def admin_dashboard():
    """Admin dashboard"""
    complaint_manager = get_complaint_manager()
    result = complaint_manager.get_open_complaints()
    if not result['success']:
        flash(result['error'], 'error')
    return render_template(
        'admin/dashboard.html',
        user_data=session,
        complaints=result.get('complaints', []),
        faculty=get_auth_system().get_faculty_list(),
        stats=complaint_manager.get_admin_statistics(),
        catalog=get_catalog(),
        index_url=result.get('index_url')
    )


# Complaint API

@app.route('/api/catalog')
def catalog():
    """Categories, departments and the other form choices"""
    return jsonify(get_catalog())


@app.route('/api/complaints', methods=['POST'])
@role_required('student', api=True)
def submit_complaint():
    """Submit a new complaint"""
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'success': False, 'error': 'No data provided'}), 400

        result = get_complaint_manager().submit_complaint(session['user_id'], data)
        if not result['success']:
            return _error_response(result)
        return jsonify(result), 201

    except Exception as e:
        logger.error(f"Error submitting complaint: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to submit complaint'}), 500


@app.route('/api/complaints/student')
@role_required('student', api=True)
def get_student_complaints():
    """Complaints of the logged-in student"""
    try:
        result = get_complaint_manager().get_student_complaints(session['user_id'])
        if not result['success']:
            return _error_response(result, 500)

        return jsonify({
            'success': True,
            'complaints': _complaints_json(result['complaints']),
            'awaiting_confirmation': _complaints_json(result['awaiting_confirmation'])
        })

    except Exception as e:
        logger.error(f"Error getting student complaints: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to get complaints'}), 500


@app.route('/api/complaints/student/previous')
@role_required('student', api=True)
def get_previous_complaints():
    try:
        result = get_complaint_manager().get_previous_complaints(session['user_id'])
        if not result['success']:
            return _error_response(result, 500)
        return jsonify({'success': True, 'complaints': _complaints_json(result['complaints'])})

    except Exception as e:
        logger.error(f"Error getting previous complaints: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to get complaints'}), 500


@app.route('/api/complaints/<complaint_id>/confirmation', methods=['POST'])
@role_required('student', api=True)
def confirm_resolution(complaint_id):
    """Student confirms or rejects a resolution"""
    try:
        data = request.get_json(silent=True) or {}
        if 'confirmed' not in data:
            return jsonify({'success': False, 'error': 'confirmed is required'}), 400

        result = get_complaint_manager().confirm_resolution(
            complaint_id, session['user_id'], bool(data['confirmed'])
        )
        if not result['success']:
            return _error_response(result, 500)
        return jsonify(result)

    except Exception as e:
        logger.error(f"Error confirming resolution: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to update complaint status'}), 500


@app.route('/api/complaints/faculty')
@role_required('faculty', api=True)
def get_faculty_complaints():
    """Complaints assigned to the logged-in faculty member"""
    try:
        result = get_complaint_manager().get_faculty_complaints(session['user_id'])
        if not result['success']:
            return _error_response(result, 500)

        groups = {stage: _complaints_json(items) for stage, items in result['groups'].items()}
        return jsonify({'success': True, 'groups': groups})

    except Exception as e:
        logger.error(f"Error getting faculty complaints: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to get complaints'}), 500


@app.route('/api/complaints/<complaint_id>/status', methods=['POST'])
@role_required('faculty', api=True)
def update_complaint_status(complaint_id):
    """Update complaint status by faculty"""
    try:
        data = request.get_json(silent=True) or {}
        new_status = data.get('status')
        if not new_status:
            return jsonify({'success': False, 'error': 'Status is required'}), 400

        result = get_complaint_manager().update_complaint_status(complaint_id, session['user_id'], new_status)
        if not result['success']:
            return _error_response(result, 500)

        if new_status in CHAT_CLEANUP_STATUSES:
            get_feed_registry().close_thread(COMPLAINT_CHATS, complaint_id)
        return jsonify(result)

    except Exception as e:
        logger.error(f"Error updating complaint status: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to update status'}), 500


# Admin API

@app.route('/api/admin/complaints')
@role_required('admin', api=True)
def get_admin_complaints():
    """Every complaint that is not resolved yet"""
    try:
        result = get_complaint_manager().get_open_complaints()
        if not result['success']:
            return _error_response(result, 500)
        return jsonify({'success': True, 'complaints': _complaints_json(result['complaints'])})

    except Exception as e:
        logger.error(f"Error getting complaints: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to get complaints'}), 500


@app.route('/api/admin/complaints/resolved')
@role_required('admin', api=True)
def get_resolved_complaints():
    try:
        result = get_complaint_manager().get_resolved_complaints(request.args.get('q', ''))
        if not result['success']:
            return _error_response(result, 500)
        return jsonify({'success': True, 'complaints': _complaints_json(result['complaints'])})

    except Exception as e:
        logger.error(f"Error getting resolved complaints: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to get complaints'}), 500


@app.route('/api/admin/complaints/<complaint_id>/forward', methods=['POST'])
@role_required('admin', api=True)
def forward_complaint(complaint_id):
    """Forward a pending complaint to a faculty member"""
    try:
        data = request.get_json(silent=True) or {}
        result = get_complaint_manager().forward_complaint(complaint_id, data.get('faculty_id'))
        if not result['success']:
            return _error_response(result)
        return jsonify(result)

    except Exception as e:
        logger.error(f"Error forwarding complaint: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to forward complaint'}), 500


@app.route('/api/admin/stats')
@role_required('admin', api=True)
def get_complaint_stats():
    """Complaint counts per status"""
    return jsonify({'success': True, 'stats': get_complaint_manager().get_admin_statistics()})


@app.route('/api/admin/users')
@role_required('admin', api=True)
def get_users():
    """Users by role with optional username search"""
    role = request.args.get('role') or None
    if role and role not in ('student', 'faculty', 'admin'):
        return jsonify({'success': False, 'error': 'Invalid role'}), 400

    users = get_auth_system().list_users(role=role, search=request.args.get('q', ''))
    return jsonify({'success': True, 'users': users, 'total': len(users)})


@app.route('/api/admin/faculty')
@role_required('admin', api=True)
def get_faculty_list():
    """Faculty members available for forwarding"""
    return jsonify({'success': True, 'faculty': get_auth_system().get_faculty_list()})


@app.route('/api/admin/users', methods=['POST'])
@role_required('admin', api=True)
def create_user():
    """Create a student or faculty account"""
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'success': False, 'error': 'No data provided'}), 400

        result = get_auth_system().create_user(data, created_by=session['user_id'])
        if not result['success']:
            return _error_response(result)
        return jsonify(result), 201

    except Exception as e:
        logger.error(f"Error creating user: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to create user'}), 500


@app.errorhandler(404)
def not_found(error):
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'error': 'Not found'}), 404
    return render_template('404.html'), 404

@app.errorhandler(500)
def internal_error(error):
    logger.error(f"Internal server error: {str(error)}")
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'error': 'Internal server error'}), 500
    return render_template('500.html'), 500

@app.errorhandler(413)
def too_large(error):
    return jsonify({'success': False, 'error': 'File too large. Maximum size is 16MB.'}), 413

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
