"""
Authentication routes for the University Complaint Portal
Handles role login, first-admin setup and logout
"""

from functools import wraps
from flask import Blueprint, request, jsonify, render_template, session, redirect, url_for, flash
from utils.portal_auth import ROLES, get_auth_system
import logging

# Create blueprint
auth_bp = Blueprint('auth', __name__)

logger = logging.getLogger(__name__)


def get_dashboard_url(user_type: str) -> str:
    """Get dashboard URL based on user type"""
    if user_type == 'student':
        return url_for('student_dashboard')
    elif user_type == 'faculty':
        return url_for('faculty_dashboard')
    elif user_type == 'admin':
        return url_for('admin_dashboard')
    else:
        return url_for('index')


def role_required(*roles, api=False):
    """Gate a view on the session role; APIs get JSON errors, pages a redirect"""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if 'user_id' not in session:
                if api:
                    return jsonify({'success': False, 'error': 'Unauthorized'}), 401
                flash('Please log in to continue.', 'error')
                return redirect(url_for('auth.login_page', role=roles[0]))

            if session.get('user_type') not in roles:
                if api:
                    return jsonify({'success': False, 'error': "You don't have permission to access this area."}), 403
                flash("You don't have permission to access this area.", 'error')
                return redirect(url_for('auth.login_page', role=roles[0]))

            return view(*args, **kwargs)
        return wrapper
    return decorator


@auth_bp.route('/login/<role>')
def login_page(role):
    """Login page for one role"""
    if role not in ROLES:
        flash('Invalid role selected.', 'error')
        return redirect(url_for('index'))

    if session.get('user_type') == role:
        return redirect(get_dashboard_url(role))
    return render_template('auth/login.html', role=role)


@auth_bp.route('/setup')
def setup_page():
    """Initial administrator setup page"""
    try:
        if get_auth_system().admin_exists():
            flash('An administrator account already exists.', 'info')
            return redirect(url_for('auth.login_page', role='admin'))
    except Exception as e:
        logger.error(f"Error checking for admin account: {str(e)}")
        flash('Unable to reach the user database.', 'error')
    return render_template('auth/setup.html')


@auth_bp.route('/api/login', methods=['POST'])
def login_user():
    """Handle user login"""
    try:
        data = request.get_json(silent=True) or {}

        username = (data.get('username') or '').strip()
        password = data.get('password') or ''
        role = data.get('role') or ''

        logger.info(f"Login attempt for {username} as {role}")

        result = get_auth_system().authenticate(username, password, role)
        if not result['success']:
            return jsonify({'success': False, 'error': result['error']}), result.get('code', 401)

        user = result['user']
        session.clear()
        session['user_id'] = result['user_id']
        session['user_type'] = user['role']
        session['username'] = user['username']
        session['jwt_token'] = result['token']

        return jsonify({
            'success': True,
            'message': 'Login successful',
            'user': {
                'user_id': result['user_id'],
                'username': user['username'],
                'user_type': user['role'],
                'department': user.get('department', '')
            },
            'redirect_url': get_dashboard_url(user['role'])
        })

    except Exception as e:
        logger.error(f"Login error: {str(e)}")
        return jsonify({'success': False, 'error': 'Login failed. Please try again.'}), 500


@auth_bp.route('/api/setup', methods=['POST'])
def setup_admin():
    """Create the first administrator account"""
    try:
        data = request.get_json(silent=True) or {}

        result = get_auth_system().create_initial_admin(
            data.get('username') or '',
            data.get('password') or '',
            data.get('confirm_password') or ''
        )
        if not result['success']:
            return jsonify({'success': False, 'error': result['error']}), result.get('code', 400)

        return jsonify({
            'success': True,
            'message': result['message'],
            'redirect_url': url_for('auth.login_page', role='admin')
        })

    except Exception as e:
        logger.error(f"Admin setup error: {str(e)}")
        return jsonify({'success': False, 'error': 'Setup failed. Please try again.'}), 500


@auth_bp.route('/api/logout', methods=['POST'])
def logout_user():
    """Handle user logout"""
    try:
        session.clear()
        return jsonify({'success': True, 'message': 'Logged out successfully'})
    except Exception as e:
        logger.error(f"Logout error: {str(e)}")
        return jsonify({'success': False, 'error': 'Logout failed'}), 500


@auth_bp.route('/logout')
def logout():
    """Logout and return to the landing page"""
    session.clear()
    flash('You have been logged out.', 'info')
    return redirect(url_for('index'))
