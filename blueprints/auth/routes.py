"""
blueprints/auth/routes.py - Authentication Blueprint
JSON login/logout for all roles. Accounts log in with their account number.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from services.login_guard import authenticate

# Create blueprint
auth_bp = Blueprint('auth', __name__)


@auth_bp.route('/login', methods=['POST'])
def login():
    """
    Log in with account number and password
    Repeated failures lock the account for a while (429)
    """
    data = request.get_json(silent=True) or {}
    account_number = (data.get('account_number') or '').strip()
    password = data.get('password') or ''

    result = authenticate(account_number, password)
    if not result.success:
        return jsonify(result.to_dict()), result.status_code

    user = result.data
    login_user(user, remember=bool(data.get('remember')))
    current_app.logger.info(f"User {user.account_number} logged in")

    return jsonify({
        'success': True,
        'message': f'Welcome back, {user.first_name or user.account_number}!',
        'data': {'user': user.to_dict()},
    })


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    account_number = current_user.account_number
    logout_user()
    current_app.logger.info(f"User {account_number} logged out")
    return jsonify({'success': True, 'message': 'You have been logged out.'})


@auth_bp.route('/me')
@login_required
def me():
    """Identity of the logged-in user"""
    return jsonify({'success': True, 'data': {'user': current_user.to_dict()}})
