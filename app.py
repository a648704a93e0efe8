"""
app.py - Application Factory
Entry point for the Registrar Flask application (grade ledger, document
requests, student notifications).
Uses the Application Factory pattern for modularity and testing.
"""

import logging

import click
from flask import Flask, jsonify

from config import config
from extensions import bcrypt, db, login_manager, migrate, push


def create_app(config_name='development'):
    """
    Application Factory Function

    Args:
        config_name (str): Configuration to use ('development', 'production', 'testing')

    Returns:
        Flask: Configured Flask application instance
    """
    # Initialize Flask app
    app = Flask(__name__)

    # Load configuration from config.py based on environment
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    configure_logging(app)

    # Initialize extensions with the app
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    bcrypt.init_app(app)

    from services.push import WebPushTransport
    push.init_app(app, WebPushTransport(app))

    # User loader callback for Flask-Login
    @login_manager.user_loader
    def load_user(user_id):
        """Load user by ID for Flask-Login session management"""
        from models import User
        return db.session.get(User, int(user_id))

    # API clients get JSON instead of a login redirect
    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({
            'success': False,
            'error': 'UNAUTHENTICATED',
            'message': 'Please log in to access this page.',
        }), 401

    # Register blueprints (routes)
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    register_commands(app)

    # Import models so Flask-Migrate can detect them
    with app.app_context():
        import models  # noqa: F401

    return app


def configure_logging(app):
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    app.logger.setLevel(level)


def register_blueprints(app):
    """
    Register all application blueprints (modular route handlers)
    """
    # Import blueprints
    from blueprints.admin.routes import admin_bp
    from blueprints.auth.routes import auth_bp
    from blueprints.student.routes import student_bp
    from blueprints.teacher.routes import teacher_bp

    # Register with URL prefixes
    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(student_bp, url_prefix='/student')
    app.register_blueprint(teacher_bp, url_prefix='/teacher')
    app.register_blueprint(admin_bp, url_prefix='/admin')

    @app.route('/health')
    def health():
        return jsonify({'success': True, 'status': 'ok'})


def register_commands(app):
    """
    CLI commands (run with `flask --app app <command>`)
    """
    @app.cli.command('create-admin')
    @click.option('--account-number', default='admin', show_default=True)
    @click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option('--email', default=None)
    def create_admin(account_number, password, email):
        """Create an admin account"""
        from models import User

        if User.query.filter_by(account_number=account_number).first():
            click.echo(f"Account {account_number} already exists")
            return

        admin = User(
            account_number=account_number,
            email=email,
            password=bcrypt.generate_password_hash(password).decode('utf-8'),
            role='admin',
            first_name='Registrar',
            last_name='Admin',
        )
        db.session.add(admin)
        db.session.commit()
        click.echo(f"Admin account {account_number} created. Change this password after first login!")


def _error_body(error, message):
    return {'success': False, 'error': error, 'message': message}


def register_error_handlers(app):
    """
    Register JSON error handlers for common HTTP errors
    """
    @app.errorhandler(400)
    def bad_request(error):
        return jsonify(_error_body('VALIDATION_ERROR', 'Bad request')), 400

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify(_error_body('UNAUTHENTICATED', 'Login required')), 401

    @app.errorhandler(403)
    def forbidden(error):
        return jsonify(_error_body('FORBIDDEN', 'Permission denied')), 403

    @app.errorhandler(404)
    def not_found(error):
        return jsonify(_error_body('NOT_FOUND', 'Resource not found')), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify(_error_body('VALIDATION_ERROR', 'Method not allowed')), 405

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()  # Rollback any failed database transactions
        app.logger.error(f"Unhandled error: {error}")
        return jsonify(_error_body('INTERNAL_ERROR', 'Internal server error')), 500


# Run the application
if __name__ == '__main__':
    app = create_app('development')

    with app.app_context():
        db.create_all()

    app.run(
        host='0.0.0.0',  # Allow external connections
        port=5000,
        debug=True  # Always debug mode during development
    )
