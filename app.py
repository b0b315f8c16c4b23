from flask import Flask, request, jsonify, send_from_directory
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from datetime import datetime
from logging.handlers import RotatingFileHandler
import logging
import os
import time
import click

from config import get_config
from models import db, User, Role
from extensions import jwt, bcrypt, cors, mail, limiter, socketio
from errors import AppError, NotFound
# socket 事件要在 socketio.init_app 之前註冊,每個 app 才都拿得到
import realtime  # noqa: F401

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 統一的 log format
    """
    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    # 各模組用 logging.getLogger(__name__),掛在 root logger 上才收得到
    level = getattr(logging, app.config['LOG_LEVEL'].upper(), logging.INFO)
    for target in (app.logger, logging.getLogger()):
        target.addHandler(info_handler)
        target.addHandler(error_handler)
        target.setLevel(level)

    app.logger.info('Application startup')

# ============================================
# 資料庫初始化
# ============================================

def seed_roles():
    """確保全域角色都存在"""
    from team import GLOBAL_ROLES

    existing = {name for (name,) in db.session.query(Role.name).all()}
    for name in GLOBAL_ROLES:
        if name not in existing:
            db.session.add(Role(name=name, description=f'{name.replace("_", " ").title()} role'))
    db.session.commit()

# ============================================
# JWT 錯誤處理
# ============================================

def register_jwt_handlers(app):

    def unauthorized(error, message):
        return jsonify({'success': False, 'error': error, 'message': message}), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
        return unauthorized('token_expired', 'The token has expired. Please refresh your token or login again.')

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
        return unauthorized('invalid_token', 'Token validation failed. Please provide a valid token.')

    @jwt.unauthorized_loader
    def unauthorized_callback(error):
        return unauthorized('authorization_required', 'Access token required')

    @jwt.revoked_token_loader
    def revoked_token_callback(jwt_header, jwt_payload):
        return unauthorized('token_revoked', 'The token has been revoked. Please login again.')

    @jwt.user_lookup_loader
    def user_lookup_callback(jwt_header, jwt_payload):
        """停用的帳號視同 token 無效"""
        user = db.session.get(User, jwt_payload['sub'])
        if user is None or not user.is_active:
            return None
        return user

    @jwt.user_lookup_error_loader
    def user_lookup_error_callback(jwt_header, jwt_payload):
        return unauthorized('invalid_user', 'Invalid token or user not found')

# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    def error_body(error, message, status, exc=None):
        body = {'success': False, 'error': error, 'message': message, 'status': status}
        # production 不洩漏錯誤細節
        if exc is not None and app.config['ENV'] != 'production':
            body['details'] = str(exc)
        return jsonify(body), status

    @app.errorhandler(AppError)
    def handle_app_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error(f"Application error: {error.message}", exc_info=True)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        return error_body('bad_request', 'The request is malformed or invalid', 400)

    @app.errorhandler(404)
    def not_found(error):
        return error_body('not_found', 'Route not found', 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return error_body('method_not_allowed', 'The HTTP method is not allowed for this endpoint', 405)

    @app.errorhandler(413)
    def payload_too_large(error):
        return error_body('payload_too_large', 'The request payload is too large', 413)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return error_body('rate_limit_exceeded', 'Too many requests. Please try again later.', 429)

    @app.errorhandler(500)
    def internal_server_error(error):
        db.session.rollback()
        app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
        return error_body('internal_server_error', 'Internal server error', 500, error)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """最後的防線,捕捉所有沒被處理的 exception"""
        if isinstance(error, HTTPException):
            return error_body(error.name.lower().replace(' ', '_'), error.description, error.code)

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)
        return error_body('unexpected_error', 'Internal server error', 500, error)

# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        if not app.debug and not app.testing:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug and not app.testing:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'
        return response

# ============================================
# 系統路由
# ============================================

def register_system_routes(app):
    started_at = time.time()

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """健康檢查端點 (load balancer / 監控系統用)"""
        try:
            db.session.execute(text('SELECT 1'))
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'ERROR',
                'database': 'disconnected',
                'timestamp': datetime.utcnow().isoformat()
            }), 503

        return jsonify({
            'status': 'OK',
            'database': 'connected',
            'timestamp': datetime.utcnow().isoformat(),
            'uptime': round(time.time() - started_at, 2),
            'environment': app.config['ENV'],
            'version': app.config['API_VERSION']
        }), 200

    @app.route('/uploads/<path:filename>', methods=['GET'])
    def uploaded_file(filename):
        upload_dir = os.path.abspath(app.config['UPLOAD_FOLDER'])
        if not os.path.isfile(os.path.join(upload_dir, filename)):
            raise NotFound('File')
        return send_from_directory(upload_dir, filename)

# ============================================
# CLI
# ============================================

def register_commands(app):

    @app.cli.command('grant-admin')
    @click.argument('email')
    def grant_admin(email):
        """把指定使用者設成全域 admin"""
        from access import assign_global_role

        user = User.query.filter_by(email=email).first()
        if not user:
            raise click.ClickException(f'User {email} not found')
        assign_global_role(user.id, 'admin')
        db.session.commit()
        click.echo(f'{email} is now an admin')

# ============================================
# App Factory
# ============================================

def create_app(config_class=None):
    """
    建立 Flask app

    Args:
        config_class: 設定類別,預設依 FLASK_ENV 決定
    """
    if config_class is None:
        config_class = get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # 不要用 '*',只允許設定好的來源
    cors.init_app(app,
                  supports_credentials=True,
                  origins=app.config['CORS_ORIGINS'],
                  methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
                  allow_headers=['Content-Type', 'Authorization'])

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    mail.init_app(app)
    limiter.init_app(app)
    socketio.init_app(app, cors_allowed_origins=app.config['CORS_ORIGINS'])

    if not app.debug and not app.testing:
        setup_logging(app)

    from auth import auth_bp
    from projects import projects_bp
    from tasks import tasks_bp
    from milestones import milestones_bp
    from comments import comments_bp
    from time_logs import time_logs_bp
    from team import team_bp
    from notifications import notifications_bp
    from invitations import invitations_bp

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(projects_bp, url_prefix='/api/projects')
    app.register_blueprint(tasks_bp, url_prefix='/api/tasks')
    app.register_blueprint(milestones_bp, url_prefix='/api/milestones')
    app.register_blueprint(comments_bp, url_prefix='/api/comments')
    app.register_blueprint(time_logs_bp, url_prefix='/api/time-logs')
    app.register_blueprint(team_bp, url_prefix='/api/team')
    app.register_blueprint(notifications_bp, url_prefix='/api/notifications')
    app.register_blueprint(invitations_bp, url_prefix='/api/invitations')

    register_jwt_handlers(app)
    register_error_handlers(app)
    register_request_hooks(app)
    register_system_routes(app)
    register_commands(app)

    with app.app_context():
        db.create_all()
        seed_roles()

    return app

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 應該用 gunicorn + eventlet worker
    app = create_app()
    port = int(os.getenv('PORT', 5000))
    socketio.run(app, host='0.0.0.0', port=port, debug=app.debug, allow_unsafe_werkzeug=True)
