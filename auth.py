from flask import Blueprint, current_app
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity
from marshmallow import Schema, fields, validate
from datetime import datetime
from models import db, User
from extensions import bcrypt, limiter
from errors import Conflict, AppError, ValidationFailed
from utils import load_json, success_response, log_activity
from access import get_global_role
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


def auth_rate_limit():
    return current_app.config['AUTH_RATE_LIMIT']

# ============================================
# Input Validation Schemas
# ============================================

class RegisterSchema(Schema):
    """註冊輸入驗證"""
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=6, max=128, error='Password must be 6-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    username = fields.Str(
        required=True,
        validate=validate.Length(min=3, max=50, error='Username must be 3-50 characters'),
        error_messages={'required': 'Username is required'}
    )
    first_name = fields.Str(validate=validate.Length(max=100))
    last_name = fields.Str(validate=validate.Length(max=100))


class LoginSchema(Schema):
    """登入輸入驗證"""
    email = fields.Email(required=True)
    password = fields.Str(required=True)


class UpdateProfileSchema(Schema):
    """個人資料更新驗證"""
    username = fields.Str(validate=validate.Length(min=3, max=50))
    first_name = fields.Str(validate=validate.Length(max=100))
    last_name = fields.Str(validate=validate.Length(max=100))
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)
    avatar_url = fields.Str(validate=validate.Length(max=500), allow_none=True)


class ChangePasswordSchema(Schema):
    """密碼修改驗證"""
    current_password = fields.Str(required=True)
    new_password = fields.Str(required=True, validate=validate.Length(min=6, max=128))

# ============================================
# Helper Functions
# ============================================

def hash_password(password):
    return bcrypt.generate_password_hash(password).decode('utf-8')


def check_password(user, password):
    return bcrypt.check_password_hash(user.password_hash, password)


def issue_tokens(user):
    return {
        'token': create_access_token(identity=str(user.id)),
        'refresh_token': create_refresh_token(identity=str(user.id))
    }


def get_current_user():
    """取得當前登入的使用者 (JWT subject → User)"""
    user_id = get_jwt_identity()
    if not user_id:
        return None
    return db.session.get(User, user_id)


def user_payload(user):
    data = user.to_dict()
    data['role'] = get_global_role(user.id)
    return data

# ============================================
# 註冊 / 登入
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit(auth_rate_limit)
def register():
    """使用者註冊,成功後直接回傳 token"""
    result = load_json(RegisterSchema)

    if User.query.filter_by(email=result['email']).first():
        raise Conflict('Email already exists')
    if User.query.filter_by(username=result['username']).first():
        raise Conflict('Username already exists')

    user = User(
        email=result['email'],
        username=result['username'],
        first_name=result.get('first_name'),
        last_name=result.get('last_name'),
        password_hash=hash_password(result['password'])
    )
    db.session.add(user)
    db.session.flush()
    log_activity(user.id, 'register', 'user', user.id)
    db.session.commit()

    logger.info(f"New user registered: {user.email}")

    data = {'user': user_payload(user)}
    data.update(issue_tokens(user))
    return success_response(data, 'User registered successfully', 201)


@auth_bp.route('/login', methods=['POST'])
@limiter.limit(auth_rate_limit)
def login():
    """
    使用者登入

    不區分 email / password 錯誤,避免帳號枚舉
    """
    result = load_json(LoginSchema)

    user = User.query.filter_by(email=result['email']).first()
    if not user or not check_password(user, result['password']):
        logger.warning(f"Failed login attempt for email: {result['email']}")
        raise AppError('Invalid credentials', 401)

    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        raise AppError('Account is disabled', 401)

    user.last_login = datetime.utcnow()
    db.session.commit()

    logger.info(f"User logged in: {user.email}")

    data = {'user': user_payload(user)}
    data.update(issue_tokens(user))
    return success_response(data, 'Login successful')


@auth_bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    """用 refresh token 換新的 access token"""
    user = get_current_user()
    return success_response({'token': create_access_token(identity=str(user.id))})


@auth_bp.route('/logout', methods=['POST'])
@jwt_required()
def logout():
    # token 沒有 blacklist,前端丟掉即可
    logger.info(f"User logged out: {get_jwt_identity()}")
    return success_response(message='Logout successful')

# ============================================
# 個人資料
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    return success_response(user_payload(get_current_user()))


@auth_bp.route('/me', methods=['PATCH', 'PUT'])
@jwt_required()
def update_me():
    user = get_current_user()
    result = load_json(UpdateProfileSchema)

    if 'username' in result and result['username'] != user.username:
        if User.query.filter_by(username=result['username']).first():
            raise Conflict('Username already exists')

    for field, value in result.items():
        setattr(user, field, value)

    log_activity(user.id, 'update_profile', 'user', user.id, new_values=result)
    db.session.commit()
    logger.info(f"User profile updated: {user.email}")

    return success_response(user_payload(user), 'Profile updated successfully')


@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    user = get_current_user()
    result = load_json(ChangePasswordSchema)

    if not check_password(user, result['current_password']):
        raise ValidationFailed({'current_password': ['Current password is incorrect']})

    user.password_hash = hash_password(result['new_password'])
    log_activity(user.id, 'change_password', 'user', user.id)
    db.session.commit()
    logger.info(f"Password changed for user: {user.email}")

    return success_response(message='Password changed successfully')
