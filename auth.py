from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import create_access_token, jwt_required, get_jwt_identity
from models import db, User
from marshmallow import Schema, fields, validate, pre_load, ValidationError
from datetime import datetime
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class TrimmedSchema(Schema):
    """
    載入前先去掉字串前後空白

    untrimmed 裡的欄位 (例如密碼) 保持原樣
    """
    untrimmed = ()

    @pre_load
    def strip_strings(self, data, **kwargs):
        if not isinstance(data, dict):
            return data
        return {
            key: value.strip() if isinstance(value, str) and key not in self.untrimmed else value
            for key, value in data.items()
        }


def _password_length():
    return validate.Length(
        min=current_app.config.get('PASSWORD_MIN_LENGTH', 6),
        max=128,
        error='Password must be at least {min} characters'
    )


class RegisterSchema(TrimmedSchema):
    """註冊輸入驗證"""
    untrimmed = ('password',)

    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(required=True, error_messages={'required': 'Password is required'})
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100, error='Name is required'),
        error_messages={'required': 'Name is required'}
    )

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # 密碼長度從 config 讀取
        self.fields['password'].validators = [_password_length()]


class LoginSchema(TrimmedSchema):
    """登入輸入驗證"""
    untrimmed = ('password',)

    email = fields.Email(required=True)
    password = fields.Str(required=True, validate=validate.Length(min=1))


class UpdateProfileSchema(TrimmedSchema):
    """個人資料更新驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=100))
    avatar_url = fields.Url()


class ChangePasswordSchema(Schema):
    """密碼修改驗證"""
    current_password = fields.Str(required=True)
    new_password = fields.Str(required=True)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['new_password'].validators = [_password_length()]

# ============================================
# Helper Functions
# ============================================

def get_bcrypt():
    """從 Flask app extensions 取得 bcrypt 實例 (不用 global variable)"""
    return current_app.extensions['bcrypt']


def flatten_errors(messages, prefix=''):
    """
    把 marshmallow 的巢狀錯誤訊息轉成 [{field, message}] 陣列
    """
    errors = []
    for field, value in messages.items():
        name = f"{prefix}.{field}" if prefix else str(field)
        if isinstance(value, dict):
            errors.extend(flatten_errors(value, name))
        elif isinstance(value, list):
            errors.extend({'field': name, 'message': str(message)} for message in value)
        else:
            errors.append({'field': name, 'message': str(value)})
    return errors


def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data)
        return True, validated_data
    except ValidationError as err:
        return False, flatten_errors(err.messages)


def validation_error_response(errors):
    return jsonify({'error': 'Validation failed', 'errors': errors}), 400


def get_json_body():
    """取得 JSON body,格式錯誤或不是 object 時回傳 None"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    return data


def create_token(user):
    """建立 JWT (identity 是 user id, 額外帶 email)"""
    return create_access_token(
        identity=str(user.id),
        additional_claims={'email': user.email}
    )


def serialize_user(user):
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'avatar_url': user.avatar_url,
        'role': user.role
    }

# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
def register():
    """
    使用者註冊

    成功時直接回傳 token,前端不需要再登入一次
    """
    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(RegisterSchema, data)
    if not is_valid:
        return validation_error_response(result)

    email = result['email'].lower()

    # 檢查 email 是否已存在
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'User already exists'}), 400

    hashed_password = get_bcrypt().generate_password_hash(result['password']).decode('utf-8')

    user = User(
        email=email,
        name=result['name'],
        password_hash=hashed_password
    )

    try:
        db.session.add(user)
        db.session.commit()

        logger.info(f"New user registered: {user.email}")

        return jsonify({
            'token': create_token(user),
            'user': serialize_user(user)
        }), 201

    except Exception as e:
        db.session.rollback()
        # 不要把 exception 細節洩漏給前端
        logger.error(f"Registration error for {email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Registration failed due to server error'}), 500

# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
def login():
    """
    使用者登入

    不區分 email/password 錯誤,避免帳號枚舉攻擊
    """
    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(LoginSchema, data)
    if not is_valid:
        return validation_error_response(result)

    email = result['email'].lower()
    user = User.query.filter_by(email=email).first()

    if not user or not get_bcrypt().check_password_hash(user.password_hash, result['password']):
        logger.warning(f"Failed login attempt for email: {email}")
        return jsonify({'error': 'Invalid credentials'}), 400

    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        return jsonify({'error': 'Account is disabled'}), 403

    # 更新最後登入時間
    try:
        user.last_login = datetime.utcnow()
        db.session.commit()
    except Exception as e:
        # 這個錯誤不影響登入,只記錄就好
        db.session.rollback()
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")

    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'token': create_token(user),
        'user': serialize_user(user)
    }), 200

# ============================================
# 取得當前使用者資訊
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    """取得當前登入使用者的資訊"""
    user = get_current_user()

    if not user:
        logger.warning(f"Token valid but user not found: {get_jwt_identity()}")
        return jsonify({'error': 'User not found'}), 404

    return jsonify({
        **serialize_user(user),
        'created_at': user.created_at.isoformat()
    }), 200

# ============================================
# 更新個人資料
# ============================================

@auth_bp.route('/profile', methods=['PUT', 'PATCH'])
@jwt_required()
def update_profile():
    """更新當前使用者的名稱與頭像"""
    user = get_current_user()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateProfileSchema, data)
    if not is_valid:
        return validation_error_response(result)

    if not result:
        return jsonify({'error': 'No fields to update'}), 400

    for field in ['name', 'avatar_url']:
        if field in result:
            setattr(user, field, result[field])

    try:
        db.session.commit()
        logger.info(f"User profile updated: {user.email}")

        return jsonify({
            **serialize_user(user),
            'updated_at': user.updated_at.isoformat() if user.updated_at else None
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Profile update error for {user.email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Update failed due to server error'}), 500

# ============================================
# 修改密碼
# ============================================

@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    """修改密碼"""
    user = get_current_user()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(ChangePasswordSchema, data)
    if not is_valid:
        return validation_error_response(result)

    bcrypt = get_bcrypt()
    if not bcrypt.check_password_hash(user.password_hash, result['current_password']):
        return jsonify({'error': 'Current password is incorrect'}), 400

    user.password_hash = bcrypt.generate_password_hash(result['new_password']).decode('utf-8')

    try:
        db.session.commit()
        logger.info(f"Password changed for user: {user.email}")

        return jsonify({'message': 'Password changed successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Password change error for {user.email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Password change failed due to server error'}), 500

# ============================================
# 輔助函數 (供其他模組使用)
# ============================================

def get_current_user():
    """
    取得當前登入的使用者

    token 合法但使用者已不存在時回傳 None
    """
    user_id = get_jwt_identity()
    if not user_id:
        return None
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        logger.warning(f"Malformed token identity: {user_id}")
        return None
