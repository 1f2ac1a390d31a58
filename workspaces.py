from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func, or_
from marshmallow import fields, validate
from models import db, Workspace, WorkspaceMember, User, WORKSPACE_ROLES
from auth import (
    TrimmedSchema, get_current_user, get_json_body,
    validate_request_data, validation_error_response
)
import logging

workspaces_bp = Blueprint('workspaces', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateWorkspaceSchema(TrimmedSchema):
    """建立 workspace 驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Workspace name is required'}
    )
    description = fields.Str(allow_none=True)


class UpdateWorkspaceSchema(TrimmedSchema):
    """更新 workspace 驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True)


class AddMemberSchema(TrimmedSchema):
    """新增成員驗證 (workspace 與 project 共用)"""
    email = fields.Email(required=True)
    role = fields.Str(validate=validate.OneOf(WORKSPACE_ROLES), load_default='member')

# ============================================
# 權限檢查
# ============================================

def check_workspace_access(workspace_id, user_id):
    """
    檢查使用者是否能訪問 workspace (owner 或成員)

    Returns:
        tuple: (has_access: bool, workspace: Workspace|None, role: str|None)
        workspace 為 None 代表不存在
    """
    workspace = db.session.get(Workspace, workspace_id)
    if not workspace:
        return False, None, None

    if workspace.owner_id == user_id:
        return True, workspace, 'owner'

    member = WorkspaceMember.query.filter_by(
        workspace_id=workspace_id,
        user_id=user_id
    ).first()

    if member:
        return True, workspace, member.role

    return False, workspace, None


def check_workspace_admin(workspace_id, user_id):
    """
    檢查使用者是否為 workspace 管理員 (owner 視為 admin)

    Returns:
        tuple: (is_admin: bool, workspace: Workspace|None)
    """
    has_access, workspace, role = check_workspace_access(workspace_id, user_id)
    return has_access and role in ('owner', 'admin'), workspace


def serialize_workspace(workspace):
    return {
        'id': workspace.id,
        'name': workspace.name,
        'description': workspace.description,
        'owner_id': workspace.owner_id,
        'created_at': workspace.created_at.isoformat() if workspace.created_at else None,
        'updated_at': workspace.updated_at.isoformat() if workspace.updated_at else None
    }


def serialize_member(membership):
    """workspace / project 成員共用的格式"""
    return {
        'id': membership.user.id,
        'email': membership.user.email,
        'name': membership.user.name,
        'avatar_url': membership.user.avatar_url,
        'role': membership.role,
        'joined_at': membership.joined_at.isoformat() if membership.joined_at else None
    }

# ============================================
# 查詢我的所有 workspace
# ============================================

@workspaces_bp.route('', methods=['GET'])
@jwt_required()
def get_workspaces():
    """查詢我擁有或參與的所有 workspace"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    member_workspace_ids = db.session.query(WorkspaceMember.workspace_id).filter(
        WorkspaceMember.user_id == current_user.id
    )

    workspaces = Workspace.query.filter(
        or_(
            Workspace.owner_id == current_user.id,
            Workspace.id.in_(member_workspace_ids)
        )
    ).order_by(Workspace.created_at.desc(), Workspace.id.desc()).all()

    workspace_ids = [w.id for w in workspaces]

    # 用一次 group by 統計成員數,避免 N+1
    member_counts = dict(
        db.session.query(
            WorkspaceMember.workspace_id,
            func.count(WorkspaceMember.id)
        ).filter(
            WorkspaceMember.workspace_id.in_(workspace_ids)
        ).group_by(WorkspaceMember.workspace_id).all()
    ) if workspace_ids else {}

    my_roles = dict(
        db.session.query(WorkspaceMember.workspace_id, WorkspaceMember.role).filter(
            WorkspaceMember.user_id == current_user.id,
            WorkspaceMember.workspace_id.in_(workspace_ids)
        ).all()
    ) if workspace_ids else {}

    return jsonify([{
        **serialize_workspace(workspace),
        'owner_name': workspace.owner.name,
        'user_role': my_roles.get(workspace.id, 'admin' if workspace.owner_id == current_user.id else None),
        'member_count': member_counts.get(workspace.id, 0)
    } for workspace in workspaces]), 200

# ============================================
# 查詢單一 workspace
# ============================================

@workspaces_bp.route('/<int:workspace_id>', methods=['GET'])
@jwt_required()
def get_workspace(workspace_id):
    """查詢 workspace 與成員列表"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, workspace, role = check_workspace_access(workspace_id, current_user.id)
    if not workspace:
        return jsonify({'error': 'Workspace not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    members = WorkspaceMember.query.filter_by(workspace_id=workspace_id).order_by(
        WorkspaceMember.joined_at
    ).all()

    return jsonify({
        **serialize_workspace(workspace),
        'owner_name': workspace.owner.name,
        'members': [serialize_member(m) for m in members]
    }), 200

# ============================================
# 建立 workspace
# ============================================

@workspaces_bp.route('', methods=['POST'])
@jwt_required()
def create_workspace():
    """
    建立 workspace

    workspace 與 owner 的 admin 成員資格在同一個 transaction 內建立
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateWorkspaceSchema, data)
    if not is_valid:
        return validation_error_response(result)

    workspace = Workspace(
        name=result['name'],
        description=result.get('description'),
        owner_id=current_user.id
    )

    try:
        db.session.add(workspace)
        db.session.flush()  # 取得 workspace.id 但不 commit

        db.session.add(WorkspaceMember(
            workspace_id=workspace.id,
            user_id=current_user.id,
            role='admin'
        ))

        db.session.commit()

        logger.info(f"Workspace created: {workspace.name} by user {current_user.email}")

        return jsonify(serialize_workspace(workspace)), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Workspace creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Workspace creation failed due to server error'}), 500

# ============================================
# 更新 workspace
# ============================================

@workspaces_bp.route('/<int:workspace_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_workspace(workspace_id):
    """更新 workspace (只有 owner 可以)"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    workspace = db.session.get(Workspace, workspace_id)
    if not workspace:
        return jsonify({'error': 'Workspace not found'}), 404

    if workspace.owner_id != current_user.id:
        return jsonify({'error': 'Only workspace owner can update'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateWorkspaceSchema, data)
    if not is_valid:
        return validation_error_response(result)

    if not result:
        return jsonify({'error': 'No fields to update'}), 400

    for field in ['name', 'description']:
        if field in result:
            setattr(workspace, field, result[field])

    try:
        db.session.commit()
        logger.info(f"Workspace {workspace_id} updated by user {current_user.email}")
        return jsonify(serialize_workspace(workspace)), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Workspace update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Workspace update failed due to server error'}), 500

# ============================================
# 刪除 workspace
# ============================================

@workspaces_bp.route('/<int:workspace_id>', methods=['DELETE'])
@jwt_required()
def delete_workspace(workspace_id):
    """
    刪除 workspace (只有 owner 可以)

    底下的專案、section、任務會一併刪除,無法復原
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    workspace = db.session.get(Workspace, workspace_id)
    if not workspace:
        return jsonify({'error': 'Workspace not found'}), 404

    if workspace.owner_id != current_user.id:
        return jsonify({'error': 'Only workspace owner can delete'}), 403

    try:
        workspace_name = workspace.name
        db.session.delete(workspace)
        db.session.commit()

        logger.info(f"Workspace deleted: {workspace_name} by user {current_user.email}")

        return jsonify({'message': 'Workspace deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Workspace deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Workspace deletion failed due to server error'}), 500

# ============================================
# Workspace 成員管理
# ============================================

@workspaces_bp.route('/<int:workspace_id>/members', methods=['POST'])
@jwt_required()
def add_workspace_member(workspace_id):
    """用 email 新增 workspace 成員 (admin 或 owner)"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    is_admin, workspace = check_workspace_admin(workspace_id, current_user.id)
    if not workspace:
        return jsonify({'error': 'Workspace not found'}), 404
    if not is_admin:
        return jsonify({'error': 'Only admins can add members'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AddMemberSchema, data)
    if not is_valid:
        return validation_error_response(result)

    user = User.query.filter_by(email=result['email'].lower()).first()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    existing = WorkspaceMember.query.filter_by(
        workspace_id=workspace_id,
        user_id=user.id
    ).first()
    if existing:
        return jsonify({'error': 'User is already a member'}), 400

    member = WorkspaceMember(
        workspace_id=workspace_id,
        user_id=user.id,
        role=result['role']
    )

    try:
        db.session.add(member)
        db.session.commit()

        logger.info(f"Member added to workspace {workspace_id}: user {user.email}")

        return jsonify({
            'id': member.id,
            'workspace_id': member.workspace_id,
            'user_id': member.user_id,
            'role': member.role,
            'joined_at': member.joined_at.isoformat() if member.joined_at else None
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error adding workspace member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add member due to server error'}), 500


@workspaces_bp.route('/<int:workspace_id>/members/<int:user_id>', methods=['DELETE'])
@jwt_required()
def remove_workspace_member(workspace_id, user_id):
    """
    移除 workspace 成員

    admin/owner 可以移除任何人,一般成員只能移除自己;owner 不能被移除
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    is_admin, workspace = check_workspace_admin(workspace_id, current_user.id)
    if not workspace:
        return jsonify({'error': 'Workspace not found'}), 404

    if not is_admin and user_id != current_user.id:
        return jsonify({'error': 'Only admins can remove members'}), 403

    if user_id == workspace.owner_id:
        return jsonify({'error': 'Cannot remove workspace owner'}), 400

    member = WorkspaceMember.query.filter_by(
        workspace_id=workspace_id,
        user_id=user_id
    ).first()
    if not member:
        return jsonify({'error': 'Member not found'}), 404

    try:
        db.session.delete(member)
        db.session.commit()

        logger.info(f"Member {user_id} removed from workspace {workspace_id} by user {current_user.email}")

        return jsonify({'message': 'Member removed successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error removing workspace member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to remove member due to server error'}), 500
