from flask import Blueprint, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, and_
from marshmallow import fields, validate
from models import (
    db, Project, ProjectMember, Section, Task, User, WorkspaceMember,
    PROJECT_ROLES, PROJECT_STATUSES, PROJECT_VIEW_TYPES
)
from auth import (
    TrimmedSchema, get_current_user, get_json_body,
    validate_request_data, validation_error_response
)
from workspaces import AddMemberSchema, check_workspace_access, serialize_member
from datetime import date
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

HEX_COLOR = validate.Regexp(r'^#[0-9A-Fa-f]{6}$', error='Color must be a hex value like #6B46C1')

# ============================================
# Input Validation Schemas
# ============================================

class CreateProjectSchema(TrimmedSchema):
    """建立專案驗證"""
    workspace_id = fields.Int(required=True, error_messages={'required': 'workspace_id is required'})
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(allow_none=True)
    color = fields.Str(validate=HEX_COLOR)
    icon = fields.Str(allow_none=True, validate=validate.Length(max=50))
    start_date = fields.Date(allow_none=True)
    due_date = fields.Date(allow_none=True)
    view_type = fields.Str(validate=validate.OneOf(PROJECT_VIEW_TYPES), load_default='list')


class UpdateProjectSchema(TrimmedSchema):
    """更新專案驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True)
    color = fields.Str(validate=HEX_COLOR)
    icon = fields.Str(allow_none=True, validate=validate.Length(max=50))
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES))
    view_type = fields.Str(validate=validate.OneOf(PROJECT_VIEW_TYPES))
    start_date = fields.Date(allow_none=True)
    due_date = fields.Date(allow_none=True)


class AddProjectMemberSchema(AddMemberSchema):
    role = fields.Str(validate=validate.OneOf(PROJECT_ROLES), load_default='member')

# ============================================
# 權限檢查
# ============================================

def check_project_access(project_id, user_id):
    """
    檢查使用者是否有權限訪問專案

    專案 owner、專案成員、或所屬 workspace 的成員都可以訪問

    Returns:
        tuple: (has_access: bool, project: Project|None, role: str|None)
        project 為 None 代表不存在
    """
    project = db.session.get(Project, project_id)
    if not project:
        return False, None, None

    if project.owner_id == user_id:
        return True, project, 'owner'

    member = ProjectMember.query.filter_by(
        project_id=project_id,
        user_id=user_id
    ).first()
    if member:
        return True, project, member.role

    workspace_member = WorkspaceMember.query.filter_by(
        workspace_id=project.workspace_id,
        user_id=user_id
    ).first()
    if workspace_member:
        return True, project, 'workspace_member'

    return False, project, None


def check_project_admin(project_id, user_id):
    """
    檢查使用者是否為專案管理員

    只看專案本身:owner 或 project_members 裡 role 為 admin

    Returns:
        tuple: (is_admin: bool, project: Project|None)
    """
    project = db.session.get(Project, project_id)
    if not project:
        return False, None

    if project.owner_id == user_id:
        return True, project

    member = ProjectMember.query.filter_by(
        project_id=project_id,
        user_id=user_id,
        role='admin'
    ).first()

    return member is not None, project


def serialize_project(project):
    return {
        'id': project.id,
        'workspace_id': project.workspace_id,
        'name': project.name,
        'description': project.description,
        'color': project.color,
        'icon': project.icon,
        'status': project.status,
        'view_type': project.view_type,
        'owner_id': project.owner_id,
        'start_date': project.start_date.isoformat() if project.start_date else None,
        'due_date': project.due_date.isoformat() if project.due_date else None,
        'created_at': project.created_at.isoformat() if project.created_at else None,
        'updated_at': project.updated_at.isoformat() if project.updated_at else None
    }


def serialize_section(section):
    return {
        'id': section.id,
        'project_id': section.project_id,
        'name': section.name,
        'position': section.position,
        'created_at': section.created_at.isoformat() if section.created_at else None,
        'updated_at': section.updated_at.isoformat() if section.updated_at else None
    }

# ============================================
# 查詢 workspace 內的所有專案
# ============================================

@projects_bp.route('/workspace/<int:workspace_id>', methods=['GET'])
@jwt_required()
def get_workspace_projects(workspace_id):
    """
    查詢 workspace 內的專案

    用 subquery 統計成員數與任務數,避免 N+1
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, workspace, role = check_workspace_access(workspace_id, current_user.id)
    if not workspace:
        return jsonify({'error': 'Workspace not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    task_stats = db.session.query(
        Task.project_id,
        func.count(Task.id).label('task_count'),
        func.sum(case((Task.status == 'completed', 1), else_=0)).label('completed_task_count')
    ).group_by(Task.project_id).subquery()

    member_stats = db.session.query(
        ProjectMember.project_id,
        func.count(ProjectMember.id).label('member_count')
    ).group_by(ProjectMember.project_id).subquery()

    rows = db.session.query(
        Project,
        User.name,
        member_stats.c.member_count,
        task_stats.c.task_count,
        task_stats.c.completed_task_count
    ).outerjoin(
        User, Project.owner_id == User.id
    ).outerjoin(
        member_stats, Project.id == member_stats.c.project_id
    ).outerjoin(
        task_stats, Project.id == task_stats.c.project_id
    ).filter(
        Project.workspace_id == workspace_id
    ).order_by(Project.created_at.desc(), Project.id.desc()).all()

    return jsonify([{
        **serialize_project(project),
        'owner_name': owner_name,
        'member_count': member_count or 0,
        'task_count': task_count or 0,
        'completed_task_count': int(completed_task_count or 0)
    } for project, owner_name, member_count, task_count, completed_task_count in rows]), 200

# ============================================
# 查詢單一專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@jwt_required()
def get_project(project_id):
    """查詢專案詳細資訊,包含成員與依順序排列的 section"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, project, role = check_project_access(project_id, current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    members = ProjectMember.query.filter_by(project_id=project_id).order_by(
        ProjectMember.joined_at
    ).all()

    sections = Section.query.filter_by(project_id=project_id).order_by(Section.position).all()

    return jsonify({
        **serialize_project(project),
        'owner_name': project.owner.name,
        'workspace_name': project.workspace.name,
        'my_role': role,
        'members': [serialize_member(m) for m in members],
        'sections': [serialize_section(s) for s in sections]
    }), 200

# ============================================
# 建立專案
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
def create_project():
    """
    建立新專案

    同一個 transaction 內:
    1. 建立專案 (status = active)
    2. owner 加入為 admin 成員
    3. 建立預設 section: To Do / In Progress / Done
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateProjectSchema, data)
    if not is_valid:
        return validation_error_response(result)

    has_access, workspace, role = check_workspace_access(result['workspace_id'], current_user.id)
    if not workspace:
        return jsonify({'error': 'Workspace not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied to workspace'}), 403

    project = Project(
        workspace_id=workspace.id,
        name=result['name'],
        description=result.get('description'),
        color=result.get('color') or current_app.config['DEFAULT_PROJECT_COLOR'],
        icon=result.get('icon'),
        status='active',
        view_type=result['view_type'],
        owner_id=current_user.id,
        start_date=result.get('start_date'),
        due_date=result.get('due_date')
    )

    try:
        db.session.add(project)
        db.session.flush()  # 取得 project.id 但不 commit

        db.session.add(ProjectMember(
            project_id=project.id,
            user_id=current_user.id,
            role='admin'
        ))

        for position, name in enumerate(current_app.config['DEFAULT_SECTIONS']):
            db.session.add(Section(project_id=project.id, name=name, position=position))

        # 一次性 commit
        db.session.commit()

        logger.info(f"Project created: {project.name} by user {current_user.email}")

        return jsonify(serialize_project(project)), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project creation failed due to server error'}), 500

# ============================================
# 更新專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_project(project_id):
    """更新專案資訊 (admin 或 owner)"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    is_admin, project = check_project_admin(project_id, current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not is_admin:
        return jsonify({'error': 'Only project admins can update'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateProjectSchema, data)
    if not is_valid:
        return validation_error_response(result)

    if not result:
        return jsonify({'error': 'No fields to update'}), 400

    for field, value in result.items():
        setattr(project, field, value)

    try:
        db.session.commit()
        logger.info(f"Project {project_id} updated by user {current_user.email}: {sorted(result)}")
        return jsonify(serialize_project(project)), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project update failed due to server error'}), 500

# ============================================
# 刪除專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@jwt_required()
def delete_project(project_id):
    """
    刪除專案 (只有 owner 可以)

    section、任務、留言會一併刪除
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    if project.owner_id != current_user.id:
        return jsonify({'error': 'Only project owner can delete'}), 403

    try:
        project_name = project.name
        db.session.delete(project)
        db.session.commit()

        logger.info(f"Project deleted: {project_name} by user {current_user.email}")

        return jsonify({'message': 'Project deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project deletion failed due to server error'}), 500

# ============================================
# 專案成員管理
# ============================================

@projects_bp.route('/<int:project_id>/members', methods=['POST'])
@jwt_required()
def add_project_member(project_id):
    """用 email 新增專案成員 (admin 或 owner)"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    is_admin, project = check_project_admin(project_id, current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not is_admin:
        return jsonify({'error': 'Only admins can add members'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AddProjectMemberSchema, data)
    if not is_valid:
        return validation_error_response(result)

    user = User.query.filter_by(email=result['email'].lower()).first()
    if not user:
        return jsonify({'error': 'User not found'}), 404

    existing = ProjectMember.query.filter_by(
        project_id=project_id,
        user_id=user.id
    ).first()
    if existing:
        return jsonify({'error': 'User is already a member'}), 400

    member = ProjectMember(
        project_id=project_id,
        user_id=user.id,
        role=result['role']
    )

    try:
        db.session.add(member)
        db.session.commit()

        logger.info(f"Member added to project {project_id}: user {user.email}")

        return jsonify({
            'id': member.id,
            'project_id': member.project_id,
            'user_id': member.user_id,
            'role': member.role,
            'joined_at': member.joined_at.isoformat() if member.joined_at else None
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error adding project member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add member due to server error'}), 500


@projects_bp.route('/<int:project_id>/members/<int:user_id>', methods=['DELETE'])
@jwt_required()
def remove_project_member(project_id, user_id):
    """移除專案成員 (admin/owner,或成員移除自己);owner 不能被移除"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    is_admin, project = check_project_admin(project_id, current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    if not is_admin and user_id != current_user.id:
        return jsonify({'error': 'Only admins can remove members'}), 403

    if user_id == project.owner_id:
        return jsonify({'error': 'Cannot remove project owner'}), 400

    member = ProjectMember.query.filter_by(
        project_id=project_id,
        user_id=user_id
    ).first()
    if not member:
        return jsonify({'error': 'Member not found'}), 404

    try:
        db.session.delete(member)
        db.session.commit()

        logger.info(f"Member {user_id} removed from project {project_id} by user {current_user.email}")

        return jsonify({'message': 'Member removed successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error removing project member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to remove member due to server error'}), 500

# ============================================
# 專案統計
# ============================================

@projects_bp.route('/<int:project_id>/stats', methods=['GET'])
@jwt_required()
def get_project_stats(project_id):
    """
    取得專案統計資訊

    使用聚合查詢避免 N+1 問題
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, project, role = check_project_access(project_id, current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    task_stats = db.session.query(
        func.count(Task.id).label('total'),
        func.sum(case((Task.status == 'todo', 1), else_=0)).label('todo'),
        func.sum(case((Task.status == 'in_progress', 1), else_=0)).label('in_progress'),
        func.sum(case((Task.status == 'completed', 1), else_=0)).label('completed'),
        func.sum(case((Task.status == 'blocked', 1), else_=0)).label('blocked'),
        func.sum(case((and_(Task.due_date < date.today(), Task.status != 'completed'), 1), else_=0)).label('overdue')
    ).filter(Task.project_id == project_id).first()

    member_count = ProjectMember.query.filter_by(project_id=project_id).count()

    total = task_stats.total or 0
    completed = int(task_stats.completed or 0)

    return jsonify({
        'tasks': {
            'total': total,
            'todo': int(task_stats.todo or 0),
            'in_progress': int(task_stats.in_progress or 0),
            'completed': completed,
            'blocked': int(task_stats.blocked or 0),
            'overdue': int(task_stats.overdue or 0)
        },
        'members': member_count,
        'completion_rate': round(completed / (total or 1) * 100, 2)
    }), 200
