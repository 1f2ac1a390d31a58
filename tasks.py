from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func, or_
from sqlalchemy.orm import joinedload, selectinload
from marshmallow import fields, validate
from models import (
    db, Task, Section, User, Comment, Attachment, TaskAssignee, TaskDependency,
    TASK_STATUSES, TASK_PRIORITIES
)
from auth import (
    TrimmedSchema, get_current_user, get_json_body,
    validate_request_data, validation_error_response
)
from projects import check_project_access, check_project_admin
from datetime import datetime
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(TrimmedSchema):
    """建立任務驗證"""
    project_id = fields.Int(required=True, error_messages={'required': 'project_id is required'})
    section_id = fields.Int(allow_none=True)
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(allow_none=True)
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES), load_default='todo')
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES), load_default='medium')
    due_date = fields.Date(allow_none=True)
    start_date = fields.Date(allow_none=True)
    tags = fields.List(fields.Str(), load_default=list)
    assignee_ids = fields.List(fields.Int(), load_default=list)
    custom_fields = fields.Dict(keys=fields.Str(), load_default=dict)


class UpdateTaskSchema(TrimmedSchema):
    """更新任務驗證"""
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True)
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES))
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES))
    due_date = fields.Date(allow_none=True)
    start_date = fields.Date(allow_none=True)
    section_id = fields.Int(allow_none=True)
    tags = fields.List(fields.Str())
    custom_fields = fields.Dict(keys=fields.Str())
    position = fields.Int(strict=True, validate=validate.Range(min=0))


class AddAssigneeSchema(TrimmedSchema):
    user_id = fields.Int(required=True, error_messages={'required': 'user_id is required'})


class AddDependencySchema(TrimmedSchema):
    depends_on_task_id = fields.Int(required=True, error_messages={'required': 'depends_on_task_id is required'})

# ============================================
# 輔助函數
# ============================================

def check_task_access(task_id, user_id):
    """
    檢查使用者是否有權限訪問任務 (看任務所屬專案的權限)

    Returns:
        tuple: (has_access: bool, task: Task|None, role: str|None)
        task 為 None 代表不存在
    """
    task = db.session.get(Task, task_id)
    if not task:
        return False, None, None

    has_access, project, role = check_project_access(task.project_id, user_id)
    return has_access, task, role


def next_task_position(project_id, section_id):
    """
    新任務接在最後面

    有 section 時看該 section 內的 max(position),
    沒有 section 時看專案內沒有 section 的任務
    """
    query = db.session.query(func.max(Task.position)).filter(Task.project_id == project_id)
    if section_id is None:
        query = query.filter(Task.section_id.is_(None))
    else:
        query = query.filter(Task.section_id == section_id)

    max_position = query.scalar()
    return 0 if max_position is None else max_position + 1


def section_belongs_to_project(section_id, project_id):
    section = db.session.get(Section, section_id)
    return section is not None and section.project_id == project_id


def creates_dependency_cycle(task_id, depends_on_task_id):
    """從 depends_on 沿著依賴往下走,走回 task_id 就代表會形成循環"""
    visited = set()
    pending = [depends_on_task_id]

    while pending:
        current = pending.pop()
        if current == task_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        pending.extend(
            row.depends_on_task_id
            for row in TaskDependency.query.filter_by(task_id=current).all()
        )

    return False


def serialize_task(task):
    return {
        'id': task.id,
        'project_id': task.project_id,
        'section_id': task.section_id,
        'title': task.title,
        'description': task.description,
        'status': task.status,
        'priority': task.priority,
        'due_date': task.due_date.isoformat() if task.due_date else None,
        'start_date': task.start_date.isoformat() if task.start_date else None,
        'creator_id': task.creator_id,
        'position': task.position,
        'tags': task.tags or [],
        'custom_fields': task.custom_fields or {},
        'completed_at': task.completed_at.isoformat() if task.completed_at else None,
        'created_at': task.created_at.isoformat() if task.created_at else None,
        'updated_at': task.updated_at.isoformat() if task.updated_at else None
    }


def serialize_assignee(link):
    return {
        'id': link.user.id,
        'name': link.user.name,
        'email': link.user.email,
        'avatar_url': link.user.avatar_url,
        'assigned_at': link.assigned_at.isoformat() if link.assigned_at else None
    }


def serialize_task_with_relations(task):
    """列表與更新後回傳用的完整格式"""
    return {
        **serialize_task(task),
        'creator_name': task.creator.name if task.creator else None,
        'section_name': task.section.name if task.section else None,
        'assignees': [serialize_assignee(link) for link in task.assignee_links],
        'dependencies': [{
            'id': dependency.depends_on.id,
            'title': dependency.depends_on.title,
            'status': dependency.depends_on.status
        } for dependency in task.dependencies]
    }


def task_query_with_relations():
    """使用 eager loading 避免 N+1"""
    return Task.query.options(
        joinedload(Task.creator),
        joinedload(Task.section),
        selectinload(Task.assignee_links).joinedload(TaskAssignee.user),
        selectinload(Task.dependencies).joinedload(TaskDependency.depends_on)
    )

# ============================================
# 查詢專案的所有任務
# ============================================

@tasks_bp.route('/project/<int:project_id>', methods=['GET'])
@jwt_required()
def get_project_tasks(project_id):
    """
    查詢專案的任務列表

    篩選: section_id, status, assignee_id, search (標題或描述)
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, project, role = check_project_access(project_id, current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    query = task_query_with_relations().filter(Task.project_id == project_id)

    section_id = request.args.get('section_id', type=int)
    if section_id:
        query = query.filter(Task.section_id == section_id)

    status = request.args.get('status')
    if status:
        query = query.filter(Task.status == status)

    assignee_id = request.args.get('assignee_id', type=int)
    if assignee_id:
        query = query.filter(Task.assignee_links.any(TaskAssignee.user_id == assignee_id))

    search = request.args.get('search', '').strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))

    tasks = query.order_by(Task.position, Task.created_at.desc()).all()

    return jsonify([serialize_task_with_relations(task) for task in tasks]), 200

# ============================================
# 查詢指派給我的任務
# ============================================

@tasks_bp.route('/my', methods=['GET'])
@jwt_required()
def get_my_tasks():
    """指派給當前使用者的任務,依到期日排序 (沒有到期日的排最後)"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    query = task_query_with_relations().options(joinedload(Task.project)).filter(
        Task.assignee_links.any(TaskAssignee.user_id == current_user.id)
    )

    status = request.args.get('status')
    if status:
        query = query.filter(Task.status == status)

    tasks = query.order_by(Task.due_date.is_(None), Task.due_date, Task.id).all()

    return jsonify([{
        **serialize_task_with_relations(task),
        'project_name': task.project.name
    } for task in tasks]), 200

# ============================================
# 查詢單一任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['GET'])
@jwt_required()
def get_task(task_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, task, role = check_task_access(task_id, current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    comments_count = Comment.query.filter_by(task_id=task_id).count()
    attachments = Attachment.query.filter_by(task_id=task_id).order_by(Attachment.created_at.desc()).all()

    return jsonify({
        **serialize_task_with_relations(task),
        'project_name': task.project.name,
        'comments_count': comments_count,
        'attachments': [{
            'id': attachment.id,
            'filename': attachment.filename,
            'file_url': attachment.file_url,
            'file_size': attachment.file_size,
            'mime_type': attachment.mime_type,
            'user_id': attachment.user_id,
            'created_at': attachment.created_at.isoformat() if attachment.created_at else None
        } for attachment in attachments]
    }), 200

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('', methods=['POST'])
@jwt_required()
def create_task():
    """
    建立任務

    position 接在所屬 section 的最後面;任務與指派在同一個 transaction 內建立
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateTaskSchema, data)
    if not is_valid:
        return validation_error_response(result)

    has_access, project, role = check_project_access(result['project_id'], current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied to project'}), 403

    section_id = result.get('section_id')
    if section_id is not None and not section_belongs_to_project(section_id, project.id):
        return jsonify({'error': 'Section does not belong to this project'}), 400

    # 去掉重複的指派對象並確認使用者存在
    assignee_ids = list(dict.fromkeys(result['assignee_ids']))
    if assignee_ids:
        found = User.query.filter(User.id.in_(assignee_ids)).count()
        if found != len(assignee_ids):
            return jsonify({'error': 'Assignee not found'}), 400

    try:
        task = Task(
            project_id=project.id,
            section_id=section_id,
            title=result['title'],
            description=result.get('description'),
            status=result['status'],
            priority=result['priority'],
            due_date=result.get('due_date'),
            start_date=result.get('start_date'),
            creator_id=current_user.id,
            position=next_task_position(project.id, section_id),
            tags=result['tags'],
            custom_fields=result['custom_fields'],
            completed_at=datetime.utcnow() if result['status'] == 'completed' else None
        )
        db.session.add(task)
        db.session.flush()  # 取得 task.id

        for user_id in assignee_ids:
            db.session.add(TaskAssignee(task_id=task.id, user_id=user_id))

        db.session.commit()

        logger.info(f"Task created: {task.title} in project {project.id} by user {current_user.email}")

        task = task_query_with_relations().filter(Task.id == task.id).first()
        return jsonify(serialize_task_with_relations(task)), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task creation failed due to server error'}), 500

# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_task(task_id):
    """
    更新任務

    狀態變成 completed 時寫入 completed_at,離開 completed 時清除;
    換 section 而沒指定 position 時接在新 section 的最後面
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, task, role = check_task_access(task_id, current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateTaskSchema, data)
    if not is_valid:
        return validation_error_response(result)

    if not result:
        return jsonify({'error': 'No fields to update'}), 400

    if 'section_id' in result and result['section_id'] is not None:
        if not section_belongs_to_project(result['section_id'], task.project_id):
            return jsonify({'error': 'Section does not belong to this project'}), 400

    try:
        # 換 section: 先算好新位置再改 section_id
        if 'section_id' in result and result['section_id'] != task.section_id and 'position' not in result:
            task.position = next_task_position(task.project_id, result['section_id'])

        # 特殊處理: completed_at 跟著狀態走
        if 'status' in result:
            if result['status'] == 'completed' and task.status != 'completed':
                task.completed_at = datetime.utcnow()
            elif result['status'] != 'completed':
                task.completed_at = None

        for field, value in result.items():
            setattr(task, field, value)

        db.session.commit()

        logger.info(f"Task {task_id} updated by user {current_user.email}: {sorted(result)}")

        task = task_query_with_relations().filter(Task.id == task_id).first()
        return jsonify(serialize_task_with_relations(task)), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task update failed due to server error'}), 500

# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['DELETE'])
@jwt_required()
def delete_task(task_id):
    """只有建立者或專案管理員能刪除"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    task = db.session.get(Task, task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    is_admin, project = check_project_admin(task.project_id, current_user.id)
    if task.creator_id != current_user.id and not is_admin:
        return jsonify({'error': 'Only task creator or project admin can delete'}), 403

    try:
        task_title = task.title
        # cascade 會自動刪除指派、依賴、留言、附件
        db.session.delete(task)
        db.session.commit()

        logger.info(f"Task deleted: {task_title} by user {current_user.email}")

        return jsonify({'message': 'Task deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task deletion failed due to server error'}), 500

# ============================================
# 任務指派
# ============================================

@tasks_bp.route('/<int:task_id>/assignees', methods=['POST'])
@jwt_required()
def add_assignee(task_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, task, role = check_task_access(task_id, current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AddAssigneeSchema, data)
    if not is_valid:
        return validation_error_response(result)

    user = db.session.get(User, result['user_id'])
    if not user:
        return jsonify({'error': 'User not found'}), 404

    existing = TaskAssignee.query.filter_by(task_id=task_id, user_id=user.id).first()
    if existing:
        return jsonify({'error': 'User already assigned to task'}), 400

    try:
        db.session.add(TaskAssignee(task_id=task_id, user_id=user.id))
        db.session.commit()

        logger.info(f"User {user.email} assigned to task {task_id} by user {current_user.email}")

        return jsonify({'message': 'Assignee added successfully'}), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Add assignee error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add assignee due to server error'}), 500


@tasks_bp.route('/<int:task_id>/assignees/<int:user_id>', methods=['DELETE'])
@jwt_required()
def remove_assignee(task_id, user_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, task, role = check_task_access(task_id, current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    link = TaskAssignee.query.filter_by(task_id=task_id, user_id=user_id).first()
    if not link:
        return jsonify({'error': 'Assignee not found'}), 404

    try:
        db.session.delete(link)
        db.session.commit()

        logger.info(f"User {user_id} unassigned from task {task_id} by user {current_user.email}")

        return jsonify({'message': 'Assignee removed successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Remove assignee error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to remove assignee due to server error'}), 500

# ============================================
# 任務依賴
# ============================================

@tasks_bp.route('/<int:task_id>/dependencies', methods=['POST'])
@jwt_required()
def add_dependency(task_id):
    """
    新增依賴: task_id 依賴 depends_on_task_id

    兩個任務必須在同一個專案,且不能形成循環
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, task, role = check_task_access(task_id, current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AddDependencySchema, data)
    if not is_valid:
        return validation_error_response(result)

    depends_on_id = result['depends_on_task_id']
    if depends_on_id == task_id:
        return jsonify({'error': 'A task cannot depend on itself'}), 400

    depends_on = db.session.get(Task, depends_on_id)
    if not depends_on or depends_on.project_id != task.project_id:
        return jsonify({'error': 'Dependency must be a task in the same project'}), 400

    if TaskDependency.query.filter_by(task_id=task_id, depends_on_task_id=depends_on_id).first():
        return jsonify({'error': 'Dependency already exists'}), 400

    if creates_dependency_cycle(task_id, depends_on_id):
        return jsonify({'error': 'Dependency would create a cycle'}), 400

    try:
        dependency = TaskDependency(task_id=task_id, depends_on_task_id=depends_on_id)
        db.session.add(dependency)
        db.session.commit()

        logger.info(f"Task {task_id} now depends on task {depends_on_id}")

        return jsonify({
            'id': dependency.id,
            'task_id': dependency.task_id,
            'depends_on_task_id': dependency.depends_on_task_id,
            'created_at': dependency.created_at.isoformat() if dependency.created_at else None
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Add dependency error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add dependency due to server error'}), 500


@tasks_bp.route('/<int:task_id>/dependencies/<int:depends_on_task_id>', methods=['DELETE'])
@jwt_required()
def remove_dependency(task_id, depends_on_task_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, task, role = check_task_access(task_id, current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    dependency = TaskDependency.query.filter_by(
        task_id=task_id,
        depends_on_task_id=depends_on_task_id
    ).first()
    if not dependency:
        return jsonify({'error': 'Dependency not found'}), 404

    try:
        db.session.delete(dependency)
        db.session.commit()

        logger.info(f"Dependency {task_id} -> {depends_on_task_id} removed by user {current_user.email}")

        return jsonify({'message': 'Dependency removed successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Remove dependency error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to remove dependency due to server error'}), 500
