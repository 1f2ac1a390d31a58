from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case
from marshmallow import fields, validate
from models import db, Section, Task
from auth import (
    TrimmedSchema, get_current_user, get_json_body,
    validate_request_data, validation_error_response
)
from projects import check_project_access, check_project_admin, serialize_section
from tasks import next_task_position
import logging

sections_bp = Blueprint('sections', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateSectionSchema(TrimmedSchema):
    project_id = fields.Int(required=True, error_messages={'required': 'project_id is required'})
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Section name is required'}
    )


class UpdateSectionSchema(TrimmedSchema):
    name = fields.Str(validate=validate.Length(min=1, max=255))
    position = fields.Int(strict=True, validate=validate.Range(min=0))

# ============================================
# Position 輔助函數
# ============================================

def next_section_position(project_id):
    """新 section 接在最後面: max(position) + 1,沒有 section 時為 0"""
    max_position = db.session.query(func.max(Section.position)).filter(
        Section.project_id == project_id
    ).scalar()
    return 0 if max_position is None else max_position + 1


def move_section(section, new_position):
    """
    把 section 移到 new_position

    夾在舊位置與新位置之間的兄弟 section 往前或往後移一格,
    最後才寫入這個 section 的新位置。呼叫端負責 commit。
    new_position 會被限制在 [0, count - 1]
    """
    sibling_count = Section.query.filter_by(project_id=section.project_id).count()
    new_position = max(0, min(new_position, sibling_count - 1))
    old_position = section.position

    if new_position == old_position:
        return new_position

    siblings = Section.query.filter(
        Section.project_id == section.project_id,
        Section.id != section.id
    )

    if new_position < old_position:
        # 往前移: [new, old) 之間的 section 往後一格
        siblings.filter(
            Section.position >= new_position,
            Section.position < old_position
        ).update({Section.position: Section.position + 1}, synchronize_session=False)
    else:
        # 往後移: (old, new] 之間的 section 往前一格
        siblings.filter(
            Section.position > old_position,
            Section.position <= new_position
        ).update({Section.position: Section.position - 1}, synchronize_session=False)

    section.position = new_position
    return new_position

# ============================================
# 查詢專案的所有 section
# ============================================

@sections_bp.route('/project/<int:project_id>', methods=['GET'])
@jwt_required()
def get_project_sections(project_id):
    """依 position 排序,附上任務數與完成數"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, project, role = check_project_access(project_id, current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    task_stats = db.session.query(
        Task.section_id,
        func.count(Task.id).label('task_count'),
        func.sum(case((Task.status == 'completed', 1), else_=0)).label('completed_task_count')
    ).filter(Task.section_id.isnot(None)).group_by(Task.section_id).subquery()

    rows = db.session.query(
        Section,
        task_stats.c.task_count,
        task_stats.c.completed_task_count
    ).outerjoin(
        task_stats, Section.id == task_stats.c.section_id
    ).filter(
        Section.project_id == project_id
    ).order_by(Section.position).all()

    return jsonify([{
        **serialize_section(section),
        'task_count': task_count or 0,
        'completed_task_count': int(completed_task_count or 0)
    } for section, task_count, completed_task_count in rows]), 200

# ============================================
# 建立 section
# ============================================

@sections_bp.route('', methods=['POST'])
@jwt_required()
def create_section():
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateSectionSchema, data)
    if not is_valid:
        return validation_error_response(result)

    has_access, project, role = check_project_access(result['project_id'], current_user.id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    try:
        section = Section(
            project_id=project.id,
            name=result['name'],
            position=next_section_position(project.id)
        )
        db.session.add(section)
        db.session.commit()

        logger.info(f"Section created: {section.name} in project {project.id} by user {current_user.email}")

        return jsonify(serialize_section(section)), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Section creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Section creation failed due to server error'}), 500

# ============================================
# 更新 section (改名 / 重新排序)
# ============================================

@sections_bp.route('/<int:section_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_section(section_id):
    """
    更新 section 名稱或位置

    位置變更與兄弟 section 的重新編號在同一個 transaction 內完成
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    section = db.session.get(Section, section_id)
    if not section:
        return jsonify({'error': 'Section not found'}), 404

    has_access, project, role = check_project_access(section.project_id, current_user.id)
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateSectionSchema, data)
    if not is_valid:
        return validation_error_response(result)

    try:
        if 'position' in result:
            old_position = section.position
            new_position = move_section(section, result['position'])
            if new_position != old_position:
                logger.info(f"Section {section_id} moved from {old_position} to {new_position}")

        if 'name' in result:
            section.name = result['name']

        db.session.commit()

        return jsonify(serialize_section(section)), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Section update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Section update failed due to server error'}), 500

# ============================================
# 刪除 section
# ============================================

@sections_bp.route('/<int:section_id>', methods=['DELETE'])
@jwt_required()
def delete_section(section_id):
    """
    刪除 section (專案 admin 或 owner)

    moveTasks 參數決定 section 內任務的去向:
    - 未提供: 任務變成沒有 section
    - delete: 任務一併刪除
    - <section id>: 任務移到同專案的另一個 section

    後面的 section 位置往前補,全部在同一個 transaction 內
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    section = db.session.get(Section, section_id)
    if not section:
        return jsonify({'error': 'Section not found'}), 404

    is_admin, project = check_project_admin(section.project_id, current_user.id)
    if not is_admin:
        return jsonify({'error': 'Only project admins can delete sections'}), 403

    move_tasks = request.args.get('moveTasks')
    target_section = None

    if move_tasks and move_tasks != 'delete':
        try:
            target_id = int(move_tasks)
        except ValueError:
            return jsonify({'error': "moveTasks must be 'delete' or a section id"}), 400

        target_section = db.session.get(Section, target_id)
        if (not target_section or target_section.project_id != section.project_id
                or target_section.id == section.id):
            return jsonify({'error': 'Target section must be another section in the same project'}), 400

    try:
        project_id = section.project_id
        removed_position = section.position
        tasks = Task.query.filter_by(section_id=section.id).order_by(Task.position, Task.id).all()

        if move_tasks == 'delete':
            for task in tasks:
                db.session.delete(task)
        else:
            # 移到目標 section (或沒有 section) 的最後面
            target_id = target_section.id if target_section else None
            position = next_task_position(project_id, target_id)
            for task in tasks:
                task.section_id = target_id
                task.position = position
                position += 1

        # 任務的變更要先寫入,section 刪除時才不會把 section_id 清掉
        db.session.flush()

        db.session.delete(section)
        db.session.flush()

        Section.query.filter(
            Section.project_id == project_id,
            Section.position > removed_position
        ).update({Section.position: Section.position - 1}, synchronize_session=False)

        db.session.commit()

        logger.info(
            f"Section {section_id} deleted by user {current_user.email}, "
            f"{len(tasks)} task(s) {'deleted' if move_tasks == 'delete' else 'moved'}"
        )

        return jsonify({'message': 'Section deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Section deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Section deletion failed due to server error'}), 500
