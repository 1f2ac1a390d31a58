from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func
from sqlalchemy.orm import joinedload, selectinload
from marshmallow import fields, validate
from models import db, Comment
from auth import (
    TrimmedSchema, get_current_user, get_json_body,
    validate_request_data, validation_error_response
)
from projects import check_project_admin
from tasks import check_task_access
import logging

comments_bp = Blueprint('comments', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateCommentSchema(TrimmedSchema):
    task_id = fields.Int(required=True, error_messages={'required': 'task_id is required'})
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, error='Content is required'),
        error_messages={'required': 'Content is required'}
    )
    parent_id = fields.Int(allow_none=True)


class UpdateCommentSchema(TrimmedSchema):
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, error='Content is required'),
        error_messages={'required': 'Content is required'}
    )


def serialize_comment(comment):
    """留言加上作者資訊"""
    return {
        'id': comment.id,
        'task_id': comment.task_id,
        'user_id': comment.user_id,
        'parent_id': comment.parent_id,
        'content': comment.content,
        'user_name': comment.user.name,
        'user_email': comment.user.email,
        'user_avatar': comment.user.avatar_url,
        'created_at': comment.created_at.isoformat() if comment.created_at else None,
        'updated_at': comment.updated_at.isoformat() if comment.updated_at else None
    }

# ============================================
# 查詢任務的留言
# ============================================

@comments_bp.route('/task/<int:task_id>', methods=['GET'])
@jwt_required()
def get_task_comments(task_id):
    """
    查詢任務的留言

    最上層留言由新到舊,回覆由舊到新
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    has_access, task, role = check_task_access(task_id, current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    comments = Comment.query.options(
        joinedload(Comment.user),
        selectinload(Comment.replies).joinedload(Comment.user)
    ).filter(
        Comment.task_id == task_id,
        Comment.parent_id.is_(None)
    ).order_by(Comment.created_at.desc(), Comment.id.desc()).all()

    return jsonify([{
        **serialize_comment(comment),
        'reply_count': len(comment.replies),
        'replies': [serialize_comment(reply) for reply in comment.replies]
    } for comment in comments]), 200

# ============================================
# 新增留言
# ============================================

@comments_bp.route('', methods=['POST'])
@jwt_required()
def create_comment():
    """
    新增留言或回覆

    回覆只有一層: parent 必須是同一個任務的最上層留言
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateCommentSchema, data)
    if not is_valid:
        return validation_error_response(result)

    has_access, task, role = check_task_access(result['task_id'], current_user.id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    if not has_access:
        return jsonify({'error': 'Access denied'}), 403

    parent_id = result.get('parent_id')
    if parent_id is not None:
        parent = db.session.get(Comment, parent_id)
        if not parent or parent.task_id != task.id or parent.parent_id is not None:
            return jsonify({'error': 'Invalid parent comment'}), 400

    try:
        comment = Comment(
            task_id=task.id,
            user_id=current_user.id,
            parent_id=parent_id,
            content=result['content']
        )
        db.session.add(comment)
        db.session.commit()

        logger.info(f"Comment {comment.id} added to task {task.id} by user {current_user.email}")

        return jsonify(serialize_comment(comment)), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Comment creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Comment creation failed due to server error'}), 500

# ============================================
# 更新留言
# ============================================

@comments_bp.route('/<int:comment_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_comment(comment_id):
    """只有作者能修改"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    comment = db.session.get(Comment, comment_id)
    if not comment:
        return jsonify({'error': 'Comment not found'}), 404

    if comment.user_id != current_user.id:
        return jsonify({'error': 'Only comment owner can update'}), 403

    data = get_json_body()
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateCommentSchema, data)
    if not is_valid:
        return validation_error_response(result)

    try:
        comment.content = result['content']
        db.session.commit()

        logger.info(f"Comment {comment_id} updated by user {current_user.email}")

        return jsonify(serialize_comment(comment)), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Comment update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Comment update failed due to server error'}), 500

# ============================================
# 刪除留言
# ============================================

@comments_bp.route('/<int:comment_id>', methods=['DELETE'])
@jwt_required()
def delete_comment(comment_id):
    """作者或專案管理員能刪除,回覆一併刪除"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    comment = db.session.get(Comment, comment_id)
    if not comment:
        return jsonify({'error': 'Comment not found'}), 404

    if comment.user_id != current_user.id:
        is_admin, project = check_project_admin(comment.task.project_id, current_user.id)
        if not is_admin:
            return jsonify({'error': 'Only comment owner or project admin can delete'}), 403

    try:
        reply_count = db.session.query(func.count(Comment.id)).filter(
            Comment.parent_id == comment.id
        ).scalar()

        db.session.delete(comment)
        db.session.commit()

        logger.info(
            f"Comment {comment_id} deleted by user {current_user.email} with {reply_count} replies"
        )

        return jsonify({'message': 'Comment deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Comment deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Comment deletion failed due to server error'}), 500
