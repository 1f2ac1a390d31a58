from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()

WORKSPACE_ROLES = ('admin', 'member')
PROJECT_ROLES = ('admin', 'member')
PROJECT_STATUSES = ('active', 'archived', 'on_hold')
PROJECT_VIEW_TYPES = ('list', 'board', 'timeline', 'calendar')
TASK_STATUSES = ('todo', 'in_progress', 'completed', 'blocked')
TASK_PRIORITIES = ('low', 'medium', 'high', 'urgent')

# ============================================
# 1. User 模型
# ============================================
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    avatar_url = db.Column(db.String(500))
    role = db.Column(db.String(20), nullable=False, default='member')
    is_active = db.Column(db.Boolean, default=True)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 關聯
    owned_workspaces = db.relationship('Workspace', backref='owner', lazy=True)
    owned_projects = db.relationship('Project', backref='owner', lazy=True)
    tasks_created = db.relationship('Task', backref='creator', lazy=True)
    comments = db.relationship('Comment', backref='user', lazy=True)

# ============================================
# 2. Workspace 模型
# ============================================
class Workspace(db.Model):
    __tablename__ = 'workspaces'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 刪除 workspace 時一併刪除成員與專案
    members = db.relationship('WorkspaceMember', backref='workspace', lazy=True, cascade='all,delete-orphan')
    projects = db.relationship('Project', backref='workspace', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_workspace_owner', 'owner_id'),
    )

# ============================================
# 3. WorkspaceMember 模型
# ============================================
class WorkspaceMember(db.Model):
    __tablename__ = 'workspace_members'

    id = db.Column(db.Integer, primary_key=True)
    workspace_id = db.Column(db.Integer, db.ForeignKey('workspaces.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='member')  # admin or member
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref='workspace_memberships')

    __table_args__ = (
        db.UniqueConstraint('workspace_id', 'user_id', name='unique_workspace_member'),
    )

# ============================================
# 4. Project 模型
# ============================================
class Project(db.Model):
    __tablename__ = 'projects'

    id = db.Column(db.Integer, primary_key=True)
    workspace_id = db.Column(db.Integer, db.ForeignKey('workspaces.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    color = db.Column(db.String(7), default='#6B46C1')
    icon = db.Column(db.String(50))
    status = db.Column(db.String(20), nullable=False, default='active')  # active, archived, on_hold
    view_type = db.Column(db.String(20), nullable=False, default='list')  # list, board, timeline, calendar
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    start_date = db.Column(db.Date)
    due_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 關聯
    members = db.relationship('ProjectMember', backref='project', lazy=True, cascade='all,delete-orphan')
    sections = db.relationship('Section', backref='project', lazy=True, cascade='all,delete-orphan',
                               order_by='Section.position')
    tasks = db.relationship('Task', backref='project', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_project_workspace', 'workspace_id'),
        db.Index('idx_project_owner', 'owner_id'),
    )

# ============================================
# 5. ProjectMember 模型
# ============================================
class ProjectMember(db.Model):
    __tablename__ = 'project_members'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='member')  # admin or member
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref='project_memberships')

    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

# ============================================
# 6. Section 模型
# ============================================
class Section(db.Model):
    __tablename__ = 'sections'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)  # 每個專案內從 0 開始連續
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 刪除 section 時 task 的處理由 sections.delete_section 決定
    tasks = db.relationship('Task', backref='section', lazy=True)

    __table_args__ = (
        db.Index('idx_section_project_position', 'project_id', 'position'),
    )

# ============================================
# 7. Task 模型
# ============================================
class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('sections.id'), nullable=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='todo')  # todo, in_progress, completed, blocked
    priority = db.Column(db.String(20), nullable=False, default='medium')  # low, medium, high, urgent
    due_date = db.Column(db.Date)
    start_date = db.Column(db.Date)
    creator_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    tags = db.Column(db.JSON, default=list)
    custom_fields = db.Column(db.JSON, default=dict)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 關聯
    assignee_links = db.relationship('TaskAssignee', backref='task', lazy=True, cascade='all,delete-orphan')
    comments = db.relationship('Comment', backref='task', lazy=True, cascade='all,delete-orphan')
    attachments = db.relationship('Attachment', backref='task', lazy=True, cascade='all,delete-orphan')
    dependencies = db.relationship('TaskDependency', foreign_keys='TaskDependency.task_id',
                                   backref='dependent_task', cascade='all,delete-orphan')
    dependents = db.relationship('TaskDependency', foreign_keys='TaskDependency.depends_on_task_id',
                                 backref='depends_on', cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_task_project_status', 'project_id', 'status'),
        db.Index('idx_task_section_position', 'section_id', 'position'),
        db.Index('idx_task_due_date', 'due_date'),
    )

# ============================================
# 8. TaskAssignee 模型
# ============================================
class TaskAssignee(db.Model):
    __tablename__ = 'task_assignees'

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('tasks.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    assigned_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref='task_assignments')

    __table_args__ = (
        db.UniqueConstraint('task_id', 'user_id', name='unique_task_assignee'),
    )

# ============================================
# 9. TaskDependency 模型
# ============================================
class TaskDependency(db.Model):
    __tablename__ = 'task_dependencies'

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('tasks.id'), nullable=False)
    depends_on_task_id = db.Column(db.Integer, db.ForeignKey('tasks.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('task_id', 'depends_on_task_id', name='unique_dependency'),
    )

# ============================================
# 10. Comment 模型
# ============================================
class Comment(db.Model):
    __tablename__ = 'comments'

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('tasks.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey('comments.id'), nullable=True)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 自我關聯（一層回覆）
    replies = db.relationship('Comment', backref=db.backref('parent', remote_side=[id]),
                              cascade='all,delete-orphan', order_by='Comment.created_at')

# ============================================
# 11. Attachment 模型
# ============================================
class Attachment(db.Model):
    __tablename__ = 'attachments'

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('tasks.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    filename = db.Column(db.String(255), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.Integer)
    mime_type = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
