from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from config import Config, get_config
from models import db
from sqlalchemy import text
from datetime import datetime
import click
import logging
from logging.handlers import RotatingFileHandler
import os

# ============================================
# 初始化 Flask App
# ============================================

# 啟動前檢查 production 必要設定
Config.validate()

app = Flask(__name__)
app.config.from_object(get_config())

# ============================================
# CORS 設定
# ============================================

# 不用 '*',只允許設定的來源
CORS(app,
     supports_credentials=True,
     origins=app.config['CORS_ORIGINS'],
     methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
     allow_headers=['Content-Type', 'Authorization'])

# ============================================
# 擴展初始化
# ============================================

db.init_app(app)
jwt = JWTManager(app)
bcrypt = Bcrypt(app)

app.extensions['bcrypt'] = bcrypt

# Rate Limiting: storage / default limits 從 RATELIMIT_* 設定讀取
limiter = Limiter(get_remote_address, app=app)

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. handler 掛在 root logger,各 blueprint 的 module logger 也會寫進檔案
    """
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(info_handler)
    root_logger.addHandler(error_handler)
    root_logger.setLevel(app.config['LOG_LEVEL'])

    app.logger.info('Application startup')


if not app.debug and not app.testing:
    setup_logging(app)
else:
    logging.basicConfig(level=app.config['LOG_LEVEL'])

# ============================================
# 註冊 Blueprints
# ============================================

from auth import auth_bp
app.register_blueprint(auth_bp, url_prefix='/api/auth')

from workspaces import workspaces_bp
app.register_blueprint(workspaces_bp, url_prefix='/api/workspaces')

from projects import projects_bp
app.register_blueprint(projects_bp, url_prefix='/api/projects')

from sections import sections_bp
app.register_blueprint(sections_bp, url_prefix='/api/sections')

from tasks import tasks_bp
app.register_blueprint(tasks_bp, url_prefix='/api/tasks')

from comments import comments_bp
app.register_blueprint(comments_bp, url_prefix='/api/comments')

# ============================================
# 資料庫初始化
# ============================================

with app.app_context():
    db.create_all()
    app.logger.info('Database tables created')


@app.cli.command('init-db')
def init_db_command():
    """建立所有資料表"""
    db.create_all()
    click.echo('Database tables created')

# ============================================
# JWT 錯誤處理
# ============================================

@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    """處理 token 過期"""
    app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
    return jsonify({'error': 'Token has expired'}), 401

@jwt.invalid_token_loader
def invalid_token_callback(error):
    app.logger.warning(f"Invalid token from {request.remote_addr}: {error}")
    return jsonify({'error': 'Invalid token'}), 401

@jwt.unauthorized_loader
def unauthorized_callback(error):
    """缺少 Authorization header"""
    return jsonify({'error': 'No token provided'}), 401

# ============================================
# 全域錯誤處理 (格式與 route 一致: {"error": "<訊息>"})
# ============================================

@app.errorhandler(400)
def bad_request(error):
    return jsonify({'error': 'Bad request'}), 400

@app.errorhandler(404)
def not_found(error):
    return jsonify({'error': 'Route not found'}), 404

@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({'error': 'Method not allowed'}), 405

@app.errorhandler(429)
def rate_limit_exceeded(error):
    app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
    return jsonify({'error': 'Too many requests, please try again later'}), 429

@app.errorhandler(500)
def internal_server_error(error):
    """不洩漏錯誤細節給前端,完整 stack trace 寫到 log"""
    db.session.rollback()
    app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
    return jsonify({'error': 'Server error'}), 500

@app.errorhandler(Exception)
def handle_unexpected_error(error):
    """
    最後一道防線

    HTTPException 保留原本的 status code;
    其他 exception 一律 500,非 production 才帶錯誤細節
    """
    if isinstance(error, HTTPException):
        return jsonify({'error': error.name}), error.code

    db.session.rollback()
    app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

    body = {'error': 'Server error'}
    if app.config['ENV'] != 'production':
        body['detail'] = str(error)

    return jsonify(body), 500

# ============================================
# Request/Response Logging
# ============================================

@app.before_request
def log_request():
    if not app.debug:
        app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

@app.after_request
def log_response(response):
    if not app.debug:
        app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

    # 加上 security headers
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'

    return response

# ============================================
# Health Check Endpoint
# ============================================

@app.route('/health', methods=['GET'])
@limiter.exempt
def health_check():
    """
    健康檢查端點

    用於 load balancer 或監控系統檢查服務是否正常
    """
    try:
        db.session.execute(text('SELECT 1'))

        return jsonify({
            'status': 'healthy',
            'database': 'connected',
            'timestamp': datetime.utcnow().isoformat()
        }), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Health check failed: {str(e)}")
        return jsonify({
            'status': 'unhealthy',
            'database': 'disconnected',
            'error': 'Database connection failed',
            'timestamp': datetime.utcnow().isoformat()
        }), 503

# ============================================
# API 文件
# ============================================

@app.route('/api', methods=['GET'])
@limiter.limit("10 per minute")
def api_docs():
    """API 首頁,列出所有端點"""
    return jsonify({
        'message': 'Asana Clone API',
        'version': app.config['API_VERSION'],
        'endpoints': {
            'health': {
                'GET /health': 'Health check'
            },
            'auth': {
                'POST /api/auth/register': 'Register a new user',
                'POST /api/auth/login': 'Login user',
                'GET /api/auth/me': 'Get current user',
                'PUT /api/auth/profile': 'Update user profile',
                'POST /api/auth/change-password': 'Change password'
            },
            'workspaces': {
                'GET /api/workspaces': 'Get all workspaces for user',
                'GET /api/workspaces/:id': 'Get single workspace',
                'POST /api/workspaces': 'Create workspace',
                'PUT /api/workspaces/:id': 'Update workspace',
                'DELETE /api/workspaces/:id': 'Delete workspace',
                'POST /api/workspaces/:id/members': 'Add member to workspace',
                'DELETE /api/workspaces/:id/members/:userId': 'Remove member from workspace'
            },
            'projects': {
                'GET /api/projects/workspace/:workspaceId': 'Get all projects in workspace',
                'GET /api/projects/:id': 'Get single project',
                'GET /api/projects/:id/stats': 'Get project task statistics',
                'POST /api/projects': 'Create project',
                'PUT /api/projects/:id': 'Update project',
                'DELETE /api/projects/:id': 'Delete project',
                'POST /api/projects/:id/members': 'Add member to project',
                'DELETE /api/projects/:id/members/:userId': 'Remove member from project'
            },
            'sections': {
                'GET /api/sections/project/:projectId': 'Get all sections in project',
                'POST /api/sections': 'Create section',
                'PUT /api/sections/:id': 'Rename or reorder section',
                'DELETE /api/sections/:id?moveTasks=': 'Delete section'
            },
            'tasks': {
                'GET /api/tasks/project/:projectId': 'Get all tasks in project',
                'GET /api/tasks/my': 'Get tasks assigned to me',
                'GET /api/tasks/:id': 'Get single task',
                'POST /api/tasks': 'Create task',
                'PUT /api/tasks/:id': 'Update task',
                'DELETE /api/tasks/:id': 'Delete task',
                'POST /api/tasks/:id/assignees': 'Add assignee to task',
                'DELETE /api/tasks/:id/assignees/:userId': 'Remove assignee from task',
                'POST /api/tasks/:id/dependencies': 'Add task dependency',
                'DELETE /api/tasks/:id/dependencies/:dependsOnTaskId': 'Remove task dependency'
            },
            'comments': {
                'GET /api/comments/task/:taskId': 'Get all comments for task',
                'POST /api/comments': 'Create comment',
                'PUT /api/comments/:id': 'Update comment',
                'DELETE /api/comments/:id': 'Delete comment'
            }
        }
    })

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 應該用 gunicorn 或 uwsgi
    port = int(os.getenv('PORT', 5000))

    app.run(
        debug=app.debug,
        port=port,
        host='0.0.0.0'
    )
