import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'dbvault.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    ))

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # app.logger is the 'dbvault' logger, parent of every pipeline module logger
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dbvault.config import config
    app.config.from_object(config[config_name])

    configure_logging(app)

    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and database_uri != 'sqlite:///:memory:':
        os.makedirs(os.path.dirname(os.path.abspath(database_uri.replace('sqlite:///', ''))), exist_ok=True)

    db.init_app(app)

    from dbvault.routes import runs_routes
    app.register_blueprint(runs_routes.bp)

    from dbvault.cli import register_commands
    register_commands(app)

    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    from dbvault import models  # noqa: F401  registers tables
    with app.app_context():
        db.create_all()

    if app.config.get('SCHEDULER_ENABLED', True):
        _start_scheduler(app)
    else:
        app.logger.info("Scheduler disabled by configuration")

    return app


def _start_scheduler(app):
    """Start the scheduler in the designated process only."""
    from dbvault.scheduler import (
        init_scheduler, start_scheduler, stop_scheduler, sync_retention_schedule, sync_schedule
    )
    import atexit

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Development: only the reloader child. Production: only the designated worker.
    if app.config.get('DEBUG', False):
        should_init_scheduler = is_reloader_child
    else:
        should_init_scheduler = is_scheduler_worker

    if not should_init_scheduler:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")
        return

    init_scheduler(app)
    start_scheduler()
    sync_schedule(app.config.get('BACKUP_SCHEDULE_CRON'))
    sync_retention_schedule(
        app.config.get('RETENTION_SCHEDULE_CRON'),
        int(app.config.get('BACKUP_RETENTION_DAYS') or 0),
    )

    atexit.register(stop_scheduler)
    app.logger.info("Scheduler initialized and started successfully")
