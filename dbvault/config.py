import os
import tempfile


BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
DATA_DIR = os.environ.get('DATA_DIR') or os.path.join(BASE_DIR, 'data')


class Config:
    """Base configuration"""

    # Run history database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "dbvault.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Database being backed up
    SOURCE_DATABASE_URL = os.environ.get('SOURCE_DATABASE_URL')

    # Backup
    BACKUP_FORMATS = os.environ.get('BACKUP_FORMATS', 'sql,json')
    BACKUP_COMPRESSION = os.environ.get('BACKUP_COMPRESSION', 'true').lower() == 'true'
    BACKUP_COMPRESSION_LEVEL = int(os.environ.get('BACKUP_COMPRESSION_LEVEL', 6))
    BACKUP_COMPRESSION_ALGORITHM = os.environ.get('BACKUP_COMPRESSION_ALGORITHM', 'gzip')  # gzip or deflate
    BACKUP_BASE_NAME = os.environ.get('BACKUP_BASE_NAME', 'database_backup')
    BACKUP_OUTPUT_DIR = os.environ.get('BACKUP_OUTPUT_DIR') or os.path.join(DATA_DIR, 'backup-files')
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON')  # e.g. '0 2 * * *'
    UPLOAD_FAIL_FAST = os.environ.get('UPLOAD_FAIL_FAST', 'false').lower() == 'true'

    # Remote retention: objects older than BACKUP_RETENTION_DAYS are deleted,
    # the newest BACKUP_RETENTION_KEEP are always kept; 0 days disables cleanup
    BACKUP_RETENTION_DAYS = int(os.environ.get('BACKUP_RETENTION_DAYS', 365))
    BACKUP_RETENTION_KEEP = int(os.environ.get('BACKUP_RETENTION_KEEP', 10))
    RETENTION_SCHEDULE_CRON = os.environ.get('RETENTION_SCHEDULE_CRON', '0 3 * * *')

    # Retry attempts per dependency class
    DATABASE_RETRY_ATTEMPTS = int(os.environ.get('DATABASE_RETRY_ATTEMPTS', 3))
    UPLOAD_RETRY_ATTEMPTS = int(os.environ.get('UPLOAD_RETRY_ATTEMPTS', 4))
    NOTIFICATION_RETRY_ATTEMPTS = int(os.environ.get('NOTIFICATION_RETRY_ATTEMPTS', 3))

    # Deadline for each source database call; 0 disables it
    DATABASE_TIMEOUT_MS = int(os.environ.get('DATABASE_TIMEOUT_MS', 30000))

    # S3
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION', 'us-east-1')
    S3_PREFIX = os.environ.get('S3_PREFIX', 'backups')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # E-mail notifications
    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', 587))
    SMTP_USE_TLS = os.environ.get('SMTP_USE_TLS', 'true').lower() == 'true'
    SMTP_USERNAME = os.environ.get('SMTP_USERNAME')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD')
    EMAIL_FROM = os.environ.get('EMAIL_FROM')
    EMAIL_TO = os.environ.get('EMAIL_TO', '')  # comma separated
    NOTIFICATION_ON_SUCCESS = os.environ.get('NOTIFICATION_ON_SUCCESS', 'true').lower() == 'true'
    NOTIFICATION_ON_FAILURE = os.environ.get('NOTIFICATION_ON_FAILURE', 'true').lower() == 'true'
    NOTIFICATION_ON_PARTIAL = os.environ.get('NOTIFICATION_ON_PARTIAL', 'true').lower() == 'true'
    NOTIFICATION_INCLUDE_DETAILS = os.environ.get('NOTIFICATION_INCLUDE_DETAILS', 'true').lower() == 'true'

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'dbvault-test-logs')
    EMAIL_TO = ''
    SMTP_HOST = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


# Keys shown by `flask show-config`; secrets are masked
SECRET_KEYS = ('AWS_SECRET_ACCESS_KEY', 'SMTP_PASSWORD')
DISPLAY_KEYS = (
    'SOURCE_DATABASE_URL',
    'BACKUP_FORMATS',
    'BACKUP_COMPRESSION',
    'BACKUP_COMPRESSION_LEVEL',
    'BACKUP_COMPRESSION_ALGORITHM',
    'BACKUP_BASE_NAME',
    'BACKUP_OUTPUT_DIR',
    'BACKUP_SCHEDULE_CRON',
    'UPLOAD_FAIL_FAST',
    'BACKUP_RETENTION_DAYS',
    'BACKUP_RETENTION_KEEP',
    'RETENTION_SCHEDULE_CRON',
    'DATABASE_RETRY_ATTEMPTS',
    'UPLOAD_RETRY_ATTEMPTS',
    'NOTIFICATION_RETRY_ATTEMPTS',
    'DATABASE_TIMEOUT_MS',
    'S3_BUCKET',
    'S3_REGION',
    'S3_PREFIX',
    'S3_ENDPOINT_URL',
    'AWS_ACCESS_KEY_ID',
    'AWS_SECRET_ACCESS_KEY',
    'SMTP_HOST',
    'SMTP_PORT',
    'SMTP_USE_TLS',
    'SMTP_USERNAME',
    'SMTP_PASSWORD',
    'EMAIL_FROM',
    'EMAIL_TO',
    'NOTIFICATION_ON_SUCCESS',
    'NOTIFICATION_ON_FAILURE',
    'NOTIFICATION_ON_PARTIAL',
    'NOTIFICATION_INCLUDE_DETAILS',
)
