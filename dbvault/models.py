import json
from datetime import datetime

from dbvault import db


class BackupRun(db.Model):
    """One execution of the backup pipeline"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    trigger = db.Column(db.String(20), nullable=False, default='manual')  # manual, scheduled, cli, api
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failure
    started_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    completed_at = db.Column(db.DateTime)
    duration_ms = db.Column(db.Integer)
    total_artifacts = db.Column(db.Integer, default=0, nullable=False)
    succeeded = db.Column(db.Integer, default=0, nullable=False)
    failed = db.Column(db.Integer, default=0, nullable=False)
    total_raw_bytes = db.Column(db.BigInteger, default=0, nullable=False)
    total_packaged_bytes = db.Column(db.BigInteger, default=0, nullable=False)
    compression_ratio = db.Column(db.Float)
    aborted = db.Column(db.Boolean, default=False, nullable=False)
    errors = db.Column(db.Text)  # JSON list of failure strings
    notification = db.Column(db.String(20))  # success, partial, failure, skipped, error
    notification_error = db.Column(db.Text)
    logs = db.Column(db.Text)

    artifacts = db.relationship(
        'BackupArtifact',
        back_populates='run',
        cascade='all, delete-orphan',
        order_by='BackupArtifact.position'
    )

    @property
    def error_list(self) -> list:
        return json.loads(self.errors) if self.errors else []

    def to_dict(self, include_logs: bool = False) -> dict:
        data = {
            'id': self.id,
            'trigger': self.trigger,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_ms': self.duration_ms,
            'total_artifacts': self.total_artifacts,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'total_raw_bytes': self.total_raw_bytes,
            'total_packaged_bytes': self.total_packaged_bytes,
            'compression_ratio': self.compression_ratio,
            'aborted': self.aborted,
            'errors': self.error_list,
            'notification': self.notification,
            'notification_error': self.notification_error,
            'has_logs': bool(self.logs),
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun id={self.id} status={self.status} trigger={self.trigger}>'


class BackupArtifact(db.Model):
    """One file produced by a backup run and its upload outcome"""
    __tablename__ = 'backup_artifacts'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)  # export order within the run
    name = db.Column(db.String(255), nullable=False)
    format = db.Column(db.String(10), nullable=False)  # sql, json, xlsx
    raw_size = db.Column(db.BigInteger, nullable=False)
    packaged_size = db.Column(db.BigInteger)  # only set when compressed
    compressed = db.Column(db.Boolean, default=False, nullable=False)
    checksum = db.Column(db.String(64), nullable=False)
    upload_status = db.Column(db.String(20), nullable=False)  # success, failed
    remote_location = db.Column(db.String(1024))
    remote_id = db.Column(db.String(1024))
    attempts = db.Column(db.Integer, default=0, nullable=False)
    error = db.Column(db.Text)

    run = db.relationship('BackupRun', back_populates='artifacts')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'format': self.format,
            'raw_size': self.raw_size,
            'packaged_size': self.packaged_size,
            'compressed': self.compressed,
            'checksum': self.checksum,
            'upload_status': self.upload_status,
            'remote_location': self.remote_location,
            'remote_id': self.remote_id,
            'attempts': self.attempts,
            'error': self.error,
        }

    def __repr__(self):
        return f'<BackupArtifact {self.name} status={self.upload_status}>'
