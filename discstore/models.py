import json
from datetime import datetime
from discstore import db


class Settings(db.Model):
    """Pipeline configuration supplied to every store request"""
    __tablename__ = 'settings'

    id = db.Column(db.Integer, primary_key=True)
    compression_type = db.Column(db.String(20), nullable=False, default='lzma')  # lzma, zstd
    compression_level = db.Column(db.Integer, nullable=False, default=9)  # 0-9
    token = db.Column(db.Text, nullable=False, default='')  # Bot token for the remote backend
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @classmethod
    def current(cls):
        """Return the settings row, creating the default one if missing."""
        settings = cls.query.first()
        if settings is None:
            settings = cls()
            db.session.add(settings)
            db.session.commit()
        return settings

    def __repr__(self):
        return f'<Settings type={self.compression_type} level={self.compression_level}>'


class StorageEntry(db.Model):
    """Persisted storage record: a named backup set and its artifact"""
    __tablename__ = 'storage_entries'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    files = db.Column(db.Text, nullable=False)  # JSON list of original source paths
    artifact_path = db.Column(db.String(1024), nullable=False)
    compression_type = db.Column(db.String(20), nullable=False)
    size_bytes = db.Column(db.BigInteger)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def file_list(self):
        return json.loads(self.files)

    @classmethod
    def from_record(cls, record):
        """Build an entry from a pipeline StorageRecord"""
        return cls(
            name=record.name,
            files=json.dumps(list(record.files)),
            artifact_path=record.artifact_path,
            compression_type=record.kind.value,
            size_bytes=record.size_bytes,
            created_at=record.created_at
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'files': self.file_list,
            'artifact_path': self.artifact_path,
            'compression_type': self.compression_type,
            'size_bytes': self.size_bytes,
            'size_mb': round(self.size_bytes / 1024 / 1024, 2) if self.size_bytes else None,
            'created_at': self.created_at.isoformat()
        }

    def __repr__(self):
        return f'<StorageEntry {self.name} type={self.compression_type}>'
