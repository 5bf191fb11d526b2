from datetime import datetime
from fortress import db


class SSHKey(db.Model):
    """Stored SSH credentials (private key and optional passphrase)"""
    __tablename__ = 'ssh_keys'

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    private_key_data = db.Column(db.Text, nullable=False)  # JSON payload when encrypted
    passphrase = db.Column(db.Text, nullable=True)  # JSON payload when encrypted
    is_encrypted = db.Column(db.Boolean, default=True, nullable=False)
    expiry_date = db.Column(db.DateTime, nullable=True)
    key_order = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<SSHKey {self.name} encrypted={self.is_encrypted}>'
