import os
import tempfile


def _env_float(name, default=None):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return float(value)


class Config:
    """Base configuration"""

    # Master secret used to decrypt stored SSH credentials
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        # Try to read from persistent file in /data directory
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Fallback for development mode - stored keys will not decrypt across restarts
            import secrets
            SECRET_KEY = secrets.token_hex(32)
            print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")

    # Older master secrets, tried in order after SECRET_KEY (version, secret)
    LEGACY_SECRET_KEYS = (
        ('v0', 'fortress-secret-key-change-in-production'),
    )

    # Database (credential store)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/fortress.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # SSH
    SSH_CONNECT_TIMEOUT = _env_float('SSH_CONNECT_TIMEOUT', 30.0)
    COMMAND_TIMEOUT = _env_float('COMMAND_TIMEOUT')  # None = wait for the tool to finish

    # Execution logs
    LOG_QUEUE_SIZE = int(os.environ.get('LOG_QUEUE_SIZE', 1000))

    # Pull mode temporary key files
    KEYFILE_DIR = os.environ.get('KEYFILE_DIR') or tempfile.gettempdir()

    # Tool environment
    BORG_CACHE_DIR = os.environ.get('BORG_CACHE_DIR') or '/tmp/borg-cache'
    SFTP_MOUNT_ROOT = '/tmp'

    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "fortress.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class TestingConfig(Config):
    """Test configuration"""
    DEBUG = True
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'fortress-test-logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
