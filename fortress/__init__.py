import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'fortress.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Engine loggers
    logging.getLogger('fortress').setLevel(log_level)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None):
    """
    Application factory.

    Wires configuration, logging and the credential store used by the
    backup engine. Route layers register their blueprints on the returned app.
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from fortress.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure the sqlite directory exists
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Create credential store tables
    from fortress import models  # noqa: F401
    with app.app_context():
        db.create_all()

    # Secret resolver bound to this app's master key
    from fortress.utils.credentials import get_secret_resolver
    app.extensions['fortress.resolver'] = get_secret_resolver(app)

    app.logger.info(f"Fortress engine initialized (config: {config_name})")

    return app
