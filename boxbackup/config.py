import os
import json
import logging
import tempfile
from dataclasses import dataclass, field, asdict
from typing import Optional


logger = logging.getLogger(__name__)


class Config:
    """Base configuration"""

    DEBUG = False

    # Settings file and logs
    CONFIG_DIR = os.environ.get('BOXBACKUP_CONFIG_DIR') or os.path.join(os.path.expanduser('~'), '.box-backup')
    LOG_DIR = os.environ.get('BOXBACKUP_LOG_DIR') or os.path.join(CONFIG_DIR, 'logs')

    # Working directory for archives before they are moved into the output directory
    TEMP_DIR = os.environ.get('TEMP_DIR') or tempfile.gettempdir()

    # Upload
    CHUNKED_UPLOAD_THRESHOLD = int(os.environ.get('CHUNKED_UPLOAD_THRESHOLD', 20 * 1024 * 1024))
    UPLOAD_MAX_WORKERS = int(os.environ.get('UPLOAD_MAX_WORKERS', 4))
    SESSION_POLL_INTERVAL = float(os.environ.get('SESSION_POLL_INTERVAL', 2.0))
    SESSION_POLL_TIMEOUT = float(os.environ.get('SESSION_POLL_TIMEOUT', 600.0))

    # HTTP
    HTTP_TIMEOUT = float(os.environ.get('HTTP_TIMEOUT', 60.0))
    HTTP_RETRIES = int(os.environ.get('HTTP_RETRIES', 3))

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Keep everything inside the project directory
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONFIG_DIR = os.path.join(DATA_DIR, 'config')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: Optional[str] = None):
    """Return the configuration class selected by name or BOXBACKUP_ENV."""
    if config_name is None:
        config_name = os.environ.get('BOXBACKUP_ENV', 'default')
    return config.get(config_name, ProductionConfig)


class ConfigurationError(Exception):
    """Raised when backup settings are missing or invalid."""
    pass


SETTINGS_FILENAME = 'config.json'
DEFAULT_BACKUP_LIMIT = 50
DEFAULT_FOLDER_NAME = 'minecraftBackups'


@dataclass
class BoxSettings:
    """Box credentials and the remote folder that holds the backups."""
    backup_folder_name: str = DEFAULT_FOLDER_NAME
    client_id: str = ''
    client_secret: str = ''
    subject_type: str = ''
    subject_id: str = ''


@dataclass
class BackupSettings:
    """User settings stored in <CONFIG_DIR>/config.json."""
    backup_limit: int = DEFAULT_BACKUP_LIMIT
    schedule_cron: Optional[str] = None
    box: BoxSettings = field(default_factory=BoxSettings)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'BackupSettings':
        box_data = data.get('box') or {}
        box = BoxSettings(**{
            key: str(value) for key, value in box_data.items()
            if key in BoxSettings.__dataclass_fields__ and value is not None
        })

        try:
            backup_limit = int(data.get('backup_limit', DEFAULT_BACKUP_LIMIT))
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid backup_limit: {data.get('backup_limit')!r}")

        return cls(
            backup_limit=backup_limit,
            schedule_cron=data.get('schedule_cron') or None,
            box=box
        )


# Environment variables that take precedence over the settings file
ENV_OVERRIDES = {
    'BOX_CLIENT_ID': 'client_id',
    'BOX_CLIENT_SECRET': 'client_secret',
    'BOX_SUBJECT_TYPE': 'subject_type',
    'BOX_SUBJECT_ID': 'subject_id',
    'BOX_BACKUP_FOLDER_NAME': 'backup_folder_name',
}


def initialize_settings(config_dir: str) -> str:
    """
    Write a settings file with default values.

    Args:
        config_dir: Directory that holds config.json

    Returns:
        Path of the settings file
    """
    logger.info("Creating new config file")
    os.makedirs(config_dir, exist_ok=True)

    settings_path = os.path.join(config_dir, SETTINGS_FILENAME)
    with open(settings_path, 'w') as f:
        json.dump(BackupSettings().to_dict(), f, indent=2)

    return settings_path


def load_settings(config_dir: str) -> BackupSettings:
    """
    Load backup settings, creating the settings file on first use.

    Values from the environment override the file.

    Args:
        config_dir: Directory that holds config.json

    Returns:
        BackupSettings instance

    Raises:
        ConfigurationError: If the settings file cannot be parsed
    """
    settings_path = os.path.join(config_dir, SETTINGS_FILENAME)

    if not os.path.exists(settings_path):
        initialize_settings(config_dir)

    try:
        with open(settings_path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid settings file {settings_path}: {e}")

    settings = BackupSettings.from_dict(data)

    for env_name, attribute in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            setattr(settings.box, attribute, value)

    if os.environ.get('BACKUP_LIMIT'):
        try:
            settings.backup_limit = int(os.environ['BACKUP_LIMIT'])
        except ValueError:
            raise ConfigurationError(f"Invalid BACKUP_LIMIT: {os.environ['BACKUP_LIMIT']!r}")

    return settings


def validate_settings(settings: BackupSettings):
    """
    Ensure every value the pipeline needs is present.

    Raises:
        ConfigurationError: Naming the first missing value
    """
    box = settings.box

    required_fields = [
        (box.backup_folder_name, 'backup_folder_name'),
        (box.client_id, 'client_id'),
        (box.client_secret, 'client_secret'),
        (box.subject_type, 'subject_type'),
        (box.subject_id, 'subject_id'),
    ]

    for value, name in required_fields:
        if not value:
            raise ConfigurationError(f"Missing box {name}")

    if not settings.backup_limit:
        raise ConfigurationError("Missing backup_limit")

    if settings.backup_limit < 1:
        raise ConfigurationError(f"backup_limit must be at least 1, got {settings.backup_limit}")
