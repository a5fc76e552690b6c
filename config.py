"""
Configuration loader.
Reads settings from the environment (and a .env file) once at start-up.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Weak on purpose so a fresh checkout works out of the box; override in .env
DEFAULT_ADMIN_USERNAME = 'admin'
DEFAULT_ADMIN_PASSWORD = 'password'
DEFAULT_ADMIN_TOKEN = 'admin-token'


def _as_bool(value, default=False):
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class Settings:
    host: str = '0.0.0.0'
    port: int = 3000
    debug: bool = False
    admin_username: str = DEFAULT_ADMIN_USERNAME
    admin_password: str = DEFAULT_ADMIN_PASSWORD
    admin_token: str = DEFAULT_ADMIN_TOKEN
    aws_region: str = 'us-east-1'
    dynamodb_endpoint_url: Optional[str] = None
    table_prefix: str = 'Cinelog'
    movies_file: str = os.path.join(BASE_DIR, 'data', 'movies.json')
    pictures_dir: str = os.path.join(BASE_DIR, 'Pictures')
    bcrypt_rounds: int = 10
    max_username_attempts: int = 1000
    auto_create_tables: bool = True
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, dotenv_path=None):
        """Build settings from os.environ after loading .env"""
        load_dotenv(dotenv_path)
        env = os.environ
        defaults = cls()
        return cls(
            host=env.get('HOST', defaults.host),
            port=int(env.get('PORT', defaults.port)),
            debug=_as_bool(env.get('FLASK_DEBUG')),
            admin_username=env.get('ADMIN_USERNAME', defaults.admin_username),
            admin_password=env.get('ADMIN_PASSWORD', defaults.admin_password),
            admin_token=env.get('ADMIN_TOKEN', defaults.admin_token),
            aws_region=env.get('AWS_REGION', defaults.aws_region),
            dynamodb_endpoint_url=env.get('DYNAMODB_ENDPOINT_URL') or None,
            table_prefix=env.get('TABLE_PREFIX', defaults.table_prefix),
            movies_file=env.get('MOVIES_FILE', defaults.movies_file),
            pictures_dir=env.get('PICTURES_DIR', defaults.pictures_dir),
            bcrypt_rounds=int(env.get('BCRYPT_ROUNDS', defaults.bcrypt_rounds)),
            max_username_attempts=int(env.get('MAX_USERNAME_ATTEMPTS', defaults.max_username_attempts)),
            auto_create_tables=_as_bool(env.get('AUTO_CREATE_TABLES'), defaults.auto_create_tables),
            log_level=env.get('LOG_LEVEL', defaults.log_level).upper(),
        )

    @property
    def uses_default_admin_credentials(self):
        return (
            self.admin_password == DEFAULT_ADMIN_PASSWORD
            or self.admin_token == DEFAULT_ADMIN_TOKEN
        )
