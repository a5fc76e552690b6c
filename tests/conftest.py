import json

import boto3
import pytest
from bcrypt import gensalt, hashpw
from moto import mock_aws

from app import create_app
from config import Settings
from store import DynamoStore, new_id, utc_now


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real AWS account"""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def store():
    with mock_aws():
        resource = boto3.resource('dynamodb', region_name='us-east-1')
        dynamo_store = DynamoStore(resource, table_prefix='Test')
        dynamo_store.create_tables()
        yield dynamo_store


@pytest.fixture
def settings(tmp_path):
    return Settings(
        admin_username='admin',
        admin_password='s3cret',
        admin_token='token-123',
        table_prefix='Test',
        movies_file=str(tmp_path / 'movies.json'),
        pictures_dir=str(tmp_path / 'Pictures'),
        bcrypt_rounds=4,
        auto_create_tables=False,
    )


@pytest.fixture
def app(settings, store):
    flask_app = create_app(settings, store)
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(settings):
    return {'Authorization': f'Bearer {settings.admin_token}'}


@pytest.fixture
def write_movies(settings):
    def _write(data):
        with open(settings.movies_file, 'w', encoding='utf-8') as f:
            json.dump(data, f)
    return _write


@pytest.fixture
def make_legacy_user(store):
    """Insert a user the way accounts looked before usernames existed"""
    def _make(email=None, password='secret'):
        now = utc_now()
        user = {
            'user_id': new_id(),
            'password': hashpw(password.encode('utf-8'), gensalt(4)).decode('utf-8'),
            'created_at': now,
            'updated_at': now,
        }
        if email:
            user['email'] = email
        store.create_user(user)
        return user
    return _make
