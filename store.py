"""
Storage layer - DynamoDB tables behind the catalog.

Tables (names are prefixed, e.g. Cinelog_Users):
    Users     hash key user_id
    UserKeys  hash key user_key ("username#<name>" / "email#<addr>" -> user_id)
    Movies    hash key title
    Reviews   hash key review_id
    Contacts  hash key contact_id

DynamoDB has no secondary unique indexes, so username/email uniqueness is
held by the UserKeys table: every write that introduces a username or email
puts its key item with attribute_not_exists inside the same transaction.
"""

import logging
import os
import re
import threading
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError
from werkzeug.utils import secure_filename

from errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

USERNAME_KEY = 'username#{}'
EMAIL_KEY = 'email#{}'

TABLE_KEYS = {
    'Users': 'user_id',
    'UserKeys': 'user_key',
    'Movies': 'title',
    'Reviews': 'review_id',
    'Contacts': 'contact_id',
}

# Attributes managed by the store itself; never taken from a payload
MOVIE_MANAGED_FIELDS = ('title', 'movie_id', 'created_at', 'updated_at')


def utc_now():
    """ISO-8601 UTC timestamp with microseconds, sortable as a string"""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def new_id():
    return uuid.uuid4().hex


# Storage attribute -> JSON API field
API_FIELD_NAMES = {
    'created_at': 'createdAt',
    'updated_at': 'updatedAt',
    'first_name': 'firstName',
    'last_name': 'lastName',
}


def to_api(item, id_field):
    """Rename a stored item's id and timestamp attributes to the API's names"""
    record = {}
    for key, value in item.items():
        if key == id_field:
            record['id'] = value
        else:
            record[API_FIELD_NAMES.get(key, key)] = value
    return record


def connect(region_name, endpoint_url=None):
    """Create the boto3 DynamoDB resource"""
    return boto3.resource('dynamodb', region_name=region_name, endpoint_url=endpoint_url)


def scan_all(table, **kwargs):
    """Scan a whole table, following LastEvaluatedKey pagination"""
    response = table.scan(**kwargs)
    items = response.get('Items', [])

    while 'LastEvaluatedKey' in response:
        response = table.scan(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
        items.extend(response.get('Items', []))

    return items


def count_items(table):
    response = table.scan(Select='COUNT')
    count = response.get('Count', 0)

    while 'LastEvaluatedKey' in response:
        response = table.scan(Select='COUNT', ExclusiveStartKey=response['LastEvaluatedKey'])
        count += response.get('Count', 0)

    return count


def coerce_rating(value):
    """Coerce a rating to an int in [1, 5]; anything else is rejected"""
    message = 'rating must be an integer between 1 and 5'
    if isinstance(value, bool):
        raise ValidationError(message)
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(message)

    if not number.is_finite() or number != number.to_integral_value() or not 1 <= number <= 5:
        raise ValidationError(message)
    return int(number)


def _is_cancelled_by_condition(error):
    """True when a transaction was cancelled by a failed condition check"""
    if error.response.get('Error', {}).get('Code') != 'TransactionCanceledException':
        return False
    codes = [reason.get('Code') for reason in error.response.get('CancellationReasons', [])]
    return not codes or 'ConditionalCheckFailed' in codes


class DynamoStore:
    """Persistence for users, movies, reviews and contact messages"""

    def __init__(self, resource, table_prefix='Cinelog'):
        self.table_prefix = table_prefix
        # Clients are thread-safe and resource.meta.client accepts plain Python
        # values (no {'S': ...} wrapping); resources are not thread-safe
        self.client = resource.meta.client
        self._local = threading.local()
        self._local.resource = resource

    def _resource(self):
        """The DynamoDB resource owned by the calling thread"""
        resource = getattr(self._local, 'resource', None)
        if resource is None:
            resource = boto3.session.Session().resource(
                'dynamodb',
                region_name=self.client.meta.region_name,
                endpoint_url=self.client.meta.endpoint_url,
            )
            self._local.resource = resource
        return resource

    def _table(self, name):
        return self._resource().Table(self.table_name(name))

    @property
    def users(self):
        return self._table('Users')

    @property
    def user_keys(self):
        return self._table('UserKeys')

    @property
    def movies(self):
        return self._table('Movies')

    @property
    def reviews(self):
        return self._table('Reviews')

    @property
    def contacts(self):
        return self._table('Contacts')

    def table_name(self, name):
        return f'{self.table_prefix}_{name}'

    # ------------------------------------------------------------------
    # Bootstrap / diagnostics
    # ------------------------------------------------------------------
    def create_tables(self):
        """Create any missing tables (on-demand billing)"""
        existing = set()
        for page in self.client.get_paginator('list_tables').paginate():
            existing.update(page.get('TableNames', []))

        for name, key in TABLE_KEYS.items():
            table_name = self.table_name(name)
            if table_name in existing:
                continue
            self.client.create_table(
                TableName=table_name,
                KeySchema=[{'AttributeName': key, 'KeyType': 'HASH'}],
                AttributeDefinitions=[{'AttributeName': key, 'AttributeType': 'S'}],
                BillingMode='PAY_PER_REQUEST',
            )
            self.client.get_waiter('table_exists').wait(TableName=table_name)
            logger.info(f"✅ Created table {table_name}")

    def status(self):
        """Report whether the Users table is reachable"""
        try:
            self.client.describe_table(TableName=self.users.name)
            return 'connected'
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"⚠️  DynamoDB not reachable: {e}")
            return 'disconnected'

    def counts(self):
        return {
            'userCount': count_items(self.users),
            'reviewCount': count_items(self.reviews),
            'movieCount': count_items(self.movies),
        }

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def get_user(self, user_id):
        return self.users.get_item(Key={'user_id': user_id}).get('Item')

    def _user_for_key(self, user_key):
        item = self.user_keys.get_item(Key={'user_key': user_key}).get('Item')
        if not item:
            return None
        return self.get_user(item['user_id'])

    def find_user_by_username(self, username):
        return self._user_for_key(USERNAME_KEY.format(username))

    def find_user_by_email(self, email):
        return self._user_for_key(EMAIL_KEY.format(email))

    def _key_exists(self, user_key):
        return 'Item' in self.user_keys.get_item(Key={'user_key': user_key})

    def username_taken(self, username):
        return self._key_exists(USERNAME_KEY.format(username))

    def email_in_use(self, email):
        return self._key_exists(EMAIL_KEY.format(email))

    def _put_unique(self, table, item, key):
        return {
            'Put': {
                'TableName': table.name,
                'Item': item,
                'ConditionExpression': 'attribute_not_exists(#key)',
                'ExpressionAttributeNames': {'#key': key},
            }
        }

    def create_user(self, user):
        """Write a user and its username/email keys in one transaction"""
        user_id = user['user_id']
        items = [self._put_unique(self.users, user, 'user_id')]
        if user.get('email'):
            items.append(self._put_unique(
                self.user_keys, {'user_key': EMAIL_KEY.format(user['email']), 'user_id': user_id}, 'user_key'))
        if user.get('username'):
            items.append(self._put_unique(
                self.user_keys, {'user_key': USERNAME_KEY.format(user['username']), 'user_id': user_id}, 'user_key'))

        try:
            self.client.transact_write_items(TransactItems=items)
        except ClientError as e:
            if not _is_cancelled_by_condition(e):
                raise
            if user.get('email') and self.email_in_use(user['email']):
                raise ConflictError('Email already in use')
            raise ConflictError('Username already taken')
        return user

    def claim_username(self, user_id, username):
        """
        Assign a username to a user that has none.
        Returns False if the name (or the user's username slot) was taken first.
        """
        key_item = {'user_key': USERNAME_KEY.format(username), 'user_id': user_id}
        try:
            self.client.transact_write_items(TransactItems=[
                self._put_unique(self.user_keys, key_item, 'user_key'),
                {
                    'Update': {
                        'TableName': self.users.name,
                        'Key': {'user_id': user_id},
                        'UpdateExpression': 'SET #username = :username, updated_at = :now',
                        'ConditionExpression': 'attribute_exists(user_id) AND attribute_not_exists(#username)',
                        'ExpressionAttributeNames': {'#username': 'username'},
                        'ExpressionAttributeValues': {':username': username, ':now': utc_now()},
                    }
                },
            ])
        except ClientError as e:
            if _is_cancelled_by_condition(e):
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # Movies
    # ------------------------------------------------------------------
    def list_movies(self):
        return scan_all(self.movies)

    def get_movie(self, title):
        return self.movies.get_item(Key={'title': title}).get('Item')

    def upsert_movie(self, title, fields):
        """
        Shallow-merge fields into the movie keyed by title, creating it if needed.
        Attributes not named in fields are left untouched. Returns the stored item.
        """
        now = utc_now()
        names = {}
        values = {':now': now, ':movie_id': new_id()}
        assignments = []

        for i, (field, value) in enumerate(sorted(fields.items())):
            if field in MOVIE_MANAGED_FIELDS:
                continue
            names[f'#f{i}'] = field
            values[f':v{i}'] = value
            assignments.append(f'#f{i} = :v{i}')

        assignments += [
            'updated_at = :now',
            'created_at = if_not_exists(created_at, :now)',
            'movie_id = if_not_exists(movie_id, :movie_id)',
        ]

        kwargs = {
            'Key': {'title': title},
            'UpdateExpression': 'SET ' + ', '.join(assignments),
            'ExpressionAttributeValues': values,
            'ReturnValues': 'ALL_NEW',
        }
        if names:
            kwargs['ExpressionAttributeNames'] = names

        return self.movies.update_item(**kwargs)['Attributes']

    def find_movie_by_id(self, movie_id):
        matches = scan_all(self.movies, FilterExpression=Attr('movie_id').eq(movie_id))
        return matches[0] if matches else None

    def delete_movie(self, title=None, movie_id=None):
        """Delete one movie by title (preferred) or movie_id; returns 0 or 1"""
        if not title:
            movie = self.find_movie_by_id(movie_id)
            if not movie:
                return 0
            title = movie['title']

        response = self.movies.delete_item(Key={'title': title}, ReturnValues='ALL_OLD')
        return 1 if response.get('Attributes') else 0

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------
    def put_review(self, title, username, rating, text=''):
        """Store a new review; the rating must be an integer from 1 to 5"""
        rating = coerce_rating(rating)
        now = utc_now()
        review = {
            'review_id': new_id(),
            'title': str(title),
            'username': str(username),
            'rating': rating,
            'text': '' if text is None else str(text),
            'created_at': now,
            'updated_at': now,
        }
        self.reviews.put_item(Item=review, ConditionExpression=Attr('review_id').not_exists())
        return review

    def list_reviews(self, title=None):
        """Reviews newest first, optionally for a single movie title"""
        kwargs = {'FilterExpression': Attr('title').eq(title)} if title else {}
        reviews = scan_all(self.reviews, **kwargs)
        reviews.sort(key=lambda r: r.get('created_at', ''), reverse=True)
        return reviews

    # ------------------------------------------------------------------
    # Contact messages
    # ------------------------------------------------------------------
    def put_contact(self, name, email, issue, description):
        contact = {
            'contact_id': new_id(),
            'name': name,
            'email': email,
            'issue': issue,
            'description': description,
            'created_at': utc_now(),
        }
        self.contacts.put_item(Item=contact)
        return contact


# ============================================================================
# POSTER FILES
# ============================================================================
def store_poster(upload, directory):
    """Save an uploaded poster under a collision-free name and return the filename"""
    os.makedirs(directory, exist_ok=True)

    original = secure_filename(upload.filename or '')
    base, ext = os.path.splitext(original)
    ext = ext or '.jpg'
    base = re.sub(r'[^a-z0-9_-]', '_', base, flags=re.IGNORECASE) or 'poster'

    stamp = int(time.time() * 1000)
    while True:
        filename = f'{base}-{stamp}{ext}'
        try:
            # 'xb' fails if another upload got the same name first
            with open(os.path.join(directory, filename), 'xb') as fh:
                upload.save(fh)
            return filename
        except FileExistsError:
            stamp += 1
