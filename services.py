"""
Account, catalog and review operations.

Every function takes the DynamoStore as its first argument and raises one of
the errors in errors.py when a request cannot be honoured.
"""

import json
import logging
from decimal import Decimal, InvalidOperation

from bcrypt import checkpw, gensalt, hashpw

from errors import AuthError, ConflictError, InfraError, ValidationError
from store import new_id, store_poster, to_api, utc_now

logger = logging.getLogger(__name__)

STATS_AUTHOR_LIMIT = 50
POSTER_PREFIXES = ('/Pictures/', 'Pictures/')


def _clean(value):
    """Strip strings; treat None as empty"""
    if value is None:
        return ''
    return str(value).strip()


# ============================================================================
# USER MANAGEMENT
# ============================================================================
def register_user(store, username, email, password, first_name=None, last_name=None, rounds=10):
    """Register a new user; returns {id, username}"""
    username = _clean(username).lower()
    email = _clean(email).lower()
    if not username or not email or not password:
        raise ValidationError('username, email, and password required')

    # Email is checked first so a reused email always reports as such
    if store.email_in_use(email):
        raise ConflictError('Email already in use')
    if store.username_taken(username):
        raise ConflictError('Username already taken')

    hashed_password = hashpw(str(password).encode('utf-8'), gensalt(rounds=rounds)).decode('utf-8')
    now = utc_now()
    user = {
        'user_id': new_id(),
        'username': username,
        'email': email,
        'password': hashed_password,
        'created_at': now,
        'updated_at': now,
    }
    if _clean(first_name):
        user['first_name'] = _clean(first_name)
    if _clean(last_name):
        user['last_name'] = _clean(last_name)

    # The transactional write is the real uniqueness check
    store.create_user(user)

    logger.info(f"✅ New user registered: {username}")
    return {'id': user['user_id'], 'username': user['username']}


def _derive_username(user):
    email = user.get('email')
    if email:
        return email.split('@')[0].lower()
    return f"user{user['user_id'][-4:]}"


def backfill_username(store, user, max_attempts=1000):
    """
    Give a legacy user (created before usernames existed) a permanent username.

    The candidate comes from the email's local part; collisions get 1, 2, 3...
    appended until a free name is claimed.
    """
    derived = _derive_username(user)
    candidate = derived
    collisions = 0

    for _ in range(max_attempts):
        if not store.username_taken(candidate):
            if store.claim_username(user['user_id'], candidate):
                logger.info(f"✅ Backfilled username {candidate} for user {user['user_id']}")
                return candidate

            # Lost a race: maybe another login already backfilled this user
            current = store.get_user(user['user_id']) or {}
            if current.get('username'):
                return current['username']

        collisions += 1
        candidate = f'{derived}{collisions}'

    logger.error(f"❌ Could not find a free username for user {user['user_id']}")
    raise InfraError('Login failed', detail='could not assign a unique username')


def login_user(store, password, username=None, email=None, max_attempts=1000):
    """Log a user in by username or email; returns {id, username}"""
    username = _clean(username).lower()
    email = _clean(email).lower()
    if (not username and not email) or not password:
        raise ValidationError('username or email and password required')

    # Username wins when both are given
    if username:
        user = store.find_user_by_username(username)
    else:
        user = store.find_user_by_email(email)

    if not user or not checkpw(str(password).encode('utf-8'), user['password'].encode('utf-8')):
        logger.info("⚠️  Failed login attempt")
        raise AuthError('Invalid credentials')

    if not user.get('username'):
        user['username'] = backfill_username(store, user, max_attempts=max_attempts)

    logger.info(f"✅ User logged in: {user['username']}")
    return {'id': user['user_id'], 'username': user['username']}


# ============================================================================
# MOVIE MANAGEMENT
# ============================================================================
def get_all_movies(store):
    """All movies sorted by title"""
    movies = store.list_movies()
    movies.sort(key=lambda m: m.get('title', ''))
    return [to_api(m, 'movie_id') for m in movies]


def import_movies(store, path):
    """Upsert every entry of a {"movies": {title: {...}}} JSON file by title"""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f, parse_float=Decimal)
    except (OSError, ValueError) as e:
        logger.error(f"❌ Could not read movies file {path}: {e}")
        raise InfraError('Import failed', detail=str(e)) from e

    if not isinstance(data, dict) or not isinstance(data.get('movies') or {}, dict):
        raise InfraError('Import failed', detail='expected {"movies": {title: {...}}}')

    imported = 0
    # No rollback: entries upserted before a failure stay committed
    for title, fields in (data.get('movies') or {}).items():
        if not isinstance(fields or {}, dict):
            raise InfraError('Import failed', detail=f'entry for {title!r} is not an object')
        store.upsert_movie(title.strip(), dict(fields or {}))
        imported += 1

    logger.info(f"✅ {imported} movies imported from {path}")
    return {'imported': imported}


def _coerce_year(year):
    if isinstance(year, bool):
        raise ValidationError('year must be a number')
    try:
        number = Decimal(str(year).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError('year must be a number')
    if not number.is_finite():
        raise ValidationError('year must be a number')
    return int(number) if number == number.to_integral_value() else number


def normalize_poster(poster):
    """Reduce a poster reference such as /Pictures/x.jpg to its filename"""
    cleaned = str(poster)
    for prefix in POSTER_PREFIXES:
        if cleaned.startswith(prefix):
            return cleaned[len(prefix):]
    return cleaned


def save_movie(store, title, year=None, genre=None, description=None, image=None):
    """Upsert a movie by title with only the supplied (truthy) fields"""
    title = _clean(title)
    if not title:
        raise ValidationError('title required')

    fields = {}
    if year:
        fields['year'] = _coerce_year(year)
    if genre:
        fields['genre'] = genre
    if description:
        fields['description'] = description
    if image:
        fields['image'] = image

    movie = store.upsert_movie(title, fields)
    logger.info(f"✅ Movie saved: {title}")
    return to_api(movie, 'movie_id')


def add_movie(store, title, year=None, genre=None, description=None, poster=None):
    image = normalize_poster(poster) if poster else None
    return save_movie(store, title, year=year, genre=genre, description=description, image=image)


def upload_movie(store, title, pictures_dir, year=None, genre=None, description=None, upload=None):
    """Upsert a movie with an uploaded poster; the file is written only once the fields validate"""
    if not _clean(title):
        raise ValidationError('title required')
    if year:
        _coerce_year(year)

    image = None
    if upload is not None and upload.filename:
        image = store_poster(upload, pictures_dir)
    return save_movie(store, title, year=year, genre=genre, description=description, image=image)


def delete_movie(store, movie_id=None, title=None):
    deleted = store.delete_movie(title=title, movie_id=movie_id)
    logger.info(f"✅ Movie delete ({title or movie_id}): {deleted} removed")
    return {'deletedCount': deleted}


# ============================================================================
# REVIEW MANAGEMENT
# ============================================================================
def get_reviews(store, title=None):
    return [to_api(r, 'review_id') for r in store.list_reviews(title=title or None)]


def submit_review(store, title, username, rating, text=None):
    """Create a review; rating 0 counts as missing"""
    if not title or not username or not rating:
        raise ValidationError('title, username, and rating are required')

    review = store.put_review(title, username, rating, text)
    logger.info(f"✅ Review submitted: {review['review_id']}")
    return to_api(review, 'review_id')


def submit_contact(store, name=None, email=None, issue=None, description=None):
    contact = store.put_contact(name, email, issue, description)
    logger.info(f"✅ Contact message stored: {contact['contact_id']}")
    return contact


# ============================================================================
# ANALYTICS
# ============================================================================
def admin_stats(store):
    """Platform counts plus review count and average rating per author"""
    stats = store.counts()

    groups = {}
    for review in store.list_reviews():
        group = groups.setdefault(review.get('username'), [])
        group.append(review.get('rating', 0))

    per_author = [
        {
            'username': username,
            'reviewCount': len(ratings),
            'avgRating': float(sum(ratings)) / len(ratings),
        }
        for username, ratings in groups.items()
    ]
    per_author.sort(key=lambda a: a['reviewCount'], reverse=True)

    stats['perAuthor'] = per_author[:STATS_AUTHOR_LIMIT]
    return stats
