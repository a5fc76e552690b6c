import logging
from decimal import Decimal
from functools import wraps
from json import JSONDecodeError

from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, jsonify, request, send_from_directory
from flask.json.provider import DefaultJSONProvider
from werkzeug.exceptions import HTTPException

import services
from config import Settings
from errors import AuthError, AuthzError, CinelogError, InfraError
from store import DynamoStore, connect

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class DecimalJSONProvider(DefaultJSONProvider):
    """DynamoDB returns numbers as Decimal; send them as plain JSON numbers"""

    @staticmethod
    def default(obj):
        if isinstance(obj, Decimal):
            return int(obj) if obj == obj.to_integral_value() else float(obj)
        return DefaultJSONProvider.default(obj)


def configure_logging(level='INFO'):
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================
def api_errors(message):
    """Turn storage and file failures raised inside a route into a JSON 500"""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except CinelogError:
                raise
            except (BotoCoreError, ClientError, OSError, JSONDecodeError) as e:
                logger.error(f"❌ {message}: {e}")
                raise InfraError(message, detail=str(e)) from e
        return wrapper
    return decorator


def request_data():
    """JSON body, falling back to form fields"""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def bearer_token():
    auth = request.headers.get('Authorization', '')
    if auth.startswith('Bearer '):
        return auth[len('Bearer '):]
    return None


def build_store(settings):
    """Connect to DynamoDB and create missing tables when configured to"""
    store = DynamoStore(
        connect(settings.aws_region, settings.dynamodb_endpoint_url),
        table_prefix=settings.table_prefix,
    )
    if settings.auto_create_tables:
        try:
            store.create_tables()
        except (BotoCoreError, ClientError) as e:
            # Keep serving; requests will report the storage failure
            logger.error(f"❌ DynamoDB table setup failed: {e}")
    return store


# ============================================================================
# APPLICATION FACTORY
# ============================================================================
def create_app(settings=None, store=None):
    settings = settings or Settings.from_env()
    if store is None:
        store = build_store(settings)

    app = Flask(__name__)
    app.json = DecimalJSONProvider(app)
    app.extensions['cinelog'] = {'settings': settings, 'store': store}

    if settings.uses_default_admin_credentials:
        logger.warning("⚠️  Using default admin credentials/token. Set ADMIN_PASSWORD and ADMIN_TOKEN.")

    def require_admin(view):
        """Reject with 403 unless the request carries the admin bearer token"""
        @wraps(view)
        def wrapper(*args, **kwargs):
            if bearer_token() != settings.admin_token:
                raise AuthzError('Admin authorization required')
            return view(*args, **kwargs)
        return wrapper

    # ---------------- MOVIES ----------------
    @app.route('/api/movies', methods=['GET'])
    @api_errors('Failed to load movies')
    def api_movies():
        return jsonify(services.get_all_movies(store))

    @app.route('/api/movies/import', methods=['POST'])
    @api_errors('Import failed')
    def api_import_movies():
        return jsonify(services.import_movies(store, settings.movies_file))

    # ---------------- USERS ----------------
    @app.route('/api/users/register', methods=['POST'])
    @api_errors('Registration failed')
    def api_register():
        data = request_data()
        result = services.register_user(
            store,
            username=data.get('username'),
            email=data.get('email'),
            password=data.get('password'),
            first_name=data.get('firstName'),
            last_name=data.get('lastName'),
            rounds=settings.bcrypt_rounds,
        )
        return jsonify(result), 201

    @app.route('/api/users/login', methods=['POST'])
    @api_errors('Login failed')
    def api_login():
        data = request_data()
        result = services.login_user(
            store,
            password=data.get('password'),
            username=data.get('username'),
            email=data.get('email'),
            max_attempts=settings.max_username_attempts,
        )
        return jsonify(result)

    # ---------------- REVIEWS ----------------
    @app.route('/api/reviews', methods=['GET'])
    @api_errors('Failed to load reviews')
    def api_reviews():
        return jsonify(services.get_reviews(store, request.args.get('title')))

    @app.route('/api/reviews', methods=['POST'])
    @api_errors('Failed to add review')
    def api_add_review():
        data = request_data()
        review = services.submit_review(
            store,
            title=data.get('title'),
            username=data.get('username'),
            rating=data.get('rating'),
            text=data.get('text'),
        )
        return jsonify(review), 201

    # ---------------- CONTACT ----------------
    @app.route('/api/contact', methods=['POST'])
    @api_errors('Failed to send message')
    def api_contact():
        data = request_data()
        services.submit_contact(
            store,
            name=data.get('name'),
            email=data.get('email'),
            issue=data.get('issue'),
            description=data.get('description'),
        )
        return jsonify({'ok': True}), 201

    # ---------------- ADMIN ----------------
    @app.route('/api/admin/login', methods=['POST'])
    def api_admin_login():
        data = request_data()
        if data.get('username') == settings.admin_username and data.get('password') == settings.admin_password:
            logger.info("✅ Admin logged in")
            return jsonify({'token': settings.admin_token})
        raise AuthError('Invalid admin credentials')

    @app.route('/api/admin/stats', methods=['GET'])
    @require_admin
    @api_errors('Failed to load admin stats')
    def api_admin_stats():
        return jsonify(services.admin_stats(store))

    @app.route('/api/admin/movies', methods=['POST'])
    @require_admin
    @api_errors('Failed to add movie')
    def api_admin_add_movie():
        data = request_data()
        movie = services.add_movie(
            store,
            title=data.get('title'),
            year=data.get('year'),
            genre=data.get('genre'),
            description=data.get('description'),
            poster=data.get('poster'),
        )
        return jsonify(movie), 201

    @app.route('/api/admin/movies/upload', methods=['POST'])
    @require_admin
    @api_errors('Failed to upload movie/poster')
    def api_admin_upload_movie():
        data = request.form
        movie = services.upload_movie(
            store,
            title=data.get('title'),
            pictures_dir=settings.pictures_dir,
            year=data.get('year'),
            genre=data.get('genre'),
            description=data.get('description'),
            upload=request.files.get('poster'),
        )
        return jsonify(movie), 201

    @app.route('/api/admin/movies/<movie_id>', methods=['DELETE'])
    @require_admin
    @api_errors('Failed to delete movie')
    def api_admin_delete_movie(movie_id):
        return jsonify(services.delete_movie(store, movie_id=movie_id, title=request.args.get('title')))

    # ---------------- UTILITY ----------------
    @app.route('/Pictures/<path:filename>')
    def poster_file(filename):
        return send_from_directory(settings.pictures_dir, filename)

    @app.route('/api/health', methods=['GET'])
    def health_check():
        return jsonify({
            'server': 'ok',
            'storage': store.status(),
            'dbName': settings.table_prefix,
        })

    # ---------------- ERROR HANDLERS ----------------
    @app.errorhandler(CinelogError)
    def handle_cinelog_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'message': e.description}), e.code

    return app


# ============================================================================
# RUN APPLICATION
# ============================================================================
def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    logger.info("=" * 80)
    logger.info("🎬 Cinelog - Movie Catalog & Reviews API")
    logger.info(f"✅ Using AWS DynamoDB storage (tables {settings.table_prefix}_*)")
    logger.info("=" * 80)

    app = create_app(settings)
    app.run(host=settings.host, port=settings.port, debug=settings.debug)


if __name__ == '__main__':
    main()
