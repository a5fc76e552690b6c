import pytest

import services
from errors import AuthError, ConflictError, InfraError, ValidationError


def register(client, **overrides):
    payload = {
        'firstName': 'Jane',
        'lastName': 'Doe',
        'username': 'jane',
        'email': 'jane@example.com',
        'password': 'hunter2',
    }
    payload.update(overrides)
    return client.post('/api/users/register', json=payload)


class TestRegister:
    def test_returns_id_and_username_only(self, client):
        resp = register(client)
        assert resp.status_code == 201
        assert set(resp.json) == {'id', 'username'}
        assert resp.json['username'] == 'jane'

    def test_normalises_username_and_email(self, client, store):
        resp = register(client, username='  JaneD ', email=' Jane@Example.COM ')
        assert resp.json['username'] == 'janed'
        user = store.find_user_by_email('jane@example.com')
        assert user['user_id'] == resp.json['id']
        assert user['first_name'] == 'Jane'

    def test_password_is_hashed(self, client, store):
        register(client)
        user = store.find_user_by_username('jane')
        assert user['password'] != 'hunter2'
        assert user['password'].startswith('$2')

    @pytest.mark.parametrize('missing', ['username', 'email', 'password'])
    def test_missing_required_field(self, client, missing):
        resp = register(client, **{missing: ''})
        assert resp.status_code == 400

    def test_distinct_users_all_succeed(self, client):
        for i in range(3):
            resp = register(client, username=f'user{i}', email=f'user{i}@example.com')
            assert resp.status_code == 201

    def test_reused_email_conflicts_even_with_new_username(self, client):
        register(client)
        resp = register(client, username='someone-else', email='JANE@example.com')
        assert resp.status_code == 409
        assert resp.json['message'] == 'Email already in use'

    def test_reused_username_conflicts(self, client):
        register(client)
        resp = register(client, username='Jane', email='other@example.com')
        assert resp.status_code == 409
        assert resp.json['message'] == 'Username already taken'

    def test_email_checked_before_username(self, client):
        register(client)
        resp = register(client)
        assert resp.json['message'] == 'Email already in use'

    def test_storage_layer_rejects_duplicate_without_precheck(self, store):
        services.register_user(store, 'jane', 'jane@example.com', 'pw', rounds=4)
        duplicate = {'user_id': 'abc', 'username': 'jane', 'email': 'fresh@example.com', 'password': 'x'}
        with pytest.raises(ConflictError, match='Username already taken'):
            store.create_user(duplicate)
        # Nothing from the cancelled transaction was written
        assert store.get_user('abc') is None
        assert not store.email_in_use('fresh@example.com')


class TestLogin:
    def test_login_by_username_and_email(self, client):
        user_id = register(client).json['id']

        by_name = client.post('/api/users/login', json={'username': 'JANE', 'password': 'hunter2'})
        by_email = client.post('/api/users/login', json={'email': 'jane@example.com', 'password': 'hunter2'})

        assert by_name.status_code == 200
        assert by_name.json == {'id': user_id, 'username': 'jane'}
        assert by_email.json == by_name.json

    def test_repeated_login_returns_same_id(self, client):
        register(client)
        ids = {
            client.post('/api/users/login', json={'username': 'jane', 'password': 'hunter2'}).json['id']
            for _ in range(3)
        }
        assert len(ids) == 1

    def test_wrong_password_matches_unknown_user(self, client):
        register(client)
        wrong = client.post('/api/users/login', json={'username': 'jane', 'password': 'nope'})
        unknown = client.post('/api/users/login', json={'username': 'ghost', 'password': 'nope'})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json == unknown.json == {'message': 'Invalid credentials'}

    def test_username_takes_precedence_over_email(self, client):
        register(client)
        resp = client.post('/api/users/login', json={
            'username': 'ghost', 'email': 'jane@example.com', 'password': 'hunter2'})
        assert resp.status_code == 401

    @pytest.mark.parametrize('payload', [
        {'password': 'hunter2'},
        {'username': 'jane'},
        {'email': 'jane@example.com', 'password': ''},
    ])
    def test_missing_fields(self, client, payload):
        resp = client.post('/api/users/login', json=payload)
        assert resp.status_code == 400


class TestLegacyBackfill:
    def test_username_derived_from_email(self, client, store, make_legacy_user):
        legacy = make_legacy_user(email='jane@x.com')

        resp = client.post('/api/users/login', json={'email': 'jane@x.com', 'password': 'secret'})

        assert resp.status_code == 200
        assert resp.json == {'id': legacy['user_id'], 'username': 'jane'}
        assert store.get_user(legacy['user_id'])['username'] == 'jane'
        assert store.find_user_by_username('jane')['user_id'] == legacy['user_id']

    def test_collisions_get_numeric_suffix(self, client, make_legacy_user):
        register(client, username='jane', email='jane@example.com')
        make_legacy_user(email='jane@x.com')
        make_legacy_user(email='jane@y.com')

        first = client.post('/api/users/login', json={'email': 'jane@x.com', 'password': 'secret'})
        second = client.post('/api/users/login', json={'email': 'jane@y.com', 'password': 'secret'})

        assert first.json['username'] == 'jane1'
        assert second.json['username'] == 'jane2'

    def test_backfilled_username_is_permanent(self, client, make_legacy_user):
        make_legacy_user(email='jane@x.com')
        client.post('/api/users/login', json={'email': 'jane@x.com', 'password': 'secret'})
        register(client, username='bob', email='bob@example.com')

        again = client.post('/api/users/login', json={'email': 'jane@x.com', 'password': 'secret'})
        by_name = client.post('/api/users/login', json={'username': 'jane', 'password': 'secret'})

        assert again.json['username'] == 'jane'
        assert by_name.json == again.json

    def test_wrong_password_does_not_backfill(self, client, store, make_legacy_user):
        legacy = make_legacy_user(email='jane@x.com')
        resp = client.post('/api/users/login', json={'email': 'jane@x.com', 'password': 'bad'})
        assert resp.status_code == 401
        assert 'username' not in store.get_user(legacy['user_id'])

    def test_lost_claim_moves_to_next_suffix(self, store, make_legacy_user, monkeypatch):
        legacy = make_legacy_user(email='jane@x.com')
        rival = make_legacy_user(email='jane@y.com')
        real_claim = store.claim_username

        def claim_after_rival(user_id, username):
            # Another login takes the name between the check and the claim
            if user_id == legacy['user_id'] and username == 'jane':
                assert real_claim(rival['user_id'], 'jane')
            return real_claim(user_id, username)

        monkeypatch.setattr(store, 'claim_username', claim_after_rival)

        assert services.backfill_username(store, legacy) == 'jane1'
        assert store.get_user(legacy['user_id'])['username'] == 'jane1'
        assert store.find_user_by_username('jane')['user_id'] == rival['user_id']

    def test_concurrent_backfill_of_same_user_returns_stored_name(self, store, make_legacy_user, monkeypatch):
        legacy = make_legacy_user(email='jane@x.com')
        real_claim = store.claim_username
        claims = []

        def claim_after_other_login(user_id, username):
            claims.append(username)
            if len(claims) == 1:
                assert real_claim(user_id, username)
            return real_claim(user_id, username)

        monkeypatch.setattr(store, 'claim_username', claim_after_other_login)

        assert services.backfill_username(store, legacy) == 'jane'
        assert claims == ['jane']
        assert not store.username_taken('jane1')

    def test_user_without_email_gets_id_based_name(self, store, make_legacy_user):
        legacy = make_legacy_user()
        name = services.backfill_username(store, legacy)
        assert name == f"user{legacy['user_id'][-4:]}"

    def test_gives_up_after_max_attempts(self, store, make_legacy_user):
        services.register_user(store, 'jane', 'jane@example.com', 'pw', rounds=4)
        legacy = make_legacy_user(email='jane@x.com')
        with pytest.raises(InfraError):
            services.backfill_username(store, legacy, max_attempts=1)

    def test_service_errors(self, store):
        with pytest.raises(ValidationError):
            services.login_user(store, password=None, username='jane')
        with pytest.raises(AuthError):
            services.login_user(store, password='x', email='nobody@example.com')
