from fundflow_backend.app import app
from fundflow_backend.auth import SESSION_COOKIE, generate_session_token, is_authenticated, load_session, login_admin


def _set_cookie_header(response):
    return next(h for h in response.headers.getlist('Set-Cookie') if h.startswith(f'{SESSION_COOKIE}='))


def test_login_admin_returns_session(admin_user):
    email, password = admin_user
    with app.app_context():
        session = login_admin(email, password)
        assert session["email"] == email
        assert session["admin"] is True
        assert isinstance(session["id"], int)
        # email lookups ignore case and surrounding whitespace
        assert login_admin(f"  {email.upper()} ", password) == session


def test_login_failures_are_indistinguishable(admin_user):
    email, _ = admin_user
    with app.app_context():
        assert login_admin(email, "wrong password") is None
        assert login_admin("nobody@fundflow.example", "wrong password") is None

    with app.test_client() as client:
        wrong_password = client.post('/admin/login', json={'email': email, 'password': 'wrong'})
        unknown_email = client.post('/admin/login', json={'email': 'nobody@fundflow.example', 'password': 'wrong'})
        assert wrong_password.status_code == unknown_email.status_code == 401
        assert wrong_password.get_json() == unknown_email.get_json() == {'error': 'Invalid credentials'}
        assert not wrong_password.headers.getlist('Set-Cookie')

        r = client.post('/admin/login', json={'email': email})
        assert r.status_code == 400


def test_login_sets_session_cookie(admin_user):
    email, password = admin_user
    with app.test_client() as client:
        r = client.post('/admin/login', json={'email': email, 'password': password})
        assert r.status_code == 200
        assert r.get_json()['admin'] is True

        cookie = _set_cookie_header(r)
        assert 'Path=/admin' in cookie
        assert 'HttpOnly' in cookie
        assert 'SameSite=Strict' in cookie
        assert 'Max-Age=86400' in cookie
        # not production, so the cookie also works over plain http
        assert 'Secure' not in cookie

        # the cookie is replayed on /admin paths
        r = client.get('/admin/dashboard')
        assert r.status_code == 200
        assert r.get_json()['session']['email'] == email

        # already logged in: the login page forwards to the dashboard
        r = client.get('/admin/login')
        assert r.status_code == 303
        assert r.headers['Location'].endswith('/admin/dashboard')


def test_admin_routes_redirect_without_session():
    with app.test_client() as client:
        for path in ['/admin', '/admin/dashboard', '/admin/projects', '/admin/donations', '/admin/download-csv']:
            r = client.get(path)
            assert r.status_code == 303
            assert r.headers['Location'].endswith('/admin/login')

        r = client.post('/admin/projects', json={'title': 'Sneaky', 'goal_amount': 1})
        assert r.status_code == 303

        # the login page itself stays reachable
        r = client.get('/admin/login')
        assert r.status_code == 200
        assert r.get_json() == {'session': None}


def test_tampered_cookie_is_cleared():
    with app.test_client() as client:
        # the old unsigned JSON cookie format is no longer trusted
        client.set_cookie(SESSION_COOKIE, '{"id": 1, "email": "x@y.z", "admin": true}', path='/admin')
        r = client.get('/admin/dashboard')
        assert r.status_code == 303
        assert r.headers['Location'].endswith('/admin/login')
        cleared = _set_cookie_header(r)
        assert 'Max-Age=0' in cleared or 'expires=Thu, 01 Jan 1970' in cleared


def test_bad_cookie_is_cleared_on_login_page():
    with app.test_client() as client:
        client.set_cookie(SESSION_COOKIE, 'garbage', path='/admin')
        r = client.get('/admin/login')
        assert r.status_code == 200
        cleared = _set_cookie_header(r)
        assert 'Max-Age=0' in cleared
        assert 'Path=/admin' in cleared


def test_login_replaces_bad_cookie(admin_user):
    email, password = admin_user
    with app.test_client() as client:
        client.set_cookie(SESSION_COOKIE, 'garbage', path='/admin')
        r = client.post('/admin/login', json={'email': email, 'password': password})
        assert r.status_code == 200
        cookies = [h for h in r.headers.getlist('Set-Cookie') if h.startswith(f'{SESSION_COOKIE}=')]
        assert len(cookies) == 1
        assert 'Max-Age=86400' in cookies[0]
        assert client.get('/admin/dashboard').status_code == 200


def test_session_cookie_secure_in_production(admin_user):
    email, password = admin_user
    app.config['ADMIN_COOKIE_SECURE'] = True
    try:
        with app.test_client() as client:
            r = client.post('/admin/login', json={'email': email, 'password': password})
            assert r.status_code == 200
            assert 'Secure' in _set_cookie_header(r)
    finally:
        app.config['ADMIN_COOKIE_SECURE'] = False


def test_session_token_checks():
    with app.app_context():
        token = generate_session_token({'id': 1, 'email': 'a@b.c', 'admin': True})
        assert load_session(token) == {'id': 1, 'email': 'a@b.c', 'admin': True}
        assert load_session(token + 'x') is None
        assert load_session(None) is None
        # signed but not an admin session
        assert load_session(generate_session_token({'id': 1, 'admin': False})) is None

        app.config['ADMIN_SESSION_MAX_AGE'] = -1
        try:
            assert load_session(token) is None
        finally:
            app.config['ADMIN_SESSION_MAX_AGE'] = 60 * 60 * 24

    assert is_authenticated({'admin': True})
    assert not is_authenticated({'admin': 'true'})
    assert not is_authenticated(None)
    assert not is_authenticated('admin')


def test_logout_clears_cookie(admin_user):
    email, password = admin_user
    with app.test_client() as client:
        client.post('/admin/login', json={'email': email, 'password': password})
        r = client.post('/admin/logout')
        assert r.status_code == 200
        assert client.get('/admin/dashboard').status_code == 303


def test_create_admin_command():
    runner = app.test_cli_runner()
    result = runner.invoke(args=['create-admin', 'New.Admin@FundFlow.example', 'pa55word'])
    assert result.exit_code == 0
    assert 'new.admin@fundflow.example' in result.output

    with app.app_context():
        assert login_admin('new.admin@fundflow.example', 'pa55word')['admin'] is True

    result = runner.invoke(args=['create-admin', 'new.admin@fundflow.example', 'other'])
    assert result.exit_code != 0
    assert 'already exists' in result.output
