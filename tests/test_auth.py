from database import create_admin_user
from models import db, User, UserRole, Category, ROLE_ADMIN


class TestLogin:

    def test_wrong_password_json(self, client, make_user, church_id):
        make_user('membro@igreja.org', church_id)
        response = client.post('/auth/login', json={'email': 'membro@igreja.org', 'password': 'errada'})
        assert response.status_code == 401
        assert response.get_json() == {'error': 'Email ou senha inválidos.'}

    def test_wrong_password_form_flashes(self, client, make_user, church_id):
        make_user('membro@igreja.org', church_id)
        response = client.post('/auth/login', data={'email': 'membro@igreja.org', 'password': 'errada'})
        assert response.status_code == 302

        messages = client.get('/auth/login').get_json()['messages']
        assert messages == [{'category': 'error', 'message': 'Email ou senha inválidos.'}]

    def test_email_is_case_insensitive(self, client, login, make_user, church_id):
        make_user('membro@igreja.org', church_id)
        body = login('Membro@Igreja.org').get_json()
        assert body['user']['church_id'] == church_id

    def test_authenticated_login_page_redirects(self, client, login, make_user, church_id):
        make_user('membro@igreja.org', church_id)
        login('membro@igreja.org')
        response = client.get('/auth/login')
        assert response.status_code == 302
        assert response.headers['Location'].endswith('/dashboard')

    def test_logout_ends_session(self, client, login, make_user, church_id):
        make_user('membro@igreja.org', church_id)
        login('membro@igreja.org')
        client.get('/auth/logout')
        assert client.get('/api/transactions/').status_code == 401


class TestCreateAdmin:

    def test_creates_church_admin_and_categories(self, app):
        assert create_admin_user('Pastor@Igreja.org', 'João Lima', 'senha', 'Igreja Nova', app=app)
        with app.app_context():
            user = User.query.filter_by(email='pastor@igreja.org').one()
            assert user.church_id is not None
            assert [r.role for r in UserRole.query.filter_by(user_id=user.id)] == [ROLE_ADMIN]
            assert Category.query.filter_by(church_id=user.church_id).count() > 0

    def test_duplicate_email_is_rejected(self, app):
        assert create_admin_user('pastor@igreja.org', 'João Lima', 'senha', 'Igreja Nova', app=app)
        assert not create_admin_user('pastor@igreja.org', 'Outro', 'senha', 'Igreja Nova', app=app)
        with app.app_context():
            assert db.session.query(User).count() == 1
