import csv
from io import StringIO

from fundflow_backend.app import app


def _login(client, admin_user):
    email, password = admin_user
    r = client.post('/admin/login', json={'email': email, 'password': password})
    assert r.status_code == 200


def test_public_project_listing(make_project):
    project_id = make_project(title="Medical Camp", goal_amount=300000, current_amount=75000)
    with app.test_client() as client:
        r = client.get('/projects')
        assert r.status_code == 200
        projects = r.get_json()
        assert [p['id'] for p in projects] == [project_id]
        assert projects[0]['percent_funded'] == 25.0

        r = client.get(f'/projects/{project_id}')
        assert r.status_code == 200
        assert r.get_json()['title'] == "Medical Camp"

        assert client.get('/projects/9999').status_code == 404


def test_admin_project_crud(admin_user):
    with app.test_client() as client:
        _login(client, admin_user)

        r = client.post('/admin/projects', json={'title': '', 'goal_amount': 1000})
        assert r.status_code == 400
        r = client.post('/admin/projects', json={'title': 'School Supplies', 'goal_amount': 'lots'})
        assert r.status_code == 400

        # current_amount is ignored on create
        r = client.post('/admin/projects', json={
            'title': 'School Supplies for Children',
            'description': 'Books, pencils and uniforms',
            'goal_amount': 250000,
            'current_amount': 999999,
        })
        assert r.status_code == 201
        project_id = r.get_json()['id']

        r = client.get('/admin/projects')
        assert r.status_code == 200
        project = next(p for p in r.get_json() if p['id'] == project_id)
        assert project['current_amount'] == 0

        r = client.put(f'/admin/projects/{project_id}', json={'goal_amount': 300000, 'current_amount': 5})
        assert r.status_code == 200
        updated = r.get_json()['project']
        assert updated['goal_amount'] == 300000
        assert updated['current_amount'] == 0
        assert updated['title'] == 'School Supplies for Children'

        r = client.put(f'/admin/projects/{project_id}', json={})
        assert r.status_code == 400

        r = client.delete(f'/admin/projects/{project_id}')
        assert r.status_code == 200
        assert client.get(f'/projects/{project_id}').status_code == 404
        assert client.delete(f'/admin/projects/{project_id}').status_code == 404


def test_project_with_donations_cannot_be_deleted(admin_user, gateway, make_project):
    project_id = make_project()
    with app.test_client() as client:
        client.post('/api/stk-push', json={'amount': 100, 'phone': '0712345678', 'projectId': project_id})
        _login(client, admin_user)
        r = client.delete(f'/admin/projects/{project_id}')
        assert r.status_code == 400
        assert client.get(f'/projects/{project_id}').status_code == 200


def test_dashboard_donations_and_csv(admin_user, gateway, make_project):
    project_id = make_project(current_amount=1000)
    with app.test_client() as client:
        client.post('/api/stk-push', json={'amount': 100, 'phone': '0712345678', 'projectId': project_id})
        client.post('/api/mpesa-callback', json={'Body': {'stkCallback': {
            'CheckoutRequestID': 'ws_CO_191220191020363925',
            'ResultCode': 0,
            'ResultDesc': 'The service request is processed successfully.',
            'CallbackMetadata': {'Item': [
                {'Name': 'MpesaReceiptNumber', 'Value': 'NLJ7RT61SV'},
                {'Name': 'TransactionDate', 'Value': 20191219102115},
            ]},
        }}})
        gateway.push_response.status_code = 200
        gateway.push_response._json = {'ResponseCode': '1', 'ResponseDescription': 'Rejected'}
        client.post('/api/stk-push', json={'amount': 50, 'phone': '0712345678', 'projectId': project_id})

        _login(client, admin_user)
        r = client.get('/admin/dashboard')
        assert r.status_code == 200
        dashboard = r.get_json()
        assert dashboard['projects'] == 1
        assert dashboard['donations'] == {'total': 2, 'pending': 0, 'completed': 1, 'failed': 1}
        assert dashboard['total_raised'] == 1100

        r = client.get('/admin/donations', query_string={'status': 'failed'})
        failed = r.get_json()
        assert len(failed) == 1
        assert failed[0]['failure_reason'] == 'Rejected'
        assert len(client.get('/admin/donations').get_json()) == 2

        r = client.get('/admin/download-csv')
        assert r.status_code == 200
        assert r.mimetype == 'text/csv'
        rows = list(csv.DictReader(StringIO(r.get_data(as_text=True))))
        assert [row['status'] for row in rows] == ['completed', 'failed']
        assert rows[0]['mpesa_receipt_number'] == 'NLJ7RT61SV'
