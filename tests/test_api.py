import io

from sqlalchemy.exc import OperationalError

from app import create_app
from models import db, User, PollVote
from repositories import BudgetRepository
from roles import EmailRolePolicy


def _data(response):
    body = response.get_json()
    assert body['success'] is True, body
    return body['data']


def _crop(client, headers, **overrides):
    payload = {
        'name': 'Tomatoes', 'variety': 'Cherry', 'plot_number': 'A1',
        'planting_date': '2026-08-01', 'expected_harvest_date': '2026-10-15', 'status': 'ready',
    }
    payload.update(overrides)
    response = client.post('/api/crops', json=payload, headers=headers)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['data']


# ============================================================================
# Auth & roles
# ============================================================================

def test_role_policy_assigns_admin_by_email(app, client, admin_headers, member_headers):
    admin = _data(client.get('/api/auth/profile', headers=admin_headers))
    member = _data(client.get('/api/auth/profile', headers=member_headers))
    assert admin['role'] == 'admin'
    assert member['role'] == 'member'


def test_injected_role_policy():
    app = create_app('testing', role_policy=EmailRolePolicy(['chair@coop.ph']))
    client = app.test_client()
    client.post('/api/auth/register', json={'email': 'Chair@Coop.ph', 'password': 'pw', 'name': 'Chair'})
    with app.app_context():
        assert User.query.filter_by(email='chair@coop.ph').first().role == 'admin'
        db.drop_all()


def test_duplicate_registration_and_bad_login(client, member_headers):
    response = client.post('/api/auth/register',
                           json={'email': 'juan@barangayfarm.ph', 'password': 'x', 'name': 'Juan'})
    assert response.status_code == 400
    response = client.post('/api/auth/login', json={'email': 'juan@barangayfarm.ph', 'password': 'wrong'})
    assert response.status_code == 401


def test_protected_routes_need_token(client):
    response = client.get('/api/crops')
    assert response.status_code == 401
    assert response.get_json()['success'] is False


def test_members_cannot_write(client, member_headers):
    response = client.post('/api/budget', json={'description': 'Seeds', 'category': 'Seeds', 'amount': 10},
                           headers=member_headers)
    assert response.status_code == 403


def test_logout_revokes_token(client, member_headers):
    assert client.post('/api/auth/logout', headers=member_headers).status_code == 200
    assert client.get('/api/auth/profile', headers=member_headers).status_code == 401


def test_profile_update(client, member_headers):
    response = client.put('/api/auth/profile', json={'bio': 'Gardener', 'role': 'admin'}, headers=member_headers)
    profile = _data(response)
    assert profile['bio'] == 'Gardener'
    assert profile['role'] == 'member'


def test_profile_read_applies_current_admin_list(app, client, member_headers):
    assert _data(client.get('/api/auth/profile', headers=member_headers))['role'] == 'member'

    app.extensions['role_policy'].admin_emails.add('juan@barangayfarm.ph')
    assert _data(client.get('/api/auth/profile', headers=member_headers))['role'] == 'admin'
    assert client.get('/api/users', headers=member_headers).status_code == 200


def _upload(client, headers, name, content=b'\x89PNG fake image bytes'):
    return client.post('/api/auth/profile/avatar', headers=headers, content_type='multipart/form-data',
                       data={'avatar': (io.BytesIO(content), name)})


def test_avatar_upload_replace_and_remove(app, client, member_headers, tmp_path):
    app.config['UPLOAD_FOLDER'] = str(tmp_path)

    first = _data(_upload(client, member_headers, 'me.png'))['avatar']
    assert first.startswith('/static/uploads/')
    assert client.get(first).data == b'\x89PNG fake image bytes'
    assert _data(client.get('/api/auth/profile', headers=member_headers))['avatar'] == first

    second = _data(_upload(client, member_headers, 'my garden.jpg', b'jpeg'))['avatar']
    assert ' ' not in second
    assert [p.name for p in tmp_path.iterdir()] == [second.rsplit('/', 1)[-1]]

    assert client.delete('/api/auth/profile/avatar', headers=member_headers).status_code == 200
    assert _data(client.get('/api/auth/profile', headers=member_headers))['avatar'] is None
    assert list(tmp_path.iterdir()) == []


def test_avatar_upload_rejects_bad_files(app, client, member_headers, tmp_path):
    app.config['UPLOAD_FOLDER'] = str(tmp_path)

    assert _upload(client, member_headers, 'script.exe').status_code == 400
    missing = client.post('/api/auth/profile/avatar', headers=member_headers,
                          content_type='multipart/form-data', data={})
    assert missing.status_code == 400
    assert list(tmp_path.iterdir()) == []


def test_avatar_cannot_be_set_through_profile_update(client, member_headers):
    profile = _data(client.put('/api/auth/profile', json={'avatar': 'https://evil.example/x.png'},
                               headers=member_headers))
    assert profile['avatar'] is None


# ============================================================================
# Budget
# ============================================================================

def test_budget_summary_endpoint(client, admin_headers, member_headers):
    client.post('/api/budget', headers=admin_headers,
                json={'description': 'Seeds', 'category': 'Seeds', 'amount': 350, 'type': 'Expense',
                      'date': '2026-09-01'})
    client.post('/api/budget', headers=admin_headers,
                json={'description': 'Okra sales', 'category': 'Harvest Sales', 'amount': 1530,
                      'type': 'Income', 'date': '2026-09-05'})

    summary = _data(client.get('/api/budget/summary', headers=member_headers))
    assert summary['total_spent'] == 350
    assert summary['total_income'] == 1530
    assert summary['balance'] == 1180
    assert summary['remaining'] == 29650
    assert summary['total_budget'] == 30000


def test_budget_rejects_non_positive_amount(client, admin_headers):
    for amount in (-5, 0, 'lots'):
        response = client.post('/api/budget', headers=admin_headers,
                               json={'description': 'Bad', 'category': 'Seeds', 'amount': amount})
        assert response.status_code == 400
        assert response.get_json()['kind'] == 'InvalidEntry'
    assert _data(client.get('/api/budget', headers=admin_headers)) == []


def test_budget_update_and_delete(client, admin_headers):
    entry = _data(client.post('/api/budget', headers=admin_headers,
                              json={'description': 'Hose', 'category': 'Water', 'amount': 800}))
    assert entry['type'] == 'Expense'

    updated = _data(client.put(f"/api/budget/{entry['id']}", json={'amount': 950}, headers=admin_headers))
    assert updated['amount'] == 950
    assert updated['description'] == 'Hose'

    assert client.delete(f"/api/budget/{entry['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/budget/{entry['id']}", headers=admin_headers).status_code == 404


def test_store_read_failure_is_an_error_not_an_empty_list(client, member_headers, monkeypatch):
    def broken_query(self):
        raise OperationalError('SELECT * FROM budget_entries', {}, Exception('database is locked'))

    monkeypatch.setattr(BudgetRepository, '_query', broken_query)

    for url in ('/api/budget', '/api/budget/summary'):
        response = client.get(url, headers=member_headers)
        assert response.status_code == 500
        body = response.get_json()
        assert body['success'] is False
        assert body['kind'] == 'RepositoryError'
        assert 'data' not in body


def test_store_write_failure_rolls_back(app, client, admin_headers, monkeypatch):
    rollbacks = []

    def broken_commit():
        raise OperationalError('INSERT INTO budget_entries', {}, Exception('disk I/O error'))

    monkeypatch.setattr(db.session, 'commit', broken_commit)
    monkeypatch.setattr(db.session, 'rollback', lambda: rollbacks.append(True))

    response = client.post('/api/budget', headers=admin_headers,
                           json={'description': 'Seeds', 'category': 'Seeds', 'amount': 10})
    assert response.status_code == 500
    assert response.get_json()['kind'] == 'RepositoryError'
    assert rollbacks


def test_total_budget_setting(client, admin_headers, member_headers):
    assert client.put('/api/settings/total-budget', json={'amount': -1}, headers=admin_headers).status_code == 400
    assert _data(client.put('/api/settings/total-budget', json={'amount': 45000}, headers=admin_headers)) == 45000
    assert _data(client.get('/api/settings/total-budget', headers=member_headers)) == 45000


# ============================================================================
# Crops & harvests
# ============================================================================

def test_crop_dates_are_validated(client, admin_headers):
    response = client.post('/api/crops', headers=admin_headers, json={
        'name': 'Lettuce', 'planting_date': '2026-09-01', 'expected_harvest_date': '2026-08-01'})
    assert response.status_code == 400


def test_harvest_needs_existing_crop_and_valid_date(client, admin_headers):
    crop = _crop(client, admin_headers)

    response = client.post('/api/harvests', headers=admin_headers,
                           json={'crop_id': 'no-such-crop', 'harvest_date': '2026-10-01', 'quantity': 5})
    assert response.status_code == 404

    response = client.post('/api/harvests', headers=admin_headers,
                           json={'crop_id': crop['id'], 'harvest_date': '2026-07-01', 'quantity': 5})
    assert response.status_code == 400

    harvest = _data(client.post('/api/harvests', headers=admin_headers,
                                json={'crop_id': crop['id'], 'harvest_date': '2026-10-16', 'quantity': 12.5}))
    assert harvest['crop_name'] == 'Tomatoes'


def test_crop_summary_survives_deleted_crop(client, admin_headers, member_headers):
    kept = _crop(client, admin_headers, status='growing')
    gone = _crop(client, admin_headers, name='Pechay', status='harvested')
    for crop, quantity in ((kept, 4), (gone, 45)):
        client.post('/api/harvests', headers=admin_headers,
                    json={'crop_id': crop['id'], 'harvest_date': '2026-10-16', 'quantity': quantity})

    client.delete(f"/api/crops/{gone['id']}", headers=admin_headers)

    summary = _data(client.get('/api/crops/summary', headers=member_headers))
    assert summary['total_crops'] == 1
    assert summary['yield_by_crop'] == {kept['id']: 4}
    assert summary['orphaned_harvests'] == 1


def test_orphaned_harvest_can_still_be_edited(client, admin_headers):
    crop = _crop(client, admin_headers)
    harvest = _data(client.post('/api/harvests', headers=admin_headers,
                                json={'crop_id': crop['id'], 'harvest_date': '2026-10-16', 'quantity': 3}))
    client.delete(f"/api/crops/{crop['id']}", headers=admin_headers)

    updated = _data(client.put(f"/api/harvests/{harvest['id']}", json={'quality': 'Excellent'},
                               headers=admin_headers))
    assert updated['quality'] == 'Excellent'
    assert updated['crop_name'] == 'Tomatoes'


# ============================================================================
# Polls
# ============================================================================

def _poll(client, headers):
    response = client.post('/api/polls', headers=headers, json={
        'question': 'Which crop should we plant next season?', 'options': ['Corn', 'Squash']})
    assert response.status_code == 201, response.get_json()
    return response.get_json()['data']


def test_poll_needs_two_options(client, admin_headers):
    response = client.post('/api/polls', headers=admin_headers, json={'question': 'Yes?', 'options': ['Yes']})
    assert response.status_code == 400


def test_vote_flow(app, client, admin_headers, member_headers):
    poll = _poll(client, admin_headers)
    assert poll['total_votes'] == 0
    assert poll['created_by_name'] == 'Kapitan Admin'
    corn, squash = poll['options']

    result = _data(client.post(f"/api/polls/{poll['id']}/vote", json={'option_id': squash['id']},
                               headers=member_headers))
    assert result['poll']['total_votes'] == 1
    assert [r['percentage'] for r in result['results']] == [0, 100]

    again = client.post(f"/api/polls/{poll['id']}/vote", json={'option_id': corn['id']}, headers=member_headers)
    assert again.status_code == 409
    assert again.get_json()['kind'] == 'DuplicateVote'

    _data(client.post(f"/api/polls/{poll['id']}/vote", json={'option_id': corn['id']}, headers=admin_headers))
    results = _data(client.get(f"/api/polls/{poll['id']}/results", headers=member_headers))
    assert results['poll']['total_votes'] == 2
    assert [r['percentage'] for r in results['results']] == [50, 50]

    polls = _data(client.get('/api/polls', headers=member_headers))
    assert polls[0]['has_voted'] is True

    with app.app_context():
        assert PollVote.query.count() == 2


def test_vote_on_unknown_option_changes_nothing(client, admin_headers, member_headers):
    poll = _poll(client, admin_headers)
    response = client.post(f"/api/polls/{poll['id']}/vote", json={'option_id': 'nonexistent'},
                           headers=member_headers)
    assert response.status_code == 404
    assert response.get_json()['kind'] == 'OptionNotFound'
    assert _data(client.get(f"/api/polls/{poll['id']}/results", headers=member_headers))['poll']['total_votes'] == 0


def test_closed_poll_rejects_votes(client, admin_headers, member_headers):
    poll = _poll(client, admin_headers)
    closed = _data(client.put(f"/api/polls/{poll['id']}", json={'status': 'closed'}, headers=admin_headers))
    assert closed['status'] == 'closed'

    response = client.post(f"/api/polls/{poll['id']}/vote", json={'option_id': poll['options'][0]['id']},
                           headers=member_headers)
    assert response.status_code == 409
    assert response.get_json()['kind'] == 'PollClosed'


def test_poll_update_cannot_rewrite_counts(client, admin_headers):
    poll = _poll(client, admin_headers)
    options = [dict(o, votes=99, text=o['text'].upper()) for o in poll['options']]
    updated = _data(client.put(f"/api/polls/{poll['id']}", json={'options': options, 'total_votes': 198},
                               headers=admin_headers))
    assert [o['text'] for o in updated['options']] == ['CORN', 'SQUASH']
    assert [o['votes'] for o in updated['options']] == [0, 0]
    assert updated['total_votes'] == 0


# ============================================================================
# Volunteers, tasks and community records
# ============================================================================

def test_leaderboard(client, admin_headers, member_headers):
    for name, hours in (('A', 10), ('B', 30), ('C', 10)):
        client.post('/api/volunteers', json={'name': name, 'hours_contributed': hours}, headers=admin_headers)
    client.post('/api/tasks', json={'title': 'Weed plot A', 'status': 'completed'}, headers=admin_headers)
    client.post('/api/tasks', json={'title': 'Repair fence'}, headers=admin_headers)

    board = _data(client.get('/api/volunteers/leaderboard?top=2', headers=member_headers))
    assert [v['name'] for v in board['top']] == ['B', 'A']
    assert board['total_hours'] == 50
    assert board['completed_task_ratio'] == 0.5


def test_volunteer_rejects_negative_hours(client, admin_headers):
    response = client.post('/api/volunteers', json={'name': 'A', 'hours_contributed': -3}, headers=admin_headers)
    assert response.status_code == 400


def test_task_status_is_validated(client, admin_headers):
    response = client.post('/api/tasks', json={'title': 'Water', 'status': 'done'}, headers=admin_headers)
    assert response.status_code == 400


def test_feedback_is_open_to_members(client, member_headers, admin_headers):
    feedback = _data(client.post('/api/feedbacks', json={'message': 'More shade nets please'},
                                 headers=member_headers))
    assert feedback['name'] == 'Juan Dela Cruz'
    assert client.delete(f"/api/feedbacks/{feedback['id']}", headers=member_headers).status_code == 403
    assert client.delete(f"/api/feedbacks/{feedback['id']}", headers=admin_headers).status_code == 200


def test_gallery_updates_and_events(client, admin_headers, member_headers):
    photo = _data(client.post('/api/photos', json={'title': 'Seedlings', 'url': 'https://example.org/a.jpg'},
                              headers=admin_headers))
    client.post('/api/updates', json={'title': 'Clean-up drive', 'content': 'Saturday 7am'}, headers=admin_headers)
    client.post('/api/events', json={'title': 'Seedling day', 'date': '2099-01-10T08:00:00'}, headers=admin_headers)

    assert len(_data(client.get('/api/photos', headers=member_headers))) == 1
    assert len(_data(client.get('/api/updates', headers=member_headers))) == 1
    assert len(_data(client.get('/api/events', headers=member_headers))) == 1

    renamed = _data(client.put(f"/api/photos/{photo['id']}", json={'title': 'Seedlings, week 2'},
                               headers=admin_headers))
    assert renamed['title'] == 'Seedlings, week 2'
    assert renamed['url'] == 'https://example.org/a.jpg'
    assert client.put(f"/api/photos/{photo['id']}", json={'title': 'x'}, headers=member_headers).status_code == 403


def test_feedback_can_be_edited_by_admin(client, member_headers, admin_headers):
    feedback = _data(client.post('/api/feedbacks', json={'message': 'More shade nets please'},
                                 headers=member_headers))

    assert client.put(f"/api/feedbacks/{feedback['id']}", json={'category': 'Suggestion'},
                      headers=member_headers).status_code == 403
    updated = _data(client.put(f"/api/feedbacks/{feedback['id']}", json={'category': 'Suggestion'},
                               headers=admin_headers))
    assert updated['category'] == 'Suggestion'
    assert updated['message'] == 'More shade nets please'
    assert updated['name'] == 'Juan Dela Cruz'


def test_text_fields_must_be_strings(client, admin_headers):
    response = client.post('/api/budget', headers=admin_headers,
                           json={'description': 123, 'category': 'Seeds', 'amount': 10})
    assert response.status_code == 400
    assert response.get_json()['kind'] == 'InvalidEntry'

    response = client.post('/api/crops', headers=admin_headers, json={
        'name': ['Tomatoes'], 'planting_date': '2026-08-01', 'expected_harvest_date': '2026-10-15'})
    assert response.status_code == 400


# ============================================================================
# Settings, weather and dashboard
# ============================================================================

def test_location_setting_validation(client, admin_headers, member_headers):
    assert client.get('/api/settings/location', headers=member_headers).status_code == 403
    bad = client.put('/api/settings/location', json={'city': 'Nowhere', 'latitude': 91, 'longitude': 0},
                     headers=admin_headers)
    assert bad.status_code == 400

    location = _data(client.put('/api/settings/location', headers=admin_headers,
                                json={'city': 'Himamaylan', 'latitude': 10.1, 'longitude': 122.87}))
    assert location['country'] == 'PH'
    assert _data(client.get('/api/public/location'))['city'] == 'Himamaylan'


def test_weather_without_location_is_sample(client):
    weather = _data(client.get('/api/weather'))
    assert weather['is_sample'] is True
    assert weather['location']['city'] == 'Kabankalan City'


def test_weather_uses_injected_fetch():
    calls = []

    def fetch(lat, lon):
        calls.append((lat, lon))
        raise TimeoutError('provider timed out')

    app = create_app('testing', weather_fetch=fetch)
    client = app.test_client()
    client.post('/api/auth/register', json={'email': 'admin@barangayfarm.ph', 'password': 'pw', 'name': 'Admin'})
    token = _data(client.post('/api/auth/login', json={'email': 'admin@barangayfarm.ph', 'password': 'pw'}))
    headers = {'Authorization': f"Bearer {token['access_token']}"}

    assert _data(client.get('/api/weather'))['is_sample'] is True
    assert calls == []

    client.put('/api/settings/location', headers=headers,
               json={'city': 'Himamaylan', 'latitude': 10.1, 'longitude': 122.87})
    weather = _data(client.get('/api/weather'))
    assert calls == [(10.1, 122.87)]
    assert weather['is_sample'] is True
    assert weather['location']['city'] == 'Himamaylan'

    with app.app_context():
        db.drop_all()


def test_dashboard_stats(client, admin_headers, member_headers):
    _crop(client, admin_headers)
    stats = _data(client.get('/api/dashboard/stats', headers=member_headers))
    assert stats['crops']['ready_count'] == 1
    assert stats['budget']['remaining'] == 30000
    assert 'ranked' not in stats['volunteers']
    assert stats['recent_activities'][0]['action'] == 'CROP_CREATED'


# ============================================================================
# Users & maintenance
# ============================================================================

def test_user_administration(client, admin_headers, member_headers):
    users = _data(client.get('/api/users', headers=admin_headers))
    member = next(u for u in users if u['role'] == 'member')
    admin = next(u for u in users if u['role'] == 'admin')

    assert client.get('/api/users', headers=member_headers).status_code == 403
    assert client.put(f"/api/users/{admin['id']}/role", json={'role': 'member'},
                      headers=admin_headers).status_code == 400
    assert client.put(f"/api/users/{member['id']}/role", json={'role': 'owner'},
                      headers=admin_headers).status_code == 400

    promoted = _data(client.put(f"/api/users/{member['id']}/role", json={'role': 'admin'}, headers=admin_headers))
    assert promoted['role'] == 'admin'

    assert client.delete(f"/api/users/{member['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/users/{admin['id']}", headers=admin_headers).status_code == 400


def test_admin_register(client, admin_headers):
    response = client.post('/api/auth/admin-register', headers=admin_headers,
                           json={'email': 'maria@barangayfarm.ph', 'password': 'pw', 'name': 'Maria', 'role': 'admin'})
    assert _data(response)['role'] == 'admin'
    logs = _data(client.get('/api/activity-logs', headers=admin_headers))
    assert logs['logs'][0]['action'] == 'USER_REGISTERED'


def test_init_sample_data_runs_once(client, admin_headers, member_headers):
    created = _data(client.post('/api/init-sample-data', headers=admin_headers))
    assert created['crops'] > 0

    again = client.post('/api/init-sample-data', headers=admin_headers).get_json()
    assert again['message'] == 'Sample data already exists'

    summary = _data(client.get('/api/crops/summary', headers=member_headers))
    assert summary['total_crops'] == created['crops']
    assert summary['orphaned_harvests'] == 0
    for poll in _data(client.get('/api/polls', headers=member_headers)):
        assert sum(o['votes'] for o in poll['options']) == poll['total_votes']


def test_health(client):
    assert client.get('/api/health').get_json()['status'] == 'healthy'
