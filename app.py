from flask import Flask, request, jsonify, send_from_directory
from werkzeug.utils import secure_filename
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager, create_access_token, create_refresh_token, jwt_required,
    get_jwt_identity, get_jwt, verify_jwt_in_request
)
from functools import wraps
import os
from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError

from config import config
from models import db, User, ActivityLog, TokenBlocklist, PollVote, Poll, Feedback
from repositories import Repositories
from errors import FarmHubError, InvalidEntry, RecordNotFound
from aggregators import summarize_budget, rollup_crops, compute_percentages, rank_volunteers
from weather import resolve_weather, OpenWeatherClient, DEFAULT_LOCATION
from roles import ROLES, ADMIN, policy_from_config
from seed import seed_sample_data, ensure_admin


def create_app(config_name='development', role_policy=None, weather_fetch=None):
    """
    role_policy: callable(identity) -> 'admin' | 'member', applied at sign-up.
    weather_fetch: callable(lat, lon) -> provider payload. Defaults to the
    OpenWeatherMap client when OPENWEATHER_API_KEY is set, else no live fetch.
    """
    app = Flask(__name__)
    app.config.from_object(config[config_name])

    db.init_app(app)

    # Create upload folder immediately
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    CORS(app,
         resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}},
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"])

    jwt = JWTManager(app)

    repos = Repositories(app.config['DEFAULT_TOTAL_BUDGET'])
    resolve_role = role_policy or policy_from_config(app.config)
    if weather_fetch is None and app.config.get('OPENWEATHER_API_KEY'):
        weather_fetch = OpenWeatherClient(app.config['OPENWEATHER_API_KEY'], app.config['WEATHER_TIMEOUT'])

    app.extensions['repositories'] = repos
    app.extensions['role_policy'] = resolve_role
    app.extensions['weather_fetch'] = weather_fetch

    # ============ Error Handling ============

    @app.errorhandler(FarmHubError)
    def handle_farm_hub_error(e):
        if e.status_code >= 500:
            app.logger.error("%s: %s", e.__class__.__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({'success': False, 'error': 'Resource not found'}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({'success': False, 'error': 'Method not allowed'}), 405

    @app.errorhandler(413)
    def handle_too_large(e):
        return jsonify({'success': False, 'error': 'File is too large'}), 413

    @jwt.token_in_blocklist_loader
    def check_if_token_revoked(jwt_header, jwt_payload):
        jti = jwt_payload['jti']
        return db.session.query(TokenBlocklist.id).filter_by(jti=jti).scalar() is not None

    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({'success': False, 'error': 'No access token provided'}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({'success': False, 'error': 'Unauthorized'}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({'success': False, 'error': 'Session expired'}), 401

    @jwt.revoked_token_loader
    def revoked_token(jwt_header, jwt_payload):
        return jsonify({'success': False, 'error': 'Session has been signed out'}), 401

    # --- HELPER FUNCTIONS ---

    def ok(data=None, status=200, **extra):
        body = {'success': True}
        if data is not None:
            body['data'] = data
        body.update(extra)
        return jsonify(body), status

    def json_body():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise InvalidEntry("Request body must be a JSON object")
        return data

    def current_user():
        user = db.session.get(User, int(get_jwt_identity()))
        if not user or not user.is_active:
            raise RecordNotFound("User not found")
        return user

    def admin_required(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if not current_user().is_admin:
                return jsonify({'success': False, 'error': 'Admin access required'}), 403
            return fn(*args, **kwargs)
        return wrapper

    def log_activity(action, entity_type=None, entity_id=None, details=None):
        try:
            user_id = get_jwt_identity()
            if not user_id:
                return
            log = ActivityLog(
                user_id=int(user_id),
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id else None,
                details=details,
                ip_address=request.remote_addr
            )
            db.session.add(log)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.warning("Activity log write failed for %s: %s", action, e)

    def allowed_file(filename):
        return '.' in filename and \
               filename.rsplit('.', 1)[1].lower() in app.config['ALLOWED_EXTENSIONS']

    def save_profile_image(file, user_id):
        if not file or not file.filename:
            raise InvalidEntry("No image file provided")
        if not allowed_file(file.filename):
            raise InvalidEntry(f"Invalid file type: {file.filename}")

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        filename = f"{user_id}_{timestamp}_{secure_filename(file.filename)}"
        file.save(os.path.join(app.config['UPLOAD_FOLDER'], filename))
        app.logger.info("Image saved: %s", filename)
        return filename

    def delete_profile_image(filename):
        if filename:
            filepath = os.path.join(app.config['UPLOAD_FOLDER'], filename)
            if os.path.exists(filepath):
                try:
                    os.remove(filepath)
                    return True
                except OSError as e:
                    app.logger.warning("Error deleting file %s: %s", filename, e)
        return False

    # ============ Static File Serving (Images) ============

    @app.route('/static/uploads/<filename>')
    def uploaded_file(filename):
        return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

    # ============ Authentication Routes ============

    @app.route('/api/auth/register', methods=['POST'])
    def register():
        data = json_body()
        email = (data.get('email') or '').strip().lower()
        if not email or not data.get('password') or not data.get('name'):
            raise InvalidEntry("Email, password, and name are required")

        if User.query.filter_by(email=email).first():
            return jsonify({'success': False, 'error': 'Email already registered'}), 400

        user = User(email=email, name=data['name'].strip(), role=resolve_role({'email': email}))
        user.set_password(data['password'])
        db.session.add(user)
        db.session.commit()

        app.logger.info("Registered %s as %s", email, user.role)
        return ok(user.to_dict(), 201, message='Account created successfully! You can now sign in.')

    @app.route('/api/auth/admin-register', methods=['POST'])
    @admin_required
    def admin_register():
        data = json_body()
        email = (data.get('email') or '').strip().lower()
        role = data.get('role') or 'member'
        if not email or not data.get('password') or not data.get('name'):
            raise InvalidEntry("Email, password, and name are required")
        if role not in ROLES:
            raise InvalidEntry("Invalid role. Must be 'admin' or 'member'")

        if User.query.filter_by(email=email).first():
            return jsonify({'success': False, 'error': 'Email already registered'}), 400

        user = User(email=email, name=data['name'].strip(), role=role)
        user.set_password(data['password'])
        db.session.add(user)
        db.session.commit()

        log_activity('USER_REGISTERED', 'User', user.id, f"Registered {email} with role {role}")
        return ok(user.to_dict(), 201, message=f"User created successfully with {role} role!")

    @app.route('/api/auth/login', methods=['POST'])
    def login():
        data = json_body()
        user = User.query.filter_by(email=(data.get('email') or '').strip().lower()).first()

        if not user or not user.check_password(data.get('password') or ''):
            return jsonify({'success': False, 'error': 'Invalid credentials'}), 401

        if not user.is_active:
            return jsonify({'success': False, 'error': 'Account is inactive'}), 403

        return ok({
            'access_token': create_access_token(identity=str(user.id)),
            'refresh_token': create_refresh_token(identity=str(user.id)),
            'user': user.to_dict()
        })

    @app.route('/api/auth/refresh', methods=['POST'])
    @jwt_required(refresh=True)
    def refresh():
        return ok({'access_token': create_access_token(identity=get_jwt_identity())})

    @app.route('/api/auth/logout', methods=['POST'])
    @jwt_required(verify_type=False)
    def logout():
        db.session.add(TokenBlocklist(jti=get_jwt()['jti']))
        db.session.commit()
        return ok(message='Signed out')

    @app.route('/api/auth/profile', methods=['GET'])
    @jwt_required()
    def get_profile():
        user = current_user()
        # Accounts added to ADMIN_EMAILS after sign-up are promoted on their next visit
        if not user.is_admin and resolve_role(user) == ADMIN:
            user.role = ADMIN
            db.session.commit()
            app.logger.info("Promoted %s to admin", user.email)
        return ok(user.to_dict())

    @app.route('/api/auth/profile', methods=['PUT'])
    @jwt_required()
    def update_profile():
        user = current_user()
        data = json_body()
        for key in ('name', 'bio', 'location'):
            if key in data:
                setattr(user, key, data[key])
        if not user.name:
            raise InvalidEntry("Name cannot be empty")
        db.session.commit()
        return ok(user.to_dict())

    @app.route('/api/auth/profile/avatar', methods=['POST'])
    @jwt_required()
    def upload_avatar():
        user = current_user()
        try:
            filename = save_profile_image(request.files.get('avatar'), user.id)
        except OSError as e:
            app.logger.error("Error saving avatar for %s: %s", user.email, e)
            return jsonify({'success': False, 'error': 'Failed to upload avatar'}), 500

        old_avatar = user.avatar
        user.avatar = filename
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            delete_profile_image(filename)
            app.logger.error("Error updating avatar for %s: %s", user.email, e)
            return jsonify({'success': False, 'error': 'Failed to upload avatar'}), 500

        delete_profile_image(old_avatar)
        app.logger.info("User %s uploaded new profile picture", user.email)
        return ok({'avatar': user.to_dict()['avatar']})

    @app.route('/api/auth/profile/avatar', methods=['DELETE'])
    @jwt_required()
    def delete_avatar():
        user = current_user()
        if user.avatar:
            delete_profile_image(user.avatar)
            user.avatar = None
            db.session.commit()
            app.logger.info("User %s deleted profile picture", user.email)
        return ok()

    # ============ Budget Routes ============

    @app.route('/api/budget', methods=['GET'])
    @jwt_required()
    def get_budget():
        return ok(repos.budget.list())

    @app.route('/api/budget/summary', methods=['GET'])
    @jwt_required()
    def get_budget_summary():
        total_budget = repos.settings.get_total_budget()
        return ok(dict(summarize_budget(repos.budget.list(), total_budget), total_budget=total_budget))

    @app.route('/api/budget', methods=['POST'])
    @admin_required
    def create_budget_entry():
        entry = repos.budget.create(json_body())
        log_activity('BUDGET_CREATED', 'BudgetEntry', entry['id'], f"{entry['type']}: {entry['description']}")
        return ok(entry, 201)

    @app.route('/api/budget/<id>', methods=['PUT'])
    @admin_required
    def update_budget_entry(id):
        entry = repos.budget.update(id, json_body())
        log_activity('BUDGET_UPDATED', 'BudgetEntry', id)
        return ok(entry)

    @app.route('/api/budget/<id>', methods=['DELETE'])
    @admin_required
    def delete_budget_entry(id):
        repos.budget.delete(id)
        log_activity('BUDGET_DELETED', 'BudgetEntry', id)
        return ok()

    # ============ Crop & Harvest Routes ============

    @app.route('/api/crops', methods=['GET'])
    @jwt_required()
    def get_crops():
        crops = repos.crops.list()
        status = request.args.get('status')
        if status:
            crops = [c for c in crops if c['status'] == status]
        return ok(crops)

    @app.route('/api/crops/summary', methods=['GET'])
    @jwt_required()
    def get_crop_summary():
        return ok(rollup_crops(repos.crops.list(), repos.harvests.list()))

    @app.route('/api/crops', methods=['POST'])
    @admin_required
    def create_crop():
        crop = repos.crops.create(json_body())
        log_activity('CROP_CREATED', 'Crop', crop['id'], f"Planted {crop['name']}")
        return ok(crop, 201)

    @app.route('/api/crops/<id>', methods=['PUT'])
    @admin_required
    def update_crop(id):
        crop = repos.crops.update(id, json_body())
        log_activity('CROP_UPDATED', 'Crop', id, f"{crop['name']} is {crop['status']}")
        return ok(crop)

    @app.route('/api/crops/<id>', methods=['DELETE'])
    @admin_required
    def delete_crop(id):
        repos.crops.delete(id)
        log_activity('CROP_DELETED', 'Crop', id)
        return ok()

    @app.route('/api/harvests', methods=['GET'])
    @jwt_required()
    def get_harvests():
        return ok(repos.harvests.list())

    @app.route('/api/harvests', methods=['POST'])
    @admin_required
    def create_harvest():
        harvest = repos.harvests.create(json_body())
        log_activity('HARVEST_RECORDED', 'Harvest', harvest['id'],
                     f"{harvest['quantity']} {harvest['unit']} of {harvest['crop_name']}")
        return ok(harvest, 201)

    @app.route('/api/harvests/<id>', methods=['PUT'])
    @admin_required
    def update_harvest(id):
        harvest = repos.harvests.update(id, json_body())
        log_activity('HARVEST_UPDATED', 'Harvest', id)
        return ok(harvest)

    @app.route('/api/harvests/<id>', methods=['DELETE'])
    @admin_required
    def delete_harvest(id):
        repos.harvests.delete(id)
        log_activity('HARVEST_DELETED', 'Harvest', id)
        return ok()

    # ============ Poll Routes ============

    @app.route('/api/polls', methods=['GET'])
    @jwt_required()
    def get_polls():
        user_id = int(get_jwt_identity())
        voted = {v.poll_id for v in PollVote.query.filter_by(user_id=user_id).all()}
        polls = repos.polls.list()
        for poll in polls:
            poll['has_voted'] = poll['id'] in voted
        return ok(polls)

    @app.route('/api/polls/<id>/results', methods=['GET'])
    @jwt_required()
    def get_poll_results(id):
        poll = repos.polls.get(id)
        return ok({'poll': poll, 'results': compute_percentages(poll)})

    @app.route('/api/polls', methods=['POST'])
    @admin_required
    def create_poll():
        poll = repos.polls.create(json_body(), author=current_user())
        log_activity('POLL_CREATED', 'Poll', poll['id'], poll['question'])
        return ok(poll, 201)

    @app.route('/api/polls/<id>', methods=['PUT'])
    @admin_required
    def update_poll(id):
        poll = repos.polls.update(id, json_body())
        log_activity('POLL_UPDATED', 'Poll', id, f"status={poll['status']}")
        return ok(poll)

    @app.route('/api/polls/<id>/vote', methods=['POST'])
    @jwt_required()
    def vote_on_poll(id):
        data = json_body()
        if not data.get('option_id'):
            raise InvalidEntry("option_id is required")
        poll = repos.polls.record_vote(id, data['option_id'], int(get_jwt_identity()))
        return ok({'poll': poll, 'results': compute_percentages(poll)})

    @app.route('/api/polls/<id>', methods=['DELETE'])
    @admin_required
    def delete_poll(id):
        repos.polls.delete(id)
        log_activity('POLL_DELETED', 'Poll', id)
        return ok()

    # ============ Feedback Routes ============

    @app.route('/api/feedbacks', methods=['GET'])
    @jwt_required()
    def get_feedbacks():
        return ok(repos.feedbacks.list())

    @app.route('/api/feedbacks', methods=['POST'])
    @jwt_required()
    def create_feedback():
        user = current_user()
        data = json_body()
        data['user_id'] = user.id
        data.setdefault('name', user.name)
        return ok(repos.feedbacks.create(data), 201)

    @app.route('/api/feedbacks/<id>', methods=['PUT'])
    @admin_required
    def update_feedback(id):
        feedback = repos.feedbacks.update(id, json_body())
        log_activity('FEEDBACK_UPDATED', 'Feedback', id)
        return ok(feedback)

    @app.route('/api/feedbacks/<id>', methods=['DELETE'])
    @admin_required
    def delete_feedback(id):
        repos.feedbacks.delete(id)
        log_activity('FEEDBACK_DELETED', 'Feedback', id)
        return ok()

    # ============ Volunteer & Task Routes ============

    @app.route('/api/volunteers/leaderboard', methods=['GET'])
    @jwt_required()
    def get_volunteer_leaderboard():
        top_n = request.args.get('top', 3, type=int)
        return ok(rank_volunteers(repos.volunteers.list(), repos.tasks.list(), top_n=max(top_n, 0)))

    def register_crud(name, repo, entity_type, methods=('GET', 'POST', 'PUT', 'DELETE')):
        """Plain list/create/update/delete routes: reads for members, writes for admins."""

        @jwt_required()
        def list_records():
            return ok(repo.list())

        @admin_required
        def create_record():
            record = repo.create(json_body())
            log_activity(f'{entity_type.upper()}_CREATED', entity_type, record['id'])
            return ok(record, 201)

        @admin_required
        def update_record(id):
            record = repo.update(id, json_body())
            log_activity(f'{entity_type.upper()}_UPDATED', entity_type, id)
            return ok(record)

        @admin_required
        def delete_record(id):
            repo.delete(id)
            log_activity(f'{entity_type.upper()}_DELETED', entity_type, id)
            return ok()

        if 'GET' in methods:
            app.add_url_rule(f'/api/{name}', f'list_{name}', list_records, methods=['GET'])
        if 'POST' in methods:
            app.add_url_rule(f'/api/{name}', f'create_{name}', create_record, methods=['POST'])
        if 'PUT' in methods:
            app.add_url_rule(f'/api/{name}/<id>', f'update_{name}', update_record, methods=['PUT'])
        if 'DELETE' in methods:
            app.add_url_rule(f'/api/{name}/<id>', f'delete_{name}', delete_record, methods=['DELETE'])

    register_crud('volunteers', repos.volunteers, 'Volunteer')
    register_crud('tasks', repos.tasks, 'Task')

    # ============ Gallery, Updates & Events Routes ============

    register_crud('photos', repos.photos, 'Photo')
    register_crud('updates', repos.updates, 'Update')
    register_crud('events', repos.events, 'Event', methods=('GET', 'POST'))

    # ============ Settings Routes ============

    @app.route('/api/settings/total-budget', methods=['GET'])
    @jwt_required()
    def get_total_budget():
        return ok(repos.settings.get_total_budget())

    @app.route('/api/settings/total-budget', methods=['PUT'])
    @admin_required
    def update_total_budget():
        amount = repos.settings.set_total_budget(json_body().get('amount'))
        log_activity('TOTAL_BUDGET_UPDATED', 'Setting', 'total_budget', f"{amount}")
        return ok(amount)

    @app.route('/api/settings/location', methods=['GET'])
    @admin_required
    def get_location_setting():
        return ok(repos.settings.get_location() or DEFAULT_LOCATION)

    @app.route('/api/settings/location', methods=['PUT'])
    @admin_required
    def update_location_setting():
        location = repos.settings.set_location(json_body())
        log_activity('LOCATION_UPDATED', 'Setting', 'location',
                     f"{location['city']} ({location['latitude']}, {location['longitude']})")
        return ok(location)

    @app.route('/api/public/location', methods=['GET'])
    def get_public_location():
        return ok(repos.settings.get_location() or DEFAULT_LOCATION)

    # ============ Weather Routes ============

    @app.route('/api/weather', methods=['GET'])
    def get_weather():
        weather = resolve_weather(repos.settings.get_location(), app.extensions['weather_fetch'])
        return ok(weather, fetched_at=datetime.utcnow().isoformat())

    # ============ Dashboard Routes ============

    @app.route('/api/dashboard/stats', methods=['GET'])
    @jwt_required()
    def get_dashboard_stats():
        total_budget = repos.settings.get_total_budget()
        volunteers = rank_volunteers(repos.volunteers.list(), repos.tasks.list())
        recent_activities = ActivityLog.query.order_by(ActivityLog.created_at.desc()).limit(10).all()
        upcoming_events = [e for e in repos.events.list() if e['date'] >= datetime.utcnow().isoformat()]

        return ok({
            'budget': dict(summarize_budget(repos.budget.list(), total_budget), total_budget=total_budget),
            'crops': rollup_crops(repos.crops.list(), repos.harvests.list()),
            'volunteers': {k: v for k, v in volunteers.items() if k != 'ranked'},
            'active_polls': sum(1 for p in repos.polls.list() if p['status'] == 'active'),
            'upcoming_events': upcoming_events[:5],
            'recent_activities': [log.to_dict() for log in recent_activities]
        })

    # ============ Users Management Routes ============

    @app.route('/api/users', methods=['GET'])
    @admin_required
    def get_users():
        users = User.query.order_by(User.joined_date.desc()).all()
        return ok([u.to_dict() for u in users])

    @app.route('/api/users/<int:id>/role', methods=['PUT'])
    @admin_required
    def update_user_role(id):
        role = json_body().get('role')
        if role not in ROLES:
            raise InvalidEntry("Invalid role. Must be 'admin' or 'member'")
        if int(get_jwt_identity()) == id:
            return jsonify({'success': False, 'error': 'Cannot change your own role'}), 400

        user = db.session.get(User, id)
        if not user:
            raise RecordNotFound("User not found")
        user.role = role
        db.session.commit()

        log_activity('USER_ROLE_CHANGED', 'User', id, f"{user.email} is now {role}")
        return ok(user.to_dict())

    @app.route('/api/users/<int:id>', methods=['DELETE'])
    @admin_required
    def delete_user(id):
        if int(get_jwt_identity()) == id:
            return jsonify({'success': False, 'error': 'Cannot delete the signed-in admin account'}), 400

        user = db.session.get(User, id)
        if not user:
            raise RecordNotFound("User not found")

        try:
            # Keep the history, drop the link
            ActivityLog.query.filter_by(user_id=id).update({'user_id': None})
            Poll.query.filter_by(created_by=id).update({'created_by': None})
            Feedback.query.filter_by(user_id=id).update({'user_id': None})
            PollVote.query.filter_by(user_id=id).delete()
            db.session.delete(user)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.error("DELETE USER ERROR: %s", e)
            return jsonify({'success': False, 'error': 'Could not delete user'}), 500

        log_activity('USER_DELETED', 'User', id)
        return ok()

    # ============ Activity Logs Routes ============

    @app.route('/api/activity-logs', methods=['GET'])
    @admin_required
    def get_activity_logs():
        page = request.args.get('page', 1, type=int)
        per_page = request.args.get('per_page', app.config['ITEMS_PER_PAGE'], type=int)

        pagination = ActivityLog.query.order_by(ActivityLog.created_at.desc()).paginate(
            page=page, per_page=per_page, error_out=False)

        return ok({
            'logs': [log.to_dict() for log in pagination.items],
            'total': pagination.total,
            'pages': pagination.pages,
            'current_page': page
        })

    # ============ Maintenance Routes ============

    @app.route('/api/init-sample-data', methods=['POST'])
    @admin_required
    def init_sample_data():
        created = seed_sample_data(author=current_user())
        if created is None:
            return ok(message='Sample data already exists')
        log_activity('SAMPLE_DATA_SEEDED', details=', '.join(f"{k}={v}" for k, v in created.items()))
        return ok(created, 201, message='Sample data initialized')

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({'status': 'healthy', 'timestamp': datetime.utcnow().isoformat()}), 200

    @app.cli.command('seed')
    def seed_command():
        """Create the configured admin account and load sample data."""
        admin = ensure_admin(app.config['ADMIN_EMAILS'][0], app.config.get('ADMIN_PASSWORD') or 'admin123')
        seed_sample_data(author=admin)

    # Initialize DB tables if they don't exist
    with app.app_context():
        db.create_all()

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(debug=True)
