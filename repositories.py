"""
One repository per entity type over the SQLAlchemy models.

Repositories speak plain dicts (the models' to_dict() shape) on the way
out, so the aggregators never see ORM objects or storage keys. A failing
store raises RepositoryError; it is never reported as an empty list.
"""
from datetime import date

from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from models import (
    db, BudgetEntry, Crop, Harvest, Poll, PollOption, PollVote, Feedback,
    Volunteer, Task, Photo, CommunityUpdate, Event, Setting
)
from errors import RecordNotFound, RepositoryError, CropNotFound, DuplicateVote, InvalidEntry
from aggregators import apply_vote
from validation import (
    require, parse_date, parse_datetime, positive_amount, non_negative, one_of,
    check_crop_dates, check_harvest_date, check_location,
    BUDGET_TYPES, CROP_HEALTH, CROP_STAGES, CROP_STATUSES, HARVEST_QUALITY,
    POLL_STATUSES, TASK_STATUSES, TASK_PRIORITIES
)


def commit():
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise RepositoryError(f"Database write failed: {e.__class__.__name__}") from e


class SqlRepository:
    model = None
    order_by = None
    label = 'Record'

    def _query(self):
        query = self.model.query
        if self.order_by is not None:
            query = query.order_by(self.order_by)
        return query

    def _load(self, id, for_update=False):
        try:
            if for_update:
                obj = (db.session.query(self.model).filter_by(id=id)
                       .with_for_update().populate_existing().first())
            else:
                obj = db.session.get(self.model, id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Could not read {self.label}: {e.__class__.__name__}") from e
        if obj is None:
            raise RecordNotFound(f"{self.label} not found")
        return obj

    def list(self):
        try:
            return [obj.to_dict() for obj in self._query().all()]
        except SQLAlchemyError as e:
            raise RepositoryError(f"Could not list {self.label}s: {e.__class__.__name__}") from e

    def find(self, id):
        try:
            obj = db.session.get(self.model, id) if id else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"Could not read {self.label}: {e.__class__.__name__}") from e
        return obj.to_dict() if obj else None

    def get(self, id):
        return self._load(id).to_dict()

    def clean(self, data, current=None):
        """Validate `data` and return model column values."""
        raise NotImplementedError

    def create(self, data):
        obj = self.model(**self.clean(data))
        db.session.add(obj)
        commit()
        return obj.to_dict()

    def update(self, id, data):
        obj = self._load(id)
        current = obj.to_dict()
        merged = dict(current, **{k: v for k, v in data.items() if k != 'id'})
        for key, value in self.clean(merged, current).items():
            setattr(obj, key, value)
        commit()
        return obj.to_dict()

    def delete(self, id):
        obj = self._load(id)
        db.session.delete(obj)
        commit()
        return id


class BudgetRepository(SqlRepository):
    model = BudgetEntry
    order_by = BudgetEntry.date.desc()
    label = 'Budget entry'

    def clean(self, data, current=None):
        require(data, 'description', 'category')
        return {
            'description': data['description'].strip(),
            'category': data['category'].strip(),
            'amount': positive_amount(data.get('amount')),
            'type': one_of(data.get('type'), BUDGET_TYPES, 'type', default='Expense'),
            'date': parse_date(data.get('date'), 'date', required=False) or date.today(),
            'receipt': data.get('receipt'),
        }


class CropRepository(SqlRepository):
    model = Crop
    order_by = Crop.planting_date.desc()
    label = 'Crop'

    def clean(self, data, current=None):
        require(data, 'name')
        planted = parse_date(data.get('planting_date'), 'planting_date')
        expected = parse_date(data.get('expected_harvest_date'), 'expected_harvest_date')
        check_crop_dates(planted, expected)
        return {
            'name': data['name'].strip(),
            'variety': data.get('variety'),
            'plot_number': data.get('plot_number'),
            'planting_date': planted,
            'expected_harvest_date': expected,
            'health': one_of(data.get('health'), CROP_HEALTH, 'health', default='healthy'),
            'stage': one_of(data.get('stage'), CROP_STAGES, 'stage', default='seedling'),
            'status': one_of(data.get('status'), CROP_STATUSES, 'status', default='growing'),
            'quantity': data.get('quantity'),
            'notes': data.get('notes'),
        }


class HarvestRepository(SqlRepository):
    model = Harvest
    order_by = Harvest.harvest_date.desc()
    label = 'Harvest'

    def __init__(self, crops):
        self.crops = crops

    def clean(self, data, current=None):
        require(data, 'crop_id')
        harvest_date = parse_date(data.get('harvest_date'), 'harvest_date')
        crop_id = data['crop_id']
        crop = self.crops.find(crop_id)

        # A harvest may outlive its crop; only a new or changed reference must resolve
        if crop is None and (current is None or current.get('crop_id') != crop_id):
            raise CropNotFound(f"Crop {crop_id} not found")
        if crop is not None:
            check_harvest_date(harvest_date, crop)

        return {
            'crop_id': crop_id,
            'crop_name': crop['name'] if crop else data.get('crop_name'),
            'harvest_date': harvest_date,
            'quantity': positive_amount(data.get('quantity'), 'quantity'),
            'unit': data.get('unit') or 'kg',
            'quality': one_of(data.get('quality'), HARVEST_QUALITY, 'quality', default='Good'),
            'distribution_method': data.get('distribution_method'),
            'notes': data.get('notes'),
        }


class PollRepository(SqlRepository):
    model = Poll
    order_by = Poll.created_at.desc()
    label = 'Poll'

    def clean(self, data, current=None):
        require(data, 'question')
        return {
            'question': data['question'].strip(),
            'status': one_of(data.get('status'), POLL_STATUSES, 'status', default='active'),
            'ends_at': parse_datetime(data.get('ends_at'), 'ends_at', required=False),
        }

    def create(self, data, author=None):
        texts = [o.get('text') if isinstance(o, dict) else o for o in data.get('options') or []]
        texts = [t.strip() for t in texts if isinstance(t, str) and t.strip()]
        if len(texts) < 2:
            raise InvalidEntry("A poll needs at least two options")

        # Every poll starts at zero; votes only ever arrive through record_vote()
        poll = Poll(**self.clean(data))
        poll.total_votes = 0
        if author is not None:
            poll.created_by = author.id
            poll.created_by_name = author.name
        poll.options = [PollOption(position=i, text=t, votes=0) for i, t in enumerate(texts)]
        db.session.add(poll)
        commit()
        return poll.to_dict()

    def update(self, id, data):
        poll = self._load(id)
        for key, value in self.clean(dict(poll.to_dict(), **data)).items():
            setattr(poll, key, value)

        # Option labels may be edited; counts are left alone
        texts = {o.get('id'): o.get('text') for o in data.get('options') or [] if isinstance(o, dict)}
        for option in poll.options:
            text = texts.get(option.id)
            if isinstance(text, str) and text.strip():
                option.text = text.strip()
        commit()
        return poll.to_dict()

    def record_vote(self, poll_id, option_id, user_id):
        # Row lock where the backend supports it; apply_vote only validates
        poll = self._load(poll_id, for_update=True)
        apply_vote(poll.to_dict(include_voters=True), option_id, voter_id=user_id)

        # Increment in SQL so a ballot committed after our read is not overwritten
        try:
            PollOption.query.filter_by(id=option_id, poll_id=poll.id).update(
                {PollOption.votes: PollOption.votes + 1}, synchronize_session=False)
            Poll.query.filter_by(id=poll.id).update(
                {Poll.total_votes: Poll.total_votes + 1}, synchronize_session=False)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise RepositoryError(f"Could not record vote: {e.__class__.__name__}") from e
        db.session.add(PollVote(poll_id=poll.id, user_id=user_id, option_id=option_id))
        try:
            commit()
        except RepositoryError as e:
            # Lost a race with a concurrent ballot from the same user
            if isinstance(e.__cause__, IntegrityError):
                raise DuplicateVote(f"User {user_id} has already voted in poll {poll_id}") from e
            raise
        return poll.to_dict()


class FeedbackRepository(SqlRepository):
    model = Feedback
    order_by = Feedback.date.desc()
    label = 'Feedback'

    def clean(self, data, current=None):
        require(data, 'name', 'message')
        return {
            'name': data['name'].strip(),
            'message': data['message'].strip(),
            'category': data.get('category') or 'General',
            'user_id': data.get('user_id'),
        }


class VolunteerRepository(SqlRepository):
    model = Volunteer
    order_by = Volunteer.name.asc()
    label = 'Volunteer'

    def clean(self, data, current=None):
        require(data, 'name')
        return {
            'name': data['name'].strip(),
            'role': data.get('role') or 'Volunteer',
            'contact': data.get('contact'),
            'hours_contributed': non_negative(data.get('hours_contributed'), 'hours_contributed'),
            'tasks_completed': int(non_negative(data.get('tasks_completed'), 'tasks_completed')),
            'last_activity': parse_date(data.get('last_activity'), 'last_activity', required=False),
        }


class TaskRepository(SqlRepository):
    model = Task
    order_by = Task.due_date.asc()
    label = 'Task'

    def clean(self, data, current=None):
        require(data, 'title')
        return {
            'title': data['title'].strip(),
            'description': data.get('description'),
            'assigned_to': data.get('assigned_to'),
            'due_date': parse_date(data.get('due_date'), 'due_date', required=False),
            'status': one_of(data.get('status'), TASK_STATUSES, 'status', default='pending'),
            'priority': one_of(data.get('priority'), TASK_PRIORITIES, 'priority', default='medium'),
        }


class PhotoRepository(SqlRepository):
    model = Photo
    order_by = Photo.date.desc()
    label = 'Photo'

    def clean(self, data, current=None):
        require(data, 'title', 'url')
        return {
            'title': data['title'].strip(),
            'description': data.get('description'),
            'url': data['url'],
            'category': data.get('category'),
            'uploaded_by': data.get('uploaded_by'),
        }


class UpdateRepository(SqlRepository):
    model = CommunityUpdate
    order_by = CommunityUpdate.date.desc()
    label = 'Update'

    def clean(self, data, current=None):
        require(data, 'title', 'content')
        return {
            'title': data['title'].strip(),
            'content': data['content'],
            'category': data.get('category') or 'Announcement',
            'author': data.get('author'),
        }


class EventRepository(SqlRepository):
    model = Event
    order_by = Event.date.asc()
    label = 'Event'

    def clean(self, data, current=None):
        require(data, 'title')
        return {
            'title': data['title'].strip(),
            'description': data.get('description'),
            'date': parse_datetime(data.get('date'), 'date'),
            'location': data.get('location'),
            'organizer': data.get('organizer'),
        }


class SettingsRepository:
    TOTAL_BUDGET = 'total_budget'
    LOCATION = 'location'

    def __init__(self, default_total_budget=30000):
        self.default_total_budget = default_total_budget

    def _read(self, key):
        try:
            setting = db.session.get(Setting, key)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Could not read setting {key}: {e.__class__.__name__}") from e
        return setting.value if setting else None

    def _write(self, key, value):
        setting = db.session.get(Setting, key) or Setting(key=key)
        setting.value = value
        db.session.add(setting)
        commit()
        return value

    def get_total_budget(self):
        value = self._read(self.TOTAL_BUDGET)
        return value if value is not None else self.default_total_budget

    def set_total_budget(self, amount):
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            raise InvalidEntry("Invalid budget amount")
        return self._write(self.TOTAL_BUDGET, amount)

    def get_location(self):
        """The admin-configured location, or None when it was never set."""
        return self._read(self.LOCATION)

    def set_location(self, data):
        return self._write(self.LOCATION, check_location(data))


class Repositories:
    def __init__(self, default_total_budget=30000):
        self.budget = BudgetRepository()
        self.crops = CropRepository()
        self.harvests = HarvestRepository(self.crops)
        self.polls = PollRepository()
        self.feedbacks = FeedbackRepository()
        self.volunteers = VolunteerRepository()
        self.tasks = TaskRepository()
        self.photos = PhotoRepository()
        self.updates = UpdateRepository()
        self.events = EventRepository()
        self.settings = SettingsRepository(default_total_budget)
