from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, date
import uuid
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()


def new_id():
    return str(uuid.uuid4())


def iso(value):
    return value.isoformat() if value else None


def as_float(value):
    return float(value) if value is not None else None

# --- MODELS ---

class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='member')
    is_active = db.Column(db.Boolean, default=True)

    avatar = db.Column(db.String(500))
    bio = db.Column(db.Text)
    location = db.Column(db.String(255))

    # Activity counters shown on the profile page
    tasks_completed = db.Column(db.Integer, default=0)
    hours_contributed = db.Column(db.Numeric(10, 2), default=0)
    events_attended = db.Column(db.Integer, default=0)

    joined_date = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == 'admin'

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'is_active': self.is_active,
            'avatar': f"/static/uploads/{self.avatar}" if self.avatar else None,
            'bio': self.bio,
            'location': self.location,
            'tasks_completed': self.tasks_completed or 0,
            'hours_contributed': as_float(self.hours_contributed) or 0,
            'events_attended': self.events_attended or 0,
            'joined_date': iso(self.joined_date)
        }


class BudgetEntry(db.Model):
    __tablename__ = 'budget_entries'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    description = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(100), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    type = db.Column(db.String(20), nullable=False, default='Expense')
    date = db.Column(db.Date, nullable=False, default=date.today)
    receipt = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'description': self.description,
            'category': self.category,
            'amount': as_float(self.amount),
            'type': self.type,
            'date': iso(self.date),
            'receipt': self.receipt
        }


class Crop(db.Model):
    __tablename__ = 'crops'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    variety = db.Column(db.String(255))
    plot_number = db.Column(db.String(50))
    planting_date = db.Column(db.Date, nullable=False)
    expected_harvest_date = db.Column(db.Date, nullable=False)
    health = db.Column(db.String(30), default='healthy')
    stage = db.Column(db.String(30), default='seedling')
    status = db.Column(db.String(30), default='growing')
    quantity = db.Column(db.String(100))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'variety': self.variety,
            'plot_number': self.plot_number,
            'planting_date': iso(self.planting_date),
            'expected_harvest_date': iso(self.expected_harvest_date),
            'health': self.health,
            'stage': self.stage,
            'status': self.status,
            'quantity': self.quantity,
            'notes': self.notes
        }


class Harvest(db.Model):
    __tablename__ = 'harvests'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    # Soft reference: a harvest outlives the crop it came from
    crop_id = db.Column(db.String(36), index=True)
    crop_name = db.Column(db.String(255))
    harvest_date = db.Column(db.Date, nullable=False)
    quantity = db.Column(db.Numeric(10, 2), nullable=False)
    unit = db.Column(db.String(30), default='kg')
    quality = db.Column(db.String(20), default='Good')
    distribution_method = db.Column(db.String(255))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'crop_id': self.crop_id,
            'crop_name': self.crop_name,
            'harvest_date': iso(self.harvest_date),
            'quantity': as_float(self.quantity),
            'unit': self.unit,
            'quality': self.quality,
            'distribution_method': self.distribution_method,
            'notes': self.notes
        }


class Poll(db.Model):
    __tablename__ = 'polls'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    question = db.Column(db.String(500), nullable=False)
    total_votes = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='active')
    ends_at = db.Column(db.DateTime)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_by_name = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    options = db.relationship('PollOption', backref='poll', cascade='all, delete-orphan',
                              order_by='PollOption.position')
    ballots = db.relationship('PollVote', backref='poll', cascade='all, delete-orphan')

    def to_dict(self, include_voters=False):
        data = {
            'id': self.id,
            'question': self.question,
            'options': [o.to_dict() for o in self.options],
            'total_votes': self.total_votes,
            'status': self.status,
            'ends_at': iso(self.ends_at),
            'created_by': self.created_by,
            'created_by_name': self.created_by_name,
            'created_at': iso(self.created_at)
        }
        if include_voters:
            data['voters'] = [b.user_id for b in self.ballots]
        return data


class PollOption(db.Model):
    __tablename__ = 'poll_options'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    poll_id = db.Column(db.String(36), db.ForeignKey('polls.id', ondelete='CASCADE'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    text = db.Column(db.String(255), nullable=False)
    votes = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {'id': self.id, 'text': self.text, 'votes': self.votes}


class PollVote(db.Model):
    __tablename__ = 'poll_votes'
    __table_args__ = (db.UniqueConstraint('poll_id', 'user_id', name='uq_poll_vote_user'),)

    id = db.Column(db.Integer, primary_key=True)
    poll_id = db.Column(db.String(36), db.ForeignKey('polls.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    option_id = db.Column(db.String(36), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Feedback(db.Model):
    __tablename__ = 'feedbacks'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(100), default='General')
    date = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'message': self.message,
            'category': self.category,
            'date': iso(self.date),
            'user_id': self.user_id
        }


class Volunteer(db.Model):
    __tablename__ = 'volunteers'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(100), default='Volunteer')
    contact = db.Column(db.String(255))
    hours_contributed = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tasks_completed = db.Column(db.Integer, nullable=False, default=0)
    last_activity = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'role': self.role,
            'contact': self.contact,
            'hours_contributed': as_float(self.hours_contributed) or 0,
            'tasks_completed': self.tasks_completed or 0,
            'last_activity': iso(self.last_activity)
        }


class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    assigned_to = db.Column(db.String(255))
    due_date = db.Column(db.Date)
    status = db.Column(db.String(30), default='pending')
    priority = db.Column(db.String(20), default='medium')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'assigned_to': self.assigned_to,
            'due_date': iso(self.due_date),
            'status': self.status,
            'priority': self.priority
        }


class Photo(db.Model):
    __tablename__ = 'photos'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    url = db.Column(db.String(1000), nullable=False)
    category = db.Column(db.String(100))
    uploaded_by = db.Column(db.String(255))
    date = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'url': self.url,
            'category': self.category,
            'uploaded_by': self.uploaded_by,
            'date': iso(self.date)
        }


class CommunityUpdate(db.Model):
    __tablename__ = 'community_updates'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(100), default='Announcement')
    author = db.Column(db.String(255))
    date = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'content': self.content,
            'category': self.category,
            'author': self.author,
            'date': iso(self.date)
        }


class Event(db.Model):
    __tablename__ = 'events'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    date = db.Column(db.DateTime, nullable=False)
    location = db.Column(db.String(255))
    organizer = db.Column(db.String(255))

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'date': iso(self.date),
            'location': self.location,
            'organizer': self.organizer
        }


class Setting(db.Model):
    __tablename__ = 'settings'

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.JSON)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ActivityLog(db.Model):
    __tablename__ = 'activity_logs'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    user = db.relationship('User')
    action = db.Column(db.String(255), nullable=False)
    entity_type = db.Column(db.String(100))
    entity_id = db.Column(db.String(100))
    details = db.Column(db.Text)
    ip_address = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user_name': self.user.name if self.user else None,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'details': self.details,
            'created_at': iso(self.created_at)
        }


class TokenBlocklist(db.Model):
    __tablename__ = 'token_blocklist'
    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(36), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
