import random
from datetime import date, datetime, timedelta
from faker import Faker

from models import (
    db, User, BudgetEntry, Crop, Harvest, Poll, PollOption, Feedback,
    Volunteer, Task, Photo, CommunityUpdate, Event
)

# Vegetables grown in the barangay community garden: (name, variety, days to harvest)
CROPS = [
    ("Tomatoes", "Cherry", 75), ("Eggplant", "Black Beauty", 80), ("String Beans", "Sitao", 60),
    ("Lettuce", "Iceberg", 55), ("Pechay", "Native", 45), ("Cabbage", "Green", 90),
    ("Okra", "Smooth Green", 55), ("Ampalaya", "Galaxy", 70), ("Kangkong", "Upland", 30),
]

BUDGET_LINES = [
    ("Seeds", "Tomato and eggplant seeds", 2500, 'Expense'),
    ("Tools", "Garden tools (shovels, rakes)", 3500, 'Expense'),
    ("Fertilizer", "Organic fertilizer and compost", 4000, 'Expense'),
    ("Water", "Irrigation pipes and hose", 1800, 'Expense'),
    ("Harvest Sales", "Okra sold at the barangay market", 1530, 'Income'),
    ("Donations", "Contribution from the SK council", 5000, 'Income'),
]

DISTRIBUTION = ["Community distribution", "Sold at barangay market", "Senior citizens program", "School feeding program"]


def clear_data():
    """Deletes existing data (order matters for foreign keys)"""
    print("🗑️  Cleaning old data...")
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    print("✅ Database cleared.")


def ensure_admin(email, password, name='Barangay Administrator'):
    user = User.query.filter_by(email=email.lower()).first()
    if user:
        if user.role != 'admin':
            user.role = 'admin'
            db.session.commit()
        print("⚠️  Admin user already exists.")
        return user

    user = User(email=email.lower(), name=name, role='admin')
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    print("✅ Admin user created successfully!")
    return user


def seed_crops_and_harvests(fake, today):
    print("🌱 Seeding crops and harvests...")
    crops = []
    for i, (name, variety, days) in enumerate(CROPS):
        planted = today - timedelta(days=random.randint(10, days + 30))
        expected = planted + timedelta(days=days)
        if expected < today - timedelta(days=7):
            status, stage = 'harvested', 'harvested'
        elif expected <= today + timedelta(days=7):
            status, stage = 'ready', 'mature'
        else:
            status, stage = 'growing', random.choice(['seedling', 'growing'])
        crop = Crop(
            name=name, variety=variety, plot_number=f"{'ABC'[i % 3]}{i // 3 + 1}",
            planting_date=planted, expected_harvest_date=expected,
            health=random.choices(['healthy', 'needs-attention', 'critical'], weights=[7, 2, 1])[0],
            stage=stage, status=status, quantity=f"{random.randint(20, 100)} plants",
        )
        db.session.add(crop)
        crops.append(crop)
    db.session.flush()

    harvests = 0
    for crop in crops:
        if crop.status != 'harvested':
            continue
        for _ in range(random.randint(1, 2)):
            db.session.add(Harvest(
                crop_id=crop.id, crop_name=crop.name,
                harvest_date=fake.date_between_dates(crop.expected_harvest_date, today),
                quantity=random.randint(10, 60), unit='kg',
                quality=random.choice(['Excellent', 'Good', 'Good', 'Fair']),
                distribution_method=random.choice(DISTRIBUTION),
                notes=f"Distributed to {random.randint(10, 40)} families",
            ))
            harvests += 1
    return len(crops), harvests


def seed_budget(today):
    print("💰 Seeding budget ledger...")
    for i, (category, description, amount, kind) in enumerate(BUDGET_LINES):
        db.session.add(BudgetEntry(
            category=category, description=description, amount=amount, type=kind,
            date=today - timedelta(days=5 * (len(BUDGET_LINES) - i)),
        ))
    return len(BUDGET_LINES)


def seed_people(fake, today):
    print("🙋 Seeding volunteers and tasks...")
    volunteers = []
    for _ in range(8):
        v = Volunteer(
            name=fake.name(), role=random.choice(['Gardener', 'Coordinator', 'Youth Volunteer', 'Volunteer']),
            contact=fake.phone_number(), hours_contributed=random.randint(0, 60),
            tasks_completed=random.randint(0, 15),
            last_activity=today - timedelta(days=random.randint(0, 30)),
        )
        db.session.add(v)
        volunteers.append(v)

    titles = ["Water the seedlings", "Compost turning", "Weed plot A", "Repair fence",
              "Harvest pechay", "Prepare seedbeds", "Fix irrigation hose"]
    for title in titles:
        db.session.add(Task(
            title=title, description=fake.sentence(), assigned_to=random.choice(volunteers).name,
            due_date=today + timedelta(days=random.randint(-5, 14)),
            status=random.choice(['pending', 'in-progress', 'completed']),
            priority=random.choice(['low', 'medium', 'high']),
        ))
    return len(volunteers), len(titles)


def seed_community(fake, author):
    print("🗳️  Seeding polls, feedback, updates and events...")
    poll = Poll(question="Which crop should we plant next season?", status='active',
                ends_at=datetime.utcnow() + timedelta(days=14),
                created_by=author.id if author else None,
                created_by_name=author.name if author else None)
    counts = [random.randint(0, 20) for _ in range(3)]
    poll.options = [PollOption(position=i, text=t, votes=n)
                    for i, (t, n) in enumerate(zip(["Corn", "Squash", "Sweet potato"], counts))]
    poll.total_votes = sum(counts)
    db.session.add(poll)

    for _ in range(4):
        db.session.add(Feedback(name=fake.name(), message=fake.paragraph(nb_sentences=2),
                                category=random.choice(['Suggestion', 'Concern', 'Appreciation'])))
        db.session.add(Photo(title=fake.sentence(nb_words=4), description=fake.sentence(),
                             url=fake.image_url(), category='Garden', uploaded_by=fake.name()))

    db.session.add(CommunityUpdate(title="Community garden clean-up drive",
                                   content=fake.paragraph(nb_sentences=3), category='Announcement',
                                   author=author.name if author else 'Barangay Council'))
    db.session.add(Event(title="Seedling distribution day", description=fake.sentence(),
                         date=datetime.utcnow() + timedelta(days=10), location="Barangay Hall",
                         organizer='Barangay Council'))


def seed_sample_data(author=None, seed=None):
    """Populates an empty database. Returns None when crops already exist."""
    if Crop.query.count() > 0:
        print("ℹ️  Sample data already exists.")
        return None

    fake = Faker('en_PH')
    if seed is not None:
        Faker.seed(seed)
        random.seed(seed)

    today = date.today()
    try:
        crops, harvests = seed_crops_and_harvests(fake, today)
        budget = seed_budget(today)
        volunteers, tasks = seed_people(fake, today)
        seed_community(fake, author)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    print("✅ Sample data initialized.")
    return {'crops': crops, 'harvests': harvests, 'budget_entries': budget,
            'volunteers': volunteers, 'tasks': tasks, 'polls': 1}


if __name__ == '__main__':
    import os
    from app import create_app

    app = create_app(os.environ.get('FLASK_CONFIG', 'development'))
    with app.app_context():
        db.create_all()
        clear_data()
        admin_email = (app.config['ADMIN_EMAILS'] or ['admin@barangayfarm.ph'])[0]
        admin = ensure_admin(admin_email, os.environ.get('ADMIN_PASSWORD', 'admin123'))
        seed_sample_data(author=admin)
