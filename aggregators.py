"""
Derived-state aggregators.

Pure functions over record lists already fetched from the repositories
(the to_dict() shape of the models). None of them write through their
inputs; every result is a freshly built dict or list. Each one either
returns a complete result or raises one of the errors in errors.py.
"""
import math
from decimal import Decimal

from errors import InvalidEntry, InconsistentState, OptionNotFound, CropNotFound, PollClosed, DuplicateVote

INCOME = 'Income'
EXPENSE = 'Expense'

READY_STATUS = 'ready'
HARVESTED_STATUS = 'harvested'
FAILED_STATUS = 'failed'
CLOSED_STATUS = 'closed'
COMPLETED_TASK = 'completed'


def _number(value, field, allow_zero=False):
    """Validate a numeric field and return it as a Decimal.

    Stored rows come back from Numeric columns as Decimal while config and
    request values are int or float, so everything is summed as Decimal.
    """
    # bool is an int subclass; True must not count as an amount of 1
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidEntry(f"{field} must be a number, got {value!r}")
    number = Decimal(str(value))
    if not number.is_finite():
        raise InvalidEntry(f"{field} must be finite, got {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        raise InvalidEntry(f"{field} must be {'non-negative' if allow_zero else 'positive'}, got {value!r}")
    return number


def _money(value):
    return round(float(value), 2)


# ============ Budget Ledger ============

def summarize_budget(entries, total_budget):
    total_budget = _number(total_budget, 'total_budget', allow_zero=True)

    spent = Decimal(0)
    income = Decimal(0)
    per_category = {}
    for entry in entries:
        amount = _number(entry.get('amount'), 'amount')
        entry_type = entry.get('type') or EXPENSE
        if entry_type not in (INCOME, EXPENSE):
            raise InvalidEntry(f"Unknown budget entry type {entry_type!r}")

        if entry_type == INCOME:
            income += amount
        else:
            spent += amount

        category = entry.get('category')
        per_category[category] = per_category.get(category, Decimal(0)) + amount

    total_spent = _money(spent)
    total_income = _money(income)
    percent_spent = round(float(spent / total_budget * 100), 1) if total_budget else 0

    return {
        'total_spent': total_spent,
        'total_income': total_income,
        'balance': _money(income - spent),
        'remaining': _money(total_budget - spent),
        'per_category': {k: _money(v) for k, v in per_category.items()},
        'percent_spent': percent_spent,
        'entry_count': len(entries)
    }


# ============ Crops & Harvests ============

def find_crop(crops, crop_id):
    for crop in crops:
        if crop.get('id') == crop_id:
            return crop
    raise CropNotFound(f"Crop {crop_id} not found")


def rollup_crops(crops, harvests):
    statuses = [(c.get('status') or '').lower() for c in crops]
    known_ids = {c.get('id') for c in crops}

    yield_by_crop = {}
    orphan_ids = []
    for harvest in harvests:
        quantity = _number(harvest.get('quantity'), 'quantity')
        crop_id = harvest.get('crop_id')
        if crop_id not in known_ids:
            orphan_ids.append(harvest.get('id'))
            continue
        yield_by_crop[crop_id] = yield_by_crop.get(crop_id, Decimal(0)) + quantity

    return {
        'total_crops': len(crops),
        'active_count': sum(1 for s in statuses if s != HARVESTED_STATUS),
        'ready_count': statuses.count(READY_STATUS),
        'harvested_count': statuses.count(HARVESTED_STATUS),
        'failed_count': statuses.count(FAILED_STATUS),
        'yield_by_crop': {k: _money(v) for k, v in yield_by_crop.items()},
        'orphaned_harvests': len(orphan_ids),
        'orphaned_harvest_ids': orphan_ids
    }


# ============ Poll Tally ============

def check_poll_consistency(poll):
    options = poll.get('options') or []
    for option in options:
        _number(option.get('votes'), 'votes', allow_zero=True)

    ids = [o.get('id') for o in options]
    if len(set(ids)) != len(ids):
        raise InconsistentState(f"Poll {poll.get('id')} has duplicate option ids")

    counted = sum(o['votes'] for o in options)
    if counted != poll.get('total_votes'):
        raise InconsistentState(
            f"Poll {poll.get('id')} records {poll.get('total_votes')} votes but its options sum to {counted}"
        )


def compute_percentages(poll):
    check_poll_consistency(poll)
    total = poll['total_votes']
    return [
        {
            'option_id': o['id'],
            'text': o.get('text'),
            'votes': o['votes'],
            'percentage': math.floor(float(o['votes']) / float(total) * 100 + 0.5) if total else 0
        }
        for o in poll.get('options') or []
    ]


def apply_vote(poll, option_id, voter_id=None):
    """
    Return a copy of `poll` with one vote added to `option_id`.

    This is the only path that changes vote counts, so it keeps
    total_votes equal to the sum of the option votes. When `voter_id` is
    given it must not already appear in poll['voters'].
    """
    if (poll.get('status') or '').lower() == CLOSED_STATUS:
        raise PollClosed(f"Poll {poll.get('id')} is closed")
    check_poll_consistency(poll)

    options = poll.get('options') or []
    if not any(o.get('id') == option_id for o in options):
        raise OptionNotFound(f"Option {option_id} not found in poll {poll.get('id')}")

    voters = list(poll.get('voters') or [])
    if voter_id is not None:
        if voter_id in voters:
            raise DuplicateVote(f"User {voter_id} has already voted in poll {poll.get('id')}")
        voters.append(voter_id)

    updated = dict(poll)
    updated['options'] = [
        dict(o, votes=o['votes'] + 1) if o.get('id') == option_id else dict(o)
        for o in options
    ]
    updated['total_votes'] = poll['total_votes'] + 1
    if 'voters' in poll or voter_id is not None:
        updated['voters'] = voters
    return updated


# ============ Volunteers ============

def rank_volunteers(volunteers, tasks=(), top_n=3):
    hours = [_number(v.get('hours_contributed'), 'hours_contributed', allow_zero=True) for v in volunteers]

    # sorted() is stable, also with reverse=True
    order = sorted(range(len(volunteers)), key=lambda i: hours[i], reverse=True)
    ranked = [volunteers[i] for i in order]

    total_tasks = len(tasks)
    completed = sum(1 for t in tasks if (t.get('status') or '').lower() == COMPLETED_TASK)

    return {
        'ranked': ranked,
        'top': ranked[:top_n],
        'total_hours': _money(sum(hours, Decimal(0))),
        'total_volunteers': len(volunteers),
        'completed_tasks': completed,
        'total_tasks': total_tasks,
        'completed_task_ratio': completed / total_tasks if total_tasks else 0
    }
