import os
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('SWEEPER_ENABLED', 'false')

from clinic.database import Base  # noqa: E402
from clinic.models import appointment, availability, leave_request, schedule_change_request  # noqa: E402,F401
from clinic.models.user import User, UserRole  # noqa: E402
from clinic.services.lifecycle import AppointmentLifecycle  # noqa: E402
from clinic.services.notifier import NotificationDispatcher, Notifier  # noqa: E402
from clinic.services.refund_ledger import RefundLedger  # noqa: E402


class RecordingNotifier(Notifier):
    def __init__(self):
        self.calls = []

    def send_cancellation(self, appointment, refund_info):
        self.calls.append(('send_cancellation', appointment, refund_info))

    def send_reschedule(self, appointment, old_date, old_time):
        self.calls.append(('send_reschedule', appointment, old_date, old_time))

    def send_leave_cancellation(self, appointment, leave_info):
        self.calls.append(('send_leave_cancellation', appointment, leave_info))


class FailingNotifier(Notifier):
    def send_cancellation(self, appointment, refund_info):
        raise RuntimeError('SMS gateway down')

    def send_reschedule(self, appointment, old_date, old_time):
        raise RuntimeError('SMS gateway down')

    def send_leave_cancellation(self, appointment, leave_info):
        raise RuntimeError('SMS gateway down')


class RecordingLedger(RefundLedger):
    def __init__(self):
        self.entries = []

    def record(self, appointment, amount, reason):
        self.entries.append((appointment.appointment_id, amount, reason))


@pytest.fixture
def engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger():
    return RecordingLedger()


@pytest.fixture
def lifecycle(notifier, ledger):
    return AppointmentLifecycle(NotificationDispatcher(notifier), ledger)


@pytest.fixture
def make_user(db):
    counter = {'value': 0}

    def factory(role: UserRole = UserRole.PATIENT, **fields) -> User:
        counter['value'] += 1
        defaults = {
            'email': f'{role.value}{counter["value"]}@clinic.test',
            'name': f'{role.value.title()} {counter["value"]}',
            'role': role.value,
        }
        if role is UserRole.DOCTOR:
            defaults.update(department='General Medicine', consultation_fee=Decimal('500.00'))
        defaults.update(fields)
        user = User(**defaults)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def doctor(make_user):
    return make_user(UserRole.DOCTOR)


@pytest.fixture
def patient(make_user):
    return make_user(UserRole.PATIENT)


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def failing_lifecycle(ledger):
    return AppointmentLifecycle(NotificationDispatcher(FailingNotifier()), ledger)
