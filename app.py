from flask import Flask, request, jsonify, session, send_file, g
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from datetime import datetime, date
from functools import wraps
from io import BytesIO
import logging
import os
import secrets
import time

import pandas as pd
from dotenv import load_dotenv
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

import billing
from billing import BillingError, ValidationError, NotFoundError, ConflictError, NoBillableMembersError
from cache import TTLCache

app = Flask(__name__)
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(BASE_DIR, '.env'))

db_path = os.path.join(BASE_DIR, "billing.db")
# Support DATABASE_URL for production (e.g., Postgres). Fallback to local SQLite.
db_url = os.getenv('DATABASE_URL')
if db_url and db_url.startswith('postgres://'):
    db_url = db_url.replace('postgres://', 'postgresql://', 1)
app.config['SQLALCHEMY_DATABASE_URI'] = db_url or f"sqlite:///{db_path}"
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-change-me')
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
if os.getenv('FLASK_SECURE_COOKIES', '1') not in ('0', 'false', 'False'):
    app.config['SESSION_COOKIE_SECURE'] = True

app.config['BILLING_FIXED_MONTHLY_FEE'] = float(os.getenv('BILLING_FIXED_MONTHLY_FEE', billing.FIXED_MONTHLY_FEE))
app.config['BILLING_CURRENCY'] = os.getenv('BILLING_CURRENCY', 'INR')
app.config['BILLING_CACHE_TTL_SECONDS'] = float(os.getenv('BILLING_CACHE_TTL_SECONDS', '180'))
app.config['RAZORPAY_KEY_SECRET'] = os.getenv('RAZORPAY_KEY_SECRET')

db = SQLAlchemy(app)
Migrate(app, db)

logger = logging.getLogger('billing')
request_logger = logging.getLogger('billing.request')


def configure_logging(level: str | None = None) -> None:
    level = (level or os.getenv('LOG_LEVEL') or 'INFO').upper()
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    logger.setLevel(level)


configure_logging()

app.extensions['billing_cache'] = TTLCache(ttl_seconds=app.config['BILLING_CACHE_TTL_SECONDS'])


def billing_cache() -> TTLCache:
    return app.extensions['billing_cache']


def _today() -> date:
    return datetime.utcnow().date()


def _iso(value):
    return value.isoformat() if value else None


def _fixed_fee() -> float:
    return float(app.config.get('BILLING_FIXED_MONTHLY_FEE') or billing.FIXED_MONTHLY_FEE)


@app.before_request
def _start_request_timer():
    g.request_started = time.perf_counter()


@app.after_request
def log_request(resp):
    started = getattr(g, 'request_started', None)
    duration = round(time.perf_counter() - started, 4) if started else None
    line = (f"{request.method} {request.path} status={resp.status_code} duration={duration} "
            f"gym={session.get('gym_id')} user={session.get('user_id')}")
    if resp.status_code >= 500:
        request_logger.error(f"SERVER ERROR: {line}")
    elif resp.status_code >= 400:
        request_logger.warning(f"CLIENT ERROR: {line}")
    else:
        request_logger.info(f"SUCCESS: {line}")
    return resp


# Basic security headers for a JSON API
@app.after_request
def set_security_headers(resp):
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    resp.headers['X-Frame-Options'] = 'DENY'
    resp.headers['Referrer-Policy'] = 'no-referrer'
    if os.getenv('ENABLE_HSTS', '0') in ('1', 'true', 'True'):
        resp.headers['Strict-Transport-Security'] = 'max-age=63072000; includeSubDomains; preload'
    return resp


class Gym(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, index=True)
    gym_code = db.Column(db.String(20), unique=True, nullable=True)
    owner = db.Column(db.String(120), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'gym_code': self.gym_code or '',
            'owner': self.owner or '',
            'email': self.email or '',
            'phone': self.phone or '',
            'created_at': _iso(self.created_at),
        }


class Member(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    gym_id = db.Column(db.Integer, db.ForeignKey('gym.id'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    membership_type = db.Column(db.String(30), default='basic')  # basic/premium/vip/personal_training/none
    membership_fees = db.Column(db.Float, nullable=True)  # member's own dues, not used for platform billing
    membership_start_date = db.Column(db.Date, nullable=True)
    membership_end_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'gym_id': self.gym_id,
            'name': self.name,
            'email': self.email or '',
            'phone': self.phone or '',
            'membership_type': self.membership_type or 'basic',
            'membership_fees': self.membership_fees,
            'membership_start_date': _iso(self.membership_start_date),
            'membership_end_date': _iso(self.membership_end_date),
        }


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), default='gym')  # admin or gym
    gym_id = db.Column(db.Integer, db.ForeignKey('gym.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class MonthlyBilling(db.Model):
    """Bill of one gym for one calendar month. member_bills and payment_history are embedded."""
    __tablename__ = 'monthly_billing'

    id = db.Column(db.Integer, primary_key=True)
    billing_id = db.Column(db.String(40), unique=True, nullable=False, index=True)
    gym_id = db.Column(db.Integer, db.ForeignKey('gym.id'), nullable=False, index=True)
    gym_name = db.Column(db.String(120), nullable=False)
    billing_month = db.Column(db.Integer, nullable=False)  # 1-12
    billing_year = db.Column(db.Integer, nullable=False)
    total_members = db.Column(db.Integer, nullable=False, default=0)
    total_bill_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_paid_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_pending_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_overdue_amount = db.Column(db.Float, nullable=False, default=0.0)
    billing_status = db.Column(db.String(20), nullable=False, default='draft', index=True)
    billing_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    due_date = db.Column(db.Date, nullable=False)
    payment_deadline = db.Column(db.Date, nullable=False, index=True)
    member_bills = db.Column(db.JSON, nullable=False, default=list)
    billing_breakdown = db.Column(db.JSON, nullable=False, default=dict)
    payment_history = db.Column(db.JSON, nullable=False, default=list)
    notes = db.Column(db.Text, nullable=False, default='')
    is_finalized = db.Column(db.Boolean, nullable=False, default=False)
    finalized_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('gym_id', 'billing_year', 'billing_month', name='uq_billing_gym_period'),
    )
    __mapper_args__ = {'version_id_col': version}

    def apply_totals(self):
        totals = billing.summarize_totals(self.member_bills or [], self.payment_history or [])
        for key, value in totals.items():
            setattr(self, key, value)
        return self

    def add_payment(self, entry: dict):
        # reassign so the JSON column is flagged dirty
        self.payment_history = list(self.payment_history or []) + [entry]
        return self.apply_totals()

    def to_summary(self):
        return {
            'billing_id': self.billing_id,
            'gym_id': self.gym_id,
            'gym_name': self.gym_name,
            'billing_month': self.billing_month,
            'billing_year': self.billing_year,
            'month_name': billing.month_name(self.billing_month),
            'total_members': self.total_members,
            'total_bill_amount': self.total_bill_amount,
            'total_paid_amount': self.total_paid_amount,
            'total_pending_amount': self.total_pending_amount,
            'total_overdue_amount': self.total_overdue_amount,
            'billing_status': self.billing_status,
            'billing_date': _iso(self.billing_date),
            'due_date': _iso(self.due_date),
            'payment_deadline': _iso(self.payment_deadline),
            'currency': app.config['BILLING_CURRENCY'],
            'billing_breakdown': self.billing_breakdown or {},
            'payment_history': self.payment_history or [],
            'notes': self.notes or '',
            'is_finalized': bool(self.is_finalized),
            'finalized_at': _iso(self.finalized_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def to_dict(self):
        data = self.to_summary()
        data['member_bills'] = self.member_bills or []
        return data


def _ensure_schema():
    db.create_all()


def _seed_admin():
    admin_username = os.getenv('ADMIN_USERNAME', 'admin')
    admin_password = os.getenv('ADMIN_PASSWORD', 'admin123')
    if not User.query.filter_by(username=admin_username).first():
        db.session.add(User(username=admin_username, password_hash=generate_password_hash(admin_password), role='admin'))
        db.session.commit()
        logger.info(f"[BILLING] Seeded admin user '{admin_username}'")


@app.before_request
def _bootstrap_once():
    if app.config.get('BOOTSTRAPPED'):
        return
    app.config['BOOTSTRAPPED'] = True
    _ensure_schema()
    _seed_admin()
    start_scheduler_once()


def start_scheduler_once():
    if app.config.get('SCHEDULER_STARTED'):
        return
    app.config['SCHEDULER_STARTED'] = True
    if os.getenv('AUTO_FINALIZE_ENABLED', '0') in ('0', 'false', 'False', ''):
        return
    # Avoid duplicate on Flask reloader
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true' or not app.debug:
        scheduler = BackgroundScheduler()
        trigger = CronTrigger(
            day=int(os.getenv('FINALIZE_DAY', '1')),
            hour=int(os.getenv('FINALIZE_TIME_HH', '0')),
            minute=int(os.getenv('FINALIZE_TIME_MM', '30')),
        )
        scheduler.add_job(finalize_previous_month_job, trigger)
        scheduler.start()
        app.extensions['billing_scheduler'] = scheduler
        logger.info('[BILLING] Monthly finalize job scheduled')


def finalize_previous_month_job():
    with app.app_context():
        try:
            result = finalize_previous_month()
            logger.info(f"[BILLING] Scheduled finalize done: {result}")
        except Exception:
            logger.exception('[BILLING] Scheduled finalize failed')


# Session-based scopes. Gym users carry gym_id in the session; admins are checked against the DB.
def gym_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not session.get('gym_id'):
            return jsonify({'ok': False, 'error': 'Gym login required'}), 401
        return view_func(*args, **kwargs)
    return wrapper


def admin_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        uid = session.get('user_id')
        if not uid:
            return jsonify({'ok': False, 'error': 'Login required'}), 401
        user = db.session.get(User, uid)
        if not (user and (user.role or 'gym') == 'admin'):
            return jsonify({'ok': False, 'error': 'Admin only'}), 403
        return view_func(*args, **kwargs)
    return wrapper


@app.errorhandler(Exception)
def handle_error(err):
    if isinstance(err, HTTPException):
        return jsonify({'ok': False, 'error': err.description}), err.code
    db.session.rollback()
    if isinstance(err, BillingError):
        logger.warning(f"[BILLING] {request.method} {request.path}: {err.message}")
        return jsonify(err.to_dict()), err.status_code
    logger.exception(f"[BILLING] Unexpected error on {request.method} {request.path}")
    return jsonify({'ok': False, 'error': str(err), 'error_type': 'error'}), 500


def _parse_gym_id(value) -> int:
    try:
        gym_id = int(value)
    except (TypeError, ValueError):
        raise ValidationError('Invalid gym ID')
    if gym_id <= 0:
        raise ValidationError('Invalid gym ID')
    return gym_id


def _parse_date(value, field: str) -> date | None:
    if value in (None, ''):
        return None
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        raise ValidationError(f'Invalid {field}')


def get_gym(gym_id) -> Gym:
    gym = db.session.get(Gym, _parse_gym_id(gym_id))
    if not gym:
        raise NotFoundError('Gym not found')
    return gym


def find_billing(gym_id: int, year: int, month: int) -> MonthlyBilling | None:
    return MonthlyBilling.query.filter_by(gym_id=gym_id, billing_year=year, billing_month=month).first()


def get_billing_by_id(billing_id: str, gym_id: int | None = None) -> MonthlyBilling:
    query = MonthlyBilling.query.filter_by(billing_id=billing_id)
    if gym_id is not None:
        query = query.filter_by(gym_id=gym_id)
    record = query.first()
    if not record:
        raise NotFoundError('Billing not found')
    return record


def _generate_billing_id(gym_name: str, year: int, month: int) -> str:
    prefix = f"BILL-{billing.gym_code(gym_name)}-{year}{month:02d}"
    while True:
        candidate = f"{prefix}-{secrets.token_hex(3).upper()}"
        if not MonthlyBilling.query.filter_by(billing_id=candidate).first():
            return candidate


def _invalidate_gym_cache(gym_id: int) -> None:
    billing_cache().invalidate(f"gym:{gym_id}:")


def calculate_gym_billing(gym: Gym, year: int, month: int, as_of: date | None = None) -> dict:
    """Pro-rated bill for a gym; live up to ``as_of`` when it falls in the month. Never persisted."""
    members = Member.query.filter_by(gym_id=gym.id).order_by(Member.id).all()
    return billing.calculate_billing(members, year, month, as_of=as_of, monthly_fee=_fixed_fee())


def live_billing_summary(gym: Gym, today: date) -> dict | None:
    if not billing.gym_existed_in(gym.created_at, today.year, today.month):
        return None
    year, month = today.year, today.month
    calc = calculate_gym_billing(gym, year, month, as_of=today)
    if not calc['member_bills']:
        return None
    month_end = billing.last_day_of_month(year, month)
    return {
        'billing_id': billing.current_billing_id(gym.name, year, month),
        'gym_id': gym.id,
        'gym_name': gym.name,
        'billing_month': month,
        'billing_year': year,
        'month_name': billing.month_name(month),
        'total_members': calc['total_members'],
        'total_bill_amount': calc['total_bill_amount'],
        'total_paid_amount': 0.0,
        'total_pending_amount': calc['total_bill_amount'],
        'total_overdue_amount': 0.0,
        'billing_status': 'draft',
        'due_date': month_end.isoformat(),
        'payment_deadline': month_end.isoformat(),
        'currency': app.config['BILLING_CURRENCY'],
        'billing_breakdown': calc['billing_breakdown'],
        'member_bills': calc['member_bills'],
        'payment_history': [],
        'is_finalized': False,
        'is_real_time': True,
        'calculation_end_date': calc['calculation_end_date'].isoformat(),
    }


def create_monthly_billing(gym_id, year, month, due_date: date | None = None,
                           payment_deadline: date | None = None, today: date | None = None) -> MonthlyBilling:
    """Compute the full-month bill of a gym and store it with status 'sent'."""
    today = today or _today()
    gym_id = _parse_gym_id(gym_id)
    year, month = billing.validate_period(year, month)
    if billing.is_future_month(year, month, today):
        raise ValidationError('Cannot create billing for a future month')

    if find_billing(gym_id, year, month):
        raise ConflictError('Billing already exists for this month')

    gym = get_gym(gym_id)
    if not billing.gym_existed_in(gym.created_at, year, month):
        raise ValidationError('Gym was not active during this month')

    calc = calculate_gym_billing(gym, year, month)
    if not calc['member_bills']:
        raise NoBillableMembersError()

    month_end = billing.last_day_of_month(year, month)
    record = MonthlyBilling(
        billing_id=_generate_billing_id(gym.name, year, month),
        gym_id=gym.id,
        gym_name=gym.name,
        billing_month=month,
        billing_year=year,
        due_date=due_date or month_end,
        payment_deadline=payment_deadline or month_end,
        member_bills=calc['member_bills'],
        payment_history=[],
        notes='',
    )
    record.apply_totals()
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Billing already exists for this month')
    _invalidate_gym_cache(gym.id)
    logger.info(f"[BILLING] Created {record.billing_id} | gym={gym.id} | {year}-{month:02d} | "
                f"members={record.total_members} | total={record.total_bill_amount}")
    return record


def finalize_billing_for_month(gym: Gym, year: int, month: int, now: datetime | None = None) -> str:
    """Finalize the stored bill of a gym, creating it first when missing.

    Returns 'finalized', 'created' or 'already_finalized'.
    """
    now = now or datetime.utcnow()
    outcome = 'finalized'
    record = find_billing(gym.id, year, month)
    if record is None:
        record = create_monthly_billing(gym.id, year, month, today=now.date())
        outcome = 'created'
    if record.is_finalized:
        return 'already_finalized'
    record.is_finalized = True
    record.finalized_at = now
    db.session.commit()
    _invalidate_gym_cache(gym.id)
    return outcome


def finalize_month_for_all_gyms(year: int, month: int, now: datetime | None = None) -> dict:
    """Create-and-finalize sweep over every gym; one gym failing never stops the others."""
    now = now or datetime.utcnow()
    gyms = Gym.query.order_by(Gym.id).all()
    result = {
        'year': year,
        'month': month,
        'month_name': billing.month_name(month),
        'total_gyms': len(gyms),
        'finalized_count': 0,
        'created_count': 0,
        'already_finalized_count': 0,
        'skipped_count': 0,
        'error_count': 0,
        'errors': [],
        'finalized_at': now.isoformat(),
    }
    for gym in gyms:
        if not billing.gym_existed_in(gym.created_at, year, month):
            logger.info(f"[BILLING] Skipping gym {gym.name} - created after {year}-{month:02d}")
            result['skipped_count'] += 1
            continue
        try:
            outcome = finalize_billing_for_month(gym, year, month, now=now)
        except NoBillableMembersError:
            db.session.rollback()
            logger.info(f"[BILLING] Skipping gym {gym.name} - no billable members in {year}-{month:02d}")
            result['skipped_count'] += 1
            continue
        except Exception as e:
            db.session.rollback()
            logger.error(f"[BILLING] Error finalizing billing for gym {gym.name}: {e}")
            result['error_count'] += 1
            result['errors'].append({'gym_id': gym.id, 'gym_name': gym.name, 'error': str(e)})
            continue
        if outcome == 'already_finalized':
            result['already_finalized_count'] += 1
        else:
            result['finalized_count'] += 1
            if outcome == 'created':
                result['created_count'] += 1
        logger.info(f"[BILLING] {outcome} billing for gym {gym.name} ({year}-{month:02d})")
    return result


def finalize_previous_month(now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    year, month = billing.previous_month(now.date())
    logger.info(f"[BILLING] Finalizing billing for {year}-{month:02d}")
    return finalize_month_for_all_gyms(year, month, now=now)


def backfill_month(year, month, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    year, month = billing.validate_period(year, month)
    if billing.is_future_month(year, month, now.date()) or billing.is_current_month(year, month, now.date()):
        raise ValidationError('Backfill is only allowed for past months')
    return finalize_month_for_all_gyms(year, month, now=now)


def mark_billing_paid(record: MonthlyBilling, payment_method=None, transaction_id=None,
                      description=None, processed_by=None, now: datetime | None = None) -> MonthlyBilling:
    """Settle the whole bill in one payment. A second call is rejected, not ignored."""
    if record.billing_status == 'fully_paid':
        raise ConflictError('Billing is already marked as paid')
    entry = billing.full_payment_entry(
        record.total_bill_amount,
        payment_method,
        transaction_id,
        description or f"Full payment for {record.gym_name} - {record.billing_month}/{record.billing_year}",
        processed_by=processed_by,
        paid_at=now,
    )
    record.add_payment(entry)
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError('Billing is already marked as paid')
    _invalidate_gym_cache(record.gym_id)
    logger.info(f"[BILLING] {record.billing_id} marked as PAID | amount={entry['amount']} | "
                f"method={entry['payment_method']} | tx={entry['transaction_id']}")
    return record


def update_billing_status(record: MonthlyBilling, status, notes=None) -> MonthlyBilling:
    if status not in billing.BILLING_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(billing.BILLING_STATUSES)}")
    if record.is_finalized:
        raise ConflictError('Finalized billing cannot be modified')
    record.billing_status = status
    if notes:
        record.notes = notes
    db.session.commit()
    _invalidate_gym_cache(record.gym_id)
    return record


def billing_history(gym: Gym, months: int, today: date) -> list[dict]:
    actual = min(months, max(1, billing.months_since(gym.created_at, today)))
    history = []
    for year, month in billing.months_back(today, actual):
        if not billing.gym_existed_in(gym.created_at, year, month):
            continue
        record = find_billing(gym.id, year, month)
        if record:
            history.append(record.to_dict())
        else:
            history.append({
                'billing_id': None,
                'billing_month': month,
                'billing_year': year,
                'month_name': billing.month_name(month),
                'total_members': 0,
                'total_bill_amount': 0.0,
                'total_paid_amount': 0.0,
                'total_pending_amount': 0.0,
                'total_overdue_amount': 0.0,
                'billing_status': 'no_billing',
                'due_date': None,
                'payment_deadline': None,
                'member_bills': [],
                'billing_breakdown': {},
                'payment_history': [],
                'is_finalized': False,
                'finalized_at': None,
            })
    return history


def billing_statistics(gym: Gym, today: date) -> dict:
    live = calculate_gym_billing(gym, today.year, today.month, as_of=today)
    total_paid = db.session.query(func.coalesce(func.sum(MonthlyBilling.total_paid_amount), 0.0)).filter(
        MonthlyBilling.gym_id == gym.id
    ).scalar() or 0.0
    records = MonthlyBilling.query.filter_by(gym_id=gym.id).order_by(
        MonthlyBilling.billing_year.desc(), MonthlyBilling.billing_month.desc()
    ).limit(12).all()
    return {
        'gym_id': gym.id,
        'current_month': {
            'total_bill': live['total_bill_amount'],
            'total_paid': 0.0,
            'total_pending': live['total_bill_amount'],
            'billing_status': 'draft' if live['member_bills'] else 'no_billing',
        },
        'total_paid_till_now': billing.round2(total_paid),
        'billing_history': [{
            'month': r.billing_month,
            'year': r.billing_year,
            'total_bill': r.total_bill_amount,
            'total_paid': r.total_paid_amount,
            'status': r.billing_status,
        } for r in records],
    }


def billing_analytics(gym: Gym, today: date) -> dict:
    analytics = {
        'total_revenue': 0.0,
        'total_members': 0,
        'average_monthly_revenue': 0.0,
        'monthly_breakdown': [],
        'membership_type_breakdown': {t: {'count': 0, 'revenue': 0.0} for t in billing.BREAKDOWN_TYPES},
    }
    for year, month in billing.months_back(today, 6):
        record = find_billing(gym.id, year, month)
        if not record:
            continue
        analytics['total_revenue'] = billing.round2(analytics['total_revenue'] + record.total_bill_amount)
        analytics['total_members'] += record.total_members
        analytics['monthly_breakdown'].append({
            'month': month,
            'year': year,
            'month_name': billing.month_name(month),
            'revenue': record.total_bill_amount,
            'members': record.total_members,
            'paid': record.total_paid_amount,
            'pending': record.total_pending_amount,
            'overdue': record.total_overdue_amount,
        })
        for mtype, entry in (record.billing_breakdown or {}).items():
            target = analytics['membership_type_breakdown'].get(mtype)
            if target is None:
                continue
            target['count'] += entry.get('count', 0)
            target['revenue'] = billing.round2(target['revenue'] + entry.get('total_amount', 0.0))
    if analytics['monthly_breakdown']:
        analytics['average_monthly_revenue'] = billing.round2(
            analytics['total_revenue'] / len(analytics['monthly_breakdown'])
        )
    return analytics


def master_monthly_billing(today: date) -> dict:
    year, month = today.year, today.month
    master = {
        'month': month,
        'year': year,
        'month_name': billing.month_name(month),
        'total_gyms': 0,
        'total_revenue': 0.0,
        'total_members': 0,
        'total_paid': 0.0,
        'total_pending': 0.0,
        'total_overdue': 0.0,
        'gym_bills': [],
    }
    gyms = Gym.query.order_by(Gym.id).all()
    master['total_gyms'] = len(gyms)
    for gym in gyms:
        if not billing.gym_existed_in(gym.created_at, year, month):
            continue
        calc = calculate_gym_billing(gym, year, month, as_of=today)
        master['total_revenue'] = billing.round2(master['total_revenue'] + calc['total_bill_amount'])
        master['total_pending'] = billing.round2(master['total_pending'] + calc['total_bill_amount'])
        master['total_members'] += calc['total_members']
        master['gym_bills'].append({
            'gym_id': gym.id,
            'gym_name': gym.name,
            'gym_code': gym.gym_code or '',
            'gym_owner': gym.owner or '',
            'gym_email': gym.email or '',
            'gym_phone': gym.phone or '',
            'billing_id': billing.current_billing_id(gym.name, year, month),
            'total_bill_amount': calc['total_bill_amount'],
            'total_paid_amount': 0.0,
            'total_pending_amount': calc['total_bill_amount'],
            'total_overdue_amount': 0.0,
            'billing_status': 'draft',
            'member_count': calc['total_members'],
            'billing_breakdown': calc['billing_breakdown'],
        })
    master['gym_bills'].sort(key=lambda b: b['total_bill_amount'], reverse=True)
    return master


def pending_bills(today: date) -> dict:
    records = MonthlyBilling.query.filter(
        MonthlyBilling.billing_status.in_(billing.PENDING_STATUSES)
    ).order_by(MonthlyBilling.billing_year.desc(), MonthlyBilling.billing_month.desc()).all()
    overdue = []
    for r in records:
        if r.billing_status in ('sent', 'partially_paid') and billing.is_overdue(r.payment_deadline, r.total_pending_amount, today):
            item = r.to_summary()
            item['total_overdue_amount'] = r.total_pending_amount
            item['days_overdue'] = (today - r.payment_deadline).days
            overdue.append(item)
    return {'pending': [r.to_summary() for r in records], 'overdue': overdue}


@app.route('/api/auth/login', methods=['POST'])
def api_login():
    payload = request.get_json(silent=True) or {}
    username = (payload.get('username') or '').strip()
    password = payload.get('password') or ''
    if not username or not password:
        return jsonify({'ok': False, 'error': 'Username and password are required'}), 400
    user = User.query.filter_by(username=username).first()
    if not (user and check_password_hash(user.password_hash or '', password)):
        return jsonify({'ok': False, 'error': 'Invalid credentials'}), 401
    session.clear()
    session['user_id'] = user.id
    session['username'] = user.username
    if user.gym_id:
        session['gym_id'] = user.gym_id
    return jsonify({'ok': True, 'user': {'id': user.id, 'username': user.username, 'role': user.role, 'gym_id': user.gym_id}})


@app.route('/api/auth/logout', methods=['POST'])
def api_logout():
    session.clear()
    return jsonify({'ok': True})


# Gym-facing billing
@app.route('/api/billing/current-month', methods=['GET'])
@gym_required
def current_month_billing():
    today = _today()
    gym = get_gym(session['gym_id'])
    month_name = billing.month_name(today.month)
    if not billing.gym_existed_in(gym.created_at, today.year, today.month):
        return jsonify({'ok': True, 'billing': None, 'month_name': month_name,
                        'message': 'Gym was not active during this month'})
    summary = live_billing_summary(gym, today)
    if summary is None:
        return jsonify({'ok': True, 'billing': None, 'month_name': month_name,
                        'message': 'No active members for current month'})
    return jsonify({'ok': True, 'billing': summary, 'month_name': month_name})


@app.route('/api/billing/month/<int:year>/<int:month>', methods=['GET'])
@gym_required
def monthly_billing(year, month):
    year, month = billing.validate_period(year, month)
    today = _today()
    # the current month is always computed, even if a record was created for it
    if billing.is_current_month(year, month, today):
        data = live_billing_summary(get_gym(session['gym_id']), today)
    else:
        record = find_billing(_parse_gym_id(session['gym_id']), year, month)
        data = record.to_dict() if record else None
    if not data:
        raise NotFoundError('No billing found for this month')
    return jsonify({'ok': True, 'billing': data, 'month_name': billing.month_name(month)})


@app.route('/api/billing/history', methods=['GET'])
@gym_required
def billing_history_view():
    months = request.args.get('months', type=int) or 6
    if months < 1:
        months = 6
    months = min(months, 120)
    gym = get_gym(session['gym_id'])
    return jsonify({'ok': True, 'billing_history': billing_history(gym, months, _today())})


@app.route('/api/billing/analytics', methods=['GET'])
@gym_required
def billing_analytics_view():
    gym = get_gym(session['gym_id'])
    today = _today()
    analytics = billing_cache().get_or_set(
        f"gym:{gym.id}:analytics:{today.isoformat()}", lambda: billing_analytics(gym, today)
    )
    return jsonify({'ok': True, 'analytics': analytics})


@app.route('/api/billing/payment', methods=['POST'])
@gym_required
def gym_payment():
    payload = request.get_json(silent=True) or {}
    billing_id = (payload.get('billing_id') or '').strip()
    if not billing_id:
        raise ValidationError('billing_id required')
    gym_id = _parse_gym_id(session['gym_id'])
    record = get_billing_by_id(billing_id, gym_id=gym_id)
    record = mark_billing_paid(
        record,
        payment_method=payload.get('payment_method') or 'cash',
        transaction_id=payload.get('transaction_id'),
        description=payload.get('description') or f"Full payment for {billing.month_name(record.billing_month)} {record.billing_year}",
        processed_by=gym_id,
    )
    return jsonify({'ok': True, 'message': f"Bill marked as PAID. Amount: {record.total_bill_amount}",
                    'billing': record.to_summary()})


def _verify_razorpay_and_pay(billing_id: str, gym_id: int | None, processed_by):
    payload = request.get_json(silent=True) or {}
    order_id = payload.get('razorpay_order_id')
    payment_id = payload.get('razorpay_payment_id')
    signature = payload.get('razorpay_signature')
    if not (order_id and payment_id and signature):
        raise ValidationError('Invalid Razorpay response')
    secret = app.config.get('RAZORPAY_KEY_SECRET')
    if not secret:
        raise BillingError('Razorpay credentials not configured')
    if not billing.verify_payment_signature(order_id, payment_id, signature, secret):
        raise ValidationError('Payment signature verification failed')
    record = get_billing_by_id(billing_id, gym_id=gym_id)
    record = mark_billing_paid(
        record,
        payment_method='online',
        transaction_id=payment_id,
        description=f"Razorpay payment for {billing.month_name(record.billing_month)} {record.billing_year}",
        processed_by=processed_by,
    )
    return jsonify({'ok': True, 'message': 'Payment verified and bill marked as paid', 'billing': record.to_summary()})


@app.route('/api/billing/gym/<billing_id>/razorpay/verify', methods=['POST'])
@gym_required
def gym_razorpay_verify(billing_id):
    gym_id = _parse_gym_id(session['gym_id'])
    return _verify_razorpay_and_pay(billing_id, gym_id, processed_by=gym_id)


# Admin billing
@app.route('/api/billing/admin/<billing_id>/razorpay/verify', methods=['POST'])
@admin_required
def admin_razorpay_verify(billing_id):
    return _verify_razorpay_and_pay(billing_id, None, processed_by=session.get('username') or 'admin')


@app.route('/api/billing/gym/<gym_id>/month/<int:year>/<int:month>', methods=['GET'])
@admin_required
def admin_gym_billing_for_month(gym_id, year, month):
    gym_id = _parse_gym_id(gym_id)
    year, month = billing.validate_period(year, month)
    today = _today()
    if billing.is_current_month(year, month, today):
        data = live_billing_summary(get_gym(gym_id), today)
        if data:
            data.pop('member_bills')
    else:
        record = find_billing(gym_id, year, month)
        data = record.to_summary() if record else None
    if not data:
        raise NotFoundError('No billing found for this gym and month')
    return jsonify({'ok': True, 'billing': data})


@app.route('/api/billing/gym/<gym_id>/all', methods=['GET'])
@admin_required
def admin_gym_all_billing(gym_id):
    gym_id = _parse_gym_id(gym_id)
    include_details = (request.args.get('include_details') or '').lower() == 'true'
    records = MonthlyBilling.query.filter_by(gym_id=gym_id).order_by(
        MonthlyBilling.billing_year.desc(), MonthlyBilling.billing_month.desc()
    ).all()
    data = [r.to_dict() if include_details else r.to_summary() for r in records]
    return jsonify({'ok': True, 'billing': data})


@app.route('/api/billing/details/<billing_id>', methods=['GET'])
@admin_required
def admin_billing_details(billing_id):
    record = get_billing_by_id(billing_id)
    gym = db.session.get(Gym, record.gym_id)
    data = record.to_dict()
    data['gym'] = gym.to_dict() if gym else None
    return jsonify({'ok': True, 'billing': data})


@app.route('/api/billing/statistics/<gym_id>', methods=['GET'])
@admin_required
def admin_billing_statistics(gym_id):
    gym = get_gym(gym_id)
    today = _today()
    stats = billing_cache().get_or_set(
        f"gym:{gym.id}:statistics:{today.isoformat()}", lambda: billing_statistics(gym, today)
    )
    return jsonify({'ok': True, 'statistics': stats})


@app.route('/api/billing/pending', methods=['GET'])
@admin_required
def admin_pending_bills():
    return jsonify({'ok': True, **pending_bills(_today())})


@app.route('/api/billing/master/current-month', methods=['GET'])
@admin_required
def admin_master_billing():
    return jsonify({'ok': True, 'master_billing': master_monthly_billing(_today())})


@app.route('/api/billing/finalize-previous-month', methods=['POST'])
@admin_required
def admin_finalize_previous_month():
    result = finalize_previous_month()
    return jsonify({'ok': True,
                    'message': f"Billing finalization completed for {result['year']}-{result['month']}",
                    'data': result})


@app.route('/api/billing/backfill/<int:year>/<int:month>', methods=['POST'])
@admin_required
def admin_backfill(year, month):
    result = backfill_month(year, month)
    return jsonify({'ok': True,
                    'message': f"Billing backfill completed for {result['year']}-{result['month']}",
                    'data': result})


@app.route('/api/billing/create', methods=['POST'])
@admin_required
def admin_create_billing():
    payload = request.get_json(silent=True) or {}
    record = create_monthly_billing(
        payload.get('gym_id'),
        payload.get('billing_year'),
        payload.get('billing_month'),
        due_date=_parse_date(payload.get('due_date'), 'due_date'),
        payment_deadline=_parse_date(payload.get('payment_deadline'), 'payment_deadline'),
    )
    return jsonify({'ok': True, 'message': 'Monthly billing created successfully',
                    'billing': record.to_summary()}), 201


@app.route('/api/billing/<billing_id>/payment', methods=['POST'])
@admin_required
def admin_add_payment(billing_id):
    payload = request.get_json(silent=True) or {}
    record = get_billing_by_id(billing_id)
    record = mark_billing_paid(
        record,
        payment_method=payload.get('payment_method'),
        transaction_id=payload.get('transaction_id'),
        description=payload.get('description'),
        processed_by=payload.get('processed_by') or session.get('username'),
    )
    return jsonify({'ok': True, 'message': f"Bill marked as PAID. Amount: {record.total_bill_amount}",
                    'billing': record.to_summary()})


@app.route('/api/billing/<billing_id>/status', methods=['PUT'])
@admin_required
def admin_update_status(billing_id):
    payload = request.get_json(silent=True) or {}
    record = update_billing_status(get_billing_by_id(billing_id), payload.get('status'), payload.get('notes'))
    return jsonify({'ok': True, 'message': 'Billing status updated successfully', 'billing': record.to_summary()})


# Export member bills of a stored month to CSV
@app.route('/api/billing/<billing_id>/export', methods=['GET'])
@admin_required
def admin_export_billing(billing_id):
    record = get_billing_by_id(billing_id)
    columns = ['member_id', 'member_name', 'member_email', 'member_phone', 'membership_type',
               'days_active', 'days_in_month', 'original_monthly_fee', 'pro_rated_amount']
    df = pd.DataFrame(record.member_bills or [], columns=columns)
    buf = BytesIO()
    buf.write(df.to_csv(index=False).encode('utf-8'))
    buf.seek(0)
    return send_file(buf, mimetype='text/csv', as_attachment=True, download_name=f"{record.billing_id}.csv")


if __name__ == '__main__':
    with app.app_context():
        _ensure_schema()
    debug_mode = os.getenv('FLASK_DEBUG', '0') == '1'
    app.run(debug=debug_mode, host='0.0.0.0', port=5000)
