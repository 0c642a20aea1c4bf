"""
Test configuration and fixtures for the Exam Prep backend.

Provides the environment the settings module needs, in-memory stand-ins
for the repositories, and the lifecycle services wired over them.

The fake store enforces the same unique constraints as the migrations
(one active subscription per user, one row per provider reference, ...)
and savepoints restore every row on error, so the services' conflict
and rollback paths run unchanged.
"""

import os

os.environ.setdefault("SUPABASE_URL", "https://testproject.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-0123456789abcdef0123456789")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("ENVIRONMENT", "testing")

import time
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional
from unittest.mock import MagicMock, patch
from uuid import UUID, uuid4

import jwt
import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import IntegrityError

from app.config.settings import get_settings
from app.domain.paper_access import RecentPaper
from app.infrastructure.db.models.catalog import ExamPaper
from app.infrastructure.db.models.referral import UserReferralPoints
from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.services.container import LifecycleServices


# =============================================================================
# Clock
# =============================================================================

class MutableClock:
    """Injectable "now" that tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(START)


# =============================================================================
# In-memory store
# =============================================================================

def _active_user(row):
    return (row.user_id,) if row.status == "active" else None


def _awarded(row):
    return (row.referrer_id, row.subscription_id) if row.status == "awarded" else None


UNIQUE_KEYS = {
    "subscription_tiers": [lambda r: (r.name,)],
    "user_subscriptions": [
        _active_user,
        lambda r: (r.source_transaction_id,) if r.source_transaction_id else None,
    ],
    "payment_transactions": [
        lambda r: (r.payment_provider, r.external_transaction_id)
        if r.external_transaction_id else None,
    ],
    "referral_codes": [lambda r: (r.user_id,), lambda r: (r.code,)],
    "referrals": [lambda r: (r.referred_id,)],
    "user_referral_points": [lambda r: (r.user_id,)],
    "referral_points_log": [_awarded],
}


class FakeStore:
    """Rows by table name, with unique checks and snapshot savepoints."""

    def __init__(self):
        self.tables: Dict[str, Dict[UUID, object]] = defaultdict(dict)
        # table name -> exception raised by the next insert into it
        self.fail_next_insert: Dict[str, Exception] = {}

    def rows(self, table: str) -> List:
        return list(self.tables[table].values())

    def put(self, obj):
        """Insert without constraint checks, e.g. to fake a bypassed index."""
        self.tables[obj.__tablename__][obj.id] = obj
        return obj

    def insert(self, obj):
        table = obj.__tablename__
        failure = self.fail_next_insert.pop(table, None)
        if failure is not None:
            raise failure
        self._check_unique(obj)
        return self.put(obj)

    def update(self, obj):
        self._check_unique(obj)
        return self.put(obj)

    def _check_unique(self, obj) -> None:
        table = obj.__tablename__
        for key_of in UNIQUE_KEYS.get(table, []):
            key = key_of(obj)
            if key is None:
                continue
            for other in self.tables[table].values():
                if other.id != obj.id and key_of(other) == key:
                    raise IntegrityError(
                        f"INSERT INTO {table}",
                        {},
                        Exception(f"duplicate key value violates unique constraint on {table}"),
                    )

    @asynccontextmanager
    async def savepoint(self):
        snapshot = {
            table: {row_id: (obj, obj.model_dump()) for row_id, obj in rows.items()}
            for table, rows in self.tables.items()
        }
        try:
            yield
        except Exception:
            self.tables = defaultdict(dict)
            for table, rows in snapshot.items():
                for row_id, (obj, state) in rows.items():
                    for field, value in state.items():
                        setattr(obj, field, value)
                    self.tables[table][row_id] = obj
            raise


# =============================================================================
# Fake repositories
# =============================================================================

class FakeRepository:
    table: str = ""

    def __init__(self, store: FakeStore):
        self.store = store

    def _rows(self, table: Optional[str] = None) -> List:
        return self.store.rows(table or self.table)

    async def get_by_id(self, id: UUID):
        return self.store.tables[self.table].get(id)

    async def get_for_update(self, id: UUID):
        return await self.get_by_id(id)

    async def get_all(self, skip: int = 0, limit: int = 100) -> List:
        return self._rows()[skip:skip + limit]

    async def add(self, obj):
        return self.store.insert(obj)

    async def save(self, obj):
        return self.store.update(obj)

    async def count(self) -> int:
        return len(self._rows())

    def savepoint(self):
        return self.store.savepoint()


class FakeTierRepository(FakeRepository):
    table = "subscription_tiers"

    async def get_by_name(self, name: str):
        return next((t for t in self._rows() if t.name == name), None)

    async def list_active(self):
        return sorted(
            (t for t in self._rows() if t.is_active),
            key=lambda t: (t.display_order, t.name),
        )


class FakeSubscriptionRepository(FakeRepository):
    table = "user_subscriptions"

    def __init__(self, store: FakeStore):
        super().__init__(store)
        # Number of upcoming active-row lookups that miss, to fake a racing request
        self.hide_active_lookups = 0

    async def get_active_for_user(self, user_id: UUID, for_update: bool = False):
        if self.hide_active_lookups > 0:
            self.hide_active_lookups -= 1
            return None
        return next(
            (r for r in self._rows() if r.user_id == user_id and r.status == "active"),
            None,
        )

    async def list_active_for_user(self, user_id: UUID):
        return [r for r in self._rows() if r.user_id == user_id and r.status == "active"]

    async def get_by_source_transaction(self, transaction_id: UUID):
        return next((r for r in self._rows() if r.source_transaction_id == transaction_id), None)

    async def get_active_by_provider_subscription(self, provider_subscription_id: str):
        return next(
            (
                r for r in self._rows()
                if r.provider_subscription_id == provider_subscription_id and r.status == "active"
            ),
            None,
        )

    async def list_history_for_user(self, user_id: UUID, limit: int = 50):
        rows = [r for r in self._rows() if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)[:limit]

    async def list_lapsed_periods(self, now: datetime):
        rows = [r for r in self._rows() if r.status == "active" and r.period_end_date < now]
        return sorted(rows, key=lambda r: r.period_end_date)

    async def list_expired_yearly_user_ids(self, now: datetime):
        user_ids = []
        for r in self._rows():
            if r.status == "active" and r.billing_cycle == "yearly" \
                    and r.subscription_end_date is not None and r.subscription_end_date < now \
                    and r.user_id not in user_ids:
                user_ids.append(r.user_id)
        return user_ids


class FakePaymentRepository(FakeRepository):
    table = "payment_transactions"

    async def get_by_external_id(self, provider: str, external_transaction_id: str):
        return next(
            (
                r for r in self._rows()
                if r.payment_provider == provider
                and r.external_transaction_id == external_transaction_id
            ),
            None,
        )

    async def get_latest_completed_for_provider_subscription(
        self,
        provider: str,
        provider_subscription_id: str,
    ):
        matches = [
            (r.created_at, index, r)
            for index, r in enumerate(self._rows())
            if r.payment_provider == provider
            and r.provider_subscription_id == provider_subscription_id
            and r.status == "completed"
        ]
        if not matches:
            return None
        return max(matches, key=lambda m: (m[0], m[1]))[2]

    async def list_for_user(self, user_id: UUID, limit: int = 50):
        rows = [r for r in self._rows() if r.user_id == user_id]
        return list(reversed(rows))[:limit]


class FakeReferralRepository(FakeRepository):
    table = "referrals"

    async def get_code_for_user(self, user_id: UUID):
        return next((c for c in self._rows("referral_codes") if c.user_id == user_id), None)

    async def get_code(self, code: str):
        return next((c for c in self._rows("referral_codes") if c.code == code), None)

    async def get_by_referred(self, referred_id: UUID, for_update: bool = False):
        return next((r for r in self._rows() if r.referred_id == referred_id), None)

    async def get_points(self, user_id: UUID, for_update: bool = False):
        return next((p for p in self._rows("user_referral_points") if p.user_id == user_id), None)

    async def get_or_create_points(self, user_id: UUID):
        points = await self.get_points(user_id, for_update=True)
        if points is None:
            points = await self.add(UserReferralPoints(user_id=user_id))
        return points

    async def add_transaction(self, transaction):
        return await self.add(transaction)

    async def has_award(self, referrer_id: UUID, subscription_id: UUID) -> bool:
        return any(
            e.referrer_id == referrer_id and e.subscription_id == subscription_id
            and e.status == "awarded"
            for e in self._rows("referral_points_log")
        )

    async def add_log(self, entry):
        return await self.add(entry)


class FakePaperRepository:
    """Exam catalog and conversation history."""

    def __init__(self):
        self.papers: Dict[UUID, ExamPaper] = {}
        self.conversations: List[tuple] = []
        self.grades = set()
        self.subjects = set()

    def add_paper(
        self,
        title: str,
        year: Optional[int] = None,
        grade_level_id: Optional[UUID] = None,
        subject_id: Optional[UUID] = None,
    ) -> ExamPaper:
        paper = ExamPaper(
            id=uuid4(),
            title=title,
            year=year,
            grade_level_id=grade_level_id,
            subject_id=subject_id,
        )
        self.papers[paper.id] = paper
        if grade_level_id:
            self.grades.add(grade_level_id)
        if subject_id:
            self.subjects.add(subject_id)
        return paper

    def discuss(self, user_id: UUID, paper_id: UUID, at: datetime) -> None:
        """A tutor conversation about a paper, last updated at `at`."""
        self.conversations.append((user_id, paper_id, at))

    async def get_paper(self, paper_id: UUID):
        return self.papers.get(paper_id)

    async def list_papers(self):
        return sorted(
            self.papers.values(),
            key=lambda p: (p.year is None, -(p.year or 0), p.title),
        )

    async def get_recent_papers(self, user_id: UUID, limit: int):
        latest: Dict[UUID, datetime] = {}
        for owner, paper_id, at in self.conversations:
            if owner == user_id and (paper_id not in latest or at > latest[paper_id]):
                latest[paper_id] = at
        ordered = sorted(latest.items(), key=lambda item: (-item[1].timestamp(), str(item[0])))
        return [RecentPaper(paper_id=pid, last_accessed_at=at) for pid, at in ordered[:limit]]

    async def grade_exists(self, grade_id: UUID) -> bool:
        return grade_id in self.grades

    async def count_subjects(self, subject_ids) -> int:
        return len(set(subject_ids) & self.subjects)


class FakeWebhookEventRepository:
    def __init__(self):
        self.processed: Dict[str, tuple] = {}

    async def is_processed(self, event_id: str) -> bool:
        return event_id in self.processed

    async def mark_processed(self, event_id: str, event_type: str, provider: str) -> bool:
        if event_id in self.processed:
            return False
        self.processed[event_id] = (event_type, provider)
        return True


# =============================================================================
# Catalog fixtures
# =============================================================================

def make_tier(name: str, **overrides) -> SubscriptionTier:
    values = dict(
        name=name,
        display_name=name.replace("_", " ").title(),
        price_monthly=Decimal("0"),
        price_yearly=Decimal("0"),
        currency="USD",
        token_limit=None,
        papers_limit=None,
        max_subjects=None,
        can_select_grade=False,
        can_select_subjects=False,
        referral_points_awarded=0,
        referral_award_on_renewal=True,
        points_cost=None,
        coming_soon=False,
        is_active=True,
        display_order=0,
    )
    values.update(overrides)
    return SubscriptionTier(**values)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def tiers(store) -> Dict[str, SubscriptionTier]:
    catalog = [
        make_tier("free", token_limit=50000, papers_limit=2, display_order=0),
        make_tier(
            "student_lite",
            price_monthly=Decimal("4.99"),
            price_yearly=Decimal("49.99"),
            token_limit=200000,
            max_subjects=1,
            can_select_grade=True,
            can_select_subjects=True,
            referral_points_awarded=100,
            points_cost=500,
            display_order=1,
        ),
        make_tier(
            "student",
            price_monthly=Decimal("9.99"),
            price_yearly=Decimal("99.99"),
            token_limit=500000,
            max_subjects=3,
            can_select_grade=True,
            can_select_subjects=True,
            referral_points_awarded=150,
            points_cost=1000,
            display_order=2,
        ),
        make_tier(
            "pro",
            price_monthly=Decimal("19.99"),
            price_yearly=Decimal("199.99"),
            referral_points_awarded=250,
            points_cost=2000,
            display_order=3,
        ),
        make_tier("family", price_monthly=Decimal("29.99"), coming_soon=True, display_order=4),
    ]
    for tier in catalog:
        store.put(tier)
    return {tier.name: tier for tier in catalog}


@pytest.fixture
def tier_repo(store, tiers) -> FakeTierRepository:
    return FakeTierRepository(store)


@pytest.fixture
def subscription_repo(store) -> FakeSubscriptionRepository:
    return FakeSubscriptionRepository(store)


@pytest.fixture
def payment_repo(store) -> FakePaymentRepository:
    return FakePaymentRepository(store)


@pytest.fixture
def referral_repo(store) -> FakeReferralRepository:
    return FakeReferralRepository(store)


@pytest.fixture
def paper_repo() -> FakePaperRepository:
    return FakePaperRepository()


@pytest.fixture
def webhook_event_repo() -> FakeWebhookEventRepository:
    return FakeWebhookEventRepository()


@pytest.fixture
def services(
    tier_repo,
    subscription_repo,
    payment_repo,
    referral_repo,
    paper_repo,
    webhook_event_repo,
    clock,
) -> LifecycleServices:
    """Lifecycle services over the in-memory repositories."""
    return LifecycleServices.from_repositories(
        tiers=tier_repo,
        subscriptions=subscription_repo,
        payments=payment_repo,
        referrals=referral_repo,
        papers=paper_repo,
        webhook_events=webhook_event_repo,
        settings=get_settings(),
        clock=clock,
    )


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


# =============================================================================
# Auth Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def offline_jwks():
    """No JWKS endpoint in tests; verification falls through to HS256."""
    jwks_client = MagicMock()
    jwks_client.get_signing_key_from_jwt.side_effect = jwt.exceptions.PyJWKClientError("offline")
    with patch("app.api.dependencies._get_jwks_client", return_value=jwks_client):
        yield jwks_client


@pytest.fixture
def token_factory():
    """HS256 Supabase-style access tokens signed with the test secret."""
    settings = get_settings()

    def make_token(sub: str, expires_in: int = 3600, secret: Optional[str] = None) -> str:
        payload = {
            "sub": sub,
            "aud": "authenticated",
            "iss": f"{settings.supabase_url}/auth/v1",
            "exp": int(time.time()) + expires_in,
        }
        return jwt.encode(payload, secret or settings.supabase_jwt_secret, algorithm="HS256")

    return make_token


@pytest.fixture
def mock_user_id() -> UUID:
    return UUID("aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee")


@pytest.fixture
def auth_headers(mock_user_id, token_factory) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_factory(str(mock_user_id))}"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": get_settings().admin_api_key}


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(services):
    """FastAPI application bound to the in-memory services."""
    from app.infrastructure.db.dependencies import get_services
    from app.main import app

    app.dependency_overrides[get_services] = lambda: services
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Get async test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
