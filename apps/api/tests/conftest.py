import uuid

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.allowance_account import AllowanceAccount
from models.letter import Letter
from models.user import User
from routers import rate_limit
from services.actors import Subscriber
from services.admission import complete_generation, create_letter, submit_letter
from services.intake import LetterIntake


SAMPLE_INTAKE = {
    "sender_name": "ABC Construction",
    "sender_address": "789 Builder St, Construction City, CC 11111",
    "sender_email": "billing@abcconstruction.com",
    "recipient_name": "XYZ Development",
    "recipient_address": "321 Developer Ave, Tech City, TC 22222",
    "issue_description": "XYZ Development has failed to pay invoice #12345 for construction services completed on June 15.",
    "desired_outcome": "Payment in full within 15 business days.",
    "amount_demanded": 25000,
    "deadline_date": "2026-12-15",
}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def sample_intake():
    return dict(SAMPLE_INTAKE)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """File-backed SQLite so separate sessions really are separate connections."""
    db_path = tmp_path / "letters.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def make_user(session_maker):
    async def _make(role: str = "subscriber", *, is_super_user: bool = False) -> str:
        user_id = f"{role}-{uuid.uuid4().hex[:8]}"
        async with session_maker() as session:
            session.add(User(id=user_id, email=f"{user_id}@example.com", role=role, is_super_user=is_super_user))
            await session.commit()
        return user_id

    return _make


@pytest.fixture
def make_account(session_maker):
    async def _make(
        subscriber_id: str,
        *,
        credits: int = 0,
        plan_tier: str = "free_trial",
        free_trial_used: bool = False,
        last_reset_period=None,
    ) -> None:
        async with session_maker() as session:
            session.add(
                AllowanceAccount(
                    id=str(uuid.uuid4()),
                    subscriber_id=subscriber_id,
                    plan_tier=plan_tier,
                    subscription_status="active",
                    credits_remaining=credits,
                    free_trial_used=free_trial_used,
                    last_reset_period=last_reset_period,
                )
            )
            await session.commit()

    return _make


@pytest.fixture
def make_draft(session_maker):
    async def _make(subscriber_id: str, title: str = "Unpaid invoice") -> str:
        async with session_maker() as session:
            letter = await create_letter(
                session,
                Subscriber(subscriber_id),
                title=title,
                letter_type="Demand Letter",
                intake=LetterIntake(**SAMPLE_INTAKE),
            )
        return letter.id

    return _make


@pytest.fixture
def make_pending(session_maker, make_draft):
    """Create a letter and walk it to pending_review, optionally backdating submitted_at."""

    async def _make(subscriber_id: str, *, submitted_at=None, title: str = "Unpaid invoice") -> str:
        letter_id = await make_draft(subscriber_id, title)
        async with session_maker() as session:
            await submit_letter(session, Subscriber(subscriber_id), letter_id)
            assert await complete_generation(session, letter_id, f"Draft body for {title}")
            if submitted_at is not None:
                await session.execute(
                    update(Letter).where(Letter.id == letter_id)
                    .values(submitted_at=submitted_at)
                )
                await session.commit()
        return letter_id

    return _make
