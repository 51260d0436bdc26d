import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.credits import update_credit_balance
from services.session_token import create_session_token
from services.tenants import create_tenant


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    rate_limit._redis_client = None
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


def auth_header(user_id: str, tenant_id=None, role: str = "member"):
    token = create_session_token(user_id, tenant_id=tenant_id, role=role)["token"]
    return {"Authorization": f"Bearer {token}"}


async def make_tenant(db, slug: str, balance: int = 0, is_free_tier: bool = False) -> str:
    """Create a paid-tier tenant and fund it with a bonus entry."""
    tenant = await create_tenant(db, slug.replace("-", " ").title(), slug, is_free_tier=is_free_tier)
    if balance:
        result = await update_credit_balance(db, tenant["id"], balance, "bonus", reference_id=f"seed:{slug}")
        assert result["success"] is True
    return tenant["id"]
