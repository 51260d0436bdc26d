import pytest

from routers import rate_limit
from routers.auth_scope import AuthContext


@pytest.mark.asyncio
async def test_local_quota_blocks_after_limit():
    results = [await rate_limit._consume_local_quota("ledger:rate:test:tenant:t1", 2, 60) for _ in range(3)]

    assert [allowed for allowed, _ in results] == [True, True, False]
    assert all(1 <= retry_after <= 60 for _, retry_after in results)

    other = await rate_limit._consume_local_quota("ledger:rate:test:tenant:t2", 2, 60)
    assert other[0] is True


def test_quota_subject_groups_members_by_tenant():
    first = AuthContext(user_id="u1", tenant_id="t1")
    second = AuthContext(user_id="u2", tenant_id="t1")
    admin = AuthContext(user_id="ops", tenant_id="t1", role="admin")

    assert rate_limit.quota_subject(first) == rate_limit.quota_subject(second) == "tenant:t1"
    assert rate_limit.quota_subject(admin) == "admin:ops"
