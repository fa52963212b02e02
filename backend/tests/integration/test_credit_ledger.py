"""
Integration tests for the credit ledger.
"""

from datetime import timedelta

import pytest

from classbook.core.exceptions import InsufficientCredit, NotFound, ValidationException
from classbook.core.timezone_utils import utc_now
from classbook.services.credit_ledger import CreditLedgerService
from tests.helpers import package_remaining


def test_grant_package_sets_balance_and_expiry(credits: CreditLedgerService) -> None:
    now = utc_now()
    package = credits.grant_package("user-1", 10, 30, name="Ten pack", now=now)

    assert package.credits_purchased == 10
    assert package.credits_remaining == 10
    assert package.expires == now + timedelta(days=30)
    assert credits.get_balance("user-1") == 10


@pytest.mark.parametrize("amount, days", [(0, 30), (-1, 30), (5, 0)])
def test_grant_package_rejects_invalid_values(
    credits: CreditLedgerService, amount: int, days: int
) -> None:
    with pytest.raises(ValidationException):
        credits.grant_package("user-1", amount, days)


def test_consume_draws_from_soonest_expiring_package(credits, grant, session_factory) -> None:
    late = grant("user-1", 5, validity_days=60)
    early = grant("user-1", 5, validity_days=10)

    with credits.transaction():
        drawn = credits.consume("user-1")

    assert drawn.id == early.id
    assert package_remaining(session_factory, early.id) == 4
    assert package_remaining(session_factory, late.id) == 5


def test_consume_skips_expired_and_empty_packages(credits, grant, session_factory) -> None:
    now = utc_now()
    expired = credits.grant_package("user-1", 3, 1, now=now - timedelta(days=2))
    empty = grant("user-1", 1, validity_days=5)
    with credits.transaction():
        credits.consume("user-1")
    usable = grant("user-1", 2, validity_days=20)

    with credits.transaction():
        drawn = credits.consume("user-1")

    assert drawn.id == usable.id
    assert package_remaining(session_factory, expired.id) == 3
    assert package_remaining(session_factory, empty.id) == 0


def test_consume_without_usable_credit_raises(credits) -> None:
    with pytest.raises(InsufficientCredit):
        with credits.transaction():
            credits.consume("nobody")


def test_consume_honours_template_restriction(credits, grant, template) -> None:
    restricted = grant("user-1", 3, allowed_template_ids=["some-other-template"])
    general = grant("user-1", 3, validity_days=90)

    with credits.transaction():
        drawn = credits.consume("user-1", template_id=template.id)
    assert drawn.id == general.id

    with credits.transaction():
        drawn = credits.consume("user-1", template_id="some-other-template")
    assert drawn.id == restricted.id


def test_consume_specific_package(credits, grant) -> None:
    grant("user-1", 3, validity_days=5)
    chosen = grant("user-1", 3, validity_days=50)

    with credits.transaction():
        drawn = credits.consume("user-1", chosen.id)
    assert drawn.id == chosen.id


def test_refund_returns_credit_to_original_package(credits, grant, session_factory) -> None:
    first = grant("user-1", 2, validity_days=5)
    second = grant("user-1", 2, validity_days=50)
    with credits.transaction():
        credits.consume("user-1")

    with credits.transaction():
        assert credits.refund("user-1", first.id) is True

    assert package_remaining(session_factory, first.id) == 2
    assert package_remaining(session_factory, second.id) == 2


def test_refund_never_exceeds_purchased(credits, grant, session_factory) -> None:
    package = grant("user-1", 2)

    with credits.transaction():
        assert credits.refund("user-1", package.id) is False
    assert package_remaining(session_factory, package.id) == 2


def test_refund_to_another_users_package_is_rejected(credits, grant) -> None:
    package = grant("user-1", 2)
    with pytest.raises(NotFound):
        with credits.transaction():
            credits.refund("user-2", package.id)


def test_expire_stale_packages_zeroes_only_expired(credits, grant, session_factory) -> None:
    now = utc_now()
    stale = credits.grant_package("user-1", 4, 1, now=now - timedelta(days=3))
    fresh = grant("user-1", 4)

    assert credits.expire_stale_packages(now=now) == 1
    assert credits.expire_stale_packages(now=now) == 0

    assert package_remaining(session_factory, stale.id) == 0
    assert package_remaining(session_factory, fresh.id) == 4
    assert credits.get_balance("user-1", now=now) == 4


def test_list_packages_orders_by_expiry(credits, grant) -> None:
    late = grant("user-1", 1, validity_days=60)
    early = grant("user-1", 1, validity_days=6)
    grant("user-2", 1)

    assert [p.id for p in credits.list_packages("user-1")] == [early.id, late.id]
