import threading
from datetime import timedelta

import pytest

from fashion_shop.errors import VoucherInvalid, VoucherRejection
from fashion_shop.models import DiscountType, Voucher
from fashion_shop.services.voucher_service import PricedLine, VoucherService


def _reason(excinfo):
    return excinfo.value.reason


def test_percentage_discount_is_capped(db_session, customer, make_voucher, now):
    make_voucher(code="CAP20OFF", discount_value=20, max_discount_amount=50_000)

    quote = VoucherService(db_session).validate_and_apply("cap20off", customer.userID, 500_000, now=now)

    assert quote.discount_amount == 50_000
    assert quote.final_amount == 450_000


def test_fixed_discount_never_exceeds_order(db_session, customer, make_voucher, now):
    make_voucher(code="FIXED100", discount_type=DiscountType.FIXED, discount_value=100_000)

    quote = VoucherService(db_session).validate_and_apply("FIXED100", customer.userID, 80_000, now=now)

    assert quote.discount_amount == 80_000
    assert quote.final_amount == 0


def test_percentage_discount_is_floored(db_session, customer, make_voucher, now):
    make_voucher(code="ODD15PCT", discount_value=15)

    quote = VoucherService(db_session).validate_and_apply("ODD15PCT", customer.userID, 99_999, now=now)

    # 14999.85 -> 14999
    assert quote.discount_amount == 14_999


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"is_active": False}, VoucherRejection.INACTIVE),
        ({"quantity": 1, "used_count": 1}, VoucherRejection.EXHAUSTED),
        ({"start_date_offset": timedelta(days=1)}, VoucherRejection.NOT_STARTED),
        ({"end_date_offset": -timedelta(minutes=1)}, VoucherRejection.EXPIRED),
        ({"min_order_amount": 600_000}, VoucherRejection.MIN_ORDER_NOT_MET),
    ],
)
def test_rejection_reasons(db_session, customer, make_voucher, now, overrides, reason):
    overrides = dict(overrides)
    if "start_date_offset" in overrides:
        overrides["start_date"] = now + overrides.pop("start_date_offset")
    if "end_date_offset" in overrides:
        overrides["end_date"] = now + overrides.pop("end_date_offset")
    make_voucher(code="CHECKME1", **overrides)

    with pytest.raises(VoucherInvalid) as excinfo:
        VoucherService(db_session).validate_and_apply("CHECKME1", customer.userID, 500_000, now=now)
    assert _reason(excinfo) == reason
    assert excinfo.value.to_dict()["reason"] == reason.value


def test_unknown_code(db_session, customer, now):
    with pytest.raises(VoucherInvalid) as excinfo:
        VoucherService(db_session).validate_and_apply("NOPE1234", customer.userID, 100_000, now=now)
    assert _reason(excinfo) == VoucherRejection.NOT_FOUND


def test_inactive_is_reported_before_expired(db_session, customer, make_voucher, now):
    make_voucher(code="DEADCODE", is_active=False, end_date=now - timedelta(days=1))

    with pytest.raises(VoucherInvalid) as excinfo:
        VoucherService(db_session).validate_and_apply("DEADCODE", customer.userID, 100_000, now=now)
    assert _reason(excinfo) == VoucherRejection.INACTIVE


def test_per_user_limit(db_session, customer, other_customer, make_voucher, now):
    voucher = make_voucher(code="ONCEONLY", max_usage_per_user=1)
    service = VoucherService(db_session)
    service.consume(voucher, customer.userID, None, 10_000, now)
    db_session.commit()

    with pytest.raises(VoucherInvalid) as excinfo:
        service.validate_and_apply("ONCEONLY", customer.userID, 100_000, now=now)
    assert _reason(excinfo) == VoucherRejection.USER_LIMIT_REACHED

    assert service.validate_and_apply("ONCEONLY", other_customer.userID, 100_000, now=now).discount_amount == 20_000


def test_category_filter_narrows_discount_base(db_session, customer, make_voucher, now):
    make_voucher(code="SHIRTS10", discount_value=10, applicable_categories=["Shirts"])
    lines = [
        PricedLine(product_id=1, category="Shirts", brand="Maison", unit_price=200_000, quantity=2),
        PricedLine(product_id=2, category="Shoes", brand="Maison", unit_price=600_000, quantity=1),
    ]

    quote = VoucherService(db_session).validate_and_apply("SHIRTS10", customer.userID, 1_000_000, lines, now)

    assert quote.applicable_amount == 400_000
    assert quote.discount_amount == 40_000
    assert quote.final_amount == 960_000


def test_exclusions_apply_without_filters(db_session, customer, make_voucher, now):
    make_voucher(code="NOTSALE1", discount_value=10, excluded_product_ids=[2])
    lines = [
        PricedLine(product_id=1, category="Shirts", brand="Maison", unit_price=300_000, quantity=1),
        PricedLine(product_id=2, category="Shoes", brand="Maison", unit_price=700_000, quantity=1),
    ]

    quote = VoucherService(db_session).validate_and_apply("NOTSALE1", customer.userID, 1_000_000, lines, now)

    assert quote.applicable_amount == 300_000
    assert quote.discount_amount == 30_000


def test_no_applicable_items(db_session, customer, make_voucher, now):
    make_voucher(code="BAGSONLY", applicable_brands=["Satchel"])
    lines = [PricedLine(product_id=1, category="Shirts", brand="Maison", unit_price=300_000, quantity=1)]

    with pytest.raises(VoucherInvalid) as excinfo:
        VoucherService(db_session).validate_and_apply("BAGSONLY", customer.userID, 300_000, lines, now)
    assert _reason(excinfo) == VoucherRejection.NO_APPLICABLE_ITEMS


def test_consume_records_usage(db_session, customer, make_voucher, now):
    voucher = make_voucher(code="USEDONCE", quantity=5)
    service = VoucherService(db_session)

    usage = service.consume(voucher, customer.userID, None, 25_000, now)
    db_session.commit()

    db_session.refresh(voucher)
    assert voucher.used_count == 1
    assert usage.discount_amount == 25_000
    assert service.usage_count(voucher.voucherID, customer.userID) == 1


def test_last_use_goes_to_exactly_one_buyer(session_factory, db_session, customer, other_customer, make_voucher, now):
    voucher = make_voucher(code="LASTONE1", quantity=1)
    voucher_id = voucher.voucherID
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def worker(user_id):
        session = session_factory()
        try:
            service = VoucherService(session)
            target = session.get(Voucher, voucher_id)
            barrier.wait()
            service.consume(target, user_id, None, 10_000, now)
            session.commit()
            result = "ok"
        except VoucherInvalid as exc:
            session.rollback()
            result = exc.reason
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(uid,)) for uid in (customer.userID, other_customer.userID)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert VoucherRejection.EXHAUSTED in outcomes
    db_session.expire_all()
    assert db_session.get(Voucher, voucher_id).used_count == 1



def test_per_user_limit_holds_for_simultaneous_claims(session_factory, db_session, customer, make_voucher, now):
    voucher = make_voucher(code="ONEEACH1", quantity=5, max_usage_per_user=1)
    voucher_id, user_id = voucher.voucherID, customer.userID
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def worker():
        session = session_factory()
        try:
            target = session.get(Voucher, voucher_id)
            barrier.wait()
            VoucherService(session).consume(target, user_id, None, 10_000, now)
            session.commit()
            result = "ok"
        except VoucherInvalid as exc:
            session.rollback()
            result = exc.reason
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert VoucherRejection.USER_LIMIT_REACHED in outcomes
    db_session.expire_all()
    assert db_session.get(Voucher, voucher_id).used_count == 1
    assert VoucherService(db_session).usage_count(voucher_id, user_id) == 1


def test_create_voucher_rules(db_session, admin_user, now):
    service = VoucherService(db_session)
    base = {
        "code": "welcome10",
        "discount_type": "percentage",
        "discount_value": 10,
        "quantity": 50,
        "start_date": now,
        "end_date": now + timedelta(days=30),
    }

    ok, message, voucher = service.create_voucher(base, created_by=admin_user.userID)
    assert ok, message
    assert voucher.code == "WELCOME10"

    assert service.create_voucher(base)[1] == "Voucher code already exists"
    assert service.create_voucher(dict(base, code="AB"))[1] == "Voucher code must be 6-12 uppercase letters or digits"
    assert service.create_voucher(dict(base, code="BIGPCT01", discount_value=150))[1] == (
        "Percentage discount must be between 1 and 100"
    )
    assert service.create_voucher(dict(base, code="BACKWARD", end_date=now - timedelta(days=1)))[1] == (
        "End date must be after start date"
    )


def test_generated_codes(db_session, now):
    service = VoucherService(db_session)
    template = {
        "discount_type": "fixed",
        "discount_value": 20_000,
        "quantity": 1,
        "start_date": now,
        "end_date": now + timedelta(days=1),
    }

    ok, _, voucher = service.create_voucher(dict(template, generate_code=True))
    assert ok
    assert len(voucher.code) == 8

    result = service.generate_bulk(5, template, prefix="vip")
    assert result["errors"] == []
    codes = [v.code for v in result["vouchers"]]
    assert len(set(codes)) == 5
    assert all(code.startswith("VIP") and len(code) == 8 for code in codes)

    assert service.generate_bulk(0, template)["errors"]


def test_used_voucher_cannot_be_deleted_or_recoded(db_session, customer, make_voucher, now):
    voucher = make_voucher(code="STICKY01", quantity=3)
    service = VoucherService(db_session)
    service.consume(voucher, customer.userID, None, 1_000, now)
    db_session.commit()

    assert service.delete_voucher(voucher.voucherID)[0] is False
    assert service.update_voucher(voucher.voucherID, {"code": "OTHER001"})[0] is False

    ok, message, _ = service.update_voucher(voucher.voucherID, {"quantity": 0})
    assert not ok and "cannot be lower" in message

    ok, _, updated = service.update_voucher(voucher.voucherID, {"quantity": 10, "description": "More"})
    assert ok and updated.quantity == 10


def test_list_vouchers_by_status(db_session, make_voucher, now):
    make_voucher(code="LIVE0001")
    make_voucher(code="OLD00001", start_date=now - timedelta(days=10), end_date=now - timedelta(days=5))
    make_voucher(code="GONE0001", quantity=1, used_count=1)
    service = VoucherService(db_session)

    assert {v.code for v in service.list_vouchers(status="active", now=now)["vouchers"]} == {"LIVE0001"}
    assert {v.code for v in service.list_vouchers(status="expired", now=now)["vouchers"]} == {"OLD00001"}
    assert {v.code for v in service.list_vouchers(status="used", now=now)["vouchers"]} == {"GONE0001"}
    assert service.list_vouchers(search="old", now=now)["total"] == 1


def test_usage_statistics(db_session, customer, other_customer, make_voucher, now):
    voucher = make_voucher(code="STATS001", quantity=4)
    service = VoucherService(db_session)
    service.consume(voucher, customer.userID, None, 10_000, now)
    service.consume(voucher, other_customer.userID, None, 20_000, now)
    db_session.commit()

    stats = service.get_usage_statistics(voucher.voucherID)

    assert stats["total_used"] == 2
    assert stats["remaining_quantity"] == 2
    assert stats["usage_rate"] == 50.0
    assert stats["total_discount_given"] == 30_000
    assert stats["average_discount_per_use"] == 15_000
    assert stats["usage_by_date"] == {now.date().isoformat(): 2}
