"""Bill & payment state machine, including concurrent pickup collection"""
import json
import logging
import threading
import time
from datetime import date, datetime, timedelta

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine, select

from conftest import CUSTOMER, PHARMACIST
from models import (
    Bill, Medicine, NotificationType, PaymentStatus, PaymentType, PickupPaymentMethod, Prescription,
    PrescriptionStatus, UserRole,
)
from services import billing_service, inventory_ledger, notification_dispatcher, prescription_workflow
from services.billing_service import LineItem
from services.errors import (
    ExternalServiceError, InsufficientStock, InvalidStateTransition, NotFound, ValidationError,
)
from services.payment_gateway import PaymentGateway

CARD = {
    "card_holder": "Priya S",
    "card_number": "4111 1111 1111 1111",
    "expiry": "12/29",
    "cvv": "123",
}


def approved_bill(session, medicine_id, quantity, discount=0.0, tax=0.0):
    prescription = prescription_workflow.upload(session, CUSTOMER, doctor_name="Ravi Kumar")
    bill = prescription_workflow.approve(
        session, prescription.id, [LineItem(medicine_id, quantity)], discount=discount, tax=tax
    )
    return prescription, bill


def assert_totals_consistent(bill):
    assert bill.total_amount == round(bill.subtotal - bill.discount + bill.tax, 2)
    assert bill.total_amount >= 0
    assert bill.subtotal == round(sum(item.total_price for item in bill.items), 2)
    for item in bill.items:
        assert item.total_price == round(item.quantity * item.unit_price, 2)


# ==================== TOTALS ====================

def test_totals_include_discount_and_tax(session, make_medicine):
    medicine = make_medicine(unit_price=19.99)
    _, bill = approved_bill(session, medicine.id, 3, discount=5.0, tax=2.5)

    assert bill.subtotal == 59.97
    assert bill.total_amount == 57.47
    assert_totals_consistent(bill)


def test_discount_is_capped_at_bill_value(session, make_medicine):
    medicine = make_medicine(unit_price=10.0)
    bill = billing_service.create_manual_bill(session, CUSTOMER.user_id, [LineItem(medicine.id, 1)], discount=50.0)

    assert bill.discount == 10.0
    assert bill.total_amount == 0.0
    assert_totals_consistent(bill)


def test_negative_discount_or_tax_rejected(session, make_medicine):
    medicine = make_medicine()
    with pytest.raises(ValidationError):
        billing_service.create_manual_bill(session, None, [LineItem(medicine.id, 1)], discount=-1.0)
    with pytest.raises(ValidationError):
        billing_service.create_manual_bill(session, None, [LineItem(medicine.id, 1)], tax=-1.0)
    assert billing_service.list_bills(session) == []


def test_adjust_bill_recomputes_totals(session, make_medicine):
    medicine = make_medicine(unit_price=20.0)
    _, bill = approved_bill(session, medicine.id, 2)

    adjusted = billing_service.adjust_bill(session, bill.id, discount=4.0, tax=3.6)

    assert adjusted.subtotal == 40.0
    assert adjusted.total_amount == 39.6
    assert_totals_consistent(adjusted)


def test_manual_bill_has_no_prescription(session, make_medicine):
    medicine = make_medicine(unit_price=8.0)
    bill = billing_service.create_manual_bill(session, CUSTOMER.user_id, [LineItem(medicine.id, 2)])

    assert bill.prescription_id is None
    assert bill.payment_status == PaymentStatus.PENDING
    assert bill.bill_number.startswith("BILL-")


def test_manual_bill_requires_items(session):
    with pytest.raises(ValidationError):
        billing_service.create_manual_bill(session, CUSTOMER.user_id, [])


# ==================== PAYMENT TYPE ====================

def test_payment_type_can_be_reselected_while_pending(session, make_medicine):
    medicine = make_medicine()
    _, bill = approved_bill(session, medicine.id, 1)

    assert billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE).payment_type == PaymentType.ONLINE
    assert billing_service.set_payment_type(
        session, bill.id, PaymentType.PAY_ON_PICKUP
    ).payment_type == PaymentType.PAY_ON_PICKUP


def test_payment_type_cannot_be_unset(session, make_medicine):
    medicine = make_medicine()
    _, bill = approved_bill(session, medicine.id, 1)

    with pytest.raises(ValidationError):
        billing_service.set_payment_type(session, bill.id, PaymentType.UNSET)


def test_payment_type_locked_after_cancel(session, make_medicine):
    medicine = make_medicine()
    _, bill = approved_bill(session, medicine.id, 1)
    billing_service.cancel(session, bill.id, reason="customer changed mind")

    with pytest.raises(InvalidStateTransition):
        billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)


# ==================== ONLINE PAYMENT ====================

def test_pay_online_settles_and_dispenses(session, make_medicine):
    medicine = make_medicine(quantity=10, unit_price=10.0)
    prescription, bill = approved_bill(session, medicine.id, 4)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)

    paid = billing_service.pay_online(session, bill.id, CARD, gateway=PaymentGateway(base_url=""))

    assert paid.payment_status == PaymentStatus.PAID
    assert paid.paid_at is not None
    assert paid.transaction_id.startswith("SIM-")
    assert paid.payment_method == "ONLINE_CARD"
    assert inventory_ledger.get_medicine(session, medicine.id).quantity == 6
    assert prescription_workflow.get_prescription(session, prescription.id).status == PrescriptionStatus.DISPENSED

    received = notification_dispatcher.list_for_user(
        session, CUSTOMER, notification_type=NotificationType.PAYMENT_RECEIVED
    )
    assert len(received) == 1
    assert paid.bill_number in received[0].message


def test_pay_online_requires_card_details(session, make_medicine):
    medicine = make_medicine(quantity=10)
    _, bill = approved_bill(session, medicine.id, 1)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)

    with pytest.raises(ValidationError):
        billing_service.pay_online(session, bill.id, {**CARD, "cvv": ""})
    with pytest.raises(ValidationError):
        billing_service.pay_online(session, bill.id, {**CARD, "card_number": "4111"})

    assert billing_service.get_bill(session, bill.id).payment_status == PaymentStatus.PENDING


def test_pay_online_rejected_for_pickup_bill(session, make_medicine):
    medicine = make_medicine(quantity=10)
    _, bill = approved_bill(session, medicine.id, 1)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)

    with pytest.raises(InvalidStateTransition):
        billing_service.pay_online(session, bill.id, CARD)


def test_pay_online_before_selecting_type(session, make_medicine):
    medicine = make_medicine(quantity=10)
    _, bill = approved_bill(session, medicine.id, 1)

    with pytest.raises(InvalidStateTransition):
        billing_service.pay_online(session, bill.id, CARD)


def test_gateway_receives_amount_and_reference(session, make_medicine):
    medicine = make_medicine(quantity=10, unit_price=15.0)
    _, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "transaction_id": "TXN-42"})

    gateway = PaymentGateway(base_url="http://gateway.test", api_key="k", transport=httpx.MockTransport(handler))
    paid = billing_service.pay_online(session, bill.id, CARD, gateway=gateway)

    assert paid.transaction_id == "TXN-42"
    assert seen[0].url.path == "/charges"
    assert seen[0].headers["Authorization"] == "Bearer k"
    body = json.loads(seen[0].content)
    assert body["amount"] == 30.0
    assert body["reference"] == bill.bill_number
    assert body["card"]["number"] == "4111111111111111"


@pytest.mark.parametrize("handler", [
    lambda request: httpx.Response(402, json={"success": False, "message": "declined"}),
    lambda request: httpx.Response(200, json={"success": False, "message": "insufficient funds"}),
])
def test_gateway_rejection_changes_nothing(session, make_medicine, handler):
    medicine = make_medicine(quantity=10)
    prescription, bill = approved_bill(session, medicine.id, 3)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)
    gateway = PaymentGateway(base_url="http://gateway.test", transport=httpx.MockTransport(handler))

    with pytest.raises(ExternalServiceError):
        billing_service.pay_online(session, bill.id, CARD, gateway=gateway)

    unpaid = billing_service.get_bill(session, bill.id)
    assert unpaid.payment_status == PaymentStatus.PENDING
    assert unpaid.paid_at is None
    assert inventory_ledger.get_medicine(session, medicine.id).quantity == 10
    assert prescription_workflow.get_prescription(session, prescription.id).status == PrescriptionStatus.APPROVED


def test_gateway_timeout_is_a_failed_payment(session, make_medicine):
    medicine = make_medicine(quantity=10)
    _, bill = approved_bill(session, medicine.id, 3)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    gateway = PaymentGateway(base_url="http://gateway.test", timeout=0.5, transport=httpx.MockTransport(handler))

    with pytest.raises(ExternalServiceError):
        billing_service.pay_online(session, bill.id, CARD, gateway=gateway)

    assert len(calls) == 1
    assert billing_service.get_bill(session, bill.id).payment_status == PaymentStatus.PENDING
    assert inventory_ledger.get_medicine(session, medicine.id).quantity == 10


def test_pay_online_insufficient_stock_skips_charge(session, make_medicine):
    medicine = make_medicine(quantity=1)
    _, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"success": True, "transaction_id": "TXN-1"})

    gateway = PaymentGateway(base_url="http://gateway.test", transport=httpx.MockTransport(handler))
    with pytest.raises(InsufficientStock):
        billing_service.pay_online(session, bill.id, CARD, gateway=gateway)

    assert calls == []
    assert billing_service.get_bill(session, bill.id).payment_status == PaymentStatus.PENDING


def test_charge_runs_after_dispense_and_notification(session, make_medicine):
    medicine = make_medicine(quantity=10)
    prescription, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)
    seen_at_charge = {}

    def handler(request):
        dispatched = session.info.get(notification_dispatcher.DISPATCHED_KEY, [])
        seen_at_charge["notified"] = [n.notification_type for n in dispatched]
        seen_at_charge["stock"] = session.exec(
            select(Medicine.quantity).where(Medicine.id == medicine.id)
        ).one()
        seen_at_charge["prescription"] = session.exec(
            select(Prescription.status).where(Prescription.id == prescription.id)
        ).one()
        return httpx.Response(200, json={"success": True, "transaction_id": "TXN-77"})

    gateway = PaymentGateway(base_url="http://gateway.test", transport=httpx.MockTransport(handler))
    paid = billing_service.pay_online(session, bill.id, CARD, gateway=gateway)

    assert paid.transaction_id == "TXN-77"
    assert NotificationType.PAYMENT_RECEIVED in seen_at_charge["notified"]
    assert seen_at_charge["stock"] == 8
    assert seen_at_charge["prescription"] == PrescriptionStatus.DISPENSED


def test_commit_failure_after_charge_is_logged_with_transaction(session, make_medicine, monkeypatch, caplog):
    medicine = make_medicine(quantity=10)
    prescription, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)
    gateway = PaymentGateway(
        base_url="http://gateway.test",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"success": True, "transaction_id": "TXN-77"})
        ),
    )

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session, "commit", failing_commit)
    with caplog.at_level(logging.ERROR, logger="services.billing_service"):
        with pytest.raises(OperationalError):
            billing_service.pay_online(session, bill.id, CARD, gateway=gateway)
    monkeypatch.undo()

    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "TXN-77" in errors[0].getMessage()
    assert f"Bill {bill.id}" in errors[0].getMessage()

    unpaid = billing_service.get_bill(session, bill.id)
    assert unpaid.payment_status == PaymentStatus.PENDING
    assert unpaid.transaction_id is None
    assert inventory_ledger.get_medicine(session, medicine.id).quantity == 10
    assert prescription_workflow.get_prescription(session, prescription.id).status == PrescriptionStatus.APPROVED


def test_failure_before_charge_logs_no_transaction(session, make_medicine, caplog):
    medicine = make_medicine(quantity=1)
    _, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.ONLINE)
    gateway = PaymentGateway(
        base_url="http://gateway.test",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"success": True, "transaction_id": "TXN-1"})
        ),
    )

    with pytest.raises(InsufficientStock):
        billing_service.pay_online(session, bill.id, CARD, gateway=gateway)

    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


# ==================== PICKUP PAYMENT ====================

def test_pickup_with_insufficient_stock_changes_nothing(session, make_medicine):
    medicine = make_medicine(quantity=3)
    prescription, bill = approved_bill(session, medicine.id, 5)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)

    with pytest.raises(InsufficientStock):
        billing_service.collect_pickup_payment(session, bill.id, PickupPaymentMethod.CASH)

    assert billing_service.get_bill(session, bill.id).payment_status == PaymentStatus.PENDING
    assert inventory_ledger.get_medicine(session, medicine.id).quantity == 3
    assert prescription_workflow.get_prescription(session, prescription.id).status == PrescriptionStatus.APPROVED
    assert notification_dispatcher.list_for_user(
        session, CUSTOMER, notification_type=NotificationType.PAYMENT_RECEIVED
    ) == []


def test_pickup_records_method(session, make_medicine):
    medicine = make_medicine(quantity=10)
    _, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)

    paid = billing_service.collect_pickup_payment(session, bill.id, "CARD")

    assert paid.payment_status == PaymentStatus.PAID
    assert paid.payment_method == "CARD"
    assert paid.transaction_id is None


def test_pickup_rejects_unknown_method(session, make_medicine):
    medicine = make_medicine(quantity=10)
    _, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)

    with pytest.raises(ValidationError):
        billing_service.collect_pickup_payment(session, bill.id, "CHEQUE")


def test_pickup_cannot_collect_twice(session, make_medicine):
    medicine = make_medicine(quantity=10)
    _, bill = approved_bill(session, medicine.id, 2)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
    billing_service.collect_pickup_payment(session, bill.id, PickupPaymentMethod.CASH)

    with pytest.raises(InvalidStateTransition):
        billing_service.collect_pickup_payment(session, bill.id, PickupPaymentMethod.CASH)
    assert inventory_ledger.get_medicine(session, medicine.id).quantity == 8


def test_manual_bill_pickup_deducts_stock(session, make_medicine):
    medicine = make_medicine(quantity=10)
    bill = billing_service.create_manual_bill(session, None, [LineItem(medicine.id, 4)])
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)

    billing_service.collect_pickup_payment(session, bill.id, PickupPaymentMethod.BANK_TRANSFER)

    assert inventory_ledger.get_medicine(session, medicine.id).quantity == 6


def test_simultaneous_pickup_collections(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pickup.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        medicine = inventory_ledger.create_medicine(session, name="Insulin", quantity=10, unit_price=50.0)
        _, bill = approved_bill(session, medicine.id, 4)
        billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
        medicine_id, bill_id = medicine.id, bill.id

    barrier = threading.Barrier(2)
    outcomes = []

    def collect():
        with Session(engine) as session:
            barrier.wait()
            try:
                billing_service.collect_pickup_payment(session, bill_id, PickupPaymentMethod.CASH)
                outcomes.append("paid")
            except InvalidStateTransition:
                outcomes.append("rejected")

    threads = [threading.Thread(target=collect) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["paid", "rejected"]
    with Session(engine) as session:
        assert billing_service.get_bill(session, bill_id).payment_status == PaymentStatus.PAID
        assert inventory_ledger.get_medicine(session, medicine_id).quantity == 6
    engine.dispose()


def file_engine(tmp_path, name, busy_timeout=30):
    engine = create_engine(
        f"sqlite:///{tmp_path / name}",
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
    )
    SQLModel.metadata.create_all(engine)
    return engine


def test_two_bills_competing_for_the_same_stock(tmp_path):
    engine = file_engine(tmp_path, "stock.db")

    with Session(engine) as session:
        medicine = inventory_ledger.create_medicine(session, name="Insulin", quantity=5, unit_price=50.0)
        bill_ids = []
        for _ in range(2):
            _, bill = approved_bill(session, medicine.id, 4)
            billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
            bill_ids.append(bill.id)
        medicine_id = medicine.id

    barrier = threading.Barrier(2)
    outcomes = {}

    def collect(bill_id):
        with Session(engine) as session:
            barrier.wait()
            try:
                billing_service.collect_pickup_payment(session, bill_id, PickupPaymentMethod.CASH)
                outcomes[bill_id] = "paid"
            except InsufficientStock:
                outcomes[bill_id] = "short"

    threads = [threading.Thread(target=collect, args=(bill_id,)) for bill_id in bill_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes.values()) == ["paid", "short"]
    with Session(engine) as session:
        assert inventory_ledger.get_medicine(session, medicine_id).quantity == 1
        statuses = {billing_service.get_bill(session, bill_id).payment_status for bill_id in bill_ids}
        assert statuses == {PaymentStatus.PAID, PaymentStatus.PENDING}
    engine.dispose()


def test_write_off_during_pickup_does_not_stall(tmp_path, monkeypatch):
    # A short busy timeout turns a lock-order stall into a visible failure
    engine = file_engine(tmp_path, "writeoff.db", busy_timeout=3)

    with Session(engine) as session:
        medicine = inventory_ledger.create_medicine(session, name="Insulin", quantity=100, unit_price=50.0)
        _, bill = approved_bill(session, medicine.id, 4)
        billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
        medicine_id, bill_id = medicine.id, bill.id

    apply_deduction = inventory_ledger._apply_deduction

    def slow_write_off(session, medicine_id, quantity):
        if threading.current_thread().name == "write-off":
            time.sleep(0.5)
        return apply_deduction(session, medicine_id, quantity)

    monkeypatch.setattr(inventory_ledger, "_apply_deduction", slow_write_off)
    errors = {}

    def write_off():
        with Session(engine) as session:
            try:
                inventory_ledger.deduct(session, medicine_id, 1)
            except Exception as e:
                errors["write-off"] = e

    def pickup():
        with Session(engine) as session:
            try:
                billing_service.collect_pickup_payment(session, bill_id, PickupPaymentMethod.CASH)
            except Exception as e:
                errors["pickup"] = e

    started = time.monotonic()
    writer = threading.Thread(target=write_off, name="write-off")
    writer.start()
    time.sleep(0.1)
    collector = threading.Thread(target=pickup, name="pickup")
    collector.start()
    writer.join(timeout=30)
    collector.join(timeout=30)
    elapsed = time.monotonic() - started

    assert errors == {}
    assert elapsed < 3
    with Session(engine) as session:
        assert inventory_ledger.get_medicine(session, medicine_id).quantity == 95
        assert billing_service.get_bill(session, bill_id).payment_status == PaymentStatus.PAID
    engine.dispose()


# ==================== CANCEL / EXPIRE ====================

def test_cancel_keeps_prescription_approved(session, make_medicine):
    medicine = make_medicine()
    prescription, bill = approved_bill(session, medicine.id, 1)

    cancelled = billing_service.cancel(session, bill.id, reason="duplicate")

    assert cancelled.payment_status == PaymentStatus.CANCELLED
    assert cancelled.cancellation_reason == "duplicate"
    assert cancelled.paid_at is None
    assert prescription_workflow.get_prescription(session, prescription.id).status == PrescriptionStatus.APPROVED
    with pytest.raises(InvalidStateTransition):
        billing_service.cancel(session, bill.id)


def test_paid_bill_cannot_be_cancelled(session, make_medicine):
    medicine = make_medicine(quantity=5)
    _, bill = approved_bill(session, medicine.id, 1)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
    billing_service.collect_pickup_payment(session, bill.id, PickupPaymentMethod.CASH)

    with pytest.raises(InvalidStateTransition):
        billing_service.cancel(session, bill.id)
    with pytest.raises(InvalidStateTransition):
        billing_service.adjust_bill(session, bill.id, discount=1.0)


def _age_bill(session, bill_id, days):
    bill = session.get(Bill, bill_id)
    bill.created_at = datetime.utcnow() - timedelta(days=days)
    session.add(bill)
    session.commit()


def test_mark_expired_cancels_and_alerts(session, make_medicine):
    medicine = make_medicine()
    _, bill = approved_bill(session, medicine.id, 1)
    _age_bill(session, bill.id, 8)

    expired = billing_service.mark_expired(session, bill.id, max_age_days=7)

    assert expired.payment_status == PaymentStatus.CANCELLED
    alerts = notification_dispatcher.list_for_user(
        session, PHARMACIST, notification_type=NotificationType.SYSTEM_ALERT
    )
    assert len(alerts) == 1
    assert alerts[0].recipient_role == UserRole.PHARMACIST
    assert bill.bill_number in alerts[0].message


def test_mark_expired_rejects_young_bill(session, make_medicine):
    medicine = make_medicine()
    _, bill = approved_bill(session, medicine.id, 1)
    _age_bill(session, bill.id, 2)

    with pytest.raises(InvalidStateTransition):
        billing_service.mark_expired(session, bill.id, max_age_days=7)
    assert billing_service.get_bill(session, bill.id).payment_status == PaymentStatus.PENDING


def test_payment_details(session, make_medicine):
    medicine = make_medicine(quantity=5, unit_price=7.0)
    _, bill = approved_bill(session, medicine.id, 1)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
    paid = billing_service.collect_pickup_payment(session, bill.id, PickupPaymentMethod.OTHER)

    details = billing_service.payment_details(paid)

    assert details["payment_status"] == PaymentStatus.PAID
    assert details["payment_method"] == "OTHER"
    assert details["total_amount"] == 7.0


def test_get_unknown_bill(session):
    with pytest.raises(NotFound):
        billing_service.get_bill(session, 31337)


def test_timestamps_reload_as_naive_utc(session, make_medicine):
    medicine = make_medicine(quantity=5)
    _, bill = approved_bill(session, medicine.id, 1)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
    billing_service.collect_pickup_payment(session, bill.id, PickupPaymentMethod.CASH)
    session.expire_all()

    paid = billing_service.get_bill(session, bill.id)

    for stamp in (paid.created_at, paid.updated_at, paid.paid_at):
        assert stamp.tzinfo is None
        assert abs(datetime.utcnow() - stamp) < timedelta(minutes=5)
    assert paid.paid_at >= paid.created_at


# ==================== QUERIES ====================

def _paid_on_pickup(session, medicine_id, method=PickupPaymentMethod.CASH, quantity=1):
    _, bill = approved_bill(session, medicine_id, quantity)
    billing_service.set_payment_type(session, bill.id, PaymentType.PAY_ON_PICKUP)
    return billing_service.collect_pickup_payment(session, bill.id, method)


def _backdate(session, bill_id, days, column="created_at"):
    bill = session.get(Bill, bill_id)
    setattr(bill, column, datetime.utcnow() - timedelta(days=days))
    session.add(bill)
    session.commit()


def test_list_bills_search_by_number_or_customer(session, make_medicine):
    medicine = make_medicine()
    _, mine = approved_bill(session, medicine.id, 1)
    walk_in = billing_service.create_manual_bill(session, None, [LineItem(medicine.id, 1)])
    walk_in.bill_number = "BILL-WALKIN"
    session.add(walk_in)
    session.commit()

    by_number = billing_service.list_bills(session, search=mine.bill_number[-6:].lower())
    assert [b.id for b in by_number] == [mine.id]

    by_customer = billing_service.list_bills(session, search=str(CUSTOMER.user_id))
    assert [b.id for b in by_customer] == [mine.id]

    assert {b.id for b in billing_service.list_bills(session, search="  ")} == {mine.id, walk_in.id}
    assert billing_service.list_bills(session, search="no-such-bill") == []


def test_list_bills_by_payment_method(session, make_medicine):
    medicine = make_medicine()
    cash = _paid_on_pickup(session, medicine.id, PickupPaymentMethod.CASH)
    card = _paid_on_pickup(session, medicine.id, PickupPaymentMethod.CARD)

    assert [b.id for b in billing_service.list_bills(session, payment_method="cash")] == [cash.id]
    assert [b.id for b in billing_service.list_bills(session, payment_method="CARD")] == [card.id]
    assert billing_service.list_bills(session, payment_method="ONLINE_CARD") == []


def test_list_bills_by_creation_date(session, make_medicine):
    medicine = make_medicine()
    _, old = approved_bill(session, medicine.id, 1)
    _, recent = approved_bill(session, medicine.id, 1)
    _backdate(session, old.id, 10)
    today = datetime.utcnow().date()

    assert [b.id for b in billing_service.list_bills(session, date_from=today)] == [recent.id]
    assert [b.id for b in billing_service.list_bills(
        session, date_to=today - timedelta(days=5)
    )] == [old.id]
    # date_to is inclusive
    assert len(billing_service.list_bills(session, date_from=today - timedelta(days=10), date_to=today)) == 2


def test_date_range_must_be_ordered():
    with pytest.raises(ValidationError):
        billing_service.day_range(date(2024, 5, 2), date(2024, 5, 1))

    start, end = billing_service.day_range(date(2024, 5, 1), date(2024, 5, 1))
    assert start == datetime(2024, 5, 1)
    assert end == datetime(2024, 5, 2)
    assert billing_service.day_range() == (None, None)


def test_revenue_counts_paid_bills_only(session, make_medicine):
    medicine = make_medicine(quantity=50, unit_price=12.5)
    first = _paid_on_pickup(session, medicine.id, quantity=2)
    second = _paid_on_pickup(session, medicine.id, quantity=1)
    approved_bill(session, medicine.id, 4)
    _, cancelled = approved_bill(session, medicine.id, 3)
    billing_service.cancel(session, cancelled.id)

    summary = billing_service.revenue_summary(session)

    assert summary["bill_count"] == 2
    assert summary["revenue"] == round(first.total_amount + second.total_amount, 2) == 37.5


def test_revenue_by_payment_date(session, make_medicine):
    medicine = make_medicine(quantity=50, unit_price=10.0)
    old = _paid_on_pickup(session, medicine.id, quantity=3)
    _paid_on_pickup(session, medicine.id, quantity=1)
    _backdate(session, old.id, 30, column="paid_at")
    today = datetime.utcnow().date()

    recent = billing_service.revenue_summary(session, date_from=today - timedelta(days=7), date_to=today)
    assert recent["bill_count"] == 1
    assert recent["revenue"] == 10.0
    assert recent["date_from"] == today - timedelta(days=7)

    empty = billing_service.revenue_summary(session, date_to=today - timedelta(days=60))
    assert empty == {"date_from": None, "date_to": today - timedelta(days=60), "revenue": 0.0, "bill_count": 0}
