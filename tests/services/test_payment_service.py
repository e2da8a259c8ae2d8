import asyncio
import datetime
import uuid
import pytest
from decimal import Decimal
from pprint import pprint
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from tuition_ledger.database import models as db_models
from tuition_ledger.database.db_enums import MonthStatus, PaymentMethod, PaymentType
from tuition_ledger.database.repository import LedgerRepository
from tuition_ledger.services.payment_service import PaymentService
from tuition_ledger.services.receipt_service import ReceiptSequencer
from tuition_ledger.models import finance as finance_models
from tuition_ledger.common.config import settings
from tuition_ledger.common.exceptions import (
    AllocationError,
    ConcurrencyConflict,
    DataIntegrityError,
    NotFoundError,
    ValidationError
)
from tests.constants import TEST_CLERK_ID, TEST_SCHOOL_YEAR_NAME, TEST_TODAY, TEST_UNKNOWN_ID
from tests.database import factories


def tuition_request(student, amount, periods=None, bulk=False, **extra) -> dict:
    data = {
        "payment_type": PaymentType.TUITION.value,
        "student_id": student.id,
        "amount": amount,
        "payment_method": PaymentMethod.CASH.value,
        "clerk_id": TEST_CLERK_ID,
        "bulk": bulk,
    }
    if periods is not None:
        data["selected_periods"] = [{"month": month, "year": year} for month, year in periods]
    data.update(extra)
    return data


def inscription_request(student, amount) -> dict:
    return {
        "payment_type": PaymentType.INSCRIPTION.value,
        "student_id": student.id,
        "amount": amount,
        "payment_method": PaymentMethod.CARD.value,
        "clerk_id": TEST_CLERK_ID,
    }


async def reload_student(session_factory, student_id) -> db_models.Students:
    async with session_factory() as db:
        return await db.get(db_models.Students, student_id)


async def ledger_state(session_factory, school_year_id) -> tuple[int, int]:
    """(number of payment rows, receipt counter value)"""
    async with session_factory() as db:
        count = (await db.execute(select(func.count()).select_from(db_models.Payments))).scalar_one()
        counter = await LedgerRepository(db).get_counter_value(school_year_id)
    return count, counter


@pytest.mark.anyio
class TestPaymentServiceTuition:

    async def test_specific_periods_exact_amount(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students
    ):
        print("\n--- Testing tuition payment for two full months ---")
        batch = await payment_service.create_payments(
            tuition_request(student, "1000.00", periods=[(9, 2024), (10, 2024)])
        )
        pprint(batch.model_dump())

        assert isinstance(batch, finance_models.PaymentBatchRead)
        assert [p.amount for p in batch.payments] == [Decimal("500.00"), Decimal("500.00")]
        assert [(p.for_month, p.for_year) for p in batch.payments] == [(9, 2024), (10, 2024)]
        assert not any(p.is_partial for p in batch.payments)
        assert [p.receipt_number for p in batch.payments] == [
            f"{TEST_SCHOOL_YEAR_NAME}-0001-09-2024",
            f"{TEST_SCHOOL_YEAR_NAME}-0002-10-2024",
        ]
        assert {p.transaction_id for p in batch.payments} == {batch.transaction_id}
        assert batch.student_balance == Decimal("500.00")

        reloaded = await reload_student(session_factory, student.id)
        assert reloaded.balance == Decimal("500.00")

    async def test_specific_periods_proportional(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        batch = await payment_service.create_payments(
            tuition_request(student, "300.00", periods=[(10, 2024), (9, 2024)])
        )
        assert [(p.for_month, p.amount, p.is_partial) for p in batch.payments] == [
            (9, Decimal("150.00"), True),
            (10, Decimal("150.00"), True),
        ]
        assert batch.student_balance == Decimal("1200.00")

    async def test_prepaying_a_future_month(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        batch = await payment_service.create_payments(tuition_request(student, "500", periods=[(3, 2025)]))
        assert batch.payments[0].for_month == 3
        assert batch.payments[0].for_year == 2025
        assert not batch.payments[0].is_partial

    async def test_bulk_oldest_first(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        batch = await payment_service.create_payments(tuition_request(student, "700.00", bulk=True))
        assert [(p.for_month, p.amount, p.is_partial) for p in batch.payments] == [
            (9, Decimal("500.00"), False),
            (10, Decimal("200.00"), True),
        ]

        ledger = await payment_service.get_student_ledger(student.id)
        assert [m.status for m in ledger.months] == [MonthStatus.PAID, MonthStatus.PARTIAL, MonthStatus.UNPAID]
        assert ledger.outstanding_total == Decimal("800.00")
        assert ledger.cached_balance == Decimal("800.00")
        assert ledger.balance_drift is False

    async def test_amount_above_owed_is_rejected_without_side_effects(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears
    ):
        with pytest.raises(AllocationError) as e:
            await payment_service.create_payments(
                tuition_request(student, "1200.00", periods=[(9, 2024), (10, 2024)])
            )
        print(f"--- Correctly raised AllocationError: {e.value.message} ---")
        assert "1000.00" in e.value.message

        assert await ledger_state(session_factory, school_year.id) == (0, 0)
        assert (await reload_student(session_factory, student.id)).balance == Decimal("1500.00")

    async def test_paying_a_settled_month_is_rejected(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        await payment_service.create_payments(tuition_request(student, "500", periods=[(9, 2024)]))
        with pytest.raises(AllocationError):
            await payment_service.create_payments(tuition_request(student, "100", periods=[(9, 2024)]))

    async def test_month_outside_school_year_is_rejected(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        with pytest.raises(ValidationError):
            await payment_service.create_payments(tuition_request(student, "500", periods=[(8, 2024)]))

    async def test_bulk_with_nothing_owed_is_rejected(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        await payment_service.create_payments(tuition_request(student, "1500", bulk=True))
        with pytest.raises(AllocationError):
            await payment_service.create_payments(tuition_request(student, "10", bulk=True))

    async def test_balance_never_goes_negative(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students
    ):
        # 1500 owed; pay 1400, then overpay the remainder with bulk
        await payment_service.create_payments(tuition_request(student, "1400", bulk=True))
        batch = await payment_service.create_payments(tuition_request(student, "900", bulk=True))

        assert batch.student_balance == Decimal("0.00")
        assert batch.payments[-1].amount == Decimal("900.00")
        reloaded = await reload_student(session_factory, student.id)
        assert reloaded.balance >= 0

    async def test_authoritative_writeback(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        monkeypatch
    ):
        # a stale cache: the student really owes 1500
        async with session_factory() as db:
            async with db.begin():
                stale = await db.get(db_models.Students, student.id)
                stale.balance = Decimal("200.00")

        monkeypatch.setattr(settings, "AUTHORITATIVE_BALANCE_WRITEBACK", True)
        batch = await payment_service.create_payments(tuition_request(student, "500", bulk=True))
        assert batch.student_balance == Decimal("1000.00")


@pytest.mark.anyio
class TestPaymentServiceOtherKinds:

    async def test_inscription_is_one_record_without_period(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        batch = await payment_service.create_payments({
            "payment_type": PaymentType.INSCRIPTION.value,
            "student_id": student.id,
            "amount": "350.00",
            "payment_method": PaymentMethod.CARD.value,
            "clerk_id": TEST_CLERK_ID,
        })
        assert len(batch.payments) == 1
        payment = batch.payments[0]
        assert payment.receipt_number == f"{TEST_SCHOOL_YEAR_NAME}-0001"
        assert payment.for_month is None and payment.for_year is None
        assert payment.is_partial is False
        # only tuition moves the cached balance
        assert batch.student_balance == Decimal("1500.00")

    async def test_discretionary_requires_description(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        data = {
            "payment_type": PaymentType.DISCRETIONARY.value,
            "student_id": student.id,
            "amount": "25.00",
            "payment_method": PaymentMethod.CASH.value,
            "clerk_id": TEST_CLERK_ID,
        }
        with pytest.raises(ValidationError):
            await payment_service.create_payments(data)

        batch = await payment_service.create_payments({**data, "description": "Field trip"})
        assert batch.payments[0].description == "Field trip"


@pytest.mark.anyio
class TestPaymentServiceFailures:

    @pytest.mark.parametrize("changes", [
        {"amount": "0"},
        {"amount": "-10"},
        {"amount": "10.005"},
        {"bulk": False},
        {"selected_periods": [{"month": 13, "year": 2024}]},
        {"payment_method": "CHEQUE"},
    ])
    async def test_invalid_input_burns_no_receipt_number(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears,
        changes
    ):
        data = {**tuition_request(student, "100", bulk=True), **changes}
        if "selected_periods" in data:
            data["bulk"] = False
        with pytest.raises(ValidationError) as e:
            await payment_service.create_payments(data)
        print(f"--- Correctly raised ValidationError: {e.value.message} ---")
        assert await ledger_state(session_factory, school_year.id) == (0, 0)

    async def test_unknown_student(self, payment_service: PaymentService, school_year: db_models.SchoolYears):
        with pytest.raises(NotFoundError):
            await payment_service.create_payments({
                "payment_type": PaymentType.TUITION.value,
                "student_id": TEST_UNKNOWN_ID,
                "amount": "100",
                "payment_method": PaymentMethod.CASH.value,
                "clerk_id": TEST_CLERK_ID,
                "bulk": True,
            })

    async def test_no_active_school_year(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears
    ):
        async with session_factory() as db:
            async with db.begin():
                (await db.get(db_models.SchoolYears, school_year.id)).is_active = False

        with pytest.raises(NotFoundError) as e:
            await payment_service.create_payments(tuition_request(student, "100", bulk=True))
        assert "active school year" in e.value.message

    async def test_invalid_fee_fails_loudly(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        grade: db_models.Grades,
        school_year: db_models.SchoolYears
    ):
        async with session_factory() as db:
            async with db.begin():
                (await db.get(db_models.Grades, grade.id)).tuition_amount = Decimal("-500.00")

        with pytest.raises(DataIntegrityError):
            await payment_service.create_payments(tuition_request(student, "100", bulk=True))
        assert await ledger_state(session_factory, school_year.id) == (0, 0)

    async def test_failure_after_receipt_rolls_everything_back(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears,
        mocker
    ):
        await payment_service.create_payments(tuition_request(student, "500", periods=[(9, 2024)]))
        assert await ledger_state(session_factory, school_year.id) == (1, 1)

        mocker.patch.object(LedgerRepository, "add_payments", side_effect=RuntimeError("disk full"))
        with pytest.raises(RuntimeError):
            await payment_service.create_payments(tuition_request(student, "1000", periods=[(10, 2024), (11, 2024)]))

        # neither the two new records nor their two counter increments survived
        assert await ledger_state(session_factory, school_year.id) == (1, 1)
        assert (await reload_student(session_factory, student.id)).balance == Decimal("1000.00")

    async def test_persistent_contention_surfaces_as_conflict(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears,
        mocker
    ):
        locked = OperationalError("UPDATE receipt_counters", {}, Exception("database is locked"))
        next_receipt = mocker.patch.object(ReceiptSequencer, "next", side_effect=locked)

        with pytest.raises(ConcurrencyConflict) as e:
            await payment_service.create_payments(tuition_request(student, "100", bulk=True))

        assert "try again" in e.value.message
        assert next_receipt.call_count == settings.RECEIPT_MAX_RETRIES
        assert await ledger_state(session_factory, school_year.id) == (0, 0)

    async def test_transient_contention_is_retried(
        self,
        payment_service: PaymentService,
        student: db_models.Students,
        mocker
    ):
        locked = OperationalError("UPDATE receipt_counters", {}, Exception("database is locked"))
        original_next = ReceiptSequencer.next
        calls = {"count": 0}

        async def flaky_next(self, school_year_id, period=None):
            calls["count"] += 1
            if calls["count"] == 1:
                raise locked
            return await original_next(self, school_year_id, period)

        mocker.patch.object(ReceiptSequencer, "next", flaky_next)
        batch = await payment_service.create_payments(tuition_request(student, "500", periods=[(9, 2024)]))
        assert batch.payments[0].receipt_number == f"{TEST_SCHOOL_YEAR_NAME}-0001-09-2024"

    async def test_receipt_counter_creation_race_is_retried(
        self,
        payment_service: PaymentService,
        student: db_models.Students,
        mocker
    ):
        race = IntegrityError(
            "INSERT INTO receipt_counters",
            {},
            Exception("UNIQUE constraint failed: receipt_counters.school_year_id")
        )
        original_next = ReceiptSequencer.next
        calls = {"count": 0}

        async def racing_next(self, school_year_id, period=None):
            calls["count"] += 1
            if calls["count"] == 1:
                raise race
            return await original_next(self, school_year_id, period)

        mocker.patch.object(ReceiptSequencer, "next", racing_next)
        batch = await payment_service.create_payments(inscription_request(student, "350.00"))
        assert calls["count"] == 2
        assert batch.payments[0].receipt_number == f"{TEST_SCHOOL_YEAR_NAME}-0001"

    async def test_colliding_receipt_number_fails_without_retry(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears,
        mocker
    ):
        # Imported row already holding the number the counter issues next
        await factories.persist(session_factory, lambda: factories.PaymentFactory(
            student_id=student.id,
            school_year_id=school_year.id,
            payment_type=PaymentType.INSCRIPTION.value,
            receipt_number=f"{TEST_SCHOOL_YEAR_NAME}-0001"
        ))
        next_receipt = mocker.spy(ReceiptSequencer, "next")

        with pytest.raises(DataIntegrityError) as e:
            await payment_service.create_payments(inscription_request(student, "350.00"))
        print(f"--- Correctly raised DataIntegrityError: {e.value.message} ---")

        assert next_receipt.call_count == 1
        assert await ledger_state(session_factory, school_year.id) == (1, 0)
        assert (await reload_student(session_factory, student.id)).balance == Decimal("1500.00")


@pytest.mark.anyio
class TestPaymentServiceConcurrency:

    async def test_concurrent_submissions_get_unique_receipts(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears
    ):
        submissions = 5
        batches = await asyncio.gather(*(
            payment_service.create_payments(tuition_request(student, "100", bulk=True))
            for _ in range(submissions)
        ))
        receipts = [p.receipt_number for batch in batches for p in batch.payments]
        pprint(receipts)

        assert len(set(receipts)) == len(receipts)
        assert await ledger_state(session_factory, school_year.id) == (len(receipts), len(receipts))
        # no lost balance update: 1500 - 5 * 100
        assert (await reload_student(session_factory, student.id)).balance == Decimal("1000.00")


@pytest.mark.anyio
class TestPaymentServiceLedger:

    async def test_preview_matches_recorded_allocation(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears
    ):
        request = {"student_id": student.id, "amount": "700", "bulk": True}
        preview = await payment_service.preview_allocation(request)
        pprint(preview.model_dump())

        assert preview.mode == "bulk"
        assert preview.outstanding_total == Decimal("1500.00")
        assert [(a.month, a.allocated, a.is_partial) for a in preview.allocations] == [
            (9, Decimal("500.00"), False),
            (10, Decimal("200.00"), True),
        ]
        # a preview writes nothing
        assert await ledger_state(session_factory, school_year.id) == (0, 0)

        batch = await payment_service.create_payments(tuition_request(student, "700", bulk=True))
        assert [p.amount for p in batch.payments] == [a.allocated for a in preview.allocations]

    async def test_resync_overwrites_drifted_cache(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        grade: db_models.Grades
    ):
        await payment_service.create_payments(tuition_request(student, "500", periods=[(9, 2024)]))

        # the fee goes up after the cache was written
        async with session_factory() as db:
            async with db.begin():
                (await db.get(db_models.Grades, grade.id)).tuition_amount = Decimal("600.00")

        ledger = await payment_service.get_student_ledger(student.id)
        assert ledger.outstanding_total == Decimal("1300.00")
        assert ledger.cached_balance == Decimal("1000.00")
        assert ledger.balance_drift is True

        synced = await payment_service.resync_balance(student.id)
        assert synced.previous_balance == Decimal("1000.00")
        assert synced.balance == Decimal("1300.00")
        assert (await reload_student(session_factory, student.id)).balance == Decimal("1300.00")

    async def test_resync_unknown_student(self, payment_service: PaymentService, school_year: db_models.SchoolYears):
        with pytest.raises(NotFoundError):
            await payment_service.resync_balance(TEST_UNKNOWN_ID)

    async def test_resync_all_balances(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        grade: db_models.Grades
    ):
        other = await factories.persist(
            session_factory,
            lambda: factories.StudentFactory(grade_id=grade.id, balance=Decimal("0.00"))
        )
        batch = await payment_service.resync_all_balances()
        assert {r.student_id: r.balance for r in batch.results} == {
            student.id: Decimal("1500.00"),
            other.id: Decimal("1500.00"),
        }
        assert batch.failures == []

    async def test_resync_all_balances_skips_a_corrupt_student(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears
    ):
        def corrupt_student():
            broken_grade = factories.GradeFactory(school_year_id=school_year.id, tuition_amount=Decimal("-500.00"))
            return factories.StudentFactory(grade_id=broken_grade.id, balance=Decimal("0.00"))

        corrupt = await factories.persist(session_factory, corrupt_student)
        async with session_factory() as db:
            async with db.begin():
                (await db.get(db_models.Students, student.id)).balance = Decimal("10.00")

        batch = await payment_service.resync_all_balances()
        pprint(batch.model_dump())

        assert [r.student_id for r in batch.results] == [student.id]
        assert [f.student_id for f in batch.failures] == [corrupt.id]
        assert "tuition fee" in batch.failures[0].error
        assert (await reload_student(session_factory, student.id)).balance == Decimal("1500.00")

    async def test_ledger_counts_legacy_records(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears
    ):
        await factories.persist(session_factory, lambda: factories.PaymentFactory(
            student_id=student.id,
            school_year_id=school_year.id,
            for_month=10,
            for_year=None
        ))
        ledger = await payment_service.get_student_ledger(student.id, as_of=TEST_TODAY)
        assert [m.status for m in ledger.months] == [MonthStatus.UNPAID, MonthStatus.PAID, MonthStatus.UNPAID]

    async def test_list_and_get_transaction(
        self,
        payment_service: PaymentService,
        student: db_models.Students
    ):
        batch = await payment_service.create_payments(
            tuition_request(student, "1000", periods=[(9, 2024), (10, 2024)], notes="paid at the counter")
        )

        payments = await payment_service.list_payments(student_id=student.id)
        assert len(payments) == 2
        assert {p.receipt_number for p in payments} == {p.receipt_number for p in batch.payments}

        october = await payment_service.list_payments(student_id=student.id, month=10, year=2024)
        assert [p.for_month for p in october] == [10]

        receipt = await payment_service.get_transaction(batch.transaction_id)
        pprint(receipt.model_dump())
        assert receipt.student_name == student.name
        assert receipt.school_year_name == TEST_SCHOOL_YEAR_NAME
        assert receipt.total_amount == Decimal("1000.00")
        assert receipt.months_covered == ["September 2024", "October 2024"]

        with pytest.raises(NotFoundError):
            await payment_service.get_transaction(TEST_UNKNOWN_ID)

    async def test_listing_orders_receipts_numerically(
        self,
        payment_service: PaymentService,
        session_factory,
        student: db_models.Students,
        school_year: db_models.SchoolYears
    ):
        paid_at = datetime.datetime(2024, 11, 15, 9, 30, tzinfo=datetime.timezone.utc)
        transaction_id = uuid.uuid4()

        def receipts():
            for sequence in (9999, 10000):
                factories.PaymentFactory(
                    student_id=student.id,
                    school_year_id=school_year.id,
                    payment_type=PaymentType.INSCRIPTION.value,
                    receipt_number=f"{TEST_SCHOOL_YEAR_NAME}-{sequence:04d}",
                    receipt_sequence=sequence,
                    transaction_id=transaction_id,
                    payment_date=paid_at
                )

        await factories.persist(session_factory, receipts)

        newest_first = await payment_service.list_payments(student_id=student.id)
        assert [p.receipt_sequence for p in newest_first] == [10000, 9999]

        receipt = await payment_service.get_transaction(transaction_id)
        assert [p.receipt_number for p in receipt.payments] == [
            f"{TEST_SCHOOL_YEAR_NAME}-9999",
            f"{TEST_SCHOOL_YEAR_NAME}-10000",
        ]
