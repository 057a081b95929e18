"""Split bill creation, payment and settlement against the sandbox provider."""

from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from tableside.core.config import Settings
from tableside.core.exceptions import (
    InvalidStateTransition,
    LocationForbidden,
    NotFound,
    ProviderError,
    ProviderTimeout,
    SessionNotFound,
    ValidationError,
)
from tableside.core.metrics import metrics
from tableside.models import PaymentIntent, SplitContribution
from tableside.schemas.split_payment import ParticipantAmount
from tableside.services.bill_aggregator import BillAggregator
from tableside.services.payment_providers import SandboxProvider
from tableside.services.split_payment_service import SplitPaymentService

D = Decimal


class CapturedThenTimedOut(SandboxProvider):
    """Charges the card but the answer never arrives."""

    def confirm(self, provider_id, payment_method):
        with self._lock:
            self._get(provider_id)["status"] = "succeeded"
        raise ProviderTimeout("confirm", self.timeout_seconds)


class RaisingDeclineProvider(SandboxProvider):
    def confirm(self, provider_id, payment_method):
        raise ProviderError("Your card was declined.", provider_status="failed", code="card_declined")


class UnreachableProvider(SandboxProvider):
    def create_intent(self, amount, currency, metadata, idempotency_key):
        raise ProviderTimeout("create_intent", self.timeout_seconds)


def _contribution(split, participant_id):
    return next(c for c in split.contributions if c.participant_id == participant_id)


def _settle(splits: SplitPaymentService, provider, provider_payment_id):
    """Let the sandbox charge go through and deliver the callback."""
    return splits.handle_provider_event(provider.retrieve(provider_payment_id))


@pytest.fixture
def equal_split(seated, splits):
    _, session_id, pids = seated
    return splits.create_split(session_id, D("90.00"), "equal"), pids


class TestCreateSplit:

    def test_equal_split_over_everyone(self, seated, splits, publisher):
        _, session_id, pids = seated
        split = splits.create_split(session_id, D("90.00"), "equal")

        assert split.status == "pending"
        assert split.currency == "EUR"
        assert [c.participant_id for c in split.contributions] == pids
        assert [c.amount for c in split.contributions] == [D("30.00")] * 3
        assert publisher.payloads("split_created")[0]["split_session_id"] == split.id
        assert "split_created" in publisher.types("customer:1")

    def test_subset_of_participants(self, seated, splits):
        _, session_id, pids = seated
        split = splits.create_split(session_id, D("50.00"), "equal", participant_ids=pids[:2])
        assert [c.amount for c in split.contributions] == [D("25.00"), D("25.00")]

    def test_custom_split(self, seated, splits):
        _, session_id, pids = seated
        split = splits.create_split(
            session_id, D("60.00"), "custom",
            custom_amounts=[ParticipantAmount(participant_id=pid, amount=D(a)) for pid, a in zip(pids, ("10", "20", "30"))],
        )
        assert [c.amount for c in split.contributions] == [D("10.00"), D("20.00"), D("30.00")]

    def test_strict_custom_split(self, seated, db_session, provider, publisher):
        _, session_id, pids = seated
        strict = SplitPaymentService(db_session, provider, publisher, config=Settings(split_custom_strict=True))
        with pytest.raises(ValidationError):
            strict.create_split(
                session_id, D("100.00"), "custom",
                custom_amounts=[ParticipantAmount(participant_id=pid, amount=D("10")) for pid in pids],
            )

    def test_custom_split_needs_amounts(self, seated, splits):
        _, session_id, _ = seated
        with pytest.raises(ValidationError):
            splits.create_split(session_id, D("60.00"), "custom")

    def test_by_order_split(self, seated, splits, add_order):
        _, session_id, pids = seated
        add_order(session_id, pids[0], "40.00")
        add_order(session_id, pids[1], "20.00")
        split = splits.create_split(session_id, D("75.00"), "by_order")
        assert [c.amount for c in split.contributions] == [D("45.00"), D("25.00"), D("5.00")]

    def test_unknown_participant(self, seated, splits):
        _, session_id, pids = seated
        with pytest.raises(ValidationError):
            splits.create_split(session_id, D("10.00"), "equal", participant_ids=[pids[0], 999])

    def test_unknown_session(self, splits):
        with pytest.raises(SessionNotFound):
            splits.create_split(404, D("10.00"), "equal")

    def test_residual_policy_from_config(self, seated, db_session, provider, publisher):
        _, session_id, _ = seated
        service = SplitPaymentService(
            db_session, provider, publisher, config=Settings(split_residual_policy="first_participant")
        )
        split = service.create_split(session_id, D("100.00"), "equal")
        assert [c.amount for c in split.contributions] == [D("33.34"), D("33.33"), D("33.33")]


class TestTips:

    def test_equal_tip_grows_total(self, equal_split, splits, publisher):
        split, _ = equal_split
        tipped = splits.add_tip(split.id, D("9.00"), "equal")

        assert tipped.tip_amount == D("9.00")
        assert tipped.total_amount == D("99.00")
        assert [c.amount for c in tipped.contributions] == [D("33.00")] * 3
        assert [c.tip_amount for c in tipped.contributions] == [D("3.00")] * 3
        assert publisher.payloads("split_tip_added")[0]["distribution"] == "equal"

    def test_custom_tip_by_participant(self, equal_split, splits):
        split, pids = equal_split
        tipped = splits.add_tip(
            split.id, D("0"), "custom", custom_tips=[ParticipantAmount(participant_id=pids[1], amount=D("5"))]
        )
        assert _contribution(tipped, pids[1]).amount == D("35.00")
        assert _contribution(tipped, pids[0]).amount == D("30.00")
        assert tipped.tip_amount == D("5.00")

    def test_no_tip_once_paying_started(self, equal_split, splits):
        split, pids = equal_split
        splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        with pytest.raises(InvalidStateTransition):
            splits.add_tip(split.id, D("5.00"), "equal")


class TestPayContribution:

    def test_pay_then_settle(self, equal_split, splits, provider, publisher):
        split, pids = equal_split
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")

        assert payment.payment_status == "processing"
        assert payment.contribution.status == "processing"
        assert payment.client_secret

        settled = _settle(splits, provider, payment.provider_payment_id)
        contribution = _contribution(settled, pids[0])
        assert contribution.status == "paid"
        assert contribution.paid_amount == D("30.00")
        assert contribution.remaining_amount == D("0")
        assert settled.status == "partial"
        assert publisher.types("location:1").count("split_payment_updated") == 2

    def test_everyone_pays(self, equal_split, splits, provider, publisher):
        split, pids = equal_split
        for pid in pids:
            payment = splits.pay_contribution(split.id, pid, "pm_card_visa")
            final = _settle(splits, provider, payment.provider_payment_id)

        assert final.status == "completed"
        assert final.completed_at is not None
        assert publisher.payloads("split_completed") == [{"split_session_id": split.id}] * 2

    def test_decline_is_recorded_and_raised(self, equal_split, splits, db_session: Session):
        split, pids = equal_split
        declined_before = metrics.get("contribution_payments_total", outcome="declined")
        with pytest.raises(ProviderError) as exc:
            splits.pay_contribution(split.id, pids[0], "pm_card_fail")
        assert exc.value.status_code == 402
        assert exc.value.provider_status == "failed"

        assert _contribution(splits.get_split(split.id), pids[0]).status == "failed"
        intent = db_session.query(PaymentIntent).one()
        assert intent.status == "failed"
        assert intent.failure_reason == "card_declined"
        assert metrics.get("contribution_payments_total", outcome="declined") == declined_before + 1

    def test_retry_after_decline(self, equal_split, splits):
        split, pids = equal_split
        with pytest.raises(ProviderError):
            splits.pay_contribution(split.id, pids[0], "pm_card_fail")
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        assert payment.contribution.status == "processing"

    def test_confirm_timeout_keeps_payment_processing(self, equal_split, splits, db_session: Session):
        split, pids = equal_split
        with pytest.raises(ProviderTimeout):
            splits.pay_contribution(split.id, pids[0], "pm_card_timeout")

        intent = db_session.query(PaymentIntent).one()
        assert intent.amount == D("30.00")
        contribution = _contribution(splits.get_split(split.id), pids[0])
        assert contribution.status == "processing"
        assert contribution.payment_intent_id == intent.provider_payment_id
        with pytest.raises(InvalidStateTransition):
            splits.pay_contribution(split.id, pids[0], "pm_card_visa")

    def test_charge_captured_before_timeout_is_reconciled(self, seated, db_session: Session, publisher):
        _, session_id, pids = seated
        provider = CapturedThenTimedOut(timeout_seconds=1.0)
        service = SplitPaymentService(db_session, provider, publisher)
        split = service.create_split(session_id, D("60.00"), "equal", participant_ids=pids[:2])

        with pytest.raises(ProviderTimeout):
            service.pay_contribution(split.id, pids[0], "pm_card_visa")

        result = service.reconcile_stale(older_than_minutes=0)
        assert (result.checked, result.updated, result.errors) == (1, 1, 0)
        contribution = _contribution(service.get_split(split.id), pids[0])
        assert contribution.status == "paid"
        assert contribution.paid_amount == D("30.00")
        assert BillAggregator(db_session).group_bill(session_id).paid_amount == D("30.00")

    def test_webhook_settles_timed_out_charge(self, seated, db_session: Session, publisher):
        _, session_id, pids = seated
        provider = CapturedThenTimedOut(timeout_seconds=1.0)
        service = SplitPaymentService(db_session, provider, publisher)
        split = service.create_split(session_id, D("60.00"), "equal", participant_ids=pids[:2])
        with pytest.raises(ProviderTimeout):
            service.pay_contribution(split.id, pids[0], "pm_card_visa")

        intent = db_session.query(PaymentIntent).one()
        settled = service.confirm_payment(intent.provider_payment_id, "succeeded")
        assert _contribution(settled, pids[0]).status == "paid"

    def test_raised_decline_marks_contribution_failed(self, seated, db_session: Session, publisher):
        _, session_id, pids = seated
        service = SplitPaymentService(db_session, RaisingDeclineProvider(), publisher)
        split = service.create_split(session_id, D("60.00"), "equal", participant_ids=pids[:2])

        with pytest.raises(ProviderError) as exc:
            service.pay_contribution(split.id, pids[0], "pm_card_visa")
        assert exc.value.code == "card_declined"

        assert _contribution(service.get_split(split.id), pids[0]).status == "failed"
        assert db_session.query(PaymentIntent).one().failure_reason == "card_declined"

    def test_create_timeout_writes_nothing(self, seated, db_session: Session, publisher):
        _, session_id, pids = seated
        service = SplitPaymentService(db_session, UnreachableProvider(timeout_seconds=1.0), publisher)
        split = service.create_split(session_id, D("60.00"), "equal", participant_ids=pids[:2])

        with pytest.raises(ProviderTimeout):
            service.pay_contribution(split.id, pids[0], "pm_card_visa")

        assert db_session.query(PaymentIntent).count() == 0
        contribution = _contribution(service.get_split(split.id), pids[0])
        assert contribution.status == "pending"
        assert contribution.payment_intent_id is None

    def test_partial_payments(self, equal_split, splits, provider):
        split, pids = equal_split
        first = splits.pay_contribution(split.id, pids[0], "pm_card_visa", amount=D("10.00"))
        after_first = _contribution(_settle(splits, provider, first.provider_payment_id), pids[0])
        assert after_first.status == "pending"
        assert after_first.paid_amount == D("10.00")
        assert after_first.remaining_amount == D("20.00")

        with pytest.raises(ValidationError):
            splits.pay_contribution(split.id, pids[0], "pm_card_visa", amount=D("25.00"))

        rest = splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        after_rest = _contribution(_settle(splits, provider, rest.provider_payment_id), pids[0])
        assert after_rest.status == "paid"
        assert after_rest.paid_amount == D("30.00")

    def test_idempotency_key_replays(self, equal_split, splits, db_session: Session):
        split, pids = equal_split
        first = splits.pay_contribution(split.id, pids[0], "pm_card_visa", idempotency_key="abc-1")
        again = splits.pay_contribution(split.id, pids[0], "pm_card_visa", idempotency_key="abc-1")
        assert again.provider_payment_id == first.provider_payment_id
        assert db_session.query(PaymentIntent).count() == 1

    def test_idempotency_key_of_someone_else(self, equal_split, splits):
        split, pids = equal_split
        splits.pay_contribution(split.id, pids[0], "pm_card_visa", idempotency_key="abc-1")
        with pytest.raises(ValidationError):
            splits.pay_contribution(split.id, pids[1], "pm_card_visa", idempotency_key="abc-1")

    def test_cannot_pay_twice_while_processing(self, equal_split, splits):
        split, pids = equal_split
        splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        with pytest.raises(InvalidStateTransition):
            splits.pay_contribution(split.id, pids[0], "pm_card_visa")

    def test_not_in_split(self, seated, splits):
        _, session_id, pids = seated
        split = splits.create_split(session_id, D("20.00"), "equal", participant_ids=pids[:2])
        with pytest.raises(NotFound):
            splits.pay_contribution(split.id, pids[2], "pm_card_visa")


class TestProviderEvents:

    def test_confirm_is_idempotent(self, equal_split, splits, publisher):
        split, pids = equal_split
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")

        splits.confirm_payment(payment.provider_payment_id, "succeeded")
        count = len(publisher.events)
        again = splits.confirm_payment(payment.provider_payment_id, "succeeded")

        assert _contribution(again, pids[0]).status == "paid"
        assert len(publisher.events) == count

    def test_late_failure_does_not_unpay(self, equal_split, splits):
        split, pids = equal_split
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        splits.confirm_payment(payment.provider_payment_id, "succeeded")
        after = splits.confirm_payment(payment.provider_payment_id, "failed")
        assert _contribution(after, pids[0]).status == "paid"

    def test_async_failure(self, equal_split, splits):
        split, pids = equal_split
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        after = splits.confirm_payment(payment.provider_payment_id, "failed", failure_reason="insufficient_funds")
        assert _contribution(after, pids[0]).status == "failed"

    def test_unknown_intent(self, splits):
        with pytest.raises(NotFound):
            splits.confirm_payment("pi_nope", "succeeded")


class TestCancelAndRefund:

    def test_cancel(self, equal_split, splits, publisher):
        split, pids = equal_split
        assert splits.cancel_split(split.id).status == "cancelled"
        assert "split_cancelled" in publisher.types("location:1")
        with pytest.raises(InvalidStateTransition):
            splits.pay_contribution(split.id, pids[0], "pm_card_visa")

    def test_cancel_refused_with_payments(self, equal_split, splits):
        split, pids = equal_split
        splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        with pytest.raises(InvalidStateTransition):
            splits.cancel_split(split.id)

    def test_staff_of_other_location_cannot_cancel_or_refund(self, equal_split, splits):
        split, pids = equal_split
        with pytest.raises(LocationForbidden):
            splits.cancel_split(split.id, staff_location_id=2)
        with pytest.raises(LocationForbidden):
            splits.refund_contribution(split.id, pids[0], staff_location_id=2)
        assert splits.get_split(split.id).status == "pending"

    def test_partial_refund_reopens_contribution(self, equal_split, splits, provider, db_session: Session):
        split, pids = equal_split
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        _settle(splits, provider, payment.provider_payment_id)

        refunded = splits.refund_contribution(split.id, pids[0], amount=D("10.00"), reason="requested_by_customer")
        contribution = _contribution(refunded, pids[0])
        assert contribution.status == "pending"
        assert contribution.paid_amount == D("20.00")
        assert refunded.status == "pending"
        assert db_session.query(PaymentIntent).one().refunded_amount == D("10.00")

    def test_refund_of_completed_split(self, seated, splits, provider):
        _, session_id, pids = seated
        split = splits.create_split(session_id, D("10.00"), "equal", participant_ids=pids[:1])
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        assert _settle(splits, provider, payment.provider_payment_id).status == "completed"

        refunded = splits.refund_contribution(split.id, pids[0])
        assert refunded.status == "pending"
        assert refunded.completed_at is None

    def test_refund_without_payment(self, equal_split, splits):
        split, pids = equal_split
        with pytest.raises(InvalidStateTransition):
            splits.refund_contribution(split.id, pids[0])

    def test_refund_more_than_paid(self, equal_split, splits, provider):
        split, pids = equal_split
        payment = splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        _settle(splits, provider, payment.provider_payment_id)
        with pytest.raises(ValidationError):
            splits.refund_contribution(split.id, pids[0], amount=D("31.00"))


class TestReconcile:

    def test_stale_contributions_settle(self, equal_split, splits, db_session: Session):
        split, pids = equal_split
        splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        splits.pay_contribution(split.id, pids[1], "pm_card_visa")

        result = splits.reconcile_stale(older_than_minutes=0)
        assert (result.checked, result.updated, result.errors) == (2, 2, 0)
        statuses = {c.participant_id: c.status for c in splits.get_split(split.id).contributions}
        assert statuses == {pids[0]: "paid", pids[1]: "paid", pids[2]: "pending"}

    def test_recent_contributions_are_left_alone(self, equal_split, splits):
        split, pids = equal_split
        splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        assert splits.reconcile_stale().checked == 0

    def test_provider_errors_are_counted(self, equal_split, splits, db_session: Session):
        split, pids = equal_split
        splits.pay_contribution(split.id, pids[0], "pm_card_visa")
        contribution = db_session.query(SplitContribution).filter_by(participant_id=pids[0]).one()
        contribution.payment_intent_id = "sbx_pi_gone"
        db_session.commit()

        result = splits.reconcile_stale(older_than_minutes=0)
        assert (result.checked, result.updated, result.errors) == (1, 0, 1)


class TestQueries:

    def test_list_splits(self, seated, splits):
        _, session_id, _ = seated
        first = splits.create_split(session_id, D("10.00"), "equal")
        second = splits.create_split(session_id, D("20.00"), "equal")
        assert [s.id for s in splits.list_splits(session_id)] == [first.id, second.id]
