"""Split bill settlement.

A split session owns one contribution per payer. Paying a contribution goes
through the payment provider: the intent is recorded and the contribution
moved to processing before the charge is confirmed, so a confirm whose
answer is lost still leaves something to reconcile.
Provider callbacks (webhooks, the reconciliation sweep) then settle
contributions and the split status is recomputed from them.
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from tableside.core.config import Settings, settings as default_settings
from tableside.core.exceptions import (
    InvalidStateTransition,
    LocationForbidden,
    NotFound,
    ProviderError,
    ProviderTimeout,
    SessionNotFound,
    SplitNotFound,
    ValidationError,
)
from tableside.core.metrics import metrics
from tableside.core.money import ZERO, quantize, to_decimal
from tableside.db.base import utcnow
from tableside.db.session import unit_of_work
from tableside.models import (
    ContributionStatus,
    PaymentIntent,
    PaymentStatus,
    SessionParticipant,
    SplitContribution,
    SplitPaymentSession,
    SplitStatus,
    SplitType,
    TableSession,
    TipDistribution,
)
from tableside.schemas.split_payment import (
    ContributionResponse,
    ParticipantAmount,
    PaymentResponse,
    ReconcileResponse,
    SplitResponse,
)
from tableside.services import split_calculator
from tableside.services.notification_service import (
    NotificationPublisher,
    customer_topic,
    location_topic,
    safe_publish,
)
from tableside.services.order_service import OrderService, SqlOrderService
from tableside.services.payment_providers import PaymentProvider, ProviderResult, normalize_status

logger = logging.getLogger(__name__)

_SETTLED = (SplitStatus.COMPLETED.value, SplitStatus.CANCELLED.value)
_DECLINED = (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value)


def _amount_map(items: Optional[Sequence[ParticipantAmount]], what: str) -> Optional[Dict[int, Decimal]]:
    if items is None:
        return None
    mapping: Dict[int, Decimal] = {}
    for item in items:
        if item.participant_id in mapping:
            raise ValidationError(f"Participant {item.participant_id} appears twice in {what}")
        mapping[item.participant_id] = item.amount
    return mapping


def paid_amounts(db: Session, contribution_ids: List[int]) -> Dict[int, Decimal]:
    """Money received per contribution: succeeded intents net of refunds."""
    if not contribution_ids:
        return {}
    rows = (
        db.query(
            PaymentIntent.split_contribution_id,
            func.sum(PaymentIntent.amount - PaymentIntent.refunded_amount),
        )
        .filter(
            PaymentIntent.split_contribution_id.in_(contribution_ids),
            PaymentIntent.status == PaymentStatus.SUCCEEDED.value,
        )
        .group_by(PaymentIntent.split_contribution_id)
        .all()
    )
    return {cid: to_decimal(total or 0) for cid, total in rows}


def contribution_response(c: SplitContribution, paid: Decimal) -> ContributionResponse:
    return ContributionResponse(
        id=c.id,
        participant_id=c.participant_id,
        participant_name=c.participant_name,
        amount=c.amount,
        tip_amount=c.tip_amount,
        paid_amount=paid,
        remaining_amount=max(ZERO, c.amount - paid),
        status=c.status,
        payment_intent_id=c.payment_intent_id,
        payment_method=c.payment_method,
        paid_at=c.paid_at,
    )


def split_response(db: Session, split: SplitPaymentSession) -> SplitResponse:
    contributions = list(split.contributions)
    paid = paid_amounts(db, [c.id for c in contributions])
    return SplitResponse(
        id=split.id,
        session_id=split.session_id,
        split_type=split.split_type,
        total_amount=split.total_amount,
        tip_amount=split.tip_amount,
        currency=split.currency,
        status=split.status,
        created_at=split.created_at,
        completed_at=split.completed_at,
        contributions=[contribution_response(c, paid.get(c.id, ZERO)) for c in contributions],
    )


class SplitPaymentService:
    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        publisher: NotificationPublisher,
        order_service: Optional[OrderService] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.db = db
        self.provider = provider
        self.publisher = publisher
        self.orders = order_service or SqlOrderService(db)
        self.residual_policy = config.split_residual_policy
        self.custom_strict = config.split_custom_strict
        self.default_currency = config.default_currency
        self.stale_minutes = config.stale_contribution_minutes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_split(self, split_id: int, lock: bool = False) -> SplitPaymentSession:
        query = self.db.query(SplitPaymentSession).filter(SplitPaymentSession.id == split_id)
        if lock:
            query = query.with_for_update()
        split = query.populate_existing().first()
        if split is None:
            raise SplitNotFound(split_id)
        return split

    def _load_contribution(self, split_id: int, participant_id: int) -> SplitContribution:
        contribution = (
            self.db.query(SplitContribution)
            .filter(
                SplitContribution.split_session_id == split_id,
                SplitContribution.participant_id == participant_id,
            )
            .with_for_update()
            .populate_existing()
            .first()
        )
        if contribution is None:
            raise NotFound("Contribution", f"of participant {participant_id} in split {split_id}")
        return contribution

    def _location_id(self, session_id: int) -> int:
        session = self.db.get(TableSession, session_id)
        return session.table.location_id

    def _check_location(self, split: SplitPaymentSession, staff_location_id: Optional[int]) -> None:
        if staff_location_id is None:
            return
        location_id = self._location_id(split.session_id)
        if location_id != staff_location_id:
            raise LocationForbidden(location_id)

    def _paid_amount(self, contribution: SplitContribution, currency: str) -> Decimal:
        self.db.flush()
        paid = paid_amounts(self.db, [contribution.id]).get(contribution.id, ZERO)
        return quantize(paid, currency)

    def _recompute_status(self, split: SplitPaymentSession) -> None:
        if split.status == SplitStatus.CANCELLED.value:
            return
        status = split_calculator.derive_split_status([c.status for c in split.contributions])
        if status == SplitStatus.COMPLETED.value and split.status != status:
            split.completed_at = utcnow()
        elif status != SplitStatus.COMPLETED.value:
            split.completed_at = None
        split.status = status

    def _publish(self, location_id: int, event_type: str, payload: dict) -> None:
        safe_publish(
            self.publisher,
            [customer_topic(location_id), location_topic(location_id)],
            event_type,
            payload,
        )

    # ------------------------------------------------------------------
    # Creating and tipping
    # ------------------------------------------------------------------

    def create_split(
        self,
        session_id: int,
        total_amount,
        split_type: SplitType,
        participant_ids: Optional[List[int]] = None,
        custom_amounts: Optional[Sequence[ParticipantAmount]] = None,
        currency: Optional[str] = None,
    ) -> SplitResponse:
        """Divide a bill between the session's participants."""
        currency = (currency or self.default_currency).upper()
        split_type = SplitType(split_type)

        with unit_of_work(self.db):
            session = self.db.get(TableSession, session_id)
            if session is None:
                raise SessionNotFound(session_id)

            seated = (
                self.db.query(SessionParticipant)
                .filter(SessionParticipant.session_id == session_id)
                .order_by(SessionParticipant.id.asc())
                .all()
            )
            by_id = {p.id: p for p in seated}
            if participant_ids:
                if len(set(participant_ids)) != len(participant_ids):
                    raise ValidationError("Each participant can appear only once in a split")
                unknown = [pid for pid in participant_ids if pid not in by_id]
                if unknown:
                    raise ValidationError(f"Participants {unknown} are not part of session {session_id}")
                included = [by_id[pid] for pid in participant_ids]
            else:
                included = seated
            payers = [split_calculator.Payer(p.id, p.alias) for p in included]

            if split_type == SplitType.EQUAL:
                shares = split_calculator.equal_split(total_amount, payers, currency, self.residual_policy)
            elif split_type == SplitType.CUSTOM:
                amounts = _amount_map(custom_amounts, "custom amounts")
                if not amounts:
                    raise ValidationError("Custom split needs per-participant amounts")
                shares = split_calculator.custom_split(
                    total_amount, payers, amounts, currency, strict=self.custom_strict
                )
            else:
                shares = split_calculator.by_order_split(
                    total_amount,
                    payers,
                    self.orders.get_orders_by_session(session_id),
                    currency,
                    self.residual_policy,
                )

            split = SplitPaymentSession(
                session_id=session_id,
                split_type=split_type.value,
                total_amount=quantize(total_amount, currency),
                tip_amount=ZERO,
                currency=currency,
                status=SplitStatus.PENDING.value,
            )
            split.contributions = [
                SplitContribution(
                    participant_id=share.participant_id,
                    participant_name=share.name,
                    amount=share.amount,
                    tip_amount=ZERO,
                    status=ContributionStatus.PENDING.value,
                )
                for share in shares
            ]
            self.db.add(split)
            self.db.flush()
            response = split_response(self.db, split)
            location_id = session.table.location_id

        logger.info(
            f"Split {response.id} ({response.split_type}) of {response.total_amount} {currency} "
            f"over {len(response.contributions)} participants for session {session_id}"
        )
        self._publish(location_id, "split_created", {
            "split_session_id": response.id,
            "session_id": session_id,
            "split_type": response.split_type,
            "total_amount": response.total_amount,
            "currency": currency,
            "contributions": [
                {"participant_id": c.participant_id, "name": c.participant_name, "amount": c.amount}
                for c in response.contributions
            ],
        })
        return response

    def add_tip(
        self,
        split_id: int,
        tip_amount,
        distribution: TipDistribution,
        custom_tips: Optional[Sequence[ParticipantAmount]] = None,
    ) -> SplitResponse:
        """Spread a tip over the contributions and grow the split total by it."""
        distribution = TipDistribution(distribution)
        with unit_of_work(self.db):
            split = self._load_split(split_id, lock=True)
            if split.status in _SETTLED:
                raise InvalidStateTransition(f"Split {split_id} is {split.status}", current=split.status)
            contributions = list(split.contributions)
            started = [c for c in contributions if c.status in (ContributionStatus.PAID.value, ContributionStatus.PROCESSING.value)]
            if started:
                raise InvalidStateTransition(
                    f"Split {split_id} already has payments in flight; tips must be added before paying",
                    current=split.status,
                )

            by_participant = {c.participant_id: c.id for c in contributions if c.participant_id is not None}
            custom_by_contribution = None
            tips = _amount_map(custom_tips, "custom tips")
            if tips is not None:
                unknown = set(tips) - set(by_participant)
                if unknown:
                    raise ValidationError(f"Tips given for participants not in the split: {sorted(unknown)}")
                custom_by_contribution = {by_participant[pid]: amount for pid, amount in tips.items()}

            allocation = split_calculator.allocate_tip(
                tip_amount,
                {c.id: c.amount for c in contributions},
                distribution.value,
                split.currency,
                custom_tips=custom_by_contribution,
                residual_policy=self.residual_policy,
            )

            added = ZERO
            for c in contributions:
                tip = allocation.get(c.id, ZERO)
                c.amount = quantize(c.amount + tip, split.currency)
                c.tip_amount = quantize(c.tip_amount + tip, split.currency)
                added += tip
            split.tip_amount = quantize(split.tip_amount + added, split.currency)
            split.total_amount = quantize(split.total_amount + added, split.currency)
            self.db.flush()
            response = split_response(self.db, split)
            location_id = self._location_id(split.session_id)

        logger.info(f"Added tip {added} ({distribution.value}) to split {split_id}")
        self._publish(location_id, "split_tip_added", {
            "split_session_id": split_id,
            "tip_amount": response.tip_amount,
            "total_amount": response.total_amount,
            "distribution": distribution.value,
        })
        return response

    def cancel_split(self, split_id: int, staff_location_id: Optional[int] = None) -> SplitResponse:
        with unit_of_work(self.db):
            split = self._load_split(split_id, lock=True)
            self._check_location(split, staff_location_id)
            if split.status in _SETTLED:
                raise InvalidStateTransition(f"Split {split_id} is already {split.status}", current=split.status)
            if any(c.status in (ContributionStatus.PAID.value, ContributionStatus.PROCESSING.value) for c in split.contributions):
                raise InvalidStateTransition(
                    f"Split {split_id} has payments; refund them before cancelling", current=split.status
                )
            split.status = SplitStatus.CANCELLED.value
            self.db.flush()
            response = split_response(self.db, split)
            location_id = self._location_id(split.session_id)

        self._publish(location_id, "split_cancelled", {"split_session_id": split_id})
        return response

    # ------------------------------------------------------------------
    # Paying
    # ------------------------------------------------------------------

    def pay_contribution(
        self,
        split_id: int,
        participant_id: int,
        payment_method: str,
        amount=None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResponse:
        """Charge a (possibly partial) contribution through the provider.

        Raises ``ProviderError`` with status ``failed`` after recording a
        declined charge, so the payer can retry with another method.

        The intent is committed with the contribution in ``processing`` before
        confirm is sent. When confirm times out that state is kept and
        ``ProviderTimeout`` propagates; the webhook or ``reconcile_stale``
        settles it later.
        """
        with unit_of_work(self.db):
            split = self._load_split(split_id, lock=True)
            if split.status in _SETTLED:
                raise InvalidStateTransition(f"Split {split_id} is {split.status}", current=split.status)
            contribution = self._load_contribution(split_id, participant_id)

            if idempotency_key:
                replay = (
                    self.db.query(PaymentIntent)
                    .filter(PaymentIntent.idempotency_key == idempotency_key)
                    .first()
                )
                if replay is not None:
                    if replay.split_contribution_id != contribution.id:
                        raise ValidationError("Idempotency key was already used for another payment")
                    paid = self._paid_amount(contribution, split.currency)
                    return PaymentResponse(
                        contribution=contribution_response(contribution, paid),
                        provider_payment_id=replay.provider_payment_id,
                        client_secret=replay.client_secret,
                        payment_status=replay.status,
                    )

            if contribution.status not in (ContributionStatus.PENDING.value, ContributionStatus.FAILED.value):
                raise InvalidStateTransition(
                    f"Contribution {contribution.id} is {contribution.status}", current=contribution.status
                )

            remaining = contribution.amount - self._paid_amount(contribution, split.currency)
            charge = quantize(amount, split.currency) if amount is not None else remaining
            if charge <= ZERO or charge > remaining:
                raise ValidationError(f"Amount must be greater than 0 and at most {remaining}")

            key = idempotency_key or f"split-{split.id}-contribution-{contribution.id}-{uuid.uuid4().hex}"
            intent = self.provider.create_intent(
                charge,
                split.currency,
                {
                    "session_id": str(split.session_id),
                    "split_session_id": str(split.id),
                    "contribution_id": str(contribution.id),
                    "participant_id": str(participant_id),
                },
                key,
            )

            # Committed before confirm so a charge whose answer is lost can still be reconciled
            record = PaymentIntent(
                session_id=split.session_id,
                participant_id=participant_id,
                split_contribution_id=contribution.id,
                amount=charge,
                currency=split.currency,
                status=PaymentStatus.PENDING.value,
                provider=self.provider.name,
                provider_payment_id=intent.provider_id,
                client_secret=intent.client_secret,
                payment_method=payment_method[:50],
                idempotency_key=key,
            )
            self.db.add(record)
            contribution.payment_intent_id = intent.provider_id
            contribution.status = ContributionStatus.PROCESSING.value
            self.db.flush()
            record_id = record.id
            contribution_id = contribution.id
            location_id = self._location_id(split.session_id)

        decline = None
        try:
            result = self.provider.confirm(intent.provider_id, payment_method)
        except ProviderTimeout:
            metrics.inc("contribution_payments_total", outcome="timeout")
            logger.warning(
                f"Confirm of {intent.provider_id} timed out; contribution {contribution_id} stays processing"
            )
            raise
        except ProviderError as e:
            if e.provider_status not in _DECLINED:
                logger.warning(f"Confirm of {intent.provider_id} failed, left for reconciliation: {e}")
                raise
            decline = e
            result = ProviderResult(
                provider_id=intent.provider_id,
                status=e.provider_status,
                failure_reason=e.code or e.detail,
            )

        with unit_of_work(self.db):
            split = self._load_split(split_id, lock=True)
            record = (
                self.db.query(PaymentIntent)
                .filter(PaymentIntent.id == record_id)
                .with_for_update()
                .populate_existing()
                .one()
            )
            # Providers may settle synchronously on confirm
            self._apply_payment_status(record, result)
            self.db.flush()
            contribution = self.db.get(SplitContribution, contribution_id)
            declined = record.status in _DECLINED
            paid = self._paid_amount(contribution, split.currency)
            response = PaymentResponse(
                contribution=contribution_response(contribution, paid),
                provider_payment_id=intent.provider_id,
                client_secret=intent.client_secret,
                payment_status=record.status,
            )
            split_status = split.status

        metrics.inc("contribution_payments_total", outcome="declined" if declined else "accepted")
        self._publish(location_id, "split_payment_updated", {
            "split_session_id": split_id,
            "participant_id": participant_id,
            "contribution_status": response.contribution.status,
            "payment_status": response.payment_status,
            "split_status": split_status,
        })
        if decline is not None:
            raise decline
        if declined:
            raise ProviderError(
                result.failure_reason or "Payment was declined",
                provider_status=PaymentStatus.FAILED.value,
            )
        return response

    def _apply_payment_status(self, record: PaymentIntent, result: ProviderResult) -> bool:
        """Move an intent to ``result.status`` and settle its contribution.

        Returns False when nothing changed, which makes repeated callbacks harmless.
        """
        status = result.status
        if record.status == status:
            return False
        if record.status == PaymentStatus.SUCCEEDED.value:
            logger.warning(
                f"Ignoring {status} for already succeeded payment {record.provider_payment_id}"
            )
            return False

        now = utcnow()
        record.status = status
        if result.payment_method:
            record.payment_method = result.payment_method[:50]
        if status == PaymentStatus.SUCCEEDED.value:
            record.completed_at = now
        elif status in _DECLINED:
            record.failure_reason = result.failure_reason or record.failure_reason

        if record.split_contribution_id is None:
            return True
        contribution = (
            self.db.query(SplitContribution)
            .filter(SplitContribution.id == record.split_contribution_id)
            .with_for_update()
            .first()
        )
        if contribution is None:
            return True
        split = contribution.split_session

        if status == PaymentStatus.SUCCEEDED.value:
            paid = self._paid_amount(contribution, split.currency)
            if paid >= contribution.amount:
                contribution.status = ContributionStatus.PAID.value
                contribution.paid_at = now
                contribution.payment_method = record.payment_method
            else:
                # Partial payment: the rest is still open
                contribution.status = ContributionStatus.PENDING.value
        elif status in _DECLINED:
            if contribution.status != ContributionStatus.PAID.value and \
                    contribution.payment_intent_id == record.provider_payment_id:
                contribution.status = ContributionStatus.FAILED.value

        self._recompute_status(split)
        return True

    def handle_provider_event(self, result: ProviderResult) -> SplitResponse:
        """Apply a provider confirmation (webhook or relayed callback)."""
        with unit_of_work(self.db):
            record = (
                self.db.query(PaymentIntent)
                .filter(PaymentIntent.provider_payment_id == result.provider_id)
                .with_for_update()
                .first()
            )
            if record is None:
                raise NotFound("Payment intent", result.provider_id)
            if record.split_contribution_id is None:
                raise ValidationError(f"Payment {result.provider_id} does not belong to a split")
            changed = self._apply_payment_status(record, result)
            self.db.flush()
            contribution = self.db.get(SplitContribution, record.split_contribution_id)
            split = contribution.split_session
            response = split_response(self.db, split)
            location_id = self._location_id(split.session_id)
            participant_id = contribution.participant_id

        if changed:
            logger.info(f"Payment {result.provider_id} is now {result.status}; split {response.id} is {response.status}")
            self._publish(location_id, "split_payment_updated", {
                "split_session_id": response.id,
                "participant_id": participant_id,
                "payment_status": result.status,
                "split_status": response.status,
            })
            if response.status == SplitStatus.COMPLETED.value:
                self._publish(location_id, "split_completed", {"split_session_id": response.id})
        return response

    def confirm_payment(
        self,
        provider_payment_id: str,
        status: str,
        payment_method: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> SplitResponse:
        return self.handle_provider_event(ProviderResult(
            provider_id=provider_payment_id,
            status=normalize_status(status),
            payment_method=payment_method,
            failure_reason=failure_reason,
        ))

    def refund_contribution(
        self,
        split_id: int,
        participant_id: int,
        amount=None,
        reason: Optional[str] = None,
        staff_location_id: Optional[int] = None,
    ) -> SplitResponse:
        """Refund money received for a contribution, newest payment first."""
        with unit_of_work(self.db):
            split = self._load_split(split_id, lock=True)
            self._check_location(split, staff_location_id)
            if split.status == SplitStatus.CANCELLED.value:
                raise InvalidStateTransition(f"Split {split_id} is cancelled", current=split.status)
            contribution = self._load_contribution(split_id, participant_id)
            intents = (
                self.db.query(PaymentIntent)
                .filter(
                    PaymentIntent.split_contribution_id == contribution.id,
                    PaymentIntent.status == PaymentStatus.SUCCEEDED.value,
                )
                .order_by(PaymentIntent.id.desc())
                .with_for_update()
                .all()
            )
            refundable = sum((i.amount - i.refunded_amount for i in intents), ZERO)
            if refundable <= ZERO:
                raise InvalidStateTransition(f"Contribution {contribution.id} has nothing to refund", current=contribution.status)
            wanted = quantize(amount, split.currency) if amount is not None else refundable
            if wanted <= ZERO or wanted > refundable:
                raise ValidationError(f"Refund must be greater than 0 and at most {refundable}")

            left = wanted
            for intent in intents:
                if left <= ZERO:
                    break
                take = min(left, intent.amount - intent.refunded_amount)
                if take <= ZERO:
                    continue
                self.provider.refund(intent.provider_payment_id, take, reason)
                intent.refunded_amount = quantize(intent.refunded_amount + take, split.currency)
                left -= take

            if self._paid_amount(contribution, split.currency) < contribution.amount:
                contribution.status = ContributionStatus.PENDING.value
                contribution.paid_at = None
            self._recompute_status(split)
            self.db.flush()
            response = split_response(self.db, split)
            location_id = self._location_id(split.session_id)

        logger.info(f"Refunded {wanted} for participant {participant_id} in split {split_id}")
        self._publish(location_id, "split_refunded", {
            "split_session_id": split_id,
            "participant_id": participant_id,
            "amount": wanted,
            "split_status": response.status,
        })
        return response

    def reconcile_stale(self, older_than_minutes: Optional[int] = None) -> ReconcileResponse:
        """Re-query the provider for contributions stuck in ``processing``."""
        minutes = self.stale_minutes if older_than_minutes is None else older_than_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        stale = (
            self.db.query(SplitContribution.id, SplitContribution.payment_intent_id)
            .filter(
                SplitContribution.status == ContributionStatus.PROCESSING.value,
                SplitContribution.updated_at <= cutoff,
                SplitContribution.payment_intent_id.isnot(None),
            )
            .all()
        )

        updated = errors = 0
        for contribution_id, provider_payment_id in stale:
            try:
                result = self.provider.retrieve(provider_payment_id)
                response = self.handle_provider_event(result)
            except (ProviderError, ProviderTimeout, NotFound) as e:
                logger.warning(f"Reconciliation of contribution {contribution_id} failed: {e}")
                errors += 1
                continue
            contribution = next((c for c in response.contributions if c.id == contribution_id), None)
            if contribution is not None and contribution.status != ContributionStatus.PROCESSING.value:
                updated += 1

        if stale:
            logger.info(f"Reconciled {len(stale)} stale contributions: {updated} settled, {errors} errors")
        return ReconcileResponse(checked=len(stale), updated=updated, errors=errors)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_split(self, split_id: int) -> SplitResponse:
        return split_response(self.db, self._load_split(split_id))

    def list_splits(self, session_id: int) -> List[SplitResponse]:
        splits = (
            self.db.query(SplitPaymentSession)
            .filter(SplitPaymentSession.session_id == session_id)
            .order_by(SplitPaymentSession.id.asc())
            .all()
        )
        return [split_response(self.db, s) for s in splits]
