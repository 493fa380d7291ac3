"""
Credit ledger for Vision Board.

Features:
- Per-profile image credit balance
- Idempotent credit grants keyed by the payment provider's order id
- Reserve / commit / release of one credit (or free-tier slot) per goal
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging

from visionboard.config import DEFAULT_LIMITS, PURCHASE_AMOUNT_CENTS
from visionboard.errors import QuotaExceededError
from visionboard.metrics import MetricsCollector
from visionboard.models import (
    CreditReservation,
    Profile,
    PurchaseRecord,
    ReservationSource,
    ReservationStatus,
)
from visionboard.storage import DuplicateOrderError, StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class CreditGrant:
    """Result of add_credits."""
    balance: int
    already_processed: bool


@dataclass
class PurchaseStatus:
    """Result of has_purchase_since."""
    has_purchase: bool
    balance: int


@dataclass
class UserLimits:
    """Effective quotas for a profile."""
    max_boards: int
    max_photos: int
    max_goals_per_board: int
    is_paid: bool
    credits: int

    def to_dict(self) -> dict:
        return {
            "MAX_BOARDS_PER_USER": self.max_boards,
            "MAX_GOALS_PER_BOARD": self.max_goals_per_board,
            "MAX_PHOTOS_PER_USER": self.max_photos,
        }


class CreditLedger:
    """
    Tracks purchased and consumed image credits per profile.

    Example:
        ```python
        ledger = CreditLedger(storage)

        grant = ledger.add_credits("profile_1", 10, "order-1")
        grant.already_processed   # False
        ledger.add_credits("profile_1", 10, "order-1").already_processed  # True

        ledger.deduct_credit("profile_1")  # True while balance > 0
        ```
    """

    def __init__(
        self,
        storage: StorageBackend,
        limits: Optional[dict] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.storage = storage
        self.limits = limits or dict(DEFAULT_LIMITS)
        self.metrics = metrics

    # =========================================================================
    # Balance
    # =========================================================================

    def get_balance(self, profile_id: str) -> int:
        record = self.storage.get_credit_record(profile_id)
        return max(record.image_credits, 0) if record else 0

    def get_limits(self, profile: Optional[Profile]) -> UserLimits:
        """Quotas for a profile; a missing profile gets free-tier limits."""
        credits = self.get_balance(profile.id) if profile else 0
        is_paid = credits > 0
        return UserLimits(
            max_boards=self.limits["paid_max_boards"] if is_paid else self.limits["free_max_boards"],
            max_photos=credits if is_paid else self.limits["free_max_photos"],
            max_goals_per_board=self.limits["max_goals_per_board"],
            is_paid=is_paid,
            credits=credits,
        )

    # =========================================================================
    # Grants
    # =========================================================================

    def add_credits(
        self,
        profile_id: str,
        amount: int,
        external_order_id: str,
        external_customer_id: Optional[str] = None,
    ) -> CreditGrant:
        """
        Grant credits for a paid order, at most once per order id.

        Args:
            profile_id: Profile receiving the credits.
            amount: Credits to add.
            external_order_id: Payment provider order id (idempotency key).
            external_customer_id: Payment provider customer id, if known.

        Returns:
            CreditGrant with the balance after the call and whether the order
            had already been applied.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        if self.storage.get_purchase_by_order_id(external_order_id):
            return self._duplicate(profile_id, external_order_id)

        try:
            with self.storage.transaction():
                self.storage.increment_credits(profile_id, amount, external_customer_id)
                self.storage.add_purchase(
                    PurchaseRecord(
                        profile_id=profile_id,
                        polar_order_id=external_order_id,
                        amount=PURCHASE_AMOUNT_CENTS,
                        credits_added=amount,
                    )
                )
        except DuplicateOrderError:
            # A concurrent delivery of the same order won the insert.
            return self._duplicate(profile_id, external_order_id)

        balance = self.get_balance(profile_id)
        if self.metrics:
            self.metrics.record_credit("added", profile_id, amount, order_id=external_order_id)
        return CreditGrant(balance=balance, already_processed=False)

    def _duplicate(self, profile_id: str, order_id: str) -> CreditGrant:
        logger.info("Order already processed: %s", order_id)
        if self.metrics:
            self.metrics.record_credit("duplicate", profile_id, order_id=order_id)
        return CreditGrant(balance=self.get_balance(profile_id), already_processed=True)

    def has_purchase_since(self, profile_id: str, timestamp: datetime) -> PurchaseStatus:
        purchases = self.storage.list_purchases_since(profile_id, timestamp)
        return PurchaseStatus(
            has_purchase=bool(purchases),
            balance=self.get_balance(profile_id),
        )

    # =========================================================================
    # Debits
    # =========================================================================

    def deduct_credit(self, profile_id: str) -> bool:
        """Take one credit. False, with nothing changed, when the balance is 0."""
        return self.storage.decrement_credit(profile_id)

    def refund_credit(self, profile_id: str) -> bool:
        """Give one credit back to an existing credit record."""
        return self.storage.refund_credit(profile_id)

    # =========================================================================
    # Reservations
    # =========================================================================

    def reserve(self, profile_id: str, goal_id: str) -> CreditReservation:
        """
        Hold one credit, or one free-tier image slot, for a goal.

        Paid credits are used first. Call inside `storage.transaction()` to
        make the hold atomic with whatever it pays for.

        Raises:
            QuotaExceededError: No credit and no free slot left.
        """
        if self.deduct_credit(profile_id):
            source = ReservationSource.CREDIT
        elif self.storage.increment_free_images_used(profile_id, self.limits["free_max_photos"]):
            source = ReservationSource.FREE
        else:
            free_max = self.limits["free_max_photos"]
            had_credits = self.storage.get_credit_record(profile_id) is not None
            if had_credits:
                message = "No credits remaining. Purchase more to continue generating images."
            else:
                message = (
                    f"Free limit of {free_max} image{'' if free_max == 1 else 's'} reached. "
                    "Purchase credits for more."
                )
            raise QuotaExceededError(message, requires_upgrade=True, credits=0)

        reservation = self.storage.create_reservation(
            CreditReservation(goal_id=goal_id, profile_id=profile_id, source=source)
        )
        if self.metrics:
            self.metrics.record_credit("reserved", profile_id, 1, goal_id=goal_id, source=source.value)
        return reservation

    def commit(self, goal_id: str) -> bool:
        """Make a held credit permanent once its goal completed."""
        committed = self.storage.transition_reservation(
            goal_id, ReservationStatus.RESERVED, ReservationStatus.COMMITTED
        )
        if committed and self.metrics:
            reservation = self.storage.get_reservation(goal_id)
            self.metrics.record_credit("committed", reservation.profile_id, 1, goal_id=goal_id)
        return committed

    def release(self, goal_id: str) -> bool:
        """
        Return a held credit or free slot. No-op unless the reservation is
        still held, so repeated failure paths refund at most once.
        """
        with self.storage.transaction():
            if not self.storage.transition_reservation(
                goal_id, ReservationStatus.RESERVED, ReservationStatus.RELEASED
            ):
                return False
            reservation = self.storage.get_reservation(goal_id)
            if reservation.source == ReservationSource.CREDIT:
                self.refund_credit(reservation.profile_id)
            else:
                self.storage.decrement_free_images_used(reservation.profile_id)

        logger.info("Released %s reservation for goal %s", reservation.source.value, goal_id)
        if self.metrics:
            self.metrics.record_credit(
                "released", reservation.profile_id, 1, goal_id=goal_id, source=reservation.source.value
            )
        return True

    def get_reservation(self, goal_id: str) -> Optional[CreditReservation]:
        return self.storage.get_reservation(goal_id)
