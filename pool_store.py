"""
Pool ledger: turns saved listings into pools and tracks pledges against MOQ.

Pledged quantity only moves when a payment is confirmed, once per pool item.
Pool status moves forward only; cancellation and failure are the exits.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from listing_store import SqlRepository
from models import Payment, Pool, PoolItem, Product, SavedListing

DEFAULT_TARGET_QTY = 100

POOL_STATUS_ORDER = ['OPEN', 'LOCKED', 'ORDER_PLACED', 'FULFILLING', 'FULFILLED']
TERMINAL_STATUSES = {'FULFILLED', 'FAILED', 'CANCELLED'}
FAILABLE_STATUSES = {'OPEN', 'LOCKED'}
PLEDGING_STATUSES = {'OPEN', 'LOCKED'}

PAY_STATUSES = {'PENDING', 'REQUIRES_ACTION', 'AUTHORIZED', 'CAPTURED', 'PAID',
                'REFUNDED', 'FAILED', 'EXPIRED'}
CONFIRMED_PAY_STATUSES = {'AUTHORIZED', 'CAPTURED', 'PAID'}
PAY_METHODS = {'STRIPE', 'BANK_TRANSFER'}

# (milestone, percent reached) from highest to lowest
MILESTONES = [('MOQ', 100), ('NINETY', 90), ('FIFTY', 50)]
MILESTONE_RANK = {'NONE': 0, 'FIFTY': 1, 'NINETY': 2, 'MOQ': 3}


class PoolStateError(Exception):
    """Raised when an operation breaks a pool ledger rule."""


@dataclass
class PledgeUpdate:
    pool_id: str
    pledged_qty: int
    milestone_crossed: Optional[str] = None
    locked: bool = False


@dataclass
class PoolProgress:
    pool_id: str
    status: str
    pledged_qty: int
    target_qty: int
    percent: float
    milestone: str
    moq_reached_at: Optional[datetime]
    deadline_at: datetime


def milestone_for(pledged: int, target: int) -> str:
    """Highest milestone reached by pledged out of target."""
    if target <= 0:
        return 'MOQ'
    percent = pledged * 100 / target
    for name, threshold in MILESTONES:
        if percent >= threshold:
            return name
    return 'NONE'


class PoolRepository(SqlRepository):
    """Pool, pool item and payment bookkeeping."""

    def _get_pool(self, session: Session, pool_id: str) -> Pool:
        pool = session.get(Pool, pool_id)
        if pool is None:
            raise LookupError(f"Pool not found: {pool_id}")
        return pool

    def open_pool_for_listing(self, listing_url: str, deadline_at: datetime,
                              target_qty: Optional[int] = None) -> Pool:
        """Create a Product and an OPEN Pool from a saved listing.

        Args:
            listing_url: URL of a SavedListing
            deadline_at: When an unfilled pool fails
            target_qty: Explicit target, else the listing MOQ, else 100

        Returns:
            The new Pool
        """
        if target_qty is not None and target_qty <= 0:
            raise PoolStateError(f"Target quantity must be positive, got {target_qty}")

        def operation(session: Session) -> Pool:
            listing = session.scalar(select(SavedListing).where(SavedListing.url == listing_url))
            if listing is None:
                raise LookupError(f"Listing not found: {listing_url}")

            existing = session.scalar(
                select(Pool).join(Product).where(Product.source_url == listing_url)
                .where(Pool.status.notin_(sorted(TERMINAL_STATUSES)))
            )
            if existing is not None:
                raise PoolStateError(f"Listing already has an active pool: {existing.id}")

            product = Product(
                title=listing.title,
                image=listing.image,
                source_platform=listing.platform,
                source_url=listing.url,
                unit_price=listing.price_min,
                base_currency=listing.currency or 'USD',
                moq_qty=listing.moq,
                created_at=self.clock(),
            )
            pool = Pool(
                product=product,
                status='OPEN',
                target_qty=target_qty or listing.moq or DEFAULT_TARGET_QTY,
                pledged_qty=0,
                deadline_at=deadline_at,
                last_progress_milestone='NONE',
                created_at=self.clock(),
            )
            session.add(pool)
            session.flush()
            self.logger.info(f"Opened pool {pool.id} for {listing_url} "
                             f"(target {pool.target_qty})")
            return pool

        return self.run_in_transaction(operation, label="opening pool ")

    def join_pool(self, pool_id: str, user_id: str, quantity: int, unit_price: float,
                  currency: str = 'USD', address_id: Optional[str] = None,
                  method: str = 'STRIPE') -> PoolItem:
        """Add a buyer commitment with a PENDING payment."""
        if quantity <= 0:
            raise PoolStateError(f"Quantity must be positive, got {quantity}")
        if method not in PAY_METHODS:
            raise PoolStateError(f"Unknown payment method: {method}")

        def operation(session: Session) -> PoolItem:
            pool = self._get_pool(session, pool_id)
            if pool.status != 'OPEN':
                raise PoolStateError(f"Pool {pool_id} is {pool.status}, not accepting joins")

            item = PoolItem(
                pool=pool,
                user_id=user_id,
                quantity=quantity,
                unit_price=unit_price,
                currency=currency,
                address_id=address_id,
                pledge_counted=False,
                created_at=self.clock(),
            )
            item.payment = Payment(
                method=method,
                amount=round(quantity * unit_price, 2),
                currency=currency,
                status='PENDING',
                created_at=self.clock(),
            )
            session.add(item)
            session.flush()
            return item

        return self.run_in_transaction(operation, label="joining pool ")

    def record_payment(self, pool_item_id: str, status: str,
                       reference: Optional[str] = None) -> PledgeUpdate:
        """Apply a payment status reported by the provider.

        The first confirmed status for an item adds its quantity to the pool,
        moves the progress milestone and locks the pool once the target is met.

        Returns:
            PledgeUpdate describing the pool after the change
        """
        if status not in PAY_STATUSES:
            raise PoolStateError(f"Unknown payment status: {status}")

        def operation(session: Session) -> PledgeUpdate:
            item = session.get(PoolItem, pool_item_id)
            if item is None:
                raise LookupError(f"Pool item not found: {pool_item_id}")
            pool = item.pool
            payment = item.payment

            payment.status = status
            if reference:
                payment.reference = reference
            if status in ('CAPTURED', 'PAID') and payment.paid_at is None:
                payment.paid_at = self.clock()

            update = PledgeUpdate(pool_id=pool.id, pledged_qty=pool.pledged_qty)
            if status not in CONFIRMED_PAY_STATUSES or item.pledge_counted:
                return update
            if pool.status not in PLEDGING_STATUSES:
                raise PoolStateError(f"Pool {pool.id} is {pool.status}, cannot count pledge")

            item.pledge_counted = True
            pool.pledged_qty += item.quantity
            update.pledged_qty = pool.pledged_qty

            milestone = milestone_for(pool.pledged_qty, pool.target_qty)
            if MILESTONE_RANK[milestone] > MILESTONE_RANK[pool.last_progress_milestone]:
                pool.last_progress_milestone = milestone
                update.milestone_crossed = milestone

            if pool.pledged_qty >= pool.target_qty and pool.status == 'OPEN':
                pool.status = 'LOCKED'
                pool.moq_reached_at = self.clock()
                update.locked = True
                self.logger.info(f"Pool {pool.id} reached MOQ ({pool.pledged_qty}/{pool.target_qty})")
            return update

        return self.run_in_transaction(operation, label="recording payment ")

    def advance_status(self, pool_id: str, status: str) -> Pool:
        """Move a pool one step forward in its lifecycle, or fail it while still filling.

        A pool only locks once its pledged quantity meets the target.
        """
        def operation(session: Session) -> Pool:
            pool = self._get_pool(session, pool_id)
            if pool.status in TERMINAL_STATUSES:
                raise PoolStateError(f"Pool {pool_id} is already {pool.status}")
            if status == 'FAILED':
                if pool.status not in FAILABLE_STATUSES:
                    raise PoolStateError(f"Pool {pool_id} cannot fail from {pool.status}")
                pool.status = status
                return pool

            if status not in POOL_STATUS_ORDER:
                raise PoolStateError(f"Unsupported status transition to {status}")
            if POOL_STATUS_ORDER.index(status) != POOL_STATUS_ORDER.index(pool.status) + 1:
                raise PoolStateError(f"Pool {pool_id} cannot move from {pool.status} to {status}")
            if status == 'LOCKED':
                if pool.pledged_qty < pool.target_qty:
                    raise PoolStateError(f"Pool {pool_id} is below target "
                                         f"({pool.pledged_qty}/{pool.target_qty})")
                pool.moq_reached_at = pool.moq_reached_at or self.clock()
            pool.status = status
            return pool

        return self.run_in_transaction(operation, label="advancing pool ")

    def cancel_pool(self, pool_id: str) -> Pool:
        """Cancel a pool and release confirmed but uncaptured payments."""
        def operation(session: Session) -> Pool:
            pool = self._get_pool(session, pool_id)
            if pool.status in TERMINAL_STATUSES:
                raise PoolStateError(f"Pool {pool_id} is already {pool.status}")
            pool.status = 'CANCELLED'
            for item in pool.items:
                if item.payment is not None and item.payment.status == 'AUTHORIZED':
                    item.payment.status = 'REFUNDED'
            return pool

        return self.run_in_transaction(operation, label="cancelling pool ")

    def capture_payments(self, pool_id: str) -> int:
        """Capture every authorized payment of a locked pool. Returns the count."""
        def operation(session: Session) -> int:
            pool = self._get_pool(session, pool_id)
            if pool.status not in POOL_STATUS_ORDER or pool.status == 'OPEN':
                raise PoolStateError(f"Pool {pool_id} is {pool.status}, cannot capture")
            captured = 0
            for item in pool.items:
                if item.payment is not None and item.payment.status == 'AUTHORIZED':
                    item.payment.status = 'CAPTURED'
                    item.payment.paid_at = self.clock()
                    captured += 1
            return captured

        return self.run_in_transaction(operation, label="capturing payments ")

    def expire_pools(self, now: Optional[datetime] = None) -> List[str]:
        """Fail OPEN pools whose deadline passed below target. Returns their ids."""
        now = now or self.clock()

        def operation(session: Session) -> List[str]:
            expired = session.scalars(
                select(Pool).where(Pool.status == 'OPEN').where(Pool.deadline_at < now)
            ).all()
            failed = []
            for pool in expired:
                if pool.pledged_qty >= pool.target_qty:
                    continue
                pool.status = 'FAILED'
                failed.append(pool.id)
            return failed

        failed = self.run_in_transaction(operation, label="expiring pools ")
        if failed:
            self.logger.info(f"Expired {len(failed)} pools past deadline")
        return failed

    def progress(self, pool_id: str) -> PoolProgress:
        def operation(session: Session) -> PoolProgress:
            pool = self._get_pool(session, pool_id)
            percent = 100.0 if pool.target_qty <= 0 else pool.pledged_qty * 100 / pool.target_qty
            return PoolProgress(
                pool_id=pool.id,
                status=pool.status,
                pledged_qty=pool.pledged_qty,
                target_qty=pool.target_qty,
                percent=round(min(percent, 100.0), 1),
                milestone=pool.last_progress_milestone,
                moq_reached_at=pool.moq_reached_at,
                deadline_at=pool.deadline_at,
            )

        return self.run_in_transaction(operation)
