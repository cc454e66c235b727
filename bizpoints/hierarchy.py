# bizpoints/hierarchy.py
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple, Iterator

from extensions import db
from models import User, Role
from bizpoints.config import CommissionConfigHelper
from bizpoints.errors import InvalidCommissionTarget
from logger import commission_logger as logger


@dataclass(frozen=True)
class DealerRate:
    dealer: User
    rate: Decimal
    rate_source: str  # 'custom' or 'default'
    level: int        # 1 is the customer's own dealer

    @property
    def rate_percent(self) -> float:
        return float(self.rate * 100)


@dataclass(frozen=True)
class HierarchyWalk:
    customer_id: int
    dealers: Tuple[DealerRate, ...]
    truncated: bool = False  # stopped on a parent id with no user row

    def __iter__(self) -> Iterator[DealerRate]:
        return iter(self.dealers)

    def __len__(self) -> int:
        return len(self.dealers)


def load_commission_customer(customer_id: int) -> User:
    """Fetch the paying customer, rejecting anyone commission cannot apply to."""
    customer = db.session.get(User, customer_id)
    if customer is None:
        raise InvalidCommissionTarget(f"Customer {customer_id} not found")
    if customer.role is not Role.CUSTOMER or customer.parent_id is None:
        raise InvalidCommissionTarget("Commission only applies to customers with assigned dealers")
    return customer


class HierarchyWalker:
    """
    Follows parent links upwards from a customer, at most MAX_HIERARCHY_DEPTH dealers.

    A zero rate does not stop the walk. A parent id with no user row ends the
    walk quietly: what was resolved so far is the result.
    """

    def __init__(self, max_depth: int = CommissionConfigHelper.MAX_HIERARCHY_DEPTH):
        self.max_depth = max_depth

    def walk(self, customer: User) -> HierarchyWalk:
        resolved = []
        visited = {customer.id}
        next_id = customer.parent_id
        truncated = False

        for level in range(1, self.max_depth + 1):
            if next_id is None:
                break
            if next_id in visited:
                logger.warning(f"Cycle in dealer hierarchy above customer {customer.id} at user {next_id}")
                break
            visited.add(next_id)

            dealer = db.session.get(User, next_id)
            if dealer is None:
                logger.warning(
                    f"Dealer {next_id} referenced by the hierarchy of customer {customer.id} does not exist"
                )
                truncated = True
                break

            rate, source = CommissionConfigHelper.resolve_rate(dealer.role, dealer.commission_rate)
            resolved.append(DealerRate(dealer=dealer, rate=rate, rate_source=source, level=level))
            next_id = dealer.parent_id

        return HierarchyWalk(customer_id=customer.id, dealers=tuple(resolved), truncated=truncated)
