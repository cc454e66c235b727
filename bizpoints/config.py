# bizpoints/config.py
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, Optional, Tuple

from models import Role


class CommissionConfigHelper:
    """
    Commission configuration for the dealer hierarchy.
    SUBDEALER: 10%, EMPLOYEE: 3%, ADMIN: 2%, OWNER: 1%, anything else 0%.
    A dealer's own commission_rate (a percentage) overrides the table when > 0.
    """

    DEFAULT_RATES = {
        Role.SUBDEALER: Decimal('0.10'),
        Role.EMPLOYEE: Decimal('0.03'),
        Role.ADMIN: Decimal('0.02'),
        Role.OWNER: Decimal('0.01'),
    }

    # Hard cap on dealers credited per customer transaction
    MAX_HIERARCHY_DEPTH = 4

    AMOUNT_QUANT = Decimal('0.01')

    @staticmethod
    def default_rate(role: Optional[Role]) -> Decimal:
        return CommissionConfigHelper.DEFAULT_RATES.get(role, Decimal('0'))

    @staticmethod
    def resolve_rate(role: Optional[Role], commission_rate) -> Tuple[Decimal, str]:
        """Return (rate as a fraction, 'custom' | 'default')."""
        if commission_rate is not None:
            custom = Decimal(str(commission_rate))
            if custom > 0:
                return custom / Decimal('100'), 'custom'
        return CommissionConfigHelper.default_rate(role), 'default'

    @staticmethod
    def calculate_commission_amount(amount, rate: Decimal) -> Decimal:
        return (Decimal(str(amount)) * rate).quantize(
            CommissionConfigHelper.AMOUNT_QUANT, rounding=ROUND_HALF_UP
        )

    @staticmethod
    def get_rate_table() -> Dict[str, Any]:
        return {
            'max_depth': CommissionConfigHelper.MAX_HIERARCHY_DEPTH,
            'rates': {
                role.value: float(CommissionConfigHelper.default_rate(role) * 100)
                for role in Role
            },
        }
