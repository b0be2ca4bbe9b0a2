"""
Native value attached to each contract call.

The two call sites pay for different things and must not share a formula:
an order fill funds only the maker's side, while a destination deployment
also posts the resolver's safety deposit.
"""

from enum import Enum
from typing import Optional

from ..core import Immutables
from ..errors import ValidationError


class CallRole(Enum):
    SOURCE_FILL = "source_fill"
    DESTINATION_DEPLOY = "destination_deploy"


def source_fill_value(immutables: Immutables, making_amount: Optional[int] = None) -> int:
    """Making amount for native-asset orders, nothing for token orders."""
    if not immutables.token.is_native():
        return 0
    amount = immutables.amount if making_amount is None else making_amount
    if amount <= 0 or amount > immutables.amount:
        raise ValidationError(f"Making amount {amount} outside (0, {immutables.amount}]")
    return amount


def destination_deploy_value(immutables: Immutables) -> int:
    """Amount plus safety deposit for native assets, safety deposit alone for tokens."""
    if immutables.token.is_native():
        return immutables.amount + immutables.safety_deposit
    return immutables.safety_deposit


def required_native_value(
    immutables: Immutables,
    role: CallRole,
    making_amount: Optional[int] = None,
) -> int:
    if role == CallRole.SOURCE_FILL:
        return source_fill_value(immutables, making_amount)
    if role == CallRole.DESTINATION_DEPLOY:
        return destination_deploy_value(immutables)
    raise ValidationError(f"Unknown call role: {role}")
