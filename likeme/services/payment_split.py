"""Marketplace payment split rules for Pagarme orders."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from likeme.config import PagarmeSettings, settings

logger = logging.getLogger(__name__)


@dataclass
class SplitOptions:
    charge_processing_fee: bool = False
    charge_remainder_fee: bool = False
    liable: bool = False


@dataclass
class SplitRule:
    """One Pagarme split rule; ``amount`` is a percentage for ``type='percentage'``."""
    amount: float
    recipient_id: str
    type: str = "percentage"
    options: SplitOptions = field(default_factory=SplitOptions)

    def to_payload(self) -> dict:
        return asdict(self)


def calculate_split(
    amount_cents: int | None = None,
    pagarme_settings: PagarmeSettings | None = None,
) -> list[SplitRule] | None:
    """Split rules for an order, or None when no split applies.

    Args:
        amount_cents: Order total, only used for logging
        pagarme_settings: Split configuration (global settings if None)

    Returns:
        A single percentage rule for the configured recipient, or None if the
        split is disabled, has no recipient or an invalid percentage
    """
    config = pagarme_settings or settings.pagarme

    if not config.split_enabled:
        return None

    if not config.split_recipient_id:
        logger.info("Payment split enabled but no recipient configured")
        return None

    percentage = config.split_percentage
    if percentage <= 0 or percentage > 100:
        logger.warning(f"Invalid split percentage: {percentage}")
        return None

    rules = [
        SplitRule(
            amount=percentage,
            recipient_id=config.split_recipient_id,
            options=SplitOptions(
                charge_processing_fee=config.split_charge_processing_fee,
                charge_remainder_fee=config.split_charge_remainder_fee,
                liable=config.split_liable,
            ),
        )
    ]

    logger.info(
        f"Split calculated: {len(rules)} rule(s), {percentage}% to {config.split_recipient_id}"
        + (f" on {amount_cents} cents" if amount_cents is not None else "")
    )
    return rules
