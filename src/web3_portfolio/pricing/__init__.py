"""Pricing services for token USD value enrichment."""

from web3_portfolio.pricing.defillama import DeFiLlamaPricing

__all__ = [
    "DeFiLlamaPricing",
]
