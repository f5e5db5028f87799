"""User-friendly APIs for Portfolio Gateway.

This package provides high-level interfaces over the portfolio stored procedures.

Components:
- PortfolioAPI: Analytics, transaction recording, value recalculation and bulk loading
"""

from portfolio_gateway.api.portfolio_api import PortfolioAPI

__all__ = [
    "PortfolioAPI",
]
