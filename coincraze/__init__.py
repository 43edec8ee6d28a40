"""Core domain modules.

This package contains the portfolio ledger and price-feed building blocks:

- market_data: price sources, the price oracle and the poller
- portfolio: cash/asset ledger and point-in-time value snapshots
- persistence: persistence boundary (interfaces + error-containing adapter)
- storage: concrete key-value stores (memory, JSON file, SQL)
- scheduling: cancellable scheduled tasks on the asyncio loop
- signals: host visibility/connectivity signals
"""
