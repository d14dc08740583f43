"""poly-5min-bot - scheduled trader for Polymarket five-minute markets.

Once per five-minute window, for every configured market:
- Reconciles outstanding orders and checks the ledger against the exchange
- Fetches the market snapshot (Gamma discovery + CLOB book)
- Runs the pluggable strategy through the decision engine
- Submits the resulting intent idempotently and records fills
"""

__version__ = "0.1.0"
