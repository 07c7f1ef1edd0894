"""
Liquidity Nebula streaming core.

Ingests the Binance USDT-M futures ``!ticker@arr`` stream into an in-memory
ticker table, throttles updates for UI consumers, and resynchronizes
per-symbol baseline prices so percent change can be shown over any
selectable window.
"""

__version__ = "0.3.0"
