"""Core trading logic: indicators, models, strategies and risk management.

Pure business logic with no I/O. Shared by the live engine (app/) and the
backtester (backtest/).
"""
